from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    app_env: str = "dev"
    log_level: str = "INFO"

    # Remote panel (control plane). Secrets must come from `.env` or the environment.
    panel_api_host: str = "http://127.0.0.1:8080"
    panel_api_key: str = ""
    # One controller is started per node id served by this process.
    node_ids: list[int] = Field(default_factory=list)
    panel_timeout_seconds: int = 30
    panel_retry_count: int = 5
    # Used when the panel omits the update interval (seconds).
    default_update_interval: int = 60

    agent_host: str = "0.0.0.0"
    agent_port: int = 8070
    # Dry-run keeps the live registry in process memory instead of talking to Xray.
    agent_dry_run: bool = True
    agent_data_root: str = "/tmp/syncgate-agent"
    metrics_enabled: bool = True

    # Xray gRPC API (HandlerService, StatsService, RoutingService must be enabled).
    xray_api_server: str = "127.0.0.1:10085"
    xray_api_timeout_seconds: int = 3
    # Binary used for `xray api adi/ado/adrules/...` which accept JSON objects.
    xray_bin: str = "xray"

    # ACME renewal via the lego CLI. Placeholders: {challenge} {domain} {email} {cert_dir}.
    cert_dir: str = "/etc/syncgate/cert"
    cert_email: str = ""
    cert_renew_cmd: str = (
        "lego --accept-tos --path {cert_dir} --email {email} --domains {domain} --{challenge} renew --days 30"
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()


def ensure_agent_dirs(settings: Settings) -> None:
    root = Path(settings.agent_data_root)
    (root / "runtime").mkdir(parents=True, exist_ok=True)
    (root / "specs").mkdir(parents=True, exist_ok=True)
