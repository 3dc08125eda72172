import pytest

from syncgate.agent import certs
from syncgate.agent.certs import CertError, CommandCertRenewer
from syncgate.settings import Settings


def _settings(**kwargs) -> Settings:  # noqa: ANN003
    base = {"cert_dir": "/etc/syncgate/cert", "cert_email": "ops@example.com", "agent_dry_run": False}
    base.update(kwargs)
    return Settings(**base)


def test_renew_runs_configured_command(monkeypatch) -> None:
    seen: list[tuple[str, bool]] = []

    def _run(cmd: str, dry_run: bool):  # noqa: ANN202
        seen.append((cmd, dry_run))
        return True, "Server responded with a certificate."

    monkeypatch.setattr(certs, "run_command", _run)

    result = CommandCertRenewer(_settings()).renew("http", "node.example.com")

    assert seen == [
        (
            "lego --accept-tos --path /etc/syncgate/cert --email ops@example.com "
            "--domains node.example.com --http renew --days 30",
            False,
        )
    ]
    assert result.renewed is True
    assert result.cert_path == "/etc/syncgate/cert/certificates/node.example.com.crt"
    assert result.key_path == "/etc/syncgate/cert/certificates/node.example.com.key"


def test_renew_reports_not_renewed_when_cert_still_valid(monkeypatch) -> None:
    monkeypatch.setattr(certs, "run_command", lambda cmd, dry_run: (True, "no renewal needed for domain"))
    assert CommandCertRenewer(_settings()).renew("dns", "node.example.com").renewed is False


def test_renew_dry_run_never_reports_renewal(monkeypatch) -> None:
    monkeypatch.setattr(certs, "run_command", lambda cmd, dry_run: (True, f"dry-run: {cmd}"))
    assert CommandCertRenewer(_settings(agent_dry_run=True)).renew("http", "n.example.com").renewed is False


def test_renew_failure_raises(monkeypatch) -> None:
    monkeypatch.setattr(certs, "run_command", lambda cmd, dry_run: (False, "acme: error 429"))
    with pytest.raises(CertError, match="429"):
        CommandCertRenewer(_settings()).renew("http", "node.example.com")


@pytest.mark.parametrize(
    ("challenge", "domain", "email"),
    [("tls-alpn", "node.example.com", "ops@example.com"), ("http", "", "ops@example.com"), ("http", "n.example.com", "")],
)
def test_renew_validates_inputs(monkeypatch, challenge: str, domain: str, email: str) -> None:
    monkeypatch.setattr(certs, "run_command", lambda cmd, dry_run: pytest.fail("must not run"))
    with pytest.raises(CertError):
        CommandCertRenewer(_settings(cert_email=email)).renew(challenge, domain)
