from __future__ import annotations

import shlex
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from syncgate.settings import Settings

from .system import run_command


class CertError(RuntimeError):
    pass


@dataclass(frozen=True)
class CertResult:
    cert_path: str
    key_path: str
    renewed: bool


class CertRenewer(Protocol):
    def renew(self, challenge: str, domain: str) -> CertResult: ...


class CommandCertRenewer:
    """Renews ACME certificates by running the configured CLI (lego by default)."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings

    def paths(self, domain: str) -> tuple[str, str]:
        root = Path(self.settings.cert_dir) / "certificates"
        return str(root / f"{domain}.crt"), str(root / f"{domain}.key")

    def renew(self, challenge: str, domain: str) -> CertResult:
        if challenge not in {"http", "dns"}:
            raise CertError(f"unsupported challenge type: {challenge}")
        if not domain:
            raise CertError("certificate domain is required")
        if not self.settings.cert_email:
            raise CertError("CERT_EMAIL is required for certificate renewal")

        cmd = self.settings.cert_renew_cmd.format(
            challenge=challenge,
            domain=shlex.quote(domain),
            email=shlex.quote(self.settings.cert_email),
            cert_dir=shlex.quote(self.settings.cert_dir),
        )
        ok, out = run_command(cmd, self.settings.agent_dry_run)
        if not ok:
            details = (out or "").strip() or "no output"
            raise CertError(f"certificate renewal failed for {domain}: {details[:400]}")
        cert_path, key_path = self.paths(domain)
        renewed = "no renewal" not in (out or "").lower() and not self.settings.agent_dry_run
        return CertResult(cert_path=cert_path, key_path=key_path, renewed=renewed)
