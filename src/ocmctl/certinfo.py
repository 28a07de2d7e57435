"""Read-only inspection of issued client certificates."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from cryptography import x509
from cryptography.hazmat.primitives import hashes

from .errors import OcmError
from .exit_codes import ExitCode
from .scanner import PRIVATE_DIR, certificate_path
from .usernames import Username


class CertificateInfoError(OcmError):
    """Raised when a certificate cannot be parsed."""

    exit_code = ExitCode.ENVIRONMENT


@dataclass(frozen=True)
class CertificateInfo:
    """Details of a user's issued certificate."""

    username: Username
    path: Path
    subject: str
    issuer: str
    serial: str
    not_valid_before: datetime
    not_valid_after: datetime
    fingerprint_sha256: str
    has_key: bool

    def expired(self, now: datetime | None = None) -> bool:
        """Return True when the certificate is past its validity period."""
        return self.not_valid_after <= (now or datetime.now(tz=UTC))

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "username": str(self.username),
            "path": str(self.path),
            "subject": self.subject,
            "issuer": self.issuer,
            "serial": self.serial,
            "not_valid_before": self.not_valid_before.isoformat(),
            "not_valid_after": self.not_valid_after.isoformat(),
            "fingerprint_sha256": self.fingerprint_sha256,
            "has_key": self.has_key,
            "expired": self.expired(),
        }


def inspect_certificate(pki_dir: Path, username: Username) -> CertificateInfo:
    """Return :class:`CertificateInfo` for *username* in *pki_dir*."""
    path = certificate_path(pki_dir, username)
    try:
        cert = _load_certificate(path)
    except (OSError, ValueError) as exc:
        raise CertificateInfoError(f"Failed to parse certificate {path}: {exc}") from exc
    return CertificateInfo(
        username=username,
        path=path,
        subject=cert.subject.rfc4514_string(),
        issuer=cert.issuer.rfc4514_string(),
        serial=f"{cert.serial_number:X}",
        not_valid_before=_as_utc(cert.not_valid_before_utc),
        not_valid_after=_as_utc(cert.not_valid_after_utc),
        fingerprint_sha256=cert.fingerprint(hashes.SHA256()).hex(":").upper(),
        has_key=(pki_dir / PRIVATE_DIR / f"{username}.key").is_file(),
    )


def _load_certificate(path: Path) -> x509.Certificate:
    data = path.read_bytes()
    try:
        return x509.load_pem_x509_certificate(data)
    except ValueError:
        return x509.load_der_x509_certificate(data)


def _as_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=UTC)
    return moment.astimezone(UTC)


__all__ = ["CertificateInfo", "CertificateInfoError", "inspect_certificate"]
