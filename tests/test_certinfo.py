"""Tests for certificate inspection."""
from __future__ import annotations

from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
from cryptography.hazmat.primitives import hashes

from conftest import write_certificate
from ocmctl.certinfo import CertificateInfoError, inspect_certificate
from ocmctl.errors import DriftError
from ocmctl.usernames import Username


def test_inspect_certificate_reports_details(pki: Path) -> None:
    """Subject, serial, validity and fingerprint are extracted."""
    not_after = datetime(2031, 1, 2, 3, 4, 5, tzinfo=UTC)
    cert = write_certificate(pki / "issued" / "alice.crt", "alice", not_after=not_after)

    info = inspect_certificate(pki, Username("alice"))

    assert info.subject == "CN=alice"
    assert info.serial == f"{cert.serial_number:X}"
    assert info.not_valid_after == not_after
    assert info.fingerprint_sha256 == cert.fingerprint(hashes.SHA256()).hex(":").upper()
    assert info.has_key is True
    assert info.expired(now=not_after - timedelta(seconds=1)) is False
    assert info.to_dict()["username"] == "alice"


def test_inspect_certificate_rejects_garbage(pki: Path) -> None:
    """Unreadable certificates raise a dedicated error."""
    with pytest.raises(CertificateInfoError, match="Failed to parse certificate"):
        inspect_certificate(pki, Username("alice"))


def test_inspect_missing_certificate_is_drift(pki: Path) -> None:
    """A certificate that vanished is reported as drift."""
    (pki / "issued" / "bob.crt").unlink()

    with pytest.raises(DriftError):
        inspect_certificate(pki, Username("bob"))
