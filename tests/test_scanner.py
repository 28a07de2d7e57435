"""Tests for deriving users from the PKI directory."""
from __future__ import annotations

import logging
import os
from pathlib import Path

import pytest

from conftest import make_pki
from ocmctl.errors import DriftError, PKIDirectoryError
from ocmctl.exit_codes import ExitCode
from ocmctl.scanner import (
    certificate_path,
    entry_stem,
    key_path,
    scan_credentials,
    scan_users,
)
from ocmctl.usernames import Username


def _names(users: list[Username]) -> list[str]:
    return [str(user) for user in users]


def test_entry_stem_strips_last_suffix() -> None:
    """Only the final extension is removed."""
    assert entry_stem(Path("issued/alice.crt")) == b"alice"
    assert entry_stem(Path("issued/alice.old.crt")) == b"alice.old"
    assert entry_stem(Path("..")) is None


def test_scan_users_is_sorted_union_without_ca(tmp_path: Path) -> None:
    """Users come from either directory; the CA key is not a user."""
    pki = make_pki(tmp_path / "pki", certs=("bob", "alice"), keys=("alice", "bob", "ca"))

    assert _names(scan_users(pki)) == ["alice", "bob"]


def test_scan_credentials_warns_once_per_asymmetric_user(
    tmp_path: Path,
    caplog: pytest.LogCaptureFixture,
) -> None:
    """A lone certificate or key still makes a user, with one warning each."""
    pki = make_pki(tmp_path / "pki", certs=("alice", "carol"), keys=("alice", "dave", "ca"))
    caplog.set_level(logging.WARNING, logger="ocmctl")

    records = scan_credentials(pki)

    assert [(str(r.username), r.has_certificate, r.has_key) for r in records] == [
        ("alice", True, True),
        ("carol", True, False),
        ("dave", False, True),
    ]
    messages = [record.getMessage() for record in caplog.records]
    assert sum("'carol' seems to have a certificate but no key" in m for m in messages) == 1
    assert sum("'dave' seems to have a key but no certificate" in m for m in messages) == 1
    assert not any("alice" in m for m in messages)


def test_scan_skips_non_regular_entries(
    tmp_path: Path,
    caplog: pytest.LogCaptureFixture,
) -> None:
    """Directories inside issued/ are reported and ignored."""
    pki = make_pki(tmp_path / "pki", certs=("alice",), keys=("alice",))
    (pki / "issued" / "nested.crt").mkdir()
    caplog.set_level(logging.WARNING, logger="ocmctl")

    assert _names(scan_users(pki)) == ["alice"]
    assert "is not a regular file" in caplog.text


def test_scan_rejects_invalid_names(
    tmp_path: Path,
    caplog: pytest.LogCaptureFixture,
) -> None:
    """Files whose stem is not a valid username are ignored with a warning."""
    pki = make_pki(tmp_path / "pki", certs=("alice", "bad name"), keys=("alice", "bad name"))
    caplog.set_level(logging.WARNING, logger="ocmctl")

    assert _names(scan_users(pki)) == ["alice"]
    assert "failed parsing" in caplog.text


def test_scan_reports_non_utf8_names(
    tmp_path: Path,
    caplog: pytest.LogCaptureFixture,
) -> None:
    """Names that are not UTF-8 are reported and excluded."""
    pki = make_pki(tmp_path / "pki", certs=("alice",), keys=("alice",))
    raw_path = os.path.join(os.fsencode(pki / "issued"), b"\xffbad.crt")
    with open(raw_path, "wb") as handle:
        handle.write(b"certificate\n")
    caplog.set_level(logging.WARNING, logger="ocmctl")

    assert _names(scan_users(pki)) == ["alice"]
    assert "non-UTF8 name" in caplog.text


def test_scan_missing_directory_raises(tmp_path: Path) -> None:
    """A PKI without issued/ cannot be listed."""
    pki = tmp_path / "pki"
    (pki / "private").mkdir(parents=True)

    with pytest.raises(PKIDirectoryError) as excinfo:
        scan_users(pki)
    assert excinfo.value.exit_code == ExitCode.ENVIRONMENT


def test_credential_paths_detect_drift(tmp_path: Path) -> None:
    """Files removed after the scan surface as drift errors naming the path."""
    pki = make_pki(tmp_path / "pki", certs=("alice",), keys=("alice",))
    alice = Username("alice")

    assert certificate_path(pki, alice) == pki / "issued" / "alice.crt"
    (pki / "private" / "alice.key").unlink()

    with pytest.raises(DriftError) as excinfo:
        key_path(pki, alice)
    assert excinfo.value.exit_code == ExitCode.ENVIRONMENT
    assert str(pki / "private" / "alice.key") in str(excinfo.value)
