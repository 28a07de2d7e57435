"""Tests for user actions against a profile."""
from __future__ import annotations

import logging
from datetime import UTC, datetime
from pathlib import Path

import pytest

from conftest import FakeEasyRSA
from ocmctl.actions import ProfileActions
from ocmctl.config import AppConfig, Profile
from ocmctl.errors import (
    ExternalToolError,
    MissingCertificateError,
    UnknownUserError,
    UserExistsError,
)
from ocmctl.exit_codes import ExitCode
from ocmctl.usernames import parse_usernames

NOW = datetime(2025, 6, 1, tzinfo=UTC)


def _actions(pki: Path, fake: FakeEasyRSA, tmp_path: Path) -> ProfileActions:
    profile = Profile(name="office", pki_dir=pki)
    config = AppConfig(
        config_file=tmp_path / "ocmctl.yml",
        easy_rsa_path=fake.binary,
        logs_dir=tmp_path / "logs",
        default_profile="office",
        profiles=(profile,),
    )
    return ProfileActions.for_profile(config, profile)


def test_new_issues_each_user(pki: Path, fake_easyrsa: FakeEasyRSA, tmp_path: Path) -> None:
    """Each new user gets one build-client-full call, in request order."""
    actions = _actions(pki, fake_easyrsa, tmp_path)

    actions.new(parse_usernames(["dave", "carol"]), days=10)

    assert fake_easyrsa.calls() == [["build-client-full", "dave"], ["build-client-full", "carol"]]
    assert [str(name) for name in actions.known_users()] == ["alice", "bob", "carol", "dave"]


def test_new_rejects_existing_users(
    pki: Path,
    fake_easyrsa: FakeEasyRSA,
    tmp_path: Path,
) -> None:
    """Existing users are refused before EasyRSA runs."""
    with pytest.raises(UserExistsError, match="alice"):
        _actions(pki, fake_easyrsa, tmp_path).new(parse_usernames(["carol", "alice"]))
    assert fake_easyrsa.calls() == []


def test_renew_revokes_old_certificates(
    pki: Path,
    fake_easyrsa: FakeEasyRSA,
    tmp_path: Path,
) -> None:
    """Renewal revokes each replaced certificate and regenerates the CRL once."""
    _actions(pki, fake_easyrsa, tmp_path).renew(parse_usernames(["alice", "bob"]))

    assert fake_easyrsa.verbs() == [
        "renew",
        "revoke-renewed",
        "renew",
        "revoke-renewed",
        "gen-crl",
    ]


def test_renew_keep_old(pki: Path, fake_easyrsa: FakeEasyRSA, tmp_path: Path) -> None:
    """--keep-old skips revocation and the CRL update."""
    _actions(pki, fake_easyrsa, tmp_path).renew(parse_usernames(["alice"]), keep_old=True)

    assert fake_easyrsa.verbs() == ["renew"]


def test_renew_stops_at_first_failure(
    pki: Path,
    fake_easyrsa: FakeEasyRSA,
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """A failing EasyRSA call aborts the remaining users."""
    monkeypatch.setenv("FAKE_EASYRSA_FAIL", "revoke-renewed")

    with pytest.raises(ExternalToolError):
        _actions(pki, fake_easyrsa, tmp_path).renew(parse_usernames(["alice", "bob"]))

    assert fake_easyrsa.verbs() == ["renew", "revoke-renewed"]


def test_remove_revokes_and_updates_crl(
    pki: Path,
    fake_easyrsa: FakeEasyRSA,
    tmp_path: Path,
) -> None:
    """Removal revokes every user then regenerates the CRL once."""
    actions = _actions(pki, fake_easyrsa, tmp_path)

    actions.remove(parse_usernames(["bob", "alice"]))

    assert fake_easyrsa.calls() == [["revoke", "bob"], ["revoke", "alice"], ["gen-crl"]]
    assert actions.known_users() == []


def test_remove_without_crl_update(
    pki: Path,
    fake_easyrsa: FakeEasyRSA,
    tmp_path: Path,
) -> None:
    """The CRL update can be skipped."""
    _actions(pki, fake_easyrsa, tmp_path).remove(parse_usernames(["bob"]), update_crl=False)

    assert fake_easyrsa.verbs() == ["revoke"]


def test_remove_unknown_user(pki: Path, fake_easyrsa: FakeEasyRSA, tmp_path: Path) -> None:
    """Unknown users are rejected before anything runs."""
    with pytest.raises(UnknownUserError, match="ghost"):
        _actions(pki, fake_easyrsa, tmp_path).remove(parse_usernames(["alice", "ghost"]))
    assert fake_easyrsa.calls() == []


def test_list_expiry_skips_unknown_certificates(
    pki: Path,
    tmp_path: Path,
    fake_easyrsa: FakeEasyRSA,
    monkeypatch: pytest.MonkeyPatch,
    caplog: pytest.LogCaptureFixture,
) -> None:
    """Certificates without credential files are reported and ignored."""
    report = tmp_path / "report.txt"
    report.write_text(
        "Valid | Serial: 01 | Expires: 2025-01-01 00:00:00 | CN: alice\n"
        "Valid | Serial: 02 | Expires: 2030-01-01 00:00:00 | CN: ghost\n"
        "Valid | Serial: 03 | Expires: 2030-01-01 00:00:00 | CN: bob\n"
    )
    monkeypatch.setenv("FAKE_EASYRSA_REPORT", str(report))
    caplog.set_level(logging.WARNING, logger="ocmctl")
    actions = _actions(pki, fake_easyrsa, tmp_path)

    records = actions.list_expiry(now=NOW)
    expired = actions.list_expiry(only_expired=True, now=NOW)

    assert [str(r.username) for r in records] == ["alice", "bob"]
    assert [str(r.username) for r in expired] == ["alice"]
    assert "ghost" in caplog.text


def test_info_rejects_key_only_user(
    pki: Path,
    tmp_path: Path,
    fake_easyrsa: FakeEasyRSA,
) -> None:
    """A user with only a private key has no certificate to describe."""
    (pki / "private" / "dave.key").write_text("key of dave\n", encoding="utf-8")

    with pytest.raises(MissingCertificateError, match="no issued certificate") as excinfo:
        _actions(pki, fake_easyrsa, tmp_path).info(parse_usernames(["dave"]))

    assert excinfo.value.usernames == ["dave"]
    assert excinfo.value.exit_code == ExitCode.VALIDATION
