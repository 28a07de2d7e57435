"""Tests for parsing the EasyRSA expiry report."""
from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from ocmctl.easyrsa import EasyRSA
from ocmctl.expiry import (
    EXPIRY_CUTOFF,
    expiry_horizon_days,
    load_expiry_records,
    parse_expiry_report,
    parse_timestamp,
    select_records,
)

NOW = datetime(2025, 6, 1, 12, 0, 0, tzinfo=UTC)

REPORT = """\
* WARNING:

  Certificates listed below expire within 36500 days.

Valid | Serial: 0A1B2C3D | Expires: 2025-05-01 00:00:00+00:00 | CN: alice
  Valid | Serial: ff00ff | Expires: 2031-02-03 04:05:06+00:00 | CN: bob
Revoked | Serial: 1234 | Expires: 2024-01-01 00:00:00+00:00 | CN: carol
Valid | Serial: 99 | Expired: 2025-06-01 11:59:59 | CN: dave

"""


def test_parse_report_keeps_valid_lines_in_order() -> None:
    """Headers, blank lines and other statuses are skipped silently."""
    records = parse_expiry_report(REPORT, now=NOW)

    assert [(str(r.username), r.serial, r.expired) for r in records] == [
        ("alice", "0A1B2C3D", True),
        ("bob", "ff00ff", False),
        ("dave", "99", True),
    ]
    assert records[1].expires_at == datetime(2031, 2, 3, 4, 5, 6, tzinfo=UTC)


def test_naive_timestamps_are_utc() -> None:
    """Timestamps without an offset are read as UTC."""
    assert parse_timestamp("2025-06-01", "11:59:59") == datetime(
        2025, 6, 1, 11, 59, 59, tzinfo=UTC
    )


def test_offsets_are_respected() -> None:
    """Explicit offsets produce the equivalent UTC instant."""
    moment = parse_timestamp("2025-06-01", "14:00:00+02:00")
    assert moment == datetime(2025, 6, 1, 12, 0, 0, tzinfo=UTC)


def test_expiry_boundary_is_strict() -> None:
    """A certificate expiring exactly now is not yet expired."""
    report = "Valid | Serial: 01 | Expires: 2025-06-01 12:00:00+00:00 | CN: alice\n"

    (record,) = parse_expiry_report(report, now=NOW)
    assert record.expired is False
    (later,) = parse_expiry_report(report, now=NOW + timedelta(seconds=1))
    assert later.expired is True


def test_bad_entries_warn_and_drop(caplog: pytest.LogCaptureFixture) -> None:
    """Well-formed lines with unusable values are dropped with a warning."""
    report = (
        "Valid | Serial: 01 | Expires: 2025-13-45 99:99:99 | CN: alice\n"
        "Valid | Serial: 02 | Expires: 2030-01-01 00:00:00 | CN: bad.name\n"
        "Valid | Serial: 03 | Expires: 2030-01-01 00:00:00 | CN: bob\n"
        "Valid | Serial: 04 | Expires: 2030-01-01 00:00:00 | CN: bad name\n"
        "Valid | Serial: 05 | Expires: Jan  1 00:00:00 2030 GMT | CN: carol\n"
    )
    caplog.set_level(logging.WARNING, logger="ocmctl")

    records = parse_expiry_report(report, now=NOW)

    assert [str(r.username) for r in records] == ["bob"]
    messages = [record.getMessage() for record in caplog.records]
    assert sum("unparsable timestamp" in m for m in messages) == 2
    assert sum("unparsable username" in m for m in messages) == 2
    assert any("'bad name'" in m for m in messages)
    assert any("carol" in m for m in messages)


def test_select_records_filters() -> None:
    """Expired and near-expiry filters use the same evaluation instant."""
    records = parse_expiry_report(
        "Valid | Serial: 01 | Expires: 2025-05-01 00:00:00 | CN: alice\n"
        "Valid | Serial: 02 | Expires: 2025-06-10 00:00:00 | CN: bob\n"
        "Valid | Serial: 03 | Expires: 2026-01-01 00:00:00 | CN: carol\n",
        now=NOW,
    )

    expired = select_records(records, only_expired=True, now=NOW)
    assert [str(r.username) for r in expired] == ["alice"]

    soon = select_records(records, near_expiry=timedelta(days=30), now=NOW)
    assert [str(r.username) for r in soon] == ["alice", "bob"]

    assert select_records(records, now=NOW) == records


def test_horizon_reaches_cutoff() -> None:
    """The requested horizon covers every certificate up to the cutoff."""
    days = expiry_horizon_days(NOW)
    assert NOW + timedelta(days=days) <= EXPIRY_CUTOFF
    assert NOW + timedelta(days=days + 1) > EXPIRY_CUTOFF


def test_load_expiry_records_requests_full_horizon(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """The report is requested with the horizon days and parsed."""
    requested: list[int] = []

    def fake_show_expire(self: EasyRSA, days: int) -> str:
        requested.append(days)
        return "Valid | Serial: 01 | Expires: 2030-01-01 00:00:00 | CN: alice\n"

    monkeypatch.setattr(EasyRSA, "show_expire", fake_show_expire)
    tool = EasyRSA(Path("easyrsa"), tmp_path)

    records = load_expiry_records(tool, now=NOW)

    assert requested == [expiry_horizon_days(NOW)]
    assert [str(r.username) for r in records] == ["alice"]
