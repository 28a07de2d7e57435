"""Parse the EasyRSA ``show-expire`` report into typed records.

The report is plain text, one certificate per line::

    Valid | Serial: 5A1F09C3 | Expires: 2031-02-03 04:05:06+00:00 | CN: alice

Only lines with a ``valid`` status are considered. Headers, blank lines and
other statuses are expected noise and are skipped silently; a line that has
the right shape but an unusable username or timestamp is skipped with a
warning.
"""
from __future__ import annotations

import logging
import re
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from .easyrsa import EasyRSA
from .errors import UsernameError
from .usernames import Username

LOGGER = logging.getLogger(__name__)

# Far enough in the future that every issued certificate falls inside the horizon.
EXPIRY_CUTOFF = datetime(9999, 12, 31, 23, 59, 59, tzinfo=UTC)

_LINE_RE = re.compile(
    r"^\s*(?P<status>(?i:valid)\S*)\s*"
    r" \| Serial: (?P<serial>[0-9A-Fa-f]+)"
    r" \| Expire[sd]: (?P<date>\S+) (?P<time>.+?)"
    r" \| CN: (?P<name>.*?)\s*$"
)


@dataclass(frozen=True)
class ExpiryRecord:
    """Expiry details for one valid certificate."""

    username: Username
    expires_at: datetime
    serial: str
    expired: bool

    def expires_before(self, moment: datetime) -> bool:
        """Return True when the certificate expires strictly before *moment*."""
        return self.expires_at < moment

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "username": str(self.username),
            "expires_at": self.expires_at.isoformat(),
            "serial": self.serial,
            "expired": self.expired,
        }


def expiry_horizon_days(now: datetime) -> int:
    """Return the whole days between *now* and :data:`EXPIRY_CUTOFF`."""
    return (EXPIRY_CUTOFF - now).days


def parse_timestamp(date: str, time: str) -> datetime:
    """Parse a report date and time into an aware datetime (UTC when naive)."""
    moment = datetime.fromisoformat(f"{date} {time}")
    if moment.tzinfo is None:
        return moment.replace(tzinfo=UTC)
    return moment


def parse_expiry_report(
    text: str,
    *,
    now: datetime | None = None,
    logger: logging.Logger | None = None,
) -> list[ExpiryRecord]:
    """Return the records of *text* in report order.

    *now* is the single evaluation instant used to classify every record;
    it defaults to the current time, captured once before parsing starts.
    """
    log = logger or LOGGER
    evaluated_at = now or datetime.now(tz=UTC)
    records: list[ExpiryRecord] = []
    for line in text.splitlines():
        match = _LINE_RE.match(line)
        if match is None:
            continue
        name = match.group("name")
        try:
            username = Username.parse(name)
        except UsernameError as exc:
            log.warning("Ignoring expiry entry with unparsable username %r: %s", name, exc)
            continue
        date, time = match.group("date"), match.group("time")
        try:
            expires_at = parse_timestamp(date, time)
        except ValueError as exc:
            log.warning(
                "Ignoring expiry entry for %s with unparsable timestamp %r: %s",
                username,
                f"{date} {time}",
                exc,
            )
            continue
        records.append(
            ExpiryRecord(
                username=username,
                expires_at=expires_at,
                serial=match.group("serial"),
                expired=expires_at < evaluated_at,
            )
        )
    return records


def load_expiry_records(
    tool: EasyRSA,
    *,
    now: datetime | None = None,
    logger: logging.Logger | None = None,
) -> list[ExpiryRecord]:
    """Run ``show-expire`` through *tool* and parse its report."""
    evaluated_at = now or datetime.now(tz=UTC)
    report = tool.show_expire(expiry_horizon_days(evaluated_at))
    return parse_expiry_report(report, now=evaluated_at, logger=logger)


def select_records(
    records: Iterable[ExpiryRecord],
    *,
    only_expired: bool = False,
    near_expiry: timedelta | None = None,
    now: datetime | None = None,
) -> list[ExpiryRecord]:
    """Filter *records* to expired ones or those expiring within *near_expiry*."""
    selected = list(records)
    if only_expired:
        selected = [record for record in selected if record.expired]
    if near_expiry is not None:
        deadline = (now or datetime.now(tz=UTC)) + near_expiry
        selected = [record for record in selected if record.expires_before(deadline)]
    return selected


__all__ = [
    "EXPIRY_CUTOFF",
    "ExpiryRecord",
    "expiry_horizon_days",
    "load_expiry_records",
    "parse_expiry_report",
    "parse_timestamp",
    "select_records",
]
