"""Derive the set of known users from an EasyRSA PKI directory.

There is no user database: a user exists when ``issued/<name>.crt`` or
``private/<name>.key`` exists. Scanning is read-only; anomalies are logged as
warnings and the offending entry is skipped so one bad file never hides the
rest of the listing.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

from .errors import DriftError, PKIDirectoryError, UsernameError
from .usernames import Username

LOGGER = logging.getLogger(__name__)

ISSUED_DIR = "issued"
PRIVATE_DIR = "private"
CERT_SUFFIX = ".crt"
KEY_SUFFIX = ".key"
# The authority's own key lives beside the client keys.
CA_STEM = b"ca"


@dataclass(frozen=True, order=True)
class CredentialRecord:
    """Which credential files exist for a user."""

    username: Username
    has_certificate: bool
    has_key: bool


def entry_stem(path: Path) -> bytes | None:
    """Return the raw filename stem identifying the user behind *path*.

    ``alice.crt`` maps to ``b"alice"``; names without a stem (``""``, ``..``)
    map to ``None``. Bytes are returned so that names which are not valid
    UTF-8 survive until :func:`decode_stem` reports them.
    """
    stem = Path(path.name).stem
    if not stem or stem in {".", ".."}:
        return None
    return os.fsencode(stem)


def decode_stem(stem: bytes, *, logger: logging.Logger | None = None) -> Username | None:
    """Map a raw stem onto a :class:`Username`, or ``None`` with a warning."""
    log = logger or LOGGER
    try:
        text = stem.decode("utf-8")
    except UnicodeDecodeError:
        text = stem.decode("utf-8", errors="replace")
        log.warning("User %r seems to have a non-UTF8 name", stem)
    try:
        return Username.parse(text)
    except UsernameError as exc:
        log.warning("The username %r failed parsing; ignoring: %s", text, exc)
        return None


def list_stems(directory: Path, *, logger: logging.Logger | None = None) -> set[bytes]:
    """Return the stems of the regular files directly inside *directory*."""
    log = logger or LOGGER
    try:
        iterator = os.scandir(directory)
    except OSError as exc:
        raise PKIDirectoryError(f"Cannot list PKI directory {directory}: {exc}") from exc

    stems: set[bytes] = set()
    with iterator:
        while True:
            try:
                entry = next(iterator)
            except StopIteration:
                break
            except OSError as exc:
                log.warning(
                    "Failed to read an entry in %s; the user list may be incomplete: %s",
                    directory,
                    exc,
                )
                break
            path = Path(entry.path)
            try:
                is_file = entry.is_file()
            except OSError as exc:
                log.warning(
                    "Failed to read %s; the user list may be incomplete: %s", path, exc
                )
                continue
            if not is_file:
                log.warning("%s is not a regular file; ignoring", path)
                continue
            stem = entry_stem(path)
            if stem is None:
                log.warning("%s does not have a file stem; ignoring", path)
                continue
            stems.add(stem)
    return stems


def scan_credentials(
    pki_dir: Path,
    *,
    logger: logging.Logger | None = None,
) -> list[CredentialRecord]:
    """Return one record per known user, sorted by username."""
    log = logger or LOGGER
    cert_stems = list_stems(pki_dir / ISSUED_DIR, logger=log)
    key_stems = list_stems(pki_dir / PRIVATE_DIR, logger=log) - {CA_STEM}

    for stem in sorted(cert_stems - key_stems):
        log.warning("User %r seems to have a certificate but no key", _display(stem))
    for stem in sorted(key_stems - cert_stems):
        log.warning("User %r seems to have a key but no certificate", _display(stem))

    records: dict[Username, CredentialRecord] = {}
    for stem in sorted(cert_stems | key_stems):
        username = decode_stem(stem, logger=log)
        if username is None or username in records:
            continue
        records[username] = CredentialRecord(
            username=username,
            has_certificate=stem in cert_stems,
            has_key=stem in key_stems,
        )
    return [records[name] for name in sorted(records)]


def scan_users(pki_dir: Path, *, logger: logging.Logger | None = None) -> list[Username]:
    """Return the sorted, deduplicated usernames known to *pki_dir*."""
    return [record.username for record in scan_credentials(pki_dir, logger=logger)]


def certificate_path(pki_dir: Path, username: Username) -> Path:
    """Return ``issued/<user>.crt`` or raise :class:`DriftError` when missing."""
    path = pki_dir / ISSUED_DIR / f"{username}{CERT_SUFFIX}"
    if not path.is_file():
        raise DriftError(str(username), "certificate", path)
    return path


def key_path(pki_dir: Path, username: Username) -> Path:
    """Return ``private/<user>.key`` or raise :class:`DriftError` when missing."""
    path = pki_dir / PRIVATE_DIR / f"{username}{KEY_SUFFIX}"
    if not path.is_file():
        raise DriftError(str(username), "key", path)
    return path


def _display(stem: bytes) -> str:
    return stem.decode("utf-8", errors="replace")


__all__ = [
    "CA_STEM",
    "CredentialRecord",
    "ISSUED_DIR",
    "PRIVATE_DIR",
    "certificate_path",
    "decode_stem",
    "entry_stem",
    "key_path",
    "list_stems",
    "scan_credentials",
    "scan_users",
]
