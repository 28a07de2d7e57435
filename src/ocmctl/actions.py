"""User-level actions against a single profile.

Every action validates the requested usernames against a fresh scan of the
PKI directory before touching anything. Write actions then call EasyRSA one
user at a time and stop at the first failure.
"""
from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import TYPE_CHECKING

from .certinfo import CertificateInfo, inspect_certificate
from .config import AppConfig, Profile
from .easyrsa import EasyRSA
from .errors import (
    DuplicateUserError,
    MissingCertificateError,
    UnknownUserError,
    UserExistsError,
)
from .expiry import ExpiryRecord, load_expiry_records, select_records
from .packager import PackageBatchResult, PackageBuilder
from .scanner import CredentialRecord, scan_credentials, scan_users
from .usernames import Username

if TYPE_CHECKING:
    from .logging import OperationScope

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class ProfileActions:
    """Run user actions for *profile* using the configured EasyRSA binary."""

    profile: Profile
    tool: EasyRSA

    @classmethod
    def for_profile(cls, config: AppConfig, profile: Profile) -> ProfileActions:
        """Return actions bound to *profile* and the configured EasyRSA path."""
        return cls(profile=profile, tool=EasyRSA(config.easy_rsa_path, profile.pki_dir))

    # Read actions ---------------------------------------------------
    def known_users(self) -> list[Username]:
        """Return the users currently known to the PKI directory."""
        return scan_users(self.profile.pki_dir)

    def list_credentials(self) -> list[CredentialRecord]:
        """Return the credential records of every known user."""
        return scan_credentials(self.profile.pki_dir)

    def list_expiry(
        self,
        *,
        only_expired: bool = False,
        near_expiry: timedelta | None = None,
        now: datetime | None = None,
    ) -> list[ExpiryRecord]:
        """Return expiry records for known users, optionally filtered."""
        evaluated_at = now or datetime.now(tz=UTC)
        known = set(self.known_users())
        records: list[ExpiryRecord] = []
        for record in load_expiry_records(self.tool, now=evaluated_at):
            if record.username not in known:
                LOGGER.warning(
                    "Certificate %s for %s has no matching credential files; ignoring",
                    record.serial,
                    record.username,
                )
                continue
            records.append(record)
        return select_records(
            records,
            only_expired=only_expired,
            near_expiry=near_expiry,
            now=evaluated_at,
        )

    def info(self, usernames: Sequence[Username]) -> list[CertificateInfo]:
        """Return certificate details for each of *usernames*."""
        self._require_known(usernames)
        issued = {
            record.username
            for record in self.list_credentials()
            if record.has_certificate
        }
        key_only = [str(name) for name in usernames if name not in issued]
        if key_only:
            raise MissingCertificateError(key_only, self.profile.name)
        return [inspect_certificate(self.profile.pki_dir, name) for name in usernames]

    # Write actions --------------------------------------------------
    def new(self, usernames: Sequence[Username], *, days: int | None = None) -> None:
        """Issue credentials for users that do not exist yet."""
        _reject_duplicates(usernames)
        known = set(self.known_users())
        existing = [str(name) for name in usernames if name in known]
        if existing:
            raise UserExistsError(existing, self.profile.name)
        for username in usernames:
            LOGGER.info("Issuing credentials for %s", username)
            self.tool.build_client_full(username, days=days)

    def renew(
        self,
        usernames: Sequence[Username],
        *,
        days: int | None = None,
        keep_old: bool = False,
    ) -> None:
        """Renew the certificates of existing users, revoking the old ones."""
        self._require_known(usernames)
        for username in usernames:
            LOGGER.info("Renewing the certificate of %s", username)
            self.tool.renew(username, days=days)
            if not keep_old:
                self.tool.revoke_renewed(username)
        if not keep_old:
            self.tool.gen_crl()

    def remove(self, usernames: Sequence[Username], *, update_crl: bool = True) -> None:
        """Revoke the certificates of existing users."""
        self._require_known(usernames)
        for username in usernames:
            LOGGER.info("Revoking the certificate of %s", username)
            self.tool.revoke(username)
        if update_crl:
            self.tool.gen_crl()

    def package(
        self,
        usernames: Sequence[Username],
        *,
        output_dir: Path,
        add_prefix: bool = False,
        overwrite: bool = False,
        keep_temp: bool = False,
        op: OperationScope | None = None,
    ) -> PackageBatchResult:
        """Build credential packages for *usernames*."""
        builder = PackageBuilder(self.profile, self.known_users())
        return builder.build(
            usernames,
            output_dir=output_dir,
            add_prefix=add_prefix,
            overwrite=overwrite,
            keep_temp=keep_temp,
            op=op,
        )

    # ------------------------------------------------------------------
    def _require_known(self, usernames: Sequence[Username]) -> None:
        _reject_duplicates(usernames)
        known = set(self.known_users())
        unknown = [str(name) for name in usernames if name not in known]
        if unknown:
            raise UnknownUserError(unknown, self.profile.name)


def _reject_duplicates(usernames: Sequence[Username]) -> None:
    names = list(usernames)
    duplicates = sorted({str(name) for name in names if names.count(name) > 1})
    if duplicates:
        raise DuplicateUserError(duplicates)


__all__ = ["ProfileActions"]
