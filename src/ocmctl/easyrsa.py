"""Thin subprocess wrapper around the EasyRSA executable."""
from __future__ import annotations

import logging
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from .errors import ExternalToolError
from .usernames import Username

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class EasyRSA:
    """Invoke EasyRSA verbs against a single PKI directory."""

    binary: Path
    pki_dir: Path

    def build_client_full(
        self,
        username: Username,
        *,
        days: int | None = None,
    ) -> subprocess.CompletedProcess[str]:
        """Issue a passwordless client certificate and key for *username*."""
        options = ["--no-pass", *self._days_option(days)]
        return self._run("build-client-full", str(username), options=options)

    def renew(
        self,
        username: Username,
        *,
        days: int | None = None,
    ) -> subprocess.CompletedProcess[str]:
        """Renew the certificate of *username*, keeping the old one until revoked."""
        return self._run("renew", str(username), options=self._days_option(days))

    def revoke_renewed(self, username: Username) -> subprocess.CompletedProcess[str]:
        """Revoke the certificate replaced by the last ``renew`` of *username*."""
        return self._run("revoke-renewed", str(username))

    def revoke(self, username: Username) -> subprocess.CompletedProcess[str]:
        """Revoke the current certificate of *username*."""
        return self._run("revoke", str(username))

    def gen_crl(self) -> subprocess.CompletedProcess[str]:
        """Regenerate the certificate revocation list."""
        return self._run("gen-crl")

    def show_expire(self, days: int) -> str:
        """Return the raw ``show-expire`` report for a horizon of *days*."""
        result = self._run("show-expire", options=self._days_option(days))
        return result.stdout or ""

    # ------------------------------------------------------------------
    @staticmethod
    def _days_option(days: int | None) -> list[str]:
        if days is None:
            return []
        return [f"--days={days}"]

    def command(self, verb: str, *args: str, options: Sequence[str] = ()) -> list[str]:
        """Return the argument vector for *verb*."""
        return [
            str(self.binary),
            "--batch",
            f"--pki-dir={self.pki_dir}",
            *options,
            verb,
            *args,
        ]

    def _run(
        self,
        verb: str,
        *args: str,
        options: Sequence[str] = (),
    ) -> subprocess.CompletedProcess[str]:
        command = self.command(verb, *args, options=options)
        LOGGER.debug("Running %s", " ".join(command))
        try:
            result = subprocess.run(  # noqa: S603 - configured executable
                command,
                capture_output=True,
                text=True,
                check=False,
            )
        except OSError as exc:
            raise ExternalToolError(f"Cannot run {self.binary}: {exc}") from exc
        if result.stdout:
            LOGGER.debug("%s %s stdout: %s", self.binary.name, verb, result.stdout.strip())
        if result.returncode != 0:
            stdout = result.stdout or ""
            stderr = result.stderr or ""
            message = stderr.strip() or stdout.strip() or "no output"
            raise ExternalToolError(
                f"easyrsa {verb} failed (exit {result.returncode}): {message}"
            )
        return result


__all__ = ["EasyRSA"]
