"""Exception hierarchy shared by ocmctl components.

Every error maps onto one of the failure classes surfaced by the CLI:

* validation failures are detected before anything is mutated;
* drift failures mean the PKI directory changed between scan and use;
* IO failures carry the offending path;
* external tool failures carry the tool's own diagnostic text.
"""
from __future__ import annotations

from pathlib import Path

from .exit_codes import ExitCode


class OcmError(RuntimeError):
    """Base class for ocmctl failures."""

    exit_code: ExitCode = ExitCode.FAILURE


class ValidationError(OcmError):
    """Raised when a request is rejected before any mutation happens."""

    exit_code = ExitCode.VALIDATION


class UsernameError(ValidationError):
    """Raised when a string does not satisfy the username grammar."""


class UnknownUserError(ValidationError):
    """Raised when requested usernames are not known to the profile."""

    def __init__(self, usernames: list[str], profile: str) -> None:
        """Record the unknown *usernames* for *profile*."""
        self.usernames = usernames
        self.profile = profile
        joined = ", ".join(usernames)
        super().__init__(f"Unknown user(s) in profile '{profile}': {joined}.")


class DuplicateUserError(ValidationError):
    """Raised when the same username is requested more than once."""

    def __init__(self, usernames: list[str]) -> None:
        """Record the duplicated *usernames*."""
        self.usernames = usernames
        joined = ", ".join(usernames)
        super().__init__(f"Duplicate username(s) requested: {joined}.")


class UserExistsError(ValidationError):
    """Raised when creating a user that already has credentials."""

    def __init__(self, usernames: list[str], profile: str) -> None:
        """Record the already existing *usernames* for *profile*."""
        self.usernames = usernames
        self.profile = profile
        joined = ", ".join(usernames)
        super().__init__(f"User(s) already exist in profile '{profile}': {joined}.")


class MissingCertificateError(ValidationError):
    """Raised when a known user has a private key but no issued certificate."""

    def __init__(self, usernames: list[str], profile: str) -> None:
        """Record the *usernames* lacking a certificate in *profile*."""
        self.usernames = usernames
        self.profile = profile
        joined = ", ".join(usernames)
        super().__init__(
            f"User(s) in profile '{profile}' have no issued certificate: {joined}."
        )


class ProfileError(ValidationError):
    """Raised when a profile cannot be resolved."""


class PackagingNotConfiguredError(ValidationError):
    """Raised when packaging is requested for a profile without a packaging section."""


class ArchiveExistsError(ValidationError):
    """Raised when an output archive already exists and overwriting is disabled."""

    def __init__(self, path: Path) -> None:
        """Record the conflicting archive *path*."""
        self.path = path
        super().__init__(
            f"Archive {path} already exists; pass --overwrite to replace it."
        )


class DriftError(OcmError):
    """Raised when a known user's credential file vanished before use."""

    exit_code = ExitCode.ENVIRONMENT

    def __init__(self, username: str, artefact: str, path: Path) -> None:
        """Record the missing *artefact* of *username* at *path*."""
        self.username = username
        self.artefact = artefact
        self.path = path
        super().__init__(f"Cannot find a {artefact} for user '{username}' at {path}.")


class PackagingIOError(OcmError):
    """Raised when staging or archiving files fails."""

    exit_code = ExitCode.ENVIRONMENT


class PKIDirectoryError(OcmError):
    """Raised when the PKI directory layout cannot be read."""

    exit_code = ExitCode.ENVIRONMENT


class ExternalToolError(OcmError):
    """Raised when the PKI tool exits unsuccessfully or cannot be started."""

    exit_code = ExitCode.EXTERNAL_TOOL


class ScriptError(ExternalToolError):
    """Raised when an operator-configured script exits with a non-zero status."""

    def __init__(self, label: str, index: int, script: str, returncode: int) -> None:
        """Record which *script* of the *label* group failed."""
        self.label = label
        self.index = index
        self.script = script
        self.returncode = returncode
        super().__init__(
            f"{label} script #{index + 1} failed (exit {returncode}): {script}"
        )


__all__ = [
    "ArchiveExistsError",
    "DriftError",
    "DuplicateUserError",
    "ExternalToolError",
    "MissingCertificateError",
    "OcmError",
    "PKIDirectoryError",
    "PackagingIOError",
    "PackagingNotConfiguredError",
    "ProfileError",
    "ScriptError",
    "UnknownUserError",
    "UserExistsError",
    "UsernameError",
    "ValidationError",
]
