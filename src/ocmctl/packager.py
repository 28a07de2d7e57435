"""Build per-user credential packages from a skeleton directory.

A run stages everything inside a private temporary workspace::

    <workspace>/skel/            skeleton copy, mutated by the transform scripts
    <workspace>/users/<name>/    per-user copy of the transformed skeleton
    <workspace>/archives/        finished zips, published only once all succeed

Archives reach the output directory only after every requested user has been
packaged, so a failure part-way through leaves no archives behind.
"""
from __future__ import annotations

import logging
import shutil
import tempfile
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

from . import archive as archive_utils
from .config import PackagingSpec, Profile
from .errors import (
    ArchiveExistsError,
    DuplicateUserError,
    OcmError,
    PackagingIOError,
    PackagingNotConfiguredError,
    UnknownUserError,
)
from .scanner import certificate_path, key_path
from .scripts import run_scripts
from .usernames import Username

if TYPE_CHECKING:
    from .logging import OperationScope
else:  # pragma: no cover - typing helper only
    OperationScope = object  # type: ignore[misc]

LOGGER = logging.getLogger(__name__)

WORKSPACE_PREFIX = "ocmctl-package-"


@dataclass(slots=True)
class PackageResult:
    """A published package for one user."""

    username: Username
    path: Path
    checksum: str
    size_bytes: int

    def to_payload(self) -> dict[str, Any]:
        """Return a JSON-serialisable payload describing the package."""
        return {
            "username": str(self.username),
            "path": str(self.path),
            "checksum": self.checksum,
            "size_bytes": self.size_bytes,
        }


@dataclass(slots=True)
class PackageBatchResult:
    """Outcome of a packaging run."""

    packages: list[PackageResult] = field(default_factory=list)
    workspace: Path | None = None

    def to_payload(self) -> dict[str, Any]:
        """Return a JSON-serialisable payload describing the run."""
        return {
            "packages": [package.to_payload() for package in self.packages],
            "workspace": str(self.workspace) if self.workspace is not None else None,
        }


def archive_name(username: Username, *, profile: str | None = None) -> str:
    """Return ``<user>.zip``, or ``<profile>-<user>.zip`` when *profile* is given."""
    if profile:
        return f"{profile}-{username}.zip"
    return f"{username}.zip"


class PackageBuilder:
    """Coordinator that stages, transforms and archives user packages."""

    def __init__(
        self,
        profile: Profile,
        known_users: Iterable[Username],
        *,
        tmp_root: Path | None = None,
    ) -> None:
        """Initialise the builder for *profile* and its scanned users."""
        self._profile = profile
        self._known_users = set(known_users)
        self._tmp_root = tmp_root

    # Public API -----------------------------------------------------
    def build(
        self,
        usernames: Sequence[Username],
        *,
        output_dir: Path,
        add_prefix: bool = False,
        overwrite: bool = False,
        keep_temp: bool = False,
        op: OperationScope | None = None,
    ) -> PackageBatchResult:
        """Create one archive per user in *usernames*, or none at all."""
        requested = list(usernames)
        self._validate_usernames(requested)
        spec = self._profile.packaging
        if spec is None:
            raise PackagingNotConfiguredError(
                f"Profile '{self._profile.name}' has no packaging section."
            )

        prefix = self._profile.name if add_prefix else None
        targets = {
            username: output_dir / archive_name(username, profile=prefix)
            for username in requested
        }
        if not overwrite:
            for target in targets.values():
                if target.exists():
                    raise ArchiveExistsError(target)

        workspace = self._create_workspace()
        self._log_step(op, "package.workspace", workspace)
        try:
            skel_dir = workspace / "skel"
            archive_utils.copy_tree(spec.skel_dir, skel_dir)
            self._log_step(op, "package.skeleton", spec.skel_dir)

            run_scripts(spec.skel_map_scripts, cwd=skel_dir, label="skeleton transform")
            self._log_step(op, "package.transform", f"{len(spec.skel_map_scripts)} script(s)")

            staging_dir = workspace / "archives"
            staging_dir.mkdir()
            staged: list[tuple[Username, Path]] = []
            for username in requested:
                user_dir = workspace / "users" / str(username)
                archive_utils.copy_tree(skel_dir, user_dir)
                self._install_credentials(username, user_dir, spec)
                staged_path = staging_dir / targets[username].name
                archive_utils.create_zip_archive(user_dir, staged_path)
                staged.append((username, staged_path))
                self._log_step(op, f"package.user.{username}", staged_path)

            packages = self._publish(staged, targets, output_dir, overwrite=overwrite)
            self._log_step(op, "package.publish", output_dir)
        except OSError as exc:
            raise PackagingIOError(f"Packaging failed: {exc}") from exc
        finally:
            if keep_temp:
                LOGGER.warning("Keeping temporary workspace at %s", workspace)
            else:
                shutil.rmtree(workspace, ignore_errors=True)

        return PackageBatchResult(
            packages=packages,
            workspace=workspace if keep_temp else None,
        )

    # Internal helpers -----------------------------------------------
    def _validate_usernames(self, requested: list[Username]) -> None:
        duplicates = sorted({str(name) for name in requested if requested.count(name) > 1})
        if duplicates:
            raise DuplicateUserError(duplicates)
        unknown = [str(name) for name in requested if name not in self._known_users]
        if unknown:
            raise UnknownUserError(unknown, self._profile.name)

    def _create_workspace(self) -> Path:
        try:
            return Path(
                tempfile.mkdtemp(
                    prefix=WORKSPACE_PREFIX,
                    dir=str(self._tmp_root) if self._tmp_root is not None else None,
                )
            )
        except OSError as exc:
            raise PackagingIOError(f"Failed to create a temporary workspace: {exc}") from exc

    def _install_credentials(
        self,
        username: Username,
        user_dir: Path,
        spec: PackagingSpec,
    ) -> None:
        for subpath in (spec.cert_subpath, spec.key_subpath):
            parent = subpath.parent
            if parent != Path("."):
                (user_dir / parent).mkdir(parents=True, exist_ok=True)

        pki_dir = self._profile.pki_dir
        cert_source = certificate_path(pki_dir, username)
        key_source = key_path(pki_dir, username)
        archive_utils.copy_file(cert_source, user_dir / spec.cert_subpath)
        archive_utils.copy_file(key_source, user_dir / spec.key_subpath)

    def _publish(
        self,
        staged: list[tuple[Username, Path]],
        targets: dict[Username, Path],
        output_dir: Path,
        *,
        overwrite: bool,
    ) -> list[PackageResult]:
        try:
            output_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise PackagingIOError(f"Failed to create output directory {output_dir}: {exc}") from exc

        created: list[Path] = []
        packages: list[PackageResult] = []
        try:
            for username, staged_path in staged:
                target = targets[username]
                existed = target.exists()
                checksum = archive_utils.compute_checksum(staged_path)
                size_bytes = staged_path.stat().st_size
                archive_utils.publish_archive(staged_path, target, overwrite=overwrite)
                if not existed:
                    created.append(target)
                packages.append(
                    PackageResult(
                        username=username,
                        path=target,
                        checksum=checksum,
                        size_bytes=size_bytes,
                    )
                )
        except (OcmError, OSError):
            for path in created:
                path.unlink(missing_ok=True)
            raise
        return packages

    def _log_step(
        self,
        op: OperationScope | None,
        step: str,
        detail: object,
    ) -> None:
        LOGGER.debug("%s: %s", step, detail)
        if op is None:
            return
        op.add_step(step, status="success", detail=str(detail))


__all__ = ["PackageBatchResult", "PackageBuilder", "PackageResult", "archive_name"]
