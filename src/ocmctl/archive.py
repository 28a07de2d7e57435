"""File tree and zip helpers used by the packaging pipeline."""
from __future__ import annotations

import hashlib
import os
import secrets
import shutil
import zipfile
from pathlib import Path

from .errors import ArchiveExistsError, PackagingIOError

MAX_COPY_DEPTH = 64
ARCHIVE_MODE = 0o600


def copy_tree(source: Path, destination: Path, *, max_depth: int = MAX_COPY_DEPTH) -> None:
    """Copy *source* into *destination*, following symlinks.

    Symlinked files and directories are replaced by copies of their targets.
    Recursion stops with :class:`PackagingIOError` beyond *max_depth* levels,
    which also catches symlink loops; a broken symlink aborts the copy.
    """
    if not source.is_dir():
        raise PackagingIOError(f"Skeleton directory {source} does not exist or is not a directory.")
    _copy_dir(source, destination, depth=0, max_depth=max_depth)


def _copy_dir(source: Path, destination: Path, *, depth: int, max_depth: int) -> None:
    if depth > max_depth:
        raise PackagingIOError(
            f"Maximum directory depth ({max_depth}) exceeded at {source}; "
            "check for symlink loops."
        )
    try:
        destination.mkdir(parents=True, exist_ok=True)
        entries = sorted(os.scandir(source), key=lambda item: item.name)
    except OSError as exc:
        raise PackagingIOError(f"Failed to copy {source} to {destination}: {exc}") from exc

    for entry in entries:
        src = Path(entry.path)
        dst = destination / entry.name
        if entry.is_symlink() and not src.exists():
            raise PackagingIOError(f"Broken symlink {src} -> {os.readlink(src)}.")
        if entry.is_dir():
            _copy_dir(src, dst, depth=depth + 1, max_depth=max_depth)
            continue
        if not entry.is_file():
            raise PackagingIOError(f"Unsupported file type at {src}.")
        copy_file(src, dst)


def copy_file(source: Path, destination: Path) -> None:
    """Copy a single file (contents and mode), creating parent directories."""
    try:
        destination.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(source, destination)
        shutil.copymode(source, destination)
    except OSError as exc:
        raise PackagingIOError(f"Failed to copy {source} to {destination}: {exc}") from exc


def create_zip_archive(source_dir: Path, archive_path: Path) -> None:
    """Write every file under *source_dir* into a new zip at *archive_path*.

    Entry names are relative to *source_dir* and sorted; empty directories
    get explicit entries so the tree round-trips.
    """
    try:
        with zipfile.ZipFile(archive_path, "x", compression=zipfile.ZIP_DEFLATED) as bundle:
            for path in sorted(source_dir.rglob("*")):
                relative = path.relative_to(source_dir).as_posix()
                if path.is_dir():
                    if not any(path.iterdir()):
                        bundle.write(path, relative)
                    continue
                bundle.write(path, relative)
    except FileExistsError as exc:
        raise ArchiveExistsError(archive_path) from exc
    except (OSError, zipfile.BadZipFile) as exc:
        archive_path.unlink(missing_ok=True)
        raise PackagingIOError(f"Failed to write archive {archive_path}: {exc}") from exc


def publish_archive(staged: Path, target: Path, *, overwrite: bool) -> None:
    """Move the *staged* archive to *target*.

    Without *overwrite* the target is created exclusively, so an existing
    file is never touched. With *overwrite* the target is replaced
    atomically. Either way the published file is created with
    :data:`ARCHIVE_MODE` and is never readable by others, even briefly.
    """
    if overwrite:
        partial = target.with_name(f".{target.name}.{secrets.token_hex(4)}.partial")
        try:
            _copy_exclusive(staged, partial)
            os.replace(partial, target)
        except OSError as exc:
            partial.unlink(missing_ok=True)
            raise PackagingIOError(f"Failed to write archive {target}: {exc}") from exc
        return

    try:
        _copy_exclusive(staged, target)
    except FileExistsError as exc:
        raise ArchiveExistsError(target) from exc
    except OSError as exc:
        raise PackagingIOError(f"Failed to write archive {target}: {exc}") from exc


def _copy_exclusive(source: Path, destination: Path) -> None:
    handle = os.fdopen(
        os.open(destination, os.O_WRONLY | os.O_CREAT | os.O_EXCL, ARCHIVE_MODE), "wb"
    )
    try:
        with handle, source.open("rb") as reader:
            # The umask may strip bits from the creation mode but never adds any.
            os.fchmod(handle.fileno(), ARCHIVE_MODE)
            shutil.copyfileobj(reader, handle)
    except OSError:
        destination.unlink(missing_ok=True)
        raise


def compute_checksum(path: Path) -> str:
    """Return the SHA-256 checksum for *path*."""
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(1024 * 1024), b""):
            digest.update(chunk)
    return digest.hexdigest()


__all__ = [
    "MAX_COPY_DEPTH",
    "compute_checksum",
    "copy_file",
    "copy_tree",
    "create_zip_archive",
    "publish_archive",
]
