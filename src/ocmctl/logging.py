"""Structured operation logging and console log setup.

Every CLI command runs inside :meth:`StructuredLogger.operation`, which
appends one JSON record to ``operations.jsonl`` and one line to the human
readable ``ocmctl.log`` when the scope closes. Logging never breaks a
command: when the log directory cannot be prepared or a write fails, the
logger disables itself and later operations are not recorded.

Diagnostic messages from individual components go through the standard
:mod:`logging` module and are rendered on stderr by
:func:`configure_console_logging`.
"""
from __future__ import annotations

import json
import logging
import secrets
import time
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from rich.console import Console
from rich.logging import RichHandler

from . import __version__

OPERATIONS_LOG_NAME = "operations.jsonl"
HUMAN_LOG_NAME = "ocmctl.log"
ROOT_LOGGER_NAME = "ocmctl"


def _now_iso() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="seconds").replace("+00:00", "Z")


def _sanitize(value: object) -> Any:
    """Return a JSON-safe copy of *value*."""
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Mapping):
        return {str(key): _sanitize(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_sanitize(item) for item in value]
    return str(value)


class OperationScope:
    """Collects steps and the final result of a single operation."""

    def __init__(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> None:
        """Initialise an empty scope for *command*."""
        self.command = command
        self.operation_id = f"op-{datetime.now(tz=UTC):%Y%m%d%H%M%S}-{secrets.token_hex(4)}"
        self.args = _sanitize(dict(args or {}))
        self.target = _sanitize(dict(target or {}))
        self.steps: list[dict[str, Any]] = []
        self.result: dict[str, Any] | None = None
        self.started_at = _now_iso()
        self._started = time.monotonic()

    def add_step(self, name: str, *, status: str = "success", detail: object = None) -> None:
        """Record an intermediate step."""
        step: dict[str, Any] = {"name": name, "status": status}
        if detail is not None:
            step["detail"] = _sanitize(detail)
        self.steps.append(step)

    def success(
        self,
        message: str,
        *,
        changed: int = 0,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation successful."""
        self._set_result("success", message, changed=changed, context=context)

    def warning(
        self,
        message: str,
        *,
        warnings: Sequence[str] | None = None,
        errors: Sequence[str] | None = None,
        changed: int = 0,
        artefacts: Sequence[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as completed with warnings."""
        self._set_result(
            "warning",
            message,
            changed=changed,
            warnings=list(warnings or [message]),
            errors=list(errors or []),
            artefacts=artefacts,
            context=context,
        )

    def error(
        self,
        message: str,
        *,
        errors: Sequence[str] | None = None,
        rc: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation failed."""
        self._set_result(
            "error",
            message,
            errors=list(errors or [message]),
            rc=rc,
            context=context,
        )

    def _set_result(
        self,
        status: str,
        message: str,
        *,
        changed: int | None = None,
        warnings: list[str] | None = None,
        errors: list[str] | None = None,
        artefacts: Sequence[str] | None = None,
        rc: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        result: dict[str, Any] = {"status": status, "message": message}
        if changed is not None:
            result["changed"] = changed
        if warnings is not None:
            result["warnings"] = warnings
        if errors is not None:
            result["errors"] = errors
        if artefacts is not None:
            result["artefacts"] = list(artefacts)
        if rc is not None:
            result["rc"] = rc
        if context:
            result["context"] = _sanitize(dict(context))
        self.result = result

    def to_record(self) -> dict[str, Any]:
        """Return the JSON record written to the operations log."""
        return {
            "id": self.operation_id,
            "started_at": self.started_at,
            "finished_at": _now_iso(),
            "duration_ms": int((time.monotonic() - self._started) * 1000),
            "command": self.command,
            "args": self.args,
            "target": self.target,
            "steps": self.steps,
            "result": self.result or {"status": "success", "message": "", "changed": 0},
            "context": {"ocmctl_version": __version__},
        }


class StructuredLogger:
    """Append operation records to the JSON-lines and human logs."""

    def __init__(self, log_dir: Path) -> None:
        """Prepare *log_dir*; disable logging when it cannot be created."""
        self._log_dir = log_dir
        self._operations_log_path = log_dir / OPERATIONS_LOG_NAME
        self._human_log_path = log_dir / HUMAN_LOG_NAME
        self._enabled = True
        try:
            log_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            logging.getLogger(__name__).debug("Structured logging disabled: %s", exc)
            self._enabled = False

    @property
    def operations_log_path(self) -> Path:
        """Return the JSON-lines operations log path."""
        return self._operations_log_path

    @contextmanager
    def operation(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> Iterator[OperationScope]:
        """Yield an :class:`OperationScope` and persist it on exit."""
        scope = OperationScope(command, args=args, target=target)
        try:
            yield scope
        except Exception as exc:
            if scope.result is None:
                scope.error(str(exc) or type(exc).__name__)
            raise
        finally:
            self._write(scope)

    def _write(self, scope: OperationScope) -> None:
        if not self._enabled:
            return
        record = scope.to_record()
        result = record["result"]
        human_line = (
            f"{record['finished_at']} {record['id']} {scope.command} "
            f"[{result.get('status')}] {result.get('message', '')}\n"
        )
        try:
            with self._operations_log_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, sort_keys=False) + "\n")
            with self._human_log_path.open("a", encoding="utf-8") as handle:
                handle.write(human_line)
        except OSError as exc:
            logging.getLogger(__name__).debug("Structured logging disabled: %s", exc)
            self._enabled = False


def verbosity_level(verbose: int = 0, quiet: int = 0) -> int:
    """Map ``-v``/``-q`` counts onto a :mod:`logging` level (INFO by default)."""
    levels = [logging.DEBUG, logging.INFO, logging.WARNING, logging.ERROR, logging.CRITICAL]
    index = 1 - verbose + quiet
    return levels[max(0, min(index, len(levels) - 1))]


def configure_console_logging(level: int, *, console: Console | None = None) -> logging.Logger:
    """Render ``ocmctl.*`` log records on stderr through rich."""
    logger = logging.getLogger(ROOT_LOGGER_NAME)
    for handler in list(logger.handlers):
        if getattr(handler, "_ocmctl_console", False):
            logger.removeHandler(handler)
    handler = RichHandler(
        console=console or Console(stderr=True),
        show_time=False,
        show_path=False,
        markup=False,
    )
    handler._ocmctl_console = True  # type: ignore[attr-defined]
    handler.setLevel(level)
    logger.addHandler(handler)
    logger.setLevel(min(level, logging.INFO))
    return logger


__all__ = [
    "HUMAN_LOG_NAME",
    "OPERATIONS_LOG_NAME",
    "OperationScope",
    "StructuredLogger",
    "configure_console_logging",
    "verbosity_level",
]
