"""Operator-configured shell scripts run around ocmctl actions."""
from __future__ import annotations

import logging
import subprocess
from collections.abc import Mapping, Sequence
from enum import Enum
from pathlib import Path

from .errors import ExternalToolError, ScriptError

LOGGER = logging.getLogger(__name__)

SCRIPT_SHELL = "sh"


class ScriptableAction(Enum):
    """Actions that may carry post-action scripts; values are config keys."""

    LIST = "list"
    INFO = "info"
    NEW = "new"
    RENEW = "renew"
    REMOVE = "remove"
    PACKAGE = "package"


class ActionKind(Enum):
    """Every action the CLI can perform."""

    PROFILE_LIST = "profile list"
    CONFIG_INIT = "config init"
    CONFIG_SHOW = "config show"
    USER_LIST = "user list"
    USER_INFO = "user info"
    USER_NEW = "user new"
    USER_RENEW = "user renew"
    USER_REMOVE = "user remove"
    USER_PACKAGE = "user package"

    @property
    def script_key(self) -> ScriptableAction | None:
        """Return the config key for this action, or ``None`` when not scriptable."""
        return _SCRIPT_KEYS[self]

    @property
    def scriptable(self) -> bool:
        """Return True when post-action scripts may run after this action."""
        return _SCRIPT_KEYS[self] is not None


# Administrative actions are listed explicitly as ``None``; every kind must appear.
_SCRIPT_KEYS: dict[ActionKind, ScriptableAction | None] = {
    ActionKind.PROFILE_LIST: None,
    ActionKind.CONFIG_INIT: None,
    ActionKind.CONFIG_SHOW: None,
    ActionKind.USER_LIST: ScriptableAction.LIST,
    ActionKind.USER_INFO: ScriptableAction.INFO,
    ActionKind.USER_NEW: ScriptableAction.NEW,
    ActionKind.USER_RENEW: ScriptableAction.RENEW,
    ActionKind.USER_REMOVE: ScriptableAction.REMOVE,
    ActionKind.USER_PACKAGE: ScriptableAction.PACKAGE,
}

_unclassified = set(ActionKind) - set(_SCRIPT_KEYS)
if _unclassified:  # pragma: no cover - guards future enum additions
    raise RuntimeError(
        "Action kinds missing a scriptability classification: "
        + ", ".join(sorted(kind.value for kind in _unclassified))
    )


def run_scripts(
    scripts: Sequence[str],
    *,
    cwd: Path | None,
    label: str,
    env: Mapping[str, str] | None = None,
) -> int:
    """Run *scripts* in order through ``sh -c`` and return how many ran.

    Each script inherits the current process environment unless *env* is
    given. The first non-zero exit raises :class:`ScriptError`; the remaining
    scripts are not run.
    """
    for index, script in enumerate(scripts):
        LOGGER.info("Running %s script #%d: %s", label, index + 1, script)
        try:
            result = subprocess.run(  # noqa: S603 - operator-provided scripts
                [SCRIPT_SHELL, "-c", script],
                cwd=str(cwd) if cwd is not None else None,
                env=dict(env) if env is not None else None,
                check=False,
            )
        except OSError as exc:
            raise ExternalToolError(
                f"Cannot run {label} script #{index + 1}: {exc}"
            ) from exc
        if result.returncode != 0:
            raise ScriptError(label, index, script, result.returncode)
    return len(scripts)


def run_post_action_scripts(
    kind: ActionKind,
    scripts_map: Mapping[ScriptableAction, Sequence[str]],
    *,
    cwd: Path | None = None,
) -> int:
    """Run the scripts configured for *kind* in the current working directory."""
    key = kind.script_key
    if key is None:
        return 0
    scripts = scripts_map.get(key) or ()
    if not scripts:
        return 0
    return run_scripts(scripts, cwd=cwd, label=f"post-action ({key.value})")


__all__ = [
    "SCRIPT_SHELL",
    "ActionKind",
    "ScriptableAction",
    "run_post_action_scripts",
    "run_scripts",
]
