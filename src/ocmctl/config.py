"""Configuration loader for ocmctl.

This module centralises the logic for reading configuration values from
multiple sources:

1. Built-in defaults.
2. ``$XDG_CONFIG_HOME/ocmctl/config.yml`` (or an override path).
3. Environment variables prefixed with ``OCMCTL_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export OCMCTL_EASY_RSA_PATH=/usr/share/easy-rsa/3/easyrsa
    export OCMCTL_DEFAULT_PROFILE=office

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses`` for convenient access and type safety.

Relative ``pki_dir`` and ``skel_dir`` values are resolved against the
directory holding the config file, so a config can travel with its PKI.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import cast

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover - import failure covered in tests
    raise RuntimeError(
        "PyYAML is required to load ocmctl configuration. Install with "
        "`pip install ocmctl` or ensure PyYAML>=6.0 is available."
    ) from exc

from .errors import ProfileError, ValidationError
from .scripts import ScriptableAction

ENV_PREFIX = "OCMCTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}

EASY_RSA_CANDIDATES = (
    "/usr/share/easy-rsa/3/easyrsa",  # Fedora
    "/usr/share/easy-rsa/easyrsa",  # Alpine, Debian
    "/usr/bin/easyrsa",  # Arch
)


class ConfigError(ValidationError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class PackagingSpec:
    """Options related to the ``user package`` command."""

    skel_dir: Path
    cert_subpath: Path
    key_subpath: Path
    skel_map_scripts: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "skel_dir": str(self.skel_dir),
            "skel_map_scripts": list(self.skel_map_scripts),
            "cert_subpath": self.cert_subpath.as_posix(),
            "key_subpath": self.key_subpath.as_posix(),
        }


@dataclass(frozen=True)
class Profile:
    """A named EasyRSA PKI plus its packaging and script settings."""

    name: str
    pki_dir: Path
    packaging: PackagingSpec | None = None
    post_action_scripts: Mapping[ScriptableAction, tuple[str, ...]] = field(
        default_factory=dict
    )

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "name": self.name,
            "pki_dir": str(self.pki_dir),
            "packaging": self.packaging.to_dict() if self.packaging is not None else None,
            "post_action_scripts": {
                action.value: list(scripts)
                for action, scripts in self.post_action_scripts.items()
            },
        }


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for ocmctl."""

    config_file: Path
    easy_rsa_path: Path
    logs_dir: Path
    default_profile: str | None = None
    profiles: tuple[Profile, ...] = ()

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "easy_rsa_path": str(self.easy_rsa_path),
            "logs_dir": str(self.logs_dir),
            "default_profile": self.default_profile,
            "profiles": [profile.to_dict() for profile in self.profiles],
        }

    def get_profile(self, name: str | None = None) -> Profile:
        """Return the profile called *name*, falling back to the default profile."""
        selected = name or self.default_profile
        if not selected:
            raise ProfileError(
                "No profile specified; pass --profile or set default_profile in "
                f"{self.config_file}."
            )
        for profile in self.profiles:
            if profile.name == selected:
                return profile
        raise ProfileError(f"Cannot find a profile named '{selected}'.")


def default_config_path(env: Mapping[str, str] | None = None) -> Path:
    """Return the per-user config path honouring ``XDG_CONFIG_HOME``."""
    resolved_env = os.environ if env is None else env
    base = resolved_env.get("XDG_CONFIG_HOME") or "~/.config"
    return Path(base).expanduser() / "ocmctl" / "config.yml"


def default_logs_dir(env: Mapping[str, str] | None = None) -> Path:
    """Return the per-user log directory honouring ``XDG_STATE_HOME``."""
    resolved_env = os.environ if env is None else env
    base = resolved_env.get("XDG_STATE_HOME") or "~/.local/state"
    return Path(base).expanduser() / "ocmctl" / "logs"


def _defaults(env: Mapping[str, str]) -> dict[str, object]:
    return {
        "config_file": str(default_config_path(env)),
        "easy_rsa_path": "easyrsa",
        "default_profile": None,
        "logs_dir": str(default_logs_dir(env)),
        "profiles": [],
    }


ALLOWED_TOP_LEVEL_KEYS = {
    "config_file",
    "easy_rsa_path",
    "default_profile",
    "logs_dir",
    "profiles",
}
ALLOWED_PROFILE_KEYS = {"name", "pki_dir", "packaging", "post_action_scripts"}
ALLOWED_PACKAGING_KEYS = {"skel_dir", "skel_map_scripts", "cert_subpath", "key_subpath"}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    resolved_env = dict(os.environ if env is None else env)
    merged: dict[str, object] = _deep_copy(_defaults(resolved_env))

    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _determine_config_path(config_default, config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged)


def example_config() -> dict[str, object]:
    """Return an example configuration mapping."""
    easy_rsa_path = next(
        (candidate for candidate in EASY_RSA_CANDIDATES if Path(candidate).is_file()),
        EASY_RSA_CANDIDATES[0],
    )
    return {
        "easy_rsa_path": easy_rsa_path,
        "default_profile": "example",
        "profiles": [
            {
                "name": "example",
                "pki_dir": "/etc/openvpn/server/example.auth.d/",
                "packaging": {
                    "skel_dir": "skel/example/",
                    "skel_map_scripts": [
                        'echo "You can apply custom transforms to your skeleton directory"',
                        'echo "before they are used to create user packages"',
                    ],
                    "cert_subpath": "creds/client.crt",
                    "key_subpath": "creds/client.key",
                },
                "post_action_scripts": {
                    action.value: [f'echo "Finished running the {action.value} action"']
                    for action in ScriptableAction
                },
            }
        ],
    }


EXAMPLE_HEADER = """\
# ocmctl configuration.
#
# easy_rsa_path:    path to the EasyRSA executable.
# default_profile:  profile used when --profile is not given.
# logs_dir:         where operations.jsonl and ocmctl.log are written (optional).
# profiles:         list of known profiles:
#   name:                 identifier of the profile.
#   pki_dir:              the EasyRSA PKI directory, relative to this file if relative.
#   packaging:            settings for `ocmctl user package` (optional):
#     skel_dir:           files included in every package, relative to this file
#                         if relative; contained symlinks are followed.
#     skel_map_scripts:   shell snippets run, in order, inside a temporary copy of
#                         the skeleton directory before it is used.
#     cert_subpath:       where to write the user's certificate inside the package.
#     key_subpath:        where to write the user's key inside the package.
#   post_action_scripts:  shell snippets run in the current working directory after
#                         an action; keyed by list, info, new, renew, remove, package.
"""


def render_example_config() -> str:
    """Return the annotated example configuration as YAML text."""
    body = yaml.safe_dump(example_config(), sort_keys=False, default_flow_style=False)
    return f"{EXAMPLE_HEADER}\n{body}"


def write_example_config(path: Path, *, force: bool = False) -> Path:
    """Write the example configuration to *path* unless it already exists."""
    if path.exists() and not force:
        raise ConfigError(f"Config file {path} already exists; pass --force to replace it.")
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(render_example_config(), encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"Failed to write config file {path}: {exc}") from exc
    return path


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override)
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR])
    return Path(default_path)


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    except OSError as exc:
        raise ConfigError(f"Cannot read config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    default_profile = raw.get("default_profile")
    if default_profile is not None and not isinstance(default_profile, str):
        raise ConfigError("default_profile must be a string or null.")

    profiles = _as_sequence(raw.get("profiles") or [], "profiles")
    names: list[str] = []
    for index, entry in enumerate(profiles):
        label = f"profiles[{index}]"
        mapping = _as_dict(entry, label)
        unknown = set(mapping.keys()) - ALLOWED_PROFILE_KEYS
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown keys for {label}: {joined}.")
        name = mapping.get("name")
        if not isinstance(name, str) or not name.strip():
            raise ConfigError(f"{label}.name must be a non-empty string.")
        if mapping.get("pki_dir") in (None, ""):
            raise ConfigError(f"{label}.pki_dir must be specified.")
        names.append(name.strip())

        packaging = mapping.get("packaging")
        if packaging is not None:
            packaging_map = _as_dict(packaging, f"{label}.packaging")
            unknown_packaging = set(packaging_map.keys()) - ALLOWED_PACKAGING_KEYS
            if unknown_packaging:
                joined = ", ".join(sorted(unknown_packaging))
                raise ConfigError(f"Unknown keys for {label}.packaging: {joined}.")
            for required in ("skel_dir", "cert_subpath", "key_subpath"):
                if packaging_map.get(required) in (None, ""):
                    raise ConfigError(f"{label}.packaging.{required} must be specified.")

        scripts = mapping.get("post_action_scripts")
        if scripts is not None:
            scripts_map = _as_dict(scripts, f"{label}.post_action_scripts")
            allowed = {action.value for action in ScriptableAction}
            unknown_actions = set(scripts_map.keys()) - allowed
            if unknown_actions:
                joined = ", ".join(sorted(unknown_actions))
                permitted = ", ".join(sorted(allowed))
                raise ConfigError(
                    f"Unknown actions for {label}.post_action_scripts: {joined}. "
                    f"Allowed: {permitted}."
                )

    duplicates = sorted({name for name in names if names.count(name) > 1})
    if duplicates:
        raise ConfigError(f"Duplicate profile names: {', '.join(duplicates)}.")

    if default_profile is not None and default_profile not in names:
        raise ConfigError(
            f"The default profile '{default_profile}' does not reference a known profile."
        )


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    config_file = _to_path(raw.get("config_file"))
    base_dir = config_file.parent
    profiles = tuple(
        _build_profile(_as_dict(entry, f"profiles[{index}]"), base_dir, f"profiles[{index}]")
        for index, entry in enumerate(_as_sequence(raw.get("profiles") or [], "profiles"))
    )
    default_profile = raw.get("default_profile")
    return AppConfig(
        config_file=config_file,
        easy_rsa_path=_to_path(raw.get("easy_rsa_path")),
        logs_dir=_to_path(raw.get("logs_dir")),
        default_profile=str(default_profile) if default_profile else None,
        profiles=profiles,
    )


def _build_profile(mapping: Mapping[str, object], base_dir: Path, label: str) -> Profile:
    packaging_raw = mapping.get("packaging")
    packaging: PackagingSpec | None = None
    if packaging_raw is not None:
        packaging_map = _as_dict(packaging_raw, f"{label}.packaging")
        scripts = _expect_scripts(
            packaging_map.get("skel_map_scripts"), f"{label}.packaging.skel_map_scripts"
        )
        packaging = PackagingSpec(
            skel_dir=_resolve_relative_to(base_dir, _to_path(packaging_map.get("skel_dir"))),
            skel_map_scripts=scripts,
            cert_subpath=_expect_subpath(
                packaging_map.get("cert_subpath"), f"{label}.packaging.cert_subpath"
            ),
            key_subpath=_expect_subpath(
                packaging_map.get("key_subpath"), f"{label}.packaging.key_subpath"
            ),
        )

    scripts_raw = mapping.get("post_action_scripts")
    post_action_scripts: dict[ScriptableAction, tuple[str, ...]] = {}
    if scripts_raw is not None:
        for key, value in _as_dict(scripts_raw, f"{label}.post_action_scripts").items():
            post_action_scripts[ScriptableAction(key)] = _expect_scripts(
                value, f"{label}.post_action_scripts.{key}"
            )

    return Profile(
        name=str(mapping.get("name")).strip(),
        pki_dir=_resolve_relative_to(base_dir, _to_path(mapping.get("pki_dir"))),
        packaging=packaging,
        post_action_scripts=post_action_scripts,
    )


def _resolve_relative_to(base_dir: Path, path: Path) -> Path:
    if path.is_absolute():
        return path
    return base_dir / path


def _expect_subpath(value: object, label: str) -> Path:
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"{label} must be a non-empty relative path.")
    path = Path(value.strip())
    if path.is_absolute():
        raise ConfigError(f"{label} must be relative. Got {value!r}.")
    if ".." in path.parts or path == Path("."):
        raise ConfigError(f"{label} must stay inside the skeleton directory. Got {value!r}.")
    return path


def _expect_scripts(value: object, label: str) -> tuple[str, ...]:
    if value is None:
        return ()
    scripts: list[str] = []
    for index, item in enumerate(_as_sequence(value, label)):
        if not isinstance(item, str):
            raise ConfigError(f"{label}[{index}] must be a string.")
        scripts.append(item)
    return tuple(scripts)


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        elif isinstance(value, list):
            result[key] = list(value)
        else:
            result[key] = value
    return result


def _as_sequence(value: object, label: str) -> Sequence[object]:
    if isinstance(value, (str, bytes)):
        raise ConfigError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    if not isinstance(value, Sequence):
        raise ConfigError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    return value


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "AppConfig",
    "ConfigError",
    "PackagingSpec",
    "Profile",
    "default_config_path",
    "default_logs_dir",
    "example_config",
    "load_config",
    "render_example_config",
    "write_example_config",
]
