"""Typer-powered command line interface for ``ocmctl``.

Commands are grouped into ``user``, ``profile`` and ``config`` sub-apps. Each
command runs inside a structured logging operation; ocmctl errors are turned
into a red console message, an ``error`` operation record and the exit code
associated with the error class.
"""
from __future__ import annotations

import os
import re
import textwrap
from collections.abc import Callable, Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .actions import ProfileActions
from .config import (
    CONFIG_ENV_VAR,
    AppConfig,
    Profile,
    default_config_path,
    default_logs_dir,
    load_config,
    write_example_config,
)
from .errors import OcmError, ValidationError
from .exit_codes import ExitCode
from .logging import (
    OperationScope,
    StructuredLogger,
    configure_console_logging,
    verbosity_level,
)
from .scripts import ActionKind, run_post_action_scripts
from .usernames import parse_usernames

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    "-c",
    dir_okay=False,
    help=f"Override the path to ocmctl's YAML config file (or set {CONFIG_ENV_VAR}).",
)
PROFILE_OPTION = typer.Option(
    None,
    "--profile",
    "-p",
    help="Profile to operate on (defaults to default_profile from the config).",
)
FORCE_OPTION = typer.Option(
    False,
    "--force",
    "-f",
    help="Proceed with potentially destructive actions without confirmation.",
)
NO_SCRIPTS_OPTION = typer.Option(
    False,
    "--no-post-action-scripts",
    help="Do not run post-action scripts.",
)
VERBOSE_OPTION = typer.Option(
    0,
    "--verbose",
    "-v",
    count=True,
    help="Increase log verbosity (repeatable).",
)
QUIET_OPTION = typer.Option(
    0,
    "--quiet",
    "-q",
    count=True,
    help="Decrease log verbosity (repeatable).",
)
JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit JSON instead of a table.",
)
USERNAMES_ARGUMENT = typer.Argument(
    ...,
    metavar="NAME...",
    help="One or more usernames.",
)
DAYS_OPTION = typer.Option(
    None,
    "--days",
    "-d",
    min=1,
    help="Number of days the certificate stays valid.",
)

app = typer.Typer(
    no_args_is_help=True,
    help=textwrap.dedent(
        """
        Manage OpenVPN client credentials issued by EasyRSA.

        List, issue, renew and revoke per-user certificates, and build zip
        packages that bundle a user's credentials with a skeleton directory.
        """
    ).strip(),
)
user_app = typer.Typer(help="Operations on users.", no_args_is_help=True)
profile_app = typer.Typer(help="Operations on profiles.", no_args_is_help=True)
config_app = typer.Typer(help="Create and inspect the configuration file.", no_args_is_help=True)

app.add_typer(user_app, name="user")
app.add_typer(profile_app, name="profile")
app.add_typer(config_app, name="config")


@dataclass
class CliOptions:
    """Global options captured by the root callback."""

    config_file: Path | None = None
    profile: str | None = None
    force: bool = False
    post_action_scripts: bool = True


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    options: CliOptions
    config: AppConfig
    logger: StructuredLogger

    def profile(self) -> Profile:
        """Return the selected profile."""
        return self.config.get_profile(self.options.profile)

    def actions(self) -> ProfileActions:
        """Return user actions bound to the selected profile."""
        return ProfileActions.for_profile(self.config, self.profile())


@dataclass
class CliState:
    """Per-invocation state stored on the Typer context."""

    options: CliOptions
    runtime: RuntimeContext | None = None


def _get_state(ctx: typer.Context) -> CliState:
    state = ctx.obj
    if isinstance(state, CliState):
        return state
    state = CliState(options=CliOptions())
    ctx.obj = state
    return state


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    state = _get_state(ctx)
    if state.runtime is not None:
        return state.runtime
    try:
        config = load_config(config_file=state.options.config_file)
    except OcmError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=int(exc.exit_code)) from exc
    state.runtime = RuntimeContext(
        options=state.options,
        config=config,
        logger=StructuredLogger(config.logs_dir),
    )
    return state.runtime


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the ocmctl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    profile: str | None = PROFILE_OPTION,
    force: bool = FORCE_OPTION,
    no_post_action_scripts: bool = NO_SCRIPTS_OPTION,
    verbose: int = VERBOSE_OPTION,
    quiet: int = QUIET_OPTION,
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        console.print(f"ocmctl {__version__}")
        raise typer.Exit(code=0)

    configure_console_logging(verbosity_level(verbose, quiet))
    ctx.obj = CliState(
        options=CliOptions(
            config_file=config_file,
            profile=profile,
            force=force,
            post_action_scripts=not no_post_action_scripts,
        )
    )


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = ExitCode.VALIDATION,
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{message}[/red]")
    op.error(message, errors=list(errors or [message]), rc=int(rc))
    raise typer.Exit(code=int(rc))


@contextmanager
def _handle_errors(op: OperationScope) -> Iterator[None]:
    """Translate ocmctl errors raised inside the block into CLI errors."""
    try:
        yield
    except OcmError as exc:
        _command_error(op, str(exc), rc=exc.exit_code)


def _finish(
    runtime: RuntimeContext,
    op: OperationScope,
    kind: ActionKind,
    message: str,
    *,
    changed: int = 0,
    context: Mapping[str, object] | None = None,
) -> None:
    """Run post-action scripts for *kind* and record success."""
    if kind.scriptable:
        if runtime.options.post_action_scripts:
            count = run_post_action_scripts(kind, runtime.profile().post_action_scripts)
            if count:
                op.add_step("post-action-scripts", status="success", detail=f"{count} script(s)")
        else:
            op.add_step(
                "post-action-scripts",
                status="skipped",
                detail="--no-post-action-scripts",
            )
    op.success(message, changed=changed, context=context)


_DURATION_RE = re.compile(r"(\d+)([smhdw])")
_DURATION_FULL_RE = re.compile(r"(?:\d+[smhdw])+")
_DURATION_UNITS = {
    "s": "seconds",
    "m": "minutes",
    "h": "hours",
    "d": "days",
    "w": "weeks",
}


def parse_duration(raw: str) -> timedelta:
    """Parse durations such as ``30d``, ``12h`` or ``1w2d``."""
    text = raw.strip().lower().replace(" ", "")
    if not text or _DURATION_FULL_RE.fullmatch(text) is None:
        raise ValidationError(
            f"Invalid duration {raw!r}; use <number><unit> with units s, m, h, d or w "
            "(for example 30d or 1w2d)."
        )
    total = timedelta()
    for amount, unit in _DURATION_RE.findall(text):
        total += timedelta(**{_DURATION_UNITS[unit]: int(amount)})
    return total


def _profile_target(runtime: RuntimeContext) -> dict[str, object]:
    return {"kind": "user", "profile": runtime.options.profile or runtime.config.default_profile}


def _yes_no(value: bool) -> str:
    return "[green]yes[/green]" if value else "[red]no[/red]"


# ---------------------------------------------------------------------------
# user commands


@user_app.command("list")
def user_list(
    ctx: typer.Context,
    expired: bool = typer.Option(
        False,
        "--expired",
        "-e",
        help="Only show expired certificates.",
    ),
    near_expiry: str | None = typer.Option(
        None,
        "--near-expiry",
        "-n",
        metavar="DURATION",
        help="Only show certificates expiring within DURATION (e.g. 30d, 1w2d).",
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """List known users, optionally filtered by certificate expiry."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "user list",
        args={"expired": expired, "near_expiry": near_expiry, "json": json_output},
        target=_profile_target(runtime),
    ) as op, _handle_errors(op):
        if expired and near_expiry:
            _command_error(op, "--expired and --near-expiry cannot be combined.")
        actions = runtime.actions()

        if expired or near_expiry:
            period = parse_duration(near_expiry) if near_expiry else None
            records = actions.list_expiry(only_expired=expired, near_expiry=period)
            if json_output:
                console.print_json(data={"certificates": [r.to_dict() for r in records]})
            else:
                table = Table(show_header=True, header_style="bold magenta")
                table.add_column("Name", style="bold")
                table.add_column("Expires")
                table.add_column("Serial")
                table.add_column("Expired")
                if not records:
                    table.add_row("(none)", "", "", "")
                for record in records:
                    table.add_row(
                        str(record.username),
                        record.expires_at.isoformat(),
                        record.serial,
                        _yes_no(record.expired),
                    )
                console.print(table)
            _finish(runtime, op, ActionKind.USER_LIST, f"Reported {len(records)} certificate(s).")
            return

        credentials = actions.list_credentials()
        if json_output:
            console.print_json(
                data={
                    "users": [
                        {
                            "username": str(record.username),
                            "has_certificate": record.has_certificate,
                            "has_key": record.has_key,
                        }
                        for record in credentials
                    ]
                }
            )
        else:
            table = Table(show_header=True, header_style="bold magenta")
            table.add_column("Name", style="bold")
            table.add_column("Certificate")
            table.add_column("Key")
            if not credentials:
                table.add_row("(none)", "", "")
            for record in credentials:
                table.add_row(
                    str(record.username),
                    _yes_no(record.has_certificate),
                    _yes_no(record.has_key),
                )
            console.print(table)
        _finish(runtime, op, ActionKind.USER_LIST, f"Listed {len(credentials)} user(s).")


@user_app.command("info")
def user_info(
    ctx: typer.Context,
    usernames: list[str] = USERNAMES_ARGUMENT,
    json_output: bool = JSON_OPTION,
) -> None:
    """Show details of the certificates of the given users."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "user info",
        args={"usernames": usernames, "json": json_output},
        target=_profile_target(runtime),
    ) as op, _handle_errors(op):
        names = parse_usernames(usernames)
        details = runtime.actions().info(names)
        if json_output:
            console.print_json(data={"certificates": [item.to_dict() for item in details]})
        else:
            for item in details:
                table = Table(show_header=False, title=str(item.username))
                table.add_column("Field", style="bold")
                table.add_column("Value")
                for key, value in item.to_dict().items():
                    if key == "username":
                        continue
                    table.add_row(key.replace("_", " ").title(), str(value))
                console.print(table)
        _finish(runtime, op, ActionKind.USER_INFO, f"Displayed {len(details)} certificate(s).")


@user_app.command("new")
def user_new(
    ctx: typer.Context,
    usernames: list[str] = USERNAMES_ARGUMENT,
    days: int | None = DAYS_OPTION,
) -> None:
    """Issue certificates and keys for new users."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "user new",
        args={"usernames": usernames, "days": days},
        target=_profile_target(runtime),
    ) as op, _handle_errors(op):
        names = parse_usernames(usernames)
        actions = runtime.actions()
        actions.new(names, days=days)
        for name in names:
            op.add_step(f"easyrsa.build-client-full.{name}", status="success")
            console.print(f"[green]Issued credentials for {name}.[/green]")
        _finish(
            runtime,
            op,
            ActionKind.USER_NEW,
            f"Issued credentials for {len(names)} user(s).",
            changed=len(names),
        )


@user_app.command("renew")
def user_renew(
    ctx: typer.Context,
    usernames: list[str] = USERNAMES_ARGUMENT,
    days: int | None = DAYS_OPTION,
    keep_old: bool = typer.Option(
        False,
        "--keep-old",
        "-k",
        help="Do not revoke the replaced certificates.",
    ),
) -> None:
    """Renew the certificates of existing users."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "user renew",
        args={"usernames": usernames, "days": days, "keep_old": keep_old},
        target=_profile_target(runtime),
    ) as op, _handle_errors(op):
        names = parse_usernames(usernames)
        runtime.actions().renew(names, days=days, keep_old=keep_old)
        for name in names:
            op.add_step(f"easyrsa.renew.{name}", status="success")
            console.print(f"[green]Renewed the certificate of {name}.[/green]")
        _finish(
            runtime,
            op,
            ActionKind.USER_RENEW,
            f"Renewed {len(names)} certificate(s).",
            changed=len(names),
        )


@user_app.command("remove")
def user_remove(
    ctx: typer.Context,
    usernames: list[str] = USERNAMES_ARGUMENT,
    no_update_crl: bool = typer.Option(
        False,
        "--no-update-crl",
        help="Do not regenerate the CRL after revoking.",
    ),
) -> None:
    """Revoke the certificates of existing users."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "user remove",
        args={"usernames": usernames, "update_crl": not no_update_crl},
        target=_profile_target(runtime),
    ) as op, _handle_errors(op):
        names = parse_usernames(usernames)
        actions = runtime.actions()
        if not runtime.options.force:
            joined = ", ".join(str(name) for name in names)
            typer.confirm(
                f"Revoke the certificates of {joined} in profile '{actions.profile.name}'?",
                abort=True,
            )
        actions.remove(names, update_crl=not no_update_crl)
        for name in names:
            op.add_step(f"easyrsa.revoke.{name}", status="success")
            console.print(f"[green]Revoked the certificate of {name}.[/green]")
        if no_update_crl:
            op.add_step("easyrsa.gen-crl", status="skipped", detail="--no-update-crl")
        _finish(
            runtime,
            op,
            ActionKind.USER_REMOVE,
            f"Revoked {len(names)} certificate(s).",
            changed=len(names),
        )


@user_app.command("package")
def user_package(
    ctx: typer.Context,
    usernames: list[str] = USERNAMES_ARGUMENT,
    add_prefix: bool = typer.Option(
        False,
        "--add-prefix",
        "--pre",
        help="Add the profile name as a prefix to the package name.",
    ),
    output_dir: Path | None = typer.Option(
        None,
        "--output-dir",
        "-o",
        file_okay=False,
        help="Write packages here instead of the current working directory.",
    ),
    keep_temp: bool = typer.Option(
        False,
        "--keep-temp",
        help="Keep the temporary workspace for inspection.",
    ),
    overwrite: bool = typer.Option(
        False,
        "--overwrite",
        help="Replace existing packages with the same name.",
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """Create redistributable packages for the given users."""
    runtime = _get_runtime(ctx)
    destination = output_dir or Path.cwd()
    with runtime.logger.operation(
        "user package",
        args={
            "usernames": usernames,
            "add_prefix": add_prefix,
            "output_dir": destination,
            "keep_temp": keep_temp,
            "overwrite": overwrite,
        },
        target=_profile_target(runtime),
    ) as op, _handle_errors(op):
        names = parse_usernames(usernames)
        result = runtime.actions().package(
            names,
            output_dir=destination,
            add_prefix=add_prefix,
            overwrite=overwrite,
            keep_temp=keep_temp,
            op=op,
        )
        if json_output:
            console.print_json(data=result.to_payload())
        else:
            for package in result.packages:
                console.print(f"[green]Created[/green] {package.path}")
            if result.workspace is not None:
                console.print(f"[yellow]Temporary workspace kept at[/yellow] {result.workspace}")
        _finish(
            runtime,
            op,
            ActionKind.USER_PACKAGE,
            f"Created {len(result.packages)} package(s).",
            changed=len(result.packages),
            context=result.to_payload(),
        )


def _register_aliases(
    group: typer.Typer,
    command: Callable[..., None],
    canonical: str,
    aliases: Sequence[str],
) -> None:
    """Register *command* again under each of *aliases*, listed in help."""
    for alias in aliases:
        group.command(alias, help=f"Alias of `{canonical}`.")(command)


_register_aliases(user_app, user_list, "user list", ["ls"])
_register_aliases(user_app, user_info, "user info", ["get", "show"])
_register_aliases(user_app, user_new, "user new", ["add", "create"])
_register_aliases(user_app, user_remove, "user remove", ["rm", "del", "delete"])
_register_aliases(user_app, user_package, "user package", ["pkg"])


# ---------------------------------------------------------------------------
# profile and config commands


@profile_app.command("list")
def profile_list(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """List all configured profiles."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "profile list",
        args={"json": json_output},
        target={"kind": "profile"},
    ) as op:
        profiles = runtime.config.profiles
        default = runtime.config.default_profile
        if json_output:
            console.print_json(
                data={
                    "default_profile": default,
                    "profiles": [profile.to_dict() for profile in profiles],
                }
            )
            op.success("Reported profiles as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Name", style="bold")
        table.add_column("PKI directory")
        table.add_column("Packaging")
        table.add_column("Default")
        if not profiles:
            table.add_row("(none)", "", "", "")
        for profile in profiles:
            table.add_row(
                profile.name,
                str(profile.pki_dir),
                _yes_no(profile.packaging is not None),
                "*" if profile.name == default else "",
            )
        console.print(table)
        op.success("Reported profiles.", changed=0)


_register_aliases(profile_app, profile_list, "profile list", ["ls"])


@config_app.command("show")
def config_show(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Display the effective configuration after merges."""
    runtime = _get_runtime(ctx)
    data = runtime.config.to_dict()
    with runtime.logger.operation(
        "config show",
        args={"json": json_output},
        target={"kind": "config"},
    ) as op:
        if json_output:
            console.print_json(data=data)
            op.success("Rendered configuration as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Key", style="bold")
        table.add_column("Value")
        for key, value in data.items():
            if key == "profiles":
                names = [profile.name for profile in runtime.config.profiles]
                rendered = ", ".join(names) or "(none)"
            else:
                rendered = str(value)
            table.add_row(key, rendered)
        console.print(table)
        op.success("Rendered configuration table.", changed=0)


@config_app.command("init")
def config_init(
    ctx: typer.Context,
    force: bool = typer.Option(
        False,
        "--force",
        "-f",
        help="Replace an existing config file.",
    ),
) -> None:
    """Write an example configuration file.

    The file goes to --config-file when given, otherwise to the default
    per-user location.
    """
    state = _get_state(ctx)
    force = force or state.options.force
    path = (
        state.options.config_file
        or (Path(os.environ[CONFIG_ENV_VAR]) if os.environ.get(CONFIG_ENV_VAR) else None)
        or default_config_path()
    )
    logger = StructuredLogger(default_logs_dir())
    with logger.operation(
        "config init",
        args={"path": path, "force": force},
        target={"kind": "config"},
    ) as op, _handle_errors(op):
        written = write_example_config(path, force=force)
        console.print(f"[green]Wrote example configuration to[/green] {written}")
        op.success("Wrote example configuration.", changed=1, context={"path": written})


def main() -> None:
    """Console script entry point."""
    app()


__all__ = ["app", "main", "parse_duration"]
