"""CLI adapter for ``xrf_confdir`` built on ``lib_cli_exit_tools``.

Purpose
-------
Expose the configuration manager as the ``xrf`` command so operators can add,
update, remove, inspect, back up and restore protocol units from a shell.

Contents
--------
* :data:`CLICK_CONTEXT_SETTINGS` – shared Click settings ensuring ``-h`` works.
* :func:`cli` – root group; resolves settings and wires traceback handling into
  ``lib_cli_exit_tools``.
* One command per manager operation (``init``, ``add``, ``remove``, ``update``,
  ``list``, ``info``, ``url``, ``backup``, ``restore``, ``validate``,
  ``merged``, ``reload``) plus ``protocols`` and ``version-info``.
* :func:`main` – entry point used by the ``xrf`` console script.

System Role
-----------
Outermost layer. Commands call :func:`xrf_confdir.core.build_manager` and the
manager's public methods; domain errors propagate to ``lib_cli_exit_tools``,
which prints them and chooses the exit code.
"""

from __future__ import annotations

import json
import logging
import sys
from importlib import metadata
from pathlib import Path
from typing import Any, Final, Optional, Sequence

import lib_cli_exit_tools
import rich_click as click

from .adapters.env.default import coerce_scalar
from .application.manager import ConfigManager
from .core import build_manager, load_settings
from .domain.protocols import default_catalog
from .domain.settings import Settings
from .observability import get_logger

CLICK_CONTEXT_SETTINGS = {"help_option_names": ["-h", "--help"]}
_TRACEBACK_SUMMARY_LIMIT: Final[int] = 500
_TRACEBACK_VERBOSE_LIMIT: Final[int] = 10_000
DISTRIBUTION: Final[str] = "xrf-confdir"


def _resolve_version() -> str:
    """Return the installed package version, or ``"0.0.0"`` for source checkouts."""

    try:
        return metadata.version(DISTRIBUTION)
    except metadata.PackageNotFoundError:
        return "0.0.0"


class _ContextFormatter(logging.Formatter):
    """Append the structured ``context`` mapping to each record."""

    def format(self, record: logging.LogRecord) -> str:
        base = super().format(record)
        context = getattr(record, "context", None)
        if not context:
            return base
        fields = " ".join(f"{key}={value}" for key, value in context.items() if value is not None)
        return f"{base} {fields}"


def _enable_verbose_logging() -> None:
    logger = get_logger()
    if any(getattr(handler, "_xrf_cli", False) for handler in logger.handlers):
        return
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(_ContextFormatter("%(levelname)s %(message)s"))
    handler._xrf_cli = True  # type: ignore[attr-defined]
    logger.addHandler(handler)
    logger.setLevel(logging.DEBUG)


@click.group(
    help="Manage proxy protocol fragments in an Xray -confdir directory",
    context_settings=CLICK_CONTEXT_SETTINGS,
    invoke_without_command=False,
)
@click.version_option(
    version=_resolve_version(),
    prog_name="xrf",
    message="xrf version %(version)s",
)
@click.option(
    "--traceback/--no-traceback",
    is_flag=True,
    default=False,
    help="Show full Python traceback on errors",
)
@click.option(
    "--confdir",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Fragment directory (overrides XRF_CONFDIR and the settings file)",
)
@click.option(
    "--settings-file",
    type=click.Path(path_type=Path, dir_okay=False),
    default=None,
    help="TOML settings file (defaults to XRF_SETTINGS_FILE or /etc/xrf/config.toml)",
)
@click.option(
    "--skip-validation/--validate",
    "skip_validation",
    default=None,
    help="Skip or force the daemon dry run after mutations",
)
@click.option("--no-reload", is_flag=True, default=False, help="Do not reload the daemon after changes")
@click.option("-v", "--verbose", is_flag=True, default=False, help="Log operations to stderr")
@click.pass_context
def cli(
    ctx: click.Context,
    traceback: bool,
    confdir: Optional[Path],
    settings_file: Optional[Path],
    skip_validation: Optional[bool],
    no_reload: bool,
    verbose: bool,
) -> None:
    """Root command: resolve settings and store the traceback preference.

    Side Effects
        Mutates ``lib_cli_exit_tools.config.traceback`` and
        ``lib_cli_exit_tools.config.traceback_force_color``.
    """

    ctx.ensure_object(dict)
    ctx.obj["traceback"] = traceback
    lib_cli_exit_tools.config.traceback = traceback
    lib_cli_exit_tools.config.traceback_force_color = traceback
    if verbose:
        _enable_verbose_logging()
    settings = load_settings(settings_file=settings_file)
    ctx.obj["settings"] = settings.with_overrides(
        confdir=confdir,
        skip_validation=skip_validation,
        reload=False if no_reload else None,
    )


def _manager(ctx: click.Context) -> ConfigManager:
    manager = ctx.obj.get("manager")
    if manager is None:
        settings: Settings = ctx.obj["settings"]
        manager = build_manager(settings)
        ctx.obj["manager"] = manager
    return manager


def _echo_json(payload: Any, indent: Optional[int] = 2) -> None:
    click.echo(json.dumps(payload, indent=indent, ensure_ascii=False))


def _parse_options(pairs: Sequence[str]) -> dict[str, Any]:
    """Turn repeated ``key=value`` strings into a mapping.

    Examples
    --------
    >>> _parse_options(["flow=xtls-rprx-vision", "level=1"])
    {'flow': 'xtls-rprx-vision', 'level': 1}
    """

    options: dict[str, Any] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"expected key=value, got {pair!r}", param_hint="--option")
        options[key.strip()] = coerce_scalar(value)
    return options


def _collect(explicit: dict[str, Any], extra: Sequence[str]) -> dict[str, Any]:
    options = _parse_options(extra)
    options.update({key: value for key, value in explicit.items() if value is not None})
    return options


@cli.command("init", context_settings=CLICK_CONTEXT_SETTINGS)
@click.pass_context
def cli_init(ctx: click.Context) -> None:
    """Create the fragment directory and its base fragments."""

    created = _manager(ctx).initialize()
    for path in created:
        click.echo(f"created {path.name}")
    if not created:
        click.echo("base fragments already present")


@cli.command("add", context_settings=CLICK_CONTEXT_SETTINGS)
@click.argument("protocol")
@click.option("--tag", default="", help="Unique tag (defaults to the template id)")
@click.option("--port", type=click.IntRange(1, 65535), default=None, help="Listening port; must be free")
@click.option("--uuid", default=None, help="Client UUID for VLESS/VMess")
@click.option("--password", default=None, help="Password for Trojan/Shadowsocks")
@click.option("--path", default=None, help="WebSocket or HTTP-upgrade path")
@click.option("--host", default=None, help="Host header for WebSocket/HTTP-upgrade")
@click.option("--domain", default=None, help="Public domain")
@click.option("--dest", default=None, help="REALITY destination")
@click.option("--server-name", default=None, help="REALITY server name")
@click.option("--method", default=None, help="Shadowsocks cipher")
@click.option("--cert-file", default=None, help="TLS certificate path")
@click.option("--key-file", default=None, help="TLS key path")
@click.option("--option", "extra", multiple=True, help="Additional key=value option (repeatable)")
@click.option("--no-validate", is_flag=True, default=False, help="Skip the daemon dry run for this call")
@click.pass_context
def cli_add(ctx: click.Context, protocol: str, tag: str, extra: Sequence[str], no_validate: bool, **explicit: Any) -> None:
    """Add a protocol unit and print its summary as JSON."""

    info = _manager(ctx).add_protocol(
        protocol,
        tag,
        _collect(explicit, extra),
        validate=False if no_validate else None,
    )
    _echo_json({"tag": info.tag, "protocol": info.protocol, "port": info.port, "config_file": info.config_file})


@cli.command("remove", context_settings=CLICK_CONTEXT_SETTINGS)
@click.argument("tag")
@click.option("--no-validate", is_flag=True, default=False, help="Skip the daemon dry run for this call")
@click.pass_context
def cli_remove(ctx: click.Context, tag: str, no_validate: bool) -> None:
    """Remove every fragment that references TAG."""

    for filename in _manager(ctx).remove_protocol(tag, validate=False if no_validate else None):
        click.echo(f"removed {filename}")


@cli.command("update", context_settings=CLICK_CONTEXT_SETTINGS)
@click.argument("tag")
@click.option("--port", type=int, default=None, help="New port for every inbound")
@click.option("--uuid", default=None, help="New client UUID")
@click.option("--password", default=None, help="New password")
@click.option("--path", default=None, help="New WebSocket/HTTP-upgrade path")
@click.option("--option", "extra", multiple=True, help="Additional key=value written to inbound settings")
@click.option("--no-validate", is_flag=True, default=False, help="Skip the daemon dry run for this call")
@click.pass_context
def cli_update(ctx: click.Context, tag: str, extra: Sequence[str], no_validate: bool, **explicit: Any) -> None:
    """Patch TAG's fragment in place."""

    info = _manager(ctx).update_protocol(tag, _collect(explicit, extra), validate=False if no_validate else None)
    _echo_json({"tag": info.tag, "protocol": info.protocol, "port": info.port, "config_file": info.config_file})


@cli.command("list", context_settings=CLICK_CONTEXT_SETTINGS)
@click.option("--json", "as_json", is_flag=True, default=False, help="Emit JSON instead of a table")
@click.pass_context
def cli_list(ctx: click.Context, as_json: bool) -> None:
    """List configured protocol units."""

    protocols = _manager(ctx).list_protocols()
    if as_json:
        _echo_json([
            {"tag": p.tag, "type": p.type, "protocol": p.protocol, "port": p.port, "status": p.status, "config_file": p.config_file}
            for p in protocols
        ])
        return
    if not protocols:
        click.echo("no protocols configured")
        return
    for info in protocols:
        click.echo(f"{info.tag:<20} {info.type:<12} {info.port:>5}  {info.status:<10} {info.config_file}")


@cli.command("info", context_settings=CLICK_CONTEXT_SETTINGS)
@click.argument("tag")
@click.pass_context
def cli_info(ctx: click.Context, tag: str) -> None:
    """Print everything known about TAG as JSON."""

    _echo_json(_manager(ctx).get_protocol_info(tag).as_dict())


@cli.command("url", context_settings=CLICK_CONTEXT_SETTINGS)
@click.argument("tag")
@click.option("--host", default=None, help="Server address clients connect to")
@click.pass_context
def cli_url(ctx: click.Context, tag: str, host: Optional[str]) -> None:
    """Print a client share URL for TAG."""

    click.echo(_manager(ctx).generate_share_url(tag, host))


@cli.command("backup", context_settings=CLICK_CONTEXT_SETTINGS)
@click.argument("path", required=False, type=click.Path(path_type=Path, dir_okay=False))
@click.pass_context
def cli_backup(ctx: click.Context, path: Optional[Path]) -> None:
    """Archive the fragment directory (default name xrf-backup-<timestamp>.tar.gz)."""

    click.echo(str(_manager(ctx).backup_config(path)))


@cli.command("restore", context_settings=CLICK_CONTEXT_SETTINGS)
@click.argument("path", type=click.Path(path_type=Path, dir_okay=False))
@click.pass_context
def cli_restore(ctx: click.Context, path: Path) -> None:
    """Replace the fragment directory with the archive at PATH."""

    manifest = _manager(ctx).restore_config(path)
    click.echo(f"restored {len(manifest.get('protocols', []))} protocol(s) from {path}")


@cli.command("validate", context_settings=CLICK_CONTEXT_SETTINGS)
@click.pass_context
def cli_validate(ctx: click.Context) -> None:
    """Run the daemon dry run against the fragment directory."""

    _manager(ctx).validate_config()
    click.echo("configuration is valid")


@cli.command("merged", context_settings=CLICK_CONTEXT_SETTINGS)
@click.option("--indent", type=int, default=2, show_default=True, help="JSON indent")
@click.option(
    "--provenance/--no-provenance",
    default=False,
    help="Include the fragment each tagged entry came from",
)
@click.pass_context
def cli_merged(ctx: click.Context, indent: int, provenance: bool) -> None:
    """Preview the configuration the daemon assembles from the directory."""

    merged, meta = _manager(ctx).merged_config()
    _echo_json({"config": merged, "provenance": meta} if provenance else merged, indent=indent)


@cli.command("protocols", context_settings=CLICK_CONTEXT_SETTINGS)
@click.option("--search", "query", default=None, help="Filter by name, alias, or description")
@click.option("--recommended", is_flag=True, default=False, help="Order by recommendation")
def cli_protocols(query: Optional[str], recommended: bool) -> None:
    """List supported protocols and their aliases."""

    catalog = default_catalog()
    if query:
        descriptors = catalog.search(query)
    elif recommended:
        descriptors = catalog.recommended()
    else:
        descriptors = catalog.all()
    for descriptor in descriptors:
        aliases = ", ".join(descriptor.aliases)
        click.echo(f"{descriptor.name:<22} {descriptor.default_port:>5}  [{aliases}]  {descriptor.description}")


@cli.command("reload", context_settings=CLICK_CONTEXT_SETTINGS)
@click.pass_context
def cli_reload(ctx: click.Context) -> None:
    """Ask the service manager to reload the daemon."""

    _manager(ctx).reload()
    click.echo("reload requested")


@cli.command("version-info", context_settings=CLICK_CONTEXT_SETTINGS)
def cli_version_info() -> None:
    """Print basic distribution metadata so users can confirm installation."""

    try:
        meta = metadata.metadata(DISTRIBUTION)
    except metadata.PackageNotFoundError:
        click.echo(f"{DISTRIBUTION} (metadata unavailable)")
        return
    click.echo(f"Info for {meta.get('Name', DISTRIBUTION)}:")
    click.echo(f"  Version         : {meta.get('Version', _resolve_version())}")
    click.echo(f"  Requires-Python : {meta.get('Requires-Python', '>=3.12')}")
    summary = meta.get("Summary")
    if summary:
        click.echo(f"  Summary         : {summary}")


def main(argv: Optional[Sequence[str]] = None, *, restore_traceback: bool = True) -> int:
    """Execute the CLI with shared exit handling and return the exit code."""

    previous_traceback = getattr(lib_cli_exit_tools.config, "traceback", False)
    previous_force_color = getattr(lib_cli_exit_tools.config, "traceback_force_color", False)
    try:
        try:
            return lib_cli_exit_tools.run_cli(
                cli,
                argv=list(argv) if argv is not None else None,
                prog_name="xrf",
            )
        except BaseException as exc:  # noqa: BLE001 - funnel through shared printers
            lib_cli_exit_tools.print_exception_message(
                trace_back=lib_cli_exit_tools.config.traceback,
                length_limit=(
                    _TRACEBACK_VERBOSE_LIMIT if lib_cli_exit_tools.config.traceback else _TRACEBACK_SUMMARY_LIMIT
                ),
            )
            return lib_cli_exit_tools.get_system_exit_code(exc)
    finally:
        if restore_traceback:
            lib_cli_exit_tools.config.traceback = previous_traceback
            lib_cli_exit_tools.config.traceback_force_color = previous_force_color


if __name__ == "__main__":  # pragma: no cover - exercised via console entry point
    raise SystemExit(main(sys.argv[1:]))
