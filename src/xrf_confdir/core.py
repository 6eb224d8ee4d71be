"""Composition root for ``xrf_confdir``.

Purpose
-------
Resolve runtime settings from their layers and wire the configuration manager
with its default adapters. This is the only module that knows which concrete
validator, notifier, and probe back the application ports.

Contents
--------
* :func:`read_settings_raw` – merged settings mapping plus per-key provenance.
* :func:`load_settings` – the same, coerced into :class:`Settings`.
* :func:`build_manager` – returns a ready :class:`ConfigManager`.

Settings layers (lowest to highest precedence)
----------------------------------------------
1. Built-in defaults on :class:`Settings`.
2. TOML file named by ``XRF_SETTINGS_FILE`` (default ``/etc/xrf/config.toml``);
   keys may sit under an ``[xrf]`` table or at the top level.
3. ``XRF_*`` environment variables.

CLI options are applied on top by :mod:`xrf_confdir.cli`.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Callable, Mapping

from .adapters.archive.backup import BackupManager
from .adapters.env.default import DefaultEnvLoader, default_env_prefix
from .adapters.file_loaders.structured import TOMLFileLoader
from .adapters.fragments.store import FragmentStore
from .adapters.network.ports import PortAllocator
from .adapters.reload.systemctl import NullNotifier, SystemctlNotifier
from .adapters.secrets.default import DefaultSecretGenerator
from .adapters.share.urls import ShareUrlFormatter
from .adapters.validation.xray import XrayValidator
from .application.manager import ConfigManager
from .application.ports import ReloadNotifier, SecretGenerator, Validator
from .application.templates import TemplateEngine
from .domain.errors import InvalidFormat, NotFound
from .domain.protocols import ProtocolCatalog, default_catalog
from .domain.settings import DEFAULT_SETTINGS_FILE, Settings
from .observability import bind_trace_id, log_debug, log_info

SLUG = "xrf"
SETTINGS_TABLE = "xrf"


def read_settings_raw(
    *,
    environ: Mapping[str, str] | None = None,
    settings_file: str | Path | None = None,
) -> tuple[dict[str, Any], dict[str, str]]:
    """Return ``(merged, provenance)`` for the settings layers.

    ``provenance`` maps each key to ``"file"`` or ``"env"``.

    Examples
    --------
    >>> data, meta = read_settings_raw(environ={"XRF_CONFDIR": "/tmp/c"}, settings_file="/nonexistent.toml")
    >>> data["confdir"], meta["confdir"]
    ('/tmp/c', 'env')
    """

    env = dict(os.environ if environ is None else environ)
    bind_trace_id(None)
    env_data = DefaultEnvLoader(environ=env).load(default_env_prefix(SLUG))
    path = Path(settings_file or env.get("XRF_SETTINGS_FILE") or DEFAULT_SETTINGS_FILE)

    merged: dict[str, Any] = {}
    provenance: dict[str, str] = {}
    for layer, data in (("file", _load_settings_file(path)), ("env", env_data)):
        for key, value in data.items():
            if isinstance(value, Mapping):
                continue
            merged[key] = value
            provenance[key] = layer
    log_info("settings_resolved", path=str(path), keys=sorted(merged))
    return merged, provenance


def load_settings(
    *,
    environ: Mapping[str, str] | None = None,
    settings_file: str | Path | None = None,
) -> Settings:
    """Resolve all settings layers into a :class:`Settings` record."""

    data, _ = read_settings_raw(environ=environ, settings_file=settings_file)
    return Settings.from_mapping(data)


def _load_settings_file(path: Path) -> dict[str, Any]:
    try:
        data = TOMLFileLoader().load(path)
    except NotFound:
        log_debug("settings_file_missing", path=str(path))
        return {}
    except InvalidFormat as exc:
        exc.with_context(layer="file")
        raise
    table = data.get(SETTINGS_TABLE)
    return dict(table) if isinstance(table, Mapping) else data


def build_manager(
    settings: Settings,
    *,
    catalog: ProtocolCatalog | None = None,
    validator: Validator | None = None,
    notifier: ReloadNotifier | None = None,
    secrets: SecretGenerator | None = None,
    probe: Callable[[int], bool] | None = None,
) -> ConfigManager:
    """Wire a :class:`ConfigManager` from *settings* and optional overrides."""

    store = FragmentStore(settings.confdir)
    return ConfigManager(
        store,
        catalog=catalog or default_catalog(),
        templates=TemplateEngine(),
        allocator=PortAllocator(probe),
        backups=BackupManager(store, settings.backup_dir, settings.safety_backup_dir),
        validator=validator or XrayValidator(settings.xray_binary, timeout=settings.validation_timeout),
        secrets=secrets or DefaultSecretGenerator(),
        share=ShareUrlFormatter(),
        notifier=notifier or (SystemctlNotifier(settings.service_name) if settings.reload else NullNotifier()),
        validate=not settings.skip_validation,
        reload_on_commit=settings.reload,
        share_host=settings.share_host,
    )


__all__ = ["SLUG", "build_manager", "load_settings", "read_settings_raw"]
