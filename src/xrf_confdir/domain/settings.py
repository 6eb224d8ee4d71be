"""Runtime settings value object.

Purpose
-------
Carry the handful of knobs the composition root needs (fragment directory,
backup locations, validator binary and timeout, reload behaviour) as one frozen
record. Layer loading (defaults → TOML file → ``XRF_*`` environment) happens in
:mod:`xrf_confdir.core`; this module only knows how to coerce a merged mapping.
"""

from __future__ import annotations

import tempfile
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Mapping

from .errors import InvalidOption

DEFAULT_CONFDIR = Path("/etc/xray/confs")
DEFAULT_BACKUP_DIR = Path("/var/lib/xrf/backups")
DEFAULT_SETTINGS_FILE = Path("/etc/xrf/config.toml")


@dataclass(frozen=True)
class Settings:
    """Resolved runtime settings.

    Examples
    --------
    >>> s = Settings.from_mapping({"confdir": "/tmp/confs", "skip_validation": 1})
    >>> str(s.confdir), s.skip_validation
    ('/tmp/confs', True)
    """

    confdir: Path = DEFAULT_CONFDIR
    backup_dir: Path = DEFAULT_BACKUP_DIR
    safety_backup_dir: Path = Path(tempfile.gettempdir())
    xray_binary: str = "xray"
    validation_timeout: float = 30.0
    skip_validation: bool = False
    reload: bool = True
    service_name: str = "xray"
    share_host: str = "localhost"

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "Settings":
        """Build settings from a merged mapping, ignoring unknown keys."""

        known = {f.name for f in fields(cls)}
        values: dict[str, Any] = {}
        for key, raw in data.items():
            name = key.lower().replace("-", "_")
            if name not in known or raw is None:
                continue
            values[name] = _coerce_field(name, raw)
        return cls(**values)

    def with_overrides(self, **overrides: Any) -> "Settings":
        """Return a copy with non-``None`` *overrides* applied."""

        applied = {key: _coerce_field(key, value) for key, value in overrides.items() if value is not None}
        return replace(self, **applied)


def _coerce_field(name: str, raw: Any) -> Any:
    if name in {"confdir", "backup_dir", "safety_backup_dir"}:
        return Path(str(raw)).expanduser()
    if name in {"skip_validation", "reload"}:
        return _as_bool(name, raw)
    if name == "validation_timeout":
        try:
            timeout = float(raw)
        except (TypeError, ValueError) as exc:
            raise InvalidOption(f"invalid validation timeout: {raw!r}", setting=name) from exc
        if timeout <= 0:
            raise InvalidOption(f"validation timeout must be positive: {raw!r}", setting=name)
        return timeout
    return str(raw)


def _as_bool(name: str, raw: Any) -> bool:
    if isinstance(raw, bool):
        return raw
    if isinstance(raw, (int, float)):
        return raw != 0
    lowered = str(raw).strip().lower()
    if lowered in {"1", "true", "yes", "on"}:
        return True
    if lowered in {"0", "false", "no", "off", ""}:
        return False
    raise InvalidOption(f"invalid boolean for {name}: {raw!r}", setting=name)
