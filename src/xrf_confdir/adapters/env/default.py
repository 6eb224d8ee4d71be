"""Environment variable adapter.

Purpose
-------
Translate ``XRF_*`` process environment variables into a settings mapping. It
forms the highest-precedence settings layer, above the built-in defaults and
the optional TOML settings file.

Key behaviours
--------------
* Enforces a prefix (``default_env_prefix``) so only relevant keys are captured.
* Supports ``__`` as a nesting delimiter (``FOO__BAR`` → ``{"foo": {"bar": ...}}``).
* Performs light type coercion for common scalar types (bools, ints, floats,
  ``null``/``none``).
"""

from __future__ import annotations

import os
from typing import Mapping

from ...observability import log_debug


def default_env_prefix(slug: str) -> str:
    """Return the canonical environment prefix for *slug*.

    Examples
    --------
    >>> default_env_prefix('xrf')
    'XRF'
    >>> default_env_prefix('xrf-confdir')
    'XRF_CONFDIR'
    """

    return slug.replace("-", "_").upper()


class DefaultEnvLoader:
    """Load environment variables that belong to the settings namespace."""

    def __init__(self, *, environ: Mapping[str, str] | None = None) -> None:
        self._environ = environ if environ is not None else os.environ

    def load(self, prefix: str) -> dict[str, object]:
        """Return a nested mapping containing variables with the supplied *prefix*.

        Keys are stored in lowercase to align with the TOML settings layer.

        Examples
        --------
        >>> env = {'XRF_CONFDIR': '/tmp/confs', 'XRF_SKIP_VALIDATION': '1', 'HOME': '/root'}
        >>> payload = DefaultEnvLoader(environ=env).load('XRF')
        >>> payload['confdir'], payload['skip_validation']
        ('/tmp/confs', 1)
        >>> 'home' in payload
        False
        """

        prefix = f"{prefix}_" if prefix and not prefix.endswith("_") else prefix
        collected: dict[str, object] = {}
        for key, value in self._environ.items():
            if prefix and not key.startswith(prefix):
                continue
            stripped = key[len(prefix) :] if prefix else key
            if not stripped:
                continue
            assign_nested(collected, stripped, coerce_scalar(value))
        log_debug("env_variables_loaded", layer="env", keys=sorted(collected.keys()))
        return collected


def assign_nested(target: dict[str, object], key: str, value: object) -> None:
    """Assign ``value`` inside ``target`` using ``__`` as a nesting delimiter.

    Examples
    --------
    >>> data: dict[str, object] = {}
    >>> assign_nested(data, 'SHARE__HOST', 'example.com')
    >>> data
    {'share': {'host': 'example.com'}}
    """

    parts = key.split("__")
    cursor = target
    for part in parts[:-1]:
        cursor = _ensure_child_mapping(cursor, part)
    cursor[parts[-1].lower()] = value


def _ensure_child_mapping(mapping: dict[str, object], key: str) -> dict[str, object]:
    """Ensure ``mapping[key]`` is a ``dict``; refuse to replace a scalar."""

    lowered = key.lower()
    child = mapping.setdefault(lowered, {})
    if not isinstance(child, dict):
        raise ValueError(f"Cannot override scalar with mapping for key {key}")
    return child


def coerce_scalar(value: str) -> object:
    """Coerce textual environment values to Python primitives where possible.

    Examples
    --------
    >>> coerce_scalar('true'), coerce_scalar('10'), coerce_scalar('3.5'), coerce_scalar('/etc/xray')
    (True, 10, 3.5, '/etc/xray')
    """

    lowered = value.lower()
    if lowered in {"true", "false"}:
        return lowered == "true"
    if lowered in {"null", "none"}:
        return None
    if value.isdigit() or (value.startswith("-") and value[1:].isdigit()):
        return int(value)
    try:
        return float(value)
    except ValueError:
        return value
