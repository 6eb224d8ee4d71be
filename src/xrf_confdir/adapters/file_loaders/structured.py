"""Structured file loaders.

Purpose
-------
Convert on-disk artifacts into Python mappings: JSON for configuration
fragments and backup manifests, TOML for the optional settings file. Error
handling and observability live here so the fragment store and the settings
composition only ever see :class:`InvalidFormat` or :class:`NotFound`.

Contents
--------
* :class:`BaseFileLoader` – shared helpers for reading files and validating
  mapping outputs.
* :class:`JSONFileLoader` – loader for fragments and ``backup-info.json``.
* :class:`TOMLFileLoader` – loader for ``/etc/xrf/config.toml``.
"""

from __future__ import annotations

import json
import tomllib
from pathlib import Path
from typing import Any

from ...domain.errors import FragmentIOError, InvalidFormat, NotFound
from ...observability import log_debug, log_error


class BaseFileLoader:
    """Common utilities shared by the structured file loaders."""

    def _read(self, path: str | Path) -> bytes:
        """Read *path* as bytes, raising :class:`NotFound` when the file is missing."""

        file_path = Path(path)
        if not file_path.is_file():
            raise NotFound(f"file not found: {file_path}", path=str(file_path))
        try:
            payload = file_path.read_bytes()
        except OSError as exc:
            raise FragmentIOError(f"failed to read {file_path}: {exc}", path=str(file_path)) from exc
        log_debug("file_read", path=str(file_path), size=len(payload))
        return payload

    @staticmethod
    def _ensure_mapping(data: object, *, path: str | Path) -> dict[str, Any]:
        """Ensure *data* is a JSON/TOML object, otherwise raise ``InvalidFormat``.

        Examples
        --------
        >>> BaseFileLoader._ensure_mapping({"key": 1}, path="demo")
        {'key': 1}
        >>> BaseFileLoader._ensure_mapping([1], path="demo")
        Traceback (most recent call last):
        ...
        xrf_confdir.domain.errors.InvalidFormat: file demo did not produce a mapping
        """

        if not isinstance(data, dict):
            raise InvalidFormat(f"file {path} did not produce a mapping", path=str(path))
        return data


class JSONFileLoader(BaseFileLoader):
    """Load JSON documents (fragments, backup manifests)."""

    def load(self, path: str | Path) -> dict[str, Any]:
        """Return the JSON object stored at *path*.

        Examples
        --------
        >>> from tempfile import NamedTemporaryFile
        >>> tmp = NamedTemporaryFile('w', suffix='.json', delete=False, encoding='utf-8')
        >>> _ = tmp.write('{"inbounds": []}')
        >>> tmp.close()
        >>> JSONFileLoader().load(tmp.name)
        {'inbounds': []}
        >>> Path(tmp.name).unlink()
        """

        try:
            data = json.loads(self._read(path))
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            log_error("file_invalid", path=str(path), format="json", error=str(exc))
            raise InvalidFormat(f"invalid JSON in {path}: {exc}", path=str(path)) from exc
        return self._ensure_mapping(data, path=path)


class TOMLFileLoader(BaseFileLoader):
    """Load TOML documents using the standard library parser."""

    def load(self, path: str | Path) -> dict[str, Any]:
        """Return the TOML table stored at *path*."""

        try:
            data = tomllib.loads(self._read(path).decode("utf-8"))
        except (tomllib.TOMLDecodeError, UnicodeDecodeError) as exc:
            log_error("file_invalid", path=str(path), format="toml", error=str(exc))
            raise InvalidFormat(f"invalid TOML in {path}: {exc}", path=str(path)) from exc
        result = self._ensure_mapping(data, path=path)
        log_debug("file_loaded", path=str(path), format="toml")
        return result


def dump_json(document: Any) -> bytes:
    """Serialise *document* the way fragments are stored: two-space indent, trailing newline.

    Examples
    --------
    >>> dump_json({"a": 1})
    b'{\\n  "a": 1\\n}\\n'
    """

    return (json.dumps(document, indent=2, ensure_ascii=False) + "\n").encode("utf-8")
