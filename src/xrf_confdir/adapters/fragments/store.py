"""Fragment directory adapter.

Purpose
-------
Own everything about the on-disk fragment directory: the filename grammar
(``{priority:02d}-{category}-{name}[-tail].json``), priority assignment,
ordered listing, tag lookup, and raw read/write/delete. No other component
constructs or parses a fragment filename.

Contents
--------
* :func:`priority_for` – reserved priority for a ``(category, name)`` pair.
* :func:`format_filename` / :func:`parse_filename` – the filename grammar.
* :class:`FragmentStore` – directory operations used by the manager.

System Role
-----------
Pure file operations. The store never validates what it writes; validation
and rollback are layered above it in
:class:`xrf_confdir.application.manager.ConfigManager`.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Iterable, Mapping

from ...domain.errors import FragmentIOError, InvalidFormat, NotFound
from ...domain.fragments import INBOUND, FragmentMeta
from ...observability import log_debug
from ..file_loaders.structured import JSONFileLoader, dump_json

_PRIORITIES: Mapping[str, Mapping[str, int]] = {
    "base": {"system": 0},
    "dns": {"default": 1},
    "inbound": {"default": 10},
    "outbound": {"direct": 20, "block": 21, "default": 25},
    "routing": {"basic": 90, "default": 91, "tail": 99},
}
_UNKNOWN_PRIORITY = 50
TAIL_SUFFIX = "-tail"
_EXTENSION = ".json"


def priority_for(category: str, name: str) -> int:
    """Return the reserved priority for *category*/*name*.

    Examples
    --------
    >>> priority_for("outbound", "block"), priority_for("inbound", "vr1"), priority_for("misc", "x")
    (21, 10, 50)
    """

    table = _PRIORITIES.get(category)
    if table is None:
        return _UNKNOWN_PRIORITY
    return table.get(name, table.get("default", _UNKNOWN_PRIORITY))


def format_filename(priority: int, category: str, name: str, *, tail: bool = False) -> str:
    """Render a fragment filename.

    Examples
    --------
    >>> format_filename(10, "inbound", "vr1")
    '10-inbound-vr1.json'
    >>> format_filename(91, "routing", "custom", tail=True)
    '91-routing-custom-tail.json'
    """

    if not 0 <= priority <= 99:
        raise ValueError(f"priority out of range: {priority}")
    suffix = TAIL_SUFFIX if tail else ""
    return f"{priority:02d}-{category}-{name}{suffix}{_EXTENSION}"


def parse_filename(filename: str, directory: Path | None = None) -> FragmentMeta:
    """Parse *filename* into :class:`FragmentMeta`.

    Names that do not follow the grammar get priority 50 and an empty category
    so they still sort deterministically.

    Examples
    --------
    >>> meta = parse_filename("99-routing-tail.json")
    >>> meta.priority, meta.category, meta.name, meta.is_tail
    (99, 'routing', 'tail', False)
    >>> meta = parse_filename("91-routing-block-ads-tail.json")
    >>> meta.name, meta.is_tail
    ('block-ads', True)
    >>> parse_filename("custom.json").priority
    50
    """

    path = (directory / filename) if directory is not None else Path(filename)
    stem = filename[: -len(_EXTENSION)] if filename.endswith(_EXTENSION) else filename
    parts = stem.split("-")
    if len(parts) < 3 or not (len(parts[0]) == 2 and parts[0].isdigit()):
        return FragmentMeta(priority=_UNKNOWN_PRIORITY, category="", name=stem, filename=filename, path=path)
    name = "-".join(parts[2:])
    is_tail = name.endswith(TAIL_SUFFIX)
    if is_tail:
        name = name[: -len(TAIL_SUFFIX)]
    return FragmentMeta(
        priority=int(parts[0]),
        category=parts[1],
        name=name,
        filename=filename,
        path=path,
        is_tail=is_tail,
    )


def document_has_tag(document: Mapping[str, Any], tag: str) -> bool:
    """Return ``True`` when any inbound or outbound entry carries *tag*."""

    for section in ("inbounds", "outbounds"):
        entries = document.get(section)
        if not isinstance(entries, list):
            continue
        for entry in entries:
            if isinstance(entry, dict) and entry.get("tag") == tag:
                return True
    return False


class FragmentStore:
    """Directory of JSON fragments consumed by the daemon's ``-confdir`` mode."""

    def __init__(self, confdir: str | Path, *, loader: JSONFileLoader | None = None) -> None:
        self.confdir = Path(confdir)
        self._loader = loader or JSONFileLoader()

    def exists(self) -> bool:
        return self.confdir.is_dir()

    def ensure(self) -> None:
        """Create the fragment directory if it is missing."""

        try:
            self.confdir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise FragmentIOError(f"failed to create config directory: {exc}", path=str(self.confdir)) from exc

    def list(self) -> list[FragmentMeta]:
        """Return every ``*.json`` fragment sorted by priority.

        ``sorted`` is stable and the directory listing is name-sorted first, so
        equal priorities come back in filename order.
        """

        if not self.confdir.is_dir():
            raise NotFound(f"config directory does not exist: {self.confdir}", path=str(self.confdir))
        try:
            entries = sorted(self.confdir.iterdir(), key=lambda p: p.name)
        except OSError as exc:
            raise FragmentIOError(f"failed to read config directory: {exc}", path=str(self.confdir)) from exc
        fragments = [
            parse_filename(entry.name, self.confdir)
            for entry in entries
            if entry.is_file() and entry.name.endswith(_EXTENSION)
        ]
        return sorted(fragments, key=lambda meta: meta.priority)

    def read(self, path: str | Path) -> dict[str, Any]:
        """Parse the fragment at *path*."""

        return self._loader.load(path)

    def find_by_tag(self, tag: str) -> list[FragmentMeta]:
        """Return fragments whose inbounds or outbounds carry *tag*.

        Every fragment is opened and parsed; unreadable ones are skipped.
        """

        matches = []
        for meta in self.list():
            try:
                document = self.read(meta.path)
            except (InvalidFormat, NotFound, FragmentIOError) as exc:
                log_debug("fragment_skipped", path=str(meta.path), error=str(exc))
                continue
            if document_has_tag(document, tag):
                matches.append(meta)
        return matches

    def filename_for(self, category: str, name: str, *, tail: bool = False) -> str:
        return format_filename(priority_for(category, name), category, name, tail=tail)

    def path_for(self, category: str, name: str, *, tail: bool = False) -> Path:
        return self.confdir / self.filename_for(category, name, tail=tail)

    def write(self, category: str, name: str, document: Mapping[str, Any], *, tail: bool = False) -> Path:
        """Serialise *document* into the fragment for *category*/*name* and return its path."""

        path = self.path_for(category, name, tail=tail)
        self.write_path(path, document)
        return path

    def write_path(self, path: str | Path, document: Mapping[str, Any]) -> None:
        """Write *document* to an existing or new fragment path.

        The payload goes to a sibling temp file first and is renamed into place
        so a crash never leaves a truncated fragment.
        """

        target = Path(path)
        scratch = target.with_name(f".{target.name}.tmp")
        try:
            scratch.write_bytes(dump_json(document))
            scratch.replace(target)
        except OSError as exc:
            scratch.unlink(missing_ok=True)
            raise FragmentIOError(f"failed to write {target.name}: {exc}", path=str(target)) from exc
        log_debug("fragment_written", path=str(target))

    def remove(self, fragments: Iterable[FragmentMeta]) -> None:
        """Delete *fragments*; the first failure raises :class:`FragmentIOError`."""

        for meta in fragments:
            try:
                meta.path.unlink()
            except OSError as exc:
                raise FragmentIOError(f"failed to remove {meta.filename}: {exc}", path=str(meta.path)) from exc
            log_debug("fragment_removed", path=str(meta.path))

    def snapshot(self) -> dict[str, bytes]:
        """Return ``{filename: bytes}`` for every regular file in the directory."""

        if not self.confdir.is_dir():
            return {}
        return {entry.name: entry.read_bytes() for entry in sorted(self.confdir.iterdir()) if entry.is_file()}

    def inbound_tags(self) -> list[str]:
        """Return the tags of every inbound entry, in fragment order."""

        tags: list[str] = []
        for meta in self.list():
            if meta.category != INBOUND:
                continue
            try:
                document = self.read(meta.path)
            except (InvalidFormat, NotFound, FragmentIOError):
                continue
            for entry in document.get("inbounds", []) if isinstance(document.get("inbounds"), list) else []:
                if isinstance(entry, dict) and isinstance(entry.get("tag"), str):
                    tags.append(entry["tag"])
        return tags
