"""Fragment merge policy.

Purpose
-------
Preview the single configuration the daemon assembles from its fragment
directory, and record which fragment each tagged entry came from. The rules
mirror how the daemon folds ``-confdir`` files together, so ``xrf merged``
shows operators what will actually run.

Contents
    - ``merge_fragments``: public entry point driven by a simple loop.
    - ``_merge_fragment`` / ``_merge_tagged`` / ``_merge_mapping``: stanzas for
      each kind of top-level section.
    - ``_record``: narrates provenance updates.

Rules
-----
* ``inbounds`` are appended; an entry whose tag is already present replaces
  the earlier one in place.
* ``outbounds`` are prepended (so the last-loaded file supplies the default
  outbound) unless the fragment is a tail file, in which case they are
  appended. Same-tag entries replace in place.
* ``routing.rules`` are appended; other ``routing`` keys merge.
* Every other top-level object deep-merges; scalars and lists are replaced.
"""

from __future__ import annotations

from collections.abc import Mapping
from copy import deepcopy
from typing import Any, Iterable

from ..domain.fragments import FragmentMeta


def merge_fragments(
    fragments: Iterable[tuple[FragmentMeta, Mapping[str, Any]]],
) -> tuple[dict[str, Any], dict[str, dict[str, object]]]:
    """Merge parsed *fragments* in the order given.

    Parameters
    ----------
    fragments:
        ``(meta, document)`` pairs, already sorted by priority.

    Returns
    -------
    tuple[dict[str, Any], dict[str, dict[str, object]]]
        ``(merged, provenance)`` where ``provenance`` maps ``inbounds.<tag>``,
        ``outbounds.<tag>`` and top-level keys to ``{"file", "priority"}``.

    Examples
    --------
    >>> from pathlib import Path
    >>> def meta(name, priority, tail=False):
    ...     return FragmentMeta(priority, "x", name, name, Path(name), tail)
    >>> merged, prov = merge_fragments([
    ...     (meta("20-outbound-direct.json", 20), {"outbounds": [{"tag": "direct"}]}),
    ...     (meta("21-outbound-block.json", 21), {"outbounds": [{"tag": "block"}]}),
    ... ])
    >>> [o["tag"] for o in merged["outbounds"]], prov["outbounds.direct"]["file"]
    (['block', 'direct'], '20-outbound-direct.json')
    """

    merged: dict[str, Any] = {}
    provenance: dict[str, dict[str, object]] = {}
    for meta, document in fragments:
        _merge_fragment(merged, provenance, meta, deepcopy(dict(document)))
    return merged, provenance


def _merge_fragment(
    merged: dict[str, Any],
    provenance: dict[str, dict[str, object]],
    meta: FragmentMeta,
    document: dict[str, Any],
) -> None:
    for key, value in document.items():
        if key in ("inbounds", "outbounds") and isinstance(value, list):
            prepend = key == "outbounds" and not meta.is_tail
            _merge_tagged(merged, provenance, meta, key, value, prepend=prepend)
        elif key == "routing" and isinstance(value, Mapping):
            _merge_routing(merged, meta, value)
            _record(provenance, key, meta)
        elif isinstance(value, Mapping) and isinstance(merged.get(key), Mapping):
            merged[key] = _merge_mapping(merged[key], value)
            _record(provenance, key, meta)
        else:
            merged[key] = value
            _record(provenance, key, meta)


def _merge_tagged(
    merged: dict[str, Any],
    provenance: dict[str, dict[str, object]],
    meta: FragmentMeta,
    section: str,
    entries: list[Any],
    *,
    prepend: bool,
) -> None:
    """Fold *entries* into ``merged[section]`` with same-tag replacement."""

    current: list[Any] = merged.setdefault(section, [])
    fresh: list[Any] = []
    for entry in entries:
        tag = entry.get("tag") if isinstance(entry, Mapping) else None
        index = _index_of(current, tag)
        pending = _index_of(fresh, tag)
        if index is not None:
            current[index] = entry
        elif pending is not None:
            fresh[pending] = entry
        else:
            fresh.append(entry)
        if tag:
            _record(provenance, f"{section}.{tag}", meta)
    if prepend:
        current[:0] = fresh
    else:
        current.extend(fresh)


def _merge_routing(merged: dict[str, Any], meta: FragmentMeta, routing: Mapping[str, Any]) -> None:
    target: dict[str, Any] = merged.setdefault("routing", {})
    for key, value in routing.items():
        if key == "rules" and isinstance(value, list):
            target.setdefault("rules", []).extend(value)
        elif isinstance(value, Mapping) and isinstance(target.get(key), Mapping):
            target[key] = _merge_mapping(target[key], value)
        else:
            target[key] = value


def _merge_mapping(existing: Mapping[str, Any], incoming: Mapping[str, Any]) -> dict[str, Any]:
    """Return a deep merge of *incoming* over *existing*."""

    result = dict(existing)
    for key, value in incoming.items():
        current = result.get(key)
        if isinstance(value, Mapping) and isinstance(current, Mapping):
            result[key] = _merge_mapping(current, value)
        else:
            result[key] = value
    return result


def _index_of(entries: list[Any], tag: object) -> int | None:
    if not tag:
        return None
    for index, entry in enumerate(entries):
        if isinstance(entry, Mapping) and entry.get("tag") == tag:
            return index
    return None


def _record(provenance: dict[str, dict[str, object]], key: str, meta: FragmentMeta) -> None:
    provenance[key] = {"file": meta.filename, "priority": meta.priority}
