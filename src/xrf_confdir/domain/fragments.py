"""Value objects describing fragment files and the protocol units they hold.

Filename grammar lives in :mod:`xrf_confdir.adapters.fragments.store`; these
records only carry the parsed results.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

BASE = "base"
DNS = "dns"
INBOUND = "inbound"
OUTBOUND = "outbound"
ROUTING = "routing"

CATEGORIES: tuple[str, ...] = (BASE, DNS, INBOUND, OUTBOUND, ROUTING)


@dataclass(frozen=True)
class FragmentMeta:
    """One ``*.json`` file in the fragment directory."""

    priority: int
    category: str
    name: str
    filename: str
    path: Path
    is_tail: bool = False


@dataclass(frozen=True)
class ProtocolInfo:
    """Read-only projection of a protocol unit (an inbound fragment)."""

    tag: str
    type: str
    port: int
    config_file: str
    status: str = "configured"
    protocol: str = ""
    settings: dict[str, Any] = field(default_factory=dict)
    summary: dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        return {
            "tag": self.tag,
            "type": self.type,
            "protocol": self.protocol,
            "port": self.port,
            "status": self.status,
            "config_file": self.config_file,
            "settings": self.settings,
            "summary": self.summary,
        }
