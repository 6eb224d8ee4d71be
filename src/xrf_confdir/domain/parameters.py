"""Typed template parameters, one record per template family.

Each record carries exactly the fields its templates consume, so a missing
secret is a construction-time error rather than an empty string in a rendered
fragment. :meth:`InboundParameters.template_context` flattens a record into the
mapping handed to the template engine.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any


@dataclass(frozen=True)
class InboundParameters:
    tag: str
    port: int

    def template_context(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class RealityParameters(InboundParameters):
    uuid: str
    dest: str
    server_name: str
    private_key: str
    short_id: str


@dataclass(frozen=True)
class WebSocketParameters(InboundParameters):
    """VLESS/VMess (``uuid``) or Trojan (``password``) over WebSocket."""

    path: str
    host: str = ""
    uuid: str = ""
    password: str = ""
    security: str = "none"
    cert_file: str = ""
    key_file: str = ""


@dataclass(frozen=True)
class HttpUpgradeParameters(InboundParameters):
    uuid: str
    path: str
    host: str = ""


@dataclass(frozen=True)
class ShadowsocksParameters(InboundParameters):
    method: str
    password: str


TemplateParameters = RealityParameters | WebSocketParameters | HttpUpgradeParameters | ShadowsocksParameters
