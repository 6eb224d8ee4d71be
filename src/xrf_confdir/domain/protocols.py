"""Protocol descriptors and the immutable catalog that resolves them.

Purpose
-------
Describe every protocol family the tool can provision (default port, TLS and
domain requirements, supported transports, template id) and resolve
operator-supplied names or aliases to those descriptors.

Contents
--------
* :class:`ProtocolDescriptor` – frozen metadata for one protocol.
* :data:`SUPPORTED_PROTOCOLS` – the built-in descriptor table.
* :class:`ProtocolCatalog` – explicitly constructed lookup object injected into
  the configuration manager.
* :func:`default_catalog` – builds a fresh catalog from the built-in table.

System Role
-----------
Pure domain code: no I/O, no process-global state. The catalog validates its
alias table at construction time so lookups never have to arbitrate between two
descriptors.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Iterable, Mapping

from .errors import InvalidOption, ProtocolNotSupported

REALITY = "reality"
WEBSOCKET = "websocket"
HTTPUPGRADE = "httpupgrade"
SHADOWSOCKS = "shadowsocks"
SHADOWSOCKS_2022 = "shadowsocks-2022"


@dataclass(frozen=True)
class ProtocolDescriptor:
    """Static metadata describing one supported protocol family."""

    name: str
    aliases: tuple[str, ...]
    default_port: int
    requires_tls: bool
    requires_domain: bool
    supported_transports: tuple[str, ...]
    template: str
    description: str
    family: str
    credential: str = field(default="uuid")

    @property
    def key(self) -> str:
        """Lower-cased canonical name used for lookups."""

        return self.name.lower()


SUPPORTED_PROTOCOLS: tuple[ProtocolDescriptor, ...] = (
    ProtocolDescriptor(
        name="VLESS-REALITY",
        aliases=("vr", "vless", "reality"),
        default_port=443,
        requires_tls=False,
        requires_domain=True,
        supported_transports=("tcp",),
        template="vless-reality",
        description="VLESS with REALITY transport (recommended)",
        family=REALITY,
    ),
    ProtocolDescriptor(
        name="VLESS-WebSocket-TLS",
        aliases=("vw", "vless-ws"),
        default_port=443,
        requires_tls=True,
        requires_domain=True,
        supported_transports=("ws",),
        template="vless-ws",
        description="VLESS with WebSocket and TLS",
        family=WEBSOCKET,
    ),
    ProtocolDescriptor(
        name="VMess-WebSocket-TLS",
        aliases=("vmess", "mw", "vmess-ws"),
        default_port=80,
        requires_tls=False,
        requires_domain=False,
        supported_transports=("ws",),
        template="vmess-ws",
        description="VMess with WebSocket transport",
        family=WEBSOCKET,
    ),
    ProtocolDescriptor(
        name="Trojan-WebSocket-TLS",
        aliases=("tw", "trojan", "trojan-ws"),
        default_port=443,
        requires_tls=True,
        requires_domain=True,
        supported_transports=("ws",),
        template="trojan-ws",
        description="Trojan with WebSocket and TLS",
        family=WEBSOCKET,
        credential="password",
    ),
    ProtocolDescriptor(
        name="Shadowsocks",
        aliases=("ss",),
        default_port=8388,
        requires_tls=False,
        requires_domain=False,
        supported_transports=("tcp", "udp"),
        template="shadowsocks",
        description="Shadowsocks protocol",
        family=SHADOWSOCKS,
        credential="password",
    ),
    ProtocolDescriptor(
        name="Shadowsocks-2022",
        aliases=("ss2022",),
        default_port=8388,
        requires_tls=False,
        requires_domain=False,
        supported_transports=("tcp", "udp"),
        template="shadowsocks-2022",
        description="Shadowsocks 2022 with improved security",
        family=SHADOWSOCKS_2022,
        credential="password",
    ),
    ProtocolDescriptor(
        name="VLESS-HTTPUpgrade",
        aliases=("httpupgrade", "hu", "vless-hu"),
        default_port=8080,
        requires_tls=False,
        requires_domain=False,
        supported_transports=("httpupgrade",),
        template="vless-httpupgrade",
        description="VLESS with HTTP Upgrade transport",
        family=HTTPUPGRADE,
    ),
)

_RECOMMENDED_ORDER: tuple[str, ...] = (
    "VLESS-REALITY",
    "VLESS-WebSocket-TLS",
    "VMess-WebSocket-TLS",
    "VLESS-HTTPUpgrade",
    "Trojan-WebSocket-TLS",
    "Shadowsocks-2022",
    "Shadowsocks",
)

DEFAULT_REALITY_DEST = "www.microsoft.com"
DEFAULT_WS_PATH = "/ws"
DEFAULT_HTTPUPGRADE_PATH = "/upgrade"
DEFAULT_SS_METHOD = "chacha20-poly1305"
DEFAULT_SS2022_METHOD = "2022-blake3-aes-256-gcm"


class ProtocolCatalog:
    """Immutable registry mapping names and aliases to descriptors.

    Lookups are case-insensitive: canonical names are consulted first, then the
    alias table. Constructing a catalog where two descriptors claim the same
    alias raises :class:`ValueError`.

    Examples
    --------
    >>> catalog = default_catalog()
    >>> catalog.resolve("SS").name
    'Shadowsocks'
    >>> catalog.resolve("vless-reality").template
    'vless-reality'
    """

    def __init__(self, descriptors: Iterable[ProtocolDescriptor]) -> None:
        protocols: dict[str, ProtocolDescriptor] = {}
        aliases: dict[str, str] = {}
        for descriptor in descriptors:
            if descriptor.key in protocols:
                raise ValueError(f"Duplicate protocol name: {descriptor.name}")
            protocols[descriptor.key] = descriptor
        for descriptor in protocols.values():
            for alias in descriptor.aliases:
                alias_key = alias.lower()
                owner = aliases.get(alias_key)
                if owner is not None and owner != descriptor.key:
                    raise ValueError(f"Alias {alias!r} claimed by both {owner} and {descriptor.key}")
                aliases[alias_key] = descriptor.key
        self._protocols: Mapping[str, ProtocolDescriptor] = MappingProxyType(protocols)
        self._aliases: Mapping[str, str] = MappingProxyType(aliases)

    def resolve(self, name_or_alias: str) -> ProtocolDescriptor:
        """Return the descriptor for *name_or_alias* or raise :class:`ProtocolNotSupported`."""

        key = name_or_alias.strip().lower()
        descriptor = self._protocols.get(key)
        if descriptor is not None:
            return descriptor
        canonical = self._aliases.get(key)
        if canonical is not None:
            return self._protocols[canonical]
        raise ProtocolNotSupported(f"unsupported protocol: {name_or_alias}", protocol=name_or_alias)

    def is_supported(self, name_or_alias: str) -> bool:
        try:
            self.resolve(name_or_alias)
        except ProtocolNotSupported:
            return False
        return True

    def all(self) -> list[ProtocolDescriptor]:
        """Return descriptors in registration order."""

        return list(self._protocols.values())

    def recommended(self) -> list[ProtocolDescriptor]:
        """Return descriptors ordered from most to least recommended."""

        ranking = {name.lower(): index for index, name in enumerate(_RECOMMENDED_ORDER)}
        return sorted(self.all(), key=lambda d: ranking.get(d.key, len(ranking)))

    def search(self, query: str) -> list[ProtocolDescriptor]:
        """Return descriptors whose name, aliases, or description contain *query*."""

        needle = query.lower()
        results = []
        for descriptor in self._protocols.values():
            haystack = [descriptor.key, descriptor.description.lower(), *(a.lower() for a in descriptor.aliases)]
            if any(needle in item for item in haystack):
                results.append(descriptor)
        return results

    def default_settings(self, name: str) -> dict[str, Any]:
        """Return a starter settings bag for *name*.

        Examples
        --------
        >>> settings = default_catalog().default_settings("vr")
        >>> settings["dest"], settings["security"]
        ('www.microsoft.com', 'reality')
        """

        descriptor = self.resolve(name)
        settings: dict[str, Any] = {
            "port": descriptor.default_port,
            "requiresTLS": descriptor.requires_tls,
            "requiresDomain": descriptor.requires_domain,
            "supportedTransports": list(descriptor.supported_transports),
        }
        if descriptor.family == REALITY:
            settings.update(
                transport="tcp",
                security="reality",
                dest=DEFAULT_REALITY_DEST,
                serverName=DEFAULT_REALITY_DEST,
            )
        elif descriptor.family == WEBSOCKET:
            settings.update(transport="ws", path=DEFAULT_WS_PATH)
            if descriptor.requires_tls:
                settings["security"] = "tls"
        elif descriptor.family == HTTPUPGRADE:
            settings.update(transport="httpupgrade", path=DEFAULT_HTTPUPGRADE_PATH)
        elif descriptor.family == SHADOWSOCKS:
            settings["method"] = DEFAULT_SS_METHOD
        elif descriptor.family == SHADOWSOCKS_2022:
            settings["method"] = DEFAULT_SS2022_METHOD
        return settings

    def validate_settings(self, name: str, settings: Mapping[str, Any]) -> None:
        """Check port range, domain presence, and transport membership for *name*."""

        descriptor = self.resolve(name)
        port = settings.get("port")
        if isinstance(port, int) and not isinstance(port, bool) and not 1 <= port <= 65535:
            raise InvalidOption(f"invalid port: {port}", protocol=descriptor.name, port=port)
        if descriptor.requires_domain and not settings.get("domain"):
            raise InvalidOption(f"protocol {descriptor.name} requires domain", protocol=descriptor.name)
        transport = settings.get("transport")
        if isinstance(transport, str) and transport not in descriptor.supported_transports:
            raise InvalidOption(
                f"transport {transport} not supported by protocol {descriptor.name}",
                protocol=descriptor.name,
                transport=transport,
            )

    def identify(self, inbound: Mapping[str, Any]) -> ProtocolDescriptor | None:
        """Infer the descriptor that produced a stored *inbound* entry.

        Examples
        --------
        >>> catalog = default_catalog()
        >>> catalog.identify({"protocol": "shadowsocks", "settings": {"method": "2022-blake3-aes-128-gcm"}}).name
        'Shadowsocks-2022'
        >>> catalog.identify({"protocol": "vless", "streamSettings": {"network": "ws"}}).name
        'VLESS-WebSocket-TLS'
        >>> catalog.identify({"protocol": "socks"}) is None
        True
        """

        protocol = str(inbound.get("protocol", "")).lower()
        stream = inbound.get("streamSettings")
        stream = stream if isinstance(stream, Mapping) else {}
        settings = inbound.get("settings")
        settings = settings if isinstance(settings, Mapping) else {}
        network = stream.get("network", "tcp")
        if protocol == "shadowsocks":
            method = str(settings.get("method", ""))
            family = SHADOWSOCKS_2022 if method.startswith("2022-") else SHADOWSOCKS
            return self._first_of(family)
        if protocol == "vless":
            if stream.get("security") == "reality":
                return self._first_of(REALITY)
            if network == "httpupgrade":
                return self._first_of(HTTPUPGRADE)
            if network == "ws":
                return self._by_template("vless-ws")
            return None
        if protocol == "vmess":
            return self._by_template("vmess-ws")
        if protocol == "trojan":
            return self._by_template("trojan-ws")
        return None

    def _first_of(self, family: str) -> ProtocolDescriptor | None:
        return next((d for d in self._protocols.values() if d.family == family), None)

    def _by_template(self, template: str) -> ProtocolDescriptor | None:
        return next((d for d in self._protocols.values() if d.template == template), None)

    def __len__(self) -> int:
        return len(self._protocols)


def default_catalog() -> ProtocolCatalog:
    """Build a new catalog from :data:`SUPPORTED_PROTOCOLS`."""

    return ProtocolCatalog(SUPPORTED_PROTOCOLS)
