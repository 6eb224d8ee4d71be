"""Port availability probing and allocation.

Purpose
-------
Pick listening ports for new inbounds. An explicitly requested port is either
free or an error: it is never swapped for another one. Only an unspecified
port (``0``/``None``) falls back to the protocol default, then the family
preference list, then the family range.

Contents
--------
* :func:`socket_probe` – binds TCP and UDP on all interfaces; both must succeed.
* :data:`PORT_FAMILIES` – preferred ports and fallback range per family.
* :func:`port_family_for` – maps a protocol descriptor onto a port family.
* :class:`PortAllocator` – ``is_available`` / ``find_available`` / ``suggest``.
"""

from __future__ import annotations

import socket
from dataclasses import dataclass
from typing import Callable

from ...domain.errors import InvalidOption, NoPortAvailable, PortUnavailable
from ...domain.protocols import ProtocolDescriptor
from ...observability import log_debug

TLS_FRONTED = "tls"
PLAIN = "plain"
SHADOWSOCKS = "shadowsocks"


@dataclass(frozen=True)
class PortFamily:
    preferred: tuple[int, ...]
    start: int
    end: int


PORT_FAMILIES: dict[str, PortFamily] = {
    TLS_FRONTED: PortFamily(preferred=(443, 8443), start=10000, end=19999),
    PLAIN: PortFamily(preferred=(80, 8080), start=20000, end=29999),
    SHADOWSOCKS: PortFamily(preferred=(8388, 8389), start=30000, end=39999),
}

_TEMPLATE_FAMILIES = {
    "vless-reality": TLS_FRONTED,
    "vless-ws": TLS_FRONTED,
    "trojan-ws": TLS_FRONTED,
    "vmess-ws": PLAIN,
    "vless-httpupgrade": PLAIN,
    "shadowsocks": SHADOWSOCKS,
    "shadowsocks-2022": SHADOWSOCKS,
}


def port_family_for(descriptor: ProtocolDescriptor) -> str:
    """Return the port family for *descriptor*.

    Examples
    --------
    >>> from xrf_confdir.domain.protocols import default_catalog
    >>> port_family_for(default_catalog().resolve("vmess"))
    'plain'
    """

    return _TEMPLATE_FAMILIES.get(descriptor.template, PLAIN)


def socket_probe(port: int) -> bool:
    """Return ``True`` when both a TCP and a UDP socket can bind *port*.

    ``SO_REUSEADDR`` stays unset so a listening TCP socket
    always registers as a conflict.
    """

    for kind in (socket.SOCK_STREAM, socket.SOCK_DGRAM):
        sock = socket.socket(socket.AF_INET, kind)
        try:
            sock.bind(("", port))
        except OSError:
            return False
        finally:
            sock.close()
    return True


class PortAllocator:
    """Choose ports using an injectable availability probe."""

    def __init__(self, probe: Callable[[int], bool] | None = None) -> None:
        self._probe = probe or socket_probe

    def is_available(self, port: int) -> bool:
        if not 1 <= port <= 65535:
            return False
        return self._probe(port)

    def find_available(self, start: int, end: int) -> int:
        """Return the first free port in the inclusive range ``start..end``.

        Examples
        --------
        >>> PortAllocator(probe=lambda p: p >= 10002).find_available(10000, 10010)
        10002
        """

        if start > end:
            raise InvalidOption(f"invalid port range {start}-{end}", start=start, end=end)
        for port in range(start, end + 1):
            if self.is_available(port):
                return port
        raise NoPortAvailable(f"no available port in range {start}-{end}", start=start, end=end)

    def suggest(self, family: str, preferred: int | None = 0, *, default: int = 0) -> int:
        """Return *preferred* when free, else pick one for *family*.

        Without *preferred* the candidates are *default* (a protocol's own
        default port), then the family's preferred ports, then its range.

        Examples
        --------
        >>> allocator = PortAllocator(probe=lambda p: p != 443)
        >>> allocator.suggest("tls")
        8443
        >>> allocator.suggest("plain", default=8080)
        8080
        >>> allocator.suggest("tls", 443)
        Traceback (most recent call last):
        ...
        xrf_confdir.domain.errors.PortUnavailable: port 443 is already in use
        """

        if preferred:
            if not self.is_available(preferred):
                raise PortUnavailable(f"port {preferred} is already in use", port=preferred)
            return preferred
        if default and self.is_available(default):
            log_debug("port_selected", port=default, family=family, source="default")
            return default
        table = PORT_FAMILIES.get(family, PORT_FAMILIES[PLAIN])
        for candidate in table.preferred:
            if candidate != default and self.is_available(candidate):
                log_debug("port_selected", port=candidate, family=family, source="preferred")
                return candidate
        port = self.find_available(table.start, table.end)
        log_debug("port_selected", port=port, family=family, source="range")
        return port
