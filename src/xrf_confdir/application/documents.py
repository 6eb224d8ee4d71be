"""Schema-aware helpers over parsed inbound fragments.

Option validation, targeted update patches, and the flat summary used by
``info``/``list``/``url`` all operate on plain ``dict`` documents read from the
fragment store. Nothing here does I/O.
"""

from __future__ import annotations

import re
from copy import deepcopy
from typing import Any, Iterator, Mapping

from ..domain.errors import InvalidFormat, InvalidOption

UPDATABLE_KEYS: tuple[str, ...] = ("port", "uuid", "password", "path")
MIN_PASSWORD_LENGTH = 8

_UUID_PATTERN = re.compile(r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$")


def validate_port(value: Any) -> int:
    """Return *value* as a port number or raise :class:`InvalidOption`.

    Examples
    --------
    >>> validate_port("8388")
    8388
    >>> validate_port(70000)
    Traceback (most recent call last):
    ...
    xrf_confdir.domain.errors.InvalidOption: invalid port: 70000
    """

    if isinstance(value, bool):
        raise InvalidOption(f"invalid port: {value!r}", option="port")
    try:
        port = int(value)
    except (TypeError, ValueError) as exc:
        raise InvalidOption(f"invalid port: {value!r}", option="port") from exc
    if not 1 <= port <= 65535:
        raise InvalidOption(f"invalid port: {port}", option="port", port=port)
    return port


def validate_options(options: Mapping[str, Any]) -> dict[str, Any]:
    """Check the shape of recognised options and return a normalised copy.

    ``port`` becomes an ``int``; ``uuid`` must be a canonical UUID string;
    ``path`` must start with ``/``; ``password`` needs at least eight
    characters. Other keys pass through untouched.
    """

    normalised = dict(options)
    if "port" in normalised:
        normalised["port"] = validate_port(normalised["port"])
    if "uuid" in normalised:
        value = normalised["uuid"]
        if not isinstance(value, str) or not _UUID_PATTERN.match(value):
            raise InvalidOption(f"invalid UUID: {value!r}", option="uuid")
    if "path" in normalised:
        value = normalised["path"]
        if not isinstance(value, str) or not value.startswith("/"):
            raise InvalidOption(f"path must start with '/': {value!r}", option="path")
    if "password" in normalised:
        value = normalised["password"]
        if not isinstance(value, str) or len(value) < MIN_PASSWORD_LENGTH:
            raise InvalidOption(
                f"password must be at least {MIN_PASSWORD_LENGTH} characters",
                option="password",
            )
    return normalised


def primary_inbound(document: Mapping[str, Any]) -> dict[str, Any]:
    """Return ``inbounds[0]`` or raise :class:`InvalidFormat`."""

    inbounds = document.get("inbounds")
    if not isinstance(inbounds, list) or not inbounds or not isinstance(inbounds[0], dict):
        raise InvalidFormat("fragment has no inbound entry")
    return inbounds[0]


def apply_update(document: Mapping[str, Any], options: Mapping[str, Any]) -> dict[str, Any]:
    """Return a patched copy of *document*.

    ``port`` rewrites every inbound port, ``uuid`` every client id, ``password``
    every client password (or the Shadowsocks ``settings.password``), and
    ``path`` every WebSocket/HTTP-upgrade path. Unrecognised keys land in
    ``inbounds[0].settings``.

    Examples
    --------
    >>> doc = {"inbounds": [{"port": 1, "protocol": "shadowsocks", "settings": {"password": "old"}}]}
    >>> patched = apply_update(doc, {"port": 2, "password": "newsecret"})
    >>> patched["inbounds"][0]["port"], patched["inbounds"][0]["settings"]["password"]
    (2, 'newsecret')
    >>> doc["inbounds"][0]["port"]
    1
    """

    patched = deepcopy(dict(document))
    primary = primary_inbound(patched)
    for key, value in options.items():
        if key == "port":
            for inbound in _inbounds(patched):
                inbound["port"] = value
        elif key == "uuid":
            for client in _clients(patched):
                if "id" in client:
                    client["id"] = value
        elif key == "password":
            _patch_password(patched, value)
        elif key == "path":
            for stream in _transport_settings(patched):
                stream["path"] = value
        else:
            settings = primary.setdefault("settings", {})
            if not isinstance(settings, dict):
                raise InvalidFormat("inbound settings is not an object", option=key)
            settings[key] = value
    return patched


def summarize_inbound(inbound: Mapping[str, Any]) -> dict[str, Any]:
    """Flatten the fields operators care about into one mapping.

    Examples
    --------
    >>> summary = summarize_inbound({
    ...     "protocol": "vless", "port": 443,
    ...     "settings": {"clients": [{"id": "u-1", "flow": "xtls-rprx-vision"}]},
    ...     "streamSettings": {"network": "tcp", "security": "reality",
    ...         "realitySettings": {"dest": "www.microsoft.com:443", "serverNames": ["www.microsoft.com"],
    ...                             "privateKey": "k", "shortIds": ["0123abcd"]}},
    ... })
    >>> summary["dest"], summary["short_id"], summary["uuid"]
    ('www.microsoft.com', '0123abcd', 'u-1')
    """

    settings = inbound.get("settings") if isinstance(inbound.get("settings"), Mapping) else {}
    stream = inbound.get("streamSettings") if isinstance(inbound.get("streamSettings"), Mapping) else {}
    clients = settings.get("clients") if isinstance(settings.get("clients"), list) else []
    client = clients[0] if clients and isinstance(clients[0], Mapping) else {}
    summary: dict[str, Any] = {
        "protocol": inbound.get("protocol", ""),
        "port": inbound.get("port"),
        "network": stream.get("network", "tcp"),
        "security": stream.get("security", "none"),
    }
    for source, target in (("id", "uuid"), ("password", "password"), ("flow", "flow")):
        if client.get(source):
            summary[target] = client[source]
    if settings.get("method"):
        summary["method"] = settings["method"]
        summary["password"] = settings.get("password", "")
    for transport in ("wsSettings", "httpupgradeSettings"):
        block = stream.get(transport)
        if isinstance(block, Mapping):
            summary["path"] = block.get("path", "")
            summary["host"] = block.get("host", "")
    reality = stream.get("realitySettings")
    if isinstance(reality, Mapping):
        summary["dest"] = str(reality.get("dest", "")).rsplit(":", 1)[0]
        summary["server_name"] = _first(reality.get("serverNames"))
        summary["private_key"] = reality.get("privateKey", "")
        summary["short_id"] = _first(reality.get("shortIds"))
        summary["fingerprint"] = reality.get("fingerprint", "chrome")
    tls = stream.get("tlsSettings")
    if isinstance(tls, Mapping):
        summary["server_name"] = tls.get("serverName", summary.get("host", ""))
    return summary


def _first(values: Any) -> str:
    if isinstance(values, list) and values:
        return str(values[0])
    return ""


def _inbounds(document: Mapping[str, Any]) -> Iterator[dict[str, Any]]:
    for inbound in document.get("inbounds", []):
        if isinstance(inbound, dict):
            yield inbound


def _clients(document: Mapping[str, Any]) -> Iterator[dict[str, Any]]:
    for inbound in _inbounds(document):
        settings = inbound.get("settings")
        if not isinstance(settings, dict):
            continue
        for client in settings.get("clients", []):
            if isinstance(client, dict):
                yield client


def _patch_password(document: Mapping[str, Any], value: str) -> None:
    for client in _clients(document):
        if "password" in client:
            client["password"] = value
    for inbound in _inbounds(document):
        settings = inbound.get("settings")
        if inbound.get("protocol") == "shadowsocks" and isinstance(settings, dict):
            settings["password"] = value


def _transport_settings(document: Mapping[str, Any]) -> Iterator[dict[str, Any]]:
    for inbound in _inbounds(document):
        stream = inbound.get("streamSettings")
        if not isinstance(stream, dict):
            continue
        for key in ("wsSettings", "httpupgradeSettings"):
            block = stream.get(key)
            if isinstance(block, dict):
                yield block
