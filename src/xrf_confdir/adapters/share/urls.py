"""Client share URL formatter.

Produces the ``vless://``, ``vmess://``, ``trojan://`` and ``ss://`` links that
common clients import. Input is the flat inbound summary assembled by the
configuration manager, so this module never looks inside fragment documents.
"""

from __future__ import annotations

import base64
import json
from typing import Any, Mapping
from urllib.parse import quote, urlencode

from ...domain.errors import InvalidOption, ProtocolNotSupported


class ShareUrlFormatter:
    """Format share URLs keyed on the protocol descriptor name.

    Examples
    --------
    >>> ShareUrlFormatter().format("Shadowsocks", "ss1", {"port": 8388, "method": "aes-128-gcm", "password": "pw"}, "1.2.3.4")
    'ss://YWVzLTEyOC1nY206cHc=@1.2.3.4:8388#ss1'
    """

    def format(self, protocol: str, tag: str, fields: Mapping[str, Any], host: str) -> str:
        kind = protocol.lower()
        port = fields.get("port")
        if not host or not port:
            raise InvalidOption("host and port are required for a share URL", tag=tag)
        if "vless" in kind:
            return self._vless(tag, fields, host, int(port))
        if "vmess" in kind:
            return self._vmess(tag, fields, host, int(port))
        if "trojan" in kind:
            return self._trojan(tag, fields, host, int(port))
        if "shadowsocks" in kind:
            return self._shadowsocks(tag, fields, host, int(port))
        raise ProtocolNotSupported(f"unsupported protocol: {protocol}", protocol=protocol, tag=tag)

    def _vless(self, tag: str, fields: Mapping[str, Any], host: str, port: int) -> str:
        uuid = _required(fields, "uuid", tag)
        network = fields.get("network", "tcp")
        params: dict[str, str] = {"type": network, "encryption": "none"}
        security = fields.get("security", "none")
        if security == "reality":
            params.update(
                security="reality",
                flow=fields.get("flow") or "xtls-rprx-vision",
                pbk=fields.get("public_key", ""),
                fp=fields.get("fingerprint", "chrome"),
                sni=fields.get("server_name") or host,
                sid=fields.get("short_id", ""),
            )
            if network == "tcp":
                params["headerType"] = "none"
        elif network == "ws":
            params.update(
                security=security,
                path=fields.get("path") or "/",
                host=fields.get("host") or host,
                sni=fields.get("server_name") or host,
            )
        elif network == "httpupgrade":
            params.update(security="none", path=fields.get("path") or "/", host=fields.get("host") or host)
        return _url("vless", uuid, host, port, params, tag)

    def _vmess(self, tag: str, fields: Mapping[str, Any], host: str, port: int) -> str:
        payload = {
            "v": "2",
            "ps": tag,
            "add": host,
            "port": port,
            "id": _required(fields, "uuid", tag),
            "aid": 0,
            "net": fields.get("network", "tcp"),
            "type": "none",
            "host": fields.get("host", ""),
            "path": fields.get("path", ""),
            "tls": "" if fields.get("security", "none") == "none" else fields["security"],
        }
        encoded = base64.b64encode(json.dumps(payload, separators=(",", ":")).encode("utf-8")).decode("ascii")
        return f"vmess://{encoded}"

    def _trojan(self, tag: str, fields: Mapping[str, Any], host: str, port: int) -> str:
        password = _required(fields, "password", tag)
        network = fields.get("network", "tcp")
        params: dict[str, str] = {"security": "tls", "type": network, "sni": fields.get("server_name") or host}
        if fields.get("path"):
            params["path"] = fields["path"]
            if network == "ws":
                params["host"] = fields.get("host") or host
        return _url("trojan", password, host, port, params, tag)

    def _shadowsocks(self, tag: str, fields: Mapping[str, Any], host: str, port: int) -> str:
        method = fields.get("method") or "chacha20-poly1305"
        password = _required(fields, "password", tag)
        userinfo = base64.urlsafe_b64encode(f"{method}:{password}".encode("utf-8")).decode("ascii")
        return f"ss://{userinfo}@{_host(host)}:{port}#{quote(tag, safe='')}"


def _required(fields: Mapping[str, Any], key: str, tag: str) -> str:
    value = fields.get(key)
    if not value:
        raise InvalidOption(f"inbound {tag} has no {key}", tag=tag, option=key)
    return str(value)


def _host(host: str) -> str:
    return f"[{host}]" if ":" in host and not host.startswith("[") else host


def _url(scheme: str, user: str, host: str, port: int, params: Mapping[str, str], tag: str) -> str:
    query = urlencode(sorted(params.items()), quote_via=quote)
    return f"{scheme}://{quote(user, safe='')}@{_host(host)}:{port}?{query}#{quote(tag, safe='')}"
