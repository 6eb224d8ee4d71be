"""Template engine that renders configuration fragments.

Purpose
-------
Turn a template identifier plus a typed parameter record into the JSON
document that will be written to the fragment directory. Rendering is pure:
templates are compiled from in-memory strings and nothing touches the disk.

Contents
--------
* :data:`INBOUND_TEMPLATES` / :data:`BASE_TEMPLATES` – Jinja2 sources keyed by
  template id.
* :class:`TemplateEngine` – renders and parses a template, raising
  :class:`RenderError` on unknown ids, undefined variables, or output that is
  not a JSON object.

System Role
-----------
The configuration manager renders inbound templates during ``add`` and the six
base templates during ``initialize``. Every string is emitted through the
``tojson`` filter so operator-supplied values cannot break the JSON structure.
"""

from __future__ import annotations

import json
from typing import Any, Mapping

import jinja2
from jinja2 import meta

from ..domain.errors import RenderError
from ..domain.parameters import InboundParameters

_SOCKOPT = """"sockopt": {
          "tcpKeepAliveIdle": 300,
          "tcpUserTimeout": 10000
        }"""

_TLS_SETTINGS = """"tlsSettings": {
          "certificates": [
            {
              "certificateFile": {{ cert_file|tojson }},
              "keyFile": {{ key_file|tojson }}
            }
          ]
        },"""

_WS_STREAM = (
    """"streamSettings": {
        "network": "ws",
        "security": {{ security|tojson }},
        {% if security == "tls" %}"""
    + _TLS_SETTINGS
    + """{% endif %}
        "wsSettings": {
          "acceptProxyProtocol": false,
          "path": {{ path|tojson }},
          "host": {{ host|tojson }},
          "headers": {}
        },
        """
    + _SOCKOPT
    + """
      }"""
)

INBOUND_TEMPLATES: dict[str, str] = {
    "vless-reality": """{
  "inbounds": [
    {
      "tag": {{ tag|tojson }},
      "port": {{ port|tojson }},
      "protocol": "vless",
      "settings": {
        "clients": [{"id": {{ uuid|tojson }}, "flow": "xtls-rprx-vision", "level": 0}],
        "decryption": "none"
      },
      "streamSettings": {
        "network": "tcp",
        "security": "reality",
        "realitySettings": {
          "show": false,
          "dest": {{ (dest if ":" in dest else dest ~ ":443")|tojson }},
          "serverNames": [{{ server_name|tojson }}],
          "privateKey": {{ private_key|tojson }},
          "shortIds": [{{ short_id|tojson }}],
          "fingerprint": "chrome"
        },
        """
    + _SOCKOPT
    + """
      }
    }
  ]
}""",
    "vless-ws": """{
  "inbounds": [
    {
      "tag": {{ tag|tojson }},
      "port": {{ port|tojson }},
      "protocol": "vless",
      "settings": {
        "clients": [{"id": {{ uuid|tojson }}, "level": 0}],
        "decryption": "none"
      },
      """
    + _WS_STREAM
    + """
    }
  ]
}""",
    "vmess-ws": """{
  "inbounds": [
    {
      "tag": {{ tag|tojson }},
      "port": {{ port|tojson }},
      "protocol": "vmess",
      "settings": {
        "clients": [{"id": {{ uuid|tojson }}, "alterId": 0, "level": 0}]
      },
      """
    + _WS_STREAM
    + """
    }
  ]
}""",
    "trojan-ws": """{
  "inbounds": [
    {
      "tag": {{ tag|tojson }},
      "port": {{ port|tojson }},
      "protocol": "trojan",
      "settings": {
        "clients": [{"password": {{ password|tojson }}, "level": 0}]
      },
      """
    + _WS_STREAM
    + """
    }
  ]
}""",
    "vless-httpupgrade": """{
  "inbounds": [
    {
      "tag": {{ tag|tojson }},
      "port": {{ port|tojson }},
      "protocol": "vless",
      "settings": {
        "clients": [{"id": {{ uuid|tojson }}, "level": 0}],
        "decryption": "none"
      },
      "streamSettings": {
        "network": "httpupgrade",
        "httpupgradeSettings": {
          "acceptProxyProtocol": false,
          "path": {{ path|tojson }},
          "host": {{ host|tojson }},
          "headers": {}
        },
        """
    + _SOCKOPT
    + """
      }
    }
  ]
}""",
}

_SHADOWSOCKS = """{
  "inbounds": [
    {
      "tag": {{ tag|tojson }},
      "port": {{ port|tojson }},
      "protocol": "shadowsocks",
      "settings": {
        "method": {{ method|tojson }},
        "password": {{ password|tojson }},
        "network": "tcp,udp",
        "level": 0
      }
    }
  ]
}"""

INBOUND_TEMPLATES["shadowsocks"] = _SHADOWSOCKS
INBOUND_TEMPLATES["shadowsocks-2022"] = _SHADOWSOCKS

BASE_TEMPLATES: dict[str, str] = {
    "base": """{
  "log": {"loglevel": "warning", "dnsLog": false},
  "api": {"tag": "api", "services": ["HandlerService", "LoggerService", "StatsService"]},
  "stats": {},
  "policy": {"levels": {"0": {"statsUserUplink": true, "statsUserDownlink": true}}}
}""",
    "dns": """{
  "dns": {"servers": [{"address": "223.5.5.5"}, {"address": "8.8.8.8"}]}
}""",
    "direct-outbound": """{
  "outbounds": [{"tag": "direct", "protocol": "freedom", "settings": {"domainStrategy": "UseIPv4"}}]
}""",
    "block-outbound": """{
  "outbounds": [{"tag": "block", "protocol": "blackhole", "settings": {"response": {"type": "http"}}}]
}""",
    "basic-routing": """{
  "routing": {
    "domainStrategy": "IPIfNonMatch",
    "rules": [
      {
        "type": "field",
        "ip": ["127.0.0.1/32", "10.0.0.0/8", "fc00::/7", "fe80::/10"],
        "outboundTag": "direct"
      }
    ]
  }
}""",
    "tail-routing": """{
  "routing": {"rules": [{"type": "field", "network": "tcp,udp", "outboundTag": "direct"}]}
}""",
}


class TemplateEngine:
    """Render named templates into parsed JSON documents.

    Examples
    --------
    >>> from xrf_confdir.domain.parameters import ShadowsocksParameters
    >>> engine = TemplateEngine()
    >>> doc = engine.render("shadowsocks", ShadowsocksParameters(tag="ss1", port=8388, method="aes-128-gcm", password="pw"))
    >>> doc["inbounds"][0]["port"], doc["inbounds"][0]["settings"]["method"]
    (8388, 'aes-128-gcm')
    >>> engine.render("dns", {})["dns"]["servers"][0]["address"]
    '223.5.5.5'
    """

    def __init__(self, templates: Mapping[str, str] | None = None) -> None:
        sources = dict(templates) if templates is not None else {**BASE_TEMPLATES, **INBOUND_TEMPLATES}
        self._env = jinja2.Environment(
            loader=jinja2.DictLoader(sources),
            undefined=jinja2.StrictUndefined,
            autoescape=False,
            keep_trailing_newline=True,
        )
        self._names = frozenset(sources)
        self._fields: dict[str, frozenset[str]] = {}

    def has_template(self, template_id: str) -> bool:
        return template_id in self._names

    def template_ids(self) -> list[str]:
        return sorted(self._names)

    def fields(self, template_id: str) -> frozenset[str]:
        """Return the variable names *template_id* reads."""

        if template_id not in self._fields:
            source, _, _ = self._env.loader.get_source(self._env, template_id)
            self._fields[template_id] = frozenset(meta.find_undeclared_variables(self._env.parse(source)))
        return self._fields[template_id]

    def render(self, template_id: str, parameters: InboundParameters | Mapping[str, Any]) -> dict[str, Any]:
        """Render *template_id* with *parameters* and return the parsed document."""

        if template_id not in self._names:
            raise RenderError(f"template not found: {template_id}", template=template_id)
        context = parameters.template_context() if isinstance(parameters, InboundParameters) else dict(parameters)
        try:
            missing = sorted(self.fields(template_id) - context.keys())
            if missing:
                raise RenderError(
                    f"missing template field for {template_id}: {', '.join(missing)}",
                    template=template_id,
                    fields=missing,
                )
            text = self._env.get_template(template_id).render(context)
        except jinja2.UndefinedError as exc:
            raise RenderError(f"missing template field for {template_id}: {exc.message}", template=template_id) from exc
        except jinja2.TemplateError as exc:
            raise RenderError(f"failed to render {template_id}: {exc}", template=template_id) from exc
        try:
            document = json.loads(text)
        except json.JSONDecodeError as exc:
            raise RenderError(f"template {template_id} produced invalid JSON: {exc}", template=template_id) from exc
        if not isinstance(document, dict):
            raise RenderError(f"template {template_id} did not produce a JSON object", template=template_id)
        return document
