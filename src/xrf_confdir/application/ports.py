"""Application-layer ports describing collaborator responsibilities.

Purpose
-------
Define the structural contracts the configuration manager depends on so the
composition root can wire real adapters (subprocess validator, ``systemctl``
notifier) while tests substitute fakes from :mod:`xrf_confdir.testing`.

Contents
--------
* :class:`Validator` – dry-runs the daemon against the fragment directory.
* :class:`SecretGenerator` – UUIDs, passwords, X25519 keys, short ids.
* :class:`ShareUrlFormatter` – turns an inbound into a client share URL.
* :class:`ReloadNotifier` – asks the daemon to hot-reload.
* :class:`PortProbe` – answers whether a port can be bound.

System Role
-----------
These protocols keep :mod:`xrf_confdir.application.manager` free of
subprocess, socket, and crypto imports. Each adapter under
``xrf_confdir.adapters`` implements exactly one of them.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Mapping, Protocol, runtime_checkable


@runtime_checkable
class Validator(Protocol):
    """Check that the daemon can load the fragment directory.

    Why
    ----
    The daemon is the only authority on its own schema; the manager treats it
    as a black box and rolls back whenever it says no.
    """

    def validate(self, confdir: Path) -> None:
        """Return quietly when *confdir* loads, raise ``ValidationFailed`` otherwise."""


@runtime_checkable
class SecretGenerator(Protocol):
    """Produce credentials and key material for freshly added protocols."""

    def uuid(self) -> str:
        """Return a random UUID v4 string."""

    def password(self, length: int = 16) -> str:
        """Return a random printable password of *length* characters."""

    def x25519_keypair(self) -> tuple[str, str]:
        """Return ``(private_key, public_key)`` encoded as unpadded URL-safe base64."""

    def public_key_from_private(self, private_key: str) -> str:
        """Derive the public half of an X25519 key encoded like :meth:`x25519_keypair`."""

    def short_id(self, length: int = 8) -> str:
        """Return *length* lowercase hex characters."""

    def ss2022_key(self, method: str) -> str:
        """Return a base64 key sized for the Shadowsocks-2022 *method*."""


@runtime_checkable
class ShareUrlFormatter(Protocol):
    """Render a client-importable URL for one inbound."""

    def format(self, protocol: str, tag: str, fields: Mapping[str, Any], host: str) -> str:
        """Return the share URL for an inbound summarised as *fields*.

        *fields* is the flat view produced by
        :func:`xrf_confdir.application.documents.summarize_inbound` plus a
        ``public_key`` entry for REALITY.
        """


@runtime_checkable
class ReloadNotifier(Protocol):
    """Signal the running daemon that its configuration changed."""

    def reload(self) -> None:
        """Request a reload; raise ``XrfError`` when the request fails."""


@runtime_checkable
class PortProbe(Protocol):
    """Callable that reports whether *port* can be bound right now."""

    def __call__(self, port: int) -> bool: ...
