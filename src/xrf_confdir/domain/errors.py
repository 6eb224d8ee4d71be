"""Domain-level exception hierarchy.

Purpose
-------
Expose an error taxonomy that lets callers decide whether to retry, prompt, or
abort. Every exception carries a ``category`` (what kind of failure it is) and
a ``context`` mapping (tag, path, protocol, port ...) so the CLI can render an
actionable message without parsing strings.

Contents
--------
* :class:`XrfError` – umbrella base class for all library failures.
* Input errors: :class:`ProtocolNotSupported`, :class:`InvalidOption`.
* State errors: :class:`ConfigConflict`, :class:`NotFound`.
* Resource errors: :class:`PortUnavailable`, :class:`NoPortAvailable`.
* Mutation errors: :class:`FragmentIOError`, :class:`InvalidFormat`,
  :class:`RenderError`.
* :class:`ValidationFailed` – the daemon rejected the fragment directory.
* :class:`BackupError` – archive creation, reading, or restore failed.
* :class:`ReloadFailed` – the service manager rejected the reload request.

System Role
-----------
Input and state errors are raised before a backup is taken; mutation and
validation errors trigger rollback inside the configuration manager.
"""

from __future__ import annotations

from typing import Any

INPUT: str = "input"
STATE: str = "state"
MUTATION: str = "mutation"
VALIDATION: str = "validation"
BACKUP: str = "backup"
RELOAD: str = "reload"


class XrfError(Exception):
    """Base type for all exceptions emitted by ``xrf_confdir``.

    Parameters
    ----------
    message:
        Human readable summary.
    **context:
        Structured detail (``tag``, ``path``, ``protocol`` ...). ``None`` values
        are dropped.

    Examples
    --------
    >>> err = NotFound("protocol with tag 'x' not found", tag="x")
    >>> err.category, err.context
    ('state', {'tag': 'x'})
    """

    category: str = MUTATION

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context: dict[str, Any] = {key: value for key, value in context.items() if value is not None}

    def describe(self) -> str:
        """Return the message followed by ``key=value`` context pairs."""

        if not self.context:
            return self.message
        details = ", ".join(f"{key}={value}" for key, value in sorted(self.context.items()))
        return f"{self.message} ({details})"

    def with_context(self, **context: Any) -> "XrfError":
        """Attach additional context in place and return ``self``."""

        self.context.update({key: value for key, value in context.items() if value is not None})
        return self


class ProtocolNotSupported(XrfError):
    """Raised when a protocol name or alias is unknown to the catalog."""

    category = INPUT


class InvalidOption(XrfError):
    """Raised when a caller-supplied option (port, UUID, path, password ...) is malformed."""

    category = INPUT


class ConfigConflict(XrfError):
    """Raised when a tag is already used by an existing fragment."""

    category = STATE


class NotFound(XrfError):
    """Raised when a tag, fragment, or archive does not exist."""

    category = STATE


class PortUnavailable(XrfError):
    """Raised when an explicitly requested port is already bound."""

    category = INPUT


class NoPortAvailable(XrfError):
    """Raised when a range scan finds no free port."""

    category = STATE


class FragmentIOError(XrfError):
    """Wraps an ``OSError`` raised while reading, writing, or deleting fragments."""

    category = MUTATION


class InvalidFormat(XrfError):
    """Raised when a fragment or settings file cannot be parsed."""

    category = MUTATION


class RenderError(XrfError):
    """Raised when a template is unknown or cannot be rendered into a JSON object."""

    category = MUTATION


class ValidationFailed(XrfError):
    """Raised when the daemon's dry-run rejects the fragment directory."""

    category = VALIDATION


class BackupError(XrfError):
    """Raised when a backup archive cannot be created, read, or restored."""

    category = BACKUP


class ReloadFailed(XrfError):
    """Raised when the service manager refuses or fails a reload request."""

    category = RELOAD
