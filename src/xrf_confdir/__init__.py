"""Public package surface for ``xrf_confdir``.

Importing the package gives access to the composition root (settings and
manager wiring), the manager itself, and the error taxonomy, so both
``import xrf_confdir`` and ``python -m xrf_confdir`` use the same objects.
"""

from __future__ import annotations

from importlib import metadata

from .application.manager import ConfigManager
from .core import build_manager, load_settings, read_settings_raw
from .domain.errors import (
    BackupError,
    ConfigConflict,
    FragmentIOError,
    InvalidFormat,
    InvalidOption,
    NoPortAvailable,
    NotFound,
    PortUnavailable,
    ProtocolNotSupported,
    ReloadFailed,
    RenderError,
    ValidationFailed,
    XrfError,
)
from .domain.fragments import FragmentMeta, ProtocolInfo
from .domain.protocols import ProtocolCatalog, ProtocolDescriptor, default_catalog
from .domain.settings import Settings

try:
    __version__ = metadata.version("xrf-confdir")
except metadata.PackageNotFoundError:
    __version__ = "0.0.0"

__all__ = [
    "BackupError",
    "ConfigConflict",
    "ConfigManager",
    "FragmentIOError",
    "FragmentMeta",
    "InvalidFormat",
    "InvalidOption",
    "NoPortAvailable",
    "NotFound",
    "PortUnavailable",
    "ProtocolCatalog",
    "ProtocolDescriptor",
    "ProtocolInfo",
    "ProtocolNotSupported",
    "ReloadFailed",
    "RenderError",
    "Settings",
    "ValidationFailed",
    "XrfError",
    "__version__",
    "build_manager",
    "default_catalog",
    "load_settings",
    "read_settings_raw",
]
