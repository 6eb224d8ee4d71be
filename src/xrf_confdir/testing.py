"""Test doubles that keep failure scenarios observable and predictable.

Purpose
    Provide collaborators for the configuration manager that never touch the
    network, systemd, or the real daemon: a validator that passes or fails on
    demand, a notifier that records calls, and a port probe backed by a set of
    busy ports.

Contents
    - ``FAILURE_MESSAGE``: stable message used when a fake validator rejects.
    - ``FakeValidator``: accepts until told otherwise; counts invocations.
    - ``RecordingNotifier``: counts reloads and optionally fails them.
    - ``BusyPorts``: injectable probe treating listed ports as occupied.
    - ``sandbox_manager``: a fully wired manager over a temporary directory.

System Integration
    Used by the pytest suites and the doctests in
    :mod:`xrf_confdir.application.manager`.
"""

from __future__ import annotations

import tempfile
from pathlib import Path
from typing import Final, Iterable

from .adapters.archive.backup import BackupManager
from .adapters.fragments.store import FragmentStore
from .adapters.network.ports import PortAllocator
from .adapters.secrets.default import DefaultSecretGenerator
from .adapters.share.urls import ShareUrlFormatter
from .application.manager import ConfigManager
from .application.templates import TemplateEngine
from .domain.errors import ReloadFailed, ValidationFailed
from .domain.protocols import default_catalog

FAILURE_MESSAGE: Final[str] = "rejected by fake validator"
"""Stable message carried by :class:`ValidationFailed` from :class:`FakeValidator`."""


class FakeValidator:
    """Validator double.

    Examples
    --------
    >>> validator = FakeValidator(fail=True)
    >>> validator.validate(Path("."))
    Traceback (most recent call last):
    ...
    xrf_confdir.domain.errors.ValidationFailed: rejected by fake validator
    >>> validator.calls
    1
    """

    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.calls = 0

    def validate(self, confdir: Path) -> None:
        self.calls += 1
        if self.fail:
            raise ValidationFailed(FAILURE_MESSAGE, path=str(confdir))


class RecordingNotifier:
    """Reload notifier double that counts calls."""

    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.calls = 0

    def reload(self) -> None:
        self.calls += 1
        if self.fail:
            raise ReloadFailed("reload refused by fake notifier", service="fake")


class BusyPorts:
    """Port probe reporting every port in *busy* as taken.

    Examples
    --------
    >>> probe = BusyPorts([443])
    >>> probe(443), probe(8443)
    (False, True)
    """

    def __init__(self, busy: Iterable[int] = ()) -> None:
        self.busy = set(busy)
        self.probed: list[int] = []

    def __call__(self, port: int) -> bool:
        self.probed.append(port)
        return port not in self.busy


def sandbox_manager(
    root: str | Path | None = None,
    *,
    validator: FakeValidator | None = None,
    notifier: RecordingNotifier | None = None,
    busy_ports: Iterable[int] = (),
    probe=None,
    initialize: bool = True,
    reload_on_commit: bool = False,
) -> ConfigManager:
    """Return a manager wired with fakes over ``<root>/confs``.

    *root* defaults to a fresh temporary directory. Backups land in
    ``<root>/backups`` and safety archives in ``<root>/safety``.
    """

    base = Path(root) if root is not None else Path(tempfile.mkdtemp(prefix="xrf-sandbox-"))
    store = FragmentStore(base / "confs")
    manager = ConfigManager(
        store,
        catalog=default_catalog(),
        templates=TemplateEngine(),
        allocator=PortAllocator(probe or BusyPorts(busy_ports)),
        backups=BackupManager(store, base / "backups", base / "safety"),
        validator=validator or FakeValidator(),
        secrets=DefaultSecretGenerator(),
        share=ShareUrlFormatter(),
        notifier=notifier or RecordingNotifier(),
        validate=True,
        reload_on_commit=reload_on_commit,
    )
    if initialize:
        manager.initialize()
    return manager
