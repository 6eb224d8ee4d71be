"""Shared helpers for the test suites.

``create_confdir_sandbox`` wires a manager over ``tmp_path`` with fake
collaborators and exposes them, so tests can flip the validator, inspect
reload counts, or mark ports as busy without touching the real system.
"""

from __future__ import annotations

import json
import socket
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, Iterator

from xrf_confdir.application.manager import ConfigManager
from xrf_confdir.testing import BusyPorts, FakeValidator, RecordingNotifier, sandbox_manager


@dataclass
class ConfdirSandbox:
    root: Path
    manager: ConfigManager
    validator: FakeValidator
    notifier: RecordingNotifier
    probe: BusyPorts

    @property
    def confdir(self) -> Path:
        return self.manager.confdir

    @property
    def backup_dir(self) -> Path:
        return self.root / "backups"

    @property
    def safety_dir(self) -> Path:
        return self.root / "safety"

    def snapshot(self) -> dict[str, bytes]:
        return self.manager.store.snapshot()

    def write_fragment(self, filename: str, document: Any) -> Path:
        path = self.confdir / filename
        path.write_text(json.dumps(document, indent=2) + "\n", encoding="utf-8")
        return path

    def read_fragment(self, filename: str) -> dict[str, Any]:
        return json.loads((self.confdir / filename).read_text(encoding="utf-8"))


def create_confdir_sandbox(
    tmp_path: Path,
    *,
    busy_ports: Iterable[int] = (),
    fail_validation: bool = False,
    initialize: bool = True,
    reload_on_commit: bool = False,
    probe=None,
) -> ConfdirSandbox:
    validator = FakeValidator(fail=fail_validation)
    notifier = RecordingNotifier()
    busy = BusyPorts(busy_ports)
    manager = sandbox_manager(
        tmp_path,
        validator=validator,
        notifier=notifier,
        probe=probe or busy,
        initialize=initialize,
        reload_on_commit=reload_on_commit,
    )
    return ConfdirSandbox(tmp_path, manager, validator, notifier, busy)


@contextmanager
def occupied_port() -> Iterator[int]:
    """Hold a listening TCP socket on an ephemeral port for the duration of the block."""

    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    try:
        sock.bind(("0.0.0.0", 0))
        sock.listen(1)
        yield sock.getsockname()[1]
    finally:
        sock.close()
