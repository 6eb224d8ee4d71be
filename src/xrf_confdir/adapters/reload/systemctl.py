"""Daemon reload notifiers."""

from __future__ import annotations

import shutil
import subprocess

from ...domain.errors import ReloadFailed
from ...observability import log_debug, log_info


class SystemctlNotifier:
    """Ask systemd to reload *service* after a committed mutation."""

    def __init__(self, service: str = "xray", *, timeout: float = 30.0) -> None:
        self.service = service
        self.timeout = timeout

    def reload(self) -> None:
        executable = shutil.which("systemctl")
        if executable is None:
            raise ReloadFailed("systemctl not found in PATH", service=self.service)
        try:
            completed = subprocess.run(
                [executable, "reload", self.service],
                capture_output=True,
                text=True,
                timeout=self.timeout,
                check=False,
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            raise ReloadFailed(f"failed to reload {self.service}: {exc}", service=self.service) from exc
        if completed.returncode != 0:
            raise ReloadFailed(
                f"failed to reload {self.service}: {completed.stderr.strip() or completed.returncode}",
                service=self.service,
                returncode=completed.returncode,
            )
        log_info("service_reloaded", service=self.service)


class NullNotifier:
    """Do nothing; used when reloads are disabled."""

    def reload(self) -> None:
        log_debug("reload_skipped")
