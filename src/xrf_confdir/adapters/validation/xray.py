"""Daemon dry-run validator.

Runs ``<binary> run -confdir <dir> -test`` and maps a non-zero exit, a missing
binary, or a timeout onto :class:`ValidationFailed`.
"""

from __future__ import annotations

import shutil
import subprocess
from pathlib import Path
from typing import Sequence

from ...domain.errors import ValidationFailed
from ...observability import log_debug, log_warning


class XrayValidator:
    """Validate a fragment directory with the daemon's own ``-test`` mode."""

    def __init__(self, binary: str = "xray", *, timeout: float = 30.0) -> None:
        self.binary = binary
        self.timeout = timeout

    def command(self, confdir: Path) -> Sequence[str]:
        return [self.binary, "run", "-confdir", str(confdir), "-test"]

    def validate(self, confdir: Path) -> None:
        if not Path(confdir).is_dir():
            raise ValidationFailed(f"config directory does not exist: {confdir}", path=str(confdir))
        executable = shutil.which(self.binary)
        if executable is None:
            raise ValidationFailed(f"{self.binary} not found in PATH", binary=self.binary)
        argv = [executable, *self.command(confdir)[1:]]
        try:
            completed = subprocess.run(argv, capture_output=True, text=True, timeout=self.timeout, check=False)
        except subprocess.TimeoutExpired as exc:
            log_warning("validation_timeout", path=str(confdir), timeout=self.timeout)
            raise ValidationFailed(
                f"validation timed out after {self.timeout:g}s",
                path=str(confdir),
                timeout=self.timeout,
            ) from exc
        except OSError as exc:
            raise ValidationFailed(f"failed to run {self.binary}: {exc}", binary=self.binary) from exc
        output = "\n".join(part for part in (completed.stdout.strip(), completed.stderr.strip()) if part)
        if completed.returncode != 0:
            raise ValidationFailed(
                f"confdir validation failed: {output or f'exit status {completed.returncode}'}",
                path=str(confdir),
                returncode=completed.returncode,
            )
        log_debug("validation_passed", path=str(confdir))


class NullValidator:
    """Accept every directory; used when validation is switched off."""

    def validate(self, confdir: Path) -> None:
        log_debug("validation_skipped", path=str(confdir))
