"""Backup and restore of the fragment directory.

Purpose
-------
Snapshot the fragment directory into a gzip tar and put it back. The same
archive format serves operator backups (``xrf backup``/``xrf restore``) and the
throwaway snapshots the configuration manager takes before every mutation.

Archive layout
--------------
``backup-info.json``
    Manifest: ``version``, ``timestamp`` (ISO-8601 UTC), ``source_dir`` and the
    ``protocols`` tag list present at capture time.
``confs/``
    Byte-for-byte copy of the fragment directory tree.

Contents
--------
* :class:`BackupManager` – ``backup``/``restore`` plus ``snapshot``/
  ``rollback``/``discard`` for transactions.
* :func:`read_manifest` – open an archive and return its manifest only.
"""

from __future__ import annotations

import io
import shutil
import tarfile
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable

from ...domain.errors import BackupError, InvalidFormat, NotFound, XrfError
from ...observability import log_debug, log_error, log_info, log_warning
from ..file_loaders.structured import JSONFileLoader, dump_json
from ..fragments.store import FragmentStore

MANIFEST_NAME = "backup-info.json"
TREE_NAME = "confs"
MANIFEST_VERSION = "1.0"
BACKUP_PREFIX = "xrf-backup"
SAFETY_PREFIX = "xrf-pre-restore"
ARCHIVE_SUFFIX = ".tar.gz"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def read_manifest(archive: str | Path) -> dict[str, Any]:
    """Return the manifest stored in *archive* without extracting the tree."""

    path = Path(archive)
    if not path.is_file():
        raise BackupError(f"backup archive not found: {path}", path=str(path))
    scratch = Path(tempfile.mkdtemp(prefix="xrf-manifest-"))
    try:
        _extract(path, scratch)
        return _load_manifest(scratch, path)
    finally:
        shutil.rmtree(scratch, ignore_errors=True)


class BackupManager:
    """Create and restore fragment directory archives.

    Parameters
    ----------
    store:
        Fragment store whose directory is archived; also supplies the tag list
        written into the manifest.
    backup_dir:
        Default destination for operator backups.
    safety_dir:
        Where the pre-restore safety archive is written.
    clock:
        Returns the current UTC time; injectable for deterministic names.
    """

    def __init__(
        self,
        store: FragmentStore,
        backup_dir: str | Path,
        safety_dir: str | Path | None = None,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.backup_dir = Path(backup_dir)
        self.safety_dir = Path(safety_dir) if safety_dir is not None else Path(tempfile.gettempdir())
        self._clock = clock

    @property
    def confdir(self) -> Path:
        return self.store.confdir

    def manifest(self) -> dict[str, Any]:
        """Describe the current directory as a manifest mapping."""

        tags = self.store.inbound_tags() if self.store.exists() else []
        return {
            "version": MANIFEST_VERSION,
            "timestamp": self._clock().isoformat(),
            "source_dir": str(self.confdir),
            "protocols": tags,
        }

    def default_path(self) -> Path:
        """Return an unused ``xrf-backup-YYYYMMDD-HHMMSS.tar.gz`` path in the backup directory."""

        return self._unique(self.backup_dir, BACKUP_PREFIX)

    def backup(self, path: str | Path | None = None) -> Path:
        """Write an archive of the fragment directory and return its path."""

        if not self.store.exists():
            raise BackupError(f"config directory does not exist: {self.confdir}", path=str(self.confdir))
        target = Path(path) if path else self.default_path()
        self._write_archive(target)
        log_info("backup_created", path=str(target), source=str(self.confdir))
        return target

    def restore(self, archive: str | Path) -> dict[str, Any]:
        """Replace the fragment directory with the tree stored in *archive*.

        The live directory is archived into :attr:`safety_dir` first; if that
        fails nothing is touched. If the swap fails after the live directory was
        removed, the safety archive is unpacked back and kept on disk, and its
        path is attached to the raised :class:`BackupError`. On success the
        safety archive is deleted. Returns the restored manifest.
        """

        source = Path(archive)
        if not source.is_file():
            raise BackupError(f"backup archive not found: {source}", path=str(source))
        scratch = Path(tempfile.mkdtemp(prefix="xrf-restore-"))
        try:
            _extract(source, scratch)
            manifest = _load_manifest(scratch, source)
            tree = scratch / TREE_NAME
            if not tree.is_dir():
                raise BackupError(f"backup archive has no {TREE_NAME}/ tree", path=str(source))
            safety = self._safety_backup()
            try:
                _replace_tree(tree, self.confdir)
            except (OSError, XrfError) as exc:
                self._recover(safety, exc)
            if safety is not None:
                safety.unlink(missing_ok=True)
        finally:
            shutil.rmtree(scratch, ignore_errors=True)
        log_info("backup_restored", path=str(source), protocols=manifest.get("protocols", []))
        return manifest

    def snapshot(self) -> Path:
        """Write a throwaway archive for a transaction and return its path."""

        holder = Path(tempfile.mkdtemp(prefix="xrf-txn-"))
        target = holder / f"snapshot{ARCHIVE_SUFFIX}"
        try:
            self._write_archive(target)
        except BackupError:
            shutil.rmtree(holder, ignore_errors=True)
            raise
        log_debug("snapshot_created", path=str(target))
        return target

    def rollback(self, snapshot: str | Path) -> None:
        """Put the directory back exactly as captured in *snapshot*."""

        scratch = Path(tempfile.mkdtemp(prefix="xrf-rollback-"))
        try:
            _extract(Path(snapshot), scratch)
            try:
                _replace_tree(scratch / TREE_NAME, self.confdir)
            except OSError as exc:
                raise BackupError(f"rollback failed: {exc}", path=str(self.confdir)) from exc
        finally:
            shutil.rmtree(scratch, ignore_errors=True)
        log_info("snapshot_restored", path=str(snapshot))

    def discard(self, snapshot: str | Path) -> None:
        """Delete a transaction snapshot and its holder directory."""

        holder = Path(snapshot).parent
        shutil.rmtree(holder, ignore_errors=True)
        log_debug("snapshot_discarded", path=str(snapshot))

    def _safety_backup(self) -> Path | None:
        if not self.store.exists():
            return None
        target = self._unique(self.safety_dir, SAFETY_PREFIX)
        try:
            self._write_archive(target)
        except BackupError as exc:
            log_error("safety_backup_failed", path=str(target), error=exc.message)
            raise BackupError(
                f"failed to create safety backup, restore aborted: {exc.message}",
                path=str(target),
            ) from exc
        log_debug("safety_backup_created", path=str(target))
        return target

    def _recover(self, safety: Path | None, cause: Exception) -> None:
        """Unpack *safety* over the live directory and raise ``BackupError``."""

        message = cause.message if isinstance(cause, XrfError) else str(cause)
        if safety is None:
            raise BackupError(f"restore failed: {message}", path=str(self.confdir)) from cause
        log_warning("restore_failed_recovering", safety_backup=str(safety), error=message)
        scratch = Path(tempfile.mkdtemp(prefix="xrf-recover-"))
        try:
            _extract(safety, scratch)
            _replace_tree(scratch / TREE_NAME, self.confdir)
        except (OSError, XrfError) as exc:
            log_error("restore_recovery_failed", safety_backup=str(safety), error=str(exc))
        finally:
            shutil.rmtree(scratch, ignore_errors=True)
        raise BackupError(
            f"restore failed, previous configuration recovered: {message}",
            path=str(self.confdir),
            safety_backup=str(safety),
        ) from cause

    def _unique(self, directory: Path, prefix: str) -> Path:
        stamp = self._clock().strftime("%Y%m%d-%H%M%S")
        candidate = directory / f"{prefix}-{stamp}{ARCHIVE_SUFFIX}"
        counter = 1
        while candidate.exists():
            candidate = directory / f"{prefix}-{stamp}-{counter}{ARCHIVE_SUFFIX}"
            counter += 1
        return candidate

    def _write_archive(self, target: Path) -> None:
        """Write manifest plus tree to *target* via a ``.part`` file."""

        partial = target.with_name(target.name + ".part")
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            payload = dump_json(self.manifest())
            with tarfile.open(partial, "w:gz") as tar:
                info = tarfile.TarInfo(MANIFEST_NAME)
                info.size = len(payload)
                info.mtime = int(self._clock().timestamp())
                info.mode = 0o644
                tar.addfile(info, io.BytesIO(payload))
                if self.store.exists():
                    tar.add(self.confdir, arcname=TREE_NAME)
                else:
                    folder = tarfile.TarInfo(TREE_NAME)
                    folder.type = tarfile.DIRTYPE
                    folder.mode = 0o755
                    tar.addfile(folder)
            partial.replace(target)
        except (OSError, tarfile.TarError) as exc:
            partial.unlink(missing_ok=True)
            raise BackupError(f"failed to write backup archive: {exc}", path=str(target)) from exc


def _extract(archive: Path, destination: Path) -> None:
    """Unpack *archive* into *destination*; members may not escape it."""

    try:
        with tarfile.open(archive, "r:gz") as tar:
            tar.extractall(destination, filter="data")
    except (OSError, tarfile.TarError) as exc:
        raise BackupError(f"failed to read backup archive: {exc}", path=str(archive)) from exc


def _load_manifest(scratch: Path, archive: Path) -> dict[str, Any]:
    try:
        manifest = JSONFileLoader().load(scratch / MANIFEST_NAME)
    except NotFound as exc:
        raise BackupError(f"backup archive has no {MANIFEST_NAME}", path=str(archive)) from exc
    except InvalidFormat as exc:
        raise BackupError(f"backup manifest is invalid: {exc.message}", path=str(archive)) from exc
    if "version" not in manifest or not isinstance(manifest.get("protocols", []), list):
        raise BackupError("backup manifest is missing required fields", path=str(archive))
    return manifest


def _replace_tree(source: Path, target: Path) -> None:
    """Swap *target* for a copy of *source*."""

    if target.exists():
        shutil.rmtree(target)
    shutil.copytree(source, target)
