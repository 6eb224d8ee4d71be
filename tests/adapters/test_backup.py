"""Backup archives: manifest, round trip, safety archive and hostile members."""

from __future__ import annotations

import io
import json
import tarfile
from datetime import datetime, timezone
from pathlib import Path

import pytest

from xrf_confdir.adapters.archive import backup as backup_module
from xrf_confdir.adapters.archive.backup import MANIFEST_NAME, BackupManager, read_manifest
from xrf_confdir.adapters.fragments.store import FragmentStore
from xrf_confdir.domain.errors import BACKUP, BackupError

FROZEN = datetime(2026, 3, 1, 12, 30, 45, tzinfo=timezone.utc)


def _populate(confdir: Path) -> FragmentStore:
    store = FragmentStore(confdir)
    store.ensure()
    store.write("base", "system", {"log": {"loglevel": "warning"}})
    store.write("inbound", "ss1", {"inbounds": [{"tag": "ss1", "port": 8388, "protocol": "shadowsocks"}]})
    store.write("inbound", "vr1", {"inbounds": [{"tag": "vr1", "port": 443, "protocol": "vless"}]})
    return store


@pytest.fixture
def manager(tmp_path: Path) -> BackupManager:
    store = _populate(tmp_path / "confs")
    return BackupManager(store, tmp_path / "backups", tmp_path / "safety", clock=lambda: FROZEN)


def _archive(path: Path, members: dict[str, bytes]) -> Path:
    with tarfile.open(path, "w:gz") as tar:
        for name, payload in members.items():
            info = tarfile.TarInfo(name)
            info.size = len(payload)
            tar.addfile(info, io.BytesIO(payload))
    return path


def test_populated_directory_holds_the_fragments(manager: BackupManager) -> None:
    assert sorted(manager.store.snapshot()) == [
        "00-base-system.json",
        "10-inbound-ss1.json",
        "10-inbound-vr1.json",
    ]


def test_default_name_and_manifest(manager: BackupManager) -> None:
    archive = manager.backup()
    assert archive == manager.backup_dir / "xrf-backup-20260301-123045.tar.gz"
    manifest = read_manifest(archive)
    assert manifest == {
        "version": "1.0",
        "timestamp": "2026-03-01T12:30:45+00:00",
        "source_dir": str(manager.confdir),
        "protocols": ["ss1", "vr1"],
    }


def test_same_second_backups_do_not_collide(manager: BackupManager) -> None:
    first = manager.backup()
    second = manager.backup()
    assert first != second
    assert second.name == "xrf-backup-20260301-123045-1.tar.gz"


def test_archive_layout(manager: BackupManager) -> None:
    with tarfile.open(manager.backup(), "r:gz") as tar:
        names = set(tar.getnames())
    assert MANIFEST_NAME in names
    assert "confs/10-inbound-ss1.json" in names
    assert not any(name.endswith(".part") for name in names)


def test_round_trip_restores_bytes(manager: BackupManager) -> None:
    before = manager.store.snapshot()
    archive = manager.backup()
    manager.store.write("inbound", "extra", {"inbounds": [{"tag": "extra"}]})
    (manager.confdir / "00-base-system.json").write_text("{}\n")
    manifest = manager.restore(archive)
    assert manager.store.snapshot() == before
    assert manifest["protocols"] == ["ss1", "vr1"]
    assert list(manager.safety_dir.glob("*.tar.gz")) == []


def test_restore_missing_archive(manager: BackupManager, tmp_path: Path) -> None:
    with pytest.raises(BackupError) as info:
        manager.restore(tmp_path / "nope.tar.gz")
    assert info.value.category == BACKUP


def test_restore_without_manifest_leaves_directory_alone(manager: BackupManager, tmp_path: Path) -> None:
    before = manager.store.snapshot()
    archive = _archive(tmp_path / "bad.tar.gz", {"confs/10-inbound-x.json": b"{}"})
    with pytest.raises(BackupError, match="no backup-info.json"):
        manager.restore(archive)
    assert manager.store.snapshot() == before


def test_restore_without_tree(manager: BackupManager, tmp_path: Path) -> None:
    manifest = json.dumps({"version": "1.0", "protocols": []}).encode()
    archive = _archive(tmp_path / "empty.tar.gz", {MANIFEST_NAME: manifest})
    with pytest.raises(BackupError, match="no confs/ tree"):
        manager.restore(archive)


def test_restore_rejects_members_escaping_the_scratch_dir(manager: BackupManager, tmp_path: Path) -> None:
    manifest = json.dumps({"version": "1.0", "protocols": []}).encode()
    archive = _archive(tmp_path / "evil.tar.gz", {MANIFEST_NAME: manifest, "../../escaped.json": b"{}"})
    before = manager.store.snapshot()
    with pytest.raises(BackupError):
        manager.restore(archive)
    assert not (tmp_path / "escaped.json").exists()
    assert manager.store.snapshot() == before


def test_not_an_archive(manager: BackupManager, tmp_path: Path) -> None:
    junk = tmp_path / "junk.tar.gz"
    junk.write_bytes(b"plain text")
    with pytest.raises(BackupError, match="failed to read backup archive"):
        manager.restore(junk)


def test_safety_backup_failure_aborts_restore(manager: BackupManager, tmp_path: Path) -> None:
    archive = manager.backup()
    blocker = tmp_path / "blocker"
    blocker.write_text("a file where a directory should be")
    manager.safety_dir = blocker / "safety"
    manager.store.write("inbound", "extra", {"inbounds": [{"tag": "extra"}]})
    before = manager.store.snapshot()
    with pytest.raises(BackupError, match="restore aborted"):
        manager.restore(archive)
    assert manager.store.snapshot() == before


def test_failed_swap_recovers_and_keeps_safety_archive(
    manager: BackupManager, monkeypatch: pytest.MonkeyPatch
) -> None:
    archive = manager.backup()
    before = manager.store.snapshot()
    real_replace = backup_module._replace_tree
    calls = {"count": 0}

    def flaky(source: Path, target: Path) -> None:
        calls["count"] += 1
        if calls["count"] == 1:
            raise OSError("disk full")
        real_replace(source, target)

    monkeypatch.setattr(backup_module, "_replace_tree", flaky)
    with pytest.raises(BackupError) as info:
        manager.restore(archive)
    safety = Path(info.value.context["safety_backup"])
    assert safety.is_file()
    assert safety.parent == manager.safety_dir
    assert manager.store.snapshot() == before


def test_backup_of_missing_directory(tmp_path: Path) -> None:
    manager = BackupManager(FragmentStore(tmp_path / "absent"), tmp_path / "b")
    with pytest.raises(BackupError, match="does not exist"):
        manager.backup()


def test_snapshot_rollback_discard(manager: BackupManager) -> None:
    before = manager.store.snapshot()
    snapshot = manager.snapshot()
    manager.store.remove(manager.store.find_by_tag("ss1"))
    manager.rollback(snapshot)
    assert manager.store.snapshot() == before
    manager.discard(snapshot)
    assert not snapshot.parent.exists()
