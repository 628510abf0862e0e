"""
Tests for backup snapshots, listing, pruning and restore.
"""

import json
from unittest.mock import Mock

import pytest

from deployctl.backup import BackupManager, describe
from deployctl.errors import NoBackupAvailable, RestoreFailed, TransferError
from deployctl.models import BackupRecord

from conftest import SandboxSession


@pytest.fixture
def manager(settings):
    return BackupManager(SandboxSession(settings.target), settings.target, "app")


def install(target_path, content="binary v1\n"):
    (target_path / "bin").mkdir(parents=True, exist_ok=True)
    (target_path / "config").mkdir(exist_ok=True)
    (target_path / "config" / "app.toml").write_text("port = 8080\n")
    (target_path / "logs").mkdir(exist_ok=True)
    (target_path / "bin" / "app").write_text(content)


class TestSnapshot:
    def test_snapshot_copies_components(self, manager, target_path):
        install(target_path)

        record = manager.snapshot()

        backup_dir = target_path / "backups" / record.id
        assert record.contents == {"binary": True, "config": True, "logs": True}
        assert (backup_dir / "app").read_text() == "binary v1\n"
        assert (backup_dir / "config" / "app.toml").exists()
        manifest = json.loads((backup_dir / "manifest.json").read_text())
        assert manifest["id"] == record.id
        assert manifest["host"] == "localhost"

    def test_snapshot_of_empty_target(self, manager, target_path):
        """A first-ever deploy yields an empty but valid backup."""
        record = manager.snapshot()

        assert record.contents == {"binary": False, "config": False, "logs": False}
        assert not record.has_binary
        assert (target_path / "backups" / record.id).is_dir()

    def test_snapshots_strictly_increase(self, manager, target_path):
        install(target_path)

        records = [manager.snapshot() for _ in range(4)]

        ids = [r.id for r in records]
        assert ids == sorted(ids)
        assert len(set(ids)) == 4
        assert [r.id for r in manager.list_backups()] == ids

    def test_snapshot_copy_failure(self, manager, target_path):
        install(target_path)
        manager.session.copy_path = Mock(side_effect=TransferError("bin/app", "backups", "disk full"))

        with pytest.raises(TransferError, match="disk full"):
            manager.snapshot()


class TestListing:
    def test_latest_none_when_empty(self, manager):
        assert manager.list_backups() == []
        assert manager.latest() is None

    def test_legacy_backups_without_manifest(self, manager, target_path):
        legacy = target_path / "backups" / "20240101_120000"
        legacy.mkdir(parents=True)
        (legacy / "app").write_text("old\n")
        (target_path / "backups" / "not-a-backup").mkdir()

        records = manager.list_backups()

        assert [r.id for r in records] == ["20240101_120000"]
        assert records[0].has_binary
        assert records[0].created_at.year == 2024

    def test_describe(self, manager, target_path):
        install(target_path)
        record = manager.snapshot()

        assert describe(record).startswith(record.id)
        assert "[binary, config, logs]" in describe(record)


class TestPrune:
    @pytest.mark.parametrize("total", [0, 3, 5, 6, 9])
    def test_keeps_most_recent_five(self, manager, target_path, total):
        names = [f"20240101_0000{i:02d}" for i in range(total)]
        for name in names:
            (target_path / "backups" / name).mkdir(parents=True)

        removed = manager.prune(5)

        remaining = [r.id for r in manager.list_backups()]
        assert len(remaining) == min(5, total)
        assert remaining == names[-5:]
        assert removed == names[:max(0, total - 5)]

    def test_keep_zero_removes_all(self, manager, target_path):
        (target_path / "backups" / "20240101_000000").mkdir(parents=True)

        assert manager.prune(0) == ["20240101_000000"]
        assert manager.list_backups() == []

    def test_negative_keep(self, manager):
        with pytest.raises(ValueError):
            manager.prune(-1)


class TestRestore:
    def test_restore_latest_binary(self, manager, target_path):
        install(target_path)
        record = manager.snapshot()
        (target_path / "bin" / "app").write_text("binary v2\n")
        (target_path / "config" / "app.toml").write_text("port = 9090\n")

        restored = manager.restore()

        assert restored.id == record.id
        assert (target_path / "bin" / "app").read_text() == "binary v1\n"
        # config is left alone unless asked for
        assert (target_path / "config" / "app.toml").read_text() == "port = 9090\n"

    def test_restore_with_config(self, manager, target_path):
        install(target_path)
        manager.snapshot()
        (target_path / "config" / "app.toml").write_text("port = 9090\n")

        manager.restore(include_config=True)

        assert (target_path / "config" / "app.toml").read_text() == "port = 8080\n"

    def test_restore_with_logs(self, manager, target_path):
        install(target_path)
        (target_path / "logs" / "app.log").write_text("started v1\n")
        record = manager.snapshot()
        assert record.contents["logs"] is True
        (target_path / "logs" / "app.log").write_text("started v2\n")
        (target_path / "logs" / "crash.log").write_text("panic\n")

        manager.restore(include_logs=True)

        assert (target_path / "logs" / "app.log").read_text() == "started v1\n"
        assert not (target_path / "logs" / "crash.log").exists()
        assert (target_path / "config" / "app.toml").read_text() == "port = 8080\n"

    def test_logs_left_alone_by_default(self, manager, target_path):
        install(target_path)
        (target_path / "logs" / "app.log").write_text("started v1\n")
        manager.snapshot()
        (target_path / "logs" / "app.log").write_text("started v2\n")

        manager.restore()

        assert (target_path / "logs" / "app.log").read_text() == "started v2\n"

    def test_restore_specific_backup(self, manager, target_path):
        install(target_path, "one\n")
        first = manager.snapshot()
        install(target_path, "two\n")
        manager.snapshot()

        manager.restore(first.id)

        assert (target_path / "bin" / "app").read_text() == "one\n"

    def test_restore_without_backups(self, manager):
        with pytest.raises(NoBackupAvailable):
            manager.restore()

    def test_restore_unknown_id(self, manager, target_path):
        install(target_path)
        manager.snapshot()

        with pytest.raises(NoBackupAvailable, match="not found"):
            manager.restore("20200101_000000")

    def test_restore_empty_backup(self, manager):
        manager.snapshot()

        with pytest.raises(NoBackupAvailable, match="has no binary"):
            manager.restore()

    def test_restore_copy_failure(self, manager, target_path):
        install(target_path)
        record = manager.snapshot()
        (target_path / "backups" / record.id / "app").unlink()

        with pytest.raises(RestoreFailed) as exc_info:
            manager.restore(record)

        assert exc_info.value.backup_id == record.id


def test_record_location():
    from datetime import datetime, timezone

    record = BackupRecord(
        id="20240101_000000_000000",
        host="h",
        path="/opt/app",
        contents={"binary": True},
        created_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
    )
    assert record.location == "/opt/app/backups/20240101_000000_000000"
    assert record.to_dict()["created_at"] == "2024-01-01T00:00:00Z"
