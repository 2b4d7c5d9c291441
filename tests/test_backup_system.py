"""Tests for the backup system.

Covers:
- Snapshot naming and the catalog view of the backup directory
- Backup creation, verification and failure handling
- Retention cleanup (cutoff, idempotence, partial failures)
- Restore: path traversal rejection, missing files, tool failures
- Mutual exclusion between backup and restore
"""

import os
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from dbbackup.backup.backup_config import BackupConfig
from dbbackup.backup.backup_manager import BackupManager
from dbbackup.backup.catalog import (
    BackupCatalog,
    parse_snapshot_filename,
    snapshot_filename,
)
from dbbackup.backup.errors import (
    BackupExecutionError,
    BackupNotFoundError,
    BackupVerificationError,
    ConfigurationError,
    ConflictError,
    RestoreExecutionError,
)

from conftest import DATABASE_URL, FakeClock, FakeDumpRunner, FakeRestoreRunner


def make_snapshot(directory: Path, ts: datetime, content: bytes = b"-- data\n") -> Path:
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / snapshot_filename(ts)
    path.write_bytes(content)
    return path


# ---------------------------------------------------------------------------
# Snapshot naming
# ---------------------------------------------------------------------------

class TestSnapshotFilename:
    def test_format(self):
        ts = datetime(2024, 1, 15, 10, 30, 0, 0, tzinfo=timezone.utc)
        assert snapshot_filename(ts) == "backup-2024-01-15T10-30-00-000Z.sql"

    def test_milliseconds(self):
        ts = datetime(2024, 1, 15, 10, 30, 0, 123456, tzinfo=timezone.utc)
        assert snapshot_filename(ts) == "backup-2024-01-15T10-30-00-123Z.sql"

    def test_converted_to_utc(self):
        tz = timezone(timedelta(hours=2))
        ts = datetime(2024, 1, 15, 12, 30, 0, tzinfo=tz)
        assert snapshot_filename(ts) == "backup-2024-01-15T10-30-00-000Z.sql"

    def test_no_colons_or_periods_in_stamp(self):
        name = snapshot_filename(datetime.now(timezone.utc))
        stamp = name[len("backup-"):-len(".sql")]
        assert ":" not in stamp
        assert "." not in stamp

    def test_parse_roundtrip(self):
        ts = datetime(2023, 12, 31, 23, 59, 59, 999000, tzinfo=timezone.utc)
        assert parse_snapshot_filename(snapshot_filename(ts)) == ts

    @pytest.mark.parametrize("name", [
        "backup.sql",
        "backup-2024-01-15.sql",
        "backup-2024-13-15T10-30-00-000Z.sql",
        "backup-2024-01-15T10-30-00-000Z.dump",
        "other-2024-01-15T10-30-00-000Z.sql",
        "backup-2024-01-15T10-30-00-0000.sql",
    ])
    def test_parse_rejects(self, name):
        assert parse_snapshot_filename(name) is None


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------

class TestBackupCatalog:
    def test_missing_directory_is_empty(self, tmp_path):
        assert BackupCatalog(str(tmp_path / "nope")).list_backups() == []

    def test_empty_directory_is_empty(self, tmp_path):
        assert BackupCatalog(str(tmp_path)).list_backups() == []

    def test_newest_first(self, backup_dir):
        base = datetime(2024, 1, 1, tzinfo=timezone.utc)
        for days in (3, 1, 2):
            make_snapshot(backup_dir, base + timedelta(days=days))
        records = BackupCatalog(str(backup_dir)).list_backups()
        assert [r.created_at.day for r in records] == [4, 3, 2]

    def test_record_fields(self, backup_dir):
        ts = datetime(2024, 1, 15, 10, 30, tzinfo=timezone.utc)
        make_snapshot(backup_dir, ts, b"x" * 42)
        (record,) = BackupCatalog(str(backup_dir)).list_backups()
        assert record.filename == "backup-2024-01-15T10-30-00-000Z.sql"
        assert record.created_at == ts
        assert record.size_bytes == 42

    def test_ignores_non_sql_and_directories(self, backup_dir):
        make_snapshot(backup_dir, datetime(2024, 1, 1, tzinfo=timezone.utc))
        (backup_dir / "notes.txt").write_text("hi")
        (backup_dir / "nested.sql").mkdir()
        assert len(BackupCatalog(str(backup_dir)).list_backups()) == 1

    def test_foreign_sql_file_uses_mtime(self, backup_dir):
        backup_dir.mkdir()
        path = backup_dir / "manual-export.sql"
        path.write_text("-- manual")
        stamp = datetime(2020, 6, 1, tzinfo=timezone.utc).timestamp()
        os.utime(path, (stamp, stamp))
        (record,) = BackupCatalog(str(backup_dir)).list_backups()
        assert record.created_at == datetime(2020, 6, 1, tzinfo=timezone.utc)

    def test_get_ignores_partial_files(self, backup_dir):
        path = make_snapshot(backup_dir, datetime(2024, 1, 1, tzinfo=timezone.utc))
        partial = path.with_name(path.name + ".partial")
        path.rename(partial)
        assert BackupCatalog(str(backup_dir)).get(partial.name) is None

    def test_to_dict(self, backup_dir):
        make_snapshot(backup_dir, datetime(2024, 1, 15, tzinfo=timezone.utc), b"abc")
        (record,) = BackupCatalog(str(backup_dir)).list_backups()
        assert record.to_dict() == {
            "filename": "backup-2024-01-15T00-00-00-000Z.sql",
            "date": "2024-01-15T00:00:00+00:00",
            "size": 3,
        }

    def test_reflects_filesystem_changes(self, backup_dir):
        catalog = BackupCatalog(str(backup_dir))
        path = make_snapshot(backup_dir, datetime(2024, 1, 1, tzinfo=timezone.utc))
        assert len(catalog.list_backups()) == 1
        path.unlink()
        assert catalog.list_backups() == []


# ---------------------------------------------------------------------------
# Backup creation
# ---------------------------------------------------------------------------

class TestCreateBackup:
    def test_creates_file(self, manager, backup_dir, dump_runner):
        record = manager.create_backup()
        path = backup_dir / record.filename
        assert path.is_file()
        assert path.read_bytes() == dump_runner.content
        assert record.size_bytes == len(dump_runner.content)

    def test_creates_missing_directory(self, manager, backup_dir):
        assert not backup_dir.exists()
        manager.create_backup()
        assert backup_dir.is_dir()

    def test_filename_format(self, manager):
        record = manager.create_backup()
        assert parse_snapshot_filename(record.filename) == record.created_at

    def test_descriptor_passed_to_runner(self, manager, dump_runner):
        manager.create_backup()
        descriptor, output_path, timeout = dump_runner.calls[0]
        assert descriptor.host == "db.internal"
        assert descriptor.port == 5432
        assert descriptor.user == "app_user"
        assert descriptor.password == "s3cret"
        assert descriptor.database == "appdb"
        assert output_path.startswith(str(manager.backup_dir))

    def test_timeout_forwarded(self, backup_dir, dump_runner):
        cfg = BackupConfig(backup_directory=str(backup_dir), command_timeout=30)
        mgr = BackupManager(cfg, DATABASE_URL, dump_runner=dump_runner)
        mgr.create_backup()
        assert dump_runner.calls[0][2] == 30

    def test_two_backups_distinct(self, manager, backup_dir):
        first = manager.create_backup()
        second = manager.create_backup()
        assert first.filename != second.filename
        assert len(list(backup_dir.iterdir())) == 2

    def test_same_instant_does_not_overwrite(self, config, dump_runner, backup_dir):
        clock = FakeClock()
        mgr = BackupManager(config, DATABASE_URL, dump_runner=dump_runner, clock=clock)
        first = mgr.create_backup()
        second = mgr.create_backup()
        assert first.filename == "backup-2024-01-15T10-30-00-000Z.sql"
        assert second.filename == "backup-2024-01-15T10-30-00-001Z.sql"
        assert len(list(backup_dir.iterdir())) == 2

    def test_execution_failure(self, manager, backup_dir, dump_runner):
        dump_runner.mode = "fail"
        with pytest.raises(BackupExecutionError):
            manager.create_backup()

    def test_partial_file_left_for_inspection(self, manager, backup_dir, dump_runner):
        dump_runner.mode = "fail"
        with pytest.raises(BackupExecutionError):
            manager.create_backup()
        leftovers = list(backup_dir.iterdir())
        assert len(leftovers) == 1
        assert leftovers[0].name.endswith(".sql.partial")
        assert leftovers[0].read_bytes() == b"-- partial"
        assert manager.list_backups() == []

    def test_failed_dump_does_not_block_next_name(self, config, dump_runner):
        clock = FakeClock()
        mgr = BackupManager(config, DATABASE_URL, dump_runner=dump_runner, clock=clock)
        dump_runner.mode = "fail"
        with pytest.raises(BackupExecutionError):
            mgr.create_backup()
        dump_runner.mode = "ok"
        record = mgr.create_backup()
        assert record.filename == "backup-2024-01-15T10-30-00-001Z.sql"

    def test_empty_output_fails_verification(self, manager, dump_runner):
        dump_runner.mode = "empty"
        with pytest.raises(BackupVerificationError):
            manager.create_backup()

    def test_missing_output_fails_verification(self, manager, dump_runner):
        dump_runner.mode = "missing"
        with pytest.raises(BackupVerificationError):
            manager.create_backup()

    def test_bad_database_url(self, config, dump_runner):
        mgr = BackupManager(config, "not-a-url", dump_runner=dump_runner)
        with pytest.raises(ConfigurationError):
            mgr.create_backup()
        assert dump_runner.calls == []

    def test_insufficient_free_space(self, backup_dir, dump_runner):
        cfg = BackupConfig(backup_directory=str(backup_dir), min_free_bytes=2 ** 62)
        mgr = BackupManager(cfg, DATABASE_URL, dump_runner=dump_runner)
        with pytest.raises(BackupExecutionError, match="free space"):
            mgr.create_backup()
        assert dump_runner.calls == []

    def test_file_permissions(self, manager, backup_dir):
        if os.name != "posix":
            pytest.skip("POSIX permissions only")
        record = manager.create_backup()
        mode = (backup_dir / record.filename).stat().st_mode & 0o777
        assert mode == 0o600

    def test_success_logged(self, manager, operation_log):
        record = manager.create_backup()
        entry = operation_log.last_operation("backup")
        assert entry["success"] is True
        assert entry["filename"] == record.filename
        assert entry["size_bytes"] == record.size_bytes

    def test_failure_logged(self, manager, operation_log, dump_runner):
        dump_runner.mode = "fail"
        with pytest.raises(BackupExecutionError):
            manager.create_backup()
        entry = operation_log.last_operation("backup")
        assert entry["success"] is False
        assert "boom" in entry["error"]

    def test_events_emitted(self, manager):
        events = []
        manager.on_event = lambda kind, data: events.append(kind)
        manager.create_backup()
        assert events[:2] == ["backup_started", "backup_completed"]

    def test_listener_failure_does_not_fail_backup(self, manager):
        def broken(kind, data):
            raise RuntimeError("listener down")
        manager.on_event = broken
        assert manager.create_backup() is not None


# ---------------------------------------------------------------------------
# Retention
# ---------------------------------------------------------------------------

class TestRetention:
    @pytest.fixture
    def clock(self):
        return FakeClock()

    @pytest.fixture
    def mgr(self, config, dump_runner, clock, operation_log):
        return BackupManager(config, DATABASE_URL, dump_runner=dump_runner,
                             operation_log=operation_log, clock=clock)

    def test_deletes_only_expired(self, mgr, backup_dir, clock):
        old = [make_snapshot(backup_dir, clock.now - timedelta(days=d)) for d in (8, 10, 30)]
        fresh = [make_snapshot(backup_dir, clock.now - timedelta(days=d)) for d in (0, 1, 6)]

        assert mgr.enforce_retention() == 3
        for p in old:
            assert not p.exists()
        for p in fresh:
            assert p.exists()

    def test_nothing_older_than_cutoff_remains(self, mgr, backup_dir, clock):
        for hours in range(0, 24 * 14, 11):
            make_snapshot(backup_dir, clock.now - timedelta(hours=hours))
        mgr.enforce_retention()
        cutoff = clock.now - timedelta(days=7)
        remaining = mgr.list_backups()
        assert remaining
        assert all(r.created_at >= cutoff for r in remaining)

    def test_idempotent(self, mgr, backup_dir, clock):
        make_snapshot(backup_dir, clock.now - timedelta(days=20))
        make_snapshot(backup_dir, clock.now - timedelta(days=1))
        assert mgr.enforce_retention() == 1
        assert mgr.enforce_retention() == 0
        assert len(mgr.list_backups()) == 1

    def test_no_expired_returns_zero(self, mgr, backup_dir, clock):
        make_snapshot(backup_dir, clock.now - timedelta(days=1))
        assert mgr.enforce_retention() == 0

    def test_empty_directory(self, mgr):
        assert mgr.enforce_retention() == 0

    def test_zero_retention_deletes_everything_older_than_now(self, backup_dir, dump_runner, clock):
        cfg = BackupConfig(backup_directory=str(backup_dir), retention_days=0)
        mgr = BackupManager(cfg, DATABASE_URL, dump_runner=dump_runner, clock=clock)
        make_snapshot(backup_dir, clock.now - timedelta(minutes=1))
        assert mgr.enforce_retention() == 1

    def test_partial_failure_continues(self, mgr, backup_dir, clock, monkeypatch):
        paths = [make_snapshot(backup_dir, clock.now - timedelta(days=d)) for d in (10, 11, 12)]
        stuck = paths[1]
        original_unlink = Path.unlink

        def flaky_unlink(self, *args, **kwargs):
            if self.name == stuck.name:
                raise PermissionError("read-only")
            return original_unlink(self, *args, **kwargs)

        monkeypatch.setattr(Path, "unlink", flaky_unlink)
        assert mgr.enforce_retention() == 2
        assert stuck.exists()
        assert not paths[0].exists()
        assert not paths[2].exists()

    def test_partial_failure_logged(self, mgr, backup_dir, clock, monkeypatch, operation_log):
        make_snapshot(backup_dir, clock.now - timedelta(days=10))

        def failing_unlink(self, *args, **kwargs):
            raise PermissionError("read-only")

        monkeypatch.setattr(Path, "unlink", failing_unlink)
        mgr.enforce_retention()
        entry = operation_log.last_operation("retention")
        assert entry["success"] is False
        assert entry["deleted_count"] == 0

    def test_runs_after_backup(self, mgr, backup_dir, clock):
        old = make_snapshot(backup_dir, clock.now - timedelta(days=30))
        mgr.create_backup()
        assert not old.exists()

    def test_new_backup_survives_zero_retention(self, backup_dir, dump_runner):
        cfg = BackupConfig(backup_directory=str(backup_dir), retention_days=0)
        mgr = BackupManager(cfg, DATABASE_URL, dump_runner=dump_runner)
        record = mgr.create_backup()
        assert (backup_dir / record.filename).exists()

    def test_retention_failure_does_not_fail_backup(self, mgr, monkeypatch):
        def explode(*args, **kwargs):
            raise RuntimeError("cleanup crashed")

        monkeypatch.setattr(mgr, "enforce_retention", explode)
        record = mgr.create_backup()
        assert record.size_bytes > 0


# ---------------------------------------------------------------------------
# Restore
# ---------------------------------------------------------------------------

class TestRestore:
    def test_restore_invokes_runner(self, manager, restore_runner):
        record = manager.create_backup()
        manager.restore(record.filename)
        descriptor, input_path, _ = restore_runner.calls[0]
        assert descriptor.database == "appdb"
        assert Path(input_path).name == record.filename

    @pytest.mark.parametrize("name", [
        "../../etc/passwd",
        "..",
        "../backup-2024-01-15T10-30-00-000Z.sql",
        "sub/backup.sql",
        "..\\windows\\system32",
        "/etc/passwd",
        "backup..sql",
        "",
        "   ",
        "evil\x00.sql",
    ])
    def test_path_traversal_rejected(self, manager, restore_runner, name):
        with pytest.raises(ConfigurationError):
            manager.restore(name)
        assert restore_runner.calls == []

    def test_symlink_escape_rejected(self, manager, backup_dir, tmp_path, restore_runner):
        backup_dir.mkdir()
        outside = tmp_path / "outside.sql"
        outside.write_text("-- not a backup")
        link = backup_dir / "link.sql"
        try:
            link.symlink_to(outside)
        except (OSError, NotImplementedError):
            pytest.skip("symlinks unsupported")
        with pytest.raises(ConfigurationError):
            manager.restore("link.sql")
        assert restore_runner.calls == []

    def test_missing_file(self, manager, restore_runner):
        with pytest.raises(BackupNotFoundError):
            manager.restore("nonexistent.sql")
        assert restore_runner.calls == []

    def test_failed_dump_leftover_not_restorable(self, manager, dump_runner,
                                                 restore_runner, backup_dir):
        dump_runner.mode = "fail"
        with pytest.raises(BackupExecutionError):
            manager.create_backup()
        (leftover,) = [p.name for p in backup_dir.iterdir()]
        assert leftover.endswith(".partial")
        with pytest.raises(BackupNotFoundError):
            manager.restore(leftover)
        assert restore_runner.calls == []

    def test_non_snapshot_file_not_restorable(self, manager, restore_runner, backup_dir):
        backup_dir.mkdir(parents=True, exist_ok=True)
        (backup_dir / "notes.txt").write_text("DROP TABLE users;")
        with pytest.raises(BackupNotFoundError):
            manager.restore("notes.txt")
        assert restore_runner.calls == []

    def test_runner_failure(self, manager, restore_runner):
        record = manager.create_backup()
        restore_runner.fail = True
        with pytest.raises(RestoreExecutionError):
            manager.restore(record.filename)

    def test_restore_logged(self, manager, operation_log, restore_runner):
        record = manager.create_backup()
        manager.restore(record.filename)
        restore_runner.fail = True
        with pytest.raises(RestoreExecutionError):
            manager.restore(record.filename)
        ops = operation_log.get_operations(operation="restore")
        assert [o["success"] for o in ops] == [False, True]


# ---------------------------------------------------------------------------
# Mutual exclusion
# ---------------------------------------------------------------------------

class TestMutualExclusion:
    def test_restore_rejected_during_backup(self, manager, dump_runner, restore_runner, backup_dir):
        make_snapshot(backup_dir, datetime.now(timezone.utc) - timedelta(hours=1))
        existing = manager.list_backups()[0].filename

        dump_runner.gate = threading.Event()
        worker = threading.Thread(target=manager.create_backup)
        worker.start()
        try:
            assert dump_runner.entered.wait(5)
            assert manager.busy
            assert manager.current_operation == "backup"
            with pytest.raises(ConflictError):
                manager.restore(existing)
            assert restore_runner.calls == []
        finally:
            dump_runner.gate.set()
            worker.join(5)
        assert not manager.busy

    def test_backup_rejected_during_restore(self, manager, dump_runner, restore_runner):
        record = manager.create_backup()
        restore_runner.gate = threading.Event()
        worker = threading.Thread(target=manager.restore, args=(record.filename,))
        worker.start()
        try:
            assert restore_runner.entered.wait(5)
            with pytest.raises(ConflictError):
                manager.create_backup()
            assert len(dump_runner.calls) == 1
        finally:
            restore_runner.gate.set()
            worker.join(5)

    def test_waiting_caller_serialized(self, manager, dump_runner, restore_runner):
        record = manager.create_backup()
        order = []

        def tracking_restore(descriptor, input_path, timeout=None):
            order.append("restore-start")
            order.append("restore-end")

        restore_runner.restore = tracking_restore
        dump_runner.gate = threading.Event()
        dump_runner.entered.clear()
        original_dump = dump_runner.dump

        def tracking_dump(descriptor, output_path, timeout=None):
            order.append("dump-start")
            original_dump(descriptor, output_path, timeout)
            order.append("dump-end")

        dump_runner.dump = tracking_dump
        backup_thread = threading.Thread(target=manager.create_backup)
        backup_thread.start()
        assert dump_runner.entered.wait(5)

        restore_thread = threading.Thread(
            target=manager.restore, args=(record.filename,), kwargs={"wait": True},
        )
        restore_thread.start()
        dump_runner.gate.set()
        backup_thread.join(5)
        restore_thread.join(5)

        assert order == ["dump-start", "dump-end", "restore-start", "restore-end"]

    def test_lock_released_after_failure(self, manager, dump_runner):
        dump_runner.mode = "fail"
        with pytest.raises(BackupExecutionError):
            manager.create_backup()
        assert not manager.busy
        dump_runner.mode = "ok"
        assert manager.create_backup() is not None


# ---------------------------------------------------------------------------
# Configuration swap
# ---------------------------------------------------------------------------

class TestUpdateConfig:
    def test_new_retention_applies(self, manager, backup_dir):
        make_snapshot(backup_dir, datetime.now(timezone.utc) - timedelta(days=3))
        assert manager.enforce_retention() == 0
        manager.update_config(manager.config.with_updates(retention_days=1))
        assert manager.enforce_retention() == 1

    def test_configure_logged(self, manager, operation_log):
        manager.update_config(manager.config.with_updates(frequency="hourly"))
        assert operation_log.last_operation("configure")["success"] is True

    def test_swaps_default_runner_command(self, backup_dir):
        cfg = BackupConfig(backup_directory=str(backup_dir))
        mgr = BackupManager(cfg, DATABASE_URL)
        mgr.update_config(cfg.with_updates(dump_command="/opt/pg16/bin/pg_dump"))
        assert mgr.dump_runner.command == "/opt/pg16/bin/pg_dump"
