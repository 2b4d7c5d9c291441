"""Backup orchestration.

Creates database snapshots, enforces the retention window and restores
snapshots back into the live database. Backup and restore share a single
lock so two dump/restore subprocesses never run against the database at
the same time.
"""

import logging
import os
import threading
import time
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path

import psutil

from dbbackup.backup.backup_config import (
    BACKUP_DIR_MODE,
    BACKUP_FILE_MODE,
    SNAPSHOT_SUFFIX,
    BackupConfig,
)
from dbbackup.backup.catalog import BackupCatalog, SnapshotRecord, snapshot_filename
from dbbackup.backup.connection import ConnectionDescriptor, parse_connection_string
from dbbackup.backup.errors import (
    BackupError,
    BackupExecutionError,
    BackupNotFoundError,
    BackupVerificationError,
    ConfigurationError,
    ConflictError,
)
from dbbackup.backup.runners import (
    DumpRunner,
    PgDumpRunner,
    PsqlRestoreRunner,
    RestoreRunner,
)

logger = logging.getLogger(__name__)


PARTIAL_SUFFIX = ".partial"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _partial_path(path: Path) -> Path:
    return path.with_name(path.name + PARTIAL_SUFFIX)


class BackupManager:
    """High-level backup orchestrator.

    Usage::

        mgr = BackupManager(config, database_url=os.environ["DATABASE_URL"])
        record = mgr.create_backup()
        mgr.list_backups()
        mgr.restore(record.filename)

    Parameters
    ----------
    config:
        BackupConfig with directory, retention and tool settings.
    database_url:
        Connection string, parsed afresh for every operation.
    dump_runner / restore_runner:
        Override the pg_dump / psql runners (tests pass fakes here).
    operation_log:
        Optional OperationLog that receives one row per operation.
    on_event:
        Optional ``callback(event_type, data)`` for live notifications.
    clock:
        Returns the current UTC time; injectable for retention tests.
    """

    def __init__(
        self,
        config: BackupConfig,
        database_url: str,
        dump_runner: DumpRunner | None = None,
        restore_runner: RestoreRunner | None = None,
        operation_log=None,
        on_event=None,
        clock=_utcnow,
    ):
        self._config = config
        self.database_url = database_url
        self.dump_runner = dump_runner or PgDumpRunner(config.dump_command)
        self.restore_runner = restore_runner or PsqlRestoreRunner(config.restore_command)
        self.operation_log = operation_log
        self.on_event = on_event
        self.clock = clock
        self.catalog = BackupCatalog(config.backup_directory)

        self._lock = threading.Lock()
        self._current_operation: str | None = None
        self._config_lock = threading.Lock()

        logger.info("Backup manager initialized with backup directory: %s",
                    config.backup_directory)
        logger.info("Backup retention: %d days, frequency: %s",
                    config.retention_days, config.frequency)

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    @property
    def config(self) -> BackupConfig:
        return self._config

    @property
    def backup_dir(self) -> Path:
        return Path(self._config.backup_directory)

    def update_config(self, config: BackupConfig):
        """Swap in a new configuration for subsequent operations.

        The backup directory and tool commands take effect for the next
        backup or restore; in-flight operations keep the old values.
        """
        with self._config_lock:
            old = self._config
            self._config = config
            self.catalog = BackupCatalog(config.backup_directory)
            if config.dump_command != old.dump_command and isinstance(self.dump_runner, PgDumpRunner):
                self.dump_runner = PgDumpRunner(config.dump_command, self.dump_runner.extra_args)
            if config.restore_command != old.restore_command and isinstance(self.restore_runner, PsqlRestoreRunner):
                self.restore_runner = PsqlRestoreRunner(config.restore_command)
        logger.info("Backup configuration updated: retention=%dd frequency=%s",
                    config.retention_days, config.frequency)
        self._log_operation("configure", True, trigger="manual")
        self._emit("config_updated", config.to_dict())

    def descriptor(self) -> ConnectionDescriptor:
        try:
            return parse_connection_string(self.database_url)
        except ConfigurationError:
            logger.error("Failed to parse DATABASE_URL")
            raise

    # ------------------------------------------------------------------
    # Mutual exclusion
    # ------------------------------------------------------------------

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    @property
    def current_operation(self) -> str | None:
        return self._current_operation

    @contextmanager
    def _exclusive(self, operation: str, wait: bool):
        """Hold the backup/restore lock for the duration of the block.

        With ``wait=False`` a held lock raises ConflictError immediately.
        """
        acquired = self._lock.acquire(blocking=wait)
        if not acquired:
            raise ConflictError(
                f"Cannot start {operation}: a {self._current_operation or 'backup/restore'} "
                "is already in progress"
            )
        self._current_operation = operation
        try:
            yield
        finally:
            self._current_operation = None
            self._lock.release()

    # ------------------------------------------------------------------
    # Backup
    # ------------------------------------------------------------------

    def _ensure_backup_dir(self):
        try:
            self.backup_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise BackupExecutionError(
                f"Cannot create backup directory {self.backup_dir}: {exc}"
            ) from exc
        try:
            os.chmod(str(self.backup_dir), BACKUP_DIR_MODE)
        except OSError:
            logger.debug("Could not set backup directory permissions")

    def _check_free_space(self):
        floor = self._config.min_free_bytes
        if floor <= 0:
            return
        free = psutil.disk_usage(str(self.backup_dir)).free
        if free < floor:
            raise BackupExecutionError(
                f"Insufficient free space in {self.backup_dir}: "
                f"{free} bytes free, {floor} required"
            )

    def _next_snapshot_path(self) -> Path:
        ts = self.clock()
        path = self.backup_dir / snapshot_filename(ts)
        while path.exists() or _partial_path(path).exists():
            ts += timedelta(milliseconds=1)
            path = self.backup_dir / snapshot_filename(ts)
        return path

    def create_backup(self, wait: bool = False, trigger: str = "manual") -> SnapshotRecord:
        """Dump the database into a new timestamped snapshot file.

        Raises ConflictError (when ``wait`` is False and a backup or restore
        is running), BackupExecutionError or BackupVerificationError.
        Retention runs afterwards and never fails the backup.
        """
        started = time.monotonic()
        path = None
        try:
            with self._exclusive("backup", wait):
                descriptor = self.descriptor()
                config = self._config
                self._ensure_backup_dir()
                self._check_free_space()

                path = self._next_snapshot_path()
                logger.info("Creating backup: %s", path.name)
                self._emit("backup_started", {"filename": path.name, "trigger": trigger})

                # Dump into <name>.partial; only a verified file gets the .sql name
                partial = _partial_path(path)
                self.dump_runner.dump(descriptor, str(partial), timeout=config.command_timeout)

                if not partial.is_file():
                    raise BackupVerificationError(f"Backup file was not created: {path.name}")
                if partial.stat().st_size == 0:
                    raise BackupVerificationError(f"Backup file is empty: {path.name}")

                try:
                    os.chmod(str(partial), BACKUP_FILE_MODE)
                except OSError:
                    logger.debug("Could not set permissions on %s", partial.name)
                try:
                    os.replace(partial, path)
                except OSError as exc:
                    raise BackupVerificationError(
                        f"Could not finalize backup {path.name}: {exc}"
                    ) from exc

                record = self.catalog.get(path.name)
                if record is None:
                    raise BackupVerificationError(f"Backup file disappeared: {path.name}")
        except BackupError as exc:
            duration = int((time.monotonic() - started) * 1000)
            if not isinstance(exc, ConflictError):
                logger.error("Backup creation failed: %s", exc)
            self._log_operation("backup", False, trigger=trigger,
                                filename=path.name if path else None,
                                duration_ms=duration, error=str(exc))
            self._emit("backup_failed", {"error": str(exc), "trigger": trigger})
            raise

        duration = int((time.monotonic() - started) * 1000)
        logger.info("Backup created successfully: %s (%.2f MB)",
                    record.filename, record.size_bytes / 1024 / 1024)
        self._log_operation("backup", True, trigger=trigger, filename=record.filename,
                            size_bytes=record.size_bytes, duration_ms=duration)
        self._emit("backup_completed", {**record.to_dict(), "trigger": trigger})

        self._cleanup_after_backup(keep=record.filename, trigger=trigger)
        return record

    def _cleanup_after_backup(self, keep: str, trigger: str):
        try:
            self.enforce_retention(keep=(keep,), trigger=trigger)
        except Exception:
            logger.exception("Retention cleanup after backup failed")

    # ------------------------------------------------------------------
    # Retention
    # ------------------------------------------------------------------

    def enforce_retention(self, keep: tuple = (), trigger: str = "manual") -> int:
        """Delete snapshots older than the retention window.

        Each file is removed independently; one failed deletion is logged
        and the rest still proceed. Names in ``keep`` are never deleted.
        Returns the number of files removed.
        """
        cutoff = self.clock() - timedelta(days=self._config.retention_days)
        expired = [
            r for r in self.catalog.list_backups()
            if r.created_at < cutoff and r.filename not in keep
        ]

        deleted = 0
        errors = []
        for record in expired:
            try:
                (self.backup_dir / record.filename).unlink()
            except FileNotFoundError:
                continue
            except OSError as exc:
                logger.error("Failed to delete old backup %s: %s", record.filename, exc)
                errors.append(f"{record.filename}: {exc}")
                continue
            deleted += 1
            logger.debug("Deleted old backup: %s", record.filename)

        if expired:
            logger.info("Retention cleanup: removed %d old backup(s)", deleted)
            self._log_operation("retention", not errors, trigger=trigger,
                                deleted_count=deleted,
                                error="; ".join(errors) or None)
            self._emit("retention_completed", {"deleted": deleted, "failed": len(errors)})
        return deleted

    # ------------------------------------------------------------------
    # Restore
    # ------------------------------------------------------------------

    def resolve_snapshot_path(self, filename: str) -> Path:
        """Map an untrusted filename to a path inside the backup directory."""
        if not isinstance(filename, str) or not filename.strip():
            raise ConfigurationError("Backup filename is required")
        if ("/" in filename or "\\" in filename or ".." in filename
                or "\x00" in filename or filename in (".", "..")):
            raise ConfigurationError(f"Invalid backup filename: {filename!r}")

        base = self.backup_dir.resolve()
        path = (base / filename).resolve()
        if path.parent != base:
            raise ConfigurationError(f"Invalid backup filename: {filename!r}")
        return path

    def _is_registered(self, path: Path) -> bool:
        """True only for files the catalog lists as snapshots.

        Leftover *.partial files from failed dumps never qualify.
        """
        return path.name.endswith(SNAPSHOT_SUFFIX) and path.is_file()

    def restore(self, filename: str, wait: bool = False, trigger: str = "manual"):
        """Replay a snapshot into the live database.

        Destructive. Raises ConfigurationError for unsafe names,
        BackupNotFoundError if the snapshot does not exist, ConflictError
        when busy and RestoreExecutionError if the restore tool fails.
        """
        started = time.monotonic()
        try:
            path = self.resolve_snapshot_path(filename)
            if not self._is_registered(path):
                raise BackupNotFoundError(f"Backup file not found: {filename}")

            with self._exclusive("restore", wait):
                descriptor = self.descriptor()
                # Re-check under the lock; retention may have removed it
                if not self._is_registered(path):
                    raise BackupNotFoundError(f"Backup file not found: {filename}")

                logger.info("Restoring from backup: %s", filename)
                self._emit("restore_started", {"filename": filename, "trigger": trigger})
                self.restore_runner.restore(descriptor, str(path),
                                            timeout=self._config.command_timeout)
        except BackupError as exc:
            duration = int((time.monotonic() - started) * 1000)
            if not isinstance(exc, ConflictError):
                logger.error("Restore failed: %s", exc)
            self._log_operation("restore", False, trigger=trigger,
                                filename=filename if isinstance(filename, str) else None,
                                duration_ms=duration, error=str(exc))
            self._emit("restore_failed", {"filename": filename, "error": str(exc)})
            raise

        duration = int((time.monotonic() - started) * 1000)
        logger.info("Database restored successfully from: %s", filename)
        self._log_operation("restore", True, trigger=trigger, filename=filename,
                            duration_ms=duration)
        self._emit("restore_completed", {"filename": filename})

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def list_backups(self) -> list[SnapshotRecord]:
        return self.catalog.list_backups()

    def disk_usage(self) -> dict | None:
        """Free/used space on the filesystem holding the backup directory."""
        target = self.backup_dir if self.backup_dir.exists() else self.backup_dir.parent
        try:
            usage = psutil.disk_usage(str(target))
        except OSError:
            return None
        return {
            "total": usage.total,
            "used": usage.used,
            "free": usage.free,
            "percent": usage.percent,
        }

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _log_operation(self, operation: str, success: bool, **fields):
        if self.operation_log is None:
            return
        try:
            self.operation_log.record(operation, success, **fields)
        except Exception:
            logger.exception("Failed to record %s operation", operation)

    def _emit(self, event_type: str, data: dict):
        if self.on_event is None:
            return
        try:
            self.on_event(event_type, data)
        except Exception:
            logger.exception("Event listener failed for %s", event_type)

    def close(self):
        if self.operation_log is not None:
            self.operation_log.close()
