"""Read-only view of the snapshots in the backup directory.

There is no index: every query lists the directory, so the catalog is
always consistent with what is actually on disk.
"""

import logging
import os
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path

from dbbackup.backup.backup_config import (
    SNAPSHOT_PREFIX,
    SNAPSHOT_SUFFIX,
    SNAPSHOT_TIME_FORMAT,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SnapshotRecord:
    filename: str
    created_at: datetime
    size_bytes: int

    def to_dict(self) -> dict:
        return {
            "filename": self.filename,
            "date": self.created_at.isoformat(),
            "size": self.size_bytes,
        }


def snapshot_filename(ts: datetime) -> str:
    """Build the filesystem-safe snapshot name for a UTC timestamp.

    2024-01-15T10:30:00.000Z  ->  backup-2024-01-15T10-30-00-000Z.sql
    """
    ts = ts.astimezone(timezone.utc)
    millis = ts.microsecond // 1000
    return f"{SNAPSHOT_PREFIX}{ts.strftime(SNAPSHOT_TIME_FORMAT)}-{millis:03d}Z{SNAPSHOT_SUFFIX}"


def parse_snapshot_filename(filename: str) -> datetime | None:
    """Decode the creation time from a snapshot name, or None."""
    if not (filename.startswith(SNAPSHOT_PREFIX) and filename.endswith(SNAPSHOT_SUFFIX)):
        return None
    stamp = filename[len(SNAPSHOT_PREFIX):-len(SNAPSHOT_SUFFIX)]
    if not stamp.endswith("Z") or len(stamp) != 24:
        return None
    try:
        base = datetime.strptime(stamp[:19], SNAPSHOT_TIME_FORMAT)
        millis = int(stamp[20:23])
    except ValueError:
        return None
    if stamp[19] != "-":
        return None
    return base.replace(tzinfo=timezone.utc) + timedelta(milliseconds=millis)


class BackupCatalog:
    """Enumerates ``*.sql`` snapshots in a single flat directory."""

    def __init__(self, backup_directory: str):
        self.backup_directory = Path(backup_directory)

    def _record_for(self, path: Path) -> SnapshotRecord | None:
        try:
            st = path.stat()
        except OSError:
            # Deleted between listdir and stat
            return None
        created_at = parse_snapshot_filename(path.name)
        if created_at is None:
            created_at = datetime.fromtimestamp(st.st_mtime, tz=timezone.utc)
        return SnapshotRecord(
            filename=path.name,
            created_at=created_at,
            size_bytes=st.st_size,
        )

    def list_backups(self) -> list[SnapshotRecord]:
        """All snapshots, newest first. Empty if the directory is missing."""
        try:
            names = os.listdir(self.backup_directory)
        except FileNotFoundError:
            return []
        except OSError as exc:
            logger.error("Failed to list backups in %s: %s", self.backup_directory, exc)
            return []

        records = []
        for name in names:
            if not name.endswith(SNAPSHOT_SUFFIX):
                continue
            path = self.backup_directory / name
            if not path.is_file():
                continue
            record = self._record_for(path)
            if record is not None:
                records.append(record)

        records.sort(key=lambda r: (r.created_at, r.filename), reverse=True)
        return records

    def get(self, filename: str) -> SnapshotRecord | None:
        if not filename.endswith(SNAPSHOT_SUFFIX):
            return None
        path = self.backup_directory / filename
        if not path.is_file():
            return None
        return self._record_for(path)
