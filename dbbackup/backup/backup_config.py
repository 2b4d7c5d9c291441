"""Backup system configuration and retention policies.

Settings come from an optional JSON config file (``"backup"`` section)
overlaid by environment variables:

    DATABASE_URL              connection string (required)
    BACKUP_DIR                snapshot directory (default ./backups)
    BACKUP_FREQUENCY          hourly | daily | weekly (default daily)
    BACKUP_RETENTION_DAYS     days to keep snapshots (default 7)
    BACKUP_DUMP_COMMAND       dump binary (default pg_dump)
    BACKUP_RESTORE_COMMAND    restore binary (default psql)
    BACKUP_COMMAND_TIMEOUT    subprocess timeout in seconds (default none)
    BACKUP_MIN_FREE_BYTES     refuse to back up below this free space
    ADMIN_TOKEN               bearer token for the admin API
"""

import json
import logging
import os
from dataclasses import asdict, dataclass, replace
from pathlib import Path

from dbbackup.backup.errors import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_BACKUP_DIR = os.path.join(os.getcwd(), "backups")
DEFAULT_FREQUENCY = "daily"
DEFAULT_RETENTION_DAYS = 7
DEFAULT_DUMP_COMMAND = "pg_dump"
DEFAULT_RESTORE_COMMAND = "psql"

FREQUENCY_INTERVALS = {
    "hourly": 60 * 60,
    "daily": 24 * 60 * 60,
    "weekly": 7 * 24 * 60 * 60,
}

# Snapshot files: backup-2024-01-15T10-30-00-000Z.sql
SNAPSHOT_PREFIX = "backup-"
SNAPSHOT_SUFFIX = ".sql"
SNAPSHOT_TIME_FORMAT = "%Y-%m-%dT%H-%M-%S"

# Owner-only access to the backup directory and snapshot files
BACKUP_DIR_MODE = 0o700
BACKUP_FILE_MODE = 0o600


@dataclass(frozen=True)
class BackupConfig:
    backup_directory: str = DEFAULT_BACKUP_DIR
    retention_days: int = DEFAULT_RETENTION_DAYS
    frequency: str = DEFAULT_FREQUENCY
    dump_command: str = DEFAULT_DUMP_COMMAND
    restore_command: str = DEFAULT_RESTORE_COMMAND
    command_timeout: float | None = None
    min_free_bytes: int = 0

    def __post_init__(self):
        if self.frequency not in FREQUENCY_INTERVALS:
            raise ConfigurationError(
                f"Invalid backup frequency {self.frequency!r}; "
                f"expected one of {', '.join(FREQUENCY_INTERVALS)}"
            )
        if not isinstance(self.retention_days, int) or self.retention_days < 0:
            raise ConfigurationError(
                f"retention_days must be a non-negative integer, got {self.retention_days!r}"
            )
        if self.command_timeout is not None and self.command_timeout <= 0:
            raise ConfigurationError("command_timeout must be positive")
        if self.min_free_bytes < 0:
            raise ConfigurationError("min_free_bytes must be non-negative")

    @property
    def interval_seconds(self) -> int:
        return FREQUENCY_INTERVALS[self.frequency]

    def with_updates(self, **changes) -> "BackupConfig":
        """Return a new config with ``changes`` applied and validated."""
        unknown = set(changes) - set(asdict(self))
        if unknown:
            raise ConfigurationError(f"Unknown config keys: {', '.join(sorted(unknown))}")
        return replace(self, **changes)

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class Settings:
    """Everything the launcher needs to compose the application."""

    backup: BackupConfig
    database_url: str | None = None
    admin_token: str | None = None


def _int_env(environ, name: str, default):
    raw = environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from None


def _float_env(environ, name: str, default):
    raw = environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from None


def read_config_file(config_path: str | None) -> dict:
    """Load the JSON config file, returning {} if it does not exist."""
    if not config_path or not os.path.isfile(config_path):
        return {}
    try:
        with open(config_path) as f:
            return json.load(f)
    except (OSError, json.JSONDecodeError) as exc:
        raise ConfigurationError(f"Could not read config file {config_path}: {exc}") from exc


def load_settings(config_path: str | None = None, environ=None) -> Settings:
    """Build Settings from the config file and the environment.

    Environment variables win over file values.
    """
    environ = os.environ if environ is None else environ
    file_cfg = read_config_file(config_path).get("backup", {})

    backup = BackupConfig(
        backup_directory=environ.get(
            "BACKUP_DIR", file_cfg.get("backup_directory", DEFAULT_BACKUP_DIR)
        ),
        retention_days=_int_env(
            environ, "BACKUP_RETENTION_DAYS",
            file_cfg.get("retention_days", DEFAULT_RETENTION_DAYS),
        ),
        frequency=environ.get(
            "BACKUP_FREQUENCY", file_cfg.get("frequency", DEFAULT_FREQUENCY)
        ).lower(),
        dump_command=environ.get(
            "BACKUP_DUMP_COMMAND", file_cfg.get("dump_command", DEFAULT_DUMP_COMMAND)
        ),
        restore_command=environ.get(
            "BACKUP_RESTORE_COMMAND",
            file_cfg.get("restore_command", DEFAULT_RESTORE_COMMAND),
        ),
        command_timeout=_float_env(
            environ, "BACKUP_COMMAND_TIMEOUT", file_cfg.get("command_timeout")
        ),
        min_free_bytes=_int_env(
            environ, "BACKUP_MIN_FREE_BYTES", file_cfg.get("min_free_bytes", 0)
        ),
    )

    settings = Settings(
        backup=backup,
        database_url=environ.get("DATABASE_URL"),
        admin_token=environ.get("ADMIN_TOKEN") or None,
    )
    logger.debug(
        "Configuration loaded: dir=%s frequency=%s retention=%dd",
        backup.backup_directory, backup.frequency, backup.retention_days,
    )
    return settings


def save_config_file(config_path: str, config: BackupConfig):
    """Write ``config`` into the ``"backup"`` section of the JSON file."""
    data = read_config_file(config_path)
    data["backup"] = config.to_dict()
    path = Path(config_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data, indent=4))
