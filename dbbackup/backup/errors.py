"""Exception hierarchy for backup, restore and retention operations.

Each error carries the HTTP status the admin API maps it to:

    ConfigurationError       400  caller bug, never retried
    BackupNotFoundError      404  restore target missing
    ConflictError            409  backup/restore already in flight, retryable
    BackupExecutionError     500  dump subprocess failed
    BackupVerificationError  500  dump reported success but output is empty
    RestoreExecutionError    500  restore subprocess failed
"""


class BackupError(Exception):
    """Base class for all backup subsystem errors."""

    http_status = 500


class ConfigurationError(BackupError):
    """Malformed connection string, bad setting, or unsafe filename."""

    http_status = 400


class BackupNotFoundError(BackupError):
    http_status = 404


class ConflictError(BackupError):
    """Another backup or restore holds the database lock."""

    http_status = 409


class BackupExecutionError(BackupError):
    pass


class BackupVerificationError(BackupError):
    pass


class RestoreExecutionError(BackupError):
    """The restore subprocess failed.

    The database may be partially restored; callers must not retry blindly.
    """
