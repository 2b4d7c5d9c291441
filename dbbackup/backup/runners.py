"""External dump and restore tools.

The backup manager talks to the database only through two single-method
interfaces so tests can substitute fakes:

    DumpRunner.dump(descriptor, output_path, timeout)
    RestoreRunner.restore(descriptor, input_path, timeout)

The PostgreSQL implementations shell out to ``pg_dump`` and ``psql``. The
password travels in ``PGPASSWORD`` inside an environment mapping built for
that one child process; it never appears on the command line and the
parent's ``os.environ`` is never modified.
"""

import logging
import os
import subprocess
from typing import Protocol

from dbbackup.backup.connection import ConnectionDescriptor
from dbbackup.backup.errors import BackupExecutionError, RestoreExecutionError

logger = logging.getLogger(__name__)

# Trailing stderr characters kept in error messages
STDERR_TAIL_CHARS = 2000


class DumpRunner(Protocol):
    def dump(self, descriptor: ConnectionDescriptor, output_path: str,
             timeout: float | None = None) -> None:
        ...


class RestoreRunner(Protocol):
    def restore(self, descriptor: ConnectionDescriptor, input_path: str,
                timeout: float | None = None) -> None:
        ...


def _connection_args(descriptor: ConnectionDescriptor) -> list[str]:
    return [
        "-h", descriptor.host,
        "-p", str(descriptor.port),
        "-U", descriptor.user,
        "-d", descriptor.database,
    ]


def _run(cmd: list[str], env: dict, timeout: float | None, error_cls, tool: str):
    """Run ``cmd`` and translate every failure mode into ``error_cls``."""
    try:
        result = subprocess.run(
            cmd,
            env=env,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except FileNotFoundError:
        raise error_cls(
            f"{tool} not found. Please install PostgreSQL client tools."
        ) from None
    except subprocess.TimeoutExpired:
        raise error_cls(f"{tool} timed out after {timeout}s") from None
    except OSError as exc:
        raise error_cls(f"{tool} could not be started: {exc}") from exc

    if result.returncode != 0:
        stderr = (result.stderr or "").strip()[-STDERR_TAIL_CHARS:]
        raise error_cls(f"{tool} exited with status {result.returncode}: {stderr}")

    if result.stderr:
        logger.debug("%s stderr: %s", tool, result.stderr.strip())


class PgDumpRunner:
    """Dump a database to a plain SQL file with ``pg_dump``."""

    def __init__(self, command: str = "pg_dump", extra_args: list[str] | None = None):
        self.command = command
        self.extra_args = list(extra_args or ["--no-owner", "--no-acl"])

    def build_command(self, descriptor: ConnectionDescriptor, output_path: str) -> list[str]:
        return [self.command, *_connection_args(descriptor), *self.extra_args,
                "-f", str(output_path)]

    def dump(self, descriptor: ConnectionDescriptor, output_path: str,
             timeout: float | None = None) -> None:
        cmd = self.build_command(descriptor, output_path)
        env = descriptor.credentials_env(os.environ)
        logger.debug("Running %s for database %s on %s:%d",
                     self.command, descriptor.database, descriptor.host, descriptor.port)
        _run(cmd, env, timeout, BackupExecutionError, self.command)


class PsqlRestoreRunner:
    """Replay a plain SQL snapshot into the database with ``psql``."""

    def __init__(self, command: str = "psql"):
        self.command = command

    def build_command(self, descriptor: ConnectionDescriptor, input_path: str) -> list[str]:
        # Stop at the first error so a broken snapshot fails loudly
        return [self.command, *_connection_args(descriptor),
                "-v", "ON_ERROR_STOP=1", "-f", str(input_path)]

    def restore(self, descriptor: ConnectionDescriptor, input_path: str,
                timeout: float | None = None) -> None:
        cmd = self.build_command(descriptor, input_path)
        env = descriptor.credentials_env(os.environ)
        logger.debug("Running %s against database %s on %s:%d",
                     self.command, descriptor.database, descriptor.host, descriptor.port)
        _run(cmd, env, timeout, RestoreExecutionError, self.command)
