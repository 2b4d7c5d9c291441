"""Background scheduler for periodic backups.

Two states: stopped (initial) and running. ``start()`` runs one backup
immediately and then one per interval on a daemon thread; ``stop()``
cancels future ticks. A failed tick is logged and the loop carries on.
"""

import logging
import threading
from datetime import datetime, timezone

from dbbackup.backup.backup_manager import BackupManager

logger = logging.getLogger(__name__)


class BackupScheduler:
    """Drives ``BackupManager.create_backup`` on a fixed interval.

    ``interval_seconds`` overrides the interval derived from the manager's
    configured frequency (hourly/daily/weekly).
    """

    def __init__(self, backup_manager: BackupManager, interval_seconds: float | None = None,
                 join_timeout: float = 5.0):
        self.backup_manager = backup_manager
        self._interval_override = interval_seconds
        self.join_timeout = join_timeout

        self._lock = threading.Lock()
        self._thread: threading.Thread | None = None
        self._stop_event: threading.Event | None = None

        self._stats_lock = threading.Lock()
        self.last_run: str | None = None
        self.last_error: str | None = None
        self.run_count = 0
        self.failure_count = 0

    @property
    def interval(self) -> float:
        if self._interval_override is not None:
            return self._interval_override
        return self.backup_manager.config.interval_seconds

    @property
    def running(self) -> bool:
        with self._lock:
            return self._thread is not None and self._thread.is_alive()

    def start(self, run_immediately: bool = True):
        """Start (or restart) the schedule. Never leaves two loops running."""
        with self._lock:
            self._stop_locked()
            interval = self.interval
            stop_event = threading.Event()
            thread = threading.Thread(
                target=self._run,
                args=(stop_event, interval, run_immediately),
                daemon=True,
                name="backup-scheduler",
            )
            self._stop_event = stop_event
            self._thread = thread
            thread.start()
        logger.info("Scheduled backups started (every %s, %ss)",
                    self.backup_manager.config.frequency, interval)

    def stop(self):
        with self._lock:
            was_running = self._stop_locked()
        if was_running:
            logger.info("Scheduled backups stopped")

    def reconfigure(self, interval_seconds: float | None = None):
        """Pick up a new interval; restarts the loop if it is running.

        The restart does not trigger an extra immediate backup.
        """
        if interval_seconds is not None:
            self._interval_override = interval_seconds
        if self.running:
            self.start(run_immediately=False)

    def status(self) -> dict:
        with self._stats_lock:
            stats = {
                "last_run": self.last_run,
                "last_error": self.last_error,
                "run_count": self.run_count,
                "failure_count": self.failure_count,
            }
        return {
            "running": self.running,
            "frequency": self.backup_manager.config.frequency,
            "interval_seconds": self.interval,
            **stats,
        }

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _stop_locked(self) -> bool:
        thread, stop_event = self._thread, self._stop_event
        self._thread = None
        self._stop_event = None
        if thread is None:
            return False
        stop_event.set()
        if thread is not threading.current_thread():
            # A dump already in flight is allowed to finish on its own
            thread.join(timeout=self.join_timeout)
        return True

    def _run(self, stop_event: threading.Event, interval: float, run_immediately: bool):
        if run_immediately and not stop_event.is_set():
            self._tick("Initial")
        while not stop_event.wait(interval):
            self._tick("Scheduled")

    def _tick(self, label: str):
        with self._stats_lock:
            self.last_run = datetime.now(timezone.utc).isoformat()
            self.run_count += 1
        try:
            self.backup_manager.create_backup(wait=True, trigger="scheduled")
        except Exception as exc:
            with self._stats_lock:
                self.failure_count += 1
                self.last_error = str(exc)
            logger.exception("%s backup failed: %s", label, exc)
        else:
            with self._stats_lock:
                self.last_error = None
