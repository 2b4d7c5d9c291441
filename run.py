"""Unified launcher for the Database Backup Manager.

Starts both the backup scheduler and the admin API in a single process.
The scheduler runs on a background thread while the Flask app runs on the
main thread.

Usage:
    python run.py
    python run.py --config config/config.json --port 5000
    python run.py --scheduler-only
    python run.py --api-only
    python run.py --backup-now
    python run.py --list
    python run.py --restore backup-2024-01-15T10-30-00-000Z.sql
"""

import argparse
import logging
import os
import signal
import sys
import threading
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parent
DEFAULT_CONFIG = str(PROJECT_ROOT / "config" / "config.json")

logger = logging.getLogger("dbbackup")


def make_signal_handler(stop_event: threading.Event, interrupt: bool):
    """SIGINT/SIGTERM handler that sets ``stop_event``.

    With ``interrupt`` it also raises KeyboardInterrupt so a blocking
    ``app.run()`` on the main thread returns.
    """

    def handle_signal(signum, frame):
        logger.info("Received signal %s, shutting down...", signum)
        stop_event.set()
        if interrupt:
            raise KeyboardInterrupt

    return handle_signal


def run_one_shot(args, backup_manager) -> int:
    """Handle --backup-now / --list / --restore. Returns an exit code."""
    from dbbackup.backup.errors import BackupError

    try:
        if args.list:
            for record in backup_manager.list_backups():
                print(f"{record.filename}\t{record.created_at.isoformat()}\t{record.size_bytes}")
            return 0
        if args.backup_now:
            record = backup_manager.create_backup(wait=True)
            print(record.filename)
            return 0
        if args.restore:
            backup_manager.restore(args.restore, wait=True)
            return 0
    except BackupError as exc:
        logger.error("%s", exc)
        return 1
    return 0


def main():
    parser = argparse.ArgumentParser(
        description="Database Backup Manager",
    )
    parser.add_argument(
        "-c", "--config",
        default=DEFAULT_CONFIG,
        help="Path to config.json (default: config/config.json)",
    )
    parser.add_argument(
        "--host",
        default="127.0.0.1",
        help="Admin API host (default: 127.0.0.1)",
    )
    parser.add_argument(
        "--port",
        default=5000,
        type=int,
        help="Admin API port (default: 5000)",
    )
    parser.add_argument(
        "--log-level",
        default=os.environ.get("LOG_LEVEL", "INFO"),
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level",
    )
    parser.add_argument(
        "--scheduler-only",
        action="store_true",
        help="Run only the backup scheduler (no admin API)",
    )
    parser.add_argument(
        "--api-only",
        action="store_true",
        help="Run only the admin API (no scheduled backups)",
    )
    one_shot = parser.add_mutually_exclusive_group()
    one_shot.add_argument(
        "--backup-now",
        action="store_true",
        help="Create one backup and exit",
    )
    one_shot.add_argument(
        "--list",
        action="store_true",
        help="List backups and exit",
    )
    one_shot.add_argument(
        "--restore",
        metavar="FILENAME",
        help="Restore the database from a backup file and exit",
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    if args.scheduler_only and args.api_only:
        parser.error("Cannot use --scheduler-only and --api-only together")

    from dbbackup.backup.backup_config import load_settings
    from dbbackup.backup.errors import ConfigurationError
    from dbbackup.dashboard.app import build_services, create_app
    from dbbackup.dashboard.websocket_handler import WebSocketHandler

    try:
        settings = load_settings(args.config)
    except ConfigurationError as exc:
        parser.error(str(exc))
    if not settings.database_url:
        parser.error("DATABASE_URL is required")

    ws_handler = WebSocketHandler()
    backup_manager, scheduler, operation_log = build_services(settings, ws_handler)

    if args.backup_now or args.list or args.restore:
        code = run_one_shot(args, backup_manager)
        backup_manager.close()
        sys.exit(code)

    stop_event = threading.Event()
    handle_signal = make_signal_handler(stop_event, interrupt=not args.scheduler_only)
    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    # Scheduler only
    if args.scheduler_only:
        logger.info("Starting backup scheduler (no admin API)...")
        scheduler.start()
        try:
            while not stop_event.is_set():
                stop_event.wait(timeout=1.0)
        finally:
            scheduler.stop()
            backup_manager.close()
        return

    app = create_app(
        config_path=args.config,
        settings=settings,
        backup_manager=backup_manager,
        scheduler=scheduler,
        operation_log=operation_log,
        ws_handler=ws_handler,
        admin_token=settings.admin_token,
    )

    # API only
    if args.api_only:
        logger.info("Starting admin API (no scheduled backups)...")
        try:
            app.run(host=args.host, port=args.port, debug=False)
        except KeyboardInterrupt:
            pass
        finally:
            backup_manager.close()
            logger.info("System stopped.")
        return

    # Both: scheduler in background thread, API on main thread
    logger.info("Starting Database Backup Manager...")
    logger.info("  Scheduler: %s backups into %s",
                settings.backup.frequency, settings.backup.backup_directory)
    logger.info("  Admin API: http://%s:%d", args.host, args.port)

    scheduler.start()
    try:
        app.run(host=args.host, port=args.port, debug=False)
    except KeyboardInterrupt:
        pass
    finally:
        scheduler.stop()
        backup_manager.close()
        logger.info("System stopped.")


if __name__ == "__main__":
    main()
