"""Flask application for the backup administration API.

Serves the REST API and WebSocket endpoint:

    POST /api/backup
    GET  /api/backups
    POST /api/restore
    GET  /api/config
    PUT  /api/config
    GET  /api/status
    GET  /api/history
    WS   /ws/live?token=<ADMIN_TOKEN>[&events=backup,restore_failed]
"""

import hmac
import logging
import os
from pathlib import Path

from flask import Flask, g, jsonify, request
from flask_sock import Sock

from dbbackup.backup.backup_config import Settings, load_settings
from dbbackup.backup.backup_manager import BackupManager
from dbbackup.backup.scheduler import BackupScheduler
from dbbackup.dashboard.api.routes import api, init_routes
from dbbackup.dashboard.websocket_handler import WebSocketHandler, parse_event_filter
from dbbackup.database.operation_log import OperationLog

logger = logging.getLogger(__name__)

PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
DEFAULT_CONFIG_PATH = str(PROJECT_ROOT / "config" / "config.json")
DEFAULT_HISTORY_DB = str(PROJECT_ROOT / "data" / "operations.db")


def build_services(settings: Settings, ws_handler: WebSocketHandler = None,
                   history_db: str = DEFAULT_HISTORY_DB):
    """Construct the manager, scheduler and operation log from settings."""
    operation_log = OperationLog(history_db)
    backup_manager = BackupManager(
        settings.backup,
        database_url=settings.database_url,
        operation_log=operation_log,
        on_event=ws_handler.broadcast if ws_handler else None,
    )
    scheduler = BackupScheduler(backup_manager)
    return backup_manager, scheduler, operation_log


def create_app(
    config_path: str = None,
    settings: Settings = None,
    backup_manager: BackupManager = None,
    scheduler: BackupScheduler = None,
    operation_log: OperationLog = None,
    ws_handler: WebSocketHandler = None,
    admin_token: str = None,
) -> Flask:
    """Application factory.

    Accepts pre-built service instances (for testing) or constructs
    defaults from the config file and environment. The scheduler is
    wired in but not started; the launcher owns its lifecycle.
    """
    cfg_path = config_path or DEFAULT_CONFIG_PATH
    ws_handler = ws_handler or WebSocketHandler()

    if backup_manager is None:
        settings = settings or load_settings(cfg_path)
        backup_manager, built_scheduler, operation_log = build_services(settings, ws_handler)
        scheduler = scheduler or built_scheduler
    elif backup_manager.on_event is None:
        backup_manager.on_event = ws_handler.broadcast

    if admin_token is None:
        admin_token = settings.admin_token if settings else os.environ.get("ADMIN_TOKEN")
    if not admin_token:
        logger.warning("ADMIN_TOKEN is not set; admin API requests will be refused")

    app = Flask(__name__)
    sock = Sock(app)

    init_routes(
        app,
        backup_manager=backup_manager,
        scheduler=scheduler,
        operation_log=operation_log,
        admin_token=admin_token,
        config_path=cfg_path,
        ws_handler=ws_handler,
    )
    app.register_blueprint(api)

    # WebSocket: /ws/live
    @sock.route("/ws/live")
    def ws_live(ws):
        ws_handler.register(ws, g.get("live_events"))
        try:
            while True:
                # Keep connection alive; client can send pings
                data = ws.receive(timeout=60)
                if data is None:
                    break
        except Exception as exc:
            logger.debug("WebSocket closed: %s", exc)
        finally:
            ws_handler.unregister(ws)

    @app.before_request
    def require_ws_token():
        if request.path != "/ws/live":
            return None
        supplied = request.args.get("token", "")
        if not admin_token or not hmac.compare_digest(supplied.encode(), admin_token.encode()):
            return jsonify({"error": "Not authorized - admin access required"}), 403
        try:
            g.live_events = parse_event_filter(request.args.get("events"))
        except ValueError as exc:
            return jsonify({"error": str(exc)}), 400
        return None

    @app.route("/health")
    def health():
        return jsonify({"status": "ok"})

    # Store references for test access
    app.backup_manager = backup_manager
    app.scheduler = scheduler
    app.operation_log = operation_log
    app.ws_handler = ws_handler

    return app


def main():
    import argparse

    parser = argparse.ArgumentParser(description="Database Backup Manager - Admin API")
    parser.add_argument(
        "-c", "--config",
        default=DEFAULT_CONFIG_PATH,
        help="Path to config.json",
    )
    parser.add_argument(
        "--host",
        default="127.0.0.1",
        help="Host to bind to (default: 127.0.0.1)",
    )
    parser.add_argument(
        "--port",
        default=5000,
        type=int,
        help="Port to listen on (default: 5000)",
    )
    parser.add_argument(
        "--log-level",
        default=os.environ.get("LOG_LEVEL", "INFO"),
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level",
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    app = create_app(config_path=args.config)
    logger.info("Admin API starting on http://%s:%d", args.host, args.port)
    app.run(host=args.host, port=args.port, debug=False)


if __name__ == "__main__":
    main()
