"""Administrative API route handlers.

    POST /api/backup     - Create a database backup now
    GET  /api/backups    - List available backups, newest first
    POST /api/restore    - Restore the database from a backup file
    GET  /api/config     - Current backup configuration
    PUT  /api/config     - Change frequency / retention
    GET  /api/status     - Scheduler state, backup count, disk usage
    GET  /api/history    - Recent backup/restore/retention operations

Every route requires ``Authorization: Bearer <ADMIN_TOKEN>``.
"""

import hmac
import logging
from datetime import datetime, timezone

from flask import Blueprint, current_app, jsonify, request

from dbbackup.backup.backup_config import save_config_file
from dbbackup.backup.connection import mask_connection_string
from dbbackup.backup.errors import BackupError, ConfigurationError

logger = logging.getLogger(__name__)

api = Blueprint("api", __name__, url_prefix="/api")

EXTENSION_KEY = "dbbackup"

# Settings an administrator may change at runtime
CONFIGURABLE_KEYS = {
    "frequency": str,
    "retention_days": int,
    "command_timeout": float,
    "min_free_bytes": int,
}


def init_routes(
    app,
    backup_manager,
    scheduler=None,
    operation_log=None,
    admin_token: str = None,
    config_path: str = None,
    ws_handler=None,
):
    """Attach the services the route handlers use to ``app``."""
    app.extensions[EXTENSION_KEY] = {
        "backup_manager": backup_manager,
        "scheduler": scheduler,
        "operation_log": operation_log,
        "admin_token": admin_token,
        "config_path": config_path,
        "ws_handler": ws_handler,
    }


def _service(name: str):
    return current_app.extensions[EXTENSION_KEY][name]


def _error_response(exc: BackupError, message: str):
    status = exc.http_status
    if status >= 500:
        return jsonify({"error": message, "detail": str(exc)}), status
    return jsonify({"error": str(exc)}), status


# ------------------------------------------------------------------
# Authorization
# ------------------------------------------------------------------

@api.before_request
def require_admin():
    token = _service("admin_token")
    if not token:
        return jsonify({"error": "Admin access is not configured"}), 503

    header = request.headers.get("Authorization", "")
    if not header.startswith("Bearer "):
        return jsonify({"error": "Not authenticated"}), 401

    supplied = header[len("Bearer "):].strip()
    if not hmac.compare_digest(supplied.encode(), token.encode()):
        logger.warning("Rejected admin request from %s", request.remote_addr)
        return jsonify({"error": "Not authorized - admin access required"}), 403
    return None


# ------------------------------------------------------------------
# POST /api/backup
# ------------------------------------------------------------------

@api.route("/backup", methods=["POST"])
def create_backup():
    """Create a database backup and return its filename."""
    try:
        record = _service("backup_manager").create_backup(trigger="manual")
    except BackupError as exc:
        logger.error("Error creating database backup: %s", exc)
        return _error_response(exc, "Failed to create database backup")

    return jsonify({
        "success": True,
        "message": "Database backup created successfully",
        "backupFile": record.filename,
        "backup": record.to_dict(),
    })


# ------------------------------------------------------------------
# GET /api/backups
# ------------------------------------------------------------------

@api.route("/backups", methods=["GET"])
def list_backups():
    """List all snapshots in the backup directory."""
    backups = [r.to_dict() for r in _service("backup_manager").list_backups()]
    return jsonify({"backups": backups, "total": len(backups)})


# ------------------------------------------------------------------
# POST /api/restore
# ------------------------------------------------------------------

@api.route("/restore", methods=["POST"])
def restore_backup():
    """Restore the database from a backup.

    Body: {"filename": "backup-2024-01-15T10-30-00-000Z.sql"}
    """
    data = request.get_json(silent=True) or {}
    filename = data.get("filename")
    if not filename or not isinstance(filename, str):
        return jsonify({"error": "Backup filename is required"}), 400

    try:
        _service("backup_manager").restore(filename, trigger="manual")
    except BackupError as exc:
        logger.error("Error restoring database from %s: %s", filename, exc)
        return _error_response(exc, "Failed to restore database")

    return jsonify({
        "success": True,
        "message": f"Database restored successfully from {filename}",
    })


# ------------------------------------------------------------------
# GET /api/config
# ------------------------------------------------------------------

def _config_payload() -> dict:
    mgr = _service("backup_manager")
    payload = mgr.config.to_dict()
    payload["interval_seconds"] = mgr.config.interval_seconds
    payload["database_url"] = mask_connection_string(mgr.database_url or "")
    return payload


@api.route("/config", methods=["GET"])
def get_config():
    """Return current backup configuration with the password masked."""
    return jsonify(_config_payload())


# ------------------------------------------------------------------
# PUT /api/config
# ------------------------------------------------------------------

def _coerce_updates(data: dict) -> dict:
    unknown = set(data) - set(CONFIGURABLE_KEYS)
    if unknown:
        raise ConfigurationError(
            f"Cannot change: {', '.join(sorted(unknown))}. "
            f"Allowed: {', '.join(sorted(CONFIGURABLE_KEYS))}"
        )
    updates = {}
    for key, value in data.items():
        kind = CONFIGURABLE_KEYS[key]
        if value is None and key == "command_timeout":
            updates[key] = None
            continue
        if isinstance(value, bool):
            raise ConfigurationError(f"{key} must be a {kind.__name__}")
        if kind is int and isinstance(value, float) and not value.is_integer():
            raise ConfigurationError(f"{key} must be a whole number")
        try:
            updates[key] = kind(value.lower() if kind is str else value)
        except (TypeError, ValueError, AttributeError):
            raise ConfigurationError(f"{key} must be a {kind.__name__}") from None
    return updates


@api.route("/config", methods=["PUT"])
def update_config():
    """Apply configuration changes and reschedule backups if needed."""
    data = request.get_json(silent=True) or {}
    if not data or not isinstance(data, dict):
        return jsonify({"error": "No data provided"}), 400

    mgr = _service("backup_manager")
    try:
        new_config = mgr.config.with_updates(**_coerce_updates(data))
    except ConfigurationError as exc:
        return jsonify({"error": str(exc)}), 400

    mgr.update_config(new_config)

    scheduler = _service("scheduler")
    if scheduler is not None:
        scheduler.reconfigure()

    config_path = _service("config_path")
    if config_path:
        try:
            save_config_file(config_path, new_config)
        except OSError as exc:
            logger.exception("Failed to persist configuration")
            return jsonify({"error": f"Failed to save: {exc}"}), 500

    return jsonify(_config_payload())


# ------------------------------------------------------------------
# GET /api/status
# ------------------------------------------------------------------

@api.route("/status", methods=["GET"])
def get_status():
    """Scheduler state, backup inventory and disk usage."""
    mgr = _service("backup_manager")
    scheduler = _service("scheduler")
    operation_log = _service("operation_log")
    ws_handler = _service("ws_handler")

    backups = mgr.list_backups()
    last_backup = None
    if operation_log is not None:
        last_backup = operation_log.last_operation("backup")

    return jsonify({
        "status": "running",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "busy": mgr.busy,
        "current_operation": mgr.current_operation,
        "scheduler": scheduler.status() if scheduler is not None else {"running": False},
        "backup_count": len(backups),
        "total_size": sum(r.size_bytes for r in backups),
        "latest_backup": backups[0].to_dict() if backups else None,
        "last_backup_operation": last_backup,
        "disk_usage": mgr.disk_usage(),
        "websocket_clients": ws_handler.client_count if ws_handler else 0,
    })


# ------------------------------------------------------------------
# GET /api/history
# ------------------------------------------------------------------

@api.route("/history", methods=["GET"])
def get_history():
    """Recent operations from the operation log, newest first."""
    operation = request.args.get("operation")
    since = request.args.get("since")
    limit = request.args.get("limit", 50, type=int)

    operation_log = _service("operation_log")
    if operation_log is None:
        return jsonify({"operations": [], "total": 0})

    try:
        operations = operation_log.get_operations(
            operation=operation, since=since, limit=limit,
        )
    except Exception as exc:
        logger.exception("Database error fetching operation history")
        return jsonify({"error": f"Database error: {exc}"}), 500

    return jsonify({"operations": operations, "total": len(operations)})
