import json
import logging
import math
import os
import re
import shutil
import threading
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from logging.handlers import RotatingFileHandler
from pathlib import Path
from secrets import compare_digest
from typing import Any, Callable, Dict, Iterator, Optional

import click
from flask import (
    Blueprint,
    Flask,
    Response,
    current_app,
    g,
    has_request_context,
    jsonify,
    request,
    send_file,
)
from flask.cli import with_appcontext
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from werkzeug.datastructures import FileStorage

from .codes import normalize_code
from .config import (
    BYTES_PER_MB,
    StoragePaths,
    config_int,
    ensure_directories,
    load_config,
    merge_config,
    resolve_paths,
)
from .errors import (
    CodeSpaceExhaustedError,
    CorruptIndexError,
    ExpiredError,
    InvalidFormatError,
    InvalidMetadataError,
    NotFoundError,
    PickupError,
    StorageReadError,
    StorageWriteError,
)
from .files import FileStore
from .index import MetadataStore
from .models import FileRecord
from .retention import RetentionEngine
from .scheduler import RetentionScheduler
from .service import PickupService

LOG_FILE_MAX_BYTES = 5 * 1024 * 1024  # 5 MB max log file size
LOG_FILE_BACKUP_COUNT = 3
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
MAX_FILENAME_LENGTH = 255
_CONTROL_CHAR_PATTERN = re.compile(r"[\x00-\x1f\x7f-\x9f]")

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
numeric_level = getattr(logging, LOG_LEVEL, logging.INFO)


class RequestAwareLogger(logging.LoggerAdapter):
    """Prefix messages with the current request id inside a Flask request."""

    def process(self, msg, kwargs):
        if has_request_context():
            request_id = getattr(g, "request_id", None)
            if request_id:
                return f"request_id={request_id} {msg}", kwargs
        return msg, kwargs


lifecycle_logger = RequestAwareLogger(logging.getLogger("filedrop.lifecycle"), {})


def configure_logging(logs_dir: Path) -> Path:
    """Attach a rotating file handler for application and lifecycle logs.

    Re-running it for another directory replaces the previous handler.
    """

    logging.basicConfig(level=numeric_level, format=LOG_FORMAT)
    logs_dir.mkdir(parents=True, exist_ok=True)
    log_path = logs_dir / "application.log"
    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)

    for handler in list(root_logger.handlers):
        if getattr(handler, "_filedrop_handler", False):
            if getattr(handler, "baseFilename", "") == str(log_path):
                return log_path
            root_logger.removeHandler(handler)
            handler.close()

    file_handler = RotatingFileHandler(
        log_path,
        maxBytes=LOG_FILE_MAX_BYTES,
        backupCount=LOG_FILE_BACKUP_COUNT,
        encoding="utf-8",
    )
    file_handler.setLevel(numeric_level)
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    file_handler._filedrop_handler = True  # type: ignore[attr-defined]
    root_logger.addHandler(file_handler)
    return log_path


class UploadConcurrencyLimiter:
    """Track active uploads and enforce a configurable concurrency cap."""

    def __init__(self, limit: int) -> None:
        self._limit = max(1, int(limit))
        self._active = 0
        self._lock = threading.Lock()

    def acquire(self) -> bool:
        with self._lock:
            if self._active >= self._limit:
                return False
            self._active += 1
            return True

    def release(self) -> None:
        with self._lock:
            if self._active > 0:
                self._active -= 1

    def available_slots(self) -> int:
        with self._lock:
            return max(self._limit - self._active, 0)

    @property
    def current_limit(self) -> int:
        return self._limit


@dataclass
class FiledropState:
    paths: StoragePaths
    config: Dict[str, Any]
    index: MetadataStore
    files: FileStore
    service: PickupService
    engine: RetentionEngine
    scheduler: RetentionScheduler
    upload_limiter: UploadConcurrencyLimiter


def get_state() -> FiledropState:
    return current_app.extensions["filedrop"]


limiter = Limiter(key_func=get_remote_address)
api = Blueprint("api", __name__)


def _rate_limit(key: str) -> Callable[[], str]:
    return lambda: get_state().config[key]


def human_filesize(num: int) -> str:
    if num <= 0:
        return "0 B"
    units = ["B", "KB", "MB", "GB", "TB"]
    exponent = min(int(math.log(num, 1024)), len(units) - 1)
    value = num / (1024 ** exponent)
    return f"{value:.2f}".rstrip("0").rstrip(".") + f" {units[exponent]}"


def human_timedelta(milliseconds: int) -> str:
    if milliseconds <= 0:
        return "expired"
    minutes_total = int(milliseconds // 60000)
    days, remainder = divmod(minutes_total, 24 * 60)
    hours, minutes = divmod(remainder, 60)
    if days:
        return f"{days}d {hours}h"
    if hours:
        return f"{hours}h {minutes}m"
    return f"{minutes}m"


def clean_display_name(filename: Optional[str]) -> str:
    """Strip control characters from a client filename, keeping it readable."""

    cleaned = _CONTROL_CHAR_PATTERN.sub("", filename or "").strip()
    cleaned = cleaned.replace("\\", "/").rsplit("/", 1)[-1]
    return cleaned[:MAX_FILENAME_LENGTH]


def record_payload(record: FileRecord, now_ms: int) -> Dict[str, Any]:
    remaining = record.remaining_ms(now_ms)
    return {
        "pickup_code": record.pickup_code,
        "name": record.original_name,
        "size": record.size,
        "formatted_size": human_filesize(record.size),
        "mime_type": record.mime_type,
        "uploaded_at": record.uploaded_at,
        "expires_at": record.expires_at,
        "time_remaining": human_timedelta(remaining),
        "download_count": record.download_count,
        "description": record.description,
        "tags": record.tags,
    }


@contextmanager
def upload_slot() -> Iterator[bool]:
    upload_limiter = get_state().upload_limiter
    acquired = upload_limiter.acquire()
    try:
        yield acquired
    finally:
        if acquired:
            upload_limiter.release()


@contextmanager
def upload_stream_handler(file_storage: FileStorage) -> Iterator[FileStorage]:
    """Ensure uploaded file streams are always closed."""

    try:
        yield file_storage
    finally:
        stream = getattr(file_storage, "stream", None)
        if stream is not None:
            try:
                stream.close()
            except OSError as error:
                lifecycle_logger.warning(
                    "stream_close_failed filename=%s error=%s",
                    file_storage.filename,
                    error,
                )


def _error_response(code: str, message: str, status: int):
    return jsonify({"success": False, "error": message, "code": code}), status


@api.route("/api/files/upload", methods=["POST"])
@limiter.limit(_rate_limit("upload_rate_limit"))
def upload_file():
    with upload_slot() as acquired:
        if not acquired:
            return _error_response("TOO_MANY_UPLOADS", "Too many concurrent uploads", 503)

        upload = request.files.get("file")
        if not isinstance(upload, FileStorage) or not upload.filename:
            lifecycle_logger.warning("upload_failed reason=no_file")
            return _error_response("NO_FILE", "No file uploaded", 400)

        original_name = clean_display_name(upload.filename)
        if not original_name:
            return _error_response("INVALID_FILENAME", "Filename is not valid", 400)

        state = get_state()
        retention = request.form.get("expiryDays")
        if retention is None:
            retention = request.form.get("retention_days")

        with upload_stream_handler(upload):
            record = state.service.upload(
                upload.stream,
                original_name,
                upload.mimetype or None,
                description=request.form.get("description"),
                tags=request.form.get("tags"),
                retention_days=retention,
                source=request.remote_addr,
            )

    payload = record_payload(record, state.service.now())
    payload["expires_in"] = payload.pop("time_remaining")
    return jsonify({"success": True, "message": "File uploaded", "data": payload}), 201


@api.route("/api/files/verify/<code>")
@api.route("/api/files/info/<code>")
@limiter.limit(_rate_limit("verify_rate_limit"))
def verify_code(code: str):
    service = get_state().service
    record = service.lookup(normalize_code(code))
    lifecycle_logger.info(
        "verify_success code=%s download_count=%d", record.pickup_code, record.download_count
    )
    return jsonify({"success": True, "data": record_payload(record, service.now())})


@api.route("/api/files/download/<code>")
@limiter.limit(_rate_limit("download_rate_limit"))
def download_file(code: str):
    ticket = get_state().service.record_download(
        normalize_code(code), source=request.remote_addr
    )
    try:
        response = send_file(
            ticket.path,
            mimetype=ticket.mime_type,
            as_attachment=True,
            download_name=ticket.original_name,
            max_age=0,
        )
    except FileNotFoundError:
        lifecycle_logger.warning(
            "file_download_missing_race code=%s stored_name=%s",
            ticket.record.pickup_code,
            ticket.record.stored_name,
        )
        # The file vanished after the count was taken; this lookup purges
        # the dangling record and raises FileMissingError.
        get_state().service.lookup(ticket.record.pickup_code)
        return _error_response(NotFoundError.code, NotFoundError.message, 404)
    response.headers["Cache-Control"] = "no-cache, no-store, must-revalidate"
    response.headers["Pragma"] = "no-cache"
    response.headers["Expires"] = "0"
    return response


@api.route("/api/admin/files/<code>", methods=["DELETE"])
def delete_file(code: str):
    state = get_state()
    admin_key = state.config.get("admin_key") or ""
    provided = request.headers.get("X-Admin-Key", "")
    if not admin_key or not compare_digest(provided.encode("utf-8"), admin_key.encode("utf-8")):
        lifecycle_logger.warning("admin_delete_denied code=%s", code)
        return _error_response("UNAUTHORIZED", "Access denied", 403)

    if not state.service.delete_by_code(normalize_code(code)):
        return _error_response(NotFoundError.code, NotFoundError.message, 404)
    return jsonify({"success": True, "message": "File deleted"})


@api.route("/api/system/stats")
def system_stats():
    return jsonify({"success": True, "data": get_state().service.stats()})


@api.route("/health")
def health_check():
    state = get_state()
    checks: Dict[str, Any] = {}
    healthy = True

    try:
        checks["index_records"] = len(state.index.read_all())
        checks["index"] = "ok"
    except PickupError as error:
        checks["index"] = f"error: {str(error)[:100]}"
        healthy = False

    try:
        usage = shutil.disk_usage(state.paths.uploads_dir)
        disk_free_gb = usage.free / (1024 ** 3)
        checks["disk_space_gb"] = round(disk_free_gb, 2)
        if disk_free_gb < 1:
            checks["disk_space_status"] = "critical"
            healthy = False
        elif disk_free_gb < 5:
            checks["disk_space_status"] = "warning"
        else:
            checks["disk_space_status"] = "ok"
    except OSError as error:
        checks["disk_space_status"] = f"error: {str(error)[:100]}"
        healthy = False

    try:
        marker_file = state.paths.uploads_dir / f".health_check_{uuid.uuid4().hex}"
        marker_file.write_text("health_check", encoding="utf-8")
        marker_file.unlink(missing_ok=True)
        checks["uploads_writable"] = "ok"
    except OSError as error:
        checks["uploads_writable"] = f"error: {str(error)[:100]}"
        healthy = False

    checks["scheduler"] = state.scheduler.status()
    checks["upload_slots_available"] = state.upload_limiter.available_slots()

    return jsonify(
        {
            "status": "healthy" if healthy else "unhealthy",
            "timestamp": time.time(),
            "checks": checks,
        }
    ), 200 if healthy else 503


_ERROR_STATUS = (
    (InvalidFormatError, 400),
    (InvalidMetadataError, 400),
    (NotFoundError, 404),
    (ExpiredError, 410),
    (CodeSpaceExhaustedError, 503),
    (CorruptIndexError, 500),
    (StorageWriteError, 500),
    (StorageReadError, 500),
)


@api.app_errorhandler(PickupError)
def handle_pickup_error(error: PickupError):
    status = next(
        (code for error_type, code in _ERROR_STATUS if isinstance(error, error_type)), 500
    )
    if isinstance(error, NotFoundError):
        # A purged dangling record looks like any other unknown code.
        payload = NotFoundError(pickup_code=error.pickup_code).to_payload()
    else:
        payload = error.to_payload()

    if status >= 500:
        lifecycle_logger.error(
            "request_failed kind=%s path=%s error=%s", error.code, request.path, error
        )
    else:
        lifecycle_logger.info(
            "request_rejected kind=%s code=%s", error.code, error.pickup_code
        )
    return jsonify(payload), status


@api.app_errorhandler(413)
def handle_file_too_large(error):  # pragma: no cover - framework hook
    return _error_response("FILE_TOO_LARGE", "File too large", 413)


@api.app_errorhandler(429)
def handle_rate_limit(error):  # pragma: no cover - framework hook
    description = getattr(error, "description", "Too many requests")
    return _error_response("RATE_LIMITED", f"Rate limit exceeded: {description}", 429)


@api.before_app_request
def add_request_id() -> None:
    """Assign a request identifier for downstream logging."""

    g.request_id = request.headers.get("X-Request-ID", uuid.uuid4().hex)
    g.request_started = time.monotonic()


@api.after_app_request
def finish_request(response: Response):
    started = getattr(g, "request_started", None)
    lifecycle_logger.info(
        "request_completed method=%s path=%s status=%d duration_ms=%d",
        request.method,
        request.path,
        response.status_code,
        (time.monotonic() - started) * 1000 if started else 0,
    )
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    if hasattr(g, "request_id"):
        response.headers["X-Request-ID"] = g.request_id
    return response


@click.command("sweep")
@click.option("--deep", is_flag=True, help="Also compact backups, normalize and check consistency.")
@with_appcontext
def sweep_command(deep: bool) -> None:
    """Run retention sweeps once and print their reports."""

    engine = get_state().engine
    reports = engine.run_deep() if deep else engine.run_routine()
    click.echo(json.dumps({name: report.to_dict() for name, report in reports.items()}, indent=2))


@click.command("restore-index")
@click.option("--backup", "backup_path", type=click.Path(exists=True, dir_okay=False), default=None)
@with_appcontext
def restore_index_command(backup_path: Optional[str]) -> None:
    """Replace the index with the newest readable backup."""

    try:
        restored = get_state().index.restore_backup(Path(backup_path) if backup_path else None)
    except CorruptIndexError as error:
        raise click.ClickException(str(error)) from error
    click.echo(f"Restored {restored} records")


def create_app(
    config_overrides: Optional[Dict[str, Any]] = None,
    *,
    storage_root: Optional[Path] = None,
    start_scheduler: Optional[bool] = None,
    clock: Optional[Callable[[], int]] = None,
) -> Flask:
    """Build the Flask app around one pickup store."""

    paths = resolve_paths(storage_root)
    ensure_directories(paths)
    configure_logging(paths.logs_dir)
    config = merge_config(load_config(paths), config_overrides)

    index = MetadataStore(paths.index_path, backup_count=config_int(config, "backup_count"))
    files = FileStore(paths.uploads_dir)
    service = PickupService(
        index,
        files,
        code_length=config_int(config, "code_length"),
        max_code_attempts=config_int(config, "max_code_attempts"),
        default_retention_days=config_int(config, "retention_days"),
        min_retention_days=config_int(config, "retention_min_days"),
        max_retention_days=config_int(config, "retention_max_days"),
        clock=clock,
    )
    engine = RetentionEngine(
        index,
        files,
        orphan_grace_seconds=config["orphan_grace_minutes"] * 60,
        temp_max_age_seconds=config["orphan_grace_minutes"] * 60,
        deep_backup_count=config_int(config, "deep_backup_count"),
        clock=clock,
    )
    scheduler = RetentionScheduler(
        engine,
        cleanup_interval_minutes=config_int(config, "cleanup_interval_minutes"),
        deep_cleanup_hour=config_int(config, "deep_cleanup_hour"),
    )

    app = Flask(__name__)
    app.config["MAX_CONTENT_LENGTH"] = config_int(config, "max_upload_size_mb") * BYTES_PER_MB
    app.config["RATELIMIT_ENABLED"] = bool(config["rate_limit_enabled"])
    app.config["RATELIMIT_STORAGE_URI"] = os.environ.get("FILEDROP_RATE_LIMIT_STORAGE", "memory://")
    app.extensions["filedrop"] = FiledropState(
        paths=paths,
        config=config,
        index=index,
        files=files,
        service=service,
        engine=engine,
        scheduler=scheduler,
        upload_limiter=UploadConcurrencyLimiter(config_int(config, "max_concurrent_uploads")),
    )
    limiter.init_app(app)
    app.register_blueprint(api)
    app.cli.add_command(sweep_command)
    app.cli.add_command(restore_index_command)

    if start_scheduler is None:
        start_scheduler = bool(config["scheduler_enabled"])
    if start_scheduler:
        scheduler.start()

    lifecycle_logger.info(
        "app_created storage_root=%s scheduler=%s", paths.root, scheduler.running
    )
    return app


def main() -> None:
    app = create_app()
    host = os.environ.get("FILEDROP_HOST", "127.0.0.1")
    port = int(os.environ.get("FILEDROP_PORT", "8000"))
    app.run(host=host, port=port)
