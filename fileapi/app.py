import atexit
import base64
import binascii
import logging
import os
import re
import shutil
import time
import uuid
from contextlib import contextmanager
from functools import wraps
from logging.handlers import RotatingFileHandler
from pathlib import Path
from secrets import compare_digest
from typing import Any, Callable, Dict, Iterator, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from dotenv import load_dotenv
from flask import (
    Flask,
    Response,
    current_app,
    g,
    has_request_context,
    jsonify,
    request,
    send_from_directory,
)
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from werkzeug.datastructures import FileStorage
from werkzeug.exceptions import HTTPException

from .engine import StorageEngine
from .paths import ValidationError, validate_path
from .storage import (
    EXPOSED,
    HIDDEN,
    LOGS_DIR,
    PRIVATE_DIR,
    PUBLIC_DIR,
    ItemNotFoundError,
    VisibilityStore,
    ensure_directories,
)

load_dotenv()

LOG_FILE_MAX_BYTES = 5 * 1024 * 1024  # 5 MB max log file size
LOG_FILE_BACKUP_COUNT = 3  # Number of log file backups to keep
BYTES_PER_MB = 1024 * 1024

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
numeric_level = getattr(logging, LOG_LEVEL, logging.INFO)
logging.basicConfig(
    level=numeric_level,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)

_CONTROL_CHAR_PATTERN = re.compile(r"[\x00-\x1f\x7f-\x9f\n\r]")
_TRUTHY_VALUES = {"1", "true", "yes", "on"}


def _safe_int_env(key: str, default: int, min_value: int = 1) -> int:
    """Safely parse integer environment variable with error handling."""
    try:
        return max(min_value, int(os.environ.get(key, str(default))))
    except (TypeError, ValueError):
        logging.getLogger("fileapi.config").warning(
            "Invalid value for %s: %s. Using default: %d",
            key, os.environ.get(key), default
        )
        return default


def _get_optional_bool_env(env_key: str) -> Optional[bool]:
    raw_value = os.environ.get(env_key)
    if raw_value is None:
        return None
    normalized = raw_value.strip().lower()
    if normalized in _TRUTHY_VALUES:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return None


PUBLIC_URL = os.environ.get("PUBLIC_URL", "http://localhost:3000")
API_TOKEN = os.environ.get("API_TOKEN", "")
MAX_UPLOAD_SIZE_MB = _safe_int_env("MAX_UPLOAD_SIZE_MB", 50)
API_RATE_LIMIT_PER_MINUTE = _safe_int_env("FILEAPI_RATE_LIMIT_PER_MINUTE", 200)
DOWNLOAD_RATE_LIMIT_PER_MINUTE = _safe_int_env("FILEAPI_DOWNLOAD_RATE_LIMIT_PER_MINUTE", 600)
TEMP_CLEANUP_INTERVAL_MINUTES = _safe_int_env("FILEAPI_TEMP_CLEANUP_MINUTES", 60)
SCHEDULER_ENABLED = _get_optional_bool_env("FILEAPI_SCHEDULER_ENABLED") is not False
CORS_ORIGINS = os.environ.get("FILEAPI_CORS_ORIGINS", "*").split(",")


def sanitize_log_value(value: Any) -> Any:
    """Remove control characters from log values to prevent log injection."""

    if isinstance(value, str):
        escaped = value.replace("\n", "\\n").replace("\r", "\\r")
        return _CONTROL_CHAR_PATTERN.sub(
            lambda match: f"\\x{ord(match.group()):02x}", escaped
        )
    return value


class RequestAwareLogger:
    """Logger wrapper that injects request IDs into log messages."""

    def __init__(self, logger: logging.Logger) -> None:
        self._logger = logger

    def _with_request(self, message: str) -> str:
        if has_request_context():
            request_id = getattr(g, "request_id", None)
            if request_id:
                return f"request_id={request_id} {message}"
        return message

    def info(self, msg: str, *args, **kwargs) -> None:
        self._logger.info(self._with_request(msg), *args, **kwargs)

    def warning(self, msg: str, *args, **kwargs) -> None:
        self._logger.warning(self._with_request(msg), *args, **kwargs)

    def critical(self, msg: str, *args, **kwargs) -> None:
        self._logger.critical(self._with_request(msg), *args, **kwargs)

    def exception(self, msg: str, *args, **kwargs) -> None:
        self._logger.exception(self._with_request(msg), *args, **kwargs)

    def __getattr__(self, name: str):  # pragma: no cover - passthrough
        return getattr(self._logger, name)


def _configure_file_logging() -> Path:
    """Attach a rotating file handler for application and lifecycle logs."""

    ensure_directories()
    log_path = LOGS_DIR / "application.log"
    root_logger = logging.getLogger()
    formatter = logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s")

    for handler in root_logger.handlers:
        if isinstance(handler, RotatingFileHandler) and getattr(handler, "baseFilename", "") == str(log_path):
            handler.setLevel(numeric_level)
            handler.setFormatter(formatter)
            return log_path

    file_handler = RotatingFileHandler(
        log_path,
        maxBytes=LOG_FILE_MAX_BYTES,
        backupCount=LOG_FILE_BACKUP_COUNT,
        encoding="utf-8",
    )
    file_handler.setLevel(numeric_level)
    file_handler.setFormatter(formatter)
    root_logger.addHandler(file_handler)
    return log_path


APP_LOG_PATH = _configure_file_logging()

_base_lifecycle_logger = logging.getLogger("fileapi.lifecycle")
_base_lifecycle_logger.setLevel(numeric_level)
lifecycle_logger = RequestAwareLogger(_base_lifecycle_logger)

store = VisibilityStore(PUBLIC_DIR, PRIVATE_DIR)
store.ensure_roots()
engine = StorageEngine(store, PUBLIC_URL)

app = Flask(__name__)
app.config["MAX_CONTENT_LENGTH"] = MAX_UPLOAD_SIZE_MB * BYTES_PER_MB
app.config["API_TOKEN"] = API_TOKEN
app.logger.setLevel(numeric_level)
CORS(app, origins=[origin.strip() for origin in CORS_ORIGINS if origin.strip()])

if not API_TOKEN:
    lifecycle_logger.critical(
        "API_TOKEN is not set; every authenticated request will be rejected."
    )

limiter = Limiter(
    key_func=get_remote_address,
    app=app,
    storage_uri=os.environ.get("FILEAPI_RATE_LIMIT_STORAGE", "memory://"),
)


def api_rate_limit_string() -> str:
    return f"{API_RATE_LIMIT_PER_MINUTE} per minute"


def download_rate_limit_string() -> str:
    return f"{DOWNLOAD_RATE_LIMIT_PER_MINUTE} per minute"


def cleanup_temp_files() -> int:
    removed = store.cleanup_temp_files()
    if removed:
        lifecycle_logger.info("temp_cleanup_completed removed=%d", removed)
    return removed


scheduler: Optional[BackgroundScheduler] = None
if SCHEDULER_ENABLED:
    scheduler = BackgroundScheduler(daemon=True)
    scheduler.add_job(
        func=cleanup_temp_files,
        trigger="interval",
        minutes=TEMP_CLEANUP_INTERVAL_MINUTES,
        id="cleanup_temp_files",
        name="Clean up temporary upload files",
        replace_existing=True,
    )
    scheduler.start()
    atexit.register(lambda: scheduler.shutdown(wait=False))


def _coerce_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in _TRUTHY_VALUES
    return bool(value)


def _json_body() -> Dict[str, Any]:
    payload = request.get_json(silent=True)
    return payload if isinstance(payload, dict) else {}


def _error_response(message: str, status: int) -> Response:
    response = jsonify({"status": "error", "message": message})
    response.status_code = status
    return response


def _ok_response(action: str, message: str, result: Dict[str, Any]) -> Response:
    payload: Dict[str, Any] = {
        "status": "ok",
        "action": action,
        "visibility": None,
        "url": None,
        "folder": None,
        "file": None,
        "message": message,
    }
    payload.update(result)
    return jsonify(payload)


def _extract_bearer_token() -> Optional[str]:
    authorization = request.headers.get("Authorization", "").strip()
    if not authorization.lower().startswith("bearer "):
        return None
    return authorization[7:].strip()


def require_api_token(view: Callable):
    @wraps(view)
    def wrapped(*args, **kwargs):
        provided = _extract_bearer_token()
        if provided is None:
            lifecycle_logger.warning(
                "api_auth_missing endpoint=%s method=%s", request.endpoint, request.method
            )
            return _error_response("Unauthorized", 401)

        expected = current_app.config.get("API_TOKEN") or ""
        if not expected or not compare_digest(provided.encode("utf-8"), expected.encode("utf-8")):
            lifecycle_logger.warning(
                "api_auth_failed endpoint=%s method=%s", request.endpoint, request.method
            )
            return _error_response("Invalid token", 401)

        return view(*args, **kwargs)

    return wrapped


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
                    sanitize_log_value(file_storage.filename or ""),
                    sanitize_log_value(str(error)),
                )


@app.before_request
def add_request_id() -> None:
    """Assign a request identifier for downstream logging."""

    g.request_id = request.headers.get("X-Request-ID", uuid.uuid4().hex)


@app.after_request
def log_request_completion(response: Response):
    """Emit lifecycle logs for every completed request."""

    lifecycle_logger.info(
        "request_completed method=%s path=%s status=%d",
        request.method,
        sanitize_log_value(request.path),
        response.status_code,
    )
    return response


@app.after_request
def add_security_headers(response: Response):
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    if hasattr(g, "request_id"):
        response.headers["X-Request-ID"] = g.request_id
    return response


@app.errorhandler(ValidationError)
def handle_validation_error(error: ValidationError):
    lifecycle_logger.info(
        "request_rejected path=%s reason=%s",
        sanitize_log_value(request.path),
        error.message,
    )
    return _error_response(error.message, 400)


@app.errorhandler(ItemNotFoundError)
def handle_item_not_found(error: ItemNotFoundError):
    return _error_response(error.message, 404)


_HTTP_ERROR_MESSAGES = {
    404: "Endpoint not found",
    405: "Method not allowed",
    413: "File too large",
    429: "Rate limit exceeded",
}


@app.errorhandler(HTTPException)
def handle_http_error(error: HTTPException):
    status = error.code or 500
    message = _HTTP_ERROR_MESSAGES.get(status, error.name)
    return _error_response(message, status)


@app.errorhandler(Exception)
def handle_unexpected_error(error: Exception):
    lifecycle_logger.exception(
        "request_failed method=%s path=%s",
        request.method,
        sanitize_log_value(request.path),
    )
    return _error_response("Internal server error", 500)


@app.route("/health")
def health_check():
    checks: Dict[str, Any] = {}
    healthy = True

    for visibility, root in ((EXPOSED, PUBLIC_DIR), (HIDDEN, PRIVATE_DIR)):
        try:
            root.mkdir(parents=True, exist_ok=True)
            probe_file = root / f".health_check_{uuid.uuid4().hex}"
            probe_file.write_text("health_check", encoding="utf-8")
            probe_file.unlink(missing_ok=True)
            checks[f"{visibility}_root_writable"] = "ok"
        except OSError as error:
            checks[f"{visibility}_root_writable"] = f"error: {str(error)[:100]}"
            healthy = False

    try:
        usage = shutil.disk_usage(PUBLIC_DIR)
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
        checks["disk_space_gb"] = 0
        checks["disk_space_status"] = f"error: {str(error)[:100]}"
        healthy = False

    checks["scheduler_running"] = bool(scheduler is not None and scheduler.running)
    checks["token_configured"] = bool(current_app.config.get("API_TOKEN"))

    status = "healthy" if healthy else "unhealthy"
    code = 200 if healthy else 503
    return jsonify({"status": status, "timestamp": time.time(), "checks": checks}), code


@app.route("/upload", methods=["POST"])
@require_api_token
@limiter.limit(lambda: api_rate_limit_string())
def upload():
    """Store a file sent as raw bytes, multipart form data or base64 JSON."""

    if request.mimetype == "application/octet-stream":
        folder = request.headers.get("X-Folder")
        filename = request.headers.get("X-Filename")
        expose = _coerce_bool(request.headers.get("X-Expose", ""))
        if not folder or not filename:
            raise ValidationError("Missing required headers: X-Folder, X-Filename")
        result = engine.store_file(folder, filename, request.stream, expose=expose)

    elif request.mimetype == "multipart/form-data":
        file_storage = request.files.get("file")
        folder = request.form.get("folder")
        filename = request.form.get("filename") or (file_storage.filename if file_storage else None)
        expose = _coerce_bool(request.form.get("expose", ""))
        if not folder or file_storage is None or not filename:
            raise ValidationError("Missing required fields: folder, file")
        with upload_stream_handler(file_storage):
            result = engine.store_file(folder, filename, file_storage.stream, expose=expose)

    else:
        payload = _json_body()
        folder = payload.get("folder")
        filename = payload.get("filename")
        encoded = payload.get("base64")
        if not folder or not filename or not encoded:
            raise ValidationError("Missing required fields: folder, filename, base64")
        if not isinstance(folder, str) or not isinstance(filename, str) or not isinstance(encoded, str):
            raise ValidationError("Fields folder, filename and base64 must be strings")
        try:
            data = base64.b64decode(encoded)
        except (binascii.Error, ValueError):
            raise ValidationError("Invalid base64 payload") from None
        result = engine.store_file(
            folder, filename, data, expose=_coerce_bool(payload.get("expose", False))
        )

    lifecycle_logger.info(
        "file_uploaded folder=%s file=%s visibility=%s",
        result["folder"],
        result["file"],
        result["visibility"],
    )
    return _ok_response("file_uploaded", "File uploaded", result)


@app.route("/mkdir", methods=["POST"])
@require_api_token
@limiter.limit(lambda: api_rate_limit_string())
def make_folder():
    payload = _json_body()
    folder = payload.get("folder")
    if not isinstance(folder, str) or not folder:
        raise ValidationError("Folder name is required")

    result = engine.create_folder(folder, expose=_coerce_bool(payload.get("expose", False)))
    return _ok_response("folder_created", "Folder created", result)


@app.route("/delete/<folder>", methods=["DELETE"], defaults={"filename": None})
@app.route("/delete/<folder>/<filename>", methods=["DELETE"])
@require_api_token
@limiter.limit(lambda: api_rate_limit_string())
def delete_item(folder: str, filename: Optional[str]):
    result = engine.delete_item(folder, filename)
    kind = result.pop("deleted_kind")
    if kind == "file":
        return _ok_response("file_deleted", "File deleted", result)
    return _ok_response("folder_deleted", "Folder and contents deleted", result)


@app.route("/expose/<folder>", methods=["POST"])
@require_api_token
@limiter.limit(lambda: api_rate_limit_string())
def expose_folder(folder: str):
    result = engine.expose_folder(folder)
    return _ok_response("folder_exposed", "Folder is now public", result)


@app.route("/unexpose/<folder>", methods=["POST"])
@require_api_token
@limiter.limit(lambda: api_rate_limit_string())
def unexpose_folder(folder: str):
    result = engine.unexpose_folder(folder)
    return _ok_response("folder_unexposed", "Folder is no longer public", result)


@app.route("/rename", methods=["PATCH"])
@require_api_token
@limiter.limit(lambda: api_rate_limit_string())
def rename_item():
    payload = _json_body()
    kind = payload.get("type")
    folder = payload.get("folder")
    new_name = payload.get("newName")
    if not kind or not folder or not new_name:
        raise ValidationError("Missing required fields: type, folder, newName")

    result = engine.rename_item(kind, folder, payload.get("filename"), new_name)
    message = "File renamed successfully" if kind == "file" else "Folder renamed successfully"
    return _ok_response("renamed", message, result)


@app.route("/list/<folder>", methods=["GET"])
@require_api_token
@limiter.limit(lambda: api_rate_limit_string())
def list_folder(folder: str):
    result = engine.list_folder(folder)
    return _ok_response("folder_listed", "Folder listed", result)


@app.route("/list", methods=["GET"])
@require_api_token
@limiter.limit(lambda: api_rate_limit_string())
def list_root():
    result = engine.list_root()
    return _ok_response("root_listed", "Folders listed", result)


@app.route("/public/", defaults={"folder": None})
@app.route("/public/<folder>/")
def public_directory(folder: Optional[str]):
    # Directory listings are never served.
    return _error_response("Not found", 404)


@app.route("/public/<folder>/<filename>")
@limiter.limit(lambda: download_rate_limit_string())
def serve_public_file(folder: str, filename: str):
    safe_folder, safe_filename = validate_path(folder, filename, require_file=True)
    if not store.exists(EXPOSED, safe_folder, safe_filename):
        raise ItemNotFoundError("file")
    return send_from_directory(store.path_for(EXPOSED, safe_folder), safe_filename)


if __name__ == "__main__":
    app.run(host="0.0.0.0", port=int(os.environ.get("PORT", "3000")), debug=False)
