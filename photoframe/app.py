import logging
import os
import re
import time
import uuid
from contextlib import contextmanager
from functools import wraps
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, Optional

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
    url_for,
)
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from werkzeug.datastructures import FileStorage
from werkzeug.exceptions import RequestEntityTooLarge
from werkzeug.middleware.proxy_fix import ProxyFix
from werkzeug.utils import secure_filename

from .config import Configuration, ensure_storage_directory, resolve_configuration
from .errors import (
    ConfigurationError,
    IntakeError,
    MissingName,
    MissingUpload,
    NotFound,
    Throttled,
    TooLarge,
    TransportBlocked,
    Unauthorized,
    ValidationError,
)
from .gatekeeper import FixedWindowRateLimiter, Gatekeeper, extract_api_key
from .storage import ImageStorage, StoredImage, content_type_for_name
from .uploads import UploadWriter

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
LOG_FILE_MAX_BYTES = 5 * 1024 * 1024  # 5 MB max log file size
LOG_FILE_BACKUP_COUNT = 3  # Number of log file backups to keep
# Room for multipart boundaries and part headers on top of the file itself.
MULTIPART_OVERHEAD_BYTES = 64 * 1024
STALE_TEMP_FILE_SECONDS = 3600

_CONTROL_CHAR_PATTERN = re.compile(r"[\x00-\x1f\x7f-\x9f\n\r]")


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

    def debug(self, msg: str, *args, **kwargs) -> None:
        self._logger.debug(self._with_request(msg), *args, **kwargs)

    def info(self, msg: str, *args, **kwargs) -> None:
        self._logger.info(self._with_request(msg), *args, **kwargs)

    def warning(self, msg: str, *args, **kwargs) -> None:
        self._logger.warning(self._with_request(msg), *args, **kwargs)

    def error(self, msg: str, *args, **kwargs) -> None:
        self._logger.error(self._with_request(msg), *args, **kwargs)

    def exception(self, msg: str, *args, **kwargs) -> None:
        self._logger.exception(self._with_request(msg), *args, **kwargs)

    def __getattr__(self, name: str):  # pragma: no cover - passthrough
        return getattr(self._logger, name)


lifecycle_logger = RequestAwareLogger(logging.getLogger("photoframe.lifecycle"))
security_logger = RequestAwareLogger(logging.getLogger("photoframe.security"))


def configure_logging(level: str = "INFO", log_directory: Optional[Path] = None) -> Optional[Path]:
    """Configure root logging and, when requested, a rotating application log."""

    numeric_level = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(level=numeric_level, format=LOG_FORMAT)
    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)

    if log_directory is None:
        return None

    log_directory.mkdir(parents=True, exist_ok=True)
    log_path = log_directory / "application.log"
    formatter = logging.Formatter(LOG_FORMAT)

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


class IntakeServices:
    """Per-application service objects shared by the request handlers."""

    def __init__(
        self,
        config: Configuration,
        gatekeeper: Gatekeeper,
        storage: ImageStorage,
        writer: UploadWriter,
    ) -> None:
        self.config = config
        self.gatekeeper = gatekeeper
        self.storage = storage
        self.writer = writer


def _services() -> IntakeServices:
    return current_app.extensions["photoframe"]


def public_rate_limit_string() -> str:
    return current_app.config["PUBLIC_RATE_LIMIT"]


limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")
api = Blueprint("api", __name__)


def require_api_access(view: Callable):
    """Run transport, rate and API key checks before *view*."""

    @wraps(view)
    def wrapped(*args, **kwargs):
        gatekeeper = _services().gatekeeper
        g.api_key_authenticated = False

        if not gatekeeper.enforce_transport(request):
            security_logger.warning(
                "transport_blocked endpoint=%s scheme=%s",
                request.endpoint,
                request.scheme,
            )
            raise TransportBlocked()

        client_id = get_remote_address()
        decision = gatekeeper.check_rate(client_id)
        g.rate_decision = decision
        if not decision.allowed:
            security_logger.warning(
                "rate_limited client=%s endpoint=%s retry_after=%.1f",
                sanitize_log_value(client_id),
                request.endpoint,
                decision.retry_after,
            )
            raise Throttled(decision.retry_after)

        provided = extract_api_key(request)
        if not gatekeeper.authenticate(provided):
            security_logger.warning(
                "api_auth_failed endpoint=%s method=%s", request.endpoint, request.method
            )
            raise Unauthorized()

        g.api_key_authenticated = True
        return view(*args, **kwargs)

    return wrapped


@contextmanager
def upload_stream_handler(file_storage: FileStorage) -> Iterator[FileStorage]:
    """Ensure uploaded file streams are always closed."""

    try:
        yield file_storage
    finally:
        stream = getattr(file_storage, "stream", None)
        if stream is not None and hasattr(stream, "close"):
            try:
                stream.close()
            except OSError as error:
                lifecycle_logger.warning(
                    "stream_close_failed error=%s", sanitize_log_value(str(error))
                )


def _image_payload(image: StoredImage) -> Dict[str, Any]:
    payload = image.to_payload()
    payload["url"] = url_for("api.serve_photo", name=image.name)
    return payload


def _error_response(error: IntakeError) -> Response:
    response = jsonify(error.to_payload())
    response.status_code = error.status_code
    for header, value in error.headers().items():
        response.headers[header] = value
    return response


@api.before_app_request
def add_request_id() -> None:
    """Assign a request identifier for downstream logging."""

    g.request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex


@api.after_app_request
def log_request_completion(response: Response):
    lifecycle_logger.info(
        "request_completed method=%s path=%s status=%d size=%s",
        request.method,
        sanitize_log_value(request.path),
        response.status_code,
        response.content_length or 0,
    )
    return response


@api.after_app_request
def add_security_headers(response: Response):
    """Attach security-focused response headers."""

    response.headers["X-Frame-Options"] = "DENY"
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    response.headers["Content-Security-Policy"] = (
        "default-src 'none'; img-src 'self'; frame-ancestors 'none'"
    )
    if request.is_secure:
        response.headers["Strict-Transport-Security"] = "max-age=31536000"
    return response


@api.after_app_request
def add_cors_headers(response: Response):
    if not _services().config.enable_cors:
        return response
    response.headers["Access-Control-Allow-Origin"] = "*"
    response.headers["Access-Control-Allow-Methods"] = "GET, POST, DELETE, OPTIONS"
    response.headers["Access-Control-Allow-Headers"] = "Content-Type, X-API-Key, Authorization"
    response.headers["Access-Control-Expose-Headers"] = (
        "X-Request-ID, Retry-After, X-RateLimit-Limit, X-RateLimit-Remaining"
    )
    return response


@api.after_app_request
def add_rate_limit_headers(response: Response):
    decision = getattr(g, "rate_decision", None)
    if decision is not None:
        response.headers["X-RateLimit-Limit"] = str(decision.limit)
        response.headers["X-RateLimit-Remaining"] = str(decision.remaining)
    return response


@api.after_app_request
def add_request_id_header(response: Response):
    """Expose the current request identifier to clients."""

    if hasattr(g, "request_id"):
        response.headers["X-Request-ID"] = g.request_id
    return response


@api.app_errorhandler(IntakeError)
def handle_intake_error(error: IntakeError):
    return _error_response(error)


@api.app_errorhandler(RequestEntityTooLarge)
def handle_file_too_large(error):
    lifecycle_logger.warning(
        "upload_rejected reason=too_large content_length=%s", request.content_length
    )
    return _error_response(TooLarge())


@api.app_errorhandler(429)
def handle_rate_limit(error):
    description = getattr(error, "description", "Too many requests")
    return (
        jsonify(
            {
                "error": "Rate limit exceeded",
                "reason": "rate_limited",
                "message": str(description),
            }
        ),
        429,
    )


@api.app_errorhandler(404)
def handle_not_found(error):
    return jsonify({"error": "Not found", "reason": "not_found"}), 404


@api.app_errorhandler(405)
def handle_method_not_allowed(error):
    return jsonify({"error": "Method not allowed", "reason": "method_not_allowed"}), 405


@api.app_errorhandler(500)
def handle_internal_error(error):
    return jsonify({"error": "Internal server error", "reason": "internal_error"}), 500


@api.route("/api/test", methods=["GET"])
@limiter.limit(public_rate_limit_string)
def api_test():
    return jsonify({"status": "ok", "message": "API is working"})


@api.route("/api/images", methods=["GET"])
@require_api_access
def list_images():
    images = _services().storage.list_images()
    return jsonify([_image_payload(image) for image in images])


@api.route("/api/upload-image", methods=["POST"])
@require_api_access
def upload_image():
    services = _services()
    upload = request.files.get("image") or request.files.get("file")
    if not isinstance(upload, FileStorage) or not upload:
        lifecycle_logger.warning("upload_rejected reason=no_file")
        raise MissingUpload()

    original_name = secure_filename(upload.filename or "") or "unnamed"
    with upload_stream_handler(upload) as incoming:
        try:
            image = services.writer.ingest(
                incoming.stream,
                incoming.content_type,
                incoming.content_length or None,
            )
        except ValidationError as error:
            lifecycle_logger.warning(
                "upload_rejected reason=%s original=%s content_type=%s",
                error.reason,
                sanitize_log_value(original_name),
                sanitize_log_value(incoming.content_type or ""),
            )
            raise

    if services.config.log_uploads:
        lifecycle_logger.info(
            "image_uploaded name=%s original=%s size=%d content_type=%s",
            image.name,
            sanitize_log_value(original_name),
            image.size_bytes,
            image.content_type,
        )

    payload = _image_payload(image)
    payload.pop("name")
    payload["filename"] = image.name
    payload["message"] = "Image uploaded successfully"
    return jsonify(payload), 200


@api.route("/api/delete-image", methods=["DELETE"])
@require_api_access
def delete_image():
    services = _services()
    name = request.args.get("name", "")
    if not name:
        raise MissingName()

    if not services.storage.delete(name):
        lifecycle_logger.info("image_delete_missing name=%s", sanitize_log_value(name))
        raise NotFound()

    if services.config.log_uploads:
        lifecycle_logger.info("image_deleted name=%s", sanitize_log_value(name))
    return jsonify({"message": f"Image {name} deleted successfully"})


@api.route("/photos/<name>", methods=["GET"])
@limiter.limit(public_rate_limit_string)
def serve_photo(name: str):
    path = _services().storage.resolve(name)
    if path is None:
        raise NotFound()
    return send_file(path, mimetype=content_type_for_name(path.name))


def create_app(
    config: Optional[Configuration] = None,
    *,
    clock: Optional[Callable[[], float]] = None,
) -> Flask:
    """Build the intake application around one resolved configuration."""

    if config is None:
        config = resolve_configuration()
    else:
        ensure_storage_directory(config.storage_directory)

    app = Flask(__name__)
    app.config["MAX_CONTENT_LENGTH"] = config.max_file_size_bytes + MULTIPART_OVERHEAD_BYTES
    app.config["PUBLIC_RATE_LIMIT"] = config.public_rate_limit
    app.config["RATELIMIT_HEADERS_ENABLED"] = True
    app.logger.setLevel(getattr(logging, config.log_level, logging.INFO))

    if config.trust_proxy:
        app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1)

    rate_limiter = FixedWindowRateLimiter(
        config.rate_limit_max_requests,
        config.rate_limit_window_seconds,
        clock=clock or time.monotonic,
    )
    storage = ImageStorage(config.storage_directory)
    writer = UploadWriter(
        storage,
        config.allowed_content_types,
        config.max_file_size_bytes,
    )
    app.extensions["photoframe"] = IntakeServices(
        config=config,
        gatekeeper=Gatekeeper(config, rate_limiter),
        storage=storage,
        writer=writer,
    )

    limiter.init_app(app)
    app.register_blueprint(api)

    removed = storage.cleanup_temp_files(STALE_TEMP_FILE_SECONDS)
    if removed:
        lifecycle_logger.info("stale_temp_files_removed count=%d", removed)

    if not config.requires_https and not config.is_development:
        security_logger.warning(
            "SECURITY WARNING: HTTPS is not enforced. API keys will be accepted "
            "over plaintext HTTP. Set enforce_https=true for production use."
        )

    return app


def main() -> None:
    configure_logging(os.environ.get("LOG_LEVEL", "INFO"))
    try:
        config = resolve_configuration()
    except ConfigurationError as error:
        logging.getLogger("photoframe.config").critical("startup_aborted error=%s", error)
        raise SystemExit(1) from error

    log_path = configure_logging(config.log_level, config.log_directory)
    if log_path is not None:
        logging.getLogger("photoframe.config").info("file_logging_enabled path=%s", log_path)

    app = create_app(config)
    app.run(host=config.host, port=config.port, debug=False, threaded=True)


if __name__ == "__main__":
    main()
