"""
Centralized structured logging configuration for the capability gateway.
Provides JSON-formatted logs for production and human-readable logs for development.

Capability invocations log with ``capability``, ``caller_id``, ``role`` and
outcome fields; both formatters give those fields a fixed place so that one
caller's activity can be followed across requests.
"""

import json
import logging
import re
import sys
import traceback
from datetime import datetime, timezone
from typing import Any, Dict, Optional
import uuid

from capgate.core.config import settings


_RESERVED_RECORD_KEYS = {
    "name", "msg", "args", "created", "filename", "funcName",
    "levelname", "levelno", "lineno", "module", "msecs",
    "pathname", "process", "processName", "relativeCreated",
    "stack_info", "exc_info", "exc_text", "thread", "threadName",
    "message", "taskName",
}

# Fields CapabilityService attaches to every invocation log
INVOCATION_FIELDS = (
    "capability",
    "caller_id",
    "role",
    "conversation_id",
    "ok",
    "error_kind",
    "duration_ms",
)

# Upstream request IDs are echoed back, so only plain tokens are accepted
REQUEST_ID_PATTERN = re.compile(r"^[A-Za-z0-9._-]{1,64}$")


def split_record_fields(record: logging.LogRecord) -> tuple:
    """``(invocation, extra)`` dicts from the non-standard record attributes

    Only records that name a capability have an invocation part.
    """
    is_invocation = "capability" in record.__dict__
    invocation: Dict[str, Any] = {}
    extra: Dict[str, Any] = {}
    for key, value in record.__dict__.items():
        if key in _RESERVED_RECORD_KEYS:
            continue
        if is_invocation and key in INVOCATION_FIELDS:
            invocation[key] = value
        else:
            extra[key] = value
    return invocation, extra


class JSONFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.
    Outputs logs in a format easily parsed by log aggregators (ELK, Loki, CloudWatch).

    Invocation fields go under ``invocation``; anything else passed as
    ``extra`` goes under ``extra``.
    """

    def __init__(self, service_name: str = "capgate"):
        super().__init__()
        self.service_name = service_name

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": self.service_name,
            "environment": settings.ENVIRONMENT,
        }

        # Source location
        log_data["source"] = {
            "file": record.filename,
            "line": record.lineno,
            "function": record.funcName,
        }

        if record.exc_info:
            log_data["exception"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else None,
                "message": str(record.exc_info[1]) if record.exc_info[1] else None,
                "traceback": traceback.format_exception(*record.exc_info),
            }

        invocation, extra_fields = split_record_fields(record)
        if invocation:
            log_data["invocation"] = invocation
        if extra_fields:
            log_data["extra"] = extra_fields

        return json.dumps(log_data, default=str)


class ColoredFormatter(logging.Formatter):
    """
    Colored formatter for development console output.
    Invocation logs get a ``[capability caller=.. role=..]`` prefix.
    """

    COLORS = {
        "DEBUG": "\033[36m",     # Cyan
        "INFO": "\033[32m",      # Green
        "WARNING": "\033[33m",   # Yellow
        "ERROR": "\033[31m",     # Red
        "CRITICAL": "\033[35m",  # Magenta
    }
    RESET = "\033[0m"

    @staticmethod
    def invocation_tag(record: logging.LogRecord) -> str:
        capability = getattr(record, "capability", None)
        if capability is None:
            return ""
        tag = f"[{capability} caller={getattr(record, 'caller_id', '?')} role={getattr(record, 'role', '?')}"
        conversation_id = getattr(record, "conversation_id", None)
        if conversation_id is not None:
            tag += f" conversation={conversation_id}"
        return tag + "] "

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, self.RESET)
        timestamp = datetime.fromtimestamp(record.created).strftime("%Y-%m-%d %H:%M:%S")

        message = (
            f"{color}{timestamp} | {record.levelname:8} | {record.name} | "
            f"{self.invocation_tag(record)}{record.getMessage()}{self.RESET}"
        )

        # Last traceback line only; the JSON formatter keeps the full one
        if record.exc_info:
            message += f"\n{color}{traceback.format_exception(*record.exc_info)[-1].strip()}{self.RESET}"

        return message


class ContextLogger:
    """
    Logger wrapper that adds contextual information to all log messages.
    Used to attach caller and capability details to invocation logs.
    """

    def __init__(self, logger: logging.Logger):
        self._logger = logger
        self._context: dict[str, Any] = {}

    def set_context(self, **kwargs) -> None:
        """Set context values that will be included in all subsequent logs."""
        self._context.update(kwargs)

    def clear_context(self) -> None:
        self._context.clear()

    def bind(self, **kwargs) -> "ContextLogger":
        """Return a new logger carrying this logger's context plus ``kwargs``."""
        bound = ContextLogger(self._logger)
        bound._context = {**self._context, **kwargs}
        return bound

    def log(self, level: int, msg: str, *args, **kwargs) -> None:
        self._log_with_context(level, msg, *args, **kwargs)

    def _log_with_context(self, level: int, msg: str, *args, **kwargs) -> None:
        extra = kwargs.pop("extra", {})
        extra.update(self._context)
        self._logger.log(level, msg, *args, extra=extra, **kwargs)

    def debug(self, msg: str, *args, **kwargs) -> None:
        self._log_with_context(logging.DEBUG, msg, *args, **kwargs)

    def info(self, msg: str, *args, **kwargs) -> None:
        self._log_with_context(logging.INFO, msg, *args, **kwargs)

    def warning(self, msg: str, *args, **kwargs) -> None:
        self._log_with_context(logging.WARNING, msg, *args, **kwargs)

    def error(self, msg: str, *args, **kwargs) -> None:
        self._log_with_context(logging.ERROR, msg, *args, **kwargs)

    def exception(self, msg: str, *args, **kwargs) -> None:
        kwargs["exc_info"] = True
        self._log_with_context(logging.ERROR, msg, *args, **kwargs)


def setup_logging(
    service_name: str = "capgate",
    log_level: Optional[str] = None,
    json_logs: Optional[bool] = None,
) -> None:
    """
    Configure application logging.

    Args:
        service_name: Name of the service for log identification
        log_level: Override log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_logs: Override JSON logging (True for production, False for development)
    """
    level = log_level or ("DEBUG" if settings.DEBUG else "INFO")
    use_json = json_logs if json_logs is not None else settings.IS_PRODUCTION

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level))
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(getattr(logging, level))

    if use_json:
        console_handler.setFormatter(JSONFormatter(service_name))
    else:
        console_handler.setFormatter(ColoredFormatter())

    root_logger.addHandler(console_handler)

    # Reduce noise from third-party libraries
    logging.getLogger("uvicorn").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    # Generated SQL is echoed through SQLALCHEMY_ECHO, not the root level
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

    logger = logging.getLogger("capgate.logging")
    logger.info(
        f"Logging configured: level={level}, format={'JSON' if use_json else 'colored'}, "
        f"environment={settings.ENVIRONMENT}"
    )


def get_logger(name: str) -> ContextLogger:
    """
    Get a context-aware logger for a module.

    Usage:
        logger = get_logger(__name__)
        logger.set_context(capability="getEquipmentList", caller_id=42)
        logger.info("Executing capability")  # Includes context automatically
    """
    return ContextLogger(logging.getLogger(name))


def generate_request_id() -> str:
    """Generate a unique request ID for tracing."""
    return str(uuid.uuid4())[:8]


def _header(scope, name: bytes) -> Optional[str]:
    for key, value in scope.get("headers", []):
        if key.lower() == name:
            return value.decode("latin-1")
    return None


class RequestLoggingMiddleware:
    """
    Middleware that adds request logging with timing and request IDs.

    A well-formed ``X-Request-ID`` from the upstream is kept so one ID
    follows the call across services; otherwise a new one is generated.
    The caller headers set by the upstream are logged with the request.
    """

    def __init__(self, app):
        self.app = app
        self.logger = get_logger("capgate.http")

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        upstream_id = _header(scope, b"x-request-id")
        if upstream_id and REQUEST_ID_PATTERN.match(upstream_id):
            request_id = upstream_id
        else:
            request_id = generate_request_id()
        start_time = datetime.now(timezone.utc)

        # Handlers read it from request.state
        scope["state"] = scope.get("state", {})
        scope["state"]["request_id"] = request_id

        response_status = 0

        async def send_wrapper(message):
            nonlocal response_status
            if message["type"] == "http.response.start":
                response_status = message["status"]
                headers = list(message.get("headers", []))
                headers.append((b"x-request-id", request_id.encode()))
                message = {**message, "headers": headers}
            await send(message)

        try:
            await self.app(scope, receive, send_wrapper)
        except Exception:
            response_status = 500
            raise
        finally:
            duration_ms = (datetime.now(timezone.utc) - start_time).total_seconds() * 1000
            method = scope.get("method", "UNKNOWN")
            path = scope.get("path", "/")

            # Skip logging for health checks
            if path != "/health":
                log_level = logging.WARNING if response_status >= 400 else logging.INFO
                self.logger.log(
                    log_level,
                    f"{method} {path} {response_status} {duration_ms:.1f}ms",
                    extra={
                        "request_id": request_id,
                        "method": method,
                        "path": path,
                        "status": response_status,
                        "duration_ms": duration_ms,
                        "caller_header": _header(scope, b"x-caller-id"),
                        "role_header": _header(scope, b"x-caller-role"),
                    }
                )
