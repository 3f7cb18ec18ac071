"""
Request monitoring and structured logging for the WA Bridge backend.

Assigns a request id, times each request, logs slow ones and feeds the
Prometheus collector.
"""

import time
import uuid
import logging
import json
from typing import Callable, Optional
from contextvars import ContextVar
from datetime import datetime

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from app.core.config import settings
from app.services.metrics_service import metrics_collector

logger = logging.getLogger(__name__)

request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

# LogRecord attributes that are not user-supplied `extra` fields
_RESERVED_RECORD_ATTRS = frozenset((
    "name", "msg", "args", "created", "filename", "funcName",
    "levelname", "levelno", "lineno", "module", "msecs",
    "pathname", "process", "processName", "relativeCreated",
    "stack_info", "exc_info", "exc_text", "thread", "threadName",
    "message", "taskName",
))


def get_request_id() -> Optional[str]:
    return request_id_ctx.get()


class MonitoringMiddleware(BaseHTTPMiddleware):
    """Request id propagation, timing, slow request logging and HTTP metrics."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        token = request_id_ctx.set(request_id)

        start_time = time.perf_counter()
        method = request.method
        path = request.url.path

        try:
            response = await call_next(request)
        except Exception as e:
            duration_ms = (time.perf_counter() - start_time) * 1000
            logger.error(
                f"Request failed: {method} {path}",
                extra={
                    "method": method,
                    "path": path,
                    "duration_ms": round(duration_ms, 2),
                    "error": str(e),
                    "event_type": "request_error",
                },
            )
            request_id_ctx.reset(token)
            raise

        duration_ms = (time.perf_counter() - start_time) * 1000
        response.headers["X-Request-ID"] = request_id
        response.headers["X-Response-Time"] = f"{duration_ms:.2f}ms"

        log_context = {
            "method": method,
            "path": path,
            "status_code": response.status_code,
            "duration_ms": round(duration_ms, 2),
            "event_type": "request_complete",
        }

        if duration_ms > settings.SLOW_REQUEST_THRESHOLD_MS:
            log_context["event_type"] = "slow_request"
            logger.warning(f"Slow request: {method} {path} took {duration_ms:.2f}ms", extra=log_context)
        elif settings.DEBUG or path.startswith("/api/"):
            logger.info(
                f"Request: {method} {path} - {response.status_code} - {duration_ms:.2f}ms",
                extra=log_context,
            )

        metrics_collector.record_request(
            method=method,
            endpoint=path,
            status_code=response.status_code,
            duration_seconds=duration_ms / 1000,
        )

        request_id_ctx.reset(token)
        return response


class StructuredJsonFormatter(logging.Formatter):
    """One JSON object per log line, tagged with the current request id."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.utcnow().isoformat() + "Z",
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "line": record.lineno,
        }

        request_id = request_id_ctx.get()
        if request_id:
            log_data["request_id"] = request_id

        for key, value in record.__dict__.items():
            if key not in _RESERVED_RECORD_ATTRS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


class RequestIdFilter(logging.Filter):
    """Expose the request id to plain-text format strings."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = request_id_ctx.get() or "no-request"
        return True


def configure_structured_logging(log_level: str = "INFO", json_format: bool = True):
    """
    Install a single console handler on the root logger.

    Args:
        log_level: Logging level name
        json_format: JSON lines when True, plain text otherwise
    """
    level = getattr(logging, log_level.upper(), logging.INFO)
    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    if json_format:
        console_handler.setFormatter(StructuredJsonFormatter())
    else:
        console_handler.addFilter(RequestIdFilter())
        console_handler.setFormatter(
            logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - [%(request_id)s] %(message)s")
        )
    root_logger.addHandler(console_handler)

    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.DEBUG if settings.DEBUG else logging.WARNING
    )
    logging.getLogger("apscheduler").setLevel(logging.WARNING)

    logger.info("Structured logging configured", extra={"json_format": json_format})
