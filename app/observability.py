"""
Observability Module - Logging, Metrics, and Health

Provides:
- Structured JSON logging with request IDs
- Request/response logging middleware
- Metrics collection (event creation latency, failures, orphaned uploads)
- Health check utilities

Configuration:
- FARMCHAIN_LOG_LEVEL: DEBUG, INFO, WARNING, ERROR (default: INFO)
- FARMCHAIN_LOG_FORMAT: json, text (default: json in production)
- FARMCHAIN_PRODUCTION: Enable production mode

Usage:
    from app.observability import get_logger

    logger = get_logger(__name__)
    logger.info("Event created", batch_id=batch_id, transaction_id=txn_id)
"""

import json
import logging
import os
import sys
import time
import uuid
from contextvars import ContextVar
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

# Context variables for request tracking
request_id_var: ContextVar[str] = ContextVar("request_id", default="")


# ============================================================
# CONFIGURATION
# ============================================================

def _is_production() -> bool:
    return os.environ.get("FARMCHAIN_PRODUCTION", "").lower() in ("1", "true", "yes")


def _get_log_level() -> int:
    level_str = os.environ.get("FARMCHAIN_LOG_LEVEL", "INFO").upper()
    levels = {
        "DEBUG": logging.DEBUG,
        "INFO": logging.INFO,
        "WARNING": logging.WARNING,
        "ERROR": logging.ERROR,
        "CRITICAL": logging.CRITICAL,
    }
    return levels.get(level_str, logging.INFO)


def _use_json_logging() -> bool:
    format_str = os.environ.get("FARMCHAIN_LOG_FORMAT", "").lower()
    if format_str == "json":
        return True
    if format_str == "text":
        return False
    return _is_production()


# ============================================================
# STRUCTURED LOGGING
# ============================================================

_RESERVED_RECORD_KEYS = frozenset((
    "name", "msg", "args", "created", "levelname", "levelno",
    "pathname", "filename", "module", "lineno", "funcName",
    "exc_info", "exc_text", "stack_info", "message", "msecs",
    "relativeCreated", "thread", "threadName", "processName",
    "process", "taskName",
))


class StructuredFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.

    Output format:
    {
        "timestamp": "2024-01-15T10:30:00.000Z",
        "level": "INFO",
        "logger": "app.core.event_store",
        "message": "Event created",
        "request_id": "abc-123",
        "batch_id": "batch-1",
        ...extra fields...
    }
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        request_id = request_id_var.get()
        if request_id:
            log_data["request_id"] = request_id

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key in _RESERVED_RECORD_KEYS or key.startswith("_"):
                continue
            try:
                json.dumps(value)
                log_data[key] = value
            except (TypeError, ValueError):
                log_data[key] = str(value)

        return json.dumps(log_data)


class TextFormatter(logging.Formatter):
    """Human-readable formatter for development."""

    def format(self, record: logging.LogRecord) -> str:
        prefix = ""
        request_id = request_id_var.get()
        if request_id:
            prefix = f"[{request_id[:8]}] "

        timestamp = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")
        msg = f"{timestamp} {record.levelname:8} {prefix}{record.name}: {record.getMessage()}"

        if record.exc_info:
            msg += "\n" + self.formatException(record.exc_info)

        return msg


class ContextLogger(logging.LoggerAdapter):
    """
    Logger adapter that turns keyword arguments into structured fields.

    Usage:
        logger = get_logger(__name__)
        logger.info("Chain built", batch_id=batch_id, event_count=3)
    """

    def process(self, msg: str, kwargs: Dict[str, Any]) -> tuple:
        extra = kwargs.get("extra", {})

        for key in list(kwargs.keys()):
            if key not in ("exc_info", "stack_info", "stacklevel", "extra"):
                extra[key] = kwargs.pop(key)

        kwargs["extra"] = extra
        return msg, kwargs


def get_logger(name: str) -> ContextLogger:
    """
    Get a structured logger for the given name.

    Args:
        name: Logger name (typically __name__)
    """
    return ContextLogger(logging.getLogger(name), {})


def setup_logging() -> None:
    """
    Configure logging for the application.

    Call this once at application startup.
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(_get_log_level())

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(_get_log_level())

    if _use_json_logging():
        handler.setFormatter(StructuredFormatter())
    else:
        handler.setFormatter(TextFormatter())

    root_logger.addHandler(handler)

    # Suppress noisy loggers
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


# ============================================================
# REQUEST CONTEXT MIDDLEWARE
# ============================================================

class RequestContextMiddleware(BaseHTTPMiddleware):
    """
    Sets a request ID for every request and logs request/response timing.

    Honors an incoming X-Request-ID header and echoes it back.
    """

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint
    ) -> Response:
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4())[:8])
        token = request_id_var.set(request_id)

        logger = get_logger("app.request")
        start_time = time.perf_counter()

        try:
            response = await call_next(request)

            duration_ms = (time.perf_counter() - start_time) * 1000
            log_level = logging.INFO if response.status_code < 400 else logging.WARNING
            logger.log(
                log_level,
                f"{request.method} {request.url.path} -> {response.status_code}",
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                duration_ms=round(duration_ms, 2),
            )
            get_metrics().record_request(duration_ms, success=response.status_code < 500)

            response.headers["X-Request-ID"] = request_id
            return response

        except Exception as e:
            duration_ms = (time.perf_counter() - start_time) * 1000
            logger.exception(
                f"{request.method} {request.url.path} -> 500",
                method=request.method,
                path=request.url.path,
                status_code=500,
                duration_ms=round(duration_ms, 2),
                error=str(e),
            )
            get_metrics().record_request(duration_ms, success=False)
            raise

        finally:
            request_id_var.reset(token)


# ============================================================
# METRICS
# ============================================================

def _percentile(data: list, p: float) -> Optional[float]:
    if not data:
        return None
    sorted_data = sorted(data)
    idx = int(len(sorted_data) * p)
    return sorted_data[min(idx, len(sorted_data) - 1)]


@dataclass
class MetricsCollector:
    """
    Simple in-memory metrics collector.

    For production, replace with Prometheus, StatsD, or similar.
    """

    # Counters
    events_created: int = 0
    create_failures: int = 0
    orphaned_uploads: int = 0
    chains_built: int = 0
    verifications: int = 0
    verification_failures: int = 0
    requests_total: int = 0
    requests_failed: int = 0

    # Histograms (simplified as bounded lists)
    create_latencies_ms: list = field(default_factory=list)
    request_latencies_ms: list = field(default_factory=list)

    MAX_SAMPLES = 1000

    def _sample(self, samples: list, value: float) -> list:
        samples.append(value)
        if len(samples) > self.MAX_SAMPLES:
            return samples[-self.MAX_SAMPLES:]
        return samples

    def record_create(self, latency_ms: float) -> None:
        self.events_created += 1
        self.create_latencies_ms = self._sample(self.create_latencies_ms, latency_ms)

    def record_create_failure(self, orphaned: bool = False) -> None:
        self.create_failures += 1
        if orphaned:
            self.orphaned_uploads += 1

    def record_chain_build(self) -> None:
        self.chains_built += 1

    def record_verification(self, is_valid: bool) -> None:
        self.verifications += 1
        if not is_valid:
            self.verification_failures += 1

    def record_request(self, latency_ms: float, success: bool) -> None:
        self.requests_total += 1
        if not success:
            self.requests_failed += 1
        self.request_latencies_ms = self._sample(self.request_latencies_ms, latency_ms)

    def get_summary(self) -> Dict[str, Any]:
        return {
            "events_created": self.events_created,
            "create_failures": self.create_failures,
            "orphaned_uploads": self.orphaned_uploads,
            "chains_built": self.chains_built,
            "verifications": self.verifications,
            "verification_failures": self.verification_failures,
            "requests_total": self.requests_total,
            "requests_failed": self.requests_failed,
            "create_latency_p50_ms": _percentile(self.create_latencies_ms, 0.5),
            "create_latency_p95_ms": _percentile(self.create_latencies_ms, 0.95),
            "create_latency_p99_ms": _percentile(self.create_latencies_ms, 0.99),
            "request_latency_p50_ms": _percentile(self.request_latencies_ms, 0.5),
            "request_latency_p95_ms": _percentile(self.request_latencies_ms, 0.95),
        }

    def reset(self) -> None:
        """Zero all counters (for testing)."""
        fresh = MetricsCollector()
        self.__dict__.update(fresh.__dict__)


# Process-wide metrics sink; counters only, never ledger state
_metrics = MetricsCollector()


def get_metrics() -> MetricsCollector:
    """Get the process metrics collector."""
    return _metrics


# ============================================================
# HEALTH CHECKS
# ============================================================

@dataclass
class HealthStatus:
    """Health check result."""
    healthy: bool
    checks: Dict[str, Dict[str, Any]]
    duration_ms: float


async def check_health(event_index=None, content_store=None) -> HealthStatus:
    """
    Run all health checks.

    Args:
        event_index: EventIndex instance
        content_store: ContentStore instance
    """
    start = time.perf_counter()
    checks: Dict[str, Dict[str, Any]] = {}
    all_healthy = True

    checks["liveness"] = {"status": "healthy"}

    if event_index is not None:
        try:
            count = await event_index.count()
            checks["event_index"] = {
                "status": "healthy",
                "backend": type(event_index).__name__,
                "event_count": count,
            }
        except Exception as e:
            checks["event_index"] = {"status": "unhealthy", "error": str(e)}
            all_healthy = False

    if content_store is not None:
        checks["content_store"] = {
            "status": "healthy",
            "backend": type(content_store).__name__,
        }

    duration_ms = (time.perf_counter() - start) * 1000

    return HealthStatus(
        healthy=all_healthy,
        checks=checks,
        duration_ms=round(duration_ms, 2),
    )
