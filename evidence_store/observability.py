"""
Observability Module - Logging, Metrics, and Health

Provides:
- Structured JSON logging with request IDs
- Request/response logging middleware
- Metrics collection (ingest outcomes, verification outcomes and latency)
- Health check utilities

Configuration:
- EVIDENCE_STORE_LOG_LEVEL: DEBUG, INFO, WARNING, ERROR (default: INFO)
- EVIDENCE_STORE_LOG_FORMAT: json, text (default: json in production)
- EVIDENCE_STORE_PRODUCTION: Enable production mode

Usage:
    from evidence_store.observability import get_logger

    logger = get_logger(__name__)
    logger.info("Evidence verified", evidence_id=evidence_id, status="Verified")
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
from threading import Lock
from typing import Any, Dict, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

# Context variable for request tracking
request_id_var: ContextVar[str] = ContextVar("request_id", default="")


# ============================================================
# CONFIGURATION
# ============================================================

def _is_production() -> bool:
    return os.environ.get("EVIDENCE_STORE_PRODUCTION", "").lower() in ("1", "true", "yes")


def _get_log_level() -> int:
    level_str = os.environ.get("EVIDENCE_STORE_LOG_LEVEL", "INFO").upper()
    levels = {
        "DEBUG": logging.DEBUG,
        "INFO": logging.INFO,
        "WARNING": logging.WARNING,
        "ERROR": logging.ERROR,
        "CRITICAL": logging.CRITICAL,
    }
    return levels.get(level_str, logging.INFO)


def _use_json_logging() -> bool:
    format_str = os.environ.get("EVIDENCE_STORE_LOG_FORMAT", "").lower()
    if format_str == "json":
        return True
    if format_str == "text":
        return False
    return _is_production()


# ============================================================
# STRUCTURED LOGGING
# ============================================================

# Standard LogRecord attributes, never copied into structured output
_RESERVED_ATTRS = frozenset(
    logging.LogRecord("", 0, "", 0, "", None, None).__dict__.keys()
) | {"message", "asctime"}


class StructuredFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.

    Output format:
    {
        "timestamp": "2024-01-15T10:30:00.000Z",
        "level": "INFO",
        "logger": "evidence_store.core.verification",
        "message": "Evidence verified",
        "request_id": "abc-123",
        "evidence_id": "E1",
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
            if key in _RESERVED_ATTRS or key.startswith("_"):
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

        extras = {
            k: v for k, v in record.__dict__.items()
            if k not in _RESERVED_ATTRS and not k.startswith("_")
        }
        if extras:
            msg += " " + " ".join(f"{k}={v}" for k, v in extras.items())

        if record.exc_info:
            msg += "\n" + self.formatException(record.exc_info)

        return msg


class ContextLogger(logging.LoggerAdapter):
    """
    Logger adapter that turns keyword arguments into structured fields.

    Usage:
        logger = get_logger(__name__)
        logger.info("Batch ingested", accepted=3, failed=0)
    """

    def process(self, msg: str, kwargs: Dict[str, Any]) -> tuple:
        extra = dict(kwargs.get("extra") or {})

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


# ============================================================
# REQUEST CONTEXT MIDDLEWARE
# ============================================================

class RequestContextMiddleware(BaseHTTPMiddleware):
    """
    Middleware that sets up request context for logging.

    - Uses X-Request-ID if provided, otherwise generates one
    - Logs request/response with timing
    - Echoes the request ID on the response
    """

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint
    ) -> Response:
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4())[:8])
        token = request_id_var.set(request_id)

        logger = get_logger("evidence_store.request")
        start_time = time.perf_counter()

        logger.debug(
            f"{request.method} {request.url.path}",
            method=request.method,
            path=request.url.path,
        )

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
            raise

        finally:
            request_id_var.reset(token)


# ============================================================
# METRICS
# ============================================================

@dataclass
class MetricsCollector:
    """
    Simple in-memory metrics collector.

    For production, replace with Prometheus, StatsD, or similar.
    """

    # Ingest counters
    records_accepted: int = 0
    records_duplicate: int = 0
    records_failed: int = 0
    records_ignored: int = 0
    batches_ingested: int = 0

    # Verification counters
    verifications_verified: int = 0
    verifications_failed: int = 0
    verification_errors: int = 0
    verification_conflicts: int = 0

    # Histograms (simplified as lists)
    verify_latencies_ms: list = field(default_factory=list)

    _lock: Lock = field(default_factory=Lock, repr=False)

    def record_ingest(self, accepted: int, duplicate: int, failed: int, ignored: int = 0) -> None:
        """Record one batch's outcome tallies."""
        with self._lock:
            self.batches_ingested += 1
            self.records_accepted += accepted
            self.records_duplicate += duplicate
            self.records_failed += failed
            self.records_ignored += ignored

    def record_verification(self, verified: Optional[bool], latency_ms: float) -> None:
        """
        Record a verification attempt.

        verified=None means the attempt raised instead of producing an outcome.
        """
        with self._lock:
            if verified is True:
                self.verifications_verified += 1
            elif verified is False:
                self.verifications_failed += 1
            else:
                self.verification_errors += 1
            self.verify_latencies_ms.append(latency_ms)
            # Keep only last 1000 samples
            if len(self.verify_latencies_ms) > 1000:
                self.verify_latencies_ms = self.verify_latencies_ms[-1000:]

    def record_conflict(self) -> None:
        with self._lock:
            self.verification_conflicts += 1

    def get_summary(self) -> Dict[str, Any]:
        """Get metrics summary."""
        def percentile(data: list, p: float) -> Optional[float]:
            if not data:
                return None
            sorted_data = sorted(data)
            idx = int(len(sorted_data) * p)
            return sorted_data[min(idx, len(sorted_data) - 1)]

        with self._lock:
            return {
                "batches_ingested": self.batches_ingested,
                "records_accepted": self.records_accepted,
                "records_duplicate": self.records_duplicate,
                "records_failed": self.records_failed,
                "records_ignored": self.records_ignored,
                "verifications_verified": self.verifications_verified,
                "verifications_failed": self.verifications_failed,
                "verification_errors": self.verification_errors,
                "verification_conflicts": self.verification_conflicts,
                "verify_latency_p50_ms": percentile(self.verify_latencies_ms, 0.5),
                "verify_latency_p95_ms": percentile(self.verify_latencies_ms, 0.95),
                "verify_latency_p99_ms": percentile(self.verify_latencies_ms, 0.99),
            }


# ============================================================
# HEALTH CHECKS
# ============================================================

@dataclass
class HealthStatus:
    """Health check result."""
    healthy: bool
    checks: Dict[str, Dict[str, Any]]
    duration_ms: float


def check_health(metadata_store=None) -> HealthStatus:
    """
    Run all health checks.

    Args:
        metadata_store: EvidenceMetadataStore instance
    """
    start = time.perf_counter()
    checks = {}
    all_healthy = True

    checks["liveness"] = {"status": "healthy"}

    if metadata_store is not None:
        try:
            checks["metadata_store"] = {
                "status": "healthy",
                "store_type": type(metadata_store).__name__,
                "record_count": metadata_store.count(),
            }
        except Exception as e:
            checks["metadata_store"] = {
                "status": "unhealthy",
                "error": str(e),
            }
            all_healthy = False

    duration_ms = (time.perf_counter() - start) * 1000

    return HealthStatus(
        healthy=all_healthy,
        checks=checks,
        duration_ms=round(duration_ms, 2),
    )
