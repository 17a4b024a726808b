"""
Observability Module - Logging, Metrics, and Health

Provides:
- Structured JSON logging with request and actor IDs
- Request/response logging middleware
- Metrics collection (append latency, fallback entries, verification failures)
- Health check utilities

Configuration:
- AUDITLEDGER_LOG_LEVEL: DEBUG, INFO, WARNING, ERROR (default: INFO)
- AUDITLEDGER_LOG_FORMAT: json, text (default: json in production)
- AUDITLEDGER_PRODUCTION: Enable production mode

Usage:
    from auditledger.observability import get_logger, RequestContextMiddleware

    logger = get_logger(__name__)
    logger.info("Entry appended", seq=entry.seq, event_name=entry.event_name)
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

# Context variables for request tracking
request_id_var: ContextVar[str] = ContextVar("request_id", default="")
actor_id_var: ContextVar[str] = ContextVar("actor_id", default="")

REQUEST_ID_HEADER = "X-Request-ID"
ACTOR_ID_HEADER = "X-Actor-Id"
ACTOR_ROLE_HEADER = "X-Actor-Role"


# ============================================================
# CONFIGURATION
# ============================================================

def _is_production() -> bool:
    return os.environ.get("AUDITLEDGER_PRODUCTION", "").lower() in ("1", "true", "yes")


def _get_log_level() -> int:
    level_str = os.environ.get("AUDITLEDGER_LOG_LEVEL", "INFO").upper()
    levels = {
        "DEBUG": logging.DEBUG,
        "INFO": logging.INFO,
        "WARNING": logging.WARNING,
        "ERROR": logging.ERROR,
        "CRITICAL": logging.CRITICAL,
    }
    return levels.get(level_str, logging.INFO)


def _use_json_logging() -> bool:
    format_str = os.environ.get("AUDITLEDGER_LOG_FORMAT", "").lower()
    if format_str == "json":
        return True
    if format_str == "text":
        return False
    return _is_production()


# ============================================================
# STRUCTURED LOGGING
# ============================================================

# Standard LogRecord attributes that never go into the JSON body
_RESERVED_ATTRS = frozenset({
    "name", "msg", "args", "created", "levelname", "levelno",
    "pathname", "filename", "module", "lineno", "funcName",
    "exc_info", "exc_text", "stack_info", "message", "msecs",
    "relativeCreated", "thread", "threadName", "processName",
    "process", "taskName",
})


class StructuredFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.

    Output format:
    {
        "timestamp": "2025-01-15T10:30:00.000000+00:00",
        "level": "INFO",
        "logger": "auditledger.core.ledger",
        "message": "Entry appended",
        "request_id": "abc-123",
        "actor_id": "uuid-456",
        "seq": 42,
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

        actor_id = actor_id_var.get()
        if actor_id:
            log_data["actor_id"] = actor_id

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

        if record.exc_info:
            msg += "\n" + self.formatException(record.exc_info)

        return msg


class ContextLogger(logging.LoggerAdapter):
    """
    Logger adapter that moves keyword fields into `extra`.

    Usage:
        logger = get_logger(__name__)
        logger.info("Checkpoint created", first_seq=1, last_seq=40)
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


# ============================================================
# REQUEST CONTEXT MIDDLEWARE
# ============================================================

class RequestContextMiddleware(BaseHTTPMiddleware):
    """
    Middleware that sets up request context for logging.

    Features:
    - Uses X-Request-ID or generates a request ID
    - Picks the acting user from X-Actor-Id (identity is asserted
      upstream; this service does not authenticate)
    - Logs request/response with timing
    """

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint
    ) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER, str(uuid.uuid4())[:8])
        request_id_token = request_id_var.set(request_id)
        actor_id_token = actor_id_var.set(request.headers.get(ACTOR_ID_HEADER, ""))

        logger = get_logger("auditledger.request")
        start_time = time.perf_counter()

        logger.debug(
            f"{request.method} {request.url.path}",
            method=request.method,
            path=request.url.path,
            query=str(request.query_params) if request.query_params else None,
            client_ip=request.client.host if request.client else None,
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
            get_metrics().record_request(duration_ms, success=response.status_code < 500)

            response.headers[REQUEST_ID_HEADER] = request_id
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
            request_id_var.reset(request_id_token)
            actor_id_var.reset(actor_id_token)


# ============================================================
# METRICS
# ============================================================

@dataclass
class MetricsCollector:
    """
    Simple in-memory metrics collector.

    For production, replace with Prometheus, StatsD, or similar.
    """

    # Counters
    entries_appended: int = 0
    fallback_entries: int = 0
    dedup_skips: int = 0
    checkpoints_created: int = 0
    verifications_run: int = 0
    verification_failures: int = 0
    requests_total: int = 0
    requests_failed: int = 0

    # Histograms (simplified as lists)
    append_latencies_ms: list = field(default_factory=list)
    request_latencies_ms: list = field(default_factory=list)

    _lock: Lock = field(default_factory=Lock, repr=False, compare=False)

    def record_append(self, latency_ms: float, fallback: bool = False) -> None:
        """Record an entry append."""
        with self._lock:
            self.entries_appended += 1
            if fallback:
                self.fallback_entries += 1
            self.append_latencies_ms.append(latency_ms)
            # Keep only last 1000 samples
            if len(self.append_latencies_ms) > 1000:
                self.append_latencies_ms = self.append_latencies_ms[-1000:]

    def record_dedup_skip(self) -> None:
        with self._lock:
            self.dedup_skips += 1

    def record_checkpoint(self) -> None:
        with self._lock:
            self.checkpoints_created += 1

    def record_verification(self, ok: bool) -> None:
        with self._lock:
            self.verifications_run += 1
            if not ok:
                self.verification_failures += 1

    def record_request(self, latency_ms: float, success: bool) -> None:
        with self._lock:
            self.requests_total += 1
            if not success:
                self.requests_failed += 1
            self.request_latencies_ms.append(latency_ms)
            if len(self.request_latencies_ms) > 1000:
                self.request_latencies_ms = self.request_latencies_ms[-1000:]

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
                "entries_appended": self.entries_appended,
                "fallback_entries": self.fallback_entries,
                "dedup_skips": self.dedup_skips,
                "checkpoints_created": self.checkpoints_created,
                "verifications_run": self.verifications_run,
                "verification_failures": self.verification_failures,
                "requests_total": self.requests_total,
                "requests_failed": self.requests_failed,
                "append_latency_p50_ms": percentile(self.append_latencies_ms, 0.5),
                "append_latency_p95_ms": percentile(self.append_latencies_ms, 0.95),
                "append_latency_p99_ms": percentile(self.append_latencies_ms, 0.99),
                "request_latency_p50_ms": percentile(self.request_latencies_ms, 0.5),
                "request_latency_p95_ms": percentile(self.request_latencies_ms, 0.95),
            }


# Global metrics instance
_metrics = MetricsCollector()


def get_metrics() -> MetricsCollector:
    """Get the global metrics collector."""
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


def check_health(store=None, verifier=None) -> HealthStatus:
    """
    Run all health checks.

    Args:
        store: LedgerStore instance
        verifier: ChainVerifier instance; when given, every organization's
            chain is verified (expensive, only for the detailed endpoint)
    """
    start = time.perf_counter()
    checks = {}
    all_healthy = True

    checks["liveness"] = {"status": "healthy"}

    if store is not None:
        try:
            latest = store.latest_root()
            checks["ledger_store"] = {
                "status": "healthy",
                "entry_count": store.entry_count(),
                "high_water_seq": store.high_water_seq(),
                "latest_root_last_seq": latest.last_seq if latest else None,
            }
        except Exception as e:
            checks["ledger_store"] = {
                "status": "unhealthy",
                "error": str(e),
            }
            all_healthy = False

    if store is not None and verifier is not None:
        try:
            broken = {}
            organizations = store.organizations()
            for organization_id in organizations:
                result = verifier.verify(organization_id)
                if not result.ok:
                    broken[str(organization_id)] = result.broken_at_seq
            checks["chain_integrity"] = {
                "status": "healthy" if not broken else "unhealthy",
                "organizations_checked": len(organizations),
                "broken": broken,
            }
            if broken:
                all_healthy = False
        except Exception as e:
            checks["chain_integrity"] = {
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
