"""
Observability Module - Logging, Metrics, and Health

Provides:
- Structured JSON logging with request IDs
- Request/response logging middleware
- Metrics collection (dispatch latency, claim transitions, blocks)
- Health check utilities

Configuration:
- PROOFLEDGER_LOG_LEVEL: DEBUG, INFO, WARNING, ERROR (default: INFO)
- PROOFLEDGER_LOG_FORMAT: json, text (default: json in production)
- PROOFLEDGER_PRODUCTION: Enable production mode

Usage:
    from proofledger.observability import get_logger

    logger = get_logger(__name__)
    logger.info("Claim created", proof=proof.hex(), who=account)
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
account_id_var: ContextVar[str] = ContextVar("account_id", default="")


# ============================================================
# CONFIGURATION
# ============================================================

def is_production() -> bool:
    return os.environ.get("PROOFLEDGER_PRODUCTION", "").lower() in ("1", "true", "yes")


def _get_log_level() -> int:
    level_str = os.environ.get("PROOFLEDGER_LOG_LEVEL", "INFO").upper()
    levels = {
        "DEBUG": logging.DEBUG,
        "INFO": logging.INFO,
        "WARNING": logging.WARNING,
        "ERROR": logging.ERROR,
        "CRITICAL": logging.CRITICAL,
    }
    return levels.get(level_str, logging.INFO)


def _use_json_logging() -> bool:
    format_str = os.environ.get("PROOFLEDGER_LOG_FORMAT", "").lower()
    if format_str == "json":
        return True
    if format_str == "text":
        return False
    return is_production()


# ============================================================
# STRUCTURED LOGGING
# ============================================================

# Attributes every LogRecord carries; anything else came in via `extra`.
_RECORD_FIELDS = frozenset(
    logging.LogRecord("", 0, "", 0, "", (), None).__dict__.keys()
) | {"message", "asctime"}


class StructuredFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.

    Output format:
    {
        "timestamp": "2024-01-15T10:30:00.000Z",
        "level": "INFO",
        "logger": "proofledger.core.ledger",
        "message": "ClaimCreated",
        "request_id": "abc-123",
        "account_id": "base64...",
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

        account_id = account_id_var.get()
        if account_id:
            log_data["account_id"] = account_id

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key in _RECORD_FIELDS or key.startswith("_"):
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
            if k not in _RECORD_FIELDS and not k.startswith("_")
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
        logger.info("Claim revoked", proof=proof.hex(), who=account)
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

    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)


# ============================================================
# REQUEST CONTEXT MIDDLEWARE
# ============================================================

class RequestContextMiddleware(BaseHTTPMiddleware):
    """
    Middleware that sets up request context for logging.

    Features:
    - Generates unique request ID for each request (or honours X-Request-ID)
    - Logs request/response with timing
    - Counts requests in the metrics collector
    """

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint
    ) -> Response:
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4())[:8])
        request_id_var.set(request_id)

        logger = get_logger("proofledger.request")
        start_time = time.perf_counter()

        logger.debug(
            f"{request.method} {request.url.path}",
            method=request.method,
            path=request.url.path,
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
            get_metrics().record_request(duration_ms, response.status_code < 500)

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
            get_metrics().record_request(duration_ms, False)
            raise

        finally:
            request_id_var.set("")
            account_id_var.set("")


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
    extrinsics_applied: int = 0
    extrinsics_failed: int = 0
    extrinsics_rejected: int = 0
    claims_created: int = 0
    claims_revoked: int = 0
    claims_transferred: int = 0
    blocks_finalized: int = 0
    requests_total: int = 0
    requests_failed: int = 0

    # Histograms (simplified as lists)
    dispatch_latencies_ms: list = field(default_factory=list)
    request_latencies_ms: list = field(default_factory=list)

    MAX_SAMPLES = 1000

    def record_dispatch(self, latency_ms: float, success: bool) -> None:
        """Record an extrinsic that made it into a block."""
        self.extrinsics_applied += 1
        if not success:
            self.extrinsics_failed += 1
        self.dispatch_latencies_ms.append(latency_ms)
        if len(self.dispatch_latencies_ms) > self.MAX_SAMPLES:
            self.dispatch_latencies_ms = self.dispatch_latencies_ms[-self.MAX_SAMPLES:]

    def record_rejection(self) -> None:
        """Record an extrinsic refused before dispatch (bad origin, bad nonce)."""
        self.extrinsics_rejected += 1

    def record_transition(self, event_type: str) -> None:
        if event_type == "ClaimCreated":
            self.claims_created += 1
        elif event_type == "ClaimRevoked":
            self.claims_revoked += 1
        elif event_type == "ClaimTransferred":
            self.claims_transferred += 1

    def record_block(self) -> None:
        self.blocks_finalized += 1

    def record_request(self, latency_ms: float, success: bool) -> None:
        self.requests_total += 1
        if not success:
            self.requests_failed += 1
        self.request_latencies_ms.append(latency_ms)
        if len(self.request_latencies_ms) > self.MAX_SAMPLES:
            self.request_latencies_ms = self.request_latencies_ms[-self.MAX_SAMPLES:]

    def get_summary(self) -> Dict[str, Any]:
        def percentile(data: list, p: float) -> Optional[float]:
            if not data:
                return None
            sorted_data = sorted(data)
            idx = int(len(sorted_data) * p)
            return sorted_data[min(idx, len(sorted_data) - 1)]

        return {
            "extrinsics_applied": self.extrinsics_applied,
            "extrinsics_failed": self.extrinsics_failed,
            "extrinsics_rejected": self.extrinsics_rejected,
            "claims_created": self.claims_created,
            "claims_revoked": self.claims_revoked,
            "claims_transferred": self.claims_transferred,
            "blocks_finalized": self.blocks_finalized,
            "requests_total": self.requests_total,
            "requests_failed": self.requests_failed,
            "dispatch_latency_p50_ms": percentile(self.dispatch_latencies_ms, 0.5),
            "dispatch_latency_p95_ms": percentile(self.dispatch_latencies_ms, 0.95),
            "request_latency_p50_ms": percentile(self.request_latencies_ms, 0.5),
            "request_latency_p95_ms": percentile(self.request_latencies_ms, 0.95),
        }

    def reset(self) -> None:
        """Zero every counter (for testing only)."""
        fresh = MetricsCollector()
        self.__dict__.update(fresh.__dict__)


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


def check_health(runtime=None) -> HealthStatus:
    """
    Run all health checks.

    Args:
        runtime: Runtime instance (store, clock and event log are read from it)
    """
    start = time.perf_counter()
    checks = {}
    all_healthy = True

    checks["liveness"] = {"status": "healthy"}

    if runtime is not None:
        try:
            checks["proof_store"] = {
                "status": "healthy",
                "store_type": type(runtime.store).__name__,
                "claim_count": runtime.store.count(),
            }
        except Exception as e:
            checks["proof_store"] = {"status": "unhealthy", "error": str(e)}
            all_healthy = False

        event_log = runtime.event_log
        is_valid = event_log.verify_chain_integrity()
        checks["event_chain"] = {
            "status": "healthy" if is_valid else "unhealthy",
            "valid": is_valid,
            "event_count": event_log.event_count,
            "block_number": runtime.block_number,
        }
        if not is_valid:
            all_healthy = False

    duration_ms = (time.perf_counter() - start) * 1000

    return HealthStatus(
        healthy=all_healthy,
        checks=checks,
        duration_ms=round(duration_ms, 2),
    )
