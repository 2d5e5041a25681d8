"""
Observability Module - Logging, Metrics, and Health

Provides:
- Structured JSON logging with scope IDs
- Metrics collection (allocation latency, accepted/rejected counts)
- Health check utilities (store reachability, conservation audit)

Configuration:
- IMPACTLEDGER_LOG_LEVEL: DEBUG, INFO, WARNING, ERROR (default: INFO)
- IMPACTLEDGER_LOG_FORMAT: json, text (default: json in production)
- IMPACTLEDGER_PRODUCTION: Enable production mode

Usage:
    from impactledger.observability import get_logger, scope_context

    logger = get_logger(__name__)
    with scope_context(initiative_id):
        logger.info("Allocation recorded", allocation_id=str(allocation_id))
"""

import json
import logging
import os
import sys
import time
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Generator, Optional

# Context variable for the initiative/user scope of the current call
scope_id_var: ContextVar[str] = ContextVar("scope_id", default="")


# ============================================================
# CONFIGURATION
# ============================================================

def _is_production() -> bool:
    return os.environ.get("IMPACTLEDGER_PRODUCTION", "").lower() in ("1", "true", "yes")


def _get_log_level() -> int:
    level_str = os.environ.get("IMPACTLEDGER_LOG_LEVEL", "INFO").upper()
    levels = {
        "DEBUG": logging.DEBUG,
        "INFO": logging.INFO,
        "WARNING": logging.WARNING,
        "ERROR": logging.ERROR,
        "CRITICAL": logging.CRITICAL,
    }
    return levels.get(level_str, logging.INFO)


def _use_json_logging() -> bool:
    format_str = os.environ.get("IMPACTLEDGER_LOG_FORMAT", "").lower()
    if format_str == "json":
        return True
    if format_str == "text":
        return False
    return _is_production()


# Standard LogRecord attributes that are not "extra" fields
_RESERVED = frozenset((
    "name", "msg", "args", "created", "levelname", "levelno",
    "pathname", "filename", "module", "lineno", "funcName",
    "exc_info", "exc_text", "stack_info", "message", "msecs",
    "relativeCreated", "thread", "threadName", "processName",
    "process", "taskName",
))


# ============================================================
# STRUCTURED LOGGING
# ============================================================

class StructuredFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.

    Output format:
    {
        "timestamp": "2024-01-15T10:30:00.000Z",
        "level": "INFO",
        "logger": "impactledger.core.ledger",
        "message": "Allocation recorded",
        "scope_id": "initiative-123",
        "allocation_id": "uuid-789",
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

        scope_id = scope_id_var.get()
        if scope_id:
            log_data["scope_id"] = scope_id

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key in _RESERVED or key.startswith("_"):
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
        scope_id = scope_id_var.get()
        if scope_id:
            prefix = f"[{scope_id[:8]}] "

        timestamp = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")
        msg = f"{timestamp} {record.levelname:8} {prefix}{record.name}: {record.getMessage()}"

        if record.exc_info:
            msg += "\n" + self.formatException(record.exc_info)

        return msg


class ContextLogger(logging.LoggerAdapter):
    """
    Logger adapter that accepts structured fields as keyword arguments.

    Usage:
        logger = get_logger(__name__)
        logger.info("Allocation rejected", requested="15", available="10")
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
    Configure logging for the process.

    Call this once at startup (the CLI does).
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


@contextmanager
def scope_context(scope_id: Any) -> Generator[None, None, None]:
    """Tag every log line inside the block with the initiative/user scope."""
    token = scope_id_var.set(str(scope_id))
    try:
        yield
    finally:
        scope_id_var.reset(token)


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
    allocations_recorded: int = 0
    allocations_updated: int = 0
    allocations_rejected: int = 0
    allocations_deleted: int = 0

    # Histograms (simplified as lists)
    allocation_latencies_ms: list = field(default_factory=list)

    def record_allocation(self, latency_ms: float, updated: bool = False) -> None:
        """Record an accepted credit write."""
        if updated:
            self.allocations_updated += 1
        else:
            self.allocations_recorded += 1
        self.allocation_latencies_ms.append(latency_ms)
        # Keep only last 1000 samples
        if len(self.allocation_latencies_ms) > 1000:
            self.allocation_latencies_ms = self.allocation_latencies_ms[-1000:]

    def record_allocation_rejected(self) -> None:
        self.allocations_rejected += 1

    def record_allocation_deleted(self) -> None:
        self.allocations_deleted += 1

    def get_summary(self) -> Dict[str, Any]:
        """Get metrics summary."""
        def percentile(data: list, p: float) -> Optional[float]:
            if not data:
                return None
            sorted_data = sorted(data)
            idx = int(len(sorted_data) * p)
            return sorted_data[min(idx, len(sorted_data) - 1)]

        return {
            "allocations_recorded": self.allocations_recorded,
            "allocations_updated": self.allocations_updated,
            "allocations_rejected": self.allocations_rejected,
            "allocations_deleted": self.allocations_deleted,
            "allocation_latency_p50_ms": percentile(self.allocation_latencies_ms, 0.5),
            "allocation_latency_p95_ms": percentile(self.allocation_latencies_ms, 0.95),
            "allocation_latency_p99_ms": percentile(self.allocation_latencies_ms, 0.99),
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


def check_health(store=None, ledger=None) -> HealthStatus:
    """
    Run all health checks.

    Args:
        store: CreditStore instance
        ledger: CreditLedger instance (enables the conservation audit)

    Returns:
        HealthStatus with all check results
    """
    start = time.perf_counter()
    checks = {}
    all_healthy = True

    # Check 1: Basic liveness
    checks["liveness"] = {"status": "healthy"}

    # Check 2: Store reachability
    if store is not None:
        try:
            checks["store"] = {
                "status": "healthy",
                "metric_count": len(store.list_metrics()),
            }
        except Exception as e:
            checks["store"] = {"status": "unhealthy", "error": str(e)}
            all_healthy = False

    # Check 3: Conservation audit (reads every metric)
    if ledger is not None:
        try:
            violations = ledger.verify_conservation()
            checks["conservation"] = {
                "status": "healthy" if not violations else "unhealthy",
                "violations": len(violations),
            }
            if violations:
                all_healthy = False
        except Exception as e:
            checks["conservation"] = {"status": "unhealthy", "error": str(e)}
            all_healthy = False

    duration_ms = (time.perf_counter() - start) * 1000

    return HealthStatus(
        healthy=all_healthy,
        checks=checks,
        duration_ms=round(duration_ms, 2),
    )
