"""
Structured JSON logging for the Zenith kernel tools.

Provides consistent, structured logging with request correlation,
timing, and kernel context (tier, epoch, catalog) for observability.
"""

import json
import logging
import time
import uuid
from contextvars import ContextVar
from typing import Dict, Any, List, Optional
from datetime import datetime, timezone


# Context variables for request correlation
request_id_context: ContextVar[Optional[str]] = ContextVar('request_id', default=None)

_RESERVED_ATTRS = {
    'name', 'msg', 'args', 'levelname', 'levelno', 'pathname',
    'filename', 'module', 'lineno', 'funcName', 'created',
    'msecs', 'relativeCreated', 'thread', 'threadName',
    'processName', 'process', 'getMessage', 'exc_info',
    'exc_text', 'stack_info', 'taskName', 'message'
}


class JsonFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.

    Outputs logs in a consistent JSON format with:
    - Standard fields: timestamp, level, logger, message
    - Request correlation: request_id
    - Performance: duration_ms (for timed operations)
    - Kernel context: tier, base_epoch, body names, etc.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        request_id = request_id_context.get()
        if request_id:
            log_entry["request_id"] = request_id

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS and not key.startswith('_'):
                log_entry[key] = value

        return json.dumps(log_entry, ensure_ascii=False, separators=(',', ':'), default=str)


class StructuredLogger:
    """
    Structured logger with kernel context support.

    Provides methods for logging build, load, search and verification
    events with consistent structure and correlation.
    """

    def __init__(self, name: str):
        self.logger = logging.getLogger(name)

    def kernel_built(
        self,
        tier: str,
        base_epoch: float,
        body_count: int,
        unresolved: List[str],
        size_bytes: int,
        duration_ms: float,
        steps: int = 0
    ):
        """Log a completed kernel build."""
        level = logging.WARNING if unresolved else logging.INFO
        self.logger.log(
            level,
            f"Kernel built with {body_count - len(unresolved)}/{body_count} bodies resolved",
            extra={
                "operation": "kernel_built",
                "tier": tier,
                "base_epoch": base_epoch,
                "body_count": body_count,
                "unresolved": unresolved,
                "size_bytes": size_bytes,
                "span_steps": steps,
                "duration_ms": round(duration_ms, 2),
                "performance_category": self._categorize_performance(duration_ms)
            }
        )

    def body_unresolved(
        self,
        body: str,
        body_index: int,
        jd: float,
        error: str
    ):
        """Log a body the oracle could not resolve; its record gets the sentinel."""
        self.logger.warning(
            f"Body unresolved: {body}",
            extra={
                "operation": "body_unresolved",
                "body": body,
                "body_index": body_index,
                "jd": jd,
                "oracle_error": error
            }
        )

    def kernel_loaded(
        self,
        kernel_path: str,
        tier: str,
        catalog: str,
        checksum_valid: Optional[bool] = None,
        duration_ms: Optional[float] = None
    ):
        """Log a kernel file opened for reading."""
        self.logger.info(
            "Kernel loaded",
            extra={
                "operation": "kernel_loaded",
                "kernel_path": kernel_path,
                "tier": tier,
                "catalog": catalog,
                "checksum_valid": checksum_valid,
                "duration_ms": round(duration_ms, 2) if duration_ms else None
            }
        )

    def verification_completed(
        self,
        passes_completed: int,
        passes_requested: int,
        points_checked: int,
        error_count: int,
        cancelled: bool,
        duration_ms: float
    ):
        level = logging.WARNING if error_count or cancelled else logging.INFO
        self.logger.log(
            level,
            f"Verification finished: {error_count} samples over tolerance",
            extra={
                "operation": "verification_completed",
                "passes_completed": passes_completed,
                "passes_requested": passes_requested,
                "points_checked": points_checked,
                "error_count": error_count,
                "cancelled": cancelled,
                "duration_ms": round(duration_ms, 2)
            }
        )

    def startup_event(
        self,
        component: str,
        status: str,  # "starting", "ready", "error"
        duration_ms: Optional[float] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        """Log application startup events."""
        level = logging.ERROR if status == "error" else logging.INFO
        self.logger.log(
            level,
            f"Startup: {component} {status}",
            extra={
                "operation": "startup",
                "component": component,
                "status": status,
                "duration_ms": round(duration_ms, 2) if duration_ms else None,
                **(details or {})
            }
        )

    @staticmethod
    def _categorize_performance(duration_ms: float) -> str:
        """Categorize performance for easy filtering."""
        if duration_ms < 50:
            return "fast"
        elif duration_ms < 200:
            return "normal"
        elif duration_ms < 1000:
            return "slow"
        else:
            return "very_slow"


def setup_logging(level: str = "INFO", enable_json: bool = True) -> None:
    """
    Setup structured logging for the application.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR)
        enable_json: Whether to use JSON formatting
    """
    logging.basicConfig(
        level=getattr(logging, level.upper()),
        handlers=[],
        force=True
    )

    console_handler = logging.StreamHandler()

    if enable_json:
        console_handler.setFormatter(JsonFormatter())
    else:
        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )
        console_handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.addHandler(console_handler)

    # Reduce noise from third-party libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


def set_request_context(request_id: Optional[str] = None) -> str:
    """
    Set request context for correlation.

    Returns:
        The request ID (generated or provided)
    """
    if request_id is None:
        request_id = str(uuid.uuid4())

    request_id_context.set(request_id)
    return request_id


def clear_request_context():
    request_id_context.set(None)


def get_request_id() -> Optional[str]:
    return request_id_context.get()


class TimedOperation:
    """Context manager for timing operations with automatic logging."""

    def __init__(self, logger: StructuredLogger, operation_name: str, **context):
        self.logger = logger
        self.operation_name = operation_name
        self.context = context
        self.start_time = None
        self.duration_ms = None

    def __enter__(self):
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.duration_ms = (time.perf_counter() - self.start_time) * 1000

        if exc_type is None:
            self.logger.logger.info(
                f"Operation completed: {self.operation_name}",
                extra={
                    "operation": self.operation_name,
                    "duration_ms": round(self.duration_ms, 2),
                    "performance_category": StructuredLogger._categorize_performance(self.duration_ms),
                    **self.context
                }
            )
        else:
            self.logger.logger.error(
                f"Operation failed: {self.operation_name}",
                extra={
                    "operation": self.operation_name,
                    "duration_ms": round(self.duration_ms, 2),
                    "error_type": exc_type.__name__,
                    "error_message": str(exc_val) if exc_val else None,
                    **self.context
                }
            )
