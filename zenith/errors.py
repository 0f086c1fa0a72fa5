from fastapi import HTTPException
import logging
from typing import Optional, Dict, Any

logger = logging.getLogger(__name__)


class ZenithError(Exception):
    """Base class for kernel errors. Every subclass carries a dotted code."""

    code = "ZENITH.ERROR"

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "detail": self.message, **self.context}


class OracleError(ZenithError):
    """A single oracle lookup failed. Recoverable at the body level."""

    code = "ORACLE.FAILURE"


class FormatMismatch(ZenithError):
    """Kernel bytes do not match the expected catalog, tier or schema."""

    code = "KERNEL.FORMAT_MISMATCH"


class RangeOverflow(ZenithError):
    """A quantized value does not fit its declared field width."""

    code = "CODEC.RANGE_OVERFLOW"


class CatalogError(ZenithError):
    """Body catalog failed validation."""

    code = "CATALOG.INVALID"


def bad_request(code: str, title: str, detail: str = "", tip: str = ""):
    """
    Raise a 400 Bad Request exception with structured error response.

    Args:
        code: Error code following CATEGORY.SPECIFIC_ERROR pattern
        title: Human-readable error title
        detail: Specific details about this error instance
        tip: Actionable guidance for resolving the error
    """
    error_response = {
        "code": code,
        "title": title,
        "detail": detail,
        "tip": tip
    }
    logger.warning(f"Bad request: {code} - {title} - {detail}")
    raise HTTPException(status_code=400, detail=error_response)


def server_error(code: str = "SERVER.ERROR", title: str = "Server error",
                 detail: str = "", tip: str = ""):
    """Raise a 500 Internal Server Error exception."""
    error_response = {
        "code": code,
        "title": title,
        "detail": detail,
        "tip": tip
    }
    logger.error(f"Server error: {code} - {title} - {detail}")
    raise HTTPException(status_code=500, detail=error_response)


def service_unavailable(code: str = "SERVICE.UNAVAILABLE",
                        title: str = "Service temporarily unavailable",
                        detail: str = "Kernel is not loaded.",
                        tip: str = "Build a kernel and restart the service."):
    """Raise a 503 Service Unavailable exception."""
    error_response = {
        "code": code,
        "title": title,
        "detail": detail,
        "tip": tip
    }
    logger.warning(f"Service unavailable: {detail}")
    raise HTTPException(status_code=503, detail=error_response)


def map_kernel_error(err: Exception, context: Optional[str] = None):
    """
    Map kernel and oracle errors to friendly HTTP error codes.

    Args:
        err: The original exception
        context: Where the error occurred, for the log line
    """
    logger.error(f"Kernel error in {context or 'request'}: {err}")

    if isinstance(err, FormatMismatch):
        server_error(
            err.code,
            "Kernel file does not match catalog",
            str(err),
            "Rebuild the kernel with the catalog the service is configured for."
        )

    elif isinstance(err, RangeOverflow):
        server_error(
            err.code,
            "Quantized value out of range",
            str(err),
            "Check the tier layout; field widths must cover 360 * scale."
        )

    elif isinstance(err, OracleError):
        service_unavailable(
            err.code,
            "Position oracle failed",
            str(err),
            "Query the kernel base epoch or check the ephemeris data path."
        )

    elif isinstance(err, ValueError):
        bad_request(
            "INPUT.INVALID",
            "Invalid input",
            str(err)[:200],
            "Pass a Julian Day number or an ISO 8601 UTC timestamp."
        )

    else:
        server_error(
            "SERVER.ERROR",
            "Kernel operation failed",
            str(err)[:200],
            "Retry request; report if persistent."
        )
