# zenith/main.py
import logging
import platform
import threading
import time
from datetime import datetime, timezone
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse

from . import __version__, api
from .config import AppConfig, load_config, print_config
from .errors import ZenithError
from .ephemeris import ayanamsa
from .ephemeris.catalog import resolve_catalog
from .ephemeris.oracle import PositionOracle
from .ephemeris.spice import SpiceOracle
from .kernel.search import Reconstructor
from .kernel.store import KernelReader, verify_checksum
from .schemas import HealthzResponse
from .obs.logging import setup_logging, StructuredLogger, set_request_context, clear_request_context
from .obs.metrics import metrics, get_metrics_content, RequestMetricsMiddleware

logger = logging.getLogger(__name__)
business_logger = StructuredLogger(__name__)


def _load_ayanamsas(config: AppConfig) -> None:
    registry_file = config.sidereal.registry_file
    try:
        registry_start = time.perf_counter()
        ayanamsa.load_registry(registry_file)
        ayanamsa.set_default_ayanamsa(config.sidereal.default_ayanamsa)
        business_logger.startup_event(
            "ayanamsa_registry", "ready",
            duration_ms=(time.perf_counter() - registry_start) * 1000,
            details={"registry_file": registry_file or "built-in"}
        )
    except (OSError, ValueError) as e:
        business_logger.startup_event("ayanamsa_registry", "error", details={"error": str(e)})
        logger.warning(f"Failed to load ayanamsa registry: {e}, using built-in defaults")
        ayanamsa.load_registry(None)
        ayanamsa.set_default_ayanamsa(ayanamsa.BUILTIN_DEFAULT)


def _load_kernel(
app: FastAPI, config: AppConfig) -> None:
    state = app.state
    path = config.kernel.path
    kernel_start = time.perf_counter()
    try:
        catalog = resolve_catalog(config.kernel.catalog_file)
        state.catalog = catalog
        with KernelReader(path, catalog) as reader:
            kernel = reader.kernel()
    except (OSError, ZenithError) as e:
        state.kernel_error = f"Failed to load kernel {path}: {e}"
        business_logger.startup_event("kernel", "error", details={"kernel_path": path, "error": str(e)})
        logger.error(state.kernel_error)
        if isinstance(e, ZenithError):
            metrics.record_error(e.code)
        return

    state.checksum_valid = verify_checksum(path) if config.kernel.checksum else None
    duration_ms = (time.perf_counter() - kernel_start) * 1000
    business_logger.kernel_loaded(
        path, kernel.tier.name.lower(), catalog.name,
        checksum_valid=state.checksum_valid, duration_ms=duration_ms
    )
    metrics.record_kernel_loaded(kernel.size)
    state.kernel = kernel


def _open_oracle(app: FastAPI, config: AppConfig, oracle: Optional[PositionOracle]) -> None:
    state = app.state
    oracle = oracle or SpiceOracle.from_config(config)
    try:
        oracle.acquire()
    except ZenithError as e:
        state.oracle_error = str(e)
        business_logger.startup_event("oracle", "error", details={"error": str(e)})
        logger.warning(f"Oracle unavailable, serving base epoch only: {e}")
        return
    state.oracle = oracle
    business_logger.startup_event("oracle", "ready", details={"oracle": type(oracle).__name__})


def create_app(config: Optional[AppConfig] = None, oracle: Optional[PositionOracle] = None) -> FastAPI:
    """
    Build the read-only kernel service.

    Args:
        config: Effective configuration; loaded from config.yaml when omitted
        oracle: Oracle for off-epoch searches; a SPICE oracle is built from
            config when omitted
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        cfg = config or load_config("config.yaml")
        setup_logging(level=cfg.logging.level, enable_json=cfg.logging.json_format)

        startup_start = time.perf_counter()
        business_logger.startup_event("application", "starting")
        print_config(cfg)

        state = app.state
        state.config = cfg
        state.kernel_path = cfg.kernel.path
        state.kernel = None
        state.kernel_error = None
        state.checksum_valid = None
        state.catalog = None
        state.oracle = None
        state.oracle_error = None
        state.reconstructor = None
        state.oracle_lock = threading.Lock()

        _load_ayanamsas(cfg)
        _load_kernel(app, cfg)
        _open_oracle(app, cfg, oracle)
        if state.kernel is not None:
            state.reconstructor = Reconstructor(
                state.kernel, state.catalog, state.oracle, cfg.verify.tolerance
            )

        metrics.set_system_info(
            version=__version__,
            tier=cfg.kernel.tier,
            catalog=state.catalog.name if state.catalog else "unknown",
            python_version=platform.python_version()
        )
        business_logger.startup_event(
            "application", "ready",
            duration_ms=(time.perf_counter() - startup_start) * 1000
        )

        yield

        business_logger.startup_event("application", "stopping")
        if state.oracle is not None:
            state.oracle.release()
        business_logger.startup_event("application", "stopped")

    app = FastAPI(
        title="Zenith Kernel",
        version=__version__,
        description="Quantized planetary position snapshots with oracle-backed reconstruction",
        lifespan=lifespan
    )

    app.add_middleware(RequestMetricsMiddleware)

    @app.middleware("http")
    async def request_middleware(request: Request, call_next):
        request_id = set_request_context(request.headers.get("X-Request-Id"))
        start_time = time.perf_counter()
        try:
            response = await call_next(request)
        finally:
            clear_request_context()

        logger.info(
            "HTTP request processed",
            extra={
                "method": request.method,
                "path": request.url.path,
                "status_code": response.status_code,
                "duration_ms": int((time.perf_counter() - start_time) * 1000)
            }
        )
        response.headers["X-Request-Id"] = request_id
        return response

    @app.get("/healthz", response_model=HealthzResponse)
    def healthz(request: Request):
        """
        Health check with kernel and oracle status.
        """
        state = request.app.state
        kernel = getattr(state, "kernel", None)

        if kernel is not None:
            kernel_info = {
                "ok": True,
                "path": state.kernel_path,
                "tier": kernel.tier.name.lower(),
                "base_epoch": kernel.base_epoch,
                "bodies": len(kernel.records),
                "missing": len(kernel.missing()),
                "checksum_valid": state.checksum_valid
            }
        else:
            kernel_info = {"ok": False, "error": getattr(state, "kernel_error", None)}

        oracle = getattr(state, "oracle", None)
        oracle_info = {"ok": oracle is not None}
        if oracle is not None:
            oracle_info["type"] = type(oracle).__name__
        else:
            oracle_info["error"] = getattr(state, "oracle_error", None)

        if kernel is None:
            status = "unhealthy"
        elif oracle is None or state.checksum_valid is False:
            status = "degraded"
        else:
            status = "healthy"

        return {
            "status": status,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "version": __version__,
            "kernel": kernel_info,
            "oracle": oracle_info,
            "metrics": metrics.get_metrics_summary()
        }

    @app.get("/metrics", response_class=PlainTextResponse)
    def metrics_endpoint():
        """
        Prometheus metrics endpoint.
        """
        content, content_type = get_metrics_content()
        return PlainTextResponse(content, media_type=content_type)

    app.include_router(api.router)

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.error(f"Unhandled exception in {request.method} {request.url}: {exc}")
        return JSONResponse(
            status_code=500,
            content={
                "code": "SERVER.ERROR",
                "title": "Internal server error",
                "detail": "An unexpected error occurred",
                "tip": "Please try again or contact support if the problem persists"
            }
        )

    return app
