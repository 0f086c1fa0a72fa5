"""
Command line entry point: build, search, verify, bench, inspect and serve kernels.

Exit status is 0 on success and 1 on fatal errors (bad kernel file, range
overflow, I/O, oracle start-up). Bodies the oracle cannot resolve are
reported in the summary but do not change the exit status.
"""

import argparse
import json
import logging
import sys
import threading
from typing import List, Optional

from . import __version__
from .config import AppConfig, load_config
from .errors import ZenithError
from .ephemeris import ayanamsa as ayanamsas
from .ephemeris.catalog import resolve_catalog
from .ephemeris.oracle import PositionOracle
from .ephemeris.pool import OraclePool
from .ephemeris.spice import SpiceOracle
from .kernel.bench import run_bench
from .kernel.builder import KernelBuilder
from .kernel.codec import PrecisionTier
from .kernel.search import Reconstructor
from .kernel.store import KernelReader, verify_checksum, write_kernel
from .kernel.verify import Verifier
from .obs.logging import setup_logging
from .util.dates import format_jd, parse_query_time

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="zenith",
        description="Build and query quantized planetary position kernels"
    )
    parser.add_argument("--config", default="config.yaml", help="YAML config file (default: config.yaml)")
    parser.add_argument("--catalog", help="Body catalog YAML (default: built-in NAIF catalog)")
    parser.add_argument("--log-level", type=str.upper, choices=["DEBUG", "INFO", "WARNING", "ERROR"],
                        help="Override logging level")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    sub = parser.add_subparsers(dest="command", required=True)

    build = sub.add_parser("build", help="Sample the oracle and write a kernel")
    build.add_argument("start", help="Base epoch: Julian Day or UTC timestamp")
    build.add_argument("end", nargs="?", help="End of the deviation walk: Julian Day or UTC timestamp")
    build.add_argument("--tier", choices=[t.name.lower() for t in PrecisionTier], help="Precision tier")
    build.add_argument("--out", help="Kernel output path")
    build.add_argument("--workers", type=int, help="Worker count for the deviation walk (0 = serial)")
    build.add_argument("--no-checksum", action="store_true", help="Skip the SHA-256 manifest")

    search = sub.add_parser("search", help="Reconstruct positions at a time")
    search.add_argument("time", help="Julian Day or UTC timestamp")
    search.add_argument("--kernel", help="Kernel path")
    search.add_argument("--offline", action="store_true", help="Do not open the oracle; base epoch only")
    search.add_argument("--zodiac", choices=["tropical", "sidereal"], default="tropical", help="Output zodiac")
    search.add_argument("--ayanamsa", help="Ayanamsa id for sidereal output (default: configured)")

    verify = sub.add_parser("verify", help="Sample reconstruction error against the oracle")
    verify.add_argument("--kernel", help="Kernel path")
    verify.add_argument("--passes", type=int, help="Interleaved passes")
    verify.add_argument("--points", type=int, help="Sample times per pass")
    verify.add_argument("--delta", type=float, help="Span in days after the base epoch")
    verify.add_argument("--tolerance", type=float, help="Fixed tolerance in degrees")
    verify.add_argument("--workers", type=int, help="Worker count (0 = serial)")

    bench = sub.add_parser("bench", help="Time kernel reconstruction against live oracle queries")
    bench.add_argument("--kernel", help="Kernel path")
    bench.add_argument("--iterations", type=int, default=100, help="Whole-catalog queries per side")
    bench.add_argument("--time", help="Julian Day or UTC timestamp near the base epoch (default: base epoch)")

    info = sub.add_parser("info", help="Describe a kernel file")
    info.add_argument("--kernel", help="Kernel path")

    serve = sub.add_parser("serve", help="Run the HTTP service")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8080)
    return parser


def _apply_overrides(config: AppConfig, args: argparse.Namespace) -> AppConfig:
    if args.catalog:
        config.kernel.catalog_file = args.catalog
    if args.log_level:
        config.logging.level = args.log_level
    if getattr(args, "tier", None):
        config.kernel.tier = args.tier
    for name in ("out", "kernel"):
        if getattr(args, name, None):
            config.kernel.path = getattr(args, name)
    if getattr(args, "workers", None) is not None:
        if args.workers < 0:
            raise ValueError("--workers must not be negative")
        config.scan.workers = args.workers
    if getattr(args, "no_checksum", False):
        config.kernel.checksum = False
    return config


def _load_ayanamsas(config: AppConfig) -> None:
    ayanamsas.load_registry(config.sidereal.registry_file)
    ayanamsas.set_default_ayanamsa(config.sidereal.default_ayanamsa)


def _pool(config: AppConfig, oracle: PositionOracle) -> OraclePool:
    return OraclePool(
        oracle,
        workers=config.scan.workers,
        executor=config.scan.executor,
        chunk_size=config.scan.chunk_size
    )


def _emit(payload) -> None:
    print(json.dumps(payload, indent=2, ensure_ascii=False))


def cmd_build(args, config: AppConfig, oracle: PositionOracle) -> int:
    start = parse_query_time(args.start)
    end = parse_query_time(args.end) if args.end else config.scan.end_jd
    catalog = resolve_catalog(config.kernel.catalog_file)
    location = config.location.to_geo() if config.location is not None else None

    with _pool(config, oracle) as pool:
        builder = KernelBuilder(
            oracle, catalog,
            tier=config.kernel.precision_tier,
            location=location,
            timezone_offset=config.kernel.timezone_offset,
            pool=pool
        )
        report = builder.build(start, end)

    digest = write_kernel(report.kernel, config.kernel.path, checksum=config.kernel.checksum)
    _emit({
        "path": config.kernel.path,
        "tier": report.kernel.tier.name.lower(),
        "base_epoch": start,
        "base_utc": format_jd(start),
        "size_bytes": report.kernel.size,
        "sha256": digest,
        "bodies": len(catalog),
        "unresolved": [{"body": f.name, "error": f.message} for f in report.failures],
        "fallbacks": report.fallbacks,
        "span_steps": report.steps,
        "step_failures": report.step_failures,
        "max_deviation_deg": {
            body.name: dev for body, dev in zip(catalog, report.max_deviation) if dev is not None
        }
    })
    return 0


def _read(config: AppConfig):
    catalog = resolve_catalog(config.kernel.catalog_file)
    with KernelReader(config.kernel.path, catalog) as reader:
        return reader.kernel(), catalog


def cmd_search(args, config: AppConfig, oracle: PositionOracle) -> int:
    kernel, catalog = _read(config)
    query = parse_query_time(args.time)
    ayanamsa = args.ayanamsa
    if args.zodiac == "sidereal" and ayanamsa is None:
        ayanamsa = ayanamsas.DEFAULT_AYANAMSA
    ayanamsas.validate_ayanamsa_for_system(args.zodiac, ayanamsa)

    def run(active_oracle):
        reconstructor = Reconstructor(kernel, catalog, active_oracle, config.verify.tolerance)
        return reconstructor.reconstruct(query, ayanamsa=ayanamsa)

    if args.offline:
        result = run(None)
    else:
        with oracle:
            result = run(oracle)

    _emit({
        "jd": result.query_time,
        "utc": format_jd(result.query_time),
        "source": result.source,
        "verified": result.verified,
        "zodiac": result.zodiac,
        "ayanamsa": result.ayanamsa,
        "ayanamsa_deg": result.ayanamsa_value,
        "bodies": [
            {"name": body.name, "lon_deg": lon, "speed_deg_per_day": speed}
            for body, lon, speed in zip(catalog, result.positions, result.speeds)
        ]
    })
    return 0


def cmd_verify(args, config: AppConfig, oracle: PositionOracle, cancel: Optional[threading.Event] = None) -> int:
    kernel, catalog = _read(config)
    passes = args.passes or config.verify.passes
    points = args.points or config.verify.points_per_pass
    delta = args.delta or config.verify.time_delta

    pool = _pool(config, oracle) if config.scan.workers else None
    with oracle:
        if pool is not None:
            pool.initialize()
        try:
            reconstructor = Reconstructor(kernel, catalog, oracle, config.verify.tolerance)
            report = Verifier(reconstructor, pool).verify(
                passes, points, time_delta=delta, tolerance=args.tolerance, cancel=cancel
            )
        finally:
            if pool is not None:
                pool.shutdown()

    _emit({
        "passes_requested": report.passes_requested,
        "passes_completed": report.passes_completed,
        "points_checked": report.points_checked,
        "oracle_failures": report.oracle_failures,
        "cancelled": report.cancelled,
        "error_samples": len(report.samples),
        "max_error_deg": report.max_error,
        "samples": [
            {"jd": s.time, "body": catalog[s.body_index].name, "magnitude_deg": s.magnitude}
            for s in report.samples[:50]
        ]
    })
    return 0


def cmd_bench(args, config: AppConfig, oracle: PositionOracle) -> int:
    kernel, catalog = _read(config)
    query = parse_query_time(args.time) if args.time else None
    with oracle:
        reconstructor = Reconstructor(kernel, catalog, oracle, config.verify.tolerance)
        report = run_bench(reconstructor, args.iterations, query)
    _emit(report.to_dict())
    return 0


def cmd_info(args, config: AppConfig) -> int:
    catalog = resolve_catalog(config.kernel.catalog_file)
    with KernelReader(config.kernel.path, catalog) as reader:
        info = reader.info()
        kernel = reader.kernel()
    info["base_utc"] = format_jd(kernel.base_epoch)
    info["checksum_valid"] = verify_checksum(config.kernel.path)
    info["missing"] = [catalog[i].name for i in kernel.missing()]
    info["longitudes"] = {body.name: lon for body, lon in zip(catalog, kernel.longitudes())}
    _emit(info)
    return 0


def cmd_serve(args, config: AppConfig, oracle: Optional[PositionOracle]) -> int:
    import uvicorn
    from .main import create_app

    uvicorn.run(create_app(config, oracle), host=args.host, port=args.port)
    return 0


def main(argv: Optional[List[str]] = None, oracle: Optional[PositionOracle] = None) -> int:
    """
    Run the CLI.

    Args:
        argv: Arguments without the program name; sys.argv when omitted
        oracle: Oracle to use instead of the configured SPICE oracle
    """
    args = build_parser().parse_args(argv)

    try:
        config = _apply_overrides(load_config(args.config), args)
    except ValueError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1

    setup_logging(level=config.logging.level, enable_json=config.logging.json_format)

    if args.command == "serve":
        return cmd_serve(args, config, oracle)

    active_oracle = oracle or SpiceOracle.from_config(config)
    try:
        _load_ayanamsas(config)
        if args.command == "build":
            return cmd_build(args, config, active_oracle)
        if args.command == "search":
            return cmd_search(args, config, active_oracle)
        if args.command == "verify":
            return cmd_verify(args, config, active_oracle)
        if args.command == "bench":
            return cmd_bench(args, config, active_oracle)
        return cmd_info(args, config)
    except ZenithError as e:
        logger.error(f"{e.code}: {e.message}")
        print(f"error: [{e.code}] {e.message}", file=sys.stderr)
        return 1
    except (OSError, ValueError) as e:
        logger.error(f"{args.command} failed: {e}")
        print(f"error: {e}", file=sys.stderr)
        return 1
