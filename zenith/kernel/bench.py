"""
Kernel versus live-oracle timing.

Times whole-catalog reconstruction from the kernel against querying the
oracle body by body at the same instant, and reports how far the two
answers drift apart.
"""

import logging
import time
from dataclasses import dataclass
from typing import List, Optional

from ..errors import OracleError
from ..ephemeris.oracle import resolve_body
from .codec import normalize_degrees, shortest_arc
from .search import SOURCE_ORACLE, Reconstructor

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BenchReport:
    query_time: float
    source: str
    iterations: int
    body_count: int
    kernel_seconds: float
    oracle_seconds: float
    oracle_failures: int
    max_deviation: Optional[float]  # deg, None when nothing was comparable

    @property
    def kernel_us_per_query(self) -> float:
        return self.kernel_seconds / self.iterations * 1e6

    @property
    def oracle_us_per_query(self) -> float:
        return self.oracle_seconds / self.iterations * 1e6

    @property
    def speedup(self) -> Optional[float]:
        if self.kernel_seconds <= 0:
            return None
        return self.oracle_seconds / self.kernel_seconds

    def to_dict(self) -> dict:
        return {
            "jd": self.query_time,
            "source": self.source,
            "iterations": self.iterations,
            "bodies": self.body_count,
            "kernel_us_per_query": self.kernel_us_per_query,
            "oracle_us_per_query": self.oracle_us_per_query,
            "speedup": self.speedup,
            "oracle_failures": self.oracle_failures,
            "max_deviation_deg": self.max_deviation,
        }


def _live_positions(reconstructor: Reconstructor, query_time: float) -> List[Optional[float]]:
    positions: List[Optional[float]] = []
    for body in reconstructor.catalog:
        try:
            reading, _ = resolve_body(reconstructor.oracle, body, query_time,
                                      reconstructor.flags, reconstructor.location)
        except OracleError:
            positions.append(None)
            continue
        positions.append(normalize_degrees(reading.longitude))
    return positions


def run_bench(
    reconstructor: Reconstructor,
    iterations: int = 100,
    query_time: Optional[float] = None
) -> BenchReport:
    """
    Time kernel reconstruction against live oracle queries.

    Args:
        reconstructor: Reconstructor with an opened oracle
        iterations: Whole-catalog queries per side
        query_time: Julian Day to query; the kernel base epoch when omitted

    Raises:
        ValueError: Bad iteration count, or a time the kernel cannot serve
        OracleError: No oracle configured
    """
    if iterations < 1:
        raise ValueError(f"Iterations must be positive, got {iterations}")
    if reconstructor.oracle is None:
        raise OracleError("Benchmarking needs a live oracle")

    jd = reconstructor.kernel.base_epoch if query_time is None else query_time
    source = reconstructor.source_for(jd)
    if source == SOURCE_ORACLE:
        raise ValueError(f"JD {jd} is outside the kernel's reach; pick a time within half a "
                         f"{reconstructor.kernel.tier.name.lower()} step of the base epoch")

    logger.info(f"Benchmarking {iterations} queries of {len(reconstructor.catalog)} bodies at JD {jd}")

    start = time.perf_counter()
    for _ in range(iterations):
        result = reconstructor.reconstruct(jd, verify=False)
    kernel_seconds = time.perf_counter() - start

    start = time.perf_counter()
    for _ in range(iterations):
        live = _live_positions(reconstructor, jd)
    oracle_seconds = time.perf_counter() - start

    deviations = [
        abs(shortest_arc(expected, actual))
        for expected, actual in zip(live, result.positions)
        if expected is not None and actual is not None
    ]
    failures = sum(1 for value in live if value is None)
    if failures:
        logger.warning(f"{failures} bodies unresolved by the oracle at JD {jd}")

    return BenchReport(
        query_time=jd,
        source=source,
        iterations=iterations,
        body_count=len(reconstructor.catalog),
        kernel_seconds=kernel_seconds,
        oracle_seconds=oracle_seconds,
        oracle_failures=failures,
        max_deviation=max(deviations) if deviations else None,
    )
