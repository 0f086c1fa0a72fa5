"""
Kernel construction from a position oracle.

A build samples every catalog body once at the base epoch. Bodies the
oracle cannot resolve are stored with the sentinel and reported, never
silently zeroed. An optional span walk measures how far each body drifts
from its base position over (base, end] for diagnostics.
"""

import logging
import math
import time
from dataclasses import dataclass
from typing import Iterator, List, Optional, Tuple

from ..errors import OracleError
from ..ephemeris.catalog import Body, BodyCatalog
from ..ephemeris.oracle import GeoLocation, OracleFlags, PositionOracle, resolve_body
from ..ephemeris.pool import OraclePool
from ..obs.logging import StructuredLogger
from ..obs.metrics import metrics
from .codec import PrecisionTier, shortest_arc
from .format import Kernel, KernelHeader, make_records

logger = logging.getLogger(__name__)
slog = StructuredLogger(__name__)


@dataclass(frozen=True)
class BodyFailure:
    body_index: int
    name: str
    time: float
    message: str


@dataclass(frozen=True)
class BuildReport:
    kernel: Kernel
    failures: Tuple[BodyFailure, ...] = ()
    max_deviation: Tuple[Optional[float], ...] = ()  # deg, None when not walked
    steps: int = 0
    fallbacks: int = 0
    step_failures: int = 0

    @property
    def unresolved(self) -> List[str]:
        return [f.name for f in self.failures]


@dataclass(frozen=True)
class _SampleResult:
    body_index: int
    longitude: Optional[float] = None
    speed: Optional[float] = None
    used_fallback: bool = False
    error: Optional[str] = None


@dataclass(frozen=True)
class _DeviationResult:
    body_index: int
    deviation: float = 0.0
    failures: int = 0
    fallbacks: int = 0
    samples: int = 0


def _sample_body(oracle: PositionOracle, task: Tuple[int, Body, float, int, Optional[GeoLocation]]) -> _SampleResult:
    index, body, jd, flags, location = task
    try:
        reading, used_fallback = resolve_body(oracle, body, jd, OracleFlags(flags), location)
    except OracleError as e:
        return _SampleResult(index, error=e.message)
    return _SampleResult(index, reading.longitude, reading.speed, used_fallback)


@dataclass(frozen=True)
class _WalkTask:
    body_index: int
    body: Body
    base_longitude: float
    base_epoch: float
    end_epoch: float
    step_days: float
    start_k: int  # first step index, 1-based
    count: int
    flags: int
    location: Optional[GeoLocation] = None


def _walk_body(oracle: PositionOracle, task: _WalkTask) -> _DeviationResult:
    """Max shortest-arc deviation from the base longitude over one range of steps."""
    flags = OracleFlags(task.flags)
    worst = 0.0
    failures = fallbacks = samples = 0
    for k in range(task.start_k, task.start_k + task.count):
        jd = span_time(task.base_epoch, task.end_epoch, task.step_days, k)
        try:
            reading, used_fallback = resolve_body(oracle, task.body, jd, flags, task.location)
        except OracleError:
            failures += 1
            continue
        samples += 1
        fallbacks += used_fallback
        worst = max(worst, abs(shortest_arc(task.base_longitude, reading.longitude)))
    return _DeviationResult(task.body_index, worst, failures, fallbacks, samples)


def span_steps(base_epoch: float, end_epoch: float, step_days: float) -> int:
    """Number of walk times in (base, end]; the end itself is always the last one."""
    if not end_epoch > base_epoch:
        return 0
    count = int(math.floor((end_epoch - base_epoch) / step_days + 1e-9))
    if count == 0 or end_epoch - (base_epoch + count * step_days) > step_days * 1e-3:
        count += 1
    return count


def span_time(base_epoch: float, end_epoch: float, step_days: float, k: int) -> float:
    """Time of walk step k (1-based); steps past the grid land on the end."""
    return min(base_epoch + k * step_days, end_epoch)


def span_times(base_epoch: float, end_epoch: float, step_days: float) -> Iterator[float]:
    """Times in (base, end] spaced one tier step apart; the end is always included."""
    for k in range(1, span_steps(base_epoch, end_epoch, step_days) + 1):
        yield span_time(base_epoch, end_epoch, step_days, k)


@dataclass
class KernelBuilder:
    """
    Builds a single-epoch kernel for one catalog and tier.

    Args:
        oracle: Ground-truth position source
        catalog: Bodies to sample, in record order
        tier: Precision tier; selects record layout and walk step
        location: Observer for topocentric queries, None for geocentric
        timezone_offset: Seconds east of UTC, stored in the header for display
        pool: Initialized worker pool; a serial pool over `oracle` is used
            when omitted. Neither closes an oracle the caller holds open.
    """

    oracle: PositionOracle
    catalog: BodyCatalog
    tier: PrecisionTier = PrecisionTier.MINUTE
    location: Optional[GeoLocation] = None
    timezone_offset: int = 0
    pool: Optional[OraclePool] = None

    @property
    def flags(self) -> OracleFlags:
        flags = OracleFlags.SPEED
        if self.location is not None:
            flags |= OracleFlags.TOPOCENTRIC
        return flags

    def build(self, base_epoch: float, end_epoch: Optional[float] = None) -> BuildReport:
        """
        Sample every body at base_epoch and assemble the kernel.

        Args:
            base_epoch: Julian Day (UT) of the snapshot
            end_epoch: Optional end of the diagnostic span walk

        Returns:
            BuildReport with the kernel, per-body failures and deviations

        Raises:
            ValueError: Non-finite epochs or end_epoch before base_epoch
            RangeOverflow: A value does not fit its field (never masked)
        """
        if not math.isfinite(base_epoch):
            raise ValueError(f"Base epoch must be finite, got {base_epoch}")
        if end_epoch is not None:
            if not math.isfinite(end_epoch):
                raise ValueError(f"End epoch must be finite, got {end_epoch}")
            if end_epoch < base_epoch:
                raise ValueError(f"End epoch {end_epoch} is before base epoch {base_epoch}")

        start = time.perf_counter()
        pool = self.pool or OraclePool(self.oracle)
        owns_pool = self.pool is None
        if owns_pool:
            pool.initialize()
        try:
            samples = pool.map(_sample_body, [
                (index, body, base_epoch, int(self.flags), self.location)
                for index, body in enumerate(self.catalog)
            ])
            failures = self._collect_failures(samples, base_epoch)

            longitudes = [s.longitude for s in samples]
            speeds = [s.speed for s in samples]
            header = KernelHeader(
                tier=self.tier,
                base_epoch=base_epoch,
                catalog_fingerprint=self.catalog.fingerprint,
                timezone_offset=self.timezone_offset,
                location=self.location,
            )
            kernel = Kernel(header, make_records(longitudes, speeds, self.catalog, self.tier))

            fallbacks = sum(s.used_fallback for s in samples)
            deviations: Tuple[Optional[float], ...] = tuple(None for _ in samples)
            steps = step_failures = 0
            if end_epoch is not None and end_epoch > base_epoch:
                deviations, steps, step_failures, walk_fallbacks = self._walk(
                    pool, longitudes, base_epoch, end_epoch
                )
                fallbacks += walk_fallbacks
        finally:
            if owns_pool:
                pool.shutdown()

        duration = time.perf_counter() - start
        report = BuildReport(kernel, tuple(failures), deviations, steps, fallbacks, step_failures)

        base_fallbacks = sum(s.used_fallback for s in samples)
        metrics.record_oracle_query("success", len(samples) - len(failures) - base_fallbacks)
        metrics.record_oracle_query("fallback", base_fallbacks)
        metrics.record_oracle_query("failed", len(failures))
        metrics.record_build(self.tier.name.lower(), kernel.size, len(failures), duration)
        slog.kernel_built(
            tier=self.tier.name.lower(),
            base_epoch=base_epoch,
            body_count=len(self.catalog),
            unresolved=report.unresolved,
            size_bytes=kernel.size,
            duration_ms=duration * 1000,
            steps=steps,
        )
        return report

    def _collect_failures(self, samples: List[_SampleResult], jd: float) -> List[BodyFailure]:
        failures = []
        for sample in samples:
            if sample.error is None:
                continue
            body = self.catalog[sample.body_index]
            failures.append(BodyFailure(sample.body_index, body.name, jd, sample.error))
            slog.body_unresolved(body.name, sample.body_index, jd, sample.error)
            metrics.record_unresolved(body.name)
        return failures

    def _walk(
        self,
        pool: OraclePool,
        longitudes: List[Optional[float]],
        base_epoch: float,
        end_epoch: float
    ) -> Tuple[Tuple[Optional[float], ...], int, int, int]:
        step_days = self.tier.step_days
        steps = span_steps(base_epoch, end_epoch, step_days)
        logger.info(f"Walking {steps} {self.tier.name.lower()} steps over "
                    f"({base_epoch}, {end_epoch}] for {len(self.catalog)} bodies")

        tasks = []
        for index, body in enumerate(self.catalog):
            if longitudes[index] is None:
                continue
            for start_k in range(1, steps + 1, pool.chunk_size):
                tasks.append(_WalkTask(
                    index, body, longitudes[index], base_epoch, end_epoch, step_days,
                    start_k, min(pool.chunk_size, steps - start_k + 1), int(self.flags), self.location
                ))

        deviations: List[Optional[float]] = [None] * len(self.catalog)
        step_failures = fallbacks = 0
        for result in pool.map(_walk_body, tasks):
            current = deviations[result.body_index]
            deviations[result.body_index] = result.deviation if current is None else max(current, result.deviation)
            step_failures += result.failures
            fallbacks += result.fallbacks

        if step_failures:
            logger.warning(f"{step_failures} oracle failures during span walk")
        metrics.record_oracle_query("failed", step_failures)
        return tuple(deviations), steps, step_failures, fallbacks
