"""
Error sampling between reconstructed and ground-truth positions.

Pass p of P samples t = base + (i + p / P) * time_delta / points_per_pass,
so successive passes interleave and raise sampling density. Each (time,
body) comparison is independent; samples are sorted by (time, body index)
so the report does not depend on scheduling.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

from ..errors import OracleError
from ..ephemeris.catalog import BodyCatalog
from ..ephemeris.oracle import PositionOracle
from ..ephemeris.pool import OraclePool, chunked
from ..obs.logging import StructuredLogger
from ..obs.metrics import metrics
from .codec import shortest_arc
from .format import Kernel
from .search import Reconstructor

logger = logging.getLogger(__name__)
slog = StructuredLogger(__name__)


@dataclass(frozen=True)
class ErrorSample:
    time: float
    body_index: int
    magnitude: float  # deg, shortest arc


@dataclass(frozen=True)
class VerificationReport:
    samples: Tuple[ErrorSample, ...]
    passes_requested: int
    passes_completed: int
    points_checked: int
    oracle_failures: int = 0
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return not self.samples and not self.cancelled

    @property
    def max_error(self) -> float:
        return max((s.magnitude for s in self.samples), default=0.0)


@dataclass(frozen=True)
class _ChunkResult:
    samples: Tuple[ErrorSample, ...]
    points: int
    failures: int


def sample_times(base_epoch: float, time_delta: float, points_per_pass: int, pass_index: int, passes: int) -> List[float]:
    offset = pass_index / passes
    step = time_delta / points_per_pass
    return [base_epoch + (i + offset) * step for i in range(points_per_pass)]


def check_times(
    reconstructor: Reconstructor,
    times: Sequence[float],
    tolerance: Optional[float] = None
) -> _ChunkResult:
    """Compare reconstruction against the oracle for every body at each time."""
    samples = []
    failures = 0
    for jd in times:
        result = reconstructor.reconstruct(jd, verify=False)
        for index, position in enumerate(result.positions):
            actual = reconstructor.reference(index, jd)
            if position is None or actual is None:
                failures += 1
                continue
            magnitude = abs(shortest_arc(actual, position))
            limit = tolerance if tolerance is not None else reconstructor.tolerance_for(index, jd)
            if magnitude > limit:
                samples.append(ErrorSample(jd, index, magnitude))
    return _ChunkResult(tuple(samples), len(times), failures)


def _check_chunk(oracle: PositionOracle, task: Tuple[Kernel, BodyCatalog, float, Optional[float], Tuple[float, ...]]) -> _ChunkResult:
    kernel, catalog, base_tolerance, tolerance, times = task
    reconstructor = Reconstructor(kernel, catalog, oracle, base_tolerance)
    return check_times(reconstructor, times, tolerance)


class Verifier:
    """
    Multi-pass verifier over a Reconstructor.

    Args:
        reconstructor: Reconstructor with an opened ground-truth oracle
        pool: Optional initialized OraclePool; its workers rebuild the
            reconstructor around the oracle the pool hands them
    """

    def __init__(self, reconstructor: Reconstructor, pool: Optional[OraclePool] = None):
        self.reconstructor = reconstructor
        self.pool = pool

    def _run_pass(self, times: List[float], tolerance: Optional[float]) -> _ChunkResult:
        if self.pool is None:
            return check_times(self.reconstructor, times, tolerance)

        r = self.reconstructor
        tasks = [
            (r.kernel, r.catalog, r.tolerance, tolerance, tuple(chunk))
            for chunk in chunked(times, self.pool.chunk_size)
        ]
        samples: List[ErrorSample] = []
        points = failures = 0
        for result in self.pool.map(_check_chunk, tasks):
            samples.extend(result.samples)
            points += result.points
            failures += result.failures
        return _ChunkResult(tuple(samples), points, failures)

    def verify(
        self,
        passes: int,
        points_per_pass: int,
        time_delta: float = 1.0,
        tolerance: Optional[float] = None,
        cancel: Optional[threading.Event] = None
    ) -> VerificationReport:
        """
        Sample [base, base + time_delta) over the requested passes.

        Args:
            passes: Number of interleaved passes
            points_per_pass: Sample times per pass
            time_delta: Span in days
            tolerance: Fixed threshold in degrees; by default each sample uses
                the reconstructor's quantization-aware tolerance
            cancel: Checked before each pass; completed passes are kept

        Raises:
            ValueError: Non-positive passes, points or time_delta
            OracleError: No ground-truth oracle configured
        """
        if passes < 1 or points_per_pass < 1:
            raise ValueError("passes and points_per_pass must be positive")
        if not time_delta > 0:
            raise ValueError(f"time_delta must be positive, got {time_delta}")
        if tolerance is not None and tolerance < 0:
            raise ValueError(f"Tolerance must be non-negative, got {tolerance}")
        if self.reconstructor.oracle is None and self.pool is None:
            raise OracleError("Verification needs a ground-truth oracle")

        start = time.perf_counter()
        base = self.reconstructor.kernel.base_epoch
        samples: List[ErrorSample] = []
        points = failures = completed = 0
        cancelled = False

        for pass_index in range(passes):
            if cancel is not None and cancel.is_set():
                cancelled = True
                logger.info(f"Verification cancelled after {completed}/{passes} passes")
                break
            times = sample_times(base, time_delta, points_per_pass, pass_index, passes)
            result = self._run_pass(times, tolerance)
            samples.extend(result.samples)
            points += result.points
            failures += result.failures
            completed += 1

        samples.sort(key=lambda s: (s.time, s.body_index))
        report = VerificationReport(tuple(samples), passes, completed, points, failures, cancelled)

        metrics.record_verification(points, len(samples))
        slog.verification_completed(
            passes_completed=completed,
            passes_requested=passes,
            points_checked=points,
            error_count=len(samples),
            cancelled=cancelled,
            duration_ms=(time.perf_counter() - start) * 1000,
        )
        return report


def verify(
    reconstructor: Reconstructor,
    passes: int,
    points_per_pass: int,
    **kwargs
) -> VerificationReport:
    return Verifier(reconstructor).verify(passes, points_per_pass, **kwargs)
