import threading

import pytest

from zenith.errors import OracleError
from zenith.ephemeris.pool import OraclePool
from zenith.kernel.search import Reconstructor
from zenith.kernel.verify import Verifier, sample_times, verify

from conftest import BASE_JD, LinearOracle


class CancelAfter(threading.Event):
    """Event that reports set once it has been checked `checks` times."""

    def __init__(self, checks):
        super().__init__()
        self.remaining = checks

    def is_set(self):
        if self.remaining <= 0:
            return True
        self.remaining -= 1
        return False


@pytest.fixture
def reconstructor(minute_kernel, catalog):
    return Reconstructor(minute_kernel, catalog, LinearOracle())


class TestSampleTimes:

    def test_first_pass_starts_at_base(self):
        assert sample_times(100.0, 1.0, 4, 0, 2) == pytest.approx([100.0, 100.25, 100.5, 100.75])

    def test_later_pass_interleaves(self):
        assert sample_times(100.0, 1.0, 4, 1, 2) == pytest.approx([100.125, 100.375, 100.625, 100.875])


class TestVerifier:

    def test_default_tolerance_passes(self, reconstructor):
        report = verify(reconstructor, passes=3, points_per_pass=5)
        assert report.ok
        assert report.samples == ()
        assert report.points_checked == 15
        assert report.passes_completed == 3
        assert report.max_error == 0.0

    def test_tight_tolerance_exposes_quantization(self, reconstructor):
        report = verify(reconstructor, passes=2, points_per_pass=4, tolerance=1e-7)
        assert not report.ok
        # only the base epoch is served from the kernel
        assert {s.time for s in report.samples} == {BASE_JD}
        assert [s.body_index for s in report.samples] == [0, 1, 2]
        assert report.max_error < 1e-4

    def test_deterministic(self, minute_kernel, catalog):
        first = verify(Reconstructor(minute_kernel, catalog, LinearOracle()), 3, 7, tolerance=1e-7)
        second = verify(Reconstructor(minute_kernel, catalog, LinearOracle()), 3, 7, tolerance=1e-7)
        assert first == second

    def test_samples_sorted(self, minute_kernel, catalog):
        # a span this short keeps every sample on the kernel path
        reconstructor = Reconstructor(minute_kernel, catalog, LinearOracle())
        report = verify(reconstructor, passes=3, points_per_pass=4, time_delta=1e-4, tolerance=0.0)
        keys = [(s.time, s.body_index) for s in report.samples]
        assert keys == sorted(keys)
        assert len(keys) == 36

    def test_oracle_failures_counted(self, minute_kernel, catalog):
        reconstructor = Reconstructor(minute_kernel, catalog, LinearOracle(failing={2}))
        report = verify(reconstructor, passes=1, points_per_pass=4)
        assert report.oracle_failures == 4
        assert report.samples == ()

    def test_cancel_before_first_pass(self, reconstructor):
        cancel = threading.Event()
        cancel.set()
        report = Verifier(reconstructor).verify(4, 5, cancel=cancel)
        assert report.cancelled
        assert report.passes_completed == 0
        assert report.points_checked == 0
        assert not report.ok

    def test_cancel_keeps_completed_passes(self, reconstructor):
        report = Verifier(reconstructor).verify(4, 5, cancel=CancelAfter(2))
        assert report.cancelled
        assert report.passes_requested == 4
        assert report.passes_completed == 2
        assert report.points_checked == 10

    def test_pool_matches_serial(self, minute_kernel, catalog):
        serial = verify(Reconstructor(minute_kernel, catalog, LinearOracle()), 3, 8, tolerance=1e-7)

        oracle = LinearOracle()
        with OraclePool(oracle, workers=3, executor="thread", chunk_size=3) as pool:
            parallel = Verifier(Reconstructor(minute_kernel, catalog), pool).verify(3, 8, tolerance=1e-7)

        assert parallel == serial

    def test_requires_oracle(self, minute_kernel, catalog):
        with pytest.raises(OracleError):
            verify(Reconstructor(minute_kernel, catalog), 1, 1)

    @pytest.mark.parametrize("passes,points,delta", [(0, 5, 1.0), (1, 0, 1.0), (1, 5, 0.0), (1, 5, -1.0)])
    def test_invalid_arguments(self, reconstructor, passes, points, delta):
        with pytest.raises(ValueError):
            verify(reconstructor, passes, points, time_delta=delta)
