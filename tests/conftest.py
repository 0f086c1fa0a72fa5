import logging
import threading
from pathlib import Path

import pytest
import yaml

from zenith.config import AppConfig
from zenith.errors import OracleError
from zenith.ephemeris import ayanamsa
from zenith.ephemeris.catalog import Body, BodyCatalog, load_catalog
from zenith.ephemeris.oracle import OracleReading, PositionOracle
from zenith.kernel.builder import KernelBuilder
from zenith.kernel.codec import PrecisionTier
from zenith.kernel.store import write_kernel

BASE_JD = 2451545.0  # 2000-01-01T12:00:00Z

# Off-grid start angles so quantization error is visible; the last one
# rounds up to 360 and wraps to zero at MINUTE resolution.
START_LONGITUDES = {1: 10.123456789, 2: 200.987654321, 3: 359.999999}
RATES = {1: 0.9856, 2: 13.1764, 3: -0.0523}


class LinearOracle(PositionOracle):
    """
    Deterministic oracle: each body moves at a constant rate from a start angle.

    Ids listed in `failing` raise OracleError. Calls are recorded.
    """

    thread_safe = True

    def __init__(self, start=None, rates=None, epoch=BASE_JD, failing=()):
        self.start = dict(start or START_LONGITUDES)
        self.rates = dict(rates or RATES)
        self.epoch = epoch
        self.failing = set(failing)
        self.calls = []
        self.opened = 0
        self.closed = 0
        self._lock = threading.Lock()

    def open(self):
        self.opened += 1

    def close(self):
        self.closed += 1

    def query(self, jd, body_id, flags):
        with self._lock:
            self.calls.append((jd, body_id, flags))
        if body_id in self.failing or body_id not in self.start:
            raise OracleError(f"no ephemeris for {body_id}", body_id=body_id, jd=jd)
        dt = jd - self.epoch
        return OracleReading((self.start[body_id] + self.rates[body_id] * dt) % 360.0, self.rates[body_id])

    def ids_queried(self):
        return [call[1] for call in self.calls]


class BrokenOracle(PositionOracle):
    """Oracle whose data cannot be loaded."""

    def open(self):
        raise OracleError("ephemeris directory not found")

    def query(self, jd, body_id, flags):
        raise OracleError("not open")


@pytest.fixture(autouse=True)
def reset_console_logging():
    """Drop console handlers installed by setup_logging during a test."""
    yield
    root = logging.getLogger()
    for handler in root.handlers[:]:
        if type(handler) is logging.StreamHandler:
            root.removeHandler(handler)


@pytest.fixture(autouse=True)
def reset_ayanamsa_registry():
    """Restore the built-in ayanamsa registry and default after each test."""
    yield
    ayanamsa.load_registry(None)
    ayanamsa.set_default_ayanamsa(ayanamsa.BUILTIN_DEFAULT)


CATALOG_DATA = {
    "name": "test-three",
    "version": 1,
    "bodies": [
        {"name": "Alpha", "id": 1, "max_speed": 1.0},
        {"name": "Beta", "id": 2, "max_speed": 13.5},
        {"name": "Gamma", "id": 3, "max_speed": 0.2},
    ]
}


@pytest.fixture
def catalog_file(tmp_path) -> Path:
    path = tmp_path / "catalog.yaml"
    path.write_text(yaml.safe_dump(CATALOG_DATA))
    return path


@pytest.fixture
def catalog(catalog_file) -> BodyCatalog:
    return load_catalog(str(catalog_file))


@pytest.fixture
def three_body_catalog() -> BodyCatalog:
    return BodyCatalog(
        [Body("Alpha", 1, 1.0), Body("Beta", 2, 13.5), Body("Gamma", 3, 0.2)],
        name="test-three",
        version=1,
    )


@pytest.fixture
def oracle() -> LinearOracle:
    return LinearOracle()


@pytest.fixture
def minute_kernel(oracle, catalog):
    return KernelBuilder(oracle, catalog, tier=PrecisionTier.MINUTE).build(BASE_JD).kernel


@pytest.fixture
def kernel_path(tmp_path, minute_kernel) -> Path:
    path = tmp_path / "kernel.zk"
    write_kernel(minute_kernel, str(path))
    return path


@pytest.fixture
def app_config(kernel_path, catalog_file) -> AppConfig:
    return AppConfig(
        kernel={"path": str(kernel_path), "catalog_file": str(catalog_file), "tier": "minute"},
        logging={"level": "INFO", "json": False},
    )
