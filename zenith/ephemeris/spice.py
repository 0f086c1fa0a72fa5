"""
SPICE-backed position oracle.

Loads NASA/NAIF kernels from a directory (or a single meta-kernel) and
computes apparent ecliptic-of-date longitudes and their rates from the
state vector returned by SPICE.
"""

import logging
import math
import os
from pathlib import Path
from typing import List, Optional, Tuple

import spiceypy as spice
from spiceypy.utils.exceptions import SpiceyError

from ..errors import OracleError
from .catalog import BodyId
from .oracle import GeoLocation, OracleFlags, OracleReading, PositionOracle

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86400.0

KERNEL_EXTENSIONS = {
    ".bsp": "ephemeris",
    ".tls": "leapseconds",
    ".tpc": "planetary_constants",
    ".bpc": "binary_pck",
    ".tf": "text_kernel",
    ".tm": "meta_kernel"
}


def get_kernel_type(filename: str) -> str:
    """Determine kernel type from filename extension."""
    return KERNEL_EXTENSIONS.get(Path(filename).suffix.lower(), "unknown")


def find_kernel_files(ephe_path: str) -> List[str]:
    """Find all kernel files below a directory, meta-kernels excluded."""
    kernel_files = []
    for root, dirs, files in os.walk(ephe_path):
        for file in files:
            kernel_type = get_kernel_type(file)
            if kernel_type not in ("unknown", "meta_kernel"):
                kernel_files.append(os.path.join(root, file))
    return sorted(kernel_files)


def longitude_and_rate(state) -> Tuple[float, float]:
    """
    Ecliptic longitude (deg) and its rate (deg/day) from a position/velocity
    state in km and km/s.
    """
    x, y, z, vx, vy, vz = state[:6]
    rho2 = x * x + y * y
    if rho2 == 0.0:
        raise OracleError("Degenerate state vector: body on the ecliptic pole")
    lon = math.degrees(math.atan2(y, x)) % 360.0
    rate = (x * vy - y * vx) / rho2  # rad/s
    return lon, math.degrees(rate) * SECONDS_PER_DAY


class SpiceOracle(PositionOracle):
    """
    Oracle over SPICE kernels.

    SPICE keeps global state, so one opened oracle per process: use a
    process pool, not a thread pool, for parallel work.
    """

    thread_safe = False

    def __init__(
        self,
        ephe_path: str,
        meta_kernel: Optional[str] = None,
        frame: str = "ECLIPDATE",
        abcorr: str = "LT+S",
        location: Optional[GeoLocation] = None
    ):
        self.ephe_path = ephe_path
        self.meta_kernel = meta_kernel
        self.frame = frame
        self.abcorr = abcorr
        self.location = location
        self._loaded: List[str] = []
        self._observer_km = None

    def open(self) -> None:
        """
        Load kernels into this process.

        Raises:
            OracleError: If the data directory is missing, empty, or a kernel fails to load
        """
        if self._loaded:
            return

        if self.meta_kernel:
            kernel_files = [self.meta_kernel]
        else:
            if not os.path.isdir(self.ephe_path):
                raise OracleError(f"Ephemeris directory not found: {self.ephe_path}")
            kernel_files = find_kernel_files(self.ephe_path)

        if not kernel_files:
            raise OracleError(f"No kernel files found in {self.ephe_path}")

        try:
            for kernel_file in kernel_files:
                spice.furnsh(kernel_file)
                logger.debug(f"Loaded SPICE kernel: {kernel_file}")
            if self.location is not None:
                self._observer_km = self._observer_position(self.location)
        except SpiceyError as e:
            for kernel_file in kernel_files:
                spice.unload(kernel_file)
            raise OracleError(f"Failed to load SPICE kernels: {e}") from e

        self._loaded = kernel_files
        logger.info(f"Loaded {len(kernel_files)} SPICE kernel files from {self.meta_kernel or self.ephe_path}")

    def close(self) -> None:
        for kernel_file in self._loaded:
            try:
                spice.unload(kernel_file)
            except SpiceyError as e:
                logger.warning(f"Error unloading SPICE kernel {kernel_file}: {e}")
        self._loaded = []
        self._observer_km = None

    @staticmethod
    def _observer_position(location: GeoLocation):
        radii = spice.bodvrd("EARTH", "RADII", 3)[1]
        re, rp = radii[0], radii[2]
        flattening = (re - rp) / re
        return spice.georec(
            math.radians(location.lon),
            math.radians(location.lat),
            location.elevation_m / 1000.0,
            re,
            flattening
        )

    def query(self, jd: float, body_id: BodyId, flags: OracleFlags) -> OracleReading:
        if not self._loaded:
            raise OracleError("SPICE oracle used before open()")

        try:
            et = spice.str2et(f"JD {jd:.10f}")
            target = str(body_id)
            if flags & OracleFlags.TOPOCENTRIC:
                if self._observer_km is None:
                    raise OracleError("Topocentric query needs a configured location")
                state, _ = spice.spkcpo(
                    target, et, self.frame, "OBSERVER", self.abcorr,
                    self._observer_km, "EARTH", "ITRF93"
                )
            else:
                state, _ = spice.spkezr(target, et, self.frame, self.abcorr, "EARTH")
        except SpiceyError as e:
            raise OracleError(f"SPICE failed for body {body_id} at JD {jd}: {getattr(e, 'short', '') or e}",
                              body_id=body_id, jd=jd) from e

        lon, speed = longitude_and_rate(state)
        if not flags & OracleFlags.SPEED:
            speed = 0.0
        return OracleReading(lon, speed)

    def __getstate__(self):
        # Workers re-open kernels themselves.
        state = super().__getstate__()
        state["_loaded"] = []
        state["_observer_km"] = None
        return state

    @classmethod
    def from_config(cls, config) -> "SpiceOracle":
        """Build from an AppConfig's oracle and location sections."""
        location = config.location.to_geo() if config.location is not None else None
        return cls(
            ephe_path=config.oracle.ephe_path,
            meta_kernel=config.oracle.meta_kernel,
            frame=config.oracle.frame,
            abcorr=config.oracle.abcorr,
            location=location
        )
