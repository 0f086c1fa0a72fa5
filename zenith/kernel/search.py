"""
Position reconstruction from a single-epoch kernel.

The kernel is a snapshot: stored values are authoritative at the base
epoch, tiers with a speed field extrapolate linearly within half a tier
step of it, and every other query time is delegated to the oracle.
"""

import logging
import math
from dataclasses import dataclass
from typing import List, Optional, Tuple

from ..errors import FormatMismatch, OracleError
from ..ephemeris import ayanamsa as ayanamsas
from ..ephemeris import points
from ..ephemeris.catalog import BodyCatalog
from ..ephemeris.oracle import OracleFlags, PositionOracle, resolve_body
from ..obs.metrics import metrics
from .codec import normalize_degrees, shortest_arc
from .format import Kernel

logger = logging.getLogger(__name__)

DEFAULT_TOLERANCE = 1e-6  # deg
EPOCH_EPSILON = 1e-9  # days

SOURCE_KERNEL = "kernel"
SOURCE_KERNEL_SPEED = "kernel+speed"
SOURCE_ORACLE = "oracle"

ZODIAC_TROPICAL = "tropical"
ZODIAC_SIDEREAL = "sidereal"


@dataclass(frozen=True)
class SearchResult:
    query_time: float
    positions: Tuple[Optional[float], ...]
    speeds: Tuple[Optional[float], ...]
    source: str
    verified: bool
    zodiac: str = ZODIAC_TROPICAL
    ayanamsa: Optional[str] = None
    ayanamsa_value: Optional[float] = None  # deg


class Reconstructor:
    """
    Answers position queries against one kernel.

    Args:
        kernel: Kernel to serve from
        catalog: Catalog the kernel was built with
        oracle: Opened oracle for off-epoch queries and verification; optional
        tolerance: Agreement threshold in degrees, before quantization allowance

    Raises:
        FormatMismatch: The kernel was not built with this catalog
    """

    def __init__(
        self,
        kernel: Kernel,
        catalog: BodyCatalog,
        oracle: Optional[PositionOracle] = None,
        tolerance: float = DEFAULT_TOLERANCE
    ):
        if kernel.header.catalog_fingerprint != catalog.fingerprint or len(kernel.records) != len(catalog):
            raise FormatMismatch(
                f"Kernel (fingerprint 0x{kernel.header.catalog_fingerprint:08x}, "
                f"{len(kernel.records)} records) does not match catalog '{catalog.name}' "
                f"(0x{catalog.fingerprint:08x}, {len(catalog)} bodies)"
            )
        if not tolerance >= 0:
            raise ValueError(f"Tolerance must be non-negative, got {tolerance}")

        self.kernel = kernel
        self.catalog = catalog
        self.oracle = oracle
        self.tolerance = tolerance

    @property
    def location(self):
        return self.kernel.header.location

    @property
    def flags(self) -> OracleFlags:
        flags = OracleFlags.SPEED
        if self.kernel.header.location is not None:
            flags |= OracleFlags.TOPOCENTRIC
        return flags

    def source_for(self, query_time: float) -> str:
        dt = query_time - self.kernel.base_epoch
        if abs(dt) <= EPOCH_EPSILON:
            return SOURCE_KERNEL
        if self.kernel.layout.has_speed and abs(dt) <= self.kernel.tier.step_days / 2:
            return SOURCE_KERNEL_SPEED
        return SOURCE_ORACLE

    def tolerance_for(self, index: int, query_time: float) -> float:
        """
        Allowed deviation for one body at one time.

        Kernel-served values may differ from the oracle by half a longitude
        step, plus half a speed step per day of extrapolation.
        """
        source = self.source_for(query_time)
        if source == SOURCE_ORACLE:
            return self.tolerance

        layout = self.kernel.layout
        allowed = self.tolerance + layout.angle.step / 2
        if source == SOURCE_KERNEL_SPEED:
            dt = abs(query_time - self.kernel.base_epoch)
            allowed += layout.speed.step(self.catalog[index].max_speed) / 2 * dt
        return allowed

    def _from_kernel(self, query_time: float, source: str):
        dt = query_time - self.kernel.base_epoch
        positions: List[Optional[float]] = []
        speeds: List[Optional[float]] = []
        for index in range(len(self.catalog)):
            longitude = self.kernel.longitude(index)
            speed = self.kernel.speed(index, self.catalog)
            if longitude is not None and source == SOURCE_KERNEL_SPEED:
                longitude = normalize_degrees(longitude + speed * dt)
            positions.append(longitude)
            speeds.append(speed)
        return positions, speeds

    def _from_oracle(self, query_time: float):
        if self.oracle is None:
            raise OracleError(
                f"JD {query_time} is not the kernel base epoch {self.kernel.base_epoch} "
                f"and no oracle is configured",
                jd=query_time
            )
        positions: List[Optional[float]] = []
        speeds: List[Optional[float]] = []
        for body in self.catalog:
            try:
                reading, _ = resolve_body(self.oracle, body, query_time, self.flags, self.location)
            except OracleError as e:
                logger.warning(f"Oracle could not resolve {body.name} at JD {query_time}: {e.message}")
                positions.append(None)
                speeds.append(None)
                continue
            positions.append(normalize_degrees(reading.longitude))
            speeds.append(reading.speed)
        return positions, speeds

    def reference(self, index: int, query_time: float) -> Optional[float]:
        """Fresh oracle longitude for one body, None when the oracle fails."""
        if self.oracle is None:
            raise OracleError("No oracle configured for reference lookups")
        try:
            reading, _ = resolve_body(self.oracle, self.catalog[index], query_time, self.flags, self.location)
        except OracleError:
            return None
        return normalize_degrees(reading.longitude)

    def _verify(self, positions: List[Optional[float]], query_time: float) -> bool:
        if self.oracle is None:
            return False
        for index, position in enumerate(positions):
            if position is None:
                return False
            expected = self.reference(index, query_time)
            if expected is None:
                return False
            if abs(shortest_arc(expected, position)) > self.tolerance_for(index, query_time):
                logger.debug(f"{self.catalog[index].name} disagrees at JD {query_time}: "
                             f"{position} vs {expected}")
                return False
        return True

    def ayanamsa_value(self, ayanamsa_id: str, query_time: float, positions: List[Optional[float]]) -> float:
        """
        Ayanamsa at query_time in degrees.

        Taken from the reconstructed positions when the catalog tracks the
        ayanamsa as a point, otherwise computed from the registry entry.
        """
        config = ayanamsas.resolve_ayanamsa(ayanamsa_id)
        index = self.catalog.point_index(points.ayanamsa_point_id(config["id"]))
        if index is not None and positions[index] is not None:
            return positions[index]
        return ayanamsas.get_ayanamsa_value(config, query_time)

    def _to_sidereal(self, positions: List[Optional[float]], value: float) -> List[Optional[float]]:
        converted = []
        for body, position in zip(self.catalog, positions):
            if position is None or (body.derived and not points.is_zodiacal(body.id)):
                converted.append(position)
            else:
                converted.append(ayanamsas.apply_ayanamsa(position, value))
        return converted

    def reconstruct(
        self,
        query_time: float,
        verify: bool = True,
        ayanamsa: Optional[str] = None
    ) -> SearchResult:
        """
        Positions of every catalog body at query_time.

        With an ayanamsa id the positions are sidereal; verification always
        compares the tropical values.

        Raises:
            ValueError: Non-finite query time or unknown ayanamsa
            OracleError: Query time needs the oracle and none is configured
        """
        if not math.isfinite(query_time):
            raise ValueError(f"Query time must be finite, got {query_time}")
        key = ayanamsas.resolve_ayanamsa(ayanamsa)["id"] if ayanamsa is not None else None

        source = self.source_for(query_time)
        if source == SOURCE_ORACLE:
            positions, speeds = self._from_oracle(query_time)
        else:
            positions, speeds = self._from_kernel(query_time, source)

        verified = self._verify(positions, query_time) if verify else False
        metrics.record_search(source, verified)
        if key is None:
            return SearchResult(query_time, tuple(positions), tuple(speeds), source, verified)

        value = self.ayanamsa_value(key, query_time, positions)
        return SearchResult(
            query_time, tuple(self._to_sidereal(positions, value)), tuple(speeds), source, verified,
            zodiac=ZODIAC_SIDEREAL, ayanamsa=key, ayanamsa_value=value
        )


def reconstruct(
    kernel: Kernel,
    query_time: float,
    catalog: BodyCatalog,
    oracle: Optional[PositionOracle] = None,
    tolerance: float = DEFAULT_TOLERANCE,
    ayanamsa: Optional[str] = None
) -> SearchResult:
    """One-shot reconstruction; see Reconstructor."""
    return Reconstructor(kernel, catalog, oracle, tolerance).reconstruct(query_time, ayanamsa=ayanamsa)
