"""
Position oracle contract.

The oracle is the external authority for ground-truth positions. It is
held through acquire()/release() (or a `with` block) so any per-process state,
such as loaded ephemeris files, is released on every exit path.
"""

import enum
import logging
from dataclasses import dataclass
from typing import Callable, Optional, Tuple

from ..errors import OracleError
from . import points
from .catalog import Body, BodyId

logger = logging.getLogger(__name__)


class OracleFlags(enum.IntFlag):
    NONE = 0
    SPEED = 1
    TOPOCENTRIC = 2


@dataclass(frozen=True)
class GeoLocation:
    lat: float
    lon: float
    elevation_m: float = 0.0

    def __post_init__(self):
        if not -90.0 <= self.lat <= 90.0:
            raise ValueError(f"Latitude {self.lat} outside [-90, 90]")
        if not -180.0 <= self.lon <= 180.0:
            raise ValueError(f"Longitude {self.lon} outside [-180, 180]")


@dataclass(frozen=True)
class OracleReading:
    longitude: float  # deg
    speed: float  # deg/day


class PositionOracle:
    """
    Base class for position oracles.

    Subclasses implement query(); open() and close() default to no-ops.
    Oracles handed to a process pool are pickled into each worker and opened
    there, so they should hold configuration rather than live handles until
    open() is called.

    Shared holders (pools, the service, `with` blocks) go through acquire()
    and release(): the first acquire opens, the last release closes, so a
    pool never closes an oracle its caller still holds.
    """

    thread_safe = False
    _holds = 0

    def open(self) -> None:
        pass

    def close(self) -> None:
        pass

    @property
    def is_open(self) -> bool:
        return self._holds > 0

    def acquire(self) -> None:
        if self._holds == 0:
            self.open()
        self._holds += 1

    def release(self) -> None:
        if self._holds == 0:
            return
        self._holds -= 1
        if self._holds == 0:
            self.close()

    def __getstate__(self):
        # A pickled copy starts unheld in its new process.
        state = self.__dict__.copy()
        state.pop("_holds", None)
        return state

    def query(self, jd: float, body_id: BodyId, flags: OracleFlags) -> OracleReading:
        """
        Return longitude and speed for a body at a Julian Day (UT).

        Raises:
            OracleError: If the position cannot be computed
        """
        raise NotImplementedError

    def __enter__(self):
        self.acquire()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()


class CallableOracle(PositionOracle):
    """
    Adapt a plain function `fn(jd, body_id, flags) -> (longitude, speed)`.

    The function may raise OracleError or return None to signal failure.
    It must be a module-level function when used with a process pool.
    """

    thread_safe = True

    def __init__(self, fn: Callable[[float, BodyId, OracleFlags], Optional[Tuple[float, float]]]):
        self.fn = fn

    def query(self, jd: float, body_id: BodyId, flags: OracleFlags) -> OracleReading:
        result = self.fn(jd, body_id, flags)
        if result is None:
            raise OracleError(f"No position for body {body_id} at JD {jd}", body_id=body_id, jd=jd)
        longitude, speed = result
        return OracleReading(float(longitude), float(speed))


def resolve_body(
    oracle: Optional[PositionOracle],
    body: Body,
    jd: float,
    flags: OracleFlags,
    location: Optional[GeoLocation] = None
) -> Tuple[OracleReading, bool]:
    """
    Query a body, retrying once with its fallback id when the body allows it.

    Derived points are computed from jd and location; the oracle is not
    consulted for them.

    Returns:
        (reading, used_fallback)

    Raises:
        OracleError: If every permitted attempt failed
    """
    if body.derived:
        longitude, speed = points.point_position(body.id, jd, location)
        return OracleReading(longitude, speed), False
    if oracle is None:
        raise OracleError(f"No oracle to resolve {body.name} at JD {jd}", body=body.name, jd=jd)

    try:
        return oracle.query(jd, body.id, flags), False
    except OracleError as primary_error:
        if not body.supports_fallback_id:
            raise
        logger.debug(f"Primary lookup failed for {body.name} ({body.id}): {primary_error}; "
                     f"retrying with {body.fallback_id}")
        try:
            return oracle.query(jd, body.fallback_id, flags), True
        except OracleError as fallback_error:
            raise OracleError(
                f"{body.name}: primary id {body.id} failed ({primary_error.message}); "
                f"fallback id {body.fallback_id} failed ({fallback_error.message})",
                body=body.name, jd=jd
            ) from fallback_error
