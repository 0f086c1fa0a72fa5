"""
Fixed-point quantization of angles and angular speeds.

Angles in [0, 360) are stored as unsigned integers at a fixed number of
steps per degree. Speeds are range-scaled per body: the interval
[-max_speed, +max_speed] maps linearly onto the whole unsigned field.
Every field width is checked when a codec is built, never masked on encode.
"""

import enum
import logging
import math
from typing import Optional

from ..errors import CatalogError, RangeOverflow

logger = logging.getLogger(__name__)

DEGREES_PER_TURN = 360.0
JD_SECOND = 1.0 / 86400.0
JD_MINUTE = 1.0 / 1440.0


def normalize_degrees(angle: float) -> float:
    """Euclidean remainder into [0, 360)."""
    if not math.isfinite(angle):
        raise ValueError(f"Angle must be finite, got {angle}")
    value = angle % DEGREES_PER_TURN
    # -1e-20 % 360.0 rounds up to 360.0
    if value >= DEGREES_PER_TURN:
        value = 0.0
    return value


def shortest_arc(start: float, end: float) -> float:
    """Signed difference end - start on the shortest arc, in [-180, 180]."""
    diff = end - start
    if diff > 180.0:
        diff -= DEGREES_PER_TURN
    elif diff < -180.0:
        diff += DEGREES_PER_TURN
    return diff


class AngleCodec:
    """Angle <-> unsigned integer at `scale` steps per degree in `bits` bits."""

    def __init__(self, scale: int, bits: int):
        if scale <= 0:
            raise ValueError(f"Scale must be positive, got {scale}")
        self.scale = scale
        self.bits = bits
        self.max_value = (1 << bits) - 1
        self.modulus = int(DEGREES_PER_TURN) * scale

        if self.modulus > self.max_value:
            needed = math.ceil(math.log2(self.modulus + 1))
            raise RangeOverflow(
                f"360 * {scale} = {self.modulus} steps need {needed} bits, "
                f"field has {bits} (max {self.max_value})",
                scale=scale, bits=bits
            )

    @property
    def step(self) -> float:
        """Quantization step in degrees."""
        return 1.0 / self.scale

    @property
    def sentinel(self) -> int:
        """All-ones field value; never produced by encode()."""
        return self.max_value

    def encode(self, angle: float) -> int:
        steps = int(round(normalize_degrees(angle) * self.scale))
        if steps == self.modulus:
            steps = 0
        if not 0 <= steps < self.modulus or steps > self.max_value:
            raise RangeOverflow(
                f"Encoded angle {angle} -> {steps} outside [0, {self.modulus})",
                angle=angle, value=steps
            )
        return steps

    def decode(self, value: int) -> float:
        if not 0 <= value < self.modulus:
            raise RangeOverflow(
                f"Stored angle value {value} outside [0, {self.modulus})",
                value=value
            )
        return value / self.scale

    def __repr__(self) -> str:
        return f"AngleCodec(scale={self.scale}, bits={self.bits})"


class SpeedCodec:
    """Affine map of [-max_speed, +max_speed] onto a `bits`-wide unsigned field."""

    def __init__(self, bits: int):
        if bits <= 0:
            raise ValueError(f"Speed field needs at least one bit, got {bits}")
        self.bits = bits
        self.max_value = (1 << bits) - 1

    @staticmethod
    def _check_range(max_speed: float) -> None:
        if not max_speed > 0:
            raise CatalogError(f"max_speed must be positive, got {max_speed}")

    def step(self, max_speed: float) -> float:
        self._check_range(max_speed)
        return 2.0 * max_speed / self.max_value

    def encode(self, speed: float, max_speed: float) -> int:
        self._check_range(max_speed)
        if math.isnan(speed):
            raise ValueError("Speed must not be NaN")
        clamped = min(max(speed, -max_speed), max_speed)
        if clamped != speed:
            logger.debug(f"Clamped speed {speed} to +/-{max_speed}")
        packed = int(round((clamped + max_speed) / (2.0 * max_speed) * self.max_value))
        return min(max(packed, 0), self.max_value)

    def decode(self, value: int, max_speed: float) -> float:
        self._check_range(max_speed)
        if not 0 <= value <= self.max_value:
            raise RangeOverflow(
                f"Stored speed value {value} outside [0, {self.max_value}]",
                value=value
            )
        return value / self.max_value * (2.0 * max_speed) - max_speed

    def __repr__(self) -> str:
        return f"SpeedCodec(bits={self.bits})"


class TierLayout:
    """Byte layout of one position record for a tier."""

    def __init__(self, longitude_bytes: int, longitude_scale: int, speed_bytes: int = 0):
        self.longitude_bytes = longitude_bytes
        self.speed_bytes = speed_bytes
        self.angle = AngleCodec(longitude_scale, longitude_bytes * 8)
        self.speed: Optional[SpeedCodec] = SpeedCodec(speed_bytes * 8) if speed_bytes else None

    @property
    def has_speed(self) -> bool:
        return self.speed is not None

    @property
    def record_size(self) -> int:
        return self.longitude_bytes + self.speed_bytes

    def __repr__(self) -> str:
        return (f"TierLayout(longitude_bytes={self.longitude_bytes}, "
                f"scale={self.angle.scale}, speed_bytes={self.speed_bytes})")


class PrecisionTier(enum.Enum):
    """Time-resolution class of a kernel. Values are the persisted tier codes."""

    SECOND = 1
    MINUTE = 2
    DAY = 3

    @property
    def code(self) -> int:
        return self.value

    @property
    def step_days(self) -> float:
        return _TIER_STEPS[self]

    @property
    def layout(self) -> TierLayout:
        return _TIER_LAYOUTS[self]

    @classmethod
    def from_code(cls, code: int) -> "PrecisionTier":
        try:
            return cls(code)
        except ValueError:
            raise ValueError(f"Unknown precision tier code {code}") from None

    @classmethod
    def parse(cls, name: str) -> "PrecisionTier":
        """Accept 'second'/'s', 'minute'/'m', 'day'/'d' in any case."""
        key = name.strip().lower()
        for tier in cls:
            if key in (tier.name.lower(), tier.name.lower()[0]):
                return tier
        raise ValueError(f"Unknown precision tier '{name}'. Use day, minute or second")


_TIER_STEPS = {
    PrecisionTier.SECOND: JD_SECOND,
    PrecisionTier.MINUTE: JD_MINUTE,
    PrecisionTier.DAY: 1.0,
}

_TIER_LAYOUTS = {
    PrecisionTier.DAY: TierLayout(longitude_bytes=3, longitude_scale=36_000, speed_bytes=0),
    PrecisionTier.MINUTE: TierLayout(longitude_bytes=4, longitude_scale=60_000, speed_bytes=2),
    PrecisionTier.SECOND: TierLayout(longitude_bytes=4, longitude_scale=3_600_000, speed_bytes=4),
}


def encode(angle_deg: float, tier: PrecisionTier) -> int:
    """Quantize a longitude with the tier's angle codec."""
    return tier.layout.angle.encode(angle_deg)


def decode(value: int, tier: PrecisionTier) -> float:
    """Inverse of encode(), exact to one quantization step."""
    return tier.layout.angle.decode(value)
