"""
Binary kernel layout, schema version 1.

All fields are little-endian::

    offset  size  field
    0       1     format tag: schema_version << 4 | tier code
    1       4     timezone offset, i32 seconds
    5       8     base epoch, f64 Julian Day (UT)
    13      4     catalog fingerprint, u32
    17      4     latitude, i32 micro-degrees (INT32_MIN when absent)
    21      4     longitude, i32 micro-degrees (INT32_MIN when absent)
    25      ...   one record per catalog body, in catalog order

A record is the quantized longitude followed by the quantized speed when
the tier has a speed field. Record widths come from the tier layout.
"""

import logging
import math
import struct
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

from ..ephemeris.catalog import BodyCatalog
from ..ephemeris.oracle import GeoLocation
from ..errors import FormatMismatch, RangeOverflow
from .codec import PrecisionTier, TierLayout

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1
HEADER = struct.Struct("<BidIii")
HEADER_SIZE = HEADER.size
NO_COORDINATE = -(1 << 31)
MICRO = 1_000_000
MAX_TIMEZONE_OFFSET = 18 * 3600


def format_tag(tier: PrecisionTier, schema_version: int = SCHEMA_VERSION) -> int:
    return (schema_version << 4) | tier.code


def parse_format_tag(tag: int) -> Tuple[int, PrecisionTier]:
    """
    Split a tag byte into (schema_version, tier).

    Raises:
        FormatMismatch: Unknown schema version or tier code
    """
    version, code = tag >> 4, tag & 0x0F
    if version != SCHEMA_VERSION:
        raise FormatMismatch(f"Unsupported kernel schema version {version} (tag 0x{tag:02x})",
                             tag=tag)
    try:
        return version, PrecisionTier.from_code(code)
    except ValueError:
        raise FormatMismatch(f"Unknown tier code {code} (tag 0x{tag:02x})", tag=tag) from None


@dataclass(frozen=True)
class KernelHeader:
    tier: PrecisionTier
    base_epoch: float
    catalog_fingerprint: int
    timezone_offset: int = 0
    location: Optional[GeoLocation] = None

    def __post_init__(self):
        if not math.isfinite(self.base_epoch):
            raise ValueError(f"Base epoch must be finite, got {self.base_epoch}")
        if abs(self.timezone_offset) > MAX_TIMEZONE_OFFSET:
            raise ValueError(f"Timezone offset {self.timezone_offset}s exceeds +/-{MAX_TIMEZONE_OFFSET}s")
        if not 0 <= self.catalog_fingerprint <= 0xFFFFFFFF:
            raise ValueError("Catalog fingerprint must fit in 32 bits")

    @property
    def format_tag(self) -> int:
        return format_tag(self.tier)

    def pack(self) -> bytes:
        if self.location is None:
            lat = lon = NO_COORDINATE
        else:
            lat = int(round(self.location.lat * MICRO))
            lon = int(round(self.location.lon * MICRO))
        return HEADER.pack(self.format_tag, self.timezone_offset, self.base_epoch,
                           self.catalog_fingerprint, lat, lon)

    @classmethod
    def unpack(cls, data) -> "KernelHeader":
        if len(data) < HEADER_SIZE:
            raise FormatMismatch(f"Kernel is {len(data)} bytes, shorter than the {HEADER_SIZE}-byte header",
                                 actual=len(data))
        tag, tz, epoch, fingerprint, lat, lon = HEADER.unpack_from(data, 0)
        _, tier = parse_format_tag(tag)
        location = None
        if lat != NO_COORDINATE and lon != NO_COORDINATE:
            try:
                location = GeoLocation(lat / MICRO, lon / MICRO)
            except ValueError as e:
                raise FormatMismatch(f"Corrupt header location: {e}") from e
        try:
            return cls(tier, epoch, fingerprint, tz, location)
        except ValueError as e:
            raise FormatMismatch(f"Corrupt header: {e}") from e


@dataclass(frozen=True)
class PositionRecord:
    longitude: int
    speed: Optional[int] = None


@dataclass(frozen=True)
class Kernel:
    header: KernelHeader
    records: Tuple[PositionRecord, ...]

    @property
    def tier(self) -> PrecisionTier:
        return self.header.tier

    @property
    def base_epoch(self) -> float:
        return self.header.base_epoch

    @property
    def layout(self) -> TierLayout:
        return self.header.tier.layout

    def is_missing(self, index: int) -> bool:
        return self.records[index].longitude == self.layout.angle.sentinel

    def longitude(self, index: int) -> Optional[float]:
        """Decoded longitude in degrees, None for an unresolved body."""
        if self.is_missing(index):
            return None
        return self.layout.angle.decode(self.records[index].longitude)

    def speed(self, index: int, catalog: BodyCatalog) -> Optional[float]:
        """Decoded speed in deg/day, None when missing or the tier stores no speed."""
        record = self.records[index]
        if self.layout.speed is None or record.speed is None or self.is_missing(index):
            return None
        return self.layout.speed.decode(record.speed, catalog[index].max_speed)

    def longitudes(self) -> List[Optional[float]]:
        return [self.longitude(i) for i in range(len(self.records))]

    def missing(self) -> List[int]:
        return [i for i in range(len(self.records)) if self.is_missing(i)]

    @property
    def size(self) -> int:
        return expected_size(self.tier, len(self.records))


def expected_size(tier: PrecisionTier, body_count: int) -> int:
    return HEADER_SIZE + body_count * tier.layout.record_size


def pack_record(record: PositionRecord, layout: TierLayout, body_index: int = -1) -> bytes:
    """
    Serialize one record, refusing any value wider than its field.

    Raises:
        RangeOverflow: A field value does not fit
    """
    if not 0 <= record.longitude <= layout.angle.max_value:
        raise RangeOverflow(f"Longitude value {record.longitude} does not fit "
                            f"{layout.longitude_bytes} bytes (body {body_index})",
                            body_index=body_index)
    out = record.longitude.to_bytes(layout.longitude_bytes, "little")
    if layout.speed is not None:
        speed = record.speed if record.speed is not None else 0
        if not 0 <= speed <= layout.speed.max_value:
            raise RangeOverflow(f"Speed value {speed} does not fit "
                                f"{layout.speed_bytes} bytes (body {body_index})",
                                body_index=body_index)
        out += speed.to_bytes(layout.speed_bytes, "little")
    return out


def check_record(record: PositionRecord, layout: TierLayout, body_index: int) -> None:
    """
    Reject a stored longitude that is neither an angle nor the sentinel.

    Raises:
        FormatMismatch: The value lies in [modulus, sentinel)
    """
    angle = layout.angle
    if record.longitude >= angle.modulus and record.longitude != angle.sentinel:
        raise FormatMismatch(
            f"Body {body_index} stores longitude value {record.longitude}, outside "
            f"[0, {angle.modulus}) and not the sentinel {angle.sentinel}",
            body_index=body_index, actual=record.longitude
        )


def unpack_record(data, offset: int, layout: TierLayout) -> PositionRecord:
    """Decode the record at a byte offset; works on bytes, memoryview or mmap."""
    end = offset + layout.longitude_bytes
    longitude = int.from_bytes(data[offset:end], "little")
    speed = None
    if layout.speed_bytes:
        speed = int.from_bytes(data[end:end + layout.speed_bytes], "little")
    return PositionRecord(longitude, speed)


def check_size(header: KernelHeader, actual: int, catalog: BodyCatalog) -> None:
    """
    Validate a kernel against the catalog it will be read with.

    Raises:
        FormatMismatch: Fingerprint or byte length disagree with the catalog and tier
    """
    if header.catalog_fingerprint != catalog.fingerprint:
        raise FormatMismatch(
            f"Kernel was built for catalog fingerprint 0x{header.catalog_fingerprint:08x}, "
            f"reader uses '{catalog.name}' v{catalog.version} (0x{catalog.fingerprint:08x})",
            expected=catalog.fingerprint, actual=header.catalog_fingerprint
        )
    expected = expected_size(header.tier, len(catalog))
    if actual != expected:
        raise FormatMismatch(
            f"Kernel is {actual} bytes; {header.tier.name} tier with {len(catalog)} bodies "
            f"needs {expected} ({HEADER_SIZE} + {len(catalog)} x {header.tier.layout.record_size})",
            expected=expected, actual=actual
        )


def dumps(kernel: Kernel) -> bytes:
    layout = kernel.layout
    parts = [kernel.header.pack()]
    parts.extend(pack_record(record, layout, i) for i, record in enumerate(kernel.records))
    return b"".join(parts)


def loads(data, catalog: BodyCatalog) -> Kernel:
    """
    Parse kernel bytes. Nothing is decoded unless the whole file checks out.

    Raises:
        FormatMismatch: Header, fingerprint or length do not match the
            catalog, or a record holds an out-of-range longitude
    """
    header = KernelHeader.unpack(data)
    check_size(header, len(data), catalog)
    layout = header.tier.layout
    records = []
    for i in range(len(catalog)):
        record = unpack_record(data, HEADER_SIZE + i * layout.record_size, layout)
        check_record(record, layout, i)
        records.append(record)
    return Kernel(header, tuple(records))


def make_records(
    longitudes: Sequence[Optional[float]],
    speeds: Sequence[Optional[float]],
    catalog: BodyCatalog,
    tier: PrecisionTier
) -> Tuple[PositionRecord, ...]:
    """Quantize per-body values; None marks an unresolved body."""
    layout = tier.layout
    records = []
    for index, (lon, speed) in enumerate(zip(longitudes, speeds)):
        if lon is None:
            records.append(PositionRecord(layout.angle.sentinel, 0 if layout.speed else None))
            continue
        try:
            lon_q = layout.angle.encode(lon)
        except RangeOverflow as e:
            raise RangeOverflow(f"Body {index} ({catalog[index].name}): {e.message}",
                                body_index=index) from e
        speed_q = None
        if layout.speed is not None:
            speed_q = layout.speed.encode(speed or 0.0, catalog[index].max_speed)
        records.append(PositionRecord(lon_q, speed_q))
    return tuple(records)
