"""
Derived points: ayanamsas, chart angles and house cusps.

A derived point is computed from the time (and, for angles and cusps, the
observer location) instead of being looked up in the ephemeris. Catalogs
list them next to real bodies, so a kernel stores them in the same record
layout. Point ids are strings:

    ayanamsa:<registry id>    e.g. ayanamsa:lahiri
    asc, mc, armc
    cusp:<system>:<house>     e.g. cusp:placidus:10

Angles and cusps are tropical ecliptic longitudes of date; ARMC is a right
ascension. Systems: placidus, koch, equal, whole_sign, regiomontanus.
"""

import math
from typing import List, Tuple

from ..errors import OracleError
from . import ayanamsa

ANGLES = ("asc", "mc", "armc")
HOUSE_SYSTEMS = ("placidus", "koch", "equal", "whole_sign", "regiomontanus")

AYANAMSA_PREFIX = "ayanamsa:"
CUSP_PREFIX = "cusp:"

RATE_STEP_DAYS = 1.0 / 1440.0

# Declared |speed| limits for the speed field, deg/day. ASC and cusps speed
# up sharply at high latitude; faster values are clamped by the codec.
AYANAMSA_MAX_SPEED = 0.001
ARMC_MAX_SPEED = 361.0
ANGLE_MAX_SPEED = 1000.0


def _wrap360(x: float) -> float:
    """Wrap angle to [0, 360)"""
    v = x % 360.0
    return 0.0 if v >= 360.0 else v


def _atan2d(y: float, x: float) -> float:
    """Arctangent in degrees with quadrant awareness"""
    return _wrap360(math.degrees(math.atan2(y, x)))


def obliquity_deg(jd: float) -> float:
    """Mean obliquity of the ecliptic, IAU 1980."""
    T = (jd - 2451545.0) / 36525.0
    return 23.43929111 - (46.8150 * T + 0.00059 * T**2 - 0.001813 * T**3) / 3600.0


def gmst_deg(jd_ut: float) -> float:
    """Greenwich Mean Sidereal Time in degrees."""
    T = (jd_ut - 2451545.0) / 36525.0
    gmst = (
        280.46061837
        + 360.98564736629 * (jd_ut - 2451545.0)
        + 0.000387933 * T * T
        - (T * T * T) / 38710000.0
    )
    return _wrap360(gmst)


def armc_deg(jd_ut: float, lon_deg: float) -> float:
    """Right ascension of the meridian (local sidereal time), east longitude positive."""
    return _wrap360(gmst_deg(jd_ut) + lon_deg)


def ecliptic_point(ra_deg: float, pole_deg: float, eps_deg: float) -> float:
    """
    Ecliptic longitude on a house circle.

    The circle crosses the equator at right ascension ra_deg and is tilted
    to pole height pole_deg. Pole 0 is the meridian through ra_deg; the
    local latitude at ARMC + 90 gives the ascendant.
    """
    ra = math.radians(ra_deg)
    eps = math.radians(eps_deg)
    return _atan2d(
        math.sin(ra),
        math.cos(ra) * math.cos(eps) - math.tan(math.radians(pole_deg)) * math.sin(eps)
    )


def midheaven(armc: float, eps: float) -> float:
    return ecliptic_point(armc, 0.0, eps)


def ascendant(armc: float, eps: float, lat: float) -> float:
    return ecliptic_point(armc + 90.0, lat, eps)


def _ascensional_difference(lat: float, declination: float, system: str) -> float:
    x = math.tan(math.radians(lat)) * math.tan(math.radians(declination))
    if abs(x) >= 1.0:
        raise OracleError(f"{system} houses undefined at latitude {lat} (circumpolar ecliptic point)",
                          lat=lat)
    return math.degrees(math.asin(x))


def _declination(longitude: float, eps: float) -> float:
    return math.degrees(math.asin(math.sin(math.radians(eps)) * math.sin(math.radians(longitude))))


def _placidus_cusp(armc: float, eps: float, lat: float, fraction: float, above: bool) -> float:
    # Cusp whose own semi-arc is divided at `fraction`; iterate on its declination
    if above:
        ra = armc + fraction * 90.0
    else:
        ra = armc + 180.0 - fraction * 90.0
    for _ in range(100):
        ad = _ascensional_difference(lat, _declination(ecliptic_point(ra, 0.0, eps), eps), "Placidus")
        if above:
            target = armc + fraction * (90.0 + ad)
        else:
            target = armc + 180.0 - fraction * (90.0 - ad)
        converged = abs(target - ra) < 1e-10
        ra = target
        if converged:
            break
    return ecliptic_point(ra, 0.0, eps)


def _with_oppositions(c1: float, c2: float, c3: float, c10: float, c11: float, c12: float) -> List[float]:
    return [
        c1, c2, c3,
        _wrap360(c10 + 180.0), _wrap360(c11 + 180.0), _wrap360(c12 + 180.0),
        _wrap360(c1 + 180.0), _wrap360(c2 + 180.0), _wrap360(c3 + 180.0),
        c10, c11, c12,
    ]


def house_cusps(system: str, armc: float, eps: float, lat: float) -> List[float]:
    """
    Twelve tropical cusp longitudes, house 1 first.

    Raises:
        ValueError: Unknown system
        OracleError: Placidus or Koch near the poles
    """
    asc = ascendant(armc, eps, lat)
    mc = midheaven(armc, eps)

    if system == "equal":
        return [_wrap360(asc + 30.0 * i) for i in range(12)]

    if system == "whole_sign":
        base = math.floor(asc / 30.0) * 30.0
        return [_wrap360(base + 30.0 * i) for i in range(12)]

    if system == "regiomontanus":
        tan_lat = math.tan(math.radians(lat))
        pole30 = math.degrees(math.atan(tan_lat * 0.5))
        pole60 = math.degrees(math.atan(tan_lat * math.sin(math.radians(60.0))))
        return _with_oppositions(
            asc,
            ecliptic_point(armc + 120.0, pole60, eps),
            ecliptic_point(armc + 150.0, pole30, eps),
            mc,
            ecliptic_point(armc + 30.0, pole30, eps),
            ecliptic_point(armc + 60.0, pole60, eps),
        )

    if system == "koch":
        ad3 = _ascensional_difference(lat, _declination(mc, eps), "Koch") / 3.0
        return _with_oppositions(
            asc,
            ecliptic_point(armc + 120.0 + ad3, lat, eps),
            ecliptic_point(armc + 150.0 + 2 * ad3, lat, eps),
            mc,
            ecliptic_point(armc + 30.0 - 2 * ad3, lat, eps),
            ecliptic_point(armc + 60.0 - ad3, lat, eps),
        )

    if system == "placidus":
        return _with_oppositions(
            asc,
            _placidus_cusp(armc, eps, lat, 2.0 / 3.0, above=False),
            _placidus_cusp(armc, eps, lat, 1.0 / 3.0, above=False),
            mc,
            _placidus_cusp(armc, eps, lat, 1.0 / 3.0, above=True),
            _placidus_cusp(armc, eps, lat, 2.0 / 3.0, above=True),
        )

    raise ValueError(f"Unknown house system '{system}'. Use one of {', '.join(HOUSE_SYSTEMS)}")


def parse_point_id(point_id) -> Tuple[str, tuple]:
    """
    Split a point id into (kind, args).

    Raises:
        ValueError: Not a known point id
    """
    if not isinstance(point_id, str):
        raise ValueError(f"Derived point id must be a string, got {point_id!r}")
    key = point_id.strip().lower()

    if key in ANGLES:
        return key, ()

    if key.startswith(AYANAMSA_PREFIX):
        name = key[len(AYANAMSA_PREFIX):]
        if name:
            ayanamsa.resolve_ayanamsa(name)
            return "ayanamsa", (name,)

    if key.startswith(CUSP_PREFIX):
        parts = key.split(":")
        if len(parts) == 3 and parts[1] in HOUSE_SYSTEMS and parts[2].isdigit() and 1 <= int(parts[2]) <= 12:
            return "cusp", (parts[1], int(parts[2]))

    raise ValueError(f"Unknown derived point '{point_id}'. Use asc, mc, armc, "
                     f"ayanamsa:<id> or cusp:<system>:<1-12>")


def is_zodiacal(point_id) -> bool:
    """Whether a sidereal conversion applies (false for ARMC and ayanamsa values)."""
    kind, _ = parse_point_id(point_id)
    return kind not in ("armc", "ayanamsa")


def ayanamsa_point_id(ayanamsa_id: str) -> str:
    return AYANAMSA_PREFIX + ayanamsa_id.strip().lower()


def cusp_point_ids(system: str) -> List[str]:
    if system not in HOUSE_SYSTEMS:
        raise ValueError(f"Unknown house system '{system}'. Use one of {', '.join(HOUSE_SYSTEMS)}")
    return [f"{CUSP_PREFIX}{system}:{house}" for house in range(1, 13)]


def default_name(point_id: str) -> str:
    kind, args = parse_point_id(point_id)
    if kind == "ayanamsa":
        return f"Ayanamsa {args[0]}"
    if kind == "cusp":
        return f"{args[0].replace('_', ' ').title()} {args[1]}"
    return kind.upper()


def default_max_speed(point_id: str) -> float:
    kind, _ = parse_point_id(point_id)
    if kind == "ayanamsa":
        return AYANAMSA_MAX_SPEED
    if kind == "armc":
        return ARMC_MAX_SPEED
    return ANGLE_MAX_SPEED


def point_longitude(point_id: str, jd: float, location=None) -> float:
    """
    Longitude (or ARMC) of a derived point in degrees.

    Args:
        point_id: Derived point id
        jd: Julian Day (UT)
        location: Observer with lat/lon; required for angles and cusps

    Raises:
        OracleError: Missing location, or a house system undefined here
    """
    kind, args = parse_point_id(point_id)
    if kind == "ayanamsa":
        return _wrap360(ayanamsa.get_ayanamsa_value(ayanamsa.resolve_ayanamsa(args[0]), jd))

    if location is None:
        raise OracleError(f"Point '{point_id}' needs an observer location", point=point_id, jd=jd)

    armc = armc_deg(jd, location.lon)
    if kind == "armc":
        return armc
    eps = obliquity_deg(jd)
    if kind == "mc":
        return midheaven(armc, eps)
    if kind == "asc":
        return ascendant(armc, eps, location.lat)
    system, house = args
    return house_cusps(system, armc, eps, location.lat)[house - 1]


def point_position(point_id: str, jd: float, location=None) -> Tuple[float, float]:
    """(longitude, speed) with speed from a one-minute central difference, deg/day."""
    longitude = point_longitude(point_id, jd, location)
    before = point_longitude(point_id, jd - RATE_STEP_DAYS, location)
    after = point_longitude(point_id, jd + RATE_STEP_DAYS, location)
    arc = (after - before + 180.0) % 360.0 - 180.0
    return longitude, arc / (2 * RATE_STEP_DAYS)
