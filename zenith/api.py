from fastapi import APIRouter, Query, Request
from typing import List, Optional
import logging

from .schemas import BodyOut, ErrorOut, KernelInfoResponse, SearchResponse
from .errors import ZenithError, bad_request, map_kernel_error, service_unavailable
from .ephemeris import ayanamsa as ayanamsas
from .ephemeris.catalog import BodyCatalog
from .kernel.search import SearchResult
from .obs.logging import StructuredLogger, TimedOperation
from .obs.metrics import metrics
from .util.dates import format_jd, parse_query_time

business_logger = StructuredLogger(__name__)
logger = logging.getLogger(__name__)

router = APIRouter()


def _bodies(catalog: BodyCatalog, positions, speeds) -> List[BodyOut]:
    return [
        BodyOut(
            index=index,
            name=body.name,
            symbol=body.symbol,
            lon_deg=positions[index],
            speed_deg_per_day=speeds[index]
        )
        for index, body in enumerate(catalog)
    ]


def _zodiac_error_code(message: str) -> str:
    prefix = message.split(":", 1)[0]
    if prefix.startswith(("AYANAMSHA.", "SYSTEM.")):
        return prefix
    return "INPUT.INVALID"


def _require_kernel(request: Request):
    state = request.app.state
    if getattr(state, "reconstructor", None) is None:
        service_unavailable(
            detail=getattr(state, "kernel_error", None) or "Kernel is not loaded.",
            tip="Build a kernel with `python -m zenith build` and restart the service."
        )
    return state


@router.get(
    "/v1/kernel",
    response_model=KernelInfoResponse,
    responses={503: {"model": ErrorOut}}
)
def kernel_info(request: Request):
    """
    Describe the loaded kernel and its stored base-epoch values.
    """
    state = _require_kernel(request)
    kernel = state.reconstructor.kernel
    catalog = state.catalog
    header = kernel.header

    return KernelInfoResponse(
        path=state.kernel_path,
        tier=header.tier.name.lower(),
        base_epoch=header.base_epoch,
        base_utc=format_jd(header.base_epoch),
        timezone_offset=header.timezone_offset,
        location=({"lat": header.location.lat, "lon": header.location.lon}
                  if header.location is not None else None),
        catalog=catalog.name,
        catalog_version=catalog.version,
        catalog_fingerprint=f"{header.catalog_fingerprint:08x}",
        size_bytes=kernel.size,
        checksum_valid=state.checksum_valid,
        missing=[catalog[i].name for i in kernel.missing()],
        bodies=_bodies(
            catalog,
            kernel.longitudes(),
            [kernel.speed(i, catalog) for i in range(len(catalog))]
        )
    )


@router.get(
    "/v1/search",
    response_model=SearchResponse,
    responses={
        400: {"model": ErrorOut},
        500: {"model": ErrorOut},
        503: {"model": ErrorOut}
    }
)
def search(
    request: Request,
    jd: Optional[str] = Query(None, description="Julian Day (UT)"),
    utc: Optional[str] = Query(None, description="UTC timestamp, e.g. 2000-01-01T12:00:00Z"),
    zodiac: str = Query("tropical", description="tropical or sidereal"),
    ayanamsa: Optional[str] = Query(None, description="Ayanamsa id for sidereal output; configured default when omitted")
):
    """
    Reconstruct every catalog body's longitude at a query time.

    Sidereal output subtracts the ayanamsa from every zodiacal longitude;
    ARMC and stored ayanamsa points are returned unchanged.
    """
    state = _require_kernel(request)

    zodiac = zodiac.strip().lower()
    if zodiac == "sidereal" and ayanamsa is None:
        ayanamsa = ayanamsas.DEFAULT_AYANAMSA
    try:
        ayanamsas.validate_ayanamsa_for_system(zodiac, ayanamsa)
    except ValueError as e:
        bad_request(
            _zodiac_error_code(str(e)),
            "Invalid zodiac selection",
            str(e),
            f"Use zodiac=sidereal with one of: {', '.join(ayanamsas.get_available_ayanamsas())}"
        )

    try:
        query_jd = parse_query_time(jd, utc)
    except ValueError as e:
        bad_request(
            "INPUT.INVALID",
            "Invalid query time",
            str(e),
            "Pass either ?jd=2451545.0 or ?utc=2000-01-01T12:00:00Z"
        )

    try:
        with TimedOperation(business_logger, "search", jd=query_jd):
            with state.oracle_lock:
                result: SearchResult = state.reconstructor.reconstruct(query_jd, ayanamsa=ayanamsa)
    except (ZenithError, ValueError) as e:
        if isinstance(e, ZenithError):
            metrics.record_error(e.code)
        map_kernel_error(e, context="search")

    return SearchResponse(
        jd=result.query_time,
        utc=format_jd(result.query_time),
        source=result.source,
        verified=result.verified,
        zodiac=result.zodiac,
        ayanamsa=result.ayanamsa,
        ayanamsa_deg=result.ayanamsa_value,
        bodies=_bodies(state.catalog, result.positions, result.speeds)
    )
