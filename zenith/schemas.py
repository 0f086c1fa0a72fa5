from typing import List, Literal, Optional
from pydantic import BaseModel

SourceType = Literal["kernel", "kernel+speed", "oracle"]
ZodiacType = Literal["tropical", "sidereal"]


class BodyOut(BaseModel):
    index: int
    name: str
    symbol: str = ""
    lon_deg: Optional[float] = None
    speed_deg_per_day: Optional[float] = None


class SearchResponse(BaseModel):
    jd: float
    utc: Optional[str] = None
    source: SourceType
    verified: bool
    zodiac: ZodiacType = "tropical"
    ayanamsa: Optional[str] = None
    ayanamsa_deg: Optional[float] = None
    bodies: List[BodyOut]


class KernelInfoResponse(BaseModel):
    path: str
    tier: str
    base_epoch: float
    base_utc: Optional[str] = None
    timezone_offset: int
    location: Optional[dict] = None
    catalog: str
    catalog_version: int
    catalog_fingerprint: str
    size_bytes: int
    checksum_valid: Optional[bool] = None
    missing: List[str]
    bodies: List[BodyOut]


class HealthzResponse(BaseModel):
    status: str = "healthy"
    timestamp: Optional[str] = None
    version: Optional[str] = None
    kernel: dict
    oracle: dict
    metrics: dict


class ErrorOut(BaseModel):
    code: str
    title: str
    detail: Optional[str] = None
    tip: Optional[str] = None
