from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from typing import Optional
import logging
import yaml
import os

from .ephemeris.oracle import GeoLocation
from .kernel.codec import PrecisionTier

logger = logging.getLogger(__name__)


class OracleConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    backend: str = "spice"
    ephe_path: str = "/opt/kernels"
    meta_kernel: Optional[str] = None
    frame: str = "ECLIPDATE"
    abcorr: str = "LT+S"

    @field_validator('backend')
    @classmethod
    def validate_backend(cls, v):
        allowed = ["spice"]
        if v not in allowed:
            raise ValueError(f"Invalid oracle backend: {v}. Must be one of {allowed}")
        return v

    @field_validator('abcorr')
    @classmethod
    def validate_abcorr(cls, v):
        allowed = ["NONE", "LT", "LT+S", "CN", "CN+S"]
        if v.upper() not in allowed:
            raise ValueError(f"Invalid aberration correction: {v}. Must be one of {allowed}")
        return v.upper()


class KernelConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    path: str = "kernel.zk"
    tier: str = "minute"  # day | minute | second
    timezone_offset: int = 0  # seconds east of UTC, display only
    catalog_file: Optional[str] = None  # YAML catalog; built-in NAIF catalog when unset
    checksum: bool = True

    @field_validator('tier')
    @classmethod
    def validate_tier(cls, v):
        return PrecisionTier.parse(v).name.lower()

    @field_validator('timezone_offset')
    @classmethod
    def validate_timezone_offset(cls, v):
        if abs(v) > 18 * 3600:
            raise ValueError("Timezone offset must be within +/-18 hours")
        return v

    @property
    def precision_tier(self) -> PrecisionTier:
        return PrecisionTier.parse(self.tier)


class ScanConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    start_jd: Optional[float] = None
    end_jd: Optional[float] = None
    workers: int = 0  # 0 runs serially
    executor: str = "process"  # process | thread
    chunk_size: int = 256

    @field_validator('executor')
    @classmethod
    def validate_executor(cls, v):
        allowed = ["process", "thread"]
        if v not in allowed:
            raise ValueError(f"Invalid executor: {v}. Must be one of {allowed}")
        return v

    @field_validator('workers')
    @classmethod
    def validate_workers(cls, v):
        if v < 0 or v > 64:
            raise ValueError("Workers must be between 0 and 64")
        return v

    @field_validator('chunk_size')
    @classmethod
    def validate_chunk_size(cls, v):
        if v < 1:
            raise ValueError("Chunk size must be positive")
        return v

    @model_validator(mode='after')
    def validate_span(self):
        if self.start_jd is not None and self.end_jd is not None and self.end_jd < self.start_jd:
            raise ValueError(f"end_jd {self.end_jd} is before start_jd {self.start_jd}")
        return self


class VerifyConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    passes: int = Field(4, ge=1)
    points_per_pass: int = Field(24, ge=1)
    time_delta: float = Field(1.0, gt=0)
    tolerance: float = Field(1e-6, ge=0)


class LocationConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    lat: float = Field(..., ge=-90, le=90)
    lon: float = Field(..., ge=-180, le=180)
    elevation_m: float = 0.0

    def to_geo(self) -> GeoLocation:
        return GeoLocation(self.lat, self.lon, self.elevation_m)


class SiderealConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    registry_file: Optional[str] = None  # YAML ayanamsa registry; built-in formulas when unset
    default_ayanamsa: str = "lahiri"

    @field_validator('default_ayanamsa')
    @classmethod
    def validate_default_ayanamsa(cls, v):
        v = v.strip().lower()
        if not v:
            raise ValueError("Default ayanamsa must not be empty")
        return v


class LoggingConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    level: str = "INFO"
    json_format: bool = Field(True, alias="json")

    @field_validator('level')
    @classmethod
    def validate_level(cls, v):
        allowed = ["DEBUG", "INFO", "WARNING", "ERROR"]
        if v.upper() not in allowed:
            raise ValueError(f"Invalid log level: {v}. Must be one of {allowed}")
        return v.upper()


class AppConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")  # Prevent unexpected config keys

    oracle: OracleConfig = OracleConfig()
    kernel: KernelConfig = KernelConfig()
    scan: ScanConfig = ScanConfig()
    verify: VerifyConfig = VerifyConfig()
    location: Optional[LocationConfig] = None
    sidereal: SiderealConfig = SiderealConfig()
    logging: LoggingConfig = LoggingConfig()


def _env_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def load_config(path: Optional[str] = "config.yaml") -> AppConfig:
    """Load configuration from YAML file with environment variable overrides."""
    data = {}
    if path:
        try:
            with open(path, "r") as f:
                data = yaml.safe_load(f) or {}
        except FileNotFoundError:
            logger.warning(f"Config file {path} not found, using defaults")
        except yaml.YAMLError as e:
            raise ValueError(f"Invalid YAML in config file {path}: {e}")

    env_overrides = {}

    if "ZENITH_EPHE_PATH" in os.environ:
        env_overrides.setdefault("oracle", {})["ephe_path"] = os.environ["ZENITH_EPHE_PATH"]
    if "ZENITH_KERNEL_PATH" in os.environ:
        env_overrides.setdefault("kernel", {})["path"] = os.environ["ZENITH_KERNEL_PATH"]
    if "ZENITH_TIER" in os.environ:
        env_overrides.setdefault("kernel", {})["tier"] = os.environ["ZENITH_TIER"]
    if "ZENITH_WORKERS" in os.environ:
        env_overrides.setdefault("scan", {})["workers"] = int(os.environ["ZENITH_WORKERS"])
    if "ZENITH_AYANAMSA" in os.environ:
        env_overrides.setdefault("sidereal", {})["default_ayanamsa"] = os.environ["ZENITH_AYANAMSA"]
    if "ZENITH_LOG_LEVEL" in os.environ:
        env_overrides.setdefault("logging", {})["level"] = os.environ["ZENITH_LOG_LEVEL"]
    if "ZENITH_LOG_JSON" in os.environ:
        env_overrides.setdefault("logging", {})["json"] = _env_bool(os.environ["ZENITH_LOG_JSON"])

    def merge_dict(base, override):
        for key, value in override.items():
            if key in base and isinstance(base[key], dict) and isinstance(value, dict):
                merge_dict(base[key], value)
            else:
                base[key] = value

    merge_dict(data, env_overrides)

    try:
        return AppConfig(**data)
    except Exception as e:
        raise ValueError(f"Configuration validation failed: {e}")


def print_config(config: AppConfig) -> None:
    """Print effective configuration on startup."""
    print("=== Zenith Kernel Configuration ===")
    print(f"Oracle: {config.oracle.backend} ({config.oracle.meta_kernel or config.oracle.ephe_path})")
    print(f"Frame / Aberration: {config.oracle.frame} / {config.oracle.abcorr}")
    print(f"Kernel Path: {config.kernel.path}")
    print(f"Tier: {config.kernel.tier}")
    print(f"Catalog: {config.kernel.catalog_file or 'built-in naif-default'}")
    print(f"Checksum Manifest: {'enabled' if config.kernel.checksum else 'disabled'}")
    print(f"Workers: {config.scan.workers or 'serial'} ({config.scan.executor})")
    print(f"Verify: {config.verify.passes} passes x {config.verify.points_per_pass} points "
          f"over {config.verify.time_delta} d (tolerance {config.verify.tolerance} deg)")
    if config.location is not None:
        print(f"Location: {config.location.lat}, {config.location.lon} ({config.location.elevation_m} m)")
    else:
        print("Location: geocentric")
    print(f"Ayanamsa: {config.sidereal.default_ayanamsa} "
          f"({config.sidereal.registry_file or 'built-in registry'})")
    print(f"Logging: {config.logging.level} ({'json' if config.logging.json_format else 'text'})")
    print("=" * 35)
