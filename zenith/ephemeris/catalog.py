"""
Body catalog loading and management.

The catalog is the implicit schema of a kernel: records are stored in
catalog order and carry no names. Each catalog therefore publishes a
fingerprint that kernel headers embed, so a reader can tell whether a file
was built against the same catalog instead of trusting positional agreement.
"""

import logging
import os
import zlib
from dataclasses import dataclass
from typing import Iterator, List, Optional, Sequence, Union

import yaml
from pydantic import BaseModel, Field, ValidationError

from ..errors import CatalogError
from . import points

logger = logging.getLogger(__name__)

BodyId = Union[int, str]


@dataclass(frozen=True)
class Body:
    name: str
    id: BodyId
    max_speed: float  # deg/day, magnitude
    fallback_id: Optional[BodyId] = None
    supports_fallback_id: bool = False
    symbol: str = ""
    derived: bool = False  # computed point (see points), not an ephemeris body

    def descriptor(self) -> str:
        fallback = self.fallback_id if self.supports_fallback_id else "-"
        descriptor = f"{self.name}:{self.id}:{fallback}:{self.max_speed!r}"
        return descriptor + ":derived" if self.derived else descriptor


class BodyCatalog:
    """Ordered, validated list of tracked bodies."""

    def __init__(self, bodies: Sequence[Body], name: str = "custom", version: int = 1):
        self.name = name
        self.version = version
        self.bodies = tuple(bodies)
        self.validate()

    def validate(self) -> None:
        """
        Check the catalog invariants.

        Raises:
            CatalogError: empty catalog, duplicate names, non-positive
                max_speed, a fallback flag without a fallback id, or an unknown
                derived point id
        """
        if not self.bodies:
            raise CatalogError(f"Catalog '{self.name}' has no bodies")

        seen = set()
        for index, body in enumerate(self.bodies):
            if body.name in seen:
                raise CatalogError(f"Duplicate body name '{body.name}'", body_index=index)
            seen.add(body.name)

            if not body.max_speed > 0:
                raise CatalogError(
                    f"Body '{body.name}' has max_speed {body.max_speed}; must be positive",
                    body_index=index
                )

            if body.supports_fallback_id and body.fallback_id is None:
                raise CatalogError(
                    f"Body '{body.name}' supports fallback lookup but has no fallback_id",
                    body_index=index
                )

            if body.derived:
                if body.supports_fallback_id:
                    raise CatalogError(f"Derived point '{body.name}' cannot use a fallback id", body_index=index)
                try:
                    points.parse_point_id(body.id)
                except ValueError as e:
                    raise CatalogError(f"Body '{body.name}': {e}", body_index=index) from e

    @property
    def fingerprint(self) -> int:
        """CRC-32 of the catalog descriptor; stored in every kernel header."""
        descriptor = f"{self.name}|{self.version}|" + ";".join(b.descriptor() for b in self.bodies)
        return zlib.crc32(descriptor.encode("utf-8")) & 0xFFFFFFFF

    def index_of(self, name: str) -> int:
        for index, body in enumerate(self.bodies):
            if body.name.lower() == name.lower():
                return index
        raise KeyError(f"Body '{name}' not in catalog '{self.name}'")

    def point_index(self, point_id: str) -> Optional[int]:
        """Index of a derived point by id, None when the catalog does not track it."""
        key = point_id.strip().lower()
        for index, body in enumerate(self.bodies):
            if body.derived and str(body.id).strip().lower() == key:
                return index
        return None

    def names(self) -> List[str]:
        return [b.name for b in self.bodies]

    def __len__(self) -> int:
        return len(self.bodies)

    def __iter__(self) -> Iterator[Body]:
        return iter(self.bodies)

    def __getitem__(self, index: int) -> Body:
        return self.bodies[index]

    def __repr__(self) -> str:
        return f"BodyCatalog(name={self.name!r}, version={self.version}, bodies={len(self)})"


# NAIF codes. Planet centers fall back to their system barycenters; numbered
# asteroids fall back from the 2000000+n family to the 20000000+n family.
DEFAULT_CATALOG = BodyCatalog(
    [
        Body("Sun", 10, 1.1, symbol="☉"),
        Body("Moon", 301, 15.5, symbol="☽"),
        Body("Mercury", 199, 2.3, fallback_id=1, supports_fallback_id=True, symbol="☿"),
        Body("Venus", 299, 1.3, fallback_id=2, supports_fallback_id=True, symbol="♀"),
        Body("Mars", 499, 0.9, fallback_id=4, supports_fallback_id=True, symbol="♂"),
        Body("Jupiter", 599, 0.3, fallback_id=5, supports_fallback_id=True, symbol="♃"),
        Body("Saturn", 699, 0.2, fallback_id=6, supports_fallback_id=True, symbol="♄"),
        Body("Uranus", 799, 0.1, fallback_id=7, supports_fallback_id=True, symbol="♅"),
        Body("Neptune", 899, 0.05, fallback_id=8, supports_fallback_id=True, symbol="♆"),
        Body("Pluto", 999, 0.05, fallback_id=9, supports_fallback_id=True, symbol="♇"),
        Body("Chiron", 2002060, 0.2, fallback_id=20002060, supports_fallback_id=True, symbol="⚷"),
        Body("Ceres", 2000001, 0.6, fallback_id=20000001, supports_fallback_id=True, symbol="⚳"),
        Body("Pallas", 2000002, 0.9, fallback_id=20000002, supports_fallback_id=True, symbol="⚴"),
        Body("Juno", 2000003, 0.6, fallback_id=20000003, supports_fallback_id=True, symbol="⚵"),
        Body("Vesta", 2000004, 0.6, fallback_id=20000004, supports_fallback_id=True, symbol="⚶"),
    ],
    name="naif-default",
    version=1,
)


class BodySpec(BaseModel):
    name: str
    id: BodyId
    max_speed: float = Field(..., gt=0)
    fallback_id: Optional[BodyId] = None
    supports_fallback_id: bool = False
    symbol: str = ""
    derived: bool = False


class CatalogSpec(BaseModel):
    name: str
    version: int = Field(1, ge=1)
    bodies: List[BodySpec] = Field(default_factory=list)
    points: List[str] = Field(default_factory=list)
    houses: List[str] = Field(default_factory=list)


def point_body(point_id: str, name: Optional[str] = None, max_speed: Optional[float] = None) -> Body:
    """
    Catalog entry for a derived point with default name and speed limit.

    Raises:
        ValueError: Unknown point id
    """
    key = point_id.strip().lower()
    return Body(
        name or points.default_name(key),
        key,
        max_speed or points.default_max_speed(key),
        derived=True,
    )


def load_catalog(path: str) -> BodyCatalog:
    """
    Load a body catalog from a YAML file.

    Expected shape::

        name: my-catalog
        version: 2
        bodies:
          - {name: Sun, id: 10, max_speed: 1.1}
          - {name: Jupiter, id: 599, fallback_id: 5, supports_fallback_id: true, max_speed: 0.3}
        points: [asc, armc, "ayanamsa:lahiri"]
        houses: [placidus, whole_sign]

    Derived points and the twelve cusps of each house system are appended
    after the bodies, in that order.

    Raises:
        FileNotFoundError: If the catalog file doesn't exist
        CatalogError: If the file is malformed or fails validation
    """
    if not os.path.exists(path):
        raise FileNotFoundError(f"Body catalog not found: {path}")

    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        spec = CatalogSpec(**data)
    except yaml.YAMLError as e:
        raise CatalogError(f"Invalid YAML in catalog {path}: {e}") from e
    except (ValidationError, TypeError) as e:
        raise CatalogError(f"Catalog {path} failed validation: {e}") from e

    bodies = [Body(**body.model_dump()) for body in spec.bodies]
    try:
        point_ids = list(spec.points)
        for system in spec.houses:
            point_ids.extend(points.cusp_point_ids(system.strip().lower()))
        bodies.extend(point_body(point_id) for point_id in point_ids)
    except ValueError as e:
        raise CatalogError(f"Catalog {path}: {e}") from e

    catalog = BodyCatalog(
        bodies,
        name=spec.name,
        version=spec.version,
    )
    logger.info(f"Loaded catalog '{catalog.name}' v{catalog.version} with {len(catalog)} bodies from {path}")
    return catalog


def resolve_catalog(path: Optional[str] = None) -> BodyCatalog:
    """Catalog from a YAML file, or the built-in NAIF catalog when no path is set."""
    return load_catalog(path) if path else DEFAULT_CATALOG
