import logging
import os
from typing import Any, Dict, Optional

import yaml

logger = logging.getLogger(__name__)

J2000 = 2451545.0
DAYS_PER_CENTURY = 36525.0

# Value at J2000 of each formula, deg. Fagan-Bradley and Lahiri follow their
# published definitions; True Citra holds Spica at sidereal 180 deg.
FORMULA_EPOCH_VALUES = {
    "fagan_bradley": 24.740300,
    "lahiri": 23.857092,
    "true_citra": 23.841332,
}

BUILTIN_REGISTRY = {
    "fagan_bradley": {"type": "formula", "formula": "fagan_bradley"},
    "lahiri": {"type": "formula", "formula": "lahiri"},
    "true_citra": {"type": "formula", "formula": "true_citra"},
}

BUILTIN_DEFAULT = "lahiri"
DEFAULT_AYANAMSA = BUILTIN_DEFAULT

# Global registry loaded from YAML
_REGISTRY: Dict[str, dict] = dict(BUILTIN_REGISTRY)


def load_registry(path: Optional[str] = None) -> None:
    """
    Load the ayanamsa registry from a YAML file.

    Entries are either ``{type: fixed, value_deg: 24.2167}`` or
    ``{type: formula, formula: lahiri}``; an optional ``offset_deg`` shifts a
    formula. The built-in registry is used when no file is given.

    Raises:
        FileNotFoundError: A path was given and does not exist
        ValueError: An entry is malformed
    """
    global _REGISTRY

    if not path:
        _REGISTRY = dict(BUILTIN_REGISTRY)
        return
    if not os.path.exists(path):
        raise FileNotFoundError(f"Ayanamsa registry not found: {path}")

    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ValueError(f"AYANAMSHA.INVALID: registry {path} is not valid YAML: {e}") from e
    if not isinstance(data, dict):
        raise ValueError(f"AYANAMSHA.INVALID: registry {path} must be a mapping of ids")

    registry = {}
    for key, entry in data.items():
        key = str(key).strip().lower()
        if not isinstance(entry, dict):
            raise ValueError(f"AYANAMSHA.INVALID: '{key}' must be a mapping")
        kind = entry.get("type")
        if kind == "fixed":
            if not isinstance(entry.get("value_deg"), (int, float)):
                raise ValueError(f"AYANAMSHA.INVALID: fixed ayanamsa '{key}' needs a numeric value_deg")
        elif kind == "formula":
            if entry.get("formula", key) not in FORMULA_EPOCH_VALUES:
                raise ValueError(f"AYANAMSHA.UNSUPPORTED: unknown formula for '{key}'")
        else:
            raise ValueError(f"AYANAMSHA.INVALID: '{key}' has unknown type {kind!r}")
        registry[key] = dict(entry)

    _REGISTRY = registry
    logger.info(f"Loaded {len(registry)} ayanamsas from {path}")


def get_available_ayanamsas() -> Dict[str, str]:
    """Available ayanamsa ids with their types."""
    return {id: data.get("type", "unknown") for id, data in _REGISTRY.items()}


def resolve_ayanamsa(id: Optional[str]) -> Dict[str, Any]:
    """
    Resolve ayanamsa configuration from an id; None gives the default.

    Raises:
        ValueError: If the id is not in the registry
    """
    key = (id or DEFAULT_AYANAMSA).strip().lower()

    if key not in _REGISTRY:
        available = ", ".join(_REGISTRY.keys())
        raise ValueError(f"AYANAMSHA.UNSUPPORTED: '{id}' not in registry. Available: {available}")

    config = _REGISTRY[key].copy()
    config["id"] = key
    return config


def set_default_ayanamsa(id: str) -> None:
    """
    Make a registry entry the default for sidereal output.

    Raises:
        ValueError: If the id is not in the registry
    """
    global DEFAULT_AYANAMSA
    DEFAULT_AYANAMSA = resolve_ayanamsa(id)["id"]


def precession_deg(
jd: float) -> float:
    """General precession in longitude since J2000, deg (IAU 2006)."""
    t = (jd - J2000) / DAYS_PER_CENTURY
    return (5028.796195 * t + 1.1054348 * t * t) / 3600.0


def precession_rate(jd: float) -> float:
    """Rate of general precession, deg/day."""
    t = (jd - J2000) / DAYS_PER_CENTURY
    return (5028.796195 + 2.2108696 * t) / 3600.0 / DAYS_PER_CENTURY


def get_ayanamsa_value(ayanamsa_config: Dict[str, Any], jd: Optional[float] = None) -> float:
    """
    Ayanamsa in degrees for any registry type.

    Args:
        ayanamsa_config: Configuration dict from resolve_ayanamsa
        jd: Julian Day, required for formula types

    Raises:
        ValueError: Unknown type, or a formula type without jd
    """
    ayanamsa_type = ayanamsa_config.get("type")

    if ayanamsa_type == "fixed":
        return float(ayanamsa_config["value_deg"])
    if ayanamsa_type == "formula":
        if jd is None:
            raise ValueError("Julian Date required for formula-type ayanamsa calculations")
        formula = ayanamsa_config.get("formula") or ayanamsa_config.get("id")
        if formula not in FORMULA_EPOCH_VALUES:
            raise ValueError(f"Formula calculation not implemented for ayanamsa: {formula}")
        offset = float(ayanamsa_config.get("offset_deg", 0.0))
        return FORMULA_EPOCH_VALUES[formula] + precession_deg(jd) + offset
    raise ValueError(f"Unknown ayanamsa type: {ayanamsa_type}")


def get_ayanamsa_rate(ayanamsa_config: Dict[str, Any], jd: float) -> float:
    """Ayanamsa drift in deg/day; zero for fixed values."""
    if ayanamsa_config.get("type") == "fixed":
        return 0.0
    return precession_rate(jd)


def apply_ayanamsa(tropical_longitude: float, ayanamsa_value: float) -> float:
    """Convert a tropical longitude to sidereal, normalized to [0, 360)."""
    sidereal = (tropical_longitude - ayanamsa_value) % 360.0
    return 0.0 if sidereal >= 360.0 else sidereal


def validate_ayanamsa_for_system(system: str, ayanamsa_id: Optional[str]) -> None:
    """
    Validate an ayanamsa choice against the zodiac system.

    Raises:
        ValueError: If the combination is invalid
    """
    if system not in ("tropical", "sidereal"):
        raise ValueError(f"SYSTEM.INVALID: zodiac must be 'tropical' or 'sidereal', got '{system}'")

    if system == "tropical" and ayanamsa_id is not None:
        raise ValueError("SYSTEM.INCOMPATIBLE: Ayanamsa specified for tropical system. "
                         "Remove the ayanamsa or use the sidereal system.")

    if system == "sidereal" and ayanamsa_id is None:
        raise ValueError("AYANAMSHA.REQUIRED: Sidereal system requires an ayanamsa.")

    if ayanamsa_id:
        resolve_ayanamsa(ayanamsa_id)
