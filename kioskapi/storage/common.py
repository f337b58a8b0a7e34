"""Common storage utilities shared between memory and postgres implementations.

Keeps the patch, pagination and distance rules identical across backends so
the two stores can be swapped without behavior drift.
"""

from __future__ import annotations

import math
from typing import Any, Dict, Iterable, Mapping, Optional

# Mean Earth radius in metres, matching PostGIS' spherical geography default.
EARTH_RADIUS_M = 6371008.8

USER_PATCH_FIELDS = frozenset({"firstname", "lastname", "country_code", "phone"})
KIOSK_PATCH_FIELDS = frozenset({"title", "description", "latitude", "longitude"})


def filter_patch(patch: Mapping[str, Any], allowed: Iterable[str]) -> Dict[str, Any]:
    """Drop unknown keys and ``None`` values from an update patch."""
    allowed_set = set(allowed)
    return {k: v for k, v in patch.items() if k in allowed_set and v is not None}


def haversine_distance_m(
    lat1: float, lng1: float, lat2: float, lng2: float
) -> float:
    """Great-circle distance in metres between two WGS84 points."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lng2 - lng1)
    a = (
        math.sin(d_phi / 2) ** 2
        + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    )
    return 2 * EARTH_RADIUS_M * math.asin(min(1.0, math.sqrt(a)))


def search_offset(page: int, offset: int, page_size: int) -> int:
    """Rows to skip for a search page: whole pages plus the caller's extra offset."""
    return max(0, (max(page, 1) - 1) * page_size + max(offset, 0))


def safe_row_value(row: Any, key: str, default: Optional[Any] = None) -> Optional[Any]:
    """Read a column from a dict row, tolerating missing keys."""
    if row is None:
        return default
    try:
        value = row[key]
    except (KeyError, IndexError, TypeError):
        return default
    return default if value is None else value


__all__ = [
    "EARTH_RADIUS_M",
    "KIOSK_PATCH_FIELDS",
    "USER_PATCH_FIELDS",
    "filter_patch",
    "haversine_distance_m",
    "safe_row_value",
    "search_offset",
]
