from __future__ import annotations

from geopharcache.models.cache import CacheCategory, CacheEntry, CacheStats
from geopharcache.models.geo import (
    Location,
    MapViewState,
    PharmacyRecord,
    TileCoordinate,
    haversine_km,
    location_key,
)

__all__ = [
    # cache
    "CacheCategory",
    "CacheEntry",
    "CacheStats",
    # geo
    "Location",
    "MapViewState",
    "PharmacyRecord",
    "TileCoordinate",
    "haversine_km",
    "location_key",
]
