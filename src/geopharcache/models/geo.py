from __future__ import annotations

import math
from dataclasses import dataclass

from pydantic import BaseModel, Field

EARTH_RADIUS_KM = 6371.0


def location_key(latitude: float, longitude: float) -> str:
    """Quantize coordinates to a ~100 m cell: ``(33.57312, -7.58981)`` → ``'33.573,-7.590'``."""
    return f"{latitude:.3f},{longitude:.3f}"


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance in kilometres."""
    d_lat = math.radians(lat2 - lat1)
    d_lon = math.radians(lon2 - lon1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lon / 2) ** 2
    )
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


class Location(BaseModel):
    """A user position, optionally enriched by reverse geocoding."""

    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)
    city: str | None = None
    country: str | None = None
    address: str | None = None

    @property
    def key(self) -> str:
        return location_key(self.latitude, self.longitude)


class PharmacyRecord(BaseModel):
    """A single pharmacy returned by a nearby search."""

    id: str  # Stable upstream identifier (OSM element id)
    name: str = "Pharmacie"
    latitude: float
    longitude: float
    address: str | None = None
    phone: str | None = None
    opening_hours: str | None = None
    distance_km: float = 0.0  # From the query point that produced this copy
    tags: dict[str, str] = {}
    # Building outline for area-type entries: [(lat, lon), ...]
    geometry: list[tuple[float, float]] = []

    @property
    def has_geometry(self) -> bool:
        return bool(self.geometry)

    def with_distance_from(self, latitude: float, longitude: float) -> PharmacyRecord:
        return self.model_copy(
            update={
                "distance_km": haversine_km(latitude, longitude, self.latitude, self.longitude)
            }
        )

    def formatted_distance(self) -> str:
        if self.distance_km < 1.0:
            return f"{self.distance_km * 1000:.0f} m"
        return f"{self.distance_km:.2f} km"


class MapViewState(BaseModel):
    """Last map viewport. Kept as a single slot, no history."""

    latitude: float
    longitude: float
    zoom: int
    last_search: str = ""


@dataclass(frozen=True)
class TileCoordinate:
    """Slippy-map tile index."""

    zoom: int
    x: int
    y: int

    def in_range(self) -> bool:
        if self.zoom < 0:
            return False
        n = 1 << self.zoom
        return 0 <= self.x < n and 0 <= self.y < n

    def path_parts(self) -> tuple[str, str, str]:
        return str(self.zoom), str(self.x), f"{self.y}.png"
