"""Overpass API client: the live source of nearby pharmacies.

All network I/O for pharmacy lookups goes through a single OverpassFetcher
instance. The fetcher receives an httpx.AsyncClient via constructor
injection; the engine owns the client lifecycle.
"""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

import httpx
import structlog

from geopharcache.errors import ErrorCode, GeoPharCacheError
from geopharcache.models.geo import PharmacyRecord

if TYPE_CHECKING:
    from geopharcache.config import OverpassSettings, SearchSettings

log = structlog.get_logger()


def build_http_client(settings: OverpassSettings) -> httpx.AsyncClient:
    """Create the shared httpx client for Overpass. Called once at startup."""
    return httpx.AsyncClient(
        timeout=httpx.Timeout(settings.timeout_seconds),
        headers={"User-Agent": settings.user_agent},
        limits=httpx.Limits(
            max_connections=10,
            max_keepalive_connections=5,
        ),
    )


def build_overpass_query(latitude: float, longitude: float, radius_m: int) -> str:
    """Overpass QL for pharmacy nodes and building outlines around a point."""
    around = f"(around:{radius_m},{latitude:.6f},{longitude:.6f})"
    return (
        "[out:json][timeout:25];"
        f'(node["amenity"="pharmacy"]{around};'
        f'way["amenity"="pharmacy"]{around};);'
        "out body geom;>;out skel qt;"
    )


def _build_address(tags: dict[str, str]) -> str | None:
    """``'12 Rue X, Casablanca'`` from addr:* tags, or None when none are set."""
    number = tags.get("addr:housenumber", "")
    street = tags.get("addr:street", "")
    city = tags.get("addr:city", "")
    address = f"{number} {street}".strip()
    if city:
        address = f"{address}, {city}" if address else city
    return address or None


def _record_from_tags(
    element_id: str,
    latitude: float,
    longitude: float,
    tags: dict[str, str],
    geometry: list[tuple[float, float]] | None = None,
) -> PharmacyRecord:
    return PharmacyRecord(
        id=element_id,
        name=tags.get("name", "Pharmacie"),
        latitude=latitude,
        longitude=longitude,
        address=_build_address(tags),
        phone=tags.get("phone"),
        opening_hours=tags.get("opening_hours"),
        tags=tags,
        geometry=geometry or [],
    )


def _parse_node(element: dict[str, Any]) -> PharmacyRecord:
    tags = {str(k): str(v) for k, v in element["tags"].items()}
    return _record_from_tags(
        str(element["id"]), float(element["lat"]), float(element["lon"]), tags
    )


def _parse_way(element: dict[str, Any]) -> PharmacyRecord | None:
    """Ways are placed at the centroid of their outline. Ways without geometry are dropped."""
    points = [(float(p["lat"]), float(p["lon"])) for p in element.get("geometry", [])]
    if not points:
        return None
    center_lat = sum(lat for lat, _ in points) / len(points)
    center_lon = sum(lon for _, lon in points) / len(points)
    tags = {str(k): str(v) for k, v in element["tags"].items()}
    return _record_from_tags(str(element["id"]), center_lat, center_lon, tags, geometry=points)


def parse_elements(
    payload: Any,
    latitude: float,
    longitude: float,
    max_markers: int,
) -> list[PharmacyRecord]:
    """Turn an Overpass JSON payload into records sorted by distance from the query point.

    Elements without tags (skeleton nodes of ways) are ignored; malformed
    elements are skipped with a warning.
    """
    elements = payload.get("elements") if isinstance(payload, dict) else None
    if not isinstance(elements, list):
        raise GeoPharCacheError(
            code=ErrorCode.INVALID_RESPONSE,
            message="Overpass response has no 'elements' array",
            suggestion="The Overpass endpoint may be misconfigured or overloaded.",
            recoverable=True,
        )

    records: list[PharmacyRecord] = []
    for element in elements:
        if not isinstance(element, dict) or "type" not in element or "tags" not in element:
            continue
        try:
            if element["type"] == "node":
                record = _parse_node(element)
            elif element["type"] == "way":
                record = _parse_way(element)
            else:
                continue
        except (AttributeError, KeyError, TypeError, ValueError):
            log.warning("overpass_element_invalid", element_id=element.get("id"), exc_info=True)
            continue
        if record is not None:
            records.append(record.with_distance_from(latitude, longitude))

    records.sort(key=lambda r: r.distance_km)
    return records[:max_markers]


class OverpassFetcher:
    """Nearby-pharmacy lookup against the Overpass API implementing PharmacyFetcherProtocol."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        settings: OverpassSettings,
        search: SearchSettings,
    ) -> None:
        self._client = client
        self._settings = settings
        self._search = search

    async def fetch(
        self, latitude: float, longitude: float, radius_m: int | None = None
    ) -> list[PharmacyRecord]:
        """Query Overpass around a point.

        The radius defaults to ``search.default_radius_m`` and is capped at
        ``search.max_radius_m``. Raises GeoPharCacheError on network errors,
        non-2xx responses and undecodable payloads.
        """
        radius = min(radius_m or self._search.default_radius_m, self._search.max_radius_m)
        query = build_overpass_query(latitude, longitude, radius)
        log.info("overpass_fetch_started", lat=latitude, lon=longitude, radius_m=radius)

        try:
            response = await self._client.get(self._settings.url, params={"data": query})
        except httpx.HTTPError as exc:
            raise GeoPharCacheError(
                code=ErrorCode.FETCH_FAILED,
                message=f"Network error querying Overpass: {exc}",
                suggestion="The Overpass API may be temporarily unavailable.",
                recoverable=True,
            ) from exc

        if not response.is_success:
            raise GeoPharCacheError(
                code=ErrorCode.FETCH_FAILED,
                message=f"Overpass API error: HTTP {response.status_code}",
                suggestion="The Overpass API may be rate limiting or overloaded.",
                recoverable=response.status_code in (429, 502, 503, 504),
            )

        try:
            payload = response.json()
        except json.JSONDecodeError as exc:
            raise GeoPharCacheError(
                code=ErrorCode.INVALID_RESPONSE,
                message="Overpass returned a non-JSON body",
                suggestion="The Overpass endpoint may be returning an error page.",
                recoverable=True,
            ) from exc

        records = parse_elements(payload, latitude, longitude, self._search.max_markers)
        log.info("overpass_fetch_complete", count=len(records))
        return records
