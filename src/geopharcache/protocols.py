"""Protocol interfaces for swappable components.

The orchestrator and EngineState reference these protocols, not the concrete
implementations. This allows:
- Tests to use lightweight in-memory fakes
- Other pharmacy sources to be plugged in without changing the retry logic
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:
    from geopharcache.models.cache import CacheCategory
    from geopharcache.models.geo import Location, PharmacyRecord


class PharmacyFetcherProtocol(Protocol):
    """Live source of nearby pharmacies.

    An empty list and a raised exception both mean "no usable result".
    """

    async def fetch(
        self, latitude: float, longitude: float, radius_m: int | None = None
    ) -> list[PharmacyRecord]: ...


class CacheProtocol(Protocol):
    """Interface for the expiring cache store."""

    def get(self, category: CacheCategory, key: str) -> Any | None: ...

    async def put(self, category: CacheCategory, key: str, value: Any) -> None: ...

    async def clear_expired(self) -> int: ...

    async def clear_all(self) -> None: ...

    def get_pharmacies(self, latitude: float, longitude: float) -> list[PharmacyRecord] | None: ...

    async def put_pharmacies(
        self, latitude: float, longitude: float, records: list[PharmacyRecord]
    ) -> None: ...

    async def put_user_location(self, location: Location) -> None: ...


class ConnectivityProtocol(Protocol):
    """Read side of the connectivity monitor."""

    def is_online(self) -> bool: ...

    def is_offline(self) -> bool: ...
