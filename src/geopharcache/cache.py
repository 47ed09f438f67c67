"""Expiring in-memory cache with whole-category snapshots in SQLite.

Three categories are kept, each with its own expiry policy and its own
snapshot row: pharmacy results by LocationKey, the user location slot and the
map-view state slot. Reads are served from memory and expire lazily; every
write replaces the whole snapshot of the written category before returning.

All persistence errors are caught internally and logged: a failed snapshot
write leaves the in-memory store authoritative for the rest of the process,
a failed or corrupt snapshot read starts that category empty. Infrastructure
errors never cross the ExpiringCache boundary.
"""

from __future__ import annotations

import asyncio
import copy
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

import aiosqlite
import structlog
from pydantic import TypeAdapter, ValidationError

from geopharcache.models.cache import CacheCategory, CacheEntry, CacheStats
from geopharcache.models.geo import Location, MapViewState, PharmacyRecord, location_key

if TYPE_CHECKING:
    from collections.abc import Callable

log = structlog.get_logger()

USER_LOCATION_KEY = "user_location"
MAP_STATE_KEY = "map_state"

_CREATE_SNAPSHOT_TABLE = """
CREATE TABLE IF NOT EXISTS cache_snapshots (
    category   TEXT PRIMARY KEY,
    payload    TEXT NOT NULL,
    written_at TEXT NOT NULL
)
"""

_VALUE_TYPES: dict[CacheCategory, Any] = {
    CacheCategory.PHARMACIES: list[PharmacyRecord],
    CacheCategory.USER_LOCATION: Location,
    CacheCategory.MAP_STATE: MapViewState,
}

_ENTRY_TYPES: dict[CacheCategory, Any] = {
    category: CacheEntry[value_type] for category, value_type in _VALUE_TYPES.items()
}

_SNAPSHOT_ADAPTERS: dict[CacheCategory, TypeAdapter[Any]] = {
    category: TypeAdapter(dict[str, entry_type]) for category, entry_type in _ENTRY_TYPES.items()
}


def _utc_now() -> datetime:
    return datetime.now(UTC)


class ExpiringCache:
    """Category-scoped expiring cache implementing CacheProtocol."""

    def __init__(
        self,
        db: aiosqlite.Connection,
        *,
        expiry_hours: int = 24,
        map_state_expiry_days: int = 7,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._db = db
        self._clock = clock
        # Fixed for the lifetime of the instance.
        self._policies: dict[CacheCategory, timedelta] = {
            CacheCategory.PHARMACIES: timedelta(hours=expiry_hours),
            CacheCategory.USER_LOCATION: timedelta(hours=expiry_hours),
            CacheCategory.MAP_STATE: timedelta(days=map_state_expiry_days),
        }
        self._entries: dict[CacheCategory, dict[str, CacheEntry[Any]]] = {
            category: {} for category in CacheCategory
        }
        self._locks = {category: asyncio.Lock() for category in CacheCategory}

    async def init_db(self) -> None:
        """Create the snapshot table. Called once at startup."""
        await self._db.execute("PRAGMA journal_mode = WAL")
        await self._db.execute(_CREATE_SNAPSHOT_TABLE)
        await self._db.commit()

    def policy(self, category: CacheCategory) -> timedelta:
        return self._policies[category]

    # ------------------------------------------------------------------
    # Generic contract
    # ------------------------------------------------------------------

    def get(self, category: CacheCategory, key: str) -> Any | None:
        """Return a copy of the cached value, or ``None`` if absent or expired.

        Expired entries are evicted from memory on the way out; the snapshot
        is left alone and gets purged on the next load or write.
        """
        entries = self._entries[category]
        entry = entries.get(key)
        if entry is None:
            log.debug("cache_miss", category=category, key=key)
            return None

        if entry.is_expired(self._policies[category], self._clock()):
            log.info("cache_expired", category=category, key=key)
            # Only drop the entry we looked at; a concurrent put may have replaced it.
            if entries.get(key) is entry:
                del entries[key]
            return None

        log.debug("cache_hit", category=category, key=key)
        return copy.deepcopy(entry.value)

    async def put(self, category: CacheCategory, key: str, value: Any) -> None:
        """Replace the entry for ``key`` and persist the whole category snapshot."""
        entry = _ENTRY_TYPES[category](value=copy.deepcopy(value), written_at=self._clock())
        async with self._locks[category]:
            self._entries[category][key] = entry
            await self._persist(category)

    async def clear_expired(self) -> int:
        """Drop every expired entry in every category. Returns the number removed."""
        now = self._clock()
        removed_total = 0
        for category in CacheCategory:
            async with self._locks[category]:
                entries = self._entries[category]
                policy = self._policies[category]
                expired = [key for key, entry in entries.items() if entry.is_expired(policy, now)]
                for key in expired:
                    del entries[key]
                if expired:
                    await self._persist(category)
                removed_total += len(expired)

        log.info("cache_expired_cleared", removed=removed_total)
        return removed_total

    async def clear_all(self) -> None:
        """Empty every category in memory and delete all snapshots."""
        for category in CacheCategory:
            async with self._locks[category]:
                self._entries[category].clear()
        try:
            await self._db.execute("DELETE FROM cache_snapshots")
            await self._db.commit()
        except aiosqlite.Error:
            log.warning("cache_snapshot_delete_error", exc_info=True)
        log.info("cache_cleared")

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    async def load(self) -> None:
        """Populate memory from the persisted snapshots, purging expired entries.

        A snapshot that cannot be read or decoded leaves its category empty.
        """
        for category in CacheCategory:
            try:
                cursor = await self._db.execute(
                    "SELECT payload FROM cache_snapshots WHERE category = ?",
                    (category.value,),
                )
                row = await cursor.fetchone()
            except aiosqlite.Error:
                log.warning("cache_read_error", category=category, exc_info=True)
                continue

            if row is None:
                log.debug("cache_snapshot_missing", category=category)
                continue

            try:
                loaded: dict[str, CacheEntry[Any]] = _SNAPSHOT_ADAPTERS[category].validate_json(
                    row[0]
                )
            except ValidationError:
                log.warning("cache_snapshot_corrupt", category=category, exc_info=True)
                continue

            now = self._clock()
            policy = self._policies[category]
            fresh = {
                key: entry for key, entry in loaded.items() if not entry.is_expired(policy, now)
            }
            async with self._locks[category]:
                self._entries[category].update(fresh)
            log.info(
                "cache_snapshot_loaded",
                category=category,
                entries=len(fresh),
                purged=len(loaded) - len(fresh),
            )

    async def _persist(self, category: CacheCategory) -> None:
        """Overwrite the snapshot row for ``category``. Caller holds the category lock."""
        payload = _SNAPSHOT_ADAPTERS[category].dump_json(self._entries[category]).decode("utf-8")
        try:
            await self._db.execute(
                "INSERT OR REPLACE INTO cache_snapshots (category, payload, written_at) "
                "VALUES (?, ?, ?)",
                (category.value, payload, self._clock().isoformat()),
            )
            await self._db.commit()
            log.debug(
                "cache_snapshot_saved", category=category, entries=len(self._entries[category])
            )
        except aiosqlite.Error:
            log.warning("cache_write_error", category=category, exc_info=True)

    # ------------------------------------------------------------------
    # Typed helpers
    # ------------------------------------------------------------------

    async def put_pharmacies(
        self, latitude: float, longitude: float, records: list[PharmacyRecord]
    ) -> None:
        key = location_key(latitude, longitude)
        await self.put(CacheCategory.PHARMACIES, key, list(records))
        log.info("pharmacies_cached", key=key, count=len(records))

    def get_pharmacies(self, latitude: float, longitude: float) -> list[PharmacyRecord] | None:
        """Cached records for the cell containing the point, distances measured from the point."""
        records: list[PharmacyRecord] | None = self.get(
            CacheCategory.PHARMACIES, location_key(latitude, longitude)
        )
        if records is None:
            return None
        return [record.with_distance_from(latitude, longitude) for record in records]

    async def put_user_location(self, location: Location) -> None:
        await self.put(CacheCategory.USER_LOCATION, USER_LOCATION_KEY, location)

    def get_user_location(self) -> Location | None:
        return self.get(CacheCategory.USER_LOCATION, USER_LOCATION_KEY)

    async def put_map_state(self, state: MapViewState) -> None:
        await self.put(CacheCategory.MAP_STATE, MAP_STATE_KEY, state)

    def get_map_state(self) -> MapViewState | None:
        return self.get(CacheCategory.MAP_STATE, MAP_STATE_KEY)

    def stats(self) -> CacheStats:
        return CacheStats(
            pharmacy_entries=len(self._entries[CacheCategory.PHARMACIES]),
            location_entries=len(self._entries[CacheCategory.USER_LOCATION]),
            has_map_state=MAP_STATE_KEY in self._entries[CacheCategory.MAP_STATE],
        )
