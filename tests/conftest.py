"""Shared test fixtures for the geopharcache test suite."""

from __future__ import annotations

from typing import TYPE_CHECKING

import aiosqlite
import pytest
from helpers import FakeClock, make_pharmacy

from geopharcache.cache import ExpiringCache

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

    from geopharcache.models.geo import PharmacyRecord


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
async def db() -> AsyncGenerator[aiosqlite.Connection, None]:
    async with aiosqlite.connect(":memory:") as conn:
        yield conn


@pytest.fixture()
async def cache(db: aiosqlite.Connection, clock: FakeClock) -> ExpiringCache:
    """ExpiringCache over in-memory SQLite with a controllable clock."""
    store = ExpiringCache(db, expiry_hours=24, map_state_expiry_days=7, clock=clock)
    await store.init_db()
    return store


@pytest.fixture()
def pharmacies() -> list[PharmacyRecord]:
    return [
        make_pharmacy("node/1", 33.5740, -7.5900, "Pharmacie du Centre"),
        make_pharmacy("node/2", 33.5800, -7.6000, "Pharmacie Anfa"),
    ]
