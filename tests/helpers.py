"""Test doubles shared across the unit and integration suites."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta

from geopharcache.models.geo import PharmacyRecord


class FakeClock:
    """Wall clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class FakeFetcher:
    """Scripted pharmacy source.

    Each call consumes the next scripted outcome (a list of records or an
    exception); once the script runs out every call returns ``default``.
    Setting ``gate`` holds every call until the event is set.
    """

    def __init__(self, *outcomes: list[PharmacyRecord] | Exception) -> None:
        self.outcomes = list(outcomes)
        self.default: list[PharmacyRecord] = []
        self.calls: list[tuple[float, float]] = []
        self.gate: asyncio.Event | None = None

    async def fetch(
        self, latitude: float, longitude: float, radius_m: int | None = None
    ) -> list[PharmacyRecord]:
        self.calls.append((latitude, longitude))
        outcome = self.outcomes.pop(0) if self.outcomes else self.default
        if self.gate is not None:
            await self.gate.wait()
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class FakeConnectivity:
    def __init__(self, online: bool = True) -> None:
        self.online = online

    def is_online(self) -> bool:
        return self.online

    def is_offline(self) -> bool:
        return not self.online


def make_pharmacy(
    pharmacy_id: str = "node/1",
    latitude: float = 33.5731,
    longitude: float = -7.5898,
    name: str = "Pharmacie Centrale",
) -> PharmacyRecord:
    return PharmacyRecord(id=pharmacy_id, name=name, latitude=latitude, longitude=longitude)


class SwitchableProbe:
    """Reachability probe whose answer the test flips by hand."""

    def __init__(self, online: bool = True) -> None:
        self.online = online
        self.calls = 0

    async def __call__(self) -> bool:
        self.calls += 1
        return self.online
