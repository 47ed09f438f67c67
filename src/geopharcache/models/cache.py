from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import StrEnum
from typing import Generic, TypeVar

from pydantic import BaseModel, ConfigDict

T = TypeVar("T")


class CacheCategory(StrEnum):
    PHARMACIES = "pharmacies"
    USER_LOCATION = "user_location"
    MAP_STATE = "map_state"


class CacheEntry(BaseModel, Generic[T]):
    """A cached value and the time it was written. Replaced on every put, never mutated."""

    model_config = ConfigDict(frozen=True)

    value: T
    written_at: datetime

    def is_expired(self, max_age: timedelta, now: datetime) -> bool:
        return now - self.written_at > max_age


@dataclass(frozen=True)
class CacheStats:
    pharmacy_entries: int
    location_entries: int
    has_map_state: bool
