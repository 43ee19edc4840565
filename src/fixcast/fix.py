import time
from dataclasses import dataclass, field
from enum import Enum

from pydantic import BaseModel, ConfigDict, field_validator

from fixcast.validators import truncate_coordinate


def now_ms() -> int:
    return time.time_ns() // 1_000_000


class ReadingOrigin(str, Enum):
    PASSIVE = "passive"
    ONE_SHOT = "one_shot"
    CONTINUOUS = "continuous"


@dataclass(frozen=True)
class RawReading:
    """A position reading as delivered by a source, at full precision."""

    latitude: float
    longitude: float
    accuracy: int | None = None
    timestamp: int = field(default_factory=now_ms)
    origin: ReadingOrigin = ReadingOrigin.PASSIVE


class Fix(BaseModel):
    """A reconciled position snapshot. Coordinates are kept truncated."""

    model_config = ConfigDict(frozen=True)

    latitude: float
    longitude: float
    # None = the source gave no accuracy information
    accuracy: int | None = None
    timestamp: int

    @field_validator("latitude", "longitude")
    @classmethod
    def _truncate(cls, value: float) -> float:
        return truncate_coordinate(value)

    @classmethod
    def from_reading(cls, reading: RawReading) -> "Fix":
        return cls(
            latitude=reading.latitude,
            longitude=reading.longitude,
            accuracy=reading.accuracy,
            timestamp=reading.timestamp,
        )


class PersistedState(BaseModel):
    """The single durable record kept per device."""

    last_fix: Fix | None = None
    # 0 = never broadcast
    last_broadcast_timestamp: int = 0
    run_once: bool = False

    @property
    def last_fix_timestamp(self) -> int:
        return self.last_fix.timestamp if self.last_fix is not None else 0

    @property
    def any_location_data_received(self) -> bool:
        return self.last_fix_timestamp != 0

    @property
    def any_location_data_broadcast(self) -> bool:
        return self.last_broadcast_timestamp != 0

    @property
    def latest_data_broadcast(self) -> bool:
        """True if the periodic broadcaster has already sent the latest fix."""
        return (
            self.any_location_data_broadcast
            and self.last_broadcast_timestamp == self.last_fix_timestamp
        )

    def age_seconds(self, now: int) -> float:
        return max((now - self.last_fix_timestamp) / 1000.0, 0.0)
