"""
Records produced by the real-time feed client.

Everything here is built per request from a OneBusAway response and never
outlives the client's cache TTL.  Ids stay in the feed namespace
("1_100275"); use schedule.ids to cross into the static schedule.
"""

import enum
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Generic, TypeVar

T = TypeVar("T")


class FeedConfigurationError(RuntimeError):
    """Raised at the call site when the feed cannot be used at all (no API key)."""


class FetchStatus(str, enum.Enum):
    OK = "ok"
    RATE_LIMITED = "rate_limited"
    NOT_FOUND = "not_found"
    TRANSIENT = "transient"
    FATAL = "fatal"


def classify_status(code: int) -> FetchStatus:
    """Map an HTTP status (or the `code` field of a feed body) to a FetchStatus."""
    if 200 <= code < 300:
        return FetchStatus.OK
    if code == 429:
        return FetchStatus.RATE_LIMITED
    if code == 404:
        return FetchStatus.NOT_FOUND
    if code >= 500:
        return FetchStatus.TRANSIENT
    return FetchStatus.FATAL


@dataclass(frozen=True)
class FeedResult(Generic[T]):
    """
    Outcome of one feed call.

    status is the only signal callers should branch on.  data is None for
    every non-OK status and may also be None on OK when the feed had
    nothing to say (a `data: null` body).
    """
    status: FetchStatus
    data: T | None = None
    error: str | None = None
    from_cache: bool = False

    @property
    def ok(self) -> bool:
        return self.status is FetchStatus.OK

    @property
    def is_empty(self) -> bool:
        return not self.data

    def with_data(self, data: Any) -> "FeedResult[Any]":
        return replace(self, data=data)


def from_epoch_ms(value: Any) -> datetime | None:
    """OneBusAway timestamps are epoch milliseconds; 0 means 'not provided'."""
    if not value:
        return None
    try:
        return datetime.fromtimestamp(float(value) / 1000, tz=timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError):
        return None


# ---------------------------------------------------------------------------
# Arrivals and vehicles
# ---------------------------------------------------------------------------

class ArrivalStatus(str, enum.Enum):
    SCHEDULED = "SCHEDULED"
    ARRIVING = "ARRIVING"
    DEPARTED = "DEPARTED"


ARRIVING_WITHIN_MINUTES = 2


@dataclass(frozen=True)
class Position:
    lat: float
    lon: float
    heading: float = 0.0
    updated_at: datetime | None = None


@dataclass(frozen=True)
class Arrival:
    route_id: str
    trip_id: str
    scheduled_time: datetime
    predicted_time: datetime     # falls back to scheduled_time when not predicted
    is_predicted: bool
    fetched_at: datetime
    vehicle_id: str | None = None
    distance_meters: float | None = None
    route_short_name: str = ""
    trip_headsign: str = ""
    position: Position | None = None

    @property
    def minutes_until_arrival(self) -> int:
        seconds = (self.predicted_time - self.fetched_at).total_seconds()
        return max(0, round(seconds / 60))

    @property
    def delay_minutes(self) -> int:
        if not self.is_predicted:
            return 0
        return round((self.predicted_time - self.scheduled_time).total_seconds() / 60)

    @property
    def status(self) -> ArrivalStatus:
        minutes = self.minutes_until_arrival
        if minutes <= 0:
            return ArrivalStatus.DEPARTED
        if minutes <= ARRIVING_WITHIN_MINUTES:
            return ArrivalStatus.ARRIVING
        return ArrivalStatus.SCHEDULED

    @property
    def needs_trip_details(self) -> bool:
        """True when a vehicle is assigned but the response carried no position for it."""
        return self.position is None and bool(self.vehicle_id) and bool(self.trip_id)


@dataclass(frozen=True)
class VehiclePosition:
    vehicle_id: str
    trip_id: str
    route_id: str
    lat: float
    lon: float
    heading: float = 0.0
    updated_at: datetime | None = None
    distance_from_stop: float | None = None
    is_priority: bool = False


# ---------------------------------------------------------------------------
# Stops and alerts
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class FeedStop:
    id: str
    name: str
    lat: float
    lon: float
    code: str = ""
    direction: str = ""
    route_ids: tuple[str, ...] = ()


@dataclass(frozen=True)
class ActivePeriod:
    start: datetime | None
    end: datetime | None = None


@dataclass(frozen=True)
class ServiceAlert:
    id: str
    header: str = ""
    description: str = ""
    url: str | None = None
    severity: str = "info"
    effect: str | None = None
    affected_routes: tuple[str, ...] = ()
    affected_stops: tuple[str, ...] = ()
    active_periods: tuple[ActivePeriod, ...] = field(default_factory=tuple)
