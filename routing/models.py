"""
Trip-planning inputs, legs and itineraries.

An Itinerary is built whole per request and never mutated afterwards: every
leg is fully populated (both ends known) or the option is not emitted.
"""

import enum
from dataclasses import dataclass, field
from datetime import datetime

from graph.spatial import NearbyStop
from reliability.models import ReliabilityTier, RouteReliability, TransferRisk
from schedule.models import Stop

__all__ = [
    "Itinerary", "LegMode", "LocationQuery", "LocationUnresolved", "NearbyStop",
    "NoStopInRange", "NoTransitOptions", "Place", "PlanningError",
    "ResolvedLocation", "TransitLeg", "WalkLeg",
]


class LegMode(str, enum.Enum):
    WALK = "WALK"
    TRANSIT = "TRANSIT"


@dataclass(frozen=True)
class LocationQuery:
    """
    One endpoint of a trip.  Resolution tries, in order: coordinates, a
    Stop, a stop id, then a free-text address.
    """
    lat: float | None = None
    lon: float | None = None
    address: str | None = None
    stop: Stop | None = None
    stop_id: str | None = None


@dataclass(frozen=True)
class ResolvedLocation:
    lat: float
    lon: float
    address: str | None = None


@dataclass(frozen=True)
class Place:
    lat: float
    lon: float
    name: str | None = None


@dataclass(frozen=True)
class WalkLeg:
    origin: Place
    destination: Place
    distance_m: int
    duration: int  # minutes
    start_time: datetime | None = None
    end_time: datetime | None = None
    mode: LegMode = field(default=LegMode.WALK, init=False)


@dataclass(frozen=True)
class TransitLeg:
    route_id: str
    from_stop: Stop
    to_stop: Stop
    duration: int  # minutes
    start_time: datetime
    end_time: datetime
    reliability: RouteReliability
    route_short_name: str = ""
    route_long_name: str = ""
    headsign: str = ""
    mode: LegMode = field(default=LegMode.TRANSIT, init=False)


Leg = WalkLeg | TransitLeg


@dataclass(frozen=True)
class Itinerary:
    id: str
    legs: tuple[Leg, ...]
    start_time: datetime
    end_time: datetime
    duration: int
    walk_time: int
    transit_time: int
    wait_time: int
    overall_reliability: ReliabilityTier
    avg_on_time_rate: float
    total_expected_delay: float
    transfer_risks: tuple[TransferRisk, ...] = ()
    rank: int = 0
    recommended: bool = False

    @property
    def transit_legs(self) -> list[TransitLeg]:
        return [leg for leg in self.legs if isinstance(leg, TransitLeg)]

    @property
    def transfers(self) -> int:
        return max(0, len(self.transit_legs) - 1)


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class PlanningError(Exception):
    """A trip request that cannot be satisfied."""


class LocationUnresolved(PlanningError):
    def __init__(self, role: str) -> None:
        self.role = role
        super().__init__(f"Could not resolve {role} location")


class NoStopInRange(PlanningError):
    def __init__(self, role: str, max_distance: float) -> None:
        self.role = role
        self.max_distance = max_distance
        super().__init__(f"No transit stops found within {max_distance:g}m of {role}")


class NoTransitOptions(PlanningError):
    def __init__(self, origin_stop_id: str, destination_stop_id: str) -> None:
        self.origin_stop_id = origin_stop_id
        self.destination_stop_id = destination_stop_id
        super().__init__(
            f"No transit options found between stops {origin_stop_id} and {destination_stop_id}"
        )
