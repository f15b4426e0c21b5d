"""
Reliability records and the results derived from them.

RouteReliability is immutable; ReliabilityEngine replaces a route's record
whole on every update.  Its tier is derived from the on-time rate unless an
override has been set explicitly.
"""

import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol

from reliability.historical import tier_for_rate


class ReliabilityTier(str, enum.Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        return {"high": 3, "medium": 2, "low": 1}[self.value]


class RiskTier(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


@dataclass(frozen=True)
class RouteReliability:
    route_id: str
    on_time_rate: float
    avg_delay_minutes: float
    rush_hour_delay_minutes: float | None = None
    weekend_on_time_rate: float | None = None
    route_short_name: str = ""
    source_label: str = ""
    updated_at: datetime | None = None
    tier_override: ReliabilityTier | None = None

    @property
    def reliability_tier(self) -> ReliabilityTier:
        if self.tier_override is not None:
            return self.tier_override
        return ReliabilityTier(tier_for_rate(self.on_time_rate))

    def to_dict(self) -> dict[str, Any]:
        return {
            "route_id": self.route_id,
            "on_time_rate": self.on_time_rate,
            "avg_delay_minutes": self.avg_delay_minutes,
            "rush_hour_delay_minutes": self.rush_hour_delay_minutes,
            "weekend_on_time_rate": self.weekend_on_time_rate,
            "route_short_name": self.route_short_name,
            "source_label": self.source_label,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "tier_override": self.tier_override.value if self.tier_override else None,
            "reliability_tier": self.reliability_tier.value,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "RouteReliability":
        """Inverse of to_dict(); the derived reliability_tier key is ignored."""
        updated_at = raw.get("updated_at")
        override = raw.get("tier_override")
        rush = raw.get("rush_hour_delay_minutes")
        weekend = raw.get("weekend_on_time_rate")
        return cls(
            route_id=str(raw["route_id"]),
            on_time_rate=float(raw["on_time_rate"]),
            avg_delay_minutes=float(raw["avg_delay_minutes"]),
            rush_hour_delay_minutes=float(rush) if rush is not None else None,
            weekend_on_time_rate=float(weekend) if weekend is not None else None,
            route_short_name=raw.get("route_short_name") or "",
            source_label=raw.get("source_label") or "",
            updated_at=datetime.fromisoformat(updated_at) if updated_at else None,
            tier_override=ReliabilityTier(override) if override else None,
        )


@dataclass(frozen=True)
class DelayPrediction:
    expected_delay_minutes: float
    confidence: float
    is_rush_hour: bool
    is_weekend: bool
    reliability_tier: ReliabilityTier


class ArrivalLike(Protocol):
    """Anything carrying a route and an arrival time, e.g. feed.models.Arrival."""
    route_id: str
    scheduled_time: datetime
    predicted_time: datetime | None


@dataclass(frozen=True)
class LegArrival:
    route_id: str
    scheduled_time: datetime
    predicted_time: datetime | None = None


@dataclass(frozen=True)
class TransferRisk:
    from_leg_index: int
    to_leg_index: int
    buffer_minutes: float
    adjusted_buffer_minutes: float
    risk_tier: RiskTier
    missed_probability: float
    expected_delay_minutes: float
    walking_minutes: float
    recommendation: str


@dataclass(frozen=True)
class ItineraryScore:
    overall_reliability: ReliabilityTier
    avg_on_time_rate: float
    total_expected_delay: float
    transfer_risks: list[TransferRisk] = field(default_factory=list)
