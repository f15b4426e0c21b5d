"""
Fixed policy for turning historical performance into tiers and risk.

Reliability tier from on-time rate:
  high     rate ≥ 0.80
  medium   0.60 ≤ rate < 0.80
  low      rate < 0.60

Rush hour (local time, whole hours inclusive): 07–09 and 16–19.
Weekend: Saturday + Sunday.

Transfer risk from the adjusted connection buffer (minutes):
  high     buffer < 3         missed probability 0.80
  medium   3 ≤ buffer < 5     missed probability 0.40
  low      buffer ≥ 5         missed probability 0.10
"""

import logging
from datetime import datetime
from zoneinfo import ZoneInfo

from config import TRANSIT_TIMEZONE

logger = logging.getLogger(__name__)

HIGH_RELIABILITY_RATE = 0.8
LOW_RELIABILITY_RATE = 0.6

# (first hour, last hour), both inclusive
RUSH_HOUR_WINDOWS = ((7, 9), (16, 19))

HIGH_RISK_BELOW_MINUTES = 3
MEDIUM_RISK_BELOW_MINUTES = 5

_RISK_POLICY = {
    "high": 0.80,
    "medium": 0.40,
    "low": 0.10,
}

_LOCAL_TZ = ZoneInfo(TRANSIT_TIMEZONE)


def tier_for_rate(on_time_rate: float) -> str:
    if on_time_rate >= HIGH_RELIABILITY_RATE:
        return "high"
    if on_time_rate < LOW_RELIABILITY_RATE:
        return "low"
    return "medium"


def to_local(dt: datetime) -> datetime:
    """Aware datetimes are converted to the agency's zone; naive ones are taken as local already."""
    if dt.tzinfo is None:
        return dt
    return dt.astimezone(_LOCAL_TZ)


def is_rush_hour(dt: datetime) -> bool:
    hour = to_local(dt).hour
    return any(start <= hour <= end for start, end in RUSH_HOUR_WINDOWS)


def is_weekend(dt: datetime) -> bool:
    return to_local(dt).weekday() >= 5


def classify_transfer_buffer(adjusted_minutes: float) -> tuple[str, float]:
    """Return (risk tier, missed-connection probability) for an adjusted buffer."""
    if adjusted_minutes < HIGH_RISK_BELOW_MINUTES:
        tier = "high"
    elif adjusted_minutes < MEDIUM_RISK_BELOW_MINUTES:
        tier = "medium"
    else:
        tier = "low"
    return tier, _RISK_POLICY[tier]


def transfer_recommendation(tier: str, adjusted_minutes: float) -> str:
    buffer = round(adjusted_minutes)
    if tier == "high":
        return f"High risk: Only {buffer} min buffer. Consider leaving earlier or alternative route."
    if tier == "medium":
        return f"Medium risk: {buffer} min buffer. Monitor first leg for delays."
    return f"Low risk: {buffer} min buffer. Transfer should be safe."
