"""
Route reliability table, delay prediction and transfer-risk scoring.

Records are keyed by feed route id ("1_100275"); every lookup normalises its
argument with to_feed_id, so schedule ids work too.  A route without a
record gets a fixed default estimate rather than an error.

The table is shared by concurrent planning requests.  Each record is
immutable and an update swaps the dict entry for a new record, so a reader
of one route never sees a half-applied update and updates to different
routes do not wait on each other.  Persisting the table is serialised so
the last completed save always holds the latest state.
"""

import asyncio
import logging
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterable, Mapping, Sequence

from config import FEED_AGENCY_ID
from db.store import RELIABILITY_KEY, RELIABILITY_UPDATED_KEY, KeyValueStore, read_json, write_json
from reliability.historical import (
    classify_transfer_buffer, is_rush_hour, is_weekend, tier_for_rate,
    transfer_recommendation,
)
from reliability.models import (
    ArrivalLike, DelayPrediction, ItineraryScore, LegArrival, ReliabilityTier,
    RiskTier, RouteReliability, TransferRisk,
)
from reliability.seed import (
    DEFAULT_AVG_DELAY_MINUTES, DEFAULT_ON_TIME_RATE, DEFAULT_ROUTE_RELIABILITY,
    DEFAULT_RUSH_HOUR_DELAY_MINUTES, DEFAULT_SOURCE_LABEL,
    DEFAULT_WEEKEND_ON_TIME_RATE,
)
from routing.models import Leg, TransitLeg, WalkLeg
from schedule.ids import to_feed_id

logger = logging.getLogger(__name__)

RUSH_HOUR_FACTOR = 1.5
WEEKEND_FACTOR = 0.9
DEFAULT_TRANSFER_WALK_MINUTES = 2

_UPDATABLE_FIELDS = frozenset({
    "on_time_rate",
    "avg_delay_minutes",
    "rush_hour_delay_minutes",
    "weekend_on_time_rate",
    "route_short_name",
    "source_label",
    "tier_override",
})
_NUMERIC_FIELDS = ("on_time_rate", "avg_delay_minutes", "rush_hour_delay_minutes", "weekend_on_time_rate")
_RATE_FIELDS = ("on_time_rate", "weekend_on_time_rate")
# May not be cleared with None
_REQUIRED_FIELDS = ("on_time_rate", "avg_delay_minutes", "route_short_name", "source_label")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ReliabilityEngine:
    def __init__(
        self,
        store: KeyValueStore | None = None,
        seed_records: Iterable[RouteReliability] = DEFAULT_ROUTE_RELIABILITY,
        clock: Callable[[], datetime] = _utcnow,
        agency_id: str = FEED_AGENCY_ID,
    ) -> None:
        self._store = store
        self._clock = clock
        self.agency_id = agency_id
        self._seed = {self._key(r.route_id): r for r in seed_records}
        self._records: dict[str, RouteReliability] = dict(self._seed)
        self._save_lock = asyncio.Lock()
        self.initialized = False

    def _key(self, route_id: str) -> str:
        return to_feed_id(route_id, self.agency_id)

    # -- persistence --------------------------------------------------------

    async def initialize(self) -> None:
        """Merge the persisted table over the seed records, or persist the seeds."""
        if self.initialized:
            return
        self.initialized = True
        if self._store is None:
            return

        stored = await read_json(self._store, RELIABILITY_KEY)
        if not isinstance(stored, dict) or not stored:
            await self.save()
            logger.info("Initialised reliability table with %d seed routes.", len(self._seed))
            return

        records = dict(self._seed)
        for key, raw in stored.items():
            try:
                record = RouteReliability.from_dict(raw)
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning("Skipping stored reliability record %s: %s", key, exc)
                continue
            records[self._key(record.route_id)] = replace(record, route_id=self._key(record.route_id))
        self._records = records
        logger.info("Loaded reliability data for %d routes from storage.", len(records))

    async def save(self) -> bool:
        if self._store is None:
            return False
        async with self._save_lock:
            snapshot = {key: record.to_dict() for key, record in self._records.items()}
            ok = await write_json(self._store, RELIABILITY_KEY, snapshot)
            ok &= await write_json(self._store, RELIABILITY_UPDATED_KEY, self._clock().isoformat())
        if not ok:
            logger.warning("Reliability table was not persisted.")
        return ok

    # -- lookups ------------------------------------------------------------

    def default_reliability(self, route_id: str) -> RouteReliability:
        key = self._key(route_id)
        return RouteReliability(
            route_id=key,
            on_time_rate=DEFAULT_ON_TIME_RATE,
            avg_delay_minutes=DEFAULT_AVG_DELAY_MINUTES,
            rush_hour_delay_minutes=DEFAULT_RUSH_HOUR_DELAY_MINUTES,
            weekend_on_time_rate=DEFAULT_WEEKEND_ON_TIME_RATE,
            route_short_name=key.split("_", 1)[1] if "_" in key else "Unknown",
            source_label=DEFAULT_SOURCE_LABEL,
            updated_at=self._clock(),
        )

    def get_reliability(self, route_id: str) -> RouteReliability:
        return self._records.get(self._key(route_id)) or self.default_reliability(route_id)

    def has_record(self, route_id: str) -> bool:
        return self._key(route_id) in self._records

    def all_reliabilities(self) -> dict[str, RouteReliability]:
        return dict(self._records)

    def routes_by_tier(self, tier: ReliabilityTier | str) -> list[RouteReliability]:
        tier = ReliabilityTier(tier)
        return [r for r in self._records.values() if r.reliability_tier is tier]

    # -- updates ------------------------------------------------------------

    async def upsert_reliability(self, route_id: str, partial: Mapping[str, Any]) -> RouteReliability:
        """
        Merge fields into the route's record (starting from the default when
        there is none), stamp updated_at and persist the table.

        A `reliability_tier` key pins the tier; passing it as None clears the pin.

        Raises:
            ValueError: unknown field, bad tier name, a rate outside [0, 1],
                or None for a field every record must carry.
        """
        changes = dict(partial)
        if "reliability_tier" in changes:
            tier = changes.pop("reliability_tier")
            changes["tier_override"] = ReliabilityTier(tier) if tier else None

        unknown = set(changes) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown reliability fields: {', '.join(sorted(unknown))}")
        missing = [name for name in _REQUIRED_FIELDS if name in changes and changes[name] is None]
        if missing:
            raise ValueError(f"Reliability fields cannot be null: {', '.join(missing)}")
        for name in _NUMERIC_FIELDS:
            if changes.get(name) is not None:
                changes[name] = float(changes[name])
        for name in _RATE_FIELDS:
            value = changes.get(name)
            if value is not None and not 0.0 <= value <= 1.0:
                raise ValueError(f"{name} must be between 0 and 1, got {value}")

        key = self._key(route_id)
        current = self.get_reliability(key)
        record = replace(current, **changes, route_id=key, updated_at=self._clock())
        tier = record.reliability_tier
        self._records[key] = record
        logger.info("Updated reliability for %s (tier %s).", key, tier.value)

        await self.save()
        return record

    # -- prediction ---------------------------------------------------------

    def predict_delay(self, route_id: str, at: datetime | None = None) -> DelayPrediction:
        record = self.get_reliability(route_id)
        at = at or self._clock()
        rush = is_rush_hour(at)
        weekend = is_weekend(at)

        delay = float(record.avg_delay_minutes)
        if rush:
            delay = record.rush_hour_delay_minutes or delay * RUSH_HOUR_FACTOR
        if weekend:
            delay *= WEEKEND_FACTOR

        return DelayPrediction(
            expected_delay_minutes=round(delay, 1),
            confidence=record.on_time_rate,
            is_rush_hour=rush,
            is_weekend=weekend,
            reliability_tier=record.reliability_tier,
        )

    def calculate_transfer_risk(
        self,
        first_leg_arrival: ArrivalLike,
        second_leg_departure: datetime,
        walking_minutes: float = DEFAULT_TRANSFER_WALK_MINUTES,
        from_leg_index: int = 0,
        to_leg_index: int = 1,
    ) -> TransferRisk:
        """
        Buffer between arriving on the first leg and the second leg's
        departure, less the walk, then less the first route's average delay.
        """
        arrived = first_leg_arrival.predicted_time or first_leg_arrival.scheduled_time
        ready = arrived + timedelta(minutes=walking_minutes)
        buffer = (second_leg_departure - ready).total_seconds() / 60

        expected_delay = self.get_reliability(first_leg_arrival.route_id).avg_delay_minutes
        adjusted = buffer - expected_delay
        tier, probability = classify_transfer_buffer(adjusted)

        return TransferRisk(
            from_leg_index=from_leg_index,
            to_leg_index=to_leg_index,
            buffer_minutes=round(buffer, 1),
            adjusted_buffer_minutes=round(adjusted, 1),
            risk_tier=RiskTier(tier),
            missed_probability=probability,
            expected_delay_minutes=expected_delay,
            walking_minutes=walking_minutes,
            recommendation=transfer_recommendation(tier, adjusted),
        )

    def score_itinerary(self, legs: Sequence[Leg]) -> ItineraryScore:
        transit = [(i, leg) for i, leg in enumerate(legs) if isinstance(leg, TransitLeg)]
        if not transit:
            return ItineraryScore(
                overall_reliability=ReliabilityTier.HIGH,
                avg_on_time_rate=1.0,
                total_expected_delay=0.0,
            )

        records = [self.get_reliability(leg.route_id) for _, leg in transit]
        avg_rate = sum(r.on_time_rate for r in records) / len(records)
        total_delay = sum(r.avg_delay_minutes for r in records)

        risks: list[TransferRisk] = []
        for (i, first), (j, second) in zip(transit, transit[1:]):
            walk = next((leg for leg in legs[i + 1:j] if isinstance(leg, WalkLeg)), None)
            walking_minutes = round(walk.duration) if walk else DEFAULT_TRANSFER_WALK_MINUTES
            risks.append(self.calculate_transfer_risk(
                LegArrival(route_id=first.route_id, scheduled_time=first.end_time),
                second.start_time,
                walking_minutes,
                from_leg_index=i,
                to_leg_index=j,
            ))

        return ItineraryScore(
            overall_reliability=ReliabilityTier(tier_for_rate(avg_rate)),
            avg_on_time_rate=round(avg_rate, 2),
            total_expected_delay=round(total_delay, 1),
            transfer_risks=risks,
        )
