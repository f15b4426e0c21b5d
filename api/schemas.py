from __future__ import annotations
from datetime import datetime
from typing import Annotated, Literal
from pydantic import BaseModel, Field

Tier = Literal["high", "medium", "low"]
FeedStatus = Literal["ok", "rate_limited", "not_found", "transient", "fatal"]


# ---------------------------------------------------------------------------
# GET /stops, /stops/{stop_id}/routes, /routes/{route_id}/stops
# ---------------------------------------------------------------------------

class StopResult(BaseModel):
    stop_id: str
    stop_name: str
    stop_code: str
    lat: float
    lon: float
    wheelchair_boarding: int
    routes_served: list[str] = []


class RouteResult(BaseModel):
    route_id: str
    short_name: str
    long_name: str
    route_type: int


# ---------------------------------------------------------------------------
# Real-time feed
# ---------------------------------------------------------------------------

class PositionResult(BaseModel):
    lat: float
    lon: float
    heading: float
    updated_at: datetime | None


class ArrivalResult(BaseModel):
    route_id: str
    route_short_name: str
    trip_id: str
    trip_headsign: str
    scheduled_time: datetime
    predicted_time: datetime
    is_predicted: bool
    minutes_until_arrival: int
    delay_minutes: int
    status: Literal["SCHEDULED", "ARRIVING", "DEPARTED"]
    vehicle_id: str | None
    distance_meters: float | None
    position: PositionResult | None


class ArrivalsResponse(BaseModel):
    stop_id: str
    status: FeedStatus
    arrivals: list[ArrivalResult]


class VehicleResult(BaseModel):
    vehicle_id: str
    trip_id: str
    route_id: str
    lat: float
    lon: float
    heading: float
    updated_at: datetime | None
    distance_from_stop: float | None
    is_priority: bool


class VehiclesResponse(BaseModel):
    route_id: str
    status: FeedStatus
    vehicles: list[VehicleResult]


class ActivePeriodResult(BaseModel):
    start: datetime | None
    end: datetime | None


class AlertResult(BaseModel):
    id: str
    header: str
    description: str
    url: str | None
    severity: str
    effect: str | None
    affected_routes: list[str]
    affected_stops: list[str]
    active_periods: list[ActivePeriodResult]


# ---------------------------------------------------------------------------
# Reliability
# ---------------------------------------------------------------------------

class ReliabilityResult(BaseModel):
    route_id: str
    route_short_name: str
    on_time_rate: float
    avg_delay_minutes: float
    rush_hour_delay_minutes: float | None
    weekend_on_time_rate: float | None
    reliability_tier: Tier
    tier_overridden: bool
    source_label: str
    updated_at: datetime | None


class ReliabilityUpdate(BaseModel):
    on_time_rate: float | None = Field(None, ge=0, le=1)
    avg_delay_minutes: float | None = Field(None, ge=0)
    rush_hour_delay_minutes: float | None = Field(None, ge=0)
    weekend_on_time_rate: float | None = Field(None, ge=0, le=1)
    route_short_name: str | None = None
    source_label: str | None = None
    reliability_tier: Tier | None = None


class DelayResult(BaseModel):
    route_id: str
    at: datetime
    expected_delay_minutes: float
    confidence: float
    is_rush_hour: bool
    is_weekend: bool
    reliability_tier: Tier


# ---------------------------------------------------------------------------
# POST /trips/plan
# ---------------------------------------------------------------------------

class LocationInput(BaseModel):
    lat: float | None = Field(None, ge=-90, le=90)
    lon: float | None = Field(None, ge=-180, le=180)
    address: str | None = None
    stop_id: str | None = None


class TripPlanRequest(BaseModel):
    origin: LocationInput
    destination: LocationInput
    mode: Literal["fast", "safe"] = "fast"
    max_walking_distance: float = Field(1000, gt=0, le=5000)
    max_results: int = Field(5, ge=1, le=20)
    depart_at: datetime | None = None


class PlaceResult(BaseModel):
    lat: float
    lon: float
    name: str | None


class WalkLegResult(BaseModel):
    mode: Literal["WALK"]
    origin: PlaceResult
    destination: PlaceResult
    distance_m: int
    duration: int
    start_time: datetime | None
    end_time: datetime | None


class TransitLegResult(BaseModel):
    mode: Literal["TRANSIT"]
    route_id: str
    route_short_name: str
    route_long_name: str
    headsign: str
    from_stop: StopResult
    to_stop: StopResult
    duration: int
    start_time: datetime
    end_time: datetime
    reliability_tier: Tier
    on_time_rate: float


LegResult = Annotated[WalkLegResult | TransitLegResult, Field(discriminator="mode")]


class TransferRiskResult(BaseModel):
    from_leg_index: int
    to_leg_index: int
    buffer_minutes: float
    adjusted_buffer_minutes: float
    risk_tier: Tier
    missed_probability: float
    expected_delay_minutes: float
    walking_minutes: float
    recommendation: str


class ItineraryResult(BaseModel):
    id: str
    rank: int
    recommended: bool
    legs: list[LegResult]
    start_time: datetime
    end_time: datetime
    duration: int
    walk_time: int
    transit_time: int
    wait_time: int
    overall_reliability: Tier
    avg_on_time_rate: float
    total_expected_delay: float
    transfer_risks: list[TransferRiskResult]


class TripPlanResponse(BaseModel):
    itineraries: list[ItineraryResult]


# ---------------------------------------------------------------------------
# GET /health
# ---------------------------------------------------------------------------

class ScheduleStats(BaseModel):
    routes: int
    stops: int
    trips: int
    stop_times: int
    loaded_at: str | None
    next_refresh_at: str | None


class ReliabilityStats(BaseModel):
    routes: int


class FeedStats(BaseModel):
    configured: bool
    cache_entries: int


class HealthResponse(BaseModel):
    status: Literal["ok"]
    timestamp: str
    schedule: ScheduleStats
    reliability: ReliabilityStats
    feed: FeedStats


# ---------------------------------------------------------------------------
# POST /ingest/*
# ---------------------------------------------------------------------------

class IngestResponse(BaseModel):
    status: Literal["ok", "partial"]
    message: str
    skipped: dict[str, int]
    failed_tables: list[str]
