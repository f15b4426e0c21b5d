"""
FastAPI application entry point.

On startup:
  1. Initialise the database schema backing the key-value store.
  2. Construct the FeedClient, ScheduleIndex, ReliabilityEngine and
     TripComposer and attach them to app.state.
  3. Restore the cached schedule and reliability table from the store.
  4. Start the APScheduler daily GTFS static refresh (every
     GTFS_REFRESH_HOURS); when the cached schedule is missing or stale the
     first run is scheduled immediately.

Endpoints (v1):
  GET  /health
  GET  /stops?query=<name>
  GET  /stops/{stop_id}/arrivals
  GET  /stops/{stop_id}/routes
  GET  /routes/{route_id}/stops
  GET  /routes/{route_id}/vehicles
  GET  /routes/{route_id}/alerts
  GET  /routes/{route_id}/reliability
  PUT  /routes/{route_id}/reliability
  GET  /routes/{route_id}/delay?at=<iso datetime>
  POST /trips/plan
  POST /ingest/gtfs-static
"""

import logging
import zipfile
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any

import httpx
import uvicorn
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from fastapi import Depends, FastAPI, HTTPException, Query, Request, Security
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import APIKeyHeader

from api.schemas import (
    AlertResult,
    ArrivalsResponse,
    DelayResult,
    HealthResponse,
    IngestResponse,
    ReliabilityResult,
    ReliabilityUpdate,
    RouteResult,
    StopResult,
    TripPlanRequest,
    TripPlanResponse,
    VehiclesResponse,
)
from config import API_HOST, API_PORT, CORS_ORIGINS, GTFS_REFRESH_HOURS, INGEST_API_KEY
from db.session import SessionLocal, init_db
from db.store import SqlBlobStore
from feed.client import FeedClient
from feed.models import Arrival, FeedConfigurationError, ServiceAlert, VehiclePosition
from geocoding.client import NominatimGeocoder
from ingestion.gtfs_static import load_schedule, refresh_schedule
from reliability.engine import ReliabilityEngine
from reliability.models import RouteReliability
from routing.composer import TripComposer
from routing.models import (
    Itinerary, LocationQuery, LocationUnresolved, NoStopInRange,
    NoTransitOptions, TransitLeg,
)
from schedule.index import ScheduleIndex
from schedule.models import Route, Stop

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

_ingest_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


def _require_ingest_key(key: str | None = Security(_ingest_key_header)) -> None:
    """
    Optional API-key guard for write endpoints.

    If INGEST_API_KEY is not set the endpoints are open (local dev / testing).
    If it is set, the request must include the matching X-API-Key header.
    """
    if not INGEST_API_KEY:
        return  # no key configured → open
    if key != INGEST_API_KEY:
        raise HTTPException(status_code=401, detail="Invalid or missing X-API-Key header.")


scheduler = AsyncIOScheduler()


# ---------------------------------------------------------------------------
# Component access, overridable in tests via app.dependency_overrides
# ---------------------------------------------------------------------------

def get_index(request: Request) -> ScheduleIndex:
    return request.app.state.index


def get_feed(request: Request) -> FeedClient:
    return request.app.state.feed


def get_reliability(request: Request) -> ReliabilityEngine:
    return request.app.state.reliability


def get_composer(request: Request) -> TripComposer:
    return request.app.state.composer


def get_store(request: Request) -> SqlBlobStore:
    return request.app.state.store


# ---------------------------------------------------------------------------
# Scheduled jobs
# ---------------------------------------------------------------------------

async def _scheduled_gtfs_refresh(index: ScheduleIndex, store: SqlBlobStore) -> None:
    """
    Scheduled job: download the GTFS static feed, reload the index and
    persist the tables.

    Exceptions are caught and logged so a transient network failure cannot
    crash the scheduler process; the previous schedule stays installed.
    """
    logger.info("GTFS static refresh starting.")
    try:
        report = await refresh_schedule(index, store)
        logger.info(
            "GTFS static refresh complete: %s (%d rows skipped).",
            report.row_counts, report.total_skipped,
        )
    except Exception as exc:
        logger.error("GTFS static refresh failed: %s", exc, exc_info=True)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    init_db()
    logger.info("Database initialised.")

    store = SqlBlobStore(SessionLocal)
    feed = FeedClient()
    if not feed.is_configured:
        logger.warning("FEED_API_KEY not set; real-time endpoints will return 503.")
    index = ScheduleIndex(route_fallback=feed.routes_for_stop)
    reliability = ReliabilityEngine(store)
    geocoder = NominatimGeocoder()

    await reliability.initialize()
    downloaded_at = await load_schedule(index, store)

    app.state.store = store
    app.state.feed = feed
    app.state.index = index
    app.state.reliability = reliability
    app.state.geocoder = geocoder
    app.state.composer = TripComposer(index, reliability, feed=feed, geocoder=geocoder)

    job_kwargs: dict[str, Any] = {}
    if index.needs_refresh(downloaded_at, GTFS_REFRESH_HOURS * 3600):
        logger.info("Cached schedule missing or stale, refreshing now.")
        job_kwargs["next_run_time"] = datetime.now(timezone.utc)
    scheduler.add_job(
        _scheduled_gtfs_refresh,
        "interval",
        hours=GTFS_REFRESH_HOURS,
        id="daily_gtfs_refresh",
        args=[index, store],
        replace_existing=True,
        **job_kwargs,
    )
    scheduler.start()
    logger.info("Scheduler started. GTFS refresh every %dh.", GTFS_REFRESH_HOURS)

    yield

    # Shutdown
    if scheduler.running:
        scheduler.shutdown()
    await feed.aclose()
    await geocoder.aclose()


app = FastAPI(
    title="Wayfare Transit Reliability API",
    description="Live arrivals, route reliability and reliability-ranked trip planning for King County Metro.",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_methods=["GET", "POST", "PUT"],
    allow_headers=["*"],
)


@app.exception_handler(FeedConfigurationError)
async def _feed_not_configured(request: Request, exc: FeedConfigurationError) -> JSONResponse:
    return JSONResponse(status_code=503, content={"detail": str(exc)})


# ---------------------------------------------------------------------------
# Serialisation
# ---------------------------------------------------------------------------

def _stop_payload(stop: Stop, routes_served: list[str] | None = None) -> dict[str, Any]:
    return {
        "stop_id": stop.id,
        "stop_name": stop.name,
        "stop_code": stop.code,
        "lat": stop.lat,
        "lon": stop.lon,
        "wheelchair_boarding": stop.wheelchair_boarding,
        "routes_served": routes_served or [],
    }


def _route_payload(route: Route) -> dict[str, Any]:
    return {
        "route_id": route.id,
        "short_name": route.short_name,
        "long_name": route.long_name,
        "route_type": route.type,
    }


def _arrival_payload(arrival: Arrival) -> dict[str, Any]:
    position = arrival.position
    return {
        "route_id": arrival.route_id,
        "route_short_name": arrival.route_short_name,
        "trip_id": arrival.trip_id,
        "trip_headsign": arrival.trip_headsign,
        "scheduled_time": arrival.scheduled_time,
        "predicted_time": arrival.predicted_time,
        "is_predicted": arrival.is_predicted,
        "minutes_until_arrival": arrival.minutes_until_arrival,
        "delay_minutes": arrival.delay_minutes,
        "status": arrival.status.value,
        "vehicle_id": arrival.vehicle_id,
        "distance_meters": arrival.distance_meters,
        "position": (
            {"lat": position.lat, "lon": position.lon, "heading": position.heading, "updated_at": position.updated_at}
            if position else None
        ),
    }


def _vehicle_payload(vehicle: VehiclePosition) -> dict[str, Any]:
    return {
        "vehicle_id": vehicle.vehicle_id,
        "trip_id": vehicle.trip_id,
        "route_id": vehicle.route_id,
        "lat": vehicle.lat,
        "lon": vehicle.lon,
        "heading": vehicle.heading,
        "updated_at": vehicle.updated_at,
        "distance_from_stop": vehicle.distance_from_stop,
        "is_priority": vehicle.is_priority,
    }


def _alert_payload(alert: ServiceAlert) -> dict[str, Any]:
    return {
        "id": alert.id,
        "header": alert.header,
        "description": alert.description,
        "url": alert.url,
        "severity": alert.severity,
        "effect": alert.effect,
        "affected_routes": list(alert.affected_routes),
        "affected_stops": list(alert.affected_stops),
        "active_periods": [{"start": p.start, "end": p.end} for p in alert.active_periods],
    }


def _reliability_payload(record: RouteReliability) -> dict[str, Any]:
    return {
        "route_id": record.route_id,
        "route_short_name": record.route_short_name,
        "on_time_rate": record.on_time_rate,
        "avg_delay_minutes": record.avg_delay_minutes,
        "rush_hour_delay_minutes": record.rush_hour_delay_minutes,
        "weekend_on_time_rate": record.weekend_on_time_rate,
        "reliability_tier": record.reliability_tier.value,
        "tier_overridden": record.tier_override is not None,
        "source_label": record.source_label,
        "updated_at": record.updated_at,
    }


def _itinerary_payload(itinerary: Itinerary) -> dict[str, Any]:
    legs = []
    for leg in itinerary.legs:
        if isinstance(leg, TransitLeg):
            legs.append({
                "mode": leg.mode.value,
                "route_id": leg.route_id,
                "route_short_name": leg.route_short_name,
                "route_long_name": leg.route_long_name,
                "headsign": leg.headsign,
                "from_stop": _stop_payload(leg.from_stop),
                "to_stop": _stop_payload(leg.to_stop),
                "duration": leg.duration,
                "start_time": leg.start_time,
                "end_time": leg.end_time,
                "reliability_tier": leg.reliability.reliability_tier.value,
                "on_time_rate": leg.reliability.on_time_rate,
            })
        else:
            legs.append({
                "mode": leg.mode.value,
                "origin": {"lat": leg.origin.lat, "lon": leg.origin.lon, "name": leg.origin.name},
                "destination": {"lat": leg.destination.lat, "lon": leg.destination.lon, "name": leg.destination.name},
                "distance_m": leg.distance_m,
                "duration": leg.duration,
                "start_time": leg.start_time,
                "end_time": leg.end_time,
            })
    return {
        "id": itinerary.id,
        "rank": itinerary.rank,
        "recommended": itinerary.recommended,
        "legs": legs,
        "start_time": itinerary.start_time,
        "end_time": itinerary.end_time,
        "duration": itinerary.duration,
        "walk_time": itinerary.walk_time,
        "transit_time": itinerary.transit_time,
        "wait_time": itinerary.wait_time,
        "overall_reliability": itinerary.overall_reliability.value,
        "avg_on_time_rate": itinerary.avg_on_time_rate,
        "total_expected_delay": itinerary.total_expected_delay,
        "transfer_risks": [
            {
                "from_leg_index": r.from_leg_index,
                "to_leg_index": r.to_leg_index,
                "buffer_minutes": r.buffer_minutes,
                "adjusted_buffer_minutes": r.adjusted_buffer_minutes,
                "risk_tier": r.risk_tier.value,
                "missed_probability": r.missed_probability,
                "expected_delay_minutes": r.expected_delay_minutes,
                "walking_minutes": r.walking_minutes,
                "recommendation": r.recommendation,
            }
            for r in itinerary.transfer_risks
        ],
    }


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@app.get("/health", response_model=HealthResponse)
async def health(
    index: ScheduleIndex = Depends(get_index),
    feed: FeedClient = Depends(get_feed),
    reliability: ReliabilityEngine = Depends(get_reliability),
) -> HealthResponse:
    """
    Liveness + data-freshness check.

    Returns schedule table counts and timestamps so operators can quickly
    tell whether GTFS data has been loaded and when it will next refresh.
    """
    next_refresh_at: str | None = None
    daily_job = scheduler.get_job("daily_gtfs_refresh")
    if daily_job and daily_job.next_run_time:
        next_refresh_at = daily_job.next_run_time.isoformat()

    return {
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "schedule": {
            **index.counts(),
            "loaded_at": index.loaded_at.isoformat() if index.loaded_at else None,
            "next_refresh_at": next_refresh_at,
        },
        "reliability": {"routes": len(reliability.all_reliabilities())},
        "feed": {
            "configured": feed.is_configured,
            "cache_entries": feed.cache_stats()["size"],
        },
    }


@app.get("/stops", response_model=list[StopResult])
async def search_stops(
    query: str = Query(..., min_length=2, description="Stop name substring or stop code"),
    limit: int = Query(20, ge=1, le=100),
    index: ScheduleIndex = Depends(get_index),
    composer: TripComposer = Depends(get_composer),
) -> list[StopResult]:
    """Search stops by name or code; prefix matches first, then shorter names."""
    results = composer.search_stops(query, limit=limit)
    payload = []
    for stop in results:
        # Without stop times this would cost one feed call per stop
        routes = await index.get_routes_for_stop(stop.id) if index.has_stop_times else []
        payload.append(_stop_payload(stop, sorted(r.id for r in routes)))
    return payload


@app.get("/stops/{stop_id}/arrivals", response_model=ArrivalsResponse)
async def stop_arrivals(
    stop_id: str,
    minutes_before: int = Query(5, ge=0, le=60),
    minutes_after: int = Query(60, ge=1, le=240),
    feed: FeedClient = Depends(get_feed),
) -> ArrivalsResponse:
    """Live arrivals; an empty list with a non-ok status when the feed had nothing usable."""
    result = await feed.fetch_arrivals(stop_id, minutes_before=minutes_before, minutes_after=minutes_after)
    return {
        "stop_id": stop_id,
        "status": result.status.value,
        "arrivals": [_arrival_payload(a) for a in result.data or []],
    }


@app.get("/stops/{stop_id}/routes", response_model=list[RouteResult])
async def stop_routes(stop_id: str, index: ScheduleIndex = Depends(get_index)) -> list[RouteResult]:
    routes = await index.get_routes_for_stop(stop_id)
    return [_route_payload(r) for r in routes]


@app.get("/routes/{route_id}/stops", response_model=list[StopResult])
async def route_stops(route_id: str, index: ScheduleIndex = Depends(get_index)) -> list[StopResult]:
    stops = index.get_stops_for_route(route_id)
    if not stops and index.get_route_by_id(route_id) is None:
        raise HTTPException(status_code=404, detail=f"Route '{route_id}' not found.")
    return [_stop_payload(s) for s in stops]


@app.get("/routes/{route_id}/vehicles", response_model=VehiclesResponse)
async def route_vehicles(
    route_id: str,
    priority_vehicle_id: str | None = Query(None, description="Vehicle the caller is following"),
    index: ScheduleIndex = Depends(get_index),
    feed: FeedClient = Depends(get_feed),
) -> VehiclesResponse:
    result = await feed.fetch_vehicles_for_route(
        route_id, index.get_stops_for_route(route_id), priority_vehicle_id=priority_vehicle_id
    )
    return {
        "route_id": route_id,
        "status": result.status.value,
        "vehicles": [_vehicle_payload(v) for v in result.data or []],
    }


@app.get("/routes/{route_id}/alerts", response_model=list[AlertResult])
async def route_alerts(route_id: str, feed: FeedClient = Depends(get_feed)) -> list[AlertResult]:
    alerts = await feed.get_alerts_for_route(route_id)
    return [_alert_payload(a) for a in alerts]


@app.get("/routes/{route_id}/reliability", response_model=ReliabilityResult)
async def route_reliability(
    route_id: str,
    reliability: ReliabilityEngine = Depends(get_reliability),
) -> ReliabilityResult:
    return _reliability_payload(reliability.get_reliability(route_id))


@app.put("/routes/{route_id}/reliability", response_model=ReliabilityResult)
async def update_route_reliability(
    route_id: str,
    update: ReliabilityUpdate,
    reliability: ReliabilityEngine = Depends(get_reliability),
    _: None = Depends(_require_ingest_key),
) -> ReliabilityResult:
    """Merge the given fields into the route's record and persist the table."""
    try:
        record = await reliability.upsert_reliability(route_id, update.model_dump(exclude_unset=True))
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    return _reliability_payload(record)


@app.get("/routes/{route_id}/delay", response_model=DelayResult)
async def route_delay(
    route_id: str,
    at: datetime | None = Query(None, description="ISO 8601 time to predict for; defaults to now"),
    reliability: ReliabilityEngine = Depends(get_reliability),
) -> DelayResult:
    at = at or datetime.now(timezone.utc)
    prediction = reliability.predict_delay(route_id, at)
    return {
        "route_id": route_id,
        "at": at,
        "expected_delay_minutes": prediction.expected_delay_minutes,
        "confidence": prediction.confidence,
        "is_rush_hour": prediction.is_rush_hour,
        "is_weekend": prediction.is_weekend,
        "reliability_tier": prediction.reliability_tier.value,
    }


@app.post("/trips/plan", response_model=TripPlanResponse)
async def plan_trip(
    request: TripPlanRequest,
    composer: TripComposer = Depends(get_composer),
) -> TripPlanResponse:
    """
    Ranked walk + transit itineraries between two locations.

    422 when an endpoint cannot be located; 404 when no stop is in walking
    range or no route links the two stops.
    """
    try:
        itineraries = await composer.plan_trip(
            LocationQuery(**request.origin.model_dump()),
            LocationQuery(**request.destination.model_dump()),
            mode=request.mode,
            max_walking_distance=request.max_walking_distance,
            max_results=request.max_results,
            depart_at=request.depart_at,
        )
    except LocationUnresolved as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    except (NoStopInRange, NoTransitOptions) as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    return {"itineraries": [_itinerary_payload(it) for it in itineraries]}


@app.post("/ingest/gtfs-static", response_model=IngestResponse)
async def trigger_gtfs_ingest(
    index: ScheduleIndex = Depends(get_index),
    store: SqlBlobStore = Depends(get_store),
    _: None = Depends(_require_ingest_key),
) -> IngestResponse:
    """
    Manually trigger a GTFS static download, index reload and persist.
    (In production this runs on a daily schedule.)
    """
    try:
        report = await refresh_schedule(index, store)
    except (httpx.HTTPError, ValueError, zipfile.BadZipFile) as exc:
        raise HTTPException(status_code=502, detail=f"GTFS download failed: {exc}")
    counts = report.row_counts
    return {
        "status": "ok" if report.ok else "partial",
        "message": (
            f"Loaded {counts.get('routes', 0)} routes, {counts.get('stops', 0)} stops, "
            f"{counts.get('trips', 0)} trips and {counts.get('stop_times', 0)} stop times."
        ),
        "skipped": report.skipped,
        "failed_tables": report.failed_tables,
    }


if __name__ == "__main__":
    uvicorn.run("api.main:app", host=API_HOST, port=API_PORT)
