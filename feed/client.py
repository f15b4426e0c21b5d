"""
OneBusAway real-time client.

Endpoints used (all relative to FEED_BASE_URL, all require ?key=):
  arrivals-and-departures-for-stop/{stop}.json   minutesBefore, minutesAfter
  stops-for-location.json                        lat, lon, radius (≤ 5000 m)
  trip-details/{trip}.json
  route/{route}.json                             alerts in references.situations

Every response is wrapped as {code, text, data}.  The transport layer turns
HTTP errors, body codes and network failures into a FetchStatus at the
source; the retry loop switches on that status and only TRANSIENT is ever
retried.  Successful responses are cached per (endpoint, params) with a
caller-chosen TTL.  Cache entries are immutable and replaced whole, so a
reader sees either the previous or the new entry for a key.

Read methods come in two forms: fetch_* returns the FeedResult (callers
that adapt their polling need the status), get_* returns the plain list
and treats every non-OK status as "no data".
"""

import asyncio
import logging
import time
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Iterable

import httpx

from config import (
    ALERTS_TTL_SECONDS, ARRIVALS_TTL_SECONDS, FEED_AGENCY_ID, FEED_API_KEY,
    FEED_BACKOFF_BASE_SECONDS, FEED_BASE_URL, FEED_CACHE_MAX_ENTRIES, FEED_MAX_ATTEMPTS,
    FEED_TIMEOUT_SECONDS, PRIORITY_SAMPLE_STOPS, PRIORITY_VEHICLE_TTL_SECONDS,
    STOP_STAGGER_SECONDS, STOPS_NEAR_TTL_SECONDS, VEHICLE_SAMPLE_STOPS,
    VEHICLE_TTL_SECONDS,
)
from feed.models import (
    ActivePeriod, Arrival, FeedConfigurationError, FeedResult, FeedStop,
    FetchStatus, Position, ServiceAlert, VehiclePosition, classify_status,
    from_epoch_ms,
)
from schedule.ids import to_feed_id, to_schedule_id
from schedule.models import Stop

logger = logging.getLogger(__name__)

MAX_STOPS_NEAR_RADIUS_M = 5000
ROUTE_FALLBACK_WINDOW_MINUTES = 60
VEHICLE_WINDOW_MINUTES = 30

CacheKey = tuple[str, tuple[tuple[str, str], ...]]


@dataclass(frozen=True)
class _CacheEntry:
    result: FeedResult[Any]
    stored_at: float
    expires_at: float


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _translation(block: Any) -> str:
    """First translation text of an OBA situation text block, or ''."""
    if not isinstance(block, dict):
        return ""
    translations = block.get("translation") or []
    if translations and isinstance(translations[0], dict):
        return translations[0].get("text") or ""
    return ""


# ---------------------------------------------------------------------------
# Response parsing
# ---------------------------------------------------------------------------

def _inline_position(raw: dict[str, Any], fallback_time: datetime) -> Position | None:
    """
    Vehicle position carried inside an arrival, if any.  The feed uses three
    shapes: vehicleStatus.position, a top-level position, or vehiclePosition.
    """
    status = raw.get("vehicleStatus") or {}
    if isinstance(status, dict) and status.get("position"):
        pos = status["position"]
        lat, lon = pos.get("lat"), pos.get("lon")
        heading = pos.get("heading") or status.get("orientation") or 0
        updated = from_epoch_ms(status.get("lastUpdateTime"))
    elif isinstance(raw.get("position"), dict) and raw["position"].get("lat"):
        pos = raw["position"]
        lat, lon = pos.get("lat"), pos.get("lon")
        heading = pos.get("heading") or 0
        updated = from_epoch_ms(raw.get("lastUpdateTime"))
    elif isinstance(raw.get("vehiclePosition"), dict):
        pos = raw["vehiclePosition"]
        lat = pos.get("lat") or pos.get("latitude")
        lon = pos.get("lon") or pos.get("longitude")
        heading = pos.get("heading") or 0
        updated = from_epoch_ms(pos.get("lastUpdateTime"))
    else:
        return None

    if not lat or not lon:
        return None
    return Position(
        lat=float(lat),
        lon=float(lon),
        heading=float(heading),
        updated_at=updated or fallback_time,
    )


def parse_arrival(raw: dict[str, Any], fetched_at: datetime) -> Arrival | None:
    scheduled = from_epoch_ms(raw.get("scheduledArrivalTime"))
    if scheduled is None or not raw.get("routeId"):
        return None
    predicted = from_epoch_ms(raw.get("predictedArrivalTime")) or scheduled
    distance = raw.get("distanceFromStop")
    return Arrival(
        route_id=raw["routeId"],
        trip_id=raw.get("tripId") or "",
        scheduled_time=scheduled,
        predicted_time=predicted,
        is_predicted=raw.get("predicted") is True,
        fetched_at=fetched_at,
        vehicle_id=raw.get("vehicleId") or None,
        distance_meters=float(distance) if distance is not None else None,
        route_short_name=raw.get("routeShortName") or "",
        trip_headsign=raw.get("tripHeadsign") or "",
        position=_inline_position(raw, predicted),
    )


def parse_feed_stop(raw: dict[str, Any]) -> FeedStop | None:
    if not raw.get("id") or raw.get("lat") is None or raw.get("lon") is None:
        return None
    return FeedStop(
        id=raw["id"],
        name=raw.get("name") or "",
        lat=float(raw["lat"]),
        lon=float(raw["lon"]),
        code=raw.get("code") or "",
        direction=raw.get("direction") or "",
        route_ids=tuple(raw.get("routeIds") or ()),
    )


def parse_situation(raw: dict[str, Any]) -> ServiceAlert:
    entities = raw.get("informedEntity") or raw.get("allAffects") or []
    periods = []
    for period in raw.get("activePeriod") or raw.get("activeWindows") or []:
        start, end = period.get("start") or period.get("from"), period.get("end") or period.get("to")
        # situation windows are epoch seconds, unlike arrival times
        periods.append(ActivePeriod(
            start=from_epoch_ms(start * 1000) if start else None,
            end=from_epoch_ms(end * 1000) if end else None,
        ))
    return ServiceAlert(
        id=str(raw.get("id", "")),
        header=_translation(raw.get("headerText")) or _translation(raw.get("summary")),
        description=_translation(raw.get("descriptionText")) or _translation(raw.get("description")),
        url=_translation(raw.get("url")) or None,
        severity=raw.get("severity") or "info",
        effect=raw.get("effect") or raw.get("consequenceMessage"),
        affected_routes=tuple(e["routeId"] for e in entities if e.get("routeId")),
        affected_stops=tuple(e["stopId"] for e in entities if e.get("stopId")),
        active_periods=tuple(periods),
    )


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

class FeedClient:
    def __init__(
        self,
        api_key: str = FEED_API_KEY,
        base_url: str = FEED_BASE_URL,
        http_client: httpx.AsyncClient | None = None,
        clock: Callable[[], float] = time.monotonic,
        now: Callable[[], datetime] = _utcnow,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        agency_id: str = FEED_AGENCY_ID,
        timeout: float = FEED_TIMEOUT_SECONDS,
        max_attempts: int = FEED_MAX_ATTEMPTS,
        backoff_base: float = FEED_BACKOFF_BASE_SECONDS,
        stagger_seconds: float = STOP_STAGGER_SECONDS,
        cache_max_entries: int = FEED_CACHE_MAX_ENTRIES,
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.agency_id = agency_id
        self.timeout = timeout
        self.max_attempts = max(1, max_attempts)
        self.backoff_base = backoff_base
        self.stagger_seconds = stagger_seconds
        self.cache_max_entries = max(1, cache_max_entries)
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=timeout)
        self._clock = clock
        self._now = now
        self._sleep = sleep
        self._cache: dict[CacheKey, _CacheEntry] = {}

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http.aclose()

    async def __aenter__(self) -> "FeedClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    # -- cache --------------------------------------------------------------

    @staticmethod
    def _cache_key(endpoint: str, params: dict[str, Any]) -> CacheKey:
        return endpoint, tuple(sorted((k, str(v)) for k, v in params.items()))

    def clear_cache(self, endpoint: str | None = None) -> None:
        """Drop every entry, or only those whose endpoint starts with `endpoint`."""
        if endpoint is None:
            self._cache = {}
            logger.info("Cleared feed cache.")
            return
        self._cache = {k: v for k, v in self._cache.items() if not k[0].startswith(endpoint)}
        logger.info("Cleared feed cache for %s", endpoint)

    def _evict(self, now: float) -> None:
        """Drop expired entries, then the oldest ones while the cache is full."""
        expired = [k for k, entry in self._cache.items() if entry.expires_at <= now]
        for k in expired:
            del self._cache[k]
        overflow = len(self._cache) - self.cache_max_entries + 1
        if overflow > 0:
            oldest = sorted(self._cache, key=lambda k: self._cache[k].stored_at)[:overflow]
            for k in oldest:
                del self._cache[k]
        if expired or overflow > 0:
            logger.debug("Evicted %d feed cache entries.", len(expired) + max(0, overflow))

    def cache_stats(self) -> dict[str, Any]:
        return {
            "size": len(self._cache),
            "keys": [endpoint for endpoint, _ in self._cache],
        }

    # -- transport ----------------------------------------------------------

    async def _fetch_once(self, endpoint: str, params: dict[str, Any]) -> FeedResult[Any]:
        url = f"{self.base_url}/{endpoint}"
        try:
            response = await self._http.get(
                url, params={**params, "key": self.api_key}, timeout=self.timeout
            )
        except httpx.TimeoutException as exc:
            return FeedResult(FetchStatus.TRANSIENT, error=f"timeout: {exc}")
        except httpx.TransportError as exc:
            return FeedResult(FetchStatus.TRANSIENT, error=f"network error: {exc}")

        status = classify_status(response.status_code)
        if status is not FetchStatus.OK:
            return FeedResult(status, error=f"HTTP {response.status_code}")

        try:
            body = response.json()
        except ValueError:
            return FeedResult(FetchStatus.TRANSIENT, error="response body is not JSON")
        if not isinstance(body, dict):
            return FeedResult(FetchStatus.FATAL, error="unexpected response shape")

        code = body.get("code")
        if code is not None:
            try:
                status = classify_status(int(code))
            except (TypeError, ValueError):
                status = FetchStatus.FATAL
            if status is not FetchStatus.OK:
                return FeedResult(status, error=body.get("text") or f"code {code}")

        return FeedResult(FetchStatus.OK, data=body.get("data"))

    async def _fetch_with_retry(self, endpoint: str, params: dict[str, Any]) -> FeedResult[Any]:
        result = await self._fetch_once(endpoint, params)
        attempt = 1
        while result.status is FetchStatus.TRANSIENT and attempt < self.max_attempts:
            delay = self.backoff_base * 2 ** (attempt - 1)
            logger.warning(
                "Feed request %s failed (%s), retrying in %.1fs (attempt %d/%d)",
                endpoint, result.error, delay, attempt, self.max_attempts,
            )
            await self._sleep(delay)
            result = await self._fetch_once(endpoint, params)
            attempt += 1

        if result.status is FetchStatus.TRANSIENT:
            logger.warning("Feed request %s gave up after %d attempts: %s", endpoint, attempt, result.error)
        elif result.status is FetchStatus.RATE_LIMITED:
            logger.warning("Feed rate limit hit for %s", endpoint)
        elif result.status is FetchStatus.NOT_FOUND:
            logger.info("Feed returned not found for %s", endpoint)
        elif result.status is FetchStatus.FATAL:
            logger.warning("Feed request %s failed: %s", endpoint, result.error)
        return result

    async def _request(self, endpoint: str, params: dict[str, Any], ttl: float) -> FeedResult[Any]:
        if not self.is_configured:
            raise FeedConfigurationError(
                "OneBusAway API key not configured. Set FEED_API_KEY "
                "(request a key from oba_api_key@soundtransit.org)."
            )

        key = self._cache_key(endpoint, params)
        entry = self._cache.get(key)
        if entry is not None and self._clock() - entry.stored_at < ttl:
            logger.debug("Using cached data for %s", endpoint)
            return replace(entry.result, from_cache=True)

        result = await self._fetch_with_retry(endpoint, params)
        if result.ok:
            now = self._clock()
            self._evict(now)
            self._cache[key] = _CacheEntry(result=result, stored_at=now, expires_at=now + ttl)
        return result

    # -- arrivals -----------------------------------------------------------

    async def fetch_arrivals(
        self,
        stop_id: str,
        minutes_before: int = 5,
        minutes_after: int = 60,
        ttl: float = ARRIVALS_TTL_SECONDS,
    ) -> FeedResult[list[Arrival]]:
        feed_stop_id = to_feed_id(stop_id, self.agency_id)
        result = await self._request(
            f"arrivals-and-departures-for-stop/{feed_stop_id}.json",
            {"minutesBefore": minutes_before, "minutesAfter": minutes_after},
            ttl,
        )
        if not result.ok:
            return result.with_data(None)

        entry = (result.data or {}).get("entry") or {}
        fetched_at = self._now()
        arrivals = []
        for raw in entry.get("arrivalsAndDepartures") or []:
            arrival = parse_arrival(raw, fetched_at)
            if arrival is not None:
                arrivals.append(arrival)
        return result.with_data(arrivals)

    async def get_arrivals(
        self,
        stop_id: str,
        minutes_before: int = 5,
        minutes_after: int = 60,
        ttl: float = ARRIVALS_TTL_SECONDS,
    ) -> list[Arrival]:
        result = await self.fetch_arrivals(stop_id, minutes_before, minutes_after, ttl)
        return result.data or []

    async def routes_for_stop(self, stop_id: str) -> list[str]:
        """
        Schedule-format ids of the routes with an arrival at the stop in the
        next hour.  Used as the ScheduleIndex fallback when stop times are not
        loaded.
        """
        arrivals = await self.get_arrivals(stop_id, minutes_after=ROUTE_FALLBACK_WINDOW_MINUTES)
        route_ids: list[str] = []
        for arrival in arrivals:
            route_id = to_schedule_id(arrival.route_id)
            if route_id not in route_ids:
                route_ids.append(route_id)
        return route_ids

    # -- vehicles -----------------------------------------------------------

    async def fetch_vehicles_for_route(
        self,
        route_id: str,
        sample_stops: Iterable[str | Stop],
        priority_vehicle_id: str | None = None,
    ) -> FeedResult[list[VehiclePosition]]:
        """
        Live vehicles on a route, read from the arrivals of a few of its stops.

        At most VEHICLE_SAMPLE_STOPS stops are sampled (PRIORITY_SAMPLE_STOPS
        while a vehicle is followed), one at a time with a short pause between
        them.  Vehicles seen at several stops keep the most recent position,
        except the priority vehicle, which always takes the latest response.
        Only the priority vehicle may cost a trip-details call when its
        arrival carries no position.
        """
        feed_route_id = to_feed_id(route_id, self.agency_id)
        limit = PRIORITY_SAMPLE_STOPS if priority_vehicle_id else VEHICLE_SAMPLE_STOPS
        ttl = PRIORITY_VEHICLE_TTL_SECONDS if priority_vehicle_id else VEHICLE_TTL_SECONDS

        stop_ids = [s.id if isinstance(s, Stop) else s for s in sample_stops]
        stop_ids = [s for s in stop_ids if s][:limit]
        if not stop_ids:
            return FeedResult(FetchStatus.OK, data=[])

        vehicles: dict[str, VehiclePosition] = {}
        statuses: list[FetchStatus] = []

        for i, stop_id in enumerate(stop_ids):
            if i > 0:
                await self._sleep(self.stagger_seconds)
            result = await self.fetch_arrivals(stop_id, minutes_after=VEHICLE_WINDOW_MINUTES, ttl=ttl)
            statuses.append(result.status)

            for arrival in result.data or []:
                if arrival.route_id != feed_route_id or not arrival.vehicle_id:
                    continue
                vehicle_id = arrival.vehicle_id
                is_priority = vehicle_id == priority_vehicle_id
                existing = vehicles.get(vehicle_id)

                position = arrival.position
                if position is None:
                    if not (is_priority and existing is None and arrival.trip_id):
                        continue
                    position = await self.get_vehicle_for_trip(arrival.trip_id)
                    if position is None:
                        continue
                elif not (is_priority or existing is None or _is_newer(position, existing)):
                    continue

                vehicles[vehicle_id] = VehiclePosition(
                    vehicle_id=vehicle_id,
                    trip_id=arrival.trip_id,
                    route_id=arrival.route_id,
                    lat=position.lat,
                    lon=position.lon,
                    heading=position.heading,
                    updated_at=position.updated_at or arrival.predicted_time,
                    distance_from_stop=arrival.distance_meters,
                    is_priority=is_priority,
                )

        if FetchStatus.OK in statuses:
            status = FetchStatus.OK
        elif FetchStatus.RATE_LIMITED in statuses:
            status = FetchStatus.RATE_LIMITED
        else:
            status = statuses[0]
        logger.debug("Route %s: %d vehicles from %d sampled stops.", feed_route_id, len(vehicles), len(stop_ids))
        return FeedResult(status, data=list(vehicles.values()) if status is FetchStatus.OK else None)

    async def get_vehicles_for_route(
        self,
        route_id: str,
        sample_stops: Iterable[str | Stop],
        priority_vehicle_id: str | None = None,
    ) -> list[VehiclePosition]:
        result = await self.fetch_vehicles_for_route(route_id, sample_stops, priority_vehicle_id)
        return result.data or []

    # -- trips --------------------------------------------------------------

    async def get_trip_details(self, trip_id: str) -> dict[str, Any] | None:
        feed_trip_id = to_feed_id(trip_id, self.agency_id)
        result = await self._request(f"trip-details/{feed_trip_id}.json", {}, ARRIVALS_TTL_SECONDS)
        if not result.ok or not result.data:
            return None
        return result.data.get("entry") or None

    async def get_vehicle_for_trip(self, trip_id: str) -> Position | None:
        details = await self.get_trip_details(trip_id)
        if not details:
            return None
        status = details.get("status") or {}
        pos = status.get("position") or {}
        if not pos.get("lat") or not pos.get("lon"):
            return None

        heading = status.get("orientation")
        if heading is None:
            heading = status.get("lastKnownOrientation")
        updated = (
            from_epoch_ms(status.get("lastUpdateTime"))
            or from_epoch_ms(status.get("lastLocationUpdateTime"))
            or self._now()
        )
        return Position(lat=float(pos["lat"]), lon=float(pos["lon"]), heading=float(heading or 0), updated_at=updated)

    # -- stops and alerts ---------------------------------------------------

    async def get_stops_near_location(self, lat: float, lon: float, radius: float = 500) -> list[FeedStop]:
        result = await self._request(
            "stops-for-location.json",
            {"lat": lat, "lon": lon, "radius": min(radius, MAX_STOPS_NEAR_RADIUS_M)},
            STOPS_NEAR_TTL_SECONDS,
        )
        if not result.ok or not result.data:
            return []
        stops = (parse_feed_stop(raw) for raw in result.data.get("list") or [])
        return [s for s in stops if s is not None]

    async def get_alerts_for_route(self, route_id: str) -> list[ServiceAlert]:
        feed_route_id = to_feed_id(route_id, self.agency_id)
        result = await self._request(f"route/{feed_route_id}.json", {}, ALERTS_TTL_SECONDS)
        if not result.ok or not result.data:
            return []
        situations = (result.data.get("references") or {}).get("situations") or []
        return [parse_situation(s) for s in situations if isinstance(s, dict)]


def _is_newer(position: Position, existing: VehiclePosition) -> bool:
    if position.updated_at is None:
        return False
    if existing.updated_at is None:
        return True
    return position.updated_at > existing.updated_at
