"""
Composes ranked walk + transit itineraries between two locations.

Per request:
  1. resolve both endpoints concurrently (coordinates, stop, stop id, address)
  2. snap each to its nearest stop within the walking limit
  3. walking legs to/from those stops
  4. transit discovery from the routes serving each stop:
       - up to MAX_DIRECT_OPTIONS direct rides on routes serving both stops
       - otherwise one transfer option: the first route on each side, joined
         at a stop they share, by a short walk between their closest stops,
         or (when neither exists or stop times are not loaded) at the stop
         nearest the midpoint of the two end stops
  5. score each option with the ReliabilityEngine
  6. rank ("fast": duration; "safe": tier, transfer risks, duration) and
     flag the first result as recommended

Ride durations are fixed estimates rather than a timetable search.  When a
feed client is wired in, live arrivals at the origin stop replace the
default initial wait if the next matching bus is sooner.
"""

import asyncio
import logging
import math
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Callable

from config import (
    DEFAULT_WAIT_MINUTES, DIRECT_RIDE_MINUTES, MAX_DIRECT_OPTIONS,
    MAX_ROUTES, MAX_TRANSFER_WALK_METRES, MAX_WALK_METRES,
    TRANSFER_FIRST_LEG_MINUTES, TRANSFER_SECOND_LEG_MINUTES,
    TRANSFER_WAIT_MINUTES, WALK_SPEED_M_PER_MIN,
)
from feed.client import FeedClient
from feed.models import Arrival
from geocoding.client import Geocoder
from graph.spatial import NearbyStop, StopLocator, haversine_metres
from reliability.engine import ReliabilityEngine
from routing.models import (
    Itinerary, Leg, LocationQuery, LocationUnresolved, NoStopInRange,
    NoTransitOptions, Place, ResolvedLocation, TransitLeg, WalkLeg,
)
from schedule.ids import to_schedule_id
from schedule.index import ScheduleIndex
from schedule.models import Route, Stop

logger = logging.getLogger(__name__)

FAST = "fast"
SAFE = "safe"
MODES = (FAST, SAFE)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _place(stop: Stop) -> Place:
    return Place(lat=stop.lat, lon=stop.lon, name=stop.name)


def _minutes(delta: timedelta) -> int:
    return round(delta.total_seconds() / 60)


class TripComposer:
    """
    Borrows the schedule index, reliability engine and (optionally) the feed
    client and geocoder for the duration of each call; holds no state of its
    own between requests.
    """

    def __init__(
        self,
        index: ScheduleIndex,
        reliability: ReliabilityEngine,
        feed: FeedClient | None = None,
        geocoder: Geocoder | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.index = index
        self.reliability = reliability
        self.feed = feed
        self.geocoder = geocoder
        self._clock = clock

    # -- resolution ---------------------------------------------------------

    async def resolve_location(self, query: LocationQuery) -> ResolvedLocation | None:
        if query.lat is not None and query.lon is not None:
            address = query.address
            if not address and self.geocoder is not None:
                address = await self.geocoder.reverse_geocode(query.lat, query.lon)
            return ResolvedLocation(lat=query.lat, lon=query.lon, address=address)

        if query.stop is not None:
            return ResolvedLocation(lat=query.stop.lat, lon=query.stop.lon, address=query.stop.name)

        if query.stop_id:
            stop = self.index.get_stop_by_id(query.stop_id)
            if stop is not None:
                return ResolvedLocation(lat=stop.lat, lon=stop.lon, address=stop.name)

        if query.address and self.geocoder is not None:
            geocoded = await self.geocoder.geocode(query.address)
            if geocoded is not None:
                return ResolvedLocation(
                    lat=geocoded.lat,
                    lon=geocoded.lon,
                    address=geocoded.formatted_address or query.address,
                )
        return None

    def find_nearest_stop(self, lat: float, lon: float, max_distance: float = MAX_WALK_METRES) -> NearbyStop | None:
        matches = self.index.stops_near(lat, lon, max_distance)
        return matches[0] if matches else None

    @staticmethod
    def walking_leg(origin: Place, destination: Place, start_time: datetime | None = None) -> WalkLeg:
        distance = haversine_metres(origin.lat, origin.lon, destination.lat, destination.lon)
        duration = math.ceil(distance / WALK_SPEED_M_PER_MIN)
        return WalkLeg(
            origin=origin,
            destination=destination,
            distance_m=round(distance),
            duration=duration,
            start_time=start_time,
            end_time=start_time + timedelta(minutes=duration) if start_time else None,
        )

    def search_stops(self, query: str, limit: int = 10) -> list[Stop]:
        """Index matches with name-prefix matches first, then shorter names."""
        needle = (query or "").strip().lower()
        matches = self.index.search_stops(query)
        matches.sort(key=lambda s: (not s.name.lower().startswith(needle), len(s.name)))
        return matches[:limit]

    # -- planning -----------------------------------------------------------

    async def plan_trip(
        self,
        origin: LocationQuery,
        destination: LocationQuery,
        mode: str = FAST,
        max_walking_distance: float = MAX_WALK_METRES,
        max_results: int = MAX_ROUTES,
        depart_at: datetime | None = None,
    ) -> list[Itinerary]:
        """
        Ranked itineraries from origin to destination.

        Raises:
            ValueError: unknown mode.
            LocationUnresolved: either endpoint could not be located.
            NoStopInRange: no stop within max_walking_distance of an endpoint.
            NoTransitOptions: no route combination links the two stops.
        """
        if mode not in MODES:
            raise ValueError(f"mode must be one of {', '.join(MODES)}, got {mode!r}")

        origin_loc, dest_loc = await asyncio.gather(
            self.resolve_location(origin), self.resolve_location(destination)
        )
        if origin_loc is None:
            raise LocationUnresolved("origin")
        if dest_loc is None:
            raise LocationUnresolved("destination")

        origin_near = self.find_nearest_stop(origin_loc.lat, origin_loc.lon, max_walking_distance)
        if origin_near is None:
            raise NoStopInRange("origin", max_walking_distance)
        dest_near = self.find_nearest_stop(dest_loc.lat, dest_loc.lon, max_walking_distance)
        if dest_near is None:
            raise NoStopInRange("destination", max_walking_distance)

        origin_place = Place(origin_loc.lat, origin_loc.lon, origin_loc.address)
        dest_place = Place(dest_loc.lat, dest_loc.lon, dest_loc.address)
        origin_stop, dest_stop = origin_near.stop, dest_near.stop
        now = depart_at or self._clock()

        logger.info(
            "Planning %s trip: stop %s (%.0fm) → stop %s (%.0fm)",
            mode, origin_stop.id, origin_near.distance_m, dest_stop.id, dest_near.distance_m,
        )

        if origin_stop.id == dest_stop.id:
            # Both ends snap to the same stop: walking is the whole trip
            walk = self.walking_leg(origin_place, dest_place, start_time=now)
            options = [self._assemble((walk,), now, wait_time=0)]
            return self._rank(options, mode, max_results)

        origin_routes, dest_routes = await asyncio.gather(
            self.index.get_routes_for_stop(origin_stop.id),
            self.index.get_routes_for_stop(dest_stop.id),
        )
        arrivals = await self._live_arrivals(origin_stop)

        options: list[Itinerary] = []
        dest_route_ids = {r.id for r in dest_routes}
        direct = [r for r in origin_routes if r.id in dest_route_ids][:MAX_DIRECT_OPTIONS]
        for route in direct:
            options.append(self._direct_option(
                route, origin_place, origin_stop, dest_stop, dest_place, now, arrivals
            ))

        if not direct and origin_routes and dest_routes:
            transfer = self._transfer_option(
                origin_routes[0], dest_routes[0], origin_place, origin_stop,
                dest_stop, dest_place, now, arrivals,
            )
            if transfer is not None:
                options.append(transfer)

        if not options:
            logger.info("No transit options between stops %s and %s", origin_stop.id, dest_stop.id)
            raise NoTransitOptions(origin_stop.id, dest_stop.id)

        return self._rank(options, mode, max_results)

    # -- option builders ----------------------------------------------------

    async def _live_arrivals(self, stop: Stop) -> list[Arrival]:
        if self.feed is None or not self.feed.is_configured:
            return []
        return await self.feed.get_arrivals(stop.id)

    @staticmethod
    def _initial_wait(route: Route, walk_minutes: int, arrivals: list[Arrival]) -> int:
        """Minutes spent at the first stop: the next catchable live arrival if sooner than the default."""
        for arrival in sorted(arrivals, key=lambda a: a.predicted_time):
            if to_schedule_id(arrival.route_id) != route.id:
                continue
            until = arrival.minutes_until_arrival
            if until >= walk_minutes:
                return min(DEFAULT_WAIT_MINUTES, until - walk_minutes)
        return DEFAULT_WAIT_MINUTES

    def _transit_leg(
        self,
        route: Route,
        from_stop: Stop,
        to_stop: Stop,
        start: datetime,
        duration: int,
    ) -> TransitLeg:
        return TransitLeg(
            route_id=route.id,
            from_stop=from_stop,
            to_stop=to_stop,
            duration=duration,
            start_time=start,
            end_time=start + timedelta(minutes=duration),
            reliability=self.reliability.get_reliability(route.id),
            route_short_name=route.short_name,
            route_long_name=route.long_name,
            headsign=to_stop.name,
        )

    def _direct_option(
        self,
        route: Route,
        origin_place: Place,
        origin_stop: Stop,
        dest_stop: Stop,
        dest_place: Place,
        now: datetime,
        arrivals: list[Arrival],
    ) -> Itinerary:
        walk_in = self.walking_leg(origin_place, _place(origin_stop), start_time=now)
        wait = self._initial_wait(route, walk_in.duration, arrivals)
        ride = self._transit_leg(
            route, origin_stop, dest_stop, walk_in.end_time + timedelta(minutes=wait), DIRECT_RIDE_MINUTES
        )
        walk_out = self.walking_leg(_place(dest_stop), dest_place, start_time=ride.end_time)
        return self._assemble((walk_in, ride, walk_out), now, wait_time=wait)

    def _transfer_point(self, first: Route, second: Route, origin_stop: Stop, dest_stop: Stop) -> tuple[Stop, Stop] | None:
        """
        Where to leave the first route and board the second: a stop both
        serve (least detour between the two end stops), else the closest pair
        of their stops within MAX_TRANSFER_WALK_METRES.
        """
        first_stops = [s for s in self.index.get_stops_for_route(first.id) if s.id != origin_stop.id]
        second_stops = [s for s in self.index.get_stops_for_route(second.id) if s.id != dest_stop.id]
        if not first_stops or not second_stops:
            return None

        second_ids = {s.id for s in second_stops}
        shared = [s for s in first_stops if s.id in second_ids]
        if shared:
            best = min(
                shared,
                key=lambda s: haversine_metres(origin_stop.lat, origin_stop.lon, s.lat, s.lon)
                + haversine_metres(s.lat, s.lon, dest_stop.lat, dest_stop.lon),
            )
            return best, best

        locator = StopLocator(second_stops)
        best_pair: tuple[Stop, NearbyStop] | None = None
        for stop in first_stops:
            near = locator.nearest(stop.lat, stop.lon, MAX_TRANSFER_WALK_METRES)
            if near is not None and (best_pair is None or near.distance_m < best_pair[1].distance_m):
                best_pair = (stop, near)
        if best_pair is None:
            return None
        return best_pair[0], best_pair[1].stop

    def _midway_stop(self, origin_stop: Stop, dest_stop: Stop) -> Stop | None:
        """Stop nearest the midpoint of the two end stops, other than the ends themselves."""
        mid_lat = (origin_stop.lat + dest_stop.lat) / 2
        mid_lon = (origin_stop.lon + dest_stop.lon) / 2
        radius = haversine_metres(origin_stop.lat, origin_stop.lon, dest_stop.lat, dest_stop.lon) / 2
        for near in self.index.stops_near(mid_lat, mid_lon, radius):
            if near.stop.id not in (origin_stop.id, dest_stop.id):
                return near.stop
        return None

    def _transfer_option(
        self,
        first: Route,
        second: Route,
        origin_place: Place,
        origin_stop: Stop,
        dest_stop: Stop,
        dest_place: Place,
        now: datetime,
        arrivals: list[Arrival],
    ) -> Itinerary | None:
        point = self._transfer_point(first, second, origin_stop, dest_stop)
        if point is None:
            midway = self._midway_stop(origin_stop, dest_stop)
            if midway is None:
                logger.info("Routes %s and %s have no transfer point.", first.id, second.id)
                return None
            logger.info(
                "Routes %s and %s have no known meeting stop; transferring at %s.",
                first.id, second.id, midway.id,
            )
            point = (midway, midway)
        alight, board = point

        walk_in = self.walking_leg(origin_place, _place(origin_stop), start_time=now)
        wait = self._initial_wait(first, walk_in.duration, arrivals)
        first_ride = self._transit_leg(
            first, origin_stop, alight, walk_in.end_time + timedelta(minutes=wait), TRANSFER_FIRST_LEG_MINUTES
        )

        legs: list[Leg] = [walk_in, first_ride]
        transfer_ready = first_ride.end_time
        if board.id != alight.id:
            transfer_walk = self.walking_leg(_place(alight), _place(board), start_time=first_ride.end_time)
            legs.append(transfer_walk)
            transfer_ready = transfer_walk.end_time

        second_ride = self._transit_leg(
            second, board, dest_stop,
            transfer_ready + timedelta(minutes=TRANSFER_WAIT_MINUTES),
            TRANSFER_SECOND_LEG_MINUTES,
        )
        walk_out = self.walking_leg(_place(dest_stop), dest_place, start_time=second_ride.end_time)
        legs += [second_ride, walk_out]
        return self._assemble(tuple(legs), now, wait_time=wait + TRANSFER_WAIT_MINUTES)

    def _assemble(self, legs: tuple[Leg, ...], start: datetime, wait_time: int) -> Itinerary:
        walk_time = sum(leg.duration for leg in legs if isinstance(leg, WalkLeg))
        transit_time = sum(leg.duration for leg in legs if isinstance(leg, TransitLeg))
        end = legs[-1].end_time or start + timedelta(minutes=walk_time + transit_time + wait_time)
        score = self.reliability.score_itinerary(legs)
        return Itinerary(
            id="",
            legs=legs,
            start_time=start,
            end_time=end,
            duration=_minutes(end - start),
            walk_time=walk_time,
            transit_time=transit_time,
            wait_time=wait_time,
            overall_reliability=score.overall_reliability,
            avg_on_time_rate=score.avg_on_time_rate,
            total_expected_delay=score.total_expected_delay,
            transfer_risks=tuple(score.transfer_risks),
        )

    # -- ranking ------------------------------------------------------------

    @staticmethod
    def _rank(options: list[Itinerary], mode: str, max_results: int) -> list[Itinerary]:
        if mode == SAFE:
            ranked = sorted(
                options,
                key=lambda it: (-it.overall_reliability.rank, len(it.transfer_risks), it.duration),
            )
        else:
            ranked = sorted(options, key=lambda it: it.duration)
        ranked = ranked[:max(0, max_results)]
        return [
            replace(it, id=f"itinerary-{i}", rank=i, recommended=(i == 1))
            for i, it in enumerate(ranked, start=1)
        ]

    def rank_itineraries(self, options: list[Itinerary], mode: str = FAST, max_results: int = MAX_ROUTES) -> list[Itinerary]:
        if mode not in MODES:
            raise ValueError(f"mode must be one of {', '.join(MODES)}, got {mode!r}")
        return self._rank(options, mode, max_results)
