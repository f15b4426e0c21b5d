"""
Tests for routing.composer.TripComposer.

Stops are placed along a meridian so walking distances are exact:
METRES_PER_DEGREE metres per degree of latitude.  The geocoder and feed
collaborators are mocks; the ScheduleIndex and ReliabilityEngine are real.
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from feed.models import Arrival
from reliability.engine import ReliabilityEngine
from reliability.models import ReliabilityTier, RiskTier
from routing.composer import TripComposer
from routing.models import (
    LegMode, LocationQuery, LocationUnresolved, NoStopInRange, NoTransitOptions,
    Place, TransitLeg, WalkLeg,
)
from schedule.index import ScheduleIndex
from schedule.models import Stop

METRES_PER_DEGREE = 111_194.93
DEPART = datetime(2026, 3, 10, 19, 0, tzinfo=timezone.utc)  # 12:00 PDT, Tuesday
LON = -122.3300

ORIGIN = (47.6000, LON)
DESTINATION = (47.7000, LON)


def north(lat, metres):
    return round(lat + metres / METRES_PER_DEGREE, 7)


ROUTES_CSV = """\
route_id,agency_id,route_short_name,route_long_name,route_type
100275,1,8,Seattle Center - Mount Baker,3
100479,1,E Line,Aurora Village - Downtown Seattle,3
100002,1,2,Madrona Park - Downtown Seattle,3
100005,1,5,Shoreline - Downtown Seattle,3
"""

TRIPS_CSV = """\
route_id,service_id,trip_id
100275,WKD,t1
100479,WKD,t2
100002,WKD,t3
100005,WKD,t4
"""


def _stops_csv(*stops):
    lines = ["stop_id,stop_code,stop_name,stop_lat,stop_lon"]
    lines += [f"{sid},{sid},{name},{lat},{lon}" for sid, name, lat, lon in stops]
    return "\n".join(lines) + "\n"


def _stop_times_csv(*rows):
    lines = ["trip_id,stop_id,stop_sequence"]
    lines += [f"{trip},{stop},{seq}" for trip, stop, seq in rows]
    return "\n".join(lines) + "\n"


def direct_index():
    """S1 150 m north of ORIGIN, S2 200 m south of DESTINATION; routes 8 and E Line serve both."""
    index = ScheduleIndex()
    index.load(
        ROUTES_CSV,
        _stops_csv(
            ("S1", "Pine St & 3rd Ave", north(ORIGIN[0], 150), LON),
            ("S2", "Aurora Ave N & N 46th St", north(DESTINATION[0], -200), LON),
        ),
        TRIPS_CSV,
        _stop_times_csv(("t1", "S1", 1), ("t1", "S2", 2), ("t2", "S1", 1), ("t2", "S2", 2)),
    )
    return index


def transfer_index(second_route_start_lon):
    """
    Route 2 runs T1 → TX, route 5 runs TY → T4.  TY sits at
    second_route_start_lon on TX's latitude; at LON it is the same place as TX.
    """
    t1_lat, tx_lat, t4_lat = north(47.5000, 100), 47.5300, north(47.5600, -100)
    stops = [
        ("T1", "Rainier Ave S & S Genesee St", t1_lat, LON),
        ("TX", "Jackson St & 12th Ave S", tx_lat, LON),
        ("T4", "Madison St & 23rd Ave", t4_lat, LON),
    ]
    if second_route_start_lon == LON:
        stop_times = [("t3", "T1", 1), ("t3", "TX", 2), ("t4", "TX", 1), ("t4", "T4", 2)]
    else:
        stops.append(("TY", "Jackson St & 14th Ave S", tx_lat, second_route_start_lon))
        stop_times = [("t3", "T1", 1), ("t3", "TX", 2), ("t4", "TY", 1), ("t4", "T4", 2)]

    index = ScheduleIndex()
    index.load(ROUTES_CSV, _stops_csv(*stops), TRIPS_CSV, _stop_times_csv(*stop_times))
    return index


def composer(index, feed=None, geocoder=None):
    return TripComposer(index, ReliabilityEngine(), feed=feed, geocoder=geocoder, clock=lambda: DEPART)


def at(lat, lon=LON):
    return LocationQuery(lat=lat, lon=lon)


def _modes(itinerary):
    return [leg.mode for leg in itinerary.legs]


# ---------------------------------------------------------------------------
# resolve_location
# ---------------------------------------------------------------------------

class TestResolveLocation:
    @pytest.mark.anyio
    async def test_coordinates_with_reverse_geocode(self):
        geocoder = MagicMock()
        geocoder.reverse_geocode = AsyncMock(return_value="1500 3rd Ave, Seattle")
        resolved = await composer(direct_index(), geocoder=geocoder).resolve_location(at(47.6))

        assert (resolved.lat, resolved.lon) == (47.6, LON)
        assert resolved.address == "1500 3rd Ave, Seattle"

    @pytest.mark.anyio
    async def test_coordinates_keep_given_address(self):
        geocoder = MagicMock()
        geocoder.reverse_geocode = AsyncMock()
        resolved = await composer(direct_index(), geocoder=geocoder).resolve_location(
            LocationQuery(lat=47.6, lon=LON, address="Home")
        )
        assert resolved.address == "Home"
        geocoder.reverse_geocode.assert_not_awaited()

    @pytest.mark.anyio
    async def test_stop_record(self):
        stop = Stop(id="X", name="Westlake Station", lat=47.611, lon=-122.337)
        resolved = await composer(direct_index()).resolve_location(LocationQuery(stop=stop))
        assert resolved.address == "Westlake Station"

    @pytest.mark.anyio
    async def test_stop_id(self):
        resolved = await composer(direct_index()).resolve_location(LocationQuery(stop_id="S1"))
        assert resolved.address == "Pine St & 3rd Ave"

    @pytest.mark.anyio
    async def test_unknown_stop_id_falls_through_to_address(self):
        geocoder = MagicMock()
        geocoder.geocode = AsyncMock(return_value=MagicMock(lat=47.62, lon=-122.35, formatted_address="Seattle Center"))
        resolved = await composer(direct_index(), geocoder=geocoder).resolve_location(
            LocationQuery(stop_id="nope", address="305 Harrison St")
        )
        assert resolved.address == "Seattle Center"
        geocoder.geocode.assert_awaited_once_with("305 Harrison St")

    @pytest.mark.anyio
    async def test_unresolvable(self):
        assert await composer(direct_index()).resolve_location(LocationQuery(address="somewhere")) is None


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

class TestHelpers:
    def test_find_nearest_stop(self):
        near = composer(direct_index()).find_nearest_stop(*ORIGIN, 1000)
        assert near.stop.id == "S1"
        assert near.distance_m == pytest.approx(150, abs=0.5)

    def test_find_nearest_stop_out_of_range(self):
        assert composer(direct_index()).find_nearest_stop(*ORIGIN, 100) is None

    def test_walking_leg(self):
        leg = TripComposer.walking_leg(Place(*ORIGIN), Place(north(ORIGIN[0], 200), LON), start_time=DEPART)
        assert leg.distance_m == 200
        assert leg.duration == 3  # ceil(200 / 83.4)
        assert leg.end_time == DEPART + timedelta(minutes=3)
        assert leg.mode is LegMode.WALK

    def test_walking_leg_without_start(self):
        leg = TripComposer.walking_leg(Place(*ORIGIN), Place(*ORIGIN))
        assert leg.duration == 0
        assert leg.end_time is None

    def test_search_stops_prefix_first(self):
        index = ScheduleIndex()
        index.load(
            ROUTES_CSV,
            _stops_csv(
                ("1", "3rd Ave & Pike St", 47.61, LON),
                ("2", "Pike St & Broadway Ave", 47.61, LON),
                ("3", "Pike Pl", 47.61, LON),
                ("4", "Union St & 5th Ave", 47.61, LON),
            ),
            None,
            None,
        )
        results = composer(index).search_stops("pike")
        assert [s.name for s in results] == ["Pike Pl", "Pike St & Broadway Ave", "3rd Ave & Pike St"]
        assert len(composer(index).search_stops("pike", limit=1)) == 1


# ---------------------------------------------------------------------------
# plan_trip: direct routes
# ---------------------------------------------------------------------------

class TestDirectTrips:
    @pytest.mark.anyio
    async def test_walk_ride_walk(self):
        itineraries = await composer(direct_index()).plan_trip(at(ORIGIN[0]), at(DESTINATION[0]))

        assert len(itineraries) == 2
        best = itineraries[0]
        assert best.recommended
        assert best.rank == 1
        assert best.id == "itinerary-1"
        assert _modes(best) == [LegMode.WALK, LegMode.TRANSIT, LegMode.WALK]

        walk_in, ride, walk_out = best.legs
        assert walk_in.distance_m == 150
        assert walk_out.distance_m == 200
        assert (ride.from_stop.id, ride.to_stop.id) == ("S1", "S2")
        assert ride.route_id in {"100275", "100479"}
        assert not itineraries[1].recommended

    @pytest.mark.anyio
    async def test_timing(self):
        best = (await composer(direct_index()).plan_trip(at(ORIGIN[0]), at(DESTINATION[0])))[0]
        walk_in, ride, walk_out = best.legs

        # 2 min walk, 5 min default wait, 30 min ride, 3 min walk
        assert ride.start_time == DEPART + timedelta(minutes=7)
        assert best.start_time == DEPART
        assert best.end_time == walk_out.end_time
        assert best.duration == 40
        assert (best.walk_time, best.transit_time, best.wait_time) == (5, 30, 5)
        assert best.transfers == 0
        assert best.transfer_risks == ()

    @pytest.mark.anyio
    async def test_safe_mode_prefers_reliable_route(self):
        itineraries = await composer(direct_index()).plan_trip(at(ORIGIN[0]), at(DESTINATION[0]), mode="safe")

        assert itineraries[0].legs[1].route_id == "100479"
        assert itineraries[0].overall_reliability is ReliabilityTier.HIGH
        assert itineraries[1].legs[1].route_id == "100275"
        assert itineraries[1].overall_reliability is ReliabilityTier.LOW

    @pytest.mark.anyio
    async def test_leg_carries_route_details(self):
        itineraries = await composer(direct_index()).plan_trip(at(ORIGIN[0]), at(DESTINATION[0]), mode="safe")
        ride = itineraries[0].legs[1]
        assert ride.route_short_name == "E Line"
        assert ride.headsign == "Aurora Ave N & N 46th St"
        assert ride.reliability.on_time_rate == 0.85

    @pytest.mark.anyio
    async def test_max_results(self):
        itineraries = await composer(direct_index()).plan_trip(at(ORIGIN[0]), at(DESTINATION[0]), max_results=1)
        assert len(itineraries) == 1
        assert itineraries[0].recommended

    @pytest.mark.anyio
    async def test_depart_at_overrides_clock(self):
        depart = DEPART + timedelta(hours=2)
        best = (await composer(direct_index()).plan_trip(at(ORIGIN[0]), at(DESTINATION[0]), depart_at=depart))[0]
        assert best.start_time == depart

    @pytest.mark.anyio
    async def test_live_arrival_shortens_wait(self):
        feed = MagicMock()
        feed.is_configured = True
        feed.get_arrivals = AsyncMock(return_value=[Arrival(
            route_id="1_100479",
            trip_id="1_t2",
            scheduled_time=DEPART + timedelta(minutes=4),
            predicted_time=DEPART + timedelta(minutes=4),
            is_predicted=True,
            fetched_at=DEPART,
        )])
        itineraries = await composer(direct_index(), feed=feed).plan_trip(at(ORIGIN[0]), at(DESTINATION[0]))

        feed.get_arrivals.assert_awaited_once_with("S1")
        best = itineraries[0]
        assert best.legs[1].route_id == "100479"
        assert best.wait_time == 2  # bus in 4 min, 2 min walk to the stop
        assert best.duration == 37
        assert itineraries[1].wait_time == 5

    @pytest.mark.anyio
    async def test_unconfigured_feed_not_called(self):
        feed = MagicMock()
        feed.is_configured = False
        feed.get_arrivals = AsyncMock()
        await composer(direct_index(), feed=feed).plan_trip(at(ORIGIN[0]), at(DESTINATION[0]))
        feed.get_arrivals.assert_not_awaited()

    @pytest.mark.anyio
    async def test_same_stop_is_walk_only(self):
        itineraries = await composer(direct_index()).plan_trip(at(ORIGIN[0]), at(north(ORIGIN[0], 300)))

        assert len(itineraries) == 1
        (walk,) = itineraries[0].legs
        assert isinstance(walk, WalkLeg)
        assert walk.distance_m == 300
        assert itineraries[0].recommended
        assert itineraries[0].overall_reliability is ReliabilityTier.HIGH


# ---------------------------------------------------------------------------
# plan_trip: transfers
# ---------------------------------------------------------------------------

class TestTransferTrips:
    @pytest.mark.anyio
    async def test_shared_stop_transfer(self):
        itineraries = await composer(transfer_index(LON)).plan_trip(at(47.5000), at(47.5600))

        (trip,) = itineraries
        assert _modes(trip) == [LegMode.WALK, LegMode.TRANSIT, LegMode.TRANSIT, LegMode.WALK]
        first, second = trip.transit_legs
        assert (first.route_id, first.from_stop.id, first.to_stop.id) == ("100002", "T1", "TX")
        assert (second.route_id, second.from_stop.id, second.to_stop.id) == ("100005", "TX", "T4")
        assert second.start_time == first.end_time + timedelta(minutes=5)
        assert trip.transfers == 1
        assert trip.wait_time == 10

    @pytest.mark.anyio
    async def test_transfer_risk_attached(self):
        (trip,) = await composer(transfer_index(LON)).plan_trip(at(47.5000), at(47.5600))
        (risk,) = trip.transfer_risks
        assert (risk.from_leg_index, risk.to_leg_index) == (1, 2)
        # 5 min connection, 2 min assumed walk, route 2 averages 4 min late
        assert risk.buffer_minutes == 3
        assert risk.adjusted_buffer_minutes == -1
        assert risk.risk_tier is RiskTier.HIGH

    @pytest.mark.anyio
    async def test_walking_transfer_between_nearby_stops(self):
        # ~110 m east of TX
        itineraries = await composer(transfer_index(LON + 0.00147)).plan_trip(at(47.5000), at(47.5600))

        (trip,) = itineraries
        assert _modes(trip) == [LegMode.WALK, LegMode.TRANSIT, LegMode.WALK, LegMode.TRANSIT, LegMode.WALK]
        first, transfer_walk, second = trip.legs[1:4]
        assert first.to_stop.id == "TX"
        assert second.from_stop.id == "TY"
        assert transfer_walk.origin.name == "Jackson St & 12th Ave S"
        assert transfer_walk.destination.name == "Jackson St & 14th Ave S"
        assert 100 < transfer_walk.distance_m < 120
        assert second.start_time == transfer_walk.end_time + timedelta(minutes=5)
        assert trip.transfer_risks[0].walking_minutes == transfer_walk.duration

    @pytest.mark.anyio
    async def test_routes_that_never_meet_transfer_midway(self):
        # TY is ~9.8 km east of TX, far beyond a transfer walk
        itineraries = await composer(transfer_index(-122.2000)).plan_trip(at(47.5000), at(47.5600))

        (trip,) = itineraries
        assert _modes(trip) == [LegMode.WALK, LegMode.TRANSIT, LegMode.TRANSIT, LegMode.WALK]
        first, second = trip.transit_legs
        assert (first.route_id, first.from_stop.id, first.to_stop.id) == ("100002", "T1", "TX")
        assert (second.route_id, second.from_stop.id, second.to_stop.id) == ("100005", "TX", "T4")
        assert second.start_time == first.end_time + timedelta(minutes=5)
        assert len(trip.transfer_risks) == 1

    @pytest.mark.anyio
    async def test_transfer_without_stop_times(self):
        routes = {"T1": ["1_100002"], "T4": ["1_100005"]}
        fallback = AsyncMock(side_effect=lambda stop_id: routes.get(stop_id, []))
        index = ScheduleIndex(route_fallback=fallback)
        index.load(
            ROUTES_CSV,
            _stops_csv(
                ("T1", "Rainier Ave S & S Genesee St", north(47.5000, 100), LON),
                ("TX", "Jackson St & 12th Ave S", 47.5300, LON),
                ("T4", "Madison St & 23rd Ave", north(47.5600, -100), LON),
            ),
            TRIPS_CSV,
            None,
        )

        (trip,) = await composer(index).plan_trip(at(47.5000), at(47.5600))

        first, second = trip.transit_legs
        assert (first.route_id, first.to_stop.id) == ("100002", "TX")
        assert (second.route_id, second.from_stop.id, second.to_stop.id) == ("100005", "TX", "T4")

    @pytest.mark.anyio
    async def test_no_stop_between_the_ends(self):
        index = ScheduleIndex(route_fallback=AsyncMock(side_effect=lambda stop_id: {
            "T1": ["1_100002"], "T4": ["1_100005"],
        }[stop_id]))
        index.load(
            ROUTES_CSV,
            _stops_csv(
                ("T1", "Rainier Ave S & S Genesee St", north(47.5000, 100), LON),
                ("T4", "Madison St & 23rd Ave", north(47.5600, -100), LON),
            ),
            TRIPS_CSV,
            None,
        )
        with pytest.raises(NoTransitOptions) as exc_info:
            await composer(index).plan_trip(at(47.5000), at(47.5600))
        assert exc_info.value.origin_stop_id == "T1"
        assert exc_info.value.destination_stop_id == "T4"

    @pytest.mark.anyio
    async def test_side_without_routes(self):
        index = ScheduleIndex(route_fallback=AsyncMock(side_effect=lambda stop_id: {
            "T1": ["1_100002"], "T4": [],
        }[stop_id]))
        index.load(
            ROUTES_CSV,
            _stops_csv(
                ("T1", "Rainier Ave S & S Genesee St", north(47.5000, 100), LON),
                ("TX", "Jackson St & 12th Ave S", 47.5300, LON),
                ("T4", "Madison St & 23rd Ave", north(47.5600, -100), LON),
            ),
            TRIPS_CSV,
            None,
        )
        with pytest.raises(NoTransitOptions):
            await composer(index).plan_trip(at(47.5000), at(47.5600))


# ---------------------------------------------------------------------------
# plan_trip: errors
# ---------------------------------------------------------------------------

class TestPlanningErrors:
    @pytest.mark.anyio
    async def test_unknown_mode(self):
        with pytest.raises(ValueError):
            await composer(direct_index()).plan_trip(at(ORIGIN[0]), at(DESTINATION[0]), mode="scenic")

    @pytest.mark.anyio
    async def test_unresolved_origin(self):
        with pytest.raises(LocationUnresolved) as exc_info:
            await composer(direct_index()).plan_trip(LocationQuery(address="nowhere"), at(DESTINATION[0]))
        assert exc_info.value.role == "origin"

    @pytest.mark.anyio
    async def test_unresolved_destination(self):
        geocoder = MagicMock()
        geocoder.geocode = AsyncMock(return_value=None)
        geocoder.reverse_geocode = AsyncMock(return_value=None)
        with pytest.raises(LocationUnresolved) as exc_info:
            await composer(direct_index(), geocoder=geocoder).plan_trip(
                at(ORIGIN[0]), LocationQuery(address="742 Evergreen Terrace")
            )
        assert exc_info.value.role == "destination"

    @pytest.mark.anyio
    async def test_no_stop_in_range(self):
        with pytest.raises(NoStopInRange) as exc_info:
            await composer(direct_index()).plan_trip(at(ORIGIN[0]), at(DESTINATION[0]), max_walking_distance=100)
        assert exc_info.value.role == "origin"
        assert exc_info.value.max_distance == 100

    @pytest.mark.anyio
    async def test_no_routes_at_stops(self):
        index = ScheduleIndex()
        index.load(
            ROUTES_CSV,
            _stops_csv(("S1", "A", north(ORIGIN[0], 150), LON), ("S2", "B", north(DESTINATION[0], -200), LON)),
            TRIPS_CSV,
            _stop_times_csv(("t1", "S1", 1), ("t2", "S2", 1)),
        )
        with pytest.raises(NoTransitOptions):
            await composer(index).plan_trip(at(ORIGIN[0]), at(DESTINATION[0]))


# ---------------------------------------------------------------------------
# rank_itineraries
# ---------------------------------------------------------------------------

class TestRanking:
    @pytest.mark.anyio
    async def test_rerank_fast_orders_by_duration(self):
        c = composer(direct_index())
        safe = await c.plan_trip(at(ORIGIN[0]), at(DESTINATION[0]), mode="safe")
        ranked = c.rank_itineraries(list(reversed(safe)), mode="fast")
        assert [it.rank for it in ranked] == [1, 2]
        assert ranked[0].duration <= ranked[1].duration
        assert sum(it.recommended for it in ranked) == 1

    def test_rerank_unknown_mode(self):
        with pytest.raises(ValueError):
            composer(direct_index()).rank_itineraries([], mode="scenic")

    @pytest.mark.anyio
    async def test_every_transit_leg_fully_populated(self):
        itineraries = await composer(transfer_index(LON + 0.00147)).plan_trip(at(47.5000), at(47.5600))
        for leg in itineraries[0].legs:
            if isinstance(leg, TransitLeg):
                assert leg.from_stop and leg.to_stop
                assert leg.end_time > leg.start_time
            else:
                assert leg.start_time is not None and leg.end_time is not None
