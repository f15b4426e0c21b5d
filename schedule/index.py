"""
In-memory GTFS schedule index.

Holds the four static tables (routes, stops, trips, stop_times) and answers
the lookups the rest of the system needs:

  get_route_by_id / get_stop_by_id   dict lookups
  search_stops                       name/code substring match, table order
  get_stops_for_route                route → trips → stop_times → stops
  get_routes_for_stop                the inverse, with a live-feed fallback
                                     when stop_times was not loaded
  stops_near                         bisect latitude index + haversine

Loading never raises.  Each table is parsed independently with pandas;
malformed rows are dropped and counted, and a table that cannot be parsed at
all is installed empty and named in the returned LoadReport.  A load replaces
every table wholesale, so concurrent readers see either the old or the new
schedule, never a mix.
"""

import io
import logging
from dataclasses import asdict
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Iterable

import networkx as nx
import pandas as pd

from graph.builder import build_service_graph, route_ids_for_stop, stop_ids_for_route
from graph.spatial import NearbyStop, StopLocator
from schedule.ids import to_schedule_id
from schedule.models import LoadReport, Route, Stop, StopTime, Trip

logger = logging.getLogger(__name__)

RouteFallback = Callable[[str], Awaitable[Iterable[str]]]

TABLES = ("routes", "stops", "trips", "stop_times")

_REQUIRED_COLUMNS: dict[str, tuple[str, ...]] = {
    "routes": ("route_id",),
    "stops": ("stop_id", "stop_lat", "stop_lon"),
    "trips": ("trip_id", "route_id"),
    "stop_times": ("trip_id", "stop_id", "stop_sequence"),
}
_NUMERIC_COLUMNS: dict[str, tuple[str, ...]] = {
    "routes": (),
    "stops": ("stop_lat", "stop_lon"),
    "trips": (),
    "stop_times": ("stop_sequence",),
}
# Rows repeating these keys are treated as malformed (first occurrence wins)
_UNIQUE_KEYS: dict[str, list[str]] = {
    "routes": ["route_id"],
    "stops": ["stop_id"],
    "trips": ["trip_id"],
    "stop_times": ["trip_id", "sequence"],
}

_STOP_TIME_COLUMNS = ["trip_id", "stop_id", "sequence"]


def _empty_stop_times() -> pd.DataFrame:
    return pd.DataFrame({
        "trip_id": pd.Series(dtype=str),
        "stop_id": pd.Series(dtype=str),
        "sequence": pd.Series(dtype="int64"),
    })


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------

def _read_table(name: str, text: str) -> tuple[pd.DataFrame, int]:
    """
    Parse one GTFS table and return (valid rows, number of malformed rows).

    Raises on whole-table failures (empty input, unreadable CSV, a required
    column missing from the header); the caller turns that into a failed table.
    """
    bad_lines = 0

    def _count_bad_line(fields: list[str]) -> None:
        nonlocal bad_lines
        bad_lines += 1
        return None

    df = pd.read_csv(
        io.StringIO(text),
        dtype=str,
        keep_default_na=False,
        engine="python",
        on_bad_lines=_count_bad_line,
    )
    # Short rows are padded with NaN by the python engine
    df = df.fillna("")
    df.columns = [str(c).strip().lstrip("\ufeff") for c in df.columns]
    for col in df.columns:
        df[col] = df[col].astype(str).str.strip()

    missing = [c for c in _REQUIRED_COLUMNS[name] if c not in df.columns]
    if missing:
        raise ValueError(f"{name}.txt is missing required columns: {', '.join(missing)}")

    valid = pd.Series(True, index=df.index)
    for col in _REQUIRED_COLUMNS[name]:
        valid &= df[col] != ""
    for col in _NUMERIC_COLUMNS[name]:
        numbers = pd.to_numeric(df[col], errors="coerce")
        valid &= numbers.notna()
        if col == "stop_sequence":
            valid &= numbers == numbers.round()

    if name == "routes" and "route_type" in df.columns:
        route_type = pd.to_numeric(df["route_type"], errors="coerce")
        valid &= (df["route_type"] == "") | route_type.notna()

    rejected = int((~valid).sum())
    df = df[valid].copy()

    if name == "stop_times":
        df["sequence"] = pd.to_numeric(df["stop_sequence"]).astype("int64")

    duplicates = df.duplicated(subset=_UNIQUE_KEYS[name], keep="first")
    rejected += int(duplicates.sum())
    df = df[~duplicates]

    return df, bad_lines + rejected


def _int_field(value: str, default: int = 0) -> int:
    if not value:
        return default
    try:
        return int(float(value))
    except ValueError:
        return default


def _routes_from_frame(df: pd.DataFrame) -> dict[str, Route]:
    routes: dict[str, Route] = {}
    for row in df.to_dict("records"):
        routes[row["route_id"]] = Route(
            id=row["route_id"],
            short_name=row.get("route_short_name", ""),
            long_name=row.get("route_long_name", ""),
            type=_int_field(row.get("route_type", ""), default=3),
            agency_id=row.get("agency_id", ""),
        )
    return routes


def _stops_from_frame(df: pd.DataFrame) -> dict[str, Stop]:
    stops: dict[str, Stop] = {}
    for row in df.to_dict("records"):
        stops[row["stop_id"]] = Stop(
            id=row["stop_id"],
            name=row.get("stop_name", ""),
            lat=float(row["stop_lat"]),
            lon=float(row["stop_lon"]),
            code=row.get("stop_code", ""),
            wheelchair_boarding=_int_field(row.get("wheelchair_boarding", "")),
        )
    return stops


def _trips_from_frame(df: pd.DataFrame) -> dict[str, Trip]:
    trips: dict[str, Trip] = {}
    for row in df.to_dict("records"):
        trips[row["trip_id"]] = Trip(
            id=row["trip_id"],
            route_id=row["route_id"],
            service_id=row.get("service_id", ""),
            headsign=row.get("trip_headsign", ""),
            direction_id=_int_field(row.get("direction_id", "")),
        )
    return trips


def _stop_times_from_frame(df: pd.DataFrame) -> pd.DataFrame:
    out = df[_STOP_TIME_COLUMNS].sort_values(["trip_id", "sequence"], kind="stable")
    return out.reset_index(drop=True)


# ---------------------------------------------------------------------------
# Index
# ---------------------------------------------------------------------------

class ScheduleIndex:
    """
    Queryable in-memory schedule.

    route_fallback is awaited by get_routes_for_stop when no stop times are
    loaded; it takes a schedule-format stop id and returns route ids.
    """

    def __init__(
        self,
        route_fallback: RouteFallback | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.route_fallback = route_fallback
        self._clock = clock
        self._routes: dict[str, Route] = {}
        self._stops: dict[str, Stop] = {}
        self._trips: dict[str, Trip] = {}
        self._stop_times: pd.DataFrame = _empty_stop_times()
        self._graph: nx.Graph = nx.Graph()
        self._locator = StopLocator([])
        self.loaded_at: datetime | None = None

    # -- loading ------------------------------------------------------------

    def load(
        self,
        routes_csv: str | None,
        stops_csv: str | None,
        trips_csv: str | None,
        stop_times_csv: str | None,
    ) -> LoadReport:
        """
        Parse the four tables and install them, replacing the current schedule.

        A table passed as None is installed empty without being counted as a
        failure (stop_times is routinely left out for size).
        """
        report = LoadReport()
        frames: dict[str, pd.DataFrame | None] = {}

        for name, text in zip(TABLES, (routes_csv, stops_csv, trips_csv, stop_times_csv)):
            if text is None:
                frames[name] = None
                report.skipped[name] = 0
                continue
            try:
                df, skipped = _read_table(name, text)
            except (ValueError, pd.errors.ParserError, pd.errors.EmptyDataError, UnicodeError) as exc:
                logger.warning("Could not parse %s.txt, installing it empty: %s", name, exc)
                report.failed_tables.append(name)
                report.skipped[name] = 0
                frames[name] = None
                continue
            if skipped:
                logger.warning("Skipped %d malformed rows in %s.txt.", skipped, name)
            report.skipped[name] = skipped
            frames[name] = df

        routes = _routes_from_frame(frames["routes"]) if frames["routes"] is not None else {}
        stops = _stops_from_frame(frames["stops"]) if frames["stops"] is not None else {}
        trips = _trips_from_frame(frames["trips"]) if frames["trips"] is not None else {}
        stop_times = (
            _stop_times_from_frame(frames["stop_times"])
            if frames["stop_times"] is not None
            else _empty_stop_times()
        )

        self._install(routes, stops, trips, stop_times)

        report.row_counts = self.counts()
        logger.info(
            "Schedule loaded: %d routes, %d stops, %d trips, %d stop times (%d rows skipped%s).",
            len(routes), len(stops), len(trips), len(stop_times), report.total_skipped,
            f", failed: {', '.join(report.failed_tables)}" if report.failed_tables else "",
        )
        return report

    def _install(
        self,
        routes: dict[str, Route],
        stops: dict[str, Stop],
        trips: dict[str, Trip],
        stop_times: pd.DataFrame,
    ) -> None:
        trip_frame = pd.DataFrame(
            {"trip_id": [t.id for t in trips.values()], "route_id": [t.route_id for t in trips.values()]}
        )
        graph = build_service_graph(trip_frame, stop_times)
        locator = StopLocator(stops.values())

        self._routes = routes
        self._stops = stops
        self._trips = trips
        self._stop_times = stop_times
        self._graph = graph
        self._locator = locator
        self.loaded_at = self._clock()

    # -- persistence records ------------------------------------------------

    def to_records(self, include_stop_times: bool = False) -> dict[str, list[dict[str, Any]]]:
        records: dict[str, list[dict[str, Any]]] = {
            "routes": [asdict(r) for r in self._routes.values()],
            "stops": [asdict(s) for s in self._stops.values()],
            "trips": [asdict(t) for t in self._trips.values()],
        }
        if include_stop_times:
            records["stop_times"] = self._stop_times.to_dict("records")
        return records

    def from_records(
        self,
        records: dict[str, list[dict[str, Any]]],
        loaded_at: datetime | None = None,
    ) -> LoadReport:
        """
        Install tables previously produced by to_records().  Missing tables load
        empty.  loaded_at carries the original download time across restarts.
        """
        report = LoadReport()

        def build(name: str, factory: Callable[..., Any]) -> list[Any]:
            built, skipped = [], 0
            for raw in records.get(name) or []:
                try:
                    built.append(factory(**raw))
                except (TypeError, ValueError):
                    skipped += 1
            report.skipped[name] = skipped
            return built

        routes = {r.id: r for r in build("routes", Route)}
        stops = {s.id: s for s in build("stops", Stop)}
        trips = {t.id: t for t in build("trips", Trip)}
        stop_time_rows = build("stop_times", StopTime)
        if stop_time_rows:
            stop_times = _stop_times_from_frame(pd.DataFrame(
                {
                    "trip_id": [st.trip_id for st in stop_time_rows],
                    "stop_id": [st.stop_id for st in stop_time_rows],
                    "sequence": pd.Series([int(st.sequence) for st in stop_time_rows], dtype="int64"),
                }
            ))
        else:
            stop_times = _empty_stop_times()

        self._install(routes, stops, trips, stop_times)
        if loaded_at is not None:
            self.loaded_at = loaded_at
        report.row_counts = self.counts()
        return report

    # -- lookups ------------------------------------------------------------

    @property
    def routes(self) -> list[Route]:
        return list(self._routes.values())

    @property
    def stops(self) -> list[Stop]:
        return list(self._stops.values())

    @property
    def has_stop_times(self) -> bool:
        return not self._stop_times.empty

    def counts(self) -> dict[str, int]:
        return {
            "routes": len(self._routes),
            "stops": len(self._stops),
            "trips": len(self._trips),
            "stop_times": len(self._stop_times),
        }

    def get_route_by_id(self, route_id: str) -> Route | None:
        return self._routes.get(route_id)

    def get_stop_by_id(self, stop_id: str) -> Stop | None:
        return self._stops.get(stop_id)

    def get_trip_by_id(self, trip_id: str) -> Trip | None:
        return self._trips.get(trip_id)

    def search_stops(self, query: str) -> list[Stop]:
        """Stops whose name contains query (any case) or whose code contains it, in table order."""
        query = (query or "").strip()
        if not query:
            return []
        needle = query.lower()
        return [
            stop for stop in self._stops.values()
            if needle in stop.name.lower() or (stop.code and query in stop.code)
        ]

    def stops_near(self, lat: float, lon: float, radius_m: float) -> list[NearbyStop]:
        return self._locator.within(lat, lon, radius_m)

    def stop_times_for_trip(self, trip_id: str) -> list[StopTime]:
        if self._stop_times.empty:
            return []
        rows = self._stop_times[self._stop_times["trip_id"] == trip_id]
        return [
            StopTime(trip_id=r.trip_id, stop_id=r.stop_id, sequence=int(r.sequence))
            for r in rows.itertuples(index=False)
        ]

    def get_stops_for_route(self, route_id: str) -> list[Stop]:
        """Distinct stops served by any trip of the route."""
        return [
            self._stops[stop_id]
            for stop_id in stop_ids_for_route(self._graph, route_id)
            if stop_id in self._stops
        ]

    async def get_routes_for_stop(self, stop_id: str) -> list[Route]:
        """
        Distinct routes whose trips call at the stop.

        Without stop times the schedule cannot answer, so the live-feed
        fallback is awaited once and its route ids mapped to Route records.
        Ids the schedule does not know become minimal records.
        """
        if self.has_stop_times:
            return [
                self._routes.get(route_id) or Route(id=route_id)
                for route_id in route_ids_for_stop(self._graph, stop_id)
            ]

        if self.route_fallback is None:
            logger.warning("No stop times loaded and no route fallback configured; stop %s has no routes.", stop_id)
            return []

        route_ids = await self.route_fallback(stop_id)
        routes: list[Route] = []
        seen: set[str] = set()
        for raw_id in route_ids:
            route_id = to_schedule_id(raw_id)
            if not route_id or route_id in seen:
                continue
            seen.add(route_id)
            routes.append(self._routes.get(route_id) or Route(id=route_id))
        logger.debug("Route fallback for stop %s returned %d routes.", stop_id, len(routes))
        return routes

    def needs_refresh(self, last_load_timestamp: datetime | None, max_age_seconds: float) -> bool:
        if last_load_timestamp is None:
            return True
        if last_load_timestamp.tzinfo is None:
            last_load_timestamp = last_load_timestamp.replace(tzinfo=timezone.utc)
        now = self._clock()
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        return (now - last_load_timestamp).total_seconds() > max_age_seconds
