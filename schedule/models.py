"""
Normalised GTFS records held by the ScheduleIndex.

Every record is produced once at ingestion with fixed field names; nothing
downstream reads raw CSV column names.  Records are frozen; a schedule
refresh replaces whole tables rather than mutating rows.
"""

from dataclasses import dataclass, field


@dataclass(frozen=True)
class Route:
    id: str
    short_name: str = ""
    long_name: str = ""
    type: int = 3  # 3 = bus
    agency_id: str = ""

    @property
    def display_name(self) -> str:
        return self.short_name or self.long_name or self.id


@dataclass(frozen=True)
class Stop:
    id: str
    name: str
    lat: float
    lon: float
    code: str = ""
    wheelchair_boarding: int = 0  # 0 = unknown, 1 = accessible, 2 = not accessible


@dataclass(frozen=True)
class Trip:
    id: str
    route_id: str
    service_id: str = ""
    headsign: str = ""
    direction_id: int = 0


@dataclass(frozen=True)
class StopTime:
    trip_id: str
    stop_id: str
    sequence: int


@dataclass
class LoadReport:
    """Outcome of ScheduleIndex.load().

    skipped:       table name → number of malformed rows dropped
    failed_tables: tables that could not be parsed at all (installed empty)
    row_counts:    table name → rows installed
    """
    skipped: dict[str, int] = field(default_factory=dict)
    failed_tables: list[str] = field(default_factory=list)
    row_counts: dict[str, int] = field(default_factory=dict)

    @property
    def partial_failure(self) -> bool:
        return bool(self.failed_tables)

    @property
    def ok(self) -> bool:
        return not self.failed_tables

    @property
    def total_skipped(self) -> int:
        return sum(self.skipped.values())
