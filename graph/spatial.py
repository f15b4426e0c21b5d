"""
Distance helpers and a latitude-sorted stop index for radius queries.

StopLocator uses a latitude-sorted list with binary search to cut the
candidate set to the stops inside the query's lat/lon bounding box, then
verifies each candidate with the haversine distance.

Δlat is constant globally (1° ≈ 111 320 m).
Δlon is computed per query because it shrinks toward the poles:
  Δlon = radius / (111 320 · cos(lat)).
"""

import bisect
import math
from dataclasses import dataclass
from typing import Iterable

from schedule.models import Stop

EARTH_RADIUS_M = 6_371_000
METRES_PER_DEGREE_LAT = 111_320


def haversine_metres(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance between two (lat, lon) points in metres."""
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlambda = math.radians(lon2 - lon1)
    a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlambda / 2) ** 2
    return 2 * EARTH_RADIUS_M * math.atan2(math.sqrt(a), math.sqrt(1 - a))


@dataclass(frozen=True)
class NearbyStop:
    stop: Stop
    distance_m: float


class StopLocator:
    """Radius search over a fixed set of stops."""

    __slots__ = ("_by_lat", "_lat_values")

    def __init__(self, stops: Iterable[Stop]) -> None:
        self._by_lat = sorted(stops, key=lambda s: s.lat)
        self._lat_values = [s.lat for s in self._by_lat]

    def __len__(self) -> int:
        return len(self._by_lat)

    def within(self, lat: float, lon: float, radius_m: float) -> list[NearbyStop]:
        """All stops within radius_m of (lat, lon), nearest first."""
        if not self._by_lat or radius_m < 0:
            return []

        delta_lat = radius_m / METRES_PER_DEGREE_LAT
        cos_lat = math.cos(math.radians(lat))
        delta_lon = radius_m / (METRES_PER_DEGREE_LAT * cos_lat) if cos_lat > 1e-9 else 360.0

        lo = bisect.bisect_left(self._lat_values, lat - delta_lat)
        hi = bisect.bisect_right(self._lat_values, lat + delta_lat)

        found: list[NearbyStop] = []
        for stop in self._by_lat[lo:hi]:
            if abs(stop.lon - lon) > delta_lon:
                continue
            dist = haversine_metres(lat, lon, stop.lat, stop.lon)
            if dist <= radius_m:
                found.append(NearbyStop(stop=stop, distance_m=dist))
        found.sort(key=lambda n: n.distance_m)
        return found

    def nearest(self, lat: float, lon: float, radius_m: float) -> NearbyStop | None:
        matches = self.within(lat, lon, radius_m)
        return matches[0] if matches else None
