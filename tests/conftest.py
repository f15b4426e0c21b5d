"""
Shared fixtures: a small King County Metro schedule and an in-memory
key-value store.

Schedule layout:
  route 100275 ("8")      trips t1, t3   stops 1000 → 2000
  route 100479 ("E Line") trip  t2       stops 1000 → 3000
  route 100002 ("2")      trip  t4       stops 2000 → 4000
"""

import pytest

from schedule.index import ScheduleIndex

ROUTES_CSV = """\
route_id,agency_id,route_short_name,route_long_name,route_type
100275,1,8,Seattle Center - Mount Baker,3
100479,1,E Line,Aurora Village - Downtown Seattle,3
100002,1,2,Madrona Park - Downtown Seattle,3
"""

STOPS_CSV = """\
stop_id,stop_code,stop_name,stop_lat,stop_lon,wheelchair_boarding
1000,1000,Pine St & 3rd Ave,47.6100,-122.3380,1
2000,2000,Denny Way & Stewart St,47.6180,-122.3300,1
3000,3000,Aurora Ave N & N 46th St,47.6620,-122.3470,2
4000,4000,Madison St & 23rd Ave,47.6180,-122.3020,0
"""

TRIPS_CSV = """\
route_id,service_id,trip_id,trip_headsign,direction_id
100275,WKD,t1,Mount Baker,0
100479,WKD,t2,Aurora Village,0
100275,WKD,t3,Mount Baker,0
100002,WKD,t4,Madrona Park,1
"""

STOP_TIMES_CSV = """\
trip_id,arrival_time,departure_time,stop_id,stop_sequence
t1,08:00:00,08:00:00,1000,1
t1,08:10:00,08:10:00,2000,2
t2,08:05:00,08:05:00,1000,1
t2,08:25:00,08:25:00,3000,2
t3,09:00:00,09:00:00,1000,1
t3,09:10:00,09:10:00,2000,2
t4,08:30:00,08:30:00,2000,1
t4,08:45:00,08:45:00,4000,2
"""


class MemoryStore:
    """Dict-backed KeyValueStore."""

    def __init__(self):
        self.data: dict[str, bytes] = {}
        self.writes = 0

    async def get(self, key):
        return self.data.get(key)

    async def set(self, key, value):
        self.data[key] = value
        self.writes += 1
        return True


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def schedule_index():
    """ScheduleIndex loaded with all four sample tables."""
    index = ScheduleIndex()
    index.load(ROUTES_CSV, STOPS_CSV, TRIPS_CSV, STOP_TIMES_CSV)
    return index
