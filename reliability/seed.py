"""
Starting reliability figures for routes with published performance data.

Figures come from the agencies' quarterly performance reports and are keyed
by feed route id.  Stored records (see ReliabilityEngine.initialize) take
precedence over these once the table has been persisted.
"""

from datetime import datetime, timezone

from reliability.models import RouteReliability

_REPORTED = datetime(2024, 10, 1, tzinfo=timezone.utc)
_METRO = "2024 Q3 Metro Report"
_SOUND_TRANSIT = "2024 Q3 Sound Transit Report"

DEFAULT_ROUTE_RELIABILITY: tuple[RouteReliability, ...] = (
    # King County Metro
    RouteReliability("1_100275", 0.45, 8, 12, 0.50, "8", _METRO, _REPORTED),
    RouteReliability("1_100223", 0.72, 3, 5, 0.75, "43", _METRO, _REPORTED),
    RouteReliability("1_100479", 0.85, 2, 3, 0.88, "E Line", _METRO, _REPORTED),
    RouteReliability("1_100002", 0.68, 4, 6, 0.70, "2", _METRO, _REPORTED),
    RouteReliability("1_100005", 0.55, 7, 10, 0.58, "5", _METRO, _REPORTED),
    RouteReliability("1_100007", 0.70, 3.5, 5, 0.72, "7", _METRO, _REPORTED),
    # Link light rail
    RouteReliability("40_100479", 0.92, 1, 1.5, 0.94, "1 Line", _SOUND_TRANSIT, _REPORTED),
)

# Used for any route without a record
DEFAULT_ON_TIME_RATE = 0.70
DEFAULT_AVG_DELAY_MINUTES = 4
DEFAULT_RUSH_HOUR_DELAY_MINUTES = 6
DEFAULT_WEEKEND_ON_TIME_RATE = 0.72
DEFAULT_SOURCE_LABEL = "Default estimate"
