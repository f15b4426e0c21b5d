"""
Identifier mapping between the static schedule and the real-time feed.

The GTFS archive uses bare ids ("100275"); the OneBusAway feed prefixes
every route, stop and trip id with its agency ("1_100275").  Both helpers
are idempotent, so they can be applied at every boundary without checking
which namespace an id is currently in.
"""

from config import FEED_AGENCY_ID

_SEPARATOR = "_"


def to_feed_id(schedule_id: str | None, agency_id: str = FEED_AGENCY_ID) -> str | None:
    """'100275' → '1_100275'.  Already-prefixed ids are returned unchanged."""
    if not schedule_id:
        return schedule_id
    if _SEPARATOR in schedule_id:
        return schedule_id
    return f"{agency_id}{_SEPARATOR}{schedule_id}"


def to_schedule_id(feed_id: str | None) -> str | None:
    """'1_100275' → '100275'.  Bare ids are returned unchanged."""
    if not feed_id:
        return feed_id
    if _SEPARATOR not in feed_id:
        return feed_id
    return feed_id.split(_SEPARATOR, 1)[1]
