"""
Downloads the King County Metro GTFS static feed and moves it between the
archive, the ScheduleIndex and the persistence store.

Archive contents used:
  routes.txt      → Route
  stops.txt       → Stop
  trips.txt       → Trip
  stop_times.txt  → StopTime  (persisted only when GTFS_CACHE_STOP_TIMES is set)
"""

import io
import logging
import zipfile
from datetime import datetime

import httpx

from config import DATA_DIR, GTFS_CACHE_STOP_TIMES, GTFS_STATIC_URL
from db.store import (
    GTFS_DOWNLOAD_DATE_KEY, GTFS_ROUTES_KEY, GTFS_STOP_TIMES_KEY, GTFS_STOPS_KEY,
    GTFS_TRIPS_KEY, KeyValueStore, read_json, write_json,
)
from schedule.index import TABLES, ScheduleIndex
from schedule.models import LoadReport

logger = logging.getLogger(__name__)

GTFS_ZIP_PATH = DATA_DIR / "gtfs_static.zip"

_TABLE_KEYS = {
    "routes": GTFS_ROUTES_KEY,
    "stops": GTFS_STOPS_KEY,
    "trips": GTFS_TRIPS_KEY,
    "stop_times": GTFS_STOP_TIMES_KEY,
}


async def download_gtfs_zip(
    url: str = GTFS_STATIC_URL,
    client: httpx.AsyncClient | None = None,
) -> bytes:
    """Download the GTFS zip from the given URL and cache it to disk."""
    if not url:
        raise ValueError("GTFS_STATIC_URL is not configured. Set it in your .env file.")
    logger.info("Downloading GTFS static feed from %s", url)
    if client is None:
        async with httpx.AsyncClient(timeout=60) as owned:
            response = await owned.get(url, follow_redirects=True)
    else:
        response = await client.get(url, follow_redirects=True)
    response.raise_for_status()
    GTFS_ZIP_PATH.write_bytes(response.content)
    logger.info("Saved GTFS zip to %s (%d bytes)", GTFS_ZIP_PATH, len(response.content))
    return response.content


def extract_tables(zip_bytes: bytes) -> dict[str, str | None]:
    """
    Return the decompressed text of each table the index consumes.
    A file missing from the archive maps to None.
    """
    tables: dict[str, str | None] = {}
    with zipfile.ZipFile(io.BytesIO(zip_bytes)) as zf:
        # Some agencies nest the feed in a folder inside the zip
        by_basename = {name.rsplit("/", 1)[-1]: name for name in zf.namelist()}
        logger.info("GTFS zip contains: %s", sorted(by_basename))
        for table in TABLES:
            member = by_basename.get(f"{table}.txt")
            if member is None:
                logger.warning("%s.txt not found in GTFS archive.", table)
                tables[table] = None
                continue
            tables[table] = zf.read(member).decode("utf-8-sig", errors="replace")
    return tables


async def save_schedule(index: ScheduleIndex, store: KeyValueStore) -> bool:
    """Persist the index's tables; stop times only when configured to."""
    records = index.to_records(include_stop_times=GTFS_CACHE_STOP_TIMES)
    ok = True
    for table, rows in records.items():
        ok &= await write_json(store, _TABLE_KEYS[table], rows)
    if index.loaded_at is not None:
        ok &= await write_json(store, GTFS_DOWNLOAD_DATE_KEY, index.loaded_at.isoformat())
    if not ok:
        logger.warning("Schedule was only partly persisted.")
    return ok


async def load_schedule(index: ScheduleIndex, store: KeyValueStore) -> datetime | None:
    """
    Restore persisted tables into the index.

    Returns the stored download timestamp, or None when nothing usable was
    stored (the caller should download a fresh copy).
    """
    records = {}
    for table in TABLES:
        if table == "stop_times" and not GTFS_CACHE_STOP_TIMES:
            continue
        rows = await read_json(store, _TABLE_KEYS[table])
        if isinstance(rows, list):
            records[table] = rows

    if not records.get("routes") or not records.get("stops"):
        logger.info("No cached schedule found.")
        return None

    stamp = await read_json(store, GTFS_DOWNLOAD_DATE_KEY)
    downloaded_at = None
    if isinstance(stamp, str):
        try:
            downloaded_at = datetime.fromisoformat(stamp)
        except ValueError:
            logger.warning("Ignoring malformed download date %r", stamp)

    report = index.from_records(records, loaded_at=downloaded_at)
    logger.info("Restored cached schedule: %s", report.row_counts)
    return downloaded_at


async def refresh_schedule(
    index: ScheduleIndex,
    store: KeyValueStore | None = None,
    url: str = GTFS_STATIC_URL,
    client: httpx.AsyncClient | None = None,
) -> LoadReport:
    """Download, load and persist a fresh copy of the GTFS static feed."""
    zip_bytes = await download_gtfs_zip(url, client=client)
    tables = extract_tables(zip_bytes)
    report = index.load(
        tables["routes"], tables["stops"], tables["trips"], tables["stop_times"]
    )
    if store is not None:
        await save_schedule(index, store)
    return report
