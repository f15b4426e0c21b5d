"""
Key-value persistence for schedule tables and the reliability table.

Components depend on the KeyValueStore protocol only: get(key) → bytes or
None, set(key, bytes) → success flag.  SqlBlobStore is the SQLAlchemy
implementation; session work is synchronous, so each call runs in a worker
thread to keep the event loop free.

Values are UTF-8 JSON.  read_json/write_json wrap the encode/decode step so
callers never handle bytes directly.
"""

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Protocol

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from db.models import StoredBlob

logger = logging.getLogger(__name__)

# Keys
GTFS_ROUTES_KEY = "gtfs_routes"
GTFS_STOPS_KEY = "gtfs_stops"
GTFS_TRIPS_KEY = "gtfs_trips"
GTFS_STOP_TIMES_KEY = "gtfs_stop_times"
GTFS_DOWNLOAD_DATE_KEY = "gtfs_download_date"
RELIABILITY_KEY = "reliability"
RELIABILITY_UPDATED_KEY = "reliability_updated"


class KeyValueStore(Protocol):
    async def get(self, key: str) -> bytes | None: ...

    async def set(self, key: str, value: bytes) -> bool: ...


class SqlBlobStore:
    """KeyValueStore over the `blobs` table."""

    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self._session_factory = session_factory

    def _get_sync(self, key: str) -> bytes | None:
        session = self._session_factory()
        try:
            row = session.get(StoredBlob, key)
            return bytes(row.value) if row is not None else None
        finally:
            session.close()

    def _set_sync(self, key: str, value: bytes) -> bool:
        session = self._session_factory()
        try:
            session.merge(StoredBlob(
                key=key,
                value=value,
                updated_at=datetime.now(timezone.utc).isoformat(),
            ))
            session.commit()
            return True
        except SQLAlchemyError:
            session.rollback()
            logger.error("Failed to persist key %s", key, exc_info=True)
            return False
        finally:
            session.close()

    async def get(self, key: str) -> bytes | None:
        try:
            return await asyncio.to_thread(self._get_sync, key)
        except SQLAlchemyError:
            logger.error("Failed to read key %s", key, exc_info=True)
            return None

    async def set(self, key: str, value: bytes) -> bool:
        return await asyncio.to_thread(self._set_sync, key, value)


async def read_json(store: KeyValueStore, key: str) -> Any | None:
    """Decode the JSON stored under key; None when absent or unreadable."""
    raw = await store.get(key)
    if raw is None:
        return None
    try:
        return json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        logger.warning("Ignoring unreadable value stored under %s", key)
        return None


async def write_json(store: KeyValueStore, key: str, value: Any) -> bool:
    return await store.set(key, json.dumps(value, default=str).encode("utf-8"))
