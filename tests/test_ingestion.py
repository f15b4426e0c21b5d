"""
Tests for ingestion.gtfs_static: archive extraction, download, and the
save/restore cycle between the ScheduleIndex and the key-value store.

Archives are built in memory with zipfile; downloads go through
httpx.MockTransport and the on-disk copy is redirected to tmp_path.
"""

import io
import zipfile
from datetime import datetime, timezone
from unittest.mock import patch

import httpx
import pytest

from conftest import ROUTES_CSV, STOP_TIMES_CSV, STOPS_CSV, TRIPS_CSV
from db.store import GTFS_DOWNLOAD_DATE_KEY, GTFS_STOP_TIMES_KEY, GTFS_STOPS_KEY, read_json
from ingestion.gtfs_static import (
    download_gtfs_zip, extract_tables, load_schedule, refresh_schedule, save_schedule,
)
from schedule.index import ScheduleIndex

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)
GTFS_URL = "https://metro.test/GTFS/google_transit.zip"


def _zip(files: dict[str, str]) -> bytes:
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as zf:
        for name, text in files.items():
            zf.writestr(name, text.encode("utf-8"))
    return buf.getvalue()


FULL_ZIP = _zip({
    "agency.txt": "agency_id,agency_name\n1,Metro Transit\n",
    "routes.txt": ROUTES_CSV,
    "stops.txt": STOPS_CSV,
    "trips.txt": TRIPS_CSV,
    "stop_times.txt": STOP_TIMES_CSV,
})


def _client(content: bytes, status_code: int = 200) -> httpx.AsyncClient:
    def handler(request):
        return httpx.Response(status_code, content=content)
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


# ---------------------------------------------------------------------------
# extract_tables
# ---------------------------------------------------------------------------

class TestExtractTables:
    def test_all_tables_present(self):
        tables = extract_tables(FULL_ZIP)
        assert set(tables) == {"routes", "stops", "trips", "stop_times"}
        assert tables["routes"] == ROUTES_CSV

    def test_missing_table_is_none(self):
        tables = extract_tables(_zip({"routes.txt": ROUTES_CSV, "stops.txt": STOPS_CSV}))
        assert tables["trips"] is None
        assert tables["stop_times"] is None

    def test_nested_folder(self):
        tables = extract_tables(_zip({"google_transit/routes.txt": ROUTES_CSV}))
        assert tables["routes"] == ROUTES_CSV

    def test_byte_order_mark_removed(self):
        buf = io.BytesIO()
        with zipfile.ZipFile(buf, "w") as zf:
            zf.writestr("routes.txt", b"\xef\xbb\xbf" + ROUTES_CSV.encode("utf-8"))
        assert extract_tables(buf.getvalue())["routes"].startswith("route_id")


# ---------------------------------------------------------------------------
# download_gtfs_zip / refresh_schedule
# ---------------------------------------------------------------------------

class TestDownload:
    @pytest.mark.anyio
    async def test_writes_zip_to_disk(self, tmp_path):
        path = tmp_path / "gtfs_static.zip"
        with patch("ingestion.gtfs_static.GTFS_ZIP_PATH", path):
            content = await download_gtfs_zip(GTFS_URL, client=_client(FULL_ZIP))
        assert content == FULL_ZIP
        assert path.read_bytes() == FULL_ZIP

    @pytest.mark.anyio
    async def test_empty_url_raises(self):
        with pytest.raises(ValueError):
            await download_gtfs_zip("")

    @pytest.mark.anyio
    async def test_http_error_raises(self, tmp_path):
        with patch("ingestion.gtfs_static.GTFS_ZIP_PATH", tmp_path / "gtfs.zip"):
            with pytest.raises(httpx.HTTPStatusError):
                await download_gtfs_zip(GTFS_URL, client=_client(b"", status_code=503))

    @pytest.mark.anyio
    async def test_refresh_loads_and_persists(self, tmp_path, memory_store):
        index = ScheduleIndex(clock=lambda: NOW)
        with patch("ingestion.gtfs_static.GTFS_ZIP_PATH", tmp_path / "gtfs.zip"):
            report = await refresh_schedule(index, memory_store, url=GTFS_URL, client=_client(FULL_ZIP))

        assert report.ok
        assert index.counts()["stop_times"] == 8
        assert len(await read_json(memory_store, GTFS_STOPS_KEY)) == 4
        assert await read_json(memory_store, GTFS_DOWNLOAD_DATE_KEY) == NOW.isoformat()

    @pytest.mark.anyio
    async def test_refresh_reports_missing_stop_times_as_loaded_empty(self, tmp_path):
        archive = _zip({"routes.txt": ROUTES_CSV, "stops.txt": STOPS_CSV, "trips.txt": TRIPS_CSV})
        index = ScheduleIndex()
        with patch("ingestion.gtfs_static.GTFS_ZIP_PATH", tmp_path / "gtfs.zip"):
            report = await refresh_schedule(index, url=GTFS_URL, client=_client(archive))
        assert report.ok
        assert not index.has_stop_times


# ---------------------------------------------------------------------------
# save_schedule / load_schedule
# ---------------------------------------------------------------------------

class TestPersistence:
    @pytest.mark.anyio
    async def test_stop_times_not_persisted_by_default(self, schedule_index, memory_store):
        await save_schedule(schedule_index, memory_store)
        assert GTFS_STOP_TIMES_KEY not in memory_store.data

    @pytest.mark.anyio
    async def test_restore_without_stop_times(self, schedule_index, memory_store):
        await save_schedule(schedule_index, memory_store)

        restored = ScheduleIndex()
        downloaded_at = await load_schedule(restored, memory_store)

        assert downloaded_at == schedule_index.loaded_at
        assert restored.counts() == {"routes": 3, "stops": 4, "trips": 4, "stop_times": 0}

    @pytest.mark.anyio
    async def test_stop_times_round_trip_when_enabled(self, schedule_index, memory_store):
        with patch("ingestion.gtfs_static.GTFS_CACHE_STOP_TIMES", True):
            await save_schedule(schedule_index, memory_store)
            restored = ScheduleIndex()
            await load_schedule(restored, memory_store)

        assert restored.counts()["stop_times"] == 8
        assert sorted(s.id for s in restored.get_stops_for_route("100002")) == ["2000", "4000"]

    @pytest.mark.anyio
    async def test_empty_store_returns_none(self, memory_store):
        index = ScheduleIndex()
        assert await load_schedule(index, memory_store) is None
        assert index.counts()["routes"] == 0

    @pytest.mark.anyio
    async def test_malformed_download_date_ignored(self, schedule_index, memory_store):
        await save_schedule(schedule_index, memory_store)
        memory_store.data[GTFS_DOWNLOAD_DATE_KEY] = b'"yesterday"'

        restored = ScheduleIndex()
        assert await load_schedule(restored, memory_store) is None
        assert restored.counts()["stops"] == 4
