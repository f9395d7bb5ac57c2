import os
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

# keep log files out of the source tree; must happen before the modules are imported
_LOG_DIR = Path(tempfile.mkdtemp(prefix="flyscape-logs-"))
os.environ.setdefault("FLIGHT_API_LOG_FILE", str(_LOG_DIR / "flight_api.log"))
os.environ.setdefault("FLIGHTSEARCH_LOG_FILE", str(_LOG_DIR / "flightsearch.log"))
os.environ.setdefault("BOOKING_LOG_FILE", str(_LOG_DIR / "booking.log"))

import pytest

import config
from db import bulk_insert_flights, init_db
from storage import MemoryStore


class FakeClock:
    """Manually advanced wall clock."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, minutes: float = 0, seconds: float = 0) -> datetime:
        self.now = self.now + timedelta(minutes=minutes, seconds=seconds)
        return self.now


class FakeBookings:
    """In-memory booking lookup with switchable failures."""

    def __init__(self, records=None, recent_count=0):
        self.records = list(records or [])
        self.recent_count = recent_count
        self.fail = False
        self.calls = 0

    async def bookings_for_flight(self, flight_id):
        self.calls += 1
        if self.fail:
            raise ConnectionError("booking store unavailable")
        return [r for r in self.records if r.get("flight_id") == flight_id]

    async def count_bookings_since(self, flight_id, since):
        self.calls += 1
        if self.fail:
            raise PermissionError("missing permission")
        return self.recent_count


# mid-minute, so whole-minute steps land in distinct minute buckets
START = datetime(2026, 3, 1, 10, 0, 30, tzinfo=timezone.utc)


@pytest.fixture
def clock():
    return FakeClock(START)


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def bookings():
    return FakeBookings()


@pytest.fixture
def temp_db(tmp_path, monkeypatch):
    """Point the backend at a fresh SQLite file."""
    db_path = tmp_path / "flight_app.db"
    monkeypatch.setattr(config, "DB_PATH", db_path)
    init_db()
    return db_path


@pytest.fixture
def flights(temp_db):
    rows = [
        {
            "id": "FL-000001",
            "origin": "DEL",
            "destination": "BOM",
            "date": "2026-12-01",
            "airline": "IndiGo",
            "price": 1000,
            "available_seats": 100,
        },
        {
            "id": "FL-000002",
            "origin": "DEL",
            "destination": "BOM",
            "date": "2026-12-01",
            "airline": "Vistara",
            "price": 4500,
            "available_seats": 2,
        },
        {
            "id": "FL-000003",
            "origin": "BLR",
            "destination": "GOI",
            "date": "2026-12-02",
            "airline": "SpiceJet",
            "price": 30000,
            "available_seats": 50,
        },
    ]
    bulk_insert_flights(rows)
    return rows
