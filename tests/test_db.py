"""Tests for the SQLite persistence layer."""

import asyncio
from datetime import timedelta

import pytest

import config
from db import (
    SqliteBookingLookup,
    cancel_booking,
    count_bookings_since,
    count_flights,
    create_booking,
    generate_flights,
    get_booking,
    get_bookings_by_user,
    get_bookings_for_flight,
    get_flight,
    get_wallet_balance,
    seed_flights_if_empty,
)
from storage import SqliteKeyValueStore

ASHA = {"name": "Asha Rao", "email": "asha@example.com", "phone": "+91-98765-43210"}
RAVI = {"name": "Ravi Kumar", "email": "ravi@example.com"}


class TestFlights:
    def test_generate_flights_is_reproducible(self):
        first = generate_flights(50)
        assert first == generate_flights(50)
        assert len({f["id"] for f in first}) == 50

    def test_generated_flights_are_valid(self):
        for flight in generate_flights(200):
            assert flight["origin"] != flight["destination"]
            assert flight["origin"] in config.AIRPORTS
            assert flight["airline"] in config.AIRLINES
            assert config.MIN_PRICE <= flight["price"] <= config.MAX_PRICE
            assert flight["price"] % 100 == 0

    def test_seed_only_when_empty(self, temp_db):
        assert seed_flights_if_empty(target=25) == 25
        assert seed_flights_if_empty(target=99) == 25
        assert count_flights() == 25

    def test_get_flight(self, flights):
        assert get_flight("FL-000001")["price"] == 1000
        assert get_flight("FL-404404") is None


class TestWallets:
    def test_new_wallet_gets_starting_balance(self, temp_db):
        assert get_wallet_balance("user_001") == config.STARTING_WALLET_BALANCE

    def test_wallet_booking_debits_total(self, flights):
        rows = create_booking("user_001", "FL-000001", [ASHA, RAVI], price=1100)
        assert len(rows) == 2
        assert get_wallet_balance("user_001") == config.STARTING_WALLET_BALANCE - 2200

    def test_card_booking_leaves_wallet_alone(self, flights):
        create_booking("user_001", "FL-000001", [ASHA], price=1000, payment_method="card")
        assert get_wallet_balance("user_001") == config.STARTING_WALLET_BALANCE

    def test_insufficient_balance_rolls_back(self, flights):
        with pytest.raises(ValueError, match="Insufficient wallet balance"):
            create_booking("user_001", "FL-000003", [ASHA, RAVI], price=30000)

        assert get_bookings_by_user("user_001") == []
        assert get_flight("FL-000003")["available_seats"] == 50
        assert get_wallet_balance("user_001") == config.STARTING_WALLET_BALANCE


class TestBookings:
    def test_create_booking_rows(self, flights, clock):
        rows = create_booking("user_001", "FL-000001", [ASHA, RAVI], price=1000, booked_at=clock.now)

        assert [r["passenger_name"] for r in rows] == ["Asha Rao", "Ravi Kumar"]
        assert rows[0]["parent_booking_id"] == rows[1]["parent_booking_id"]
        assert rows[0]["id"].endswith("-1")
        assert rows[1]["id"].endswith("-2")
        assert all(r["status"] == "CONFIRMED" for r in rows)
        assert all(r["total_passengers"] == 2 for r in rows)
        assert rows[0]["booking_date"] == "2026-03-01T10:00:30.000000Z"
        assert get_flight("FL-000001")["available_seats"] == 98

    def test_not_enough_seats(self, flights):
        with pytest.raises(ValueError, match="only 2 seats"):
            create_booking("user_001", "FL-000002", [ASHA, RAVI, ASHA], price=4500)

    def test_unknown_flight(self, flights):
        with pytest.raises(ValueError, match="Flight not found"):
            create_booking("user_001", "FL-404404", [ASHA], price=1000)

    def test_no_passengers(self, flights):
        with pytest.raises(ValueError):
            create_booking("user_001", "FL-000001", [], price=1000)

    def test_history_newest_first(self, flights, clock):
        create_booking("user_001", "FL-000001", [ASHA], price=1000, booked_at=clock.now)
        later = create_booking("user_001", "FL-000002", [RAVI], price=4500, booked_at=clock.advance(minutes=3))
        create_booking("user_002", "FL-000001", [RAVI], price=1000)

        history = get_bookings_by_user("user_001")
        assert [b["flight_id"] for b in history] == ["FL-000002", "FL-000001"]
        assert history[0]["id"] == later[0]["id"]

    def test_cancel_refunds_wallet_and_restores_seat(self, flights):
        rows = create_booking("user_001", "FL-000001", [ASHA], price=1100)
        booking_id = rows[0]["id"]

        cancelled = cancel_booking(booking_id, cancellation_reason="plans changed")
        assert cancelled["status"] == "CANCELLED"
        assert cancelled["cancellation_reason"] == "plans changed"
        assert get_wallet_balance("user_001") == config.STARTING_WALLET_BALANCE
        assert get_flight("FL-000001")["available_seats"] == 100

    def test_cancel_card_booking_no_refund(self, flights):
        rows = create_booking("user_001", "FL-000001", [ASHA], price=1000, payment_method="card")
        cancel_booking(rows[0]["id"])
        assert get_wallet_balance("user_001") == config.STARTING_WALLET_BALANCE

    def test_cancel_twice(self, flights):
        rows = create_booking("user_001", "FL-000001", [ASHA], price=1000)
        cancel_booking(rows[0]["id"])
        with pytest.raises(ValueError, match="already cancelled"):
            cancel_booking(rows[0]["id"])

    def test_cancel_unknown(self, flights):
        assert cancel_booking("BK-0000000000-1") is None
        assert get_booking("BK-0000000000-1") is None


class TestDemandQueries:
    def test_bookings_for_flight_has_no_time_filter(self, flights, clock):
        create_booking("user_001", "FL-000001", [ASHA], price=1000, booked_at=clock.now - timedelta(days=3))
        create_booking("user_002", "FL-000001", [RAVI], price=1000, booked_at=clock.now)
        create_booking("user_002", "FL-000002", [RAVI], price=4500, booked_at=clock.now)

        assert len(get_bookings_for_flight("FL-000001")) == 2

    def test_count_bookings_since_is_inclusive(self, flights, clock):
        since = clock.now - timedelta(minutes=5)
        create_booking("user_001", "FL-000001", [ASHA], price=1000, booked_at=since - timedelta(seconds=1))
        create_booking("user_001", "FL-000001", [ASHA], price=1000, booked_at=since)
        create_booking("user_001", "FL-000001", [ASHA, RAVI], price=1000, booked_at=clock.now)

        assert count_bookings_since("FL-000001", since) == 3
        assert count_bookings_since("FL-000002", since) == 0

    def test_async_lookup(self, flights, clock):
        create_booking("user_001", "FL-000001", [ASHA], price=1000, booked_at=clock.now)
        lookup = SqliteBookingLookup()

        records = asyncio.run(lookup.bookings_for_flight("FL-000001"))
        assert [r["passenger_name"] for r in records] == ["Asha Rao"]
        assert asyncio.run(lookup.count_bookings_since("FL-000001", clock.now)) == 1


class TestKeyValueStore:
    def test_get_missing(self, temp_db):
        assert SqliteKeyValueStore().get("search_history") is None

    def test_set_overwrites(self, temp_db):
        store = SqliteKeyValueStore()
        store.set("search_history", "{}")
        store.set("search_history", '{"FL-000001": []}')
        assert store.get("search_history") == '{"FL-000001": []}'
