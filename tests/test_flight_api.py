"""End-to-end tests for the demand-priced Flight API."""

import asyncio

import pytest
from fastapi.testclient import TestClient

import flight_api
from db import SqliteBookingLookup
from pricing import PRICE_INCREASE_TIMES_KEY
from storage import MemoryStore


def where():
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return "worker"
    return "event loop"


class ThreadTrackingStore(MemoryStore):
    """MemoryStore that notes which thread each write happened on."""

    def __init__(self):
        super().__init__()
        self.writes = []

    def set(self, key, value):
        self.writes.append((key, where()))
        super().set(key, value)


@pytest.fixture
def kv():
    return ThreadTrackingStore()


@pytest.fixture
def client(flights, kv, clock):
    flight_api.app.state.pricing = flight_api.PricingServices(kv, SqliteBookingLookup(), clock=clock)
    with TestClient(flight_api.app) as c:
        yield c
    flight_api.app.state.pricing = None


def search(client):
    return client.get("/flights", params={"origin": "DEL", "destination": "BOM", "date": "2026-12-01"})


def book(client, flight_id="FL-000001", passengers=1, payment_method="wallet", user_id="user_001"):
    return client.post(
        "/bookings",
        json={
            "user_id": user_id,
            "flight_id": flight_id,
            "passengers": [
                {"name": f"Passenger {i}", "email": f"p{i}@example.com"} for i in range(1, passengers + 1)
            ],
            "payment_method": payment_method,
        },
    )


class TestSearch:
    def test_results_sorted_by_price(self, client):
        resp = search(client)
        assert resp.status_code == 200
        assert [f["id"] for f in resp.json()] == ["FL-000001", "FL-000002"]
        assert resp.json()[0]["price"] == 1000
        assert "price_increased" not in resp.json()[0]

    def test_lowercase_codes(self, client):
        resp = client.get("/flights", params={"origin": "del", "destination": "bom", "date": "2026-12-01"})
        assert len(resp.json()) == 2

    def test_invalid_date_returns_empty(self, client):
        resp = client.get("/flights", params={"origin": "DEL", "destination": "BOM", "date": "12/01/2026"})
        assert resp.status_code == 200
        assert resp.json() == []

    def test_repeated_searches_raise_price(self, client, clock):
        search(client)
        clock.advance(minutes=1)
        search(client)
        clock.advance(minutes=1)
        results = {f["id"]: f for f in search(client).json()}

        assert results["FL-000001"]["price"] == 1100
        assert results["FL-000001"]["original_price"] == 1000
        assert results["FL-000001"]["price_increased"] is True
        assert results["FL-000002"]["price"] == 4950

    def test_escalation_sticks_after_activity_ages_out(self, client, clock):
        for _ in range(3):
            search(client)
            clock.advance(minutes=1)

        clock.advance(minutes=6)
        assert client.get("/flights/FL-000001").json()["price"] == 1100

        clock.advance(minutes=4)
        assert client.get("/flights/FL-000001").json()["price"] == 1000


class TestFlightDetail:
    def test_get_flight(self, client):
        resp = client.get("/flights/FL-000003")
        assert resp.status_code == 200
        assert resp.json()["airline"] == "SpiceJet"

    def test_unknown_flight(self, client):
        assert client.get("/flights/FL-404404").status_code == 404
        assert client.post("/flights/FL-404404/select").status_code == 404
        assert client.get("/flights/FL-404404/quote").status_code == 404

    def test_selecting_counts_as_search(self, client, clock):
        client.post("/flights/FL-000003/select")
        clock.advance(minutes=1)
        client.post("/flights/FL-000003/select")
        clock.advance(minutes=1)
        resp = client.post("/flights/FL-000003/select")

        assert resp.json()["price"] == 33000
        assert resp.json()["original_price"] == 30000


class TestQuote:
    def test_quote_follows_recent_bookings(self, client, kv):
        for _ in range(3):
            assert book(client).status_code == 200

        quote = client.get("/flights/FL-000001/quote").json()
        assert quote["price"] == 1100
        assert quote["price_increased"] is True
        assert kv.get(PRICE_INCREASE_TIMES_KEY) is None

    def test_old_bookings_do_not_count(self, client, clock):
        for _ in range(3):
            book(client)
        clock.advance(minutes=6)

        assert client.get("/flights/FL-000001/quote").json()["price"] == 1000

    def test_booking_charges_quoted_price(self, client):
        for _ in range(3):
            book(client)

        resp = book(client).json()
        assert resp["unit_price"] == 1100
        assert resp["original_price"] == 1000
        assert resp["price_increased"] is True
        assert resp["bookings"][0]["price"] == 1100


class TestBookings:
    def test_create_booking(self, client):
        resp = book(client, passengers=2)
        assert resp.status_code == 200

        body = resp.json()
        assert len(body["bookings"]) == 2
        assert body["unit_price"] == 1000
        assert body["total_price"] == 2000
        assert body["price_increased"] is False
        assert body["original_price"] is None
        assert body["wallet_balance"] == 48000
        assert client.get("/flights/FL-000001").json()["available_seats"] == 98

    def test_insufficient_wallet(self, client):
        resp = book(client, flight_id="FL-000003", passengers=2)
        assert resp.status_code == 400
        assert "Insufficient wallet balance" in resp.json()["detail"]

    def test_card_payment(self, client):
        resp = book(client, flight_id="FL-000003", passengers=2, payment_method="card")
        assert resp.status_code == 200
        assert resp.json()["wallet_balance"] == 50000

    def test_unsupported_payment_method(self, client):
        resp = book(client, payment_method="paypal")
        assert resp.status_code == 400
        assert "Unsupported payment method" in resp.json()["detail"]

    def test_not_enough_seats(self, client):
        resp = book(client, flight_id="FL-000002", passengers=3)
        assert resp.status_code == 400

    def test_unknown_flight(self, client):
        assert book(client, flight_id="FL-404404").status_code == 404

    def test_empty_passenger_list_rejected(self, client):
        resp = client.post("/bookings", json={"user_id": "user_001", "flight_id": "FL-000001", "passengers": []})
        assert resp.status_code == 422

    def test_get_booking_and_history(self, client, clock):
        first = book(client).json()
        clock.advance(minutes=1)
        second = book(client, flight_id="FL-000002").json()

        booking_id = first["bookings"][0]["id"]
        assert client.get(f"/bookings/{booking_id}").json()["flight_id"] == "FL-000001"
        assert client.get("/bookings/BK-0000000000-1").status_code == 404

        history = client.get("/bookings", params={"user_id": "user_001"}).json()
        assert [b["id"] for b in history] == [second["bookings"][0]["id"], booking_id]
        assert client.get("/bookings", params={"user_id": "user_404"}).json() == []

    def test_cancel_refunds(self, client):
        booking_id = book(client).json()["bookings"][0]["id"]
        assert client.get("/wallets/user_001").json()["balance"] == 49000

        resp = client.delete(f"/bookings/{booking_id}", params={"reason": "plans changed"})
        assert resp.status_code == 200
        assert resp.json()["status"] == "CANCELLED"
        assert client.get("/wallets/user_001").json()["balance"] == 50000

        assert client.delete(f"/bookings/{booking_id}").status_code == 400

    def test_cancel_unknown(self, client):
        assert client.delete("/bookings/BK-0000000000-1").status_code == 404

    def test_wallet_default_balance(self, client):
        assert client.get("/wallets/user_777").json() == {"user_id": "user_777", "balance": 50000}


class TestBlockingWork:
    """SQLite and store I/O from async endpoints must stay off the event loop."""

    @pytest.fixture
    def db_calls(self, monkeypatch):
        calls = []
        for name in ("find_flights", "get_flight", "create_booking", "get_wallet_balance"):
            original = getattr(flight_api, name)

            def tracked(*args, _name=name, _original=original, **kwargs):
                calls.append((_name, where()))
                return _original(*args, **kwargs)

            monkeypatch.setattr(flight_api, name, tracked)
        return calls

    def test_search_store_writes_run_in_workers(self, client, kv, clock):
        for _ in range(3):
            search(client)
            clock.advance(minutes=1)

        keys = {key for key, _ in kv.writes}
        assert keys == {"search_history", PRICE_INCREASE_TIMES_KEY}
        assert all(place == "worker" for _, place in kv.writes)

    def test_one_activity_write_per_search(self, client, kv):
        search(client)
        assert [key for key, _ in kv.writes] == ["search_history"]

    def test_booking_store_writes_run_in_workers(self, client, kv):
        book(client)
        client.get("/flights/FL-000001/quote")
        client.post("/flights/FL-000001/select")

        assert {"search_history", "booking_history"} <= {key for key, _ in kv.writes}
        assert all(place == "worker" for _, place in kv.writes)

    def test_db_calls_run_in_workers(self, client, db_calls):
        search(client)
        client.get("/flights/FL-000001")
        client.post("/flights/FL-000001/select")
        client.get("/flights/FL-000001/quote")
        assert book(client).status_code == 200

        assert {name for name, _ in db_calls} == {
            "find_flights",
            "get_flight",
            "create_booking",
            "get_wallet_balance",
        }
        assert all(place == "worker" for _, place in db_calls)
