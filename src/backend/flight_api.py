import asyncio
import datetime
import logging
from typing import Any, Callable, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel, Field

import config
from activity import ActivityRecorder
from db import (
    SqliteBookingLookup,
    cancel_booking,
    create_booking,
    find_flights,
    get_booking,
    get_bookings_by_user,
    get_flight,
    get_wallet_balance,
    seed_flights_if_empty,
)
from pricing import (
    BookingLookup,
    PriceEscalationEvaluator,
    apply_escalation,
    check_booking_frequency,
)
from storage import KeyValueStore, SqliteKeyValueStore
from timestamps import utcnow

# ---------------------------
# Logging setup
# ---------------------------

logger = logging.getLogger("flight_api")
logger.setLevel(logging.INFO)

# Only add handlers once (important if the module is imported multiple times)
if not logger.handlers:
    file_handler = logging.FileHandler(config.LOG_FILE, encoding="utf-8")
    file_handler.setLevel(logging.INFO)

    formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(message)s")
    file_handler.setFormatter(formatter)

    # pricing and activity log through the same file
    for name in ("flight_api", "pricing", "activity"):
        named = logging.getLogger(name)
        named.setLevel(logging.INFO)
        named.addHandler(file_handler)


PAYMENT_METHODS = ("wallet", "card")


class PricingServices:
    """
    The demand-tracking objects shared by every request in the process.
    """

    def __init__(
        self,
        store: KeyValueStore,
        bookings: BookingLookup,
        clock: Callable[[], datetime.datetime] = utcnow,
    ) -> None:
        self.bookings = bookings
        self.clock = clock
        self.recorder = ActivityRecorder(store, clock=clock)
        self.evaluator = PriceEscalationEvaluator(self.recorder, bookings, store, clock=clock)

    async def priced(self, flight: Dict[str, Any]) -> Dict[str, Any]:
        decision = await self.evaluator.should_escalate(flight["id"])
        return apply_escalation(flight, decision)


app = FastAPI(title="FlyScape Flight API (demand priced)")
app.state.pricing = None


# ---------------------------
# Startup: ensure DB + seed
# ---------------------------

@app.on_event("startup")
def startup_event() -> None:
    """Initialize database, seed flights if empty and wire up pricing."""
    seed_flights_if_empty()
    if app.state.pricing is None:
        app.state.pricing = PricingServices(SqliteKeyValueStore(), SqliteBookingLookup())
    logger.info("Flight API started", extra={"action": "startup"})


def _pricing(request: Request) -> PricingServices:
    return request.app.state.pricing


async def _flight_or_404(flight_id: str) -> Dict[str, Any]:
    flight = await run_in_threadpool(get_flight, flight_id)
    if flight is None:
        raise HTTPException(status_code=404, detail="Flight not found")
    return flight


# ---------------------------
# Flight endpoints
# ---------------------------

@app.get("/flights")
async def search_flights(
    request: Request,
    origin: str = Query(..., min_length=3, max_length=3),
    destination: str = Query(..., min_length=3, max_length=3),
    date: str = Query(..., description="YYYY-MM-DD"),
) -> List[Dict[str, Any]]:
    """
    Search flights by origin, destination, and date.

    Every returned flight counts as searched, and prices reflect
    current demand.

    Example:
    GET /flights?origin=DEL&destination=BOM&date=2025-12-01
    """

    # basic date validation
    try:
        datetime.date.fromisoformat(date)
    except ValueError:
        return []

    flights = await run_in_threadpool(find_flights, origin.upper(), destination.upper(), date)
    pricing = _pricing(request)

    await run_in_threadpool(pricing.recorder.record_searches, [f["id"] for f in flights])

    logger.info(
        f"Search {origin.upper()}->{destination.upper()} on {date}: {len(flights)} flight(s)",
        extra={"action": "search_flights"},
    )
    return list(await asyncio.gather(*(pricing.priced(f) for f in flights)))


@app.get("/flights/{flight_id}")
async def get_flight_by_id(request: Request, flight_id: str) -> Dict[str, Any]:
    """
    Get a single flight by its ID, priced for current demand.

    Example:
    GET /flights/FL-000123
    """
    flight = await _flight_or_404(flight_id)
    return await _pricing(request).priced(flight)


@app.post("/flights/{flight_id}/select")
async def select_flight(request: Request, flight_id: str) -> Dict[str, Any]:
    """
    Register a user picking a flight from the results list.
    The selection counts as a search before the price is evaluated.
    """
    flight = await _flight_or_404(flight_id)
    pricing = _pricing(request)
    await run_in_threadpool(pricing.recorder.record_search, flight_id)
    return await pricing.priced(flight)


@app.get("/flights/{flight_id}/quote")
async def quote_flight(request: Request, flight_id: str) -> Dict[str, Any]:
    """
    Price shown on the booking page, from bookings committed in the
    last few minutes. Opening the page counts as a search.
    """
    flight = await _flight_or_404(flight_id)
    pricing = _pricing(request)
    quoted = await check_booking_frequency(flight, pricing.bookings, now=pricing.clock())
    await run_in_threadpool(pricing.recorder.record_search, flight_id)
    return quoted


# ---------------------------
# Booking Request Models
# ---------------------------

class PassengerDetails(BaseModel):
    name: str = Field(..., min_length=1)
    email: str = Field(..., min_length=3)
    phone: Optional[str] = None


class BookingCreateRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    flight_id: str
    passengers: List[PassengerDetails] = Field(..., min_length=1)
    payment_method: str = "wallet"


# ---------------------------
# Booking Endpoints
# ---------------------------

@app.post("/bookings")
async def create_booking_endpoint(request: Request, booking: BookingCreateRequest) -> Dict[str, Any]:
    """
    Book a flight for one or more passengers at the booking-page price.

    Example:
    POST /bookings
    {
      "user_id": "user_001",
      "flight_id": "FL-001234",
      "passengers": [{"name": "Asha Rao", "email": "asha@example.com"}],
      "payment_method": "wallet"
    }
    """
    if booking.payment_method not in PAYMENT_METHODS:
        raise HTTPException(
            status_code=400,
            detail=f"Unsupported payment method. Use one of: {', '.join(PAYMENT_METHODS)}.",
        )

    flight = await _flight_or_404(booking.flight_id)
    pricing = _pricing(request)
    quoted = await check_booking_frequency(flight, pricing.bookings, now=pricing.clock())

    try:
        rows = await run_in_threadpool(
            create_booking,
            user_id=booking.user_id,
            flight_id=booking.flight_id,
            passengers=[p.model_dump() for p in booking.passengers],
            price=quoted["price"],
            payment_method=booking.payment_method,
            booked_at=pricing.clock(),
        )
    except ValueError as e:
        # Handle insufficient seats, wallet balance or other validation errors
        raise HTTPException(status_code=400, detail=str(e))

    await run_in_threadpool(pricing.recorder.record_booking, booking.flight_id)
    wallet_balance = await run_in_threadpool(get_wallet_balance, booking.user_id)

    logger.info(
        f"Booked {len(rows)} seat(s) on {booking.flight_id} at {quoted['price']}",
        extra={"action": "create_booking", "flight_id": booking.flight_id},
    )
    return {
        "parent_booking_id": rows[0]["parent_booking_id"],
        "bookings": rows,
        "unit_price": quoted["price"],
        "total_price": quoted["price"] * len(rows),
        "price_increased": quoted.get("price_increased", False),
        "original_price": quoted.get("original_price"),
        "wallet_balance": wallet_balance,
    }


@app.get("/bookings/{booking_id}")
def get_booking_endpoint(booking_id: str) -> Dict[str, Any]:
    """
    Get a single booking by ID.

    Example:
    GET /bookings/BK-ABC1234567-1
    """
    booking = get_booking(booking_id)

    if booking is None:
        raise HTTPException(status_code=404, detail="Booking not found")

    return booking


@app.get("/bookings")
def get_user_bookings_endpoint(user_id: str = Query(...)) -> List[Dict[str, Any]]:
    """
    Get the booking history of a user, newest first.

    Example:
    GET /bookings?user_id=user_001
    """
    return get_bookings_by_user(user_id)


@app.delete("/bookings/{booking_id}")
def cancel_booking_endpoint(booking_id: str, reason: Optional[str] = None) -> Dict[str, Any]:
    """
    Cancel a booking, restore its seat and refund wallet payments.

    Example:
    DELETE /bookings/BK-ABC1234567-1?reason=plans%20changed
    """
    try:
        booking = cancel_booking(booking_id, cancellation_reason=reason)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    if booking is None:
        raise HTTPException(status_code=404, detail="Booking not found")

    return booking


# ---------------------------
# Wallet Endpoints
# ---------------------------

@app.get("/wallets/{user_id}")
def get_wallet_endpoint(user_id: str) -> Dict[str, Any]:
    return {"user_id": user_id, "balance": get_wallet_balance(user_id)}
