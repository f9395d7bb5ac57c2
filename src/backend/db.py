import asyncio
import datetime
import random
import sqlite3
from datetime import datetime as dt
from typing import List, Dict, Any, Optional
from uuid import uuid4

import config
from timestamps import isoformat_utc, utcnow


# ---------------------------
# DB helpers
# ---------------------------

def get_conn() -> sqlite3.Connection:
    """
    Open a SQLite connection to the configured database.
    Caller is responsible for closing it.
    """
    conn = sqlite3.connect(config.DB_PATH)
    conn.row_factory = sqlite3.Row
    return conn


def init_db() -> None:
    """
    Create tables if they don't exist yet.
    Currently: flights, bookings, wallets, kv_store.
    """
    conn = get_conn()
    try:
        # Flights table with seat capacity tracking
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS flights (
                id TEXT PRIMARY KEY,
                origin TEXT NOT NULL,
                destination TEXT NOT NULL,
                date TEXT NOT NULL,       -- YYYY-MM-DD
                airline TEXT NOT NULL,
                price INTEGER NOT NULL,
                available_seats INTEGER NOT NULL DEFAULT 100
            )
            """
        )

        # One row per passenger; a multi-passenger booking shares parent_booking_id
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS bookings (
                id TEXT PRIMARY KEY,
                parent_booking_id TEXT NOT NULL,
                user_id TEXT NOT NULL,
                flight_id TEXT NOT NULL,
                passenger_name TEXT NOT NULL,
                passenger_email TEXT NOT NULL,
                passenger_phone TEXT,
                passenger_number INTEGER NOT NULL,
                total_passengers INTEGER NOT NULL,
                price INTEGER NOT NULL,
                payment_method TEXT NOT NULL,
                status TEXT NOT NULL,
                booking_date TEXT NOT NULL,   -- ISO-8601 UTC, fixed width
                updated_at TEXT NOT NULL,
                cancellation_reason TEXT
            )
            """
        )

        # Needed by the equality + range query in count_bookings_since
        conn.execute(
            """
            CREATE INDEX IF NOT EXISTS idx_bookings_flight_date
            ON bookings (flight_id, booking_date)
            """
        )

        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS wallets (
                user_id TEXT PRIMARY KEY,
                balance INTEGER NOT NULL
            )
            """
        )

        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS kv_store (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL
            )
            """
        )

        conn.commit()
    finally:
        conn.close()


# ---------------------------
# Flights: seed & helpers
# ---------------------------

def count_flights() -> int:
    """
    Return how many rows are currently in the flights table.
    """
    conn = get_conn()
    try:
        cur = conn.execute("SELECT COUNT(*) AS c FROM flights")
        row = cur.fetchone()
        return int(row["c"])
    finally:
        conn.close()


def get_flight(flight_id: str) -> Optional[Dict[str, Any]]:
    conn = get_conn()
    try:
        cur = conn.execute("SELECT * FROM flights WHERE id = ?", (flight_id,))
        row = cur.fetchone()
    finally:
        conn.close()

    if row is None:
        return None
    return dict(row)


def find_flights(origin: str, destination: str, date: str) -> List[Dict[str, Any]]:
    """
    Flights on a route and day, cheapest first.
    """
    conn = get_conn()
    try:
        cur = conn.execute(
            """
            SELECT * FROM flights
            WHERE origin = ? AND destination = ? AND date = ?
            ORDER BY price ASC
            """,
            (origin, destination, date),
        )
        rows = cur.fetchall()
    finally:
        conn.close()

    return [dict(r) for r in rows]


def bulk_insert_flights(flights: List[Dict[str, Any]]) -> None:
    """
    Insert a list of flight dicts into the flights table.
    Each dict must have keys: id, origin, destination, date, airline, price, available_seats.
    """
    conn = get_conn()
    try:
        conn.executemany(
            """
            INSERT INTO flights (id, origin, destination, date, airline, price, available_seats)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            [
                (
                    f["id"],
                    f["origin"],
                    f["destination"],
                    f["date"],
                    f["airline"],
                    f["price"],
                    f.get("available_seats", 100),
                )
                for f in flights
            ],
        )
        conn.commit()
    finally:
        conn.close()


def generate_flights(num_flights: int) -> List[Dict[str, Any]]:
    """
    Generate num_flights fake flight records in memory.
    Does NOT write to the database by itself.
    """
    flights: List[Dict[str, Any]] = []
    rng = random.Random(42)  # for reproducibility

    current_id = 1
    while len(flights) < num_flights:
        origin, destination = rng.sample(config.AIRPORTS, 2)  # ensures origin != destination

        # random date in [BASE_DATE, BASE_DATE + NUM_DAYS)
        day_offset = rng.randint(0, config.NUM_DAYS - 1)
        date = config.BASE_DATE + datetime.timedelta(days=day_offset)

        airline = rng.choice(config.AIRLINES)
        # whole rupees, rounded to the nearest hundred
        price = round(rng.randint(config.MIN_PRICE, config.MAX_PRICE) / 100) * 100

        flights.append(
            {
                "id": f"FL-{current_id:06d}",
                "origin": origin,
                "destination": destination,
                "date": date.isoformat(),
                "airline": airline,
                "price": price,
                "available_seats": 100,
            }
        )
        current_id += 1

    return flights


def seed_flights_if_empty(target: Optional[int] = None) -> int:
    """
    If the flights table is empty, generate and insert flights.
    Returns the number of flights in the DB after seeding.

    target: how many flights to generate. If None, uses TARGET_FLIGHTS.
    """
    init_db()
    existing = count_flights()
    if existing > 0:
        print(f"[db] flights table already has {existing} rows, skipping seeding.")
        return existing

    n = target if target is not None else config.TARGET_FLIGHTS
    print(f"[db] flights table empty, generating {n} flights...")
    flights = generate_flights(n)
    bulk_insert_flights(flights)
    final_count = count_flights()
    print(f"[db] seeding done, flights table now has {final_count} rows.")
    return final_count


# ---------------------------
# Wallets
# ---------------------------

def _ensure_wallet(conn: sqlite3.Connection, user_id: str) -> int:
    conn.execute(
        "INSERT OR IGNORE INTO wallets (user_id, balance) VALUES (?, ?)",
        (user_id, config.STARTING_WALLET_BALANCE),
    )
    cur = conn.execute("SELECT balance FROM wallets WHERE user_id = ?", (user_id,))
    return int(cur.fetchone()["balance"])


def get_wallet_balance(user_id: str) -> int:
    """
    Return the user's wallet balance, opening the wallet with the
    starting balance on first access.
    """
    conn = get_conn()
    try:
        balance = _ensure_wallet(conn, user_id)
        conn.commit()
        return balance
    finally:
        conn.close()


# ---------------------------
# Bookings: helpers
# ---------------------------

def _booking_id() -> str:
    return f"BK-{uuid4().hex[:10].upper()}"


def create_booking(
    user_id: str,
    flight_id: str,
    passengers: List[Dict[str, Any]],
    price: int,
    payment_method: str = "wallet",
    booked_at: Optional[dt] = None,
) -> List[Dict[str, Any]]:
    """
    Create one CONFIRMED booking row per passenger at the given unit price.

    Seats are decremented and, for wallet payments, the total is debited
    in the same transaction. Raises ValueError if the flight is unknown,
    has too few seats, or the wallet cannot cover the total.
    """
    if not passengers:
        raise ValueError("At least one passenger is required.")

    seats = len(passengers)
    total = price * seats
    parent_id = _booking_id()
    now = isoformat_utc(booked_at or utcnow())

    conn = get_conn()
    try:
        cur = conn.execute("SELECT available_seats FROM flights WHERE id = ?", (flight_id,))
        row = cur.fetchone()
        if row is None:
            raise ValueError("Flight not found")
        if int(row["available_seats"]) < seats:
            raise ValueError(
                f"Not enough seats available. This flight has only {row['available_seats']} seats remaining."
            )

        if payment_method == "wallet":
            balance = _ensure_wallet(conn, user_id)
            if balance < total:
                raise ValueError("Insufficient wallet balance")
            conn.execute(
                "UPDATE wallets SET balance = balance - ? WHERE user_id = ?",
                (total, user_id),
            )

        booking_ids = []
        for i, passenger in enumerate(passengers, start=1):
            booking_id = f"{parent_id}-{i}"
            booking_ids.append(booking_id)
            conn.execute(
                """
                INSERT INTO bookings (
                    id, parent_booking_id, user_id, flight_id,
                    passenger_name, passenger_email, passenger_phone,
                    passenger_number, total_passengers,
                    price, payment_method, status,
                    booking_date, updated_at, cancellation_reason
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    booking_id,
                    parent_id,
                    user_id,
                    flight_id,
                    passenger["name"],
                    passenger["email"],
                    passenger.get("phone"),
                    i,
                    seats,
                    price,
                    payment_method,
                    "CONFIRMED",
                    now,
                    now,
                    None,
                ),
            )

        conn.execute(
            "UPDATE flights SET available_seats = available_seats - ? WHERE id = ?",
            (seats, flight_id),
        )

        conn.commit()

        placeholders = ", ".join("?" for _ in booking_ids)
        cur = conn.execute(
            f"SELECT * FROM bookings WHERE id IN ({placeholders}) ORDER BY passenger_number",
            booking_ids,
        )
        rows = cur.fetchall()
    except Exception as e:
        conn.rollback()
        raise e
    finally:
        conn.close()

    return [dict(r) for r in rows]


def get_booking(booking_id: str) -> Optional[Dict[str, Any]]:
    conn = get_conn()
    try:
        cur = conn.execute("SELECT * FROM bookings WHERE id = ?", (booking_id,))
        row = cur.fetchone()
    finally:
        conn.close()

    if row is None:
        return None
    return dict(row)


def get_bookings_by_user(user_id: str) -> List[Dict[str, Any]]:
    conn = get_conn()
    try:
        cur = conn.execute(
            """
            SELECT * FROM bookings
            WHERE user_id = ?
            ORDER BY booking_date DESC, passenger_number ASC
            """,
            (user_id,),
        )
        rows = cur.fetchall()
    finally:
        conn.close()

    return [dict(r) for r in rows]


def cancel_booking(
    booking_id: str,
    cancellation_reason: Optional[str] = None,
) -> Optional[Dict[str, Any]]:
    """
    Mark a booking CANCELLED, restore its seat and refund wallet payments.

    Returns the updated booking, or None if it does not exist.
    Raises ValueError if it was already cancelled.
    """
    conn = get_conn()
    try:
        cur = conn.execute("SELECT * FROM bookings WHERE id = ?", (booking_id,))
        row = cur.fetchone()
        if row is None:
            return None
        if row["status"] == "CANCELLED":
            raise ValueError(f"Booking {booking_id} is already cancelled.")

        now = isoformat_utc(utcnow())
        conn.execute(
            """
            UPDATE bookings
            SET status = 'CANCELLED', updated_at = ?, cancellation_reason = ?
            WHERE id = ?
            """,
            (now, cancellation_reason, booking_id),
        )
        conn.execute(
            "UPDATE flights SET available_seats = available_seats + 1 WHERE id = ?",
            (row["flight_id"],),
        )
        if row["payment_method"] == "wallet":
            _ensure_wallet(conn, row["user_id"])
            conn.execute(
                "UPDATE wallets SET balance = balance + ? WHERE user_id = ?",
                (row["price"], row["user_id"]),
            )

        conn.commit()

        cur = conn.execute("SELECT * FROM bookings WHERE id = ?", (booking_id,))
        updated = cur.fetchone()
    except Exception as e:
        conn.rollback()
        raise e
    finally:
        conn.close()

    return dict(updated)


# ---------------------------
# Bookings: demand queries
# ---------------------------

def get_bookings_for_flight(flight_id: str) -> List[Dict[str, Any]]:
    """
    All bookings referencing a flight, regardless of date.
    """
    conn = get_conn()
    try:
        cur = conn.execute("SELECT * FROM bookings WHERE flight_id = ?", (flight_id,))
        rows = cur.fetchall()
    finally:
        conn.close()

    return [dict(r) for r in rows]


def count_bookings_since(flight_id: str, since: dt) -> int:
    """
    Count bookings for a flight made at or after `since`.
    Served by idx_bookings_flight_date.
    """
    conn = get_conn()
    try:
        cur = conn.execute(
            """
            SELECT COUNT(*) AS c FROM bookings
            WHERE flight_id = ? AND booking_date >= ?
            """,
            (flight_id, isoformat_utc(since)),
        )
        return int(cur.fetchone()["c"])
    finally:
        conn.close()


class SqliteBookingLookup:
    """
    Async view of the booking queries for the pricing layer.
    Queries run in a worker thread so the event loop is not blocked.
    """

    async def bookings_for_flight(self, flight_id: str) -> List[Dict[str, Any]]:
        return await asyncio.to_thread(get_bookings_for_flight, flight_id)

    async def count_bookings_since(self, flight_id: str, since: dt) -> int:
        return await asyncio.to_thread(count_bookings_since, flight_id, since)
