"""
Demand-based price escalation.

Two independent triggers raise a flight's displayed price by 10%:

* ``PriceEscalationEvaluator.should_escalate``: search and booking activity
  in the trailing window, with a sticky escalation window so a surge price
  does not flicker back down while demand is still settling.
* ``check_booking_frequency``: bookings committed in the trailing window,
  evaluated when a booking page is opened. It never touches the sticky state.

``apply_escalation`` turns either decision into an adjusted flight record.
"""

import asyncio
import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Callable, Dict, List, Optional, Protocol

from activity import ActivityRecorder
from config import (
    ACTIVITY_THRESHOLD,
    ACTIVITY_WINDOW,
    BOOKING_FREQUENCY_THRESHOLD,
    ESCALATION_RATE,
    ESCALATION_WINDOW,
)
from storage import KeyValueStore
from timestamps import Err, Ok, isoformat_utc, to_instant, utcnow

logger = logging.getLogger("pricing")

PRICE_INCREASE_TIMES_KEY = "price_increase_times"


class BookingLookup(Protocol):
    """Read access to the booking store used by both escalation triggers."""

    async def bookings_for_flight(self, flight_id: str) -> List[Dict[str, Any]]:
        """All bookings for a flight. Equality filter only."""
        ...

    async def count_bookings_since(self, flight_id: str, since: datetime) -> int:
        """Bookings for a flight with booking_date >= since."""
        ...


@dataclass
class EscalationState:
    flight_id: str
    escalated_at: Optional[datetime] = None


# ---------------------------
# Price adjustment
# ---------------------------

def round_half_up(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def apply_escalation(
    flight: Dict[str, Any],
    decision: bool,
    rate: Decimal = ESCALATION_RATE,
) -> Dict[str, Any]:
    """
    Return a copy of ``flight`` with the escalated price applied.

    The increase is always computed from the canonical base price:
    ``original_price`` when the record was escalated before, else ``price``.
    Escalating an already escalated record therefore yields the same price.
    """
    result = dict(flight)
    if not decision:
        return result

    base = flight.get("original_price")
    if base is None:
        base = flight["price"]
        result["original_price"] = base

    result["price"] = round_half_up(Decimal(str(base)) * rate)
    result["price_increased"] = True
    return result


# ---------------------------
# Search-activity trigger
# ---------------------------

class PriceEscalationEvaluator:
    def __init__(
        self,
        recorder: ActivityRecorder,
        bookings: BookingLookup,
        store: KeyValueStore,
        clock: Callable[[], datetime] = utcnow,
        activity_window: timedelta = ACTIVITY_WINDOW,
        escalation_window: timedelta = ESCALATION_WINDOW,
        threshold: int = ACTIVITY_THRESHOLD,
    ) -> None:
        self.recorder = recorder
        self.bookings = bookings
        self.store = store
        self.clock = clock
        self.activity_window = activity_window
        self.escalation_window = escalation_window
        self.threshold = threshold
        self._escalations = self._load()
        self._save_lock = asyncio.Lock()

    def state(self, flight_id: str) -> EscalationState:
        return EscalationState(flight_id=flight_id, escalated_at=self._escalations.get(flight_id))

    async def should_escalate(self, flight_id: Optional[str]) -> bool:
        if not flight_id:
            logger.error(
                "No flight id provided to should_escalate",
                extra={"action": "should_escalate_invalid"},
            )
            return False

        try:
            now = self.clock()

            escalated_at = self._escalations.get(flight_id)
            if escalated_at is not None:
                if now - escalated_at < self.escalation_window:
                    logger.info(
                        f"Flight {flight_id} escalated at {isoformat_utc(escalated_at)}, keeping increase",
                        extra={"action": "should_escalate_sticky", "flight_id": flight_id},
                    )
                    return True
                logger.info(
                    f"Flight {flight_id} escalation expired, re-evaluating",
                    extra={"action": "should_escalate_expired", "flight_id": flight_id},
                )
                del self._escalations[flight_id]
                await self._save()

            since = now - self.activity_window

            # repeated searches inside one minute count as a single unit of demand
            search_minutes = {
                (ts.hour, ts.minute) for ts in self.recorder.searches_since(flight_id, since)
            }
            remote_bookings = await self._recent_remote_bookings(flight_id, since)
            local_bookings = len(self.recorder.bookings_since(flight_id, since))

            total = len(search_minutes) + remote_bookings + local_bookings
            decision = total >= self.threshold

            if decision:
                self._escalations[flight_id] = now
                await self._save()

            logger.info(
                f"Flight {flight_id} activity: {len(search_minutes)} unique search minutes, "
                f"{remote_bookings} stored bookings, {local_bookings} local bookings. "
                f"Total: {total}. Increase price: {decision}",
                extra={"action": "should_escalate", "flight_id": flight_id},
            )
            return decision
        except Exception:
            logger.exception(
                f"Error checking price increase for flight {flight_id}",
                extra={"action": "should_escalate_exception", "flight_id": flight_id},
            )
            return False

    async def _recent_remote_bookings(self, flight_id: str, since: datetime) -> int:
        try:
            records = await self.bookings.bookings_for_flight(flight_id)
        except Exception:
            logger.exception(
                f"Error fetching recent bookings for flight {flight_id}",
                extra={"action": "recent_bookings_error", "flight_id": flight_id},
            )
            return 0

        count = 0
        for record in records:
            if not isinstance(record, Mapping):
                continue
            result = to_instant(record.get("booking_date"))
            if isinstance(result, Err):
                logger.warning(
                    f"Skipping booking with unusable booking_date: {result.reason}",
                    extra={"action": "recent_bookings_skip", "flight_id": flight_id},
                )
                continue
            if result.instant >= since:
                count += 1
        return count

    def _load(self) -> Dict[str, datetime]:
        try:
            raw = self.store.get(PRICE_INCREASE_TIMES_KEY)
            stored = json.loads(raw) if raw else {}
        except Exception:
            logger.exception(
                "Error parsing stored price increase times",
                extra={"action": "load_price_increase_times"},
            )
            return {}
        if not isinstance(stored, dict):
            return {}

        escalations: Dict[str, datetime] = {}
        for flight_id, value in stored.items():
            result = to_instant(value)
            if isinstance(result, Ok):
                escalations[flight_id] = result.instant
        return escalations

    async def _save(self) -> None:
        # serialized so an older snapshot never lands after a newer one
        async with self._save_lock:
            payload = {flight_id: isoformat_utc(ts) for flight_id, ts in self._escalations.items()}
            try:
                await asyncio.to_thread(self.store.set, PRICE_INCREASE_TIMES_KEY, json.dumps(payload))
            except Exception:
                logger.exception(
                    "Failed to mirror price increase times to store",
                    extra={"action": "save_price_increase_times"},
                )


# ---------------------------
# Booking-commit trigger
# ---------------------------

async def check_booking_frequency(
    flight: Dict[str, Any],
    bookings: BookingLookup,
    now: Optional[datetime] = None,
    window: timedelta = ACTIVITY_WINDOW,
    threshold: int = BOOKING_FREQUENCY_THRESHOLD,
) -> Dict[str, Any]:
    """
    Price a flight for the booking page from recent committed bookings.

    Returns the escalated record when ``threshold`` or more bookings were
    made within ``window``, otherwise an unchanged copy. Lookup failures
    also yield an unchanged copy.
    """
    flight_id = flight.get("id")
    if not flight_id:
        logger.error(
            "No flight id provided to check_booking_frequency",
            extra={"action": "booking_frequency_invalid"},
        )
        return dict(flight)

    since = (now or utcnow()) - window
    try:
        recent = await bookings.count_bookings_since(flight_id, since)
    except Exception:
        logger.exception(
            f"Error checking booking frequency for flight {flight_id}",
            extra={"action": "booking_frequency_error", "flight_id": flight_id},
        )
        return dict(flight)

    decision = recent >= threshold
    logger.info(
        f"Recent bookings for flight {flight_id}: {recent}. Increase price: {decision}",
        extra={"action": "booking_frequency", "flight_id": flight_id},
    )
    return apply_escalation(flight, decision)
