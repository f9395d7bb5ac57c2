"""
Per-flight search and booking activity, mirrored to a key-value store.
"""

import json
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional

from config import ACTIVITY_RETENTION
from storage import KeyValueStore
from timestamps import Ok, isoformat_utc, to_instant, utcnow

logger = logging.getLogger("activity")

SEARCH_HISTORY_KEY = "search_history"
BOOKING_HISTORY_KEY = "booking_history"


@dataclass
class ActivityLog:
    flight_id: str
    search_timestamps: List[datetime] = field(default_factory=list)
    booking_timestamps: List[datetime] = field(default_factory=list)


class ActivityRecorder:
    """
    Records timestamped search and booking events per flight id.

    One recorder is shared by everything that tracks demand in the process.
    Each write drops timestamps older than ``retention`` for every flight,
    forgets flights left with none, and mirrors the map to ``store``.
    Recording blocks on the store, so async callers should run it in a
    worker thread.
    """

    def __init__(
        self,
        store: KeyValueStore,
        clock: Callable[[], datetime] = utcnow,
        retention: timedelta = ACTIVITY_RETENTION,
    ) -> None:
        self.store = store
        self.clock = clock
        self.retention = retention
        self._lock = threading.Lock()
        self._searches = self._load(SEARCH_HISTORY_KEY)
        self._bookings = self._load(BOOKING_HISTORY_KEY)

    # ------------------------------------------------------------------ #
    # recording
    # ------------------------------------------------------------------ #
    def record_search(self, flight_id: Optional[str]) -> None:
        self._record([flight_id], self._searches, SEARCH_HISTORY_KEY)

    def record_searches(self, flight_ids: Iterable[Optional[str]]) -> None:
        """Record one search per flight id with a single store write."""
        self._record(flight_ids, self._searches, SEARCH_HISTORY_KEY)

    def record_booking(self, flight_id: Optional[str]) -> None:
        self._record([flight_id], self._bookings, BOOKING_HISTORY_KEY)

    def _record(
        self,
        flight_ids: Iterable[Optional[str]],
        history: Dict[str, List[datetime]],
        key: str,
    ) -> None:
        valid = []
        for flight_id in flight_ids:
            if not flight_id:
                logger.error(
                    "No flight id provided, ignoring activity",
                    extra={"action": f"record_{key}", "flight_id": flight_id},
                )
                continue
            valid.append(flight_id)
        if not valid:
            return

        # writers may run on worker threads; readers only ever see whole lists
        with self._lock:
            now = self.clock()
            self._prune(history, now - self.retention)
            for flight_id in valid:
                history[flight_id] = history.get(flight_id, []) + [now]

            try:
                self._save(key, history)
            except Exception:
                logger.exception(
                    "Failed to mirror activity to store",
                    extra={"action": f"record_{key}_persist", "flight_ids": valid},
                )

    @staticmethod
    def _prune(history: Dict[str, List[datetime]], cutoff: datetime) -> None:
        for flight_id in list(history):
            kept = [ts for ts in history[flight_id] if ts > cutoff]
            if kept:
                history[flight_id] = kept
            else:
                del history[flight_id]

    # ------------------------------------------------------------------ #
    # reading
    # ------------------------------------------------------------------ #
    def searches_since(self, flight_id: str, since: datetime) -> List[datetime]:
        return [ts for ts in self._searches.get(flight_id, []) if ts > since]

    def bookings_since(self, flight_id: str, since: datetime) -> List[datetime]:
        return [ts for ts in self._bookings.get(flight_id, []) if ts > since]

    def log(self, flight_id: str) -> ActivityLog:
        return ActivityLog(
            flight_id=flight_id,
            search_timestamps=list(self._searches.get(flight_id, [])),
            booking_timestamps=list(self._bookings.get(flight_id, [])),
        )

    # ------------------------------------------------------------------ #
    # persistence
    # ------------------------------------------------------------------ #
    def _load(self, key: str) -> Dict[str, List[datetime]]:
        try:
            raw = self.store.get(key)
        except Exception:
            logger.exception("Failed to read activity from store", extra={"action": f"load_{key}"})
            return {}
        if not raw:
            return {}

        try:
            stored = json.loads(raw)
        except json.JSONDecodeError:
            stored = None
        if not isinstance(stored, dict):
            logger.error("Stored activity is malformed, starting empty", extra={"action": f"load_{key}"})
            return {}

        history: Dict[str, List[datetime]] = {}
        for flight_id, values in stored.items():
            if not isinstance(values, list):
                continue
            parsed = [to_instant(v) for v in values]
            history[flight_id] = [p.instant for p in parsed if isinstance(p, Ok)]
        return history

    def _save(self, key: str, history: Dict[str, List[datetime]]) -> None:
        payload = {
            flight_id: [isoformat_utc(ts) for ts in stamps]
            for flight_id, stamps in history.items()
        }
        self.store.set(key, json.dumps(payload))
