"""
Normalization of the timestamp shapes found in booking records.

Booking dates arrive as ISO-8601 strings (our own rows), as timestamp
objects or dicts carrying epoch ``seconds`` (document store exports), or as
date-like wrappers exposing ``to_date()`` / ``toDate()``. ``to_instant``
turns all of them into an aware UTC ``datetime`` or explains why it could not.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Union


@dataclass(frozen=True)
class Ok:
    instant: datetime


@dataclass(frozen=True)
class Err:
    reason: str


InstantResult = Union[Ok, Err]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    # naive datetimes are stored and produced as UTC throughout the backend
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def isoformat_utc(value: datetime) -> str:
    """
    Serialize an instant the way every stored timestamp is written.

    Fixed width with a trailing ``Z`` so that plain string comparison in
    SQLite orders instants correctly.
    """
    return _as_utc(value).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def _from_epoch(seconds: Any, nanoseconds: Any = 0) -> InstantResult:
    if isinstance(seconds, bool) or not isinstance(seconds, (int, float)):
        return Err(f"seconds is not numeric: {seconds!r}")
    if isinstance(nanoseconds, bool) or not isinstance(nanoseconds, (int, float)):
        return Err(f"nanoseconds is not numeric: {nanoseconds!r}")
    try:
        return Ok(datetime.fromtimestamp(seconds + nanoseconds / 1e9, tz=timezone.utc))
    except (OverflowError, OSError, ValueError) as e:
        return Err(f"epoch out of range: {e}")


def to_instant(value: Any) -> InstantResult:
    if value is None:
        return Err("missing timestamp")

    if isinstance(value, datetime):
        return Ok(_as_utc(value))

    if isinstance(value, str):
        text = value.strip()
        if not text:
            return Err("empty timestamp string")
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            return Ok(_as_utc(datetime.fromisoformat(text)))
        except ValueError:
            return Err(f"unparseable timestamp string: {value!r}")

    if isinstance(value, dict):
        if "seconds" in value:
            return _from_epoch(value["seconds"], value.get("nanoseconds", 0))
        return Err(f"mapping without seconds: {sorted(value)!r}")

    for accessor in ("to_date", "toDate"):
        method = getattr(value, accessor, None)
        if callable(method):
            try:
                converted = method()
            except Exception as e:
                return Err(f"{accessor}() failed: {e}")
            if isinstance(converted, datetime):
                return Ok(_as_utc(converted))
            return Err(f"{accessor}() returned {type(converted).__name__}")

    if hasattr(value, "seconds"):
        return _from_epoch(getattr(value, "seconds"), getattr(value, "nanoseconds", 0))

    return Err(f"unsupported timestamp type: {type(value).__name__}")
