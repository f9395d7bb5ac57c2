import os
from datetime import datetime
from typing import Any, List, Dict, Optional
import logging
from pathlib import Path

import httpx
from pydantic import BaseModel, Field, field_validator
from mcp.server.fastmcp import FastMCP

# Initialize FastMCP server
mcp = FastMCP("flightsearch")

FLIGHT_API_BASE = os.environ.get("FLIGHT_API_BASE", "http://localhost:8000")

# -------------------------
# Logging setup
# -------------------------

# Default: log file sits next to this Python file
DEFAULT_LOG_PATH = Path(__file__).parent / "flightsearch.log"
LOG_FILE = Path(os.environ.get("FLIGHTSEARCH_LOG_FILE", str(DEFAULT_LOG_PATH)))

logger = logging.getLogger("flightsearch")
logger.setLevel(logging.INFO)

# Only add handlers once (important if the module is imported multiple times)
if not logger.handlers:
    # File handler ONLY, stdout belongs to the MCP stdio transport
    file_handler = logging.FileHandler(LOG_FILE, encoding="utf-8")
    file_handler.setLevel(logging.INFO)

    formatter = logging.Formatter(
        "%(asctime)s [%(levelname)s] %(message)s"
    )
    file_handler.setFormatter(formatter)

    logger.addHandler(file_handler)

logger.info("==== Flightsearch MCP server starting ====")
logger.info(f"Logging to file: {LOG_FILE.resolve()}")


# -------------------------
# Validation Models
# -------------------------

class FlightSearchValidation(BaseModel):
    """Validation model for flight search parameters."""
    origin: str = Field(..., min_length=3, max_length=3, pattern=r'^[A-Z]{3}$')
    destination: str = Field(..., min_length=3, max_length=3, pattern=r'^[A-Z]{3}$')
    date: str = Field(..., pattern=r'^\d{4}-\d{2}-\d{2}$')

    @field_validator('date')
    @classmethod
    def validate_date(cls, v):
        try:
            date_obj = datetime.strptime(v, '%Y-%m-%d').date()
        except ValueError:
            raise ValueError('Date must be in YYYY-MM-DD format')
        if date_obj < datetime.now().date():
            raise ValueError('Date cannot be in the past')
        return v


class FlightIdValidation(BaseModel):
    """Validation model for flight ID."""
    flight_id: str = Field(..., pattern=r'^FL-\d{6}$')


def validate_search_params(origin: str, destination: str, date: str) -> tuple[bool, Optional[str]]:
    """Validate flight search parameters. Returns (is_valid, error_message)."""
    try:
        FlightSearchValidation(origin=origin.upper(), destination=destination.upper(), date=date)
        return True, None
    except Exception as e:
        error_msg = str(e)
        if "origin" in error_msg.lower() or "destination" in error_msg.lower():
            return False, "Airport codes must be exactly 3 letters (e.g., DEL, BOM, BLR)."
        elif "date" in error_msg.lower():
            if "past" in error_msg.lower():
                return False, "Cannot search for flights in the past. Please select a future date."
            return False, "Invalid date format. Please use YYYY-MM-DD format (e.g., 2026-12-15)."
        else:
            return False, f"Validation error: {error_msg}"


def validate_flight_id(flight_id: str) -> tuple[bool, Optional[str]]:
    """Validate flight ID format. Returns (is_valid, error_message)."""
    try:
        FlightIdValidation(flight_id=flight_id)
        return True, None
    except Exception:
        return False, "Invalid flight ID format. Flight ID should be in format FL-XXXXXX (e.g., FL-001234)."


# -------------------------
# API Helper Functions
# -------------------------

async def fetch_flight(path: str, flight_id: str) -> Dict[str, Any] | None:
    """GET a single priced flight: `/flights/{id}` or `/flights/{id}/quote`."""
    url = f"{FLIGHT_API_BASE}{path}"

    try:
        logger.info(
            "Fetching flight from API",
            extra={"action": "fetch_flight", "flight_id": flight_id, "path": path}
        )
        async with httpx.AsyncClient() as client:
            response = await client.get(url, timeout=10.0)
            response.raise_for_status()
            return response.json()
    except httpx.HTTPStatusError as e:
        logger.error(
            "HTTP error fetching flight",
            extra={
                "action": "fetch_flight_error",
                "status_code": e.response.status_code,
                "flight_id": flight_id
            }
        )
        return None
    except Exception:
        logger.exception(
            "Unexpected error fetching flight",
            extra={"action": "fetch_flight_exception", "flight_id": flight_id}
        )
        return None


async def fetch_flights_from_api(
    origin: str,
    destination: str,
    date: str,
) -> List[Dict[str, Any]] | None:
    url = f"{FLIGHT_API_BASE}/flights"

    try:
        logger.info(
            "Fetching flights from API",
            extra={
                "action": "fetch_flights",
                "origin": origin,
                "destination": destination,
                "date": date
            }
        )
        async with httpx.AsyncClient() as client:
            response = await client.get(
                url,
                params={
                    "origin": origin,
                    "destination": destination,
                    "date": date,
                },
                timeout=10.0,
            )
            response.raise_for_status()
            flights = response.json()
            logger.info(
                "Flights retrieved successfully",
                extra={
                    "action": "fetch_flights_success",
                    "count": len(flights) if isinstance(flights, list) else 0
                }
            )
            return flights
    except httpx.HTTPStatusError as e:
        logger.error(
            "HTTP error fetching flights",
            extra={
                "action": "fetch_flights_error",
                "status_code": e.response.status_code,
                "origin": origin,
                "destination": destination
            }
        )
        return None
    except httpx.TimeoutException:
        logger.error(
            "Timeout fetching flights",
            extra={
                "action": "fetch_flights_timeout",
                "origin": origin,
                "destination": destination
            }
        )
        return None
    except Exception:
        logger.exception(
            "Unexpected error fetching flights",
            extra={
                "action": "fetch_flights_exception",
                "origin": origin,
                "destination": destination
            }
        )
        return None


def format_price(flight: Dict[str, Any]) -> str:
    price = f"₹{flight.get('price', 'N/A')}"
    if flight.get("price_increased") and flight.get("original_price") is not None:
        return f"{price} (was ₹{flight['original_price']}, high demand)"
    return price


def format_flight(flight: Dict[str, Any]) -> str:
    return (
        f"[{flight.get('id', 'UNKNOWN')}] "
        f"{flight.get('origin', '???')} → {flight.get('destination', '???')} | "
        f"Date: {flight.get('date', '????-??-??')} | "
        f"Airline: {flight.get('airline', 'Unknown')} | "
        f"Price: {format_price(flight)}"
    )


# -------------------------
# MCP tools
# -------------------------

@mcp.tool()
async def getflightbyid(flight_id: str) -> str:
    """Get details of a specific flight by its ID, at the current demand price."""
    logger.info(
        "getflightbyid tool called",
        extra={"tool": "getflightbyid", "flight_id": flight_id}
    )

    is_valid, error_msg = validate_flight_id(flight_id)
    if not is_valid:
        logger.warning(
            "Invalid flight ID format",
            extra={"tool": "getflightbyid", "flight_id": flight_id}
        )
        return f"❌ {error_msg}"

    flight = await fetch_flight(f"/flights/{flight_id}", flight_id)
    if flight is None:
        return f"❌ Flight not found: No flight exists with ID {flight_id}. Please check the flight ID and try again."
    return "✈️ " + format_flight(flight)


@mcp.tool()
async def get_flight_quote(flight_id: str) -> str:
    """
    Get the price a flight would be booked at right now.
    Use this before booking so the user sees the final fare.
    """
    logger.info(
        "get_flight_quote tool called",
        extra={"tool": "get_flight_quote", "flight_id": flight_id}
    )

    is_valid, error_msg = validate_flight_id(flight_id)
    if not is_valid:
        return f"❌ {error_msg}"

    flight = await fetch_flight(f"/flights/{flight_id}/quote", flight_id)
    if flight is None:
        return f"❌ Unable to quote flight {flight_id}. Please check the flight ID and try again."
    return "💰 Booking fare: " + format_flight(flight)


@mcp.tool()
async def search_flights(origin: str, destination: str, date: str) -> str:
    """Search for available flights between two airports on a specific date."""
    logger.info(
        "search_flights tool called",
        extra={
            "tool": "search_flights",
            "origin": origin,
            "destination": destination,
            "date": date
        }
    )

    # Normalize airport codes to uppercase
    origin = origin.upper().strip()
    destination = destination.upper().strip()
    date = date.strip()

    is_valid, error_msg = validate_search_params(origin, destination, date)
    if not is_valid:
        logger.warning(
            "Flight search validation failed",
            extra={"tool": "search_flights", "error": error_msg}
        )
        return f"❌ {error_msg}"

    if origin == destination:
        return "❌ Origin and destination cannot be the same airport."

    # Results are never cached: each search is demand the API must see
    flights = await fetch_flights_from_api(origin, destination, date)

    if flights is None:
        return "❌ Unable to search flights: The flight service is currently unavailable. Please try again in a few moments."

    if not flights:
        return f"🚫 No flights available from {origin} to {destination} on {date}.\n\nTry searching for:\n- A different date\n- Nearby airports\n- Alternative routes"

    surged = sum(1 for f in flights if f.get("price_increased"))
    result = f"✈️ Found {len(flights)} flight(s) from {origin} to {destination} on {date}:\n\n" + "\n".join(
        format_flight(f) for f in flights
    )
    if surged:
        result += f"\n\n⚠️ {surged} flight(s) are in high demand and currently priced 10% higher."
    return result


def main() -> None:
    logger.info("Running MCP server (transport=stdio)")
    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
