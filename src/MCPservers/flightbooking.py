import os
from pathlib import Path
import logging
from datetime import datetime
from typing import Any, Dict, Optional, List
import re

import httpx
from pydantic import BaseModel, EmailStr, Field, field_validator
from mcp.server.fastmcp import FastMCP

# -------------------------
# MCP server init
# -------------------------

mcp = FastMCP("booking")

BOOKING_API_BASE = os.environ.get("BOOKING_API_BASE", "http://localhost:8000")


# -------------------------
# Logging setup
# -------------------------

DEFAULT_LOG_PATH = Path(__file__).parent / "booking.log"
LOG_FILE = Path(os.environ.get("BOOKING_LOG_FILE", str(DEFAULT_LOG_PATH)))

logger = logging.getLogger("booking")
logger.setLevel(logging.INFO)

if not logger.handlers:
    file_handler = logging.FileHandler(LOG_FILE, encoding="utf-8")
    file_handler.setLevel(logging.INFO)

    formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(message)s")
    file_handler.setFormatter(formatter)

    logger.addHandler(file_handler)

logger.info("==== Booking MCP server starting ====")
logger.info(f"Logging to file: {LOG_FILE.resolve()}")
logger.info(f"Booking API base URL: {BOOKING_API_BASE}")


# -------------------------
# Validation Models
# -------------------------

class BookingValidation(BaseModel):
    """Validation model for booking inputs."""
    user_id: str = Field(..., min_length=1, max_length=100)
    flight_id: str = Field(..., pattern=r'^FL-\d{6}$')
    passenger_name: str = Field(..., min_length=2, max_length=100)
    passenger_email: EmailStr
    payment_method: str = Field(default="wallet", pattern=r'^(wallet|card)$')

    @field_validator('passenger_name')
    @classmethod
    def validate_name(cls, v):
        # Remove extra whitespace
        v = ' '.join(v.split())
        # Check if name contains only letters, spaces, hyphens, and apostrophes
        if not re.match(r"^[A-Za-z\s'-]+$", v):
            raise ValueError('Name must contain only letters, spaces, hyphens, and apostrophes')
        return v

    @field_validator('user_id')
    @classmethod
    def validate_user_id(cls, v):
        if not v.strip():
            raise ValueError('User ID cannot be empty')
        return v.strip()


class BookingIdValidation(BaseModel):
    """Validation model for booking ID."""
    booking_id: str = Field(..., pattern=r'^BK-[A-F0-9]{10}-\d+$')


def validate_booking_input(
    user_id: str,
    flight_id: str,
    passenger_name: str,
    passenger_email: str,
    payment_method: str,
) -> tuple[bool, Optional[str]]:
    """Validate booking inputs. Returns (is_valid, error_message)."""
    try:
        BookingValidation(
            user_id=user_id,
            flight_id=flight_id,
            passenger_name=passenger_name,
            passenger_email=passenger_email,
            payment_method=payment_method,
        )
        return True, None
    except Exception as e:
        error_msg = str(e)
        # Make error messages user-friendly
        if "flight_id" in error_msg.lower():
            return False, "Invalid flight ID format. Flight ID should be in format FL-XXXXXX (e.g., FL-001234)."
        elif "passenger_email" in error_msg.lower():
            return False, "Invalid email address format. Please provide a valid email."
        elif "passenger_name" in error_msg.lower():
            return False, "Invalid passenger name. Name should contain only letters, spaces, hyphens, and apostrophes."
        elif "payment_method" in error_msg.lower():
            return False, "Invalid payment method. Use 'wallet' or 'card'."
        elif "user_id" in error_msg.lower():
            return False, "Invalid user ID provided."
        else:
            return False, f"Validation error: {error_msg}"


def validate_booking_id(booking_id: str) -> tuple[bool, Optional[str]]:
    """Validate booking ID format. Returns (is_valid, error_message)."""
    try:
        BookingIdValidation(booking_id=booking_id)
        return True, None
    except Exception:
        return False, "Invalid booking ID format. Booking ID should look like BK-1A2B3C4D5E-1."


def _error_detail(response: httpx.Response) -> Optional[str]:
    try:
        detail = response.json().get("detail")
    except Exception:
        return None
    return detail if isinstance(detail, str) else None


# -------------------------
# API Helper Functions
# -------------------------

async def create_booking_via_api(
    user_id: str,
    flight_id: str,
    passenger_name: str,
    passenger_email: str,
    passenger_phone: Optional[str] = None,
    payment_method: str = "wallet",
) -> Dict[str, Any]:
    """Call the booking API to create a new booking."""
    url = f"{BOOKING_API_BASE}/bookings"

    payload = {
        "user_id": user_id,
        "flight_id": flight_id,
        "passengers": [
            {"name": passenger_name, "email": passenger_email, "phone": passenger_phone}
        ],
        "payment_method": payment_method,
    }

    try:
        logger.info(
            "Creating booking via API",
            extra={
                "action": "create_booking",
                "user_id": user_id,
                "flight_id": flight_id,
                "payment_method": payment_method
            }
        )
        async with httpx.AsyncClient() as client:
            response = await client.post(url, json=payload, timeout=10.0)
            response.raise_for_status()
            result = response.json()
            logger.info(
                "Booking created successfully",
                extra={
                    "action": "create_booking_success",
                    "parent_booking_id": result.get("parent_booking_id"),
                    "user_id": user_id
                }
            )
            return result
    except httpx.HTTPStatusError as e:
        logger.error(
            "HTTP error creating booking",
            extra={
                "action": "create_booking_error",
                "status_code": e.response.status_code,
                "user_id": user_id
            }
        )
        detail = _error_detail(e.response)
        if e.response.status_code in (400, 404) and detail:
            return {"error": detail}
        return {"error": "Unable to create booking. The booking service is currently unavailable. Please try again later."}
    except httpx.TimeoutException:
        logger.error(
            "Timeout creating booking",
            extra={"action": "create_booking_timeout", "user_id": user_id}
        )
        return {"error": "Booking request timed out. Please try again."}
    except Exception:
        logger.exception(
            "Unexpected error creating booking",
            extra={"action": "create_booking_exception", "user_id": user_id}
        )
        return {"error": "An unexpected error occurred while creating your booking. Please contact support."}


async def get_booking_via_api(booking_id: str) -> Optional[Dict[str, Any]]:
    """Call the booking API to get a single booking."""
    url = f"{BOOKING_API_BASE}/bookings/{booking_id}"

    try:
        logger.info(
            "Getting booking via API",
            extra={"action": "get_booking", "booking_id": booking_id}
        )
        async with httpx.AsyncClient() as client:
            response = await client.get(url, timeout=10.0)
            if response.status_code == 404:
                logger.info(
                    "Booking not found",
                    extra={"action": "get_booking_not_found", "booking_id": booking_id}
                )
                return None
            response.raise_for_status()
            return response.json()
    except httpx.HTTPStatusError as e:
        logger.error(
            "HTTP error getting booking",
            extra={
                "action": "get_booking_error",
                "status_code": e.response.status_code,
                "booking_id": booking_id
            }
        )
        return None
    except Exception:
        logger.exception(
            "Unexpected error getting booking",
            extra={"action": "get_booking_exception", "booking_id": booking_id}
        )
        return None


async def get_user_bookings_via_api(user_id: str) -> List[Dict[str, Any]]:
    """Call the booking API to get all bookings for a user."""
    url = f"{BOOKING_API_BASE}/bookings"

    try:
        logger.info(
            "Getting user bookings via API",
            extra={"action": "get_user_bookings", "user_id": user_id}
        )
        async with httpx.AsyncClient() as client:
            response = await client.get(url, params={"user_id": user_id}, timeout=10.0)
            response.raise_for_status()
            return response.json()
    except httpx.HTTPStatusError as e:
        logger.error(
            "HTTP error getting user bookings",
            extra={
                "action": "get_user_bookings_error",
                "status_code": e.response.status_code,
                "user_id": user_id
            }
        )
        return []
    except Exception:
        logger.exception(
            "Unexpected error getting user bookings",
            extra={"action": "get_user_bookings_exception", "user_id": user_id}
        )
        return []


async def cancel_booking_via_api(booking_id: str, reason: Optional[str] = None) -> Dict[str, Any]:
    """Call the booking API to cancel a booking (seat restored, wallet refunded)."""
    url = f"{BOOKING_API_BASE}/bookings/{booking_id}"
    params = {"reason": reason} if reason else None

    try:
        logger.info(
            "Cancelling booking via API",
            extra={"action": "cancel_booking", "booking_id": booking_id}
        )
        async with httpx.AsyncClient() as client:
            response = await client.delete(url, params=params, timeout=10.0)
            response.raise_for_status()
            return response.json()
    except httpx.HTTPStatusError as e:
        logger.error(
            "HTTP error cancelling booking",
            extra={
                "action": "cancel_booking_error",
                "status_code": e.response.status_code,
                "booking_id": booking_id
            }
        )
        if e.response.status_code == 404:
            return {"error": "Booking not found."}
        if e.response.status_code == 400:
            return {"error": _error_detail(e.response) or "Booking cannot be cancelled."}
        return {"error": "Unable to cancel booking. The booking service is currently unavailable. Please try again later."}
    except httpx.TimeoutException:
        logger.error(
            "Timeout cancelling booking",
            extra={"action": "cancel_booking_timeout", "booking_id": booking_id}
        )
        return {"error": "Booking cancellation request timed out. Please try again."}
    except Exception:
        logger.exception(
            "Unexpected error cancelling booking",
            extra={"action": "cancel_booking_exception", "booking_id": booking_id}
        )
        return {"error": "An unexpected error occurred while cancelling your booking. Please contact support."}


async def get_wallet_via_api(user_id: str) -> Optional[Dict[str, Any]]:
    url = f"{BOOKING_API_BASE}/wallets/{user_id}"

    try:
        async with httpx.AsyncClient() as client:
            response = await client.get(url, timeout=10.0)
            response.raise_for_status()
            return response.json()
    except Exception:
        logger.exception(
            "Error getting wallet",
            extra={"action": "get_wallet_exception", "user_id": user_id}
        )
        return None


# -------------------------
# Helpers
# -------------------------

def format_booking(booking: Dict[str, Any]) -> str:
    """
    Turn a booking row into a human-readable string.
    """
    name = booking.get("passenger_name", "Unknown Passenger")
    email = booking.get("passenger_email", "unknown@example.com")
    status = booking.get('status', 'UNKNOWN')

    status_emoji = {
        'CONFIRMED': '✅',
        'CANCELLED': '❌'
    }.get(status, '❓')

    booked = booking.get('booking_date', '')
    if booked:
        try:
            parsed = datetime.fromisoformat(booked.replace('Z', ''))
            booked = parsed.strftime('%B %d, %Y at %I:%M %p UTC')
        except ValueError:
            pass

    return (
        f"🎫 **Booking {booking.get('id', 'UNKNOWN')}**\n"
        f"  ✈️ Flight: {booking.get('flight_id', 'UNKNOWN')}\n"
        f"  👤 Passenger: {name}\n"
        f"  📧 Email: {email}\n"
        f"  💰 Fare: ₹{booking.get('price', '?')} ({booking.get('payment_method', '?')})\n"
        f"  {status_emoji} Status: {status}\n"
        f"  📅 Booked: {booked}"
    ).rstrip()


# -------------------------
# MCP tools
# -------------------------

@mcp.tool()
async def book_flight(
    user_id: str,
    flight_id: str,
    passenger_name: str,
    passenger_email: str,
    passenger_phone: Optional[str] = None,
    payment_method: str = "wallet",
) -> str:
    """
    Book a seat on a flight for one passenger. The fare is the current
    booking price, which may include a high-demand surcharge.
    payment_method is 'wallet' (debits the user's wallet) or 'card'.
    """
    logger.info(
        "book_flight tool called",
        extra={
            "tool": "book_flight",
            "user_id": user_id,
            "flight_id": flight_id,
            "payment_method": payment_method
        }
    )

    is_valid, error_msg = validate_booking_input(
        user_id, flight_id, passenger_name, passenger_email, payment_method
    )
    if not is_valid:
        logger.warning(
            "Booking validation failed",
            extra={"tool": "book_flight", "error": error_msg}
        )
        return f"❌ Validation Error: {error_msg}"

    result = await create_booking_via_api(
        user_id=user_id,
        flight_id=flight_id,
        passenger_name=' '.join(passenger_name.split()),
        passenger_email=passenger_email,
        passenger_phone=passenger_phone,
        payment_method=payment_method,
    )

    if "error" in result:
        return f"❌ Booking Failed: {result['error']}"

    lines = ["✅ Booking Confirmed!", ""]
    lines.extend(format_booking(b) for b in result.get("bookings", []))
    if result.get("price_increased"):
        lines.append(
            f"\n⚠️ High demand: fare raised from ₹{result.get('original_price')} to ₹{result.get('unit_price')}."
        )
    if payment_method == "wallet":
        lines.append(f"\n👛 Wallet balance: ₹{result.get('wallet_balance')}")
    return "\n".join(lines)


@mcp.tool()
async def cancel_booking(booking_id: str, reason: Optional[str] = None) -> str:
    """
    Cancel an existing booking. Wallet payments are refunded.
    """
    logger.info(
        "cancel_booking tool called",
        extra={"tool": "cancel_booking", "booking_id": booking_id, "reason": reason}
    )

    is_valid, error_msg = validate_booking_id(booking_id)
    if not is_valid:
        return f"❌ {error_msg}"

    result = await cancel_booking_via_api(booking_id, reason)
    if "error" in result:
        return f"❌ Cancellation Failed: {result['error']}"

    info = "✅ Booking Cancelled Successfully!\n\n" + format_booking(result)
    if reason:
        info += f"\n  Cancellation Reason: {reason}"
    if result.get("payment_method") == "wallet":
        info += f"\n\n₹{result.get('price')} has been refunded to your wallet."
    return info


@mcp.tool()
async def get_booking_details(booking_id: str) -> str:
    """
    Retrieve details of a booking by its ID.
    """
    logger.info(
        "get_booking_details tool called",
        extra={"tool": "get_booking_details", "booking_id": booking_id}
    )

    is_valid, error_msg = validate_booking_id(booking_id)
    if not is_valid:
        return f"❌ {error_msg}"

    booking = await get_booking_via_api(booking_id)
    if booking is None:
        return f"❌ No booking found with ID {booking_id}. Please check the booking ID and try again."

    return format_booking(booking)


@mcp.tool()
async def get_user_bookings(user_id: str) -> str:
    """
    Retrieve all bookings for a given user ID.
    Use this when the user asks about "my bookings", "my reservations", or "my flights".
    """
    logger.info(
        "get_user_bookings tool called",
        extra={"tool": "get_user_bookings", "user_id": user_id}
    )

    if not user_id or not user_id.strip():
        return "❌ User ID cannot be empty."

    user_bookings = await get_user_bookings_via_api(user_id)

    if not user_bookings:
        return f"📭 No bookings found for user {user_id}. You haven't made any flight bookings yet."

    lines = [
        f"{i+1}. {format_booking(b)}"
        for i, b in enumerate(user_bookings)
    ]
    return "\n\n".join(lines)


@mcp.tool()
async def get_wallet_balance(user_id: str) -> str:
    """
    Show the user's wallet balance.
    """
    if not user_id or not user_id.strip():
        return "❌ User ID cannot be empty."

    wallet = await get_wallet_via_api(user_id)
    if wallet is None:
        return "❌ Unable to fetch wallet balance right now. Please try again later."
    return f"👛 Wallet balance for {user_id}: ₹{wallet['balance']}"


# -------------------------
# Entry point
# -------------------------

def main() -> None:
    logger.info("Running Booking MCP server (transport=stdio)")
    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
