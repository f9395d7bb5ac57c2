"""
Centralized configuration for the flight booking and demand pricing backend.
"""

import datetime
import os
from decimal import Decimal
from pathlib import Path

from dotenv import load_dotenv

BASE_DIR = Path(__file__).parent

# Load .env from the same directory as this script
load_dotenv(dotenv_path=BASE_DIR / ".env")

# ---------------------------
# Database Configuration
# ---------------------------

DB_PATH = Path(os.getenv("FLYSCAPE_DB_PATH", str(BASE_DIR / "flight_app.db")))

# ---------------------------
# Logging
# ---------------------------

LOG_FILE = Path(os.getenv("FLIGHT_API_LOG_FILE", str(BASE_DIR / "flight_api.log")))

# ---------------------------
# Demand pricing
# ---------------------------

ACTIVITY_WINDOW = datetime.timedelta(minutes=int(os.getenv("ACTIVITY_WINDOW_MINUTES", "5")))
ESCALATION_WINDOW = datetime.timedelta(minutes=int(os.getenv("ESCALATION_WINDOW_MINUTES", "10")))
ACTIVITY_THRESHOLD = int(os.getenv("ACTIVITY_THRESHOLD", "3"))
BOOKING_FREQUENCY_THRESHOLD = int(os.getenv("BOOKING_FREQUENCY_THRESHOLD", "3"))
ESCALATION_RATE = Decimal(os.getenv("ESCALATION_RATE", "1.10"))

# activity older than the longest window is never read again
ACTIVITY_RETENTION = max(ACTIVITY_WINDOW, ESCALATION_WINDOW)

# ---------------------------
# Wallet
# ---------------------------

STARTING_WALLET_BALANCE = int(os.getenv("STARTING_WALLET_BALANCE", "50000"))

# ---------------------------
# Flights Generation Config
# ---------------------------

AIRPORTS = [
    "DEL", "BOM", "BLR", "MAA", "CCU", "HYD",
    "PNQ", "AMD", "GOI", "JAI", "COK", "LKO",
]

AIRLINES = [
    "IndiGo",
    "Air India",
    "SpiceJet",
    "Vistara",
    "GoAir",
    "AirAsia India",
]

MIN_PRICE = 3000
MAX_PRICE = 15000

BASE_DATE = datetime.date.today() + datetime.timedelta(days=1)
NUM_DAYS = 60              # how many days forward to generate
TARGET_FLIGHTS = int(os.getenv("TARGET_FLIGHTS", "20000"))
