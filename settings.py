"""
Runtime configuration for the heating controller.

Values come from the environment (or a local .env file) so the same code runs
on the Pi and in tests without edits.
"""

import logging
import os
from zoneinfo import ZoneInfo

from dotenv import load_dotenv

load_dotenv()

# Database setup
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./heating.db")
# Hosted postgres URLs use postgres:// but SQLAlchemy needs postgresql://
if DATABASE_URL.startswith("postgres://"):
    DATABASE_URL = DATABASE_URL.replace("postgres://", "postgresql://", 1)

# Control loop
CONTROL_LOOP_INTERVAL_SEC = float(os.getenv("CONTROL_LOOP_INTERVAL_SEC", "10"))
DEVICE_TIMEOUT_SEC = float(os.getenv("DEVICE_TIMEOUT_SEC", "5"))
MAX_CONCURRENT_DEVICE_CALLS = int(os.getenv("MAX_CONCURRENT_DEVICE_CALLS", "4"))

# Thermostat rooms that don't set their own band get this one
DEFAULT_HYSTERESIS_C = float(os.getenv("DEFAULT_HYSTERESIS_C", "1.0"))

# Schedules are wall-clock times; unset means the host's local time
LOCAL_TIMEZONE = os.getenv("LOCAL_TIMEZONE") or None
LOCAL_TZ = ZoneInfo(LOCAL_TIMEZONE) if LOCAL_TIMEZONE else None

# Web server
HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", "3001"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FORMAT = "%(asctime)s [%(threadName)s] %(levelname)s %(name)s: %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"

if DEVICE_TIMEOUT_SEC <= 0:
    raise ValueError(f"{DEVICE_TIMEOUT_SEC=} must be positive")
if MAX_CONCURRENT_DEVICE_CALLS < 1:
    raise ValueError(f"{MAX_CONCURRENT_DEVICE_CALLS=} must be at least 1")


def configure_logging(level: str = LOG_LEVEL):
    logging.basicConfig(level=level, format=LOG_FORMAT, datefmt=LOG_DATEFMT)
