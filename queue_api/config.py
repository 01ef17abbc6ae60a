# queue_api/config.py
import os
from typing import Dict

from dotenv import load_dotenv

load_dotenv()

# --- Storage ---
DATABASE_URL = os.getenv("QUEUE_DATABASE_URL", "sqlite:///./live_queue.db")
STORE_BACKEND = os.getenv("QUEUE_STORE", "sql")  # "sql" or "memory"

# Seconds between snapshot polls when watching the SQL store
WATCH_INTERVAL = float(os.getenv("QUEUE_WATCH_INTERVAL", "1.0"))

# --- Wait estimation ---
WAIT_ESTIMATOR = os.getenv("QUEUE_WAIT_ESTIMATOR", "flat")  # "flat" or "consult_aware"
DEFAULT_SERVICE_MINUTES = int(os.getenv("QUEUE_DEFAULT_SERVICE_MINUTES", "20"))

# Average consult duration (minutes) per department
BASE_SERVICE_MINUTES: Dict[str, int] = {
    "Emergency": 10,
    "Cardiology": 25,
    "Neurology": 30,
    "Orthopedics": 20,
    "Pediatrics": 15,
    "Gynecology": 20,
    "Dermatology": 15,
    "Ophthalmology": 15,
    "ENT": 15,
    "General Medicine": 20,
    "Internal Medicine": 20,
    "Surgery": 25,
    "Oncology": 30,
    "Radiation Therapy": 35,
    "Chemotherapy": 40,
}

# --- Logging ---
LOG_LEVEL = os.getenv("QUEUE_LOG_LEVEL", "INFO")


def parse_service_minutes(raw: str) -> Dict[str, int]:
    """Parse overrides like "Cardiology=25,ENT=10" into a dict."""
    overrides = {}
    for item in raw.split(","):
        if not item.strip():
            continue
        department, sep, minutes = item.partition("=")
        if not sep:
            raise ValueError(f"Invalid service minutes entry: {item!r}")
        overrides[department.strip()] = int(minutes)
    return overrides


def load_service_minutes() -> Dict[str, int]:
    table = dict(BASE_SERVICE_MINUTES)
    table.update(parse_service_minutes(os.getenv("QUEUE_SERVICE_MINUTES", "")))
    return table
