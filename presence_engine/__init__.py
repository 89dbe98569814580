"""Presence & Location Confidence Engine

- Configuration cache with defaults (config_store.py)
- Entry/exit confidence scoring and policy (scoring.py, entry_policy.py)
- Mode-aware RFID location resolution (location.py)
- SQLite persistence (database.py, repository.py)
"""

from presence_engine.engine import PresenceEngine
from presence_engine.exceptions import (
    ConfidenceRejected,
    ConflictError,
    ExitStillInZone,
    NotFoundError,
    PresenceError,
    RecentEntryConflict,
    ValidationError,
)
from presence_engine.models import EntryType, GpsCoordinate, ScanMode, Zone

__version__ = "1.0.0"

__all__ = [
    "PresenceEngine",
    "PresenceError",
    "ValidationError",
    "NotFoundError",
    "RecentEntryConflict",
    "ExitStillInZone",
    "ConfidenceRejected",
    "ConflictError",
    "EntryType",
    "GpsCoordinate",
    "ScanMode",
    "Zone",
]
