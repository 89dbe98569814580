"""
Cached access to the library_config table.

The whole table is loaded into memory and refreshed once the snapshot is older
than the TTL. If the table cannot be read the store falls back to a hardcoded
default set instead of raising, so entry logging and scanning keep working while
the database is unavailable.
"""

import json
import logging
import math
import time
from typing import Any, Callable, Dict, Iterable, Optional, Tuple

from presence_engine.exceptions import ValidationError
from presence_engine.models import GpsCoordinate

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 300

DEFAULT_CONFIG: Dict[str, Any] = {
    "demo_mode": True,
    "production_mode_enabled": False,
    "scan_debounce_seconds": 300,
    "entry_confidence_threshold": 80,
    "entry_manual_threshold": 50,
    "entry_debounce_minutes": 5,
    "library_open_hour": 8,
    "library_close_hour": 22,
    "library_wifi_ssid": "LibraryWiFi",
    "gps_library_lat": 37.7749,
    "gps_library_lng": -122.4194,
    "gps_inner_zone_meters": 20,
    "gps_outer_zone_meters": 50,
    "motion_speed_threshold": 5,
}


def coerce_value(raw: Optional[str], value_type: Optional[str]) -> Any:
    """Convert a stored text value according to its type tag."""
    if raw is None:
        return None
    if value_type == "number":
        try:
            number = float(raw)
        except (TypeError, ValueError):
            # Readers fall back to their defaults
            logger.warning(f"Ignoring non-numeric config value {raw!r}")
            return None
        return int(number) if number.is_integer() else number
    if value_type == "boolean":
        return str(raw).strip().lower() in ("true", "1")
    if value_type == "json":
        try:
            return json.loads(raw)
        except (TypeError, ValueError):
            return raw
    return raw


def serialize_value(value: Any) -> Tuple[str, str]:
    """Return (text, type tag) for writing a value back to the table."""
    if isinstance(value, bool):
        return ("true" if value else "false"), "boolean"
    if isinstance(value, (int, float)):
        return str(value), "number"
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False), "json"
    return str(value), "string"


def conform_value(key: str, value: Any, value_type: str) -> Any:
    """Convert an incoming value to the type tag of an existing key.

    Raises ValidationError when the value cannot represent that type.
    """
    if value is None:
        raise ValidationError(f"Config '{key}' requires a value")

    if value_type == "number":
        if isinstance(value, bool):
            raise ValidationError(f"Config '{key}' must be a number")
        if isinstance(value, (int, float)):
            return value
        try:
            number = float(value)
        except (TypeError, ValueError):
            raise ValidationError(f"Config '{key}' must be a number")
        if not math.isfinite(number):
            raise ValidationError(f"Config '{key}' must be a finite number")
        return int(number) if number.is_integer() else number

    if value_type == "boolean":
        if isinstance(value, bool):
            return value
        text = str(value).strip().lower()
        if text in ("true", "1"):
            return True
        if text in ("false", "0"):
            return False
        raise ValidationError(f"Config '{key}' must be a boolean")

    if value_type == "json":
        if isinstance(value, str):
            try:
                return json.loads(value)
            except ValueError:
                raise ValidationError(f"Config '{key}' must be valid JSON")
        return value

    if isinstance(value, (dict, list)):
        raise ValidationError(f"Config '{key}' must be a string")
    return str(value)


class ConfigStore:
    """Typed, cached key/value configuration backed by a repository.

    `repository` must provide `load_config_entries()` returning rows with
    `config_key`, `config_value` and `config_type`, and
    `upsert_config(key, text, value_type, updated_by)`.
    """

    def __init__(self, repository, ttl_seconds: float = DEFAULT_TTL_SECONDS,
                 clock: Callable[[], float] = time.monotonic) -> None:
        self.repository = repository
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._cache: Dict[str, Any] = {}
        self._types: Dict[str, str] = {}
        self._cache_timestamp: Optional[float] = None
        self.using_defaults = False

    # ------------------------- Reads ------------------------- #
    def get(self, key: str, default: Any = None) -> Any:
        self._refresh_if_needed()
        value = self._cache.get(key)
        return value if value is not None else default

    def get_many(self, keys: Iterable[str]) -> Dict[str, Any]:
        self._refresh_if_needed()
        return {key: self._cache.get(key) for key in keys}

    def get_all(self) -> Dict[str, Any]:
        self._refresh_if_needed()
        return dict(self._cache)

    # ------------------------- Writes ------------------------- #
    def set(self, key: str, value: Any, updated_by: Optional[int] = None) -> Any:
        """Write through to the table and invalidate the snapshot.

        A failed write only updates the in-memory snapshot.
        """
        self._refresh_if_needed()
        existing_type = self._types.get(key)
        if existing_type is not None:
            value = conform_value(key, value, existing_type)

        text, value_type = serialize_value(value)
        try:
            self.repository.upsert_config(key, text, value_type, updated_by)
        except Exception as e:
            logger.warning(f"Could not update config '{key}' in database: {e}")
            self._refresh_if_needed()
            self._cache[key] = value
            return value

        self.invalidate()
        return self.get(key)

    def invalidate(self, key: Optional[str] = None) -> None:
        """Mark the snapshot stale so the next read reloads the whole table.

        The table is always reloaded as a unit, so `key` is informational only.
        """
        if key is not None:
            logger.debug(f"Config snapshot invalidated by key '{key}'")
        self._cache_timestamp = None

    def refresh(self) -> Dict[str, Any]:
        self.invalidate()
        return self.get_all()

    def is_stale(self) -> bool:
        if self._cache_timestamp is None:
            return True
        return (self._clock() - self._cache_timestamp) > self.ttl_seconds

    # ------------------------- Convenience readers ------------------------- #
    def is_demo_mode(self) -> bool:
        return bool(self.get("demo_mode", DEFAULT_CONFIG["demo_mode"]))

    def is_production_mode(self) -> bool:
        return bool(self.get("production_mode_enabled", DEFAULT_CONFIG["production_mode_enabled"]))

    def scan_debounce_seconds(self) -> float:
        return self.get("scan_debounce_seconds", DEFAULT_CONFIG["scan_debounce_seconds"])

    def library_center(self) -> GpsCoordinate:
        return GpsCoordinate(
            self.get("gps_library_lat", DEFAULT_CONFIG["gps_library_lat"]),
            self.get("gps_library_lng", DEFAULT_CONFIG["gps_library_lng"]),
        )

    def geofence_zones(self) -> Tuple[float, float]:
        inner = self.get("gps_inner_zone_meters", DEFAULT_CONFIG["gps_inner_zone_meters"])
        outer = self.get("gps_outer_zone_meters", DEFAULT_CONFIG["gps_outer_zone_meters"])
        return inner, outer

    # ------------------------- Loading ------------------------- #
    def _refresh_if_needed(self) -> None:
        if self.is_stale():
            self._load()
            self._cache_timestamp = self._clock()

    def _load(self) -> None:
        try:
            rows = self.repository.load_config_entries()
        except Exception as e:
            logger.warning(f"Could not load library_config table, using defaults: {e}")
            self._cache.clear()
            self._cache.update(DEFAULT_CONFIG)
            self._types = {key: serialize_value(value)[1] for key, value in DEFAULT_CONFIG.items()}
            self.using_defaults = True
            return

        fresh = {}
        types = {}
        for row in rows:
            fresh[row["config_key"]] = coerce_value(row["config_value"], row["config_type"])
            types[row["config_key"]] = row["config_type"]
        self._cache.clear()
        self._cache.update(fresh)
        self._types = types
        self.using_defaults = False
        logger.debug(f"Loaded {len(fresh)} configuration entries")
