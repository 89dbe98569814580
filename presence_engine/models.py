from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from presence_engine.exceptions import ValidationError


class EntryType(str, Enum):
    ENTRY = "entry"
    EXIT = "exit"


class Zone(str, Enum):
    INNER = "inner"
    OUTER = "outer"
    OUTSIDE = "outside"


class ScanMode(str, Enum):
    """Where the shelf of a scan comes from.

    MANUAL: the operator picks the shelf (handheld reader, demo setups).
    AUTOMATIC: a fixed reader is mapped to a shelf (production setups).
    """

    MANUAL = "manual"
    AUTOMATIC = "automatic"

    @property
    def label(self) -> str:
        return "DEMO" if self is ScanMode.MANUAL else "PRODUCTION"

    @classmethod
    def from_config(cls, config_store) -> "ScanMode":
        return cls.MANUAL if config_store.is_demo_mode() else cls.AUTOMATIC


@dataclass(frozen=True)
class GpsCoordinate:
    latitude: float
    longitude: float

    def __post_init__(self) -> None:
        if not -90.0 <= self.latitude <= 90.0:
            raise ValidationError("latitude must be between -90 and 90.")
        if not -180.0 <= self.longitude <= 180.0:
            raise ValidationError("longitude must be between -180 and 180.")

    def to_dict(self) -> Dict[str, float]:
        return {"latitude": self.latitude, "longitude": self.longitude}


@dataclass(frozen=True)
class ConfidenceDetails:
    distance_meters: int
    zone: Zone

    def to_dict(self) -> Dict[str, Any]:
        return {"distance_meters": self.distance_meters, "zone": self.zone.value}


@dataclass(frozen=True)
class ConfidenceBreakdown:
    gps: int
    wifi: int
    motion: int
    total: int
    details: ConfidenceDetails

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "gps": self.gps,
            "wifi": self.wifi,
            "motion": self.motion,
            "details": self.details.to_dict(),
        }


@dataclass(frozen=True)
class EntryEvent:
    user_id: int
    entry_type: EntryType
    coordinate: GpsCoordinate
    confidence_score: int
    gps_confidence: int
    wifi_confidence: int
    motion_confidence: int
    auto_logged: bool
    manually_confirmed: bool
    timestamp: datetime
    wifi_ssid: Optional[str] = None
    speed_kmh: Optional[float] = None
    id: Optional[int] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "EntryEvent":
        speed = row.get("speed_kmh")
        return cls(
            id=row.get("id"),
            user_id=row["user_id"],
            entry_type=EntryType(row["entry_type"]),
            coordinate=GpsCoordinate(float(row["latitude"]), float(row["longitude"])),
            wifi_ssid=row.get("wifi_ssid"),
            speed_kmh=float(speed) if speed is not None else None,
            confidence_score=row.get("confidence_score") or 0,
            gps_confidence=row.get("gps_confidence") or 0,
            wifi_confidence=row.get("wifi_confidence") or 0,
            motion_confidence=row.get("motion_confidence") or 0,
            auto_logged=bool(row.get("auto_logged")),
            manually_confirmed=bool(row.get("manual_confirmed")),
            timestamp=parse_timestamp(row["timestamp"]),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "entry_type": self.entry_type.value,
            "latitude": self.coordinate.latitude,
            "longitude": self.coordinate.longitude,
            "wifi_ssid": self.wifi_ssid,
            "speed_kmh": self.speed_kmh,
            "confidence_score": self.confidence_score,
            "auto_logged": self.auto_logged,
            "manually_confirmed": self.manually_confirmed,
            "timestamp": self.timestamp.isoformat(),
        }

    def summary(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "entry_type": self.entry_type.value,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(frozen=True)
class ScanEvent:
    tag_id: str
    book_id: int
    shelf_id: int
    scanned_by: int
    timestamp: datetime
    reader_id: Optional[int] = None
    scan_method: str = "rfid"
    id: Optional[int] = None


@dataclass(frozen=True)
class BookRef:
    id: int
    title: str
    author: str
    isbn: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "title": self.title, "author": self.author, "isbn": self.isbn}


@dataclass(frozen=True)
class ShelfLocation:
    shelf_id: int
    shelf_code: str
    zone: Optional[str] = None
    section: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "shelf_id": self.shelf_id,
            "shelf_code": self.shelf_code,
            "zone": self.zone,
            "section": self.section,
        }


@dataclass(frozen=True)
class ReaderShelfMapping:
    reader_id: int
    reader_code: str
    location: ShelfLocation
    cached_at: float


@dataclass(frozen=True)
class RecentEntryCheck:
    has_recent_entry: bool
    debounce_window: int
    last_entry: Optional[EntryEvent] = None
    minutes_since: Optional[int] = None


@dataclass(frozen=True)
class ExitValidation:
    valid: bool
    reason: str
    distance_meters: Optional[int] = None
    required_distance: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "valid": self.valid,
            "reason": self.reason,
            "distance_meters": self.distance_meters,
            "required_distance": self.required_distance,
        }


@dataclass(frozen=True)
class EntryResult:
    entry_event: EntryEvent
    confidence: ConfidenceBreakdown
    warnings: List[str] = field(default_factory=list)
    below_manual_threshold: bool = False

    @property
    def message(self) -> str:
        if self.entry_event.auto_logged:
            return "Entry logged automatically (high confidence)"
        return "Entry logged with manual confirmation"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": True,
            "entry_log": self.entry_event.to_dict(),
            "confidence": self.confidence.to_dict(),
            "warnings": list(self.warnings),
            "below_manual_threshold": self.below_manual_threshold,
            "message": self.message,
        }


@dataclass(frozen=True)
class DebounceInfo:
    seconds_since_last_scan: int
    debounce_window: int
    last_scan_time: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "seconds_since_last_scan": self.seconds_since_last_scan,
            "debounce_window": self.debounce_window,
            "last_scan_time": self.last_scan_time.isoformat(),
        }


@dataclass(frozen=True)
class ScanInfo:
    mode: ScanMode
    tag_id: str
    scanned_by: int
    timestamp: datetime
    reader_id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mode": self.mode.label,
            "tag_id": self.tag_id,
            "reader_id": self.reader_id,
            "scanned_by": self.scanned_by,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(frozen=True)
class ScanResult:
    book: BookRef
    is_duplicate: bool
    mode: ScanMode
    location: Optional[ShelfLocation] = None
    scan_info: Optional[ScanInfo] = None
    debounce: Optional[DebounceInfo] = None

    @property
    def message(self) -> str:
        if self.is_duplicate:
            return "Duplicate scan ignored (within debounce window)"
        return "Book location updated successfully"

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "success": True,
            "is_duplicate": self.is_duplicate,
            "mode": self.mode.label,
            "book": self.book.to_dict(),
            "message": self.message,
        }
        if self.location is not None:
            payload["location"] = self.location.to_dict()
        if self.scan_info is not None:
            payload["scan_info"] = self.scan_info.to_dict()
        if self.debounce is not None:
            payload["debounce_info"] = self.debounce.to_dict()
        return payload


def parse_timestamp(value: Any) -> datetime:
    """Timestamps are stored as ISO-8601 text; sqlite may also hand back datetimes."""
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))
