"""
Mode-aware RFID location resolution.

The same scan operation serves both deployment styles. In MANUAL mode the
operator chooses the shelf before scanning; in AUTOMATIC mode the scan comes
from a fixed reader whose shelf is looked up (and cached) from the readers
table. Repeated scans of a book by the same reader inside the debounce window
are acknowledged without writing a new location record.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from presence_engine.cache import TTLCache
from presence_engine.config_store import ConfigStore
from presence_engine.exceptions import ConflictError, NotFoundError, ValidationError
from presence_engine.models import (
    BookRef,
    DebounceInfo,
    ReaderShelfMapping,
    ScanEvent,
    ScanInfo,
    ScanMode,
    ScanResult,
    ShelfLocation,
    parse_timestamp,
)
from presence_engine.repository import READER_UPDATABLE_FIELDS

logger = logging.getLogger(__name__)

READER_CACHE_TTL_SECONDS = 3600

HEALTHY = "HEALTHY"
WARNING = "WARNING"
OFFLINE = "OFFLINE"
NEVER_SCANNED = "NEVER_SCANNED"


class LocationResolver:
    def __init__(self, config: ConfigStore, repository, reader_cache: Optional[TTLCache] = None,
                 clock: Callable[[], datetime] = datetime.now) -> None:
        self.config = config
        self.repository = repository
        self.reader_cache = reader_cache or TTLCache(READER_CACHE_TTL_SECONDS, name="reader-shelf")
        self._now = clock

    # ------------------------- Scanning ------------------------- #
    def scan_tag(self, tag_id: str, mode: ScanMode, scanned_by: int,
                 shelf_id: Optional[int] = None, reader_id: Optional[int] = None) -> ScanResult:
        mode = ScanMode(mode)
        if mode is ScanMode.MANUAL and shelf_id is None:
            raise ValidationError(f"{mode.label} MODE: shelf_id is required", mode=mode.label)
        if mode is ScanMode.AUTOMATIC and reader_id is None:
            raise ValidationError(f"{mode.label} MODE: reader_id is required", mode=mode.label)
        # Manual scans are not attributed to a reader
        if mode is ScanMode.MANUAL:
            reader_id = None

        tag = self.repository.find_active_tag(tag_id)
        if tag is None:
            raise NotFoundError("RFID tag not found or inactive", tag_id=tag_id)
        book = BookRef(id=tag["book_id"], title=tag["title"], author=tag["author"], isbn=tag.get("isbn"))

        debounce = self._check_duplicate(book.id, reader_id)
        if debounce is not None:
            logger.debug(f"Duplicate scan of tag {tag_id} by reader {reader_id} ignored")
            return ScanResult(book=book, is_duplicate=True, mode=mode, debounce=debounce)

        if mode is ScanMode.MANUAL:
            location = self._resolve_shelf(shelf_id)
        else:
            location = self.resolve_reader(reader_id).location

        now = self._now()
        self.repository.insert_location(ScanEvent(
            tag_id=tag_id,
            book_id=book.id,
            shelf_id=location.shelf_id,
            reader_id=reader_id,
            scanned_by=scanned_by,
            timestamp=now,
        ))
        if mode is ScanMode.AUTOMATIC:
            self.repository.record_reader_scan(reader_id, now)

        logger.info(f"Book {book.id} located on shelf {location.shelf_code} ({mode.label})")
        return ScanResult(
            book=book,
            is_duplicate=False,
            mode=mode,
            location=location,
            scan_info=ScanInfo(mode=mode, tag_id=tag_id, reader_id=reader_id, scanned_by=scanned_by, timestamp=now),
        )

    def _check_duplicate(self, book_id: int, reader_id: Optional[int]) -> Optional[DebounceInfo]:
        # Operator scans are deliberate and never suppressed
        if reader_id is None:
            return None
        last = self.repository.latest_location_for_book(book_id)
        if last is None or last["reader_id"] != reader_id:
            return None

        window = self.config.scan_debounce_seconds()
        last_time = parse_timestamp(last["timestamp"])
        seconds_since = int((self._now() - last_time).total_seconds())
        if seconds_since >= window:
            return None
        return DebounceInfo(seconds_since_last_scan=seconds_since, debounce_window=window, last_scan_time=last_time)

    def _resolve_shelf(self, shelf_id: int) -> ShelfLocation:
        shelf = self.repository.find_shelf(shelf_id)
        if shelf is None:
            raise NotFoundError("Shelf not found", shelf_id=shelf_id)
        return ShelfLocation(shelf_id=shelf["id"], shelf_code=shelf["shelf_code"], zone=shelf["zone"], section=shelf["section"])

    def resolve_reader(self, reader_id: int) -> ReaderShelfMapping:
        """Reader to shelf mapping, served from the cache while fresh."""
        mapping = self.reader_cache.get(reader_id)
        if mapping is not None:
            return mapping

        row = self.repository.find_active_reader_mapping(reader_id)
        if row is None:
            raise NotFoundError("Reader not found or inactive", reader_id=reader_id)

        mapping = ReaderShelfMapping(
            reader_id=row["id"],
            reader_code=row["reader_code"],
            location=ShelfLocation(
                shelf_id=row["shelf_id"],
                shelf_code=row["shelf_code"],
                zone=row["zone"],
                section=row["section"],
            ),
            cached_at=self.reader_cache.now(),
        )
        return self.reader_cache.set(reader_id, mapping)

    def invalidate_reader(self, reader_id: int) -> bool:
        return self.reader_cache.invalidate(reader_id)

    # ------------------------- Tags ------------------------- #
    def list_tags(self, active: Optional[bool] = None, limit: int = 50, offset: int = 0) -> Tuple[int, List[Dict[str, Any]]]:
        total, rows = self.repository.list_tags(active, limit, offset)
        tags = [
            {
                "id": row["id"],
                "tag_id": row["tag_id"],
                "book_id": row["book_id"],
                "book_title": row["book_title"],
                "isbn": row["isbn"],
                "is_active": bool(row["is_active"]),
                "assigned_at": row["assigned_at"],
            }
            for row in rows
        ]
        return total, tags

    # ------------------------- Readers ------------------------- #
    def health_status(self, last_scan: Optional[str]) -> str:
        if not last_scan:
            return NEVER_SCANNED
        age = self._now() - parse_timestamp(last_scan)
        if age <= timedelta(hours=1):
            return HEALTHY
        if age <= timedelta(hours=24):
            return WARNING
        return OFFLINE

    def _reader_payload(self, row: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "id": row["id"],
            "reader_code": row["reader_code"],
            "shelf_id": row["shelf_id"],
            "shelf_code": row.get("shelf_code"),
            "location": {
                "description": row.get("location_description"),
                "zone": row.get("zone"),
                "section": row.get("section"),
            },
            "status": {
                "is_active": bool(row["is_active"]),
                "health": self.health_status(row.get("last_scan_timestamp")),
                "last_scan_count": row.get("last_scan_count") or 0,
                "last_scan_timestamp": row.get("last_scan_timestamp"),
            },
            "device": {
                "firmware_version": row.get("firmware_version"),
                "installation_date": row.get("installation_date"),
            },
            "notes": row.get("notes"),
        }

    def list_readers(self) -> List[Dict[str, Any]]:
        return [self._reader_payload(row) for row in self.repository.list_readers()]

    def reader_health(self) -> Dict[str, Any]:
        readers = self.list_readers()
        counts = {HEALTHY: 0, WARNING: 0, OFFLINE: 0, NEVER_SCANNED: 0}
        for reader in readers:
            counts[reader["status"]["health"]] += 1

        scans = [r["status"]["last_scan_timestamp"] for r in readers if r["status"]["last_scan_timestamp"]]
        return {
            "total_readers": len(readers),
            "active_readers": sum(1 for r in readers if r["status"]["is_active"]),
            "health_status": {
                "healthy": counts[HEALTHY],
                "warning": counts[WARNING],
                # Readers that never scanned count as offline
                "offline": counts[OFFLINE] + counts[NEVER_SCANNED],
            },
            "total_scans": sum(r["status"]["last_scan_count"] for r in readers),
            "most_recent_scan": max(scans) if scans else None,
            "scan_debounce_seconds": self.config.scan_debounce_seconds(),
        }

    def update_reader(self, reader_id: int, **fields: Any) -> Dict[str, Any]:
        """Update a reader. Changing its shelf or active flag evicts its cached mapping."""
        if self.repository.find_reader(reader_id) is None:
            raise NotFoundError("Reader not found", reader_id=reader_id)
        if not fields:
            raise ValidationError("No fields to update")
        unknown = set(fields) - set(READER_UPDATABLE_FIELDS)
        if unknown:
            raise ValidationError(f"Cannot update reader fields: {', '.join(sorted(unknown))}")

        shelf_id = fields.get("shelf_id")
        if shelf_id is not None and self.repository.find_shelf(shelf_id) is None:
            raise NotFoundError("Shelf not found", shelf_id=shelf_id)

        self.repository.update_reader(reader_id, fields)
        if "shelf_id" in fields or "is_active" in fields:
            self.invalidate_reader(reader_id)
            logger.info(f"Reader {reader_id} mapping changed, cache entry evicted")

        return self._reader_payload(self.repository.find_reader(reader_id))

    def get_reader(self, reader_id: int) -> Dict[str, Any]:
        row = self.repository.find_reader(reader_id)
        if row is None:
            raise NotFoundError("Reader not found", reader_id=reader_id)

        payload = self._reader_payload(row)
        start_of_day = self._now().replace(hour=0, minute=0, second=0, microsecond=0)
        payload["status"]["total_scans_today"] = self.repository.count_reader_scans_since(reader_id, start_of_day)
        return payload

    def register_reader(self, reader_code: str, shelf_id: Optional[int] = None,
                        location_description: Optional[str] = None,
                        firmware_version: Optional[str] = None,
                        notes: Optional[str] = None) -> Dict[str, Any]:
        """Register a fixed reader. It starts active, with no scans, installed today."""
        if not reader_code:
            raise ValidationError("reader_code is required")

        existing = self.repository.find_reader_by_code(reader_code)
        if existing is not None:
            raise ConflictError("Reader code already exists", existing_reader_id=existing["id"])
        if shelf_id is not None and self.repository.find_shelf(shelf_id) is None:
            raise NotFoundError("Shelf not found", shelf_id=shelf_id)

        reader_id = self.repository.add_reader(
            reader_code,
            shelf_id=shelf_id,
            installation_date=self._now().date().isoformat(),
            location_description=location_description,
            firmware_version=firmware_version,
            notes=notes,
        )
        logger.info(f"Reader {reader_code} registered (id {reader_id}, shelf {shelf_id})")
        return self._reader_payload(self.repository.find_reader(reader_id))

    def reset_reader_stats(self, reader_id: int) -> Dict[str, Any]:
        """Zero the scan counter and forget the last scan time."""
        if self.repository.find_reader(reader_id) is None:
            raise NotFoundError("Reader not found", reader_id=reader_id)
        self.repository.reset_reader_stats(reader_id)
        logger.info(f"Reader {reader_id} statistics reset")
        return self._reader_payload(self.repository.find_reader(reader_id))
