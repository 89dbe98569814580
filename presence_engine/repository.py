import sqlite3
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from presence_engine.database import get_db_connection
from presence_engine.models import EntryEvent, ScanEvent

READER_UPDATABLE_FIELDS = ("shelf_id", "location_description", "is_active", "firmware_version", "notes")


def _row(row: Optional[sqlite3.Row]) -> Optional[Dict[str, Any]]:
    return dict(row) if row is not None else None


class Repository:
    """SQLite access for configuration, entry logs, tags, shelves and readers.

    Every call opens its own short-lived connection, so one instance can be
    shared by concurrent requests.
    """

    def __init__(self, db_file: str) -> None:
        self.db_file = db_file

    def _connect(self) -> sqlite3.Connection:
        return get_db_connection(self.db_file)

    # ------------------------- Configuration ------------------------- #
    def load_config_entries(self) -> List[Dict[str, Any]]:
        conn = self._connect()
        try:
            cursor = conn.execute("SELECT config_key, config_value, config_type FROM library_config")
            return [dict(row) for row in cursor.fetchall()]
        finally:
            conn.close()

    def upsert_config(self, key: str, value: str, value_type: str, updated_by: Optional[int] = None) -> None:
        conn = self._connect()
        try:
            # Existing rows keep their type tag
            conn.execute(
                """
                INSERT INTO library_config (config_key, config_value, config_type, updated_by, updated_at)
                VALUES (?, ?, ?, ?, CURRENT_TIMESTAMP)
                ON CONFLICT(config_key) DO UPDATE SET
                    config_value = excluded.config_value,
                    updated_by = excluded.updated_by,
                    updated_at = CURRENT_TIMESTAMP
                """,
                (key, value, value_type, updated_by),
            )
            conn.commit()
        finally:
            conn.close()

    # ------------------------- Entry logs ------------------------- #
    def latest_entry_for_user(self, user_id: int) -> Optional[Dict[str, Any]]:
        conn = self._connect()
        try:
            cursor = conn.execute(
                """
                SELECT * FROM entry_logs
                WHERE user_id = ?
                ORDER BY timestamp DESC, id DESC
                LIMIT 1
                """,
                (user_id,),
            )
            return _row(cursor.fetchone())
        finally:
            conn.close()

    def insert_entry(self, event: EntryEvent) -> int:
        conn = self._connect()
        try:
            cursor = conn.execute(
                """
                INSERT INTO entry_logs (
                    user_id, entry_type, latitude, longitude, wifi_ssid, speed_kmh,
                    confidence_score, gps_confidence, wifi_confidence, motion_confidence,
                    auto_logged, manual_confirmed, timestamp
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    event.user_id,
                    event.entry_type.value,
                    event.coordinate.latitude,
                    event.coordinate.longitude,
                    event.wifi_ssid,
                    event.speed_kmh,
                    event.confidence_score,
                    event.gps_confidence,
                    event.wifi_confidence,
                    event.motion_confidence,
                    event.auto_logged,
                    event.manually_confirmed,
                    event.timestamp.isoformat(),
                ),
            )
            conn.commit()
            return cursor.lastrowid
        finally:
            conn.close()

    def entry_history(self, user_id: int, limit: int = 50, offset: int = 0) -> Tuple[int, List[Dict[str, Any]]]:
        conn = self._connect()
        try:
            total = conn.execute("SELECT COUNT(*) FROM entry_logs WHERE user_id = ?", (user_id,)).fetchone()[0]
            cursor = conn.execute(
                """
                SELECT * FROM entry_logs
                WHERE user_id = ?
                ORDER BY timestamp DESC, id DESC
                LIMIT ? OFFSET ?
                """,
                (user_id, limit, offset),
            )
            return total, [dict(row) for row in cursor.fetchall()]
        finally:
            conn.close()

    def current_occupants(self) -> List[Dict[str, Any]]:
        """Users whose most recent entry log is an 'entry'."""
        conn = self._connect()
        try:
            cursor = conn.execute(
                """
                SELECT el.user_id, u.email, u.first_name, u.last_name, u.student_id,
                       el.timestamp AS entry_time
                FROM entry_logs el
                LEFT JOIN users u ON u.id = el.user_id
                WHERE el.id IN (
                    SELECT MAX(id) FROM entry_logs GROUP BY user_id
                )
                AND el.entry_type = 'entry'
                ORDER BY el.timestamp DESC
                """
            )
            return [dict(row) for row in cursor.fetchall()]
        finally:
            conn.close()

    # ------------------------- Tags and locations ------------------------- #
    def find_active_tag(self, tag_id: str) -> Optional[Dict[str, Any]]:
        conn = self._connect()
        try:
            cursor = conn.execute(
                """
                SELECT rt.book_id, b.title, b.author, b.isbn
                FROM rfid_tags rt
                INNER JOIN books b ON rt.book_id = b.id
                WHERE rt.tag_id = ? AND rt.is_active = 1
                """,
                (tag_id,),
            )
            return _row(cursor.fetchone())
        finally:
            conn.close()

    def latest_location_for_book(self, book_id: int) -> Optional[Dict[str, Any]]:
        conn = self._connect()
        try:
            cursor = conn.execute(
                """
                SELECT id, timestamp, reader_id, shelf_id
                FROM book_location_history
                WHERE book_id = ?
                ORDER BY timestamp DESC, id DESC
                LIMIT 1
                """,
                (book_id,),
            )
            return _row(cursor.fetchone())
        finally:
            conn.close()

    def find_shelf(self, shelf_id: int) -> Optional[Dict[str, Any]]:
        conn = self._connect()
        try:
            cursor = conn.execute("SELECT id, shelf_code, zone, section FROM shelves WHERE id = ?", (shelf_id,))
            return _row(cursor.fetchone())
        finally:
            conn.close()

    def find_active_reader_mapping(self, reader_id: int) -> Optional[Dict[str, Any]]:
        """Reader joined with its shelf, only for active readers mounted on a shelf."""
        conn = self._connect()
        try:
            cursor = conn.execute(
                """
                SELECT r.id, r.reader_code, r.shelf_id, s.shelf_code, s.zone, s.section
                FROM readers r
                INNER JOIN shelves s ON r.shelf_id = s.id
                WHERE r.id = ? AND r.is_active = 1
                """,
                (reader_id,),
            )
            return _row(cursor.fetchone())
        finally:
            conn.close()

    def insert_location(self, scan: ScanEvent) -> int:
        conn = self._connect()
        try:
            cursor = conn.execute(
                """
                INSERT INTO book_location_history
                    (book_id, shelf_id, reader_id, scanned_by, scan_method, timestamp)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (scan.book_id, scan.shelf_id, scan.reader_id, scan.scanned_by, scan.scan_method, scan.timestamp.isoformat()),
            )
            conn.commit()
            return cursor.lastrowid
        finally:
            conn.close()

    def count_locations(self, book_id: Optional[int] = None) -> int:
        conn = self._connect()
        try:
            if book_id is None:
                return conn.execute("SELECT COUNT(*) FROM book_location_history").fetchone()[0]
            return conn.execute(
                "SELECT COUNT(*) FROM book_location_history WHERE book_id = ?", (book_id,)
            ).fetchone()[0]
        finally:
            conn.close()

    def list_tags(self, active: Optional[bool] = None, limit: int = 50, offset: int = 0) -> Tuple[int, List[Dict[str, Any]]]:
        sql = """
            SELECT rt.id, rt.tag_id, rt.book_id, b.title AS book_title, b.isbn,
                   rt.is_active, rt.assigned_at
            FROM rfid_tags rt
            INNER JOIN books b ON rt.book_id = b.id
        """
        count_sql = "SELECT COUNT(*) FROM rfid_tags"
        params: List[Any] = []
        if active is not None:
            sql += " WHERE rt.is_active = ?"
            count_sql += " WHERE is_active = ?"
            params.append(1 if active else 0)

        conn = self._connect()
        try:
            total = conn.execute(count_sql, params).fetchone()[0]
            cursor = conn.execute(sql + " ORDER BY rt.assigned_at DESC, rt.id DESC LIMIT ? OFFSET ?", params + [limit, offset])
            return total, [dict(row) for row in cursor.fetchall()]
        finally:
            conn.close()

    # ------------------------- Readers ------------------------- #
    def record_reader_scan(self, reader_id: int, timestamp: datetime) -> None:
        conn = self._connect()
        try:
            conn.execute(
                """
                UPDATE readers
                SET last_scan_count = last_scan_count + 1,
                    last_scan_timestamp = ?
                WHERE id = ?
                """,
                (timestamp.isoformat(), reader_id),
            )
            conn.commit()
        finally:
            conn.close()

    def find_reader(self, reader_id: int) -> Optional[Dict[str, Any]]:
        conn = self._connect()
        try:
            cursor = conn.execute(
                """
                SELECT r.*, s.shelf_code, s.zone, s.section
                FROM readers r
                LEFT JOIN shelves s ON r.shelf_id = s.id
                WHERE r.id = ?
                """,
                (reader_id,),
            )
            return _row(cursor.fetchone())
        finally:
            conn.close()

    def find_reader_by_code(self, reader_code: str) -> Optional[Dict[str, Any]]:
        conn = self._connect()
        try:
            cursor = conn.execute("SELECT id, reader_code FROM readers WHERE reader_code = ?", (reader_code,))
            return _row(cursor.fetchone())
        finally:
            conn.close()

    def count_reader_scans_since(self, reader_id: int, since: datetime) -> int:
        conn = self._connect()
        try:
            return conn.execute(
                "SELECT COUNT(*) FROM book_location_history WHERE reader_id = ? AND timestamp >= ?",
                (reader_id, since.isoformat()),
            ).fetchone()[0]
        finally:
            conn.close()

    def reset_reader_stats(self, reader_id: int) -> int:
        conn = self._connect()
        try:
            cursor = conn.execute(
                "UPDATE readers SET last_scan_count = 0, last_scan_timestamp = NULL WHERE id = ?",
                (reader_id,),
            )
            conn.commit()
            return cursor.rowcount
        finally:
            conn.close()

    def list_readers(self) -> List[Dict[str, Any]]:
        conn = self._connect()
        try:
            cursor = conn.execute(
                """
                SELECT r.*, s.shelf_code, s.zone, s.section
                FROM readers r
                LEFT JOIN shelves s ON r.shelf_id = s.id
                ORDER BY r.reader_code
                """
            )
            return [dict(row) for row in cursor.fetchall()]
        finally:
            conn.close()

    def update_reader(self, reader_id: int, fields: Dict[str, Any]) -> int:
        """Callers restrict `fields` to READER_UPDATABLE_FIELDS."""
        if not fields:
            return 0

        assignments = ", ".join(f"{name} = ?" for name in fields)
        conn = self._connect()
        try:
            cursor = conn.execute(
                f"UPDATE readers SET {assignments} WHERE id = ?",
                list(fields.values()) + [reader_id],
            )
            conn.commit()
            return cursor.rowcount
        finally:
            conn.close()

    # ------------------------- Inventory inserts ------------------------- #
    # Book, shelf and tag management lives outside this service; those
    # inserts exist for seeding and tests. Readers are registered through
    # LocationResolver.register_reader.
    def add_book(self, title: str, author: str, isbn: Optional[str] = None) -> int:
        return self._insert("INSERT INTO books (title, author, isbn) VALUES (?, ?, ?)", (title, author, isbn))

    def add_shelf(self, shelf_code: str, zone: Optional[str] = None, section: Optional[str] = None) -> int:
        return self._insert("INSERT INTO shelves (shelf_code, zone, section) VALUES (?, ?, ?)", (shelf_code, zone, section))

    def add_reader(self, reader_code: str, shelf_id: Optional[int] = None, is_active: bool = True,
                   installation_date: Optional[str] = None, location_description: Optional[str] = None,
                   firmware_version: Optional[str] = None, notes: Optional[str] = None) -> int:
        return self._insert(
            """
            INSERT INTO readers
                (reader_code, shelf_id, is_active, installation_date, location_description, firmware_version, notes)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (reader_code, shelf_id, is_active, installation_date, location_description, firmware_version, notes),
        )

    def assign_tag(self, tag_id: str, book_id: int, is_active: bool = True) -> int:
        return self._insert(
            "INSERT INTO rfid_tags (tag_id, book_id, is_active) VALUES (?, ?, ?)",
            (tag_id, book_id, is_active),
        )

    def add_user(self, email: str, first_name: str = "", last_name: str = "", student_id: Optional[str] = None) -> int:
        return self._insert(
            "INSERT INTO users (email, first_name, last_name, student_id) VALUES (?, ?, ?, ?)",
            (email, first_name, last_name, student_id),
        )

    def _insert(self, sql: str, params: Tuple[Any, ...]) -> int:
        conn = self._connect()
        try:
            cursor = conn.execute(sql, params)
            conn.commit()
            return cursor.lastrowid
        finally:
            conn.close()
