import logging
import sqlite3

from presence_engine.config_store import DEFAULT_CONFIG, serialize_value

logger = logging.getLogger(__name__)


def get_db_connection(db_file: str) -> sqlite3.Connection:
    """Open a connection to the SQLite database with row access by column name."""
    conn = sqlite3.connect(db_file, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys=ON;")
    return conn


def create_tables(db_file: str) -> None:
    """Create the tables used by the presence engine if they do not exist yet."""
    conn = get_db_connection(db_file)
    try:
        # Better concurrent access for the API thread pool
        conn.execute("PRAGMA journal_mode=WAL;")
        cursor = conn.cursor()

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS library_config (
                config_key TEXT PRIMARY KEY,
                config_value TEXT,
                config_type TEXT NOT NULL DEFAULT 'string',
                description TEXT,
                updated_by INTEGER,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS users (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                email TEXT UNIQUE,
                first_name TEXT,
                last_name TEXT,
                student_id TEXT
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS books (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                isbn TEXT,
                title TEXT NOT NULL,
                author TEXT NOT NULL
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS shelves (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                shelf_code TEXT UNIQUE NOT NULL,
                zone TEXT,
                section TEXT
            )
        """)

        # Fixed RFID readers, each mounted on one shelf
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS readers (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                reader_code TEXT UNIQUE NOT NULL,
                shelf_id INTEGER,
                location_description TEXT,
                is_active BOOLEAN NOT NULL DEFAULT 1,
                last_scan_count INTEGER NOT NULL DEFAULT 0,
                last_scan_timestamp TEXT,
                firmware_version TEXT,
                installation_date TEXT,
                notes TEXT,
                FOREIGN KEY (shelf_id) REFERENCES shelves(id) ON DELETE SET NULL
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS rfid_tags (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                tag_id TEXT UNIQUE NOT NULL,
                book_id INTEGER NOT NULL,
                is_active BOOLEAN NOT NULL DEFAULT 1,
                assigned_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                FOREIGN KEY (book_id) REFERENCES books(id) ON DELETE CASCADE
            )
        """)

        # Append-only
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS book_location_history (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                book_id INTEGER NOT NULL,
                shelf_id INTEGER NOT NULL,
                reader_id INTEGER,
                scanned_by INTEGER,
                scan_method TEXT NOT NULL DEFAULT 'rfid',
                timestamp TEXT NOT NULL,
                FOREIGN KEY (book_id) REFERENCES books(id) ON DELETE CASCADE
            )
        """)

        # Append-only
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS entry_logs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER NOT NULL,
                entry_type TEXT NOT NULL CHECK(entry_type IN ('entry', 'exit')),
                latitude REAL NOT NULL,
                longitude REAL NOT NULL,
                wifi_ssid TEXT,
                speed_kmh REAL,
                confidence_score INTEGER NOT NULL,
                gps_confidence INTEGER NOT NULL,
                wifi_confidence INTEGER NOT NULL,
                motion_confidence INTEGER NOT NULL,
                auto_logged BOOLEAN NOT NULL,
                manual_confirmed BOOLEAN NOT NULL,
                timestamp TEXT NOT NULL
            )
        """)

        cursor.execute("CREATE INDEX IF NOT EXISTS idx_entry_logs_user_ts ON entry_logs(user_id, timestamp DESC)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_location_book_ts ON book_location_history(book_id, timestamp DESC)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_location_reader ON book_location_history(reader_id)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_rfid_tags_book ON rfid_tags(book_id)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_readers_shelf ON readers(shelf_id)")

        conn.commit()
    finally:
        conn.close()


def seed_default_config(db_file: str) -> int:
    """Insert the default configuration rows that are missing. Returns how many were added."""
    conn = get_db_connection(db_file)
    try:
        rows = []
        for key, value in DEFAULT_CONFIG.items():
            text, value_type = serialize_value(value)
            rows.append((key, text, value_type))
        before = conn.total_changes
        conn.executemany(
            "INSERT OR IGNORE INTO library_config (config_key, config_value, config_type) VALUES (?, ?, ?)",
            rows,
        )
        conn.commit()
        added = conn.total_changes - before
        if added:
            logger.info(f"Seeded {added} default configuration entries")
        return added
    finally:
        conn.close()


def initialize_database(db_file: str) -> None:
    """Create tables and seed default configuration."""
    create_tables(db_file)
    seed_default_config(db_file)
