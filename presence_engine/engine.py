import time
from datetime import datetime
from typing import Callable

from presence_engine.cache import TTLCache
from presence_engine.config_store import DEFAULT_TTL_SECONDS, ConfigStore
from presence_engine.database import initialize_database
from presence_engine.entry_policy import EntryPolicy
from presence_engine.location import READER_CACHE_TTL_SECONDS, LocationResolver
from presence_engine.models import ScanMode
from presence_engine.repository import Repository
from presence_engine.scoring import ConfidenceScorer


class PresenceEngine:
    """Wires the repository, caches and policies for one database file."""

    def __init__(self, db_file: str,
                 config_ttl: float = DEFAULT_TTL_SECONDS,
                 reader_cache_ttl: float = READER_CACHE_TTL_SECONDS,
                 clock: Callable[[], datetime] = datetime.now,
                 monotonic: Callable[[], float] = time.monotonic,
                 initialize: bool = True) -> None:
        if initialize:
            initialize_database(db_file)
        self.db_file = db_file
        self.repository = Repository(db_file)
        self.config = ConfigStore(self.repository, ttl_seconds=config_ttl, clock=monotonic)
        self.scorer = ConfidenceScorer(self.config)
        self.entries = EntryPolicy(self.config, self.scorer, self.repository, clock=clock)
        self.reader_cache = TTLCache(reader_cache_ttl, clock=monotonic, name="reader-shelf")
        self.locations = LocationResolver(self.config, self.repository, self.reader_cache, clock=clock)

    def scan_mode(self) -> ScanMode:
        return ScanMode.from_config(self.config)

    def mode_info(self) -> dict:
        mode = self.scan_mode()
        return {
            "mode": mode.label,
            "scan_mode": mode.value,
            "demo_mode": self.config.is_demo_mode(),
            "production_mode_enabled": self.config.is_production_mode(),
            "require_reader_mapping": mode is ScanMode.AUTOMATIC,
            "allow_manual_shelf_selection": mode is ScanMode.MANUAL,
        }
