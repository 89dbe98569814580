import sqlite3

import pytest

from presence_engine import ValidationError
from presence_engine.config_store import DEFAULT_CONFIG, ConfigStore, coerce_value, conform_value, serialize_value


class BrokenRepository:
    """Repository whose database cannot be opened."""

    def load_config_entries(self):
        raise sqlite3.OperationalError("unable to open database file")

    def upsert_config(self, key, value, value_type, updated_by=None):
        raise sqlite3.OperationalError("unable to open database file")


class CountingRepository:
    def __init__(self, rows):
        self.rows = rows
        self.loads = 0

    def load_config_entries(self):
        self.loads += 1
        return list(self.rows)

    def upsert_config(self, key, value, value_type, updated_by=None):
        self.rows = [r for r in self.rows if r["config_key"] != key]
        self.rows.append({"config_key": key, "config_value": value, "config_type": value_type})


@pytest.mark.parametrize("raw,value_type,expected", [
    ("80", "number", 80),
    ("37.7749", "number", 37.7749),
    ("abc", "number", None),
    ("true", "boolean", True),
    ("1", "boolean", True),
    ("FALSE", "boolean", False),
    ('{"a": [1, 2]}', "json", {"a": [1, 2]}),
    ("{broken", "json", "{broken"),
    ("LibraryWiFi", "string", "LibraryWiFi"),
    (None, "number", None),
])
def test_coerce_value(raw, value_type, expected):
    assert coerce_value(raw, value_type) == expected


def test_serialize_value_tags():
    assert serialize_value(True) == ("true", "boolean")
    assert serialize_value(300) == ("300", "number")
    assert serialize_value([1, 2]) == ("[1, 2]", "json")
    assert serialize_value("x") == ("x", "string")


def test_seeded_database_returns_typed_defaults(engine):
    config = engine.config
    assert config.get("demo_mode") is True
    assert config.get("scan_debounce_seconds") == 300
    assert config.get("gps_library_lng") == -122.4194
    assert config.get_all() == DEFAULT_CONFIG
    assert config.using_defaults is False


def test_missing_key_returns_default(engine):
    assert engine.config.get("no_such_key") is None
    assert engine.config.get("no_such_key", 42) == 42


def test_get_many(engine):
    values = engine.config.get_many(["demo_mode", "no_such_key"])
    assert values == {"demo_mode": True, "no_such_key": None}


def test_snapshot_reloaded_only_after_ttl():
    repo = CountingRepository([{"config_key": "demo_mode", "config_value": "true", "config_type": "boolean"}])
    now = [0.0]
    config = ConfigStore(repo, ttl_seconds=300, clock=lambda: now[0])

    config.get("demo_mode")
    now[0] = 300
    config.get("demo_mode")
    assert repo.loads == 1

    now[0] = 300.5
    config.get("demo_mode")
    assert repo.loads == 2


def test_external_change_visible_after_ttl(engine, clock):
    assert engine.config.get("entry_debounce_minutes") == 5
    engine.repository.upsert_config("entry_debounce_minutes", "10", "number")

    assert engine.config.get("entry_debounce_minutes") == 5
    clock.advance(seconds=301)
    assert engine.config.get("entry_debounce_minutes") == 10


def test_set_writes_through_and_invalidates(engine):
    assert engine.config.set("entry_confidence_threshold", 90) == 90
    assert engine.config.get("entry_confidence_threshold") == 90

    # Visible to a fresh store on the same database
    fresh = ConfigStore(engine.repository)
    assert fresh.get("entry_confidence_threshold") == 90


def test_set_inserts_unknown_key(engine):
    engine.config.set("library_name", "Central")
    assert engine.config.get("library_name") == "Central"


def test_refresh_forces_reload():
    repo = CountingRepository([])
    config = ConfigStore(repo, clock=lambda: 0.0)
    config.get_all()
    config.refresh()
    assert repo.loads == 2
    assert config.is_stale() is False


def test_unreachable_source_falls_back_to_defaults(caplog):
    config = ConfigStore(BrokenRepository())

    assert config.get("scan_debounce_seconds", 0) == 300
    assert config.using_defaults is True
    assert config.is_demo_mode() is True
    assert "using defaults" in caplog.text


def test_failed_write_updates_memory_only():
    config = ConfigStore(BrokenRepository())
    assert config.set("demo_mode", False) is False
    assert config.get("demo_mode") is False


def test_library_center_and_zones(engine):
    center = engine.config.library_center()
    assert (center.latitude, center.longitude) == (37.7749, -122.4194)
    assert engine.config.geofence_zones() == (20, 50)


@pytest.mark.parametrize("value,value_type,expected", [
    ("9", "number", 9),
    ("7.5", "number", 7.5),
    (12, "number", 12),
    ("false", "boolean", False),
    (1, "boolean", True),
    ("[1, 2]", "json", [1, 2]),
    (42, "string", "42"),
])
def test_conform_value(value, value_type, expected):
    assert conform_value("key", value, value_type) == expected


@pytest.mark.parametrize("value,value_type", [
    ("eight", "number"),
    (True, "number"),
    ("nan", "number"),
    ("maybe", "boolean"),
    ("{broken", "json"),
    ({"a": 1}, "string"),
    (None, "string"),
])
def test_conform_value_rejects(value, value_type):
    with pytest.raises(ValidationError):
        conform_value("key", value, value_type)


def test_set_rejects_value_of_wrong_type(engine):
    with pytest.raises(ValidationError, match="must be a number"):
        engine.config.set("library_open_hour", "eight")
    assert engine.config.get("library_open_hour") == 8
    stored = {row["config_key"]: row["config_value"] for row in engine.repository.load_config_entries()}
    assert stored["library_open_hour"] == "8"


def test_set_converts_text_to_existing_type(engine):
    assert engine.config.set("library_open_hour", "9") == 9
    assert engine.config.set("demo_mode", "false") is False
    assert engine.config.is_demo_mode() is False


def test_stored_non_numeric_value_falls_back_to_default(engine, caplog):
    engine.repository.upsert_config("library_open_hour", "eight", "number", None)
    engine.config.invalidate()

    assert engine.config.get("library_open_hour", 8) == 8
    assert "Ignoring non-numeric config value 'eight'" in caplog.text
    assert engine.entries.is_within_library_hours() is True
