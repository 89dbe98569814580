import pytest

from presence_engine import ConflictError, NotFoundError, ScanMode, ValidationError
from presence_engine.location import HEALTHY, NEVER_SCANNED, OFFLINE, WARNING

SCANNER = 3


def scan_at_reader(engine, seeded, reader_id, tag=None):
    return engine.locations.scan_tag(tag or seeded.tag, ScanMode.AUTOMATIC, SCANNER, reader_id=reader_id)


def test_manual_scan_records_operator_shelf(engine, seeded):
    result = engine.locations.scan_tag(seeded.tag, ScanMode.MANUAL, SCANNER, shelf_id=seeded.shelf_b)

    assert result.is_duplicate is False
    assert result.location.shelf_code == "B2"
    assert result.book.title == "Dune"
    assert result.scan_info.reader_id is None
    assert engine.repository.count_locations(seeded.book) == 1

    payload = result.to_dict()
    assert payload["mode"] == "DEMO"
    assert payload["message"] == "Book location updated successfully"
    assert "debounce_info" not in payload


def test_manual_scan_ignores_reader_id(engine, seeded):
    result = engine.locations.scan_tag(
        seeded.tag, ScanMode.MANUAL, SCANNER, shelf_id=seeded.shelf_a, reader_id=seeded.reader_b
    )
    assert result.scan_info.reader_id is None
    assert engine.repository.latest_location_for_book(seeded.book)["reader_id"] is None


def test_manual_scan_requires_shelf(engine, seeded):
    with pytest.raises(ValidationError) as excinfo:
        engine.locations.scan_tag(seeded.tag, ScanMode.MANUAL, SCANNER, reader_id=seeded.reader_a)
    assert excinfo.value.message == "DEMO MODE: shelf_id is required"
    assert excinfo.value.to_dict()["mode"] == "DEMO"


def test_automatic_scan_requires_reader(engine, seeded):
    with pytest.raises(ValidationError) as excinfo:
        engine.locations.scan_tag(seeded.tag, ScanMode.AUTOMATIC, SCANNER, shelf_id=seeded.shelf_a)
    assert excinfo.value.message == "PRODUCTION MODE: reader_id is required"


def test_unknown_and_inactive_tags(engine, seeded):
    with pytest.raises(NotFoundError):
        engine.locations.scan_tag("NOPE", ScanMode.MANUAL, SCANNER, shelf_id=seeded.shelf_a)
    with pytest.raises(NotFoundError) as excinfo:
        engine.locations.scan_tag(seeded.inactive_tag, ScanMode.MANUAL, SCANNER, shelf_id=seeded.shelf_a)
    assert excinfo.value.to_dict()["tag_id"] == seeded.inactive_tag


def test_unknown_shelf(engine, seeded):
    with pytest.raises(NotFoundError):
        engine.locations.scan_tag(seeded.tag, ScanMode.MANUAL, SCANNER, shelf_id=999)
    assert engine.repository.count_locations() == 0


def test_inactive_or_unmounted_reader(engine, seeded):
    engine.repository.update_reader(seeded.reader_b, {"is_active": False})
    loose = engine.repository.add_reader("R-LOOSE")

    with pytest.raises(NotFoundError):
        scan_at_reader(engine, seeded, seeded.reader_b)
    with pytest.raises(NotFoundError):
        scan_at_reader(engine, seeded, loose)
    with pytest.raises(NotFoundError):
        scan_at_reader(engine, seeded, 999)


def test_automatic_scan_uses_reader_shelf(engine, seeded, clock):
    result = scan_at_reader(engine, seeded, seeded.reader_a)

    assert result.location.shelf_code == "A1"
    assert result.to_dict()["mode"] == "PRODUCTION"
    reader = engine.repository.find_reader(seeded.reader_a)
    assert reader["last_scan_count"] == 1
    assert reader["last_scan_timestamp"] == clock.now().isoformat()


def test_repeated_scan_at_same_reader_is_duplicate(engine, seeded, clock):
    scan_at_reader(engine, seeded, seeded.reader_a)
    clock.advance(seconds=60)

    result = scan_at_reader(engine, seeded, seeded.reader_a)
    assert result.is_duplicate is True
    assert result.location is None
    assert result.debounce.seconds_since_last_scan == 60
    assert result.debounce.debounce_window == 300
    assert result.to_dict()["message"] == "Duplicate scan ignored (within debounce window)"
    assert engine.repository.count_locations(seeded.book) == 1
    assert engine.repository.find_reader(seeded.reader_a)["last_scan_count"] == 1


def test_scan_after_debounce_window_is_recorded(engine, seeded, clock):
    scan_at_reader(engine, seeded, seeded.reader_a)
    clock.advance(seconds=400)

    result = scan_at_reader(engine, seeded, seeded.reader_a)
    assert result.is_duplicate is False
    assert engine.repository.count_locations(seeded.book) == 2


def test_scan_at_other_reader_is_recorded(engine, seeded, clock):
    scan_at_reader(engine, seeded, seeded.reader_a)
    clock.advance(seconds=60)

    result = scan_at_reader(engine, seeded, seeded.reader_b)
    assert result.is_duplicate is False
    assert result.location.shelf_code == "B2"
    assert engine.repository.count_locations(seeded.book) == 2


def test_repeated_manual_scans_are_recorded(engine, seeded, clock):
    engine.locations.scan_tag(seeded.tag, ScanMode.MANUAL, SCANNER, shelf_id=seeded.shelf_a)
    clock.advance(seconds=30)
    result = engine.locations.scan_tag(seeded.tag, ScanMode.MANUAL, SCANNER, shelf_id=seeded.shelf_b)
    assert result.is_duplicate is False
    assert result.location.shelf_code == "B2"
    assert engine.repository.count_locations(seeded.book) == 2


def test_debounce_window_follows_configuration(engine, seeded, clock):
    engine.config.set("scan_debounce_seconds", 30)
    scan_at_reader(engine, seeded, seeded.reader_a)
    clock.advance(seconds=31)
    assert scan_at_reader(engine, seeded, seeded.reader_a).is_duplicate is False


def test_reader_mapping_is_cached(engine, seeded, clock):
    first = engine.locations.resolve_reader(seeded.reader_a)
    second = engine.locations.resolve_reader(seeded.reader_a)
    assert first is second
    assert engine.reader_cache.get_stats()["hits"] == 1

    clock.advance(seconds=3601)
    third = engine.locations.resolve_reader(seeded.reader_a)
    assert third is not first
    assert engine.reader_cache.get_stats()["expired"] == 1


def test_stale_mapping_served_until_invalidated(engine, seeded):
    engine.locations.resolve_reader(seeded.reader_a)
    # Direct table edits bypass the cache
    engine.repository.update_reader(seeded.reader_a, {"shelf_id": seeded.shelf_b})
    assert engine.locations.resolve_reader(seeded.reader_a).location.shelf_code == "A1"

    assert engine.locations.invalidate_reader(seeded.reader_a) is True
    assert engine.locations.resolve_reader(seeded.reader_a).location.shelf_code == "B2"


def test_update_reader_moves_scans_to_new_shelf(engine, seeded, clock):
    scan_at_reader(engine, seeded, seeded.reader_a)

    payload = engine.locations.update_reader(seeded.reader_a, shelf_id=seeded.shelf_b, notes="moved")
    assert payload["shelf_code"] == "B2"
    assert payload["notes"] == "moved"
    assert seeded.reader_a not in engine.reader_cache

    clock.advance(seconds=400)
    assert scan_at_reader(engine, seeded, seeded.reader_a).location.shelf_code == "B2"


def test_deactivating_reader_evicts_mapping(engine, seeded):
    engine.locations.resolve_reader(seeded.reader_a)
    engine.locations.update_reader(seeded.reader_a, is_active=False)
    with pytest.raises(NotFoundError):
        engine.locations.resolve_reader(seeded.reader_a)


def test_update_reader_rejections(engine, seeded):
    with pytest.raises(NotFoundError):
        engine.locations.update_reader(999, notes="x")
    with pytest.raises(ValidationError):
        engine.locations.update_reader(seeded.reader_a)
    with pytest.raises(ValidationError):
        engine.locations.update_reader(seeded.reader_a, reader_code="R-999")
    with pytest.raises(NotFoundError):
        engine.locations.update_reader(seeded.reader_a, shelf_id=999)


def test_reader_health_levels(engine, seeded, clock):
    assert engine.locations.health_status(None) == NEVER_SCANNED
    scan_at_reader(engine, seeded, seeded.reader_a)
    last = engine.repository.find_reader(seeded.reader_a)["last_scan_timestamp"]

    assert engine.locations.health_status(last) == HEALTHY
    clock.advance(hours=2)
    assert engine.locations.health_status(last) == WARNING
    clock.advance(hours=23)
    assert engine.locations.health_status(last) == OFFLINE


def test_reader_health_summary(engine, seeded, clock):
    scan_at_reader(engine, seeded, seeded.reader_a)
    health = engine.locations.reader_health()

    assert health["total_readers"] == 2
    assert health["active_readers"] == 2
    assert health["health_status"] == {"healthy": 1, "warning": 0, "offline": 1}
    assert health["total_scans"] == 1
    assert health["most_recent_scan"] == clock.now().isoformat()
    assert health["scan_debounce_seconds"] == 300


def test_list_readers_payload(engine, seeded):
    readers = engine.locations.list_readers()
    assert [r["reader_code"] for r in readers] == ["R-001", "R-002"]
    first = readers[0]
    assert first["location"]["zone"] == "A"
    assert first["status"]["health"] == NEVER_SCANNED
    assert first["device"]["installation_date"] == "2024-01-15"


def test_list_tags(engine, seeded):
    total, tags = engine.locations.list_tags()
    assert total == 2
    assert {t["tag_id"] for t in tags} == {"TAG-001", "TAG-OLD"}

    total, active = engine.locations.list_tags(active=True)
    assert total == 1
    assert active[0]["book_title"] == "Dune"
    assert active[0]["is_active"] is True


def test_unknown_reader_fields_rejected_before_write(engine, seeded):
    with pytest.raises(ValidationError, match="reader_code"):
        engine.locations.update_reader(seeded.reader_a, reader_code="R-999")
    assert engine.repository.find_reader(seeded.reader_a)["reader_code"] == "R-001"

    assert engine.repository.update_reader(seeded.reader_a, {"notes": "serviced"}) == 1
    assert engine.repository.find_reader(seeded.reader_a)["notes"] == "serviced"


def test_get_reader_counts_scans_today(engine, seeded, clock):
    scan_at_reader(engine, seeded, seeded.reader_a)
    clock.advance(seconds=400)
    scan_at_reader(engine, seeded, seeded.reader_a)

    reader = engine.locations.get_reader(seeded.reader_a)
    assert reader["reader_code"] == "R-001"
    assert reader["status"]["last_scan_count"] == 2
    assert reader["status"]["total_scans_today"] == 2

    clock.advance(hours=24)
    assert engine.locations.get_reader(seeded.reader_a)["status"]["total_scans_today"] == 0

    with pytest.raises(NotFoundError):
        engine.locations.get_reader(999)


def test_register_reader(engine, seeded, clock):
    reader = engine.locations.register_reader(
        "R-003", shelf_id=seeded.shelf_b, location_description="Science wall", firmware_version="2.1"
    )
    assert reader["shelf_code"] == "B2"
    assert reader["location"]["description"] == "Science wall"
    assert reader["device"] == {"firmware_version": "2.1", "installation_date": "2024-03-04"}
    assert reader["status"]["is_active"] is True
    assert reader["status"]["last_scan_count"] == 0
    assert reader["status"]["health"] == NEVER_SCANNED

    result = scan_at_reader(engine, seeded, reader["id"])
    assert result.location.shelf_code == "B2"


def test_register_reader_without_shelf(engine, seeded):
    reader = engine.locations.register_reader("R-004")
    assert reader["shelf_id"] is None


def test_register_reader_rejections(engine, seeded):
    with pytest.raises(ValidationError):
        engine.locations.register_reader("")
    with pytest.raises(ConflictError) as excinfo:
        engine.locations.register_reader("R-001")
    assert excinfo.value.to_dict()["existing_reader_id"] == seeded.reader_a
    with pytest.raises(NotFoundError):
        engine.locations.register_reader("R-005", shelf_id=999)
    assert len(engine.locations.list_readers()) == 2


def test_reset_reader_stats(engine, seeded):
    scan_at_reader(engine, seeded, seeded.reader_a)

    reader = engine.locations.reset_reader_stats(seeded.reader_a)
    assert reader["status"]["last_scan_count"] == 0
    assert reader["status"]["last_scan_timestamp"] is None
    assert reader["status"]["health"] == NEVER_SCANNED
    assert engine.repository.count_locations(seeded.book) == 1

    with pytest.raises(NotFoundError):
        engine.locations.reset_reader_stats(999)
