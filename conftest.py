from datetime import datetime, timedelta
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient

from presence_engine import PresenceEngine


class FakeClock:
    """Wall clock and monotonic clock that only move when told to."""

    def __init__(self, start=datetime(2024, 3, 4, 10, 0, 0)):
        self.current = start
        self.elapsed = 0.0

    def now(self):
        return self.current

    def monotonic(self):
        return self.elapsed

    def advance(self, seconds=0, minutes=0, hours=0):
        delta = timedelta(seconds=seconds, minutes=minutes, hours=hours)
        self.current += delta
        self.elapsed += delta.total_seconds()


@pytest.fixture
def db_file(tmp_path, request):
    # Unique database file per test
    return str(tmp_path / f"presence_{request.node.name}.db")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def engine(db_file, clock):
    return PresenceEngine(db_file, clock=clock.now, monotonic=clock.monotonic)


@pytest.fixture
def seeded(engine):
    repo = engine.repository
    shelf_a = repo.add_shelf("A1", zone="A", section="Fiction")
    shelf_b = repo.add_shelf("B2", zone="B", section="Science")
    book = repo.add_book("Dune", "Frank Herbert", isbn="9780441013593")
    old_book = repo.add_book("Old Atlas", "Unknown")
    repo.assign_tag("TAG-001", book)
    repo.assign_tag("TAG-OLD", old_book, is_active=False)
    reader_a = repo.add_reader("R-001", shelf_id=shelf_a, installation_date="2024-01-15")
    reader_b = repo.add_reader("R-002", shelf_id=shelf_b)
    user = repo.add_user("ada@example.edu", "Ada", "Lovelace", student_id="S-1815")
    return SimpleNamespace(
        shelf_a=shelf_a,
        shelf_b=shelf_b,
        book=book,
        old_book=old_book,
        tag="TAG-001",
        inactive_tag="TAG-OLD",
        reader_a=reader_a,
        reader_b=reader_b,
        user=user,
    )


@pytest.fixture
def client(engine):
    import api as api_module

    api_module.app.dependency_overrides[api_module.get_engine] = lambda: engine
    try:
        yield TestClient(api_module.app)
    finally:
        api_module.app.dependency_overrides.clear()
