import os
from datetime import datetime, timedelta, timezone

import pytest

from library import Library
from repositories import InMemoryStore

T0 = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    """Callable UTC clock that only moves when a test says so."""

    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now

    def set(self, value: datetime) -> None:
        self.now = value


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def memory_lib(store, clock):
    return Library(store=store, clock=clock)


@pytest.fixture
def manager(memory_lib):
    return memory_lib.circulation


@pytest.fixture
def ledger(memory_lib):
    return memory_lib.ledger


@pytest.fixture
def lib(tmp_path, request, clock):
    # A unique database file for every test
    db_file = str(tmp_path / f"test_{request.node.name}.db")
    lib = Library(db_file=db_file, clock=clock)
    yield lib
    try:
        lib.close()
    except Exception:
        pass
    if os.path.exists(db_file):
        os.remove(db_file)
