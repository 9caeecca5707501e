from pathlib import Path

import pytest

from autotrack.config import EngineSettings
from autotrack.engine import DecisionEngine
from autotrack.ledger import CycleJournal, PendingQueue, RegistrationLedger
from autotrack.store import SampleStore

from support import FakeGateway, T0


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "activity.sqlite3"


@pytest.fixture
def store(db_path: Path):
    store = SampleStore(db_path)
    yield store
    store.close()


@pytest.fixture
def ledger(db_path: Path):
    ledger = RegistrationLedger(db_path)
    yield ledger
    ledger.close()


@pytest.fixture
def pending_queue(db_path: Path):
    queue = PendingQueue(db_path)
    yield queue
    queue.close()


@pytest.fixture
def journal(db_path: Path):
    journal = CycleJournal(db_path)
    yield journal
    journal.close()


@pytest.fixture
def settings() -> EngineSettings:
    return EngineSettings(excluded_projects=frozenset({"Break"}))


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def clock():
    """Mutable clock: set ``clock.now`` to move time."""

    class _Clock:
        now = T0

        def __call__(self):
            return self.now

    return _Clock()


@pytest.fixture
def engine(ledger, pending_queue, gateway, settings, clock) -> DecisionEngine:
    return DecisionEngine(ledger, pending_queue, gateway, settings, clock=clock)
