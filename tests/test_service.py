"""Tests for background task management."""

import threading
from pathlib import Path

from autotrack.config import ConfigReloader
from autotrack.errors import CollectionError
from autotrack.service import PeriodicTask, TrackerService

from support import FakeGateway


def test_periodic_task_survives_errors_and_stops() -> None:
    calls: list[int] = []
    done = threading.Event()

    def work() -> None:
        calls.append(1)
        if len(calls) == 1:
            raise CollectionError("transient")
        done.set()

    task = PeriodicTask("test", work, interval=0.01)
    task.start()
    assert done.wait(5)
    task.stop()

    assert len(calls) >= 2
    assert not task.is_running()


def test_service_runs_analysis_without_sampling(tmp_path: Path) -> None:
    path = tmp_path / "config.toml"
    path.write_text("", encoding="utf-8")
    service = TrackerService(ConfigReloader(path), tmp_path / "db.sqlite3", gateway=FakeGateway())
    try:
        service.start(sample=False)
        status = service.status()
        assert status["tasks"] == {"analysis": True}
        assert status["buffered_samples"] == 0
    finally:
        service.close()
