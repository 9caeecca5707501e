"""Background threads that keep sampling, analysis and calendar sync running."""

from __future__ import annotations

import logging
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Optional

from .calendar_sync import GoogleCalendarSync
from .classifier import LanguageModelClient
from .collector import IdleDetector, SampleCollector, WindowProbe, default_probe
from .config import ConfigReloader
from .errors import AutotrackError, CycleInProgressError
from .gateway import RegistrationGateway, TogglGateway
from .ledger import CycleJournal, PendingQueue, RegistrationLedger
from .llm import ChatCompletionsClient
from .models import utc_now
from .pipeline import AnalysisPipeline
from .store import SampleStore

logger = logging.getLogger(__name__)

ANALYSIS_POLL_SECONDS = 60.0


class PeriodicTask:
    """Run ``fn`` every ``interval`` seconds in a daemon thread."""

    def __init__(self, name: str, fn: Callable[[], Any], interval: float) -> None:
        self.name = name
        self._fn = fn
        self._interval = interval
        self._lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self._stop_event: Optional[threading.Event] = None

    def start(self) -> None:
        with self._lock:
            if self._thread and self._thread.is_alive():
                return
            stop_event = threading.Event()
            thread = threading.Thread(
                target=self._run, args=(stop_event,), name=self.name, daemon=True
            )
            self._thread = thread
            self._stop_event = stop_event
            thread.start()
            logger.info("%s thread started (every %.0fs).", self.name, self._interval)

    def stop(self) -> None:
        thread: Optional[threading.Thread] = None
        with self._lock:
            if not self._thread or not self._thread.is_alive() or not self._stop_event:
                return
            self._stop_event.set()
            thread = self._thread
            self._thread = None
            self._stop_event = None
        if thread:
            thread.join(timeout=10)
            logger.info("%s thread stopped.", self.name)

    def is_running(self) -> bool:
        with self._lock:
            return bool(self._thread and self._thread.is_alive())

    def _run(self, stop_event: threading.Event) -> None:
        while not stop_event.is_set():
            try:
                self._fn()
            except CycleInProgressError as exc:
                logger.info("%s: %s", self.name, exc)
            except AutotrackError as exc:
                logger.error("%s failed: %s", self.name, exc)
            except Exception:
                logger.exception("%s failed unexpectedly.", self.name)
            # Sleep in an interruptible manner.
            stop_event.wait(self._interval)


class TrackerService:
    """Owns the store handles, the remote clients and the background tasks."""

    def __init__(
        self,
        reloader: ConfigReloader,
        db_path: Path,
        *,
        gateway: Optional[RegistrationGateway] = None,
        llm_client: Optional[LanguageModelClient] = None,
        probe: Optional[WindowProbe] = None,
        idle_detector: Optional[IdleDetector] = None,
        calendar: Optional[GoogleCalendarSync] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        config = reloader.config
        self.reloader = reloader
        self.db_path = Path(db_path)
        self.store = SampleStore(self.db_path)
        self.ledger = RegistrationLedger(self.db_path)
        self.pending = PendingQueue(self.db_path)
        self.journal = CycleJournal(self.db_path)
        self.gateway = gateway or TogglGateway.from_config(config.require_registration())
        if llm_client is None and config.online_enabled and config.openai is not None:
            llm_client = ChatCompletionsClient.from_config(config.openai)
        self.llm_client = llm_client
        self.pipeline = AnalysisPipeline(
            self.store,
            self.ledger,
            self.pending,
            self.journal,
            self.gateway,
            reloader.current,
            llm_client=llm_client,
            clock=clock,
        )
        self.calendar = calendar or GoogleCalendarSync(
            self.store, config.google_calendar, clock=clock
        )
        self._probe = probe
        self._idle_detector = idle_detector
        self._clock = clock
        self.collector: Optional[SampleCollector] = None
        self._tasks: list[PeriodicTask] = []

    def start(self, *, sample: bool = True) -> None:
        settings = self.reloader.current()
        if self._tasks:
            return
        if sample:
            probe, idle_detector = self._probe, self._idle_detector
            if probe is None or idle_detector is None:
                default, default_idle = default_probe()
                probe = probe or default
                idle_detector = idle_detector or default_idle
            self.collector = SampleCollector(
                self.store, probe, idle_detector, settings, clock=self._clock
            )
            self._tasks.append(
                PeriodicTask(
                    "sampler",
                    self.collector.sample_once,
                    settings.sample_interval.total_seconds(),
                )
            )
        self._tasks.append(
            PeriodicTask("analysis", self.pipeline.run_due_cycles, ANALYSIS_POLL_SECONDS)
        )
        calendar_config = self.reloader.config.google_calendar
        if self.calendar.enabled and calendar_config is not None:
            self._tasks.append(
                PeriodicTask(
                    "calendar",
                    self.calendar.sync_once,
                    calendar_config.sync_interval_minutes * 60.0,
                )
            )
        for task in self._tasks:
            task.start()

    def stop(self) -> None:
        for task in self._tasks:
            task.stop()
        self._tasks = []
        if self.collector is not None:
            self.collector.flush()

    def status(self) -> dict[str, Any]:
        tasks = {task.name: task.is_running() for task in self._tasks}
        last_end = self.journal.last_end()
        return {
            "tasks": tasks,
            "analysis_running": self.pipeline.is_running,
            "database_path": str(self.db_path),
            "last_cycle_end": last_end.isoformat() if last_end else None,
            "pending_count": len(self.pending.items()),
            "buffered_samples": self.collector.buffered if self.collector else 0,
            "online_enabled": self.reloader.config.online_enabled,
            "recent_cycles": [dict(row) for row in self.journal.recent(5)],
        }

    def run_forever(self, *, sample: bool = True) -> None:
        """Start every task and block until interrupted."""
        self.start(sample=sample)
        stop_event = threading.Event()
        try:
            while not stop_event.wait(1.0):
                pass
        except KeyboardInterrupt:
            logger.info("Interrupted; shutting down.")
        finally:
            self.close()

    def close(self) -> None:
        self.stop()
        for closable in (self.gateway, self.llm_client, self.calendar):
            close = getattr(closable, "close", None)
            if close is not None:
                close()
        for database in (self.store, self.ledger, self.pending, self.journal):
            database.close()
