"""One analysis cycle: snapshot, segment, classify, decide."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Sequence

from .classifier import (
    DEFAULT_RULES,
    KeywordRule,
    LanguageModelClient,
    OfflineClassifier,
    select_classifier,
)
from .config import EngineSettings
from .engine import DecisionEngine
from .errors import CycleInProgressError
from .gateway import RegistrationGateway
from .history import LabelHistory
from .ledger import CycleJournal, PendingQueue, RegistrationLedger
from .models import (
    AutoRegistered,
    CalendarEvent,
    DecisionOutcome,
    PendingConfirmation,
    PendingItem,
    Sample,
    Segment,
    SegmentKind,
    TimeRange,
    utc_now,
)
from .segmenter import Segmenter
from .store import SampleStore

logger = logging.getLogger(__name__)

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
HISTORY_WINDOW = timedelta(days=180)


def align_to_cycle(moment: datetime, length: timedelta) -> datetime:
    """Latest cycle boundary at or before ``moment``."""
    return _EPOCH + ((moment - _EPOCH) // length) * length


@dataclass(slots=True)
class CycleReport:
    window: TimeRange
    classifier: str
    segments: list[Segment] = field(default_factory=list)
    outcomes: list[DecisionOutcome] = field(default_factory=list)
    reconsidered: list[DecisionOutcome] = field(default_factory=list)

    def count(self, kind: type) -> int:
        return sum(1 for outcome in self.outcomes if isinstance(outcome, kind))


class AnalysisPipeline:
    """Runs analysis cycles against the shared store.

    Only one cycle runs at a time; a concurrent request fails fast with
    ``CycleInProgressError`` instead of queueing behind it.
    """

    def __init__(
        self,
        store: SampleStore,
        ledger: RegistrationLedger,
        pending: PendingQueue,
        journal: CycleJournal,
        gateway: RegistrationGateway,
        settings_provider: Callable[[], EngineSettings],
        *,
        llm_client: Optional[LanguageModelClient] = None,
        rules: Sequence[KeywordRule] = DEFAULT_RULES,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.ledger = ledger
        self.pending = pending
        self.journal = journal
        self.gateway = gateway
        self.settings_provider = settings_provider
        self.llm_client = llm_client
        self.rules = tuple(rules)
        self._clock = clock
        self._cycle_lock = threading.Lock()

    @property
    def is_running(self) -> bool:
        return self._cycle_lock.locked()

    def engine(self, settings: Optional[EngineSettings] = None) -> DecisionEngine:
        return DecisionEngine(
            self.ledger,
            self.pending,
            self.gateway,
            settings or self.settings_provider(),
            clock=self._clock,
        )

    def run_cycle(
        self, window: TimeRange, settings: Optional[EngineSettings] = None
    ) -> CycleReport:
        if not self._cycle_lock.acquire(blocking=False):
            raise CycleInProgressError(f"An analysis cycle is already running ({window.start})")
        try:
            return self._run_cycle_locked(window, settings or self.settings_provider())
        finally:
            self._cycle_lock.release()

    def run_due_cycles(self, now: Optional[datetime] = None) -> list[CycleReport]:
        """Process every finished cycle not yet in the journal, then prune.

        When no cycle is due, failed registrations are retried instead.
        """
        now = now or self._clock()
        settings = self.settings_provider()
        length = settings.cycle_length
        latest_end = align_to_cycle(now, length)
        start = self.journal.last_end() or latest_end - length
        earliest = latest_end - length * settings.max_catchup_cycles
        if start < earliest:
            logger.warning("Skipping analysis of %s-%s: beyond catch-up limit.", start, earliest)
            start = earliest
        reports: list[CycleReport] = []
        while start + length <= latest_end:
            reports.append(self.run_cycle(TimeRange(start, start + length), settings))
            start += length
        if not reports:
            self.retry_failed(settings)
        self.prune(settings, now)
        return reports

    def retry_failed(self, settings: Optional[EngineSettings] = None) -> list[DecisionOutcome]:
        if not self._cycle_lock.acquire(blocking=False):
            raise CycleInProgressError("An analysis cycle is already running")
        try:
            return self.engine(settings).retry_failed()
        finally:
            self._cycle_lock.release()

    def prune(self, settings: EngineSettings, now: datetime) -> tuple[int, int]:
        """Apply retention without touching data an unprocessed cycle or pending item needs."""
        cutoff = now - settings.retention
        protected = [align_to_cycle(now, settings.cycle_length)]
        last_end = self.journal.last_end()
        if last_end is not None:
            protected.append(last_end)
        oldest_pending = self.pending.oldest_start()
        if oldest_pending is not None:
            protected.append(oldest_pending)
        # Keep the carry-in sample the next cycle will look up.
        cutoff = min(cutoff, min(protected) - settings.max_sample_span)
        return self.store.prune(cutoff)

    def load_segment(self, item: PendingItem) -> Optional[Segment]:
        """Rebuild a pending segment from the samples still in the store."""
        samples, events = self._snapshot(item.time_range)
        if not samples or samples[0].timestamp > item.start:
            carry = self.store.latest_sample_before(item.start)
            if carry is not None:
                samples.insert(0, carry)
        if not any(not sample.is_idle for sample in samples):
            return None
        return Segment(
            start=item.start,
            end=item.end,
            kind=SegmentKind.ACTIVE,
            samples=tuple(samples),
            events=tuple(events),
        )

    def _snapshot(self, window: TimeRange) -> tuple[list[Sample], list[CalendarEvent]]:
        samples: list[Sample] = []
        events: list[CalendarEvent] = []
        for item in self.store.query(window):
            if isinstance(item, Sample):
                if item.timestamp < window.end:
                    samples.append(item)
            else:
                events.append(item)
        return samples, events

    def _run_cycle_locked(self, window: TimeRange, settings: EngineSettings) -> CycleReport:
        logger.info("Analysing cycle %s - %s", window.start, window.end)
        history = LabelHistory(self.ledger.records(start=window.end - HISTORY_WINDOW))
        classifier = select_classifier(settings, history, self.llm_client, self.rules)
        engine = self.engine(settings)
        report = CycleReport(window=window, classifier=type(classifier).__name__)

        report.reconsidered = engine.reconsider_pending(
            OfflineClassifier(history, self.rules), self.load_segment
        )

        samples, events = self._snapshot(window)
        carry_in = self.store.latest_sample_before(window.start)
        report.segments = Segmenter.from_settings(settings).segment(
            window, samples, events, carry_in
        )
        for segment in report.segments:
            report.outcomes.append(engine.process(segment, classifier))

        self.journal.record(
            window,
            self._clock(),
            auto_registered=report.count(AutoRegistered),
            pending=report.count(PendingConfirmation),
            skipped=len(report.outcomes)
            - report.count(AutoRegistered)
            - report.count(PendingConfirmation),
        )
        logger.info(
            "Cycle %s done with %s: %d registered, %d pending, %d skipped.",
            window.start,
            report.classifier,
            report.count(AutoRegistered),
            report.count(PendingConfirmation),
            len(report.outcomes) - report.count(AutoRegistered) - report.count(PendingConfirmation),
        )
        return report
