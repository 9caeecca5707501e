"""Decision engine: turns classified segments into registrations or questions."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Optional, Sequence

from .classifier import ActivityClassifier
from .config import EngineSettings
from .errors import RegistrationError, RegistrationErrorKind
from .gateway import RegistrationGateway
from .ledger import PendingQueue, RegistrationLedger
from .models import (
    AutoRegistered,
    Candidate,
    DecisionOutcome,
    PendingConfirmation,
    PendingItem,
    RegistrationRecord,
    Segment,
    SegmentKind,
    SkipReason,
    Skipped,
    TimeRange,
    utc_now,
)
from .normalization import activity_key, is_private_window
from .projects import ProjectHints

logger = logging.getLogger(__name__)

SegmentLoader = Callable[[PendingItem], Optional[Segment]]


def _ordered_titles(segment: Segment) -> tuple[str, ...]:
    shares = segment.title_shares
    return tuple(title for title, _ in sorted(shares.items(), key=lambda item: (-item[1], item[0])))


class DecisionEngine:
    """Per-segment state machine: New -> Classified -> terminal outcome.

    A segment already present in the ledger is never sent to the gateway
    again; a record is written only after the gateway confirms success.
    """

    def __init__(
        self,
        ledger: RegistrationLedger,
        pending: PendingQueue,
        gateway: RegistrationGateway,
        settings: EngineSettings,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.ledger = ledger
        self.pending = pending
        self.gateway = gateway
        self.settings = settings
        self._clock = clock

    def process(self, segment: Segment, classifier: ActivityClassifier) -> DecisionOutcome:
        """Run one segment through classification and the decision policy."""
        key = segment.key
        if segment.kind is SegmentKind.IDLE:
            return self._log(Skipped(key, SkipReason.IDLE))
        if segment.kind is SegmentKind.GAP:
            return self._log(Skipped(key, SkipReason.NO_DATA))

        existing = self.ledger.get(key)
        if existing is not None:
            return self._log(_reused(existing))

        titles = _ordered_titles(segment)
        if self.settings.skip_private_windows and any(is_private_window(t) for t in titles):
            return self._log(Skipped(key, SkipReason.PRIVATE_WINDOW))

        waiting = self.pending.get(key)
        if waiting is not None:
            if waiting.registration_failed:
                return self._retry(waiting, ProjectHints.from_segment(segment))
            return self._log(PendingConfirmation(key, waiting.candidates))

        candidates = classifier.classify(segment)
        return self.decide(segment, candidates)

    def decide(self, segment: Segment, candidates: Sequence[Candidate]) -> DecisionOutcome:
        """Apply the threshold policy to an already classified segment."""
        return self._decide(
            segment.key,
            segment.time_range,
            _ordered_titles(segment),
            list(candidates),
            ProjectHints.from_segment(segment),
        )

    def confirm(
        self, segment_key: str, label: str, project: Optional[str] = None
    ) -> DecisionOutcome:
        """Register a pending segment with the label the user picked or typed.

        Segments whose automatic registration failed are pending too and can
        be confirmed the same way.

        Raises:
            KeyError: the segment is neither pending nor registered.
            ValueError: ``label`` is blank.
        """
        label = label.strip()
        if not label:
            raise ValueError("label must not be empty")
        project = project.strip() if project and project.strip() else None
        item = self.pending.get(segment_key)
        if item is None:
            existing = self.ledger.get(segment_key)
            if existing is not None:
                return self._log(_reused(existing))
            raise KeyError(segment_key)
        outcome = self._register(
            segment_key,
            label,
            project,
            item.time_range,
            title_key=activity_key(item.titles[0]) if item.titles else None,
            hints=ProjectHints.from_titles(item.titles),
            confirmed_by_user=True,
        )
        if isinstance(outcome, AutoRegistered):
            self.pending.remove(segment_key)
        return self._log(outcome)

    def dismiss(self, segment_key: str) -> Skipped:
        if not self.pending.remove(segment_key):
            raise KeyError(segment_key)
        outcome = Skipped(segment_key, SkipReason.DISMISSED)
        self._log(outcome)
        return outcome

    def retry_failed(self) -> list[DecisionOutcome]:
        """Try again to register every segment whose registration failed."""
        return [
            self._retry(item, ProjectHints.from_titles(item.titles))
            for item in self.pending.items()
            if item.registration_failed
        ]

    def reconsider_pending(
        self, classifier: ActivityClassifier, load_segment: SegmentLoader
    ) -> list[DecisionOutcome]:
        """Retry failed registrations, re-score unresolved items, expire stale ones.

        Failed registrations never expire. Low-confidence items older than
        the pending expiry are dropped as ``PENDING_EXPIRED``; the rest are
        classified again against current history and registered if they now
        clear the threshold.
        """
        outcomes = self.retry_failed()
        now = self._clock()
        for item in self.pending.items():
            if item.registration_failed:
                continue
            if now - item.created_at >= self.settings.pending_expiry:
                self.pending.remove(item.segment_key)
                outcomes.append(self._log(Skipped(item.segment_key, SkipReason.PENDING_EXPIRED)))
                continue
            segment = load_segment(item)
            if segment is None or not segment.is_classifiable:
                continue
            candidates = classifier.classify(segment)
            outcome = self._decide(
                item.segment_key,
                item.time_range,
                item.titles,
                candidates,
                ProjectHints.from_segment(segment),
                created_at=item.created_at,
            )
            if not isinstance(outcome, PendingConfirmation):
                outcomes.append(outcome)
        return outcomes

    def _retry(self, item: PendingItem, hints: ProjectHints) -> DecisionOutcome:
        logger.info(
            "Retrying registration of segment %s (last failure: %s).", item.segment_key, item.failure
        )
        return self._decide(
            item.segment_key,
            item.time_range,
            item.titles,
            list(item.candidates),
            hints,
            created_at=item.created_at,
        )

    def _decide(
        self,
        key: str,
        time_range: TimeRange,
        titles: tuple[str, ...],
        candidates: list[Candidate],
        hints: ProjectHints = ProjectHints(),
        *,
        created_at: Optional[datetime] = None,
    ) -> DecisionOutcome:
        if not candidates:
            return self._log(Skipped(key, SkipReason.NO_CANDIDATES))
        top = candidates[0]
        if top.confidence < self.settings.confidence_threshold:
            self._park(key, time_range, titles, candidates, created_at)
            return self._log(PendingConfirmation(key, tuple(candidates)))
        if self.settings.is_excluded(top.suggested_project):
            self.pending.remove(key)
            return self._log(Skipped(key, SkipReason.EXCLUDED_PROJECT, top.suggested_project))
        outcome = self._register(
            key,
            top.label,
            top.suggested_project,
            time_range,
            title_key=activity_key(titles[0]) if titles else None,
            hints=hints,
        )
        if isinstance(outcome, Skipped) and outcome.reason is SkipReason.REGISTRATION_FAILED:
            # Parked so later cycles retry it.
            self._park(key, time_range, titles, candidates, created_at, failure=outcome.detail)
        else:
            self.pending.remove(key)
        return self._log(outcome)

    def _park(
        self,
        key: str,
        time_range: TimeRange,
        titles: tuple[str, ...],
        candidates: Sequence[Candidate],
        created_at: Optional[datetime],
        *,
        failure: Optional[str] = None,
    ) -> None:
        existing = self.pending.get(key)
        if existing is not None:
            created_at = existing.created_at
        self.pending.put(
            PendingItem(
                segment_key=key,
                start=time_range.start,
                end=time_range.end,
                titles=titles,
                candidates=tuple(candidates),
                created_at=created_at or self._clock(),
                failure=failure,
            )
        )

    def _register(
        self,
        key: str,
        label: str,
        project: Optional[str],
        time_range: TimeRange,
        *,
        title_key: Optional[str],
        hints: ProjectHints = ProjectHints(),
        confirmed_by_user: bool = False,
    ) -> DecisionOutcome:
        timeout = self.settings.registration_timeout.total_seconds()
        with self.ledger.claim(key) as existing:
            if existing is not None:
                return _reused(existing)
            try:
                project = self.gateway.resolve_project(label, project, hints, timeout=timeout)
                if not confirmed_by_user and self.settings.is_excluded(project):
                    return Skipped(key, SkipReason.EXCLUDED_PROJECT, project)
                entry_id = self._create_or_extend(label, project, time_range, timeout)
            except RegistrationError as exc:
                logger.error("Registration of segment %s failed: %s", key, exc)
                return Skipped(key, SkipReason.REGISTRATION_FAILED, exc.kind.value)
            record = self.ledger.write(
                RegistrationRecord(
                    segment_key=key,
                    entry_id=entry_id,
                    label=label,
                    project=project,
                    title_key=title_key,
                    start=time_range.start,
                    end=time_range.end,
                    created_at=self._clock(),
                    confirmed_by_user=confirmed_by_user,
                )
            )
        return AutoRegistered(key, record.entry_id, record.label, record.project)

    def _create_or_extend(
        self, label: str, project: Optional[str], time_range: TimeRange, timeout: float
    ) -> str:
        """Extend the previous entry when the same activity continues; otherwise create one."""
        previous = self.ledger.latest_ending_by(time_range.start)
        if (
            previous is not None
            and previous.label == label
            and previous.project == project
            and time_range.start - previous.end <= self.settings.continuity_gap
        ):
            entry_start = self.ledger.entry_start(previous.entry_id) or previous.start
            try:
                entry_id = self.gateway.extend(
                    previous.entry_id, TimeRange(entry_start, time_range.end), timeout=timeout
                )
            except RegistrationError as exc:
                if exc.kind is not RegistrationErrorKind.INVALID_PROJECT:
                    raise
                logger.warning(
                    "Entry %s can no longer be extended (%s); creating a new one.",
                    previous.entry_id,
                    exc,
                )
            else:
                logger.info("Continuing entry %s for %r until %s.", entry_id, label, time_range.end)
                return entry_id
        return self.gateway.register(label, project, time_range, timeout=timeout)

    @staticmethod
    def _log(outcome: DecisionOutcome) -> DecisionOutcome:
        if isinstance(outcome, AutoRegistered):
            logger.info(
                "Segment %s registered as %s (%r, project=%s%s).",
                outcome.segment_key,
                outcome.entry_id,
                outcome.label,
                outcome.project,
                ", existing" if outcome.reused else "",
            )
        elif isinstance(outcome, PendingConfirmation):
            top = outcome.candidates[0] if outcome.candidates else None
            logger.info(
                "Segment %s needs confirmation (top: %r at %.2f).",
                outcome.segment_key,
                top.label if top else None,
                top.confidence if top else 0.0,
            )
        else:
            logger.info(
                "Segment %s skipped: %s%s",
                outcome.segment_key,
                outcome.reason.value,
                f" ({outcome.detail})" if outcome.detail else "",
            )
        return outcome


def _reused(record: RegistrationRecord) -> AutoRegistered:
    return AutoRegistered(
        segment_key=record.segment_key,
        entry_id=record.entry_id,
        label=record.label,
        project=record.project,
        reused=True,
    )
