"""Domain models for samples, segments, candidates and decisions."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional, Union

IDLE_TITLE = "Idle"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True, slots=True)
class TimeRange:
    """Half-open interval ``[start, end)``."""

    start: datetime
    end: datetime

    def __post_init__(self) -> None:
        if self.end < self.start:
            raise ValueError(f"end ({self.end}) is before start ({self.start})")

    @property
    def duration(self) -> timedelta:
        return self.end - self.start

    def contains(self, moment: datetime) -> bool:
        return self.start <= moment < self.end

    def overlaps(self, start: datetime, end: datetime) -> bool:
        return start < self.end and end > self.start

    def overlap_with(self, start: datetime, end: datetime) -> timedelta:
        lo = max(self.start, start)
        hi = min(self.end, end)
        return max(hi - lo, timedelta(0))


@dataclass(frozen=True, slots=True)
class Sample:
    """A single foreground-window observation."""

    timestamp: datetime
    window_title: str
    process_hint: Optional[str] = None
    is_idle: bool = False

    @classmethod
    def idle(cls, timestamp: datetime) -> "Sample":
        return cls(timestamp=timestamp, window_title=IDLE_TITLE, is_idle=True)


@dataclass(frozen=True, slots=True)
class CalendarEvent:
    event_id: str
    start: datetime
    end: datetime
    title: str
    description: Optional[str] = None
    calendar_id: Optional[str] = None
    cancelled: bool = False

    @property
    def timestamp(self) -> datetime:
        return self.start


StoreItem = Union[Sample, CalendarEvent]


class SegmentKind(str, Enum):
    ACTIVE = "active"
    IDLE = "idle"
    GAP = "gap"


@dataclass(frozen=True, slots=True)
class Segment:
    """A contiguous span of one activity inside an analysis cycle.

    Samples are shared with the store and with other cycles; a segment only
    references them.
    """

    start: datetime
    end: datetime
    kind: SegmentKind
    samples: tuple[Sample, ...] = ()
    events: tuple[CalendarEvent, ...] = ()

    @property
    def time_range(self) -> TimeRange:
        return TimeRange(self.start, self.end)

    @property
    def duration(self) -> timedelta:
        return self.end - self.start

    @property
    def is_classifiable(self) -> bool:
        return self.kind is SegmentKind.ACTIVE

    @property
    def title_shares(self) -> dict[str, float]:
        """Fraction of the segment each distinct non-idle title was observed in.

        Each sample counts until the next sample or the segment end.
        """
        active = [s for s in self.samples if not s.is_idle]
        if not active:
            return {}
        weights: dict[str, float] = {}
        ordered = sorted(self.samples, key=lambda s: s.timestamp)
        for index, sample in enumerate(ordered):
            if sample.is_idle:
                continue
            start = max(sample.timestamp, self.start)
            stop = ordered[index + 1].timestamp if index + 1 < len(ordered) else self.end
            stop = min(stop, self.end)
            seconds = max((stop - start).total_seconds(), 0.0)
            weights[sample.window_title] = weights.get(sample.window_title, 0.0) + seconds
        total = sum(weights.values())
        if total <= 0:
            share = 1.0 / len({s.window_title for s in active})
            return {s.window_title: share for s in active}
        return {title: seconds / total for title, seconds in weights.items()}

    @property
    def dominant_title(self) -> Optional[str]:
        shares = self.title_shares
        if not shares:
            return None
        return sorted(shares.items(), key=lambda item: (-item[1], item[0]))[0][0]

    @property
    def content_hash(self) -> str:
        digest = hashlib.sha256()
        digest.update(self.kind.value.encode())
        for sample in sorted(self.samples, key=lambda s: s.timestamp):
            digest.update(b"\x1f")
            digest.update(sample.timestamp.isoformat().encode())
            digest.update(b"\x1e")
            digest.update(sample.window_title.encode())
            digest.update(b"\x1e")
            digest.update(b"1" if sample.is_idle else b"0")
        return digest.hexdigest()[:16]

    @property
    def key(self) -> str:
        return f"{self.start.isoformat()}/{self.end.isoformat()}/{self.content_hash}"


class CandidateSource(str, Enum):
    ONLINE = "online"
    OFFLINE = "offline"


@dataclass(frozen=True, slots=True)
class Candidate:
    label: str
    confidence: float
    suggested_project: Optional[str] = None
    source: CandidateSource = CandidateSource.OFFLINE

    def __post_init__(self) -> None:
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"confidence {self.confidence!r} outside [0, 1]")


def sort_candidates(candidates: list[Candidate]) -> list[Candidate]:
    return sorted(
        candidates,
        key=lambda c: (-c.confidence, c.label, c.suggested_project or ""),
    )


class SkipReason(str, Enum):
    IDLE = "idle"
    NO_DATA = "no_data"
    EXCLUDED_PROJECT = "excluded_project"
    REGISTRATION_FAILED = "registration_failed"
    PRIVATE_WINDOW = "private_window"
    NO_CANDIDATES = "no_candidates"
    PENDING_EXPIRED = "pending_expired"
    DISMISSED = "dismissed"


@dataclass(frozen=True, slots=True)
class AutoRegistered:
    segment_key: str
    entry_id: str
    label: str
    project: Optional[str] = None
    reused: bool = False


@dataclass(frozen=True, slots=True)
class PendingConfirmation:
    segment_key: str
    candidates: tuple[Candidate, ...]


@dataclass(frozen=True, slots=True)
class Skipped:
    segment_key: str
    reason: SkipReason
    detail: Optional[str] = None


DecisionOutcome = Union[AutoRegistered, PendingConfirmation, Skipped]


@dataclass(frozen=True, slots=True)
class RegistrationRecord:
    """Durable proof that a segment produced a remote time entry."""

    segment_key: str
    entry_id: str
    label: str
    project: Optional[str]
    title_key: Optional[str]
    start: datetime
    end: datetime
    created_at: datetime = field(default_factory=utc_now)
    confirmed_by_user: bool = False


@dataclass(frozen=True, slots=True)
class PendingItem:
    """A segment waiting for the user.

    Low-confidence segments wait for a label. Segments whose registration
    failed carry the error kind in ``failure`` and are retried every cycle
    until they succeed or the user confirms or dismisses them.
    """

    segment_key: str
    start: datetime
    end: datetime
    titles: tuple[str, ...]
    candidates: tuple[Candidate, ...]
    created_at: datetime = field(default_factory=utc_now)
    failure: Optional[str] = None

    @property
    def registration_failed(self) -> bool:
        return self.failure is not None

    @property
    def time_range(self) -> TimeRange:
        return TimeRange(self.start, self.end)
