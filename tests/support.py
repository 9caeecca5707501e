"""Shared builders and fakes for the test suite."""

from datetime import datetime, timedelta, timezone
from typing import Optional, Sequence

from autotrack.errors import ClassificationError, RegistrationError, RegistrationErrorKind
from autotrack.gateway import RegistrationGateway
from autotrack.models import (
    CalendarEvent,
    RegistrationRecord,
    Sample,
    Segment,
    SegmentKind,
    TimeRange,
)
from autotrack.normalization import activity_key
from autotrack.projects import ProjectHints

T0 = datetime(2024, 5, 6, 9, 0, tzinfo=timezone.utc)
MINUTE = timedelta(minutes=1)


def at(minutes: float) -> datetime:
    return T0 + timedelta(minutes=minutes)


def samples(titles: Sequence[Optional[str]], *, start: datetime = T0, step: timedelta = MINUTE) -> list[Sample]:
    """One sample per entry; ``None`` stands for an idle sample."""
    result = []
    for index, title in enumerate(titles):
        ts = start + step * index
        result.append(Sample.idle(ts) if title is None else Sample(ts, title, "app"))
    return result


def segment(
    title: str,
    *,
    start: datetime = T0,
    minutes: int = 12,
    count: int = 3,
    events: Sequence[CalendarEvent] = (),
) -> Segment:
    end = start + timedelta(minutes=minutes)
    step = timedelta(minutes=minutes) / count
    return Segment(
        start=start,
        end=end,
        kind=SegmentKind.ACTIVE,
        samples=tuple(samples([title] * count, start=start, step=step)),
        events=tuple(events),
    )


def history_record(
    title: str,
    label: str,
    project: Optional[str] = None,
    *,
    end: datetime = T0,
    index: int = 0,
    confirmed: bool = False,
) -> RegistrationRecord:
    return RegistrationRecord(
        segment_key=f"history/{title}/{index}",
        entry_id=f"h{index}",
        label=label,
        project=project,
        title_key=activity_key(title),
        start=end - timedelta(minutes=15),
        end=end,
        created_at=end,
        confirmed_by_user=confirmed,
    )


class FakeGateway(RegistrationGateway):
    """Counts calls; ``failures`` are raised in order before calls succeed.

    ``projects`` maps a label to the project ``resolve_project`` picks for it.
    """

    def __init__(
        self,
        failures: Sequence[RegistrationErrorKind] = (),
        projects: Optional[dict[str, str]] = None,
    ) -> None:
        self.failures = list(failures)
        self.projects = dict(projects or {})
        self.registered: list[tuple[str, Optional[str], TimeRange]] = []
        self.extended: list[tuple[str, TimeRange]] = []
        self.hints: list[ProjectHints] = []
        self.timeouts: list[Optional[float]] = []
        self._next_id = 100

    @property
    def calls(self) -> int:
        return len(self.registered) + len(self.extended)

    def register(
        self,
        label: str,
        project: Optional[str],
        time_range: TimeRange,
        *,
        timeout: Optional[float] = None,
    ) -> str:
        self.timeouts.append(timeout)
        self._maybe_fail()
        self.registered.append((label, project, time_range))
        self._next_id += 1
        return str(self._next_id)

    def extend(
        self, entry_id: str, time_range: TimeRange, *, timeout: Optional[float] = None
    ) -> str:
        self.timeouts.append(timeout)
        self._maybe_fail()
        self.extended.append((entry_id, time_range))
        return entry_id

    def resolve_project(
        self,
        label: str,
        project: Optional[str],
        hints: ProjectHints = ProjectHints(),
        *,
        timeout: Optional[float] = None,
    ) -> Optional[str]:
        self.hints.append(hints)
        return self.projects.get(label, project)

    def _maybe_fail(self) -> None:
        if self.failures:
            raise RegistrationError(self.failures.pop(0), "simulated failure")


class FakeModelClient:
    """Returns canned replies; an exception instance in ``replies`` is raised instead."""

    def __init__(self, replies: Sequence[object], reachable: bool = True) -> None:
        self.replies = list(replies)
        self.reachable = reachable
        self.prompts: list[str] = []
        self.timeouts: list[Optional[float]] = []

    def complete(
        self, system_prompt: str, user_prompt: str, *, timeout: Optional[float] = None
    ) -> str:
        self.prompts.append(user_prompt)
        self.timeouts.append(timeout)
        reply = self.replies.pop(0) if self.replies else ClassificationError("no reply")
        if isinstance(reply, Exception):
            raise reply
        return str(reply)

    def is_reachable(self) -> bool:
        return self.reachable
