"""Split one analysis cycle into contiguous activity segments."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional, Sequence

from .models import CalendarEvent, Sample, Segment, SegmentKind, TimeRange
from .normalization import activity_key

logger = logging.getLogger(__name__)

_IDLE_KEY = "\x00idle"
_GAP_KEY = "\x00gap"


@dataclass(slots=True)
class _Run:
    start: datetime
    end: datetime
    key: str
    kind: SegmentKind
    samples: list[Sample] = field(default_factory=list)

    @property
    def duration(self) -> timedelta:
        return self.end - self.start

    def absorb(self, other: "_Run") -> None:
        self.start = min(self.start, other.start)
        self.end = max(self.end, other.end)
        self.samples.extend(other.samples)
        self.samples.sort(key=lambda s: s.timestamp)


class Segmenter:
    """Turns an ordered sample stream into non-overlapping segments.

    The segments of a cycle always cover the whole cycle window: time that
    no sample accounts for becomes a ``GAP`` segment.
    """

    def __init__(
        self,
        *,
        debounce: timedelta,
        idle_threshold: timedelta,
        max_sample_span: timedelta,
    ) -> None:
        self.debounce = debounce
        self.idle_threshold = idle_threshold
        self.max_sample_span = max_sample_span

    @classmethod
    def from_settings(cls, settings) -> "Segmenter":
        return cls(
            debounce=settings.debounce,
            idle_threshold=settings.idle_threshold,
            max_sample_span=settings.max_sample_span,
        )

    def segment(
        self,
        window: TimeRange,
        samples: Sequence[Sample],
        events: Sequence[CalendarEvent] = (),
        carry_in: Optional[Sample] = None,
    ) -> list[Segment]:
        """Segment ``window``.

        ``carry_in`` is the last sample before the window; an activity that
        was already running at the boundary is cut at ``window.start``.
        """
        if window.duration <= timedelta(0):
            return []
        runs = self._spans(window, samples, carry_in)
        runs = self._coalesce(runs)
        runs = self._debounce(runs)
        runs = self._coalesce(runs)
        segments = [
            Segment(
                start=run.start,
                end=run.end,
                kind=run.kind,
                samples=tuple(run.samples),
                events=tuple(
                    event for event in events if TimeRange(run.start, run.end).overlaps(event.start, event.end)
                ),
            )
            for run in runs
        ]
        logger.debug(
            "Cycle %s-%s: %d samples -> %d segments (%d classifiable).",
            window.start,
            window.end,
            len(samples),
            len(segments),
            sum(1 for s in segments if s.is_classifiable),
        )
        return segments

    def _spans(
        self,
        window: TimeRange,
        samples: Sequence[Sample],
        carry_in: Optional[Sample],
    ) -> list[_Run]:
        ordered = sorted(
            (s for s in samples if window.start <= s.timestamp < window.end),
            key=lambda s: s.timestamp,
        )
        if carry_in is not None and carry_in.timestamp < window.start:
            if not ordered or ordered[0].timestamp > window.start:
                ordered.insert(0, carry_in)

        runs: list[_Run] = []
        cursor = window.start
        for index, sample in enumerate(ordered):
            span_start = max(sample.timestamp, window.start)
            next_ts = ordered[index + 1].timestamp if index + 1 < len(ordered) else window.end
            span_end = min(next_ts, sample.timestamp + self.max_sample_span, window.end)
            if span_end <= span_start:
                continue
            if span_start > cursor:
                runs.append(_Run(cursor, span_start, _GAP_KEY, SegmentKind.GAP))
            runs.append(
                _Run(
                    span_start,
                    span_end,
                    _sample_key(sample),
                    SegmentKind.IDLE if sample.is_idle else SegmentKind.ACTIVE,
                    [sample],
                )
            )
            cursor = span_end
        if cursor < window.end:
            runs.append(_Run(cursor, window.end, _GAP_KEY, SegmentKind.GAP))
        return runs

    @staticmethod
    def _coalesce(runs: list[_Run]) -> list[_Run]:
        merged: list[_Run] = []
        for run in runs:
            if merged and merged[-1].key == run.key and merged[-1].end == run.start:
                merged[-1].absorb(run)
            else:
                merged.append(run)
        return merged

    def _is_short(self, run: _Run) -> bool:
        if run.kind is SegmentKind.GAP:
            return False
        if run.kind is SegmentKind.IDLE:
            return run.duration <= self.idle_threshold
        return run.duration < self.debounce

    def _debounce(self, runs: list[_Run]) -> list[_Run]:
        """Fold flicker into its neighbours.

        A short run joins the preceding non-gap run, or the following one
        when it opens the cycle or follows a gap.
        """
        result: list[_Run] = []
        orphan: Optional[_Run] = None
        for run in runs:
            if orphan is not None:
                if run.kind is not SegmentKind.GAP:
                    run.absorb(orphan)
                else:
                    result.append(orphan)
                orphan = None
            if self._is_short(run):
                if result and result[-1].kind is not SegmentKind.GAP and result[-1].end == run.start:
                    result[-1].absorb(run)
                    continue
                orphan = run
                continue
            result.append(run)
        if orphan is not None:
            result.append(orphan)
        return result


def _sample_key(sample: Sample) -> str:
    if sample.is_idle:
        return _IDLE_KEY
    return activity_key(sample.window_title) or sample.window_title
