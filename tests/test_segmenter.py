"""Tests for cycle segmentation."""

import random
from datetime import timedelta

import pytest

from autotrack.config import EngineSettings
from autotrack.models import CalendarEvent, Sample, Segment, SegmentKind, TimeRange
from autotrack.segmenter import Segmenter

from support import T0, at, samples

WINDOW = TimeRange(T0, at(15))


@pytest.fixture
def segmenter() -> Segmenter:
    return Segmenter.from_settings(EngineSettings())


def _assert_tiles(segments: list[Segment], window: TimeRange) -> None:
    assert segments[0].start == window.start
    assert segments[-1].end == window.end
    for left, right in zip(segments, segments[1:]):
        assert left.end == right.start
    assert sum((s.duration for s in segments), timedelta(0)) == window.duration


class TestCoverage:
    def test_single_activity_covers_the_window(self, segmenter: Segmenter) -> None:
        segments = segmenter.segment(WINDOW, samples(["Editor - main.py"] * 15))
        assert len(segments) == 1
        assert segments[0].kind is SegmentKind.ACTIVE
        _assert_tiles(segments, WINDOW)

    def test_mixed_stream_tiles_without_overlap(self, segmenter: Segmenter) -> None:
        stream = samples(["A doc"] * 5 + [None] * 6 + ["B sheet"] * 2)
        segments = segmenter.segment(WINDOW, stream)
        _assert_tiles(segments, WINDOW)
        assert [s.kind for s in segments] == [
            SegmentKind.ACTIVE,
            SegmentKind.IDLE,
            SegmentKind.ACTIVE,
            SegmentKind.GAP,
        ]

    def test_empty_window_is_one_gap(self, segmenter: Segmenter) -> None:
        segments = segmenter.segment(WINDOW, [])
        assert len(segments) == 1
        assert segments[0].kind is SegmentKind.GAP
        assert not segments[0].is_classifiable

    def test_missing_samples_become_a_gap(self, segmenter: Segmenter) -> None:
        segments = segmenter.segment(WINDOW, samples(["A doc"] * 5))
        assert [(s.kind, s.start, s.end) for s in segments] == [
            (SegmentKind.ACTIVE, T0, at(6)),
            (SegmentKind.GAP, at(6), at(15)),
        ]

    def test_samples_outside_window_are_ignored(self, segmenter: Segmenter) -> None:
        stream = samples(["A doc"] * 20, start=at(-2))
        segments = segmenter.segment(WINDOW, stream)
        assert len(segments) == 1
        assert all(WINDOW.contains(s.timestamp) for s in segments[0].samples)


class TestDebounce:
    def test_short_flicker_folds_into_preceding_activity(self, segmenter: Segmenter) -> None:
        stream = samples(["A doc"] * 7 + ["Slack - general"] + ["A doc"] * 7)
        segments = segmenter.segment(WINDOW, stream)
        assert len(segments) == 1
        assert segments[0].dominant_title == "A doc"

    def test_short_idle_is_absorbed(self, segmenter: Segmenter) -> None:
        stream = samples(["A doc"] * 5 + [None] * 2 + ["A doc"] * 8)
        segments = segmenter.segment(WINDOW, stream)
        assert len(segments) == 1
        assert segments[0].kind is SegmentKind.ACTIVE
        assert segments[0].title_shares == {"A doc": 1.0}

    def test_long_idle_stands_alone(self, segmenter: Segmenter) -> None:
        stream = samples(["A doc"] * 5 + [None] * 6 + ["B sheet"] * 4)
        segments = segmenter.segment(WINDOW, stream)
        assert [(s.kind, s.start, s.end) for s in segments] == [
            (SegmentKind.ACTIVE, T0, at(5)),
            (SegmentKind.IDLE, at(5), at(11)),
            (SegmentKind.ACTIVE, at(11), at(15)),
        ]

    def test_counter_changes_do_not_split(self, segmenter: Segmenter) -> None:
        stream = samples(["(1) Inbox - Gmail"] * 7 + ["(2) Inbox - Gmail"] * 8)
        assert len(segmenter.segment(WINDOW, stream)) == 1


class TestBoundaries:
    def test_carry_in_sample_starts_the_first_segment(self, segmenter: Segmenter) -> None:
        carry = Sample(T0 - timedelta(seconds=30), "A doc", "app")
        stream = samples(["A doc"] * 14, start=at(1))
        segments = segmenter.segment(WINDOW, stream, carry_in=carry)
        assert len(segments) == 1
        assert segments[0].start == T0
        assert segments[0].samples[0] == carry

    def test_calendar_events_attach_without_splitting(self, segmenter: Segmenter) -> None:
        event = CalendarEvent("ev1", at(3), at(8), "Standup")
        segments = segmenter.segment(WINDOW, samples(["A doc"] * 15), [event])
        assert len(segments) == 1
        assert segments[0].events == (event,)

    def test_keys_are_stable_across_runs(self, segmenter: Segmenter) -> None:
        stream = samples(["A doc"] * 5 + [None] * 6 + ["B sheet"] * 4)
        first = [s.key for s in segmenter.segment(WINDOW, stream)]
        second = [s.key for s in segmenter.segment(WINDOW, list(reversed(stream)))]
        assert first == second


class TestSegmentModel:
    def test_title_shares_are_time_weighted(self) -> None:
        seg = Segment(
            start=T0,
            end=at(12),
            kind=SegmentKind.ACTIVE,
            samples=(Sample(T0, "A doc"), Sample(at(9), "B sheet")),
        )
        assert seg.title_shares == {"A doc": 0.75, "B sheet": 0.25}
        assert seg.dominant_title == "A doc"

    def test_key_changes_with_content(self) -> None:
        left = Segment(T0, at(5), SegmentKind.ACTIVE, (Sample(T0, "A doc"),))
        right = Segment(T0, at(5), SegmentKind.ACTIVE, (Sample(T0, "B sheet"),))
        assert left.key != right.key
        assert left.key.startswith(T0.isoformat())


TITLES = ["A doc", "B sheet", "(3) Inbox - Gmail", "Slack - general", None]


def _random_stream(rng: random.Random, window: TimeRange) -> list[Sample]:
    stream = []
    moment = window.start + timedelta(seconds=rng.randint(0, 120))
    while moment < window.end:
        title = rng.choice(TITLES)
        stream.append(Sample.idle(moment) if title is None else Sample(moment, title, "app"))
        step = rng.choice([10, 30, 60, 60, 60, 90, 150, 400])
        moment += timedelta(seconds=step)
    return stream


@pytest.mark.parametrize("seed", range(40))
def test_random_streams_tile_the_window(seed: int) -> None:
    rng = random.Random(seed)
    settings = EngineSettings(
        debounce=timedelta(seconds=rng.choice([0, 45, 90, 240])),
        idle_threshold=timedelta(seconds=rng.choice([60, 300])),
    )
    window = TimeRange(at(rng.randint(0, 30)), at(rng.randint(31, 90)))
    stream = _random_stream(rng, window)
    rng.shuffle(stream)
    carry_in = None
    if rng.random() < 0.5:
        carry_in = Sample(window.start - timedelta(seconds=rng.randint(1, 200)), "A doc", "app")

    segments = Segmenter.from_settings(settings).segment(window, stream, carry_in=carry_in)

    _assert_tiles(segments, window)
    assert all(s.end > s.start for s in segments)
