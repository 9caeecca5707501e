"""Tests for the offline and online classifiers."""

import json
from datetime import timedelta

import pytest

from autotrack.classifier import (
    OfflineClassifier,
    OnlineClassifier,
    build_prompt,
    parse_candidates,
    select_classifier,
)
from autotrack.config import EngineSettings
from autotrack.errors import ClassificationError
from autotrack.history import LabelHistory
from autotrack.models import CalendarEvent, CandidateSource

from support import FakeModelClient, T0, at, history_record, segment


def _admin_history(count: int = 8) -> LabelHistory:
    return LabelHistory(
        history_record("Email — Inbox", "Admin", "Admin", end=T0 - timedelta(days=i), index=i)
        for i in range(count)
    )


class TestOfflineClassifier:
    def test_frequent_history_clears_the_threshold(self) -> None:
        candidates = OfflineClassifier(_admin_history()).classify(segment("Email — Inbox"))
        top = candidates[0]
        assert (top.label, top.suggested_project) == ("Admin", "Admin")
        assert top.confidence >= 0.5
        assert top.source is CandidateSource.OFFLINE

    def test_unknown_title_falls_back_below_threshold(self) -> None:
        candidates = OfflineClassifier().classify(segment("Untitled scratch pad xyz"))
        assert len(candidates) >= 1
        assert candidates[0].confidence < 0.5

    def test_keyword_rule_suggests_a_label(self) -> None:
        candidates = OfflineClassifier().classify(segment("zoom meeting - weekly sync"))
        assert candidates[0].label == "Meeting"
        assert candidates[0].confidence == pytest.approx(0.35)

    def test_fuzzy_history_scores_below_exact(self) -> None:
        history = LabelHistory(
            history_record("Quarterly report draft", "Reporting", index=i) for i in range(4)
        )
        exact = OfflineClassifier(history).classify(segment("Quarterly report draft"))
        fuzzy = OfflineClassifier(history).classify(segment("Quarterly report final"))
        assert fuzzy[0].label == "Reporting"
        assert fuzzy[0].confidence < exact[0].confidence

    def test_calendar_event_becomes_a_candidate(self) -> None:
        event = CalendarEvent("ev1", T0, at(12), "Design review")
        candidates = OfflineClassifier().classify(
            segment("Untitled scratch pad xyz", events=[event])
        )
        assert candidates[0].label == "Design review"
        assert candidates[0].confidence == pytest.approx(0.45)

    def test_deterministic_for_identical_input(self) -> None:
        history = _admin_history()
        seg = segment("Email — Inbox")
        first = OfflineClassifier(history).classify(seg)
        second = OfflineClassifier(_admin_history()).classify(seg)
        assert first == second

    def test_confidences_stay_in_unit_interval(self) -> None:
        history = _admin_history(50)
        event = CalendarEvent("ev1", T0, at(12), "Admin inbox zero")
        for candidate in OfflineClassifier(history).classify(segment("Email — Inbox", events=[event])):
            assert 0.0 <= candidate.confidence <= 1.0


class TestParseCandidates:
    def test_candidates_shape(self) -> None:
        content = json.dumps(
            {
                "candidates": [
                    {"label": "Code review", "confidence": 0.4, "project": None},
                    {"label": "Coding", "confidence": 0.8, "project": "Backend"},
                ]
            }
        )
        candidates = parse_candidates(content)
        assert [c.label for c in candidates] == ["Coding", "Code review"]
        assert candidates[0].suggested_project == "Backend"
        assert candidates[0].source is CandidateSource.ONLINE

    def test_activity_shape_with_alternatives(self) -> None:
        content = json.dumps(
            {
                "activity": "Writing",
                "confidence": 0.7,
                "alternatives": [{"activity": "Email", "confidence": 0.2}],
            }
        )
        assert [c.label for c in parse_candidates(content)] == ["Writing", "Email"]

    def test_out_of_range_confidence_is_clamped(self) -> None:
        content = json.dumps({"candidates": [{"label": "Coding", "confidence": 1.7}]})
        assert parse_candidates(content)[0].confidence == 1.0

    @pytest.mark.parametrize(
        "content",
        ["not json", "[]", json.dumps({"foo": 1}), json.dumps({"candidates": [{"label": ""}]})],
    )
    def test_malformed_replies_raise(self, content: str) -> None:
        with pytest.raises(ClassificationError):
            parse_candidates(content)


class TestOnlineClassifier:
    def test_uses_model_reply(self) -> None:
        client = FakeModelClient([json.dumps({"candidates": [{"label": "Coding", "confidence": 0.9}]})])
        classifier = OnlineClassifier(client, OfflineClassifier())
        candidates = classifier.classify(segment("main.py - editor"))
        assert candidates[0].label == "Coding"
        assert "main.py - editor" in client.prompts[0]

    def test_failure_falls_back_for_that_segment_only(self) -> None:
        good = json.dumps({"candidates": [{"label": "Coding", "confidence": 0.9}]})
        client = FakeModelClient([ClassificationError("timed out"), good])
        classifier = OnlineClassifier(client, OfflineClassifier(_admin_history()))

        first = classifier.classify(segment("Email — Inbox"))
        second = classifier.classify(segment("main.py - editor", start=at(15)))

        assert first[0].source is CandidateSource.OFFLINE
        assert first[0].label == "Admin"
        assert second[0].source is CandidateSource.ONLINE


class TestSelectClassifier:
    def test_offline_when_disabled(self) -> None:
        client = FakeModelClient([])
        classifier = select_classifier(EngineSettings(online_enabled=False), LabelHistory(), client)
        assert isinstance(classifier, OfflineClassifier)

    def test_offline_when_unreachable(self) -> None:
        client = FakeModelClient([], reachable=False)
        classifier = select_classifier(EngineSettings(online_enabled=True), LabelHistory(), client)
        assert isinstance(classifier, OfflineClassifier)

    def test_online_when_enabled_and_reachable(self) -> None:
        client = FakeModelClient([])
        classifier = select_classifier(EngineSettings(online_enabled=True), LabelHistory(), client)
        assert isinstance(classifier, OnlineClassifier)


def test_prompt_lists_titles_events_and_projects() -> None:
    event = CalendarEvent("ev1", T0, at(30), "Planning", description="Q3 roadmap")
    prompt = build_prompt(segment("Roadmap - Docs", events=[event]), ["Admin", "Backend"])
    assert "Roadmap - Docs (100%)" in prompt
    assert "Planning" in prompt and "Q3 roadmap" in prompt
    assert "Known projects: Admin, Backend" in prompt
