"""Segment classifiers: a hosted model with a deterministic offline fallback."""

from __future__ import annotations

import json
import logging
import math
from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Iterable, Optional, Protocol, Sequence

from .errors import ClassificationError
from .history import LabelHistory
from .models import Candidate, CandidateSource, Segment, sort_candidates
from .normalization import activity_key, title_tokens

logger = logging.getLogger(__name__)

EXACT_HISTORY_CEILING = 0.95
FUZZY_HISTORY_CEILING = 0.6
KEYWORD_SCORE = 0.35
CALENDAR_CEILING = 0.45
CALENDAR_BIAS = 0.15
FALLBACK_SCORE = 0.1
MAX_CANDIDATES = 5
MAX_LABEL_LENGTH = 80


class ActivityClassifier(ABC):
    """Produces ranked candidates for a classifiable segment."""

    source: CandidateSource

    @abstractmethod
    def classify(self, segment: Segment) -> list[Candidate]:
        """Return candidates ordered by descending confidence.

        Implementations must not raise for transport problems.
        """
        ...


@dataclass(frozen=True, slots=True)
class KeywordRule:
    keywords: tuple[str, ...]
    label: str
    project: Optional[str] = None

    def matches(self, key: str, tokens: frozenset[str]) -> bool:
        for keyword in self.keywords:
            if " " in keyword:
                if keyword in key:
                    return True
            elif keyword in tokens:
                return True
        return False


DEFAULT_RULES: tuple[KeywordRule, ...] = (
    KeywordRule(("meeting", "zoom", "teams", "google meet", "webex"), "Meeting"),
    KeywordRule(("gmail", "mail", "email", "inbox", "outlook", "thunderbird"), "Email"),
    KeywordRule(("calendar",), "Scheduling"),
    KeywordRule(("slack", "discord", "chat", "mattermost", "telegram"), "Communication"),
    KeywordRule(("youtube", "video", "netflix", "vlc"), "Video"),
    KeywordRule(("terminal", "console", "bash", "zsh", "konsole", "tmux"), "Terminal work"),
    KeywordRule(
        ("code", "vscode", "visual studio code", "intellij", "pycharm", "vim", "emacs", "github"),
        "Programming",
    ),
    KeywordRule(("google docs", "document", "docs", "notion", "obsidian"), "Writing"),
    KeywordRule(("libreoffice", "calc", "writer", "excel", "word", "sheets"), "Office work"),
    KeywordRule(("gimp", "photoshop", "illustrator", "figma", "inkscape"), "Design"),
)


class OfflineClassifier(ActivityClassifier):
    """Keyword rules plus label history, scored on the same [0, 1] scale as the model.

    Output depends only on the segment and the history, never on the clock.
    """

    source = CandidateSource.OFFLINE

    def __init__(
        self,
        history: Optional[LabelHistory] = None,
        rules: Sequence[KeywordRule] = DEFAULT_RULES,
        *,
        max_candidates: int = MAX_CANDIDATES,
    ) -> None:
        self.history = history or LabelHistory()
        self.rules = tuple(rules)
        self.max_candidates = max_candidates

    def classify(self, segment: Segment) -> list[Candidate]:
        shares = segment.title_shares
        reference = segment.end
        exact: dict[tuple[str, Optional[str]], float] = defaultdict(float)
        fuzzy: dict[tuple[str, Optional[str]], float] = defaultdict(float)
        keyword: dict[tuple[str, Optional[str]], float] = defaultdict(float)

        for title, share in sorted(shares.items()):
            votes = self.history.exact_votes(title, reference)
            total = sum(vote.weight for vote in votes)
            for vote in votes:
                exact[(vote.label, vote.project)] += (
                    share * EXACT_HISTORY_CEILING * vote.weight / (total + 1.0)
                )
            if not votes:
                near = self.history.fuzzy_votes(title, reference)
                near_total = sum(vote.weight for vote in near)
                for vote in near:
                    fuzzy[(vote.label, vote.project)] += (
                        share * FUZZY_HISTORY_CEILING * vote.weight / (near_total + 1.0)
                    )
            key = activity_key(title) or ""
            tokens = title_tokens(title)
            for rule in self.rules:
                if rule.matches(key, tokens):
                    keyword[(rule.label, rule.project)] += share * KEYWORD_SCORE
                    break

        scores: dict[tuple[str, Optional[str]], float] = {}
        for table in (exact, fuzzy, keyword, self._calendar_scores(segment)):
            for pair, score in table.items():
                scores[pair] = max(scores.get(pair, 0.0), score)

        self._apply_calendar_bias(segment, scores)

        if not scores and segment.dominant_title:
            scores[(segment.dominant_title[:MAX_LABEL_LENGTH], None)] = FALLBACK_SCORE

        candidates = [
            Candidate(
                label=label,
                confidence=round(min(max(score, 0.0), 1.0), 4),
                suggested_project=project,
                source=self.source,
            )
            for (label, project), score in scores.items()
            if score > 0.0
        ]
        return sort_candidates(candidates)[: self.max_candidates]

    def _calendar_scores(self, segment: Segment) -> dict[tuple[str, Optional[str]], float]:
        scores: dict[tuple[str, Optional[str]], float] = {}
        seconds = segment.duration.total_seconds()
        if seconds <= 0:
            return scores
        for event in segment.events:
            overlap = segment.time_range.overlap_with(event.start, event.end).total_seconds()
            if overlap <= 0 or not event.title.strip():
                continue
            label = event.title.strip()[:MAX_LABEL_LENGTH]
            votes = self.history.exact_votes(label, segment.end)
            project = votes[0].project if votes else None
            pair = (label, project)
            scores[pair] = max(scores.get(pair, 0.0), CALENDAR_CEILING * overlap / seconds)
        return scores

    @staticmethod
    def _apply_calendar_bias(
        segment: Segment, scores: dict[tuple[str, Optional[str]], float]
    ) -> None:
        if not segment.events:
            return
        texts = [
            f"{event.title} {event.description or ''}".casefold() for event in segment.events
        ]
        event_titles = {event.title.strip()[:MAX_LABEL_LENGTH] for event in segment.events}
        for (label, project), score in list(scores.items()):
            if label in event_titles:
                continue
            needles = [value.casefold() for value in (label, project) if value]
            if any(needle in text for needle in needles for text in texts):
                scores[(label, project)] = min(score + CALENDAR_BIAS, 1.0)


class LanguageModelClient(Protocol):
    def complete(
        self, system_prompt: str, user_prompt: str, *, timeout: Optional[float] = None
    ) -> str: ...

    def is_reachable(self) -> bool: ...


SYSTEM_PROMPT = (
    "You infer what a desktop user was working on from the window titles they "
    "looked at and their calendar. Answer only with a JSON object of the form "
    '{"candidates": [{"label": "...", "confidence": 0.0, "project": "..." or null}]} '
    "ordered from most to least likely. Confidence is a probability between 0 and 1."
)


def build_prompt(segment: Segment, known_projects: Iterable[str] = ()) -> str:
    minutes = segment.duration.total_seconds() / 60.0
    lines = [
        f"Time span: {segment.start.isoformat()} to {segment.end.isoformat()} "
        f"({minutes:.1f} minutes).",
        "",
        "Window titles (share of the span):",
    ]
    for title, share in sorted(segment.title_shares.items(), key=lambda item: (-item[1], item[0])):
        lines.append(f"- {title} ({share:.0%})")
    if segment.events:
        lines.append("")
        lines.append("Overlapping calendar events:")
        for event in segment.events:
            description = f" - {event.description}" if event.description else ""
            lines.append(
                f"- {event.title} ({event.start.isoformat()} to {event.end.isoformat()}){description}"
            )
    projects = list(known_projects)
    if projects:
        lines.append("")
        lines.append("Known projects: " + ", ".join(projects))
    return "\n".join(lines)


def parse_candidates(content: str, source: CandidateSource = CandidateSource.ONLINE) -> list[Candidate]:
    """Parse a model reply into candidates or raise ``ClassificationError``."""
    try:
        payload = json.loads(content)
    except (TypeError, ValueError) as exc:
        raise ClassificationError(f"Response is not JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise ClassificationError("Response is not a JSON object")

    raw_items: list[Any]
    if isinstance(payload.get("candidates"), list):
        raw_items = payload["candidates"]
    elif "activity" in payload:
        raw_items = [
            {
                "label": payload.get("activity"),
                "confidence": payload.get("confidence"),
                "project": payload.get("project"),
            },
            *[
                {
                    "label": alt.get("activity"),
                    "confidence": alt.get("confidence"),
                    "project": alt.get("project"),
                }
                for alt in payload.get("alternatives") or []
                if isinstance(alt, dict)
            ],
        ]
    else:
        raise ClassificationError("Response has no candidates")

    best: dict[tuple[str, Optional[str]], float] = {}
    for item in raw_items:
        if not isinstance(item, dict):
            continue
        label = item.get("label")
        confidence = item.get("confidence")
        project = item.get("project")
        if not isinstance(label, str) or not label.strip():
            continue
        if isinstance(confidence, bool) or not isinstance(confidence, (int, float)):
            continue
        if not math.isfinite(confidence):
            continue
        if project is not None and not isinstance(project, str):
            project = None
        pair = (label.strip()[:MAX_LABEL_LENGTH], project.strip() if project and project.strip() else None)
        best[pair] = max(best.get(pair, 0.0), min(max(float(confidence), 0.0), 1.0))

    if not best:
        raise ClassificationError("Response contained no usable candidates")
    return sort_candidates(
        [
            Candidate(label=label, confidence=round(score, 4), suggested_project=project, source=source)
            for (label, project), score in best.items()
        ]
    )[:MAX_CANDIDATES]


class OnlineClassifier(ActivityClassifier):
    """Asks a hosted model; any failure falls back to ``fallback`` for that segment only."""

    source = CandidateSource.ONLINE

    def __init__(
        self,
        client: LanguageModelClient,
        fallback: ActivityClassifier,
        known_projects: Iterable[str] = (),
        *,
        timeout: Optional[float] = None,
    ) -> None:
        self.client = client
        self.fallback = fallback
        self.known_projects = tuple(known_projects)
        self.timeout = timeout

    def classify(self, segment: Segment) -> list[Candidate]:
        try:
            content = self.client.complete(
                SYSTEM_PROMPT, build_prompt(segment, self.known_projects), timeout=self.timeout
            )
            candidates = parse_candidates(content, self.source)
        except ClassificationError as exc:
            logger.warning(
                "Online classification failed for segment %s (%s); using offline classifier.",
                segment.key,
                exc,
            )
            return self.fallback.classify(segment)
        logger.debug("Online candidates for %s: %s", segment.key, candidates)
        return candidates


def select_classifier(
    settings,
    history: LabelHistory,
    client: Optional[LanguageModelClient] = None,
    rules: Sequence[KeywordRule] = DEFAULT_RULES,
) -> ActivityClassifier:
    """Pick the classifier for one cycle from configuration and connectivity."""
    offline = OfflineClassifier(history, rules)
    if not settings.online_enabled or client is None:
        return offline
    if not client.is_reachable():
        logger.info("Language model endpoint unreachable; this cycle runs offline.")
        return offline
    return OnlineClassifier(
        client,
        offline,
        known_projects=history.projects,
        timeout=settings.classifier_timeout.total_seconds(),
    )
