"""Match activity descriptions against the workspace's project names."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Optional

from .models import Segment

logger = logging.getLogger(__name__)

MIN_PROJECT_SCORE = 0.5


@dataclass(frozen=True, slots=True)
class ProjectHints:
    """Context besides the activity text that can point at a project."""

    window_title: Optional[str] = None
    calendar_title: Optional[str] = None

    @classmethod
    def from_segment(cls, segment: Segment) -> "ProjectHints":
        calendar_title = None
        best = 0.0
        for event in segment.events:
            if event.cancelled:
                continue
            seconds = segment.time_range.overlap_with(event.start, event.end).total_seconds()
            if seconds > best:
                best, calendar_title = seconds, event.title
        return cls(window_title=segment.dominant_title, calendar_title=calendar_title)

    @classmethod
    def from_titles(cls, titles: Iterable[str]) -> "ProjectHints":
        return cls(window_title=next(iter(titles), None))


def score_project(name: str, activity: str, hints: ProjectHints = ProjectHints()) -> float:
    """Similarity of one project name to an activity.

    Exact match scores 1.0, containment 0.8 (project contains activity) or
    0.7 (activity contains project), otherwise 0.6 times the share of project
    words found in the activity. A window title containing the name adds 0.2
    and a calendar title containing it adds 0.3.
    """
    project = name.strip().casefold()
    if not project:
        return 0.0
    text = activity.strip().casefold()
    score = 0.0
    if text:
        if project == text:
            score = 1.0
        elif text in project:
            score = 0.8
        elif project in text:
            score = 0.7
        else:
            project_words = project.split()
            activity_words = set(text.split())
            matching = sum(1 for word in project_words if word in activity_words)
            if matching:
                score = matching / len(project_words) * 0.6
    if hints.window_title and project in hints.window_title.casefold():
        score += 0.2
    if hints.calendar_title and project in hints.calendar_title.casefold():
        score += 0.3
    return score


def infer_project(
    names: Iterable[str],
    activity: str,
    hints: ProjectHints = ProjectHints(),
    *,
    min_score: float = MIN_PROJECT_SCORE,
) -> Optional[str]:
    """Best scoring project name, or ``None`` when nothing reaches ``min_score``.

    Ties keep the order of ``names``.
    """
    scored = [(score_project(name, activity, hints), name) for name in names]
    scored = [item for item in scored if item[0] > 0]
    if not scored:
        return None
    scored.sort(key=lambda item: -item[0])
    score, name = scored[0]
    if score < min_score:
        logger.debug("No project for %r (best %r at %.2f).", activity, name, score)
        return None
    logger.debug("Project %r inferred for %r (score %.2f).", name, activity, score)
    return name
