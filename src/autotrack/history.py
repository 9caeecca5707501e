"""Title-to-label statistics learned from past registrations."""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, Optional

from .models import RegistrationRecord
from .normalization import activity_key, title_tokens, token_similarity

DEFAULT_HALF_LIFE = timedelta(days=14)
FUZZY_MIN_SIMILARITY = 0.5


@dataclass(frozen=True, slots=True)
class LabelVote:
    label: str
    project: Optional[str]
    weight: float


@dataclass(frozen=True, slots=True)
class _Observation:
    title_key: str
    tokens: frozenset[str]
    label: str
    project: Optional[str]
    at: datetime
    user_confirmed: bool


class LabelHistory:
    """Recency- and frequency-weighted votes for each known title.

    Weights are computed relative to a caller-supplied reference time, never
    the wall clock, so identical records always give identical votes.
    """

    def __init__(
        self,
        records: Iterable[RegistrationRecord] = (),
        *,
        half_life: timedelta = DEFAULT_HALF_LIFE,
    ) -> None:
        self.half_life = half_life
        self._observations: list[_Observation] = []
        self._by_key: dict[str, list[_Observation]] = defaultdict(list)
        for record in records:
            self.add(record)

    def __len__(self) -> int:
        return len(self._observations)

    def add(self, record: RegistrationRecord) -> None:
        key = record.title_key or activity_key(record.label)
        if not key:
            return
        observation = _Observation(
            title_key=key,
            tokens=title_tokens(key),
            label=record.label,
            project=record.project,
            at=record.end,
            user_confirmed=record.confirmed_by_user,
        )
        self._observations.append(observation)
        self._by_key[key].append(observation)

    @property
    def projects(self) -> list[str]:
        return sorted({o.project for o in self._observations if o.project}, key=str.casefold)

    def exact_votes(self, title: str, reference: datetime) -> list[LabelVote]:
        key = activity_key(title)
        if not key:
            return []
        return self._tally(self._by_key.get(key, ()), reference, lambda _: 1.0)

    def fuzzy_votes(self, title: str, reference: datetime) -> list[LabelVote]:
        """Votes from titles that share enough words with ``title`` but differ from it."""
        key = activity_key(title)
        tokens = title_tokens(title)
        if not key or not tokens:
            return []
        similar = {
            o.title_key: token_similarity(tokens, o.tokens)
            for o in self._observations
            if o.title_key != key
        }
        matches = [
            o for o in self._observations
            if o.title_key != key and similar[o.title_key] >= FUZZY_MIN_SIMILARITY
        ]
        return self._tally(matches, reference, lambda o: similar[o.title_key])

    def _weight(self, observation: _Observation, reference: datetime) -> float:
        age = max((reference - observation.at).total_seconds(), 0.0)
        decay = 0.5 ** (age / self.half_life.total_seconds())
        return decay * (1.5 if observation.user_confirmed else 1.0)

    def _tally(self, observations, reference: datetime, factor) -> list[LabelVote]:
        totals: dict[tuple[str, Optional[str]], float] = defaultdict(float)
        for observation in observations:
            totals[(observation.label, observation.project)] += (
                self._weight(observation, reference) * factor(observation)
            )
        votes = [LabelVote(label, project, weight) for (label, project), weight in totals.items()]
        votes.sort(key=lambda v: (-v.weight, v.label, v.project or ""))
        return votes
