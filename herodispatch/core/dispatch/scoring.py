"""
Hero ranking.

Score = weighted sum of four sub-scores, each normalized to [0, 1]:

    proximity       1 - distance / band.max_radius   (0 at the outer edge)
    rating          (rating - 1) / 4                 (1..5 scale, default 5)
    acceptance      acceptance rate                  (default 0.5)
    responsiveness  1 - avg_response_seconds / 60    (default 30 s)

With weights summing to 1.0 the score is in [0, 1]. All-weight-on-proximity
reproduces the plain radius-only ordering.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

from herodispatch.core.dispatch.schedule import ScoringWeights, WaveBand
from herodispatch.core.domain import Hero

DEFAULT_RATING = 5.0
DEFAULT_ACCEPTANCE_RATE = 0.5
DEFAULT_RESPONSE_SECONDS = 30.0
RESPONSE_HORIZON_SECONDS = 60.0


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


def proximity_score(distance_m: float, max_radius_m: float) -> float:
    if max_radius_m <= 0:
        return 1.0 if distance_m <= 0 else 0.0
    return _clamp(1.0 - distance_m / max_radius_m)


def rating_score(rating: float | None) -> float:
    value = DEFAULT_RATING if rating is None else rating
    return _clamp((value - 1.0) / 4.0)


def acceptance_score(rate: float | None) -> float:
    return _clamp(DEFAULT_ACCEPTANCE_RATE if rate is None else rate)


def responsiveness_score(avg_response_seconds: float | None) -> float:
    seconds = DEFAULT_RESPONSE_SECONDS if avg_response_seconds is None else avg_response_seconds
    return _clamp(1.0 - seconds / RESPONSE_HORIZON_SECONDS)


@dataclass(frozen=True)
class ScoreBreakdown:
    proximity: float
    rating: float
    acceptance: float
    responsiveness: float
    total: float


@dataclass(frozen=True)
class ScoredCandidate:
    hero: Hero
    distance_m: float
    score: float

    @property
    def hero_id(self) -> str:
        return self.hero.id


class HeroScorer:
    """Pure ranking function over (hero, distance, band)."""

    def __init__(self, weights: ScoringWeights | None = None):
        self.weights = weights or ScoringWeights()

    def breakdown(self, hero: Hero, distance_m: float, band: WaveBand) -> ScoreBreakdown:
        w = self.weights
        prox = proximity_score(distance_m, band.max_radius_m)
        rat = rating_score(hero.stats.rating)
        acc = acceptance_score(hero.stats.acceptance_rate)
        resp = responsiveness_score(hero.stats.avg_response_seconds)
        total = (
            w.proximity * prox
            + w.rating * rat
            + w.acceptance * acc
            + w.responsiveness * resp
        )
        return ScoreBreakdown(prox, rat, acc, resp, total)

    def score(self, hero: Hero, distance_m: float, band: WaveBand) -> float:
        return self.breakdown(hero, distance_m, band).total

    @staticmethod
    def rank(candidates: Iterable[ScoredCandidate], limit: int | None = None) -> list[ScoredCandidate]:
        """Descending by score; ties broken by hero id so the order is reproducible."""
        ranked = sorted(candidates, key=lambda c: (-c.score, c.hero.id))
        if limit is not None:
            ranked = ranked[:max(limit, 0)]
        return ranked
