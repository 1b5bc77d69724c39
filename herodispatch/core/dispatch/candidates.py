"""
Candidate lookup for one wave.

Pulls the online+verified pool from the store, drops anyone bound to a
job, excluded for this job, without a fresh location, or not offering the
requested service, keeps those inside the wave's band, then scores and
truncates to the band's per-wave limit.
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import AbstractSet, Callable

from herodispatch.core.dispatch.geo import distance, in_band
from herodispatch.core.dispatch.schedule import WaveBand
from herodispatch.core.dispatch.scoring import HeroScorer, ScoredCandidate
from herodispatch.core.domain import GeoPoint, Hero
from herodispatch.core.ports import DispatchStore
from herodispatch.infra.logging_config import get_logger
from herodispatch.infra.metrics import DispatchMetrics

logger = get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CandidateSource:
    def __init__(
        self,
        store: DispatchStore,
        scorer: HeroScorer,
        *,
        location_ttl_seconds: float = 300,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._store = store
        self._scorer = scorer
        self._location_ttl = timedelta(seconds=location_ttl_seconds)
        self._clock = clock

    def _has_fresh_location(self, hero: Hero, cutoff: datetime) -> bool:
        return (
            hero.location is not None
            and hero.location_updated_at is not None
            and hero.location_updated_at >= cutoff
        )

    async def find_candidates(
        self,
        job_location: GeoPoint,
        band: WaveBand,
        service_type: str,
        exclude: AbstractSet[str],
    ) -> list[ScoredCandidate]:
        """
        Ranked candidates for ``band``, best first, at most ``band.max_heroes_per_wave``.

        A failed pool lookup returns an empty list: the wave simply finds
        nobody and the dispatch moves on to the next band.
        """
        try:
            pool = await self._store.list_dispatchable_heroes()
        except Exception as exc:
            logger.warning(
                f"Hero pool lookup failed, treating wave as empty: {exc.__class__.__name__}: {exc}",
            )
            DispatchMetrics.candidate_lookup_failed()
            return []

        cutoff = self._clock() - self._location_ttl
        scored: list[ScoredCandidate] = []

        for hero in pool:
            if not hero.dispatchable or hero.id in exclude:
                continue
            if not self._has_fresh_location(hero, cutoff):
                continue
            if not hero.supports(service_type):
                continue

            d = distance(job_location, hero.location)
            if not in_band(d, band.min_radius_m, band.max_radius_m):
                continue

            scored.append(ScoredCandidate(hero=hero, distance_m=d, score=self._scorer.score(hero, d, band)))

        ranked = self._scorer.rank(scored, band.max_heroes_per_wave)
        logger.debug(
            f"Candidates: pool={len(pool)}, in_band={len(scored)}, kept={len(ranked)}",
        )
        return ranked
