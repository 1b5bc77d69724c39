# tests/test_candidates.py
"""Tests for per-wave candidate lookup"""
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from herodispatch.core.dispatch.candidates import CandidateSource
from herodispatch.core.dispatch.schedule import WaveBand
from herodispatch.core.dispatch.scoring import HeroScorer
from herodispatch.core.domain import HeroStats
from herodispatch.infra.metrics import get_metrics_collector

from conftest import ORIGIN, make_hero

INNER = WaveBand(0.0, 3218.0, 20.0, 10)
OUTER = WaveBand(3218.0, 4827.0, 20.0, 10)


async def _seed(store, *heroes):
    for hero in heroes:
        await store.upsert_hero(hero)


class TestFindCandidates:
    @pytest.mark.asyncio
    async def test_band_filtering(self, store):
        await _seed(store, make_hero("near", distance_m=1800), make_hero("far", distance_m=4000))
        source = CandidateSource(store, HeroScorer())

        inner = await source.find_candidates(ORIGIN, INNER, "jump_start", set())
        outer = await source.find_candidates(ORIGIN, OUTER, "jump_start", set())

        assert [c.hero_id for c in inner] == ["near"]
        assert [c.hero_id for c in outer] == ["far"]
        assert inner[0].distance_m == pytest.approx(1800, abs=0.01)

    @pytest.mark.asyncio
    async def test_exclusion_set(self, store):
        await _seed(store, make_hero("h1"), make_hero("h2"))
        source = CandidateSource(store, HeroScorer())
        result = await source.find_candidates(ORIGIN, INNER, "jump_start", {"h1"})
        assert [c.hero_id for c in result] == ["h2"]

    @pytest.mark.asyncio
    async def test_skips_unavailable_heroes(self, store):
        await _seed(
            store,
            make_hero("offline", is_online=False),
            make_hero("unverified", is_verified=False),
            make_hero("busy", current_job_id="other-job"),
            make_hero("no_location", distance_m=None),
            make_hero("ok"),
        )
        source = CandidateSource(store, HeroScorer())
        result = await source.find_candidates(ORIGIN, INNER, "jump_start", set())
        assert [c.hero_id for c in result] == ["ok"]

    @pytest.mark.asyncio
    async def test_stale_location_skipped(self, store):
        stale_at = datetime.now(timezone.utc) - timedelta(minutes=10)
        await _seed(store, make_hero("stale", location_updated_at=stale_at), make_hero("fresh"))
        source = CandidateSource(store, HeroScorer(), location_ttl_seconds=300)
        result = await source.find_candidates(ORIGIN, INNER, "jump_start", set())
        assert [c.hero_id for c in result] == ["fresh"]

    @pytest.mark.asyncio
    async def test_service_type_filter(self, store):
        await _seed(
            store,
            make_hero("tow_only", service_types=frozenset({"tow"})),
            make_hero("any"),
            make_hero("jumper", service_types=frozenset({"jump_start", "tow"})),
        )
        source = CandidateSource(store, HeroScorer())
        result = await source.find_candidates(ORIGIN, INNER, "jump_start", set())
        assert sorted(c.hero_id for c in result) == ["any", "jumper"]

    @pytest.mark.asyncio
    async def test_ranked_and_truncated(self, store):
        await _seed(
            store,
            make_hero("a", distance_m=3000, stats=HeroStats(rating=2.0)),
            make_hero("b", distance_m=200, stats=HeroStats(rating=5.0, acceptance_rate=0.9)),
            make_hero("c", distance_m=1500),
        )
        source = CandidateSource(store, HeroScorer())
        band = WaveBand(0.0, 3218.0, 20.0, 2)
        result = await source.find_candidates(ORIGIN, band, "jump_start", set())
        assert [c.hero_id for c in result] == ["b", "c"]
        assert result[0].score >= result[1].score

    @pytest.mark.asyncio
    async def test_pool_lookup_failure_is_empty_wave(self):
        failing = AsyncMock()
        failing.list_dispatchable_heroes = AsyncMock(side_effect=ConnectionError("db down"))
        source = CandidateSource(failing, HeroScorer())

        result = await source.find_candidates(ORIGIN, INNER, "jump_start", set())

        assert result == []
        assert get_metrics_collector().get_counter("candidate_lookup_failures_total") == 1
