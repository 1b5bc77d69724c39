# tests/test_memory_store.py
"""Tests for the in-process dispatch store"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from herodispatch.core.dispatch.schedule import WaveBand
from herodispatch.core.domain import GeoPoint, JobStatus, WaveResult
from herodispatch.core.errors import NotFoundError, ValidationError
from herodispatch.infra.memory_store import InMemoryDispatchStore

from conftest import make_hero, make_job

BAND = WaveBand(0.0, 1000.0, 5.0, 10)


class FakeClock:
    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def timed_store(clock):
    return InMemoryDispatchStore(clock=clock)


class TestJobs:
    @pytest.mark.asyncio
    async def test_create_job_normalizes_state(self, store):
        job = make_job()
        job.status = JobStatus.ASSIGNED
        created = await store.create_job(job)
        assert created.status == JobStatus.PENDING
        assert created.status_history[0].actor_id == "cust-1"
        assert created.created_at is not None

    @pytest.mark.asyncio
    async def test_duplicate_job_rejected(self, store):
        await store.create_job(make_job())
        with pytest.raises(ValidationError):
            await store.create_job(make_job())

    @pytest.mark.asyncio
    async def test_reads_are_copies(self, store):
        await store.create_job(make_job())
        job = await store.get_job("job-1")
        job.notified_heroes.add("intruder")
        assert (await store.get_job("job-1")).notified_heroes == set()


class TestTransaction:
    @pytest.mark.asyncio
    async def test_commit_on_clean_exit(self, store):
        await store.upsert_hero(make_hero("h1"))
        async with store.transaction() as tx:
            hero = await tx.get_hero("h1")
            hero.current_job_id = "job-9"
            await tx.save_hero(hero)
            # Reads inside the transaction see staged writes
            assert (await tx.get_hero("h1")).current_job_id == "job-9"
        assert (await store.get_hero("h1")).current_job_id == "job-9"

    @pytest.mark.asyncio
    async def test_rollback_on_exception(self, store):
        await store.upsert_hero(make_hero("h1"))
        with pytest.raises(NotFoundError):
            async with store.transaction() as tx:
                hero = await tx.get_hero("h1")
                hero.current_job_id = "job-9"
                await tx.save_hero(hero)
                raise NotFoundError("boom")
        assert (await store.get_hero("h1")).current_job_id is None

    @pytest.mark.asyncio
    async def test_push_token_survives_hero_save(self, store):
        await store.upsert_hero(make_hero("h1", push_token="tok"))
        async with store.transaction() as tx:
            hero = await tx.get_hero("h1")
            hero.push_token = None
            await tx.save_hero(hero)
        assert await store.get_push_token("h1") == "tok"


class TestWaveLedger:
    @pytest.mark.asyncio
    async def test_begin_dispatch_is_compare_and_set(self, store):
        await store.create_job(make_job())
        started = await store.begin_dispatch("job-1", 3)
        assert started.status == JobStatus.SEARCHING
        assert started.current_wave == 0
        assert await store.begin_dispatch("job-1", 3) is None
        assert await store.begin_dispatch("missing", 3) is None

        job = await store.get_job("job-1")
        assert job.status == JobStatus.SEARCHING
        assert "dispatch_started" in job.timestamps
        record = await store.get_wave_record("job-1")
        assert record.total_waves == 3
        assert record.result == WaveResult.IN_PROGRESS

    @pytest.mark.asyncio
    async def test_open_and_close_wave(self, store):
        await store.create_job(make_job())
        await store.begin_dispatch("job-1", 2)

        await store.open_wave("job-1", 0, BAND)
        await store.close_wave("job-1", 0, ["h1", "h2"])
        await store.open_wave("job-1", 1, BAND)
        await store.close_wave("job-1", 1, ["h3"])

        job = await store.get_job("job-1")
        assert job.current_wave == 2
        assert job.notified_heroes == {"h1", "h2", "h3"}
        record = await store.get_wave_record("job-1")
        assert record.current_wave == 2
        assert [(w.index, w.notified_count) for w in record.waves] == [(0, 2), (1, 1)]

    @pytest.mark.asyncio
    async def test_closed_record_is_not_rewritten(self, store):
        await store.create_job(make_job())
        await store.begin_dispatch("job-1", 2)
        assert await store.finish_no_heroes("job-1") is True

        await store.open_wave("job-1", 1, BAND)
        await store.close_wave("job-1", 1, ["late"])

        record = await store.get_wave_record("job-1")
        assert record.result == WaveResult.NO_HEROES
        assert record.waves == []
        assert record.notified_heroes == set()
        # The job's own exclusion set still grows
        assert (await store.get_job("job-1")).notified_heroes == {"late"}

    @pytest.mark.asyncio
    async def test_finish_no_heroes_only_from_searching(self, store):
        await store.create_job(make_job())
        assert await store.finish_no_heroes("job-1") is False
        await store.begin_dispatch("job-1", 1)
        assert await store.finish_no_heroes("job-1") is True
        assert await store.finish_no_heroes("job-1") is False


class TestMaintenance:
    @pytest.mark.asyncio
    async def test_delete_old_terminal_records(self, timed_store, clock):
        await timed_store.create_job(make_job("old"))
        await timed_store.begin_dispatch("old", 1)
        await timed_store.finish_no_heroes("old")
        clock.advance(days=40)
        await timed_store.create_job(make_job("open"))
        await timed_store.begin_dispatch("open", 1)

        deleted = await timed_store.delete_wave_records_before(clock.now - timedelta(days=30))

        assert deleted == 1
        assert await timed_store.get_wave_record("old") is None
        assert await timed_store.get_wave_record("open") is not None

    @pytest.mark.asyncio
    async def test_clear_stale_locations(self, store):
        stale_at = datetime.now(timezone.utc) - timedelta(hours=1)
        await store.upsert_hero(make_hero("stale", location_updated_at=stale_at))
        await store.upsert_hero(make_hero("fresh"))

        cleared = await store.clear_stale_locations(datetime.now(timezone.utc) - timedelta(minutes=5))

        assert cleared == 1
        assert (await store.get_hero("stale")).location is None
        assert (await store.get_hero("fresh")).location is not None

    @pytest.mark.asyncio
    async def test_expire_stale_searches(self, timed_store, clock):
        await timed_store.create_job(make_job("stuck"))
        await timed_store.begin_dispatch("stuck", 5)
        clock.advance(minutes=10)
        await timed_store.create_job(make_job("live"))
        await timed_store.begin_dispatch("live", 5)

        expired = await timed_store.expire_stale_searches(clock.now - timedelta(minutes=5))

        assert [job.id for job in expired] == ["stuck"]
        assert expired[0].customer_id == "cust-1"
        stuck = await timed_store.get_job("stuck")
        assert stuck.status == JobStatus.NO_HEROES_AVAILABLE
        assert (await timed_store.get_wave_record("stuck")).result == WaveResult.NO_HEROES
        assert (await timed_store.get_job("live")).status == JobStatus.SEARCHING


class TestPresence:
    @pytest.mark.asyncio
    async def test_presence_update_stamps_location(self, timed_store, clock):
        await timed_store.upsert_hero(make_hero("h1", distance_m=None, is_online=False))

        hero = await timed_store.update_hero_presence("h1", is_online=True, location=GeoPoint(1.0, 2.0))

        assert hero.is_online is True
        assert hero.location == GeoPoint(1.0, 2.0)
        assert hero.location_updated_at == clock.now

    @pytest.mark.asyncio
    async def test_presence_without_location_keeps_last_fix(self, store):
        await store.upsert_hero(make_hero("h1"))
        before = await store.get_hero("h1")

        hero = await store.update_hero_presence("h1", is_online=False, location=None)

        assert hero.is_online is False
        assert hero.location == before.location
        assert hero.location_updated_at == before.location_updated_at

    @pytest.mark.asyncio
    async def test_presence_unknown_hero(self, store):
        assert await store.update_hero_presence("ghost", is_online=True, location=None) is None

    @pytest.mark.asyncio
    async def test_list_dispatchable_filters_offline_and_unverified(self, store):
        await store.upsert_hero(make_hero("ok"))
        await store.upsert_hero(make_hero("off", is_online=False))
        await store.upsert_hero(make_hero("unv", is_verified=False))
        heroes = await store.list_dispatchable_heroes()
        assert [h.id for h in heroes] == ["ok"]
        assert heroes[0].push_token == "token-ok"

    @pytest.mark.asyncio
    async def test_clear_push_token(self, store):
        await store.set_push_token("u1", "tok")
        await store.set_push_token("u1", None)
        assert await store.get_push_token("u1") is None
