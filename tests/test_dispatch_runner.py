# tests/test_dispatch_runner.py
"""Tests for the in-process dispatch runner (task map, wakeups, maintenance)"""
from __future__ import annotations

import asyncio
import json
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from herodispatch.config import Settings
from herodispatch.core.dispatch.arbiter import AssignmentArbiter
from herodispatch.core.domain import JobStatus, WaveResult
from herodispatch.infra.dispatch_runner import DispatchRunner
from herodispatch.infra.metrics import get_metrics_collector

from conftest import make_hero, make_job


def _config(timeout: float = 0.05, **overrides) -> Settings:
    waves = [
        {"min_radius_m": 0, "max_radius_m": 2000, "timeout_seconds": timeout, "max_heroes_per_wave": 5},
        {"min_radius_m": 2000, "max_radius_m": 4000, "timeout_seconds": timeout, "max_heroes_per_wave": 5},
    ]
    return Settings(_env_file=None, dispatch_waves_json=json.dumps(waves), **overrides)


async def _setup(store, *heroes):
    for hero in heroes:
        await store.upsert_hero(hero)
    await store.set_push_token("cust-1", "cust-token")
    await store.create_job(make_job())


async def _wait_for_offer(gateway):
    for _ in range(200):
        if gateway.of_type("new_job"):
            return
        await asyncio.sleep(0.01)
    raise AssertionError("no offer was sent")


class TestTrigger:
    @pytest.mark.asyncio
    async def test_runs_dispatch_to_exhaustion(self, store, gateway):
        await _setup(store, make_hero("h1", distance_m=500))
        runner = DispatchRunner(store, gateway, config=_config())

        task = runner.trigger("job-1")
        outcome = await asyncio.wait_for(task, timeout=2.0)

        assert outcome.result == WaveResult.NO_HEROES
        assert outcome.notified == ("h1",)
        assert (await store.get_job("job-1")).status == JobStatus.NO_HEROES_AVAILABLE
        assert gateway.to("cust-token")[0]["payload"]["type"] == "no_heroes"
        assert get_metrics_collector().get_counter("dispatch_triggered_total") == 1

    @pytest.mark.asyncio
    async def test_duplicate_trigger_in_process(self, store, gateway):
        await _setup(store)
        runner = DispatchRunner(store, gateway, config=_config(timeout=5.0))

        first = runner.trigger("job-1")
        assert runner.trigger("job-1") is None
        assert runner.active_jobs() == ["job-1"]

        await runner.stop()
        assert first.cancelled()
        assert runner.active_jobs() == []

    @pytest.mark.asyncio
    async def test_second_trigger_after_finish_is_noop(self, store, gateway):
        await _setup(store)
        runner = DispatchRunner(store, gateway, config=_config())

        await asyncio.wait_for(runner.trigger("job-1"), timeout=2.0)
        # Let the done callback forget the first task
        await asyncio.sleep(0)
        outcome = await asyncio.wait_for(runner.trigger("job-1"), timeout=2.0)

        assert outcome.started is False

    @pytest.mark.asyncio
    async def test_accept_signal_wakes_wave_loop(self, store, gateway):
        await _setup(store, make_hero("h1", distance_m=500))
        runner = DispatchRunner(store, gateway, config=_config(timeout=30.0))
        arbiter = AssignmentArbiter(store, gateway, on_assigned=runner.signal)

        task = runner.trigger("job-1")
        await _wait_for_offer(gateway)
        await arbiter.accept("job-1", "h1")
        outcome = await asyncio.wait_for(task, timeout=2.0)

        assert outcome.result == WaveResult.ACCEPTED
        assert outcome.waves_run == 1

    @pytest.mark.asyncio
    async def test_signal_for_unknown_job_is_ignored(self, store, gateway):
        runner = DispatchRunner(store, gateway, config=_config())
        runner.signal("nope")

    @pytest.mark.asyncio
    async def test_crashed_task_counted(self, store, gateway):
        runner = DispatchRunner(store, gateway, config=_config())
        store.begin_dispatch = AsyncMock(side_effect=RuntimeError("boom"))

        task = runner.trigger("job-1")
        with pytest.raises(RuntimeError):
            await task
        await asyncio.sleep(0)

        assert get_metrics_collector().get_counter("dispatch_task_errors_total") == 1
        assert runner.active_jobs() == []


class TestMaintenance:
    @pytest.mark.asyncio
    async def test_maintenance_pass(self, store, gateway):
        await store.upsert_hero(make_hero("h1"))
        await store.create_job(make_job("done"))
        await store.begin_dispatch("done", 1)
        await store.finish_no_heroes("done")
        await store.create_job(make_job("stuck"))
        await store.begin_dispatch("stuck", 1)

        later = datetime.now(timezone.utc) + timedelta(days=40)
        runner = DispatchRunner(store, gateway, config=_config(stale_search_grace_seconds=0), clock=lambda: later)

        report = await runner.run_maintenance()

        assert report == {"wave_records_deleted": 1, "locations_cleared": 1, "searches_expired": 1}
        assert (await store.get_job("stuck")).status == JobStatus.NO_HEROES_AVAILABLE
        assert (await store.get_hero("h1")).location is None

    @pytest.mark.asyncio
    async def test_stale_search_notifies_customer_once(self, store, gateway):
        await store.set_push_token("cust-1", "cust-token")
        await store.create_job(make_job())
        await store.begin_dispatch("job-1", 2)

        later = datetime.now(timezone.utc) + timedelta(hours=2)
        runner = DispatchRunner(store, gateway, config=_config(), clock=lambda: later)

        first = await runner.run_maintenance()
        second = await runner.run_maintenance()

        assert first["searches_expired"] == 1
        assert second["searches_expired"] == 0
        assert (await store.get_job("job-1")).status == JobStatus.NO_HEROES_AVAILABLE
        pushes = gateway.of_type("no_heroes")
        assert len(pushes) == 1
        assert pushes[0]["to"] == "cust-token"
        assert pushes[0]["payload"]["job_id"] == "job-1"

    @pytest.mark.asyncio
    async def test_failed_expiry_sends_nothing(self, store, gateway):
        store.expire_stale_searches = AsyncMock(side_effect=RuntimeError("db down"))
        runner = DispatchRunner(store, gateway, config=_config())

        report = await runner.run_maintenance()

        assert report["searches_expired"] == 0
        assert gateway.sent == []

    @pytest.mark.asyncio
    async def test_maintenance_steps_are_independent(self, store, gateway):
        store.delete_wave_records_before = AsyncMock(side_effect=RuntimeError("db down"))
        await store.create_job(make_job("stuck"))
        await store.begin_dispatch("stuck", 1)

        later = datetime.now(timezone.utc) + timedelta(hours=1)
        runner = DispatchRunner(store, gateway, config=_config(), clock=lambda: later)

        report = await runner.run_maintenance()

        assert report["wave_records_deleted"] == 0
        assert report["searches_expired"] == 1

    @pytest.mark.asyncio
    async def test_start_and_stop(self, store, gateway):
        runner = DispatchRunner(store, gateway, config=_config(maintenance_interval_seconds=60.0))

        await runner.start()
        await asyncio.sleep(0.01)
        await runner.stop()

        assert runner.active_jobs() == []

    @pytest.mark.asyncio
    async def test_web_mode_skips_maintenance(self, store, gateway):
        runner = DispatchRunner(store, gateway, config=_config())
        store.delete_wave_records_before = AsyncMock(return_value=0)

        await runner.start(maintenance=False)
        await asyncio.sleep(0.01)
        await runner.stop()

        store.delete_wave_records_before.assert_not_awaited()
