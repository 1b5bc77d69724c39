# herodispatch/infra/dispatch_runner.py
"""
In-process dispatch runner.

Owns one asyncio task per dispatching job plus the maintenance loop.
Cross-process idempotency comes from the store (``begin_dispatch`` is a
compare-and-set); the in-process task map only avoids starting a second
task for a job this process is already walking.

Usage:
    runner = DispatchRunner(store, gateway)
    await runner.start()
    runner.trigger(job_id)
    ...
    await runner.stop()
"""
from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Callable

from herodispatch.config import Settings, settings as default_settings
from herodispatch.core.dispatch import texts
from herodispatch.core.dispatch.candidates import CandidateSource
from herodispatch.core.dispatch.notify import notify_user
from herodispatch.core.dispatch.schedule import load_scoring_weights, load_wave_schedule
from herodispatch.core.dispatch.scoring import HeroScorer
from herodispatch.core.dispatch.waves import DispatchOutcome, DispatchWaveEngine
from herodispatch.core.ports import DispatchStore, NotificationGateway
from herodispatch.infra.logging_config import get_logger
from herodispatch.infra.metrics import inc_counter

logger = get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DispatchRunner:
    def __init__(
        self,
        store: DispatchStore,
        gateway: NotificationGateway | None,
        *,
        config: Settings | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._store = store
        self._gateway = gateway
        self._config = config or default_settings
        self._clock = clock
        self._tasks: dict[str, asyncio.Task] = {}
        self._wakeups: dict[str, asyncio.Event] = {}
        self._maintenance_task: asyncio.Task | None = None
        self._running = False

    # -- dispatch -----------------------------------------------------------

    def build_engine(self) -> DispatchWaveEngine:
        """Engine with the scoring weights currently configured."""
        scorer = HeroScorer(load_scoring_weights(self._config))
        candidates = CandidateSource(
            self._store,
            scorer,
            location_ttl_seconds=self._config.hero_location_ttl_seconds,
        )
        return DispatchWaveEngine(self._store, candidates, self._gateway)

    def trigger(self, job_id: str) -> asyncio.Task | None:
        """
        Start dispatching ``job_id`` in the background.

        Returns the running task, or None when this process is already
        dispatching the job.
        """
        existing = self._tasks.get(job_id)
        if existing is not None and not existing.done():
            logger.info("Dispatch already running in this process", extra={"job_id": job_id})
            return None

        schedule = load_wave_schedule(self._config)
        engine = self.build_engine()
        wakeup = asyncio.Event() if self._config.dispatch_early_wakeup else None
        if wakeup is not None:
            self._wakeups[job_id] = wakeup

        task = asyncio.create_task(
            engine.run(job_id, schedule, wakeup=wakeup),
            name=f"dispatch:{job_id}",
        )
        self._tasks[job_id] = task
        task.add_done_callback(lambda t, jid=job_id: self._on_dispatch_done(jid, t))
        inc_counter("dispatch_triggered_total")
        return task

    def signal(self, job_id: str) -> None:
        """Wake the job's wave loop so it re-reads the job status now."""
        wakeup = self._wakeups.get(job_id)
        if wakeup is not None:
            wakeup.set()

    def active_jobs(self) -> list[str]:
        return [job_id for job_id, task in self._tasks.items() if not task.done()]

    def _on_dispatch_done(self, job_id: str, task: asyncio.Task) -> None:
        """Forget the finished task and log unexpected death."""
        if self._tasks.get(job_id) is task:
            del self._tasks[job_id]
            self._wakeups.pop(job_id, None)

        if task.cancelled():
            return
        exc = task.exception()
        if exc:
            inc_counter("dispatch_task_errors_total")
            logger.error(
                f"Dispatch task died unexpectedly: {exc}",
                extra={"job_id": job_id},
                exc_info=(type(exc), exc, exc.__traceback__),
            )
            return

        outcome: DispatchOutcome = task.result()
        if outcome.started:
            result = outcome.result.value if outcome.result else "unresolved"
            logger.info(
                f"Dispatch finished: result={result}, waves={outcome.waves_run}, "
                f"notified={len(outcome.notified)}",
                extra={"job_id": job_id},
            )

    # -- maintenance --------------------------------------------------------

    async def run_maintenance(self) -> dict[str, int]:
        """One cleanup pass; each step is independent of the others."""
        now = self._clock()
        report = {"wave_records_deleted": 0, "locations_cleared": 0, "searches_expired": 0}

        try:
            report["wave_records_deleted"] = await self._store.delete_wave_records_before(
                now - timedelta(days=self._config.wave_record_ttl_days),
            )
        except Exception as exc:
            logger.warning(f"Wave record cleanup failed: {exc}")

        try:
            report["locations_cleared"] = await self._store.clear_stale_locations(
                now - timedelta(seconds=self._config.hero_location_ttl_seconds),
            )
        except Exception as exc:
            logger.warning(f"Stale location cleanup failed: {exc}")

        # A search older than the longest schedule plus grace has lost its task
        horizon = (
            load_wave_schedule(self._config).total_timeout_seconds
            + self._config.stale_search_grace_seconds
        )
        try:
            expired = await self._store.expire_stale_searches(now - timedelta(seconds=horizon))
            report["searches_expired"] = len(expired)
        except Exception as exc:
            logger.warning(f"Stale search expiry failed: {exc}")
            expired = []

        # The dispatch task that would have told the customer is gone
        title, body = texts.NO_HEROES
        for job in expired:
            logger.warning("Stale search resolved to no_heroes_available", extra={"job_id": job.id})
            await notify_user(
                self._store,
                self._gateway,
                job.customer_id,
                title,
                body,
                {"type": "no_heroes", "job_id": job.id},
            )

        return report

    async def _maintenance_loop(self) -> None:
        interval = self._config.maintenance_interval_seconds
        while self._running:
            try:
                report = await self.run_maintenance()
                if any(report.values()):
                    logger.info(f"Maintenance pass: {report}")
                await asyncio.sleep(interval)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error(f"Maintenance loop error: {exc}", exc_info=True)
                inc_counter("maintenance_loop_errors_total")
                await asyncio.sleep(interval * 2)

    # -- lifecycle ----------------------------------------------------------

    async def start(self, *, maintenance: bool = True) -> None:
        self._running = True
        if maintenance:
            self._maintenance_task = asyncio.create_task(self._maintenance_loop(), name="dispatch_maintenance")
            self._maintenance_task.add_done_callback(self._on_task_done)
        logger.info(
            f"Dispatch runner started: maintenance={'on' if maintenance else 'off'}, "
            f"early_wakeup={self._config.dispatch_early_wakeup}",
        )

    async def stop(self) -> None:
        """Cancel the maintenance loop and every running dispatch."""
        self._running = False
        tasks = list(self._tasks.values())
        if self._maintenance_task is not None:
            tasks.append(self._maintenance_task)

        for task in tasks:
            if not task.done():
                task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        self._tasks.clear()
        self._wakeups.clear()
        self._maintenance_task = None
        logger.info("Dispatch runner stopped")

    @staticmethod
    def _on_task_done(task: asyncio.Task) -> None:
        """Log unexpected maintenance loop death."""
        if task.cancelled():
            return
        exc = task.exception()
        if exc:
            logger.error(
                f"Maintenance task died unexpectedly: {exc}",
                exc_info=(type(exc), exc, exc.__traceback__),
            )
