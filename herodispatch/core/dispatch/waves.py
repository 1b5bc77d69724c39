"""
Dispatch wave engine.

Walks the wave schedule for one job: each wave looks up candidates in a
wider band, pushes the offer to the new ones in ranked order, records the
wave, then waits out the band's timeout so the nearest, best-ranked heroes
get first refusal before the search widens.

The only cancellation mechanism is the status re-read at the top of every
wave. An offer sent in a wave that started just before an accept is
harmless: the arbiter rejects every later accept. When a wakeup event is
supplied (set by the arbiter on commit) the wave wait ends early, which
only shortens the time until that re-read.

    pending --begin_dispatch--> searching --(waves)--> no_heroes_available
                                     |
                                     +--(arbiter)--> assigned
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Awaitable, Callable

from herodispatch.core.dispatch import texts
from herodispatch.core.dispatch.candidates import CandidateSource
from herodispatch.core.dispatch.notify import notify_user, send_best_effort
from herodispatch.core.dispatch.schedule import WaveBand, WaveSchedule
from herodispatch.core.dispatch.scoring import ScoredCandidate
from herodispatch.core.domain import ASSIGNED_OR_LATER, Job, JobStatus, WaveResult
from herodispatch.core.errors import TransientIOError
from herodispatch.core.ports import DispatchStore, NotificationGateway
from herodispatch.infra.logging_config import LogContext, get_logger
from herodispatch.infra.metrics import DispatchMetrics

logger = get_logger(__name__)


@dataclass(frozen=True)
class DispatchOutcome:
    job_id: str
    started: bool
    result: WaveResult | None = None
    waves_run: int = 0
    notified: tuple[str, ...] = ()


@dataclass
class _DispatchRun:
    """State owned by a single dispatch task; never shared across jobs."""
    job: Job
    schedule: WaveSchedule
    log: LogContext
    notified: set[str] = field(default_factory=set)
    notify_order: list[str] = field(default_factory=list)
    waves_run: int = 0

    def outcome(self, result: WaveResult | None) -> DispatchOutcome:
        return DispatchOutcome(
            job_id=self.job.id,
            started=True,
            result=result,
            waves_run=self.waves_run,
            notified=tuple(self.notify_order),
        )


def result_for_status(status: JobStatus) -> WaveResult | None:
    if status in ASSIGNED_OR_LATER:
        return WaveResult.ACCEPTED
    if status == JobStatus.CANCELLED:
        return WaveResult.CANCELLED
    if status == JobStatus.NO_HEROES_AVAILABLE:
        return WaveResult.NO_HEROES
    return None


class DispatchWaveEngine:
    def __init__(
        self,
        store: DispatchStore,
        candidates: CandidateSource,
        gateway: NotificationGateway | None,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._store = store
        self._candidates = candidates
        self._gateway = gateway
        self._sleep = sleep

    async def run(
        self,
        job_id: str,
        schedule: WaveSchedule,
        *,
        wakeup: asyncio.Event | None = None,
    ) -> DispatchOutcome:
        """
        Dispatch one job to completion.

        Returns without doing anything (``started=False``) if the job is
        missing or was already dispatched.
        """
        log = LogContext(logger, job_id=job_id)

        try:
            job = await self._store.begin_dispatch(job_id, len(schedule))
        except TransientIOError as exc:
            log.error(f"Could not start dispatch: {exc}")
            DispatchMetrics.store_error("begin_dispatch")
            return DispatchOutcome(job_id=job_id, started=False)

        if job is None:
            log.info("Dispatch not started: job missing or already past pending")
            return DispatchOutcome(job_id=job_id, started=False)

        # The searching job returned by the start is the snapshot every
        # later re-read falls back to
        DispatchMetrics.dispatch_started()
        run = _DispatchRun(job=job, schedule=schedule, log=log)
        log.info(f"Dispatch started: {len(schedule)} wave(s), service={job.service_type}")

        with DispatchMetrics.track_dispatch_time():
            outcome = await self._walk(run, wakeup)

        DispatchMetrics.dispatch_finished(outcome.result.value if outcome.result else "unknown")
        return outcome

    async def _walk(self, run: _DispatchRun, wakeup: asyncio.Event | None) -> DispatchOutcome:
        for index, band in enumerate(run.schedule):
            job = await self._reread(run.job.id, run.job, run.log)
            if job is None:
                run.log.warning("Job deleted during dispatch, stopping")
                return run.outcome(None)
            run.job = job

            if job.status != JobStatus.SEARCHING:
                run.log.info(f"Job is {job.status.value}, stopping before wave {index + 1}")
                return run.outcome(result_for_status(job.status))

            await self._run_wave(run, index, band)
            await self._wait(band.timeout_seconds, wakeup)

        return await self._exhausted(run)

    async def _run_wave(self, run: _DispatchRun, index: int, band: WaveBand) -> None:
        job = run.job
        wave_no = index + 1
        wlog = run.log.bind(wave=wave_no)
        DispatchMetrics.wave_started(wave_no)
        run.waves_run += 1

        try:
            await self._store.open_wave(job.id, index, band)
        except TransientIOError as exc:
            wlog.warning(f"Could not record wave start: {exc}")
            DispatchMetrics.store_error("open_wave")

        exclude = run.notified | job.declined_heroes
        candidates = await self._candidates.find_candidates(
            job.pickup, band, job.service_type, exclude,
        )
        fresh = [c for c in candidates if c.hero.id not in run.notified]

        for candidate in fresh:
            await self._offer(job, candidate, wave_no, wlog)
            run.notified.add(candidate.hero.id)
            run.notify_order.append(candidate.hero.id)

        DispatchMetrics.heroes_notified(len(fresh))

        try:
            await self._store.close_wave(job.id, index, [c.hero.id for c in fresh])
        except TransientIOError as exc:
            wlog.warning(f"Could not record wave result: {exc}")
            DispatchMetrics.store_error("close_wave")

        wlog.info(
            f"Wave {wave_no}/{len(run.schedule)}: band {band.min_radius_m:.0f}-{band.max_radius_m:.0f} m, "
            f"notified {len(fresh)} hero(es)",
        )

    async def _offer(self, job: Job, candidate: ScoredCandidate, wave_no: int, wlog: LogContext) -> None:
        hero = candidate.hero
        if not hero.push_token:
            wlog.info(f"Hero {hero.id[:8]} has no push token, skipping notification")
            return

        title, body = texts.new_job_offer(job.service_type)
        sent = await send_best_effort(
            self._gateway,
            hero.push_token,
            title,
            body,
            {
                "type": "new_job",
                "job_id": job.id,
                "service_type": job.service_type,
                "wave": wave_no,
                "distance_m": round(candidate.distance_m),
            },
            kind="hero_offer",
        )
        if sent:
            wlog.debug(f"Offer sent to hero {hero.id[:8]} (score={candidate.score:.3f})")

    async def _wait(self, timeout: float, wakeup: asyncio.Event | None) -> None:
        if wakeup is None:
            await self._sleep(timeout)
            return
        if wakeup.is_set():
            return
        try:
            await asyncio.wait_for(wakeup.wait(), timeout)
        except asyncio.TimeoutError:
            pass

    async def _exhausted(self, run: _DispatchRun) -> DispatchOutcome:
        job = run.job
        try:
            finished = await self._store.finish_no_heroes(job.id)
        except TransientIOError as exc:
            run.log.error(f"Could not close exhausted dispatch, left for maintenance: {exc}")
            DispatchMetrics.store_error("finish_no_heroes")
            return run.outcome(None)

        if not finished:
            latest = await self._reread(job.id, job, run.log)
            status = latest.status if latest else job.status
            run.log.info(f"All waves done but job is already {status.value}")
            return run.outcome(result_for_status(status))

        run.log.info(f"No heroes available after {run.waves_run} wave(s)")
        title, body = texts.NO_HEROES
        await notify_user(
            self._store,
            self._gateway,
            job.customer_id,
            title,
            body,
            {"type": "no_heroes", "job_id": job.id},
        )
        return run.outcome(WaveResult.NO_HEROES)

    async def _reread(self, job_id: str, fallback: Job, log: LogContext) -> Job | None:
        """
        Fresh job state; on a transient read error keep using the last
        snapshot. None only when the store confirms the job is gone.
        """
        try:
            return await self._store.get_job(job_id)
        except TransientIOError as exc:
            log.warning(f"Job re-read failed, continuing with last known state: {exc}")
            DispatchMetrics.store_error("get_job")
            return fallback
