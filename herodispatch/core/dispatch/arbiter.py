"""
Assignment arbiter: the only writer of ``job.status = assigned`` and
``hero.current_job_id``.

Every accept runs as one store transaction over the job, hero and wave
record. Reads lock their rows, so of N heroes accepting the same job
concurrently exactly one sees ``searching`` and commits; the rest see the
committed state and get ``PreconditionFailedError(already_assigned)``.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from herodispatch.core.dispatch import texts
from herodispatch.core.dispatch.notify import notify_user
from herodispatch.core.domain import JobStatus, WaveResult
from herodispatch.core.errors import (
    DispatchError,
    NotFoundError,
    PreconditionFailedError,
    ValidationError,
)
from herodispatch.core.ports import DispatchStore, NotificationGateway
from herodispatch.infra.audit_log import audit_event
from herodispatch.infra.logging_config import LogContext, get_logger
from herodispatch.infra.metrics import DispatchMetrics

logger = get_logger(__name__)

# Statuses in which a decline still counts against the job's search
_OPEN_STATUSES = frozenset({JobStatus.PENDING, JobStatus.SEARCHING})


@dataclass(frozen=True)
class Assignment:
    job_id: str
    hero_id: str
    assigned_at: datetime


@dataclass(frozen=True)
class DeclineReceipt:
    job_id: str
    hero_id: str
    recorded: bool          # False => repeat decline, nothing changed
    stats_updated: bool


def _require_ids(job_id: str, hero_id: str) -> None:
    if not job_id or not str(job_id).strip():
        raise ValidationError("jobId is required")
    if not hero_id or not str(hero_id).strip():
        raise ValidationError("heroId is required")


class AssignmentArbiter:
    def __init__(
        self,
        store: DispatchStore,
        gateway: NotificationGateway | None = None,
        *,
        on_assigned: Callable[[str], None] | None = None,
    ):
        self._store = store
        self._gateway = gateway
        self._on_assigned = on_assigned

    async def accept(self, job_id: str, hero_id: str) -> Assignment:
        """
        Bind ``hero_id`` to ``job_id``.

        Raises:
            ValidationError: missing ids
            NotFoundError: job or hero does not exist
            PreconditionFailedError: job not searching (``already_assigned``)
                or hero already bound (``worker_busy``)
            TransientIOError: the store failed; nothing was committed
        """
        _require_ids(job_id, hero_id)
        log = LogContext(logger, job_id=job_id, hero_id=hero_id)

        try:
            async with self._store.transaction() as tx:
                job = await tx.get_job(job_id)
                if job is None:
                    raise NotFoundError("Job not found")
                hero = await tx.get_hero(hero_id)
                if hero is None:
                    raise NotFoundError("Hero profile not found")

                if job.status != JobStatus.SEARCHING:
                    raise PreconditionFailedError(
                        "Job is no longer available",
                        reason=PreconditionFailedError.ALREADY_ASSIGNED,
                    )
                if hero.current_job_id:
                    raise PreconditionFailedError(
                        "You already have an active job",
                        reason=PreconditionFailedError.WORKER_BUSY,
                    )

                now = await tx.now()

                job.hero_id = hero.id
                job.hero_snapshot = hero.snapshot()
                job.mark(JobStatus.ASSIGNED, now, actor_id=hero.id)
                job.timestamps["dispatch_completed"] = now

                hero.current_job_id = job.id
                hero.stats.record_offer(accepted=True)
                hero.updated_at = now

                record = await tx.get_wave_record(job_id)
                if record is not None and not record.is_terminal:
                    record.close(WaveResult.ACCEPTED, now, accepted_by=hero.id)
                    await tx.save_wave_record(record)

                await tx.save_job(job)
                await tx.save_hero(hero)
        except DispatchError as exc:
            DispatchMetrics.accept(exc.reason or exc.__class__.__name__)
            log.info(f"Accept rejected: {exc.detail}")
            raise

        DispatchMetrics.accept("won")
        audit_event("job.accept", job_id, hero_id)
        log.info("Job assigned")

        if self._on_assigned is not None:
            self._on_assigned(job_id)

        title, body = texts.HERO_ASSIGNED
        await notify_user(
            self._store,
            self._gateway,
            job.customer_id,
            title,
            body,
            {"type": "job_accepted", "job_id": job_id},
        )
        return Assignment(job_id=job_id, hero_id=hero_id, assigned_at=now)

    async def decline(self, job_id: str, hero_id: str, reason: str | None = None) -> DeclineReceipt:
        """
        Record that ``hero_id`` passed on ``job_id``.

        The hero joins the job's declined set (set semantics, repeat calls
        are no-ops) and, while the search is still open, the wave record's.
        Once the job has moved on the declined set is history only. The
        hero's acceptance rate is updated once per job, even if the job was
        already taken by someone else. A repeat decline is not counted as
        another offer: the offered total moves only on the first one, so a
        retried request cannot drag the acceptance rate down.

        Raises:
            ValidationError: missing ids
            NotFoundError: job does not exist
            TransientIOError: the store failed; nothing was committed
        """
        _require_ids(job_id, hero_id)
        log = LogContext(logger, job_id=job_id, hero_id=hero_id)

        async with self._store.transaction() as tx:
            job = await tx.get_job(job_id)
            if job is None:
                raise NotFoundError("Job not found")
            hero = await tx.get_hero(hero_id)

            recorded = hero_id not in job.declined_heroes
            if recorded:
                job.declined_heroes.add(hero_id)
                await tx.save_job(job)

            stats_updated = False
            if hero is not None and recorded:
                now = await tx.now()
                hero.stats.record_offer(accepted=False)
                hero.stats.last_declined_at = now
                hero.updated_at = now
                await tx.save_hero(hero)
                stats_updated = True

            if recorded and job.status in _OPEN_STATUSES:
                record = await tx.get_wave_record(job_id)
                if record is not None and not record.is_terminal:
                    record.declined_heroes.add(hero_id)
                    await tx.save_wave_record(record)

        DispatchMetrics.decline()
        audit_event("job.decline", job_id, hero_id, reason=reason, recorded=recorded)
        log.info(f"Decline recorded (job_updated={recorded}, stats_updated={stats_updated})")
        return DeclineReceipt(job_id=job_id, hero_id=hero_id, recorded=recorded, stats_updated=stats_updated)
