"""
Job lifecycle after assignment.

Applies status transitions, stamps timestamps and history, and on a
terminal transition (completed / cancelled) releases the bound hero back
into the pool. This is the only path by which a bound hero becomes
dispatchable again. Completion also bumps the hero's job counter and hands the job to
payout accounting.
"""
from __future__ import annotations

from typing import Callable

from herodispatch.core.dispatch import texts
from herodispatch.core.dispatch.notify import notify_user, send_best_effort
from herodispatch.core.domain import Hero, Job, JobStatus, WaveResult
from herodispatch.core.errors import (
    NotFoundError,
    PermissionDeniedError,
    PreconditionFailedError,
    ValidationError,
)
from herodispatch.core.ports import DispatchStore, NotificationGateway, PayoutRecorder
from herodispatch.infra.audit_log import audit_event
from herodispatch.infra.logging_config import LogContext, get_logger

logger = get_logger(__name__)

ALLOWED_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.CANCELLED}),
    JobStatus.SEARCHING: frozenset({JobStatus.CANCELLED}),
    JobStatus.ASSIGNED: frozenset({JobStatus.EN_ROUTE, JobStatus.CANCELLED}),
    JobStatus.EN_ROUTE: frozenset({JobStatus.ARRIVED, JobStatus.CANCELLED}),
    JobStatus.ARRIVED: frozenset({JobStatus.IN_PROGRESS, JobStatus.CANCELLED}),
    JobStatus.IN_PROGRESS: frozenset({JobStatus.COMPLETED, JobStatus.CANCELLED}),
}

# Statuses a caller may request; assigned / no_heroes_available are internal
REQUESTABLE_STATUSES = frozenset({
    JobStatus.EN_ROUTE,
    JobStatus.ARRIVED,
    JobStatus.IN_PROGRESS,
    JobStatus.COMPLETED,
    JobStatus.CANCELLED,
})


def _check_actor(job: Job, new_status: JobStatus, actor_id: str | None) -> None:
    if actor_id is None:
        return
    if new_status == JobStatus.CANCELLED:
        if actor_id not in (job.customer_id, job.hero_id):
            raise PermissionDeniedError("Only the customer or the assigned hero can cancel this job")
    elif actor_id != job.hero_id:
        raise PermissionDeniedError("Only the assigned hero can update this job")


class JobLifecycleWatcher:
    def __init__(
        self,
        store: DispatchStore,
        gateway: NotificationGateway | None = None,
        *,
        payouts: PayoutRecorder | None = None,
        on_closed: Callable[[str], None] | None = None,
    ):
        self._store = store
        self._gateway = gateway
        self._payouts = payouts
        self._on_closed = on_closed

    async def apply_transition(
        self,
        job_id: str,
        new_status: JobStatus | str,
        *,
        actor_id: str | None = None,
    ) -> Job:
        """
        Move ``job_id`` to ``new_status``.

        ``actor_id=None`` means a trusted internal caller (no participant check).

        Raises:
            ValidationError: unknown or non-requestable status
            NotFoundError: job does not exist
            PermissionDeniedError: actor is not allowed to make this change
            PreconditionFailedError: transition not allowed from the current status
            TransientIOError: the store failed; nothing was committed
        """
        try:
            new_status = JobStatus(new_status)
        except ValueError:
            raise ValidationError(f"Unknown status: {new_status}")
        if new_status not in REQUESTABLE_STATUSES:
            raise ValidationError(f"Status {new_status.value} cannot be requested")

        log = LogContext(logger, job_id=job_id)
        released: Hero | None = None

        async with self._store.transaction() as tx:
            job = await tx.get_job(job_id)
            if job is None:
                raise NotFoundError("Job not found")

            _check_actor(job, new_status, actor_id)

            previous = job.status
            if new_status not in ALLOWED_TRANSITIONS.get(previous, frozenset()):
                raise PreconditionFailedError(
                    f"Cannot move job from {previous.value} to {new_status.value}",
                    reason=PreconditionFailedError.INVALID_TRANSITION,
                )

            now = await tx.now()
            job.mark(new_status, now, actor_id=actor_id)

            if new_status in (JobStatus.COMPLETED, JobStatus.CANCELLED) and job.hero_id:
                hero = await tx.get_hero(job.hero_id)
                if hero is not None and hero.current_job_id == job.id:
                    hero.current_job_id = None
                    if new_status == JobStatus.COMPLETED:
                        hero.stats.total_jobs += 1
                    hero.updated_at = now
                    await tx.save_hero(hero)
                    released = hero

            if new_status == JobStatus.CANCELLED and previous in (JobStatus.PENDING, JobStatus.SEARCHING):
                job.timestamps["dispatch_completed"] = now
                record = await tx.get_wave_record(job_id)
                if record is not None and not record.is_terminal:
                    record.close(WaveResult.CANCELLED, now)
                    await tx.save_wave_record(record)

            await tx.save_job(job)

        audit_event(
            "job.status",
            job_id,
            actor_id,
            from_status=previous.value,
            to_status=new_status.value,
        )
        log.info(
            f"Job {previous.value} -> {new_status.value}"
            + (f", hero {released.id[:8]} released" if released else ""),
        )

        if new_status == JobStatus.CANCELLED and self._on_closed is not None:
            self._on_closed(job_id)

        await self._after_commit(job, new_status, released, log)
        return job

    async def _after_commit(self, job: Job, new_status: JobStatus, released: Hero | None, log: LogContext) -> None:
        if new_status == JobStatus.COMPLETED and self._payouts is not None:
            try:
                await self._payouts.credit_job(job)
            except Exception:
                log.error("Payout credit failed, needs manual reconciliation", exc_info=True)

        if new_status == JobStatus.CANCELLED and released is not None:
            title, body = texts.HERO_JOB_CANCELLED
            await send_best_effort(
                self._gateway,
                released.push_token,
                title,
                body,
                {"type": "job_cancelled", "job_id": job.id},
                kind="hero_status",
            )

        message = texts.customer_status_update(
            new_status.value,
            job.hero_snapshot.get("name"),
            job.service_type,
        )
        if message is not None:
            title, body = message
            await notify_user(
                self._store,
                self._gateway,
                job.customer_id,
                title,
                body,
                {"type": f"job_{new_status.value}", "job_id": job.id},
            )
