# herodispatch/infra/memory_store.py
"""
In-process dispatch store.

Same contract as the PostgreSQL store, for development
(``STORE_BACKEND=memory``) and tests. One ``asyncio.Lock`` serializes every
operation; a transaction holds it for its whole body. Reads hand out deep
copies and writes are staged, so a transaction that raises leaves nothing
behind. State lives in this process only: it does not coordinate accepts
across replicas.
"""
from __future__ import annotations

import asyncio
import copy
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator, Callable

from herodispatch.core.dispatch.schedule import WaveBand
from herodispatch.core.domain import (
    GeoPoint,
    Hero,
    Job,
    JobStatus,
    StatusChange,
    WaveEntry,
    WaveRecord,
    WaveResult,
)
from herodispatch.core.errors import ValidationError
from herodispatch.infra.logging_config import get_logger
from herodispatch.infra.metrics import inc_counter

logger = get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class _MemoryTransaction:
    def __init__(self, store: "InMemoryDispatchStore", now: datetime):
        self._store = store
        self._now = now
        self.jobs: dict[str, Job] = {}
        self.heroes: dict[str, Hero] = {}
        self.records: dict[str, WaveRecord] = {}

    async def now(self) -> datetime:
        return self._now

    async def get_job(self, job_id: str) -> Job | None:
        if job_id in self.jobs:
            return copy.deepcopy(self.jobs[job_id])
        return self._store._read_job(job_id)

    async def get_hero(self, hero_id: str) -> Hero | None:
        if hero_id in self.heroes:
            return self._store._hero_view(self.heroes[hero_id])
        return self._store._read_hero(hero_id)

    async def get_wave_record(self, job_id: str) -> WaveRecord | None:
        if job_id in self.records:
            return copy.deepcopy(self.records[job_id])
        return self._store._read_record(job_id)

    async def save_job(self, job: Job) -> None:
        self.jobs[job.id] = copy.deepcopy(job)

    async def save_hero(self, hero: Hero) -> None:
        self.heroes[hero.id] = copy.deepcopy(hero)

    async def save_wave_record(self, record: WaveRecord) -> None:
        self.records[record.job_id] = copy.deepcopy(record)


class InMemoryDispatchStore:
    def __init__(self, clock: Callable[[], datetime] = _utcnow):
        self._clock = clock
        self._lock = asyncio.Lock()
        self._last_now: datetime | None = None
        self._jobs: dict[str, Job] = {}
        self._heroes: dict[str, Hero] = {}
        self._records: dict[str, WaveRecord] = {}
        self._push_tokens: dict[str, str] = {}

    # -- internals (caller holds the lock) -----------------------------------

    def _tick(self) -> datetime:
        """Server time; never goes backwards."""
        now = self._clock()
        if self._last_now is not None and now < self._last_now:
            now = self._last_now
        self._last_now = now
        return now

    def _hero_view(self, hero: Hero) -> Hero:
        view = copy.deepcopy(hero)
        view.push_token = self._push_tokens.get(hero.id)
        return view

    def _read_job(self, job_id: str) -> Job | None:
        job = self._jobs.get(job_id)
        return copy.deepcopy(job) if job else None

    def _read_hero(self, hero_id: str) -> Hero | None:
        hero = self._heroes.get(hero_id)
        return self._hero_view(hero) if hero else None

    def _read_record(self, job_id: str) -> WaveRecord | None:
        record = self._records.get(job_id)
        return copy.deepcopy(record) if record else None

    def _store_hero(self, hero: Hero) -> None:
        stored = copy.deepcopy(hero)
        stored.push_token = None
        self._heroes[hero.id] = stored

    def _commit(self, tx: _MemoryTransaction) -> None:
        self._jobs.update(tx.jobs)
        for hero in tx.heroes.values():
            self._store_hero(hero)
        self._records.update(tx.records)

    @staticmethod
    def _mark(job: Job, status: JobStatus, now: datetime, extra_stamp: str | None = None) -> None:
        job.mark(status, now)
        if extra_stamp:
            job.timestamps[extra_stamp] = now

    # -- transaction --------------------------------------------------------

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[_MemoryTransaction]:
        async with self._lock:
            tx = _MemoryTransaction(self, self._tick())
            yield tx
            self._commit(tx)

    # -- jobs ---------------------------------------------------------------

    async def create_job(self, job: Job) -> Job:
        async with self._lock:
            if job.id in self._jobs:
                raise ValidationError("Job already exists")
            now = self._tick()
            stored = copy.deepcopy(job)
            stored.status = JobStatus.PENDING
            stored.status_history = [
                StatusChange(status=JobStatus.PENDING.value, at=now, actor_id=job.customer_id),
            ]
            stored.timestamps = {JobStatus.PENDING.value: now}
            stored.created_at = now
            stored.updated_at = now
            self._jobs[job.id] = stored
            inc_counter("jobs_created_total", service_type=job.service_type)
            return copy.deepcopy(stored)

    async def get_job(self, job_id: str) -> Job | None:
        async with self._lock:
            return self._read_job(job_id)

    # -- heroes -------------------------------------------------------------

    async def get_hero(self, hero_id: str) -> Hero | None:
        async with self._lock:
            return self._read_hero(hero_id)

    async def upsert_hero(self, hero: Hero) -> None:
        async with self._lock:
            if hero.updated_at is None:
                hero = copy.deepcopy(hero)
                hero.updated_at = self._tick()
            self._store_hero(hero)
            if hero.push_token:
                self._push_tokens[hero.id] = hero.push_token

    async def update_hero_presence(
        self,
        hero_id: str,
        *,
        is_online: bool,
        location: GeoPoint | None,
    ) -> Hero | None:
        async with self._lock:
            hero = self._heroes.get(hero_id)
            if hero is None:
                return None
            now = self._tick()
            hero.is_online = is_online
            if location is not None:
                hero.location = location
                hero.location_updated_at = now
            hero.updated_at = now
            return self._hero_view(hero)

    async def list_dispatchable_heroes(self) -> list[Hero]:
        async with self._lock:
            return [
                self._hero_view(hero)
                for hero in self._heroes.values()
                if hero.is_online and hero.is_verified
            ]

    # -- push tokens --------------------------------------------------------

    async def get_push_token(self, user_id: str) -> str | None:
        async with self._lock:
            return self._push_tokens.get(user_id)

    async def set_push_token(self, user_id: str, token: str | None) -> None:
        async with self._lock:
            if token:
                self._push_tokens[user_id] = token
            else:
                self._push_tokens.pop(user_id, None)

    # -- wave ledger --------------------------------------------------------

    async def get_wave_record(self, job_id: str) -> WaveRecord | None:
        async with self._lock:
            return self._read_record(job_id)

    async def begin_dispatch(self, job_id: str, total_waves: int) -> Job | None:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status != JobStatus.PENDING:
                return None
            now = self._tick()
            self._mark(job, JobStatus.SEARCHING, now, extra_stamp="dispatch_started")
            job.current_wave = 0
            self._records[job_id] = WaveRecord(
                job_id=job_id,
                total_waves=total_waves,
                started_at=now,
            )
            return copy.deepcopy(job)

    async def open_wave(self, job_id: str, index: int, band: WaveBand) -> None:
        async with self._lock:
            now = self._tick()
            job = self._jobs.get(job_id)
            if job is not None and job.status == JobStatus.SEARCHING:
                job.current_wave = index + 1
                job.updated_at = now
            record = self._records.get(job_id)
            if record is not None and not record.is_terminal:
                record.current_wave = index + 1
                record.waves.append(WaveEntry(
                    index=index,
                    min_radius_m=band.min_radius_m,
                    max_radius_m=band.max_radius_m,
                    started_at=now,
                ))

    async def close_wave(self, job_id: str, index: int, notified: list[str]) -> None:
        async with self._lock:
            now = self._tick()
            job = self._jobs.get(job_id)
            if job is not None:
                job.notified_heroes.update(notified)
                job.updated_at = now
            record = self._records.get(job_id)
            if record is not None and not record.is_terminal:
                record.notified_heroes.update(notified)
                for entry in record.waves:
                    if entry.index == index:
                        entry.notified_count = len(notified)

    async def finish_no_heroes(self, job_id: str) -> bool:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status != JobStatus.SEARCHING:
                return False
            now = self._tick()
            self._close_search(job, now)
            return True

    def _close_search(self, job: Job, now: datetime) -> None:
        self._mark(job, JobStatus.NO_HEROES_AVAILABLE, now, extra_stamp="dispatch_completed")
        record = self._records.get(job.id)
        if record is not None and not record.is_terminal:
            record.close(WaveResult.NO_HEROES, now)

    # -- maintenance --------------------------------------------------------

    async def delete_wave_records_before(self, cutoff: datetime) -> int:
        async with self._lock:
            expired = [
                job_id
                for job_id, record in self._records.items()
                if record.is_terminal and record.completed_at is not None and record.completed_at < cutoff
            ]
            for job_id in expired:
                del self._records[job_id]
            return len(expired)

    async def clear_stale_locations(self, cutoff: datetime) -> int:
        async with self._lock:
            count = 0
            for hero in self._heroes.values():
                if hero.location is None:
                    continue
                if hero.location_updated_at is None or hero.location_updated_at < cutoff:
                    hero.location = None
                    hero.location_updated_at = None
                    count += 1
            return count

    async def expire_stale_searches(self, started_before: datetime) -> list[Job]:
        async with self._lock:
            now = self._tick()
            expired = []
            for job in self._jobs.values():
                if job.status != JobStatus.SEARCHING:
                    continue
                started = job.timestamps.get("dispatch_started") or job.updated_at
                if started is not None and started < started_before:
                    self._close_search(job, now)
                    expired.append(copy.deepcopy(job))
            if expired:
                logger.warning(f"Expired {len(expired)} stale searching jobs")
            return expired
