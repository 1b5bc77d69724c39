# herodispatch/infra/pg_dispatch_store_async.py
"""
Async PostgreSQL dispatch store (asyncpg).

Tables: ``dispatch_jobs``, ``heroes``, ``dispatch_waves``, ``app_users``.

``transaction()`` is a real database transaction; its reads take
``FOR UPDATE`` row locks, so concurrent accepts on one job serialize on the
job row and the loser sees the winner's committed status. The dispatch
engine's own writes are single compare-and-set statements guarded by the
job status / wave result, never read-modify-write cycles.
"""
from __future__ import annotations

import json
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator

import asyncpg
from herodispatch.core.dispatch.schedule import WaveBand
from herodispatch.core.domain import (
    GeoPoint,
    Hero,
    HeroStats,
    Job,
    JobStatus,
    StatusChange,
    WaveEntry,
    WaveRecord,
    WaveRecordStatus,
    WaveResult,
)
from herodispatch.core.errors import ValidationError
from herodispatch.infra.db_resilience_async import retry_on_transient_error, safe_db_conn
from herodispatch.infra.logging_config import get_logger
from herodispatch.infra.metrics import inc_counter

logger = get_logger(__name__)

_HERO_SELECT = """
    SELECT h.*, u.push_token
    FROM heroes h
    LEFT JOIN app_users u ON u.id = h.id
"""


# ============================================================================
# ROW MAPPERS
# ============================================================================

def _jsonb(value: Any, default: Any) -> Any:
    """asyncpg returns jsonb as text unless a codec is registered."""
    if value is None:
        return default
    if isinstance(value, str):
        return json.loads(value)
    return value


def _parse_ts(value: Any) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


def _row_to_job(row) -> Job:
    timestamps = {
        key: _parse_ts(value)
        for key, value in _jsonb(row["timestamps"], {}).items()
        if value is not None
    }
    return Job(
        id=str(row["id"]),
        customer_id=row["customer_id"],
        service_type=row["service_type"],
        pickup=GeoPoint(row["pickup_latitude"], row["pickup_longitude"]),
        status=JobStatus(row["status"]),
        hero_id=row["hero_id"],
        hero_snapshot=_jsonb(row["hero_snapshot"], {}),
        notified_heroes=set(row["notified_heroes"] or ()),
        declined_heroes=set(row["declined_heroes"] or ()),
        current_wave=row["current_wave"],
        status_history=[StatusChange.from_dict(c) for c in _jsonb(row["status_history"], [])],
        timestamps=timestamps,
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_hero(row) -> Hero:
    location = None
    if row["latitude"] is not None and row["longitude"] is not None:
        location = GeoPoint(row["latitude"], row["longitude"])
    return Hero(
        id=str(row["id"]),
        display_name=row["display_name"] or "",
        phone=row["phone"],
        photo_url=row["photo_url"],
        push_token=row.get("push_token"),
        is_online=row["is_online"],
        is_verified=row["is_verified"],
        is_available=row["is_available"],
        current_job_id=row["current_job_id"],
        service_types=frozenset(row["service_types"] or ()),
        location=location,
        location_updated_at=row["location_updated_at"],
        stats=HeroStats(
            rating=row["rating"],
            acceptance_rate=row["acceptance_rate"],
            avg_response_seconds=row["avg_response_seconds"],
            total_offered=row["total_offered"],
            total_accepted=row["total_accepted"],
            total_jobs=row["total_jobs"],
            last_declined_at=row["last_declined_at"],
        ),
        vehicle=_jsonb(row["vehicle"], {}),
        updated_at=row["updated_at"],
    )


def _row_to_wave_record(row) -> WaveRecord:
    return WaveRecord(
        job_id=str(row["job_id"]),
        total_waves=row["total_waves"],
        current_wave=row["current_wave"],
        waves=[WaveEntry.from_dict(w) for w in _jsonb(row["waves"], [])],
        notified_heroes=set(row["notified_heroes"] or ()),
        declined_heroes=set(row["declined_heroes"] or ()),
        status=WaveRecordStatus(row["status"]),
        result=WaveResult(row["result"]),
        accepted_by=row["accepted_by"],
        started_at=row["started_at"],
        completed_at=row["completed_at"],
    )


def _history_json(job: Job) -> str:
    return json.dumps([change.to_dict() for change in job.status_history])


def _timestamps_json(job: Job) -> str:
    return json.dumps({key: value.isoformat() for key, value in job.timestamps.items()})


def _waves_json(record: WaveRecord) -> str:
    return json.dumps([entry.to_dict() for entry in record.waves])


def _affected(result: str | None) -> int:
    """Row count from an asyncpg status string like 'DELETE 5'."""
    return int(result.split()[-1]) if result else 0


def _mark_status(status: str, extra_stamp: str | None = None) -> str:
    """SET fragment moving a job to ``status`` with timestamp and history entry."""
    stamps = f"'{status}', now()"
    if extra_stamp:
        stamps += f", '{extra_stamp}', now()"
    return f"""
        status = '{status}',
        timestamps = timestamps || jsonb_build_object({stamps}),
        status_history = status_history || jsonb_build_array(
            jsonb_build_object('status', '{status}', 'at', now(), 'actor_id', NULL)
        ),
        updated_at = now()
    """


# ============================================================================
# TRANSACTION
# ============================================================================

class _PgDispatchTransaction:
    """Reads lock rows (``FOR UPDATE``); writes go straight to the open transaction."""

    def __init__(self, conn):
        self._conn = conn

    async def now(self) -> datetime:
        return await self._conn.fetchval("SELECT now()")

    async def get_job(self, job_id: str) -> Job | None:
        row = await self._conn.fetchrow(
            "SELECT * FROM dispatch_jobs WHERE id = $1 FOR UPDATE",
            job_id,
        )
        return _row_to_job(row) if row else None

    async def get_hero(self, hero_id: str) -> Hero | None:
        row = await self._conn.fetchrow(
            f"{_HERO_SELECT} WHERE h.id = $1 FOR UPDATE OF h",
            hero_id,
        )
        return _row_to_hero(row) if row else None

    async def get_wave_record(self, job_id: str) -> WaveRecord | None:
        row = await self._conn.fetchrow(
            "SELECT * FROM dispatch_waves WHERE job_id = $1 FOR UPDATE",
            job_id,
        )
        return _row_to_wave_record(row) if row else None

    async def save_job(self, job: Job) -> None:
        await self._conn.execute(
            """
            UPDATE dispatch_jobs
            SET status = $2,
                hero_id = $3,
                hero_snapshot = $4::jsonb,
                notified_heroes = $5::text[],
                declined_heroes = $6::text[],
                current_wave = $7,
                status_history = $8::jsonb,
                timestamps = $9::jsonb,
                updated_at = COALESCE($10, now())
            WHERE id = $1
            """,
            job.id,
            job.status.value,
            job.hero_id,
            json.dumps(job.hero_snapshot),
            sorted(job.notified_heroes),
            sorted(job.declined_heroes),
            job.current_wave,
            _history_json(job),
            _timestamps_json(job),
            job.updated_at,
        )

    async def save_hero(self, hero: Hero) -> None:
        await self._conn.execute(
            """
            UPDATE heroes
            SET current_job_id = $2,
                is_available = $3,
                rating = $4,
                acceptance_rate = $5,
                avg_response_seconds = $6,
                total_offered = $7,
                total_accepted = $8,
                total_jobs = $9,
                last_declined_at = $10,
                updated_at = COALESCE($11, now())
            WHERE id = $1
            """,
            hero.id,
            hero.current_job_id,
            hero.is_available,
            hero.stats.rating,
            hero.stats.acceptance_rate,
            hero.stats.avg_response_seconds,
            hero.stats.total_offered,
            hero.stats.total_accepted,
            hero.stats.total_jobs,
            hero.stats.last_declined_at,
            hero.updated_at,
        )

    async def save_wave_record(self, record: WaveRecord) -> None:
        await self._conn.execute(
            """
            UPDATE dispatch_waves
            SET current_wave = $2,
                waves = $3::jsonb,
                notified_heroes = $4::text[],
                declined_heroes = $5::text[],
                status = $6,
                result = $7,
                accepted_by = $8,
                completed_at = $9
            WHERE job_id = $1
            """,
            record.job_id,
            record.current_wave,
            _waves_json(record),
            sorted(record.notified_heroes),
            sorted(record.declined_heroes),
            record.status.value,
            record.result.value,
            record.accepted_by,
            record.completed_at,
        )


# ============================================================================
# STORE
# ============================================================================

class AsyncPostgresDispatchStore:
    """Dispatch persistence on PostgreSQL."""

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[_PgDispatchTransaction]:
        """
        One database transaction; commits on a clean exit, rolls back on any
        exception. Lock order: job, then hero, then wave record.
        """
        async with safe_db_conn(autocommit=False) as conn:
            yield _PgDispatchTransaction(conn)

    # -- jobs ---------------------------------------------------------------

    async def create_job(self, job: Job) -> Job:
        async with safe_db_conn() as conn:
            try:
                row = await conn.fetchrow(
                    """
                    INSERT INTO dispatch_jobs (
                        id, customer_id, service_type, pickup_latitude, pickup_longitude,
                        status, status_history, timestamps
                    )
                    VALUES (
                        $1, $2, $3, $4, $5, 'pending',
                        jsonb_build_array(jsonb_build_object('status', 'pending', 'at', now(), 'actor_id', $2::text)),
                        jsonb_build_object('pending', now())
                    )
                    RETURNING *
                    """,
                    job.id,
                    job.customer_id,
                    job.service_type,
                    job.pickup.latitude,
                    job.pickup.longitude,
                )
            except asyncpg.UniqueViolationError:
                raise ValidationError("Job already exists")
            inc_counter("jobs_created_total", service_type=job.service_type)
            logger.debug(f"Job created: id={job.id[:8]}", extra={"job_id": job.id})
            return _row_to_job(row)

    @retry_on_transient_error()
    async def get_job(self, job_id: str) -> Job | None:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow("SELECT * FROM dispatch_jobs WHERE id = $1", job_id)
            return _row_to_job(row) if row else None

    # -- heroes -------------------------------------------------------------

    @retry_on_transient_error()
    async def get_hero(self, hero_id: str) -> Hero | None:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow(f"{_HERO_SELECT} WHERE h.id = $1", hero_id)
            return _row_to_hero(row) if row else None

    async def upsert_hero(self, hero: Hero) -> None:
        """Insert or replace a hero profile (admin/onboarding path)."""
        async with safe_db_conn(autocommit=False) as conn:
            await conn.execute(
                """
                INSERT INTO heroes (
                    id, display_name, phone, photo_url, is_online, is_verified, is_available,
                    current_job_id, service_types, latitude, longitude, location_updated_at,
                    rating, acceptance_rate, avg_response_seconds,
                    total_offered, total_accepted, total_jobs, last_declined_at, vehicle, updated_at
                )
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9::text[], $10, $11, $12,
                        $13, $14, $15, $16, $17, $18, $19, $20::jsonb, now())
                ON CONFLICT (id) DO UPDATE SET
                    display_name = EXCLUDED.display_name,
                    phone = EXCLUDED.phone,
                    photo_url = EXCLUDED.photo_url,
                    is_online = EXCLUDED.is_online,
                    is_verified = EXCLUDED.is_verified,
                    is_available = EXCLUDED.is_available,
                    service_types = EXCLUDED.service_types,
                    latitude = EXCLUDED.latitude,
                    longitude = EXCLUDED.longitude,
                    location_updated_at = EXCLUDED.location_updated_at,
                    rating = EXCLUDED.rating,
                    avg_response_seconds = EXCLUDED.avg_response_seconds,
                    vehicle = EXCLUDED.vehicle,
                    updated_at = now()
                """,
                hero.id,
                hero.display_name,
                hero.phone,
                hero.photo_url,
                hero.is_online,
                hero.is_verified,
                hero.is_available,
                hero.current_job_id,
                sorted(hero.service_types),
                hero.location.latitude if hero.location else None,
                hero.location.longitude if hero.location else None,
                hero.location_updated_at,
                hero.stats.rating,
                hero.stats.acceptance_rate,
                hero.stats.avg_response_seconds,
                hero.stats.total_offered,
                hero.stats.total_accepted,
                hero.stats.total_jobs,
                hero.stats.last_declined_at,
                json.dumps(hero.vehicle),
            )
            if hero.push_token:
                await self._upsert_push_token(conn, hero.id, hero.push_token)

    async def update_hero_presence(
        self,
        hero_id: str,
        *,
        is_online: bool,
        location: GeoPoint | None,
    ) -> Hero | None:
        """Heartbeat: online flag plus (optionally) a fresh server-stamped location."""
        async with safe_db_conn() as conn:
            row = await conn.fetchrow(
                """
                WITH updated AS (
                    UPDATE heroes
                    SET is_online = $2,
                        latitude = COALESCE($3::float8, latitude),
                        longitude = COALESCE($4::float8, longitude),
                        location_updated_at = CASE
                            WHEN $3::float8 IS NULL THEN location_updated_at
                            ELSE now()
                        END,
                        updated_at = now()
                    WHERE id = $1
                    RETURNING *
                )
                SELECT updated.*, u.push_token
                FROM updated
                LEFT JOIN app_users u ON u.id = updated.id
                """,
                hero_id,
                is_online,
                location.latitude if location else None,
                location.longitude if location else None,
            )
            return _row_to_hero(row) if row else None

    @retry_on_transient_error()
    async def list_dispatchable_heroes(self) -> list[Hero]:
        async with safe_db_conn() as conn:
            rows = await conn.fetch(f"{_HERO_SELECT} WHERE h.is_online AND h.is_verified")
            return [_row_to_hero(row) for row in rows]

    # -- push tokens --------------------------------------------------------

    @retry_on_transient_error()
    async def get_push_token(self, user_id: str) -> str | None:
        async with safe_db_conn() as conn:
            return await conn.fetchval("SELECT push_token FROM app_users WHERE id = $1", user_id)

    async def set_push_token(self, user_id: str, token: str | None) -> None:
        async with safe_db_conn() as conn:
            await self._upsert_push_token(conn, user_id, token)

    @staticmethod
    async def _upsert_push_token(conn, user_id: str, token: str | None) -> None:
        await conn.execute(
            """
            INSERT INTO app_users (id, push_token, updated_at)
            VALUES ($1, $2, now())
            ON CONFLICT (id) DO UPDATE SET push_token = EXCLUDED.push_token, updated_at = now()
            """,
            user_id,
            token,
        )

    # -- wave ledger --------------------------------------------------------

    @retry_on_transient_error()
    async def get_wave_record(self, job_id: str) -> WaveRecord | None:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow("SELECT * FROM dispatch_waves WHERE job_id = $1", job_id)
            return _row_to_wave_record(row) if row else None

    async def begin_dispatch(self, job_id: str, total_waves: int) -> Job | None:
        """``pending -> searching`` plus a fresh wave record, in one transaction."""
        async with safe_db_conn(autocommit=False) as conn:
            row = await conn.fetchrow(
                f"""
                UPDATE dispatch_jobs
                SET {_mark_status(JobStatus.SEARCHING.value, extra_stamp="dispatch_started")},
                    current_wave = 0
                WHERE id = $1 AND status = 'pending'
                RETURNING *
                """,
                job_id,
            )
            if row is None:
                return None

            await conn.execute(
                """
                INSERT INTO dispatch_waves (job_id, total_waves, started_at)
                VALUES ($1, $2, now())
                ON CONFLICT (job_id) DO UPDATE SET
                    total_waves = EXCLUDED.total_waves,
                    current_wave = 0,
                    waves = '[]'::jsonb,
                    notified_heroes = '{}',
                    declined_heroes = '{}',
                    status = 'in_progress',
                    result = 'in_progress',
                    accepted_by = NULL,
                    started_at = now(),
                    completed_at = NULL
                """,
                job_id,
                total_waves,
            )
            return _row_to_job(row)

    async def open_wave(self, job_id: str, index: int, band: WaveBand) -> None:
        entry = {
            "index": index,
            "min_radius_m": band.min_radius_m,
            "max_radius_m": band.max_radius_m,
            "notified_count": 0,
        }
        async with safe_db_conn(autocommit=False) as conn:
            await conn.execute(
                """
                UPDATE dispatch_jobs
                SET current_wave = $2, updated_at = now()
                WHERE id = $1 AND status = 'searching'
                """,
                job_id,
                index + 1,
            )
            await conn.execute(
                """
                UPDATE dispatch_waves
                SET current_wave = $2,
                    waves = waves || jsonb_build_array(
                        $3::jsonb || jsonb_build_object('started_at', now())
                    )
                WHERE job_id = $1 AND result = 'in_progress'
                """,
                job_id,
                index + 1,
                json.dumps(entry),
            )

    async def close_wave(self, job_id: str, index: int, notified: list[str]) -> None:
        """Union ``notified`` into the job (always) and the wave record (while open)."""
        async with safe_db_conn(autocommit=False) as conn:
            await conn.execute(
                """
                UPDATE dispatch_jobs
                SET notified_heroes = ARRAY(
                        SELECT DISTINCT unnest(notified_heroes || $2::text[])
                    ),
                    updated_at = now()
                WHERE id = $1
                """,
                job_id,
                notified,
            )
            await conn.execute(
                """
                UPDATE dispatch_waves
                SET notified_heroes = ARRAY(
                        SELECT DISTINCT unnest(notified_heroes || $3::text[])
                    ),
                    waves = COALESCE((
                        SELECT jsonb_agg(
                            CASE WHEN (w->>'index')::int = $2
                                 THEN jsonb_set(w, '{notified_count}', to_jsonb($4::int))
                                 ELSE w
                            END
                            ORDER BY ord
                        )
                        FROM jsonb_array_elements(waves) WITH ORDINALITY AS t(w, ord)
                    ), '[]'::jsonb)
                WHERE job_id = $1 AND result = 'in_progress'
                """,
                job_id,
                index,
                notified,
                len(notified),
            )

    async def finish_no_heroes(self, job_id: str) -> bool:
        """``searching -> no_heroes_available``; closes the open wave record."""
        async with safe_db_conn(autocommit=False) as conn:
            finished = await conn.fetchval(
                f"""
                UPDATE dispatch_jobs
                SET {_mark_status(JobStatus.NO_HEROES_AVAILABLE.value, extra_stamp="dispatch_completed")}
                WHERE id = $1 AND status = 'searching'
                RETURNING id
                """,
                job_id,
            )
            if finished is None:
                return False

            await conn.execute(
                """
                UPDATE dispatch_waves
                SET status = 'completed', result = 'no_heroes', completed_at = now()
                WHERE job_id = $1 AND result = 'in_progress'
                """,
                job_id,
            )
            return True

    # -- maintenance --------------------------------------------------------

    @retry_on_transient_error()
    async def delete_wave_records_before(self, cutoff: datetime) -> int:
        """Delete closed wave records completed before ``cutoff``."""
        async with safe_db_conn() as conn:
            result = await conn.execute(
                """
                DELETE FROM dispatch_waves
                WHERE result <> 'in_progress'
                  AND completed_at < $1
                """,
                cutoff,
            )
            count = _affected(result)
            if count > 0:
                logger.info(f"Cleaned up {count} wave records completed before {cutoff.isoformat()}")
            return count

    @retry_on_transient_error()
    async def clear_stale_locations(self, cutoff: datetime) -> int:
        """Forget hero locations last reported before ``cutoff``."""
        async with safe_db_conn() as conn:
            result = await conn.execute(
                """
                UPDATE heroes
                SET latitude = NULL, longitude = NULL, location_updated_at = NULL, updated_at = now()
                WHERE latitude IS NOT NULL
                  AND (location_updated_at IS NULL OR location_updated_at < $1)
                """,
                cutoff,
            )
            count = _affected(result)
            if count > 0:
                logger.info(f"Cleared {count} stale hero locations")
            return count

    async def expire_stale_searches(self, started_before: datetime) -> list[Job]:
        """
        Safety net: resolve jobs still ``searching`` whose dispatch started
        before ``started_before`` (the dispatching process died) to
        ``no_heroes_available``. Returns the affected jobs.
        """
        async with safe_db_conn(autocommit=False) as conn:
            rows = await conn.fetch(
                f"""
                UPDATE dispatch_jobs
                SET {_mark_status(JobStatus.NO_HEROES_AVAILABLE.value, extra_stamp="dispatch_completed")}
                WHERE status = 'searching'
                  AND COALESCE((timestamps->>'dispatch_started')::timestamptz, updated_at) < $1
                RETURNING *
                """,
                started_before,
            )
            jobs = [_row_to_job(row) for row in rows]
            job_ids = [job.id for job in jobs]
            if job_ids:
                await conn.execute(
                    """
                    UPDATE dispatch_waves
                    SET status = 'completed', result = 'no_heroes', completed_at = now()
                    WHERE job_id = ANY($1::text[]) AND result = 'in_progress'
                    """,
                    job_ids,
                )
                logger.warning(f"Expired {len(job_ids)} stale searching jobs")
                inc_counter("dispatch_stale_expired_total", len(job_ids))
            return jobs


# Global singleton
_dispatch_store: AsyncPostgresDispatchStore | None = None


def get_dispatch_store() -> AsyncPostgresDispatchStore:
    """Get the global PostgreSQL dispatch store."""
    global _dispatch_store
    if _dispatch_store is None:
        _dispatch_store = AsyncPostgresDispatchStore()
    return _dispatch_store
