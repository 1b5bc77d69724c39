from __future__ import annotations
from datetime import datetime
from typing import Any, AsyncContextManager, Optional, Protocol

from herodispatch.core.dispatch.schedule import WaveBand
from herodispatch.core.domain import GeoPoint, Hero, Job, WaveRecord


# ============================================================================
# PERSISTENT STORE
# ============================================================================

class DispatchTransaction(Protocol):
    """
    Atomic multi-entity read-modify-write scope.

    Reads lock the row for the rest of the transaction. Writes are applied
    only if the ``async with`` block exits without an exception. Callers
    read the job before the hero and the hero before the wave record.
    """

    async def now(self) -> datetime: ...
    async def get_job(self, job_id: str) -> Optional[Job]: ...
    async def get_hero(self, hero_id: str) -> Optional[Hero]: ...
    async def get_wave_record(self, job_id: str) -> Optional[WaveRecord]: ...
    async def save_job(self, job: Job) -> None: ...
    async def save_hero(self, hero: Hero) -> None: ...
    async def save_wave_record(self, record: WaveRecord) -> None: ...


class DispatchStore(Protocol):
    def transaction(self) -> AsyncContextManager[DispatchTransaction]: ...

    async def create_job(self, job: Job) -> Job: ...
    async def get_job(self, job_id: str) -> Optional[Job]: ...
    async def get_hero(self, hero_id: str) -> Optional[Hero]: ...
    async def upsert_hero(self, hero: Hero) -> None: ...
    async def update_hero_presence(
        self, hero_id: str, *, is_online: bool, location: GeoPoint | None,
    ) -> Optional[Hero]: ...
    async def get_wave_record(self, job_id: str) -> Optional[WaveRecord]: ...
    async def get_push_token(self, user_id: str) -> Optional[str]: ...
    async def set_push_token(self, user_id: str, token: Optional[str]) -> None: ...

    async def list_dispatchable_heroes(self) -> list[Hero]:
        """Heroes flagged online and verified (further filtering is the caller's job)."""
        ...

    async def begin_dispatch(self, job_id: str, total_waves: int) -> Job | None:
        """
        ``pending -> searching`` and create the wave record, atomically.

        Returns the job as it is now (``searching``). None => job missing or
        already past ``pending`` (dispatch must not run).
        """
        ...

    async def open_wave(self, job_id: str, index: int, band: WaveBand) -> None:
        """Advance ``current_wave`` and log the band with a server start time."""
        ...

    async def close_wave(self, job_id: str, index: int, notified: list[str]) -> None:
        """Set-union ``notified`` into the job and the (non-terminal) wave record."""
        ...

    async def finish_no_heroes(self, job_id: str) -> bool:
        """``searching -> no_heroes_available``; False if the job had already moved on."""
        ...

    async def delete_wave_records_before(self, cutoff: datetime) -> int: ...
    async def clear_stale_locations(self, cutoff: datetime) -> int: ...
    async def expire_stale_searches(self, started_before: datetime) -> list[Job]:
        """Resolve searches whose task is gone to ``no_heroes_available``; returns those jobs."""
        ...


# ============================================================================
# OUTBOUND COLLABORATORS
# ============================================================================

class NotificationGateway(Protocol):
    async def notify(
        self,
        destination: str,
        title: str,
        body: str,
        payload: dict[str, Any],
    ) -> bool:
        """
        Best-effort push to a device token.

        True  => handed to the provider
        False => dropped (failure is logged, never raised, never retried)
        """
        ...


class PayoutRecorder(Protocol):
    async def credit_job(self, job: Job) -> None: ...
