# herodispatch/transport/schemas.py
from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field, field_validator

from herodispatch.core.domain import Hero, Job, WaveRecord


class LocationIn(BaseModel):
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)


class CreateJobIn(BaseModel):
    service_type: str = Field(min_length=1, max_length=64)
    pickup: LocationIn

    @field_validator("service_type")
    @classmethod
    def normalize_service_type(cls, v: str) -> str:
        v = v.strip().lower().replace(" ", "_")
        if not v:
            raise ValueError("service_type must not be blank")
        return v


class DeclineIn(BaseModel):
    reason: str | None = Field(default=None, max_length=200)


class StatusIn(BaseModel):
    status: str = Field(min_length=1, max_length=32)


class PresenceIn(BaseModel):
    is_online: bool
    location: LocationIn | None = None


class PushTokenIn(BaseModel):
    token: str | None = Field(default=None, max_length=4096)


class StatusChangeOut(BaseModel):
    status: str
    at: datetime
    actor_id: str | None = None


class JobOut(BaseModel):
    id: str
    customer_id: str
    service_type: str
    pickup: LocationIn
    status: str
    hero_id: str | None = None
    hero: dict[str, Any] = Field(default_factory=dict)
    current_wave: int = 0
    status_history: list[StatusChangeOut] = Field(default_factory=list)
    timestamps: dict[str, datetime] = Field(default_factory=dict)
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_job(cls, job: Job) -> "JobOut":
        # notified/declined sets are dispatch internals and stay server-side
        return cls(
            id=job.id,
            customer_id=job.customer_id,
            service_type=job.service_type,
            pickup=LocationIn(latitude=job.pickup.latitude, longitude=job.pickup.longitude),
            status=job.status.value,
            hero_id=job.hero_id,
            hero=job.hero_snapshot,
            current_wave=job.current_wave,
            status_history=[
                StatusChangeOut(status=c.status, at=c.at, actor_id=c.actor_id)
                for c in job.status_history
            ],
            timestamps=job.timestamps,
            created_at=job.created_at,
            updated_at=job.updated_at,
        )


class WaveEntryOut(BaseModel):
    index: int
    min_radius_m: float
    max_radius_m: float
    started_at: datetime
    notified_count: int


class WaveRecordOut(BaseModel):
    job_id: str
    total_waves: int
    current_wave: int
    waves: list[WaveEntryOut]
    notified_count: int
    declined_count: int
    status: str
    result: str
    accepted_by: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @classmethod
    def from_record(cls, record: WaveRecord) -> "WaveRecordOut":
        return cls(
            job_id=record.job_id,
            total_waves=record.total_waves,
            current_wave=record.current_wave,
            waves=[WaveEntryOut(**entry.to_dict()) for entry in record.waves],
            notified_count=len(record.notified_heroes),
            declined_count=len(record.declined_heroes),
            status=record.status.value,
            result=record.result.value,
            accepted_by=record.accepted_by,
            started_at=record.started_at,
            completed_at=record.completed_at,
        )


class AssignmentOut(BaseModel):
    job_id: str
    hero_id: str
    assigned_at: datetime


class DeclineOut(BaseModel):
    job_id: str
    hero_id: str
    recorded: bool


class PresenceOut(BaseModel):
    hero_id: str
    is_online: bool
    dispatchable: bool
    location_updated_at: datetime | None = None

    @classmethod
    def from_hero(cls, hero: Hero) -> "PresenceOut":
        return cls(
            hero_id=hero.id,
            is_online=hero.is_online,
            dispatchable=hero.dispatchable,
            location_updated_at=hero.location_updated_at,
        )
