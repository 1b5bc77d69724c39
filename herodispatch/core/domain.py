from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional


# ============================================================================
# STATUS ENUMS
# ============================================================================

class JobStatus(str, Enum):
    PENDING = "pending"
    SEARCHING = "searching"
    ASSIGNED = "assigned"
    EN_ROUTE = "en_route"
    ARRIVED = "arrived"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    NO_HEROES_AVAILABLE = "no_heroes_available"


# A job in one of these states has a bound hero.
ASSIGNED_OR_LATER = frozenset({
    JobStatus.ASSIGNED,
    JobStatus.EN_ROUTE,
    JobStatus.ARRIVED,
    JobStatus.IN_PROGRESS,
    JobStatus.COMPLETED,
})

TERMINAL_STATUSES = frozenset({
    JobStatus.COMPLETED,
    JobStatus.CANCELLED,
    JobStatus.NO_HEROES_AVAILABLE,
})


class WaveResult(str, Enum):
    IN_PROGRESS = "in_progress"
    ACCEPTED = "accepted"
    NO_HEROES = "no_heroes"
    CANCELLED = "cancelled"


class WaveRecordStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


# ============================================================================
# VALUE OBJECTS
# ============================================================================

@dataclass(frozen=True)
class GeoPoint:
    """Latitude/longitude pair in decimal degrees."""
    latitude: float
    longitude: float


@dataclass
class StatusChange:
    """One entry of a job's status history."""
    status: str
    at: datetime
    actor_id: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {"status": self.status, "at": self.at.isoformat(), "actor_id": self.actor_id}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StatusChange":
        at = data["at"]
        if isinstance(at, str):
            at = datetime.fromisoformat(at)
        return cls(status=data["status"], at=at, actor_id=data.get("actor_id"))


# ============================================================================
# JOB
# ============================================================================

@dataclass
class Job:
    """
    A customer's service request.

    ``hero_id`` is set only by the assignment arbiter and is non-null for
    every status in ``ASSIGNED_OR_LATER``. A cancelled job keeps the hero
    it had (if any) for history; the hero's own binding is released.
    """
    id: str
    customer_id: str
    service_type: str
    pickup: GeoPoint
    status: JobStatus = JobStatus.PENDING
    hero_id: Optional[str] = None
    hero_snapshot: dict[str, Any] = field(default_factory=dict)
    notified_heroes: set[str] = field(default_factory=set)
    declined_heroes: set[str] = field(default_factory=set)
    current_wave: int = 0
    status_history: list[StatusChange] = field(default_factory=list)
    # Keyed by status value ("assigned", "en_route", ...) plus dispatch_started / dispatch_completed
    timestamps: dict[str, datetime] = field(default_factory=dict)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def assigned_at(self) -> Optional[datetime]:
        return self.timestamps.get(JobStatus.ASSIGNED.value)

    @property
    def exclusion_set(self) -> set[str]:
        """Heroes that must not be offered this job again."""
        return self.notified_heroes | self.declined_heroes

    def mark(self, status: JobStatus, at: datetime, actor_id: str | None = None) -> None:
        """Move to ``status``, stamping the timestamp and appending history."""
        self.status = status
        self.timestamps[status.value] = at
        self.status_history.append(StatusChange(status=status.value, at=at, actor_id=actor_id))
        self.updated_at = at


# ============================================================================
# HERO
# ============================================================================

@dataclass
class HeroStats:
    """Historical performance used for ranking."""
    rating: Optional[float] = None                 # 1..5
    acceptance_rate: Optional[float] = None        # 0..1
    avg_response_seconds: Optional[float] = None
    total_offered: int = 0
    total_accepted: int = 0
    total_jobs: int = 0
    last_declined_at: Optional[datetime] = None

    def record_offer(self, accepted: bool) -> None:
        """Count one offer and refresh the rolling acceptance rate."""
        self.total_offered += 1
        if accepted:
            self.total_accepted += 1
        self.acceptance_rate = self.total_accepted / self.total_offered


@dataclass
class Hero:
    """A mobile field worker."""
    id: str
    display_name: str = ""
    phone: Optional[str] = None
    photo_url: Optional[str] = None
    push_token: Optional[str] = None
    is_online: bool = False
    is_verified: bool = False
    is_available: bool = True
    current_job_id: Optional[str] = None
    service_types: frozenset[str] = frozenset()
    location: Optional[GeoPoint] = None
    location_updated_at: Optional[datetime] = None
    stats: HeroStats = field(default_factory=HeroStats)
    vehicle: dict[str, Any] = field(default_factory=dict)
    updated_at: Optional[datetime] = None

    @property
    def dispatchable(self) -> bool:
        """Online, verified, flagged available and not bound to a job."""
        return self.is_online and self.is_verified and self.is_available and self.current_job_id is None

    def supports(self, service_type: str) -> bool:
        """An empty service-type set means the hero takes any job."""
        return not self.service_types or service_type in self.service_types

    def snapshot(self) -> dict[str, Any]:
        """Public profile copied onto the job when the hero is assigned."""
        return {
            "id": self.id,
            "name": self.display_name,
            "phone": self.phone,
            "photo_url": self.photo_url,
            "vehicle_make": self.vehicle.get("make"),
            "vehicle_model": self.vehicle.get("model"),
            "vehicle_color": self.vehicle.get("color"),
            "license_plate": self.vehicle.get("license_plate"),
        }


# ============================================================================
# WAVE LEDGER
# ============================================================================

@dataclass
class WaveEntry:
    """Audit entry for one executed wave."""
    index: int
    min_radius_m: float
    max_radius_m: float
    started_at: datetime
    notified_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "index": self.index,
            "min_radius_m": self.min_radius_m,
            "max_radius_m": self.max_radius_m,
            "started_at": self.started_at.isoformat(),
            "notified_count": self.notified_count,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "WaveEntry":
        started_at = data["started_at"]
        if isinstance(started_at, str):
            started_at = datetime.fromisoformat(started_at)
        return cls(
            index=int(data["index"]),
            min_radius_m=float(data["min_radius_m"]),
            max_radius_m=float(data["max_radius_m"]),
            started_at=started_at,
            notified_count=int(data.get("notified_count", 0)),
        )


@dataclass
class WaveRecord:
    """
    Per-job dispatch ledger.

    Written wave-by-wave by the dispatch engine; the terminal ``result`` is
    set exactly once (by the arbiter on accept, by the engine on exhaustion,
    by the lifecycle watcher on cancellation). Nothing mutates it afterwards.
    """
    job_id: str
    total_waves: int
    current_wave: int = 0
    waves: list[WaveEntry] = field(default_factory=list)
    notified_heroes: set[str] = field(default_factory=set)
    declined_heroes: set[str] = field(default_factory=set)
    status: WaveRecordStatus = WaveRecordStatus.IN_PROGRESS
    result: WaveResult = WaveResult.IN_PROGRESS
    accepted_by: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.result != WaveResult.IN_PROGRESS

    def close(self, result: WaveResult, at: datetime, accepted_by: str | None = None) -> None:
        self.result = result
        self.status = WaveRecordStatus.COMPLETED
        self.completed_at = at
        if accepted_by is not None:
            self.accepted_by = accepted_by
