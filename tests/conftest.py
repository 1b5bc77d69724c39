# tests/conftest.py
"""Pytest configuration and fixtures"""
import math
import os
import sys
from datetime import datetime, timezone
from pathlib import Path

import pytest

# Add project root to Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

# Settings are read at import time; tests never touch a real database
os.environ.setdefault("STORE_BACKEND", "memory")
os.environ.setdefault("APP_ENV", "dev")

from herodispatch.core.dispatch.geo import EARTH_RADIUS_M  # noqa: E402
from herodispatch.core.dispatch.schedule import WaveBand, WaveSchedule  # noqa: E402
from herodispatch.core.domain import GeoPoint, Hero, HeroStats, Job  # noqa: E402
from herodispatch.infra.memory_store import InMemoryDispatchStore  # noqa: E402
from herodispatch.infra.metrics import get_metrics_collector  # noqa: E402

ORIGIN = GeoPoint(0.0, 0.0)


def point_north(distance_m: float, origin: GeoPoint = ORIGIN) -> GeoPoint:
    """Point ``distance_m`` due north of ``origin`` (exact for haversine)."""
    return GeoPoint(origin.latitude + math.degrees(distance_m / EARTH_RADIUS_M), origin.longitude)


def make_hero(
    hero_id: str,
    *,
    distance_m: float | None = 1000.0,
    push_token: str | None = None,
    is_online: bool = True,
    is_verified: bool = True,
    current_job_id: str | None = None,
    service_types: frozenset[str] = frozenset(),
    stats: HeroStats | None = None,
    location_updated_at: datetime | None = None,
) -> Hero:
    location = point_north(distance_m) if distance_m is not None else None
    return Hero(
        id=hero_id,
        display_name=f"Hero {hero_id}",
        phone="+15550000000",
        push_token=push_token if push_token is not None else f"token-{hero_id}",
        is_online=is_online,
        is_verified=is_verified,
        current_job_id=current_job_id,
        service_types=service_types,
        location=location,
        location_updated_at=(
            location_updated_at
            if location_updated_at is not None
            else (datetime.now(timezone.utc) if location else None)
        ),
        stats=stats or HeroStats(),
        vehicle={"make": "Ford", "model": "Transit", "color": "white", "license_plate": "HERO-1"},
    )


def make_job(job_id: str = "job-1", *, customer_id: str = "cust-1", service_type: str = "jump_start") -> Job:
    return Job(id=job_id, customer_id=customer_id, service_type=service_type, pickup=ORIGIN)


def two_band_schedule(timeout: float = 20.0, limit: int = 10) -> WaveSchedule:
    return WaveSchedule((
        WaveBand(0.0, 3218.0, timeout, limit),
        WaveBand(3218.0, 8047.0, timeout, limit),
    ))


class RecordingGateway:
    """Notification gateway double: records every push, optionally failing."""

    def __init__(self, fail_for: set[str] | None = None, raise_for: set[str] | None = None):
        self.sent: list[dict] = []
        self._fail_for = fail_for or set()
        self._raise_for = raise_for or set()

    async def notify(self, destination, title, body, payload):
        if destination in self._raise_for:
            raise RuntimeError("gateway down")
        self.sent.append({"to": destination, "title": title, "body": body, "payload": dict(payload)})
        return destination not in self._fail_for

    def to(self, destination: str) -> list[dict]:
        return [m for m in self.sent if m["to"] == destination]

    def of_type(self, kind: str) -> list[dict]:
        return [m for m in self.sent if m["payload"].get("type") == kind]


@pytest.fixture(autouse=True)
def reset_metrics():
    get_metrics_collector().reset()
    yield


@pytest.fixture
def store():
    return InMemoryDispatchStore()


@pytest.fixture
def gateway():
    return RecordingGateway()
