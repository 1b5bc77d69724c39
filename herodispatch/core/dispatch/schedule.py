"""
Wave schedule and scoring weights.

Both are runtime configuration: they are loaded from settings (and an
optional JSON file) each time a dispatch starts. Loading never raises:
a malformed or empty schedule becomes an empty ``WaveSchedule``, which the
wave engine resolves to ``no_heroes_available`` straight away.
"""
from __future__ import annotations

import json
import math
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterator

from pydantic import BaseModel, Field, ValidationError as PydanticValidationError, field_validator, model_validator

from herodispatch.core.dispatch.geo import miles_to_meters
from herodispatch.core.errors import ValidationError
from herodispatch.infra.logging_config import get_logger

logger = get_logger(__name__)

# Original production schedule: 2, 3, 5, 7, 9 mile rings, 20 s each
DEFAULT_WAVE_MILES = (2, 3, 5, 7, 9)
DEFAULT_WAVE_TIMEOUT_SECONDS = 20.0
DEFAULT_MAX_HEROES_PER_WAVE = 10


# ---------------------------------------------------------------------------
# Domain values
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class WaveBand:
    min_radius_m: float
    max_radius_m: float
    timeout_seconds: float
    max_heroes_per_wave: int


@dataclass(frozen=True)
class WaveSchedule:
    """Ordered bands, walked near-to-far."""
    bands: tuple[WaveBand, ...] = ()

    def __len__(self) -> int:
        return len(self.bands)

    def __iter__(self) -> Iterator[WaveBand]:
        return iter(self.bands)

    def __getitem__(self, index: int) -> WaveBand:
        return self.bands[index]

    @property
    def total_timeout_seconds(self) -> float:
        return sum(b.timeout_seconds for b in self.bands)


@dataclass(frozen=True)
class ScoringWeights:
    proximity: float = 0.40
    rating: float = 0.25
    acceptance: float = 0.20
    responsiveness: float = 0.15

    def __post_init__(self) -> None:
        values = self.as_tuple()
        if any(v < 0 or math.isnan(v) for v in values):
            raise ValidationError(f"Scoring weights must be non-negative: {values}")
        if not math.isclose(sum(values), 1.0, abs_tol=1e-6):
            raise ValidationError(f"Scoring weights must sum to 1.0, got {sum(values):.6f}")

    def as_tuple(self) -> tuple[float, float, float, float]:
        return (self.proximity, self.rating, self.acceptance, self.responsiveness)

    @classmethod
    def normalized(
        cls,
        proximity: float,
        rating: float,
        acceptance: float,
        responsiveness: float,
    ) -> "ScoringWeights":
        """Scale a weight set so it sums to 1.0; reject negative or all-zero sets."""
        values = (proximity, rating, acceptance, responsiveness)
        if any(v < 0 or math.isnan(v) for v in values):
            raise ValidationError(f"Scoring weights must be non-negative: {values}")
        total = sum(values)
        if total <= 0:
            raise ValidationError("Scoring weights must have a positive sum")
        return cls(*(v / total for v in values))


# ---------------------------------------------------------------------------
# Parsing models
# ---------------------------------------------------------------------------

class WaveBandModel(BaseModel):
    min_radius_m: float = Field(..., ge=0)
    max_radius_m: float = Field(..., ge=0)
    timeout_seconds: float = Field(..., ge=0)
    max_heroes_per_wave: int = Field(default=DEFAULT_MAX_HEROES_PER_WAVE, ge=1)

    @model_validator(mode="after")
    def max_not_below_min(self) -> "WaveBandModel":
        if self.max_radius_m < self.min_radius_m:
            raise ValueError("max_radius_m must be >= min_radius_m")
        return self


class WaveScheduleModel(BaseModel):
    waves: list[WaveBandModel]

    @field_validator("waves")
    @classmethod
    def bands_must_widen(cls, v: list[WaveBandModel]) -> list[WaveBandModel]:
        for prev, band in zip(v, v[1:]):
            if band.min_radius_m < prev.min_radius_m or band.max_radius_m < prev.max_radius_m:
                raise ValueError("wave bands must be non-decreasing in radius")
        return v


class ScoringWeightsModel(BaseModel):
    proximity: float = 0.40
    rating: float = 0.25
    acceptance: float = 0.20
    responsiveness: float = 0.15


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------

def default_schedule() -> WaveSchedule:
    bands = []
    inner = 0.0
    for miles in DEFAULT_WAVE_MILES:
        outer = miles_to_meters(miles)
        bands.append(WaveBand(inner, outer, DEFAULT_WAVE_TIMEOUT_SECONDS, DEFAULT_MAX_HEROES_PER_WAVE))
        inner = outer
    return WaveSchedule(tuple(bands))


def parse_schedule(raw: Any) -> WaveSchedule:
    """
    Build a schedule from a JSON-decoded list of band dicts.

    Raises:
        ValidationError: if the list is malformed or the bands narrow
    """
    try:
        model = WaveScheduleModel(waves=raw)
    except PydanticValidationError as exc:
        raise ValidationError(f"Invalid wave schedule: {exc.errors()[0]['msg']}") from exc

    return WaveSchedule(tuple(
        WaveBand(
            min_radius_m=b.min_radius_m,
            max_radius_m=b.max_radius_m,
            timeout_seconds=b.timeout_seconds,
            max_heroes_per_wave=b.max_heroes_per_wave,
        )
        for b in model.waves
    ))


def _read_config_file(path: str) -> dict[str, Any]:
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ValueError("dispatch config file must contain a JSON object")
    return data


def load_wave_schedule(s) -> WaveSchedule:
    """
    Resolve the schedule for a new dispatch.

    Priority: ``dispatch_config_path`` file, then ``dispatch_waves_json``,
    then the built-in default. Any error yields an empty schedule.
    """
    try:
        raw = None
        if s.dispatch_config_path:
            raw = _read_config_file(s.dispatch_config_path).get("waves")
        if raw is None and s.dispatch_waves_json:
            raw = json.loads(s.dispatch_waves_json)
        if raw is None:
            return default_schedule()
        return parse_schedule(raw)
    except (OSError, ValueError, ValidationError) as exc:
        logger.error(f"Wave schedule could not be loaded, dispatch will find no heroes: {exc}")
        return WaveSchedule()


def load_scoring_weights(s) -> ScoringWeights:
    """Resolve scoring weights; invalid sets fall back to the defaults."""
    raw: dict[str, Any] = {
        "proximity": s.score_weight_proximity,
        "rating": s.score_weight_rating,
        "acceptance": s.score_weight_acceptance,
        "responsiveness": s.score_weight_responsiveness,
    }
    try:
        if s.dispatch_config_path:
            raw.update(_read_config_file(s.dispatch_config_path).get("weights") or {})
        model = ScoringWeightsModel(**raw)
        given = (model.proximity, model.rating, model.acceptance, model.responsiveness)
        weights = ScoringWeights.normalized(*given)
    except (OSError, ValueError, ValidationError) as exc:
        logger.error(f"Scoring weights rejected, using defaults: {exc}")
        return ScoringWeights()

    if not math.isclose(sum(given), 1.0, abs_tol=1e-6):
        logger.warning(f"Scoring weights normalized to {weights.as_tuple()}")
    return weights
