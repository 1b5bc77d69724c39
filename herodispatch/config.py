# herodispatch/config.py
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Literal


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Application
    app_env: Literal["dev", "staging", "prod"] = "dev"
    run_mode: Literal["all", "web", "worker"] = "all"
    log_level: str = "INFO"

    # Store
    # "postgres" - asyncpg-backed store (production)
    # "memory"   - in-process store, state is lost on restart (dev/demo only)
    store_backend: Literal["postgres", "memory"] = "postgres"

    # Database
    database_url: str | None = None
    pghost: str = "localhost"
    pgport: int = 5432
    pguser: str = "postgres"
    pgpassword: str = ""
    pgdatabase: str = "postgres"
    pg_pool_min: int = 2
    pg_pool_max: int = 20
    pg_connect_timeout: int = 5
    pg_statement_timeout_ms: int = 30000
    pg_idle_in_tx_timeout_ms: int = 30000

    # Dispatch waves
    # JSON list of bands, e.g.
    # [{"min_radius_m": 0, "max_radius_m": 3218, "timeout_seconds": 20, "max_heroes_per_wave": 10}]
    # Empty = built-in default schedule (2/3/5/7/9 miles, 20s each).
    dispatch_waves_json: str | None = None
    # Optional JSON file {"waves": [...], "weights": {...}}; re-read at each dispatch start
    dispatch_config_path: str | None = None
    hero_location_ttl_seconds: int = 300  # Heroes with an older last location are skipped
    dispatch_early_wakeup: bool = True    # Cut the wave sleep short as soon as a hero accepts

    # Hero scoring weights (normalized if they do not sum to 1.0)
    score_weight_proximity: float = 0.40
    score_weight_rating: float = 0.25
    score_weight_acceptance: float = 0.20
    score_weight_responsiveness: float = 0.15

    # Maintenance loop (original: cleanup every 5 min / 24 h)
    maintenance_interval_seconds: float = 300.0
    wave_record_ttl_days: int = 30            # Delete wave records of terminal jobs older than N days
    stale_search_grace_seconds: int = 120     # Extra time past the schedule before a search is considered stuck

    # Push notifications
    push_api_url: str | None = None           # HTTP push relay endpoint (FCM-compatible JSON body)
    push_api_key: str | None = None
    push_android_channel_id: str = "otw_jobs"
    push_timeout_seconds: float = 10.0

    # Caller authentication (hero / customer apps)
    caller_token_secret: str | None = None    # HMAC key for "<caller_id>.<signature>" bearer tokens

    # Feature Flags
    enable_request_logging: bool = True
    enable_metrics: bool = True

    @property
    def is_production(self) -> bool:
        return self.app_env == "prod"

    @property
    def is_staging(self) -> bool:
        return self.app_env == "staging"

    @property
    def push_enabled(self) -> bool:
        """Check if the push relay is configured"""
        return bool(self.push_api_url and self.push_api_key)

    @property
    def database_dsn(self) -> str:
        if self.database_url:
            return self.database_url

        return (
            f"postgresql://{self.pguser}:{self.pgpassword}"
            f"@{self.pghost}:{self.pgport}/{self.pgdatabase}"
        )

    def validate_required_for_production(self) -> list[str]:
        """Validate that required settings exist for production"""
        if not self.is_production:
            return []

        required_fields = [
            ("caller_token_secret", self.caller_token_secret),
            ("push_api_url", self.push_api_url),
            ("push_api_key", self.push_api_key),
        ]
        if self.store_backend == "postgres":
            required_fields.append(("database_url or pghost", self.database_url or self.pghost))

        return [name for name, value in required_fields if not value]


def warn_on_risky_config(s: "Settings") -> list[str]:
    warnings: list[str] = []

    if s.store_backend == "memory":
        warnings.append("store_backend=memory: jobs and heroes are lost on restart.")
        if s.is_production:
            warnings.append("prod: store_backend=memory cannot coordinate accepts across replicas.")

    if not s.push_enabled:
        warnings.append("push relay is not configured (hero/customer notifications are only logged).")

    if not s.caller_token_secret:
        if s.app_env == "dev":
            warnings.append("caller_token_secret is not set: X-Caller-Id header is trusted (dev only).")
        else:
            warnings.append("caller_token_secret is not set: every authenticated endpoint will reject callers.")

    weights = (
        s.score_weight_proximity,
        s.score_weight_rating,
        s.score_weight_acceptance,
        s.score_weight_responsiveness,
    )
    if abs(sum(weights) - 1.0) > 1e-6:
        warnings.append(f"score weights sum to {sum(weights):.3f}, they will be normalized.")

    if s.hero_location_ttl_seconds <= 0:
        warnings.append("hero_location_ttl_seconds <= 0: no hero location will ever be fresh.")

    return warnings


def validate_or_warn(s: "Settings") -> None:
    """
    In prod: enforce required settings (hard fail).
    In non-prod: warn only.
    """
    missing = s.validate_required_for_production()

    if missing:
        raise RuntimeError(f"Missing required settings for production: {', '.join(missing)}")

    # Logging is not configured yet at import time.
    for msg in warn_on_risky_config(s):
        print(f"[WARN][config] {msg}")

settings = Settings()
validate_or_warn(settings)
