# herodispatch/transport/http_app.py
"""
HTTP application for the hero and customer apps.

Security layers:
1. Public: /health and /ready
2. Caller-authenticated: job, dispatch and presence endpoints
3. Internal: /metrics (private networks only in production)
4. No information leakage in production
"""
from __future__ import annotations

import uuid
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from herodispatch.config import settings
from herodispatch.core.dispatch.arbiter import AssignmentArbiter
from herodispatch.core.dispatch.lifecycle import JobLifecycleWatcher
from herodispatch.core.domain import GeoPoint, Job
from herodispatch.core.errors import DispatchError, NotFoundError, PermissionDeniedError
from herodispatch.core.ports import DispatchStore
from herodispatch.infra.db_async import close_pool, init_pool
from herodispatch.infra.db_resilience_async import safe_db_conn
from herodispatch.infra.dispatch_runner import DispatchRunner
from herodispatch.infra.http_client import close_all_sessions
from herodispatch.infra.logging_config import get_logger, mask_coordinates, setup_logging
from herodispatch.infra.memory_store import InMemoryDispatchStore
from herodispatch.infra.metrics import get_metrics_collector
from herodispatch.infra.push_gateway import get_notification_gateway
from herodispatch.transport.middleware import (
    ErrorHandlingMiddleware,
    RequestIDMiddleware,
    RequestLoggingMiddleware,
)
from herodispatch.transport.schemas import (
    AssignmentOut,
    CreateJobIn,
    DeclineIn,
    DeclineOut,
    JobOut,
    PresenceIn,
    PresenceOut,
    PushTokenIn,
    StatusIn,
    WaveRecordOut,
)
from herodispatch.transport.security import (
    check_configured_secrets,
    require_caller,
    require_metrics_access,
)

# Initialize logging first
setup_logging(
    level=settings.log_level,
    use_json=settings.is_production
)

logger = get_logger(__name__)


# ============================================================================
# DEPENDENCIES
# ============================================================================

def get_store(request: Request) -> DispatchStore:
    return request.app.state.store


def get_runner(request: Request) -> DispatchRunner:
    return request.app.state.runner


def get_arbiter(request: Request) -> AssignmentArbiter:
    return request.app.state.arbiter


def get_watcher(request: Request) -> JobLifecycleWatcher:
    return request.app.state.watcher


async def _load_job_for(store: DispatchStore, job_id: str, caller_id: str) -> Job:
    """Job visible to ``caller_id``: its customer or its bound hero."""
    job = await store.get_job(job_id)
    if job is None:
        raise NotFoundError(f"Job {job_id} not found")
    if caller_id not in (job.customer_id, job.hero_id):
        raise PermissionDeniedError("Not a participant of this job")
    return job


# ============================================================================
# LIFESPAN
# ============================================================================

def _build_store() -> DispatchStore:
    if settings.store_backend == "memory":
        logger.warning("Using in-memory dispatch store, state is lost on restart")
        return InMemoryDispatchStore()

    from herodispatch.infra.pg_dispatch_store_async import get_dispatch_store
    return get_dispatch_store()


@asynccontextmanager
async def lifespan(fastapi_app: FastAPI):
    """Application lifecycle: startup and shutdown"""

    # STARTUP
    logger.info(
        f"Starting application: env={settings.app_env}, run_mode={settings.run_mode}, "
        f"store={settings.store_backend}"
    )

    if settings.is_production:
        missing = settings.validate_required_for_production()
        if missing:
            logger.critical(f"Missing required production settings: {missing}")
            raise RuntimeError(f"Missing production config: {missing}")

        if settings.log_level.upper() == "DEBUG":
            logger.critical("LOG_LEVEL=DEBUG is not allowed in production")
            raise RuntimeError("LOG_LEVEL=DEBUG in production")

    # SECURITY: warn about a weak caller token secret
    check_configured_secrets()

    if settings.store_backend == "postgres":
        await init_pool()
        logger.info("Database pool initialized")

        # Does NOT run migrations: python -m herodispatch.infra.migrate
        from herodispatch.infra.migrations_async import validate_schema
        try:
            await validate_schema()
        except Exception:
            logger.critical(
                "Schema validation failed. Run migrations first: python -m herodispatch.infra.migrate",
                exc_info=True
            )
            raise

    store = _build_store()
    gateway = get_notification_gateway()
    runner = DispatchRunner(store, gateway)

    fastapi_app.state.store = store
    fastapi_app.state.runner = runner
    fastapi_app.state.arbiter = AssignmentArbiter(store, gateway, on_assigned=runner.signal)
    fastapi_app.state.watcher = JobLifecycleWatcher(store, gateway, on_closed=runner.signal)

    # Maintenance only in "all" or "worker" mode so web replicas don't repeat it
    await runner.start(maintenance=settings.run_mode in ("all", "worker"))

    logger.info("Application startup complete")

    yield

    # SHUTDOWN
    logger.info("Shutting down application")

    await runner.stop()
    await close_all_sessions()

    if settings.store_backend == "postgres":
        await close_pool()
    logger.info("Application shutdown complete")


# ============================================================================
# CREATE APP
# ============================================================================

app = FastAPI(
    title="Hero Dispatch",
    description="Wave-based dispatch of service jobs to nearby heroes",
    version="1.0.0",
    lifespan=lifespan,
    docs_url=None if settings.is_production else "/docs",
    redoc_url=None if settings.is_production else "/redoc",
    openapi_url=None if settings.is_production else "/openapi.json",
)

if settings.is_production or settings.is_staging:
    # Mobile apps call server-to-server style; no browser origins allowed
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[],
        allow_credentials=False,
        allow_methods=["GET", "POST", "PUT"],
        allow_headers=["Content-Type", "Authorization"],
    )
else:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

app.add_middleware(ErrorHandlingMiddleware)
app.add_middleware(RequestLoggingMiddleware, enabled=settings.enable_request_logging)
app.add_middleware(RequestIDMiddleware)


# ============================================================================
# EXCEPTION HANDLERS
# ============================================================================

@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    """Handle HTTP exceptions with appropriate logging"""
    if exc.status_code >= 500:
        logger.error(f"Server error: {exc.detail}", extra={"status_code": exc.status_code})

    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.detail},
        headers=exc.headers,
    )


@app.exception_handler(DispatchError)
async def dispatch_error_handler(request: Request, exc: DispatchError):
    """Typed domain errors carry their own status code."""
    if exc.status_code >= 500:
        logger.error(f"Dispatch error: {exc.detail}", extra={"status_code": exc.status_code})

    content = {"error": exc.detail}
    if exc.reason:
        content["reason"] = exc.reason
    return JSONResponse(status_code=exc.status_code, content=content)


# ============================================================================
# PUBLIC ENDPOINTS
# ============================================================================

@app.get("/health")
def health():
    """Liveness probe. Returns minimal information."""
    return {"status": "healthy"}


@app.get("/ready")
async def readiness():
    """Readiness probe: the store answers."""
    if settings.store_backend == "postgres":
        try:
            async with safe_db_conn() as conn:
                await conn.fetchval("SELECT 1")
        except Exception as exc:
            logger.warning(f"Readiness check failed: {exc}")
            return JSONResponse(status_code=503, content={"status": "unhealthy"})

    return {"status": "healthy"}


@app.get("/metrics", dependencies=[Depends(require_metrics_access)])
def metrics():
    """Operational counters and histograms. Internal networks only in prod."""
    return get_metrics_collector().get_metrics()


# ============================================================================
# JOBS
# ============================================================================

@app.post("/jobs", status_code=201, response_model=JobOut)
async def create_job(
    payload: CreateJobIn,
    caller_id: str = Depends(require_caller),
    store: DispatchStore = Depends(get_store),
    runner: DispatchRunner = Depends(get_runner),
):
    job = Job(
        id=uuid.uuid4().hex,
        customer_id=caller_id,
        service_type=payload.service_type,
        pickup=GeoPoint(payload.pickup.latitude, payload.pickup.longitude),
    )
    created = await store.create_job(job)
    runner.trigger(created.id)
    logger.info("Job created", extra={"job_id": created.id})
    return JobOut.from_job(created)


@app.get("/jobs/{job_id}", response_model=JobOut)
async def get_job(
    job_id: str,
    caller_id: str = Depends(require_caller),
    store: DispatchStore = Depends(get_store),
):
    return JobOut.from_job(await _load_job_for(store, job_id, caller_id))


@app.get("/jobs/{job_id}/dispatch", response_model=WaveRecordOut)
async def get_dispatch(
    job_id: str,
    caller_id: str = Depends(require_caller),
    store: DispatchStore = Depends(get_store),
):
    await _load_job_for(store, job_id, caller_id)
    record = await store.get_wave_record(job_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Dispatch not started")
    return WaveRecordOut.from_record(record)


@app.post("/jobs/{job_id}/accept", response_model=AssignmentOut)
async def accept_job(
    job_id: str,
    caller_id: str = Depends(require_caller),
    arbiter: AssignmentArbiter = Depends(get_arbiter),
):
    assignment = await arbiter.accept(job_id, caller_id)
    return AssignmentOut(
        job_id=assignment.job_id,
        hero_id=assignment.hero_id,
        assigned_at=assignment.assigned_at,
    )


@app.post("/jobs/{job_id}/decline", response_model=DeclineOut)
async def decline_job(
    job_id: str,
    payload: DeclineIn | None = None,
    caller_id: str = Depends(require_caller),
    arbiter: AssignmentArbiter = Depends(get_arbiter),
):
    receipt = await arbiter.decline(job_id, caller_id, payload.reason if payload else None)
    return DeclineOut(job_id=receipt.job_id, hero_id=receipt.hero_id, recorded=receipt.recorded)


@app.post("/jobs/{job_id}/status", response_model=JobOut)
async def update_job_status(
    job_id: str,
    payload: StatusIn,
    caller_id: str = Depends(require_caller),
    watcher: JobLifecycleWatcher = Depends(get_watcher),
):
    job = await watcher.apply_transition(job_id, payload.status, actor_id=caller_id)
    return JobOut.from_job(job)


# ============================================================================
# HEROES / USERS
# ============================================================================

@app.put("/heroes/me/presence", response_model=PresenceOut)
async def update_presence(
    payload: PresenceIn,
    caller_id: str = Depends(require_caller),
    store: DispatchStore = Depends(get_store),
):
    """Hero heartbeat: online flag plus an optional fresh location."""
    location = None
    if payload.location is not None:
        location = GeoPoint(payload.location.latitude, payload.location.longitude)
        logger.debug(
            f"Presence update hero={caller_id} online={payload.is_online} "
            f"at={mask_coordinates(location.latitude, location.longitude)}"
        )

    hero = await store.update_hero_presence(caller_id, is_online=payload.is_online, location=location)
    if hero is None:
        raise HTTPException(status_code=404, detail="Hero not found")
    return PresenceOut.from_hero(hero)


@app.put("/users/me/push-token", status_code=204)
async def update_push_token(
    payload: PushTokenIn,
    caller_id: str = Depends(require_caller),
    store: DispatchStore = Depends(get_store),
):
    """Register (or clear, with a null token) the caller's device token."""
    token = payload.token.strip() if payload.token else None
    await store.set_push_token(caller_id, token or None)


# ============================================================================
# CATCH-ALL (Return 404 for unknown routes)
# ============================================================================

@app.api_route("/{path:path}", methods=["GET", "POST", "PUT", "DELETE", "PATCH"])
async def catch_all(path: str):
    """Generic 404 without revealing information."""
    logger.warning(f"404 - Unknown route accessed: {path}")
    raise HTTPException(status_code=404, detail="Not found")


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "herodispatch.transport.http_app:app",
        host="0.0.0.0",
        port=8099,
        reload=not settings.is_production,
        log_level=settings.log_level.lower(),
        access_log=not settings.is_production,
        server_header=False,
        date_header=False,
    )
