# herodispatch/infra/db_resilience_async.py
"""
Async database resilience utilities.

Retry with exponential backoff for transient asyncpg failures, and the
conversion of whatever is still failing afterwards into ``TransientIOError``
so the dispatch layer only ever sees the typed error.
"""
from __future__ import annotations
import asyncio
from typing import TypeVar, Callable
from contextlib import asynccontextmanager
from functools import wraps

import asyncpg
from herodispatch.core.errors import DispatchError, TransientIOError
from herodispatch.infra.db_async import db_conn
from herodispatch.infra.logging_config import get_logger

logger = get_logger(__name__)

T = TypeVar('T')

ACQUIRE_RETRIES = 3


def is_transient_error(exc: BaseException) -> bool:
    """
    Check if database error is transient (should retry).

    Transient errors:
    - Connection errors
    - Server closed connection
    - Too many connections
    - Deadlock / serialization failure
    """
    if isinstance(exc, DispatchError):
        return isinstance(exc, TransientIOError)

    if isinstance(exc, (
        asyncpg.PostgresConnectionError,
        asyncpg.TooManyConnectionsError,
        asyncpg.DeadlockDetectedError,
        asyncpg.SerializationError,
        asyncpg.InterfaceError,
        ConnectionError,
        asyncio.TimeoutError,
    )):
        return True

    error_message = str(exc).lower()
    transient_patterns = [
        "connection",
        "timeout",
        "closed",
        "network",
        "deadlock",
        "too many connections",
        "server closed",
        "connection reset",
    ]
    return any(pattern in error_message for pattern in transient_patterns)


def _as_transient(exc: BaseException, operation: str) -> TransientIOError:
    if isinstance(exc, TransientIOError):
        return exc
    err = TransientIOError(f"Database unavailable during {operation}")
    err.__cause__ = exc
    return err


def retry_on_transient_error(
    max_retries: int = 3,
    initial_delay: float = 0.1,
    backoff_factor: float = 2.0,
    max_delay: float = 5.0
):
    """
    Decorator to retry an async store call on transient database errors.

    Only for idempotent calls (reads, cleanups); a compare-and-set whose
    acknowledgement was lost must not be replayed. After the last attempt
    the error surfaces as ``TransientIOError``.

    Example:
        @retry_on_transient_error(max_retries=3)
        async def get_job(self, job_id: str):
            async with safe_db_conn() as conn:
                return await conn.fetchrow("SELECT * FROM dispatch_jobs WHERE id = $1", job_id)
    """
    def decorator(func: Callable) -> Callable:
        @wraps(func)
        async def wrapper(*args, **kwargs):
            delay = initial_delay

            for attempt in range(max_retries + 1):
                try:
                    return await func(*args, **kwargs)
                except Exception as exc:
                    if not is_transient_error(exc):
                        raise

                    if attempt >= max_retries:
                        logger.error(
                            f"Max retries ({max_retries}) exceeded in {func.__name__}: {exc}",
                        )
                        raise _as_transient(exc, func.__name__) from exc

                    logger.warning(
                        f"Transient error in {func.__name__} (attempt {attempt + 1}/{max_retries}): {exc}. "
                        f"Retrying in {delay:.2f}s..."
                    )

                    await asyncio.sleep(delay)
                    delay = min(delay * backoff_factor, max_delay)

        return wrapper
    return decorator


@asynccontextmanager
async def safe_db_conn(autocommit: bool = True):
    """
    Database connection with retry on a transient acquire failure.

    Only acquiring the connection (and starting the transaction) is retried;
    the body runs once. A transient failure inside the body or at commit is
    re-raised as ``TransientIOError``; with ``autocommit=False`` the
    transaction has been rolled back by then.

    Usage:
        async with safe_db_conn(autocommit=False) as conn:
            ...
    """
    delay = 0.1

    for attempt in range(ACQUIRE_RETRIES + 1):
        cm = db_conn(autocommit=autocommit)
        try:
            conn = await cm.__aenter__()
            break
        except Exception as exc:
            if not is_transient_error(exc):
                raise

            if attempt >= ACQUIRE_RETRIES:
                logger.error(f"Max retries ({ACQUIRE_RETRIES}) exceeded getting connection: {exc}")
                raise _as_transient(exc, "connect") from exc

            logger.warning(
                f"Transient error getting connection (attempt {attempt + 1}/{ACQUIRE_RETRIES}): {exc}. "
                f"Retrying in {delay:.2f}s..."
            )

            await asyncio.sleep(delay)
            delay = min(delay * 2.0, 5.0)

    try:
        yield conn
    except BaseException as exc:
        try:
            await cm.__aexit__(type(exc), exc, exc.__traceback__)
        except Exception as exit_exc:
            if exit_exc is not exc and is_transient_error(exit_exc):
                raise _as_transient(exit_exc, "rollback") from exit_exc
            if exit_exc is not exc:
                raise
        if isinstance(exc, Exception) and not isinstance(exc, DispatchError) and is_transient_error(exc):
            raise _as_transient(exc, "query") from exc
        raise
    else:
        try:
            await cm.__aexit__(None, None, None)
        except Exception as exc:
            if is_transient_error(exc):
                raise _as_transient(exc, "commit") from exc
            raise
