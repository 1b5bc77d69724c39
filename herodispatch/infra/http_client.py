# herodispatch/infra/http_client.py
"""
Outbound HTTP session.

The push relay is the service's only outbound HTTP dependency. Its
aiohttp session is opened on first use and shared by every hero offer and
customer update, so one wave of offers reuses one connection pool.

Call ``close_all_sessions()`` once from the application lifespan; the next
``get_push_session()`` after that opens a fresh session.
"""
from __future__ import annotations

import aiohttp

from herodispatch.config import settings
from herodispatch.infra.logging_config import get_logger

logger = get_logger(__name__)

PUSH_CONNECT_TIMEOUT_SECONDS = 5
PUSH_POOL_LIMIT = 20

_push_session: aiohttp.ClientSession | None = None


def get_push_session() -> aiohttp.ClientSession:
    """Session for push relay calls (hero offers, customer updates)."""
    global _push_session
    if _push_session is None or _push_session.closed:
        _push_session = aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(
                total=settings.push_timeout_seconds,
                connect=PUSH_CONNECT_TIMEOUT_SECONDS,
            ),
            connector=aiohttp.TCPConnector(limit=PUSH_POOL_LIMIT, keepalive_timeout=30),
        )
        logger.debug(
            f"Push HTTP session opened (limit={PUSH_POOL_LIMIT}, "
            f"timeout={settings.push_timeout_seconds}s)"
        )
    return _push_session


async def close_all_sessions() -> None:
    """Close the push session if one is open."""
    global _push_session
    session, _push_session = _push_session, None
    if session is not None and not session.closed:
        await session.close()
        logger.debug("Push HTTP session closed")
