"""
Best-effort push helpers shared by the wave engine, the arbiter and the
lifecycle watcher. Nothing here raises: a failed push is logged, counted
and reported as ``False``.
"""
from __future__ import annotations

from typing import Any

from herodispatch.core.ports import DispatchStore, NotificationGateway
from herodispatch.infra.logging_config import get_logger
from herodispatch.infra.metrics import DispatchMetrics

logger = get_logger(__name__)


async def send_best_effort(
    gateway: NotificationGateway | None,
    destination: str | None,
    title: str,
    body: str,
    payload: dict[str, Any],
    *,
    kind: str,
) -> bool:
    if gateway is None or not destination:
        return False

    try:
        sent = await gateway.notify(destination, title, body, payload)
    except Exception:
        logger.error(f"Notification gateway raised for kind={kind}", exc_info=True)
        sent = False

    if not sent:
        DispatchMetrics.notification_failed(kind)
    return sent


async def notify_user(
    store: DispatchStore,
    gateway: NotificationGateway | None,
    user_id: str | None,
    title: str,
    body: str,
    payload: dict[str, Any],
    *,
    kind: str = "customer",
) -> bool:
    """Resolve a customer's push token and send; missing token is not an error."""
    if gateway is None or not user_id:
        return False

    try:
        token = await store.get_push_token(user_id)
    except Exception as exc:
        logger.warning(f"Push token lookup failed for user={user_id[:8]}: {exc}")
        DispatchMetrics.notification_failed(kind)
        return False

    if not token:
        logger.debug(f"User {user_id[:8]} has no push token, skipping {kind} notification")
        return False

    return await send_best_effort(gateway, token, title, body, payload, kind=kind)
