# herodispatch/infra/push_gateway.py
"""
Push notification gateways.

- ``PushGateway``    – POSTs an FCM-style message to the configured push relay
- ``LoggingGateway`` – logs the message instead of sending it (dev / no relay)

Both satisfy ``NotificationGateway``: a send returns True/False and never
raises. There is no retry; an offer that did not arrive is covered by the
next wave.

Usage:
    gateway = get_notification_gateway()
    await gateway.notify(token, title, body, {"type": "new_job", "job_id": job_id})
"""
from __future__ import annotations

import abc
import asyncio
from typing import Any

import aiohttp

from herodispatch.config import settings
from herodispatch.infra.http_client import get_push_session
from herodispatch.infra.logging_config import get_logger
from herodispatch.infra.metrics import inc_counter

logger = get_logger(__name__)


def _mask_token(token: str) -> str:
    return f"{token[:6]}..." if len(token) > 6 else "***"


def build_push_message(
    destination: str,
    title: str,
    body: str,
    payload: dict[str, Any],
    *,
    channel_id: str,
) -> dict[str, Any]:
    """
    Message body in FCM v1 shape. ``data`` values must be strings; None is
    dropped.
    """
    return {
        "message": {
            "token": destination,
            "notification": {"title": title, "body": body},
            "data": {k: str(v) for k, v in payload.items() if v is not None},
            "android": {
                "priority": "high",
                "notification": {"channel_id": channel_id, "sound": "default"},
            },
            "apns": {"payload": {"aps": {"sound": "default", "badge": 1}}},
        }
    }


class BaseGateway(abc.ABC):
    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Gateway name for logging/metrics"""

    @abc.abstractmethod
    async def notify(self, destination: str, title: str, body: str, payload: dict[str, Any]) -> bool:
        """Send one push. True if handed to the provider."""


class PushGateway(BaseGateway):
    """HTTP push relay (FCM-compatible endpoint behind a bearer key)."""

    def __init__(
        self,
        url: str | None = None,
        api_key: str | None = None,
        *,
        channel_id: str | None = None,
    ):
        self._url = url or settings.push_api_url
        self._api_key = api_key or settings.push_api_key
        self._channel_id = channel_id or settings.push_android_channel_id

    @property
    def name(self) -> str:
        return "push"

    def is_configured(self) -> bool:
        return bool(self._url and self._api_key)

    async def notify(self, destination: str, title: str, body: str, payload: dict[str, Any]) -> bool:
        if not self.is_configured():
            logger.warning("Push gateway not configured")
            return False

        message = build_push_message(destination, title, body, payload, channel_id=self._channel_id)
        kind = payload.get("type", "unknown")

        try:
            session = get_push_session()
            async with session.post(
                self._url,
                json=message,
                headers={"Authorization": f"Bearer {self._api_key}"},
            ) as resp:
                if resp.status >= 400:
                    detail = (await resp.text())[:200]
                    logger.error(
                        f"Push relay error: status={resp.status}, type={kind}, detail={detail}",
                        extra={"job_id": payload.get("job_id")},
                    )
                    inc_counter("push_failed_total", reason=f"http_{resp.status}")
                    return False

        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            logger.error(
                f"Push relay unreachable: {type(exc).__name__}, type={kind}",
                extra={"job_id": payload.get("job_id")},
            )
            inc_counter("push_failed_total", reason=type(exc).__name__)
            return False

        inc_counter("push_sent_total", type=kind)
        logger.debug(f"Push sent: type={kind}, token={_mask_token(destination)}")
        return True


class LoggingGateway(BaseGateway):
    """Logs pushes instead of sending them."""

    @property
    def name(self) -> str:
        return "log"

    async def notify(self, destination: str, title: str, body: str, payload: dict[str, Any]) -> bool:
        logger.info(
            f"[push:{payload.get('type', 'unknown')}] to={_mask_token(destination)} "
            f"title={title!r} body={body!r}",
            extra={"job_id": payload.get("job_id")},
        )
        inc_counter("push_logged_total")
        return True


_gateway: BaseGateway | None = None


def get_notification_gateway() -> BaseGateway:
    """
    Configured gateway: the push relay when ``PUSH_API_URL``/``PUSH_API_KEY``
    are set, otherwise the logging gateway (refused in prod by config
    validation).
    """
    global _gateway
    if _gateway is None:
        if settings.push_enabled:
            _gateway = PushGateway()
        else:
            logger.warning("Push relay not configured, notifications are only logged")
            _gateway = LoggingGateway()
    return _gateway
