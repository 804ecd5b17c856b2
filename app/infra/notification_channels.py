# app/infra/notification_channels.py
"""
Notification channels: deliver dispatch events to a user's real-time room.

The dispatch core only decides what to send to whom. Channels own the
delivery:

- log     - write the event to the application log (development)
- webhook - POST the event to a push gateway that holds the user sockets

Usage:
    channel = get_notification_channel()
    await channel.notify(user_id, "assignment_update", {...})

``notify`` raises NotificationDeliveryError when the gateway rejects or
cannot be reached; the core treats that as a best-effort failure.
"""
from __future__ import annotations

import abc
import json
from typing import Any

import aiohttp

from app.config import settings
from app.infra.http_client import get_sender_session
from app.infra.logging_config import get_logger
from app.infra.metrics import inc_counter

logger = get_logger(__name__)


class NotificationDeliveryError(Exception):
    """The channel could not hand the event to the push transport."""


class NotificationChannel(abc.ABC):
    """Abstract base class for notification channels"""

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Channel name for logging/metrics"""

    @abc.abstractmethod
    async def notify(self, target_user_id: str, event: str, payload: dict[str, Any]) -> None:
        """
        Deliver ``event`` with ``payload`` to the room of ``target_user_id``.

        Raises:
            NotificationDeliveryError: on transport failure
        """

    @abc.abstractmethod
    def is_configured(self) -> bool:
        """Check if channel is properly configured"""


class LogNotificationChannel(NotificationChannel):
    """Writes events to the log. Never fails."""

    @property
    def name(self) -> str:
        return "log"

    def is_configured(self) -> bool:
        return True

    async def notify(self, target_user_id: str, event: str, payload: dict[str, Any]) -> None:
        logger.info(
            f"[notify] room={target_user_id} event={event} payload={json.dumps(payload, default=str)}",
            extra={"volunteer_id": target_user_id},
        )
        inc_counter("notifications_sent", channel=self.name, event=event)


class WebhookNotificationChannel(NotificationChannel):
    """
    Push gateway over HTTP.

    Each event is one POST of ``{"room": ..., "event": ..., "payload": ...}``
    with a Bearer token. Any non-2xx answer is a delivery failure.
    """

    def __init__(self, url: str | None = None, token: str | None = None) -> None:
        self._url = url or settings.notification_webhook_url
        self._token = token or settings.notification_webhook_token

    @property
    def name(self) -> str:
        return "webhook"

    def is_configured(self) -> bool:
        return bool(self._url)

    async def notify(self, target_user_id: str, event: str, payload: dict[str, Any]) -> None:
        if not self.is_configured():
            raise NotificationDeliveryError("Webhook channel not configured (notification_webhook_url)")

        headers = {"Content-Type": "application/json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"

        body = {"room": str(target_user_id), "event": event, "payload": payload}
        session = get_sender_session()

        try:
            async with session.post(
                self._url,
                data=json.dumps(body, default=str),
                headers=headers,
                timeout=aiohttp.ClientTimeout(total=settings.notification_emit_timeout_seconds),
            ) as resp:
                if resp.status >= 300:
                    text = await resp.text()
                    inc_counter("notifications_failed", channel=self.name, event=event)
                    raise NotificationDeliveryError(
                        f"Push gateway returned {resp.status}: {text[:200]}"
                    )
        except aiohttp.ClientError as exc:
            inc_counter("notifications_failed", channel=self.name, event=event)
            raise NotificationDeliveryError(f"Push gateway unreachable: {type(exc).__name__}") from exc

        inc_counter("notifications_sent", channel=self.name, event=event)
        logger.debug(
            f"Webhook notification sent: room={target_user_id}, event={event}",
            extra={"volunteer_id": target_user_id},
        )


# Channel registry
_CHANNELS: dict[str, type[NotificationChannel]] = {
    "log": LogNotificationChannel,
    "webhook": WebhookNotificationChannel,
}


def get_notification_channel(name: str | None = None) -> NotificationChannel:
    """
    Build the configured notification channel.

    Unknown names fall back to the log channel so events are never silently
    dropped.
    """
    channel_name = name or settings.notification_channel

    channel_class = _CHANNELS.get(channel_name)
    if channel_class is None:
        logger.error(f"Unknown notification channel: {channel_name}, using log channel")
        channel_class = LogNotificationChannel

    channel = channel_class()
    if not channel.is_configured():
        logger.warning(
            f"Notification channel '{channel.name}' not configured, notifications will fail"
        )
    return channel
