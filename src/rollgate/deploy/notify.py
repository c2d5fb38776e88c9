"""Deployment notifications.

Fire-and-forget delivery of terminal deployment events
(``deploy.succeeded``, ``rollback.aborted``, ``scale.failed``, ...) to a
set of channels. Formatting and transport belong to the channels; the
hub only fans out and guarantees that a notification failure never fails
a deployment. Failures are logged and reported as ``DeliveryResult``.

Channels:
    LogNotifier: always on; writes the event to the structured log.
    WebhookNotifier: JSON POST through httpx when ``notify_webhook_url`` is set.

Tags:
    notifications, webhook, httpx, alerts, fire-and-forget
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

import httpx

from rollgate.core.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class DeliveryResult:
    """Outcome of one delivery attempt."""

    channel: str
    success: bool
    error: str | None = None

    @classmethod
    def ok(cls, channel: str) -> DeliveryResult:
        return cls(channel=channel, success=True)

    @classmethod
    def fail(cls, channel: str, error: Exception) -> DeliveryResult:
        return cls(channel=channel, success=False, error=f"{type(error).__name__}: {error}")


class BaseNotifier(ABC):
    """Base class for notification channels."""

    def __init__(self, name: str) -> None:
        self._name = name

    @property
    def name(self) -> str:
        return self._name

    @abstractmethod
    def notify(self, event_kind: str, payload: dict[str, Any]) -> DeliveryResult:
        """Deliver one event. May raise; the hub contains failures."""


class LogNotifier(BaseNotifier):
    """Writes events to the structured log."""

    def __init__(self, name: str = "log") -> None:
        super().__init__(name)

    def notify(self, event_kind: str, payload: dict[str, Any]) -> DeliveryResult:
        method = logger.info if event_kind.endswith(".succeeded") else logger.warning
        method("notify.event", kind=event_kind, **payload)
        return DeliveryResult.ok(self._name)


class WebhookNotifier(BaseNotifier):
    """POSTs ``{"event": kind, "payload": ..., "sent_at": ...}`` as JSON."""

    def __init__(
        self,
        url: str,
        *,
        name: str = "webhook",
        headers: dict[str, str] | None = None,
        timeout: float = 10.0,
        client: httpx.Client | None = None,
    ) -> None:
        super().__init__(name)
        self._url = url
        self._headers = headers or {}
        self._client = client or httpx.Client(timeout=timeout)

    def notify(self, event_kind: str, payload: dict[str, Any]) -> DeliveryResult:
        body = {
            "event": event_kind,
            "payload": payload,
            "sent_at": datetime.now(UTC).isoformat(),
        }
        try:
            response = self._client.post(self._url, json=body, headers=self._headers)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            return DeliveryResult.fail(self._name, exc)
        return DeliveryResult.ok(self._name)


class NotificationHub:
    """Fans events out to every channel; never raises."""

    def __init__(self, channels: list[BaseNotifier] | None = None) -> None:
        self._channels = list(channels or [])

    @property
    def channels(self) -> list[BaseNotifier]:
        return list(self._channels)

    def add(self, channel: BaseNotifier) -> None:
        self._channels.append(channel)

    def notify(self, event_kind: str, payload: dict[str, Any]) -> list[DeliveryResult]:
        results = []
        for channel in self._channels:
            try:
                result = channel.notify(event_kind, payload)
            except Exception as exc:  # noqa: BLE001 - a channel must never fail a deployment
                result = DeliveryResult.fail(channel.name, exc)
            if not result.success:
                logger.error(
                    "notify.delivery_failed", channel=channel.name, kind=event_kind, error=result.error
                )
            results.append(result)
        return results


__all__ = [
    "BaseNotifier",
    "DeliveryResult",
    "LogNotifier",
    "NotificationHub",
    "WebhookNotifier",
]
