"""Fire-and-forget run notifications.

A notifier only needs ``notify(title, body)``. Failures are logged and never
reach the scheduler; with no backend configured, notifications go to the log.
"""
from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Protocol

import httpx

if TYPE_CHECKING:
    from locaudit.config import Settings

log = logging.getLogger(__name__)


class Notifier(Protocol):
    async def notify(self, title: str, body: str) -> None: ...


class LogNotifier:
    async def notify(self, title: str, body: str) -> None:
        log.info("%s: %s", title, body)


class WebhookNotifier:
    """POST ``{"title", "body"}`` as JSON to a webhook URL."""

    def __init__(self, url: str, timeout: float = 10.0):
        self.url = url
        self.timeout = timeout

    async def notify(self, title: str, body: str) -> None:
        async with httpx.AsyncClient(timeout=httpx.Timeout(self.timeout)) as client:
            resp = await client.post(self.url, json={"title": title, "body": body})
            resp.raise_for_status()


def build_notifier(settings: Settings) -> Notifier:
    if settings.notify_webhook_url:
        return WebhookNotifier(settings.notify_webhook_url)
    return LogNotifier()


async def safe_notify(notifier: Notifier | None, title: str, body: str) -> None:
    if notifier is None:
        return
    try:
        await notifier.notify(title, body)
    except Exception as exc:
        log.warning("Notification %r failed: %s", title, exc)
