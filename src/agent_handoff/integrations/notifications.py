"""Operator notification sinks."""

from __future__ import annotations

import logging
from collections.abc import Sequence

import httpx

from agent_handoff.integrations.base import NotificationSink

logger = logging.getLogger(__name__)


class LoggingNotificationSink:
    """Write notifications to the application log."""

    def __init__(self, level: int = logging.WARNING) -> None:
        self.level = level

    def notify(self, message: str) -> None:
        logger.log(self.level, "Notification: %s", message)


class HttpNotificationSink:
    """POST ``{"text", "source"}`` to a notify endpoint (e.g. a local TTS service)."""

    def __init__(
        self,
        url: str,
        *,
        source: str = "agent-handoff",
        timeout_seconds: float = 5.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.url = url
        self.source = source
        self._client = httpx.Client(
            timeout=httpx.Timeout(timeout_seconds, connect=2.0),
            transport=transport,
        )

    def notify(self, message: str) -> None:
        try:
            response = self._client.post(self.url, json={"text": message, "source": self.source})
        except httpx.HTTPError as exc:
            logger.warning("Notification to %s failed: %s", self.url, exc)
            return
        if not response.is_success:
            logger.warning(
                "Notification to %s rejected with HTTP %s",
                self.url,
                response.status_code,
            )

    def close(self) -> None:
        self._client.close()


class CompositeNotificationSink:
    """Fan a message out to several sinks; one failing sink does not stop the rest."""

    def __init__(self, sinks: Sequence[NotificationSink]) -> None:
        self.sinks = tuple(sinks)

    def notify(self, message: str) -> None:
        for sink in self.sinks:
            try:
                sink.notify(message)
            except Exception:
                logger.exception("Notification sink %s failed", type(sink).__name__)

    def close(self) -> None:
        for sink in self.sinks:
            close = getattr(sink, "close", None)
            if close is not None:
                close()
