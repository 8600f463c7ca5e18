"""
Push notifications through an ntfy server.
"""

from __future__ import annotations

from typing import Optional

import httpx

import core.config as config

logger = config.logger


class NtfyNotifier:
    """Publishes JSON messages to ntfy; delivery failures are logged, never raised."""

    def __init__(
        self,
        base_url: str = config.NTFY_URL,
        topic: str = config.NTFY_TOPIC,
        timeout_seconds: float = config.NTFY_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.topic = topic
        self.timeout = httpx.Timeout(timeout_seconds)
        self._transport = transport

    async def send(self, message: str, title: Optional[str] = None, priority: int = 3) -> bool:
        payload = {
            "topic": self.topic,
            "message": message,
            "priority": min(max(priority, 1), 5),
        }
        if title:
            payload["title"] = title

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(self.base_url, json=payload)
                response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.error(
                "Failed to send notification",
                extra={"topic": self.topic, "error": str(exc)},
            )
            return False

        logger.info("Notification sent", extra={"topic": self.topic})
        return True
