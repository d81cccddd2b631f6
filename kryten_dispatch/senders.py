"""Platform senders used by the outbound router.

* :class:`KrytenChatSender` — CyTube chat and PMs through kryten-py.
* :class:`WebhookSender` — HTTP webhook platforms (e.g. Discord) via aiohttp.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

import aiohttp

if TYPE_CHECKING:
    from .config import WebhookConfig


class KrytenChatSender:
    """Sends through a connected KrytenClient."""

    def __init__(
        self,
        client: Any,
        default_channel: str,
        logger: logging.Logger | None = None,
    ) -> None:
        self._client = client
        self._default_channel = default_channel
        self._logger = logger or logging.getLogger("dispatch.sender.kryten")
        self._connected = False

    def mark_connected(self, connected: bool = True) -> None:
        self._connected = connected

    def is_connected(self) -> bool:
        return self._client is not None and self._connected

    async def send(self, text: str, *, channel: str | None = None, whisper_to: str | None = None) -> None:
        target = channel or self._default_channel
        if whisper_to:
            await self._client.send_pm(target, whisper_to, text)
        else:
            await self._client.send_chat(target, text)
        self._logger.debug("Sent to %s%s: %s", target, f" (PM {whisper_to})" if whisper_to else "", text[:80])


class WebhookSender:
    """POSTs each reply part as JSON to a webhook URL.

    Whispers are not supported by webhooks; they are posted like any other
    reply. Non-2xx responses raise so the router retries.
    """

    def __init__(
        self,
        platform: str,
        config: WebhookConfig,
        logger: logging.Logger | None = None,
    ) -> None:
        self._platform = platform
        self._config = config
        self._logger = logger or logging.getLogger(f"dispatch.sender.{platform}")
        self._session: aiohttp.ClientSession | None = None

    async def start(self) -> None:
        """Create the HTTP session."""
        self._session = aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(total=self._config.timeout_seconds),
        )

    async def stop(self) -> None:
        """Close the HTTP session."""
        if self._session:
            await self._session.close()
            self._session = None

    def is_connected(self) -> bool:
        return self._config.enabled and self._session is not None

    async def send(self, text: str, *, channel: str | None = None, whisper_to: str | None = None) -> None:
        if not self._session:
            raise RuntimeError(f"{self._platform} webhook session is not started")
        payload = {self._config.content_field: text}
        async with self._session.post(self._config.url, json=payload) as resp:
            resp.raise_for_status()
        self._logger.debug("Webhook %s accepted %d chars", self._platform, len(text))
