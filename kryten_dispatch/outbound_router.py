"""Outbound router — platform-aware reply delivery.

Replies are split to each platform's length limit and queued per platform.
A worker task per platform sends parts in order with a short pause between
them, retrying failed sends with exponential backoff. Before the workers are
started (and in tests) parts are sent directly.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from .config import OutboundConfig
    from .message import ChatMessage


class PlatformSender(Protocol):
    def is_connected(self) -> bool: ...

    async def send(self, text: str, *, channel: str | None = None, whisper_to: str | None = None) -> None: ...


@dataclass(frozen=True)
class _Part:
    text: str
    channel: str | None
    whisper_to: str | None


def split_message(text: str, max_length: int, prefix: str = "") -> list[str]:
    """Split *text* into parts of at most *max_length* characters.

    Splits at ``\\n`` boundaries first, then at spaces; a single word longer
    than the limit is cut. *prefix* is prepended to every part and counts
    toward the limit.
    """
    text = text.strip()
    if not text:
        return []
    limit = max_length - len(prefix)
    if limit < 1:
        prefix, limit = "", max_length

    pieces: list[str] = []
    for line in text.split("\n"):
        if len(line) <= limit:
            pieces.append(line)
            continue
        # Word-wrap an overlong line
        current = ""
        for word in line.split(" "):
            while len(word) > limit:
                if current:
                    pieces.append(current)
                    current = ""
                pieces.append(word[:limit])
                word = word[limit:]
            if not current:
                current = word
            elif len(current) + 1 + len(word) <= limit:
                current = f"{current} {word}"
            else:
                pieces.append(current)
                current = word
        if current:
            pieces.append(current)

    # Re-join short lines while they fit
    chunks: list[str] = []
    current_lines: list[str] = []
    current_len = 0
    for piece in pieces:
        added_len = len(piece) + (1 if current_lines else 0)
        if current_lines and current_len + added_len > limit:
            chunks.append("\n".join(current_lines))
            current_lines = [piece]
            current_len = len(piece)
        else:
            current_lines.append(piece)
            current_len += added_len
    if current_lines:
        chunks.append("\n".join(current_lines))

    return [f"{prefix}{chunk}" for chunk in chunks if chunk.strip()]


class OutboundRouter:
    """Routes reply text back to the platform a message came from."""

    def __init__(self, config: OutboundConfig, logger: logging.Logger | None = None) -> None:
        self._config = config
        self._logger = logger or logging.getLogger("dispatch.router")
        self._senders: dict[str, PlatformSender] = {}
        self._queues: dict[str, asyncio.Queue[_Part]] = {}
        self._workers: dict[str, asyncio.Task] = {}
        self._running = False

        # Counters for metrics
        self.parts_sent = 0
        self.parts_dropped = 0
        self.send_retries = 0

    def update_config(self, new_config: OutboundConfig) -> None:
        self._config = new_config

    # ── Senders ──────────────────────────────────────────────

    def register_sender(self, platform: str, sender: PlatformSender) -> None:
        key = platform.strip().lower()
        self._senders[key] = sender
        self._logger.info("Registered sender for platform '%s'", key)
        if self._running:
            self._start_worker(key)

    def platforms(self) -> list[str]:
        return sorted(self._senders)

    def is_connected(self, platform: str) -> bool:
        sender = self._senders.get(platform.lower())
        return sender is not None and sender.is_connected()

    def pending(self) -> int:
        """Parts waiting in all platform queues."""
        return sum(q.qsize() for q in self._queues.values())

    # ── Sending ──────────────────────────────────────────────

    async def send(self, message: ChatMessage, text: str) -> int:
        """Reply to *message*. Returns the number of parts accepted."""
        platform = message.platform
        sender = self._senders.get(platform)
        if sender is None:
            self._logger.warning("No sender registered for platform '%s' — reply dropped", platform)
            self.parts_dropped += 1
            return 0
        if not sender.is_connected():
            self._logger.warning("Platform '%s' is disconnected — reply dropped", platform)
            self.parts_dropped += 1
            return 0

        settings = self._config.for_platform(platform)
        whisper_to = message.username if message.is_whisper else None
        prefix = ""
        if settings.mention_user and not message.is_whisper and message.username:
            prefix = f"@{message.display_name or message.username} "
        parts = [
            _Part(chunk, message.channel, whisper_to)
            for chunk in split_message(text, settings.max_length, prefix)
        ]
        if not parts:
            return 0

        worker = self._workers.get(platform)
        if worker is not None and not worker.done():
            queue = self._queues[platform]
            for part in parts:
                await queue.put(part)
        else:
            # Direct send before start(), no throttle
            for part in parts:
                await self._deliver(platform, part)
        return len(parts)

    async def _deliver(self, platform: str, part: _Part, retry: bool = True) -> bool:
        attempts = (self._config.max_retries + 1) if retry else 1
        for attempt in range(attempts):
            sender = self._senders.get(platform)
            if sender is None or not sender.is_connected():
                self._logger.warning("Platform '%s' went away — part dropped", platform)
                self.parts_dropped += 1
                return False
            try:
                await sender.send(part.text, channel=part.channel, whisper_to=part.whisper_to)
            except Exception:
                if attempt + 1 >= attempts:
                    self._logger.exception(
                        "Giving up on %s message after %d attempt(s)", platform, attempts,
                    )
                    self.parts_dropped += 1
                    return False
                delay = self._config.retry_backoff_seconds * (2 ** attempt)
                self._logger.warning(
                    "Send to %s failed (attempt %d/%d), retrying in %.1fs",
                    platform, attempt + 1, attempts, delay,
                )
                self.send_retries += 1
                await asyncio.sleep(delay)
                continue
            self.parts_sent += 1
            return True
        return False

    # ── Worker lifecycle ─────────────────────────────────────

    def start(self) -> None:
        """Start one delivery worker per registered platform."""
        self._running = True
        for platform in self._senders:
            self._start_worker(platform)

    def _start_worker(self, platform: str) -> None:
        worker = self._workers.get(platform)
        if worker is None or worker.done():
            self._queues.setdefault(platform, asyncio.Queue())
            self._workers[platform] = asyncio.create_task(self._worker(platform))

    async def stop(self) -> None:
        """Stop all workers, sending whatever is still queued."""
        self._running = False
        for platform, worker in list(self._workers.items()):
            if not worker.done():
                worker.cancel()
                try:
                    await worker
                except asyncio.CancelledError:
                    pass
        self._workers.clear()

    async def _worker(self, platform: str) -> None:
        """Background loop: send queued parts with a pause between each."""
        queue = self._queues[platform]
        try:
            while True:
                part = await queue.get()
                try:
                    await self._deliver(platform, part)
                except Exception:
                    self._logger.exception("Outbound worker failed for %s", platform)
                finally:
                    queue.task_done()
                await asyncio.sleep(self._config.part_delay_seconds)
        except asyncio.CancelledError:
            # Drain remaining parts on shutdown
            while not queue.empty():
                part = queue.get_nowait()
                try:
                    await self._deliver(platform, part, retry=False)
                except Exception:
                    self._logger.exception("Outbound worker (drain) failed for %s", platform)
                queue.task_done()
