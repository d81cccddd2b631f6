"""Command dispatcher — message intake, gate chain and handler execution.

Every inbound message goes through :meth:`CommandDispatcher.process_message`:

1. Ignored users and the bot's own messages are dropped.
2. The sender's viewer record is fetched or created.
3. Messages without a command prefix go to the passive chat handler.
4. Commands are resolved and pass the gates in order: enabled, global
   quota, ban (silent), per-user cooldown, permission.
5. The handler runs; only a successful run stamps the cooldown and keeps
   its quota slot.

Nothing raised by a handler, observer or sender escapes this module.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections import Counter
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Mapping, Protocol

from .permissions import has_permission
from .utils import ascii_fold, epoch_now, remaining_seconds

if TYPE_CHECKING:
    from .command_registry import CommandDescriptor, CommandRegistry
    from .config import DispatchConfig
    from .cooldown_governor import CooldownGovernor
    from .message import ChatMessage
    from .outbound_router import OutboundRouter
    from .viewer_ledger import Viewer, ViewerLedger


GENERIC_ERROR = "An error occurred while processing your command. Please try again."


class DispatchStatus(str, Enum):
    IGNORED = "ignored"
    CHAT = "chat"
    UNKNOWN = "unknown"
    DISABLED = "disabled"
    QUOTA_EXHAUSTED = "quota_exhausted"
    BANNED = "banned"
    COOLDOWN = "cooldown"
    PERMISSION_DENIED = "permission_denied"
    EXECUTED = "executed"
    ERROR = "error"
    FAILED = "failed"


REJECTED_STATUSES = frozenset({
    DispatchStatus.DISABLED,
    DispatchStatus.QUOTA_EXHAUSTED,
    DispatchStatus.BANNED,
    DispatchStatus.COOLDOWN,
    DispatchStatus.PERMISSION_DENIED,
})


@dataclass(frozen=True)
class DispatchResult:
    status: DispatchStatus
    command: str | None = None
    response: str | None = None

    @property
    def rejected(self) -> bool:
        return self.status in REJECTED_STATUSES


class CommandError(Exception):
    """Raised by a handler to reply with a user-facing error.

    The execution does not count: no cooldown stamp, quota slot released.
    """


@dataclass(frozen=True)
class CommandContext:
    """Everything a handler gets to see about one invocation."""
    message: ChatMessage
    viewer: Viewer
    args: tuple[str, ...]
    descriptor: CommandDescriptor
    prefix: str

    @property
    def arg_text(self) -> str:
        return " ".join(self.args)


CommandHandler = Callable[[CommandContext], Awaitable["str | None"]]


class ChatHandler(Protocol):
    async def handle(self, message: ChatMessage, viewer: Viewer) -> str | None: ...


class CommandDispatcher:
    """Turns normalized chat messages into command executions."""

    def __init__(
        self,
        config: DispatchConfig,
        registry: CommandRegistry,
        governor: CooldownGovernor,
        ledger: ViewerLedger,
        router: OutboundRouter,
        handlers: Mapping[str, CommandHandler],
        chat_handler: ChatHandler | None = None,
        logger: logging.Logger | None = None,
        clock: Callable[[], float] = epoch_now,
    ) -> None:
        self._registry = registry
        self._governor = governor
        self._ledger = ledger
        self._router = router
        self._handlers: dict[str, CommandHandler] = {ascii_fold(k): v for k, v in handlers.items()}
        self._chat_handler = chat_handler
        self._logger = logger or logging.getLogger("dispatch")
        self._clock = clock

        self._message_observers: list[Callable[..., Any]] = []
        self._command_observers: list[Callable[..., Any]] = []
        self._background: set[asyncio.Task] = set()

        self._accepting = True
        self._in_flight = 0
        self._idle = asyncio.Event()
        self._idle.set()

        self.counters: Counter[DispatchStatus] = Counter()

        self.update_config(config)

    def update_config(self, new_config: DispatchConfig) -> None:
        """Hot-swap config."""
        self._config = new_config
        self._ignored_users = {u.lower() for u in new_config.ignored_users}
        self._bot_username_lower = new_config.bot.username.lower()
        # Longest prefix first so "!!" wins over "!"
        self._prefixes = sorted(new_config.parsing.prefixes, key=len, reverse=True)

    def register_handler(self, key: str, handler: CommandHandler) -> None:
        self._handlers[ascii_fold(key)] = handler

    @property
    def handler_keys(self) -> list[str]:
        return sorted(self._handlers)

    @property
    def in_flight(self) -> int:
        return self._in_flight

    # ══════════════════════════════════════════════════════════
    #  Observers
    # ══════════════════════════════════════════════════════════

    def on_message_processed(self, callback: Callable[[ChatMessage], Any]) -> Callable[[ChatMessage], Any]:
        """Register ``callback(message)``; usable as a decorator."""
        self._message_observers.append(callback)
        return callback

    def on_command_executed(self, callback: Callable[[ChatMessage, str], Any]) -> Callable[[ChatMessage, str], Any]:
        """Register ``callback(message, result_text)``; usable as a decorator."""
        self._command_observers.append(callback)
        return callback

    def _notify(self, observers: list[Callable[..., Any]], *args: Any) -> None:
        for callback in list(observers):
            task = asyncio.create_task(self._run_observer(callback, args))
            self._background.add(task)
            task.add_done_callback(self._background.discard)

    async def _run_observer(self, callback: Callable[..., Any], args: tuple[Any, ...]) -> None:
        try:
            result = callback(*args)
            if inspect.isawaitable(result):
                await result
        except Exception:
            self._logger.exception("Observer %r failed", getattr(callback, "__name__", callback))

    # ══════════════════════════════════════════════════════════
    #  Intake
    # ══════════════════════════════════════════════════════════

    async def process_message(self, message: ChatMessage) -> DispatchResult:
        """Run one message through the dispatch cycle. Never raises."""
        if not self._accepting:
            return DispatchResult(DispatchStatus.IGNORED)

        self._in_flight += 1
        self._idle.clear()
        try:
            result = await self._process(message)
        except Exception:
            self._logger.exception(
                "Unhandled error dispatching message from %s on %s", message.username, message.platform,
            )
            # Chat and unknown tokens stay silent even when intake fails
            if self._names_command(message.text):
                await self._reply(message, GENERIC_ERROR)
            result = DispatchResult(DispatchStatus.FAILED)
        finally:
            self._in_flight -= 1
            if self._in_flight == 0:
                self._idle.set()

        self.counters[result.status] += 1
        if result.status is not DispatchStatus.IGNORED:
            self._notify(self._message_observers, message)
        return result

    async def shutdown(self) -> None:
        """Stop accepting messages and wait for in-flight work to finish."""
        self._accepting = False
        await self._idle.wait()
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
        self._logger.info("Dispatcher drained")

    async def _process(self, message: ChatMessage) -> DispatchResult:
        username = message.username.lower()
        if not username or username in self._ignored_users or username == self._bot_username_lower:
            return DispatchResult(DispatchStatus.IGNORED)

        viewer = await self._ledger.get_or_create(message)

        parsed = self._parse(message.text)
        if parsed is None:
            await self._handle_chat(message, viewer)
            return DispatchResult(DispatchStatus.CHAT)

        prefix, token, args = parsed
        return await self._run_command(message, viewer, prefix, token, args)

    def _parse(self, text: str) -> tuple[str, str, tuple[str, ...]] | None:
        """Split ``!name arg ...`` into (prefix, folded name, args)."""
        for prefix in self._prefixes:
            if not text.startswith(prefix):
                continue
            body = text[len(prefix):]
            if not body or body[0].isspace():
                return None
            parts = body.split()
            return prefix, ascii_fold(parts[0]), tuple(parts[1:])
        return None

    def _names_command(self, text: str) -> bool:
        parsed = self._parse(text)
        return parsed is not None and self._registry.resolve(parsed[1]) is not None

    async def _handle_chat(self, message: ChatMessage, viewer: Viewer) -> None:
        if self._chat_handler is None:
            return
        try:
            response = await self._chat_handler.handle(message, viewer)
        except Exception:
            self._logger.exception("Chat handler error for %s", message.username)
            return
        if response:
            await self._reply(message, response)

    # ══════════════════════════════════════════════════════════
    #  Gate chain & execution
    # ══════════════════════════════════════════════════════════

    async def _run_command(
        self,
        message: ChatMessage,
        viewer: Viewer,
        prefix: str,
        token: str,
        args: tuple[str, ...],
    ) -> DispatchResult:
        descriptor = self._registry.resolve(token)
        if descriptor is None:
            self._logger.debug("Unknown command '%s' from %s", token, message.username)
            return DispatchResult(DispatchStatus.UNKNOWN, token)

        rejection = await self._pre_lock_gates(message, viewer, prefix, descriptor)
        if rejection is not None:
            return rejection

        async with self._governor.user_lock(viewer.identity_key, descriptor.name):
            # Re-read after the await: the table may have been reloaded
            current = self._registry.get(descriptor.name)
            if current is None:
                self._logger.debug("Command '%s' vanished during dispatch", descriptor.name)
                return DispatchResult(DispatchStatus.UNKNOWN, descriptor.name)
            if current != descriptor:
                descriptor = current
                rejection = await self._pre_lock_gates(message, viewer, prefix, descriptor)
                if rejection is not None:
                    return rejection

            identity = viewer.identity_key
            now = self._clock()

            remaining = self._governor.cooldown_remaining(identity, descriptor, now)
            if remaining > 0:
                return await self._reject(
                    message, DispatchStatus.COOLDOWN, descriptor,
                    f"Command is on cooldown. Try again in {remaining_seconds(remaining)} seconds.",
                )

            if not has_permission(viewer, descriptor.permission):
                return await self._reject(
                    message, DispatchStatus.PERMISSION_DENIED, descriptor,
                    f"You don't have permission to use {prefix}{descriptor.name}. "
                    f"Required: {descriptor.permission}",
                )

            handler = self._handlers.get(descriptor.handler)
            if handler is None:
                self._logger.error(
                    "Command '%s' has no handler '%s'", descriptor.name, descriptor.handler,
                )
                return DispatchResult(DispatchStatus.UNKNOWN, descriptor.name)

            decision = self._governor.reserve_quota(descriptor, now)
            if not decision.allowed:
                return await self._reject(
                    message, DispatchStatus.QUOTA_EXHAUSTED, descriptor, decision.message,
                )

            ctx = CommandContext(message, viewer, args, descriptor, prefix)
            succeeded = False
            try:
                response = await handler(ctx)
                succeeded = True
            except CommandError as exc:
                text = str(exc)
                if text:
                    await self._reply(message, text)
                return DispatchResult(DispatchStatus.ERROR, descriptor.name, text)
            except Exception:
                self._logger.exception(
                    "Command handler error for %s/%s", message.username, descriptor.name,
                )
                await self._reply(message, GENERIC_ERROR)
                return DispatchResult(DispatchStatus.FAILED, descriptor.name, GENERIC_ERROR)
            finally:
                if not succeeded:
                    self._governor.release(decision.reservation)

            self._governor.stamp(identity, descriptor, now)

        text = response or ""
        if text:
            await self._reply(message, text)
        self._logger.info(
            "%s ran %s%s on %s", message.username, prefix, descriptor.name, message.platform,
        )
        self._notify(self._command_observers, message, text)
        return DispatchResult(DispatchStatus.EXECUTED, descriptor.name, text)

    async def _pre_lock_gates(
        self,
        message: ChatMessage,
        viewer: Viewer,
        prefix: str,
        descriptor: CommandDescriptor,
    ) -> DispatchResult | None:
        """Gates (a) enabled, (b) global quota, (c) ban."""
        if not descriptor.enabled:
            return await self._reject(
                message, DispatchStatus.DISABLED, descriptor,
                f"Command {prefix}{descriptor.name} is currently disabled.",
            )

        decision = self._governor.check_quota(descriptor, self._clock())
        if not decision.allowed:
            return await self._reject(
                message, DispatchStatus.QUOTA_EXHAUSTED, descriptor, decision.message,
            )

        if viewer.is_banned:
            self._logger.debug("Ignoring %s from banned viewer %s", descriptor.name, message.username)
            return DispatchResult(DispatchStatus.BANNED, descriptor.name)
        return None

    async def _reject(
        self,
        message: ChatMessage,
        status: DispatchStatus,
        descriptor: CommandDescriptor,
        text: str,
    ) -> DispatchResult:
        self._logger.debug("%s: %s/%s — %s", status.value, message.username, descriptor.name, text)
        await self._reply(message, text)
        return DispatchResult(status, descriptor.name, text)

    async def _reply(self, message: ChatMessage, text: str) -> None:
        try:
            await self._router.send(message, text)
        except Exception:
            self._logger.exception("Failed to route reply to %s on %s", message.username, message.platform)
