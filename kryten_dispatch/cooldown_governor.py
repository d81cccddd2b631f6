"""Cooldown governor — per-user cooldowns and global sliding-window quotas.

Two independent mechanisms:

* Per-user fixed cooldown keyed by ``(identity, command)``. Stamped only
  after a successful execution.
* Global quotas counted over a sliding window of ``window_days``: per event
  type (good/bad/neutral), per command (``max_uses_per_window``) and across
  all counted event types (``total_capacity``). Capacity 0 is unlimited.
  ``enabled: false`` switches off the event-type and total limits; per-command
  caps still apply.

Quota slots are reserved right before a handler runs and released again if
it fails, so concurrent executions can never overshoot a capacity.

State lives in memory for the process lifetime, is restored from the store at
startup and flushed back asynchronously after each mutation.
"""

from __future__ import annotations

import asyncio
import bisect
import contextlib
import logging
import threading
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, AsyncIterator, Iterator, Protocol

from .command_registry import CommandDescriptor, EventType
from .utils import SECONDS_PER_DAY, format_days

if TYPE_CHECKING:
    from .config import QuotaConfig


class StateStore(Protocol):
    async def load_state(self, key: str) -> Any: ...

    async def save_state(self, key: str, value: Any) -> None: ...


@dataclass(frozen=True)
class QuotaReservation:
    """Timestamps provisionally recorded for one execution."""
    command: str
    event_type: str
    timestamp: float
    per_command: bool = False
    per_type: bool = False


@dataclass(frozen=True)
class QuotaDecision:
    allowed: bool
    scope: str = ""  # "command" | "event_type" | "total"
    subject: str = ""
    limit: int = 0
    window_days: float = 0
    reservation: QuotaReservation | None = None

    @property
    def message(self) -> str:
        if self.allowed:
            return ""
        days = format_days(self.window_days)
        if self.scope == "command":
            return f"Command {self.subject} limit reached ({self.limit} per {days} days)"
        if self.scope == "event_type":
            return f"Global {self.subject} event limit reached ({self.limit} per {days} days)"
        return f"Global event limit reached ({self.limit} total events per {days} days)"


_ALLOWED = QuotaDecision(allowed=True)


@dataclass
class _KeyLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    holders: int = 0


class CooldownGovernor:
    """Owns all cooldown and quota state; one instance per dispatcher."""

    STATE_KEY = "cooldown_state"
    SNAPSHOT_VERSION = 1

    def __init__(
        self,
        config: QuotaConfig,
        store: StateStore | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._config = config
        self._store = store
        self._logger = logger or logging.getLogger("dispatch.governor")

        # (identity, command) → last successful execution
        self._last_used: dict[tuple[str, str], float] = {}
        self._last_used_guard = threading.Lock()

        # Sorted execution timestamps
        self._events: dict[str, list[float]] = {}
        self._commands: dict[str, list[float]] = {}
        self._total: list[float] = []
        self._total_guard = threading.Lock()

        # Fine-grained guards: "type:<event_type>" / "cmd:<command>"
        self._guards: dict[str, threading.Lock] = {}
        self._guards_lock = threading.Lock()

        self._user_locks: dict[tuple[str, str], _KeyLock] = {}

        self._dirty = False
        self._flush_task: asyncio.Task | None = None

    def update_config(self, new_config: QuotaConfig) -> None:
        """Hot-swap the quota config. Recorded history is kept."""
        self._config = new_config

    @property
    def window_days(self) -> float:
        return self._config.window_days

    # ══════════════════════════════════════════════════════════
    #  Per-user cooldown
    # ══════════════════════════════════════════════════════════

    @contextlib.asynccontextmanager
    async def user_lock(self, identity: str, command: str) -> AsyncIterator[None]:
        """Serialize check → execute → stamp for one user and command."""
        key = (identity, command)
        entry = self._user_locks.get(key)
        if entry is None:
            entry = self._user_locks[key] = _KeyLock()
        entry.holders += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.holders -= 1
            if entry.holders == 0:
                self._user_locks.pop(key, None)

    def cooldown_remaining(self, identity: str, descriptor: CommandDescriptor, now: float) -> float:
        """Seconds left before *identity* may run *descriptor* again (0 = ready)."""
        cooldown = descriptor.cooldown_seconds
        if cooldown <= 0:
            return 0.0
        key = (identity, descriptor.name)
        with self._last_used_guard:
            last = self._last_used.get(key)
            if last is None:
                return 0.0
            elapsed = now - last
            if elapsed < cooldown:
                return cooldown - elapsed
            # Expired: prune on read
            del self._last_used[key]
        return 0.0

    def stamp(self, identity: str, descriptor: CommandDescriptor, now: float) -> None:
        """Record a successful execution for the per-user cooldown."""
        if descriptor.cooldown_seconds <= 0:
            return
        with self._last_used_guard:
            self._last_used[(identity, descriptor.name)] = now
        self._mark_dirty()

    # ══════════════════════════════════════════════════════════
    #  Global quotas
    # ══════════════════════════════════════════════════════════

    def check_quota(self, descriptor: CommandDescriptor, now: float) -> QuotaDecision:
        """Read-only quota gate."""
        if not self._quota_applies(descriptor):
            return _ALLOWED
        per_type = self._tracks_type(descriptor)
        with self._quota_guards(descriptor, per_type):
            return self._evaluate(descriptor, now, per_type)

    def reserve_quota(self, descriptor: CommandDescriptor, now: float) -> QuotaDecision:
        """Atomically re-check and record an execution.

        Returns an allowed decision carrying the reservation, or the
        rejecting decision if a capacity was used up in the meantime.
        """
        if not self._quota_applies(descriptor):
            return QuotaDecision(
                allowed=True,
                reservation=QuotaReservation(descriptor.name, descriptor.event_type.value, now),
            )
        per_type = self._tracks_type(descriptor)
        with self._quota_guards(descriptor, per_type):
            decision = self._evaluate(descriptor, now, per_type)
            if not decision.allowed:
                return decision
            per_command = descriptor.max_uses_per_window > 0
            if per_command:
                bisect.insort(self._commands.setdefault(descriptor.name, []), now)
            if per_type:
                bisect.insort(self._events.setdefault(descriptor.event_type.value, []), now)
                bisect.insort(self._total, now)
        self._mark_dirty()
        return QuotaDecision(
            allowed=True,
            reservation=QuotaReservation(
                descriptor.name, descriptor.event_type.value, now, per_command, per_type,
            ),
        )

    def release(self, reservation: QuotaReservation | None) -> None:
        """Give back the slots of an execution that did not succeed."""
        if reservation is None or not (reservation.per_command or reservation.per_type):
            return
        ts = reservation.timestamp
        if reservation.per_command:
            with self._guard(f"cmd:{reservation.command}"):
                _discard(self._commands.get(reservation.command), ts)
        if reservation.per_type:
            with self._guard(f"type:{reservation.event_type}"):
                _discard(self._events.get(reservation.event_type), ts)
            with self._total_guard:
                _discard(self._total, ts)
        self._mark_dirty()

    def quota_usage(self, now: float) -> dict[str, Any]:
        """Current window usage per event type plus the total."""
        usage: dict[str, Any] = {"window_days": self._config.window_days, "event_types": {}}
        for event_type in (EventType.GOOD, EventType.BAD, EventType.NEUTRAL):
            key = event_type.value
            with self._guard(f"type:{key}"):
                entries = self._events.get(key, [])
                self._prune(entries, now)
                used = len(entries)
            usage["event_types"][key] = {
                "used": used,
                "capacity": self._config.capacities.get(key, 0),
            }
        with self._total_guard:
            self._prune(self._total, now)
            usage["total"] = {"used": len(self._total), "capacity": self._config.total_capacity}
        return usage

    def prune(self, now: float, max_cooldown: float | None = None) -> int:
        """Drop expired quota entries, and stamps older than *max_cooldown*.

        Returns the number of entries removed.
        """
        removed = 0
        for key in list(self._events):
            with self._guard(f"type:{key}"):
                before = len(self._events[key])
                self._prune(self._events[key], now)
                removed += before - len(self._events[key])
        for key in list(self._commands):
            with self._guard(f"cmd:{key}"):
                before = len(self._commands[key])
                self._prune(self._commands[key], now)
                removed += before - len(self._commands[key])
        with self._total_guard:
            before = len(self._total)
            self._prune(self._total, now)
            removed += before - len(self._total)
        if max_cooldown is not None:
            with self._last_used_guard:
                stale = [k for k, ts in self._last_used.items() if now - ts >= max_cooldown]
                for key in stale:
                    del self._last_used[key]
            removed += len(stale)
        if removed:
            self._mark_dirty()
        return removed

    def _quota_applies(self, descriptor: CommandDescriptor) -> bool:
        return descriptor.max_uses_per_window > 0 or self._tracks_type(descriptor)

    def _tracks_type(self, descriptor: CommandDescriptor) -> bool:
        """Event-type and total limits are switched by ``enabled``; command caps are not."""
        return self._config.enabled and descriptor.quota_tracked

    def _evaluate(self, descriptor: CommandDescriptor, now: float, per_type: bool) -> QuotaDecision:
        """Caller holds the guards from _quota_guards()."""
        days = self._config.window_days
        cap = descriptor.max_uses_per_window
        if cap > 0:
            uses = self._commands.setdefault(descriptor.name, [])
            self._prune(uses, now)
            if len(uses) >= cap:
                return QuotaDecision(False, "command", descriptor.name, cap, days)

        if not per_type:
            return _ALLOWED

        event_type = descriptor.event_type.value
        cap = self._config.capacities.get(event_type, 0)
        entries = self._events.setdefault(event_type, [])
        self._prune(entries, now)
        if cap > 0 and len(entries) >= cap:
            return QuotaDecision(False, "event_type", event_type, cap, days)

        total_cap = self._config.total_capacity
        self._prune(self._total, now)
        if total_cap > 0 and len(self._total) >= total_cap:
            return QuotaDecision(False, "total", "", total_cap, days)
        return _ALLOWED

    def _prune(self, entries: list[float], now: float) -> None:
        """Drop timestamps older than the window. window_days == 0 never expires."""
        if self._config.window_days <= 0 or not entries:
            return
        cutoff = now - self._config.window_days * SECONDS_PER_DAY
        idx = bisect.bisect_left(entries, cutoff)
        if idx:
            del entries[:idx]

    def _guard(self, key: str) -> threading.Lock:
        guard = self._guards.get(key)
        if guard is None:
            with self._guards_lock:
                guard = self._guards.setdefault(key, threading.Lock())
        return guard

    @contextlib.contextmanager
    def _quota_guards(self, descriptor: CommandDescriptor, per_type: bool) -> Iterator[None]:
        # Fixed order: command → event type → total
        with contextlib.ExitStack() as stack:
            if descriptor.max_uses_per_window > 0:
                stack.enter_context(self._guard(f"cmd:{descriptor.name}"))
            if per_type:
                stack.enter_context(self._guard(f"type:{descriptor.event_type.value}"))
                stack.enter_context(self._total_guard)
            yield

    # ══════════════════════════════════════════════════════════
    #  Snapshot & persistence
    # ══════════════════════════════════════════════════════════

    def snapshot(self) -> dict[str, Any]:
        """Plain-JSON copy of all state."""
        with self._last_used_guard:
            last_used = [[identity, command, ts] for (identity, command), ts in self._last_used.items()]
        events: dict[str, list[float]] = {}
        for key in list(self._events):
            with self._guard(f"type:{key}"):
                events[key] = list(self._events[key])
        commands: dict[str, list[float]] = {}
        for key in list(self._commands):
            with self._guard(f"cmd:{key}"):
                commands[key] = list(self._commands[key])
        with self._total_guard:
            total = list(self._total)
        return {
            "version": self.SNAPSHOT_VERSION,
            "last_used": last_used,
            "events": events,
            "commands": commands,
            "total": total,
        }

    def restore(self, data: dict[str, Any]) -> None:
        """Replace in-memory state with a snapshot."""
        if data.get("version") != self.SNAPSHOT_VERSION:
            raise ValueError(f"Unsupported cooldown snapshot version: {data.get('version')!r}")

        last_used: dict[tuple[str, str], float] = {}
        for entry in data.get("last_used", []):
            try:
                identity, command, ts = entry
                last_used[(str(identity), str(command))] = float(ts)
            except (TypeError, ValueError):
                self._logger.warning("Skipping malformed cooldown entry: %r", entry)

        events = {str(k): sorted(float(t) for t in v) for k, v in data.get("events", {}).items()}
        commands = {str(k): sorted(float(t) for t in v) for k, v in data.get("commands", {}).items()}
        total = sorted(float(t) for t in data.get("total", []))

        with self._last_used_guard:
            self._last_used = last_used
        # Same order as _quota_guards(): commands → event types → total
        keys = {f"cmd:{k}" for k in (*self._commands, *commands)}
        keys |= {f"type:{k}" for k in (*self._events, *events)}
        with self._guards_lock:
            keys |= set(self._guards)
        ordered = sorted(k for k in keys if k.startswith("cmd:"))
        ordered += sorted(k for k in keys if k.startswith("type:"))
        with contextlib.ExitStack() as stack:
            for key in ordered:
                stack.enter_context(self._guard(key))
            stack.enter_context(self._total_guard)
            self._events = events
            self._commands = commands
            self._total = total

    async def load(self) -> bool:
        """Restore state from the store. Returns True if anything was loaded."""
        if self._store is None:
            return False
        try:
            data = await self._store.load_state(self.STATE_KEY)
            if not data:
                self._logger.info("No persisted cooldown state found — starting fresh")
                return False
            self.restore(data)
        except Exception:
            self._logger.exception("Failed to restore cooldown state")
            return False
        self._logger.info(
            "Restored cooldown state: %d user cooldown(s), %d quota entr(ies)",
            len(self._last_used), len(self._total),
        )
        return True

    async def flush(self) -> bool:
        """Write the current snapshot to the store if anything changed."""
        if self._store is None or not self._dirty:
            return True
        self._dirty = False
        try:
            await self._store.save_state(self.STATE_KEY, self.snapshot())
        except Exception:
            self._dirty = True
            self._logger.exception("Failed to persist cooldown state")
            return False
        self._logger.debug("Persisted cooldown state")
        return True

    async def close(self) -> None:
        """Cancel any pending flush and write a final snapshot."""
        if self._flush_task and not self._flush_task.done():
            self._flush_task.cancel()
            try:
                await self._flush_task
            except asyncio.CancelledError:
                pass
        self._flush_task = None
        await self.flush()

    def _mark_dirty(self) -> None:
        self._dirty = True
        if self._store is None:
            return
        if self._flush_task is not None and not self._flush_task.done():
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return  # No loop: close() will flush
        self._flush_task = loop.create_task(self._flush_loop())

    async def _flush_loop(self) -> None:
        while self._dirty:
            await asyncio.sleep(self._config.flush_delay_seconds)
            if not await self.flush():
                break


def _discard(entries: list[float] | None, ts: float) -> None:
    if not entries:
        return
    idx = bisect.bisect_left(entries, ts)
    if idx < len(entries) and entries[idx] == ts:
        del entries[idx]
