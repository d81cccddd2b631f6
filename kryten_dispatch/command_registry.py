"""Command registry — name/alias → descriptor lookup.

Reads are lock-free: every lookup works on an immutable snapshot that writers
replace wholesale under a lock (copy-on-write). Hot reload swaps the whole
table in one step, so a dispatch never sees a half-applied reload.

Alias policy: re-registering a name drops that command's previous alias, and
an alias claimed by a newer descriptor is taken away from its previous owner.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import TYPE_CHECKING, Iterable, Mapping

from .utils import ascii_fold

if TYPE_CHECKING:
    from .config import CommandConfig


class EventType(str, Enum):
    """Fairness classification shared by commands for global quotas."""
    GOOD = "good"
    BAD = "bad"
    NEUTRAL = "neutral"
    NONE = "none"


@dataclass(frozen=True)
class CommandDescriptor:
    name: str
    handler: str
    alias: str | None = None
    permission: str = "everyone"
    cooldown_seconds: float = 0
    enabled: bool = True
    event_type: EventType = EventType.NONE
    description: str = ""
    max_uses_per_window: int = 0
    counts_toward_quota: bool = True

    def __post_init__(self) -> None:
        name = ascii_fold(self.name.strip())
        if not name:
            raise ValueError("Command name cannot be empty.")
        object.__setattr__(self, "name", name)
        alias = ascii_fold(self.alias.strip()) if self.alias else ""
        object.__setattr__(self, "alias", alias or None)
        object.__setattr__(self, "permission", (self.permission or "").strip().lower())

    @property
    def quota_tracked(self) -> bool:
        return self.counts_toward_quota and self.event_type is not EventType.NONE


@dataclass(frozen=True)
class _Table:
    by_name: Mapping[str, CommandDescriptor]
    alias_to_name: Mapping[str, str]


_EMPTY = _Table(MappingProxyType({}), MappingProxyType({}))


class CommandRegistry:
    """Case-insensitive command table with a dedicated alias index."""

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self._logger = logger or logging.getLogger("dispatch.registry")
        self._write_lock = threading.Lock()
        self._table: _Table = _EMPTY

    # ── Reads ────────────────────────────────────────────────

    def resolve(self, token: str) -> CommandDescriptor | None:
        """Primary names first, then aliases."""
        key = ascii_fold(token.strip())
        if not key:
            return None
        table = self._table
        descriptor = table.by_name.get(key)
        if descriptor is not None:
            return descriptor
        target = table.alias_to_name.get(key)
        if target is None:
            return None
        return table.by_name.get(target)

    def get(self, name: str) -> CommandDescriptor | None:
        return self._table.by_name.get(ascii_fold(name.strip()))

    def descriptors(self) -> list[CommandDescriptor]:
        table = self._table
        return [table.by_name[name] for name in sorted(table.by_name)]

    def __len__(self) -> int:
        return len(self._table.by_name)

    def __contains__(self, token: object) -> bool:
        return isinstance(token, str) and self.resolve(token) is not None

    # ── Writes ───────────────────────────────────────────────

    def register(self, descriptor: CommandDescriptor) -> None:
        """Insert or overwrite by primary name (last writer wins)."""
        with self._write_lock:
            by_name = dict(self._table.by_name)
            aliases = dict(self._table.alias_to_name)
            self._bind(by_name, aliases, descriptor)
            self._table = _Table(MappingProxyType(by_name), MappingProxyType(aliases))

    def unregister(self, name: str) -> bool:
        """Remove a command and its alias binding. Returns False if absent."""
        key = ascii_fold(name.strip())
        with self._write_lock:
            if key not in self._table.by_name:
                return False
            by_name = dict(self._table.by_name)
            aliases = dict(self._table.alias_to_name)
            del by_name[key]
            self._drop_aliases_for(aliases, key)
            self._table = _Table(MappingProxyType(by_name), MappingProxyType(aliases))
        self._logger.debug("Unregistered command '%s'", key)
        return True

    def replace_all(self, descriptors: Iterable[CommandDescriptor]) -> None:
        """Swap in a complete new command table (config hot reload)."""
        by_name: dict[str, CommandDescriptor] = {}
        aliases: dict[str, str] = {}
        for descriptor in descriptors:
            self._bind(by_name, aliases, descriptor)
        with self._write_lock:
            self._table = _Table(MappingProxyType(by_name), MappingProxyType(aliases))
        self._logger.info("Command table replaced: %d command(s)", len(by_name))

    def _bind(
        self,
        by_name: dict[str, CommandDescriptor],
        aliases: dict[str, str],
        descriptor: CommandDescriptor,
    ) -> None:
        if descriptor.name in by_name:
            self._logger.debug("Overwriting command '%s'", descriptor.name)
        by_name[descriptor.name] = descriptor
        self._drop_aliases_for(aliases, descriptor.name)

        alias = descriptor.alias
        if not alias:
            return
        if alias in by_name and alias != descriptor.name:
            self._logger.warning(
                "Alias '%s' of '%s' is shadowed by a command with the same name",
                alias, descriptor.name,
            )
        previous = aliases.get(alias)
        if previous is not None and previous != descriptor.name:
            self._logger.warning(
                "Alias '%s' moved from '%s' to '%s'", alias, previous, descriptor.name,
            )
        aliases[alias] = descriptor.name

    @staticmethod
    def _drop_aliases_for(aliases: dict[str, str], name: str) -> None:
        for alias in [a for a, target in aliases.items() if target == name]:
            del aliases[alias]


def build_descriptors(
    command_configs: Iterable[CommandConfig],
    handler_keys: Iterable[str],
    logger: logging.Logger | None = None,
) -> list[CommandDescriptor]:
    """Turn validated config entries into descriptors.

    Entries naming a handler that is not registered are skipped.
    """
    log = logger or logging.getLogger("dispatch.registry")
    known = {ascii_fold(k) for k in handler_keys}
    descriptors: list[CommandDescriptor] = []
    for cfg in command_configs:
        handler = ascii_fold((cfg.handler or cfg.name).strip())
        if handler not in known:
            log.error("Command '%s' names unknown handler '%s' — skipped", cfg.name, handler)
            continue
        try:
            descriptor = CommandDescriptor(
                name=cfg.name,
                handler=handler,
                alias=cfg.alias,
                permission=cfg.permission,
                cooldown_seconds=cfg.cooldown_seconds,
                enabled=cfg.enabled,
                event_type=cfg.event_type,
                description=cfg.description,
                max_uses_per_window=cfg.max_uses_per_window,
                counts_toward_quota=cfg.counts_toward_quota,
            )
        except ValueError as exc:
            log.error("Invalid command entry %r: %s", cfg.name, exc)
            continue
        descriptors.append(descriptor)
    return descriptors
