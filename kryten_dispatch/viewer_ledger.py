"""Viewer ledger — lazily created per-identity records with coins and karma."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any, Iterable

from .utils import now_utc, parse_timestamp

if TYPE_CHECKING:
    from .config import DispatchConfig
    from .database import DispatchDatabase
    from .message import ChatMessage

# Role badge → Viewer flag
_BADGES: dict[str, str] = {
    "broadcaster": "is_broadcaster",
    "owner": "is_broadcaster",
    "moderator": "is_moderator",
    "mod": "is_moderator",
    "vip": "is_vip",
    "subscriber": "is_subscriber",
    "sub": "is_subscriber",
}

_FLAGS = ("is_moderator", "is_subscriber", "is_vip", "is_broadcaster")


@dataclass
class Viewer:
    identity_key: str
    username: str
    display_name: str = ""
    platform: str = ""
    platform_user_id: str | None = None
    is_moderator: bool = False
    is_subscriber: bool = False
    is_vip: bool = False
    is_broadcaster: bool = False
    is_banned: bool = False
    coins: int = 0
    karma: int = 0
    message_count: int = 0
    first_seen: datetime | None = field(default=None)
    last_seen: datetime | None = field(default=None)

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> Viewer:
        return cls(
            identity_key=row["identity_key"],
            username=row["username"],
            display_name=row.get("display_name") or row["username"],
            platform=row.get("platform") or "",
            platform_user_id=row.get("platform_user_id"),
            is_moderator=bool(row.get("is_moderator")),
            is_subscriber=bool(row.get("is_subscriber")),
            is_vip=bool(row.get("is_vip")),
            is_broadcaster=bool(row.get("is_broadcaster")),
            is_banned=bool(row.get("is_banned")),
            coins=row.get("coins") or 0,
            karma=row.get("karma") or 0,
            message_count=row.get("message_count") or 0,
            first_seen=parse_timestamp(row.get("first_seen")),
            last_seen=parse_timestamp(row.get("last_seen")),
        )

    def role_flags(self) -> dict[str, bool]:
        return {flag: getattr(self, flag) for flag in _FLAGS}


def role_flags_from_badges(badges: Iterable[str]) -> dict[str, bool]:
    """Map role badge strings onto Viewer flag values (unknown badges ignored)."""
    flags = dict.fromkeys(_FLAGS, False)
    for badge in badges:
        flag = _BADGES.get(str(badge).strip().lower())
        if flag:
            flags[flag] = True
    return flags


class ViewerLedger:
    """Cache-fronted viewer store. Viewers are never deleted."""

    def __init__(
        self,
        config: DispatchConfig,
        database: DispatchDatabase,
        logger: logging.Logger | None = None,
    ) -> None:
        self._config = config
        self._db = database
        self._logger = logger or logging.getLogger("dispatch.ledger")
        self._cache: dict[str, Viewer] = {}
        self._create_lock = asyncio.Lock()

    def update_config(self, new_config: DispatchConfig) -> None:
        self._config = new_config

    # ══════════════════════════════════════════════════════════
    #  Lookup
    # ══════════════════════════════════════════════════════════

    async def get_or_create(self, message: ChatMessage) -> Viewer:
        """Return the sender's viewer, creating it on first contact.

        Also records activity: names, role badges, message count, last seen.
        """
        key = message.identity_key
        viewer = self._cache.get(key)
        if viewer is None:
            async with self._create_lock:
                viewer = self._cache.get(key)
                if viewer is None:
                    viewer = await self._load_or_create(message)
                    self._cache[key] = viewer

        viewer.username = message.username or viewer.username
        viewer.display_name = message.display_name or viewer.username
        badges = message.extras.get("roles")
        if badges is not None:
            for flag, value in role_flags_from_badges(badges).items():
                setattr(viewer, flag, value)
        viewer.message_count += 1
        viewer.last_seen = now_utc()

        await self._db.touch_viewer(key, viewer.username, viewer.display_name, viewer.role_flags())
        return viewer

    async def _load_or_create(self, message: ChatMessage) -> Viewer:
        row = await self._db.get_viewer(message.identity_key)
        if row is None:
            defaults = self._config.viewers
            row = await self._db.create_viewer(
                identity_key=message.identity_key,
                username=message.username,
                display_name=message.display_name or message.username,
                platform=message.platform,
                platform_user_id=message.user_id,
                coins=max(0, defaults.starting_coins),
                karma=self._clamp_karma(defaults.starting_karma),
            )
            self._logger.info(
                "New viewer %s on %s (%s)", message.username, message.platform, message.identity_key,
            )
        return Viewer.from_row(row)

    async def find(self, username: str) -> Viewer | None:
        """Look up a viewer by username (case-insensitive)."""
        name = username.strip().lstrip("@").lower()
        if not name:
            return None
        for viewer in self._cache.values():
            if viewer.username.lower() == name:
                return viewer
        row = await self._db.find_viewer_by_username(name)
        if row is None:
            return None
        viewer = self._cache.setdefault(row["identity_key"], Viewer.from_row(row))
        return viewer

    async def count(self) -> int:
        return await self._db.count_viewers()

    @property
    def cached_count(self) -> int:
        return len(self._cache)

    # ══════════════════════════════════════════════════════════
    #  Mutations
    # ══════════════════════════════════════════════════════════

    async def give_coins(
        self, viewer: Viewer, amount: int, tx_type: str, reason: str | None = None,
        related_user: str | None = None,
    ) -> int:
        """Credit coins. Returns the new balance."""
        if amount <= 0:
            raise ValueError("amount must be positive")
        balance = await self._db.credit(viewer.identity_key, amount, tx_type, reason, related_user)
        if balance is None:
            raise LookupError(f"viewer {viewer.identity_key!r} is not stored")
        viewer.coins = balance
        return balance

    async def give_all_coins(self, amount: int, tx_type: str, reason: str | None = None) -> int:
        """Credit every known viewer. Returns how many were credited."""
        if amount <= 0:
            raise ValueError("amount must be positive")
        credited = await self._db.credit_all(amount, tx_type, reason)
        for viewer in self._cache.values():
            viewer.coins += amount
        return credited

    async def take_coins(
        self, viewer: Viewer, amount: int, tx_type: str, reason: str | None = None,
    ) -> int | None:
        """Debit coins. Returns the new balance, or None on insufficient funds."""
        if amount <= 0:
            raise ValueError("amount must be positive")
        balance = await self._db.debit(viewer.identity_key, amount, tx_type, reason)
        if balance is not None:
            viewer.coins = balance
        return balance

    async def transfer_coins(self, sender: Viewer, recipient: Viewer, amount: int, tx_type: str) -> int | None:
        """Move coins between viewers. Returns the sender's new balance or None."""
        if amount <= 0:
            raise ValueError("amount must be positive")
        balance = await self._db.transfer(sender.identity_key, recipient.identity_key, amount, tx_type)
        if balance is None:
            return None
        sender.coins = balance
        recipient.coins += amount
        return balance

    async def set_karma(self, viewer: Viewer, karma: int) -> int:
        """Set karma, clamped to the configured bounds. Returns the stored value."""
        value = self._clamp_karma(karma)
        await self._db.set_karma(viewer.identity_key, value)
        viewer.karma = value
        return value

    async def set_banned(self, viewer: Viewer, banned: bool) -> None:
        await self._db.set_banned(viewer.identity_key, banned)
        viewer.is_banned = banned
        self._logger.info("Viewer %s %s", viewer.username, "banned" if banned else "unbanned")

    def _clamp_karma(self, karma: int) -> int:
        bounds = self._config.viewers
        return max(bounds.min_karma, min(bounds.max_karma, karma))
