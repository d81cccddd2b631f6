"""Canonical chat message model and platform normalization.

Connectors turn their own event objects into a :class:`ChatMessage` through
:func:`normalize_message`. Normalization never fails: missing optional
fields become empty values.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Mapping

from .utils import epoch_now


@dataclass(frozen=True)
class ChatMessage:
    """One inbound chat event, discarded after a single dispatch cycle."""

    platform: str
    text: str
    username: str
    display_name: str = ""
    user_id: str | None = None
    channel: str | None = None
    is_whisper: bool = False
    extras: Mapping[str, Any] = field(default_factory=dict)
    received_at: float = field(default_factory=epoch_now)

    @property
    def identity_key(self) -> str:
        """Platform user id when known, else the lowercased username."""
        if self.user_id:
            return self.user_id
        return self.username.lower()


def _clean(value: Any) -> str:
    if value is None:
        return ""
    return str(value)


def normalize_message(
    platform: str | None,
    text: str | None,
    username: str | None,
    display_name: str | None = None,
    user_id: str | int | None = None,
    channel: str | None = None,
    is_whisper: bool = False,
    extras: Mapping[str, Any] | None = None,
    received_at: float | None = None,
) -> ChatMessage:
    """Build a ChatMessage from loosely-typed connector fields."""
    raw_username = _clean(username).strip()
    uid = _clean(user_id).strip() or None
    return ChatMessage(
        platform=_clean(platform).strip().lower(),
        text=_clean(text).strip(),
        username=raw_username,
        display_name=_clean(display_name).strip() or raw_username,
        user_id=uid,
        channel=_clean(channel).strip() or None,
        is_whisper=bool(is_whisper),
        extras=MappingProxyType(dict(extras or {})),
        received_at=received_at if received_at is not None else epoch_now(),
    )


def roles_for_cytube_rank(rank: int, owner_level: int = 4, moderator_level: int = 3) -> list[str]:
    """Map a CyTube channel rank onto viewer role badges."""
    roles: list[str] = []
    if rank >= owner_level:
        roles.append("broadcaster")
    if rank >= moderator_level:
        roles.append("moderator")
    return roles


def from_kryten_event(
    event: Any,
    platform: str = "cytube",
    is_whisper: bool = False,
    owner_level: int = 4,
    moderator_level: int = 3,
) -> ChatMessage:
    """Adapt a kryten-py ``chatmsg`` / ``pm`` event.

    CyTube events carry no stable user id, so identity falls back to the
    lowercased username.
    """
    rank = getattr(event, "rank", 0) or 0
    try:
        rank = int(rank)
    except (TypeError, ValueError):
        rank = 0
    extras: dict[str, Any] = {
        "rank": rank,
        "roles": roles_for_cytube_rank(rank, owner_level, moderator_level),
    }
    domain = getattr(event, "domain", None)
    if domain:
        extras["domain"] = domain
    return normalize_message(
        platform=platform,
        text=getattr(event, "message", ""),
        username=getattr(event, "username", ""),
        channel=getattr(event, "channel", None),
        is_whisper=is_whisper,
        extras=extras,
    )
