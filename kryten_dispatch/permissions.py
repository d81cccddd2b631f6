"""Role-hierarchy permission checks.

everyone < subscriber < vip < moderator < broadcaster. Holding a role
satisfies that level and every level below it. Unknown levels deny.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .viewer_ledger import Viewer

EVERYONE = "everyone"

ROLE_HIERARCHY: tuple[str, ...] = ("everyone", "subscriber", "vip", "moderator", "broadcaster")

# Role level → Viewer flag attribute
_ROLE_FLAGS: dict[str, str] = {
    "subscriber": "is_subscriber",
    "vip": "is_vip",
    "moderator": "is_moderator",
    "broadcaster": "is_broadcaster",
}


def is_known_level(level: str) -> bool:
    return (level or "").strip().lower() in ROLE_HIERARCHY


def has_permission(viewer: Viewer, required: str) -> bool:
    """Return True if *viewer* satisfies the *required* level."""
    level = (required or "").strip().lower()
    if level == EVERYONE:
        return True
    if level not in ROLE_HIERARCHY:
        return False
    rank = ROLE_HIERARCHY.index(level)
    return any(
        getattr(viewer, _ROLE_FLAGS[role], False)
        for role in ROLE_HIERARCHY[rank:]
    )


def role_label(viewer: Viewer) -> str:
    """Highest role held, for display."""
    for role in reversed(ROLE_HIERARCHY[1:]):
        if getattr(viewer, _ROLE_FLAGS[role], False):
            return "VIP" if role == "vip" else role.capitalize()
    return "Viewer"
