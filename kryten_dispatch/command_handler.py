"""Request-reply command handler on kryten.dispatch.command.

Provides a NATS request-reply API for inter-service communication
and admin tooling.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from . import __version__

if TYPE_CHECKING:
    from kryten import KrytenClient

    from .main import DispatchApp

SUBJECT = "kryten.dispatch.command"


class CommandHandler:
    """Handles request-reply commands on kryten.dispatch.command."""

    def __init__(
        self,
        app: DispatchApp,
        client: KrytenClient,
        logger: logging.Logger | None = None,
    ) -> None:
        self._app = app
        self._client = client
        self._logger = logger or logging.getLogger("dispatch.command")

    async def connect(self) -> None:
        """Subscribe to request-reply on kryten.dispatch.command."""
        await self._client.subscribe_request_reply(SUBJECT, self._handle_command)

    async def _handle_command(self, request: dict[str, Any]) -> dict[str, Any]:
        """Route a command request to the appropriate handler."""
        command = request.get("command", "")
        handler = self._HANDLER_MAP.get(command)

        if not handler:
            return {
                "service": "dispatch",
                "command": command,
                "success": False,
                "error": f"Unknown command: {command}",
            }

        try:
            result = await handler(self, request)
            self._app.api_requests += 1
            return {
                "service": "dispatch",
                "command": command,
                "success": True,
                "data": result,
            }
        except Exception as e:
            self._logger.exception("Command handler error for %s", command)
            return {
                "service": "dispatch",
                "command": command,
                "success": False,
                "error": str(e),
            }

    # ══════════════════════════════════════════════════════════
    #  System
    # ══════════════════════════════════════════════════════════

    async def _handle_ping(self, request: dict[str, Any]) -> dict[str, Any]:
        return {"pong": True, "version": __version__}

    async def _handle_health(self, request: dict[str, Any]) -> dict[str, Any]:
        router = self._app.router
        return {
            "status": "healthy",
            "database": "connected" if self._app.db else "disconnected",
            "platforms": {
                platform: router.is_connected(platform) for platform in router.platforms()
            } if router else {},
            "commands_registered": len(self._app.registry) if self._app.registry else 0,
            "uptime_seconds": self._app.uptime_seconds,
        }

    async def _handle_reload(self, request: dict[str, Any]) -> dict[str, Any]:
        return {"reloaded": await self._app.reload_config()}

    # ══════════════════════════════════════════════════════════
    #  Commands & Quotas
    # ══════════════════════════════════════════════════════════

    async def _handle_commands_list(self, request: dict[str, Any]) -> dict[str, Any]:
        return {
            "commands": [
                {
                    "name": d.name,
                    "alias": d.alias,
                    "permission": d.permission,
                    "cooldown_seconds": d.cooldown_seconds,
                    "enabled": d.enabled,
                    "event_type": d.event_type.value,
                    "max_uses_per_window": d.max_uses_per_window,
                    "description": d.description,
                }
                for d in self._app.registry.descriptors()
            ],
        }

    async def _handle_quota_status(self, request: dict[str, Any]) -> dict[str, Any]:
        return self._app.governor.quota_usage(self._app.clock())

    # ══════════════════════════════════════════════════════════
    #  Viewers
    # ══════════════════════════════════════════════════════════

    async def _handle_viewer_get(self, request: dict[str, Any]) -> dict[str, Any]:
        username = request.get("username")
        if not username:
            raise ValueError("username is required")

        viewer = await self._app.ledger.find(username)
        if viewer is None:
            return {"found": False}

        return {
            "found": True,
            "username": viewer.username,
            "display_name": viewer.display_name,
            "platform": viewer.platform,
            "coins": viewer.coins,
            "karma": viewer.karma,
            "is_banned": viewer.is_banned,
            "message_count": viewer.message_count,
        }

    _HANDLER_MAP: dict[str, Any] = {
        "system.ping": _handle_ping,
        "system.health": _handle_health,
        "system.reload": _handle_reload,
        "commands.list": _handle_commands_list,
        "quota.status": _handle_quota_status,
        "viewer.get": _handle_viewer_get,
    }
