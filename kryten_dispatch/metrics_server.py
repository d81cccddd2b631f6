"""Prometheus metrics server for kryten-dispatch.

Subclasses BaseMetricsServer from kryten-py to expose
dispatch-specific metrics and health details.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from kryten import BaseMetricsServer

from .dispatcher import DispatchStatus

if TYPE_CHECKING:
    from .main import DispatchApp


class DispatchMetricsServer(BaseMetricsServer):
    """Dispatch-specific Prometheus metrics endpoint."""

    def __init__(self, app: DispatchApp, port: int = 28290) -> None:
        super().__init__(
            service_name="dispatch",
            port=port,
            client=app.client,
            logger=app.logger,
        )
        self._app = app

    async def _collect_custom_metrics(self) -> list[str]:
        """Collect dispatch-specific Prometheus metrics."""
        lines: list[str] = []

        # ── Counters ─────────────────────────────────────────
        lines.append(f"dispatch_events_processed_total {self._app.events_processed}")
        lines.append(f"dispatch_api_requests_total {self._app.api_requests}")

        dispatcher = self._app.dispatcher
        if dispatcher:
            for status in DispatchStatus:
                lines.append(
                    f'dispatch_messages_total{{status="{status.value}"}} '
                    f"{dispatcher.counters[status]}"
                )
            lines.append(f"dispatch_in_flight {dispatcher.in_flight}")

        router = self._app.router
        if router:
            lines.append(f"dispatch_outbound_parts_sent_total {router.parts_sent}")
            lines.append(f"dispatch_outbound_parts_dropped_total {router.parts_dropped}")
            lines.append(f"dispatch_outbound_retries_total {router.send_retries}")
            lines.append(f"dispatch_outbound_pending {router.pending()}")
            for platform in router.platforms():
                up = 1 if router.is_connected(platform) else 0
                lines.append(f'dispatch_platform_connected{{platform="{platform}"}} {up}')

        if self._app.chat_handler:
            lines.append(f"dispatch_rewards_redeemed_total {self._app.chat_handler.rewards_redeemed}")

        # ── Gauges ───────────────────────────────────────────
        if self._app.registry:
            lines.append(f"dispatch_commands_registered {len(self._app.registry)}")

        if self._app.governor:
            usage = self._app.governor.quota_usage(self._app.clock())
            for event_type, entry in usage["event_types"].items():
                tag = f'event_type="{event_type}"'
                lines.append(f"dispatch_quota_used{{{tag}}} {entry['used']}")
                lines.append(f"dispatch_quota_capacity{{{tag}}} {entry['capacity']}")
            lines.append(f"dispatch_quota_total_used {usage['total']['used']}")

        if self._app.ledger:
            lines.append(f"dispatch_viewers_total {await self._app.ledger.count()}")

        return lines

    async def _get_health_details(self) -> dict:
        """Return health details for the /health endpoint."""
        router = self._app.router
        return {
            "database": "connected" if self._app.db else "disconnected",
            "channels_configured": len(self._app.config.channels) if self._app.config else 0,
            "platforms": router.platforms() if router else [],
        }
