"""Service orchestrator — DispatchApp.

Follows the canonical kryten-py microservice pattern:
config → DB init → components → register handlers → connect → subscribe → metrics → run.
"""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Callable

from kryten import KrytenClient

from . import __version__
from .builtin_commands import BuiltinCommands
from .chat_handler import PassiveChatHandler
from .command_handler import SUBJECT, CommandHandler
from .command_registry import CommandRegistry, build_descriptors
from .config import DispatchConfig, load_config
from .cooldown_governor import CooldownGovernor
from .database import DispatchDatabase
from .dispatcher import CommandDispatcher
from .message import from_kryten_event
from .metrics_server import DispatchMetricsServer
from .outbound_router import OutboundRouter
from .senders import KrytenChatSender, WebhookSender
from .utils import epoch_now
from .viewer_ledger import ViewerLedger


class DispatchApp:
    """Top-level application orchestrator."""

    def __init__(self, config_path: str, clock: Callable[[], float] = epoch_now) -> None:
        self.config_path = Path(config_path)
        self.logger = logging.getLogger("dispatch")
        self.clock = clock

        # Components (initialized in start())
        self.config: DispatchConfig | None = None
        self.client: KrytenClient | None = None
        self.db: DispatchDatabase | None = None
        self.ledger: ViewerLedger | None = None
        self.governor: CooldownGovernor | None = None
        self.registry: CommandRegistry | None = None
        self.router: OutboundRouter | None = None
        self.builtins: BuiltinCommands | None = None
        self.chat_handler: PassiveChatHandler | None = None
        self.dispatcher: CommandDispatcher | None = None
        self.command_handler: CommandHandler | None = None
        self.metrics_server: DispatchMetricsServer | None = None
        self.kryten_sender: KrytenChatSender | None = None
        self.webhook_senders: dict[str, WebhookSender] = {}

        # State
        self._running = False
        self._start_time: float | None = None

        # Counters (for metrics)
        self.events_processed: int = 0
        self.api_requests: int = 0

    @property
    def uptime_seconds(self) -> float:
        if self._start_time is None:
            return 0.0
        return time.time() - self._start_time

    def build_components(self, config: DispatchConfig) -> None:
        """Create the database and every in-process component."""
        self.config = config
        self.db = DispatchDatabase(config.database.path, logging.getLogger("dispatch.db"))
        self.ledger = ViewerLedger(config, self.db, logging.getLogger("dispatch.ledger"))
        self.governor = CooldownGovernor(config.quotas, self.db, logging.getLogger("dispatch.governor"))
        self.registry = CommandRegistry(logging.getLogger("dispatch.registry"))
        self.router = OutboundRouter(config.outbound, logging.getLogger("dispatch.router"))
        self.builtins = BuiltinCommands(
            config, self.ledger, self.registry,
            reload_callback=self.reload_config,
            logger=logging.getLogger("dispatch.builtins"),
        )
        self.chat_handler = PassiveChatHandler(config, self.ledger, logging.getLogger("dispatch.chat"))
        self.dispatcher = CommandDispatcher(
            config=config,
            registry=self.registry,
            governor=self.governor,
            ledger=self.ledger,
            router=self.router,
            handlers=self.builtins.handler_map(),
            chat_handler=self.chat_handler,
            logger=self.logger,
            clock=self.clock,
        )
        self.registry.replace_all(
            build_descriptors(config.commands, self.dispatcher.handler_keys, logging.getLogger("dispatch.registry"))
        )

    async def start(self) -> None:
        """Start the dispatch service — canonical kryten-py sequence."""
        self.logger.info("Starting kryten-dispatch...")
        self._start_time = time.time()

        # 1. Load and validate config
        config = load_config(str(self.config_path))
        self.logger.info("Config loaded: %d channel(s)", len(config.channels))

        # 2. Build components, initialize database, restore governor state
        self.build_components(config)
        await self.db.initialize()
        self.logger.info("Database initialized: %s", config.database.path)
        await self.governor.load()
        self.logger.info("Command table ready: %d command(s)", len(self.registry))

        # 3. Create KrytenClient and platform senders
        self.client = KrytenClient(self.config)
        default_channel = config.channels[0].channel if config.channels else ""
        self.kryten_sender = KrytenChatSender(
            self.client, default_channel, logging.getLogger("dispatch.sender.cytube"),
        )
        self.router.register_sender("cytube", self.kryten_sender)
        for platform, hook_cfg in config.webhooks.items():
            if not hook_cfg.enabled:
                continue
            sender = WebhookSender(platform, hook_cfg, logging.getLogger(f"dispatch.sender.{platform}"))
            await sender.start()
            self.webhook_senders[platform] = sender
            self.router.register_sender(platform, sender)

        # 4. Register event handlers BEFORE connect
        @self.client.on("chatmsg")
        async def handle_chatmsg(event):
            await self._dispatch_event(event, is_whisper=False)

        @self.client.on("pm")
        async def handle_pm(event):
            await self._dispatch_event(event, is_whisper=True)

        # 5. Connect to NATS
        await self.client.connect()
        self.kryten_sender.mark_connected(True)
        self.logger.info("Connected to NATS")

        # 6. Start outbound workers
        self.router.start()

        # 7. Start command handler
        self.command_handler = CommandHandler(self, self.client, logging.getLogger("dispatch.command"))
        await self.command_handler.connect()
        self.logger.info("Command handler ready on %s", SUBJECT)

        # 8. Start metrics server
        metrics_port = self.config.metrics.port if self.config.metrics else 28290
        self.metrics_server = DispatchMetricsServer(self, port=metrics_port)
        await self.metrics_server.start()
        self.logger.info("Metrics server started on port %d", metrics_port)

        # 9. Mark running
        self._running = True
        self.logger.info("kryten-dispatch started successfully (v%s)", __version__)

        # 10. Block on client event loop
        await self.client.run()

    async def _dispatch_event(self, event, is_whisper: bool) -> None:
        try:
            self.events_processed += 1
            message = from_kryten_event(
                event,
                platform="cytube",
                is_whisper=is_whisper,
                owner_level=self.config.admin.owner_level,
                moderator_level=self.config.admin.moderator_level,
            )
            await self.dispatcher.process_message(message)
        except Exception:
            self.logger.exception(
                "%s handler error for %s", "pm" if is_whisper else "chatmsg", getattr(event, "username", "?"),
            )

    # ══════════════════════════════════════════════════════════
    #  Hot reload
    # ══════════════════════════════════════════════════════════

    async def reload_config(self) -> bool:
        """Re-read config.yaml and apply it. Invalid files change nothing."""
        try:
            new_config = load_config(str(self.config_path))
        except Exception as e:
            self.logger.error("Config reload failed: %s", e)
            return False
        self.apply_config(new_config)
        self.logger.info("Config reloaded: %d command(s)", len(self.registry))
        return True

    def apply_config(self, new_config: DispatchConfig) -> None:
        """Apply a validated config to all components."""
        self.config = new_config
        self.ledger.update_config(new_config)
        self.governor.update_config(new_config.quotas)
        self.router.update_config(new_config.outbound)
        self.builtins.update_config(new_config)
        self.chat_handler.update_config(new_config)
        self.dispatcher.update_config(new_config)
        self.registry.replace_all(
            build_descriptors(new_config.commands, self.dispatcher.handler_keys, logging.getLogger("dispatch.registry"))
        )
        longest = max((d.cooldown_seconds for d in self.registry.descriptors()), default=0)
        self.governor.prune(self.clock(), max_cooldown=longest)

    # ══════════════════════════════════════════════════════════
    #  Shutdown
    # ══════════════════════════════════════════════════════════

    async def stop(self) -> None:
        """Gracefully shut down: ingestion → dispatcher → governor → router → transport."""
        if not self._running:
            return
        self.logger.info("Shutting down kryten-dispatch...")
        self._running = False

        if self.dispatcher:
            await self.dispatcher.shutdown()
        if self.governor:
            await self.governor.close()
        if self.router:
            await self.router.stop()
        for sender in self.webhook_senders.values():
            await sender.stop()
        if self.metrics_server:
            await self.metrics_server.stop()
        if self.kryten_sender:
            self.kryten_sender.mark_connected(False)
        if self.client:
            await self.client.stop()

        self.logger.info("kryten-dispatch stopped.")
