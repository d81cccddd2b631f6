"""Built-in command handlers.

Each handler takes a :class:`CommandContext` and returns the reply text.
Usage mistakes raise :class:`CommandError`, so they are replied to without
consuming the caller's cooldown or a quota slot.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Awaitable, Callable

from .dispatcher import CommandContext, CommandError, CommandHandler
from .permissions import has_permission, role_label

if TYPE_CHECKING:
    from .command_registry import CommandRegistry
    from .config import DispatchConfig
    from .viewer_ledger import Viewer, ViewerLedger


# (lower bound, emoji), highest first
_KARMA_EMOJI: tuple[tuple[int, str], ...] = (
    (200, "🦄"),
    (150, "😇"),
    (120, "😊"),
    (90, "🙂"),
    (80, "☺️"),
    (70, "😐"),
    (50, "😕"),
    (30, "😠"),
    (10, "👿"),
)


def karma_emoji(karma: int) -> str:
    for bound, emoji in _KARMA_EMOJI:
        if karma >= bound:
            return emoji
    return "💀"


def _parse_amount(raw: str, allow_zero: bool = False) -> int | None:
    try:
        value = int(raw.replace(",", ""))
    except ValueError:
        return None
    if value < 0 or (value == 0 and not allow_zero):
        return None
    return value


class BuiltinCommands:
    """Viewer, moderator and broadcaster commands shipped with the service."""

    def __init__(
        self,
        config: DispatchConfig,
        ledger: ViewerLedger,
        registry: CommandRegistry,
        reload_callback: Callable[[], Awaitable[bool]] | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._config = config
        self._ledger = ledger
        self._registry = registry
        self._reload_callback = reload_callback
        self._logger = logger or logging.getLogger("dispatch.builtins")

    def update_config(self, new_config: DispatchConfig) -> None:
        self._config = new_config

    def handler_map(self) -> dict[str, CommandHandler]:
        """Handler key → handler, for the dispatcher."""
        return {
            "help": self.cmd_help,
            "commands": self.cmd_commands,
            "balance": self.cmd_balance,
            "karma": self.cmd_karma,
            "giftcoins": self.cmd_giftcoins,
            "givecoins": self.cmd_givecoins,
            "setkarma": self.cmd_setkarma,
            "ban": self.cmd_ban,
            "unban": self.cmd_unban,
            "reload": self.cmd_reload,
        }

    @property
    def _currency(self) -> str:
        return self._config.bot.currency_name

    async def _target(self, ctx: CommandContext, usage: str) -> Viewer:
        if not ctx.args:
            raise CommandError(f"Usage: {ctx.prefix}{usage}")
        name = ctx.args[0].lstrip("@")
        target = await self._ledger.find(name)
        if target is None:
            raise CommandError(f"Viewer '{name}' not found.")
        return target

    # ══════════════════════════════════════════════════════════
    #  Everyone
    # ══════════════════════════════════════════════════════════

    async def cmd_help(self, ctx: CommandContext) -> str:
        return self._config.bot.help_message.replace("{prefix}", ctx.prefix)

    async def cmd_commands(self, ctx: CommandContext) -> str:
        """List enabled commands the caller is allowed to run."""
        names = [
            f"{ctx.prefix}{d.name}"
            for d in self._registry.descriptors()
            if d.enabled and has_permission(ctx.viewer, d.permission)
        ]
        return f"Available commands: {', '.join(names)}"

    async def cmd_balance(self, ctx: CommandContext) -> str:
        viewer = ctx.viewer
        return (
            f"💰 Balance: {viewer.coins:,} {self._currency}\n"
            f"📊 Karma: {viewer.karma} {karma_emoji(viewer.karma)}\n"
            f"🏷️ Role: {role_label(viewer)}"
        )

    async def cmd_karma(self, ctx: CommandContext) -> str:
        karma = ctx.viewer.karma
        return (
            "Karma reflects how you take part in chat. Be active and positive to raise it! "
            f"Yours is {karma} {karma_emoji(karma)}"
        )

    async def cmd_giftcoins(self, ctx: CommandContext) -> str:
        usage = "giftcoins <viewer> <amount>"
        if len(ctx.args) < 2:
            raise CommandError(f"Usage: {ctx.prefix}{usage}")
        amount = _parse_amount(ctx.args[1])
        if amount is None:
            raise CommandError(f"Please specify a valid positive number of {self._currency} to give.")

        sender = ctx.viewer
        if sender.coins < amount:
            raise CommandError(
                f"You don't have enough {self._currency}. "
                f"You have {sender.coins:,} but tried to give {amount:,}."
            )
        target = await self._target(ctx, usage)
        if target.identity_key == sender.identity_key:
            raise CommandError(f"You cannot give {self._currency} to yourself.")

        remaining = await self._ledger.transfer_coins(sender, target, amount, "gift")
        if remaining is None:
            raise CommandError(f"You don't have enough {self._currency}.")
        return (
            f"Successfully gave {amount:,} {self._currency} to {target.display_name}. "
            f"You now have {remaining:,} {self._currency} remaining."
        )

    # ══════════════════════════════════════════════════════════
    #  Moderators
    # ══════════════════════════════════════════════════════════

    async def cmd_givecoins(self, ctx: CommandContext) -> str:
        usage = "givecoins <viewer|all> <amount>"
        if len(ctx.args) < 2:
            raise CommandError(f"Usage: {ctx.prefix}{usage}")
        amount = _parse_amount(ctx.args[1])
        if amount is None:
            raise CommandError(f"Please specify a valid positive number of {self._currency} to give.")

        reason = f"givecoins by {ctx.viewer.username}"
        if ctx.args[0].lower() == "all":
            count = await self._ledger.give_all_coins(amount, "admin_grant", reason)
            self._logger.info("%s gave %d to all %d viewers", ctx.viewer.username, amount, count)
            return f"Gave {amount:,} {self._currency} to all viewers."

        target = await self._target(ctx, usage)
        balance = await self._ledger.give_coins(
            target, amount, "admin_grant", reason, related_user=ctx.viewer.username,
        )
        self._logger.info("%s gave %d to %s", ctx.viewer.username, amount, target.username)
        return f"Gave {amount:,} {self._currency} to {target.display_name}. They now have {balance:,}."

    async def cmd_setkarma(self, ctx: CommandContext) -> str:
        usage = "setkarma <viewer> <amount>"
        if len(ctx.args) < 2:
            raise CommandError(f"Usage: {ctx.prefix}{usage}")
        try:
            karma = int(ctx.args[1])
        except ValueError:
            raise CommandError("Please specify a valid number for karma.") from None

        target = await self._target(ctx, usage)
        old = target.karma
        new = await self._ledger.set_karma(target, karma)
        return f"Set {target.display_name}'s karma from {old} to {new}."

    async def cmd_ban(self, ctx: CommandContext) -> str:
        target = await self._target(ctx, "ban <viewer>")
        if target.identity_key == ctx.viewer.identity_key:
            raise CommandError("You cannot ban yourself.")
        if target.is_broadcaster:
            raise CommandError("The broadcaster cannot be banned.")
        if target.is_banned:
            return f"{target.display_name} is already banned."
        await self._ledger.set_banned(target, True)
        return f"⛔ {target.display_name} can no longer use commands."

    async def cmd_unban(self, ctx: CommandContext) -> str:
        target = await self._target(ctx, "unban <viewer>")
        if not target.is_banned:
            return f"{target.display_name} is not banned."
        await self._ledger.set_banned(target, False)
        return f"✅ {target.display_name} can use commands again."

    # ══════════════════════════════════════════════════════════
    #  Broadcaster
    # ══════════════════════════════════════════════════════════

    async def cmd_reload(self, ctx: CommandContext) -> str:
        if self._reload_callback is None:
            raise CommandError("Config reload is not available.")
        if not await self._reload_callback():
            raise CommandError("❌ Config reload failed. Check the logs.")
        return f"✅ Config reloaded. {len(self._registry)} command(s) active."
