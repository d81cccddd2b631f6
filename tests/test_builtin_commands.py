"""Tests for kryten_dispatch.builtin_commands module."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from kryten_dispatch.builtin_commands import BuiltinCommands, karma_emoji
from kryten_dispatch.command_registry import CommandDescriptor, CommandRegistry, build_descriptors
from kryten_dispatch.config import DispatchConfig
from kryten_dispatch.dispatcher import CommandContext, CommandError
from kryten_dispatch.viewer_ledger import Viewer, ViewerLedger
from tests.conftest import make_message


def _ctx(viewer: Viewer, *args: str, command: str = "test", prefix: str = "!") -> CommandContext:
    return CommandContext(
        message=make_message(f"{prefix}{command}", username=viewer.username),
        viewer=viewer,
        args=tuple(args),
        descriptor=CommandDescriptor(name=command, handler=command),
        prefix=prefix,
    )


@pytest.fixture
def builtins(sample_config: DispatchConfig, ledger: ViewerLedger, registry: CommandRegistry) -> BuiltinCommands:
    commands = BuiltinCommands(sample_config, ledger, registry)
    registry.replace_all(build_descriptors(sample_config.commands, commands.handler_map()))
    return commands


async def _viewer(ledger: ViewerLedger, username: str, roles: list[str] | None = None) -> Viewer:
    return await ledger.get_or_create(make_message("hi", username=username, roles=roles))


class TestKarmaEmoji:

    @pytest.mark.parametrize("karma,emoji", [
        (250, "🦄"), (200, "🦄"), (150, "😇"), (100, "🙂"), (75, "😐"), (10, "👿"), (9, "💀"), (0, "💀"),
    ])
    def test_thresholds(self, karma: int, emoji: str):
        assert karma_emoji(karma) == emoji


class TestViewerCommands:

    async def test_help(self, builtins: BuiltinCommands, ledger: ViewerLedger):
        alice = await _viewer(ledger, "alice")
        assert await builtins.cmd_help(_ctx(alice, prefix="$")) == "Type $commands to see what you can use here."

    async def test_help_keeps_other_braces(
        self, builtins: BuiltinCommands, ledger: ViewerLedger, sample_config: DispatchConfig,
    ):
        """Only {prefix} is substituted; any other braces are sent as written."""
        config = sample_config.model_copy(deep=True)
        config.bot.help_message = "Emotes like {Kappa} and {0} work. Try {prefix}commands"
        builtins.update_config(config)
        alice = await _viewer(ledger, "alice")
        assert await builtins.cmd_help(_ctx(alice)) == "Emotes like {Kappa} and {0} work. Try !commands"

    async def test_commands_filtered_by_permission(self, builtins: BuiltinCommands, ledger: ViewerLedger):
        alice = await _viewer(ledger, "alice")
        reply = await builtins.cmd_commands(_ctx(alice))
        assert reply.startswith("Available commands: ")
        assert "!bal" in reply
        assert "!givecoins" not in reply
        assert "!reload" not in reply

        boss = await _viewer(ledger, "boss", roles=["broadcaster"])
        assert "!reload" in await builtins.cmd_commands(_ctx(boss))

    async def test_commands_hides_disabled(
        self, builtins: BuiltinCommands, ledger: ViewerLedger, registry: CommandRegistry,
    ):
        registry.register(CommandDescriptor(name="raid", handler="help", enabled=False))
        alice = await _viewer(ledger, "alice")
        assert "!raid" not in await builtins.cmd_commands(_ctx(alice))

    async def test_balance(self, builtins: BuiltinCommands, ledger: ViewerLedger):
        vip = await _viewer(ledger, "vera", roles=["vip"])
        await ledger.give_coins(vip, 1900, "test")
        reply = await builtins.cmd_balance(_ctx(vip))
        assert reply == "💰 Balance: 2,000 coins\n📊 Karma: 100 🙂\n🏷️ Role: VIP"

    async def test_karma(self, builtins: BuiltinCommands, ledger: ViewerLedger):
        alice = await _viewer(ledger, "alice")
        await ledger.set_karma(alice, 160)
        assert (await builtins.cmd_karma(_ctx(alice))).endswith("Yours is 160 😇")


class TestGiftCoins:

    async def test_gift(self, builtins: BuiltinCommands, ledger: ViewerLedger):
        alice = await _viewer(ledger, "alice")
        bob = await _viewer(ledger, "Bob")
        reply = await builtins.cmd_giftcoins(_ctx(alice, "@bob", "30"))
        assert reply == "Successfully gave 30 coins to Bob. You now have 70 coins remaining."
        assert bob.coins == 130

    async def test_usage(self, builtins: BuiltinCommands, ledger: ViewerLedger):
        alice = await _viewer(ledger, "alice")
        with pytest.raises(CommandError, match="Usage: !giftcoins"):
            await builtins.cmd_giftcoins(_ctx(alice, "bob"))

    @pytest.mark.parametrize("amount", ["0", "-5", "lots"])
    async def test_invalid_amount(self, builtins: BuiltinCommands, ledger: ViewerLedger, amount: str):
        alice = await _viewer(ledger, "alice")
        await _viewer(ledger, "bob")
        with pytest.raises(CommandError, match="valid positive number"):
            await builtins.cmd_giftcoins(_ctx(alice, "bob", amount))

    async def test_insufficient(self, builtins: BuiltinCommands, ledger: ViewerLedger):
        alice = await _viewer(ledger, "alice")
        await _viewer(ledger, "bob")
        with pytest.raises(CommandError, match="You have 100 but tried to give 1,000"):
            await builtins.cmd_giftcoins(_ctx(alice, "bob", "1,000"))

    async def test_unknown_target(self, builtins: BuiltinCommands, ledger: ViewerLedger):
        alice = await _viewer(ledger, "alice")
        with pytest.raises(CommandError, match="Viewer 'ghost' not found"):
            await builtins.cmd_giftcoins(_ctx(alice, "ghost", "5"))

    async def test_self_gift(self, builtins: BuiltinCommands, ledger: ViewerLedger):
        alice = await _viewer(ledger, "alice")
        with pytest.raises(CommandError, match="yourself"):
            await builtins.cmd_giftcoins(_ctx(alice, "alice", "5"))
        assert alice.coins == 100


class TestModeratorCommands:

    async def test_givecoins(self, builtins: BuiltinCommands, ledger: ViewerLedger):
        mod = await _viewer(ledger, "mod", roles=["moderator"])
        bob = await _viewer(ledger, "bob")
        reply = await builtins.cmd_givecoins(_ctx(mod, "bob", "500"))
        assert reply == "Gave 500 coins to bob. They now have 600."
        assert bob.coins == 600
        assert mod.coins == 100

    async def test_givecoins_all(self, builtins: BuiltinCommands, ledger: ViewerLedger):
        mod = await _viewer(ledger, "mod", roles=["moderator"])
        bob = await _viewer(ledger, "bob")
        assert await builtins.cmd_givecoins(_ctx(mod, "all", "5")) == "Gave 5 coins to all viewers."
        assert bob.coins == 105
        assert mod.coins == 105

    async def test_setkarma(self, builtins: BuiltinCommands, ledger: ViewerLedger):
        mod = await _viewer(ledger, "mod", roles=["moderator"])
        await _viewer(ledger, "bob")
        assert await builtins.cmd_setkarma(_ctx(mod, "bob", "5000")) == "Set bob's karma from 100 to 999."

    async def test_setkarma_not_a_number(self, builtins: BuiltinCommands, ledger: ViewerLedger):
        mod = await _viewer(ledger, "mod", roles=["moderator"])
        with pytest.raises(CommandError, match="valid number"):
            await builtins.cmd_setkarma(_ctx(mod, "bob", "high"))

    async def test_ban_and_unban(self, builtins: BuiltinCommands, ledger: ViewerLedger):
        mod = await _viewer(ledger, "mod", roles=["moderator"])
        troll = await _viewer(ledger, "troll")
        assert await builtins.cmd_ban(_ctx(mod, "troll")) == "⛔ troll can no longer use commands."
        assert troll.is_banned
        assert await builtins.cmd_ban(_ctx(mod, "troll")) == "troll is already banned."
        assert await builtins.cmd_unban(_ctx(mod, "troll")) == "✅ troll can use commands again."
        assert not troll.is_banned
        assert await builtins.cmd_unban(_ctx(mod, "troll")) == "troll is not banned."

    async def test_ban_refusals(self, builtins: BuiltinCommands, ledger: ViewerLedger):
        mod = await _viewer(ledger, "mod", roles=["moderator"])
        await _viewer(ledger, "boss", roles=["broadcaster"])
        with pytest.raises(CommandError, match="yourself"):
            await builtins.cmd_ban(_ctx(mod, "mod"))
        with pytest.raises(CommandError, match="broadcaster"):
            await builtins.cmd_ban(_ctx(mod, "boss"))
        with pytest.raises(CommandError, match="Usage: !ban"):
            await builtins.cmd_ban(_ctx(mod))


class TestReload:

    async def test_reload_success(self, sample_config: DispatchConfig, ledger: ViewerLedger, registry: CommandRegistry):
        callback = AsyncMock(return_value=True)
        commands = BuiltinCommands(sample_config, ledger, registry, reload_callback=callback)
        registry.replace_all(build_descriptors(sample_config.commands, commands.handler_map()))
        boss = await _viewer(ledger, "boss", roles=["broadcaster"])
        reply = await commands.cmd_reload(_ctx(boss))
        callback.assert_awaited_once()
        assert reply == f"✅ Config reloaded. {len(sample_config.commands)} command(s) active."

    async def test_reload_failure(self, sample_config: DispatchConfig, ledger: ViewerLedger, registry: CommandRegistry):
        commands = BuiltinCommands(sample_config, ledger, registry, reload_callback=AsyncMock(return_value=False))
        boss = await _viewer(ledger, "boss", roles=["broadcaster"])
        with pytest.raises(CommandError, match="reload failed"):
            await commands.cmd_reload(_ctx(boss))

    async def test_reload_unavailable(self, builtins: BuiltinCommands, ledger: ViewerLedger):
        boss = await _viewer(ledger, "boss", roles=["broadcaster"])
        with pytest.raises(CommandError, match="not available"):
            await builtins.cmd_reload(_ctx(boss))
