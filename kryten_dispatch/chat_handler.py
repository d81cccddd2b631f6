"""Passive chat handler — non-command messages.

Platforms that attach a channel-points style ``reward_id`` to a chat message
get the configured coin award credited to the viewer.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .config import DispatchConfig, RewardConfig
    from .message import ChatMessage
    from .viewer_ledger import Viewer, ViewerLedger


class PassiveChatHandler:
    """Handles chat messages that are not commands."""

    def __init__(
        self,
        config: DispatchConfig,
        ledger: ViewerLedger,
        logger: logging.Logger | None = None,
    ) -> None:
        self._ledger = ledger
        self._logger = logger or logging.getLogger("dispatch.chat")
        self.update_config(config)

        self.rewards_redeemed = 0

    def update_config(self, new_config: DispatchConfig) -> None:
        self._config = new_config
        self._rewards: dict[str, RewardConfig] = {
            r.reward_id: r for r in new_config.rewards.rewards if r.enabled
        }

    async def handle(self, message: ChatMessage, viewer: Viewer) -> str | None:
        if not self._config.rewards.enabled:
            return None
        reward_id = message.extras.get("reward_id")
        if not reward_id:
            return None
        reward = self._rewards.get(str(reward_id))
        if reward is None:
            self._logger.debug("Unknown reward id %s from %s", reward_id, message.username)
            return None

        if reward.coins > 0:
            await self._ledger.give_coins(viewer, reward.coins, "reward", reason=reward.name)
        self.rewards_redeemed += 1
        self._logger.info("%s redeemed '%s' (+%d)", viewer.username, reward.name, reward.coins)
        return self._config.rewards.message.format(
            name=reward.name, coins=reward.coins, username=viewer.display_name,
        )
