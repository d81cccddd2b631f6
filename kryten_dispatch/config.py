"""Configuration system for kryten-dispatch.

All Pydantic models are defined here with sensible defaults. The command
table, quota limits and outbound tunables are hot-reloadable; connection
settings (NATS, channels, database path) only apply at startup.
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any

import yaml
from kryten import KrytenConfig
from pydantic import BaseModel, Field, field_validator

from .command_registry import EventType


# ═══════════════════════════════════════════════════════════════
#  Core
# ═══════════════════════════════════════════════════════════════

class DatabaseConfig(BaseModel):
    path: str = "dispatch.db"


class BotConfig(BaseModel):
    username: str = "DispatchBot"
    help_message: str = "Type {prefix}commands to see what you can use here."
    currency_name: str = "coins"


class ParsingConfig(BaseModel):
    """Characters that mark a chat message as a command."""
    prefixes: list[str] = Field(default=["!", "$"])

    @field_validator("prefixes")
    @classmethod
    def _non_empty(cls, value: list[str]) -> list[str]:
        prefixes = [p for p in value if p]
        if not prefixes:
            raise ValueError("at least one command prefix is required")
        return prefixes


class ViewerDefaultsConfig(BaseModel):
    starting_coins: int = 100
    starting_karma: int = 100
    min_karma: int = 0
    max_karma: int = 999


class AdminConfig(BaseModel):
    """CyTube rank thresholds mapped onto viewer roles."""
    owner_level: int = 4
    moderator_level: int = 3


# ═══════════════════════════════════════════════════════════════
#  Commands & Quotas
# ═══════════════════════════════════════════════════════════════

class CommandConfig(BaseModel):
    """One command descriptor as written in config.yaml."""
    name: str
    handler: str | None = Field(default=None, description="Handler key; defaults to the command name")
    alias: str | None = None
    description: str = ""
    permission: str = "everyone"
    cooldown_seconds: float = 0
    enabled: bool = True
    event_type: EventType = EventType.NONE
    max_uses_per_window: int = Field(default=0, ge=0, description="0 = no per-command cap")
    counts_toward_quota: bool = True


def default_commands() -> list[CommandConfig]:
    """Built-in command table used when config.yaml lists none."""
    return [
        CommandConfig(name="help", description="Where to find documentation"),
        CommandConfig(name="commands", description="List the commands you can use"),
        CommandConfig(name="bal", handler="balance", alias="coins",
                      description="Show your coins and karma"),
        CommandConfig(name="whatiskarma", handler="karma", alias="karma",
                      description="Explain your karma level"),
        CommandConfig(name="giftcoins", cooldown_seconds=30,
                      description="Give some of your coins to another viewer"),
        CommandConfig(name="givecoins", permission="moderator",
                      description="Mint coins for a viewer"),
        CommandConfig(name="setkarma", permission="moderator",
                      description="Set a viewer's karma"),
        CommandConfig(name="ban", permission="moderator",
                      description="Ignore all commands from a viewer"),
        CommandConfig(name="unban", permission="moderator",
                      description="Restore command access for a viewer"),
        CommandConfig(name="reload", permission="broadcaster",
                      description="Reload config.yaml"),
    ]


class QuotaConfig(BaseModel):
    """Global sliding-window quotas shared by every viewer."""
    enabled: bool = True
    window_days: float = Field(default=5.0, ge=0, description="0 = executions never expire")
    capacities: dict[str, int] = Field(
        default={"good": 10, "bad": 3, "neutral": 10},
        description="Event type → max executions per window (0 = unlimited)",
    )
    total_capacity: int = Field(default=0, ge=0, description="All counted event types combined (0 = unlimited)")
    flush_delay_seconds: float = 1.0

    @field_validator("capacities")
    @classmethod
    def _known_event_types(cls, value: dict[str, int]) -> dict[str, int]:
        normalized: dict[str, int] = {}
        for key, capacity in value.items():
            event_type = EventType(key.lower())
            if capacity < 0:
                raise ValueError(f"capacity for '{key}' must be >= 0")
            normalized[event_type.value] = capacity
        return normalized


# ═══════════════════════════════════════════════════════════════
#  Outbound
# ═══════════════════════════════════════════════════════════════

class PlatformOutboundConfig(BaseModel):
    max_length: int = Field(default=200, gt=0)
    mention_user: bool = True


def default_platforms() -> dict[str, PlatformOutboundConfig]:
    return {
        "twitch": PlatformOutboundConfig(max_length=500),
        "youtube": PlatformOutboundConfig(max_length=200),
        "cytube": PlatformOutboundConfig(max_length=240, mention_user=True),
        "discord": PlatformOutboundConfig(max_length=2000),
    }


class OutboundConfig(BaseModel):
    part_delay_seconds: float = 0.2
    max_retries: int = 3
    retry_backoff_seconds: float = 1.0
    default_max_length: int = 200
    platforms: dict[str, PlatformOutboundConfig] = Field(default_factory=default_platforms)

    def for_platform(self, platform: str) -> PlatformOutboundConfig:
        found = self.platforms.get(platform.lower())
        if found is not None:
            return found
        return PlatformOutboundConfig(max_length=self.default_max_length)


class WebhookConfig(BaseModel):
    url: str
    content_field: str = "content"
    enabled: bool = True
    timeout_seconds: float = 10.0


# ═══════════════════════════════════════════════════════════════
#  Passive chat
# ═══════════════════════════════════════════════════════════════

class RewardConfig(BaseModel):
    reward_id: str
    name: str = "reward"
    coins: int = Field(default=0, ge=0)
    enabled: bool = True


class RewardsConfig(BaseModel):
    enabled: bool = True
    rewards: list[RewardConfig] = Field(default_factory=list)
    message: str = "Thank you for redeeming '{name}'! You received {coins} coins."


# ═══════════════════════════════════════════════════════════════
#  Top-Level Dispatch Config
# ═══════════════════════════════════════════════════════════════

class DispatchConfig(KrytenConfig):
    """Full dispatch config — extends KrytenConfig with dispatch sub-models."""

    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    bot: BotConfig = Field(default_factory=BotConfig)
    ignored_users: list[str] = Field(default_factory=list)
    parsing: ParsingConfig = Field(default_factory=ParsingConfig)
    viewers: ViewerDefaultsConfig = Field(default_factory=ViewerDefaultsConfig)
    admin: AdminConfig = Field(default_factory=AdminConfig)

    commands: list[CommandConfig] = Field(default_factory=default_commands)
    quotas: QuotaConfig = Field(default_factory=QuotaConfig)

    outbound: OutboundConfig = Field(default_factory=OutboundConfig)
    webhooks: dict[str, WebhookConfig] = Field(default_factory=dict)

    rewards: RewardsConfig = Field(default_factory=RewardsConfig)
    # NOTE: metrics is inherited from KrytenConfig (kryten.config.MetricsConfig)


# ═══════════════════════════════════════════════════════════════
#  Config Loading
# ═══════════════════════════════════════════════════════════════

def _expand_env_vars(obj: Any) -> Any:
    """Recursively expand ${VAR} and ${VAR:-default} in string values."""
    if isinstance(obj, str):
        return re.sub(
            r"\$\{([^}:]+)(?::-(.*?))?\}",
            lambda m: os.environ.get(m.group(1), m.group(2) or ""),
            obj,
        )
    elif isinstance(obj, dict):
        return {k: _expand_env_vars(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_expand_env_vars(v) for v in obj]
    return obj


def load_config(config_path: str) -> DispatchConfig:
    """Load and validate YAML config file into DispatchConfig."""
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(path, "r", encoding="utf-8") as f:
        raw = yaml.safe_load(f)

    if not isinstance(raw, dict):
        raise ValueError("Config file must contain a YAML mapping at the top level.")

    raw = _expand_env_vars(raw)
    return DispatchConfig(**raw)
