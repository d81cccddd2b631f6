"""Tests for kryten_dispatch.config module."""

from __future__ import annotations

from pathlib import Path

import pytest
import yaml
from pydantic import ValidationError

from kryten_dispatch.command_registry import EventType
from kryten_dispatch.config import (
    CommandConfig,
    DispatchConfig,
    OutboundConfig,
    ParsingConfig,
    QuotaConfig,
    load_config,
)
from tests.conftest import make_config_dict


class TestDispatchConfig:
    """Test DispatchConfig model parsing and validation."""

    def test_minimal_config(self):
        """Config with only required fields (nats, channels) should parse."""
        cfg = DispatchConfig(
            nats={"servers": ["nats://localhost:4222"]},
            channels=[{"domain": "cytu.be", "channel": "test"}],
        )
        assert cfg.database.path == "dispatch.db"
        assert cfg.bot.username == "DispatchBot"
        assert cfg.parsing.prefixes == ["!", "$"]

    def test_full_config(self, sample_config_dict: dict):
        """Full config dict should parse correctly."""
        cfg = DispatchConfig(**sample_config_dict)
        assert cfg.bot.username == "TestBot"
        assert cfg.quotas.capacities == {"good": 10, "bad": 3, "neutral": 10}
        assert cfg.rewards.rewards[0].reward_id == "rwd-1"
        assert cfg.channels[0].channel == "testchannel"

    def test_viewer_defaults(self):
        cfg = DispatchConfig(**make_config_dict(viewers={}))
        assert cfg.viewers.starting_coins == 100
        assert cfg.viewers.starting_karma == 100
        assert cfg.viewers.min_karma == 0
        assert cfg.viewers.max_karma == 999

    def test_default_command_table(self):
        """Without a commands section the built-in table is used."""
        cfg = DispatchConfig(**make_config_dict())
        names = {c.name for c in cfg.commands}
        assert {"help", "commands", "bal", "whatiskarma", "giftcoins", "ban", "reload"} <= names
        bal = next(c for c in cfg.commands if c.name == "bal")
        assert bal.handler == "balance"
        assert bal.alias == "coins"

    def test_commands_override(self):
        cfg = DispatchConfig(**make_config_dict(commands=[
            {"name": "raid", "handler": "help", "event_type": "bad", "cooldown_seconds": 30},
        ]))
        assert len(cfg.commands) == 1
        assert cfg.commands[0].event_type is EventType.BAD


class TestQuotaConfig:

    def test_defaults(self):
        q = QuotaConfig()
        assert q.window_days == 5.0
        assert q.capacities == {"good": 10, "bad": 3, "neutral": 10}
        assert q.total_capacity == 0

    def test_capacity_keys_normalized(self):
        q = QuotaConfig(capacities={"GOOD": 2})
        assert q.capacities == {"good": 2}

    def test_unknown_event_type_rejected(self):
        with pytest.raises(ValidationError):
            QuotaConfig(capacities={"chaotic": 1})

    def test_negative_capacity_rejected(self):
        with pytest.raises(ValidationError):
            QuotaConfig(capacities={"good": -1})

    def test_negative_window_rejected(self):
        with pytest.raises(ValidationError):
            QuotaConfig(window_days=-1)


class TestParsingAndOutbound:

    def test_empty_prefixes_rejected(self):
        with pytest.raises(ValidationError):
            ParsingConfig(prefixes=[""])

    def test_negative_max_uses_rejected(self):
        with pytest.raises(ValidationError):
            CommandConfig(name="x", max_uses_per_window=-1)

    def test_for_platform_known(self):
        out = OutboundConfig()
        assert out.for_platform("Twitch").max_length == 500
        assert out.for_platform("youtube").max_length == 200

    def test_for_platform_unknown_uses_default(self):
        out = OutboundConfig(default_max_length=321)
        assert out.for_platform("kick").max_length == 321


class TestLoadConfig:
    """Test YAML config loading."""

    def test_load_config_from_file(self, tmp_path: Path):
        path = tmp_path / "config.yaml"
        path.write_text(yaml.dump(make_config_dict()))
        cfg = load_config(str(path))
        assert cfg.bot.username == "TestBot"

    def test_load_config_missing_file(self):
        with pytest.raises(FileNotFoundError):
            load_config("/nonexistent/config.yaml")

    def test_load_config_non_mapping(self, tmp_path: Path):
        path = tmp_path / "config.yaml"
        path.write_text("- just\n- a list\n")
        with pytest.raises(ValueError):
            load_config(str(path))

    def test_env_var_expansion(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("DISPATCH_HOOK", "https://hooks.example/abc")
        data = make_config_dict(webhooks={
            "discord": {"url": "${DISPATCH_HOOK}"},
            "slack": {"url": "${MISSING_HOOK:-https://fallback.example}"},
        })
        path = tmp_path / "config.yaml"
        path.write_text(yaml.dump(data))
        cfg = load_config(str(path))
        assert cfg.webhooks["discord"].url == "https://hooks.example/abc"
        assert cfg.webhooks["slack"].url == "https://fallback.example"
