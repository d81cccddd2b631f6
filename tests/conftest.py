"""Shared test fixtures for kryten-dispatch."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, AsyncGenerator
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
import yaml

from kryten_dispatch.builtin_commands import BuiltinCommands
from kryten_dispatch.chat_handler import PassiveChatHandler
from kryten_dispatch.command_registry import CommandRegistry, build_descriptors
from kryten_dispatch.config import DispatchConfig, load_config
from kryten_dispatch.cooldown_governor import CooldownGovernor
from kryten_dispatch.database import DispatchDatabase
from kryten_dispatch.dispatcher import CommandDispatcher
from kryten_dispatch.main import DispatchApp
from kryten_dispatch.message import ChatMessage, normalize_message
from kryten_dispatch.outbound_router import OutboundRouter
from kryten_dispatch.viewer_ledger import ViewerLedger


# ── Minimal config dict matching DispatchConfig schema ───────

def make_config_dict(**overrides) -> dict:
    """Build a valid config dict with sensible test defaults."""
    base = {
        "nats": {"servers": ["nats://localhost:4222"]},
        "channels": [{"domain": "cytu.be", "channel": "testchannel"}],
        "service": {"name": "dispatch"},
        "database": {"path": ":memory:"},
        "bot": {"username": "TestBot"},
        "ignored_users": ["IgnoredBot"],
        "viewers": {"starting_coins": 100, "starting_karma": 100, "min_karma": 0, "max_karma": 999},
        "quotas": {
            "enabled": True,
            "window_days": 5,
            "capacities": {"good": 10, "bad": 3, "neutral": 10},
            "total_capacity": 0,
            "flush_delay_seconds": 0.01,
        },
        "outbound": {
            "part_delay_seconds": 0,
            "max_retries": 2,
            "retry_backoff_seconds": 0,
            "platforms": {
                "twitch": {"max_length": 500, "mention_user": False},
                "cytube": {"max_length": 240, "mention_user": False},
            },
        },
        "rewards": {
            "enabled": True,
            "rewards": [{"reward_id": "rwd-1", "name": "Hydrate", "coins": 50}],
        },
    }
    base.update(overrides)
    return base


@pytest.fixture
def sample_config_dict() -> dict:
    """Return a config dict suitable for tests."""
    return make_config_dict()


@pytest.fixture
def sample_config(sample_config_dict: dict) -> DispatchConfig:
    """Return a parsed DispatchConfig."""
    return DispatchConfig(**sample_config_dict)


@pytest.fixture
def tmp_db_path(tmp_path: Path) -> str:
    """Return a temporary SQLite database path."""
    return str(tmp_path / "test_dispatch.db")


@pytest_asyncio.fixture
async def database(tmp_db_path: str) -> AsyncGenerator[DispatchDatabase, None]:
    """Provide an initialized database with temp file."""
    db = DispatchDatabase(tmp_db_path, logging.getLogger("test"))
    await db.initialize()
    yield db


@pytest.fixture
def mock_client() -> MagicMock:
    """Return a mock KrytenClient with async methods."""
    client = MagicMock()
    client.send_pm = AsyncMock(return_value="corr-id-123")
    client.send_chat = AsyncMock(return_value="corr-id-456")
    client.connect = AsyncMock()
    client.run = AsyncMock()
    client.stop = AsyncMock()
    client.subscribe = AsyncMock()
    client.subscribe_request_reply = AsyncMock()
    return client


# ── Clock & platform fakes ──────────────────────────────────

class FakeClock:
    """Manually advanced epoch clock."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeSender:
    """Records every part the router hands to it."""

    def __init__(self, connected: bool = True, failures: int = 0) -> None:
        self.connected = connected
        self.failures = failures
        self.sent: list[tuple[str, str | None, str | None]] = []

    def is_connected(self) -> bool:
        return self.connected

    async def send(self, text: str, *, channel: str | None = None, whisper_to: str | None = None) -> None:
        if self.failures > 0:
            self.failures -= 1
            raise ConnectionError("simulated send failure")
        self.sent.append((text, channel, whisper_to))

    @property
    def texts(self) -> list[str]:
        return [t for t, _, _ in self.sent]


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_sender() -> FakeSender:
    return FakeSender()


def make_message(
    text: str,
    username: str = "alice",
    platform: str = "twitch",
    roles: list[str] | None = None,
    user_id: str | None = None,
    is_whisper: bool = False,
    **extras: Any,
) -> ChatMessage:
    """Build a normalized message with optional role badges."""
    if roles is not None:
        extras["roles"] = roles
    return normalize_message(
        platform=platform,
        text=text,
        username=username,
        user_id=user_id,
        channel="testchannel",
        is_whisper=is_whisper,
        extras=extras,
    )


# ── Wired components ────────────────────────────────────────

@pytest_asyncio.fixture
async def ledger(sample_config: DispatchConfig, database: DispatchDatabase) -> ViewerLedger:
    """ViewerLedger over the temp database."""
    return ViewerLedger(sample_config, database, logging.getLogger("test"))


@pytest.fixture
def registry() -> CommandRegistry:
    return CommandRegistry(logging.getLogger("test"))


@pytest.fixture
def governor(sample_config: DispatchConfig) -> CooldownGovernor:
    """Governor without a persistent store."""
    return CooldownGovernor(sample_config.quotas, logger=logging.getLogger("test"))


@pytest.fixture
def router(sample_config: DispatchConfig, fake_sender: FakeSender) -> OutboundRouter:
    """Router with the fake sender registered for twitch (worker not started)."""
    r = OutboundRouter(sample_config.outbound, logging.getLogger("test"))
    r.register_sender("twitch", fake_sender)
    return r


@pytest_asyncio.fixture
async def dispatcher(
    sample_config: DispatchConfig,
    registry: CommandRegistry,
    governor: CooldownGovernor,
    ledger: ViewerLedger,
    router: OutboundRouter,
    clock: FakeClock,
) -> AsyncGenerator[CommandDispatcher, None]:
    """Dispatcher wired with the built-in commands and default command table."""
    builtins = BuiltinCommands(sample_config, ledger, registry, logger=logging.getLogger("test"))
    d = CommandDispatcher(
        config=sample_config,
        registry=registry,
        governor=governor,
        ledger=ledger,
        router=router,
        handlers=builtins.handler_map(),
        chat_handler=PassiveChatHandler(sample_config, ledger, logging.getLogger("test")),
        logger=logging.getLogger("test"),
        clock=clock,
    )
    registry.replace_all(build_descriptors(sample_config.commands, d.handler_keys))
    yield d
    await d.shutdown()


# ── MockKrytenClient ────────────────────────────────────────

class MockKrytenClient:
    """Mock kryten-py client for integration testing.

    Records all method calls for assertion.
    """

    def __init__(self) -> None:
        self.sent_pms: list[tuple[str, str, str]] = []
        self.sent_chats: list[tuple[str, str]] = []
        self._handlers: dict[str, list] = {}
        self._request_reply_handlers: dict[str, Any] = {}

    async def send_pm(
        self, channel: str, username: str, message: str, *, domain: str | None = None,
    ) -> str:
        self.sent_pms.append((channel, username, message))
        return "mock-corr-id"

    async def send_chat(
        self, channel: str, message: str, *, domain: str | None = None,
    ) -> str:
        self.sent_chats.append((channel, message))
        return "mock-corr-id"

    async def connect(self) -> None:
        pass

    async def run(self) -> None:
        pass

    async def stop(self) -> None:
        pass

    async def subscribe_request_reply(self, subject: str, handler: Any) -> None:
        self._request_reply_handlers[subject] = handler

    def on(self, event_name: str, channel: str | None = None, domain: str | None = None):
        """Match kryten-py's ``on()`` decorator signature."""
        def decorator(func):
            self._handlers.setdefault(event_name, []).append(func)
            return func
        return decorator

    async def fire_event(self, event_name: str, event: Any) -> None:
        """Test helper: simulate an incoming event."""
        for handler in self._handlers.get(event_name, []):
            await handler(event)


@pytest.fixture
def mock_kryten_client() -> MockKrytenClient:
    """Return a MockKrytenClient for integration tests."""
    return MockKrytenClient()


# ── Application ─────────────────────────────────────────────

@pytest_asyncio.fixture
async def app(tmp_path: Path, tmp_db_path: str, clock: FakeClock) -> AsyncGenerator[DispatchApp, None]:
    """DispatchApp with components built over a temp config and database (no NATS)."""
    config_path = tmp_path / "config.yaml"
    config_path.write_text(yaml.dump(make_config_dict(database={"path": tmp_db_path})))
    dispatch_app = DispatchApp(str(config_path), clock=clock)
    dispatch_app.build_components(load_config(str(config_path)))
    await dispatch_app.db.initialize()
    yield dispatch_app
    await dispatch_app.dispatcher.shutdown()
    await dispatch_app.governor.close()
