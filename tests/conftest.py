import asyncio
from typing import Any, Dict, List, Optional

import pytest
import pytest_asyncio

from core.config_loader import BridgeConfig
from core.context import BridgeContext
from core.router import Subscriber
from services.discord.status import DisabledStatusReporter
from services.twitch.api.errors import UpstreamUnavailable
from services.twitch.models.events import Connected, Disconnected, normalize_channel


async def settle(rounds: int = 20) -> None:
    """Let queued callbacks and tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


class FakeUpstreamClient:
    """
    Stands in for TwitchChatClient. Records every call, keeps a
    membership set and lets tests push upstream events.
    """

    def __init__(self):
        self.channels = set()
        self.calls: List[tuple] = []
        self.connected = False
        self.join_gate: Optional[asyncio.Event] = None
        self.part_gate: Optional[asyncio.Event] = None
        self.join_errors: Dict[str, Exception] = {}
        self.mods_by_channel: Dict[str, List[str]] = {}
        self._events: asyncio.Queue = asyncio.Queue()

    # lifecycle

    async def connect(self) -> None:
        self.calls.append(("connect",))
        self.connected = True
        self.push(Connected())

    async def close(self) -> None:
        self.calls.append(("close",))
        if self.connected:
            self.drop("client closed")

    async def events(self):
        while True:
            yield await self._events.get()

    def push(self, event) -> None:
        self._events.put_nowait(event)

    def drop(self, reason: str = "connection reset") -> None:
        self.connected = False
        self.channels.clear()
        self.push(Disconnected(reason=reason))

    def reconnect(self) -> None:
        self.connected = True
        self.push(Connected())

    # operations

    async def join(self, channel: str) -> None:
        channel = normalize_channel(channel)
        self.calls.append(("join", channel))
        if not self.connected:
            raise UpstreamUnavailable()
        if self.join_gate is not None:
            await self.join_gate.wait()
        if channel in self.join_errors:
            raise self.join_errors[channel]
        self.channels.add(channel)

    async def part(self, channel: str) -> None:
        channel = normalize_channel(channel)
        self.calls.append(("part", channel))
        # membership only changes once Twitch echoes the PART
        if self.part_gate is not None:
            await self.part_gate.wait()
        self.channels.discard(channel)

    async def say(self, channel: str, message: str) -> None:
        self.calls.append(("say", channel, message))

    async def timeout(self, channel: str, username: str, seconds: int) -> None:
        self.calls.append(("timeout", channel, username, seconds))

    async def mods(self, channel: str) -> List[str]:
        self.calls.append(("mods", channel))
        return list(self.mods_by_channel.get(channel, []))

    # assertions

    def count(self, op: str, channel: Optional[str] = None) -> int:
        return sum(
            1 for call in self.calls
            if call[0] == op and (channel is None or call[1] == channel)
        )


class FakeSubscriber(Subscriber):
    def __init__(self, name: str):
        self._id = name
        self._closed = False
        self.received: List[tuple] = []

    @property
    def id(self) -> str:
        return self._id

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        self._closed = True

    def emit(self, event: str, payload: Any) -> None:
        self.received.append((event, payload))

    def events(self, name: Optional[str] = None) -> List[tuple]:
        return [e for e in self.received if name is None or e[0] == name]


class RecordingNotifier:
    enabled = True

    def __init__(self):
        self.posts: List[str] = []

    def post(self, text: str) -> None:
        self.posts.append(text)

    async def attach(self, bot) -> None:
        return None

    async def drain(self, timeout: float) -> bool:
        return True

    async def close(self) -> None:
        return None


def make_config(**overrides) -> BridgeConfig:
    values = dict(
        twitch_username="relaybot",
        twitch_password="oauth:abc123",
        secret_key="s3cret",
        host="127.0.0.1",
        port=0,
        heartbeat_interval_ms=15000,
    )
    values.update(overrides)
    return BridgeConfig(**values)


@pytest.fixture
def upstream() -> FakeUpstreamClient:
    return FakeUpstreamClient()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest_asyncio.fixture
async def make_context(upstream, notifier):
    """
    Builds bridges wired to the fake upstream. The controller is not
    started and the relay is not listening.
    """
    built = []

    def build(**overrides) -> BridgeContext:
        ctx = BridgeContext(make_config(**overrides), upstream=upstream, status=notifier, enable_discord=False)
        ctx.fatal_grace = 0
        built.append(ctx)
        return ctx

    yield build

    for ctx in built:
        await ctx.gateway.close()
        await ctx.controller.close()
        await ctx.leases.close()
        await ctx.helix.close()


@pytest_asyncio.fixture
async def context(make_context):
    """
    A bridge wired to the fake upstream, connected, relay not listening.
    """
    ctx = make_context()
    await ctx.controller.start()
    await settle()
    assert ctx.controller.connected
    return ctx


@pytest.fixture
def disabled_status() -> DisabledStatusReporter:
    return DisabledStatusReporter()
