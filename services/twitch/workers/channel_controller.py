import asyncio
from enum import Enum
from functools import partial
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from services.twitch.api.errors import UpstreamUnavailable
from services.twitch.models.events import (
    CHANNEL_EVENTS,
    ChannelEvent,
    ConnectFailed,
    Connected,
    Crashed,
    Disconnected,
    RateLimited,
    Reconnecting,
    UpstreamEvent,
    normalize_channel,
)
from shared.logging.logger import get_logger

log = get_logger("twitch.channel_controller")


class ConnectionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


STATUS_CONNECTED = "I've connected to Twitch Chat. So many voices…"
STATUS_DISCONNECTED = (
    "I've disconnected from Twitch Chat. "
    "I will attempt to reconnect for as long as it takes."
)
STATUS_RECONNECTING = "Attempting to reconnect…"
STATUS_CONNECT_FAILED = (
    "I've failed to connect to Twitch Chat after reaching the max number of retries!"
)
STATUS_RATE_LIMITED = "I've encountered a rate limitation! Check my logs."
STATUS_CRASHED = "I've encountered an unhandled error, and will now exit:```{}```"


def _retrieve(task: asyncio.Task) -> None:
    # Results of shared tasks may have no waiter left
    if not task.cancelled():
        task.exception()


class ChannelController:
    """
    Owner of the single upstream Twitch chat connection.

    Responsibilities:
    - Own the TwitchChatClient lifecycle (start, force_reconnect, close)
    - Track the connection state machine and post a status line for
      every transition
    - Make joins idempotent against the client's membership list, and
      collapse concurrent joins of one channel into a single upstream
      join whose result every caller shares
    - Hand channel events to the router hook, lifecycle events to the
      lifecycle hook
    """

    def __init__(
        self,
        *,
        client,
        notifier=None,
        on_connected: Optional[Callable[[bool], Awaitable[Any]]] = None,
        on_lifecycle: Optional[Callable[[str, Any], None]] = None,
        on_channel_event: Optional[Callable[[ChannelEvent], None]] = None,
        on_fatal: Optional[Callable[[str, str], None]] = None,
    ):
        self._client = client
        self._notifier = notifier
        self._on_connected = on_connected
        self._on_lifecycle = on_lifecycle
        self._on_channel_event = on_channel_event
        self._on_fatal = on_fatal

        self.state = ConnectionState.DISCONNECTED
        self._has_connected = False

        self._inflight_joins: Dict[str, asyncio.Task] = {}
        self._inflight_parts: Dict[str, asyncio.Task] = {}
        self._tasks: Set[asyncio.Task] = set()
        self._pump_task: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------ #
    # Introspection
    # ------------------------------------------------------------------ #

    @property
    def connected(self) -> bool:
        return self.state is ConnectionState.CONNECTED

    @property
    def channels(self) -> List[str]:
        return sorted(self._client.channels)

    def is_joined(self, channel: str) -> bool:
        return normalize_channel(channel) in self._client.channels

    def needs_join(self, channel: str) -> bool:
        """True unless the channel is joined and no part of it is in flight."""
        channel = normalize_channel(channel)
        return channel not in self._client.channels or channel in self._inflight_parts

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    async def start(self) -> None:
        if self._pump_task is not None:
            log.warning("Channel controller already started")
            return

        self._set_state(ConnectionState.CONNECTING)
        self._pump_task = asyncio.create_task(self._pump())
        await self._client.connect()

    async def force_reconnect(self) -> None:
        log.info("Forcing upstream reconnect")
        await self._client.close()
        await self._client.connect()

    async def close(self) -> None:
        await self._client.close()

        tasks = list(self._tasks)
        tasks.extend(self._inflight_joins.values())
        tasks.extend(self._inflight_parts.values())
        if self._pump_task is not None:
            tasks.append(self._pump_task)
            self._pump_task = None

        for task in tasks:
            if not task.done():
                task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        self._tasks.clear()
        self._set_state(ConnectionState.DISCONNECTED)

    # ------------------------------------------------------------------ #
    # Channel operations
    # ------------------------------------------------------------------ #

    async def join(self, channel: str) -> bool:
        """
        Join a channel upstream. Returns False when the bridge was
        already a member (nothing sent), True when a join was performed.
        """
        channel = normalize_channel(channel)
        if not self.connected:
            raise UpstreamUnavailable()

        task = self._inflight_joins.get(channel)
        if task is None:
            if not self.needs_join(channel):
                return False
            task = asyncio.create_task(self._do_join(channel))
            self._inflight_joins[channel] = task
            task.add_done_callback(partial(self._forget, self._inflight_joins, channel))
        else:
            log.debug(f"[#{channel}] Join already in flight, waiting on it")

        return await asyncio.shield(task)

    async def _do_join(self, channel: str) -> bool:
        parting = self._inflight_parts.get(channel)
        if parting is not None:
            await asyncio.wait({parting})

        if self.is_joined(channel):
            return False

        await self._client.join(channel)
        return True

    async def part(self, channel: str) -> None:
        """Best effort: failures are logged, never raised."""
        channel = normalize_channel(channel)

        task = self._inflight_parts.get(channel)
        if task is None:
            task = asyncio.create_task(self._do_part(channel))
            self._inflight_parts[channel] = task
            task.add_done_callback(partial(self._forget, self._inflight_parts, channel))

        await asyncio.shield(task)

    async def _do_part(self, channel: str) -> None:
        joining = self._inflight_joins.get(channel)
        if joining is not None:
            await asyncio.wait({joining})

        try:
            await self._client.part(channel)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.warning(f"[#{channel}] Failed to part channel: {e}")

    @staticmethod
    def _forget(registry: Dict[str, asyncio.Task], channel: str, task: asyncio.Task) -> None:
        if registry.get(channel) is task:
            del registry[channel]
        _retrieve(task)

    async def say(self, channel: str, message: str) -> None:
        if not self.connected:
            raise UpstreamUnavailable()
        await self._client.say(normalize_channel(channel), message)

    async def timeout(self, channel: str, username: str, seconds: int) -> None:
        if not self.connected:
            raise UpstreamUnavailable()
        await self._client.timeout(normalize_channel(channel), username, seconds)

    async def mods(self, channel: str) -> List[str]:
        if not self.connected:
            raise UpstreamUnavailable()
        return list(await self._client.mods(normalize_channel(channel)))

    # ------------------------------------------------------------------ #
    # Event dispatch
    # ------------------------------------------------------------------ #

    async def _pump(self) -> None:
        async for event in self._client.events():
            try:
                self.dispatch(event)
            except TypeError:
                raise
            except Exception as e:
                log.error(f"Error dispatching upstream event {event!r}: {e}")

    def dispatch(self, event: UpstreamEvent) -> None:
        if isinstance(event, Connected):
            first = not self._has_connected
            self._has_connected = True
            self._set_state(ConnectionState.CONNECTED)
            self._notify(STATUS_CONNECTED)
            self._lifecycle(event)
            if self._on_connected is not None:
                self._spawn(self._on_connected(first))

        elif isinstance(event, Disconnected):
            self._set_state(ConnectionState.DISCONNECTED)
            self._notify(STATUS_DISCONNECTED)
            self._lifecycle(event)

        elif isinstance(event, Reconnecting):
            self._set_state(ConnectionState.RECONNECTING)
            self._notify(STATUS_RECONNECTING)
            self._lifecycle(event)

        elif isinstance(event, ConnectFailed):
            self._set_state(ConnectionState.DISCONNECTED)
            self._notify(STATUS_CONNECT_FAILED)
            self._lifecycle(event)

        elif isinstance(event, RateLimited):
            self._notify(STATUS_RATE_LIMITED)
            self._lifecycle(event)
            if self._on_fatal is not None:
                self._on_fatal(event.event_name, event.detail)

        elif isinstance(event, Crashed):
            self._notify(STATUS_CRASHED.format(event.stack or event.message))
            self._lifecycle(event)
            if self._on_fatal is not None:
                self._on_fatal(event.event_name, event.stack or event.message)

        elif isinstance(event, CHANNEL_EVENTS):
            if self._on_channel_event is not None:
                self._on_channel_event(event)

        else:
            raise TypeError(f"Unhandled upstream event type: {type(event).__name__}")

    # ------------------------------------------------------------------ #

    def _set_state(self, state: ConnectionState) -> None:
        if state is not self.state:
            log.debug(f"Upstream state {self.state.value} -> {state.value}")
            self.state = state

    def _notify(self, text: str) -> None:
        if self._notifier is not None:
            self._notifier.post(text)

    def _lifecycle(self, event: UpstreamEvent) -> None:
        if self._on_lifecycle is not None:
            self._on_lifecycle(event.event_name, event.to_payload())

    def _spawn(self, coro: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            log.error(f"Connected hook failed: {exc!r}")


__all__ = ["ChannelController", "ConnectionState"]
