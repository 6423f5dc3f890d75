"""
Downstream command surface.

Every downstream connection gets a `Session`. Requests arrive as an
event name plus a positional argument list, are validated, and are
translated into lease refreshes, router subscriptions and upstream
controller calls. Errors are raised as `GatewayError` (validation and
authentication) or `UpstreamError` (upstream failures); the transport
turns either into the error value of its reply.
"""

import asyncio
import hmac
from collections import deque
from enum import Enum
from typing import Any, Deque, List, Optional, Sequence, Set, Tuple

from core.leases import LeaseTable
from core.router import FanoutRouter, Subscriber
from services.twitch.api.errors import JoinRejected
from services.twitch.models.events import normalize_channel
from shared.logging.logger import get_logger

log = get_logger("core.gateway")


class GatewayError(Exception):
    pass


class ValidationError(GatewayError):
    pass


class NotAuthenticated(GatewayError):
    def __init__(self):
        super().__init__("not authenticated")


class AuthenticationError(GatewayError):
    pass


class SessionState(Enum):
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATED = "authenticated"
    CLOSED = "closed"


class Session:
    def __init__(self, subscriber: Subscriber):
        self.subscriber = subscriber
        self.state = SessionState.UNAUTHENTICATED

    @property
    def id(self) -> str:
        return self.subscriber.id

    @property
    def authenticated(self) -> bool:
        return self.state is SessionState.AUTHENTICATED

    @property
    def closed(self) -> bool:
        return self.state is SessionState.CLOSED

    def __repr__(self) -> str:
        return f"<Session {self.id} {self.state.value}>"


class CommandGateway:
    def __init__(
        self,
        *,
        secret_key: str,
        leases: LeaseTable,
        router: FanoutRouter,
        controller,
        heartbeat_interval_ms: int = 15000,
    ):
        if not secret_key:
            raise ValueError("secret_key must not be empty")

        self._secret_key = secret_key.encode("utf-8")
        self._leases = leases
        self._router = router
        self._controller = controller
        self.heartbeat_interval_ms = int(heartbeat_interval_ms)

        # Joins requested while upstream was not connected, in arrival order
        self._pending: Deque[Tuple[Session, str, asyncio.Future]] = deque()
        self._tasks: Set[asyncio.Task] = set()

        self._handlers = {
            "authenticate": self._handle_authenticate,
            "join": self._handle_join,
            "say": self._handle_say,
            "timeout": self._handle_timeout,
            "mods": self._handle_mods,
            "heartbeat": self._handle_heartbeat,
        }

    # ------------------------------------------------------------------ #
    # Sessions
    # ------------------------------------------------------------------ #

    def open_session(self, subscriber: Subscriber) -> Session:
        session = Session(subscriber)
        log.debug(f"Session opened for {subscriber.id}")
        return session

    def close_session(self, session: Session) -> None:
        if session.closed:
            return

        session.state = SessionState.CLOSED
        channels = self._router.unsubscribe_all(session.subscriber)

        kept: Deque[Tuple[Session, str, asyncio.Future]] = deque()
        dropped = 0
        for entry in self._pending:
            if entry[0] is session:
                dropped += 1
                if not entry[2].done():
                    entry[2].set_exception(GatewayError("connection closed"))
            else:
                kept.append(entry)
        self._pending = kept

        log.debug(
            f"Session {session.id} closed "
            f"(unsubscribed {len(channels)} channel(s), dropped {dropped} queued join(s))"
        )

    # ------------------------------------------------------------------ #
    # Dispatch
    # ------------------------------------------------------------------ #

    async def handle(self, session: Session, event: Any, args: Any) -> Any:
        if session.closed:
            raise GatewayError("connection closed")

        if not isinstance(event, str) or not isinstance(args, (list, tuple)):
            raise ValidationError("malformed request")

        handler = self._handlers.get(event)
        if handler is None:
            raise ValidationError(f'unknown event "{event}"')

        if event != "authenticate" and not session.authenticated:
            raise NotAuthenticated()

        return await handler(session, list(args))

    async def _handle_authenticate(self, session: Session, args: List[Any]) -> None:
        self.authenticate(session, _arg(args, 0))

    async def _handle_join(self, session: Session, args: List[Any]) -> Optional[str]:
        return await self.join(session, _arg(args, 0))

    async def _handle_say(self, session: Session, args: List[Any]) -> None:
        await self.say(session, _arg(args, 0), _arg(args, 1))

    async def _handle_timeout(self, session: Session, args: List[Any]) -> None:
        await self.timeout(session, _arg(args, 0), _arg(args, 1), _arg(args, 2))

    async def _handle_mods(self, session: Session, args: List[Any]) -> List[str]:
        return await self.mods(session, _arg(args, 0))

    async def _handle_heartbeat(self, session: Session, args: List[Any]) -> int:
        return self.heartbeat(session, _arg(args, 0))

    # ------------------------------------------------------------------ #
    # Operations
    # ------------------------------------------------------------------ #

    def authenticate(self, session: Session, key: Any) -> None:
        if session.authenticated:
            raise AuthenticationError("already authenticated")

        if not isinstance(key, str) or not hmac.compare_digest(key.encode("utf-8"), self._secret_key):
            log.warning(f"Rejected authentication attempt from {session.id}")
            raise AuthenticationError("invalid key")

        session.state = SessionState.AUTHENTICATED
        log.info(f"{session.id} authenticated")

    async def join(self, session: Session, channel: Any) -> Optional[str]:
        """
        Subscribe the session to a channel, refresh its lease and make
        sure the bridge is joined upstream.

        Returns the channel name when the bridge was already joined,
        None when it had to join. While upstream is down the request is
        queued and answered once it has been replayed.
        """
        self._require_auth(session)
        channel = _channel(channel)

        if not self._controller.connected:
            future = asyncio.get_running_loop().create_future()
            self._pending.append((session, channel, future))
            log.info(f"[#{channel}] Upstream not connected, queued join from {session.id}")
            return await future

        return await self._join_now(session, channel)

    async def _join_now(self, session: Session, channel: str) -> Optional[str]:
        self._router.subscribe(channel, session.subscriber)
        self._leases.refresh(channel)

        # The controller waits out an in-flight part and reports whether it joined
        try:
            joined = await self._controller.join(channel)
        except JoinRejected:
            # Twitch will not let the bridge in; stop replaying it after reconnects
            self._leases.release(channel)
            raise
        return None if joined else channel

    async def say(self, session: Session, channel: Any, message: Any) -> None:
        self._require_auth(session)
        channel = _channel(channel)
        message = _text(message, "message")
        await self._controller.say(channel, message)

    async def timeout(self, session: Session, channel: Any, user: Any, seconds: Any) -> None:
        self._require_auth(session)
        channel = _channel(channel)
        user = _text(user, "user")
        if isinstance(seconds, bool) or not isinstance(seconds, int) or seconds <= 0:
            raise ValidationError("seconds must be a positive integer")
        await self._controller.timeout(channel, user, seconds)

    async def mods(self, session: Session, channel: Any) -> List[str]:
        self._require_auth(session)
        return await self._controller.mods(_channel(channel))

    def heartbeat(self, session: Session, channels: Any) -> int:
        """
        Refresh the lease of every named channel. Channels that are not
        joined upstream get a background join while connected.
        """
        self._require_auth(session)
        if not isinstance(channels, (list, tuple)):
            raise ValidationError("channels must be a list of channel names")
        names = [_channel(channel) for channel in channels]

        for channel in names:
            self._router.subscribe(channel, session.subscriber)
            self._leases.refresh(channel)

            if self._controller.connected and self._controller.needs_join(channel):
                self._spawn(self._background_join(channel))

        return self.heartbeat_interval_ms

    async def _background_join(self, channel: str) -> None:
        try:
            await self._controller.join(channel)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.warning(f"[#{channel}] Heartbeat join failed: {e}")

    # ------------------------------------------------------------------ #
    # Queued joins
    # ------------------------------------------------------------------ #

    @property
    def pending_joins(self) -> int:
        return len(self._pending)

    async def flush_pending(self) -> int:
        """Replay queued joins in arrival order. Returns how many ran."""
        flushed = 0
        while self._pending and self._controller.connected:
            session, channel, future = self._pending.popleft()
            if session.closed or future.done():
                continue

            try:
                result = await self._join_now(session, channel)
            except asyncio.CancelledError:
                if not future.done():
                    future.set_exception(GatewayError("join cancelled"))
                raise
            except Exception as e:
                if not future.done():
                    future.set_exception(e)
            else:
                if not future.done():
                    future.set_result(result)
            flushed += 1

        if flushed:
            log.info(f"Replayed {flushed} queued join(s)")
        return flushed

    # ------------------------------------------------------------------ #

    def _require_auth(self, session: Session) -> None:
        if session.closed:
            raise GatewayError("connection closed")
        if not session.authenticated:
            raise NotAuthenticated()

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def close(self) -> None:
        while self._pending:
            _, _, future = self._pending.popleft()
            if not future.done():
                future.set_exception(GatewayError("bridge shutting down"))

        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()


def _arg(args: Sequence[Any], index: int) -> Any:
    return args[index] if len(args) > index else None


def _channel(value: Any) -> str:
    if not isinstance(value, str):
        raise ValidationError("channel must be a non-empty string")
    channel = normalize_channel(value)
    if not channel:
        raise ValidationError("channel must be a non-empty string")
    return channel


def _text(value: Any, name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{name} must be a non-empty string")
    return value


__all__ = [
    "GatewayError",
    "ValidationError",
    "NotAuthenticated",
    "AuthenticationError",
    "SessionState",
    "Session",
    "CommandGateway",
]
