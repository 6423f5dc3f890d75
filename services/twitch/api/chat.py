import asyncio
import random
import traceback
from collections import deque
from typing import AsyncGenerator, Deque, Dict, List, Optional, Set

from services.twitch.api.errors import (
    JoinRejected,
    JoinTimeout,
    UpstreamError,
    UpstreamUnavailable,
)
from services.twitch.api.helix import TwitchHelixClient
from services.twitch.api.parser import EventTranslator, IrcLine, parse_line
from services.twitch.models.events import (
    ConnectFailed,
    Connected,
    Crashed,
    Disconnected,
    RateLimited,
    Reconnecting,
    UpstreamEvent,
    normalize_channel,
)
from shared.logging.logger import TRACE, get_logger

log = get_logger("twitch.chat")

JOIN_REJECTIONS = {
    "msg_channel_suspended",
    "msg_banned",
    "msg_room_not_found",
    "tos_ban",
    "msg_channel_blocked",
}

LOGIN_FAILURES = (
    "Login authentication failed",
    "Improperly formatted auth",
)


class AuthenticationFailed(UpstreamError):
    pass


class RateLimiter:
    """
    Sliding window limiter. acquire() waits for a free slot instead of
    rejecting, so outbound commands are delayed rather than dropped.
    """

    def __init__(self, max_events: int, per_seconds: float) -> None:
        self._max = max(1, int(max_events))
        self._window = float(per_seconds)
        self._stamps: Deque[float] = deque()

    async def acquire(self) -> None:
        loop = asyncio.get_running_loop()
        while True:
            now = loop.time()
            while self._stamps and self._stamps[0] <= now - self._window:
                self._stamps.popleft()
            if len(self._stamps) < self._max:
                self._stamps.append(now)
                return
            await asyncio.sleep(self._stamps[0] + self._window - now)


class TwitchChatClient:
    """
    Twitch IRC-over-TLS client for a single account in many channels.

    - connect() starts a supervised connection loop that reconnects with
      exponential back-off; close() stops it.
    - Lifecycle and chat activity are published as event dataclasses on
      events(); callers never see raw IRC.
    - join()/part() resolve when Twitch echoes the membership change.
    - Membership is cleared on every disconnect; Twitch does not restore
      it on reconnect.
    """

    HOST = "irc.chat.twitch.tv"
    PORT = 6697

    BACKOFF_MAX = 60.0
    BACKOFF_JITTER = 0.1

    def __init__(
        self,
        token: str,
        nickname: str,
        *,
        helix: Optional[TwitchHelixClient] = None,
        join_timeout: float = 10.0,
        connect_timeout: float = 15.0,
        max_reconnect_attempts: int = 0,
        host: str = HOST,
        port: int = PORT,
        ssl: bool = True,
    ):
        self.token = self._normalize_token(token)
        self.nickname = (nickname or "").strip().lower()
        self.helix = helix
        self.join_timeout = join_timeout
        self.connect_timeout = connect_timeout
        self.max_reconnect_attempts = max_reconnect_attempts
        self.host = host
        self.port = port
        self.ssl = ssl

        self.reader: asyncio.StreamReader | None = None
        self.writer: asyncio.StreamWriter | None = None

        self.channels: Set[str] = set()

        self._connected = False
        self._stopping = False
        self._immediate_reconnect = False
        self._run_task: Optional[asyncio.Task] = None
        self._events: "asyncio.Queue[UpstreamEvent]" = asyncio.Queue()
        self._pending_joins: Dict[str, asyncio.Future] = {}
        self._pending_parts: Dict[str, asyncio.Future] = {}
        self._translator = EventTranslator(self.nickname)

        # Twitch limits for regular (non-verified) accounts
        self._join_limiter = RateLimiter(20, 10.0)
        self._say_limiter = RateLimiter(20, 30.0)

    @property
    def connected(self) -> bool:
        return self._connected

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    async def connect(self) -> None:
        """
        Start the connection loop. Returns immediately; progress is
        reported through events().
        """
        if self._run_task and not self._run_task.done():
            log.debug("TwitchChatClient already running")
            return

        self._stopping = False
        self._run_task = asyncio.create_task(self._run())

    async def close(self) -> None:
        if not self._run_task:
            return

        log.info("Closing Twitch IRC connection")
        self._stopping = True
        task, self._run_task = self._run_task, None
        if not task.done():
            task.cancel()
        await asyncio.gather(task, return_exceptions=True)

    async def events(self) -> AsyncGenerator[UpstreamEvent, None]:
        while True:
            yield await self._events.get()

    def _emit(self, event: UpstreamEvent) -> None:
        self._events.put_nowait(event)

    async def _run(self) -> None:
        attempt = 0
        first = True

        try:
            while not self._stopping:
                if not first:
                    attempt += 1
                    if self.max_reconnect_attempts and attempt > self.max_reconnect_attempts:
                        log.error("Failed to connect, reached maximum number of retries")
                        self._emit(ConnectFailed(reason=f"gave up after {attempt - 1} attempt(s)"))
                        return

                    delay = 0.0 if self._immediate_reconnect else self._backoff(attempt)
                    self._immediate_reconnect = False
                    log.info(f"Attempting to reconnect (attempt={attempt}, delay={delay:.1f}s)")
                    self._emit(Reconnecting(attempt=attempt, delay=delay))
                    await asyncio.sleep(delay)
                first = False

                try:
                    await self._open()
                except asyncio.CancelledError:
                    raise
                except (OSError, asyncio.TimeoutError, UpstreamError) as e:
                    log.warning(f"Twitch IRC connection attempt failed: {e!r}")
                    await self._close_transport()
                    continue

                attempt = 0
                self._connected = True
                log.info(f"Connected to Twitch IRC as {self.nickname}")
                self._emit(Connected())

                reason = await self._read_loop()
                self._drop_connection(reason)
                await self._close_transport()
                log.warning(f"Twitch IRC disconnected: {reason}")
                self._emit(Disconnected(reason=reason))
        finally:
            if self._connected:
                self._drop_connection("client closed")
                self._emit(Disconnected(reason="client closed"))
            await self._close_transport()

    async def _open(self) -> None:
        log.info(
            f"Connecting to Twitch IRC ({self.host}:{self.port}) as nick={self.nickname}"
        )
        self.reader, self.writer = await asyncio.wait_for(
            asyncio.open_connection(self.host, self.port, ssl=self.ssl or None, limit=2 ** 20),
            timeout=self.connect_timeout,
        )

        await self._send_raw(f"PASS {self.token}", secret=True)
        await self._send_raw(f"NICK {self.nickname}")
        await self._send_raw("CAP REQ :twitch.tv/tags twitch.tv/commands twitch.tv/membership")

        await asyncio.wait_for(self._await_welcome(), timeout=self.connect_timeout)

    async def _await_welcome(self) -> None:
        while True:
            raw = await self.reader.readline()
            if raw == b"":
                raise UpstreamUnavailable("connection closed during login")

            line = parse_line(raw.decode("utf-8", errors="ignore"))
            if line is None:
                continue
            if line.command == "001":
                return
            if line.command == "PING":
                await self._handle_ping(line)
            elif line.command == "NOTICE" and any(
                failure in (line.trailing or "") for failure in LOGIN_FAILURES
            ):
                raise AuthenticationFailed(line.trailing)

    async def _read_loop(self) -> str:
        try:
            while True:
                raw = await self.reader.readline()
                if raw == b"":
                    return "connection closed by remote"

                decoded = raw.decode("utf-8", errors="ignore").strip()
                if not decoded:
                    continue

                log.log(TRACE, f"< {decoded}")
                stop_reason = await self._handle_line(decoded)
                if stop_reason:
                    return stop_reason
        except (OSError, asyncio.IncompleteReadError, ValueError, UpstreamError) as e:
            return f"connection error: {e!r}"

    def _drop_connection(self, reason: str) -> None:
        self._connected = False
        if self.channels:
            log.info(f"Membership in {len(self.channels)} channel(s) lost: {reason}")
        self.channels.clear()

        for pending in (self._pending_joins, self._pending_parts):
            for fut in pending.values():
                if not fut.done():
                    fut.set_exception(UpstreamUnavailable(f"connection lost: {reason}"))
            pending.clear()

    async def _close_transport(self) -> None:
        writer, self.writer = self.writer, None
        self.reader = None
        if not writer:
            return
        try:
            writer.close()
            await writer.wait_closed()
        except Exception as e:
            log.debug(f"Error during Twitch IRC close ignored: {e}")

    def _backoff(self, attempt: int) -> float:
        delay = min(self.BACKOFF_MAX, 2.0 ** (attempt - 1))
        jitter = delay * self.BACKOFF_JITTER * (random.random() * 2 - 1)
        return max(0.0, delay + jitter)

    # ------------------------------------------------------------------ #
    # Channel membership
    # ------------------------------------------------------------------ #

    async def join(self, channel: str) -> None:
        channel = normalize_channel(channel)
        if not self._connected:
            raise UpstreamUnavailable()
        if channel in self.channels:
            return

        fut = self._pending_joins.get(channel)
        if fut is None:
            fut = asyncio.get_running_loop().create_future()
            self._pending_joins[channel] = fut
            try:
                await self._join_limiter.acquire()
                await self._send_raw(f"JOIN #{channel}")
            except BaseException:
                self._pending_joins.pop(channel, None)
                raise

        try:
            await asyncio.wait_for(asyncio.shield(fut), timeout=self.join_timeout)
        except asyncio.TimeoutError:
            raise JoinTimeout(channel, self.join_timeout) from None
        finally:
            if self._pending_joins.get(channel) is fut:
                del self._pending_joins[channel]

    async def part(self, channel: str) -> None:
        channel = normalize_channel(channel)
        if not self._connected:
            self.channels.discard(channel)
            return

        fut = self._pending_parts.get(channel)
        if fut is None:
            fut = asyncio.get_running_loop().create_future()
            self._pending_parts[channel] = fut
            try:
                await self._send_raw(f"PART #{channel}")
            except BaseException:
                self._pending_parts.pop(channel, None)
                raise

        try:
            await asyncio.wait_for(asyncio.shield(fut), timeout=self.join_timeout)
        except asyncio.TimeoutError:
            raise UpstreamError(f"timed out parting #{channel}") from None
        finally:
            if self._pending_parts.get(channel) is fut:
                del self._pending_parts[channel]

    # ------------------------------------------------------------------ #
    # Messaging / moderation
    # ------------------------------------------------------------------ #

    async def say(self, channel: str, message: str) -> None:
        channel = normalize_channel(channel)
        text = " ".join((message or "").splitlines()).strip()
        if not text:
            return
        if not self._connected:
            raise UpstreamUnavailable()

        await self._say_limiter.acquire()
        await self._send_raw(f"PRIVMSG #{channel} :{text}")
        log.info(f"[#{channel}] Sent chat message ({len(text)} chars)")

    async def timeout(self, channel: str, username: str, seconds: int) -> None:
        if not self.helix:
            raise UpstreamError("timeouts require the Twitch Helix API (TWITCH_CLIENT_ID)")
        await self.helix.timeout_user(channel, username, seconds)

    async def mods(self, channel: str) -> List[str]:
        if not self.helix:
            raise UpstreamError("moderator lists require the Twitch Helix API (TWITCH_CLIENT_ID)")
        return await self.helix.get_moderators(channel)

    # ------------------------------------------------------------------ #
    # Internal helpers
    # ------------------------------------------------------------------ #

    async def _send_raw(self, data: str, *, secret: bool = False) -> None:
        if not self.writer:
            raise UpstreamUnavailable("IRC writer is not initialized")

        log.log(TRACE, "> PASS ***" if secret else f"> {data}")
        payload = (data + "\r\n").encode("utf-8")
        self.writer.write(payload)
        await self.writer.drain()

    async def _handle_ping(self, line: IrcLine) -> None:
        # Twitch IRC sends: PING :tmi.twitch.tv
        payload = line.raw.split(" ", 1)[-1]
        await self._send_raw(f"PONG {payload}")
        log.debug("Responded to Twitch PING")

    async def _handle_line(self, raw: str) -> Optional[str]:
        """
        Process one inbound line. Returns a reason string when the
        connection should be dropped.
        """
        try:
            line = parse_line(raw)
            if line is None:
                return None

            command = line.command
            if command == "PING":
                await self._handle_ping(line)
            elif command == "RECONNECT":
                log.info("Twitch requested a reconnect")
                self._immediate_reconnect = True
                return "server requested reconnect"
            elif command in ("JOIN", "PART"):
                self._handle_membership(line)
            elif command == "NOTICE":
                self._handle_notice(line)
            else:
                for event in self._translator.translate(line):
                    self._emit(event)
            return None
        except (OSError, UpstreamError):
            raise
        except Exception as e:
            log.error(f"Unhandled error processing IRC line {raw!r}: {e}")
            self._emit(Crashed(message=str(e), stack=traceback.format_exc()))
            return "client crashed"

    def _handle_membership(self, line: IrcLine) -> None:
        channel = line.channel
        if not channel or line.nick.lower() != self.nickname:
            return

        if line.command == "JOIN":
            self.channels.add(channel)
            log.info(f"Joined channel: {channel}")
            pending = self._pending_joins.get(channel)
        else:
            self.channels.discard(channel)
            log.info(f"Parted channel: {channel}")
            pending = self._pending_parts.get(channel)

        if pending is not None and not pending.done():
            pending.set_result(None)

    def _handle_notice(self, line: IrcLine) -> None:
        msg_id = line.tags.get("msg-id", "")
        text = line.trailing or ""
        channel = line.channel

        if msg_id == "msg_ratelimit":
            log.error(f"Limitation: {text}")
            self._emit(RateLimited(detail=text))
            return

        if channel and msg_id in JOIN_REJECTIONS:
            pending = self._pending_joins.get(channel)
            if pending is not None and not pending.done():
                pending.set_exception(JoinRejected(channel, msg_id))
            return

        log.info(f"NOTICE {('#' + channel) if channel else '*'} [{msg_id or '-'}]: {text}")

    @staticmethod
    def _normalize_token(token: str) -> str:
        token = (token or "").strip()
        if not token.startswith("oauth:"):
            return f"oauth:{token}"
        return token


__all__ = ["TwitchChatClient", "RateLimiter", "AuthenticationFailed"]
