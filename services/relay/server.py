"""WebSocket server for downstream relay consumers."""

from __future__ import annotations

import asyncio
import itertools
import json
from dataclasses import dataclass
from http import HTTPStatus
from typing import Any, Dict, Optional, Set

from websockets.asyncio.server import Server, ServerConnection, serve
from websockets.exceptions import ConnectionClosed

from core.gateway import CommandGateway, GatewayError, Session
from core.router import Subscriber
from services.twitch.api.errors import UpstreamError
from shared.logging.logger import get_logger

log = get_logger("services.relay")

_ids = itertools.count(1)


@dataclass
class RelayServerConfig:
    host: str = "0.0.0.0"
    port: int = 8080


class RelayConnection(Subscriber):
    """
    One downstream WebSocket. Frames are queued and written by a single
    writer task so events for a channel leave in upstream arrival order.
    """

    def __init__(self, websocket: ServerConnection) -> None:
        self._ws = websocket
        self._id = f"conn-{next(_ids)}"
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False
        self._writer_task: Optional[asyncio.Task] = None
        self.requests: Set[asyncio.Task] = set()

    @property
    def id(self) -> str:
        return self._id

    @property
    def closed(self) -> bool:
        return self._closed

    def start(self) -> None:
        if self._writer_task is None:
            self._writer_task = asyncio.create_task(self._writer())

    def emit(self, event: str, payload: Any) -> None:
        self.send_frame({"event": event, "data": payload})

    def send_frame(self, frame: Dict[str, Any]) -> None:
        if self._closed:
            return
        self._queue.put_nowait(json.dumps(frame))

    async def _writer(self) -> None:
        while True:
            frame = await self._queue.get()
            try:
                await self._ws.send(frame)
            except ConnectionClosed:
                self._closed = True
                return
            finally:
                self._queue.task_done()

    async def drain(self, timeout: float) -> bool:
        """Wait up to `timeout` seconds for queued frames to be written."""
        if self._closed or self._writer_task is None:
            return True
        try:
            await asyncio.wait_for(self._queue.join(), timeout)
        except asyncio.TimeoutError:
            return False
        return True

    async def close(self) -> None:
        self._closed = True
        if self._writer_task is not None:
            self._writer_task.cancel()
            await asyncio.gather(self._writer_task, return_exceptions=True)
            self._writer_task = None


class RelayServer:
    def __init__(self, gateway: CommandGateway, config: Optional[RelayServerConfig] = None) -> None:
        self._gateway = gateway
        self._config = config or RelayServerConfig()
        self._server: Optional[Server] = None
        self._connections: Set[RelayConnection] = set()

    @property
    def port(self) -> int:
        if self._server is None:
            return int(self._config.port)
        return self._server.sockets[0].getsockname()[1]

    @property
    def connections(self) -> Set[RelayConnection]:
        return set(self._connections)

    async def start(self) -> None:
        if self._server is not None:
            return

        self._server = await serve(
            self._handle_connection,
            self._config.host,
            int(self._config.port),
            process_request=self._process_request,
        )
        log.info(f"Relay server listening on {self._config.host}:{self.port}")

    async def stop(self) -> None:
        if self._server is None:
            return

        for connection in list(self._connections):
            for task in list(connection.requests):
                task.cancel()
            await connection.close()

        self._server.close()
        await self._server.wait_closed()
        self._server = None
        log.info("Relay server stopped")

    async def drain(self, timeout: float) -> bool:
        connections = list(self._connections)
        if not connections:
            return True
        results = await asyncio.gather(*(c.drain(timeout) for c in connections))
        return all(results)

    def broadcast(self, event: str, payload: Any) -> int:
        sent = 0
        for connection in list(self._connections):
            if not connection.closed:
                connection.emit(event, payload)
                sent += 1
        return sent

    # ------------------------------------------------------------------ #

    def _process_request(self, connection: ServerConnection, request):
        # Plain HTTP GET / is the health check
        if "Upgrade" not in request.headers:
            if request.path.split("?", 1)[0] == "/":
                return connection.respond(HTTPStatus.OK, "OK\n")
            return connection.respond(HTTPStatus.NOT_FOUND, "Not Found\n")
        return None

    async def _handle_connection(self, websocket: ServerConnection) -> None:
        connection = RelayConnection(websocket)
        connection.start()
        self._connections.add(connection)
        session = self._gateway.open_session(connection)
        log.info(f"{connection.id} connected from {websocket.remote_address}")

        try:
            async for raw in websocket:
                task = asyncio.create_task(self._handle_frame(connection, session, raw))
                connection.requests.add(task)
                task.add_done_callback(connection.requests.discard)
        except ConnectionClosed:
            pass
        finally:
            self._gateway.close_session(session)
            self._connections.discard(connection)
            await connection.close()
            log.info(f"{connection.id} disconnected")

    async def _handle_frame(self, connection: RelayConnection, session: Session, raw: Any) -> None:
        try:
            frame = json.loads(raw)
        except ValueError:
            frame = None

        if not isinstance(frame, dict) or "event" not in frame:
            request_id = frame.get("id") if isinstance(frame, dict) else None
            connection.send_frame({"id": request_id, "error": "malformed request", "result": None})
            return

        request_id = frame.get("id")
        args = frame.get("args", [])

        error: Optional[str] = None
        result: Any = None
        try:
            result = await self._gateway.handle(session, frame.get("event"), args)
        except (GatewayError, UpstreamError) as e:
            error = str(e)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.error(f"[{connection.id}] Request '{frame.get('event')}' failed: {e!r}")
            error = "internal error"

        connection.send_frame({"id": request_id, "error": error, "result": result})


__all__ = ["RelayServer", "RelayServerConfig", "RelayConnection"]
