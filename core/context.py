import asyncio
from dataclasses import dataclass
from typing import List, Optional, Set

from core.config_loader import BridgeConfig
from core.gateway import CommandGateway
from core.leases import LeaseTable
from core.reconnect import ReconnectionCoordinator
from core.router import FanoutRouter
from services.discord.client import DiscordClient
from services.discord.commands.admin import AdminCommandHandler
from services.discord.status import DisabledStatusReporter, StatusReporter
from services.relay.server import RelayServer, RelayServerConfig
from services.twitch.api.chat import TwitchChatClient
from services.twitch.api.helix import TwitchHelixClient
from services.twitch.models.events import ChannelEvent, Crashed
from services.twitch.workers.channel_controller import ChannelController
from shared.logging.logger import get_logger

log = get_logger("core.context")

FATAL_GRACE = 1.0  # seconds


@dataclass
class ChannelState:
    name: str
    joined: bool
    lease_expiry: Optional[float]
    subscribers: int


class BridgeContext:
    """
    Owner of every piece of bridge state.

    Nothing lives at module scope: constructing two contexts gives two
    independent bridges. Collaborators that talk to the outside world
    (upstream client, status reporter, helix) can be injected.
    """

    def __init__(
        self,
        config: BridgeConfig,
        *,
        upstream=None,
        status=None,
        helix: Optional[TwitchHelixClient] = None,
        enable_discord: bool = True,
    ):
        self.config = config
        self.stop_event = asyncio.Event()
        self.exit_code = 0
        self.fatal_grace = FATAL_GRACE

        # -------------------------------------------------
        # EXTERNAL COLLABORATORS
        # -------------------------------------------------
        self.helix = helix or TwitchHelixClient(
            client_id=config.twitch_client_id,
            token=config.twitch_password,
        )

        self.upstream = upstream or TwitchChatClient(
            config.twitch_password,
            config.twitch_username,
            helix=self.helix if self.helix.configured else None,
            join_timeout=config.join_timeout,
            max_reconnect_attempts=config.max_reconnect_attempts,
        )

        if status is not None:
            self.status = status
        elif config.discord_enabled:
            self.status = StatusReporter(channel_id=config.discord_status_channel_id)
        else:
            self.status = DisabledStatusReporter()

        # -------------------------------------------------
        # CORE
        # -------------------------------------------------
        self.router = FanoutRouter()
        self.controller = ChannelController(
            client=self.upstream,
            notifier=self.status,
            on_connected=self._on_connected,
            on_lifecycle=self._on_lifecycle,
            on_channel_event=self._on_channel_event,
            on_fatal=self.fatal,
        )
        self.leases = LeaseTable(
            heartbeat_interval=config.heartbeat_interval,
            part=self.controller.part,
        )
        self.coordinator = ReconnectionCoordinator(
            leases=self.leases,
            controller=self.controller,
        )
        self.gateway = CommandGateway(
            secret_key=config.secret_key,
            leases=self.leases,
            router=self.router,
            controller=self.controller,
            heartbeat_interval_ms=config.heartbeat_interval_ms,
        )

        # -------------------------------------------------
        # SURFACES
        # -------------------------------------------------
        self.relay = RelayServer(
            self.gateway,
            RelayServerConfig(host=config.host, port=config.port),
        )

        self.discord: Optional[DiscordClient] = None
        if enable_discord and config.discord_enabled:
            self.discord = DiscordClient(
                token=config.discord_bot_token,
                status=self.status,
                handler=AdminCommandHandler(controller=self.controller, helix=self.helix),
            )

        self._tasks: Set[asyncio.Task] = set()
        self._fatal_task: Optional[asyncio.Task] = None

    # -------------------------------------------------
    # LIFECYCLE
    # -------------------------------------------------

    async def start(self) -> None:
        log.info("Chat relay bridge starting")

        if not self.status.enabled:
            log.info("Discord status reporting disabled (no bot token / status channel)")
        if not self.helix.configured:
            log.info("Twitch Helix disabled (no client id); timeout and mods will fail")

        await self.relay.start()

        if self.discord is not None:
            self._spawn(self._run_discord())

        await self.controller.start()

    async def shutdown(self) -> None:
        log.info("Shutdown initiated")

        for name, step in (
            ("relay", self.relay.stop),
            ("gateway", self.gateway.close),
            ("controller", self.controller.close),
            ("leases", self.leases.close),
            ("helix", self.helix.close),
        ):
            try:
                await step()
            except Exception as e:
                log.warning(f"{name} shutdown error ignored: {e}")

        if self.discord is not None:
            await self.discord.shutdown()
        await self.status.close()

        tasks = [t for t in self._tasks if not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        log.info("Chat relay bridge stopped")

    async def _run_discord(self) -> None:
        try:
            await self.discord.run()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            # Status reporting is optional; the bridge keeps relaying
            log.error(f"Discord integration stopped: {e}")

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # -------------------------------------------------
    # CONTROLLER HOOKS
    # -------------------------------------------------

    async def _on_connected(self, first: bool) -> None:
        if first:
            await self.coordinator.join_desired()
        else:
            await self.coordinator.on_connected(first)
        await self.gateway.flush_pending()

    def _on_lifecycle(self, event: str, payload) -> None:
        self.relay.broadcast(event, payload)

    def _on_channel_event(self, event: ChannelEvent) -> None:
        self.router.deliver(event.channel, event.event_name, event.to_payload())

    # -------------------------------------------------
    # FATAL PATH
    # -------------------------------------------------

    def report_crash(self, message: str, stack: str) -> None:
        """Route an unhandled error through the same path as an upstream crash."""
        self.controller.dispatch(Crashed(message=message, stack=stack))

    def fatal(self, reason: str, detail: str) -> None:
        if self._fatal_task is not None:
            return
        log.error(f"Fatal condition ({reason}): {detail}")
        self._fatal_task = self._spawn(self._exit_after_grace(1))

    def interrupt(self, status_text: str) -> None:
        if self._fatal_task is not None:
            return
        self.status.post(status_text)
        self._fatal_task = self._spawn(self._exit_after_grace(0))

    async def _exit_after_grace(self, code: int) -> None:
        status_sent, frames_sent = await asyncio.gather(
            self.status.drain(self.fatal_grace),
            self.relay.drain(self.fatal_grace),
        )
        if not status_sent:
            log.warning("Exiting with Discord status lines still unsent")
        if not frames_sent:
            log.warning("Exiting with downstream frames still queued")
        self.exit_code = code
        self.stop_event.set()

    # -------------------------------------------------
    # DIAGNOSTICS
    # -------------------------------------------------

    def channels(self) -> List[ChannelState]:
        names = set(self.leases.desired_channels())
        names.update(self.router.channels())
        names.update(self.controller.channels)

        return [
            ChannelState(
                name=name,
                joined=self.controller.is_joined(name),
                lease_expiry=self.leases.expiry(name),
                subscribers=len(self.router.subscribers(name)),
            )
            for name in sorted(names)
        ]
