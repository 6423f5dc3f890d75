import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional, Set

from services.twitch.models.events import normalize_channel
from shared.logging.logger import get_logger

log = get_logger("core.leases")

DEFAULT_HEARTBEAT_INTERVAL = 15.0  # seconds
DEFAULT_GRACE = 1.0  # seconds


@dataclass
class Lease:
    channel: str
    expiry: float
    handle: Optional[asyncio.TimerHandle] = None
    expired: bool = False


class LeaseTable:
    """
    Channel -> expiry timer.

    One lease per channel, shared by every subscriber of that channel:
    any join or heartbeat naming the channel pushes the same deadline
    forward. The window is two heartbeat intervals plus a grace period,
    so exactly one missed heartbeat is tolerated.

    When a timer fires the lease leaves the desired set immediately and
    the channel is parted upstream. The entry itself is dropped once the
    part finishes, unless a refresh re-armed it in the meantime.
    """

    def __init__(
        self,
        *,
        heartbeat_interval: float = DEFAULT_HEARTBEAT_INTERVAL,
        grace: float = DEFAULT_GRACE,
        part: Optional[Callable[[str], Awaitable[None]]] = None,
    ):
        if heartbeat_interval <= 0:
            raise ValueError("heartbeat_interval must be positive")

        self.heartbeat_interval = heartbeat_interval
        self.grace = grace
        self._part = part

        self._leases: Dict[str, Lease] = {}
        self._parting: Set[asyncio.Task] = set()

    @property
    def window(self) -> float:
        return 2 * self.heartbeat_interval + self.grace

    # ------------------------------------------------------------------ #

    def refresh(self, channel: str) -> float:
        channel = normalize_channel(channel)
        if not channel:
            raise ValueError("channel name is empty")

        loop = asyncio.get_running_loop()
        expiry = loop.time() + self.window

        lease = self._leases.get(channel)
        if lease is None:
            lease = Lease(channel=channel, expiry=expiry)
            self._leases[channel] = lease
            log.debug(f"[#{channel}] Lease created")
        else:
            if lease.handle is not None:
                lease.handle.cancel()
            lease.expiry = expiry
            lease.expired = False

        lease.handle = loop.call_later(self.window, self._expire, channel)
        return expiry

    def _expire(self, channel: str) -> None:
        lease = self._leases.get(channel)
        if lease is None or lease.expired:
            return

        lease.expired = True
        lease.handle = None
        log.info(f"Heartbeat expired for {channel}")

        if self._part is None:
            del self._leases[channel]
            return

        task = asyncio.ensure_future(self._part_expired(lease))
        self._parting.add(task)
        task.add_done_callback(self._parting.discard)

    async def _part_expired(self, lease: Lease) -> None:
        try:
            await self._part(lease.channel)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.warning(f"[#{lease.channel}] Part after lease expiry failed: {e}")
        finally:
            if self._leases.get(lease.channel) is lease and lease.expired:
                del self._leases[lease.channel]

    # ------------------------------------------------------------------ #

    def desired_channels(self) -> List[str]:
        return sorted(name for name, lease in self._leases.items() if not lease.expired)

    def is_live(self, channel: str) -> bool:
        lease = self._leases.get(normalize_channel(channel))
        return lease is not None and not lease.expired

    def expiry(self, channel: str) -> Optional[float]:
        lease = self._leases.get(normalize_channel(channel))
        if lease is None or lease.expired:
            return None
        return lease.expiry

    def release(self, channel: str) -> None:
        lease = self._leases.pop(normalize_channel(channel), None)
        if lease is not None and lease.handle is not None:
            lease.handle.cancel()

    def __contains__(self, channel: object) -> bool:
        return isinstance(channel, str) and self.is_live(channel)

    def __len__(self) -> int:
        return len(self.desired_channels())

    async def close(self) -> None:
        for lease in self._leases.values():
            if lease.handle is not None:
                lease.handle.cancel()
        self._leases.clear()

        if self._parting:
            await asyncio.gather(*list(self._parting), return_exceptions=True)


__all__ = ["Lease", "LeaseTable", "DEFAULT_HEARTBEAT_INTERVAL", "DEFAULT_GRACE"]
