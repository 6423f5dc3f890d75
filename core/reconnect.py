import asyncio
from typing import List

from core.leases import LeaseTable
from shared.logging.logger import get_logger

log = get_logger("core.reconnect")


class ReconnectionCoordinator:
    """
    Replays the desired channel set after an upstream reconnect.

    The upstream client starts every connection with an empty
    membership, so each channel that still holds a live lease is joined
    again. The controller's membership check keeps this idempotent.
    """

    def __init__(self, *, leases: LeaseTable, controller):
        self._leases = leases
        self._controller = controller

    async def on_connected(self, first: bool) -> List[str]:
        if first:
            return []

        channels = self._leases.desired_channels()
        rejoined = await self._join_all(channels)
        log.info(f"Rejoined {rejoined} channels.")
        return channels

    async def join_desired(self) -> List[str]:
        """
        Join every leased channel that is not joined yet. Heartbeats
        accepted before the first connect only refresh leases, so the
        first connect picks them up here.
        """
        channels = [c for c in self._leases.desired_channels() if self._controller.needs_join(c)]
        if channels:
            joined = await self._join_all(channels)
            log.info(f"Joined {joined} leased channel(s) on connect")
        return channels

    async def _join_all(self, channels: List[str]) -> int:
        if not channels:
            return 0

        results = await asyncio.gather(
            *(self._controller.join(channel) for channel in channels),
            return_exceptions=True,
        )

        ok = 0
        for channel, result in zip(channels, results):
            if isinstance(result, BaseException):
                log.warning(f"[#{channel}] Rejoin failed: {result}")
            else:
                ok += 1
        return ok


__all__ = ["ReconnectionCoordinator"]
