"""
Discord Status Module

Responsibilities:
- Post human-readable bridge status lines to the operational Discord
  channel
- Queue lines posted before the bot is ready and flush them in order
  once the status channel is resolved
- Let the fatal path wait (bounded) for queued lines to go out

IMPORTANT:
- This module does NOT register commands
- This module does NOT own the Discord client
"""

from __future__ import annotations

import asyncio
from typing import Optional

import discord

from shared.logging.logger import get_logger

log = get_logger("discord.status", runtime="discord")


class StatusReporter:
    enabled = True

    def __init__(self, *, channel_id: int):
        self.channel_id = int(channel_id)
        self._queue: asyncio.Queue = asyncio.Queue()
        self._channel: Optional[discord.abc.Messageable] = None
        self._sender: Optional[asyncio.Task] = None

    @property
    def attached(self) -> bool:
        return self._channel is not None

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    # --------------------------------------------------

    def post(self, text: str) -> None:
        """
        Queue a status line. Never blocks and never raises.
        """
        log.info(f"Status: {text}")
        self._queue.put_nowait(text)

    async def attach(self, bot: discord.Client) -> None:
        """
        Resolve the status channel and start flushing queued lines.
        Safe to call again after a resume.
        """
        if self._channel is None:
            channel = bot.get_channel(self.channel_id)
            if channel is None:
                try:
                    channel = await bot.fetch_channel(self.channel_id)
                except discord.DiscordException as e:
                    log.error(f"Failed to resolve Discord status channel {self.channel_id}: {e}")
                    return
            self._channel = channel
            log.info(f"Discord status channel resolved: {self.channel_id}")

        if self._sender is None or self._sender.done():
            self._sender = asyncio.create_task(self._send_loop())

    async def _send_loop(self) -> None:
        while True:
            text = await self._queue.get()
            try:
                await self._channel.send(text)
            except discord.DiscordException as e:
                log.error(f"Failed to post Discord status: {e}")
            finally:
                self._queue.task_done()

    async def drain(self, timeout: float) -> bool:
        """
        Wait up to `timeout` seconds for queued lines to be sent.
        Returns False if lines were still pending.
        """
        if not self.attached:
            return self._queue.empty()
        try:
            await asyncio.wait_for(self._queue.join(), timeout)
        except asyncio.TimeoutError:
            return False
        return True

    async def close(self) -> None:
        if self._sender is not None:
            self._sender.cancel()
            await asyncio.gather(self._sender, return_exceptions=True)
            self._sender = None
        self._channel = None


class DisabledStatusReporter:
    """Accepts status lines and only logs them."""

    enabled = False
    attached = False
    pending = 0

    def post(self, text: str) -> None:
        log.info(f"Status: {text}")

    async def attach(self, bot) -> None:
        return None

    async def drain(self, timeout: float) -> bool:
        return True

    async def close(self) -> None:
        return None


__all__ = ["StatusReporter", "DisabledStatusReporter"]
