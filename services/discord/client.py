"""
Discord Client

Owns the bridge's Discord connection. Discord is an operator side
channel: the bridge keeps relaying chat whether or not this client is
connected.

Responsibilities:
- log in with the configured bot token
- hand the resolved status channel to the StatusReporter on ready/resume
- register /channels and /online and sync them
- answer slash command check failures with a short ephemeral hint

IMPORTANT:
- This client MUST NOT create its own event loop
- This client MUST NOT touch the Twitch connection directly
"""

from __future__ import annotations

import asyncio
from typing import Optional

import discord
from discord import app_commands
from discord.ext import commands

from shared.logging.logger import get_logger

from services.discord import commands as command_surfaces
from services.discord.commands.admin import AdminCommandHandler
from services.discord.status import StatusReporter

log = get_logger("discord.client", runtime="discord")

WRONG_CHANNEL = "I only answer that in the bridge status channel."


class DiscordClient:
    """
    discord.py Bot wrapper with an async run() / shutdown() contract.
    """

    def __init__(
        self,
        *,
        token: str,
        status: StatusReporter,
        handler: AdminCommandHandler,
    ):
        if not token:
            raise RuntimeError("Discord bot token is not configured")

        self._token: str = token
        self._bot: Optional[commands.Bot] = None

        self.status = status
        self.handler = handler

    # --------------------------------------------------

    def _build_bot(self) -> commands.Bot:
        intents = discord.Intents.default()
        intents.guilds = True
        intents.members = False
        intents.message_content = False  # slash commands only

        bot = commands.Bot(command_prefix="!", intents=intents)

        command_surfaces.setup(
            bot,
            handler=self.handler,
            status_channel_id=self.status.channel_id,
        )
        bot.tree.on_error = self._on_command_error
        self._register_events(bot)
        return bot

    def _register_events(self, bot: commands.Bot) -> None:
        @bot.event
        async def on_ready():
            log.info(f"Discord connected as {bot.user} (guilds={len(bot.guilds)})")

            await self.status.attach(bot)

            try:
                synced = await bot.tree.sync()
                log.info(f"Synced {len(synced)} Discord command(s)")
            except discord.DiscordException as e:
                log.error(f"Failed to sync Discord commands: {e}")

        @bot.event
        async def on_resumed():
            log.info("Discord session resumed")
            await self.status.attach(bot)

        @bot.event
        async def on_disconnect():
            log.warning("Discord connection lost, discord.py will reconnect")

    async def _on_command_error(
        self,
        interaction: discord.Interaction,
        error: app_commands.AppCommandError,
    ) -> None:
        if isinstance(error, app_commands.CheckFailure):
            log.debug(f"/{interaction.command.name if interaction.command else '?'} "
                      f"used outside the status channel (channel={interaction.channel_id})")
            text = WRONG_CHANNEL
        else:
            log.error(f"Discord command failed: {error!r}")
            text = "Something went wrong, check the bridge logs."

        try:
            if interaction.response.is_done():
                await interaction.followup.send(text, ephemeral=True)
            else:
                await interaction.response.send_message(text, ephemeral=True)
        except discord.DiscordException as e:
            log.warning(f"Could not report command error to Discord: {e}")

    # --------------------------------------------------

    async def run(self):
        """
        Log in and block until the connection is closed.
        """
        if self._bot is not None:
            raise RuntimeError("Discord client already running")

        self._bot = self._build_bot()
        log.info("Starting Discord client")

        try:
            await self._bot.start(self._token)
        except asyncio.CancelledError:
            log.info("Discord client task cancelled")
            raise
        except discord.LoginFailure as e:
            log.error(f"Discord rejected the bot token: {e}")
            raise
        finally:
            log.info("Discord client stopped")

    async def shutdown(self):
        if not self._bot:
            return

        log.info("Closing Discord connection")
        bot, self._bot = self._bot, None

        try:
            await bot.close()
        except discord.DiscordException as e:
            log.warning(f"Discord close error ignored: {e}")

    @property
    def bot(self) -> Optional[commands.Bot]:
        return self._bot
