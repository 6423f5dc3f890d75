"""
Discord Admin Slash Command Registration

This module is the thin registration layer that exposes the operator
slash commands to Discord and delegates ALL logic to AdminCommandHandler.

Responsibilities:
- Register /channels and /online
- Gate both commands to the configured status channel
- Perform Discord I/O (responses) ONLY at the boundary

IMPORTANT DESIGN RULES:
- NO business logic
- NO Discord client creation
"""

from __future__ import annotations

import discord
from discord import app_commands
from discord.ext import commands

from shared.logging.logger import get_logger

from services.discord.commands.admin import AdminCommandHandler

log = get_logger("discord.commands.admin.register", runtime="discord")


def in_status_channel(channel_id: int):
    """
    app_commands check: only answer inside the status channel.
    """

    async def predicate(interaction: discord.Interaction) -> bool:
        return interaction.channel_id == channel_id

    return app_commands.check(predicate)


# ==================================================
# Registration Entry Point
# ==================================================

def setup(
    bot: commands.Bot,
    *,
    handler: AdminCommandHandler,
    status_channel_id: int,
):
    """
    Register the operator slash commands.

    This function is called explicitly by the Discord client
    during startup.
    """

    # --------------------------------------------------
    # /channels
    # --------------------------------------------------

    @app_commands.command(
        name="channels",
        description="List the Twitch chat channels the bridge is listening to",
    )
    @in_status_channel(status_channel_id)
    async def channels(interaction: discord.Interaction):
        await interaction.response.send_message(handler.cmd_channels())

    # --------------------------------------------------
    # /online
    # --------------------------------------------------

    @app_commands.command(
        name="online",
        description="Check which of the joined Twitch channels are live",
    )
    @in_status_channel(status_channel_id)
    async def online(interaction: discord.Interaction):
        await interaction.response.defer(thinking=True)
        await interaction.followup.send(await handler.cmd_online())

    # --------------------------------------------------
    # Register Commands
    # --------------------------------------------------

    bot.tree.add_command(channels)
    bot.tree.add_command(online)

    log.info("Discord admin slash commands registered")
