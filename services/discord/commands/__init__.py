"""
Discord Command Package

This package centralizes registration for the Discord command surfaces
of the bridge.

Command categories:
- admin → operator diagnostics answered in the status channel

IMPORTANT DESIGN RULES:
- No command registration on import
- No Discord client ownership
- Explicit setup() calls only
"""

from __future__ import annotations

from discord.ext import commands

from shared.logging.logger import get_logger

from services.discord.commands import admin_commands
from services.discord.commands.admin import AdminCommandHandler

log = get_logger("discord.commands", runtime="discord")


def setup(
    bot: commands.Bot,
    *,
    handler: AdminCommandHandler,
    status_channel_id: int,
):
    """
    Register all Discord command surfaces.

    This function is called exactly once by the Discord client
    during startup.
    """

    admin_commands.setup(
        bot,
        handler=handler,
        status_channel_id=status_channel_id,
    )

    log.info("Discord command surfaces initialized")
