"""
Discord Admin Commands

Operator-facing command surfaces answered in the status channel:
- /channels → which Twitch chat channels the bridge is joined to
- /online   → live status of every joined channel (Twitch Helix)

IMPORTANT CONSTRAINTS:
- This module MUST NOT register commands on import
- This module MUST NOT own a Discord client
- All Discord objects are handled by the registration layer
"""

from __future__ import annotations

from shared.logging.logger import get_logger
from services.twitch.api.errors import UpstreamError

log = get_logger("discord.commands.admin", runtime="discord")

NO_CHANNELS = "I am not currently in any Twitch chat channels."
CHANNELS_HEADER = "I am listening to the following Twitch chat channels:\n>>>"
ONLINE_BUSY = "Hang on a sec, still fetching online status."
ONLINE_ERROR = (
    "There was an error checking one or more of the channels, "
    "please check the server logs and try again later."
)


class AdminCommandHandler:
    """
    Declarative handler for admin-level Discord commands.

    This class does NOT register commands.
    It returns the reply text; the registration layer sends it.
    """

    def __init__(self, *, controller, helix):
        self._controller = controller
        self._helix = helix
        self._checking_online = False

    @property
    def checking_online(self) -> bool:
        return self._checking_online

    # --------------------------------------------------

    def cmd_channels(self) -> str:
        channels = self._controller.channels
        if not channels:
            return NO_CHANNELS
        return CHANNELS_HEADER + "\n".join(sorted(channels))

    async def cmd_online(self) -> str:
        if self._checking_online:
            return ONLINE_BUSY

        channels = sorted(self._controller.channels)
        if not channels:
            return NO_CHANNELS

        self._checking_online = True
        try:
            live = await self._helix.get_live_channels(channels)
        except UpstreamError as e:
            log.error(f"Error checking online status of channels: {e}")
            return ONLINE_ERROR
        finally:
            self._checking_online = False

        lines = [f"{channel}: {'*LIVE*' if channel in live else '_Offline_'}" for channel in channels]
        return ">>>\n" + "\n".join(lines)


__all__ = ["AdminCommandHandler"]
