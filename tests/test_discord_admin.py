import asyncio

import pytest

from services.discord.commands.admin import (
    NO_CHANNELS,
    ONLINE_BUSY,
    ONLINE_ERROR,
    AdminCommandHandler,
)
from services.twitch.api.errors import HelixError
from tests.conftest import settle


class FakeController:
    def __init__(self, *channels):
        self.channels = sorted(channels)


class FakeHelix:
    def __init__(self, live=(), error=None):
        self.live = set(live)
        self.error = error
        self.gate = None
        self.calls = 0

    async def get_live_channels(self, channels):
        self.calls += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return {c for c in channels if c in self.live}


def test_channels_lists_joined_channels():
    handler = AdminCommandHandler(controller=FakeController("beta", "alpha"), helix=FakeHelix())

    assert handler.cmd_channels() == (
        "I am listening to the following Twitch chat channels:\n>>>alpha\nbeta"
    )


def test_channels_when_not_joined_anywhere():
    handler = AdminCommandHandler(controller=FakeController(), helix=FakeHelix())
    assert handler.cmd_channels() == NO_CHANNELS


@pytest.mark.asyncio
async def test_online_reports_live_and_offline():
    handler = AdminCommandHandler(
        controller=FakeController("alpha", "beta"),
        helix=FakeHelix(live={"beta"}),
    )

    assert await handler.cmd_online() == ">>>\nalpha: _Offline_\nbeta: *LIVE*"


@pytest.mark.asyncio
async def test_online_with_no_channels_skips_helix():
    helix = FakeHelix()
    handler = AdminCommandHandler(controller=FakeController(), helix=helix)

    assert await handler.cmd_online() == NO_CHANNELS
    assert helix.calls == 0


@pytest.mark.asyncio
async def test_online_is_busy_while_a_check_runs():
    helix = FakeHelix(live={"alpha"})
    helix.gate = asyncio.Event()
    handler = AdminCommandHandler(controller=FakeController("alpha"), helix=helix)

    first = asyncio.create_task(handler.cmd_online())
    await settle()

    assert handler.checking_online
    assert await handler.cmd_online() == ONLINE_BUSY

    helix.gate.set()
    assert await first == ">>>\nalpha: *LIVE*"
    assert not handler.checking_online
    assert helix.calls == 1


@pytest.mark.asyncio
async def test_online_error_resets_the_busy_flag():
    helix = FakeHelix(error=HelixError("boom", status_code=500))
    handler = AdminCommandHandler(controller=FakeController("alpha"), helix=helix)

    assert await handler.cmd_online() == ONLINE_ERROR
    assert not handler.checking_online

    helix.error = None
    assert await handler.cmd_online() == ">>>\nalpha: _Offline_"
