import asyncio

import discord
import pytest

from services.discord.status import StatusReporter
from tests.conftest import settle


class FakeChannel:
    def __init__(self, fail_on=()):
        self.sent = []
        self.fail_on = set(fail_on)

    async def send(self, text):
        if text in self.fail_on:
            raise discord.DiscordException("rejected")
        self.sent.append(text)


class FakeBot:
    def __init__(self, channel=None, fetched=None):
        self._channel = channel
        self._fetched = fetched
        self.fetches = 0

    def get_channel(self, channel_id):
        return self._channel

    async def fetch_channel(self, channel_id):
        self.fetches += 1
        if self._fetched is None:
            raise discord.DiscordException("unknown channel")
        return self._fetched


@pytest.mark.asyncio
async def test_lines_posted_before_ready_flush_in_order():
    reporter = StatusReporter(channel_id=123)
    reporter.post("one")
    reporter.post("two")
    assert reporter.pending == 2
    assert await reporter.drain(0.1) is False

    channel = FakeChannel()
    await reporter.attach(FakeBot(channel=channel))
    reporter.post("three")

    assert await reporter.drain(1.0) is True
    assert channel.sent == ["one", "two", "three"]
    await reporter.close()


@pytest.mark.asyncio
async def test_fetch_channel_fallback():
    channel = FakeChannel()
    bot = FakeBot(fetched=channel)
    reporter = StatusReporter(channel_id=123)

    await reporter.attach(bot)
    reporter.post("hello")
    await reporter.drain(1.0)

    assert bot.fetches == 1
    assert reporter.attached
    assert channel.sent == ["hello"]
    await reporter.close()


@pytest.mark.asyncio
async def test_unresolvable_channel_keeps_lines_queued():
    reporter = StatusReporter(channel_id=123)
    reporter.post("waiting")

    await reporter.attach(FakeBot())

    assert not reporter.attached
    assert reporter.pending == 1
    await reporter.close()


@pytest.mark.asyncio
async def test_send_failures_do_not_stop_the_queue():
    channel = FakeChannel(fail_on={"bad"})
    reporter = StatusReporter(channel_id=123)
    await reporter.attach(FakeBot(channel=channel))

    reporter.post("bad")
    reporter.post("good")
    await reporter.drain(1.0)
    await settle()

    assert channel.sent == ["good"]
    await reporter.close()


@pytest.mark.asyncio
async def test_disabled_reporter(disabled_status):
    disabled_status.post("ignored")

    assert disabled_status.enabled is False
    assert await disabled_status.drain(0.1) is True
    await disabled_status.attach(object())
    await disabled_status.close()
