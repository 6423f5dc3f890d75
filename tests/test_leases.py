import asyncio

import pytest

from core.leases import LeaseTable

INTERVAL = 0.1
GRACE = 0.05  # window = 0.25s


class PartRecorder:
    def __init__(self, fail: bool = False, delay: float = 0.0):
        self.parted = []
        self.fail = fail
        self.delay = delay

    async def __call__(self, channel: str) -> None:
        if self.delay:
            await asyncio.sleep(self.delay)
        self.parted.append(channel)
        if self.fail:
            raise RuntimeError("part failed")


def make_table(part) -> LeaseTable:
    return LeaseTable(heartbeat_interval=INTERVAL, grace=GRACE, part=part)


def test_window_is_two_intervals_plus_grace():
    table = LeaseTable(heartbeat_interval=15.0, grace=1.0)
    assert table.window == 31.0


def test_rejects_non_positive_interval():
    with pytest.raises(ValueError):
        LeaseTable(heartbeat_interval=0)


@pytest.mark.asyncio
async def test_refresh_creates_live_lease_and_normalizes():
    table = make_table(PartRecorder())
    expiry = table.refresh("#AlphaChan ")

    assert "alphachan" in table
    assert table.desired_channels() == ["alphachan"]
    assert table.expiry("alphachan") == expiry
    assert expiry == pytest.approx(asyncio.get_running_loop().time() + table.window, abs=0.05)
    await table.close()


@pytest.mark.asyncio
async def test_refresh_rejects_empty_channel():
    table = make_table(PartRecorder())
    with pytest.raises(ValueError):
        table.refresh("#  ")
    await table.close()


@pytest.mark.asyncio
async def test_one_missed_heartbeat_is_tolerated():
    part = PartRecorder()
    table = make_table(part)
    table.refresh("alpha")

    # one full interval with no refresh: still joined
    await asyncio.sleep(INTERVAL + 0.02)
    assert table.is_live("alpha")
    assert part.parted == []

    # past 2x interval + grace: parted
    await asyncio.sleep(table.window - INTERVAL + 0.08)
    assert not table.is_live("alpha")
    assert part.parted == ["alpha"]
    assert len(table) == 0
    await table.close()


@pytest.mark.asyncio
async def test_refresh_pushes_expiry_forward_without_double_fire():
    part = PartRecorder()
    table = make_table(part)

    for _ in range(5):
        table.refresh("alpha")
        await asyncio.sleep(INTERVAL)

    assert table.is_live("alpha")
    assert part.parted == []

    await asyncio.sleep(table.window + 0.1)
    assert part.parted == ["alpha"]
    await table.close()


@pytest.mark.asyncio
async def test_expired_lease_leaves_desired_set_before_part_completes():
    part = PartRecorder(delay=0.05)
    table = make_table(part)
    table.refresh("alpha")
    table.refresh("beta")

    await asyncio.sleep(0.15)
    table.refresh("beta")
    await asyncio.sleep(table.window - 0.15 + 0.02)

    assert table.desired_channels() == ["beta"]
    assert table.expiry("alpha") is None

    await asyncio.sleep(0.08)
    assert part.parted == ["alpha"]
    await table.close()


@pytest.mark.asyncio
async def test_refresh_during_part_keeps_the_lease():
    part = PartRecorder(delay=0.1)
    table = make_table(part)
    table.refresh("alpha")

    await asyncio.sleep(table.window + 0.02)
    assert not table.is_live("alpha")

    table.refresh("alpha")
    await asyncio.sleep(0.15)

    assert part.parted == ["alpha"]
    assert table.is_live("alpha")
    await table.close()


@pytest.mark.asyncio
async def test_failed_part_is_logged_and_entry_removed():
    part = PartRecorder(fail=True)
    table = make_table(part)
    table.refresh("alpha")

    await asyncio.sleep(table.window + 0.05)
    assert part.parted == ["alpha"]
    assert "alpha" not in table
    assert table.desired_channels() == []
    await table.close()


@pytest.mark.asyncio
async def test_release_cancels_timer_without_part():
    part = PartRecorder()
    table = make_table(part)
    table.refresh("alpha")
    table.release("alpha")

    await asyncio.sleep(table.window + 0.05)
    assert part.parted == []
    assert "alpha" not in table
    await table.close()


@pytest.mark.asyncio
async def test_close_cancels_every_timer():
    part = PartRecorder()
    table = make_table(part)
    table.refresh("alpha")
    table.refresh("beta")
    await table.close()

    await asyncio.sleep(table.window + 0.05)
    assert part.parted == []
    assert len(table) == 0
