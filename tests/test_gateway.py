import asyncio

import pytest

from core.gateway import (
    AuthenticationError,
    GatewayError,
    NotAuthenticated,
    SessionState,
    ValidationError,
)
from services.twitch.api.errors import JoinRejected
from services.twitch.models.events import ChatMessage
from tests.conftest import FakeSubscriber, settle


def open_session(context, name="x"):
    subscriber = FakeSubscriber(name)
    return context.gateway.open_session(subscriber), subscriber


async def authed(context, name="x"):
    session, subscriber = open_session(context, name)
    await context.gateway.handle(session, "authenticate", ["s3cret"])
    return session, subscriber


# ----------------------------------------------------------------------
# Authentication
# ----------------------------------------------------------------------


@pytest.mark.asyncio
async def test_commands_before_authentication_are_rejected(context, upstream):
    session, _ = open_session(context)

    for event, args in (
        ("join", ["alpha"]),
        ("say", ["alpha", "hi"]),
        ("timeout", ["alpha", "troll", 10]),
        ("mods", ["alpha"]),
        ("heartbeat", [["alpha"]]),
    ):
        with pytest.raises(NotAuthenticated, match="not authenticated"):
            await context.gateway.handle(session, event, args)

    assert context.router.channels() == []
    assert context.leases.desired_channels() == []
    assert upstream.count("join") == 0


@pytest.mark.asyncio
async def test_authentication_state_machine(context):
    session, _ = open_session(context)

    with pytest.raises(AuthenticationError, match="invalid key"):
        await context.gateway.handle(session, "authenticate", ["wrong"])
    with pytest.raises(AuthenticationError, match="invalid key"):
        await context.gateway.handle(session, "authenticate", [])
    assert session.state is SessionState.UNAUTHENTICATED

    assert await context.gateway.handle(session, "authenticate", ["s3cret"]) is None
    assert session.authenticated

    with pytest.raises(AuthenticationError, match="already authenticated"):
        await context.gateway.handle(session, "authenticate", ["s3cret"])


@pytest.mark.asyncio
async def test_unknown_and_malformed_requests(context):
    session, _ = await authed(context)

    with pytest.raises(ValidationError, match='unknown event "part"'):
        await context.gateway.handle(session, "part", ["alpha"])
    with pytest.raises(ValidationError, match="malformed request"):
        await context.gateway.handle(session, "join", "alpha")
    with pytest.raises(ValidationError, match="malformed request"):
        await context.gateway.handle(session, None, [])


# ----------------------------------------------------------------------
# join
# ----------------------------------------------------------------------


@pytest.mark.asyncio
async def test_join_subscribes_refreshes_and_joins(context, upstream):
    session, subscriber = await authed(context)

    assert await context.gateway.handle(session, "join", ["#Alpha"]) is None

    assert context.router.subscribers("alpha") == {subscriber}
    assert context.leases.is_live("alpha")
    assert context.controller.is_joined("alpha")
    assert upstream.count("join", "alpha") == 1


@pytest.mark.asyncio
async def test_join_of_joined_channel_returns_name_without_upstream_call(context, upstream):
    first, _ = await authed(context, "x")
    second, subscriber = await authed(context, "y")

    await context.gateway.handle(first, "join", ["alpha"])
    assert await context.gateway.handle(second, "join", ["alpha"]) == "alpha"

    assert upstream.count("join", "alpha") == 1
    assert subscriber in context.router.subscribers("alpha")


@pytest.mark.asyncio
async def test_join_validation(context, upstream):
    session, _ = await authed(context)

    for bad in (None, "", "#", 42, ["alpha"]):
        with pytest.raises(ValidationError):
            await context.gateway.handle(session, "join", [bad])

    assert upstream.count("join") == 0


@pytest.mark.asyncio
async def test_join_while_disconnected_is_queued_and_replayed_in_order(context, upstream):
    x, _ = await authed(context, "x")
    y, _ = await authed(context, "y")

    upstream.drop()
    await settle()

    first = asyncio.create_task(context.gateway.handle(x, "join", ["alpha"]))
    second = asyncio.create_task(context.gateway.handle(y, "join", ["beta"]))
    await settle()

    assert context.gateway.pending_joins == 2
    assert not first.done() and not second.done()
    assert context.leases.desired_channels() == []

    upstream.reconnect()
    assert await first is None
    assert await second is None

    joins = [call[1] for call in upstream.calls if call[0] == "join"]
    assert joins == ["alpha", "beta"]
    assert context.leases.desired_channels() == ["alpha", "beta"]


@pytest.mark.asyncio
async def test_queued_join_of_closed_session_is_dropped(context, upstream):
    session, subscriber = await authed(context)

    upstream.drop()
    await settle()

    pending = asyncio.create_task(context.gateway.handle(session, "join", ["alpha"]))
    await settle()
    context.gateway.close_session(session)

    with pytest.raises(GatewayError):
        await pending

    upstream.reconnect()
    await settle()

    assert upstream.count("join", "alpha") == 0
    assert context.router.subscribers("alpha") == set()


# ----------------------------------------------------------------------
# say / timeout / mods
# ----------------------------------------------------------------------


@pytest.mark.asyncio
async def test_pass_through_commands(context, upstream):
    session, _ = await authed(context)
    upstream.mods_by_channel["alpha"] = ["mod_one"]

    assert await context.gateway.handle(session, "say", ["alpha", "hello"]) is None
    assert await context.gateway.handle(session, "timeout", ["alpha", "troll", 30]) is None
    assert await context.gateway.handle(session, "mods", ["#alpha"]) == ["mod_one"]

    assert ("say", "alpha", "hello") in upstream.calls
    assert ("timeout", "alpha", "troll", 30) in upstream.calls
    # no lease interaction
    assert context.leases.desired_channels() == []


@pytest.mark.asyncio
async def test_say_and_timeout_validation(context, upstream):
    session, _ = await authed(context)

    with pytest.raises(ValidationError, match="message"):
        await context.gateway.handle(session, "say", ["alpha", "  "])
    with pytest.raises(ValidationError, match="user"):
        await context.gateway.handle(session, "timeout", ["alpha", "", 10])
    for seconds in (0, -5, "10", True, 1.5, None):
        with pytest.raises(ValidationError, match="seconds"):
            await context.gateway.handle(session, "timeout", ["alpha", "troll", seconds])

    assert upstream.count("say") == 0
    assert upstream.count("timeout") == 0


# ----------------------------------------------------------------------
# heartbeat
# ----------------------------------------------------------------------


@pytest.mark.asyncio
async def test_heartbeat_refreshes_and_joins_missing_channels(context, upstream):
    session, subscriber = await authed(context)

    interval = await context.gateway.handle(session, "heartbeat", [["alpha", "#Beta"]])
    await settle()

    assert interval == 15000
    assert context.leases.desired_channels() == ["alpha", "beta"]
    assert context.controller.is_joined("alpha")
    assert context.controller.is_joined("beta")
    assert context.router.channels_for(subscriber) == ["alpha", "beta"]


@pytest.mark.asyncio
async def test_heartbeat_burst_during_slow_join_joins_once(context, upstream):
    session, _ = await authed(context)
    upstream.join_gate = asyncio.Event()

    for _ in range(5):
        await context.gateway.handle(session, "heartbeat", [["alpha"]])
        await settle()

    upstream.join_gate.set()
    await settle()

    assert upstream.count("join", "alpha") == 1
    assert context.controller.is_joined("alpha")


@pytest.mark.asyncio
async def test_heartbeat_while_disconnected_only_refreshes(context, upstream):
    session, _ = await authed(context)
    upstream.drop()
    await settle()

    assert await context.gateway.handle(session, "heartbeat", [["alpha"]]) == 15000
    await settle()

    assert context.leases.is_live("alpha")
    assert upstream.count("join") == 0


@pytest.mark.asyncio
async def test_heartbeat_validation(context):
    session, _ = await authed(context)

    with pytest.raises(ValidationError):
        await context.gateway.handle(session, "heartbeat", ["alpha"])
    with pytest.raises(ValidationError):
        await context.gateway.handle(session, "heartbeat", [["alpha", 7]])

    assert context.leases.desired_channels() == []


# ----------------------------------------------------------------------
# disconnection / fan-out through the bridge
# ----------------------------------------------------------------------


@pytest.mark.asyncio
async def test_close_session_unsubscribes_but_keeps_lease(context):
    session, subscriber = await authed(context)
    await context.gateway.handle(session, "join", ["alpha"])

    context.gateway.close_session(session)

    assert session.closed
    assert context.router.subscribers("alpha") == set()
    assert context.leases.is_live("alpha")
    with pytest.raises(GatewayError):
        await context.gateway.handle(session, "mods", ["alpha"])


@pytest.mark.asyncio
async def test_upstream_events_reach_only_subscribed_sessions(context, upstream):
    x, x_sub = await authed(context, "x")
    y, y_sub = await authed(context, "y")
    await context.gateway.handle(x, "join", ["alpha"])
    await context.gateway.handle(y, "join", ["beta"])

    upstream.push(ChatMessage(channel="beta", user={"username": "viewer"}, message="hi beta"))
    upstream.push(ChatMessage(channel="gamma", user={"username": "viewer"}, message="nobody"))
    await settle()

    assert x_sub.events("chat") == []
    assert [payload["message"] for _, payload in y_sub.events("chat")] == ["hi beta"]


# ----------------------------------------------------------------------
# joins racing a part
# ----------------------------------------------------------------------


async def joined_then_parting(context, upstream, channel="alpha"):
    """Join a channel, then start a part whose PART echo has not arrived."""
    session, subscriber = await authed(context)
    await context.gateway.handle(session, "join", [channel])

    upstream.part_gate = asyncio.Event()
    parting = asyncio.create_task(context.controller.part(channel))
    await settle()
    assert context.controller.is_joined(channel)
    return session, subscriber, parting


@pytest.mark.asyncio
async def test_join_during_in_flight_part_joins_again_after_it(context, upstream):
    session, _, parting = await joined_then_parting(context, upstream)

    joining = asyncio.create_task(context.gateway.handle(session, "join", ["alpha"]))
    await settle()
    assert not joining.done()

    upstream.part_gate.set()
    await parting

    assert await joining is None
    assert context.controller.is_joined("alpha")
    assert context.leases.is_live("alpha")
    assert upstream.count("join", "alpha") == 2


@pytest.mark.asyncio
async def test_heartbeat_during_in_flight_part_joins_again_after_it(context, upstream):
    session, _, parting = await joined_then_parting(context, upstream)

    assert await context.gateway.handle(session, "heartbeat", [["alpha"]]) == 15000
    await settle()

    upstream.part_gate.set()
    await parting
    await settle()

    assert context.controller.is_joined("alpha")
    assert upstream.count("join", "alpha") == 2


@pytest.mark.asyncio
async def test_rejected_join_releases_the_lease(context, upstream):
    session, subscriber = await authed(context)
    upstream.join_errors["private"] = JoinRejected("private", "msg_banned")

    with pytest.raises(JoinRejected):
        await context.gateway.handle(session, "join", ["private"])

    assert not context.leases.is_live("private")
    assert context.leases.desired_channels() == []
    assert subscriber in context.router.subscribers("private")


# ----------------------------------------------------------------------
# lease expiry through the bridge
# ----------------------------------------------------------------------


@pytest.mark.asyncio
async def test_lapsed_heartbeats_part_but_keep_the_subscriber(make_context, upstream):
    ctx = make_context(heartbeat_interval_ms=50)
    ctx.leases.grace = 0.05
    await ctx.controller.start()
    await settle()

    session, subscriber = await authed(ctx)
    assert await ctx.gateway.handle(session, "join", ["alpha"]) is None

    # window is 2 * 50ms + 50ms; nobody heartbeats
    await asyncio.sleep(0.3)

    assert upstream.count("part", "alpha") == 1
    assert not ctx.controller.is_joined("alpha")
    assert not ctx.leases.is_live("alpha")
    assert ctx.router.subscribers("alpha") == {subscriber}

    assert await ctx.gateway.handle(session, "heartbeat", [["alpha"]]) == 50
    await settle()

    assert ctx.controller.is_joined("alpha")
    assert ctx.leases.is_live("alpha")
    assert upstream.count("join", "alpha") == 2
