"""End-to-end tests for the client facade against an in-process relay."""

import asyncio
import dataclasses

import pytest

from checkins.connection import Backoff
from checkins.errors import AuthenticationError, TransportError, ValidationError
from checkins.events import (
    CheckInReceived,
    ConnectionChanged,
    ConnectionState,
    CooldownTick,
    ErrorNotice,
    HistoryReady,
    OnlineCountChanged,
)
from checkins.node import CheckInClient, RelayServer, static_token_verifier
from checkins.run_node import wait_for

FAST = dict(history_idle=0.2, history_ceiling=0.5, settle_delay=0.05)


def confirmed(identity):
    return lambda e: isinstance(e, CheckInReceived) and e.checkin.identity == identity and not e.checkin.pending


def history_ready(e):
    return isinstance(e, HistoryReady)


@pytest.mark.asyncio
async def test_checkin_reaches_late_joiner(client_settings):
    """alice checks in; a client that connects later sees exactly her entry."""
    alice = CheckInClient(client_settings, **FAST)
    await alice.start()
    assert await wait_for(alice.events, history_ready, 2) is not None

    sent = await alice.submit("alice", "debugging", ["python"])
    assert sent is not None and sent.pending
    echo = await wait_for(alice.events, confirmed("alice"), 2)
    assert echo.checkin.message == "debugging"
    assert [c.pending for c in alice.snapshot()] == [False]

    late = CheckInClient(client_settings, **FAST)
    await late.start()
    assert await wait_for(late.events, history_ready, 2) is not None
    await late.request_history()
    assert await wait_for(late.events, history_ready, 2) is not None

    entries = late.snapshot()
    assert len(entries) == 1
    assert entries[0].identity == "alice"
    assert entries[0].message == "debugging"
    assert entries[0].tags == ("python",)

    await late.request_online_users()
    count = await wait_for(late.events, lambda e: isinstance(e, OnlineCountChanged), 2)
    assert count is not None
    assert late.online_count >= 1

    await late.stop()
    await alice.stop()


@pytest.mark.asyncio
async def test_cooldown_blocks_second_submission(client_settings):
    client = CheckInClient(client_settings, **FAST)
    await client.start()

    assert await client.submit("alice", "first", []) is not None
    assert not client.cooldown.can_submit()
    assert client.cooldown.remaining() == pytest.approx(client_settings.cooldown_period, abs=1.0)

    assert await client.submit("alice", "second", []) is None
    tick = await wait_for(client.events, lambda e: isinstance(e, CooldownTick), 2)
    assert tick.remaining > 0

    await client.stop()


@pytest.mark.asyncio
async def test_submission_fills_in_tags_snippet_and_avatar(client_settings):
    client_settings.avatar_template = "https://avatars.example/{identity}.png"
    client = CheckInClient(client_settings, tag_source=lambda: ["rust", "wasm"], **FAST)
    await client.start()

    sent = await client.submit("bob", "x" * 60)
    assert sent.tags == ("rust", "wasm")
    assert sent.message == "x" * 42
    assert sent.avatar_ref == "https://avatars.example/bob.png"
    assert sent.decorative_snippet

    echo = await wait_for(client.events, confirmed("bob"), 2)
    assert echo.checkin.avatar_ref == "https://avatars.example/bob.png"
    await client.stop()


@pytest.mark.asyncio
async def test_validation_happens_before_network(settings):
    client = CheckInClient(settings, auto_reconnect=False)
    with pytest.raises(ValidationError):
        await client.submit("", "hi", [])
    with pytest.raises(ValidationError):
        await client.submit("alice", "hi", ["a", "b", "c", "d"])
    assert client.cooldown.can_submit()


@pytest.mark.asyncio
async def test_submit_while_disconnected_is_transport_error(settings):
    client = CheckInClient(settings, auto_reconnect=False)
    with pytest.raises(TransportError):
        await client.submit("alice", "hi", [])
    # Nothing was sent, so no cooldown was consumed.
    assert client.cooldown.can_submit()
    assert client.snapshot() == []


@pytest.mark.asyncio
async def test_token_failure_blocks_submission(client_settings):
    async def broken_provider():
        raise RuntimeError("consent dialog dismissed")

    client = CheckInClient(client_settings, identity_provider=broken_provider, **FAST)
    await client.start()
    assert client.connected

    with pytest.raises(AuthenticationError):
        await client.submit("alice", "hi", [])
    assert client.cooldown.can_submit()
    await client.stop()


@pytest.mark.asyncio
async def test_slow_token_provider_times_out(client_settings):
    async def slow_provider():
        await asyncio.sleep(5)
        return "late"

    client = CheckInClient(client_settings, identity_provider=slow_provider, token_timeout=0.1, **FAST)
    await client.start()
    assert client.connected
    with pytest.raises(AuthenticationError):
        await client.submit("alice", "hi", [])
    await client.stop()


@pytest.mark.asyncio
async def test_overlapping_submissions_pass_the_gate_once(client_settings):
    async def slow_provider():
        await asyncio.sleep(0.05)
        return None

    client = CheckInClient(client_settings, identity_provider=slow_provider, **FAST)
    await client.start()

    results = await asyncio.gather(
        client.submit("alice", "first", []),
        client.submit("alice", "second", []),
    )
    assert [r.message for r in results if r is not None] == ["first"]
    # The relay never had to throttle us.
    assert await wait_for(client.events, lambda e: isinstance(e, ErrorNotice), 0.5) is None
    await client.stop()


@pytest.mark.asyncio
async def test_failed_send_gives_the_slot_back(client_settings):
    client = CheckInClient(client_settings, **FAST)
    await client.start()
    await client.stop()

    with pytest.raises(TransportError):
        await client.submit("alice", "hi", [])
    assert client.cooldown.last_submission is None
    assert client.cooldown.can_submit()


@pytest.mark.asyncio
async def test_sign_in_after_rejection_reconnects(settings):
    relay = RelayServer("127.0.0.1", 0, settings, token_verifier=static_token_verifier({"good": "alice"}))
    await relay.listen()
    current = {"token": "expired"}

    async def provider():
        return current["token"]

    relay_settings = dataclasses.replace(settings, relay_url=f"tcp://127.0.0.1:{relay.bound_port}")
    client = CheckInClient(relay_settings, identity_provider=provider, backoff=Backoff(base=0.05), **FAST)
    try:
        await client.start()
        rejected = await wait_for(
            client.events,
            lambda e: isinstance(e, ConnectionChanged)
            and e.state is ConnectionState.DISCONNECTED
            and isinstance(e.error, AuthenticationError),
            2,
        )
        assert rejected is not None
        await asyncio.sleep(0.2)
        assert not client.connected

        current["token"] = "good"
        await client.set_authenticated(True)
        assert client.connected
        assert await wait_for(client.events, history_ready, 2) is not None

        await client.set_authenticated(False)
        assert not client.connected
        assert not client.authenticated
    finally:
        await client.stop()
        await relay.stop()
