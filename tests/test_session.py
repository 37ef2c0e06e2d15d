"""Tests for the remote session state machine."""

import asyncio

import pytest

from conftest import wait_until
from fakes.fake_tic80 import FakeTic80
from tic80_lib.errors import NotConnectedError, RemoteError, TransportError
from tic80_lib.models import SessionState
from tic80_lib.session import RemoteSession


@pytest.mark.asyncio
async def test_connect_eval_disconnect(fake) -> None:
    """Test the basic connect, evaluate and disconnect flow."""
    session = RemoteSession()
    states = []
    session.on_state_change(lambda snapshot: states.append(snapshot.state))

    await session.connect(fake.host, fake.port)
    assert session.is_connected()
    assert states == [SessionState.CONNECTING, SessionState.CONNECTED]
    assert session.snapshot.connected_at is not None

    assert await session.eval_expr("1+1") == "2"

    session.disconnect()
    assert session.state == SessionState.NOT_CONNECTED
    assert states[-1] == SessionState.NOT_CONNECTED

    with pytest.raises(NotConnectedError):
        await session.eval_expr("1+1")


@pytest.mark.asyncio
async def test_disconnect_is_idempotent(fake) -> None:
    """Test that a second disconnect emits no further state events."""
    session = RemoteSession()
    await session.connect(fake.host, fake.port)

    states = []
    session.on_state_change(lambda snapshot: states.append(snapshot.state))
    session.disconnect("first")
    session.disconnect("second")

    assert states == [SessionState.NOT_CONNECTED]
    assert session.snapshot.last_error == "first"


@pytest.mark.asyncio
async def test_connect_failure_enters_error_state(dead_port) -> None:
    """Test that a failed connect ends in Error with the failure message."""
    session = RemoteSession()
    states = []
    session.on_state_change(lambda snapshot: states.append(snapshot.state))

    with pytest.raises(TransportError):
        await session.connect("127.0.0.1", dead_port, timeout_ms=1000)

    assert session.state == SessionState.ERROR
    assert session.snapshot.last_error
    assert states == [SessionState.CONNECTING, SessionState.ERROR]

    with pytest.raises(NotConnectedError):
        await session.eval("x = 1")


@pytest.mark.asyncio
async def test_cancelled_connect_enters_error_and_allows_retry(fake) -> None:
    """Test that cancelling connect mid-hello closes the client and leaves Error."""
    fake.ignored_commands.add("hello")
    session = RemoteSession()

    with pytest.raises(asyncio.TimeoutError):
        await asyncio.wait_for(session.connect(fake.host, fake.port), 0.2)

    assert session.state == SessionState.ERROR
    assert session.snapshot.last_error == "Connect cancelled"
    await wait_until(lambda: fake.client_count == 0)

    fake.ignored_commands.clear()
    await session.connect(fake.host, fake.port)
    assert session.state == SessionState.CONNECTED
    session.disconnect()


@pytest.mark.asyncio
async def test_connect_same_target_is_noop(session, fake) -> None:
    """Test that reconnecting to the connected target does nothing."""
    states = []
    session.on_state_change(lambda snapshot: states.append(snapshot.state))

    await session.connect(fake.host, fake.port)

    assert states == []
    assert session.is_connected()


@pytest.mark.asyncio
async def test_connect_other_target_disconnects_first(session, fake) -> None:
    """Test switching to another TIC-80 instance."""
    other = FakeTic80(variables={"x": 99})
    await other.start()
    states = []
    session.on_state_change(lambda snapshot: states.append(snapshot.state))

    try:
        await session.connect(other.host, other.port)

        assert states == [
            SessionState.NOT_CONNECTED,
            SessionState.CONNECTING,
            SessionState.CONNECTED,
        ]
        assert session.snapshot.port == other.port
        assert await session.eval_expr("x") == "99"
        await wait_until(lambda: fake.client_count == 0)
    finally:
        session.disconnect()
        await other.stop()


@pytest.mark.asyncio
async def test_remote_close_enters_error_state(session, fake) -> None:
    """Test that losing the connection moves the session to Error."""
    fake.drop_clients()

    await wait_until(lambda: session.state == SessionState.ERROR)
    assert session.snapshot.last_error

    with pytest.raises(NotConnectedError):
        await session.eval_expr("x")


@pytest.mark.asyncio
async def test_eval_and_globals(session, fake) -> None:
    """Test statement execution and filtered global listing."""
    await session.eval("lives = 3")
    assert fake.variables["lives"] == 3
    assert await session.eval_expr("lives * 2") == "6"

    names = await session.list_globals()
    assert names == ["x", "score", "lives"]


@pytest.mark.asyncio
async def test_remote_error_keeps_session_connected(session) -> None:
    """Test that an ERR reply fails only that call."""
    with pytest.raises(RemoteError):
        await session.eval_expr("missing")
    assert session.is_connected()


@pytest.mark.asyncio
async def test_cart_operations(session, fake) -> None:
    """Test cart path, metadata and load through the session."""
    fake.cart_path = "game.lua"
    fake.metadata["title"] = "Game"

    assert await session.cart_path() == '"game.lua"'
    assert await session.metadata("title") == '"Game"'

    await session.load_cart("next.lua")
    assert fake.loaded_carts == ["next.lua"]
    assert fake.received[-1].endswith('load "next.lua" 1')


@pytest.mark.asyncio
async def test_failing_listener_does_not_break_others(fake) -> None:
    """Test that one raising listener doesn't stop notification of the rest."""
    session = RemoteSession()
    seen = []

    def broken(snapshot):
        raise RuntimeError("boom")

    session.on_state_change(broken)
    remove = session.on_state_change(lambda snapshot: seen.append(snapshot.state))

    await session.connect(fake.host, fake.port)
    assert seen[-1] == SessionState.CONNECTED

    remove()
    session.disconnect()
    assert seen[-1] == SessionState.CONNECTED
