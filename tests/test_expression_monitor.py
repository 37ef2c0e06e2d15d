"""Tests for reference-counted expression polling."""

import pytest

from conftest import FakeClock, wait_until
from tic80_lib.expression_monitor import ExpressionSubscriptionMonitor
from tic80_lib.session import RemoteSession


class RefreshCounter:
    def __init__(self) -> None:
        self.count = 0

    def __call__(self) -> None:
        self.count += 1


def make_monitor(session, poll_hz=10.0):
    clock = FakeClock()
    refresh = RefreshCounter()
    monitor = ExpressionSubscriptionMonitor(
        session, get_poll_hz=lambda: poll_hz, schedule_refresh=refresh, clock=clock
    )
    return monitor, clock, refresh


@pytest.mark.asyncio
async def test_refcounted_subscriptions(session, fake) -> None:
    """Test that an expression stays polled until its last reference is dropped."""
    monitor, clock, _ = make_monitor(session)

    monitor.subscribe("x")
    monitor.subscribe("x")
    monitor.unsubscribe("x")
    assert monitor.subscription_count("x") == 1

    await monitor.tick()
    assert monitor.get_results_snapshot() == {"x": {"value": "5"}}
    assert fake.eval_counts["x"] == 1

    monitor.unsubscribe("x")
    assert monitor.subscription_count("x") == 0
    assert monitor.get_results_snapshot() == {}

    clock.advance(1000)
    await monitor.tick()
    assert fake.eval_counts["x"] == 1


@pytest.mark.asyncio
async def test_partial_failure_is_isolated(session) -> None:
    """Test that one failing expression doesn't affect the others."""
    monitor, _, refresh = make_monitor(session)
    monitor.subscribe("x")
    monitor.subscribe("nope")
    monitor.subscribe("score + 1")

    await monitor.tick()

    results = monitor.get_results_snapshot()
    assert results["x"] == {"value": "5"}
    assert results["score + 1"] == {"value": "13"}
    assert "undefined variable" in results["nope"]["error"]
    assert refresh.count == 1


@pytest.mark.asyncio
async def test_poll_interval_gating(session, fake) -> None:
    """Test that ticks only poll once the configured interval has elapsed."""
    monitor, clock, refresh = make_monitor(session, poll_hz=10.0)
    assert monitor.poll_interval_ms == 100
    monitor.subscribe("x")

    await monitor.tick()
    clock.advance(50)
    await monitor.tick()
    assert fake.eval_counts["x"] == 1

    clock.advance(50)
    await monitor.tick()
    assert fake.eval_counts["x"] == 2
    assert refresh.count == 2


def test_poll_interval_floor_and_fallback() -> None:
    """Test the 16 ms floor and the default for invalid rates."""
    session = RemoteSession()
    fast, _, _ = make_monitor(session, poll_hz=1000.0)
    assert fast.poll_interval_ms == 16

    invalid, _, _ = make_monitor(session, poll_hz=0)
    assert invalid.poll_interval_ms == 100

    nan, _, _ = make_monitor(session, poll_hz=float("nan"))
    assert nan.poll_interval_ms == 100


@pytest.mark.asyncio
async def test_values_follow_remote_changes(session, fake) -> None:
    """Test that later polls pick up new remote values."""
    monitor, clock, _ = make_monitor(session)
    monitor.subscribe("x")

    await monitor.tick()
    fake.variables["x"] = 42
    clock.advance(100)
    await monitor.tick()

    assert monitor.get_results_snapshot() == {"x": {"value": "42"}}


@pytest.mark.asyncio
async def test_disconnect_clears_everything_once(session, fake) -> None:
    """Test that disconnect clears subscriptions and results with one refresh."""
    monitor, clock, refresh = make_monitor(session)
    monitor.subscribe("x")
    await monitor.tick()
    assert refresh.count == 1

    session.disconnect()

    assert monitor.get_results_snapshot() == {}
    assert monitor.subscription_count("x") == 0
    assert refresh.count == 2

    clock.advance(1000)
    await monitor.tick()
    assert refresh.count == 2
    assert fake.eval_counts["x"] == 1


@pytest.mark.asyncio
async def test_subscribe_while_disconnected_is_cleared_on_tick() -> None:
    """Test that subscriptions made without a session don't linger."""
    session = RemoteSession()
    monitor, _, refresh = make_monitor(session)
    monitor.subscribe("x")

    await monitor.tick()

    assert monitor.subscription_count("x") == 0
    assert refresh.count == 1


@pytest.mark.asyncio
async def test_background_loop_polls(session) -> None:
    """Test that start() runs ticks on the event loop until stop()."""
    monitor = ExpressionSubscriptionMonitor(session, tick_s=0.01)
    monitor.subscribe("x")

    monitor.start()
    assert monitor.is_running()
    await wait_until(lambda: "x" in monitor.get_results_snapshot())

    await monitor.close()
    assert not monitor.is_running()
