"""Shared fixtures: a fake TIC-80 server and a session connected to it."""

import asyncio
import time
from typing import Callable

import pytest_asyncio

from fakes.fake_tic80 import FakeTic80
from tic80_lib.session import RemoteSession


class FakeClock:
    """Manually advanced millisecond clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, ms: float) -> None:
        self.now += ms


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll predicate on the event loop until it holds or the timeout passes."""
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("Condition not met before timeout")
        await asyncio.sleep(0.01)


@pytest_asyncio.fixture
async def fake():
    """Running FakeTic80 with a couple of numeric globals."""
    server = FakeTic80(variables={"x": 5, "score": 12})
    await server.start()
    yield server
    await server.stop()


@pytest_asyncio.fixture
async def session(fake):
    """RemoteSession connected to the fake server."""
    remote = RemoteSession()
    await remote.connect(fake.host, fake.port)
    yield remote
    remote.close()


@pytest_asyncio.fixture
async def dead_port():
    """A local port with nothing listening on it."""
    server = FakeTic80()
    port = await server.start()
    await server.stop()
    return port
