"""Scope pause/resume walkthrough.

Runs against the built-in fake server by default. Set USE_FAKE = False and
point TIC80_HOST/TIC80_PORT at a real TIC-80 started with remoting enabled
(the cart must define a numeric global named by EXPRESSION).
"""

import asyncio
import math

from fakes.fake_tic80 import FakeTic80
from tic80_lib import PlotSubscriptionManager, RemoteSession

# ============================================================================
# CONFIGURATION - EDIT THIS
# ============================================================================
USE_FAKE = True
TIC80_HOST = "127.0.0.1"
TIC80_PORT = 9977
EXPRESSION = "t"
RATE_HZ = 20

# ============================================================================
# DEMO SCRIPT - DO NOT EDIT BELOW
# ============================================================================


def count_points(values):
    return sum(1 for v in values if not math.isnan(v))


async def advance_fake(fake, seconds):
    """Bump the fake's counter every 50 ms so the scope has something to show."""
    for _ in range(int(seconds / 0.05)):
        fake.variables[EXPRESSION] = fake.variables.get(EXPRESSION, 0) + 1
        await asyncio.sleep(0.05)


async def main():
    print("=" * 70)
    print("Scope Pause/Resume Demo")
    print("=" * 70)

    fake = None
    host, port = TIC80_HOST, TIC80_PORT
    if USE_FAKE:
        fake = FakeTic80(variables={EXPRESSION: 0})
        port = await fake.start()
        print(f"Fake TIC-80 on {host}:{port}")
    print()

    session = RemoteSession()
    plots = PlotSubscriptionManager(session)

    try:
        print("[1/5] Connecting...")
        await session.connect(host, port)
        print(f"      State: {session.state.value}")
        print()

        print(f"[2/5] Subscribing {EXPRESSION!r} @ {RATE_HZ} Hz, sampling 2 seconds...")
        plots.subscribe(EXPRESSION, RATE_HZ)
        plots.start()
        if fake:
            await advance_fake(fake, 2.0)
        else:
            await asyncio.sleep(2.0)

        snapshot = plots.get_snapshot()
        key = plots.keys()[0]
        print(f"      {key}: {count_points(snapshot[key].values)} points in window")
        print()

        print("[3/5] Pausing...")
        plots.set_paused(EXPRESSION, RATE_HZ, True)
        frozen = plots.get_snapshot()[key]
        await asyncio.sleep(1.0)
        later = plots.get_snapshot()[key]

        if later.end_time == frozen.end_time:
            print("✓ PASS: Window end stayed fixed while paused")
        else:
            print(f"✗ FAIL: Window end moved by {later.end_time - frozen.end_time:.0f} ms")
        print()

        print("[4/5] Resuming...")
        plots.set_paused(EXPRESSION, RATE_HZ, False)
        if fake:
            await advance_fake(fake, 1.0)
        else:
            await asyncio.sleep(1.0)
        resumed = plots.get_snapshot()[key]

        if resumed.end_time > frozen.end_time:
            print("✓ PASS: Window follows wall-clock time again")
        else:
            print("✗ FAIL: Window did not move after resume")
        print()

        print("[5/5] Disconnecting (samples cleared, subscription kept)...")
        session.disconnect("Demo finished")
        await asyncio.sleep(0.1)
        samples = plots.get_series_samples()
        print(f"      Series kept: {list(samples.keys())}")
        print(f"      Samples retained: {sum(len(s) for s in samples.values())}")
        print()

    finally:
        await plots.close()
        session.close()
        if fake:
            await fake.stop()
        print("Disconnected.")


if __name__ == "__main__":
    asyncio.run(main())
