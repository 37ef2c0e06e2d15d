"""Scope-style time-series sampling of remote expressions.

Each (expression, rate) pair is an independent series sampled at its own
rate into a bounded buffer. get_snapshot() resamples every series onto a
fixed number of evenly spaced points covering the display window.
"""

import asyncio
import logging
import math
import time
from typing import Callable, Dict, List, Optional, Sequence, Set, Tuple

from tic80_lib import parsing, protocol
from tic80_lib.models import PlotSample, PlotSeriesSnapshot, PlotSeriesState
from tic80_lib.sample_buffer import SampleBuffer
from tic80_lib.session import RemoteSession

logger = logging.getLogger(__name__)


def _now_ms() -> float:
    return time.time() * 1000.0


def normalize_rate(rate_hz: Optional[float]) -> float:
    """Return rate_hz, or the default rate if missing, non-finite or <= 0."""
    if (
        rate_hz is None
        or isinstance(rate_hz, bool)
        or not isinstance(rate_hz, (int, float))
        or not math.isfinite(rate_hz)
        or rate_hz <= 0
    ):
        return protocol.DEFAULT_PLOT_RATE_HZ
    return float(rate_hz)


def make_series_key(expression: str, rate_hz: float) -> str:
    """Build the "<rate>:<expression>" key; integral rates print without ".0"."""
    rate_text = str(int(rate_hz)) if float(rate_hz).is_integer() else repr(float(rate_hz))
    return f"{rate_text}:{expression}"


def interpolate_signal(
    before: Optional[float], after: Optional[float], t01: float
) -> Optional[float]:
    """Pick a value between two neighbours using a step/hold rule.

    Below the midpoint (t01 < 0.5) the earlier value is held, from the
    midpoint on the later value is used. With one neighbour missing the
    other is returned; with both missing, None.
    """
    if before is None and after is None:
        return None
    if before is None:
        return after
    if after is None:
        return before
    return before if t01 < 0.5 else after


def resample(
    samples: Sequence[PlotSample], start_time: float, end_time: float, count: int
) -> List[float]:
    """Resample a time-ordered sample list onto count evenly spaced points.

    Target i sits at start + i / (count - 1) * span. For each target a
    forward-only pointer advances to the first sample not older than the
    target; the values on either side are combined with interpolate_signal().

    Args:
        samples: Samples sorted by ascending timestamp
        start_time: Window start (ms)
        end_time: Window end (ms)
        count: Number of output values

    Returns:
        count values (NaN where no sample exists), or [] if there are no
        samples, count <= 0, or the window is empty
    """
    if not samples or count <= 0:
        return []

    span = end_time - start_time
    if span <= 0:
        return []

    values: List[float] = []
    sample_index = 0
    for i in range(count):
        if count == 1:
            t = end_time
        else:
            t = start_time + (i / (count - 1)) * span

        while sample_index < len(samples) and samples[sample_index].t < t:
            sample_index += 1

        before = samples[sample_index - 1] if sample_index > 0 else None
        after = samples[sample_index] if sample_index < len(samples) else None

        if before is None and after is None:
            values.append(math.nan)
            continue

        if before is not None and after is not None and after.t != before.t:
            t01 = (t - before.t) / (after.t - before.t)
        else:
            t01 = 0.0

        result = interpolate_signal(
            before.v if before is not None else None,
            after.v if after is not None else None,
            t01,
        )
        values.append(math.nan if result is None else result)

    return values


class PlotSubscriptionManager:
    """Reference-counted scope series sampled from the remote session.

    Series are keyed by "<rate>:<expression>". Each one samples at its own
    rate, keeps at most twice the display window (and never more than
    max_samples points), and can be paused, which freezes the right edge of
    its snapshot window at the pause time.
    """

    def __init__(
        self,
        session: RemoteSession,
        schedule_refresh: Callable[[], None] = lambda: None,
        clock: Callable[[], float] = _now_ms,
        tick_s: float = protocol.PLOT_TICK_S,
        window_ms: float = protocol.PLOT_WINDOW_MS,
        resample_count: int = protocol.RESAMPLE_COUNT,
        max_samples: int = protocol.MAX_PLOT_SAMPLES,
    ) -> None:
        """Initialize manager and attach to session state changes.

        Args:
            session: Session used to evaluate expressions
            schedule_refresh: Called when sampled data changed
            clock: Wall-clock in milliseconds (injectable for tests)
            tick_s: Scan tick in seconds
            window_ms: Display window width in milliseconds
            resample_count: Default number of points per snapshot
            max_samples: Absolute per-series sample cap
        """
        self._session = session
        self._schedule_refresh = schedule_refresh
        self._clock = clock
        self._tick_s = tick_s
        self._window_ms = window_ms
        self._resample_count = resample_count
        self._max_samples = max_samples

        self._series: Dict[str, PlotSeriesState] = {}
        self._task: Optional["asyncio.Task[None]"] = None
        self._tick_tasks: Set["asyncio.Task[None]"] = set()

        self._remove_listener = session.on_state_change(
            lambda snapshot: self.handle_session_state_change()
        )

    # ========================================================================
    # Subscriptions
    # ========================================================================

    def subscribe(
        self,
        expression: str,
        rate_hz: Optional[float] = None,
        sample_count: Optional[int] = None,
    ) -> None:
        """Add a reference to the (expression, rate) series, creating it if new."""
        if not expression:
            return
        rate = normalize_rate(rate_hz)
        key = make_series_key(expression, rate)

        existing = self._series.get(key)
        if existing is not None:
            existing.count += 1
            self._apply_sample_count(existing, sample_count)
            logger.debug(f"Plot subscribe +1 {key} (count={existing.count})")
            return

        state = PlotSeriesState(
            expression=expression,
            rate_hz=rate,
            samples=SampleBuffer(maxlen=self._max_samples),
            resample_count=self._resample_count,
        )
        self._apply_sample_count(state, sample_count)
        self._series[key] = state
        logger.info(f"Plot subscribe {expression!r} @ {rate:g} Hz")

    def unsubscribe(self, expression: str, rate_hz: Optional[float] = None) -> None:
        """Drop a reference; the series is removed with its last reference."""
        if not expression:
            return
        key = make_series_key(expression, normalize_rate(rate_hz))

        existing = self._series.get(key)
        if existing is None:
            return
        if existing.count <= 1:
            del self._series[key]
            logger.info(f"Plot unsubscribe {key}")
        else:
            existing.count -= 1
            logger.debug(f"Plot unsubscribe -1 {key} (count={existing.count})")

    def set_paused(
        self,
        expression: str,
        rate_hz: Optional[float],
        paused: bool,
        sample_count: Optional[int] = None,
    ) -> None:
        """Freeze (or release) the snapshot window of a series."""
        if not expression:
            return
        rate = normalize_rate(rate_hz)
        existing = self._series.get(make_series_key(expression, rate))
        if existing is None:
            return

        existing.paused = paused
        existing.paused_at = self._clock() if paused else None
        self._apply_sample_count(existing, sample_count)
        logger.info(f"Plot {'paused' if paused else 'resumed'} {expression!r} @ {rate:g} Hz")

    def get_series(self, expression: str, rate_hz: Optional[float] = None) -> Optional[PlotSeriesState]:
        return self._series.get(make_series_key(expression, normalize_rate(rate_hz)))

    def keys(self) -> List[str]:
        return list(self._series.keys())

    def items(self) -> List[Tuple[str, PlotSeriesState]]:
        return list(self._series.items())

    def _apply_sample_count(self, state: PlotSeriesState, sample_count: Optional[int]) -> None:
        if (
            isinstance(sample_count, int)
            and not isinstance(sample_count, bool)
            and sample_count > 0
        ):
            if state.requested_count is None or sample_count > state.requested_count:
                state.requested_count = sample_count
            state.resample_count = state.requested_count

    # ========================================================================
    # Snapshots
    # ========================================================================

    def get_snapshot(self) -> Dict[str, PlotSeriesSnapshot]:
        """Resampled display window for every active series."""
        payload: Dict[str, PlotSeriesSnapshot] = {}
        now = self._clock()

        for key, state in self._series.items():
            if state.paused and state.paused_at is not None:
                end_time = state.paused_at
            else:
                end_time = now
            start_time = end_time - self._window_ms
            payload[key] = PlotSeriesSnapshot(
                expression=state.expression,
                rate_hz=state.rate_hz,
                values=resample(state.samples.snapshot(), start_time, end_time, state.resample_count),
                start_time=start_time,
                end_time=end_time,
            )

        return payload

    def get_series_samples(self) -> Dict[str, List[PlotSample]]:
        """Raw retained samples per series key, oldest first."""
        return {key: state.samples.snapshot() for key, state in self._series.items()}

    # ========================================================================
    # Scheduling
    # ========================================================================

    def start(self) -> None:
        """Start the scan loop on the running event loop."""
        if self._task is not None and not self._task.done():
            return
        self._task = asyncio.create_task(self._run())
        logger.info(f"Plot sampler started (tick {self._tick_s * 1000:.0f} ms)")

    async def stop(self) -> None:
        """Stop the scan loop and wait for in-flight samples to settle."""
        task = self._task
        self._task = None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        if self._tick_tasks:
            await asyncio.gather(*self._tick_tasks, return_exceptions=True)
        logger.info("Plot sampler stopped")

    async def close(self) -> None:
        """Stop sampling, detach from the session and drop every series."""
        await self.stop()
        self._remove_listener()
        self._series.clear()

    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._tick_s)
            # Each tick runs on its own so one slow series can't stall the scan
            tick_task = asyncio.create_task(self.tick())
            self._tick_tasks.add(tick_task)
            tick_task.add_done_callback(self._tick_done)

    def _tick_done(self, task: "asyncio.Task[None]") -> None:
        self._tick_tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Error in plot sampling tick: {error}", exc_info=error)

    async def tick(self) -> None:
        """Sample every due series once, concurrently."""
        if not self._session.is_connected():
            self.handle_session_state_change()
            return

        if not self._series:
            return

        now = self._clock()
        due = [
            state
            for state in self._series.values()
            if not state.busy
            and not state.paused
            and now - state.last_sample_at >= state.interval_ms
        ]
        if not due:
            return

        for state in due:
            state.busy = True
        sampled = await asyncio.gather(*(self._sample(state, now) for state in due))

        if any(sampled):
            self._schedule_refresh()

    async def _sample(self, state: PlotSeriesState, now: float) -> bool:
        try:
            value_text = await self._session.eval_expr(state.expression)
            numeric = parsing.parse_numeric_value(value_text)
            if numeric is None:
                return False
            state.samples.append(PlotSample(t=now, v=numeric))
            state.samples.trim_before(now - self._window_ms * 2)
            return True
        except Exception as e:
            logger.warning(f"Plot eval error for {state.expression!r}: {e}")
            return False
        finally:
            state.last_sample_at = now
            state.busy = False

    # ========================================================================
    # Session Events
    # ========================================================================

    def handle_session_state_change(self) -> None:
        """Clear sampled data (keeping subscriptions) once the session is gone."""
        if self._session.is_connected():
            return

        cleared = False
        for state in self._series.values():
            if len(state.samples) or state.last_sample_at:
                state.samples.clear()
                state.last_sample_at = 0.0
                cleared = True

        if cleared:
            logger.info("Session disconnected, cleared plot samples")
            self._schedule_refresh()
