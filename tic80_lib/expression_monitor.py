"""Reference-counted expression polling against the remote session."""

import asyncio
import logging
import math
import time
from typing import Callable, Dict, List, Optional, Tuple

from tic80_lib import protocol
from tic80_lib.models import ExpressionResult
from tic80_lib.session import RemoteSession

logger = logging.getLogger(__name__)


def _now_ms() -> float:
    return time.time() * 1000.0


class ExpressionSubscriptionMonitor:
    """Polls every subscribed expression at a configurable rate.

    The scan tick is fixed (100 ms) while the effective evaluation rate comes
    from get_poll_hz(), floored at a 16 ms interval. Each effective poll
    evaluates all subscribed expressions concurrently, caches value-or-error
    per expression, and calls schedule_refresh() once.
    """

    def __init__(
        self,
        session: RemoteSession,
        get_poll_hz: Callable[[], float] = lambda: protocol.DEFAULT_POLL_HZ,
        schedule_refresh: Callable[[], None] = lambda: None,
        clock: Callable[[], float] = _now_ms,
        tick_s: float = protocol.EXPRESSION_TICK_S,
    ) -> None:
        """Initialize monitor and attach to session state changes.

        Args:
            session: Session used to evaluate expressions
            get_poll_hz: Returns the desired poll rate in Hz
            schedule_refresh: Called when cached results changed
            clock: Wall-clock in milliseconds (injectable for tests)
            tick_s: Scan tick in seconds
        """
        self._session = session
        self._get_poll_hz = get_poll_hz
        self._schedule_refresh = schedule_refresh
        self._clock = clock
        self._tick_s = tick_s

        self._subscriptions: Dict[str, int] = {}
        self._results: Dict[str, ExpressionResult] = {}
        self._last_poll = 0.0
        self._task: Optional["asyncio.Task[None]"] = None

        self._remove_listener = session.on_state_change(
            lambda snapshot: self.handle_session_state_change()
        )

    # ========================================================================
    # Subscriptions
    # ========================================================================

    def subscribe(self, expression: str) -> None:
        if not expression:
            return
        self._subscriptions[expression] = self._subscriptions.get(expression, 0) + 1

    def unsubscribe(self, expression: str) -> None:
        current = self._subscriptions.get(expression, 0)
        if current <= 1:
            self._subscriptions.pop(expression, None)
            self._results.pop(expression, None)
        else:
            self._subscriptions[expression] = current - 1

    def subscription_count(self, expression: str) -> int:
        return self._subscriptions.get(expression, 0)

    def subscription_keys(self) -> List[str]:
        """Expressions with at least one subscriber."""
        return list(self._subscriptions.keys())

    def get_results_snapshot(self) -> Dict[str, Dict[str, str]]:
        """Latest {"value": ...} or {"error": ...} per expression."""
        return {expr: result.to_dict() for expr, result in self._results.items()}

    # ========================================================================
    # Scheduling
    # ========================================================================

    @property
    def poll_interval_ms(self) -> int:
        """Effective minimum spacing between polls."""
        poll_hz = self._get_poll_hz()
        if not isinstance(poll_hz, (int, float)) or not math.isfinite(poll_hz) or poll_hz <= 0:
            poll_hz = protocol.DEFAULT_POLL_HZ
        return max(int(1000 // poll_hz), protocol.MIN_POLL_INTERVAL_MS)

    def start(self) -> None:
        """Start the scan loop on the running event loop."""
        if self._task is not None and not self._task.done():
            return
        self._task = asyncio.create_task(self._run())
        logger.info(f"Expression monitor started (tick {self._tick_s * 1000:.0f} ms)")

    async def stop(self) -> None:
        """Stop the scan loop."""
        task = self._task
        self._task = None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Expression monitor stopped")

    async def close(self) -> None:
        """Stop polling and detach from the session."""
        await self.stop()
        self._remove_listener()

    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._tick_s)
            try:
                await self.tick()
            except Exception as e:
                logger.error(f"Error in expression poll tick: {e}", exc_info=True)

    async def tick(self) -> None:
        """One scan: poll if connected, subscribed, and the interval elapsed."""
        if not self._session.is_connected():
            self.handle_session_state_change()
            return

        if not self._subscriptions:
            return

        now = self._clock()
        if now - self._last_poll < self.poll_interval_ms:
            return
        self._last_poll = now

        await self._poll(list(self._subscriptions.keys()))

    async def _poll(self, expressions: List[str]) -> None:
        outcomes = await asyncio.gather(
            *(self._evaluate(expression) for expression in expressions)
        )
        for expression, result in outcomes:
            # Skip expressions unsubscribed while the poll was in flight
            if expression in self._subscriptions:
                self._results[expression] = result
        self._schedule_refresh()

    async def _evaluate(self, expression: str) -> Tuple[str, ExpressionResult]:
        try:
            value = await self._session.eval_expr(expression)
            return expression, ExpressionResult(value=value)
        except Exception as e:
            logger.warning(f"Expression eval error for {expression!r}: {e}")
            return expression, ExpressionResult(error=str(e))

    # ========================================================================
    # Session Events
    # ========================================================================

    def handle_session_state_change(self) -> None:
        """Drop subscriptions and cached results once the session is gone."""
        if self._session.is_connected():
            return
        if self._subscriptions or self._results:
            self._subscriptions.clear()
            self._results.clear()
            logger.info("Session disconnected, cleared expression subscriptions")
            self._schedule_refresh()
