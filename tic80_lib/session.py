"""Remote session state machine owning the TIC-80 remoting connection."""

import asyncio
import logging
import time
from typing import Callable, List, Optional

from tic80_lib import protocol
from tic80_lib.errors import NotConnectedError
from tic80_lib.models import SessionSnapshot, SessionState
from tic80_lib.transport import LineProtocolClient

logger = logging.getLogger(__name__)

StateListener = Callable[[SessionSnapshot], None]


def _now_ms() -> float:
    return time.time() * 1000.0


class RemoteSession:
    """Connection lifecycle for one remote TIC-80 process.

    Owns at most one LineProtocolClient. State changes are broadcast
    synchronously to listeners registered with on_state_change().

    States:
        NotConnected -> Connecting -> Connected
        Connecting/Connected -> Error        (transport failure)
        any -> NotConnected                  (disconnect)
    """

    def __init__(
        self,
        client_factory: Callable[..., LineProtocolClient] = LineProtocolClient,
    ) -> None:
        """Initialize session in NotConnected state.

        Args:
            client_factory: Builds the protocol client for each connect().
                            Called as client_factory(host, port, on_close=..., on_error=...).
        """
        self._client_factory = client_factory
        self._client: Optional[LineProtocolClient] = None
        self._state = SessionState.NOT_CONNECTED
        self._host = ""
        self._port = 0
        self._last_error: Optional[str] = None
        self._connected_at: Optional[float] = None
        self._listeners: List[StateListener] = []

        # Set while disconnect() closes the client, so transport callbacks
        # don't flip the state to Error
        self._disconnecting = False

    # ========================================================================
    # State & Events
    # ========================================================================

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def snapshot(self) -> SessionSnapshot:
        return SessionSnapshot(
            state=self._state,
            host=self._host,
            port=self._port,
            last_error=self._last_error,
            connected_at=self._connected_at,
        )

    def is_connected(self) -> bool:
        return self._state == SessionState.CONNECTED

    def on_state_change(self, listener: StateListener) -> Callable[[], None]:
        """Register a listener for state snapshots.

        Returns:
            Callable that removes the listener
        """
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    # ========================================================================
    # Lifecycle
    # ========================================================================

    async def connect(
        self,
        host: str,
        port: int,
        timeout_ms: int = protocol.DEFAULT_CONNECT_TIMEOUT_MS,
    ) -> None:
        """Connect to a remote TIC-80 and verify it answers hello.

        No-op while already Connecting, or when already Connected to the same
        host/port. Connecting to a different target disconnects first.

        Args:
            host: Remoting host
            port: Remoting port
            timeout_ms: Connect deadline in milliseconds

        Raises:
            ConnectTimeout: If the connect deadline passes
            TransportError: If the stream fails
            RequestTimeout: If hello gets no reply
            RemoteError: If hello is answered with ERR
        """
        if self._state == SessionState.CONNECTING:
            logger.debug(f"Connect to {host}:{port} ignored, already connecting")
            return

        if self._state == SessionState.CONNECTED:
            if self._host == host and self._port == port:
                return
            self.disconnect("Connecting to another session")

        self._host = host
        self._port = port
        self._last_error = None
        self._connected_at = None
        self._set_state(SessionState.CONNECTING)

        logger.info(f"Connecting to TIC-80 at {host}:{port}...")
        client = self._client_factory(
            host,
            port,
            on_close=lambda error: self._handle_client_close(client, error),
            on_error=lambda error: self._handle_client_error(client, error),
        )
        self._client = client

        try:
            await client.connect(timeout_ms)
            hello = await client.hello()
        except (Exception, asyncio.CancelledError) as e:
            client.close()
            if self._client is not client:
                # disconnect() was called while connecting; it owns the state now
                raise
            self._client = None
            self._last_error = str(e) or "Connect cancelled"
            logger.error(f"Connect to {host}:{port} failed: {self._last_error}")
            self._set_state(SessionState.ERROR)
            raise

        if self._client is not client:
            client.close()
            return

        self._connected_at = _now_ms()
        self._set_state(SessionState.CONNECTED)
        logger.info(f"Connected to {host}:{port} ({hello.strip()})")

    def disconnect(self, reason: Optional[str] = None) -> None:
        """Close the connection and return to NotConnected. Idempotent.

        Args:
            reason: Optional human-readable reason, kept as last_error
        """
        if self._state == SessionState.NOT_CONNECTED and self._client is None:
            return

        self._disconnecting = True
        try:
            if reason:
                self._last_error = reason
            if self._client is not None:
                logger.info(
                    f"Disconnecting from {self._host}:{self._port}"
                    + (f" ({reason})" if reason else "")
                )
                self._client.close()
            self._client = None
            self._connected_at = None
            self._set_state(SessionState.NOT_CONNECTED)
        finally:
            self._disconnecting = False

    def close(self) -> None:
        """Tear down the session for process shutdown."""
        self.disconnect("Session closed")
        self._listeners.clear()

    # ========================================================================
    # Remote Operations
    # ========================================================================

    async def eval_expr(self, expression: str) -> str:
        """Evaluate an expression; returns its textual value."""
        return await self._require_client().eval_expr(expression)

    async def eval(self, statement: str) -> str:
        """Execute a statement; returns the textual result/ack."""
        return await self._require_client().eval(statement)

    async def list_globals(self) -> List[str]:
        """List global names, without Lua/TIC-80 builtins."""
        names = await self._require_client().list_globals()
        return [name for name in names if name not in protocol.GLOBALS_TO_IGNORE]

    async def cart_path(self) -> str:
        return await self._require_client().cart_path()

    async def metadata(self, key: str) -> str:
        return await self._require_client().metadata(key)

    async def load_cart(self, cart_path: str, run_after_load: bool = True) -> None:
        logger.info(f"Loading cart {cart_path} (run={run_after_load})")
        await self._require_client().load_cart(cart_path, run_after_load)

    # ========================================================================
    # Internal
    # ========================================================================

    def _require_client(self) -> LineProtocolClient:
        if self._client is None or self._state != SessionState.CONNECTED:
            raise NotConnectedError("Not connected to TIC-80")
        return self._client

    def _handle_client_close(
        self, client: LineProtocolClient, error: Optional[BaseException]
    ) -> None:
        if self._disconnecting or self._client is not client:
            return
        self._last_error = str(error) if error is not None else "Connection closed"
        self._client = None
        logger.warning(f"Connection to {self._host}:{self._port} lost: {self._last_error}")
        self._set_state(SessionState.ERROR)

    def _handle_client_error(
        self, client: LineProtocolClient, error: BaseException
    ) -> None:
        if self._disconnecting or self._client is not client:
            return
        self._last_error = str(error)

    def _set_state(self, state: SessionState) -> None:
        self._state = state
        snapshot = self.snapshot
        logger.debug(f"Session state -> {state.value}")
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception as e:
                logger.error(f"Session state listener failed: {e}", exc_info=True)
