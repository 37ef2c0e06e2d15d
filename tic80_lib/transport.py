"""TCP line-protocol transport for TIC-80 remoting.

Requests are correlated to responses by numeric id, so replies may arrive in
any order. Everything runs on the caller's asyncio event loop.
"""

import asyncio
import codecs
import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from tic80_lib import parsing, protocol
from tic80_lib.errors import (
    ConnectTimeout,
    NotConnectedError,
    RemoteError,
    RequestTimeout,
    TransportError,
)
from tic80_lib.models import RemotingResponse

logger = logging.getLogger(__name__)

CloseCallback = Callable[[Optional[BaseException]], None]
ErrorCallback = Callable[[BaseException], None]


@dataclass
class PendingRequest:
    """An in-flight request awaiting its response line."""

    id: int
    command: str
    future: "asyncio.Future[RemotingResponse]"
    timeout_handle: asyncio.TimerHandle


class LineProtocolClient:
    """Client for the newline-delimited TIC-80 remoting protocol.

    One instance wraps one TCP connection. Request ids start at 1 and are
    never reused for the lifetime of the instance.
    """

    def __init__(
        self,
        host: str,
        port: int,
        on_close: Optional[CloseCallback] = None,
        on_error: Optional[ErrorCallback] = None,
        request_timeout_s: float = protocol.REQUEST_TIMEOUT_S,
    ) -> None:
        """Initialize client (no I/O happens until connect()).

        Args:
            host: Remoting host
            port: Remoting port
            on_close: Called once when the remote side closes the stream or
                      the stream fails. Receives the error, or None on EOF.
            on_error: Called once, before on_close, when the stream fails.
            request_timeout_s: Per-request response timeout in seconds.
        """
        self.host = host
        self.port = port
        self._on_close = on_close
        self._on_error = on_error
        self._request_timeout_s = request_timeout_s

        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._read_task: Optional["asyncio.Task[None]"] = None
        self._buffer = ""
        self._decoder = codecs.getincrementaldecoder(protocol.ENCODING)(errors="replace")
        self._next_id = 1
        self._pending: Dict[int, PendingRequest] = {}

    # ========================================================================
    # Connection Lifecycle
    # ========================================================================

    def is_connected(self) -> bool:
        """Check if the stream is open."""
        return self._writer is not None and not self._writer.is_closing()

    async def connect(self, timeout_ms: int = 5000) -> None:
        """Open the TCP stream.

        Args:
            timeout_ms: Connect deadline in milliseconds

        Raises:
            ConnectTimeout: If the deadline passes first
            TransportError: If the connection is refused or fails
        """
        if self.is_connected():
            return

        try:
            self._reader, self._writer = await asyncio.wait_for(
                asyncio.open_connection(self.host, self.port),
                timeout=timeout_ms / 1000.0,
            )
        except asyncio.TimeoutError as e:
            raise ConnectTimeout(
                f"Timed out connecting to TIC-80 remoting at {self.host}:{self.port}"
            ) from e
        except OSError as e:
            raise TransportError(
                f"Failed to connect to TIC-80 remoting at {self.host}:{self.port}: {e}"
            ) from e

        self._buffer = ""
        # Multibyte characters may straddle reads
        self._decoder.reset()
        self._read_task = asyncio.create_task(self._read_loop())
        logger.debug(f"Connected to {self.host}:{self.port}")

    def close(self) -> None:
        """Close the stream and fail any pending requests.

        Close callbacks are not invoked for a caller-initiated close.
        """
        writer = self._writer
        read_task = self._read_task
        self._writer = None
        self._reader = None
        self._read_task = None

        if read_task is not None and not read_task.done():
            read_task.cancel()
        if writer is not None and not writer.is_closing():
            writer.close()
            logger.debug(f"Closed connection to {self.host}:{self.port}")

        self._fail_pending("Remoting socket closed")

    # ========================================================================
    # Requests
    # ========================================================================

    async def send_command(self, command: str, args: str = "") -> RemotingResponse:
        """Send one command and wait for its correlated response.

        Args:
            command: Command verb (e.g. "evalexpr")
            args: Pre-encoded argument text, appended after a space if set

        Returns:
            RemotingResponse with status OK

        Raises:
            NotConnectedError: If no stream is open
            RequestTimeout: If no response arrives in time
            RemoteError: If the response status is ERR
            TransportError: If the stream closes before the response
        """
        if not self.is_connected():
            raise NotConnectedError("Remoting socket is not connected")
        writer = self._writer
        if writer is None:
            raise NotConnectedError("Remoting socket is not connected")

        request_id = self._next_id
        self._next_id += 1

        loop = asyncio.get_running_loop()
        future: "asyncio.Future[RemotingResponse]" = loop.create_future()
        handle = loop.call_later(self._request_timeout_s, self._expire, request_id)
        self._pending[request_id] = PendingRequest(
            id=request_id, command=command, future=future, timeout_handle=handle
        )

        line = parsing.format_request_line(request_id, command, args)
        try:
            writer.write(line.encode(protocol.ENCODING))
            await writer.drain()
        except (OSError, RuntimeError) as e:
            self._discard(request_id)
            raise TransportError(f"Failed to send '{command}': {e}") from e
        logger.debug(f"Sent: {line.rstrip()!r}")

        return await future

    def feed(self, data: str) -> None:
        """Consume incoming text, dispatching each complete line."""
        self._buffer += data
        while protocol.LINE_TERMINATOR in self._buffer:
            raw_line, self._buffer = self._buffer.split(protocol.LINE_TERMINATOR, 1)
            line = raw_line.strip()
            if line:
                self._handle_line(line)

    @property
    def pending_count(self) -> int:
        """Number of requests still awaiting a response."""
        return len(self._pending)

    # ========================================================================
    # Verbs
    # ========================================================================

    async def hello(self) -> str:
        response = await self.send_command(protocol.CMD_HELLO)
        return response.data

    async def list_globals(self) -> List[str]:
        response = await self.send_command(protocol.CMD_LIST_GLOBALS)
        return parsing.parse_globals_list(response.data)

    async def eval_expr(self, expression: str) -> str:
        """Evaluate an expression remotely and return its textual value."""
        response = await self.send_command(
            protocol.CMD_EVAL_EXPR, parsing.encode_string(expression)
        )
        return response.data

    async def eval(self, statement: str) -> str:
        """Execute a statement remotely and return the textual result/ack."""
        response = await self.send_command(
            protocol.CMD_EVAL, parsing.encode_string(statement)
        )
        return response.data

    async def cart_path(self) -> str:
        response = await self.send_command(protocol.CMD_CART_PATH)
        return response.data

    async def metadata(self, key: str) -> str:
        response = await self.send_command(
            protocol.CMD_METADATA, parsing.encode_string(key)
        )
        return response.data

    async def load_cart(self, cart_path: str, run_after_load: bool = True) -> None:
        run_arg = "1" if run_after_load else "0"
        await self.send_command(
            protocol.CMD_LOAD, f"{parsing.encode_string(cart_path)} {run_arg}"
        )

    async def quit(self) -> None:
        await self.send_command(protocol.CMD_QUIT)

    # ========================================================================
    # Internal
    # ========================================================================

    async def _read_loop(self) -> None:
        reader = self._reader
        if reader is None:
            return
        try:
            while True:
                chunk = await reader.read(4096)
                if not chunk:
                    break
                self.feed(self._decoder.decode(chunk))
        except asyncio.CancelledError:
            raise
        except OSError as e:
            logger.warning(f"Remoting stream error from {self.host}:{self.port}: {e}")
            self._handle_transport_lost(e)
            return

        logger.info(f"Remoting stream closed by {self.host}:{self.port}")
        self._handle_transport_lost(None)

    def _handle_transport_lost(self, error: Optional[BaseException]) -> None:
        writer = self._writer
        self._writer = None
        self._reader = None
        self._read_task = None
        if writer is not None and not writer.is_closing():
            writer.close()

        if error is not None:
            self._fail_pending(f"Remoting socket error: {error}")
            if self._on_error is not None:
                self._on_error(error)
        else:
            self._fail_pending("Remoting socket closed")

        if self._on_close is not None:
            self._on_close(error)

    def _handle_line(self, line: str) -> None:
        response = parsing.parse_response_line(line)
        if response is None:
            return

        pending = self._pending.pop(response.id, None)
        if pending is None:
            logger.debug(f"Ignoring response for unknown id {response.id}")
            return

        pending.timeout_handle.cancel()
        if pending.future.done():
            return

        if response.status == protocol.STATUS_OK:
            pending.future.set_result(response)
        else:
            message = response.data or f"Remoting command failed for id {response.id}"
            pending.future.set_exception(RemoteError(message))

    def _expire(self, request_id: int) -> None:
        pending = self._pending.pop(request_id, None)
        if pending is None or pending.future.done():
            return
        logger.warning(f"Request {request_id} ('{pending.command}') timed out")
        pending.future.set_exception(
            RequestTimeout(f"Timed out waiting for response to '{pending.command}'")
        )

    def _discard(self, request_id: int) -> None:
        pending = self._pending.pop(request_id, None)
        if pending is not None:
            pending.timeout_handle.cancel()

    def _fail_pending(self, message: str) -> None:
        pending = list(self._pending.values())
        self._pending.clear()
        for request in pending:
            request.timeout_handle.cancel()
            if not request.future.done():
                request.future.set_exception(TransportError(message))


async def safe_metadata(client: LineProtocolClient, key: str) -> Optional[str]:
    """Fetch a metadata value, returning None instead of raising."""
    try:
        return await client.metadata(key)
    except (RemoteError, RequestTimeout, TransportError, NotConnectedError) as e:
        logger.debug(f"Metadata '{key}' unavailable: {e}")
        return None
