"""Fake TIC-80 remoting server for tests and demos.

Runs an asyncio TCP server speaking the line protocol: answers hello, keeps a
table of global variables that evalexpr/eval read and write, and can be told
to misbehave (slow or missing replies, protocol noise, dropped clients).
"""

import ast
import asyncio
import logging
import operator
import re
from typing import Any, Callable, Dict, List, Optional, Set

from tic80_lib import parsing, protocol

logger = logging.getLogger(__name__)

RE_REQUEST_LINE = re.compile(r"^(\d+)\s+(\S+)\s*(.*)$")
RE_LOAD_ARGS = re.compile(r'^("(?:[^"\\]|\\.)*")\s*(\S*)$')
RE_ASSIGNMENT = re.compile(r"^([A-Za-z_][A-Za-z0-9_]*)\s*=\s*(.+)$")

_BIN_OPS: Dict[type, Callable[[Any, Any], Any]] = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
    ast.Pow: operator.pow,
}

_UNARY_OPS: Dict[type, Callable[[Any], Any]] = {
    ast.USub: operator.neg,
    ast.UAdd: operator.pos,
}


class FakeEvalError(Exception):
    """Raised when the fake cannot evaluate an expression."""

    pass


def format_value(value: Any) -> str:
    """Render a value the way the remote side prints results."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (int, float)):
        return str(value)
    return parsing.encode_string(str(value))


class FakeTic80:
    """Deterministic stand-in for a TIC-80 process with remoting enabled.

    Example:
        fake = FakeTic80(variables={"x": 5})
        port = await fake.start()
        ...
        await fake.stop()
    """

    def __init__(
        self,
        variables: Optional[Dict[str, Any]] = None,
        banner: str = "tic-80 remoting v1",
        cart_path: str = "",
        metadata: Optional[Dict[str, str]] = None,
        response_delay_s: float = 0.0,
        host: str = "127.0.0.1",
    ) -> None:
        """Initialize fake (nothing listens until start()).

        Args:
            variables: Initial global variables
            banner: Text returned by hello
            cart_path: Path returned by cartpath
            metadata: Values returned by metadata <key>
            response_delay_s: Delay applied to every reply
            host: Interface to bind
        """
        self.variables: Dict[str, Any] = dict(variables or {})
        self.banner = banner
        self.cart_path = cart_path
        self.metadata: Dict[str, str] = dict(metadata or {})
        self.response_delay_s = response_delay_s
        self.host = host
        self.port = 0

        # Per-expression reply delays, so replies can overtake each other
        self.expression_delays: Dict[str, float] = {}
        # Commands that are received but never answered
        self.ignored_commands: Set[str] = set()
        # Lines written before every reply (e.g. "@frame 12", "garbage")
        self.noise_lines: List[str] = []
        # Builtins reported by listglobals alongside user variables
        self.builtin_globals: List[str] = ["print", "cls", "_G"]

        self.received: List[str] = []
        self.eval_counts: Dict[str, int] = {}
        self.loaded_carts: List[str] = []

        self._server: Optional[asyncio.AbstractServer] = None
        self._writers: Set[asyncio.StreamWriter] = set()
        self._reply_tasks: Set["asyncio.Task[None]"] = set()

    # ========================================================================
    # Lifecycle
    # ========================================================================

    async def start(self, port: int = 0) -> int:
        """Start listening; returns the bound port."""
        self._server = await asyncio.start_server(self._handle_client, self.host, port)
        self.port = self._server.sockets[0].getsockname()[1]
        logger.info(f"FakeTic80 listening on {self.host}:{self.port}")
        return self.port

    async def stop(self) -> None:
        """Stop the server and disconnect every client."""
        self.drop_clients()
        for task in list(self._reply_tasks):
            task.cancel()
        if self._reply_tasks:
            await asyncio.gather(*self._reply_tasks, return_exceptions=True)
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
            self._server = None
        logger.debug("FakeTic80 stopped")

    def drop_clients(self) -> None:
        """Close every client connection from the server side."""
        for writer in list(self._writers):
            writer.close()
        self._writers.clear()

    @property
    def client_count(self) -> int:
        return len(self._writers)

    # ========================================================================
    # Internal: Connection Handling
    # ========================================================================

    async def _handle_client(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        self._writers.add(writer)
        try:
            while True:
                raw = await reader.readline()
                if not raw:
                    break
                line = raw.decode(protocol.ENCODING).strip()
                if not line:
                    continue
                self.received.append(line)
                self._dispatch(line, writer)
        except (ConnectionError, asyncio.IncompleteReadError):
            pass
        finally:
            self._writers.discard(writer)
            if not writer.is_closing():
                writer.close()

    def _dispatch(self, line: str, writer: asyncio.StreamWriter) -> None:
        match = RE_REQUEST_LINE.match(line)
        if not match:
            logger.debug(f"FakeTic80 ignoring malformed request: {line!r}")
            return

        request_id, command, args = int(match.group(1)), match.group(2), match.group(3)
        if command in self.ignored_commands:
            return

        delay = self.response_delay_s
        if command == protocol.CMD_EVAL_EXPR:
            delay += self.expression_delays.get(parsing.decode_string(args), 0.0)

        task = asyncio.create_task(self._reply(writer, request_id, command, args, delay))
        self._reply_tasks.add(task)
        task.add_done_callback(self._reply_tasks.discard)

    async def _reply(
        self,
        writer: asyncio.StreamWriter,
        request_id: int,
        command: str,
        args: str,
        delay: float,
    ) -> None:
        if delay > 0:
            await asyncio.sleep(delay)
        if writer.is_closing():
            return

        try:
            status, data = protocol.STATUS_OK, self._execute(command, args)
        except FakeEvalError as e:
            status, data = protocol.STATUS_ERR, str(e)

        out = "".join(f"{noise}\n" for noise in self.noise_lines)
        out += f"{request_id} {status} {data}".rstrip() + "\n"
        writer.write(out.encode(protocol.ENCODING))
        try:
            await writer.drain()
        except ConnectionError:
            return

        if command == protocol.CMD_QUIT:
            writer.close()

    # ========================================================================
    # Internal: Commands
    # ========================================================================

    def _execute(self, command: str, args: str) -> str:
        if command == protocol.CMD_HELLO:
            return parsing.encode_string(self.banner)

        if command == protocol.CMD_LIST_GLOBALS:
            return ",".join(self.builtin_globals + list(self.variables.keys()))

        if command == protocol.CMD_EVAL_EXPR:
            expression = parsing.decode_string(args)
            self.eval_counts[expression] = self.eval_counts.get(expression, 0) + 1
            return format_value(self.evaluate(expression))

        if command == protocol.CMD_EVAL:
            return self._execute_statement(parsing.decode_string(args))

        if command == protocol.CMD_CART_PATH:
            return parsing.encode_string(self.cart_path)

        if command == protocol.CMD_METADATA:
            key = parsing.decode_string(args)
            if key not in self.metadata:
                raise FakeEvalError(f"no metadata '{key}'")
            return parsing.encode_string(self.metadata[key])

        if command == protocol.CMD_LOAD:
            match = RE_LOAD_ARGS.match(args.strip())
            if not match:
                raise FakeEvalError("bad load arguments")
            self.cart_path = parsing.decode_string(match.group(1))
            self.loaded_carts.append(self.cart_path)
            return ""

        if command == protocol.CMD_QUIT:
            return ""

        raise FakeEvalError(f"unknown command '{command}'")

    def _execute_statement(self, statement: str) -> str:
        match = RE_ASSIGNMENT.match(statement.strip())
        if not match:
            raise FakeEvalError(f"cannot execute: {statement}")
        name, expression = match.group(1), match.group(2)
        self.variables[name] = self.evaluate(expression)
        return ""

    def evaluate(self, expression: str) -> Any:
        """Evaluate a variable name, literal or arithmetic expression."""
        try:
            tree = ast.parse(expression.strip(), mode="eval")
        except SyntaxError as e:
            raise FakeEvalError(f"syntax error: {expression}") from e
        return self._eval_node(tree.body)

    def _eval_node(self, node: ast.AST) -> Any:
        if isinstance(node, ast.Constant):
            return node.value
        if isinstance(node, ast.Name):
            if node.id not in self.variables:
                raise FakeEvalError(f"undefined variable '{node.id}'")
            return self.variables[node.id]
        if isinstance(node, ast.BinOp) and type(node.op) in _BIN_OPS:
            left = self._eval_node(node.left)
            right = self._eval_node(node.right)
            try:
                return _BIN_OPS[type(node.op)](left, right)
            except (TypeError, ZeroDivisionError) as e:
                raise FakeEvalError(str(e)) from e
        if isinstance(node, ast.UnaryOp) and type(node.op) in _UNARY_OPS:
            try:
                return _UNARY_OPS[type(node.op)](self._eval_node(node.operand))
            except TypeError as e:
                raise FakeEvalError(str(e)) from e
        raise FakeEvalError("unsupported expression")
