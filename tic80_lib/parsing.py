"""Pure functions for encoding arguments and parsing remoting responses."""

import json
import logging
import math
from typing import List, Optional

from tic80_lib import protocol
from tic80_lib.models import RemotingResponse

logger = logging.getLogger(__name__)


def encode_string(value: str) -> str:
    """Wrap a value in double quotes, escaping backslash and double quote.

    Example: say "hi"\\n  ->  "say \\"hi\\"\\\\n"

    Args:
        value: Raw string argument

    Returns:
        Quoted argument ready to be placed on a request line
    """
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def decode_string(raw: str) -> str:
    """Decode a possibly quoted string result from the remote side.

    Surrounding whitespace is trimmed. If what remains is wrapped in double
    quotes, the quotes are removed and \\" and \\\\ are unescaped. Unquoted
    input is returned as-is (after trimming).

    Args:
        raw: Response data text

    Returns:
        Decoded string
    """
    trimmed = raw.strip()
    if len(trimmed) >= 2 and trimmed.startswith('"') and trimmed.endswith('"'):
        inner = trimmed[1:-1]
        return inner.replace('\\"', '"').replace("\\\\", "\\")
    return trimmed


def format_request_line(request_id: int, command: str, args: str = "") -> str:
    """Build a request line: <id> <command>[ <args>]\\n"""
    if args:
        return f"{request_id} {command} {args}{protocol.LINE_TERMINATOR}"
    return f"{request_id} {command}{protocol.LINE_TERMINATOR}"


def parse_response_line(line: str) -> Optional[RemotingResponse]:
    """Parse a response line into a RemotingResponse.

    Out-of-band lines (starting with "@") and lines that don't look like
    "<id> <status> <data...>" yield None. Malformed input is protocol noise,
    not an error.

    Args:
        line: One line with the terminator already removed

    Returns:
        RemotingResponse, or None if the line should be ignored
    """
    line = line.strip()
    if not line or line.startswith(protocol.OUT_OF_BAND_PREFIX):
        return None

    match = protocol.RE_RESPONSE_LINE.match(line)
    if not match:
        logger.debug(f"Dropping malformed line: {line!r}")
        return None

    try:
        request_id = int(match.group(1))
    except ValueError:
        logger.debug(f"Dropping line with non-numeric id: {line!r}")
        return None

    status = match.group(2).upper()
    if status not in (protocol.STATUS_OK, protocol.STATUS_ERR):
        logger.debug(f"Dropping line with unknown status: {line!r}")
        return None

    return RemotingResponse(id=request_id, status=status, data=match.group(3) or "")  # type: ignore[arg-type]


def parse_globals_list(data: str) -> List[str]:
    """Split a comma-separated listglobals payload into names.

    Entries are trimmed; empty entries are dropped. Order is preserved.
    """
    return [entry.strip() for entry in data.split(",") if entry.strip()]


def parse_numeric_value(value_text: str) -> Optional[float]:
    """Interpret an evaluation result as a finite number.

    JSON decoding is attempted first so that quoted numbers ("5") and plain
    numerals (5, 1e3) both work; otherwise plain float coercion is tried.
    Booleans map to 1.0/0.0 so flags plot as a step trace. nil/null,
    non-numeric strings and non-finite values give None.

    Args:
        value_text: Textual evaluation result

    Returns:
        The number, or None if the text is not a finite number
    """
    if not value_text:
        return None

    try:
        parsed = json.loads(value_text)
    except ValueError:
        parsed = value_text

    if isinstance(parsed, bool):
        return 1.0 if parsed else 0.0
    if parsed is None:
        return None

    try:
        numeric = float(parsed)
    except (TypeError, ValueError):
        return None

    return numeric if math.isfinite(numeric) else None


def is_expected_hello(value: str) -> bool:
    """Check a decoded hello reply against the supported protocol banner."""
    return value.strip().lower() == protocol.HELLO_BANNER_V1
