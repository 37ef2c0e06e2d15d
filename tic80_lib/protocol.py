"""Wire protocol constants, patterns and defaults for TIC-80 remoting.

The remoting protocol is newline-delimited UTF-8 text over TCP:

    request:   <id> <command>[ <args>]\\n
    response:  <id> <OK|ERR> <data...>\\n
    push:      @<anything>\\n          (out-of-band, ignored)
"""

import re
from typing import Final

# ============================================================================
# Line Framing
# ============================================================================

LINE_TERMINATOR: Final[str] = "\n"
ENCODING: Final[str] = "utf-8"

# Lines starting with this prefix are unsolicited notifications
OUT_OF_BAND_PREFIX: Final[str] = "@"

STATUS_OK: Final[str] = "OK"
STATUS_ERR: Final[str] = "ERR"

# Tolerant response pattern: <id> <status> [data...]
# Anything not matching is treated as noise and dropped.
RE_RESPONSE_LINE: Final[re.Pattern[str]] = re.compile(r"^(\S+)\s+(\S+)\s*(.*)$")

# ============================================================================
# Commands
# ============================================================================

CMD_HELLO: Final[str] = "hello"
CMD_LIST_GLOBALS: Final[str] = "listglobals"
CMD_EVAL_EXPR: Final[str] = "evalexpr"
CMD_EVAL: Final[str] = "eval"
CMD_CART_PATH: Final[str] = "cartpath"
CMD_METADATA: Final[str] = "metadata"
CMD_LOAD: Final[str] = "load"
CMD_QUIT: Final[str] = "quit"

# Expected (lowercased, trimmed) reply to "hello"
HELLO_BANNER_V1: Final[str] = "tic-80 remoting v1"

# ============================================================================
# Timing Constants
# ============================================================================

# Per-request response timeout (seconds)
REQUEST_TIMEOUT_S: Final[float] = 5.0

DEFAULT_CONNECT_TIMEOUT_MS: Final[int] = 3000

# Expression monitor scan tick and rate floor
EXPRESSION_TICK_S: Final[float] = 0.1
DEFAULT_POLL_HZ: Final[float] = 10.0
MIN_POLL_INTERVAL_MS: Final[int] = 16

# Plot manager scan tick
PLOT_TICK_S: Final[float] = 0.05

# Presentation refresh cadence used by the API stream
DEFAULT_UI_REFRESH_MS: Final[int] = 217

# ============================================================================
# Plot / Scope Sampling
# ============================================================================

DEFAULT_PLOT_RATE_HZ: Final[float] = 20.0
PLOT_WINDOW_MS: Final[float] = 5000.0
RESAMPLE_COUNT: Final[int] = 200
MAX_PLOT_SAMPLES: Final[int] = 5000

# ============================================================================
# Remote Endpoint & Discovery
# ============================================================================

DEFAULT_REMOTE_HOST: Final[str] = "127.0.0.1"
DEFAULT_REMOTE_PORT: Final[int] = 9977

SESSION_DIR_REL: Final[str] = ".ticbuild/remoting/sessions"
RE_SESSION_FILE: Final[re.Pattern[str]] = re.compile(
    r"^tic80-remote\..+\.json$", re.IGNORECASE
)

# ============================================================================
# Globals Hidden From list_globals()
# ============================================================================

# Lua standard library and TIC-80 API functions; never user state.
GLOBALS_TO_IGNORE: Final[frozenset[str]] = frozenset(
    {
        # Lua
        "_G", "_VERSION", "assert", "collectgarbage", "coroutine", "debug",
        "dofile", "error", "getmetatable", "io", "ipairs", "load", "loadfile",
        "math", "next", "os", "package", "pairs", "pcall", "print", "rawequal",
        "rawget", "rawlen", "rawset", "require", "select", "setmetatable",
        "string", "table", "tonumber", "tostring", "type", "utf8", "xpcall",
        # TIC-80 API
        "btn", "btnp", "circ", "circb", "clip", "cls", "elli", "ellib", "exit",
        "fget", "font", "fset", "key", "keyp", "line", "map", "memcpy",
        "memset", "mget", "mouse", "mset", "music", "peek", "peek1", "peek2",
        "peek4", "pix", "pmem", "poke", "poke1", "poke2", "poke4", "rect",
        "rectb", "reset", "sfx", "spr", "sync", "time", "trace", "tri", "trib",
        "tstamp", "ttri", "vbank",
    }
)
