"""Data models for the TIC-80 remoting library."""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from tic80_lib.sample_buffer import SampleBuffer


class SessionState(Enum):
    """Remote session connection states."""

    NOT_CONNECTED = "NotConnected"
    CONNECTING = "Connecting"
    CONNECTED = "Connected"
    ERROR = "Error"


@dataclass(frozen=True)
class SessionSnapshot:
    """Immutable view of the session delivered to state-change listeners.

    Attributes:
        state: Current connection state.
        host: Target host of the current or last connection ("" if never set).
        port: Target port of the current or last connection (0 if never set).
        last_error: Message of the last failure or disconnect reason.
        connected_at: Wall-clock milliseconds when the session became Connected.
    """

    state: SessionState
    host: str = ""
    port: int = 0
    last_error: Optional[str] = None
    connected_at: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "state": self.state.value,
            "host": self.host,
            "port": self.port,
        }
        if self.last_error is not None:
            payload["lastError"] = self.last_error
        if self.connected_at is not None:
            payload["connectedAt"] = self.connected_at
        return payload


@dataclass(frozen=True)
class RemotingResponse:
    """A correlated response line: <id> <OK|ERR> <data>."""

    id: int
    status: Literal["OK", "ERR"]
    data: str


@dataclass
class ExpressionResult:
    """Latest evaluation outcome for a subscribed expression.

    Exactly one of value/error is set.
    """

    value: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, str]:
        if self.error is not None:
            return {"error": self.error}
        return {"value": self.value if self.value is not None else ""}


@dataclass(frozen=True)
class PlotSample:
    """One numeric sample: wall-clock timestamp (ms) and value."""

    t: float
    v: float


@dataclass
class PlotSeriesState:
    """Sampling state for one (expression, rate) series.

    Attributes:
        expression: Expression evaluated on the remote side.
        rate_hz: Sample rate in Hz.
        samples: Time-ordered retained samples.
        last_sample_at: Tick time (ms) of the last sampling attempt, 0 if none.
        count: Number of active subscribers.
        busy: True while an evaluation for this series is in flight.
        paused: True while the display window is frozen.
        paused_at: Wall-clock ms at which the series was paused.
        resample_count: Number of output points produced by snapshots.
        requested_count: Largest sample count asked for by a subscriber, if any.
    """

    expression: str
    rate_hz: float
    samples: SampleBuffer
    resample_count: int
    last_sample_at: float = 0.0
    count: int = 1
    busy: bool = False
    paused: bool = False
    paused_at: Optional[float] = None
    requested_count: Optional[int] = None

    @property
    def interval_ms(self) -> int:
        """Minimum spacing between two sampling attempts."""
        return max(int(1000 // self.rate_hz), 1)


@dataclass
class PlotSeriesSnapshot:
    """Resampled display window for one series. NaN entries are gaps."""

    expression: str
    rate_hz: float
    values: List[float]
    start_time: float
    end_time: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "expression": self.expression,
            "rateHz": self.rate_hz,
            "values": list(self.values),
            "startTime": self.start_time,
            "endTime": self.end_time,
        }


@dataclass
class DiscoveryRecord:
    """A candidate (host, port) believed to host a live TIC-80 instance.

    Attributes:
        host: Remoting host.
        port: Remoting port.
        started_at: When the instance reported starting, if known.
        remoting_version: Version string written by the instance, if any.
        path: Source file of the record, if it came from disk.
    """

    host: str
    port: int
    started_at: Optional[datetime] = None
    remoting_version: Optional[str] = None
    path: Optional[str] = None

    @property
    def target(self) -> str:
        return f"{self.host}:{self.port}"


@dataclass
class RunningInstance:
    """A verified, protocol-compatible TIC-80 instance."""

    host: str
    port: int
    hello: str
    started_at: Optional[datetime] = None
    remoting_version: Optional[str] = None
    cart_path: Optional[str] = None
    meta_title: Optional[str] = None
    meta_version: Optional[str] = None

    @property
    def target(self) -> str:
        return f"{self.host}:{self.port}"
