"""
tic80_lib - Remote session and live-data library for TIC-80 remoting.

Speaks the TIC-80 line protocol over TCP, polls watched expressions and
samples scope series from a running TIC-80 process.
"""

from tic80_lib.discovery import AutoConnector, discover_running_instances, probe_candidates
from tic80_lib.errors import (
    ConnectTimeout,
    NotConnectedError,
    ProtocolMismatch,
    RemoteError,
    RequestTimeout,
    Tic80Error,
    TransportError,
)
from tic80_lib.expression_monitor import ExpressionSubscriptionMonitor
from tic80_lib.models import (
    DiscoveryRecord,
    PlotSample,
    PlotSeriesSnapshot,
    RunningInstance,
    SessionSnapshot,
    SessionState,
)
from tic80_lib.plot_manager import PlotSubscriptionManager
from tic80_lib.session import RemoteSession
from tic80_lib.transport import LineProtocolClient

__version__ = "0.1.0"

__all__ = [
    "LineProtocolClient",
    "RemoteSession",
    "ExpressionSubscriptionMonitor",
    "PlotSubscriptionManager",
    "AutoConnector",
    "discover_running_instances",
    "probe_candidates",
    "SessionState",
    "SessionSnapshot",
    "PlotSample",
    "PlotSeriesSnapshot",
    "DiscoveryRecord",
    "RunningInstance",
    "Tic80Error",
    "TransportError",
    "ConnectTimeout",
    "ProtocolMismatch",
    "RequestTimeout",
    "NotConnectedError",
    "RemoteError",
]
