"""FastAPI REST and WebSocket interface for TIC-80 remoting.

Single-process, single-session lifecycle on one asyncio event loop:
- RemoteSession (TCP line protocol, connection state)
- ExpressionSubscriptionMonitor (watched expression polling)
- PlotSubscriptionManager (scope series sampling)
- SeriesStore (pandas export of plot history)

Error mapping:
- NotConnectedError → 409
- RemoteError → 422
- TransportError / ConnectTimeout → 503
- RequestTimeout → 504
- Other exceptions → 500
"""

import asyncio
import logging
import math
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse
from pydantic import BaseModel

from data_store import SeriesStore
from tic80_lib import parsing, protocol
from tic80_lib.discovery import AutoConnector, discover_running_instances, format_instance_label
from tic80_lib.errors import NotConnectedError, RemoteError, RequestTimeout, TransportError
from tic80_lib.expression_monitor import ExpressionSubscriptionMonitor
from tic80_lib.plot_manager import PlotSubscriptionManager, make_series_key, normalize_rate
from tic80_lib.session import RemoteSession

# =============================================================================
# Environment Configuration
# =============================================================================

# Read configuration from environment variables
API_HOST = os.getenv("API_HOST", "0.0.0.0")
API_PORT = int(os.getenv("API_PORT", "9177"))
DEFAULT_TIC80_HOST = os.getenv("TIC80_HOST", protocol.DEFAULT_REMOTE_HOST)
DEFAULT_TIC80_PORT = int(os.getenv("TIC80_PORT", str(protocol.DEFAULT_REMOTE_PORT)))
CONNECT_TIMEOUT_MS = int(os.getenv("CONNECT_TIMEOUT_MS", str(protocol.DEFAULT_CONNECT_TIMEOUT_MS)))
POLL_HZ = float(os.getenv("POLL_HZ", str(protocol.DEFAULT_POLL_HZ)))
UI_REFRESH_MS = int(os.getenv("UI_REFRESH_MS", str(protocol.DEFAULT_UI_REFRESH_MS)))
SESSION_DIR = os.getenv("SESSION_DIR", str(Path.home() / protocol.SESSION_DIR_REL))
EXPORT_DIR = os.getenv("EXPORT_DIR", ".")
CORS_ORIGINS = os.getenv(
    "CORS_ORIGINS",
    "http://localhost:3000,http://127.0.0.1:3000"
).split(",")

API_VERSION = "0.1.0"

# Configure logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

# =============================================================================
# Global Singletons
# =============================================================================

_session: Optional[RemoteSession] = None
_expressions: Optional[ExpressionSubscriptionMonitor] = None
_plots: Optional[PlotSubscriptionManager] = None
_series_store: Optional[SeriesStore] = None
_auto_connector: Optional[AutoConnector] = None
_poll_hz: float = POLL_HZ
_refresh_generation = 0  # Bumped whenever pushed state changed

# =============================================================================
# FastAPI App
# =============================================================================

app = FastAPI(
    title="TIC-80 Remote API",
    description="REST and WebSocket interface for a running TIC-80 with remoting enabled",
    version=API_VERSION
)

# CORS for local development (configurable via CORS_ORIGINS env var)
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# 404 logging middleware for debugging
@app.middleware("http")
async def log_404_requests(request: Request, call_next):
    """Log all 404 responses to help debug missing routes."""
    response = await call_next(request)
    if response.status_code == 404:
        logger.warning(f"404 NOT FOUND: {request.method} {request.url.path} query={dict(request.query_params)}")
    return response

# =============================================================================
# Request/Response Models
# =============================================================================

class ConnectRequest(BaseModel):
    """Request body for POST /connect. Missing fields use the env defaults."""
    host: Optional[str] = None
    port: Optional[int] = None
    timeout_ms: Optional[int] = None


class EvalRequest(BaseModel):
    """Request body for POST /eval."""
    code: str


class EvalExprRequest(BaseModel):
    """Request body for POST /evalexpr and /expressions/*."""
    expression: str


class LoadCartRequest(BaseModel):
    """Request body for POST /cart/load."""
    path: str
    run: bool = True


class PlotSeriesRequest(BaseModel):
    """Request body for POST /plot/subscribe and /plot/unsubscribe."""
    expression: str
    rate_hz: Optional[float] = None
    sample_count: Optional[int] = None


class PlotPauseRequest(BaseModel):
    """Request body for POST /plot/pause."""
    expression: str
    rate_hz: Optional[float] = None
    paused: bool = True
    sample_count: Optional[int] = None


class StatusResponse(BaseModel):
    """Response for GET /status."""
    connected: bool
    state: str
    host: str
    port: int
    last_error: Optional[str]
    connected_at: Optional[float]
    expressions: int
    plot_series: int
    poll_hz: float


class CartResponse(BaseModel):
    """Response for GET /cart."""
    path: str
    title: Optional[str]
    version: Optional[str]


# =============================================================================
# Exception Handlers
# =============================================================================

@app.exception_handler(NotConnectedError)
async def not_connected_handler(request, exc: NotConnectedError):
    """Map NotConnectedError to 409 Conflict."""
    logger.warning(f"NotConnectedError: {exc}")
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@app.exception_handler(RemoteError)
async def remote_error_handler(request, exc: RemoteError):
    """Map RemoteError to 422 Unprocessable Entity."""
    logger.warning(f"RemoteError: {exc}")
    return JSONResponse(status_code=422, content={"detail": str(exc)})


@app.exception_handler(TransportError)
async def transport_error_handler(request, exc: TransportError):
    """Map TransportError (and ConnectTimeout) to 503 Service Unavailable."""
    logger.error(f"TransportError: {exc}")
    return JSONResponse(status_code=503, content={"detail": str(exc)})


@app.exception_handler(RequestTimeout)
async def request_timeout_handler(request, exc: RequestTimeout):
    """Map RequestTimeout to 504 Gateway Timeout."""
    logger.error(f"RequestTimeout: {exc}")
    return JSONResponse(status_code=504, content={"detail": str(exc)})


# =============================================================================
# Helpers
# =============================================================================

def _schedule_refresh() -> None:
    global _refresh_generation
    _refresh_generation += 1


def _get_poll_hz() -> float:
    return _poll_hz


def _init_singletons() -> None:
    """Create session, monitors and store if not already present."""
    global _session, _expressions, _plots, _series_store, _auto_connector

    if _session is None:
        _session = RemoteSession()
        _session.on_state_change(lambda snapshot: _schedule_refresh())
    if _expressions is None:
        _expressions = ExpressionSubscriptionMonitor(
            _session, get_poll_hz=_get_poll_hz, schedule_refresh=_schedule_refresh
        )
    if _plots is None:
        _plots = PlotSubscriptionManager(_session, schedule_refresh=_schedule_refresh)
    if _series_store is None:
        _series_store = SeriesStore(_plots, export_dir=EXPORT_DIR)
    if _auto_connector is None:
        _auto_connector = AutoConnector(_session, SESSION_DIR, timeout_ms=CONNECT_TIMEOUT_MS)


def _require_session() -> RemoteSession:
    if _session is None:
        raise HTTPException(status_code=503, detail="Service not initialized")
    return _session


def _json_safe(values: List[float]) -> List[Optional[float]]:
    """Replace NaN gaps with None so they serialize as JSON null."""
    return [v if math.isfinite(v) else None for v in values]


def _plot_payload() -> Dict[str, Any]:
    if _plots is None:
        return {}
    payload = {}
    for key, snapshot in _plots.get_snapshot().items():
        entry = snapshot.to_dict()
        entry["values"] = _json_safe(snapshot.values)
        payload[key] = entry
    return payload


def _stream_payload() -> Dict[str, Any]:
    session = _require_session()
    return {
        "session": session.snapshot.to_dict(),
        "expressions": _expressions.get_results_snapshot() if _expressions else {},
        "plots": _plot_payload(),
    }


# =============================================================================
# Session Endpoints
# =============================================================================

@app.get("/status", response_model=StatusResponse)
async def get_status():
    """Get current session status and subscription counts."""
    session = _require_session()
    snapshot = session.snapshot

    return StatusResponse(
        connected=session.is_connected(),
        state=snapshot.state.value,
        host=snapshot.host,
        port=snapshot.port,
        last_error=snapshot.last_error,
        connected_at=snapshot.connected_at,
        expressions=len(_expressions.subscription_keys()) if _expressions else 0,
        plot_series=len(_plots.keys()) if _plots else 0,
        poll_hz=_poll_hz,
    )


@app.post("/connect")
async def connect(req: Optional[ConnectRequest] = None):
    """Connect the session to a running TIC-80.

    Connecting to the target already connected is a no-op; connecting to a
    different target replaces the current connection.

    Returns:
        Session snapshot

    Raises:
        503: If the connection fails or times out (TransportError)
        504: If hello is not answered (RequestTimeout)
    """
    session = _require_session()
    req = req or ConnectRequest()

    host = req.host or DEFAULT_TIC80_HOST
    port = req.port or DEFAULT_TIC80_PORT
    timeout_ms = req.timeout_ms or CONNECT_TIMEOUT_MS

    await session.connect(host, port, timeout_ms)
    if _auto_connector is not None:
        _auto_connector.clear_target()
    return session.snapshot.to_dict()


@app.post("/disconnect")
async def disconnect():
    """Disconnect the session. Safe to call when not connected."""
    session = _require_session()
    session.disconnect("Disconnected by user")
    if _auto_connector is not None:
        _auto_connector.clear_target()
    return session.snapshot.to_dict()


@app.post("/eval")
async def eval_statement(req: EvalRequest):
    """Execute a statement in the running cart."""
    session = _require_session()
    result = await session.eval(req.code)
    return {"result": result}


@app.post("/evalexpr")
async def eval_expression(req: EvalExprRequest):
    """Evaluate an expression once and return its textual value."""
    session = _require_session()
    value = await session.eval_expr(req.expression)
    return {"expression": req.expression, "value": value}


@app.get("/globals")
async def list_globals():
    """List user global names (Lua and TIC-80 builtins are hidden)."""
    session = _require_session()
    return {"globals": await session.list_globals()}


@app.get("/cart", response_model=CartResponse)
async def get_cart():
    """Get the loaded cart path plus title/version metadata when present."""
    session = _require_session()
    path = parsing.decode_string(await session.cart_path())

    metadata: Dict[str, Optional[str]] = {}
    for key in ("title", "version"):
        try:
            metadata[key] = parsing.decode_string(await session.metadata(key)) or None
        except (RemoteError, RequestTimeout) as e:
            logger.debug(f"Metadata '{key}' unavailable: {e}")
            metadata[key] = None

    return CartResponse(path=path, title=metadata["title"], version=metadata["version"])


@app.post("/cart/load")
async def load_cart(req: LoadCartRequest):
    """Load a cart file into the running TIC-80, optionally running it."""
    session = _require_session()
    await session.load_cart(req.path, run_after_load=req.run)
    return {"status": "loaded", "path": req.path, "run": req.run}


# =============================================================================
# Expression Watch Endpoints
# =============================================================================

@app.post("/expressions/subscribe")
async def subscribe_expression(req: EvalExprRequest):
    """Add a reference to a watched expression."""
    if not _expressions:
        raise HTTPException(status_code=503, detail="Service not initialized")
    if not req.expression:
        raise HTTPException(status_code=400, detail="Expression must not be empty")

    _expressions.subscribe(req.expression)
    return {"expression": req.expression, "count": _expressions.subscription_count(req.expression)}


@app.post("/expressions/unsubscribe")
async def unsubscribe_expression(req: EvalExprRequest):
    """Drop a reference to a watched expression."""
    if not _expressions:
        raise HTTPException(status_code=503, detail="Service not initialized")

    _expressions.unsubscribe(req.expression)
    return {"expression": req.expression, "count": _expressions.subscription_count(req.expression)}


@app.get("/expressions")
async def get_expressions():
    """Latest value or error per watched expression."""
    if not _expressions:
        return {}
    return _expressions.get_results_snapshot()


@app.post("/expressions/poll_rate")
async def set_poll_rate(hz: float = Query(..., gt=0, le=1000)):
    """Change the watch poll rate (the minimum interval still applies)."""
    global _poll_hz
    _poll_hz = hz
    logger.info(f"Expression poll rate set to {hz} Hz")
    return {"poll_hz": _poll_hz}


# =============================================================================
# Plot / Scope Endpoints
# =============================================================================

@app.post("/plot/subscribe")
async def subscribe_plot(req: PlotSeriesRequest):
    """Add a reference to an (expression, rate) scope series."""
    if not _plots:
        raise HTTPException(status_code=503, detail="Service not initialized")
    if not req.expression:
        raise HTTPException(status_code=400, detail="Expression must not be empty")

    _plots.subscribe(req.expression, req.rate_hz, req.sample_count)
    rate = normalize_rate(req.rate_hz)
    state = _plots.get_series(req.expression, rate)
    return {
        "key": make_series_key(req.expression, rate),
        "rate_hz": rate,
        "count": state.count if state else 0,
    }


@app.post("/plot/unsubscribe")
async def unsubscribe_plot(req: PlotSeriesRequest):
    """Drop a reference to a scope series."""
    if not _plots:
        raise HTTPException(status_code=503, detail="Service not initialized")

    _plots.unsubscribe(req.expression, req.rate_hz)
    state = _plots.get_series(req.expression, req.rate_hz)
    return {
        "key": make_series_key(req.expression, normalize_rate(req.rate_hz)),
        "count": state.count if state else 0,
    }


@app.post("/plot/pause")
async def pause_plot(req: PlotPauseRequest):
    """Freeze or release the display window of a scope series."""
    if not _plots:
        raise HTTPException(status_code=503, detail="Service not initialized")

    state = _plots.get_series(req.expression, req.rate_hz)
    if state is None:
        raise HTTPException(status_code=404, detail=f"No plot series for {req.expression!r}")

    _plots.set_paused(req.expression, req.rate_hz, req.paused, req.sample_count)
    return {
        "key": make_series_key(req.expression, state.rate_hz),
        "paused": state.paused,
        "paused_at": state.paused_at,
    }


@app.get("/plot")
async def get_plot():
    """Resampled display window for every scope series. Gaps are null."""
    return _plot_payload()


@app.get("/plot/stats")
async def get_plot_stats():
    """Row count and value range of the retained samples per series."""
    if not _series_store:
        raise HTTPException(status_code=503, detail="Service not initialized")
    return _series_store.get_stats()


@app.get("/plot/export/csv")
async def export_plot_csv():
    """Export retained plot samples to a CSV file.

    Returns:
        FileResponse with CSV download

    Raises:
        400: If no samples are retained
    """
    if not _series_store:
        raise HTTPException(status_code=400, detail="No data store available")

    df = _series_store.get_dataframe()
    if len(df) == 0:
        raise HTTPException(status_code=400, detail="No data to export")

    logger.info("Exporting plot samples to CSV...")
    csv_path = _series_store.export_csv()

    if not csv_path or not Path(csv_path).exists():
        raise HTTPException(status_code=500, detail="Failed to export CSV")

    return FileResponse(
        path=csv_path,
        media_type="text/csv",
        filename=Path(csv_path).name
    )


# =============================================================================
# Discovery Endpoints
# =============================================================================

@app.get("/discover")
async def discover(timeout_ms: int = Query(CONNECT_TIMEOUT_MS, ge=1, le=60000)):
    """Probe session records and list live, protocol-compatible instances.

    Stale or incompatible records are deleted as a side effect.
    """
    instances = await discover_running_instances(SESSION_DIR, timeout_ms)
    return {
        "instances": [
            {
                "host": instance.host,
                "port": instance.port,
                "target": instance.target,
                "label": format_instance_label(instance),
                "cart_path": instance.cart_path,
                "title": instance.meta_title,
                "version": instance.meta_version,
                "started_at": instance.started_at.isoformat() if instance.started_at else None,
                "remoting_version": instance.remoting_version,
            }
            for instance in instances
        ]
    }


@app.post("/discover/auto")
async def auto_connect():
    """Connect to the newest live session record, if any."""
    if not _auto_connector:
        raise HTTPException(status_code=503, detail="Service not initialized")
    target = await _auto_connector.scan()
    return {"target": target, "session": _require_session().snapshot.to_dict()}


# =============================================================================
# WebSocket Streaming
# =============================================================================

async def _wait_for_disconnect(websocket: WebSocket) -> None:
    """Consume client messages until the client disconnects."""
    while True:
        message = await websocket.receive()
        if message["type"] == "websocket.disconnect":
            return


@app.websocket("/stream")
async def websocket_stream(websocket: WebSocket):
    """WebSocket endpoint pushing session, watch and scope state.

    Sends {"session", "expressions", "plots"} on connect and then at most
    once per UI refresh interval (217 ms by default) whenever anything
    changed. NaN plot gaps are sent as null.

    Usage:
        ws = new WebSocket("ws://localhost:9177/stream");
        ws.onmessage = (event) => {
            const state = JSON.parse(event.data);
            console.log(state.session.state, state.expressions);
        };
    """
    await websocket.accept()
    logger.info(f"WebSocket client connected: {websocket.client}")

    if not _session:
        await websocket.send_json({"error": "Service not initialized"})
        await websocket.close()
        return

    disconnected = asyncio.create_task(_wait_for_disconnect(websocket))
    try:
        last_generation = None

        while not disconnected.done():
            # Plots move with wall-clock time, so they are pushed every interval
            has_plots = bool(_plots and _plots.keys())
            if _refresh_generation != last_generation or has_plots:
                last_generation = _refresh_generation
                await websocket.send_json(_stream_payload())

            await asyncio.wait({disconnected}, timeout=UI_REFRESH_MS / 1000.0)

        logger.info(f"WebSocket client disconnected: {websocket.client}")

    except WebSocketDisconnect:
        logger.info(f"WebSocket client disconnected: {websocket.client}")
    except Exception as e:
        logger.error(f"WebSocket error: {e}", exc_info=True)
        try:
            await websocket.close()
        except RuntimeError:
            pass
    finally:
        disconnected.cancel()


# =============================================================================
# Health Check
# =============================================================================

@app.get("/")
async def root():
    """Service info."""
    return {
        "service": "TIC-80 Remote API",
        "version": API_VERSION,
        "status": "online"
    }


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {
        "service": "TIC-80 Remote API",
        "version": API_VERSION,
        "status": "online",
        "session": _session.state.value if _session else None,
    }


# =============================================================================
# Startup / Shutdown
# =============================================================================

@app.on_event("startup")
async def startup_event():
    """Create singletons, start pollers, log configuration and routes."""
    _init_singletons()
    _expressions.start()
    _plots.start()

    logger.info("=" * 60)
    logger.info("TIC-80 Remote API started")
    logger.info(f"Version: {API_VERSION}")
    logger.info(f"Host: {API_HOST}")
    logger.info(f"Port: {API_PORT}")
    logger.info(f"Default TIC-80 target: {DEFAULT_TIC80_HOST}:{DEFAULT_TIC80_PORT}")
    logger.info(f"Connect Timeout: {CONNECT_TIMEOUT_MS} ms")
    logger.info(f"Poll Rate: {_poll_hz} Hz")
    logger.info(f"UI Refresh: {UI_REFRESH_MS} ms")
    logger.info(f"Session Dir: {SESSION_DIR}")
    logger.info(f"Export Dir: {EXPORT_DIR}")
    logger.info(f"CORS Origins: {CORS_ORIGINS}")
    logger.info(f"Log Level: {LOG_LEVEL}")
    logger.info("=" * 60)

    # Dump all registered routes for debugging
    logger.info("=== REGISTERED ROUTES ===")
    for route in app.routes:
        if hasattr(route, 'methods') and hasattr(route, 'path'):
            methods = ','.join(sorted(route.methods))
            logger.info(f"{methods:10} {route.path}")
        elif hasattr(route, 'path'):
            logger.info(f"{'WS':10} {route.path}")
    logger.info("=" * 60)


@app.on_event("shutdown")
async def shutdown_event():
    """Stop pollers and close the session."""
    logger.info("Shutting down TIC-80 Remote API...")

    if _plots:
        logger.info("Stopping plot sampler...")
        await _plots.close()

    if _expressions:
        logger.info("Stopping expression monitor...")
        await _expressions.close()

    if _session:
        logger.info("Closing session...")
        _session.close()

    logger.info("Shutdown complete")


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=API_HOST, port=API_PORT)
