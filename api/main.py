"""FastAPI REST and WebSocket interface for 14CUX live data.

Single-process, single-ECU lifecycle with thread-safe access to:
- ECUController (worker thread, polling, one-shot commands)
- DataStore (pandas DataFrame of per-cycle rows)
- DataRecorder (background sampling thread)

Every command endpoint returns as soon as the command is queued on the
worker; results arrive as notifications on /stream or in /status and /values.

Error mapping:
- InvalidCommandValue → 400
- NotConnectedError → 503
- LifecycleError → 409
"""

import asyncio
import logging
import os
import queue
from enum import Enum
from pathlib import Path
from threading import RLock
from typing import Any, Dict, List, Optional

from fastapi import Body, FastAPI, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse, Response
from pydantic import BaseModel

from cux_lib import ECUController, __version__, protocol
from cux_lib.errors import InvalidCommandValue, LifecycleError, NotConnectedError
from cux_lib.link import LinkFactory, load_link_factory
from cux_lib.models import Event, FaultCodes
from cux_lib.port_probe import probe_serial_port
from data_store import DataRecorder, DataStore

# =============================================================================
# Environment Configuration
# =============================================================================

API_HOST = os.getenv("API_HOST", "0.0.0.0")
API_PORT = int(os.getenv("API_PORT", "9160"))
DEFAULT_SERIAL_PORT = os.getenv("CUX_SERIAL_PORT", "/dev/ttyUSB0")
LINK_FACTORY_PATH = os.getenv("CUX_LINK_FACTORY", "fakes.fake_link:fake_link_factory")
CORS_ORIGINS = os.getenv(
    "CORS_ORIGINS",
    "http://localhost:3000,http://127.0.0.1:3000"
).split(",")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


# =============================================================================
# Global Singletons
# =============================================================================

_link_factory: LinkFactory = load_link_factory(LINK_FACTORY_PATH)
_controller: Optional[ECUController] = None
_store: Optional[DataStore] = None
_recorder: Optional[DataRecorder] = None
_lock = RLock()  # Protects state-changing operations


def _get_controller() -> ECUController:
    """Return the controller, creating it on first use."""
    global _controller

    with _lock:
        if _controller is None:
            logger.info(f"Creating controller for {DEFAULT_SERIAL_PORT}")
            _controller = ECUController(_link_factory, address=DEFAULT_SERIAL_PORT)
        return _controller


def _require_queued(queued: bool) -> None:
    if not queued:
        raise NotConnectedError("Worker is not running. Connect or start polling first.")


def _stop_recorder() -> Optional[str]:
    global _recorder

    if _recorder is not None and _recorder.is_running():
        logger.info("Stopping recorder...")
        return _recorder.stop()
    return None


def _shutdown_controller() -> bool:
    """Stop the recorder and the worker. Blocks until the worker exits."""
    global _controller

    with _lock:
        _stop_recorder()
        stopped = True
        if _controller is not None:
            stopped = _controller.shutdown()
            _controller = None
    return stopped


# =============================================================================
# FastAPI App
# =============================================================================

app = FastAPI(
    title="14CUX Live Data API",
    description="REST and WebSocket interface for polling a Lucas 14CUX ECU",
    version=__version__,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def log_404_requests(request: Request, call_next):
    """Log all 404 responses to help debug missing routes."""
    response = await call_next(request)
    if response.status_code == 404:
        logger.warning(f"404 NOT FOUND: {request.method} {request.url.path}")
    return response


# =============================================================================
# Request/Response Models
# =============================================================================

class StatusResponse(BaseModel):
    """Response for GET /status."""
    worker_running: bool
    connected: bool
    polling: bool
    recording: bool
    state: str
    address: str
    cycle_count: int
    data_generation: int
    rows: int


class SettingsRequest(BaseModel):
    """Request body for PUT /settings. Only provided fields are applied."""
    speed_units: Optional[str] = None
    temperature_units: Optional[str] = None
    lambda_trim_type: Optional[str] = None
    airflow_type: Optional[str] = None
    throttle_type: Optional[str] = None
    serial_device: Optional[str] = None


class IdleAirControlRequest(BaseModel):
    """Request body for POST /idle-air-control."""
    direction: int
    steps: int


class RecordingStopResponse(BaseModel):
    """Response for POST /recording/stop."""
    status: str
    export_path: Optional[str]


class StatsResponse(BaseModel):
    """Response for GET /recording/stats."""
    row_count: int
    start_time: Optional[str]
    end_time: Optional[str]
    duration_s: Optional[float]
    est_row_rate_hz: Optional[float]


class HealthResponse(BaseModel):
    """Response for GET /health."""
    service: str
    version: str
    status: str
    serial_port: str
    port_available: bool
    port_error: Optional[str]


# =============================================================================
# Exception Handlers
# =============================================================================

@app.exception_handler(InvalidCommandValue)
async def invalid_command_handler(request, exc: InvalidCommandValue):
    """Map InvalidCommandValue to 400 Bad Request."""
    logger.error(f"InvalidCommandValue: {exc}")
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(NotConnectedError)
async def not_connected_handler(request, exc: NotConnectedError):
    """Map NotConnectedError to 503 Service Unavailable."""
    logger.error(f"NotConnectedError: {exc}")
    return JSONResponse(status_code=503, content={"detail": str(exc)})


@app.exception_handler(LifecycleError)
async def lifecycle_error_handler(request, exc: LifecycleError):
    """Map LifecycleError to 409 Conflict."""
    logger.error(f"LifecycleError: {exc}")
    return JSONResponse(status_code=409, content={"detail": str(exc)})


# =============================================================================
# Serialization
# =============================================================================

def _jsonable(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, FaultCodes):
        return {"flags": value.flags, "active": value.active()}
    if isinstance(value, (bytes, bytearray)):
        return {"size": len(value)}
    return value


def event_to_json(event: Event) -> Dict[str, Any]:
    """Convert a notification to the JSON message sent on /stream."""
    return {
        "event": event.kind.value,
        "payload": _jsonable(event.payload),
        "ts": event.ts.isoformat(),
    }


# =============================================================================
# Read-Only Endpoints (Low Latency)
# =============================================================================

@app.get("/status", response_model=StatusResponse)
async def get_status():
    """Worker, connection, polling and recording state."""
    controller = _get_controller()

    return StatusResponse(
        worker_running=controller.is_worker_running(),
        connected=controller.is_connected(),
        polling=controller.is_polling(),
        recording=_recorder is not None and _recorder.is_running(),
        state=controller.state.value,
        address=controller.address,
        cycle_count=controller.cycle_count,
        data_generation=controller.data_generation,
        rows=len(_store) if _store else 0,
    )


@app.get("/values")
async def get_values():
    """Every display value in the selected units.

    May be one poll cycle stale.
    """
    return _get_controller().snapshot()


@app.get("/samples")
async def get_samples():
    """Which sample kinds are currently polled."""
    snapshot = _get_controller().registry.snapshot()
    return {kind.value: enabled for kind, enabled in snapshot.items()}


@app.put("/samples")
async def set_samples(samples: Dict[str, bool] = Body(...)):
    """Enable or disable sample kinds by name.

    Raises:
        400: If a name is not a known sample kind
    """
    controller = _get_controller()
    controller.set_enabled_samples(samples)
    snapshot = controller.registry.snapshot()
    return {kind.value: enabled for kind, enabled in snapshot.items()}


@app.get("/faults")
async def get_faults():
    """Fault codes from the last successful read (null if never read)."""
    codes = _get_controller().fault_codes
    return {"fault_codes": _jsonable(codes) if codes is not None else None}


@app.get("/fuel-maps/{map_id}")
async def get_fuel_map(map_id: int):
    """Fuel map table retrieved this session, as a list of 128 byte values.

    Raises:
        400: If map_id is outside 0-5
        404: If the map has not been read yet
    """
    controller = _get_controller()
    if map_id not in protocol.VALID_FUEL_MAP_IDS:
        raise InvalidCommandValue(f"Fuel map id must be 0-5, got {map_id}")

    table = controller.fuel_map(map_id)
    if table is None:
        raise HTTPException(status_code=404, detail=f"Fuel map {map_id} has not been read")

    return {
        "map_id": map_id,
        "adjustment_factor": controller.values.fuel_map_adj_factor,
        "data": list(table),
    }


@app.get("/prom/image")
async def get_prom_image():
    """Last completed PROM image as raw bytes.

    Raises:
        404: If no complete image is available
    """
    image = _get_controller().prom_image
    if image is None:
        raise HTTPException(status_code=404, detail="No PROM image available")
    return Response(content=image, media_type="application/octet-stream")


@app.get("/events")
async def get_events(limit: int = Query(50, ge=1, le=256)):
    """Most recent notifications, oldest first."""
    recent = _get_controller().hub.recent()[-limit:]
    return {"events": [event_to_json(e) for e in recent]}


# =============================================================================
# Lifecycle Endpoints
# =============================================================================

@app.post("/connect")
async def connect(port: Optional[str] = Query(None, description="Serial device (e.g., /dev/ttyUSB0)")):
    """Open the link without polling. Result arrives as a notification."""
    controller = _get_controller()
    with _lock:
        controller.connect(port)
    return {"status": "connecting", "port": controller.address}


@app.post("/polling/start")
async def start_polling(
    auto_record: bool = Query(False, description="Also start the DataRecorder"),
):
    """Connect if needed and start the poll loop."""
    global _store, _recorder

    controller = _get_controller()
    with _lock:
        controller.start_polling()

        recording = False
        if auto_record:
            if _store is None:
                _store = DataStore(max_rows=100000)
            if _recorder is None or not _recorder.is_running():
                _recorder = DataRecorder(controller, _store)
                _recorder.start()
                recording = True

    return {"status": "polling", "recording": recording}


@app.post("/polling/stop")
async def stop_polling():
    """Ask the poll loop to stop after the current cycle."""
    _get_controller().stop_polling()
    return {"status": "stopping"}


@app.post("/disconnect")
def disconnect():
    """Stop polling and discard session data (PROM image, fuel maps)."""
    with _lock:
        _stop_recorder()
        _get_controller().disconnect()
    return {"status": "disconnecting"}


@app.post("/shutdown")
def shutdown():
    """Stop the worker thread. A later request creates a fresh controller."""
    return {"status": "shutdown", "clean": _shutdown_controller()}


@app.put("/settings")
async def update_settings(settings: SettingsRequest):
    """Apply display units, reading modes and the serial device.

    Raises:
        400: If a value is not recognised
    """
    controller = _get_controller()
    with _lock:
        if settings.speed_units is not None:
            controller.set_speed_units(settings.speed_units)
        if settings.temperature_units is not None:
            controller.set_temperature_units(settings.temperature_units)
        if settings.lambda_trim_type is not None:
            controller.set_lambda_trim_type(settings.lambda_trim_type)
        if settings.airflow_type is not None:
            controller.set_airflow_type(settings.airflow_type)
        if settings.throttle_type is not None:
            controller.set_throttle_type(settings.throttle_type)
        if settings.serial_device is not None:
            controller.set_serial_device(settings.serial_device)

    options = controller.options
    return {
        "speed_units": controller.speed_units.value,
        "temperature_units": controller.temperature_units.value,
        "lambda_trim_type": options.lambda_trim_type.name.lower(),
        "airflow_type": options.airflow_type.value,
        "throttle_type": options.throttle_type.value,
        "serial_device": controller.address,
    }


# =============================================================================
# One-Shot Command Endpoints
# =============================================================================

@app.post("/faults/read")
async def read_faults():
    _require_queued(_get_controller().request_fault_codes())
    return {"status": "queued"}


@app.post("/faults/clear")
async def clear_faults():
    _require_queued(_get_controller().clear_fault_codes())
    return {"status": "queued"}


@app.post("/fuel-maps/{map_id}/read")
async def read_fuel_map(map_id: int):
    """Queue a fuel map read (ids 0-5). Completion: fuel_map_ready."""
    _require_queued(_get_controller().request_fuel_map(map_id))
    return {"status": "queued", "map_id": map_id}


@app.post("/prom/read")
async def read_prom():
    """Queue a full PROM dump. Completion: prom_image_ready."""
    _require_queued(_get_controller().request_prom_image())
    return {"status": "queued"}


@app.post("/prom/cancel")
async def cancel_prom():
    _get_controller().cancel_prom_read()
    return {"status": "cancel_requested"}


@app.post("/fuel-pump/run")
async def run_fuel_pump():
    _require_queued(_get_controller().run_fuel_pump())
    return {"status": "queued"}


@app.post("/idle-air-control")
async def move_idle_air_control(req: IdleAirControlRequest):
    """Queue an idle air control valve move (direction 0=open, 1=close)."""
    _require_queued(_get_controller().move_idle_air_control(req.direction, req.steps))
    return {"status": "queued", "direction": req.direction, "steps": req.steps}


# =============================================================================
# Recording Endpoints
# =============================================================================

@app.post("/recording/start")
async def start_recording(
    poll_interval_s: float = Query(0.1, description="Recorder sampling interval (seconds)"),
    max_rows: int = Query(100000, description="Max rows in memory"),
):
    """Record one row per published poll cycle.

    Raises:
        400: If already recording
    """
    global _store, _recorder

    controller = _get_controller()
    with _lock:
        if _recorder is not None and _recorder.is_running():
            raise HTTPException(status_code=400, detail="Already recording")

        if _store is None:
            _store = DataStore(max_rows=max_rows)

        _recorder = DataRecorder(controller, _store, poll_interval_s=poll_interval_s)
        _recorder.start()

    return {"status": "recording"}


@app.post("/recording/stop", response_model=RecordingStopResponse)
def stop_recording(export: bool = Query(False, description="Export to CSV after stopping")):
    """Stop the recorder and optionally export the rows.

    Raises:
        400: If recorder not running
    """
    with _lock:
        if _recorder is None or not _recorder.is_running():
            raise HTTPException(status_code=400, detail="Recorder not running")

        export_path = None
        if export:
            export_path = _recorder.stop(export_path=f"cux_log_{os.getpid()}.csv")
        else:
            _recorder.stop()

    return RecordingStopResponse(status="stopped", export_path=export_path)


@app.get("/recording/stats", response_model=StatsResponse)
async def get_recording_stats():
    if _store is None:
        return StatsResponse(
            row_count=0,
            start_time=None,
            end_time=None,
            duration_s=None,
            est_row_rate_hz=None,
        )

    stats = _store.get_stats()
    return StatsResponse(**stats)


@app.get("/recording/latest")
async def get_latest_row():
    if _store is None:
        return {}
    latest = _store.get_latest()
    return latest if latest else {}


@app.get("/export/csv")
async def export_csv():
    """Export recorded rows to a CSV download.

    Raises:
        400: If no data available
    """
    if _store is None or len(_store) == 0:
        raise HTTPException(status_code=400, detail="No data to export")

    csv_path = _store.export_csv()
    return FileResponse(path=csv_path, media_type="text/csv", filename=Path(csv_path).name)


# =============================================================================
# WebSocket Streaming
# =============================================================================

@app.websocket("/stream")
async def websocket_stream(websocket: WebSocket):
    """Forward every worker notification to the client as JSON.

    Messages look like {"event": "data_ready", "payload": null, "ts": "..."}.
    Bulk payloads (PROM image) are reduced to their size; fetch the bytes
    from GET /prom/image.
    """
    controller = _get_controller()
    listener = controller.hub.listen()

    await websocket.accept()
    logger.info(f"WebSocket client connected: {websocket.client}")

    try:
        while True:
            sent: List[Dict[str, Any]] = []
            while True:
                try:
                    event = listener.get_nowait()
                except queue.Empty:
                    break
                sent.append(event_to_json(event))

            for message in sent:
                await websocket.send_json(message)

            await asyncio.sleep(0.05)

    except WebSocketDisconnect:
        logger.info(f"WebSocket client disconnected: {websocket.client}")
    except Exception as e:
        logger.error(f"WebSocket error: {e}", exc_info=True)
    finally:
        controller.hub.unlisten(listener)


# =============================================================================
# Health Check
# =============================================================================

@app.get("/")
async def root():
    return {
        "service": "14CUX Live Data API",
        "version": __version__,
        "status": "online",
    }


@app.get("/health", response_model=HealthResponse)
async def health():
    """Service liveness plus whether the configured serial port opens.

    The port is not probed while the worker holds it open.
    """
    controller = _controller
    port = controller.address if controller is not None else DEFAULT_SERIAL_PORT

    if controller is not None and controller.is_connected():
        available, error = True, None
    else:
        probe = probe_serial_port(port)
        available, error = probe.available, probe.error

    return HealthResponse(
        service="14CUX Live Data API",
        version=__version__,
        status="online",
        serial_port=port,
        port_available=available,
        port_error=error,
    )


# =============================================================================
# Startup/Shutdown Events
# =============================================================================

@app.on_event("startup")
async def startup_event():
    """Log startup configuration."""
    logger.info("=" * 60)
    logger.info("14CUX Live Data API started")
    logger.info(f"Version: {__version__}")
    logger.info(f"Host: {API_HOST}")
    logger.info(f"Port: {API_PORT}")
    logger.info(f"Default Serial Port: {DEFAULT_SERIAL_PORT}")
    logger.info(f"Link Factory: {LINK_FACTORY_PATH}")
    logger.info(f"CORS Origins: {CORS_ORIGINS}")
    logger.info(f"Log Level: {LOG_LEVEL}")
    logger.info("=" * 60)


@app.on_event("shutdown")
async def shutdown_event():
    """Stop the recorder and the worker."""
    logger.info("Shutting down 14CUX API...")
    await asyncio.to_thread(_shutdown_controller)
    logger.info("Shutdown complete")


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=API_HOST, port=API_PORT, log_level=LOG_LEVEL.lower())
