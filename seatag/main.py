import asyncio
import logging
from contextlib import asynccontextmanager, suppress
from datetime import datetime, timezone

from fastapi import APIRouter, FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .ingest import IngestError, IngestionService
from .mqtt_handler import start_mqtt
from .relay import CommandRelay, NoReceiversError
from .schemas import (
    AcknowledgeRequest, AcknowledgeResponse, AlertResponse, AlertSubmission, DeviceList,
    DeviceStatusList, DeviceSummary, EventList, MessageResponse, TelemetryRecord,
)
from .settings import Settings, settings as default_settings
from .state import DeviceStateTable
from .store import EventStore, build_store
from .utils import add_cors, configure_logging
from .ws_manager import ConnectionManager, Role

log = logging.getLogger("api")

router = APIRouter(prefix="/api")


def _ingestion(request: Request) -> IngestionService:
    ingestion = getattr(request.app.state, "ingestion", None)
    if ingestion is None:
        raise HTTPException(status_code=503, detail="Service is starting")
    return ingestion


def _store(request: Request) -> EventStore:
    return _ingestion(request).store


@router.post("/alerts", response_model=AlertResponse)
async def receive_alert(request: Request, body: AlertSubmission):
    ingestion = _ingestion(request)
    try:
        ack = await ingestion.ingest(body)
    except IngestError:
        raise
    except Exception:
        log.exception("Error processing alert: status=%r payload=%r", body.status, body.payload)
        raise
    return AlertResponse(success=True, message=ack.message, persisted=ack.persisted, warning=ack.warning)


@router.get("/alerts", response_model=EventList)
def list_alerts(request: Request):
    events = _store(request).list_all()
    return EventList(locations=events, count=len(events))


@router.delete("/alerts", response_model=MessageResponse)
def clear_alerts(request: Request):
    removed = _store(request).delete_all()
    log.info("All alerts cleared (%d removed)", removed)
    return MessageResponse(success=True, message="All alerts cleared")


@router.get("/alerts/device/{device_id}", response_model=EventList)
def list_device_alerts(request: Request, device_id: str):
    events = _store(request).list_by_device(device_id)
    return EventList(locations=events, count=len(events))


MAX_EVENT_ID = 2**63 - 1


def _is_event_id(value: str) -> bool:
    return value.isascii() and value.isdigit() and int(value) <= MAX_EVENT_ID


@router.delete("/alerts/{event_id}", response_model=MessageResponse)
def delete_alert(request: Request, event_id: str):
    store = _store(request)
    if not _is_event_id(event_id) or not store.delete(int(event_id)):
        raise HTTPException(status_code=404, detail="Alert not found")
    log.info("Alert %s deleted", event_id)
    return MessageResponse(success=True, message="Alert deleted")


@router.get("/status")
def get_status(request: Request):
    devices: DeviceStateTable = request.app.state.devices
    cfg: Settings = request.app.state.settings
    if cfg.multi_device:
        records = devices.records()
        return DeviceStatusList(devices=records, count=len(records))
    latest = devices.get(cfg.default_device_id)
    if latest is None:
        return {
            "status": "WAITING",
            "payload": "Waiting for data...",
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
    return latest


@router.get("/status/{device_id}", response_model=TelemetryRecord)
def get_device_status(request: Request, device_id: str):
    latest = request.app.state.devices.get(device_id)
    if latest is None:
        raise HTTPException(status_code=404, detail="Device not found")
    return latest


@router.get("/devices", response_model=DeviceList)
def list_devices(request: Request):
    devices: DeviceStateTable = request.app.state.devices
    known = set(_store(request).device_ids())
    known.update(device_id for device_id, _ in devices.all())
    out = []
    for device_id in sorted(known):
        latest = devices.get(device_id)
        name = latest.device_name if latest and latest.device_name else device_id
        out.append(DeviceSummary(device_id=device_id, device_name=name, latest_status=latest))
    return DeviceList(devices=out, count=len(out))


@router.post("/acknowledge", response_model=AcknowledgeResponse)
async def acknowledge(request: Request, body: AcknowledgeRequest):
    relay: CommandRelay = request.app.state.relay
    result = await relay.relay(body.device_id, body.command)
    return AcknowledgeResponse(
        success=True,
        message=f"Command sent to {result.delivered} receiver(s)",
        commandId=result.command_id,
        delivered=result.delivered,
    )


async def mqtt_forwarder(ingestion: IngestionService, inbox: asyncio.Queue):
    while True:
        submission = await inbox.get()
        try:
            await ingestion.ingest(submission)
        except IngestError:
            pass  # already logged by the ingestion service
        except Exception:
            log.exception("Error processing MQTT alert: %r", submission.payload)


def create_app(settings: Settings = default_settings, store: EventStore | None = None) -> FastAPI:
    """Build the API. ``store`` overrides the backend named in ``settings``."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await on_startup(app)
        try:
            yield
        finally:
            await on_shutdown(app)

    app = FastAPI(title="SeaTag API", version="0.1.0", lifespan=lifespan)
    add_cors(app, settings.cors_origins)
    app.include_router(router)

    app.state.settings = settings
    app.state.devices = DeviceStateTable()
    app.state.manager = ConnectionManager(queue_size=settings.subscriber_queue_size)
    app.state.relay = CommandRelay(app.state.manager)
    app.state.ingestion = None
    app.state.mqtt_client = None
    app.state.forwarder = None

    async def on_startup(app: FastAPI):
        event_store = store if store is not None else build_store(settings)
        ingestion = IngestionService.from_settings(
            settings, app.state.devices, event_store, app.state.manager
        )
        log.info("Ingestion configured: %s", ingestion.describe())
        await asyncio.to_thread(app.state.devices.seed_from, event_store)
        app.state.ingestion = ingestion

        if settings.mqtt_enabled:
            loop = asyncio.get_running_loop()
            inbox: asyncio.Queue = asyncio.Queue()
            try:
                app.state.mqtt_client = start_mqtt(
                    settings, lambda s: loop.call_soon_threadsafe(inbox.put_nowait, s)
                )
            except Exception as e:
                log.error("MQTT failed to start: %s", e)
            app.state.forwarder = asyncio.create_task(mqtt_forwarder(ingestion, inbox))

    async def on_shutdown(app: FastAPI):
        if app.state.mqtt_client is not None:
            app.state.mqtt_client.loop_stop()
            app.state.mqtt_client.disconnect()
        if app.state.forwarder is not None:
            app.state.forwarder.cancel()
            with suppress(asyncio.CancelledError):
                await app.state.forwarder
        await app.state.manager.close_all()

    @app.exception_handler(StarletteHTTPException)
    async def http_error(request: Request, exc: StarletteHTTPException):
        return JSONResponse(
            {"success": False, "message": exc.detail},
            status_code=exc.status_code,
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error(request: Request, exc: RequestValidationError):
        return JSONResponse({"success": False, "message": "Invalid payload"}, status_code=400)

    @app.exception_handler(IngestError)
    async def ingest_error(request: Request, exc: IngestError):
        return JSONResponse(
            {"success": False, "message": exc.message, "reason": exc.reason}, status_code=400
        )

    @app.exception_handler(NoReceiversError)
    async def no_receivers(request: Request, exc: NoReceiversError):
        return JSONResponse({"success": False, "message": str(exc)}, status_code=503)

    @app.exception_handler(Exception)
    async def internal_error(request: Request, exc: Exception):
        log.error("Unhandled error on %s %s: %s", request.method, request.url.path, exc)
        return JSONResponse(
            {"success": False, "message": "Internal server error", "error": str(exc)},
            status_code=500,
        )

    @app.get("/health")
    def health():
        return {"status": "ok", "timestamp": datetime.now(timezone.utc).isoformat()}

    @app.websocket("/ws")
    async def telemetry_ws(websocket: WebSocket, role: Role = Role.VIEWER):
        devices: DeviceStateTable = app.state.devices
        manager: ConnectionManager = app.state.manager
        sub = await manager.connect(
            websocket, role, replay=lambda: [r.to_message() for r in devices.records()]
        )
        try:
            while True:
                text = await websocket.receive_text()
                log.debug("From %s: %s", sub, text)
        except WebSocketDisconnect:
            pass
        finally:
            await manager.disconnect(sub)

    return app


app = create_app()


def run():
    import uvicorn

    configure_logging(default_settings.log_level)
    uvicorn.run(app, host=default_settings.host, port=default_settings.port)


if __name__ == "__main__":
    run()
