import asyncio
import logging

from fastapi import FastAPI, WebSocket, WebSocketDisconnect, HTTPException

from .db import make_engine
from .heartbeat import LivenessMonitor
from .mqtt_handler import DroneBridge
from .router import MessageRouter
from .schemas import SessionCreated, SessionOut, DeviceOut, TelemetryOut
from .settings import Settings, settings
from .stores import Storage
from .utils import add_cors
from .ws_manager import Peer

log = logging.getLogger("api")

def create_app(config: Settings | None = None) -> FastAPI:
    config = config or settings
    logging.basicConfig(level=config.log_level.upper())

    app = FastAPI(title="SkyRelay API", version="0.1.0")
    add_cors(app, config.cors_origins)

    storage = Storage(make_engine(config.database_url))
    bridge = DroneBridge(config) if config.mqtt_enabled else None
    router = MessageRouter(
        storage,
        monitor=LivenessMonitor(config.heartbeat_interval),
        command_sink=bridge.publish_command if bridge else None,
    )
    app.state.storage = storage
    app.state.router = router
    app.state.bridge = bridge

    @app.on_event("startup")
    async def on_startup():
        if bridge is None:
            return
        try:
            bridge.start()
        except OSError as e:
            log.warning("[MQTT] failed to start, continuing without drone bridge: %s", e)
            return
        app.state.forwarder = asyncio.create_task(bridge.forward(router))

    @app.on_event("shutdown")
    async def on_shutdown():
        task = getattr(app.state, "forwarder", None)
        if task is not None:
            task.cancel()
        if bridge is not None:
            bridge.stop()

    @app.post("/api/sessions", response_model=SessionCreated, status_code=201)
    async def create_session():
        rec = storage.sessions.create()
        log.info("session %s created", rec.session_id)
        return SessionCreated.model_validate(rec)

    def _session_out(session_id: str) -> SessionOut:
        rec = storage.sessions.get(session_id)
        if not rec:
            raise HTTPException(status_code=404, detail="Session not found")
        devices = [DeviceOut.model_validate(d) for d in storage.devices.list_by_session(session_id)]
        return SessionOut(
            session_id=rec.session_id, created_at=rec.created_at, is_active=rec.is_active, devices=devices,
        )

    @app.get("/api/sessions/{session_id}", response_model=SessionOut)
    async def get_session(session_id: str):
        return _session_out(session_id)

    @app.delete("/api/sessions/{session_id}", response_model=SessionOut)
    async def deactivate_session(session_id: str):
        if not storage.sessions.deactivate(session_id):
            raise HTTPException(status_code=404, detail="Session not found")
        log.info("session %s deactivated", session_id)
        return _session_out(session_id)

    @app.get("/api/devices/{device_id}/telemetry", response_model=TelemetryOut)
    async def get_latest_telemetry(device_id: str):
        sample = storage.telemetry.latest_for(device_id)
        if not sample:
            raise HTTPException(status_code=404, detail="No telemetry data found for device")
        return TelemetryOut.model_validate(sample)

    @app.get("/healthz")
    async def health():
        return {"status": "ok", "connections": len(router.connections)}

    @app.websocket("/ws")
    async def relay_ws(websocket: WebSocket):
        await websocket.accept()
        state = router.open(Peer(websocket))
        try:
            while True:
                frame = await websocket.receive()
                if frame["type"] == "websocket.disconnect":
                    break
                text = frame.get("text")
                if text is None and frame.get("bytes") is not None:
                    text = frame["bytes"].decode("utf-8", errors="replace")
                if text is not None:
                    await router.handle_message(state, text)
        except WebSocketDisconnect:
            pass
        except Exception as e:
            log.warning("websocket error (%s): %s", state.device_id or "<unbound>", e)
        finally:
            await router.close(state)

    return app

app = create_app()
