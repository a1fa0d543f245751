"""Message routing for the /ws relay.

Every inbound frame on every connection goes through `MessageRouter.handle_message`.
Frames are parsed, checked against the closed `WsMessage` schema and dispatched:

- join_session / leave_session: session membership
- offer / answer / ice_candidate: point-to-point relay to the addressed device
- telemetry, switch_camera: fan-out to the whole session
- drone_command: fan-out to drone connections of the session only
- pong: heartbeat bookkeeping

Errors are only ever reported to the sender. Nothing here waits on another
device: relays are fire-and-forget and a missing recipient is decided from the
local connection table.
"""
import json
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from pydantic import ValidationError

from .heartbeat import LivenessMonitor
from .models import Device, TelemetrySample
from .schemas import (
    SESSION_DEVICES, SIGNALING_TYPES, DeviceOut, DeviceType, MessageType, TelemetryOut,
    TelemetryPayload, WsMessage, format_validation_error,
)
from .stores import Storage
from .ws_manager import ConnectionState, ConnectionTable, Peer, broadcast

log = logging.getLogger("relay")

CommandSink = Callable[[str, Dict[str, Any]], Any]

class RelayError(Exception):
    """Business-level failure, answered with an error frame to the sender."""

class MessageRouter:
    def __init__(
        self,
        storage: Storage,
        connections: Optional[ConnectionTable] = None,
        monitor: Optional[LivenessMonitor] = None,
        command_sink: Optional[CommandSink] = None,
    ) -> None:
        self.storage = storage
        self.connections = connections if connections is not None else ConnectionTable()
        self.monitor = monitor or LivenessMonitor()
        # extra delivery path for drone commands (MQTT bridge)
        self.command_sink = command_sink

        self._handlers: Dict[MessageType, Callable[[ConnectionState, WsMessage], Awaitable[None]]] = {
            MessageType.JOIN_SESSION: self._join,
            MessageType.LEAVE_SESSION: self._leave,
            MessageType.TELEMETRY: self._telemetry,
            MessageType.SWITCH_CAMERA: self._switch_camera,
            MessageType.DRONE_COMMAND: self._drone_command,
            MessageType.PONG: self._pong,
        }
        for t in SIGNALING_TYPES:
            self._handlers[t] = self._signal

    # ---------------- connection lifecycle ----------------

    def open(self, peer: Peer) -> ConnectionState:
        state = ConnectionState(peer=peer)
        self.monitor.start(state)
        return state

    async def close(self, state: ConnectionState) -> None:
        """Transport closed or errored. Safe to call more than once."""
        if state.closed:
            return
        state.closed = True
        state.peer.open = False
        self.monitor.stop(state)
        await self._release(state)

    async def _release(self, state: ConnectionState) -> None:
        device_id = state.device_id
        state.device_id = state.session_id = None
        if device_id is None:
            return
        # a newer connection may have taken over this deviceId; leave it alone
        conn = self.connections.remove(device_id, state.peer)
        if conn is None:
            log.info("%s: stale connection closed, newer one kept", device_id)
            return
        self.storage.devices.set_connected(device_id, False)
        notice = WsMessage(type=MessageType.LEAVE_SESSION, device_id=device_id, session_id=conn.session_id)
        await broadcast(self.connections.list_by_session(conn.session_id), notice.to_wire())
        log.info("%s left session %s", device_id, conn.session_id)

    # ---------------- entry point ----------------

    async def handle_message(self, state: ConnectionState, raw: str) -> None:
        try:
            data = json.loads(raw)
        except (TypeError, ValueError):
            await self._send_error(state, "Invalid message format")
            return
        if not isinstance(data, dict):
            await self._send_error(state, "Invalid message format")
            return

        try:
            msg = WsMessage.model_validate(data)
        except ValidationError as e:
            await self._send_error(state, format_validation_error(e))
            return

        handler = self._handlers.get(msg.type)
        if handler is None:
            log.debug("ignoring %s from %s", msg.type.value, state.device_id or "<unbound>")
            return

        try:
            await handler(state, msg)
        except RelayError as e:
            await self._send_error(state, str(e))
        except ValidationError as e:
            await self._send_error(state, format_validation_error(e))
        except Exception:
            log.exception("error handling %s from %s", msg.type.value, state.device_id or "<unbound>")
            await self._send_error(state, "Error processing message")

    async def _send_error(self, state: ConnectionState, message: str) -> None:
        await state.peer.send_json(WsMessage(type=MessageType.ERROR, payload={"message": message}).to_wire())

    # ---------------- dispatch arms ----------------

    def _require_active_session(self, session_id: str) -> None:
        session = self.storage.sessions.get(session_id)
        if session is None:
            session = self.storage.sessions.create(session_id)
        if not session.is_active:
            raise RelayError("Session is no longer active")

    def _upsert_device(self, device_id: str, session_id: str, device_type: str, device_name: str) -> None:
        if self.storage.devices.get(device_id) is None:
            self.storage.devices.add(Device(
                device_id=device_id, session_id=session_id,
                device_type=device_type, device_name=device_name,
            ))
        else:
            self.storage.devices.rebind(device_id, session_id, device_type, device_name)

    async def _join(self, state: ConnectionState, msg: WsMessage) -> None:
        if not (msg.session_id and msg.device_id and msg.device_type and msg.device_name):
            raise RelayError("Missing required fields for joining session")
        session_id, device_id = msg.session_id, msg.device_id
        device_type = msg.device_type.value
        self._require_active_session(session_id)

        # same socket switching identity or session: drop the old binding first
        if state.device_id is not None and (state.device_id, state.session_id) != (device_id, session_id):
            await self._release(state)

        self._upsert_device(device_id, session_id, device_type, msg.device_name)

        previous = self.connections.put(device_id, state.peer, session_id, device_type, msg.device_name)
        state.device_id, state.session_id = device_id, session_id

        if previous is not None and previous.peer is not state.peer:
            log.warning("%s re-joined on a new connection, previous transport orphaned", device_id)
            if previous.session_id != session_id:
                notice = WsMessage(type=MessageType.LEAVE_SESSION, device_id=device_id, session_id=previous.session_id)
                await broadcast(self.connections.list_by_session(previous.session_id), notice.to_wire())

        others = [c for c in self.connections.list_by_session(session_id) if c.device_id != device_id]
        notice = WsMessage(
            type=MessageType.JOIN_SESSION, session_id=session_id, device_id=device_id,
            device_type=msg.device_type, device_name=msg.device_name,
        )
        await broadcast(others, notice.to_wire())

        devices = [
            DeviceOut.model_validate(d).model_dump(mode="json", by_alias=True)
            for d in self.storage.devices.list_by_session(session_id)
        ]
        await state.peer.send_json({"type": SESSION_DEVICES, "sessionId": session_id, "payload": {"devices": devices}})
        log.info("%s (%s, %s) joined session %s", device_id, device_type, msg.device_name, session_id)

    async def _leave(self, state: ConnectionState, msg: WsMessage) -> None:
        if state.device_id is not None:
            await self._release(state)

    async def _telemetry(self, state: ConnectionState, msg: WsMessage) -> None:
        if state.device_id is None or not msg.payload or not isinstance(msg.payload, dict):
            raise RelayError("Invalid telemetry data")
        data = TelemetryPayload.model_validate(msg.payload)
        sample = self.storage.telemetry.append(state.device_id, data)
        await self._publish_telemetry(state.session_id, sample)

    async def _signal(self, state: ConnectionState, msg: WsMessage) -> None:
        if not msg.device_id or state.session_id is None or msg.payload is None:
            raise RelayError("Missing required fields for signaling")
        target = self.connections.get(msg.device_id)
        # recipient sees who the frame came from in deviceId
        relayed = msg.model_copy(update={"device_id": state.device_id}).to_wire()
        if target is None or not await target.peer.send_json(relayed):
            log.info("%s from %s dropped: %s not connected", msg.type.value, state.device_id, msg.device_id)
            raise RelayError("Target device not connected")
        log.debug("relayed %s %s -> %s", msg.type.value, state.device_id, msg.device_id)

    async def _switch_camera(self, state: ConnectionState, msg: WsMessage) -> None:
        if state.session_id is None or msg.payload is None:
            raise RelayError("Invalid camera switch request")
        await broadcast(self.connections.list_by_session(state.session_id), msg.to_wire())

    async def _drone_command(self, state: ConnectionState, msg: WsMessage) -> None:
        if state.session_id is None or msg.payload is None:
            raise RelayError("Invalid drone command")
        wire = msg.to_wire()
        drones = self.connections.list_by_session_and_type(state.session_id, DeviceType.DRONE.value)
        await broadcast(drones, wire)
        if self.command_sink is not None:
            self.command_sink(state.session_id, wire)

    async def _pong(self, state: ConnectionState, msg: WsMessage) -> None:
        if state.device_id is not None:
            self.storage.devices.touch_ping(state.device_id)

    # ---------------- telemetry fan-out ----------------

    async def _publish_telemetry(self, session_id: str, sample: TelemetrySample) -> None:
        out = WsMessage(
            type=MessageType.TELEMETRY, device_id=sample.device_id, session_id=session_id,
            payload=TelemetryOut.model_validate(sample).model_dump(mode="json", by_alias=True),
        )
        await broadcast(self.connections.list_by_session(session_id), out.to_wire())

    async def ingest_external_telemetry(self, device_id: str, payload: Dict[str, Any]) -> Optional[TelemetrySample]:
        """Telemetry that arrived outside a WebSocket (MQTT). The device must have joined first."""
        device = self.storage.devices.get(device_id)
        if device is None:
            log.warning("telemetry for unknown device %s dropped", device_id)
            return None
        sample = self.storage.telemetry.append(device_id, TelemetryPayload.model_validate(payload))
        await self._publish_telemetry(device.session_id, sample)
        return sample

    # ---------------- devices without a WebSocket (MQTT drones) ----------------

    async def register_external_device(self, device_id: str, session_id: Optional[str], device_name: str) -> None:
        """Join a drone that only speaks MQTT.

        The device is recorded and announced like a WebSocket join, but it has no
        connection table entry: its commands go out on the session command topic.
        """
        if not session_id:
            raise RelayError("Missing required fields for joining session")
        self._require_active_session(session_id)

        previous = self.storage.devices.get(device_id)
        self._upsert_device(device_id, session_id, DeviceType.DRONE.value, device_name)
        if previous is not None and previous.is_connected and previous.session_id != session_id:
            notice = WsMessage(type=MessageType.LEAVE_SESSION, device_id=device_id, session_id=previous.session_id)
            await broadcast(self.connections.list_by_session(previous.session_id), notice.to_wire())

        notice = WsMessage(
            type=MessageType.JOIN_SESSION, session_id=session_id, device_id=device_id,
            device_type=DeviceType.DRONE, device_name=device_name,
        )
        await broadcast(self.connections.list_by_session(session_id), notice.to_wire())
        log.info("%s (mqtt, %s) joined session %s", device_id, device_name, session_id)

    async def release_external_device(self, device_id: str) -> bool:
        device = self.storage.devices.get(device_id)
        if device is None or not device.is_connected:
            return False
        if self.connections.get(device_id) is not None:
            # a live WebSocket owns this device now
            log.info("%s: mqtt leave ignored, device is connected over /ws", device_id)
            return False
        self.storage.devices.set_connected(device_id, False)
        notice = WsMessage(type=MessageType.LEAVE_SESSION, device_id=device_id, session_id=device.session_id)
        await broadcast(self.connections.list_by_session(device.session_id), notice.to_wire())
        log.info("%s (mqtt) left session %s", device_id, device.session_id)
        return True
