# skyrelay/mqtt_handler.py
import asyncio, json, time, logging
from queue import Queue, Empty
from typing import Any

import paho.mqtt.client as mqtt
from pydantic import ValidationError

from .router import RelayError
from .schemas import format_validation_error
from .settings import Settings

log = logging.getLogger("mqtt")

INBOUND_KINDS = ("join", "leave", "telemetry")

def _rc_int(rc) -> int:
    # Handles paho v2.x ReasonCode objects or plain ints
    try:
        return int(getattr(rc, "value", rc))
    except (TypeError, ValueError):
        return -1

class DroneBridge:
    """Drones on MQTT instead of a WebSocket.

    Topics, relative to `mqtt_topic_base`:
      drone/<deviceId>/join        inbound, {"sessionId": ..., "deviceName": ...}
      drone/<deviceId>/leave       inbound, empty
      drone/<deviceId>/telemetry   inbound, JSON metrics
      drone/<sessionId>/command    outbound, the drone_command frame as relayed
    A drone joins first, then listens on the command topic of the session it
    named. paho callbacks run on its network thread, so inbound messages are
    only queued there and drained on the event loop by `forward`.
    """

    def __init__(self, settings: Settings, inbox: "Queue[tuple[str, str, dict]] | None" = None) -> None:
        self.settings = settings
        self.base = settings.mqtt_topic_base.rstrip("/")
        self.inbox: Queue = inbox if inbox is not None else Queue()
        self.client: mqtt.Client | None = None

    def start(self) -> mqtt.Client:
        s = self.settings
        client = mqtt.Client(
            client_id=f"skyrelay-{int(time.time())}",
            callback_api_version=mqtt.CallbackAPIVersion.VERSION2,  # paho 2.x
        )
        client.enable_logger(log)

        if s.mqtt_username and s.mqtt_password:
            client.username_pw_set(s.mqtt_username, s.mqtt_password)

        client.reconnect_delay_set(min_delay=1, max_delay=30)

        client.on_connect = self._on_connect
        client.on_subscribe = self._on_subscribe
        client.on_disconnect = self._on_disconnect
        client.on_message = self._on_message

        log.info(
            "Bootstrapping host=%s port=%s user=%s base=%s",
            s.mqtt_host, s.mqtt_port, "<set>" if s.mqtt_username else "<none>", self.base,
        )
        client.connect(s.mqtt_host, s.mqtt_port, keepalive=30)
        client.loop_start()
        self.client = client
        return client

    def stop(self) -> None:
        if self.client is None:
            return
        self.client.loop_stop()
        self.client.disconnect()
        self.client = None

    # ---------------- paho callbacks (network thread) ----------------

    def _on_connect(self, client, userdata, flags, reason_code, properties):
        rc = _rc_int(reason_code)
        if rc != mqtt.CONNACK_ACCEPTED:
            log.warning("Connect failed rc=%s (5=Not authorized). Retrying…", rc)
            return
        topic = f"{self.base}/drone/+/+"
        res, mid = client.subscribe(topic, qos=0)
        log.info("Connected. SUB %s res=%s mid=%s", topic, res, mid)

    def _on_subscribe(self, client, userdata, mid, granted_qos, properties):
        if any(_rc_int(q) >= 0x80 for q in granted_qos):
            log.warning("subscription rejected by broker ACL (mid=%s)", mid)

    def _on_disconnect(self, client, userdata, flags, reason_code, properties):
        log.info("Disconnected rc=%s. Reconnecting…", _rc_int(reason_code))

    def _on_message(self, client, userdata, msg):
        prefix = f"{self.base}/"
        if not msg.topic.startswith(prefix):
            return
        parts = msg.topic[len(prefix):].split("/")
        if len(parts) != 3 or parts[0] != "drone" or parts[2] not in INBOUND_KINDS:
            return
        device_id, kind = parts[1], parts[2]
        try:
            payload = json.loads(msg.payload.decode("utf-8")) if msg.payload else {}
        except (UnicodeDecodeError, ValueError) as e:
            log.warning("undecodable %s from %s: %s", kind, device_id, e)
            return
        if not isinstance(payload, dict):
            log.warning("%s from %s is not an object", kind, device_id)
            return
        if kind == "telemetry":
            payload = payload.get("metrics") or payload.get("data") or payload
        self.inbox.put((kind, device_id, payload))

    # ---------------- outbound ----------------

    def publish_command(self, session_id: str, message: dict[str, Any]) -> bool:
        if self.client is None:
            return False
        topic = f"{self.base}/drone/{session_id}/command"
        info = self.client.publish(topic, json.dumps(message), qos=0, retain=False)
        # paho v2: info.rc == mqtt.MQTT_ERR_SUCCESS (0) when queued
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            log.warning("publish to %s failed rc=%s", topic, info.rc)
            return False
        return True

    # ---------------- event loop side ----------------

    async def drain(self, router) -> int:
        """Push every queued message through the router; returns how many were queued."""
        n = 0
        while True:
            try:
                kind, device_id, payload = self.inbox.get_nowait()
            except Empty:
                return n
            n += 1
            try:
                if kind == "join":
                    session_id, name = payload.get("sessionId"), payload.get("deviceName")
                    if not isinstance(name, str) or not name:
                        name = f"drone-{device_id}"
                    await router.register_external_device(
                        device_id, session_id if isinstance(session_id, str) else None, name,
                    )
                elif kind == "leave":
                    await router.release_external_device(device_id)
                else:
                    await router.ingest_external_telemetry(device_id, payload)
            except RelayError as e:
                log.warning("%s from %s refused: %s", kind, device_id, e)
            except ValidationError as e:
                log.warning("bad %s from %s: %s", kind, device_id, format_validation_error(e))
            except Exception:
                # one bad message must not stop the forwarder
                log.exception("error handling %s from %s", kind, device_id)

    async def forward(self, router, idle: float = 0.1) -> None:
        while True:
            if not await self.drain(router):
                await asyncio.sleep(idle)
