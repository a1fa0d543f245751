import asyncio
import logging

from .schemas import MessageType
from .ws_manager import ConnectionState

log = logging.getLogger("heartbeat")

class LivenessMonitor:
    """Periodic server ping for every connection that has joined as a device.

    Pings keep idle proxies from dropping the socket and let the device
    refresh its lastPing with a pong. A dead peer is detected by the
    transport closing, not by missed pongs.
    """

    def __init__(self, interval: float = 30.0) -> None:
        self.interval = interval

    def start(self, state: ConnectionState) -> None:
        state.heartbeat = asyncio.create_task(self._run(state))

    def stop(self, state: ConnectionState) -> None:
        task, state.heartbeat = state.heartbeat, None
        if task is not None and not task.done():
            task.cancel()

    async def _run(self, state: ConnectionState) -> None:
        while True:
            await asyncio.sleep(self.interval)
            if state.device_id is None:
                continue
            if not await state.peer.send_json({"type": MessageType.PING.value}):
                log.debug("ping to %s failed, stopping heartbeat", state.device_id)
                return
