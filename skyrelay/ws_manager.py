import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

log = logging.getLogger("relay")

class Peer:
    """One open transport. Serializes sends so heartbeat and relay frames never interleave."""

    def __init__(self, websocket) -> None:
        self.websocket = websocket
        self.open = True
        self._send_lock = asyncio.Lock()

    async def send_json(self, message: Dict[str, Any]) -> bool:
        if not self.open:
            return False
        text = json.dumps(message)
        async with self._send_lock:
            try:
                await self.websocket.send_text(text)
                return True
            except Exception as e:
                # the receive loop sees the close and runs cleanup
                log.debug("send failed: %s", e)
                return False

@dataclass
class Connection:
    device_id: str
    peer: Peer
    session_id: str
    device_type: str
    device_name: str

@dataclass
class ConnectionState:
    """Per-transport context: what this socket has bound itself to so far."""
    peer: Peer
    device_id: Optional[str] = None
    session_id: Optional[str] = None
    heartbeat: Optional[asyncio.Task] = None
    closed: bool = False

class ConnectionTable:
    """deviceId -> live connection. The only authority on who can be reached right now."""

    def __init__(self) -> None:
        self._by_device: Dict[str, Connection] = {}

    def __len__(self) -> int:
        return len(self._by_device)

    def put(self, device_id: str, peer: Peer, session_id: str, device_type: str, device_name: str) -> Optional[Connection]:
        """Insert or replace; returns the entry that was replaced, if any."""
        previous = self._by_device.get(device_id)
        self._by_device[device_id] = Connection(device_id, peer, session_id, device_type, device_name)
        return previous

    def get(self, device_id: str) -> Optional[Connection]:
        return self._by_device.get(device_id)

    def remove(self, device_id: str, peer: Optional[Peer] = None) -> Optional[Connection]:
        """Drop the entry. With `peer`, only if the entry still belongs to that transport."""
        conn = self._by_device.get(device_id)
        if conn is None:
            return None
        if peer is not None and conn.peer is not peer:
            return None
        del self._by_device[device_id]
        return conn

    def list_by_session(self, session_id: str) -> List[Connection]:
        return [c for c in self._by_device.values() if c.session_id == session_id]

    def list_by_session_and_type(self, session_id: str, device_type: str) -> List[Connection]:
        return [
            c for c in self._by_device.values()
            if c.session_id == session_id and c.device_type == device_type
        ]

async def broadcast(connections: List[Connection], message: Dict[str, Any]) -> int:
    """Send to a snapshot of connections one by one; returns how many sends succeeded."""
    delivered = 0
    for c in connections:
        if await c.peer.send_json(message):
            delivered += 1
    return delivered
