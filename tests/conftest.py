import json

import pytest

from skyrelay.db import make_engine
from skyrelay.heartbeat import LivenessMonitor
from skyrelay.router import MessageRouter
from skyrelay.stores import Storage
from skyrelay.ws_manager import Peer


class FakeSocket:
    """Stands in for a starlette WebSocket; records decoded frames."""

    def __init__(self, fail=False):
        self.fail = fail
        self.sent = []

    async def send_text(self, text):
        if self.fail:
            raise RuntimeError("socket is closed")
        self.sent.append(json.loads(text))

    def of_type(self, message_type):
        return [m for m in self.sent if m.get("type") == message_type]


class IdleMonitor(LivenessMonitor):
    """No background ping tasks in router tests"""

    def start(self, state):
        pass


@pytest.fixture
def storage():
    return Storage(make_engine("sqlite://"))


@pytest.fixture
def router(storage):
    return MessageRouter(storage, monitor=IdleMonitor())


@pytest.fixture
def fake_socket():
    return FakeSocket


@pytest.fixture
def connect(router):
    """Open a fake transport on the router -> (state, socket)"""
    def _connect(fail=False):
        sock = FakeSocket(fail=fail)
        return router.open(Peer(sock)), sock
    return _connect


@pytest.fixture
def send(router):
    async def _send(state, **frame):
        await router.handle_message(state, json.dumps(frame))
    return _send


@pytest.fixture
def join(send):
    async def _join(state, session_id, device_id, device_type, device_name=None):
        await send(
            state,
            type="join_session",
            sessionId=session_id,
            deviceId=device_id,
            deviceType=device_type,
            deviceName=device_name or f"{device_type}-{device_id}",
        )
    return _join
