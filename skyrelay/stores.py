"""Session, device and telemetry stores.

Each store wraps an injected SQLAlchemy engine and exposes a narrow set of
operations. Rows handed back are detached snapshots; callers change state
only through the store methods. Boolean mutators return False when the
target row does not exist.
"""
import uuid
from typing import Optional

from sqlmodel import select

from .db import get_session, init_db
from .models import Device, RelaySession, TelemetrySample, utcnow
from .schemas import TelemetryPayload

class SessionStore:
    def __init__(self, engine) -> None:
        self.engine = engine

    def create(self, session_id: Optional[str] = None) -> RelaySession:
        rec = RelaySession(session_id=session_id or str(uuid.uuid4()))
        with get_session(self.engine) as s:
            s.add(rec)
            s.commit()
            s.refresh(rec)
        return rec

    def get(self, session_id: str) -> Optional[RelaySession]:
        with get_session(self.engine) as s:
            return s.exec(select(RelaySession).where(RelaySession.session_id == session_id)).first()

    def deactivate(self, session_id: str) -> bool:
        with get_session(self.engine) as s:
            rec = s.exec(select(RelaySession).where(RelaySession.session_id == session_id)).first()
            if not rec:
                return False
            rec.is_active = False
            s.add(rec)
            s.commit()
            return True

class DeviceStore:
    def __init__(self, engine) -> None:
        self.engine = engine

    def _find(self, s, device_id: str) -> Optional[Device]:
        return s.exec(select(Device).where(Device.device_id == device_id)).first()

    def add(self, device: Device) -> Device:
        with get_session(self.engine) as s:
            s.add(device)
            s.commit()
            s.refresh(device)
        return device

    def get(self, device_id: str) -> Optional[Device]:
        with get_session(self.engine) as s:
            return self._find(s, device_id)

    def list_by_session(self, session_id: str) -> list[Device]:
        with get_session(self.engine) as s:
            stmt = select(Device).where(Device.session_id == session_id).order_by(Device.id)
            return list(s.exec(stmt).all())

    def set_connected(self, device_id: str, connected: bool) -> bool:
        with get_session(self.engine) as s:
            d = self._find(s, device_id)
            if not d:
                return False
            d.is_connected = connected
            s.add(d)
            s.commit()
            return True

    def touch_ping(self, device_id: str) -> bool:
        with get_session(self.engine) as s:
            d = self._find(s, device_id)
            if not d:
                return False
            d.last_ping = utcnow()
            s.add(d)
            s.commit()
            return True

    def rebind(self, device_id: str, session_id: str, device_type: str, device_name: str) -> bool:
        """Point an existing device at its latest session and mark it connected."""
        with get_session(self.engine) as s:
            d = self._find(s, device_id)
            if not d:
                return False
            d.session_id = session_id
            d.device_type = device_type
            d.device_name = device_name
            d.is_connected = True
            d.last_ping = utcnow()
            s.add(d)
            s.commit()
            return True

class TelemetryStore:
    def __init__(self, engine) -> None:
        self.engine = engine

    def append(self, device_id: str, data: TelemetryPayload) -> TelemetrySample:
        # ingestion time only, whatever the client put in the frame is ignored
        rec = TelemetrySample(device_id=device_id, timestamp=utcnow(), **data.model_dump())
        with get_session(self.engine) as s:
            s.add(rec)
            s.commit()
            s.refresh(rec)
        return rec

    def latest_for(self, device_id: str) -> Optional[TelemetrySample]:
        with get_session(self.engine) as s:
            stmt = (
                select(TelemetrySample)
                .where(TelemetrySample.device_id == device_id)
                .order_by(TelemetrySample.timestamp.desc(), TelemetrySample.id.desc())
                .limit(1)
            )
            return s.exec(stmt).first()

class Storage:
    """The three stores over one engine."""

    def __init__(self, engine) -> None:
        init_db(engine)
        self.sessions = SessionStore(engine)
        self.devices = DeviceStore(engine)
        self.telemetry = TelemetryStore(engine)
