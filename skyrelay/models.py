from typing import Optional
from datetime import datetime, timezone
from sqlmodel import SQLModel, Field

def utcnow() -> datetime:
    return datetime.now(timezone.utc)

class RelaySession(SQLModel, table=True):
    __tablename__ = "sessions"

    id: Optional[int] = Field(default=None, primary_key=True)
    session_id: str = Field(index=True, unique=True)
    created_at: datetime = Field(default_factory=utcnow)
    is_active: bool = Field(default=True)

class Device(SQLModel, table=True):
    __tablename__ = "devices"

    id: Optional[int] = Field(default=None, primary_key=True)
    device_id: str = Field(index=True, unique=True)
    session_id: str = Field(index=True, foreign_key="sessions.session_id")
    device_type: str  # primary|camera|drone
    device_name: str
    is_connected: bool = Field(default=True)
    last_ping: datetime = Field(default_factory=utcnow)

class TelemetrySample(SQLModel, table=True):
    __tablename__ = "telemetry"

    id: Optional[int] = Field(default=None, primary_key=True)
    device_id: str = Field(index=True, foreign_key="devices.device_id")
    timestamp: datetime = Field(default_factory=utcnow, index=True)
    battery: Optional[float] = None          # percent
    altitude: Optional[float] = None         # m
    speed: Optional[float] = None            # m/s
    pitch: Optional[float] = None            # deg
    roll: Optional[float] = None             # deg
    yaw: Optional[float] = None              # deg
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    signal_strength: Optional[float] = None  # percent
