from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Optional

from pydantic import AfterValidator, BaseModel, ConfigDict, ValidationError
from pydantic.alias_generators import to_camel

class MessageType(str, Enum):
    JOIN_SESSION = "join_session"
    LEAVE_SESSION = "leave_session"
    OFFER = "offer"
    ANSWER = "answer"
    ICE_CANDIDATE = "ice_candidate"
    TELEMETRY = "telemetry"
    DRONE_COMMAND = "drone_command"
    SWITCH_CAMERA = "switch_camera"
    ERROR = "error"
    PING = "ping"
    PONG = "pong"

# outbound only, sent to a device right after it joins
SESSION_DEVICES = "session_devices"

SIGNALING_TYPES = {MessageType.OFFER, MessageType.ANSWER, MessageType.ICE_CANDIDATE}

class DeviceType(str, Enum):
    PRIMARY = "primary"
    CAMERA = "camera"
    DRONE = "drone"

class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)

class WsMessage(CamelModel):
    type: MessageType
    session_id: Optional[str] = None
    device_id: Optional[str] = None
    device_type: Optional[DeviceType] = None
    device_name: Optional[str] = None
    payload: Any = None

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

class TelemetryPayload(CamelModel):
    # plain JSON numbers only: no numeric strings, booleans, NaN or Infinity
    model_config = ConfigDict(strict=True, allow_inf_nan=False)

    battery: Optional[float] = None
    altitude: Optional[float] = None
    speed: Optional[float] = None
    pitch: Optional[float] = None
    roll: Optional[float] = None
    yaw: Optional[float] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    signal_strength: Optional[float] = None

def _as_utc(value: datetime) -> datetime:
    # SQLite hands datetimes back without tzinfo; everything is stored as UTC
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)

UtcDatetime = Annotated[datetime, AfterValidator(_as_utc)]

class SessionCreated(CamelModel):
    session_id: str
    created_at: UtcDatetime

class DeviceOut(CamelModel):
    device_id: str
    session_id: str
    device_type: str
    device_name: str
    is_connected: bool
    last_ping: UtcDatetime

class SessionOut(CamelModel):
    session_id: str
    created_at: UtcDatetime
    is_active: bool
    devices: list[DeviceOut]

class TelemetryOut(TelemetryPayload):
    model_config = ConfigDict(strict=False)

    id: int
    device_id: str
    timestamp: UtcDatetime

def format_validation_error(exc: ValidationError) -> str:
    """Flatten pydantic errors into one line, e.g. `Validation error: Field required at "type"`."""
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err["loc"])
        parts.append(f'{err["msg"]} at "{loc}"' if loc else err["msg"])
    return "Validation error: " + "; ".join(parts)
