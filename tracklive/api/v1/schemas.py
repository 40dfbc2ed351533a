from enum import Enum
from pydantic import BaseModel, Field
from typing import Any, Dict, Optional

# --- WebSocket Message Schemas ---

class ServerEvent(str, Enum):
    USERS = "users"


class ClientEvent(str, Enum):
    USER_LOCATION = "user-location"
    TRACK = "track"


class ClientMessage(BaseModel):
    """Envelope of every frame a client sends over /ws/tracking."""
    type: str = Field(..., description="Event name, e.g. 'user-location' or 'track'.")
    # Validated by the registry; "40.0" must be rejected, not coerced
    payload: Any = None


class ServerMessage(BaseModel):
    """Envelope of every frame the server pushes to clients."""
    type: ServerEvent
    payload: Dict[str, Any] = Field(default_factory=dict)

# --- HTTP Response Schemas ---

class GeoIPResponse(BaseModel):
    """Approximate location of the caller derived from its public IP address."""
    lat: float
    lng: float
    city: str = "Unknown"
    country: str = "Unknown"
    ip: str = "unknown"


class ErrorResponse(BaseModel):
    error: str


class HealthResponse(BaseModel):
    status: str = "healthy"
    connections: int = 0
    entities: int = 0
    detail: Optional[str] = None
