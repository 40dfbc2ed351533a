# FILE: tracklive/common_types.py
"""
Module for shared type aliases and data structures used across the application.
"""
from typing import Dict, Tuple, NewType, Any
from pydantic import BaseModel, Field


ConnectionID = NewType("ConnectionID", str) # One per live websocket connection
EntityID = NewType("EntityID", str) # Same value as the owning ConnectionID once the entity exists

TrajectoryPoint = Tuple[float, float] # (lat, lng)

DEFAULT_ENTITY_NAME = "User"


class Entity(BaseModel):
    """Last known location of a connected device, owned by the LocationRegistry."""
    id: ConnectionID
    lat: float = Field(..., ge=-90.0, le=90.0)
    lng: float = Field(..., ge=-180.0, le=180.0)
    name: str = DEFAULT_ENTITY_NAME
    last_update: str = Field(..., alias="lastUpdate", description="ISO-8601 UTC timestamp of the accepted report.")

    model_config = {"populate_by_name": True}

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


# Full registry as it travels in a `users` event
Snapshot = Dict[str, Dict[str, Any]]
