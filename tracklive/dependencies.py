"""
Module for managing and providing application dependencies.
Leverages FastAPI's dependency injection system and app.state for components created in the lifespan.
"""
import logging
from typing import TYPE_CHECKING

from fastapi import HTTPException, Request, WebSocket, status

from tracklive.services.geoip_service import GeoIPService
from tracklive.services.location_relay_service import LocationRelayService

if TYPE_CHECKING:
    from tracklive.api.websockets import ConnectionManager

logger = logging.getLogger(__name__)


# --- Accessing Lifespan Components from app.state ---

def get_geoip_service(request: Request) -> GeoIPService:
    """Retrieves the GeoIPService created at startup."""
    service = getattr(request.app.state, 'geoip_service', None)
    if service is None:
        logger.error("GeoIPService not found in app.state. Startup might have failed.")
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="GeoIP service not initialized.")
    return service

# --- Websocket variants (a websocket scope has no Request) ---

def get_connection_manager(websocket: WebSocket) -> "ConnectionManager":
    """Retrieves the ConnectionManager created at startup."""
    return websocket.app.state.connection_manager

def get_location_relay_service(websocket: WebSocket) -> LocationRelayService:
    """Retrieves the LocationRelayService created at startup."""
    return websocket.app.state.location_relay_service
