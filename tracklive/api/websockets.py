# FILE: tracklive/api/websockets.py
from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect
from pydantic import ValidationError
from typing import Any, Dict
import json
import logging
import uuid

from tracklive.api.v1.schemas import ClientMessage, ServerEvent
from tracklive.common_types import ConnectionID, Snapshot
from tracklive.dependencies import get_connection_manager, get_location_relay_service
from tracklive.services.location_relay_service import LocationRelayService

# Logs will be handled by the basicConfig in main.py or Uvicorn's logger.
logger = logging.getLogger(__name__)

router = APIRouter()

class ConnectionManager:
    """Manages active WebSocket connections, one per connection id, and broadcasts to them."""
    def __init__(self):
        """Initializes the ConnectionManager."""
        self.active_connections: Dict[ConnectionID, WebSocket] = {}
        logger.info("ConnectionManager initialized.")

    async def connect(self, websocket: WebSocket) -> ConnectionID:
        """
        Accepts a new WebSocket connection and stores it under a fresh connection id.

        Args:
            websocket: The WebSocket connection object.

        Returns:
            The connection id assigned to this socket.

        Raises:
            Exception: If `websocket.accept()` fails.
        """
        logger.info(f"MANAGER: Attempting to accept WebSocket connection from client {websocket.client}")
        try:
            await websocket.accept()
        except Exception as e_accept:
            logger.error(
                f"MANAGER: Error during websocket.accept() for client {websocket.client}: {e_accept}",
                exc_info=True
            )
            # The endpoint handler's error handling manages a failed accept.
            raise

        connection_id = ConnectionID(uuid.uuid4().hex)
        self.active_connections[connection_id] = websocket
        logger.info(
            f"MANAGER: WebSocket stored as '{connection_id}', client {websocket.client}. "
            f"Total connections: {len(self.active_connections)}"
        )
        return connection_id

    def disconnect(self, connection_id: ConnectionID):
        """
        Removes a WebSocket connection from the active list.

        Args:
            connection_id: The identifier returned by `connect`.
        """
        websocket = self.active_connections.pop(connection_id, None)
        if websocket is None:
            logger.warning(
                f"MANAGER: connection '{connection_id}' not found in active_connections during disconnect."
            )
            return
        logger.info(
            f"MANAGER: Disconnected '{connection_id}', client {websocket.client}. "
            f"Connections remaining: {len(self.active_connections)}"
        )

    def get_connection_count(self) -> int:
        return len(self.active_connections)

    async def send_event(self, connection_id: ConnectionID, event: str, payload: Any) -> bool:
        """
        Sends one event to a single connection.

        Returns:
            True if the frame was handed to the transport.
        """
        websocket = self.active_connections.get(connection_id)
        if websocket is None:
            logger.debug(f"MANAGER: No active connection '{connection_id}', skipping '{event}'")
            return False
        try:
            await websocket.send_json({"type": event, "payload": payload})
            return True
        except Exception as e_send:
            logger.warning(
                f"MANAGER: Error sending '{event}' to '{connection_id}', client {websocket.client}: {e_send}. Marking for disconnect."
            )
            self.disconnect(connection_id)
            return False

    async def broadcast_event(self, event: str, payload: Any) -> int:
        """
        Sends one event to every active connection. Best effort, no retries.

        Returns:
            The number of connections the frame was delivered to.
        """
        message = {"type": event, "payload": payload}
        # Copy for safe iteration if disconnections occur during broadcast
        connections_to_broadcast = list(self.active_connections.items())
        disconnected_ids = []
        delivered = 0
        for connection_id, connection in connections_to_broadcast:
            try:
                await connection.send_json(message)
                delivered += 1
            except RuntimeError as e_runtime:  # Can happen if client closed connection abruptly
                logger.warning(
                    f"MANAGER: RuntimeError sending to client {connection.client} ('{connection_id}'): {e_runtime}. Marking for disconnect."
                )
                disconnected_ids.append(connection_id)
            except Exception as e_send:
                logger.error(
                    f"MANAGER: Error sending message to client {connection.client} ('{connection_id}'): {e_send}",
                    exc_info=True
                )
                disconnected_ids.append(connection_id)

        for connection_id in disconnected_ids:
            self.disconnect(connection_id)
        return delivered

    async def broadcast_snapshot(self, snapshot: Snapshot) -> int:
        """Pushes the full registry to everyone, the reporting connection included."""
        return await self.broadcast_event(ServerEvent.USERS.value, snapshot)


def parse_client_message(data: str) -> ClientMessage:
    """Decodes one text frame. Raises ValueError on anything that is not a message envelope."""
    try:
        return ClientMessage.model_validate(json.loads(data))
    except (json.JSONDecodeError, ValidationError) as e:
        raise ValueError(f"Malformed client message: {e}") from e


@router.websocket("/tracking") # Path relative to the router's prefix in main.py ('/ws')
async def websocket_tracking_endpoint(
    websocket: WebSocket,
    manager: ConnectionManager = Depends(get_connection_manager),
    relay: LocationRelayService = Depends(get_location_relay_service),
):
    """
    WebSocket endpoint for live location relay.
    Clients connect to `/ws/tracking`, receive `users` snapshots and may send
    `user-location` and `track` events.
    """
    logger.info(f"ENDPOINT: WebSocket connection attempt received, client: {websocket.client}")
    connection_id = None
    try:
        connection_id = await manager.connect(websocket)
        await relay.handle_connect(connection_id)

        while True:
            data = await websocket.receive_text()
            try:
                message = parse_client_message(data)
            except ValueError as e_parse:
                logger.warning(f"ENDPOINT: Ignoring frame from '{connection_id}': {e_parse}")
                continue
            await relay.handle_message(connection_id, message.type, message.payload)

    except WebSocketDisconnect:
        logger.info(
            f"ENDPOINT: WebSocket client {websocket.client} ('{connection_id}') disconnected gracefully (WebSocketDisconnect)."
        )
    except Exception as e:
        # Errors from manager.connect (if accept failed) or within the receive loop
        logger.error(
            f"ENDPOINT: Exception for WebSocket client {websocket.client} ('{connection_id}'): {e}",
            exc_info=True
        )
    finally:
        # Only connections that were registered with the manager get cleaned up
        if connection_id is not None:
            manager.disconnect(connection_id)
            await relay.handle_disconnect(connection_id)
        logger.info(f"ENDPOINT: Finished handling WebSocket connection '{connection_id}', client {websocket.client}")
