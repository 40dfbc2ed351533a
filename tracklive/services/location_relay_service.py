"""
Location Relay Service: join/report/leave lifecycle of tracked connections.

Each connection walks a small state machine:

    CONNECTED (no entity) -> REPORTING (entity present) -> DISCONNECTED

A report is applied to the LocationRegistry without awaiting, then the full
snapshot is broadcast to every connection, the sender included, so clients
always render the registry's canonical output.
"""
import logging
from enum import Enum
from typing import Any, Dict, Protocol

from tracklive.api.v1.schemas import ClientEvent, ServerEvent
from tracklive.common_types import ConnectionID, Snapshot
from tracklive.services.location_registry import LocationRegistry

logger = logging.getLogger(__name__)


class ConnectionState(Enum):
    CONNECTED = "connected"
    REPORTING = "reporting"
    DISCONNECTED = "disconnected"


class SnapshotBroadcaster(Protocol):
    async def send_event(self, connection_id: ConnectionID, event: str, payload: Any) -> bool: ...

    async def broadcast_snapshot(self, snapshot: Snapshot) -> int: ...


class LocationRelayService:
    """
    Glues the registry to the broadcaster for every connection event.

    Handlers are total: unknown events and malformed payloads are logged and
    dropped, never raised back into the websocket loop.
    """

    def __init__(self, registry: LocationRegistry, broadcaster: SnapshotBroadcaster):
        self.registry = registry
        self.broadcaster = broadcaster
        self.connection_states: Dict[ConnectionID, ConnectionState] = {}
        logger.info("LocationRelayService initialized")

    def get_state(self, connection_id: ConnectionID) -> ConnectionState:
        return self.connection_states.get(connection_id, ConnectionState.DISCONNECTED)

    async def handle_connect(self, connection_id: ConnectionID) -> None:
        """Marks the connection live and sends it the current snapshot only."""
        self.connection_states[connection_id] = ConnectionState.CONNECTED
        logger.info(f"RELAY: client connected {connection_id}")
        snapshot = self.registry.on_connect(connection_id)
        await self.broadcaster.send_event(connection_id, ServerEvent.USERS.value, snapshot)

    async def handle_location_report(self, connection_id: ConnectionID, payload: Any) -> bool:
        """
        Applies a `user-location` payload ({lat, lng, name?}).

        Returns:
            True if the registry accepted the report and a broadcast went out.
        """
        if self.get_state(connection_id) is ConnectionState.DISCONNECTED:
            logger.warning(f"RELAY: report from unknown or closed connection '{connection_id}' ignored")
            return False
        if not isinstance(payload, dict):
            logger.debug(f"RELAY: non-object user-location payload from '{connection_id}' dropped")
            return False

        entity = self.registry.on_location_report(
            connection_id,
            payload.get("lat"),
            payload.get("lng"),
            payload.get("name"),
        )
        if entity is None:
            return False

        self.connection_states[connection_id] = ConnectionState.REPORTING
        await self.broadcaster.broadcast_snapshot(self.registry.snapshot())
        return True

    async def handle_track(self, connection_id: ConnectionID, target_id: Any) -> None:
        # Informational only, no routing effect
        logger.info(f"RELAY: client {connection_id} tracking {target_id}")

    async def handle_message(self, connection_id: ConnectionID, event: str, payload: Any) -> None:
        if event == ClientEvent.USER_LOCATION.value:
            await self.handle_location_report(connection_id, payload)
        elif event == ClientEvent.TRACK.value:
            await self.handle_track(connection_id, payload)
        else:
            logger.warning(f"RELAY: unknown event '{event}' from '{connection_id}' ignored")

    async def handle_disconnect(self, connection_id: ConnectionID) -> bool:
        """
        Terminal transition. Removes the entity and re-broadcasts if anything changed.

        Returns:
            True if the registry changed.
        """
        self.connection_states.pop(connection_id, None)
        logger.info(f"RELAY: client disconnected {connection_id}")
        changed = self.registry.on_disconnect(connection_id)
        if changed:
            await self.broadcaster.broadcast_snapshot(self.registry.snapshot())
        return changed
