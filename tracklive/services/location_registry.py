"""
Location Registry for connected devices.

Authoritative in-memory mapping of connection id -> last reported location.
A key only ever exists while its connection is open and only the connection
that owns the key writes to it.

All methods are synchronous and never await, so under the asyncio event loop
each mutation completes before any other handler runs.
"""
import logging
import math
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from tracklive.common_types import ConnectionID, Entity, Snapshot, DEFAULT_ENTITY_NAME

logger = logging.getLogger(__name__)

LAT_LIMIT = 90.0
LNG_LIMIT = 180.0


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def is_valid_coordinate(value: Any, limit: float) -> bool:
    """True if `value` is a finite real number with abs(value) <= limit."""
    # bool is an int subclass; a JSON `true` is not a coordinate
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    if not math.isfinite(value):
        return False
    return abs(value) <= limit


class LocationRegistry:
    """
    Keeps the latest Entity for every reporting connection.

    Created once at application startup and handed to the websocket layer,
    never imported as a module global.
    """

    def __init__(self, clock: Optional[Callable[[], str]] = None):
        self._entities: Dict[ConnectionID, Entity] = {}
        self._clock = clock or _utc_now_iso
        logger.info("LocationRegistry initialized")

    def __len__(self) -> int:
        return len(self._entities)

    def __contains__(self, connection_id: object) -> bool:
        return connection_id in self._entities

    def get(self, connection_id: ConnectionID) -> Optional[Entity]:
        return self._entities.get(connection_id)

    def snapshot(self) -> Snapshot:
        """Serialises the whole registry for a `users` event."""
        return {str(cid): entity.to_wire() for cid, entity in self._entities.items()}

    def on_connect(self, connection_id: ConnectionID) -> Snapshot:
        """
        Registers nothing; returns the snapshot the new connection should receive.

        Args:
            connection_id: Identifier of the connection that just opened.

        Returns:
            The current full snapshot.
        """
        logger.debug(f"REGISTRY: connection '{connection_id}' joined, {len(self._entities)} entities known")
        return self.snapshot()

    def on_location_report(
        self,
        connection_id: ConnectionID,
        lat: Any,
        lng: Any,
        name: Any = None,
    ) -> Optional[Entity]:
        """
        Validates and upserts the entity owned by `connection_id`.

        Args:
            connection_id: The reporting connection (and entity id).
            lat: Latitude in degrees, must be finite and within [-90, 90].
            lng: Longitude in degrees, must be finite and within [-180, 180].
            name: Display name; anything but a string falls back to "User".

        Returns:
            The stored Entity, or None if the report was rejected. A rejected
            report leaves the registry untouched.
        """
        if not is_valid_coordinate(lat, LAT_LIMIT) or not is_valid_coordinate(lng, LNG_LIMIT):
            logger.debug(f"REGISTRY: dropping invalid report from '{connection_id}': lat={lat!r}, lng={lng!r}")
            return None

        entity = Entity(
            id=connection_id,
            lat=float(lat),
            lng=float(lng),
            name=name if isinstance(name, str) else DEFAULT_ENTITY_NAME,
            last_update=self._clock(),
        )
        self._entities[connection_id] = entity
        logger.info(f"REGISTRY: user-location from {connection_id}: {entity.lat:.6f}, {entity.lng:.6f}")
        return entity

    def on_disconnect(self, connection_id: ConnectionID) -> bool:
        """
        Removes the entity of a closed connection.

        Returns:
            True if an entity was removed (the registry changed).
        """
        removed = self._entities.pop(connection_id, None)
        if removed is None:
            return False
        logger.info(f"REGISTRY: removed entity for '{connection_id}'")
        return True
