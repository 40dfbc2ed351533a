"""
Trajectory Store for the live map client.

Keeps a bounded movement history per entity, fed by `users` snapshots coming
from the relay server, and derives simple kinematics (speed, heading, moving
status) from the two most recent reports of each entity.

Features:
- FIFO-bounded history per entity (oldest points dropped first)
- De-duplication of unchanged entities re-sent in other entities' broadcasts
- Cleanup of entities that left the registry
"""
import logging
import math
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Deque, Dict, List, Mapping, Optional

from tracklive.common_types import DEFAULT_ENTITY_NAME, EntityID, TrajectoryPoint

logger = logging.getLogger(__name__)

EARTH_RADIUS_M = 6371000.0
STATUS_MOVING = "Moving"
STATUS_STATIONARY = "Stationary"


def haversine_distance_m(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Great-circle distance in meters."""
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lng2 - lng1)
    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    return 2 * EARTH_RADIUS_M * math.asin(min(1.0, math.sqrt(a)))


def initial_bearing_deg(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Bearing from point 1 to point 2, degrees clockwise from north in [0, 360)."""
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    d_lambda = math.radians(lng2 - lng1)
    x = math.sin(d_lambda) * math.cos(phi2)
    y = math.cos(phi1) * math.sin(phi2) - math.sin(phi1) * math.cos(phi2) * math.cos(d_lambda)
    return (math.degrees(math.atan2(x, y)) + 360.0) % 360.0


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if not isinstance(value, str):
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


@dataclass
class TrackedEntity:
    """Render-ready view of one entity: current position, history and kinematics."""
    id: EntityID
    lat: float
    lng: float
    name: str = DEFAULT_ENTITY_NAME
    last_update: Optional[str] = None
    trajectory: List[TrajectoryPoint] = field(default_factory=list)
    speed: float = 0.0  # m/s
    heading: float = 0.0  # degrees clockwise from north
    status: str = STATUS_STATIONARY


class TrajectoryStore:
    """
    Per-entity bounded trajectory history.

    Invariant: every trajectory holds between 0 and `trajectory_limit` points,
    in arrival order.
    """

    def __init__(self, trajectory_limit: int = 200, moving_speed_threshold_mps: float = 0.5):
        """
        Args:
            trajectory_limit: Maximum number of points kept per entity.
            moving_speed_threshold_mps: Speed above which an entity counts as "Moving".
        """
        if trajectory_limit <= 0:
            raise ValueError("trajectory_limit must be positive")
        self.trajectory_limit = trajectory_limit
        self.moving_speed_threshold_mps = moving_speed_threshold_mps
        self.trajectories: Dict[EntityID, Deque[TrajectoryPoint]] = {}
        self.entities: Dict[EntityID, TrackedEntity] = {}

        logger.info(f"TrajectoryStore initialized with trajectory_limit={trajectory_limit}")

    def append_point(self, entity_id: EntityID, lat: float, lng: float) -> None:
        trajectory = self.trajectories.get(entity_id)
        if trajectory is None:
            trajectory = deque(maxlen=self.trajectory_limit)
            self.trajectories[entity_id] = trajectory
        trajectory.append((lat, lng))

    def get_trajectory(self, entity_id: EntityID) -> List[TrajectoryPoint]:
        return list(self.trajectories.get(entity_id, ()))

    def get_all(self) -> Dict[EntityID, List[TrajectoryPoint]]:
        return {entity_id: list(points) for entity_id, points in self.trajectories.items()}

    def remove(self, entity_id: EntityID) -> None:
        self.trajectories.pop(entity_id, None)
        self.entities.pop(entity_id, None)

    def clear(self) -> None:
        self.trajectories.clear()
        self.entities.clear()

    def apply_snapshot(self, users: Mapping[str, Any]) -> Dict[EntityID, TrackedEntity]:
        """
        Folds a `users` snapshot into the store.

        A point is appended only when the entity's `lastUpdate` changed since
        the previous snapshot, so entities re-sent because someone else moved
        do not collect duplicate points. Entities absent from the snapshot are
        forgotten.

        Args:
            users: Mapping of entity id -> {id, lat, lng, name, lastUpdate}.

        Returns:
            Current render-ready entities keyed by id.
        """
        seen = set()
        for raw_id, data in users.items():
            entity_id = EntityID(str(raw_id))
            if not isinstance(data, Mapping):
                logger.warning(f"Skipping malformed snapshot entry for {entity_id}: {data!r}")
                continue
            lat, lng = data.get("lat"), data.get("lng")
            if isinstance(lat, bool) or isinstance(lng, bool) or not isinstance(lat, (int, float)) or not isinstance(lng, (int, float)):
                logger.warning(f"Skipping snapshot entry for {entity_id} without numeric coordinates")
                continue
            seen.add(entity_id)
            self._apply_entity(entity_id, float(lat), float(lng), data)

        for entity_id in list(self.entities.keys()):
            if entity_id not in seen:
                self.remove(entity_id)
                logger.debug(f"Entity {entity_id} left the registry, trajectory dropped")

        return self.get_entities()

    def get_entities(self) -> Dict[EntityID, TrackedEntity]:
        """Render-ready copies; trajectories are snapshots of the current history."""
        result = {}
        for entity_id, entity in self.entities.items():
            result[entity_id] = TrackedEntity(
                id=entity.id,
                lat=entity.lat,
                lng=entity.lng,
                name=entity.name,
                last_update=entity.last_update,
                trajectory=self.get_trajectory(entity_id),
                speed=entity.speed,
                heading=entity.heading,
                status=entity.status,
            )
        return result

    def _apply_entity(self, entity_id: EntityID, lat: float, lng: float, data: Mapping[str, Any]) -> None:
        last_update = data.get("lastUpdate")
        name = data.get("name")
        previous = self.entities.get(entity_id)

        if previous is not None and last_update is not None and previous.last_update == last_update:
            previous.name = name if isinstance(name, str) else previous.name
            return

        self.append_point(entity_id, lat, lng)
        entity = TrackedEntity(
            id=entity_id,
            lat=lat,
            lng=lng,
            name=name if isinstance(name, str) else DEFAULT_ENTITY_NAME,
            last_update=last_update,
        )
        if previous is not None:
            self._update_kinematics(entity, previous)
        self.entities[entity_id] = entity

    def _update_kinematics(self, current: TrackedEntity, previous: TrackedEntity) -> None:
        distance = haversine_distance_m(previous.lat, previous.lng, current.lat, current.lng)
        if distance == 0.0:
            # Keep the last known heading while standing still
            current.heading = previous.heading
            return

        current.heading = initial_bearing_deg(previous.lat, previous.lng, current.lat, current.lng)
        t_prev = _parse_timestamp(previous.last_update)
        t_curr = _parse_timestamp(current.last_update)
        if t_prev is None or t_curr is None:
            return
        try:
            elapsed = (t_curr - t_prev).total_seconds()
        except TypeError:  # naive vs aware timestamps
            return
        if elapsed <= 0:
            return
        current.speed = distance / elapsed
        current.status = STATUS_MOVING if current.speed > self.moving_speed_threshold_mps else STATUS_STATIONARY
