"""
Live map observer for the TrackLive relay.

Connects to /ws/tracking, folds every `users` snapshot into a TrajectoryStore
and redraws the map with MapTrajectoryRenderer. Optionally publishes its own
location so it shows up on everyone else's map.

    python -m tracklive.client.observer --url ws://localhost:3000/ws/tracking --output live_map.png
"""
import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, Optional

import websockets
from websockets.exceptions import ConnectionClosed

from tracklive.api.v1.schemas import ClientEvent, ServerEvent
from tracklive.core.config import settings
from tracklive.services.trajectory_store import TrackedEntity, TrajectoryStore
from tracklive.utils.map_renderer import MapTrajectoryRenderer

logger = logging.getLogger("tracklive.observer")


class LiveMapObserver:
    """
    One observer connection: snapshot in, frame out.

    The followed entity is the explicit `followed_id` when present in the
    snapshot, else the first entity named `name` (our own report), else the
    first entity in the snapshot.
    """

    def __init__(
        self,
        url: str,
        store: TrajectoryStore,
        renderer: MapTrajectoryRenderer,
        followed_id: Optional[str] = None,
        name: Optional[str] = None,
        output_path: Optional[Path] = None,
    ):
        self.url = url
        self.store = store
        self.renderer = renderer
        self.followed_id = followed_id
        self.name = name
        self.output_path = output_path
        self.entities: Dict[str, TrackedEntity] = {}
        self.frames_drawn = 0
        self._websocket = None

    def choose_followed(self) -> Optional[str]:
        """
        Picks the entity the camera centers on.

        The server never tells a client its own connection id, so the name
        match is a guess: several clients may share a name (every unnamed
        client is "User") and the first match wins. Pass `followed_id` to
        pin the camera to a specific entity.
        """
        if self.followed_id is not None and self.followed_id in self.entities:
            return self.followed_id
        if self.name is not None:
            for entity_id, entity in self.entities.items():
                if entity.name == self.name:
                    return entity_id
        return next(iter(self.entities), None)

    def handle_message(self, raw: Any) -> bool:
        """
        Processes one server frame.

        Returns:
            True if the map was redrawn.
        """
        try:
            message = json.loads(raw)
        except (TypeError, json.JSONDecodeError) as e:
            logger.warning(f"Ignoring undecodable frame: {e}")
            return False
        event = message.get("type") if isinstance(message, dict) else None
        if event != ServerEvent.USERS.value:
            logger.debug(f"Ignoring frame of type {event!r}")
            return False
        payload = message.get("payload")
        if not isinstance(payload, dict):
            logger.warning("Ignoring users frame without an object payload")
            return False

        self.entities = self.store.apply_snapshot(payload)
        self.redraw()
        return True

    def redraw(self) -> None:
        followed = self.choose_followed()
        self.renderer.draw(self.entities, followed)
        self.frames_drawn += 1
        if self.output_path is not None:
            self.output_path.write_bytes(self.renderer.encode_frame(self.output_path.suffix or ".png"))
        logger.debug(f"Frame {self.frames_drawn}: {len(self.entities)} entities, following {followed}")

    async def send_location(self, lat: float, lng: float, name: Optional[str] = None) -> None:
        payload: Dict[str, Any] = {"lat": lat, "lng": lng}
        if name is not None:
            payload["name"] = name
        await self._send(ClientEvent.USER_LOCATION.value, payload)

    async def send_track(self, entity_id: str) -> None:
        await self._send(ClientEvent.TRACK.value, entity_id)

    async def _send(self, event: str, payload: Any) -> None:
        if self._websocket is None:
            raise RuntimeError("Observer is not connected")
        await self._websocket.send(json.dumps({"type": event, "payload": payload}))

    async def run(self, location: Optional[Dict[str, float]] = None) -> None:
        """Connects and processes frames until the server closes the connection."""
        logger.info(f"Connecting to {self.url}")
        async with websockets.connect(self.url, ping_interval=20, ping_timeout=20) as websocket:
            self._websocket = websocket
            logger.info(f"Connected to {self.url}")
            try:
                if location is not None:
                    await self.send_location(location["lat"], location["lng"], self.name)
                if self.followed_id is not None:
                    await self.send_track(self.followed_id)
                async for raw in websocket:
                    self.handle_message(raw)
            except ConnectionClosed as e:
                logger.info(f"Connection closed: {e}")
            finally:
                self._websocket = None


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Render the TrackLive map from a relay server.")
    parser.add_argument("--url", default=f"ws://localhost:{settings.PORT}{settings.WS_PREFIX}/tracking")
    parser.add_argument("--output", type=Path, default=Path("live_map.png"), help="Frame written after every redraw.")
    parser.add_argument("--follow", default=None, help="Entity id to center the map on.")
    parser.add_argument("--name", default=None, help="Display name used when publishing --lat/--lng.")
    parser.add_argument("--lat", type=float, default=None)
    parser.add_argument("--lng", type=float, default=None)
    parser.add_argument("--width", type=int, default=settings.MAP_WIDTH)
    parser.add_argument("--height", type=int, default=settings.MAP_HEIGHT)
    parser.add_argument("--pixel-ratio", type=float, default=settings.MAP_PIXEL_RATIO)
    parser.add_argument("--log-level", default=settings.LOG_LEVEL)
    return parser


def main(argv=None) -> int:
    args = build_arg_parser().parse_args(argv)
    logging.basicConfig(
        level=args.log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[logging.StreamHandler(sys.stdout)]
    )
    if (args.lat is None) != (args.lng is None):
        logger.error("--lat and --lng must be given together")
        return 2

    store = TrajectoryStore(settings.TRAJECTORY_LIMIT, settings.MOVING_SPEED_THRESHOLD_MPS)
    renderer = MapTrajectoryRenderer(
        args.width,
        args.height,
        pixel_ratio=args.pixel_ratio,
        scale=settings.MAP_SCALE,
        center_lat=settings.MAP_CENTER_LAT,
        center_lng=settings.MAP_CENTER_LNG,
    )
    observer = LiveMapObserver(args.url, store, renderer, followed_id=args.follow, name=args.name, output_path=args.output)
    location = {"lat": args.lat, "lng": args.lng} if args.lat is not None else None

    try:
        asyncio.run(observer.run(location))
    except KeyboardInterrupt:
        logger.info("Interrupted, exiting")
    except OSError as e:
        logger.error(f"Could not connect to {args.url}: {e}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
