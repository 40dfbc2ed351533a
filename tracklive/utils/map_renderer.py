"""
Map Trajectory Renderer for the live map client.

Draws every tracked entity onto an OpenCV (numpy BGR) surface: trajectory
polylines, glowing position markers and heading chevrons. The camera snaps to
the followed entity on every draw, no easing.

Drawing happens in CSS-pixel coordinates; the backing surface is
`css size x pixel_ratio` and a uniform scale maps one onto the other.
"""

import logging
import math
from dataclasses import dataclass
from typing import Mapping, Optional, Tuple

import cv2
import numpy as np

from tracklive.services.trajectory_store import STATUS_MOVING, TrackedEntity
from tracklive.utils.geo_projection import ViewState, project, project_many

logger = logging.getLogger(__name__)

# Fixed-point bits for sub-pixel drawing
DRAW_SHIFT = 2
_SHIFT_FACTOR = 1 << DRAW_SHIFT
_COORD_LIMIT = float(2 ** 31 - 1) / _SHIFT_FACTOR / 2


def hex_to_bgr(color: str) -> Tuple[int, int, int]:
    """'#22c55e' -> (94, 197, 34)."""
    value = color.lstrip("#")
    if len(value) != 6:
        raise ValueError(f"Expected #rrggbb colour, got {color!r}")
    r, g, b = int(value[0:2], 16), int(value[2:4], 16), int(value[4:6], 16)
    return b, g, r


@dataclass
class RenderStyle:
    """Configuration for map appearance. Colours are #rrggbb."""
    background: str = "#101622"
    followed_trajectory: str = "#135bec"
    other_trajectory: str = "#999999"
    followed_trajectory_width: float = 3.0
    other_trajectory_width: float = 1.0
    followed_trajectory_alpha: float = 0.8
    other_trajectory_alpha: float = 0.3
    moving_marker: str = "#22c55e"
    stationary_marker: str = "#eab308"
    followed_marker_size: float = 12.0
    other_marker_size: float = 8.0
    glow_radius_factor: float = 3.0
    glow_alpha: float = 0x40 / 255.0
    border: str = "#ffffff"
    border_width: float = 2.0
    arrow: str = "#135bec"
    arrow_width: float = 2.0


class MapTrajectoryRenderer:
    """
    Owns the drawing surface and the ViewState.

    Usage:
        renderer = MapTrajectoryRenderer(800, 600, pixel_ratio=2.0)
        frame = renderer.draw(store.get_entities(), followed_id)
    """

    def __init__(
        self,
        width: int,
        height: int,
        pixel_ratio: float = 1.0,
        scale: float = 100000.0,
        center_lat: float = 40.7128,
        center_lng: float = -74.0060,
        style: Optional[RenderStyle] = None,
    ):
        self.style = style or RenderStyle()
        self.view = ViewState(center_lat=center_lat, center_lng=center_lng, scale=scale)
        self.pixel_ratio = 1.0
        self.surface = np.zeros((1, 1, 3), dtype=np.uint8)
        self.resize(width, height, pixel_ratio)
        logger.info(f"Map trajectory renderer initialized ({width}x{height} @ {pixel_ratio}x)")

    # --- Surface management ---

    def resize(self, css_width: float, css_height: float, pixel_ratio: float = 1.0) -> None:
        """
        Recomputes the backing resolution for a host of `css_width` x `css_height`.

        Call again on every host resize; subsequent draws keep using CSS pixels.
        A hidden (0x0) host gets a 1x1 backing surface.
        """
        css_width, css_height = max(0.0, css_width), max(0.0, css_height)
        ratio = pixel_ratio if pixel_ratio and pixel_ratio > 0 else 1.0
        backing_w = max(1, int(round(css_width * ratio)))
        backing_h = max(1, int(round(css_height * ratio)))

        self.pixel_ratio = ratio
        self.view.width = float(css_width)
        self.view.height = float(css_height)
        self.surface = np.zeros((backing_h, backing_w, 3), dtype=np.uint8)
        self.clear()
        logger.debug(f"Surface resized to {backing_w}x{backing_h} backing pixels (ratio {ratio})")

    @property
    def backing_size(self) -> Tuple[int, int]:
        h, w = self.surface.shape[:2]
        return w, h

    def clear(self) -> None:
        self.surface[:] = hex_to_bgr(self.style.background)

    def encode_frame(self, ext: str = ".png") -> bytes:
        """Encodes the current surface (e.g. '.png', '.jpg') for saving or streaming."""
        ok, buffer = cv2.imencode(ext, self.surface)
        if not ok:
            raise RuntimeError(f"cv2.imencode failed for format {ext}")
        return buffer.tobytes()

    # --- Coordinate helpers ---

    def lat_lng_to_pixel(self, lat: float, lng: float) -> Tuple[float, float]:
        return project(lat, lng, self.view)

    def _to_fixed(self, xy: np.ndarray) -> np.ndarray:
        """CSS-pixel float coordinates -> fixed-point backing coordinates for cv2."""
        scaled = np.clip(np.asarray(xy, dtype=np.float64) * self.pixel_ratio, -_COORD_LIMIT, _COORD_LIMIT)
        return np.round(scaled * _SHIFT_FACTOR).astype(np.int32)

    def _thickness(self, css_width: float) -> int:
        return max(1, int(round(css_width * self.pixel_ratio)))

    # --- Drawing ---

    def draw(self, entities: Mapping[str, TrackedEntity], followed_id: Optional[str] = None) -> np.ndarray:
        """
        Redraws the whole scene.

        Args:
            entities: Render-ready entities keyed by id.
            followed_id: Entity the camera centers on; unknown ids leave the camera where it is.

        Returns:
            The surface (BGR, backing resolution).
        """
        self.clear()
        self.view.followed_entity_id = followed_id

        followed = entities.get(followed_id) if followed_id is not None else None
        if followed is not None:
            self.view.center_lat = followed.lat
            self.view.center_lng = followed.lng

        for entity_id, entity in entities.items():
            is_followed = entity_id == followed_id
            try:
                self._draw_trajectory(entity, is_followed)
                self._draw_marker(entity, is_followed)
            except (cv2.error, ValueError) as e:
                logger.warning(f"Error drawing entity {entity_id}: {e}")
                continue
        return self.surface

    def _draw_trajectory(self, entity: TrackedEntity, is_followed: bool) -> None:
        if len(entity.trajectory) < 2:
            return
        style = self.style
        color = hex_to_bgr(style.followed_trajectory if is_followed else style.other_trajectory)
        width = style.followed_trajectory_width if is_followed else style.other_trajectory_width
        alpha = style.followed_trajectory_alpha if is_followed else style.other_trajectory_alpha

        points = self._to_fixed(project_many(entity.trajectory, self.view)).reshape(-1, 1, 2)
        overlay = self.surface.copy()
        cv2.polylines(overlay, [points], False, color, self._thickness(width), cv2.LINE_AA, DRAW_SHIFT)
        cv2.addWeighted(overlay, alpha, self.surface, 1.0 - alpha, 0, dst=self.surface)

    def _draw_marker(self, entity: TrackedEntity, is_followed: bool) -> None:
        style = self.style
        x, y = self.lat_lng_to_pixel(entity.lat, entity.lng)
        size = style.followed_marker_size if is_followed else style.other_marker_size
        color = hex_to_bgr(style.moving_marker if entity.status == STATUS_MOVING else style.stationary_marker)

        self._draw_glow(x, y, size * style.glow_radius_factor, color)

        center = tuple(int(v) for v in self._to_fixed(np.array([x, y])))
        radius = int(round(size * self.pixel_ratio * _SHIFT_FACTOR))
        cv2.circle(self.surface, center, radius, color, -1, cv2.LINE_AA, DRAW_SHIFT)
        cv2.circle(self.surface, center, radius, hex_to_bgr(style.border), self._thickness(style.border_width), cv2.LINE_AA, DRAW_SHIFT)

        if entity.status == STATUS_MOVING and entity.speed > 0:
            self._draw_direction_arrow(x, y, entity.heading, size)

    def _draw_glow(self, x: float, y: float, css_radius: float, color: Tuple[int, int, int]) -> None:
        """Radial gradient from `glow_alpha` at the center to transparent at `css_radius`."""
        cx, cy = x * self.pixel_ratio, y * self.pixel_ratio
        radius = css_radius * self.pixel_ratio
        if radius <= 0:
            return
        h, w = self.surface.shape[:2]
        x0, x1 = max(0, int(math.floor(cx - radius))), min(w, int(math.ceil(cx + radius)) + 1)
        y0, y1 = max(0, int(math.floor(cy - radius))), min(h, int(math.ceil(cy + radius)) + 1)
        if x0 >= x1 or y0 >= y1:
            return

        ys, xs = np.mgrid[y0:y1, x0:x1]
        # Pixel centers, as the browser samples gradients
        dist = np.hypot(xs + 0.5 - cx, ys + 0.5 - cy)
        alpha = np.clip(1.0 - dist / radius, 0.0, 1.0) * self.style.glow_alpha
        alpha = alpha[..., np.newaxis]

        region = self.surface[y0:y1, x0:x1].astype(np.float32)
        blended = region * (1.0 - alpha) + np.array(color, dtype=np.float32) * alpha
        self.surface[y0:y1, x0:x1] = np.clip(np.round(blended), 0, 255).astype(np.uint8)

    def _draw_direction_arrow(self, x: float, y: float, heading: float, size: float) -> None:
        """Chevron pointing along `heading` (degrees clockwise from north)."""
        arrow_size = size * 2
        angle = math.radians(heading)
        cos_a, sin_a = math.cos(angle), math.sin(angle)

        def rotate(px: float, py: float) -> Tuple[float, float]:
            # Screen y grows downwards, so a positive angle turns clockwise
            return x + px * cos_a - py * sin_a, y + px * sin_a + py * cos_a

        tip = rotate(0.0, -arrow_size)
        left = rotate(-arrow_size * 0.4, -arrow_size * 0.4)
        right = rotate(arrow_size * 0.4, -arrow_size * 0.4)

        color = hex_to_bgr(self.style.arrow)
        thickness = self._thickness(self.style.arrow_width)
        tip_px, left_px, right_px = (tuple(int(v) for v in self._to_fixed(np.array(p))) for p in (tip, left, right))
        cv2.line(self.surface, tip_px, left_px, color, thickness, cv2.LINE_AA, DRAW_SHIFT)
        cv2.line(self.surface, tip_px, right_px, color, thickness, cv2.LINE_AA, DRAW_SHIFT)
