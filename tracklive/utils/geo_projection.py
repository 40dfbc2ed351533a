"""
Utilities for projecting geographic coordinates onto the map surface.

Flat equirectangular approximation around the view center: only valid for
small spans (city scale). Poles and the antimeridian are not handled.
"""
import logging
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

import numpy as np

logger = logging.getLogger(__name__)


@dataclass
class ViewState:
    """Camera of the map renderer. `scale` is pixels per degree."""
    center_lat: float = 40.7128
    center_lng: float = -74.0060
    scale: float = 100000.0
    width: float = 0.0
    height: float = 0.0
    followed_entity_id: Optional[str] = None


def project(lat: float, lng: float, view: ViewState) -> Tuple[float, float]:
    """
    Projects a (lat, lng) point to surface coordinates (x, y).

    Args:
        lat: Latitude in degrees.
        lng: Longitude in degrees.
        view: Current view; its width/height are in CSS pixels.

    Returns:
        (x, y) with y growing downwards.
    """
    x = (lng - view.center_lng) * view.scale + view.width / 2
    y = (view.center_lat - lat) * view.scale + view.height / 2
    return x, y


def unproject(x: float, y: float, view: ViewState) -> Tuple[float, float]:
    """Inverse of `project`: surface coordinates back to (lat, lng)."""
    lng = view.center_lng + (x - view.width / 2) / view.scale
    lat = view.center_lat - (y - view.height / 2) / view.scale
    return lat, lng


def project_many(points: Sequence[Tuple[float, float]], view: ViewState) -> np.ndarray:
    """
    Vectorised `project` for polylines.

    Args:
        points: Sequence of (lat, lng) pairs.
        view: Current view.

    Returns:
        Array of shape (n, 2) holding (x, y) rows, float64.
    """
    latlng = np.asarray(points, dtype=np.float64).reshape(-1, 2)
    xy = np.empty_like(latlng)
    xy[:, 0] = (latlng[:, 1] - view.center_lng) * view.scale + view.width / 2
    xy[:, 1] = (view.center_lat - latlng[:, 0]) * view.scale + view.height / 2
    return xy
