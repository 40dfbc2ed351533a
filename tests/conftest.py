"""
Global fixtures for the TrackLive test suite.
"""
import pytest
from itertools import count
from unittest.mock import AsyncMock, MagicMock
from typing import Callable

from fastapi import WebSocket

from tracklive.services.location_registry import LocationRegistry
from tracklive.services.location_relay_service import LocationRelayService


@pytest.fixture
def fixed_clock() -> Callable[[], str]:
    """Monotonically increasing ISO timestamps, one second apart."""
    ticks = count()
    return lambda: f"2024-05-01T12:00:{next(ticks):02d}+00:00"


@pytest.fixture
def registry(fixed_clock) -> LocationRegistry:
    """Provides a clean LocationRegistry for each test."""
    return LocationRegistry(clock=fixed_clock)


@pytest.fixture
def mock_broadcaster() -> MagicMock:
    """Stands in for the websocket ConnectionManager."""
    broadcaster = MagicMock()
    broadcaster.send_event = AsyncMock(return_value=True)
    broadcaster.broadcast_snapshot = AsyncMock(return_value=1)
    return broadcaster


@pytest.fixture
def relay(registry: LocationRegistry, mock_broadcaster: MagicMock) -> LocationRelayService:
    return LocationRelayService(registry, mock_broadcaster)


@pytest.fixture
def make_websocket() -> Callable[..., AsyncMock]:
    """Factory for FastAPI WebSocket mocks."""
    def _make(host: str = "testclient", port: int = 12345) -> AsyncMock:
        mock_ws = AsyncMock(spec=WebSocket)
        mock_ws.accept = AsyncMock()
        mock_ws.send_json = AsyncMock()
        mock_ws.receive_text = AsyncMock()
        mock_ws.client = (host, port)
        return mock_ws
    return _make


@pytest.fixture
def mock_websocket(make_websocket) -> AsyncMock:
    return make_websocket()
