# tests/api/test_websockets.py
"""
Unit tests for WebSocket components in tracklive.api.websockets.
"""
import json
import pytest
from unittest.mock import MagicMock, AsyncMock

from fastapi import WebSocket, WebSocketDisconnect

from tracklive.api.websockets import ConnectionManager, parse_client_message, websocket_tracking_endpoint
from tracklive.services.location_relay_service import LocationRelayService


@pytest.fixture
def connection_manager_instance():
    """Provides a clean ConnectionManager instance for each test."""
    return ConnectionManager()

# --- ConnectionManager Tests ---

@pytest.mark.asyncio
async def test_cm_connect_successful(connection_manager_instance: ConnectionManager, mock_websocket: AsyncMock):
    """Tests successful WebSocket connection and registration under a fresh id."""
    connection_id = await connection_manager_instance.connect(mock_websocket)

    mock_websocket.accept.assert_called_once()
    assert connection_manager_instance.active_connections[connection_id] is mock_websocket
    assert connection_manager_instance.get_connection_count() == 1


@pytest.mark.asyncio
async def test_cm_connect_assigns_distinct_ids(connection_manager_instance: ConnectionManager, make_websocket):
    id1 = await connection_manager_instance.connect(make_websocket("c1", 1))
    id2 = await connection_manager_instance.connect(make_websocket("c2", 2))

    assert id1 != id2
    assert connection_manager_instance.get_connection_count() == 2


@pytest.mark.asyncio
async def test_cm_connect_accept_fails(connection_manager_instance: ConnectionManager, mock_websocket: AsyncMock, mocker):
    """Tests connect when websocket.accept() fails."""
    mock_websocket.accept.side_effect = RuntimeError("Accept handshake failed")
    mock_logger_error = mocker.patch("tracklive.api.websockets.logger.error")

    with pytest.raises(RuntimeError, match="Accept handshake failed"):
        await connection_manager_instance.connect(mock_websocket)

    assert connection_manager_instance.active_connections == {}
    mock_logger_error.assert_called_once()


@pytest.mark.asyncio
async def test_cm_disconnect_existing_connection(connection_manager_instance: ConnectionManager, mock_websocket: AsyncMock):
    connection_id = await connection_manager_instance.connect(mock_websocket)

    connection_manager_instance.disconnect(connection_id)

    assert connection_id not in connection_manager_instance.active_connections


def test_cm_disconnect_non_existent_connection(connection_manager_instance: ConnectionManager, mocker):
    mock_logger_warning = mocker.patch("tracklive.api.websockets.logger.warning")

    connection_manager_instance.disconnect("missing")

    mock_logger_warning.assert_called_with(
        "MANAGER: connection 'missing' not found in active_connections during disconnect."
    )


@pytest.mark.asyncio
async def test_cm_send_event_targets_single_connection(connection_manager_instance: ConnectionManager, make_websocket):
    ws1, ws2 = make_websocket("c1", 1), make_websocket("c2", 2)
    connection_manager_instance.active_connections = {"one": ws1, "two": ws2}

    sent = await connection_manager_instance.send_event("two", "users", {"x": {}})

    assert sent is True
    ws2.send_json.assert_called_once_with({"type": "users", "payload": {"x": {}}})
    ws1.send_json.assert_not_called()


@pytest.mark.asyncio
async def test_cm_send_event_unknown_connection(connection_manager_instance: ConnectionManager):
    assert await connection_manager_instance.send_event("ghost", "users", {}) is False


@pytest.mark.asyncio
async def test_cm_broadcast_snapshot_reaches_everyone(connection_manager_instance: ConnectionManager, make_websocket):
    ws1, ws2 = make_websocket("c1", 1), make_websocket("c2", 2)
    connection_manager_instance.active_connections = {"one": ws1, "two": ws2}
    snapshot = {"one": {"id": "one", "lat": 1.0, "lng": 2.0, "name": "User", "lastUpdate": "t"}}

    delivered = await connection_manager_instance.broadcast_snapshot(snapshot)

    assert delivered == 2
    expected = {"type": "users", "payload": snapshot}
    ws1.send_json.assert_called_once_with(expected)
    ws2.send_json.assert_called_once_with(expected)


@pytest.mark.asyncio
async def test_cm_broadcast_one_fails_and_disconnects(connection_manager_instance: ConnectionManager, make_websocket, mocker):
    """Tests broadcast where one WebSocket send fails, leading to its removal."""
    ws_ok = make_websocket("ok", 1)
    ws_fail = make_websocket("fail", 2)
    ws_fail.send_json.side_effect = RuntimeError("Send failed")
    connection_manager_instance.active_connections = {"ok": ws_ok, "fail": ws_fail}
    mock_logger_warning = mocker.patch("tracklive.api.websockets.logger.warning")

    delivered = await connection_manager_instance.broadcast_event("users", {})

    assert delivered == 1
    assert "fail" not in connection_manager_instance.active_connections
    assert "ok" in connection_manager_instance.active_connections
    mock_logger_warning.assert_called_with(
        f"MANAGER: RuntimeError sending to client {ws_fail.client} ('fail'): Send failed. Marking for disconnect."
    )

# --- Message parsing ---

def test_parse_client_message_valid():
    message = parse_client_message(json.dumps({"type": "user-location", "payload": {"lat": 1, "lng": 2}}))
    assert message.type == "user-location"
    assert message.payload == {"lat": 1, "lng": 2}


@pytest.mark.parametrize("raw", ["not json", "[]", json.dumps({"payload": {}}), json.dumps({"type": 5})])
def test_parse_client_message_rejects_malformed(raw):
    with pytest.raises(ValueError):
        parse_client_message(raw)

# --- websocket_tracking_endpoint Tests ---

@pytest.fixture
def mock_manager():
    manager = MagicMock(spec=ConnectionManager)
    manager.connect = AsyncMock(return_value="conn-1")
    manager.disconnect = MagicMock()
    return manager


@pytest.fixture
def mock_relay():
    relay = MagicMock(spec=LocationRelayService)
    relay.handle_connect = AsyncMock()
    relay.handle_message = AsyncMock()
    relay.handle_disconnect = AsyncMock(return_value=False)
    return relay


@pytest.mark.asyncio
async def test_websocket_endpoint_connect_disconnect_flow(mock_websocket: AsyncMock, mock_manager, mock_relay):
    mock_websocket.receive_text.side_effect = WebSocketDisconnect()

    await websocket_tracking_endpoint(mock_websocket, mock_manager, mock_relay)

    mock_manager.connect.assert_awaited_once_with(mock_websocket)
    mock_relay.handle_connect.assert_awaited_once_with("conn-1")
    mock_manager.disconnect.assert_called_once_with("conn-1")
    mock_relay.handle_disconnect.assert_awaited_once_with("conn-1")


@pytest.mark.asyncio
async def test_websocket_endpoint_dispatches_messages_and_skips_garbage(mock_websocket: AsyncMock, mock_manager, mock_relay, mocker):
    mock_websocket.receive_text.side_effect = [
        json.dumps({"type": "user-location", "payload": {"lat": 40.0, "lng": -74.0}}),
        "{broken",
        json.dumps({"type": "track", "payload": "conn-9"}),
        WebSocketDisconnect(),
    ]
    mock_logger_warning = mocker.patch("tracklive.api.websockets.logger.warning")

    await websocket_tracking_endpoint(mock_websocket, mock_manager, mock_relay)

    assert mock_relay.handle_message.await_args_list == [
        mocker.call("conn-1", "user-location", {"lat": 40.0, "lng": -74.0}),
        mocker.call("conn-1", "track", "conn-9"),
    ]
    mock_logger_warning.assert_called_once()


@pytest.mark.asyncio
async def test_websocket_endpoint_connect_fails_in_manager(mock_websocket: AsyncMock, mock_manager, mock_relay, mocker):
    """Tests when manager.connect itself raises an exception (e.g., accept failed)."""
    mock_manager.connect.side_effect = RuntimeError("Manager connect error")
    mock_logger_error = mocker.patch("tracklive.api.websockets.logger.error")

    await websocket_tracking_endpoint(mock_websocket, mock_manager, mock_relay)

    mock_manager.disconnect.assert_not_called()
    mock_relay.handle_disconnect.assert_not_awaited()
    mock_logger_error.assert_called_once()
    assert "Manager connect error" in mock_logger_error.call_args[0][0]


@pytest.mark.asyncio
async def test_websocket_endpoint_unexpected_exception_in_loop(mock_websocket: AsyncMock, mock_manager, mock_relay, mocker):
    mock_websocket.receive_text.side_effect = Exception("Unexpected loop error")
    mock_logger_error = mocker.patch("tracklive.api.websockets.logger.error")

    await websocket_tracking_endpoint(mock_websocket, mock_manager, mock_relay)

    mock_manager.disconnect.assert_called_once_with("conn-1")
    mock_relay.handle_disconnect.assert_awaited_once_with("conn-1")
    mock_logger_error.assert_called_once()
    assert "Unexpected loop error" in mock_logger_error.call_args[0][0]
