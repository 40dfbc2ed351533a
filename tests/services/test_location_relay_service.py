"""
Unit tests for the LocationRelayService (connection lifecycle) in tracklive.services.location_relay_service.
"""
import pytest
from unittest.mock import MagicMock

from tracklive.common_types import ConnectionID
from tracklive.services.location_registry import LocationRegistry
from tracklive.services.location_relay_service import ConnectionState, LocationRelayService

A = ConnectionID("conn-a")
B = ConnectionID("conn-b")


@pytest.mark.asyncio
async def test_connect_sends_snapshot_to_new_connection_only(relay: LocationRelayService, mock_broadcaster: MagicMock):
    await relay.handle_connect(A)

    mock_broadcaster.send_event.assert_awaited_once_with(A, "users", {})
    mock_broadcaster.broadcast_snapshot.assert_not_awaited()
    assert relay.get_state(A) is ConnectionState.CONNECTED


@pytest.mark.asyncio
async def test_valid_report_broadcasts_full_snapshot_including_sender(relay: LocationRelayService, mock_broadcaster: MagicMock):
    await relay.handle_connect(A)

    accepted = await relay.handle_location_report(A, {"lat": 40.0, "lng": -74.0, "name": "Alice"})

    assert accepted is True
    assert relay.get_state(A) is ConnectionState.REPORTING
    mock_broadcaster.broadcast_snapshot.assert_awaited_once()
    snapshot = mock_broadcaster.broadcast_snapshot.await_args.args[0]
    assert snapshot[A]["lat"] == 40.0
    assert snapshot[A]["name"] == "Alice"


@pytest.mark.asyncio
@pytest.mark.parametrize("payload", [
    {"lat": 91, "lng": 0},
    {"lat": 0, "lng": 200},
    {"lat": float("nan"), "lng": 0},
    {"lat": "40", "lng": "-74"},
    {"lng": -74.0},
    None,
    "40,-74",
    [40.0, -74.0],
])
async def test_invalid_report_triggers_no_broadcast(
    relay: LocationRelayService, registry: LocationRegistry, mock_broadcaster: MagicMock, payload
):
    await relay.handle_connect(A)
    before = registry.snapshot()

    accepted = await relay.handle_location_report(A, payload)

    assert accepted is False
    assert registry.snapshot() == before
    mock_broadcaster.broadcast_snapshot.assert_not_awaited()
    assert relay.get_state(A) is ConnectionState.CONNECTED


@pytest.mark.asyncio
async def test_report_from_unknown_connection_is_ignored(relay: LocationRelayService, registry: LocationRegistry, mock_broadcaster: MagicMock):
    accepted = await relay.handle_location_report(A, {"lat": 1.0, "lng": 1.0})

    assert accepted is False
    assert len(registry) == 0
    mock_broadcaster.broadcast_snapshot.assert_not_awaited()


@pytest.mark.asyncio
async def test_new_connection_sees_existing_entity(relay: LocationRelayService, mock_broadcaster: MagicMock):
    await relay.handle_connect(A)
    await relay.handle_location_report(A, {"lat": 40.0, "lng": -74.0})

    await relay.handle_connect(B)

    last_call = mock_broadcaster.send_event.await_args_list[-1]
    target, event, snapshot = last_call.args
    assert target == B
    assert event == "users"
    assert snapshot[A]["lat"] == 40.0
    assert snapshot[A]["lng"] == -74.0
    assert B not in snapshot


@pytest.mark.asyncio
async def test_disconnect_after_report_removes_entity_and_rebroadcasts(relay: LocationRelayService, registry: LocationRegistry, mock_broadcaster: MagicMock):
    await relay.handle_connect(A)
    await relay.handle_connect(B)
    await relay.handle_location_report(A, {"lat": 40.0, "lng": -74.0})
    mock_broadcaster.broadcast_snapshot.reset_mock()

    changed = await relay.handle_disconnect(A)

    assert changed is True
    assert A not in registry
    mock_broadcaster.broadcast_snapshot.assert_awaited_once_with({})
    assert relay.get_state(A) is ConnectionState.DISCONNECTED


@pytest.mark.asyncio
async def test_disconnect_without_entity_does_not_broadcast(relay: LocationRelayService, mock_broadcaster: MagicMock):
    await relay.handle_connect(A)

    changed = await relay.handle_disconnect(A)

    assert changed is False
    mock_broadcaster.broadcast_snapshot.assert_not_awaited()


@pytest.mark.asyncio
async def test_reports_after_disconnect_are_dropped(relay: LocationRelayService, registry: LocationRegistry):
    await relay.handle_connect(A)
    await relay.handle_disconnect(A)

    assert await relay.handle_location_report(A, {"lat": 1.0, "lng": 1.0}) is False
    assert A not in registry


@pytest.mark.asyncio
async def test_handle_message_dispatches_events(relay: LocationRelayService, registry: LocationRegistry, mocker):
    await relay.handle_connect(A)
    mock_logger_info = mocker.patch("tracklive.services.location_relay_service.logger.info")
    mock_logger_warning = mocker.patch("tracklive.services.location_relay_service.logger.warning")

    await relay.handle_message(A, "user-location", {"lat": 5.0, "lng": 6.0})
    await relay.handle_message(A, "track", "conn-z")
    await relay.handle_message(A, "teleport", {})

    assert registry.get(A).lat == 5.0
    mock_logger_info.assert_any_call(f"RELAY: client {A} tracking conn-z")
    mock_logger_warning.assert_called_once_with(f"RELAY: unknown event 'teleport' from '{A}' ignored")
