"""Tests for FastAPI WebSocket /stream endpoint.

Tests verify:
- Notifications are forwarded as JSON messages
- Bulk payloads are reduced to their size
- The listener queue is released when the client goes away
"""

import pytest
from fastapi.testclient import TestClient

from api import main as api_module
from conftest import wait_until


@pytest.fixture(autouse=True)
def reset_singletons(monkeypatch, fake_link):
    """Reset global singletons and route the link factory to ``fake_link``."""
    monkeypatch.setattr(api_module, "_link_factory", lambda: fake_link)
    api_module._controller = None
    api_module._store = None
    api_module._recorder = None
    yield
    # Cleanup
    if api_module._controller is not None:
        api_module._controller.shutdown()
    api_module._controller = None
    api_module._store = None
    api_module._recorder = None


@pytest.fixture
def client():
    """FastAPI test client."""
    return TestClient(api_module.app)


def _receive_until(websocket, event: str, limit: int = 200):
    """Read messages until ``event`` arrives; returns every message seen."""
    seen = []
    for _ in range(limit):
        message = websocket.receive_json()
        seen.append(message)
        if message["event"] == event:
            return seen
    raise AssertionError(f"{event} not received in {limit} messages")


def test_stream_forwards_lifecycle_and_data(client) -> None:
    with client.websocket_connect("/stream") as websocket:
        controller = api_module._get_controller()
        controller.start_polling()

        seen = _receive_until(websocket, "data_ready")

    events = [m["event"] for m in seen]
    assert events.index("interface_ready") < events.index("connected")
    assert "tune_revision_ready" in events

    revision = next(m for m in seen if m["event"] == "tune_revision_ready")
    assert revision["payload"] == 11
    assert "ts" in revision


def test_stream_fault_codes_payload(client) -> None:
    with client.websocket_connect("/stream") as websocket:
        controller = api_module._get_controller()
        controller.connect()
        _receive_until(websocket, "connected")

        controller.request_fault_codes()
        message = _receive_until(websocket, "fault_codes_ready")[-1]

    assert message["payload"]["active"] == ["coolant_temp_sensor", "right_lambda_sensor"]
    assert message["payload"]["flags"]["maf_sensor"] is False


def test_stream_prom_payload_is_size_only(client) -> None:
    with client.websocket_connect("/stream") as websocket:
        controller = api_module._get_controller()
        controller.connect()
        _receive_until(websocket, "connected")

        controller.request_prom_image()
        message = _receive_until(websocket, "prom_image_ready")[-1]

    assert message["payload"] == {"size": 16384}


def test_stream_not_connected_event(client) -> None:
    with client.websocket_connect("/stream") as websocket:
        api_module._get_controller().request_fault_codes()
        message = _receive_until(websocket, "not_connected")[-1]

    assert message["payload"] is None


def test_listener_released_on_disconnect(client) -> None:
    with client.websocket_connect("/stream"):
        hub = api_module._get_controller().hub
        assert wait_until(lambda: len(hub._listeners) == 1)

    assert wait_until(lambda: len(hub._listeners) == 0, timeout=3.0)
