# tests/test_telemetry_stream.py — Live telemetry WebSocket and app shell
from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from auth import AuthService
from main import app, build_aggregator
from telemetry_aggregator import AgentStatus, Heartbeat


def _token(user_id="5f0c1f9e-0000-4000-8000-000000000001", is_admin=False):
    return AuthService.create_access_token({"sub": user_id, "email": "buyer@example.com", "is_admin": is_admin})


def test_stream_pushes_snapshot_on_update():
    app.state.aggregator = build_aggregator()
    ws_client = TestClient(app)
    with ws_client.websocket_connect(f"/api/v1/telemetry/stream?token={_token()}") as ws:
        first = ws.receive_json()
        assert first["type"] == "snapshot"
        assert first["data"]["health"]["total"] == 7

        app.state.aggregator.record_heartbeat(Heartbeat(
            agent_id="AG-01", status=AgentStatus.NOMINAL, last_seen=datetime.now(timezone.utc),
        ))
        update = ws.receive_json()
        assert update["data"]["version"] > first["data"]["version"]
        assert update["data"]["health"]["online"] == 1

        ws.send_json({"type": "ping"})
        assert ws.receive_json()["type"] == "pong"


def test_stream_rejects_bad_token():
    ws_client = TestClient(app)
    with pytest.raises(WebSocketDisconnect):
        with ws_client.websocket_connect("/api/v1/telemetry/stream?token=not-a-token") as ws:
            ws.receive_json()


@pytest.mark.asyncio
async def test_security_and_timing_headers(client):
    resp = await client.get("/health")
    assert resp.headers.get("X-Frame-Options") == "DENY"
    assert "x-response-time" in {k.lower() for k in resp.headers}


@pytest.mark.asyncio
async def test_cors_preflight(client):
    resp = await client.options(
        "/health",
        headers={"Origin": "http://localhost:5173", "Access-Control-Request-Method": "GET"},
    )
    assert resp.status_code in (200, 204)
    assert resp.headers.get("access-control-allow-origin") == "http://localhost:5173"


@pytest.mark.asyncio
async def test_invalid_token_rejected(client):
    resp = await client.get("/api/v1/activations", headers={"Authorization": "Bearer garbage"})
    assert resp.status_code == 401
