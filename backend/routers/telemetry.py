# routers/telemetry.py — Agent heartbeats, health rollup and live stream
import asyncio
import hmac
import logging
import os
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

import audit
from auth import get_current_user, principal_from_token, CurrentUser
from database import get_db_session
from models import LogLevel
from telemetry_aggregator import AgentStatus, Heartbeat, TelemetryAggregator, get_aggregator

router = APIRouter(prefix="/api/v1/telemetry", tags=["Telemetry"])
logger = logging.getLogger("aerelion.telemetry")

HEARTBEAT_LEVELS = {
    AgentStatus.ERROR: LogLevel.ERROR,
    AgentStatus.DRIFT: LogLevel.WARN,
}


# ── Models ──────────────────────────────────────────────────

class HeartbeatIn(BaseModel):
    """Latest status pushed by one automation agent."""
    agent_id: str = Field(..., min_length=1, max_length=64)
    status: AgentStatus
    message: str = Field(default="", max_length=1000)
    timestamp: Optional[datetime] = None
    metadata: dict = Field(default_factory=dict)


def _check_heartbeat_key(key: Optional[str]) -> None:
    secret = os.getenv("HEARTBEAT_SECRET", "")
    if not secret or not key or not hmac.compare_digest(key.encode("utf-8"), secret.encode("utf-8")):
        raise HTTPException(status_code=401, detail="Invalid heartbeat key")


# ── Endpoints ───────────────────────────────────────────────

@router.post("/heartbeat")
async def push_heartbeat(
    beat: HeartbeatIn,
    x_heartbeat_key: Optional[str] = Header(default=None),
    db: AsyncSession = Depends(get_db_session),
    aggregator: TelemetryAggregator = Depends(get_aggregator),
):
    """Agent heartbeat push (shared-secret authenticated)"""
    _check_heartbeat_key(x_heartbeat_key)

    seen = beat.timestamp or datetime.now(timezone.utc)
    if seen.tzinfo is None:
        seen = seen.replace(tzinfo=timezone.utc)
    source = beat.metadata.get("source")
    aggregator.record_heartbeat(Heartbeat(
        agent_id=beat.agent_id,
        status=beat.status,
        last_seen=seen,
        message=beat.message,
        source=source,
    ))
    await audit.record(
        db, "agent-heartbeat", HEARTBEAT_LEVELS.get(beat.status, LogLevel.INFO),
        f"{beat.agent_id} {beat.status.value}" + (f": {beat.message}" if beat.message else ""),
        details={"agent_id": beat.agent_id, "status": beat.status.value, "source": source},
        aggregator=aggregator,
    )
    return {"accepted": True, "agent_id": beat.agent_id, "status": beat.status.value}


@router.get("/health")
async def system_health(
    user: CurrentUser = Depends(get_current_user),
    aggregator: TelemetryAggregator = Depends(get_aggregator),
):
    """Health rollup, agent freshness, recent activity and node metrics"""
    snap = aggregator.snapshot(owner_id=None if user.is_admin else user.id)
    return snap.to_dict()


@router.get("/logs")
async def recent_logs(
    limit: int = Query(default=80, ge=1, le=80),
    user: CurrentUser = Depends(get_current_user),
    aggregator: TelemetryAggregator = Depends(get_aggregator),
):
    snap = aggregator.snapshot(owner_id=None if user.is_admin else user.id)
    logs = [entry.to_dict() for entry in snap.logs[-limit:]]
    return {"logs": logs, "count": len(logs)}


@router.websocket("/stream")
async def telemetry_stream(websocket: WebSocket, token: str = Query(...)):
    """Pushes a fresh snapshot after every telemetry update"""
    principal = principal_from_token(token)
    if principal is None:
        await websocket.close(code=4001, reason="Authentication failed")
        return

    aggregator: TelemetryAggregator = websocket.app.state.aggregator
    owner_scope = None if principal.is_admin else principal.id
    queue: asyncio.Queue = asyncio.Queue(maxsize=16)
    loop = asyncio.get_running_loop()

    def _enqueue(_snapshot):
        def _put():
            if queue.full():
                queue.get_nowait()
            queue.put_nowait(True)
        loop.call_soon_threadsafe(_put)

    async def _push():
        while True:
            await queue.get()
            await websocket.send_json({"type": "snapshot", "data": aggregator.snapshot(owner_id=owner_scope).to_dict()})

    await websocket.accept()
    unsubscribe = aggregator.subscribe(_enqueue)
    logger.info(f"Telemetry stream opened: user={principal.id[:8]}")
    await websocket.send_json({"type": "snapshot", "data": aggregator.snapshot(owner_id=owner_scope).to_dict()})
    pusher = asyncio.create_task(_push())
    try:
        while True:
            data = await websocket.receive_json()
            if data.get("type") == "ping":
                await websocket.send_json({"type": "pong", "timestamp": datetime.now(timezone.utc).isoformat()})
    except WebSocketDisconnect:
        pass
    finally:
        pusher.cancel()
        unsubscribe()
        logger.info(f"Telemetry stream closed: user={principal.id[:8]}")
