# routers/nodes.py — Compute node lifecycle endpoints
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from auth import get_current_user, CurrentUser
from database import get_db_session
from encryption import CredentialCipher, get_cipher
from errors import CoreError, ErrorKind
from infra_provider import HostingerProvider, get_infra_provider
from nodes import NodeOrchestrator, node_out
from telemetry_aggregator import TelemetryAggregator, get_aggregator

router = APIRouter(prefix="/api/v1/nodes", tags=["Compute Nodes"])


# --- Schemas ---

class ProvisionRequest(BaseModel):
    owner_id: Optional[str] = None


def _orchestrator(
    db: AsyncSession = Depends(get_db_session),
    provider: HostingerProvider = Depends(get_infra_provider),
    cipher: CredentialCipher = Depends(get_cipher),
    aggregator: TelemetryAggregator = Depends(get_aggregator),
) -> NodeOrchestrator:
    return NodeOrchestrator(db, provider, cipher, aggregator)


# --- Endpoints ---

@router.post("/provision", status_code=201)
async def provision_node(
    data: Optional[ProvisionRequest] = None,
    user: CurrentUser = Depends(get_current_user),
    orchestrator: NodeOrchestrator = Depends(_orchestrator),
):
    """Provision the caller's node (admins may provision on behalf of an owner)"""
    owner_id = user.id
    if data and data.owner_id and data.owner_id != user.id:
        if not user.is_admin:
            raise CoreError(ErrorKind.FORBIDDEN, "Only operators can provision for another account")
        owner_id = data.owner_id
    node = await orchestrator.provision(owner_id)
    return node_out(node)


@router.get("/me")
async def my_node(
    user: CurrentUser = Depends(get_current_user),
    orchestrator: NodeOrchestrator = Depends(_orchestrator),
):
    return node_out(await orchestrator.get_for_owner(user.id))


@router.post("/{node_id}/reboot")
async def reboot_node(
    node_id: str,
    user: CurrentUser = Depends(get_current_user),
    orchestrator: NodeOrchestrator = Depends(_orchestrator),
):
    """First call arms the reboot; a second call inside the window executes it"""
    node = await orchestrator.get_node(node_id, user)
    return await orchestrator.reboot(node)


@router.post("/{node_id}/scale-request", status_code=202)
async def request_scale(
    node_id: str,
    user: CurrentUser = Depends(get_current_user),
    orchestrator: NodeOrchestrator = Depends(_orchestrator),
):
    node = await orchestrator.get_node(node_id, user)
    notification = await orchestrator.request_scale(node)
    return {
        "submitted": True,
        "notification_id": notification.id,
        "message": notification.message,
        "scale_requested_at": node.scale_requested_at.isoformat() if node.scale_requested_at else None,
    }


@router.get("/{node_id}/metrics")
async def node_metrics(
    node_id: str,
    user: CurrentUser = Depends(get_current_user),
    orchestrator: NodeOrchestrator = Depends(_orchestrator),
):
    """Poll the provider now and return vitality plus the recorded status"""
    node = await orchestrator.get_node(node_id, user)
    metrics = await orchestrator.poll_metrics(node)
    return {"node": node_out(node), "metrics": metrics.to_dict()}


@router.post("/{node_id}/credentials/reveal")
async def reveal_node_credentials(
    node_id: str,
    user: CurrentUser = Depends(get_current_user),
    orchestrator: NodeOrchestrator = Depends(_orchestrator),
):
    node = await orchestrator.get_node(node_id, user)
    return await orchestrator.reveal_credentials(node, user)
