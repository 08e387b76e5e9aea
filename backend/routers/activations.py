# routers/activations.py — Activation requests: customer view & operator transitions
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

import activation
from auth import get_current_user, require_admin, CurrentUser
from database import get_db_session
from models import ActivationRequest

router = APIRouter(prefix="/api/v1/activations", tags=["Activations"])


# ============================================================
# SCHEMAS
# ============================================================

class TransitionRequest(BaseModel):
    status: str = Field(..., min_length=2, max_length=40)
    notes_customer: Optional[str] = Field(default=None, max_length=4000)
    activation_eta: Optional[datetime] = None


def activation_out(r: ActivationRequest) -> dict:
    return {
        "id": r.id,
        "owner_id": r.owner_id,
        "item_type": r.item_type.value if hasattr(r.item_type, "value") else r.item_type,
        "item_id": r.item_id,
        "purchase_id": r.purchase_id,
        "status": r.customer_visible_status,
        "internal_status": r.status,
        "status_updated_at": r.status_updated_at.isoformat() if r.status_updated_at else None,
        "notes_customer": r.notes_customer,
        "activation_eta": r.activation_eta.isoformat() if r.activation_eta else None,
        "credentials_count": r.credentials_count or 0,
        "credentials_submitted_at": r.credentials_submitted_at.isoformat() if r.credentials_submitted_at else None,
        "created_at": r.created_at.isoformat() if r.created_at else None,
        "progress": activation.progress(r).to_dict(),
    }


# ============================================================
# ENDPOINTS
# ============================================================

@router.get("")
async def list_activations(
    status: Optional[str] = None,
    limit: int = Query(default=50, le=200),
    offset: int = 0,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Own activation requests; admins see all"""
    stmt = select(ActivationRequest)
    if not user.is_admin:
        stmt = stmt.where(ActivationRequest.owner_id == user.id)
    if status:
        stmt = stmt.where(ActivationRequest.customer_visible_status == status)
    stmt = stmt.order_by(ActivationRequest.created_at.desc()).offset(offset).limit(limit)
    result = await db.execute(stmt)
    items = [activation_out(r) for r in result.scalars().all()]
    return {"items": items, "count": len(items)}


@router.get("/{request_id}")
async def get_activation(
    request_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Activation request with its progress position"""
    request = await activation.get_request(db, request_id)
    activation.ensure_access(user, request)
    return activation_out(request)


@router.post("/{request_id}/transition")
async def transition_activation(
    request_id: str,
    data: TransitionRequest,
    user: CurrentUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
):
    """Operator moves an activation along its lifecycle"""
    request = await activation.transition(
        db, request_id, data.status.strip().lower(),
        notes_customer=data.notes_customer,
        activation_eta=data.activation_eta,
    )
    return activation_out(request)
