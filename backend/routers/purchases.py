# routers/purchases.py — Purchase reconciliation & payment webhook
import os
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from auth import get_current_user, CurrentUser
from database import get_db_session, get_session_factory
from models import Purchase, PurchaseStatus
from payment_gateway import (
    StripeGateway, WebhookSignatureError, get_payment_gateway,
    session_email, session_item, verify_webhook,
)
from reconciliation import (
    PaidCheckout, ReconciliationEngine, ReconciliationSettings,
    get_reconciliation_settings,
)
from routers.activations import activation_out

router = APIRouter(prefix="/api/v1/purchases", tags=["Purchases"])
logger = logging.getLogger("aerelion.purchases")


# --- Schemas ---

class ReconcileRequest(BaseModel):
    session_id: str = Field(..., min_length=4, max_length=255)


class PurchaseOut(BaseModel):
    id: str
    stripe_session_id: str
    item_type: str
    item_id: str
    amount_cents: int
    currency: str
    status: str
    download_count: int
    created_at: Optional[str]


def _purchase_out(p: Purchase) -> PurchaseOut:
    return PurchaseOut(
        id=p.id,
        stripe_session_id=p.stripe_session_id,
        item_type=p.item_type.value if hasattr(p.item_type, "value") else str(p.item_type),
        item_id=p.item_id,
        amount_cents=p.amount_cents or 0,
        currency=p.currency or "usd",
        status=p.status.value if hasattr(p.status, "value") else str(p.status),
        download_count=p.download_count or 0,
        created_at=p.created_at.isoformat() if p.created_at else None,
    )


# --- Endpoints ---

@router.post("/reconcile")
async def reconcile_purchase(
    data: ReconcileRequest,
    user: CurrentUser = Depends(get_current_user),
    session_factory: async_sessionmaker = Depends(get_session_factory),
    gateway: StripeGateway = Depends(get_payment_gateway),
    settings: ReconciliationSettings = Depends(get_reconciliation_settings),
):
    """Post-checkout landing: turn a paid session into the caller's activation request"""
    engine = ReconciliationEngine(session_factory, gateway, settings)
    request = await engine.reconcile(data.session_id, user.id, user.email)
    return activation_out(request)


@router.post("/webhook")
async def payment_webhook(
    request: Request,
    session_factory: async_sessionmaker = Depends(get_session_factory),
    settings: ReconciliationSettings = Depends(get_reconciliation_settings),
):
    """Payment gateway webhook (Stripe-Signature verified)"""
    payload = await request.body()
    try:
        event = verify_webhook(
            payload,
            request.headers.get("Stripe-Signature"),
            os.getenv("STRIPE_WEBHOOK_SECRET"),
        )
    except WebhookSignatureError as e:
        logger.warning(f"Webhook rejected: {e}")
        raise HTTPException(status_code=400, detail="Webhook signature verification failed")

    event_type = event.get("type", "")
    if event_type != "checkout.session.completed":
        return {"received": True, "handled": False, "type": event_type}

    session = (event.get("data") or {}).get("object") or {}
    if session.get("payment_status") != "paid":
        return {"received": True, "handled": False, "reason": "unpaid"}

    item = session_item(session)
    email = session_email(session)
    if item is None or not email or not session.get("id"):
        logger.warning("Webhook session missing item or email metadata")
        return {"received": True, "handled": False, "reason": "incomplete"}

    owner_id = (session.get("metadata") or {}).get("user_id")
    engine = ReconciliationEngine(session_factory, settings=settings)
    purchase = await engine.record_paid_purchase(PaidCheckout(
        session_ref=session["id"],
        item_type=item[0],
        item_id=item[1],
        email=email,
        user_id=owner_id,
        amount_cents=int(session.get("amount_total") or 0),
        currency=(session.get("currency") or "usd").lower(),
    ))

    activation_id = None
    if owner_id:
        activation = await engine.ensure_activation(purchase, owner_id, email)
        activation_id = activation.id
    return {"received": True, "handled": True, "purchase_id": purchase.id, "activation_id": activation_id}


@router.get("", response_model=List[PurchaseOut])
async def list_purchases(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """The caller's paid purchases"""
    stmt = select(Purchase).where(
        (Purchase.user_id == user.id) | (Purchase.email == user.email),
        Purchase.status.in_([PurchaseStatus.PAID, PurchaseStatus.COMPLETED]),
    ).order_by(Purchase.created_at.desc())
    result = await db.execute(stmt)
    return [_purchase_out(p) for p in result.scalars().all()]
