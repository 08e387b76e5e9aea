# activation.py — Activation request lifecycle
"""
Owns the activation request state machine and its customer-visible projection.

Customer-visible path (drives the progress indicator):

    received → in_review → awaiting_credentials → in_build → testing → live

Off-path states `paused` and `needs_attention` are reachable from any
non-terminal state and resume onto any path state. `completed` (from live)
and `cancelled` (from anything open) are terminal.

The internal status column may hold finer-grained or legacy values; each one
projects onto exactly one customer-visible status through INTERNAL_TO_VISIBLE.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum as PyEnum
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from auth import CurrentUser
from errors import CoreError, ErrorKind
from models import ActivationRequest, ItemType, item_key, utcnow

logger = logging.getLogger("aerelion.activation")


class VisibleStatus(str, PyEnum):
    RECEIVED = "received"
    IN_REVIEW = "in_review"
    AWAITING_CREDENTIALS = "awaiting_credentials"
    IN_BUILD = "in_build"
    TESTING = "testing"
    LIVE = "live"
    PAUSED = "paused"
    NEEDS_ATTENTION = "needs_attention"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


PROGRESS_PATH = [
    VisibleStatus.RECEIVED,
    VisibleStatus.IN_REVIEW,
    VisibleStatus.AWAITING_CREDENTIALS,
    VisibleStatus.IN_BUILD,
    VisibleStatus.TESTING,
    VisibleStatus.LIVE,
]
OFF_PATH_STATUSES = {VisibleStatus.PAUSED, VisibleStatus.NEEDS_ATTENTION}
TERMINAL_STATUSES = {VisibleStatus.COMPLETED, VisibleStatus.CANCELLED}

# Backward moves an operator may make along the path; everything else
# along the path must move forward.
BACKWARD_MOVES = {
    (VisibleStatus.AWAITING_CREDENTIALS, VisibleStatus.IN_REVIEW),
    (VisibleStatus.IN_BUILD, VisibleStatus.AWAITING_CREDENTIALS),
    (VisibleStatus.TESTING, VisibleStatus.AWAITING_CREDENTIALS),
    (VisibleStatus.TESTING, VisibleStatus.IN_BUILD),
}

INTERNAL_TO_VISIBLE = {
    "received": VisibleStatus.RECEIVED,
    "in_review": VisibleStatus.IN_REVIEW,
    "credentials_submitted": VisibleStatus.IN_REVIEW,
    "awaiting_credentials": VisibleStatus.AWAITING_CREDENTIALS,
    "pending_credentials": VisibleStatus.AWAITING_CREDENTIALS,
    "in_build": VisibleStatus.IN_BUILD,
    "provisioning_node": VisibleStatus.IN_BUILD,
    "deploying": VisibleStatus.IN_BUILD,
    "testing": VisibleStatus.TESTING,
    "live": VisibleStatus.LIVE,
    "active": VisibleStatus.LIVE,
    "paused": VisibleStatus.PAUSED,
    "on_hold": VisibleStatus.PAUSED,
    "needs_attention": VisibleStatus.NEEDS_ATTENTION,
    "blocked": VisibleStatus.NEEDS_ATTENTION,
    "error": VisibleStatus.NEEDS_ATTENTION,
    "completed": VisibleStatus.COMPLETED,
    "cancelled": VisibleStatus.CANCELLED,
}

STATUS_LABELS = {
    VisibleStatus.RECEIVED: "Received",
    VisibleStatus.IN_REVIEW: "In Review",
    VisibleStatus.AWAITING_CREDENTIALS: "Awaiting Credentials",
    VisibleStatus.IN_BUILD: "In Build",
    VisibleStatus.TESTING: "Testing",
    VisibleStatus.LIVE: "Live",
    VisibleStatus.PAUSED: "Paused",
    VisibleStatus.NEEDS_ATTENTION: "Needs Attention",
    VisibleStatus.COMPLETED: "Completed",
    VisibleStatus.CANCELLED: "Cancelled",
}


def to_visible(internal: str) -> VisibleStatus:
    """Project an internal status onto the customer-visible set.

    Values we do not recognise are shown as in_review rather than leaking an
    internal name to the customer.
    """
    return INTERNAL_TO_VISIBLE.get((internal or "").strip().lower(), VisibleStatus.IN_REVIEW)


def is_terminal(internal: str) -> bool:
    return to_visible(internal) in TERMINAL_STATUSES


def check_transition(current: str, target: str, reference: Optional[str] = None) -> VisibleStatus:
    """Validate current → target (internal values). Returns the target's visible status."""
    if target not in INTERNAL_TO_VISIBLE:
        raise CoreError(ErrorKind.INVALID_TRANSITION, f"Unknown activation status '{target}'", reference)

    src = to_visible(current)
    dst = INTERNAL_TO_VISIBLE[target]

    if src in TERMINAL_STATUSES:
        raise CoreError(
            ErrorKind.INVALID_TRANSITION,
            f"Activation is {src.value} and can no longer change status",
            reference,
        )
    if current == target:
        raise CoreError(ErrorKind.INVALID_TRANSITION, f"Activation is already {target}", reference)

    if dst == VisibleStatus.CANCELLED or dst in OFF_PATH_STATUSES:
        return dst
    if dst == VisibleStatus.COMPLETED:
        if src != VisibleStatus.LIVE:
            raise CoreError(ErrorKind.INVALID_TRANSITION, "Only a live activation can be completed", reference)
        return dst
    # Resuming from an off-path state may land anywhere on the path
    if src in OFF_PATH_STATUSES or src == dst:
        return dst

    src_idx, dst_idx = PROGRESS_PATH.index(src), PROGRESS_PATH.index(dst)
    if dst_idx > src_idx or (src, dst) in BACKWARD_MOVES:
        return dst
    raise CoreError(
        ErrorKind.INVALID_TRANSITION,
        f"Cannot move activation from {src.value} back to {dst.value}",
        reference,
    )


def apply_transition(
    request: ActivationRequest,
    target: str,
    notes_customer: Optional[str] = None,
    activation_eta: Optional[datetime] = None,
    now: Optional[datetime] = None,
) -> ActivationRequest:
    """Validate and apply a transition in place. The caller commits."""
    visible = check_transition(request.status, target, reference=request.id)
    previous = request.status
    request.status = target
    request.customer_visible_status = visible.value
    if visible in PROGRESS_PATH:
        request.last_path_status = visible.value
    elif visible == VisibleStatus.COMPLETED:
        request.last_path_status = VisibleStatus.LIVE.value
    request.status_updated_at = now or utcnow()
    if notes_customer is not None:
        request.notes_customer = notes_customer
    if activation_eta is not None:
        request.activation_eta = activation_eta
    logger.info(f"Activation {request.id[:8]}: {previous} → {target} ({visible.value})")
    return request


# ============================================================
# PROGRESS VIEW
# ============================================================

@dataclass(frozen=True)
class ProgressView:
    status: str
    label: str
    step_index: int
    total_steps: int
    overlay: Optional[str]
    is_terminal: bool

    def to_dict(self) -> dict:
        return {
            "status": self.status,
            "label": self.label,
            "step_index": self.step_index,
            "total_steps": self.total_steps,
            "overlay": self.overlay,
            "is_terminal": self.is_terminal,
            "steps": [{"status": s.value, "label": STATUS_LABELS[s]} for s in PROGRESS_PATH],
        }


def progress(request: ActivationRequest) -> ProgressView:
    """Linear progress position for the customer-facing indicator.

    Off-path states keep the last forward position and are reported as an
    overlay; they never reset progress to zero.
    """
    visible = to_visible(request.status)
    overlay = None
    if visible in PROGRESS_PATH:
        index = PROGRESS_PATH.index(visible)
    elif visible == VisibleStatus.COMPLETED:
        index = len(PROGRESS_PATH) - 1
    else:
        last = to_visible(request.last_path_status or VisibleStatus.RECEIVED.value)
        index = PROGRESS_PATH.index(last) if last in PROGRESS_PATH else 0
        overlay = visible.value
    return ProgressView(
        status=visible.value,
        label=STATUS_LABELS[visible],
        step_index=index,
        total_steps=len(PROGRESS_PATH),
        overlay=overlay,
        is_terminal=visible in TERMINAL_STATUSES,
    )


# ============================================================
# STORE
# ============================================================

def new_request(owner_id: str, email: str, item_type: ItemType, item_id: str,
                purchase_id: Optional[str] = None) -> ActivationRequest:
    item_type = ItemType(item_type)
    now = utcnow()
    return ActivationRequest(
        owner_id=owner_id,
        email=email.lower(),
        item_type=item_type,
        automation_id=item_id if item_type == ItemType.AUTOMATION else None,
        bundle_id=item_id if item_type == ItemType.BUNDLE else None,
        item_key=item_key(item_type, item_id),
        purchase_id=purchase_id,
        status=VisibleStatus.RECEIVED.value,
        customer_visible_status=VisibleStatus.RECEIVED.value,
        last_path_status=VisibleStatus.RECEIVED.value,
        status_updated_at=now,
        created_at=now,
    )


async def find_open_request(db: AsyncSession, owner_id: str, key: str) -> Optional[ActivationRequest]:
    stmt = select(ActivationRequest).where(
        ActivationRequest.owner_id == owner_id,
        ActivationRequest.item_key == key,
        ActivationRequest.status.notin_([s.value for s in TERMINAL_STATUSES]),
    )
    result = await db.execute(stmt)
    return result.scalars().first()


async def find_request_for_purchase(db: AsyncSession, purchase_id: str) -> Optional[ActivationRequest]:
    """The request already fulfilling a purchase, whatever its status."""
    stmt = (
        select(ActivationRequest)
        .where(ActivationRequest.purchase_id == purchase_id)
        .order_by(ActivationRequest.created_at)
    )
    result = await db.execute(stmt)
    return result.scalars().first()


async def get_request(db: AsyncSession, request_id: str) -> ActivationRequest:
    result = await db.execute(select(ActivationRequest).where(ActivationRequest.id == request_id))
    request = result.scalar_one_or_none()
    if not request:
        raise CoreError(ErrorKind.NOT_FOUND, "Activation request not found", request_id)
    return request


def ensure_access(requester: CurrentUser, request: ActivationRequest) -> None:
    """Owners and admins only. Matching email alone grants nothing."""
    if requester.is_admin or requester.id == request.owner_id:
        return
    raise CoreError(ErrorKind.FORBIDDEN, "You do not have access to this activation", request.id)


async def transition(
    db: AsyncSession,
    request_id: str,
    target: str,
    notes_customer: Optional[str] = None,
    activation_eta: Optional[datetime] = None,
) -> ActivationRequest:
    request = await get_request(db, request_id)
    apply_transition(request, target, notes_customer=notes_customer, activation_eta=activation_eta)
    await db.commit()
    await db.refresh(request)
    return request
