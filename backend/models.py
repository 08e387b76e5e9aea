# models.py — Database models for the AERELION activation core
# - Purchases recorded by the payment webhook or by verification
# - Activation requests with a partial unique index enforcing one open
#   request per (owner, item)
# - Credential vault rows (ciphertext only)
# - Compute nodes, one per owner
# - Append-only audit log and operator notifications

import uuid
from datetime import datetime, timezone
from enum import Enum as PyEnum
from sqlalchemy import (
    Column, String, DateTime, JSON, Boolean, Integer,
    Enum as SQLEnum, ForeignKey, Text, Index, CheckConstraint, text,
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def utcnow():
    return datetime.now(timezone.utc)


def new_uuid():
    return str(uuid.uuid4())


# ============================================================
# ENUMS
# ============================================================

class ItemType(str, PyEnum):
    AUTOMATION = "automation"
    BUNDLE = "bundle"


class PurchaseStatus(str, PyEnum):
    PENDING = "pending"
    PAID = "paid"
    COMPLETED = "completed"
    FAILED = "failed"


PAID_PURCHASE_STATUSES = (PurchaseStatus.PAID, PurchaseStatus.COMPLETED)


class CredentialMethod(str, PyEnum):
    DELEGATED_AUTH_LINK = "delegated_auth_link"
    INVITED_ACCOUNT = "invited_account"
    KEY_REFERENCE = "key_reference"
    OTHER = "other"


class CredentialStatus(str, PyEnum):
    PENDING = "pending"
    ACTIVE = "active"
    REVOKED = "revoked"
    SUPERSEDED = "superseded"


class NodeStatus(str, PyEnum):
    PROVISIONING = "provisioning"
    RUNNING = "running"
    DEGRADED = "degraded"


class LogLevel(str, PyEnum):
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


# Kept in sync with activation.TERMINAL_STATUSES
_OPEN_ACTIVATION = "status NOT IN ('completed', 'cancelled')"


# ============================================================
# PURCHASES
# ============================================================

class Purchase(Base):
    __tablename__ = "purchases"

    id = Column(String, primary_key=True, default=new_uuid)
    stripe_session_id = Column(String, nullable=False, unique=True)
    item_type = Column(SQLEnum(ItemType), nullable=False)
    item_id = Column(String, nullable=False)
    email = Column(String, nullable=False)
    user_id = Column(String, nullable=True, index=True)
    amount_cents = Column(Integer, default=0)
    currency = Column(String(3), default="usd")
    status = Column(SQLEnum(PurchaseStatus), nullable=False, default=PurchaseStatus.PENDING)
    download_count = Column(Integer, default=0)
    last_downloaded_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("idx_purchase_email", "email"),
    )

    @property
    def item_key(self) -> str:
        return item_key(self.item_type, self.item_id)


def item_key(item_type, item_id: str) -> str:
    kind = item_type.value if isinstance(item_type, ItemType) else str(item_type)
    return f"{kind}:{item_id}"


# ============================================================
# ACTIVATION REQUESTS
# ============================================================

class ActivationRequest(Base):
    __tablename__ = "activation_requests"

    id = Column(String, primary_key=True, default=new_uuid)
    owner_id = Column(String, nullable=False, index=True)
    email = Column(String, nullable=False)
    item_type = Column(SQLEnum(ItemType), nullable=False)
    automation_id = Column(String, nullable=True)
    bundle_id = Column(String, nullable=True)
    item_key = Column(String, nullable=False)
    purchase_id = Column(String, ForeignKey("purchases.id"), nullable=True)

    # Internal status may carry finer detail than the customer-visible one
    status = Column(String(40), nullable=False, default="received")
    customer_visible_status = Column(String(40), nullable=False, default="received")
    last_path_status = Column(String(40), nullable=False, default="received")
    status_updated_at = Column(DateTime(timezone=True), default=utcnow)

    notes_customer = Column(Text, nullable=True)
    activation_eta = Column(DateTime(timezone=True), nullable=True)

    credentials_count = Column(Integer, default=0)
    credentials_submitted_at = Column(DateTime(timezone=True), nullable=True)
    credentials_first_viewed_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint(
            "(automation_id IS NULL) <> (bundle_id IS NULL)",
            name="ck_activation_single_item",
        ),
        Index(
            "uq_activation_open_owner_item", "owner_id", "item_key",
            unique=True,
            sqlite_where=text(_OPEN_ACTIVATION),
            postgresql_where=text(_OPEN_ACTIVATION),
        ),
        Index("idx_activation_status", "status"),
    )

    @property
    def item_id(self) -> str:
        return self.automation_id or self.bundle_id


# ============================================================
# CREDENTIAL VAULT
# ============================================================

class ActivationCredential(Base):
    __tablename__ = "activation_credentials"

    id = Column(String, primary_key=True, default=new_uuid)
    request_id = Column(String, ForeignKey("activation_requests.id"), nullable=False)
    credential_type = Column(String(100), nullable=False)
    method = Column(SQLEnum(CredentialMethod), nullable=False)
    status = Column(SQLEnum(CredentialStatus), nullable=False, default=CredentialStatus.PENDING)

    # AES-256-GCM ciphertext + nonce, both base64; cleared on revoke
    encrypted_data = Column(Text, nullable=True)
    encryption_iv = Column(String, nullable=True)

    created_by = Column(String, nullable=True)
    confirmed_at = Column(DateTime(timezone=True), nullable=True)
    superseded_by = Column(String, nullable=True)
    superseded_at = Column(DateTime(timezone=True), nullable=True)
    revoked_at = Column(DateTime(timezone=True), nullable=True)
    revoked_by = Column(String, nullable=True)
    revocation_reason = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("idx_credential_request_type", "request_id", "credential_type"),
    )


# ============================================================
# COMPUTE NODES
# ============================================================

class ComputeNode(Base):
    __tablename__ = "compute_nodes"

    id = Column(String, primary_key=True, default=new_uuid)
    owner_id = Column(String, nullable=False, unique=True)
    provider_node_id = Column(String, nullable=True, index=True)
    status = Column(SQLEnum(NodeStatus), nullable=False, default=NodeStatus.PROVISIONING)
    label = Column(String, nullable=True)
    hostname = Column(String, nullable=True)
    ip_address = Column(String, nullable=True)
    region = Column(String, nullable=True)
    plan = Column(String, nullable=True)

    agents_deployed = Column(Boolean, default=False)
    agents_deployed_at = Column(DateTime(timezone=True), nullable=True)

    encrypted_credentials = Column(Text, nullable=True)
    credentials_iv = Column(String, nullable=True)
    credentials_viewed_at = Column(DateTime(timezone=True), nullable=True)

    reboot_armed_until = Column(DateTime(timezone=True), nullable=True)
    last_reboot_at = Column(DateTime(timezone=True), nullable=True)
    scale_requested_at = Column(DateTime(timezone=True), nullable=True)

    last_metrics = Column(JSON, nullable=True)
    last_metrics_at = Column(DateTime(timezone=True), nullable=True)
    last_error = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


# ============================================================
# AUDIT LOG & NOTIFICATIONS
# ============================================================

class AuditLogEntry(Base):
    __tablename__ = "audit_logs"

    id = Column(String, primary_key=True, default=new_uuid)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    function_name = Column(String(100), nullable=False)
    level = Column(SQLEnum(LogLevel), nullable=False, default=LogLevel.INFO)
    message = Column(Text, nullable=False)
    details = Column(JSON, default=dict)
    owner_id = Column(String, nullable=True)

    __table_args__ = (
        Index("idx_audit_created", "created_at"),
        Index("idx_audit_function", "function_name"),
    )


class AdminNotification(Base):
    __tablename__ = "admin_notifications"

    id = Column(String, primary_key=True, default=new_uuid)
    kind = Column(String(50), nullable=False)
    title = Column(String, nullable=False)
    message = Column(Text, nullable=False)
    owner_id = Column(String, nullable=True)
    node_id = Column(String, ForeignKey("compute_nodes.id"), nullable=True)
    details = Column(JSON, default=dict)
    is_read = Column(Boolean, default=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)
