# payment_gateway.py — Checkout session verification against Stripe
import hashlib
import hmac
import json
import logging
import os
import time
from dataclasses import dataclass
from typing import Optional

import httpx

from errors import CoreError, ErrorKind, session_reference
from models import ItemType

logger = logging.getLogger("aerelion.gateway")

STRIPE_API_BASE = os.getenv("STRIPE_API_BASE", "https://api.stripe.com")
WEBHOOK_TOLERANCE_SECONDS = 300


@dataclass(frozen=True)
class SessionVerification:
    session_ref: str
    valid: bool
    item_type: ItemType
    item_id: str
    payer_email: Optional[str]
    amount_cents: int
    currency: str
    user_id: Optional[str] = None


def session_email(session: dict) -> Optional[str]:
    """Payer email in order of trust: explicit, then collected, then our metadata."""
    details = session.get("customer_details") or {}
    metadata = session.get("metadata") or {}
    email = session.get("customer_email") or details.get("email") or metadata.get("user_email")
    return email.lower() if email else None


def session_item(session: dict) -> Optional[tuple]:
    metadata = session.get("metadata") or {}
    item_type, item_id = metadata.get("item_type"), metadata.get("item_id")
    if not item_type or not item_id:
        return None
    try:
        return ItemType(item_type), item_id
    except ValueError:
        return None


class StripeGateway:
    """Reads checkout sessions. The gateway is the source of truth for "was this paid"."""

    def __init__(self, secret_key: Optional[str], base_url: str = STRIPE_API_BASE,
                 timeout: float = 10.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.secret_key = secret_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    async def verify_session(self, session_ref: str) -> SessionVerification:
        ref = session_reference(session_ref)
        if not self.secret_key:
            raise CoreError(ErrorKind.GATEWAY_UNAVAILABLE, "Payment verification is not configured", ref)

        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self._transport,
                headers={"Authorization": f"Bearer {self.secret_key}"},
            ) as client:
                resp = await client.get(f"/v1/checkout/sessions/{session_ref}")
        except httpx.HTTPError as e:
            logger.warning(f"Gateway unreachable for session {ref}: {type(e).__name__}")
            raise CoreError(ErrorKind.GATEWAY_UNAVAILABLE, "Payment provider is unreachable, try again shortly", ref)

        if resp.status_code >= 500:
            raise CoreError(ErrorKind.GATEWAY_UNAVAILABLE, "Payment provider is unavailable, try again shortly", ref)
        if resp.status_code >= 400:
            raise CoreError(ErrorKind.SESSION_INVALID, "Checkout session not found", ref)

        session = resp.json()
        if session.get("payment_status") != "paid":
            raise CoreError(ErrorKind.SESSION_INVALID, "Checkout session has not been paid", ref)
        item = session_item(session)
        if item is None:
            raise CoreError(ErrorKind.SESSION_INVALID, "Checkout session is missing item details", ref)

        metadata = session.get("metadata") or {}
        return SessionVerification(
            session_ref=session_ref,
            valid=True,
            item_type=item[0],
            item_id=item[1],
            payer_email=session_email(session),
            amount_cents=int(session.get("amount_total") or 0),
            currency=(session.get("currency") or "usd").lower(),
            user_id=metadata.get("user_id"),
        )


# ============================================================
# WEBHOOK SIGNATURES
# ============================================================

class WebhookSignatureError(Exception):
    pass


def verify_webhook(payload: bytes, signature_header: Optional[str], secret: Optional[str],
                   tolerance: int = WEBHOOK_TOLERANCE_SECONDS, now: Optional[float] = None) -> dict:
    """Verify a ``Stripe-Signature`` header and return the parsed event."""
    if not secret:
        raise WebhookSignatureError("Webhook secret not configured")
    if not signature_header:
        raise WebhookSignatureError("Missing signature header")

    timestamp, signatures = None, []
    for part in signature_header.split(","):
        key, _, value = part.strip().partition("=")
        if key == "t":
            timestamp = value
        elif key == "v1":
            signatures.append(value)
    if not timestamp or not signatures:
        raise WebhookSignatureError("Malformed signature header")

    try:
        signed_at = int(timestamp)
    except ValueError:
        raise WebhookSignatureError("Malformed signature timestamp")
    if abs((now if now is not None else time.time()) - signed_at) > tolerance:
        raise WebhookSignatureError("Signature timestamp outside tolerance")

    expected = hmac.new(
        secret.encode("utf-8"), f"{timestamp}.".encode("utf-8") + payload, hashlib.sha256,
    ).hexdigest()
    if not any(hmac.compare_digest(expected, sig) for sig in signatures):
        raise WebhookSignatureError("Signature mismatch")

    try:
        return json.loads(payload)
    except ValueError:
        raise WebhookSignatureError("Payload is not valid JSON")


def sign_webhook(payload: bytes, secret: str, timestamp: Optional[int] = None) -> str:
    """Build a ``Stripe-Signature`` header value (used by tests and local replay)."""
    ts = int(timestamp if timestamp is not None else time.time())
    sig = hmac.new(secret.encode("utf-8"), f"{ts}.".encode("utf-8") + payload, hashlib.sha256).hexdigest()
    return f"t={ts},v1={sig}"


_gateway: Optional[StripeGateway] = None


def get_payment_gateway() -> StripeGateway:
    """Dependency returning the configured gateway (FastAPI Depends)"""
    global _gateway
    if _gateway is None:
        _gateway = StripeGateway(os.getenv("STRIPE_SECRET_KEY"))
    return _gateway
