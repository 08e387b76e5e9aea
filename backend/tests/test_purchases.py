"""Tests for the Purchases router (reconcile + webhook)."""
import json
import os

import pytest

from payment_gateway import sign_webhook
from tests.conftest import get_auth_headers


def _webhook_event(session_id="cs_test_123", user_id=None, payment_status="paid", event_type="checkout.session.completed"):
    metadata = {"item_type": "automation", "item_id": "agent-42"}
    if user_id:
        metadata["user_id"] = user_id
    return {
        "id": "evt_1",
        "type": event_type,
        "data": {"object": {
            "id": session_id,
            "payment_status": payment_status,
            "amount_total": 4900,
            "currency": "usd",
            "customer_details": {"email": "buyer@example.com"},
            "metadata": metadata,
        }},
    }


async def _post_webhook(client, event, secret=None):
    payload = json.dumps(event).encode()
    header = sign_webhook(payload, secret or os.environ["STRIPE_WEBHOOK_SECRET"])
    return await client.post(
        "/api/v1/purchases/webhook",
        content=payload,
        headers={"Stripe-Signature": header, "Content-Type": "application/json"},
    )


@pytest.mark.asyncio
async def test_reconcile_requires_auth(client):
    resp = await client.post("/api/v1/purchases/reconcile", json={"session_id": "cs_test_123"})
    assert resp.status_code in (401, 403)


@pytest.mark.asyncio
async def test_reconcile_before_webhook_is_pending(client, gateway, customer):
    gateway.add_paid("cs_test_123")
    resp = await client.post(
        "/api/v1/purchases/reconcile", json={"session_id": "cs_test_123"}, headers=get_auth_headers(customer),
    )
    assert resp.status_code == 202
    body = resp.json()
    assert body["error"] == "WEBHOOK_NOT_YET_RECEIVED"
    assert body["retryable"] is True
    assert body["reference"] == "…test_123"
    assert body["request_id"]


@pytest.mark.asyncio
async def test_webhook_then_reconcile(client, gateway, customer):
    resp = await _post_webhook(client, _webhook_event())
    assert resp.status_code == 200
    assert resp.json()["handled"] is True
    assert resp.json()["activation_id"] is None

    gateway.add_paid("cs_test_123")
    headers = get_auth_headers(customer)
    first = await client.post("/api/v1/purchases/reconcile", json={"session_id": "cs_test_123"}, headers=headers)
    second = await client.post("/api/v1/purchases/reconcile", json={"session_id": "cs_test_123"}, headers=headers)
    assert first.status_code == 200
    assert first.json()["id"] == second.json()["id"]
    assert first.json()["status"] == "received"
    assert first.json()["progress"]["step_index"] == 0

    listed = await client.get("/api/v1/purchases", headers=headers)
    assert [p["stripe_session_id"] for p in listed.json()] == ["cs_test_123"]


@pytest.mark.asyncio
async def test_webhook_with_user_creates_activation(client, gateway, customer):
    resp = await _post_webhook(client, _webhook_event(user_id=customer["id"]))
    activation_id = resp.json()["activation_id"]
    assert activation_id

    gateway.add_paid("cs_test_123", user_id=customer["id"])
    reconciled = await client.post(
        "/api/v1/purchases/reconcile", json={"session_id": "cs_test_123"}, headers=get_auth_headers(customer),
    )
    assert reconciled.json()["id"] == activation_id


@pytest.mark.asyncio
async def test_webhook_redelivery_is_idempotent(client, customer):
    event = _webhook_event(user_id=customer["id"])
    first = await _post_webhook(client, event)
    second = await _post_webhook(client, event)
    assert first.json()["purchase_id"] == second.json()["purchase_id"]
    assert first.json()["activation_id"] == second.json()["activation_id"]


@pytest.mark.asyncio
async def test_webhook_bad_signature_rejected(client):
    resp = await _post_webhook(client, _webhook_event(), secret="whsec_wrong")
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_webhook_ignores_other_events(client):
    resp = await _post_webhook(client, _webhook_event(event_type="invoice.paid"))
    assert resp.json()["handled"] is False
    resp = await _post_webhook(client, _webhook_event(payment_status="unpaid"))
    assert resp.json()["handled"] is False


@pytest.mark.asyncio
async def test_reconcile_invalid_session(client, customer):
    resp = await client.post(
        "/api/v1/purchases/reconcile", json={"session_id": "cs_test_nope"}, headers=get_auth_headers(customer),
    )
    assert resp.status_code == 400
    assert resp.json()["error"] == "SESSION_INVALID"
    assert resp.json()["retryable"] is False


@pytest.mark.asyncio
async def test_reconcile_other_payer_forbidden(client, gateway, other_customer):
    await _post_webhook(client, _webhook_event())
    gateway.add_paid("cs_test_123")
    resp = await client.post(
        "/api/v1/purchases/reconcile", json={"session_id": "cs_test_123"}, headers=get_auth_headers(other_customer),
    )
    assert resp.status_code == 403
