"""Tests for the Activations and Credentials routers."""
import uuid

import pytest

from activation import new_request
from models import ItemType
from tests.conftest import get_auth_headers


async def _seed_request(db_session, owner, status="received"):
    request = new_request(owner["id"], owner["email"], ItemType.AUTOMATION, "agent-42")
    request.status = status
    db_session.add(request)
    await db_session.commit()
    await db_session.refresh(request)
    return request


@pytest.mark.asyncio
async def test_list_own_activations(client, db_session, customer, other_customer):
    await _seed_request(db_session, customer)
    await _seed_request(db_session, other_customer)
    resp = await client.get("/api/v1/activations", headers=get_auth_headers(customer))
    assert resp.status_code == 200
    assert resp.json()["count"] == 1
    assert resp.json()["items"][0]["owner_id"] == customer["id"]


@pytest.mark.asyncio
async def test_admin_sees_all_activations(client, db_session, customer, other_customer, operator):
    await _seed_request(db_session, customer)
    await _seed_request(db_session, other_customer)
    resp = await client.get("/api/v1/activations", headers=get_auth_headers(operator))
    assert resp.json()["count"] == 2


@pytest.mark.asyncio
async def test_get_other_owners_activation_forbidden(client, db_session, customer, other_customer):
    request = await _seed_request(db_session, customer)
    resp = await client.get(f"/api/v1/activations/{request.id}", headers=get_auth_headers(other_customer))
    assert resp.status_code == 403
    assert resp.json()["error"] == "FORBIDDEN"


@pytest.mark.asyncio
async def test_matching_email_does_not_grant_access(client, db_session, customer):
    request = await _seed_request(db_session, customer)
    headers = get_auth_headers({"id": str(uuid.uuid4()), "email": customer["email"]})
    for path in (f"/api/v1/activations/{request.id}", f"/api/v1/activations/{request.id}/credentials"):
        resp = await client.get(path, headers=headers)
        assert resp.status_code == 403
        assert resp.json()["error"] == "FORBIDDEN"


@pytest.mark.asyncio
async def test_operator_transitions(client, db_session, customer, operator):
    request = await _seed_request(db_session, customer)
    headers = get_auth_headers(operator)

    resp = await client.post(
        f"/api/v1/activations/{request.id}/transition",
        json={"status": "in_build", "notes_customer": "Building now"},
        headers=headers,
    )
    assert resp.status_code == 200
    assert resp.json()["status"] == "in_build"
    assert resp.json()["notes_customer"] == "Building now"

    resp = await client.post(
        f"/api/v1/activations/{request.id}/transition", json={"status": "received"}, headers=headers,
    )
    assert resp.status_code == 409
    assert resp.json()["error"] == "INVALID_TRANSITION"


@pytest.mark.asyncio
async def test_customer_cannot_transition(client, db_session, customer):
    request = await _seed_request(db_session, customer)
    resp = await client.post(
        f"/api/v1/activations/{request.id}/transition", json={"status": "live"},
        headers=get_auth_headers(customer),
    )
    assert resp.status_code == 403


# ── Credential vault endpoints ──────────────────────────────

@pytest.mark.asyncio
async def test_submit_and_reveal_credentials(client, db_session, customer, operator):
    request = await _seed_request(db_session, customer, status="awaiting_credentials")
    resp = await client.post(
        f"/api/v1/activations/{request.id}/credentials",
        json={"credential_type": "crm", "method": "key_reference", "reference": "1Password: Ops / CRM API"},
        headers=get_auth_headers(customer),
    )
    assert resp.status_code == 201
    body = resp.json()
    assert body["status"] == "active"
    assert body["method_label"] == "API Key Reference"
    assert "1Password" not in str(body)

    detail = await client.get(f"/api/v1/activations/{request.id}", headers=get_auth_headers(customer))
    assert detail.json()["status"] == "in_review"
    assert detail.json()["credentials_count"] == 1

    reveal = await client.post(
        f"/api/v1/activations/{request.id}/credentials/reveal", headers=get_auth_headers(operator),
    )
    assert reveal.status_code == 200
    assert reveal.json()["first_view"] is True
    assert reveal.json()["credentials"][0]["data"] == {"reference": "1Password: Ops / CRM API"}


@pytest.mark.asyncio
async def test_secret_paste_is_rejected(client, db_session, customer):
    request = await _seed_request(db_session, customer)
    resp = await client.post(
        f"/api/v1/activations/{request.id}/credentials",
        json={"credential_type": "stripe", "method": "other", "payload": {"key": "sk_live_51Habcdefghijklmn"}},
        headers=get_auth_headers(customer),
    )
    assert resp.status_code == 422
    assert resp.json()["error"] == "LIKELY_SECRET_LEAK"

    listed = await client.get(f"/api/v1/activations/{request.id}/credentials", headers=get_auth_headers(customer))
    assert listed.json()["count"] == 0


@pytest.mark.asyncio
async def test_revoke_and_confirm(client, db_session, customer, operator):
    request = await _seed_request(db_session, customer)
    created = await client.post(
        f"/api/v1/activations/{request.id}/credentials",
        json={"credential_type": "workspace", "method": "invited_account", "payload": {"invited": "ops@aerelion.dev"}},
        headers=get_auth_headers(customer),
    )
    credential_id = created.json()["id"]
    assert created.json()["status"] == "pending"

    denied = await client.post(f"/api/v1/credentials/{credential_id}/confirm", headers=get_auth_headers(customer))
    assert denied.status_code == 403

    confirmed = await client.post(f"/api/v1/credentials/{credential_id}/confirm", headers=get_auth_headers(operator))
    assert confirmed.json()["status"] == "active"

    readiness = await client.post(
        f"/api/v1/activations/{request.id}/readiness",
        json={"required_types": ["workspace"]}, headers=get_auth_headers(customer),
    )
    assert readiness.json()["ready"] is True

    revoked = await client.post(
        f"/api/v1/credentials/{credential_id}/revoke", json={"reason": "no longer needed"},
        headers=get_auth_headers(customer),
    )
    assert revoked.json()["status"] == "revoked"
    assert revoked.json()["revocation_reason"] == "no longer needed"
