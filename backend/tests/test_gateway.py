"""Tests for checkout session verification and webhook signatures."""
import json

import httpx
import pytest

from errors import CoreError, ErrorKind
from models import ItemType
from payment_gateway import StripeGateway, WebhookSignatureError, sign_webhook, verify_webhook

SECRET = "whsec_unit"


def _gateway(handler, key="sk_test_key"):
    return StripeGateway(key, base_url="https://stripe.test", transport=httpx.MockTransport(handler))


def _session(**overrides):
    session = {
        "id": "cs_test_123",
        "payment_status": "paid",
        "amount_total": 4900,
        "currency": "USD",
        "customer_details": {"email": "Buyer@Example.com"},
        "metadata": {"item_type": "automation", "item_id": "agent-42", "user_id": "user-0001"},
    }
    session.update(overrides)
    return session


@pytest.mark.asyncio
async def test_verify_paid_session():
    seen = {}

    def handler(request: httpx.Request):
        seen["path"] = request.url.path
        seen["auth"] = request.headers["Authorization"]
        return httpx.Response(200, json=_session())

    result = await _gateway(handler).verify_session("cs_test_123")
    assert seen == {"path": "/v1/checkout/sessions/cs_test_123", "auth": "Bearer sk_test_key"}
    assert result.valid is True
    assert result.item_type == ItemType.AUTOMATION
    assert result.item_id == "agent-42"
    assert result.payer_email == "buyer@example.com"
    assert result.currency == "usd"
    assert result.user_id == "user-0001"


@pytest.mark.asyncio
@pytest.mark.parametrize("session", [
    _session(payment_status="unpaid"),
    _session(metadata={"item_type": "automation"}),
    _session(metadata={"item_type": "course", "item_id": "x"}),
])
async def test_unusable_sessions_are_invalid(session):
    gateway = _gateway(lambda request: httpx.Response(200, json=session))
    with pytest.raises(CoreError) as exc:
        await gateway.verify_session("cs_test_123")
    assert exc.value.kind == ErrorKind.SESSION_INVALID


@pytest.mark.asyncio
async def test_unknown_session_is_invalid():
    gateway = _gateway(lambda request: httpx.Response(404, json={"error": {"message": "No such session"}}))
    with pytest.raises(CoreError) as exc:
        await gateway.verify_session("cs_test_missing")
    assert exc.value.kind == ErrorKind.SESSION_INVALID
    assert exc.value.retryable is False


@pytest.mark.asyncio
async def test_gateway_errors_are_retryable():
    def boom(request):
        raise httpx.ConnectError("refused", request=request)

    for handler in (boom, lambda request: httpx.Response(503)):
        with pytest.raises(CoreError) as exc:
            await _gateway(handler).verify_session("cs_test_123")
        assert exc.value.kind == ErrorKind.GATEWAY_UNAVAILABLE
        assert exc.value.retryable is True


@pytest.mark.asyncio
async def test_missing_key_is_unavailable():
    with pytest.raises(CoreError) as exc:
        await _gateway(lambda request: httpx.Response(200), key=None).verify_session("cs_test_123")
    assert exc.value.kind == ErrorKind.GATEWAY_UNAVAILABLE


# ── Webhook signatures ──────────────────────────────────────

def test_webhook_signature_roundtrip():
    payload = json.dumps({"type": "checkout.session.completed"}).encode()
    header = sign_webhook(payload, SECRET, timestamp=1_700_000_000)
    event = verify_webhook(payload, header, SECRET, now=1_700_000_010)
    assert event["type"] == "checkout.session.completed"


@pytest.mark.parametrize("header,secret,now", [
    (None, SECRET, 1_700_000_000),
    ("garbage", SECRET, 1_700_000_000),
    ("t=1700000000,v1=deadbeef", SECRET, 1_700_000_000),
    ("SIGNED", "whsec_other", 1_700_000_000),
    ("SIGNED", SECRET, 1_700_001_000),
    ("SIGNED", None, 1_700_000_000),
])
def test_webhook_signature_rejections(header, secret, now):
    payload = b'{"type": "checkout.session.completed"}'
    if header == "SIGNED":
        header = sign_webhook(payload, SECRET, timestamp=1_700_000_000)
    with pytest.raises(WebhookSignatureError):
        verify_webhook(payload, header, secret, now=now)
