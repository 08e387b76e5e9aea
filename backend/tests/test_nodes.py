"""Tests for the node lifecycle orchestrator."""
from datetime import timedelta

import pytest
from sqlalchemy import select

from auth import CurrentUser
from errors import CoreError, ErrorKind
from models import AdminNotification, AuditLogEntry, NodeStatus, utcnow
from nodes import MetricsPoller, NodeOrchestrator, scale_message, status_from_metrics
from telemetry_aggregator import NodeMetrics

OWNER = "8d1e4f0a-0000-4000-8000-000000000001"


@pytest.fixture
def orchestrator_for(provider, cipher, aggregator):
    def _make(db):
        return NodeOrchestrator(db, provider, cipher, aggregator, reboot_window=10)
    return _make


async def _running_node(orchestrator):
    node = await orchestrator.provision(OWNER)
    await orchestrator.poll_metrics(node)
    assert node.status == NodeStatus.RUNNING
    return node


# ── Pure helpers ────────────────────────────────────────────

@pytest.mark.parametrize("state,uptime,expected", [
    ("running", 120, NodeStatus.RUNNING),
    ("running", 0, NodeStatus.PROVISIONING),
    ("installing", None, NodeStatus.PROVISIONING),
    ("stopped", None, NodeStatus.DEGRADED),
    (None, None, NodeStatus.RUNNING),
])
def test_status_from_metrics(state, uptime, expected):
    metrics = NodeMetrics(state=state, uptime_seconds=uptime)
    assert status_from_metrics(metrics, NodeStatus.RUNNING) == expected


def test_scale_message():
    metrics = NodeMetrics(cpu_percent=91.4, ram_percent=77.0, disk_percent=40.2)
    assert scale_message(metrics) == "Client requesting scale. Current: CPU 91%, RAM 77%, DISK 40%"
    assert scale_message(None) == "Client requesting scale. Current: metrics unavailable"


# ── Provision ───────────────────────────────────────────────

@pytest.mark.asyncio
async def test_provision_creates_provisioning_node(db_session, orchestrator_for, provider, aggregator):
    node = await orchestrator_for(db_session).provision(OWNER)
    assert node.status == NodeStatus.PROVISIONING
    assert node.hostname == "aerelion-8d1e4f0a.node"
    assert node.provider_node_id == "vm-8d1e4f0a"
    assert provider.calls == [("create_node", OWNER)]

    messages = [e.message for e in aggregator.snapshot().logs]
    assert messages[0] == "PROVISION_REQUEST"
    assert messages[-1].startswith("PROVISION_SUCCESS")


@pytest.mark.asyncio
async def test_second_provision_is_rejected(db_session, orchestrator_for, provider):
    orchestrator = orchestrator_for(db_session)
    await orchestrator.provision(OWNER)
    with pytest.raises(CoreError) as exc:
        await orchestrator.provision(OWNER)
    assert exc.value.kind == ErrorKind.ALREADY_PROVISIONED
    assert len([c for c in provider.calls if c[0] == "create_node"]) == 1


@pytest.mark.asyncio
async def test_provider_failure_leaves_no_node(db_session, orchestrator_for, provider):
    provider.fail["create_node"] = CoreError(ErrorKind.PROVIDER_REJECTED, "quota exceeded", OWNER)
    orchestrator = orchestrator_for(db_session)
    with pytest.raises(CoreError) as exc:
        await orchestrator.provision(OWNER)
    assert exc.value.kind == ErrorKind.PROVIDER_REJECTED
    assert await orchestrator.get_for_owner(OWNER) is None

    levels = [row.level.value for row in (await db_session.execute(select(AuditLogEntry))).scalars()]
    assert "error" in levels


# ── Metrics ─────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_poll_marks_running_and_records_metrics(db_session, orchestrator_for, aggregator):
    orchestrator = orchestrator_for(db_session)
    node = await _running_node(orchestrator)
    assert node.last_metrics["cpu_percent"] == 42.0
    assert aggregator.latest_metrics(node.id).cpu_percent == 42.0
    assert any(e.message == "NODE_STATUS running" for e in aggregator.snapshot().logs)


@pytest.mark.asyncio
async def test_failed_poll_keeps_status(db_session, orchestrator_for, provider):
    orchestrator = orchestrator_for(db_session)
    node = await _running_node(orchestrator)
    provider.fail["get_metrics"] = CoreError(ErrorKind.PROVIDER_TIMEOUT, "timed out", node.id)
    with pytest.raises(CoreError):
        await orchestrator.poll_metrics(node)
    assert node.status == NodeStatus.RUNNING
    assert node.last_error == "timed out"


@pytest.mark.asyncio
async def test_poller_polls_every_node(session_factory, provider, aggregator, cipher):
    async with session_factory() as db:
        await NodeOrchestrator(db, provider, cipher, aggregator).provision(OWNER)
    poller = MetricsPoller(session_factory, lambda: provider, aggregator, interval=30)
    assert await poller.run_once() == 1

    provider.fail["get_metrics"] = CoreError(ErrorKind.PROVIDER_UNAVAILABLE, "down")
    assert await poller.run_once() == 0


# ── Reboot ──────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_reboot_requires_confirmation(db_session, orchestrator_for, provider):
    orchestrator = orchestrator_for(db_session)
    node = await _running_node(orchestrator)
    now = utcnow()

    armed = await orchestrator.reboot(node, now=now)
    assert armed["armed"] is True and armed["executed"] is False
    assert not any(c[0] == "reboot" for c in provider.calls)

    executed = await orchestrator.reboot(node, now=now + timedelta(seconds=5))
    assert executed["executed"] is True
    assert node.status == NodeStatus.PROVISIONING
    assert node.reboot_armed_until is None
    assert ("reboot", node.provider_node_id) in provider.calls


@pytest.mark.asyncio
async def test_expired_arm_rearms(db_session, orchestrator_for, provider):
    orchestrator = orchestrator_for(db_session)
    node = await _running_node(orchestrator)
    now = utcnow()
    await orchestrator.reboot(node, now=now)
    again = await orchestrator.reboot(node, now=now + timedelta(seconds=30))
    assert again["armed"] is True
    assert not any(c[0] == "reboot" for c in provider.calls)


@pytest.mark.asyncio
async def test_failed_reboot_keeps_status(db_session, orchestrator_for, provider):
    orchestrator = orchestrator_for(db_session)
    node = await _running_node(orchestrator)
    provider.fail["reboot"] = CoreError(ErrorKind.PROVIDER_UNAVAILABLE, "down", node.id)
    now = utcnow()
    await orchestrator.reboot(node, now=now)
    with pytest.raises(CoreError):
        await orchestrator.reboot(node, now=now + timedelta(seconds=1))
    assert node.status == NodeStatus.RUNNING
    assert node.reboot_armed_until is None


@pytest.mark.asyncio
async def test_reboot_while_provisioning_is_rejected(db_session, orchestrator_for):
    orchestrator = orchestrator_for(db_session)
    node = await orchestrator.provision(OWNER)
    with pytest.raises(CoreError) as exc:
        await orchestrator.reboot(node)
    assert exc.value.kind == ErrorKind.INVALID_TRANSITION


# ── Scale & credentials ─────────────────────────────────────

@pytest.mark.asyncio
async def test_scale_request_uses_latest_metrics(db_session, orchestrator_for, provider):
    orchestrator = orchestrator_for(db_session)
    node = await _running_node(orchestrator)
    notification = await orchestrator.request_scale(node)

    assert notification.message == "Client requesting scale. Current: CPU 42%, RAM 61%, DISK 30%"
    assert node.scale_requested_at is not None
    resize = [c for c in provider.calls if c[0] == "request_resize"]
    assert resize == [("request_resize", node.provider_node_id, notification.message)]
    rows = (await db_session.execute(select(AdminNotification))).scalars().all()
    assert len(rows) == 1


@pytest.mark.asyncio
async def test_node_credentials_first_view(db_session, orchestrator_for, provider):
    orchestrator = orchestrator_for(db_session)
    node = await orchestrator.provision(OWNER)
    owner = CurrentUser(id=OWNER)

    first = await orchestrator.reveal_credentials(node, owner)
    second = await orchestrator.reveal_credentials(node, owner)
    assert first["first_view"] is True
    assert second["first_view"] is False
    assert first["credentials"]["service_account"]["username"] == "aerelion"
    assert "node-pass" not in node.encrypted_credentials
    assert len([c for c in provider.calls if c[0] == "get_credential_material"]) == 1


@pytest.mark.asyncio
async def test_node_access_is_owner_scoped(db_session, orchestrator_for):
    orchestrator = orchestrator_for(db_session)
    node = await orchestrator.provision(OWNER)
    with pytest.raises(CoreError) as exc:
        await orchestrator.get_node(node.id, CurrentUser(id="someone-else"))
    assert exc.value.kind == ErrorKind.FORBIDDEN
    assert (await orchestrator.get_node(node.id, CurrentUser(id="ops", is_admin=True))).id == node.id
