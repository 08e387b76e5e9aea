# nodes.py — Compute node lifecycle: provision, reboot, scale, status polling
"""
Node status moves absent → provisioning → running, and back to provisioning
on reboot. A node is never marked running on the strength of a provider call
alone: only a metrics poll that shows the machine up and with uptime does
that. A failed or timed-out provider call leaves the recorded status as it
was and the next poll decides.
"""
import asyncio
import logging
import os
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

import audit
from auth import CurrentUser
from encryption import CredentialCipher
from errors import CoreError, ErrorKind
from freshness import classify
from infra_provider import HostingerProvider
from models import AdminNotification, ComputeNode, LogLevel, NodeStatus, utcnow
from telemetry import span
from telemetry_aggregator import NodeMetrics, TelemetryAggregator

logger = logging.getLogger("aerelion.nodes")

REBOOT_CONFIRM_WINDOW_SECONDS = int(os.getenv("REBOOT_CONFIRM_WINDOW_SECONDS", "10"))
METRICS_POLL_SECONDS = int(os.getenv("METRICS_POLL_SECONDS", "30"))

PROVISIONING_STATES = {"initial", "creating", "installing", "starting", "restarting", "booting", "recovery"}


def _aware(ts: Optional[datetime]) -> Optional[datetime]:
    if ts is not None and ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts


def status_from_metrics(metrics: NodeMetrics, current: NodeStatus) -> NodeStatus:
    """Recorded status implied by a successful metrics read."""
    state = (metrics.state or "").lower()
    if state == "running":
        return NodeStatus.PROVISIONING if metrics.uptime_seconds == 0 else NodeStatus.RUNNING
    if state in PROVISIONING_STATES:
        return NodeStatus.PROVISIONING
    if state:
        return NodeStatus.DEGRADED
    return current


def scale_message(metrics: Optional[NodeMetrics]) -> str:
    if metrics is None or metrics.cpu_percent is None:
        return "Client requesting scale. Current: metrics unavailable"

    def pct(v):
        return f"{v:.0f}%" if v is not None else "n/a"
    return (
        f"Client requesting scale. Current: CPU {pct(metrics.cpu_percent)}, "
        f"RAM {pct(metrics.ram_percent)}, DISK {pct(metrics.disk_percent)}"
    )


def node_out(node: Optional[ComputeNode], poll_interval: int = METRICS_POLL_SECONDS) -> dict:
    if node is None:
        return {"status": "absent"}
    return {
        "id": node.id,
        "owner_id": node.owner_id,
        "status": NodeStatus(node.status).value,
        "hostname": node.hostname,
        "ip_address": node.ip_address,
        "region": node.region,
        "plan": node.plan,
        "agents_deployed": bool(node.agents_deployed),
        "credentials_viewed_at": node.credentials_viewed_at.isoformat() if node.credentials_viewed_at else None,
        "reboot_armed_until": node.reboot_armed_until.isoformat() if node.reboot_armed_until else None,
        "scale_requested_at": node.scale_requested_at.isoformat() if node.scale_requested_at else None,
        "metrics": node.last_metrics,
        "metrics_freshness": classify(node.last_metrics_at, timedelta(seconds=poll_interval)).value,
        "updated_at": node.updated_at.isoformat() if node.updated_at else None,
    }


class NodeOrchestrator:

    def __init__(
        self,
        db: AsyncSession,
        provider: HostingerProvider,
        cipher: Optional[CredentialCipher] = None,
        aggregator: Optional[TelemetryAggregator] = None,
        reboot_window: int = REBOOT_CONFIRM_WINDOW_SECONDS,
    ):
        self.db = db
        self.provider = provider
        self.cipher = cipher
        self.aggregator = aggregator
        self.reboot_window = timedelta(seconds=reboot_window)

    async def _audit(self, function_name: str, level: LogLevel, message: str, node_owner: str, **details):
        await audit.record(
            self.db, function_name, level, message,
            details=details, owner_id=node_owner, aggregator=self.aggregator,
        )

    # ── Lookup ──────────────────────────────────────────────

    async def get_for_owner(self, owner_id: str) -> Optional[ComputeNode]:
        result = await self.db.execute(select(ComputeNode).where(ComputeNode.owner_id == owner_id))
        return result.scalar_one_or_none()

    async def get_node(self, node_id: str, requester: CurrentUser) -> ComputeNode:
        result = await self.db.execute(select(ComputeNode).where(ComputeNode.id == node_id))
        node = result.scalar_one_or_none()
        if not node:
            raise CoreError(ErrorKind.NOT_FOUND, "Node not found", node_id)
        if not requester.is_admin and node.owner_id != requester.id:
            raise CoreError(ErrorKind.FORBIDDEN, "You do not have access to this node", node_id)
        return node

    # ── Provision ───────────────────────────────────────────

    async def provision(self, owner_id: str) -> ComputeNode:
        if await self.get_for_owner(owner_id):
            raise CoreError(ErrorKind.ALREADY_PROVISIONED, "A node is already provisioned for this account", owner_id)

        await self._audit("node-provision", LogLevel.INFO, "PROVISION_REQUEST", owner_id)
        try:
            with span("node.provision", owner_id=owner_id):
                handle = await self.provider.create_node(owner_id)
        except CoreError as e:
            await self._audit("node-provision", LogLevel.ERROR, f"PROVISION_FAILED {e.kind.value}", owner_id)
            raise

        node = ComputeNode(
            owner_id=owner_id,
            provider_node_id=handle.provider_node_id,
            status=NodeStatus.PROVISIONING,
            label=handle.label,
            hostname=handle.hostname,
            ip_address=handle.ip_address,
            region=handle.region,
            plan=handle.plan,
        )
        self.db.add(node)
        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            logger.error(
                f"Concurrent provision for owner {owner_id[:8]}; provider node "
                f"{handle.provider_node_id} is orphaned and needs manual cleanup"
            )
            raise CoreError(ErrorKind.ALREADY_PROVISIONED, "A node is already provisioned for this account", owner_id)
        await self.db.refresh(node)

        logger.info(f"Node {node.id[:8]} provisioning for owner {owner_id[:8]} ({handle.provider_node_id})")
        await self._audit(
            "node-provision", LogLevel.INFO, f"PROVISION_SUCCESS {handle.hostname}", owner_id,
            node_id=node.id, provider_node_id=handle.provider_node_id,
        )
        return node

    # ── Reboot ──────────────────────────────────────────────

    async def reboot(self, node: ComputeNode, now: Optional[datetime] = None) -> dict:
        """First call arms, a second call inside the window executes."""
        now = now or utcnow()
        if node.status == NodeStatus.PROVISIONING:
            raise CoreError(ErrorKind.INVALID_TRANSITION, "Node is still provisioning", node.id)

        armed_until = _aware(node.reboot_armed_until)
        if armed_until is None or now > armed_until:
            node.reboot_armed_until = now + self.reboot_window
            await self.db.commit()
            logger.info(f"Reboot armed for node {node.id[:8]}")
            return {
                "armed": True,
                "executed": False,
                "expires_at": node.reboot_armed_until.isoformat(),
                "status": NodeStatus(node.status).value,
            }

        # The arm is consumed whether or not the provider call succeeds
        node.reboot_armed_until = None
        try:
            await self.provider.reboot(node.provider_node_id)
        except CoreError as e:
            await self.db.commit()
            await self._audit(
                "node-orchestrator", LogLevel.ERROR, f"NODE_REBOOT failed: {e.kind.value}",
                node.owner_id, node_id=node.id,
            )
            raise

        node.status = NodeStatus.PROVISIONING
        node.last_reboot_at = now
        await self.db.commit()
        await self._audit("node-orchestrator", LogLevel.WARN, "NODE_REBOOT", node.owner_id, node_id=node.id)
        return {
            "armed": False,
            "executed": True,
            "expires_at": None,
            "status": NodeStatus.PROVISIONING.value,
        }

    # ── Scale ───────────────────────────────────────────────

    async def request_scale(self, node: ComputeNode, metrics: Optional[NodeMetrics] = None) -> AdminNotification:
        """File a scale request justified by the latest metrics. The outcome arrives out of band."""
        if metrics is None and self.aggregator is not None:
            metrics = self.aggregator.latest_metrics(node.id)
        if metrics is None and node.last_metrics:
            metrics = NodeMetrics(**{k: v for k, v in node.last_metrics.items() if k != "sampled_at"})
        message = scale_message(metrics)

        await self.provider.request_resize(node.provider_node_id, message)

        notification = AdminNotification(
            kind="scale_request",
            title=f"Scale request for {node.hostname or node.id[:8]}",
            message=message,
            owner_id=node.owner_id,
            node_id=node.id,
            details={"metrics": metrics.to_dict() if metrics else None},
        )
        self.db.add(notification)
        node.scale_requested_at = utcnow()
        await self.db.commit()
        await self.db.refresh(notification)
        await self._audit("node-orchestrator", LogLevel.WARN, f"SCALE_REQUEST {message}", node.owner_id, node_id=node.id)
        return notification

    # ── Metrics ─────────────────────────────────────────────

    async def poll_metrics(self, node: ComputeNode) -> NodeMetrics:
        try:
            metrics = await self.provider.get_metrics(node.provider_node_id)
        except CoreError as e:
            node.last_error = e.message
            await self.db.commit()
            logger.warning(f"Metrics poll failed for node {node.id[:8]}: {e.kind.value}")
            raise

        previous = NodeStatus(node.status)
        current = status_from_metrics(metrics, previous)
        node.status = current
        node.last_metrics = metrics.to_dict()
        node.last_metrics_at = metrics.sampled_at or utcnow()
        node.last_error = None
        await self.db.commit()

        if current != previous:
            logger.info(f"Node {node.id[:8]}: {previous.value} → {current.value}")
            await self._audit(
                "node-metrics", LogLevel.WARN if current == NodeStatus.DEGRADED else LogLevel.INFO,
                f"NODE_STATUS {current.value}", node.owner_id, node_id=node.id, previous=previous.value,
            )
        if self.aggregator is not None:
            self.aggregator.record_metrics(node.id, metrics, owner_id=node.owner_id)
        return metrics

    # ── Credentials ─────────────────────────────────────────

    async def reveal_credentials(self, node: ComputeNode, requester: CurrentUser) -> dict:
        if self.cipher is None or not self.cipher.configured:
            raise CoreError(ErrorKind.ENCRYPTION_FAILURE, "Credential encryption is not configured", node.id)

        if not node.encrypted_credentials:
            material = await self.provider.get_credential_material(node.provider_node_id)
            node.encrypted_credentials, node.credentials_iv = self.cipher.encrypt(material)
            await self.db.commit()
        material = self.cipher.decrypt(node.encrypted_credentials, node.credentials_iv)

        stamped = await self.db.execute(
            update(ComputeNode)
            .where(ComputeNode.id == node.id, ComputeNode.credentials_viewed_at.is_(None))
            .values(credentials_viewed_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        first_view = stamped.rowcount == 1
        await self.db.commit()
        await self.db.refresh(node)

        await self._audit(
            "node-credentials", LogLevel.INFO, "CREDENTIAL_READ", node.owner_id,
            node_id=node.id, reader=requester.id, first_view=first_view,
        )
        return {
            "node_id": node.id,
            "hostname": node.hostname,
            "ip_address": node.ip_address,
            "first_view": first_view,
            "credentials_viewed_at": node.credentials_viewed_at.isoformat() if node.credentials_viewed_at else None,
            "credentials": material,
        }


# ============================================================
# BACKGROUND METRICS POLLER
# ============================================================

class MetricsPoller:
    """Polls every live node on a fixed cadence.

    Nodes are polled one after another; a cycle that overruns the interval
    finishes before the next one starts, so polls never overlap.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        provider_factory: Callable[[], HostingerProvider],
        aggregator: Optional[TelemetryAggregator] = None,
        interval: int = METRICS_POLL_SECONDS,
    ):
        self.session_factory = session_factory
        self.provider_factory = provider_factory
        self.aggregator = aggregator
        self.interval = interval
        self._task: Optional[asyncio.Task] = None

    async def run_once(self) -> int:
        polled = 0
        async with self.session_factory() as db:
            result = await db.execute(
                select(ComputeNode).where(ComputeNode.provider_node_id.isnot(None))
            )
            nodes = result.scalars().all()
            orchestrator = NodeOrchestrator(db, self.provider_factory(), aggregator=self.aggregator)
            for node in nodes:
                try:
                    await orchestrator.poll_metrics(node)
                    polled += 1
                except CoreError:
                    continue
        return polled

    async def _loop(self):
        loop = asyncio.get_running_loop()
        while True:
            started = loop.time()
            try:
                count = await self.run_once()
                logger.debug(f"Metrics poll complete: {count} node(s)")
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Metrics poll cycle failed: {e}", exc_info=True)
            await asyncio.sleep(max(0.0, self.interval - (loop.time() - started)))

    def start(self):
        if self._task is None:
            self._task = asyncio.create_task(self._loop(), name="metrics-poller")
            logger.info(f"Metrics poller started ({self.interval}s)")

    async def stop(self):
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
            logger.info("Metrics poller stopped")
