# telemetry_aggregator.py — System health from heartbeats, audit log and node metrics
"""
Single owner of the in-memory telemetry state:

- latest heartbeat per agent (replace on arrival, no history)
- a bounded window of audit log entries (allow-listed, de-noised, capped),
  plus one window of the same size per owner so scoped views keep their own
  most recent entries
- latest infrastructure metrics per node

All state lives in one immutable ``_State`` value. Every update builds a new
value under a lock and swaps the reference, so readers never observe a
partially applied update and never need the lock themselves. Subscribers
receive a fresh ``TelemetrySnapshot`` after each update.
"""
import logging
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum as PyEnum
from types import MappingProxyType
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Tuple

from fastapi import Request

from freshness import Freshness, classify, is_automated_signal

logger = logging.getLogger("aerelion.telemetry")

DEFAULT_WINDOW_SIZE = 80
DEFAULT_CYCLE = timedelta(hours=2)

ALLOWED_FUNCTIONS = frozenset({
    "node-orchestrator",
    "node-provision",
    "node-metrics",
    "node-credentials",
    "agent-heartbeat",
    "deploy-agent-workflows",
    "agent-auto-heal",
})

NOISE_PATTERNS = ("stripe", "auth", "check-subscription", "customer-portal")


class AgentStatus(str, PyEnum):
    NOMINAL = "NOMINAL"
    PROCESSING = "PROCESSING"
    DRIFT = "DRIFT"
    ERROR = "ERROR"
    OFFLINE = "OFFLINE"


class OverallHealth(str, PyEnum):
    FULLY_OPERATIONAL = "FULLY_OPERATIONAL"
    PARTIAL_DRIFT = "PARTIAL_DRIFT"
    DEGRADED = "DEGRADED"


ONLINE_STATUSES = (AgentStatus.NOMINAL, AgentStatus.PROCESSING)
CRITICAL_STATUSES = (AgentStatus.ERROR, AgentStatus.OFFLINE)


# ============================================================
# VALUES
# ============================================================

@dataclass(frozen=True)
class Heartbeat:
    agent_id: str
    status: AgentStatus
    last_seen: datetime
    message: str = ""
    source: Optional[str] = None


@dataclass(frozen=True)
class LogEntry:
    id: str
    created_at: datetime
    function_name: str
    level: str
    message: str
    details: Mapping = field(default_factory=dict)
    owner_id: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "created_at": self.created_at.isoformat(),
            "function_name": self.function_name,
            "level": self.level,
            "message": self.message,
            "details": dict(self.details),
        }


@dataclass(frozen=True)
class NodeMetrics:
    cpu_percent: Optional[float] = None
    ram_percent: Optional[float] = None
    ram_used_mb: Optional[float] = None
    ram_total_mb: Optional[float] = None
    disk_percent: Optional[float] = None
    disk_used_gb: Optional[float] = None
    disk_total_gb: Optional[float] = None
    network_in_mbps: Optional[float] = None
    network_out_mbps: Optional[float] = None
    uptime_seconds: Optional[int] = None
    state: Optional[str] = None
    sampled_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        data = {k: getattr(self, k) for k in self.__dataclass_fields__}
        data["sampled_at"] = self.sampled_at.isoformat() if self.sampled_at else None
        return data


@dataclass(frozen=True)
class NodeSample:
    node_id: str
    owner_id: Optional[str]
    metrics: NodeMetrics


@dataclass(frozen=True)
class AgentView:
    agent_id: str
    status: AgentStatus
    reported_status: Optional[AgentStatus]
    last_seen: Optional[datetime]
    freshness: Freshness
    automated: bool
    message: str
    source: Optional[str]

    def to_dict(self) -> dict:
        return {
            "agent_id": self.agent_id,
            "status": self.status.value,
            "reported_status": self.reported_status.value if self.reported_status else None,
            "last_seen": self.last_seen.isoformat() if self.last_seen else None,
            "freshness": self.freshness.value,
            "automated": self.automated,
            "message": self.message,
            "source": self.source,
        }


@dataclass(frozen=True)
class HealthRollup:
    overall: OverallHealth
    online: int
    total: int
    counts: Mapping

    @property
    def online_label(self) -> str:
        return f"{self.online}/{self.total}"

    def to_dict(self) -> dict:
        return {
            "overall": self.overall.value,
            "online": self.online,
            "total": self.total,
            "online_label": self.online_label,
            "counts": dict(self.counts),
        }


@dataclass(frozen=True)
class TelemetrySnapshot:
    version: int
    generated_at: datetime
    health: HealthRollup
    agents: Tuple[AgentView, ...]
    logs: Tuple[LogEntry, ...]
    nodes: Tuple[NodeSample, ...]

    def to_dict(self) -> dict:
        return {
            "version": self.version,
            "generated_at": self.generated_at.isoformat(),
            "health": self.health.to_dict(),
            "agents": [a.to_dict() for a in self.agents],
            "logs": [entry.to_dict() for entry in self.logs],
            "nodes": [
                {"node_id": n.node_id, "metrics": n.metrics.to_dict()} for n in self.nodes
            ],
        }


@dataclass(frozen=True)
class _State:
    version: int = 0
    heartbeats: Mapping = field(default_factory=lambda: MappingProxyType({}))
    logs: Tuple[LogEntry, ...] = ()
    owner_logs: Mapping = field(default_factory=lambda: MappingProxyType({}))
    nodes: Mapping = field(default_factory=lambda: MappingProxyType({}))


# ============================================================
# PURE HELPERS
# ============================================================

def is_displayable(function_name: str, message: str) -> bool:
    """Allow-list on function name, then drop noise matched in name or message."""
    if function_name not in ALLOWED_FUNCTIONS:
        return False
    haystack = f"{function_name}\n{message or ''}".lower()
    return not any(pattern in haystack for pattern in NOISE_PATTERNS)


def rollup(statuses: Iterable[AgentStatus]) -> HealthRollup:
    """Strict priority: any ERROR/OFFLINE → DEGRADED, else any DRIFT → PARTIAL_DRIFT."""
    counts: Dict[str, int] = {s.value: 0 for s in AgentStatus}
    total = 0
    for status in statuses:
        counts[AgentStatus(status).value] += 1
        total += 1

    if any(counts[s.value] for s in CRITICAL_STATUSES):
        overall = OverallHealth.DEGRADED
    elif counts[AgentStatus.DRIFT.value]:
        overall = OverallHealth.PARTIAL_DRIFT
    else:
        overall = OverallHealth.FULLY_OPERATIONAL

    online = sum(counts[s.value] for s in ONLINE_STATUSES)
    return HealthRollup(overall=overall, online=online, total=total, counts=MappingProxyType(counts))


# ============================================================
# AGGREGATOR
# ============================================================

class TelemetryAggregator:
    """Merges push and poll telemetry into immutable snapshots."""

    def __init__(
        self,
        cycle_interval: timedelta = DEFAULT_CYCLE,
        stale_after: Optional[timedelta] = None,
        window_size: int = DEFAULT_WINDOW_SIZE,
        expected_agents: Iterable[str] = (),
    ):
        self.cycle_interval = cycle_interval
        self.stale_after = stale_after or cycle_interval
        self.window_size = window_size
        self.expected_agents = tuple(expected_agents)
        self._state = _State()
        self._lock = threading.Lock()
        self._subscribers: List[Callable[[TelemetrySnapshot], None]] = []

    # ── Updates ─────────────────────────────────────────────

    def record_heartbeat(self, heartbeat: Heartbeat) -> TelemetrySnapshot:
        with self._lock:
            beats = dict(self._state.heartbeats)
            beats[heartbeat.agent_id] = heartbeat
            self._state = replace(
                self._state,
                version=self._state.version + 1,
                heartbeats=MappingProxyType(beats),
            )
        return self._publish()

    def append_log(self, entry: LogEntry) -> bool:
        """Add an entry to the window. Returns False when filtered out."""
        if not is_displayable(entry.function_name, entry.message):
            return False
        with self._lock:
            owner_logs = self._state.owner_logs
            if entry.owner_id is not None:
                scoped = dict(owner_logs)
                scoped[entry.owner_id] = self._capped(owner_logs.get(entry.owner_id, ()), entry)
                owner_logs = MappingProxyType(scoped)
            self._state = replace(
                self._state,
                version=self._state.version + 1,
                logs=self._capped(self._state.logs, entry),
                owner_logs=owner_logs,
            )
        self._publish()
        return True

    def _capped(self, window: Tuple[LogEntry, ...], entry: LogEntry) -> Tuple[LogEntry, ...]:
        kept = window[-(self.window_size - 1):] if self.window_size > 1 else ()
        return kept + (entry,)

    def record_metrics(self, node_id: str, metrics: NodeMetrics, owner_id: Optional[str] = None) -> TelemetrySnapshot:
        with self._lock:
            nodes = dict(self._state.nodes)
            nodes[node_id] = NodeSample(node_id=node_id, owner_id=owner_id, metrics=metrics)
            self._state = replace(
                self._state,
                version=self._state.version + 1,
                nodes=MappingProxyType(nodes),
            )
        return self._publish()

    # ── Reads ───────────────────────────────────────────────

    def latest_metrics(self, node_id: str) -> Optional[NodeMetrics]:
        sample = self._state.nodes.get(node_id)
        return sample.metrics if sample else None

    def agent_view(self, agent_id: str, heartbeat: Optional[Heartbeat], now: datetime) -> AgentView:
        last_seen = heartbeat.last_seen if heartbeat else None
        fresh = classify(last_seen, self.cycle_interval, self.stale_after, now=now)
        reported = heartbeat.status if heartbeat else None
        if fresh in (Freshness.EXPIRED, Freshness.NO_SIGNAL):
            effective = AgentStatus.OFFLINE
        else:
            effective = reported
        return AgentView(
            agent_id=agent_id,
            status=effective,
            reported_status=reported,
            last_seen=last_seen,
            freshness=fresh,
            automated=is_automated_signal(last_seen, self.stale_after, now=now),
            message=heartbeat.message if heartbeat else "",
            source=heartbeat.source if heartbeat else None,
        )

    def snapshot(self, owner_id: Optional[str] = None, now: Optional[datetime] = None) -> TelemetrySnapshot:
        """Snapshot of the current state, optionally scoped to one owner's logs and nodes."""
        state = self._state
        now = now or datetime.now(timezone.utc)

        agent_ids = list(self.expected_agents)
        agent_ids += sorted(a for a in state.heartbeats if a not in self.expected_agents)
        agents = tuple(self.agent_view(a, state.heartbeats.get(a), now) for a in agent_ids)

        logs = state.logs
        nodes = tuple(state.nodes.values())
        if owner_id is not None:
            logs = state.owner_logs.get(owner_id, ())
            nodes = tuple(n for n in nodes if n.owner_id == owner_id)

        return TelemetrySnapshot(
            version=state.version,
            generated_at=now,
            health=rollup(a.status for a in agents),
            agents=agents,
            logs=logs,
            nodes=nodes,
        )

    # ── Subscriptions ───────────────────────────────────────

    def subscribe(self, callback: Callable[[TelemetrySnapshot], None]) -> Callable[[], None]:
        """Register for snapshots after every update. Returns an unsubscribe function."""
        with self._lock:
            self._subscribers = self._subscribers + [callback]

        def _unsubscribe():
            with self._lock:
                self._subscribers = [cb for cb in self._subscribers if cb is not callback]
        return _unsubscribe

    def _publish(self) -> TelemetrySnapshot:
        snap = self.snapshot()
        for callback in self._subscribers:
            try:
                callback(snap)
            except Exception as e:
                logger.error(f"Telemetry subscriber failed: {e}", exc_info=True)
        return snap


def get_aggregator(request: Request) -> TelemetryAggregator:
    """Dependency returning the application's aggregator (FastAPI Depends)"""
    return request.app.state.aggregator
