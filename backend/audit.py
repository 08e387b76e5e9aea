# audit.py — Append-only audit log, mirrored into the telemetry window
import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from models import AuditLogEntry, LogLevel, utcnow
from telemetry_aggregator import LogEntry, TelemetryAggregator

logger = logging.getLogger("aerelion.audit")


def to_log_entry(row: AuditLogEntry) -> LogEntry:
    level = row.level.value if isinstance(row.level, LogLevel) else str(row.level)
    return LogEntry(
        id=row.id,
        created_at=row.created_at,
        function_name=row.function_name,
        level=level,
        message=row.message,
        details=dict(row.details or {}),
        owner_id=row.owner_id,
    )


async def record(
    db: AsyncSession,
    function_name: str,
    level: LogLevel,
    message: str,
    details: Optional[dict] = None,
    owner_id: Optional[str] = None,
    aggregator: Optional[TelemetryAggregator] = None,
) -> AuditLogEntry:
    """Persist one audit entry and publish it once committed."""
    entry = AuditLogEntry(
        created_at=utcnow(),
        function_name=function_name,
        level=level,
        message=message,
        details=details or {},
        owner_id=owner_id,
    )
    db.add(entry)
    await db.commit()
    if aggregator is not None:
        aggregator.append_log(to_log_entry(entry))
    return entry


async def load_recent(db: AsyncSession, aggregator: TelemetryAggregator, limit: int = 200) -> int:
    """Seed the telemetry window from the most recent persisted entries."""
    result = await db.execute(
        select(AuditLogEntry).order_by(AuditLogEntry.created_at.desc()).limit(limit)
    )
    rows = list(reversed(result.scalars().all()))
    accepted = sum(1 for row in rows if aggregator.append_log(to_log_entry(row)))
    logger.info(f"Telemetry window seeded with {accepted} audit entries")
    return accepted
