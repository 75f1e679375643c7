import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from taskrelay.commands.queue_snapshot import queue_snapshot
from taskrelay.domain.models import QueueSnapshot
from taskrelay.services.outbox import purge_expired_events
from taskrelay.api.v1.metrics import QUEUE_DEPTH
from taskrelay.settings import settings

logger = logging.getLogger(__name__)

def backlog_level(snapshot: QueueSnapshot) -> Optional[str]:
    if snapshot.backlog >= settings.JOB_BACKLOG_CRITICAL_THRESHOLD:
        return "critical"
    if snapshot.backlog >= settings.JOB_BACKLOG_WARN_THRESHOLD:
        return "warn"
    return None

def report_backlog(snapshot: QueueSnapshot) -> Optional[str]:
    level = backlog_level(snapshot)
    if level is None:
        return None
    log = logger.error if level == "critical" else logger.warning
    log(
        "Job backlog %s level=%s (ready=%s delayed=%s running=%s failed_24h=%s)",
        snapshot.backlog, level, snapshot.queued_ready, snapshot.queued_delayed,
        snapshot.running, snapshot.failed_last_24h,
    )
    return level

async def run_leader_tasks(session: AsyncSession) -> QueueSnapshot:
    """
    Leader-only maintenance:
    1. Delete domain events past their retention
    2. Report the job backlog against the warn/critical thresholds
    """
    await purge_expired_events(session)
    await session.commit()

    snapshot = await queue_snapshot(session)
    report_backlog(snapshot)
    return snapshot

async def run_metrics_tasks(session: AsyncSession) -> QueueSnapshot:
    """Refreshes queue depth gauges. Runs on every instance so /metrics is current everywhere."""
    snapshot = await queue_snapshot(session)
    QUEUE_DEPTH.labels(status="queued_ready").set(snapshot.queued_ready)
    QUEUE_DEPTH.labels(status="queued_delayed").set(snapshot.queued_delayed)
    QUEUE_DEPTH.labels(status="running").set(snapshot.running)
    QUEUE_DEPTH.labels(status="failed_last_24h").set(snapshot.failed_last_24h)
    return snapshot
