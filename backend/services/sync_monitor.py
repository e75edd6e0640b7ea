"""
Read-only monitoring over sync progress records.

Lists jobs through the progress index (no key scans), classifies failed and
stuck jobs, aggregates counts and expires old terminal records.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Optional

from sqlalchemy import func, select

from config import settings
from models.database import get_session
from models.user import User
from services.notifications import notify_admins_of_failure
from services.sync_progress import (
    FAILED_STATUSES,
    STATUS_CANCELLED,
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_FAILED_PERMANENTLY,
    STATUS_PENDING,
    STATUS_RUNNING,
    SyncProgressStore,
    parse_iso,
)

logger = logging.getLogger(__name__)


class SyncMonitor:
    def __init__(self, progress: SyncProgressStore) -> None:
        self.progress = progress

    async def find_failed(self) -> list[dict[str, Any]]:
        records = await self.progress.list_all()
        return [r for r in records if r.get("status") in FAILED_STATUSES]

    async def find_stuck(
        self,
        threshold: Optional[timedelta] = None,
        now: Optional[datetime] = None,
    ) -> list[dict[str, Any]]:
        """Running jobs whose ``started_at`` is older than ``threshold`` (default 2h)."""
        threshold = threshold or timedelta(hours=settings.SYNC_STUCK_THRESHOLD_HOURS)
        cutoff = (now or datetime.utcnow()) - threshold
        stuck: list[dict[str, Any]] = []
        for record in await self.progress.list_all():
            if record.get("status") != STATUS_RUNNING:
                continue
            started = parse_iso(record.get("started_at"))
            if started is not None and started < cutoff:
                stuck.append(record)
        return stuck

    async def statistics(self) -> dict[str, int]:
        records = await self.progress.list_all()
        counts = {
            STATUS_PENDING: 0,
            STATUS_RUNNING: 0,
            STATUS_COMPLETED: 0,
            STATUS_FAILED: 0,
            STATUS_FAILED_PERMANENTLY: 0,
            STATUS_CANCELLED: 0,
        }
        for record in records:
            status = record.get("status")
            if status in counts:
                counts[status] += 1

        async with get_session() as session:
            active_users = await session.scalar(
                select(func.count(User.id)).where(
                    User.is_active.is_(True), User.access_token.is_not(None)
                )
            )

        return {
            "total_jobs": len(records),
            "pending": counts[STATUS_PENDING],
            "running": counts[STATUS_RUNNING],
            "completed": counts[STATUS_COMPLETED],
            "failed": counts[STATUS_FAILED],
            "failed_permanently": counts[STATUS_FAILED_PERMANENTLY],
            "cancelled": counts[STATUS_CANCELLED],
            "active_users_with_tokens": int(active_users or 0),
        }

    async def cleanup(
        self,
        retention: Optional[timedelta] = None,
        now: Optional[datetime] = None,
    ) -> int:
        """Delete finished records older than the retention window. Returns the count."""
        retention = retention or timedelta(days=settings.PROGRESS_RETENTION_DAYS)
        cutoff = (now or datetime.utcnow()) - retention
        removed = 0
        for record in await self.progress.list_all():
            if record.get("status") in (STATUS_RUNNING, STATUS_PENDING):
                continue
            finished = parse_iso(
                record.get("completed_at")
                or record.get("failed_permanently_at")
                or record.get("failed_at")
                or record.get("started_at")
            )
            if finished is not None and finished < cutoff:
                await self.progress.delete(str(record["user_id"]), str(record["job_id"]))
                removed += 1
        if removed:
            logger.info("[SyncMonitor] Removed %d progress records older than %s", removed, retention)
        return removed

    async def notify_admins(self, failed_jobs: list[dict[str, Any]]) -> int:
        """Notify admins about permanently failed jobs. Returns jobs notified about."""
        notified = 0
        for job in failed_jobs:
            if job.get("status") != STATUS_FAILED_PERMANENTLY:
                continue
            await notify_admins_of_failure(job)
            notified += 1
        return notified

    async def run_checks(self, *, notify: bool = False) -> dict[str, Any]:
        failed = await self.find_failed()
        stuck = await self.find_stuck()
        stats = await self.statistics()
        for job in stuck:
            logger.warning(
                "[SyncMonitor] Job %s for user %s stuck since %s",
                job.get("job_id"),
                job.get("user_id"),
                job.get("started_at"),
            )
        notified = await self.notify_admins(failed) if notify else 0
        return {
            "failed": failed,
            "stuck": stuck,
            "statistics": stats,
            "notified": notified,
        }
