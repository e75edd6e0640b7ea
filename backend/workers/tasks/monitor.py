"""
Periodic monitoring of Slack sync jobs.
"""
from __future__ import annotations

import sys
from pathlib import Path

# Ensure backend directory is in Python path for Celery forked workers
_backend_dir = Path(__file__).resolve().parent.parent.parent
if str(_backend_dir) not in sys.path:
    sys.path.insert(0, str(_backend_dir))

import logging
from typing import Any

from workers.celery_app import celery_app
from workers.tasks.sync import run_async

logger = logging.getLogger(__name__)


async def _monitor(notify_admins: bool, cleanup: bool) -> dict[str, Any]:
    from services.redis_client import get_redis_client
    from services.sync_monitor import SyncMonitor
    from services.sync_progress import SyncProgressStore

    redis = await get_redis_client()
    try:
        monitor = SyncMonitor(SyncProgressStore(redis))
        report = await monitor.run_checks(notify=notify_admins)
        removed = await monitor.cleanup() if cleanup else 0
    finally:
        await redis.aclose()

    logger.info(
        "[SyncMonitor] %d failed, %d stuck, %d records cleaned up",
        len(report["failed"]),
        len(report["stuck"]),
        removed,
    )
    return {
        "failed": len(report["failed"]),
        "stuck": len(report["stuck"]),
        "statistics": report["statistics"],
        "notified": report["notified"],
        "cleaned_up": removed,
    }


@celery_app.task(bind=True, name="workers.tasks.monitor.monitor_sync_jobs")
def monitor_sync_jobs(self: Any, notify_admins: bool = False, cleanup: bool = True) -> dict[str, Any]:
    """Beat task: report failed/stuck sync jobs and expire old progress records."""
    logger.info("Task %s: Monitoring Slack sync jobs", self.request.id)
    return run_async(_monitor(notify_admins, cleanup))
