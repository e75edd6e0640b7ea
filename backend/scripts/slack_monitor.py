#!/usr/bin/env python3
"""
Inspect Slack sync jobs: failures, stuck jobs and statistics.

Usage:
    python scripts/slack_monitor.py [--notify-admins] [--cleanup-old] [--stuck-hours 2] [--retention-days 7]
"""
import argparse
import asyncio
import logging
import sys
from datetime import timedelta
from typing import Any

# Add parent directory to path for imports
sys.path.insert(0, str(__file__).rsplit("/scripts", 1)[0])

from models.database import close_db
from services.redis_client import get_redis_client
from services.sync_monitor import SyncMonitor
from services.sync_progress import SyncProgressStore


def _print_jobs(title: str, jobs: list[dict[str, Any]]) -> None:
    print(f"\n{title} ({len(jobs)})")
    if not jobs:
        print("  none")
        return
    print(f"  {'USER':<38} {'JOB':<22} {'STATUS':<20} {'ATTEMPT':<8} ERROR")
    for job in jobs:
        attempt = f"{job.get('attempt', 0)}/{job.get('total_attempts', '?')}"
        error = (job.get("final_error") or job.get("error") or "")[:60]
        print(
            f"  {str(job.get('user_id')):<38} {str(job.get('job_id')):<22} "
            f"{str(job.get('status')):<20} {attempt:<8} {error}"
        )


async def run(args: argparse.Namespace) -> int:
    redis = await get_redis_client()
    try:
        monitor = SyncMonitor(SyncProgressStore(redis))
        failed = await monitor.find_failed()
        stuck = await monitor.find_stuck(timedelta(hours=args.stuck_hours))
        stats = await monitor.statistics()

        _print_jobs("Failed jobs", failed)
        _print_jobs("Stuck jobs", stuck)
        print("\nStatistics")
        for key, value in stats.items():
            print(f"  {key}: {value}")

        if args.notify_admins:
            notified = await monitor.notify_admins(failed)
            print(f"\n✓ Notified admins about {notified} permanently failed jobs")
        if args.cleanup_old:
            removed = await monitor.cleanup(timedelta(days=args.retention_days))
            print(f"\n✓ Removed {removed} progress records older than {args.retention_days} days")
    finally:
        await redis.aclose()
        await close_db()
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(description="Monitor Slack sync jobs")
    parser.add_argument("--notify-admins", action="store_true", help="Notify admins of permanent failures")
    parser.add_argument("--cleanup-old", action="store_true", help="Delete old finished progress records")
    parser.add_argument("--stuck-hours", type=float, default=2.0, help="Running longer than this is stuck (default: 2)")
    parser.add_argument("--retention-days", type=int, default=7, help="Retention for --cleanup-old (default: 7)")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    sys.exit(asyncio.run(run(args)))


if __name__ == "__main__":
    main()
