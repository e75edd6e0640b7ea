#!/usr/bin/env python3
"""
Trigger Slack synchronization.

Usage:
    python scripts/slack_sync.py [--scope all|dm|users|members|files] [options]

Examples:
    python scripts/slack_sync.py                                   # queue incremental sync for every user
    python scripts/slack_sync.py --user-id <uuid> --full --sync    # full sync inline for one user
    python scripts/slack_sync.py --scope dm --user-id <uuid> --dry-run
    python scripts/slack_sync.py --scope users --workspace-id <uuid>
    python scripts/slack_sync.py --scope members --types im,mpim
    python scripts/slack_sync.py --scope files --user-id <uuid> --limit 50 --no-thumbnails
    python scripts/slack_sync.py --cancel <job_id> --user-id <uuid>       # stop a queued or running job
"""
import argparse
import asyncio
import logging
import sys
import uuid
from typing import Any, Optional

# Add parent directory to path for imports
sys.path.insert(0, str(__file__).rsplit("/scripts", 1)[0])

from sqlalchemy import select

from config import log_missing_env_vars
from connectors.slack import MissingTokenError, SlackError
from models.database import close_db, get_session
from models.user import User
from models.workspace import Workspace
from services.redis_client import get_redis_client
from services.slack_directory import SyncScope
from services.sync_orchestrator import (
    SyncJobRequest,
    cancel_job,
    execute_sync_job,
    new_job_id,
    run_directory_scope,
    scope_token,
)
from services.sync_progress import SyncProgressStore

logger = logging.getLogger("slack_sync")


async def _load_users(user_id: Optional[str], workspace_id: Optional[str]) -> list[User]:
    async with get_session() as session:
        if user_id:
            user = await session.get(User, uuid.UUID(user_id))
            return [user] if user is not None else []
        query = select(User).where(User.is_active.is_(True), User.access_token.is_not(None))
        if workspace_id:
            query = query.where(User.workspace_id == uuid.UUID(workspace_id))
        result = await session.execute(query)
        return list(result.scalars().all())


async def _resolve_workspace(workspace_id: Optional[str], user: Optional[User]) -> Optional[Workspace]:
    async with get_session() as session:
        if workspace_id:
            return await session.get(Workspace, uuid.UUID(workspace_id))
        if user is not None and user.workspace_id is not None:
            return await session.get(Workspace, user.workspace_id)
        result = await session.execute(select(Workspace).limit(2))
        workspaces = list(result.scalars().all())
        return workspaces[0] if len(workspaces) == 1 else None


def _print_summary(user: User, outcome: dict[str, Any]) -> None:
    summary = outcome.get("summary") or {}
    print(f"{user.name} ({user.slack_user_id}): {outcome['status']}")
    if summary:
        print(
            f"  channels: {summary['successful_channels']}/{summary['total_channels']} ok, "
            f"messages saved: {summary['total_messages']}, time: {summary['execution_time']}s"
        )
        for name in summary.get("failed_channel_names") or []:
            print(f"  failed: {name}")


async def run_message_sync(args: argparse.Namespace, scope: SyncScope) -> int:
    from workers.tasks.sync import dispatch_user_sync

    users = await _load_users(args.user_id, args.workspace_id)
    if not users:
        print("Error: no active users with Slack tokens found")
        return 1

    channel_ids = [c.strip() for c in args.channels.split(",") if c.strip()] if args.channels else None
    if args.limit:
        users = users[: args.limit]

    redis = await get_redis_client()
    try:
        for user in users:
            if user.workspace_id is None:
                print(f"Skipping {user.name}: no workspace")
                continue
            if not args.sync and not args.dry_run:
                result = await dispatch_user_sync(
                    redis,
                    str(user.id),
                    str(user.workspace_id),
                    channel_ids=channel_ids,
                    full_sync=args.full,
                    scope=scope.value,
                )
                print(f"{user.name}: {result['status']} (job {result['job_id']})")
                continue

            request = SyncJobRequest(
                user_id=str(user.id),
                workspace_id=str(user.workspace_id),
                job_id=new_job_id(),
                channel_ids=channel_ids,
                full_sync=args.full,
                scope=scope,
                dry_run=args.dry_run,
            )
            await SyncProgressStore(redis).create_pending(
                request.user_id,
                request.job_id,
                request.workspace_id,
                full_sync=args.full,
                sync_type=scope.value,
            )
            outcome = await execute_sync_job(redis, request)
            _print_summary(user, outcome)
    finally:
        await redis.aclose()
    return 0


async def run_scope(args: argparse.Namespace, scope: SyncScope) -> int:
    from workers.tasks.sync import sync_slack_scope

    users = await _load_users(args.user_id, None) if args.user_id else []
    user = users[0] if users else None
    workspace = await _resolve_workspace(args.workspace_id, user)
    if workspace is None:
        print("Error: workspace not found; pass --workspace-id")
        return 1

    try:
        token = scope_token(scope, user, workspace)
    except MissingTokenError as exc:
        print(f"Error: {exc}")
        return 1

    options = {
        "types": args.types,
        "limit": args.limit,
        "force": args.force,
        "download": not args.no_download,
        "thumbnails": not args.no_thumbnails,
        "dry_run": args.dry_run,
    }
    if not args.sync and not args.dry_run:
        result = sync_slack_scope.delay(
            scope.value, str(workspace.id), str(user.id) if user else None, options
        )
        print(f"Queued {scope.value} sync (task {result.id})")
        return 0

    stats = await run_directory_scope(
        scope,
        token=token,
        workspace=workspace,
        user=user,
        types=args.types,
        limit=args.limit,
        force=args.force,
        download=not args.no_download,
        thumbnails=not args.no_thumbnails,
        dry_run=args.dry_run,
    )
    prefix = "[dry run] " if args.dry_run else ""
    print(f"{prefix}{scope.value} sync complete:")
    for key, value in stats.items():
        print(f"  {key}: {value}")
    return 0


async def run_cancel(args: argparse.Namespace) -> int:
    if not args.user_id:
        print("Error: --cancel needs --user-id")
        return 1
    redis = await get_redis_client()
    try:
        result = await cancel_job(redis, args.user_id, args.cancel)
    finally:
        await redis.aclose()
    print(f"Job {args.cancel}: {result['status']}")
    return 0 if result["status"] == "cancellation_requested" else 1


async def main_async(args: argparse.Namespace) -> int:
    scope = SyncScope(args.scope)
    try:
        if args.cancel:
            return await run_cancel(args)
        if scope.syncs_messages:
            return await run_message_sync(args, scope)
        return await run_scope(args, scope)
    except (MissingTokenError, SlackError) as exc:
        print(f"Error: {exc}")
        return 1
    finally:
        await close_db()


def main() -> None:
    parser = argparse.ArgumentParser(description="Synchronize Slack data into the archive")
    parser.add_argument(
        "--scope",
        choices=[s.value for s in SyncScope],
        default=SyncScope.ALL.value,
        help="What to sync (default: all)",
    )
    parser.add_argument("--user-id", help="Archive user UUID to sync as")
    parser.add_argument("--workspace-id", help="Workspace UUID")
    parser.add_argument("--channels", help="Comma-separated Slack channel ids (C1,C2)")
    parser.add_argument("--full", action="store_true", help="Re-fetch entire history")
    parser.add_argument("--dry-run", action="store_true", help="Fetch and count without writing")
    parser.add_argument("--force", action="store_true", help="Re-process files already archived")
    parser.add_argument("--limit", type=int, help="Max users (message scopes) or files to process")
    parser.add_argument("--types", help="Conversation types for members, file types for files")
    parser.add_argument("--no-download", action="store_true", help="Record files without downloading")
    parser.add_argument("--no-thumbnails", action="store_true", help="Skip thumbnail generation")
    parser.add_argument("--sync", action="store_true", help="Run inline instead of enqueueing")
    parser.add_argument("--cancel", metavar="JOB_ID", help="Cancel a queued or running job (needs --user-id)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    log_missing_env_vars(logging.getLogger("config"))
    sys.exit(asyncio.run(main_async(args)))


if __name__ == "__main__":
    main()
