"""
Slack sync tasks for Celery workers.

These tasks run message sync jobs per (user, workspace), cancel them, fan out the hourly
sync, and run the directory scopes (users, members, files) on demand.
"""
from __future__ import annotations

import sys
from pathlib import Path

# Ensure backend directory is in Python path for Celery forked workers
_backend_dir = Path(__file__).resolve().parent.parent.parent
if str(_backend_dir) not in sys.path:
    sys.path.insert(0, str(_backend_dir))

import asyncio
import logging
import uuid
from typing import Any, Optional

from celery.exceptions import SoftTimeLimitExceeded

from config import settings
from workers.celery_app import celery_app

logger = logging.getLogger(__name__)


def run_async(coro: Any) -> Any:
    """Run an async function in a sync context (for Celery tasks).

    Creates a fresh event loop and disposes any existing database connections
    to avoid 'Future attached to different loop' errors with asyncpg.
    """
    from models.database import dispose_engine

    # Pooled connections are tied to a previous (closed) event loop
    dispose_engine()

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


def _describe_failure(exc: BaseException) -> str:
    if isinstance(exc, SoftTimeLimitExceeded):
        return f"Job exceeded its time limit ({settings.SYNC_SOFT_TIME_LIMIT_SECONDS}s)"
    return str(exc) or type(exc).__name__


async def dispatch_user_sync(
    redis: Any,
    user_id: str,
    workspace_id: str,
    *,
    channel_ids: Optional[list[str]] = None,
    full_sync: bool = False,
    scope: str = "all",
    refresh_directory: bool = True,
    countdown: Optional[int] = None,
) -> dict[str, Any]:
    """
    Enqueue a message sync job for (user, workspace).

    A pair that already has a queued or running job collapses onto it.
    """
    from services.slack_directory import SyncScope
    from services.sync_control import claim_dispatch
    from services.sync_orchestrator import SyncJobRequest, new_job_id, sync_task_id
    from services.sync_progress import SyncProgressStore

    job_id = new_job_id()
    claimed = await claim_dispatch(redis, user_id, workspace_id, job_id)
    if claimed != job_id:
        logger.info(
            "[SyncJob] User %s workspace %s already has job %s queued, not dispatching",
            user_id,
            workspace_id,
            claimed,
        )
        return {"status": "already_queued", "job_id": claimed, "user_id": user_id}

    await SyncProgressStore(redis).create_pending(
        user_id,
        job_id,
        workspace_id,
        full_sync=full_sync,
        sync_type=scope,
    )
    request = SyncJobRequest(
        user_id=user_id,
        workspace_id=workspace_id,
        job_id=job_id,
        channel_ids=channel_ids,
        full_sync=full_sync,
        scope=SyncScope(scope),
        refresh_directory=refresh_directory,
    )
    task_id = sync_task_id(user_id, workspace_id, job_id)
    sync_slack_messages.apply_async(
        kwargs=request.to_kwargs(),
        task_id=task_id,
        countdown=countdown,
    )
    logger.info("[SyncJob] Dispatched job %s for user %s (task %s)", job_id, user_id, task_id)
    return {"status": "queued", "job_id": job_id, "task_id": task_id, "user_id": user_id}


async def _run_sync_job(job: dict[str, Any], attempt: int) -> dict[str, Any]:
    from services.redis_client import get_redis_client
    from services.sync_orchestrator import SyncJobRequest, execute_sync_job

    redis = await get_redis_client()
    try:
        return await execute_sync_job(redis, SyncJobRequest.from_kwargs(job), attempt=attempt)
    finally:
        await redis.aclose()


async def _record_failure(job: dict[str, Any], error: str, attempt: int, max_attempts: int) -> dict[str, Any]:
    from services.redis_client import get_redis_client
    from services.sync_orchestrator import SyncJobRequest, record_job_failure

    redis = await get_redis_client()
    try:
        return await record_job_failure(
            redis,
            SyncJobRequest.from_kwargs(job),
            error,
            attempt=attempt,
            max_attempts=max_attempts,
        )
    finally:
        await redis.aclose()


@celery_app.task(
    bind=True,
    name="workers.tasks.sync.sync_slack_messages",
    max_retries=settings.SYNC_MAX_ATTEMPTS - 1,
    default_retry_delay=settings.SYNC_RETRY_DELAY_SECONDS,
)
def sync_slack_messages(self: Any, **job: Any) -> dict[str, Any]:
    """
    Celery task running one (user, workspace) message sync job.

    Failures are retried with a fixed countdown; the final failure marks the
    job failed_permanently and notifies admins.
    """
    attempt = self.request.retries + 1
    max_attempts = self.max_retries + 1
    logger.info(
        "Task %s: Slack sync job %s for user %s (attempt %d/%d)",
        self.request.id,
        job.get("job_id"),
        job.get("user_id"),
        attempt,
        max_attempts,
    )
    try:
        return run_async(_run_sync_job(job, attempt))
    except Exception as exc:
        run_async(_record_failure(job, _describe_failure(exc), attempt, max_attempts))
        if attempt < max_attempts:
            raise self.retry(exc=exc, countdown=settings.SYNC_RETRY_DELAY_SECONDS)
        raise


async def _cancel(user_id: str, job_id: str) -> dict[str, Any]:
    from services.redis_client import get_redis_client
    from services.sync_orchestrator import cancel_job

    redis = await get_redis_client()
    try:
        return await cancel_job(redis, user_id, job_id)
    finally:
        await redis.aclose()


@celery_app.task(bind=True, name="workers.tasks.sync.cancel_sync_job")
def cancel_sync_job(self: Any, user_id: str, job_id: str) -> dict[str, Any]:
    """Flag a sync job for cancellation; it stops at its next checkpoint."""
    logger.info("Task %s: Cancelling Slack sync job %s for user %s", self.request.id, job_id, user_id)
    return run_async(_cancel(user_id, job_id))


async def _active_sync_targets() -> list[tuple[str, str]]:
    """(user_id, workspace_id) for every active user holding a token."""
    from sqlalchemy import select
    from models.database import get_session
    from models.user import User

    async with get_session() as session:
        result = await session.execute(
            select(User.id, User.workspace_id).where(
                User.is_active.is_(True),
                User.access_token.is_not(None),
                User.workspace_id.is_not(None),
            )
        )
        return [(str(user_id), str(workspace_id)) for user_id, workspace_id in result.all()]


async def _dispatch_all(full_sync: bool) -> dict[str, Any]:
    from services.redis_client import get_redis_client

    targets = await _active_sync_targets()
    redis = await get_redis_client()
    dispatched: list[dict[str, Any]] = []
    try:
        for index, (user_id, workspace_id) in enumerate(targets):
            dispatched.append(
                await dispatch_user_sync(
                    redis,
                    user_id,
                    workspace_id,
                    full_sync=full_sync,
                    countdown=index * settings.SYNC_DISPATCH_STAGGER_SECONDS,
                )
            )
    finally:
        await redis.aclose()

    queued = sum(1 for d in dispatched if d["status"] == "queued")
    logger.info(
        "[SyncJob] Dispatched %d sync jobs (%d already queued) for %d users",
        queued,
        len(dispatched) - queued,
        len(targets),
    )
    return {"total_users": len(targets), "queued": queued, "jobs": dispatched}


@celery_app.task(bind=True, name="workers.tasks.sync.dispatch_all_user_syncs")
def dispatch_all_user_syncs(self: Any, full_sync: bool = False) -> dict[str, Any]:
    """Hourly beat task: staggered incremental sync for all active users with tokens."""
    logger.info("Task %s: Dispatching Slack sync for all users", self.request.id)
    return run_async(_dispatch_all(full_sync))


async def _run_scope(
    scope: str,
    workspace_id: str,
    user_id: Optional[str],
    options: dict[str, Any],
) -> dict[str, Any]:
    from models.database import get_session
    from models.user import User
    from models.workspace import Workspace
    from services.slack_directory import SyncScope
    from services.sync_orchestrator import run_directory_scope, scope_token

    sync_scope = SyncScope(scope)
    async with get_session() as session:
        workspace = await session.get(Workspace, uuid.UUID(workspace_id))
        user = await session.get(User, uuid.UUID(user_id)) if user_id else None
    if workspace is None:
        raise ValueError(f"Workspace {workspace_id} not found")

    stats = await run_directory_scope(
        sync_scope,
        token=scope_token(sync_scope, user, workspace),
        workspace=workspace,
        user=user,
        types=options.get("types"),
        limit=options.get("limit"),
        force=bool(options.get("force", False)),
        download=bool(options.get("download", True)),
        thumbnails=bool(options.get("thumbnails", True)),
        dry_run=bool(options.get("dry_run", False)),
    )
    return {"status": "completed", "scope": scope, "stats": stats}


@celery_app.task(bind=True, name="workers.tasks.sync.sync_slack_scope")
def sync_slack_scope(
    self: Any,
    scope: str,
    workspace_id: str,
    user_id: Optional[str] = None,
    options: Optional[dict[str, Any]] = None,
) -> dict[str, Any]:
    """Run a directory scope (users, members, files) in the background."""
    logger.info("Task %s: Slack %s sync for workspace %s", self.request.id, scope, workspace_id)
    return run_async(_run_scope(scope, workspace_id, user_id, options or {}))


async def _ingest_file(
    descriptor: dict[str, Any],
    workspace_id: str,
    user_id: Optional[str],
    channel_id: Optional[str],
    force: bool,
) -> dict[str, Any]:
    from models.database import get_session
    from models.user import User
    from models.workspace import Workspace
    from services.file_ingestion import FileIngestion
    from connectors.slack import SlackApiClient
    from services.slack_directory import SyncScope
    from services.sync_orchestrator import scope_token

    async with get_session() as session:
        workspace = await session.get(Workspace, uuid.UUID(workspace_id))
        user = await session.get(User, uuid.UUID(user_id)) if user_id else None
    if workspace is None:
        raise ValueError(f"Workspace {workspace_id} not found")

    token = scope_token(SyncScope.FILES, user, workspace)
    ingestion = FileIngestion(SlackApiClient())
    return await ingestion.ingest(
        descriptor,
        token,
        user_id=user.id if user is not None else None,
        channel_id=channel_id,
        force=force,
    )


@celery_app.task(bind=True, name="workers.tasks.sync.ingest_slack_file")
def ingest_slack_file(
    self: Any,
    descriptor: dict[str, Any],
    workspace_id: str,
    user_id: Optional[str] = None,
    channel_id: Optional[str] = None,
    force: bool = False,
) -> dict[str, Any]:
    """Archive one Slack file (download plus thumbnails)."""
    logger.info("Task %s: Ingesting Slack file %s", self.request.id, descriptor.get("id"))
    return run_async(_ingest_file(descriptor, workspace_id, user_id, channel_id, force))
