"""
Sync job orchestration.

A job syncs one user's view of one workspace:

    pending -> running -> completed
                       -> failed -> (retry) -> running
                       -> failed_permanently
                       -> cancelled

``execute_sync_job`` holds the per-user overlap guard around ``SyncJobRunner``;
``record_job_failure`` applies the retry/permanent-failure bookkeeping and is
called by the Celery task, which owns the actual retry scheduling.
"""
from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from sqlalchemy import and_, exists, select

from config import settings
from connectors.slack import MissingTokenError, SlackApiClient, SlackTransportError
from models.channel import Channel
from models.channel_membership import ChannelMembership
from models.database import get_session
from models.user import User
from models.workspace import Workspace
from services.access_policy import accessible_channels_query
from services.file_ingestion import FileIngestion
from services.notifications import notify_admins_of_failure
from services.slack_directory import (
    SyncScope,
    refresh_channels,
    sync_files,
    sync_memberships,
    sync_user_directory,
)
from services.slack_sync import SyncReconciler
from services.sync_control import (
    CancellationToken,
    OverlapGuard,
    SyncCancelledError,
    release_dispatch,
    release_lock,
    request_cancellation,
)
from services.sync_progress import (
    STATUS_PENDING,
    TERMINAL_STATUSES,
    SyncProgressStore,
    build_summary,
)

logger = logging.getLogger(__name__)

SleepFunc = Callable[[float], Awaitable[None]]


def new_job_id() -> str:
    return f"{int(time.time())}_{uuid.uuid4().hex[:8]}"


def sync_task_id(user_id: str, workspace_id: str, job_id: str) -> str:
    """Deterministic Celery task id for a (user, workspace) job."""
    return f"sync_slack_{user_id}_{workspace_id}_{job_id}"


@dataclass
class SyncJobRequest:
    user_id: str
    workspace_id: str
    job_id: str
    channel_ids: Optional[list[str]] = None
    full_sync: bool = False
    scope: SyncScope = SyncScope.ALL
    refresh_directory: bool = True
    dry_run: bool = False

    def to_kwargs(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "workspace_id": self.workspace_id,
            "job_id": self.job_id,
            "channel_ids": self.channel_ids,
            "full_sync": self.full_sync,
            "scope": self.scope.value,
            "refresh_directory": self.refresh_directory,
            "dry_run": self.dry_run,
        }

    @classmethod
    def from_kwargs(cls, data: dict[str, Any]) -> "SyncJobRequest":
        return cls(
            user_id=str(data["user_id"]),
            workspace_id=str(data["workspace_id"]),
            job_id=str(data["job_id"]),
            channel_ids=data.get("channel_ids"),
            full_sync=bool(data.get("full_sync", False)),
            scope=SyncScope(data.get("scope") or SyncScope.ALL.value),
            refresh_directory=bool(data.get("refresh_directory", True)),
            dry_run=bool(data.get("dry_run", False)),
        )


async def load_user_and_workspace(user_id: str, workspace_id: str) -> tuple[User, Workspace]:
    async with get_session() as session:
        user = await session.get(User, uuid.UUID(user_id))
        workspace = await session.get(Workspace, uuid.UUID(workspace_id))
    if user is None:
        raise ValueError(f"User {user_id} not found")
    if workspace is None:
        raise ValueError(f"Workspace {workspace_id} not found")
    return user, workspace


async def target_channels(
    user: User,
    workspace_id: uuid.UUID,
    channel_ids: Optional[list[str]] = None,
    *,
    dm_only: bool = False,
) -> list[Channel]:
    """
    Channels the job will sync, in processing order.

    Explicit ids are filtered through the access policy and keep the caller's
    order; otherwise every accessible channel, most recently updated first.
    """
    query = accessible_channels_query(user, workspace_id)
    if channel_ids:
        query = query.where(Channel.id.in_(channel_ids))
    if dm_only:
        query = query.where(
            (Channel.is_dm.is_(True)) | (Channel.is_mpim.is_(True)),
            exists().where(
                and_(
                    ChannelMembership.channel_id == Channel.id,
                    ChannelMembership.user_id == user.id,
                    ChannelMembership.left_at.is_(None),
                )
            ),
        )

    async with get_session() as session:
        result = await session.execute(query)
        channels = list(result.scalars().all())

    if channel_ids:
        position = {channel_id: index for index, channel_id in enumerate(channel_ids)}
        channels.sort(key=lambda channel: position.get(channel.id, len(position)))
        skipped = set(channel_ids) - {channel.id for channel in channels}
        if skipped:
            logger.info(
                "[SyncJob] Filtered out %d requested channels the user cannot access: %s",
                len(skipped),
                sorted(skipped),
            )
    return channels


class SyncJobRunner:
    """Runs one sync job: enumerate channels, reconcile them in order, report progress."""

    def __init__(
        self,
        progress: SyncProgressStore,
        client: SlackApiClient,
        *,
        cancel_token: Optional[CancellationToken] = None,
        file_ingestion: Optional[FileIngestion] = None,
        channel_delay: Optional[float] = None,
        sleep: SleepFunc = asyncio.sleep,
    ) -> None:
        self.progress = progress
        self.client = client
        self.cancel_token = cancel_token
        self.file_ingestion = file_ingestion
        self.channel_delay = (
            channel_delay if channel_delay is not None else settings.SYNC_CHANNEL_DELAY_SECONDS
        )
        self._sleep = sleep

    async def _checkpoint(self, stage: str) -> None:
        if self.cancel_token is not None:
            await self.cancel_token.raise_if_cancelled(stage)

    async def run(self, request: SyncJobRequest, attempt: int = 1) -> dict[str, Any]:
        """
        Execute the job and return its summary.

        Per-channel failures are recorded in the results and the loop moves on.
        Failures before the loop (loading, channel enumeration) raise, as do
        transport errors, which fail the attempt so the task retries it.
        """
        started = time.monotonic()
        user, workspace = await load_user_and_workspace(request.user_id, request.workspace_id)
        await self._checkpoint("start")

        if request.refresh_directory:
            await refresh_channels(self.client, user, workspace, dry_run=request.dry_run)

        channels = await target_channels(
            user,
            workspace.id,
            request.channel_ids,
            dm_only=request.scope == SyncScope.DM,
        )
        total = len(channels)
        logger.info(
            "[SyncJob] Job %s for user %s: %d channels (full_sync=%s, attempt %d)",
            request.job_id,
            request.user_id,
            total,
            request.full_sync,
            attempt,
        )
        await self.progress.mark_running(
            request.user_id,
            request.job_id,
            total=total,
            attempt=attempt,
            workspace_id=request.workspace_id,
            full_sync=request.full_sync,
        )

        reconciler = SyncReconciler(
            self.client,
            user,
            workspace,
            file_ingestion=self.file_ingestion,
            cancel_token=self.cancel_token,
            dry_run=request.dry_run,
        )
        results: list[dict[str, Any]] = []
        for index, channel in enumerate(channels):
            await self._checkpoint(f"channel:{channel.id}")
            channel_started = time.monotonic()
            try:
                result = await reconciler.sync_channel(channel, request.full_sync)
            except (SyncCancelledError, SlackTransportError):
                raise
            except Exception as exc:
                logger.exception("[SyncJob] Channel %s failed", channel.name)
                result = {"success": False, "channel": channel.name, "error": str(exc)}
            result["channel_id"] = channel.id
            result["duration"] = round(time.monotonic() - channel_started, 2)
            results.append(result)

            await self.progress.record_channel(
                request.user_id,
                request.job_id,
                progress=index + 1,
                current_channel=channel.name,
                results=results,
            )
            if index < total - 1 and self.channel_delay > 0:
                await self._sleep(self.channel_delay)

        summary = build_summary(results, time.monotonic() - started)
        await self.progress.complete(
            request.user_id, request.job_id, results=results, summary=summary
        )
        logger.info(
            "[SyncJob] Job %s completed: %d/%d channels ok, %d messages saved in %.1fs",
            request.job_id,
            summary["successful_channels"],
            summary["total_channels"],
            summary["total_messages"],
            summary["execution_time"],
        )
        return summary


async def execute_sync_job(
    redis: Any,
    request: SyncJobRequest,
    *,
    attempt: int = 1,
    client: Optional[SlackApiClient] = None,
    file_ingestion: Optional[FileIngestion] = None,
    channel_delay: Optional[float] = None,
    sleep: SleepFunc = asyncio.sleep,
) -> dict[str, Any]:
    """
    Run a job under the per-user overlap guard.

    Returns ``{"status": "skipped"}`` without touching data when another job
    for the user holds the guard. Cancellation is terminal. Any other
    exception propagates to the caller for retry handling.
    """
    guard = OverlapGuard(redis, request.user_id, owner=request.job_id)
    if not await guard.acquire():
        logger.warning(
            "[SyncJob] Sync already running for user %s, skipping job %s",
            request.user_id,
            request.job_id,
        )
        skipped_progress = SyncProgressStore(redis)
        record = await skipped_progress.get(request.user_id, request.job_id)
        # A redelivered copy of the running job must leave its record alone
        if record is None or record.get("status") == STATUS_PENDING:
            await skipped_progress.cancel(
                request.user_id,
                request.job_id,
                reason="skipped: another sync is running for this user",
            )
            await release_dispatch(redis, request.user_id, request.workspace_id, request.job_id)
        return {"status": "skipped", "job_id": request.job_id, "user_id": request.user_id}

    progress = SyncProgressStore(redis)
    cancel_token = CancellationToken(redis, request.user_id, request.job_id)
    client = client or SlackApiClient()
    if file_ingestion is None and not request.dry_run:
        file_ingestion = FileIngestion(client)
    runner = SyncJobRunner(
        progress,
        client,
        cancel_token=cancel_token,
        file_ingestion=file_ingestion,
        channel_delay=channel_delay,
        sleep=sleep,
    )

    try:
        summary = await runner.run(request, attempt)
    except SyncCancelledError as exc:
        await progress.cancel(request.user_id, request.job_id, reason=str(exc))
        await cancel_token.clear()
        await release_dispatch(redis, request.user_id, request.workspace_id, request.job_id)
        return {
            "status": "cancelled",
            "job_id": request.job_id,
            "user_id": request.user_id,
            "error": str(exc),
        }
    finally:
        await guard.release()

    await release_dispatch(redis, request.user_id, request.workspace_id, request.job_id)
    return {
        "status": "completed",
        "job_id": request.job_id,
        "user_id": request.user_id,
        "summary": summary,
    }


async def record_job_failure(
    redis: Any,
    request: SyncJobRequest,
    error: str,
    *,
    attempt: int,
    max_attempts: int,
) -> dict[str, Any]:
    """
    Record a failed attempt. The final attempt becomes ``failed_permanently``
    and admins are notified. Returns the progress record.
    """
    progress = SyncProgressStore(redis)
    # A time limit can interrupt the job before its own cleanup runs.
    # Another job's lock for the same user is left in place.
    await release_lock(redis, request.user_id, request.job_id)

    if attempt < max_attempts:
        logger.error(
            "[SyncJob] Job %s for user %s failed (attempt %d/%d): %s",
            request.job_id,
            request.user_id,
            attempt,
            max_attempts,
            error,
        )
        return await progress.fail(request.user_id, request.job_id, error=error, attempt=attempt)

    logger.critical(
        "[SyncJob] Job %s for user %s failed permanently after %d attempts: %s",
        request.job_id,
        request.user_id,
        attempt,
        error,
    )
    record = await progress.fail_permanently(
        request.user_id, request.job_id, error=error, attempts=attempt
    )
    await release_dispatch(redis, request.user_id, request.workspace_id, request.job_id)
    await notify_admins_of_failure(record)
    return record


async def cancel_job(redis: Any, user_id: str, job_id: str) -> dict[str, Any]:
    """
    Ask a queued, running or retrying job to stop.

    The job records ``cancelled`` at its next checkpoint; finished jobs are
    left untouched.
    """
    record = await SyncProgressStore(redis).get(user_id, job_id)
    if record is None:
        return {"status": "not_found", "job_id": job_id, "user_id": user_id}
    if record.get("status") in TERMINAL_STATUSES:
        return {
            "status": "not_cancellable",
            "job_id": job_id,
            "user_id": user_id,
            "job_status": record.get("status"),
        }
    await request_cancellation(redis, user_id, job_id)
    return {"status": "cancellation_requested", "job_id": job_id, "user_id": user_id}


def scope_token(scope: SyncScope, user: Optional[User], workspace: Optional[Workspace]) -> str:
    """
    Token for a directory scope.

    Membership listings of DMs need a user token; the user directory prefers the
    bot token. Operator tokens from settings are the last resort.
    """
    user_token = user.access_token if user is not None else None
    bot_token = workspace.bot_token if workspace is not None else None
    if scope == SyncScope.MEMBERS:
        candidates = (user_token, settings.SLACK_USER_TOKEN, bot_token, settings.SLACK_BOT_TOKEN)
    elif scope == SyncScope.FILES:
        candidates = (user_token, bot_token, settings.SLACK_USER_TOKEN, settings.SLACK_BOT_TOKEN)
    else:
        candidates = (bot_token, settings.SLACK_BOT_TOKEN, user_token, settings.SLACK_USER_TOKEN)
    for token in candidates:
        if token:
            return token
    raise MissingTokenError(f"No token available for scope {scope.value}")


async def run_directory_scope(
    scope: SyncScope,
    *,
    token: str,
    workspace: Workspace,
    client: Optional[SlackApiClient] = None,
    user: Optional[User] = None,
    types: Optional[str] = None,
    limit: Optional[int] = None,
    force: bool = False,
    download: bool = True,
    thumbnails: bool = True,
    dry_run: bool = False,
    file_ingestion: Optional[FileIngestion] = None,
) -> dict[str, Any]:
    """Entry point for the non-message scopes (users, members, files)."""
    if not token:
        raise MissingTokenError(f"No token available for scope {scope.value}")
    client = client or SlackApiClient()

    if scope == SyncScope.USERS:
        return await sync_user_directory(client, token, workspace.id, dry_run=dry_run)
    if scope == SyncScope.MEMBERS:
        return await sync_memberships(
            client, token, workspace, types=types or "im,mpim", dry_run=dry_run
        )
    if scope == SyncScope.FILES:
        return await sync_files(
            client,
            file_ingestion or FileIngestion(client),
            token,
            slack_user_id=user.slack_user_id if user is not None else None,
            owner_id=user.id if user is not None else None,
            limit=limit,
            types=types,
            force=force,
            download=download,
            thumbnails=thumbnails,
            dry_run=dry_run,
        )
    raise ValueError(f"Scope {scope.value} runs as a message sync job")
