"""
Job control primitives backed by Redis.

- ``OverlapGuard``: per-user ``SET NX EX`` lock, valued with the owning job
  id, so one user never has two sync executions at once.
- Dispatch keys: collapse repeated dispatches for a (user, workspace) pair onto
  the job that is already queued or running.
- ``CancellationToken``: cooperative cancellation flag checked between
  channels and history pages.
"""
from __future__ import annotations

import logging
import uuid
from typing import Any, Optional

from config import settings

logger = logging.getLogger(__name__)

LOCK_KEY = "sync_lock:user:{user_id}"
DISPATCH_KEY = "sync_dispatch:{user_id}:{workspace_id}"
CANCEL_KEY = "sync_cancel:{user_id}:{job_id}"


class SyncCancelledError(RuntimeError):
    """Raised when a running sync job has been asked to stop."""


async def request_cancellation(
    redis: Any,
    user_id: str,
    job_id: str,
    ttl_seconds: Optional[int] = None,
) -> None:
    """Flag a job for cancellation. The job stops at its next checkpoint."""
    ttl = ttl_seconds or settings.PROGRESS_TTL_RUNNING
    await redis.set(CANCEL_KEY.format(user_id=user_id, job_id=job_id), "1", ex=ttl)
    logger.info("[SyncControl] Cancellation requested for user %s job %s", user_id, job_id)


class CancellationToken:
    """Checked cooperatively by the job runner and the reconciler."""

    def __init__(self, redis: Any, user_id: str, job_id: str) -> None:
        self.redis = redis
        self.user_id = user_id
        self.job_id = job_id
        self._key = CANCEL_KEY.format(user_id=user_id, job_id=job_id)
        self._cancelled = False

    async def is_cancelled(self) -> bool:
        if self._cancelled:
            return True
        if await self.redis.get(self._key):
            self._cancelled = True
        return self._cancelled

    async def raise_if_cancelled(self, stage: str) -> None:
        if await self.is_cancelled():
            logger.info(
                "[SyncControl] Job %s for user %s cancelled at %s",
                self.job_id,
                self.user_id,
                stage,
            )
            raise SyncCancelledError(f"Sync job {self.job_id} cancelled ({stage})")

    async def clear(self) -> None:
        await self.redis.delete(self._key)


# Delete KEYS[1] only while it still holds ARGV[1]
_RELEASE_LOCK_LUA = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
    return redis.call('DEL', KEYS[1])
end
return 0
"""


async def release_lock(redis: Any, user_id: str, owner: str) -> bool:
    """Release the user's lock if ``owner`` holds it. Returns True when deleted."""
    script = redis.register_script(_RELEASE_LOCK_LUA)
    deleted = await script(keys=[LOCK_KEY.format(user_id=user_id)], args=[owner])
    return bool(deleted)


class OverlapGuard:
    """
    Per-user exclusive lock.

    The lock value names the owning job, so only that job (or failure
    bookkeeping acting for it) releases it; the expiry bounds how long a
    crashed worker can block the user.
    """

    def __init__(
        self,
        redis: Any,
        user_id: str,
        owner: Optional[str] = None,
        ttl_seconds: Optional[int] = None,
    ) -> None:
        self.redis = redis
        self.user_id = user_id
        self.owner = owner or uuid.uuid4().hex
        self.key = LOCK_KEY.format(user_id=user_id)
        self.ttl_seconds = ttl_seconds or settings.SYNC_TIME_LIMIT_SECONDS + 60
        self._acquired = False

    async def acquire(self) -> bool:
        self._acquired = bool(
            await self.redis.set(self.key, self.owner, nx=True, ex=self.ttl_seconds)
        )
        return self._acquired

    async def release(self) -> None:
        if not self._acquired:
            return
        await release_lock(self.redis, self.user_id, self.owner)
        self._acquired = False


async def claim_dispatch(
    redis: Any,
    user_id: str,
    workspace_id: str,
    job_id: str,
    ttl_seconds: Optional[int] = None,
) -> str:
    """
    Claim the dispatch slot for (user, workspace).

    Returns ``job_id`` when claimed, otherwise the job id already holding it.
    """
    key = DISPATCH_KEY.format(user_id=user_id, workspace_id=workspace_id)
    ttl = ttl_seconds or (
        settings.SYNC_TIME_LIMIT_SECONDS + settings.SYNC_RETRY_DELAY_SECONDS
    ) * settings.SYNC_MAX_ATTEMPTS
    if await redis.set(key, job_id, nx=True, ex=ttl):
        return job_id
    existing = await redis.get(key)
    if existing:
        return existing
    # Holder expired between SET and GET
    await redis.set(key, job_id, ex=ttl)
    return job_id


async def release_dispatch(redis: Any, user_id: str, workspace_id: str, job_id: str) -> None:
    key = DISPATCH_KEY.format(user_id=user_id, workspace_id=workspace_id)
    if await redis.get(key) == job_id:
        await redis.delete(key)
