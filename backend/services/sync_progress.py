"""
Sync job progress records stored in Redis.

Each job writes a JSON record at ``sync_progress:<user_id>:<job_id>`` with a TTL
that depends on its status. Two sorted sets index the records so the monitor
can list jobs exactly instead of scanning keys:

- ``sync_progress:index``            member ``<user_id>:<job_id>``, score = start epoch
- ``sync_progress:index:<user_id>``  member ``<job_id>``, score = start epoch

Index members whose record has expired are pruned when read.
"""
from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any, Optional

from redis.exceptions import RedisError

from config import settings, to_iso8601

logger = logging.getLogger(__name__)

PROGRESS_KEY = "sync_progress:{user_id}:{job_id}"
INDEX_KEY = "sync_progress:index"
USER_INDEX_KEY = "sync_progress:index:{user_id}"

STATUS_PENDING = "pending"
STATUS_RUNNING = "running"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"
STATUS_FAILED_PERMANENTLY = "failed_permanently"
STATUS_CANCELLED = "cancelled"

TERMINAL_STATUSES = frozenset(
    {STATUS_COMPLETED, STATUS_FAILED_PERMANENTLY, STATUS_CANCELLED}
)
FAILED_STATUSES = frozenset({STATUS_FAILED, STATUS_FAILED_PERMANENTLY})


def ttl_for_status(status: str) -> int:
    if status == STATUS_FAILED_PERMANENTLY:
        return settings.PROGRESS_TTL_FAILED_PERMANENTLY
    if status == STATUS_FAILED:
        return settings.PROGRESS_TTL_FAILED
    if status in (STATUS_COMPLETED, STATUS_CANCELLED):
        return settings.PROGRESS_TTL_COMPLETED
    return settings.PROGRESS_TTL_RUNNING


def _now_iso() -> str:
    return to_iso8601(datetime.utcnow()) or ""


def parse_iso(value: Optional[str]) -> Optional[datetime]:
    """Parse a timestamp written by ``to_iso8601`` back into a naive UTC datetime."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def build_summary(results: list[dict[str, Any]], execution_time: float) -> dict[str, Any]:
    """Aggregate per-channel results into the job summary."""
    successful = [r for r in results if r.get("success")]
    failed = [r for r in results if not r.get("success")]
    total_channels = len(results)
    return {
        "total_channels": total_channels,
        "successful_channels": len(successful),
        "failed_channels": len(failed),
        "total_messages": sum(int(r.get("messages_saved", 0)) for r in successful),
        "execution_time": round(execution_time, 2),
        "average_time_per_channel": (
            round(execution_time / total_channels, 2) if total_channels else 0.0
        ),
        "failed_channel_names": [r.get("channel") for r in failed],
    }


class SyncProgressStore:
    """Reads and writes progress records. ``redis`` is a ``redis.asyncio`` client."""

    def __init__(self, redis: Any) -> None:
        self.redis = redis

    @staticmethod
    def key(user_id: str, job_id: str) -> str:
        return PROGRESS_KEY.format(user_id=user_id, job_id=job_id)

    async def get(self, user_id: str, job_id: str) -> Optional[dict[str, Any]]:
        raw = await self.redis.get(self.key(user_id, job_id))
        if not raw:
            return None
        return json.loads(raw)

    async def _write(self, record: dict[str, Any]) -> dict[str, Any]:
        user_id = str(record["user_id"])
        job_id = str(record["job_id"])
        record["updated_at"] = _now_iso()
        await self.redis.set(
            self.key(user_id, job_id),
            json.dumps(record, default=str),
            ex=ttl_for_status(record.get("status", STATUS_PENDING)),
        )
        started = parse_iso(record.get("started_at")) or datetime.utcnow()
        score = _naive_epoch(started)
        await self.redis.zadd(INDEX_KEY, {f"{user_id}:{job_id}": score})
        await self.redis.zadd(USER_INDEX_KEY.format(user_id=user_id), {job_id: score})
        return record

    async def _merge(self, user_id: str, job_id: str, **fields: Any) -> dict[str, Any]:
        record = await self.get(user_id, job_id) or {
            "job_id": job_id,
            "user_id": user_id,
            "status": STATUS_PENDING,
            "progress": 0,
            "total": 0,
            "results": [],
            "started_at": _now_iso(),
        }
        record.update(fields)
        return await self._write(record)

    async def _merge_quietly(self, user_id: str, job_id: str, **fields: Any) -> Optional[dict[str, Any]]:
        """Non-terminal updates: a Redis hiccup is logged, never raised into the job."""
        try:
            return await self._merge(user_id, job_id, **fields)
        except RedisError as exc:
            logger.error(
                "[SyncProgress] Failed to update progress for user %s job %s: %s",
                user_id,
                job_id,
                exc,
            )
            return None

    async def create_pending(
        self,
        user_id: str,
        job_id: str,
        workspace_id: Optional[str],
        *,
        full_sync: bool = False,
        sync_type: str = "all",
        total_attempts: Optional[int] = None,
    ) -> dict[str, Any]:
        record: dict[str, Any] = {
            "job_id": job_id,
            "user_id": user_id,
            "workspace_id": workspace_id,
            "status": STATUS_PENDING,
            "progress": 0,
            "total": 0,
            "current_channel": None,
            "started_at": _now_iso(),
            "attempt": 0,
            "total_attempts": total_attempts or settings.SYNC_MAX_ATTEMPTS,
            "sync_type": sync_type,
            "full_sync": full_sync,
            "results": [],
        }
        return await self._write(record)

    async def mark_running(
        self,
        user_id: str,
        job_id: str,
        *,
        total: int,
        attempt: int,
        workspace_id: Optional[str] = None,
        full_sync: bool = False,
    ) -> Optional[dict[str, Any]]:
        fields: dict[str, Any] = {
            "status": STATUS_RUNNING,
            "progress": 0,
            "total": total,
            "current_channel": None,
            "attempt": attempt,
            "full_sync": full_sync,
            "results": [],
            "error": None,
        }
        if workspace_id is not None:
            fields["workspace_id"] = workspace_id
        return await self._merge_quietly(user_id, job_id, **fields)

    async def record_channel(
        self,
        user_id: str,
        job_id: str,
        *,
        progress: int,
        current_channel: str,
        results: list[dict[str, Any]],
    ) -> Optional[dict[str, Any]]:
        return await self._merge_quietly(
            user_id,
            job_id,
            progress=progress,
            current_channel=current_channel,
            results=results,
        )

    async def complete(
        self,
        user_id: str,
        job_id: str,
        *,
        results: list[dict[str, Any]],
        summary: dict[str, Any],
    ) -> dict[str, Any]:
        return await self._merge(
            user_id,
            job_id,
            status=STATUS_COMPLETED,
            progress=summary.get("total_channels", len(results)),
            current_channel=None,
            completed_at=_now_iso(),
            total_messages=summary.get("total_messages", 0),
            results=results,
            summary=summary,
        )

    async def fail(self, user_id: str, job_id: str, *, error: str, attempt: int) -> dict[str, Any]:
        return await self._merge(
            user_id,
            job_id,
            status=STATUS_FAILED,
            error=error,
            attempt=attempt,
            failed_at=_now_iso(),
        )

    async def fail_permanently(
        self,
        user_id: str,
        job_id: str,
        *,
        error: str,
        attempts: int,
    ) -> dict[str, Any]:
        return await self._merge(
            user_id,
            job_id,
            status=STATUS_FAILED_PERMANENTLY,
            error=error,
            final_error=error,
            attempt=attempts,
            total_attempts=attempts,
            failed_permanently_at=_now_iso(),
        )

    async def cancel(self, user_id: str, job_id: str, *, reason: str) -> dict[str, Any]:
        return await self._merge(
            user_id,
            job_id,
            status=STATUS_CANCELLED,
            error=reason,
            completed_at=_now_iso(),
        )

    async def delete(self, user_id: str, job_id: str) -> None:
        await self.redis.delete(self.key(user_id, job_id))
        await self.redis.zrem(INDEX_KEY, f"{user_id}:{job_id}")
        await self.redis.zrem(USER_INDEX_KEY.format(user_id=user_id), job_id)

    async def list_all(self) -> list[dict[str, Any]]:
        """Every live progress record, oldest first. Expired index members are pruned."""
        members: list[str] = await self.redis.zrange(INDEX_KEY, 0, -1)
        records: list[dict[str, Any]] = []
        for member in members:
            user_id, _, job_id = member.partition(":")
            record = await self.get(user_id, job_id)
            if record is None:
                await self.redis.zrem(INDEX_KEY, member)
                await self.redis.zrem(USER_INDEX_KEY.format(user_id=user_id), job_id)
                continue
            records.append(record)
        return records

    async def list_for_user(self, user_id: str) -> list[dict[str, Any]]:
        user_index = USER_INDEX_KEY.format(user_id=user_id)
        job_ids: list[str] = await self.redis.zrange(user_index, 0, -1)
        records: list[dict[str, Any]] = []
        for job_id in job_ids:
            record = await self.get(user_id, job_id)
            if record is None:
                await self.redis.zrem(user_index, job_id)
                await self.redis.zrem(INDEX_KEY, f"{user_id}:{job_id}")
                continue
            records.append(record)
        return records


def _naive_epoch(value: datetime) -> float:
    """Epoch seconds for a naive UTC datetime."""
    return (value - datetime(1970, 1, 1)).total_seconds()
