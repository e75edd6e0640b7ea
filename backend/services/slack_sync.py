"""
Per-channel Slack message reconciliation.

For one channel and one syncing user:
1. Pick the watermark (latest stored ``ts``) unless a full sync is requested.
2. Page through ``conversations.history`` newer than the watermark.
3. Resolve senders, upsert each message keyed by (workspace, slack_message_id).
4. Drain ``conversations.replies`` for thread parents before moving on.
5. Hand attached files to FileIngestion once the page is committed.
6. Stamp ``channels.last_synced_at``.

Pages are committed one at a time; a failure mid-channel keeps earlier pages.
"""
from __future__ import annotations

import logging
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any, Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from connectors.slack import MissingTokenError, SlackApiClient, SlackApiError
from models.channel import Channel
from models.database import get_session, upsert_insert
from models.message import Message
from models.user import User
from models.workspace import Workspace
from services.access_policy import select_identity_token, select_token, user_can_access
from services.slack_users import SlackUserResolver
from services.sync_control import CancellationToken

if TYPE_CHECKING:
    from services.file_ingestion import FileIngestion

logger = logging.getLogger(__name__)

SLACK_TS_RE = re.compile(r"^\d+\.\d+$")


@dataclass
class _ChannelStats:
    fetched: int = 0
    saved: int = 0
    skipped: int = 0
    seen: set[str] = field(default_factory=set)
    pending_files: list[tuple[dict[str, Any], Optional[uuid.UUID], str, Optional[uuid.UUID]]] = field(default_factory=list)


class SyncReconciler:
    """
    Synchronizes message history for channels on behalf of one user.

    One instance lives for one job: it carries the user's identity, the
    workspace tokens and the job-scoped user cache.
    """

    def __init__(
        self,
        client: SlackApiClient,
        user: User,
        workspace: Workspace,
        *,
        file_ingestion: Optional["FileIngestion"] = None,
        cancel_token: Optional[CancellationToken] = None,
        dry_run: bool = False,
    ) -> None:
        self.client = client
        self.user = user
        self.workspace = workspace
        self.file_ingestion = file_ingestion
        self.cancel_token = cancel_token
        self.dry_run = dry_run
        try:
            identity_token: Optional[str] = select_identity_token(user, workspace)
        except MissingTokenError:
            identity_token = None
        self.users = SlackUserResolver(client, identity_token, workspace.id)

    async def sync_channel(self, channel: Channel, full_sync: bool = False) -> dict[str, Any]:
        """
        Sync one channel.

        Returns ``{success, channel, messages_fetched, messages_saved, sync_type}``
        or ``{success: False, channel, error}``. Slack API errors end the channel
        pass without raising. Transport errors and cancellation propagate so
        the job can be retried or stopped; pages committed so far are kept.
        """
        sync_type = "full" if full_sync else "incremental"
        stats = _ChannelStats()

        try:
            token = select_token(channel, self.user, self.workspace)
        except MissingTokenError as exc:
            logger.warning("[Slack Sync] Skipping %s: %s", channel.name, exc)
            return {"success": False, "channel": channel.name, "error": str(exc)}

        try:
            async with get_session() as session:
                if not await user_can_access(session, self.user, channel):
                    logger.warning(
                        "[Slack Sync] User %s may not read channel %s", self.user.id, channel.id
                    )
                    return {"success": False, "channel": channel.name, "error": "access_denied"}

                oldest = None if full_sync else await self.latest_timestamp(session, channel.id)
                logger.info(
                    "[Slack Sync] Syncing %s (%s) sync_type=%s oldest=%s",
                    channel.name,
                    channel.id,
                    sync_type,
                    oldest,
                )

                async for page in self.client.history_pages(token, channel.id, oldest):
                    if self.cancel_token is not None:
                        await self.cancel_token.raise_if_cancelled(f"history:{channel.id}")
                    messages: list[dict[str, Any]] = page.get("messages") or []
                    logger.debug(
                        "[Slack Sync] %s: page with %d messages", channel.id, len(messages)
                    )
                    for payload in messages:
                        await self._ingest(session, channel, payload, stats)
                        if self._is_thread_parent(payload):
                            await self._drain_thread(session, channel, token, payload["ts"], stats)
                    await self._finish_page(session, token, stats)

                if not self.dry_run:
                    synced_at = datetime.utcnow()
                    # updated_at tracks directory changes, not sync passes
                    await session.execute(
                        update(Channel)
                        .where(Channel.id == channel.id)
                        .values(last_synced_at=synced_at, updated_at=Channel.updated_at)
                    )
                    await session.commit()
                    channel.last_synced_at = synced_at

        except SlackApiError as exc:
            logger.error("[Slack Sync] Slack API error in %s: %s", channel.name, exc.error)
            return {
                "success": False,
                "channel": channel.name,
                "error": exc.error,
                "messages_fetched": stats.fetched,
                "messages_saved": stats.saved,
            }

        logger.info(
            "[Slack Sync] %s done: fetched=%d saved=%d skipped=%d",
            channel.name,
            stats.fetched,
            stats.saved,
            stats.skipped,
        )
        return {
            "success": True,
            "channel": channel.name,
            "messages_fetched": stats.fetched,
            "messages_saved": stats.saved,
            "sync_type": sync_type,
        }

    async def latest_timestamp(self, session: AsyncSession, channel_id: str) -> Optional[str]:
        """
        Watermark: the newest stored ``ts`` for the channel.

        ``ts`` strings are compared by length first so "999.1" sorts below
        "1000.1" without converting them to floats.
        """
        result = await session.execute(
            select(Message.timestamp)
            .where(
                Message.workspace_id == self.workspace.id,
                Message.channel_id == channel_id,
            )
            .order_by(func.length(Message.timestamp).desc(), Message.timestamp.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    @staticmethod
    def _is_thread_parent(payload: dict[str, Any]) -> bool:
        thread_ts = payload.get("thread_ts")
        return bool(thread_ts) and thread_ts == payload.get("ts") and int(payload.get("reply_count") or 0) > 0

    async def _drain_thread(
        self,
        session: AsyncSession,
        channel: Channel,
        token: str,
        thread_ts: str,
        stats: _ChannelStats,
    ) -> None:
        async for page in self.client.replies_pages(token, channel.id, thread_ts):
            if self.cancel_token is not None:
                await self.cancel_token.raise_if_cancelled(f"replies:{channel.id}:{thread_ts}")
            for reply in page.get("messages") or []:
                # conversations.replies repeats the parent as the first item
                if reply.get("ts") == thread_ts:
                    continue
                await self._ingest(session, channel, reply, stats)

    async def _ingest(
        self,
        session: AsyncSession,
        channel: Channel,
        payload: dict[str, Any],
        stats: _ChannelStats,
    ) -> None:
        stats.fetched += 1
        ts = payload.get("ts")
        if not isinstance(ts, str) or not SLACK_TS_RE.match(ts):
            logger.warning("[Slack Sync] Skipping message with malformed ts %r in %s", ts, channel.id)
            stats.skipped += 1
            return

        user_id: Optional[uuid.UUID] = None
        slack_user_id = payload.get("user")
        if slack_user_id:
            user_id = await self.users.resolve(session, slack_user_id)
            if user_id is None:
                logger.warning(
                    "[Slack Sync] Skipping message %s: unresolvable user %s", ts, slack_user_id
                )
                stats.skipped += 1
                return

        values: dict[str, Any] = {
            "text": payload.get("text"),
            "user_id": user_id,
            "thread_ts": payload.get("thread_ts"),
            "reply_count": int(payload.get("reply_count") or 0),
            "subtype": payload.get("subtype"),
            "raw": payload,
        }

        if self.dry_run:
            if ts not in stats.seen and not await self._message_exists(session, ts):
                stats.saved += 1
            stats.seen.add(ts)
            return

        existing = await session.scalar(
            select(Message).where(
                Message.workspace_id == self.workspace.id,
                Message.slack_message_id == ts,
            )
        )
        if existing is not None:
            for key, value in values.items():
                setattr(existing, key, value)
            await session.flush()
            message_id: Optional[uuid.UUID] = existing.id
        else:
            message_id = uuid.uuid4()
            stmt = (
                upsert_insert(session, Message)
                .values(
                    id=message_id,
                    slack_message_id=ts,
                    timestamp=ts,
                    workspace_id=self.workspace.id,
                    channel_id=channel.id,
                    **values,
                )
                .on_conflict_do_nothing(index_elements=["workspace_id", "slack_message_id"])
            )
            result = await session.execute(stmt)
            if result.rowcount == 1:
                stats.saved += 1
            else:
                message_id = None

        for descriptor in payload.get("files") or []:
            stats.pending_files.append((descriptor, message_id, channel.id, user_id))

    async def _message_exists(self, session: AsyncSession, ts: str) -> bool:
        found = await session.scalar(
            select(Message.id).where(
                Message.workspace_id == self.workspace.id,
                Message.slack_message_id == ts,
            )
        )
        return found is not None

    async def _finish_page(self, session: AsyncSession, token: str, stats: _ChannelStats) -> None:
        if self.dry_run:
            stats.pending_files.clear()
            return
        await session.commit()

        pending, stats.pending_files = stats.pending_files, []
        if self.file_ingestion is None:
            return
        for descriptor, message_id, channel_id, author_id in pending:
            try:
                await self.file_ingestion.ingest(
                    descriptor,
                    token,
                    user_id=author_id or self.user.id,
                    channel_id=channel_id,
                    message_id=message_id,
                )
            except Exception as exc:
                logger.error(
                    "[Slack Sync] File ingestion failed for %s: %s",
                    descriptor.get("id"),
                    exc,
                )
