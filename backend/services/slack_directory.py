"""
Workspace directory syncs that sit beside message reconciliation.

- ``refresh_channels``: conversations.list -> channels + the syncing user's memberships
- ``sync_user_directory``: users.list -> users
- ``sync_memberships``: conversations.members -> channel_users (with left_at tracking)
- ``sync_files``: files.list -> FileIngestion
"""
from __future__ import annotations

import enum
import logging
import uuid
from datetime import datetime
from typing import TYPE_CHECKING, Any, Optional

from sqlalchemy import or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from connectors.slack import MissingTokenError, SlackApiClient, SlackError
from models.channel import Channel
from models.channel_membership import ChannelMembership
from models.database import get_session, upsert_insert
from models.user import User
from models.workspace import Workspace
from services.slack_users import is_bot_user, upsert_slack_user

if TYPE_CHECKING:
    from services.file_ingestion import FileIngestion

logger = logging.getLogger(__name__)

USER_CHANNEL_TYPES = "public_channel,private_channel,im,mpim"
BOT_CHANNEL_TYPES = "public_channel,private_channel"


class SyncScope(str, enum.Enum):
    ALL = "all"
    DM = "dm"
    USERS = "users"
    MEMBERS = "members"
    FILES = "files"

    @property
    def syncs_messages(self) -> bool:
        return self in (SyncScope.ALL, SyncScope.DM)


def channel_name(payload: dict[str, Any], peer_names: Optional[dict[str, str]] = None) -> str:
    """Display name for a conversation. DMs have no name in Slack."""
    if payload.get("is_im"):
        peer = payload.get("user") or "unknown"
        return f"DM-{(peer_names or {}).get(peer, peer)}"
    return payload.get("name") or f"Channel-{payload['id']}"


def channel_values(payload: dict[str, Any], workspace_id: uuid.UUID, name: str) -> dict[str, Any]:
    is_dm = bool(payload.get("is_im"))
    is_mpim = bool(payload.get("is_mpim"))
    return {
        "id": payload["id"],
        "workspace_id": workspace_id,
        "name": name,
        "topic": (payload.get("topic") or {}).get("value"),
        "purpose": (payload.get("purpose") or {}).get("value"),
        "is_private": bool(payload.get("is_private")) or is_dm or is_mpim,
        "is_dm": is_dm,
        "is_mpim": is_mpim,
        "is_archived": bool(payload.get("is_archived")),
        "member_count": int(payload.get("num_members") or 0),
    }


async def upsert_channel(session: AsyncSession, values: dict[str, Any]) -> bool:
    """
    Create-if-absent, else refresh name and flags. Returns True when created.

    An existing row is only written, and ``updated_at`` only moves, when one of
    the listed attributes differs from what is stored.
    """
    exists = await session.scalar(select(Channel.id).where(Channel.id == values["id"]))
    now = datetime.utcnow()
    refresh = {key: value for key, value in values.items() if key not in ("id", "workspace_id")}
    insert = upsert_insert(session, Channel).values(created_at=now, updated_at=now, **values)
    changed = or_(
        *(getattr(Channel, key).is_distinct_from(insert.excluded[key]) for key in refresh)
    )
    stmt = insert.on_conflict_do_update(
        index_elements=[Channel.id],
        set_={**refresh, "updated_at": now},
        where=changed,
    )
    await session.execute(stmt)
    return exists is None


async def activate_membership(session: AsyncSession, channel_id: str, user_id: uuid.UUID) -> None:
    stmt = (
        upsert_insert(session, ChannelMembership)
        .values(
            id=uuid.uuid4(),
            channel_id=channel_id,
            user_id=user_id,
            joined_at=datetime.utcnow(),
            left_at=None,
        )
        .on_conflict_do_update(
            index_elements=[ChannelMembership.channel_id, ChannelMembership.user_id],
            set_={"left_at": None},
        )
    )
    await session.execute(stmt)


async def _peer_names(session: AsyncSession, payloads: list[dict[str, Any]]) -> dict[str, str]:
    peers = {p["user"] for p in payloads if p.get("is_im") and p.get("user")}
    if not peers:
        return {}
    result = await session.execute(
        select(User.slack_user_id, User.name).where(User.slack_user_id.in_(peers))
    )
    return {slack_id: name for slack_id, name in result.all() if slack_id}


async def refresh_channels(
    client: SlackApiClient,
    user: User,
    workspace: Workspace,
    *,
    dry_run: bool = False,
) -> dict[str, int]:
    """
    Pull the channel directory and record the syncing user's memberships.

    With the user's own token every conversation type is listed and the user
    is recorded as a member of every DM/MPIM and of channels Slack flags
    ``is_member``. Without one, the bot token lists public and private channels.
    """
    if user.access_token:
        token, types = user.access_token, USER_CHANNEL_TYPES
    elif workspace.bot_token:
        token, types = workspace.bot_token, BOT_CHANNEL_TYPES
    else:
        raise MissingTokenError(f"No token available to list channels for user {user.id}")

    payloads = await client.list_conversations(token, types)
    stats = {"fetched": len(payloads), "created": 0, "updated": 0, "memberships": 0}
    logger.info("[Slack Sync] conversations.list returned %d channels for user %s", len(payloads), user.id)
    if dry_run:
        return stats

    own_token = token == user.access_token
    async with get_session() as session:
        peer_names = await _peer_names(session, payloads)
        for payload in payloads:
            if not payload.get("id"):
                continue
            values = channel_values(payload, workspace.id, channel_name(payload, peer_names))
            if await upsert_channel(session, values):
                stats["created"] += 1
            else:
                stats["updated"] += 1

            is_member = bool(payload.get("is_member")) or (
                own_token and (payload.get("is_im") or payload.get("is_mpim"))
            )
            if is_member:
                await activate_membership(session, payload["id"], user.id)
                stats["memberships"] += 1
        await session.commit()

    logger.info(
        "[Slack Sync] Channel directory refreshed: %d created, %d updated, %d memberships",
        stats["created"],
        stats["updated"],
        stats["memberships"],
    )
    return stats


async def sync_user_directory(
    client: SlackApiClient,
    token: str,
    workspace_id: Optional[uuid.UUID] = None,
    *,
    dry_run: bool = False,
) -> dict[str, int]:
    """Upsert every human Slack user. Returns ``{fetched, saved, skipped}``."""
    stats = {"fetched": 0, "saved": 0, "skipped": 0}
    async with get_session() as session:
        async for page in client.users_pages(token):
            for payload in page.get("members") or []:
                stats["fetched"] += 1
                if not payload.get("id") or is_bot_user(payload):
                    stats["skipped"] += 1
                    continue
                if dry_run:
                    stats["saved"] += 1
                    continue
                try:
                    await upsert_slack_user(session, payload, workspace_id)
                    await session.commit()
                except SQLAlchemyError as exc:
                    logger.warning("[Slack Users] Failed to save user %s: %s", payload.get("id"), exc)
                    await session.rollback()
                    stats["skipped"] += 1
                    continue
                stats["saved"] += 1

    logger.info(
        "[Slack Users] Directory sync: fetched=%d saved=%d skipped=%d",
        stats["fetched"],
        stats["saved"],
        stats["skipped"],
    )
    return stats


async def _members_for(
    client: SlackApiClient,
    token: str,
    payload: dict[str, Any],
    auth_user_id: Optional[str],
) -> list[str]:
    try:
        return await client.conversation_members(token, payload["id"])
    except SlackError as exc:
        if not payload.get("is_im"):
            raise
        fallback = [uid for uid in (auth_user_id, payload.get("user")) if uid]
        logger.warning(
            "[Slack Sync] conversations.members failed for IM %s (%s), using %s",
            payload["id"],
            exc,
            fallback,
        )
        return fallback


async def sync_memberships(
    client: SlackApiClient,
    token: str,
    workspace: Workspace,
    *,
    types: str = "im,mpim",
    dry_run: bool = False,
) -> dict[str, int]:
    """
    Reconcile channel_users for every conversation of ``types``.

    Listed members get an active row; previously active members no longer
    listed get ``left_at`` stamped. Slack users unknown to the archive are skipped.
    """
    stats = {"channels": 0, "members": 0, "added": 0, "left": 0, "skipped_users": 0, "errors": 0}
    payloads = await client.list_conversations(token, types)
    auth_user_id: Optional[str] = None
    if any(p.get("is_im") for p in payloads):
        try:
            auth_user_id = (await client.auth_test(token)).get("user_id")
        except SlackError as exc:
            logger.warning("[Slack Sync] auth.test failed: %s", exc)

    async with get_session() as session:
        peer_names = await _peer_names(session, payloads)
        for payload in payloads:
            if not payload.get("id"):
                continue
            stats["channels"] += 1
            try:
                member_ids = await _members_for(client, token, payload, auth_user_id)
            except SlackError as exc:
                logger.error("[Slack Sync] Could not list members of %s: %s", payload["id"], exc)
                stats["errors"] += 1
                continue

            stats["members"] += len(member_ids)
            result = await session.execute(
                select(User.slack_user_id, User.id).where(User.slack_user_id.in_(member_ids))
            )
            known = {slack_id: user_id for slack_id, user_id in result.all()}
            stats["skipped_users"] += len(set(member_ids) - set(known))
            if dry_run:
                continue

            await upsert_channel(
                session, channel_values(payload, workspace.id, channel_name(payload, peer_names))
            )
            active = await session.execute(
                select(ChannelMembership.user_id).where(
                    ChannelMembership.channel_id == payload["id"],
                    ChannelMembership.left_at.is_(None),
                )
            )
            previously_active = set(active.scalars().all())
            for user_id in known.values():
                if user_id not in previously_active:
                    stats["added"] += 1
                await activate_membership(session, payload["id"], user_id)

            departed = previously_active - set(known.values())
            if departed:
                await session.execute(
                    update(ChannelMembership)
                    .where(
                        ChannelMembership.channel_id == payload["id"],
                        ChannelMembership.user_id.in_(departed),
                    )
                    .values(left_at=datetime.utcnow())
                )
                stats["left"] += len(departed)
            await session.commit()

    logger.info(
        "[Slack Sync] Membership sync: %d channels, %d added, %d left, %d unknown users",
        stats["channels"],
        stats["added"],
        stats["left"],
        stats["skipped_users"],
    )
    return stats


async def sync_files(
    client: SlackApiClient,
    ingestion: "FileIngestion",
    token: str,
    *,
    slack_user_id: Optional[str] = None,
    owner_id: Optional[uuid.UUID] = None,
    limit: Optional[int] = None,
    types: Optional[str] = None,
    force: bool = False,
    download: bool = True,
    thumbnails: bool = True,
    dry_run: bool = False,
) -> dict[str, int]:
    """Page ``files.list`` and ingest each file descriptor."""
    stats = {"processed": 0, "downloaded": 0, "thumbnails_generated": 0, "skipped": 0, "errors": 0}
    page = 1
    while True:
        data = await client.files_list(token, user=slack_user_id, page=page, types=types)
        files: list[dict[str, Any]] = data.get("files") or []
        for descriptor in files:
            if limit is not None and stats["processed"] >= limit:
                return stats
            stats["processed"] += 1
            if dry_run:
                continue
            try:
                outcome = await ingestion.ingest(
                    descriptor,
                    token,
                    user_id=owner_id,
                    force=force,
                    download=download,
                    thumbnails=thumbnails,
                )
            except Exception as exc:
                logger.error("[FileIngestion] Failed to ingest %s: %s", descriptor.get("id"), exc)
                stats["errors"] += 1
                continue
            if outcome.get("status") == "skipped":
                stats["skipped"] += 1
            if outcome.get("downloaded"):
                stats["downloaded"] += 1
            if outcome.get("download_error") or outcome.get("thumbnail_error"):
                stats["errors"] += 1
            stats["thumbnails_generated"] += int(outcome.get("thumbnails", 0))

        paging = data.get("paging") or {}
        if not files or page >= int(paging.get("pages") or 1):
            break
        page += 1

    logger.info(
        "[FileIngestion] Files sync: processed=%d downloaded=%d thumbnails=%d skipped=%d errors=%d",
        stats["processed"],
        stats["downloaded"],
        stats["thumbnails_generated"],
        stats["skipped"],
        stats["errors"],
    )
    return stats
