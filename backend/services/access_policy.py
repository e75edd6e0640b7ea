"""
Channel visibility rules and Slack token selection.

Decision rules:
- Admins can access everything.
- Public channels (not private, not DM, not MPIM) are readable by everyone.
- DM, MPIM and private channels require an active membership (left_at IS NULL).

Token rule: the workspace bot token reads public channels; membership-gated
channels need the syncing user's own OAuth token because Slack only lets a
member read them.
"""
from __future__ import annotations

import logging
import uuid
from typing import Any, Optional

from sqlalchemy import and_, exists, or_, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.sql import Select

from connectors.slack import MissingTokenError
from models.channel import Channel
from models.channel_membership import ChannelMembership
from models.user import User
from models.workspace import Workspace

logger = logging.getLogger(__name__)


def is_membership_gated(channel: Channel) -> bool:
    """True for DM, MPIM and private channels."""
    return bool(channel.is_dm or channel.is_mpim or channel.is_private)


def can_access(user: User, channel: Channel, *, is_member: bool) -> bool:
    """Pure visibility decision for ``user`` on ``channel``."""
    if user.is_admin:
        return True
    if not is_membership_gated(channel):
        return True
    return is_member


async def is_active_member(session: AsyncSession, user_id: uuid.UUID, channel_id: str) -> bool:
    result = await session.execute(
        select(ChannelMembership.id).where(
            ChannelMembership.channel_id == channel_id,
            ChannelMembership.user_id == user_id,
            ChannelMembership.left_at.is_(None),
        )
    )
    return result.first() is not None


async def user_can_access(session: AsyncSession, user: User, channel: Channel) -> bool:
    """``can_access`` with the membership looked up from the database."""
    if user.is_admin or not is_membership_gated(channel):
        return can_access(user, channel, is_member=False)
    return can_access(
        user, channel, is_member=await is_active_member(session, user.id, channel.id)
    )


def accessible_channels_query(user: User, workspace_id: Optional[uuid.UUID] = None) -> Select[Any]:
    """
    SELECT of channels ``user`` may read, most recently updated first.

    Expresses the same rules as ``can_access`` in SQL so channel enumeration
    does not load memberships one channel at a time.
    """
    query = select(Channel)
    if workspace_id is not None:
        query = query.where(Channel.workspace_id == workspace_id)

    if not user.is_admin:
        active_membership = exists().where(
            and_(
                ChannelMembership.channel_id == Channel.id,
                ChannelMembership.user_id == user.id,
                ChannelMembership.left_at.is_(None),
            )
        )
        public = and_(
            Channel.is_private.is_(False),
            Channel.is_dm.is_(False),
            Channel.is_mpim.is_(False),
        )
        query = query.where(or_(public, active_membership))

    return query.order_by(Channel.updated_at.desc(), Channel.id)


def select_token(
    channel: Channel,
    user: Optional[User],
    workspace: Optional[Workspace],
) -> str:
    """
    Pick the Slack token for reading ``channel``.

    Raises:
        MissingTokenError: when no suitable token exists.
    """
    user_token = user.access_token if user is not None else None
    if is_membership_gated(channel):
        if user_token:
            return user_token
        raise MissingTokenError(
            f"Channel {channel.id} is membership-gated and the syncing user has no OAuth token"
        )

    bot_token = workspace.bot_token if workspace is not None else None
    if bot_token:
        return bot_token
    if user_token:
        return user_token
    raise MissingTokenError(f"No bot or user token available for channel {channel.id}")


def select_identity_token(user: Optional[User], workspace: Optional[Workspace]) -> str:
    """Token for ``users.info`` lookups: bot token first, then the user's own."""
    if workspace is not None and workspace.bot_token:
        return workspace.bot_token
    if user is not None and user.access_token:
        return user.access_token
    raise MissingTokenError("No token available for user lookups")
