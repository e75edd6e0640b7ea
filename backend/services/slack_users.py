"""
Slack user resolution.

Maps Slack user payloads (``users.info`` / ``users.list`` members) onto archive
User rows keyed by ``slack_user_id``.
"""
from __future__ import annotations

import logging
import uuid
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from connectors.slack import SlackApiClient, SlackApiError
from models.database import upsert_insert
from models.user import User

logger = logging.getLogger(__name__)

SLACKBOT_USER_ID = "USLACKBOT"


def fallback_email(slack_user_id: str) -> str:
    return f"{slack_user_id}@slack.local"


def user_fields_from_slack(payload: dict[str, Any]) -> dict[str, Any]:
    """Translate a Slack user object into User column values."""
    slack_user_id: str = payload["id"]
    profile: dict[str, Any] = payload.get("profile") or {}
    name = (
        payload.get("real_name")
        or profile.get("real_name")
        or payload.get("name")
        or "Unknown User"
    )
    return {
        "slack_user_id": slack_user_id,
        "name": name,
        "email": profile.get("email") or fallback_email(slack_user_id),
        "avatar_url": profile.get("image_192") or profile.get("image_72"),
        "is_active": not bool(payload.get("deleted", False)),
    }


def is_bot_user(payload: dict[str, Any]) -> bool:
    return bool(payload.get("is_bot")) or payload.get("id") == SLACKBOT_USER_ID


async def _email_owner(session: AsyncSession, email: str) -> Optional[uuid.UUID]:
    return await session.scalar(select(User.id).where(User.email == email))


async def upsert_slack_user(
    session: AsyncSession,
    payload: dict[str, Any],
    workspace_id: Optional[uuid.UUID] = None,
) -> User:
    """
    Create or refresh the User for a Slack user payload.

    An existing row without a Slack id but with the same email is linked
    rather than duplicated. Admin flags and tokens are never touched here.
    """
    fields = user_fields_from_slack(payload)
    slack_user_id = fields["slack_user_id"]

    user = await session.scalar(select(User).where(User.slack_user_id == slack_user_id))
    if user is None:
        user = await session.scalar(
            select(User).where(User.email == fields["email"], User.slack_user_id.is_(None))
        )

    owner_id = await _email_owner(session, fields["email"])
    if owner_id is not None and (user is None or owner_id != user.id):
        logger.warning(
            "[Slack Users] Email %s already belongs to another user, using fallback for %s",
            fields["email"],
            slack_user_id,
        )
        fields["email"] = fallback_email(slack_user_id)

    if user is not None:
        user.slack_user_id = slack_user_id
        user.name = fields["name"]
        user.email = fields["email"]
        user.avatar_url = fields["avatar_url"]
        user.is_active = fields["is_active"]
        if workspace_id is not None:
            user.workspace_id = workspace_id
        await session.flush()
        return user

    stmt = (
        upsert_insert(session, User)
        .values(id=uuid.uuid4(), workspace_id=workspace_id, **fields)
        .on_conflict_do_update(
            index_elements=[User.slack_user_id],
            set_={
                "name": fields["name"],
                "avatar_url": fields["avatar_url"],
                "is_active": fields["is_active"],
            },
        )
    )
    await session.execute(stmt)
    created = await session.scalar(select(User).where(User.slack_user_id == slack_user_id))
    if created is None:
        raise RuntimeError(f"User {slack_user_id} missing after upsert")
    return created


class SlackUserResolver:
    """
    Resolve Slack user ids to archive Users, creating unknown ones via ``users.info``.

    Results, including misses Slack itself reports, are cached per instance,
    which lives for one job.
    """

    def __init__(
        self,
        client: SlackApiClient,
        token: Optional[str],
        workspace_id: Optional[uuid.UUID] = None,
    ) -> None:
        self.client = client
        self.token = token
        self.workspace_id = workspace_id
        self._cache: dict[str, Optional[uuid.UUID]] = {}

    async def resolve(self, session: AsyncSession, slack_user_id: str) -> Optional[uuid.UUID]:
        """Return the archive user id, or None when the Slack user cannot be resolved."""
        if slack_user_id in self._cache:
            return self._cache[slack_user_id]

        existing = await session.scalar(
            select(User.id).where(User.slack_user_id == slack_user_id)
        )
        if existing is not None:
            self._cache[slack_user_id] = existing
            return existing

        if not self.token:
            logger.warning("[Slack Users] No token to look up unknown user %s", slack_user_id)
            self._cache[slack_user_id] = None
            return None

        # Transport errors propagate uncached so the job attempt fails and retries
        try:
            payload = await self.client.users_info(self.token, slack_user_id)
        except SlackApiError as exc:
            logger.warning("[Slack Users] users.info failed for %s: %s", slack_user_id, exc.error)
            self._cache[slack_user_id] = None
            return None

        if not payload.get("id"):
            self._cache[slack_user_id] = None
            return None

        user = await upsert_slack_user(session, payload, self.workspace_id)
        logger.info("[Slack Users] Created user %s (%s)", user.name, slack_user_id)
        self._cache[slack_user_id] = user.id
        return user.id
