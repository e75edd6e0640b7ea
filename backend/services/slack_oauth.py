"""
Workspace provisioning and the data side of Slack OAuth.

Redirects, state validation and sessions live in the web layer; this module
only exchanges codes and persists what Slack returns.
"""
from __future__ import annotations

import logging
import uuid
from typing import Any, Optional

from sqlalchemy import select

from config import settings
from connectors.slack import SlackApiClient, SlackError
from models.database import get_session, upsert_insert
from models.user import User
from models.workspace import Workspace
from services.slack_users import fallback_email, upsert_slack_user

logger = logging.getLogger(__name__)


async def upsert_workspace(
    slack_team_id: str,
    name: str,
    *,
    bot_token: Optional[str] = None,
    bot_user_id: Optional[str] = None,
    domain: Optional[str] = None,
) -> Workspace:
    refresh: dict[str, Any] = {"name": name}
    if bot_token:
        refresh["bot_token"] = bot_token
    if bot_user_id:
        refresh["bot_user_id"] = bot_user_id
    if domain:
        refresh["domain"] = domain

    async with get_session() as session:
        stmt = (
            upsert_insert(session, Workspace)
            .values(id=uuid.uuid4(), slack_team_id=slack_team_id, **refresh)
            .on_conflict_do_update(index_elements=[Workspace.slack_team_id], set_=refresh)
        )
        await session.execute(stmt)
        await session.commit()
        workspace = await session.scalar(
            select(Workspace).where(Workspace.slack_team_id == slack_team_id)
        )
    if workspace is None:
        raise RuntimeError(f"Workspace {slack_team_id} missing after upsert")
    return workspace


async def provision_workspace(bot_token: str, client: Optional[SlackApiClient] = None) -> Workspace:
    """Create or refresh a workspace from a bot token via ``auth.test``."""
    client = client or SlackApiClient()
    identity = await client.auth_test(bot_token)
    domain = None
    url = identity.get("url") or ""
    if url:
        domain = url.replace("https://", "").split(".slack.com")[0].strip("/") or None
    workspace = await upsert_workspace(
        identity["team_id"],
        identity.get("team") or identity["team_id"],
        bot_token=bot_token,
        bot_user_id=identity.get("user_id"),
        domain=domain,
    )
    logger.info("[Slack OAuth] Provisioned workspace %s (%s)", workspace.name, workspace.slack_team_id)
    return workspace


async def complete_oauth(
    code: str,
    client: Optional[SlackApiClient] = None,
    redirect_uri: Optional[str] = None,
) -> tuple[Workspace, Optional[User]]:
    """
    Exchange an OAuth code and persist the workspace and authorising user.

    Raises:
        ValueError: when the Slack client credentials are not configured.
        SlackApiError: when Slack rejects the code.
    """
    if not settings.SLACK_CLIENT_ID or not settings.SLACK_CLIENT_SECRET:
        raise ValueError("SLACK_CLIENT_ID and SLACK_CLIENT_SECRET must be configured")

    client = client or SlackApiClient()
    data = await client.oauth_v2_access(
        code,
        settings.SLACK_CLIENT_ID,
        settings.SLACK_CLIENT_SECRET,
        redirect_uri or settings.SLACK_REDIRECT_URI,
    )

    team: dict[str, Any] = data.get("team") or {}
    workspace = await upsert_workspace(
        team["id"],
        team.get("name") or team["id"],
        bot_token=data.get("access_token"),
        bot_user_id=data.get("bot_user_id"),
    )

    authed: dict[str, Any] = data.get("authed_user") or {}
    slack_user_id = authed.get("id")
    if not slack_user_id:
        return workspace, None

    user_token: Optional[str] = authed.get("access_token")
    payload: dict[str, Any] = {"id": slack_user_id}
    lookup_token = workspace.bot_token or user_token
    if lookup_token:
        try:
            payload = await client.users_info(lookup_token, slack_user_id) or payload
        except SlackError as exc:
            logger.warning("[Slack OAuth] users.info failed for %s: %s", slack_user_id, exc)
    if user_token and not (payload.get("profile") or {}).get("email"):
        try:
            identity = await client.users_identity(user_token)
            ident_user = identity.get("user") or {}
            profile = dict(payload.get("profile") or {})
            profile.setdefault("email", ident_user.get("email") or fallback_email(slack_user_id))
            payload = {**payload, "profile": profile}
            payload.setdefault("real_name", ident_user.get("name"))
        except SlackError as exc:
            logger.warning("[Slack OAuth] users.identity failed for %s: %s", slack_user_id, exc)

    async with get_session() as session:
        user = await upsert_slack_user(session, payload, workspace.id)
        if user_token:
            user.access_token = user_token
            user.token_scopes = authed.get("scope")
        await session.commit()

    logger.info("[Slack OAuth] Stored token for user %s in workspace %s", slack_user_id, workspace.slack_team_id)
    return workspace, user
