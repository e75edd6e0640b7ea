"""
Admin notification on permanent sync failure.

Every active admin is logged as notified. When Resend is configured they are
also emailed. Notification problems are logged and never replace the
original failure.
"""
from __future__ import annotations

import logging
from typing import Any, Optional

from sqlalchemy import select

from config import settings
from models.database import get_session
from models.user import User
from services.email import send_email

logger = logging.getLogger(__name__)


async def get_active_admins() -> list[User]:
    async with get_session() as session:
        result = await session.execute(
            select(User).where(User.is_admin.is_(True), User.is_active.is_(True))
        )
        return list(result.scalars().all())


def _failure_body(job: dict[str, Any]) -> str:
    lines = [
        "A Slack sync job failed permanently.",
        "",
        f"Job: {job.get('job_id')}",
        f"User: {job.get('user_id')}",
        f"Workspace: {job.get('workspace_id')}",
        f"Attempts: {job.get('attempt')}/{job.get('total_attempts')}",
        f"Error: {job.get('final_error') or job.get('error')}",
    ]
    return "\n".join(lines)


async def notify_admins_of_failure(
    job: dict[str, Any],
    admins: Optional[list[User]] = None,
) -> int:
    """
    Notify admins about one failed job record. Returns the number of admins notified.
    """
    try:
        recipients = admins if admins is not None else await get_active_admins()
    except Exception as exc:
        logger.error("[Notifications] Could not load admins for job %s: %s", job.get("job_id"), exc)
        return 0

    if not recipients:
        logger.warning("[Notifications] No active admins to notify about job %s", job.get("job_id"))
        return 0

    for admin in recipients:
        logger.warning(
            "Admin notification: Slack sync job failed permanently (admin=%s job=%s user=%s error=%s)",
            admin.email,
            job.get("job_id"),
            job.get("user_id"),
            job.get("final_error") or job.get("error"),
        )

    if settings.RESEND_API_KEY:
        try:
            await send_email(
                to=[admin.email for admin in recipients],
                subject=f"Slack sync failed permanently for user {job.get('user_id')}",
                body=_failure_body(job),
            )
        except Exception as exc:
            logger.error("[Notifications] Email delivery failed for job %s: %s", job.get("job_id"), exc)

    return len(recipients)
