"""
Email service for operator notifications.

Uses Resend for email delivery. Set RESEND_API_KEY in environment.
"""
from __future__ import annotations

import html as html_lib
import logging
from typing import Any, Optional

import httpx

from config import settings

logger = logging.getLogger(__name__)

RESEND_API_URL = "https://api.resend.com/emails"


async def send_email(
    to: str | list[str],
    subject: str,
    body: str,
    html: Optional[str] = None,
    from_address: Optional[str] = None,
    reply_to: Optional[str] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> bool:
    """
    Send an email via Resend.

    Args:
        to: Recipient email address(es)
        subject: Email subject
        body: Plain text body
        html: Optional HTML body (generated from body if not provided)
        from_address: Optional from address (defaults to EMAIL_FROM)
        reply_to: Optional reply-to address
        transport: Optional httpx transport (tests)

    Returns:
        True if email sent successfully, False otherwise
    """
    if not settings.RESEND_API_KEY:
        logger.info("[Email] RESEND_API_KEY not set, skipping email to %s", to)
        return False

    to_list = [to] if isinstance(to, str) else to

    if not html:
        escaped = html_lib.escape(body).replace(chr(10), "<br>")
        html = f"""
        <!DOCTYPE html>
        <html>
        <head><meta charset="utf-8"></head>
        <body style="font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #333; max-width: 600px; margin: 0 auto; padding: 20px;">
            {escaped}
        </body>
        </html>
        """

    payload: dict[str, Any] = {
        "from": from_address or settings.EMAIL_FROM,
        "to": to_list,
        "subject": subject,
        "html": html,
        "text": body,
    }

    if reply_to:
        payload["reply_to"] = reply_to

    client_kwargs: dict[str, Any] = {}
    if transport is not None:
        client_kwargs["transport"] = transport

    async with httpx.AsyncClient(**client_kwargs) as client:
        try:
            response = await client.post(
                RESEND_API_URL,
                headers={
                    "Authorization": f"Bearer {settings.RESEND_API_KEY}",
                    "Content-Type": "application/json",
                },
                json=payload,
                timeout=10.0,
            )
        except httpx.HTTPError as e:
            logger.error("[Email] Error sending to %s: %s", to_list, e)
            return False

    if response.status_code == 200:
        logger.info("[Email] Sent to %s", to_list)
        return True
    logger.error("[Email] Failed to send: %s %s", response.status_code, response.text)
    return False
