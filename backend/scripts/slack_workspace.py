#!/usr/bin/env python3
"""
Provision a Slack workspace from a bot token.

Usage:
    python scripts/slack_workspace.py [--token xoxb-...] [--admin-email you@company.com]

Without --token the SLACK_BOT_TOKEN setting is used. --admin-email flags an
existing archive user as admin.
"""
import argparse
import asyncio
import logging
import sys
from typing import Optional

# Add parent directory to path for imports
sys.path.insert(0, str(__file__).rsplit("/scripts", 1)[0])

from sqlalchemy import select

from config import settings
from connectors.slack import SlackError
from models.database import close_db, get_session
from models.user import User
from services.slack_oauth import provision_workspace


async def run(token: str, admin_email: Optional[str]) -> bool:
    try:
        workspace = await provision_workspace(token)
    except SlackError as exc:
        print(f"Error: {exc}")
        return False

    print(f"✓ Workspace: {workspace.name} ({workspace.slack_team_id})")
    print(f"  id: {workspace.id}")

    if admin_email:
        async with get_session() as session:
            user = await session.scalar(select(User).where(User.email == admin_email))
            if user is None:
                print(f"Error: no user with email {admin_email}")
                return False
            user.is_admin = True
            await session.commit()
        print(f"✓ {admin_email} is now an admin")
    return True


async def main_async(token: str, admin_email: Optional[str]) -> bool:
    try:
        return await run(token, admin_email)
    finally:
        await close_db()


def main() -> None:
    parser = argparse.ArgumentParser(description="Provision a Slack workspace")
    parser.add_argument("--token", help="Bot token (default: SLACK_BOT_TOKEN)")
    parser.add_argument("--admin-email", help="Mark this archive user as admin")
    args = parser.parse_args()

    token = args.token or settings.SLACK_BOT_TOKEN
    if not token:
        print("Error: pass --token or set SLACK_BOT_TOKEN")
        sys.exit(1)

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    success = asyncio.run(main_async(token, args.admin_email))
    sys.exit(0 if success else 1)


if __name__ == "__main__":
    main()
