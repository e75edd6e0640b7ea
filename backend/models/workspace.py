"""
Workspace model - one Slack team archived by this service.
"""
from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import DateTime, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from models.database import Base


class Workspace(Base):
    """A Slack team. The bot token is used for public channel sync."""

    __tablename__ = "workspaces"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    slack_team_id: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    domain: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    bot_token: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    bot_user_id: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary (bot token omitted)."""
        return {
            "id": str(self.id),
            "slack_team_id": self.slack_team_id,
            "name": self.name,
            "domain": self.domain,
            "has_bot_token": bool(self.bot_token),
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
