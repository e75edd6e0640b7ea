"""
User model - archive-side identity mirroring a Slack user.
"""
from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import Boolean, DateTime, ForeignKey, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from models.database import Base


class User(Base):
    """
    A Slack user known to the archive.

    Keyed by a surrogate UUID; ``slack_user_id`` is the unique external key
    every ingestion path upserts on. Users are deactivated, never deleted.
    """

    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    slack_user_id: Mapped[Optional[str]] = mapped_column(
        String(50), unique=True, nullable=True
    )
    workspace_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("workspaces.id"), nullable=True, index=True
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    avatar_url: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    is_admin: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # User-scope OAuth token (xoxp-) used for DM/MPIM/private channel sync
    access_token: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    token_scopes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary (token omitted)."""
        return {
            "id": str(self.id),
            "slack_user_id": self.slack_user_id,
            "workspace_id": str(self.workspace_id) if self.workspace_id else None,
            "name": self.name,
            "email": self.email,
            "avatar_url": self.avatar_url,
            "is_active": self.is_active,
            "is_admin": self.is_admin,
            "has_token": bool(self.access_token),
        }
