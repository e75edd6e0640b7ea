"""
Channel model - a Slack conversation (public, private, DM or MPIM).
"""
from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from models.database import Base


class Channel(Base):
    """A Slack conversation. The primary key is Slack's own channel id."""

    __tablename__ = "channels"

    id: Mapped[str] = mapped_column(String(50), primary_key=True)
    workspace_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("workspaces.id"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    topic: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    purpose: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    is_private: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_dm: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_mpim: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_archived: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    member_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    # Sync watermark: set on every successful pass
    last_synced_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )

    @property
    def is_public(self) -> bool:
        return not (self.is_private or self.is_dm or self.is_mpim)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "workspace_id": str(self.workspace_id),
            "name": self.name,
            "is_private": self.is_private,
            "is_dm": self.is_dm,
            "is_mpim": self.is_mpim,
            "is_archived": self.is_archived,
            "member_count": self.member_count,
            "last_synced_at": self.last_synced_at.isoformat() if self.last_synced_at else None,
        }
