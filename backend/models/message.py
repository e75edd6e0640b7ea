"""
Message model - one archived Slack message.
"""
from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from models.database import Base, JSONType


class Message(Base):
    """
    A Slack message.

    ``slack_message_id`` is Slack's ``ts`` string (``<unix>.<micro>``). It is
    kept as text so fractional precision survives, and it is the sole
    deduplication key within a workspace.
    """

    __tablename__ = "messages"
    __table_args__ = (
        UniqueConstraint(
            "workspace_id", "slack_message_id", name="uq_messages_workspace_slack_message"
        ),
        Index("ix_messages_channel_timestamp", "channel_id", "timestamp"),
        Index("ix_messages_thread_ts", "channel_id", "thread_ts"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    slack_message_id: Mapped[str] = mapped_column(String(32), nullable=False)
    workspace_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("workspaces.id"), nullable=False
    )
    channel_id: Mapped[str] = mapped_column(
        String(50), ForeignKey("channels.id"), nullable=False
    )
    user_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=True, index=True
    )
    text: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    timestamp: Mapped[str] = mapped_column(String(32), nullable=False)
    thread_ts: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    reply_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    subtype: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    raw: Mapped[Optional[dict[str, Any]]] = mapped_column(JSONType, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "slack_message_id": self.slack_message_id,
            "channel_id": self.channel_id,
            "user_id": str(self.user_id) if self.user_id else None,
            "text": self.text,
            "timestamp": self.timestamp,
            "thread_ts": self.thread_ts,
            "reply_count": self.reply_count,
        }
