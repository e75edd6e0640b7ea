"""
SlackFile model - an archived attachment and its local copy.
"""
from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import BigInteger, Boolean, DateTime, ForeignKey, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from models.database import Base, JSONType

FILE_TYPES: tuple[str, ...] = ("image", "video", "audio", "document", "archive", "other")
DOWNLOAD_STATUSES: tuple[str, ...] = ("pending", "completed", "failed", "missing")


class SlackFile(Base):
    """A Slack file, upserted by ``slack_file_id``."""

    __tablename__ = "slack_files"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    slack_file_id: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(512), nullable=False)
    title: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    mimetype: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    file_type: Mapped[str] = mapped_column(String(20), nullable=False, default="other")
    size: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    url_private: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    url_public: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    is_public: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Local archive copy
    storage_disk: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    local_path: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    thumbnail_path: Mapped[Optional[dict[str, str]]] = mapped_column(JSONType, nullable=True)
    file_hash: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    download_status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    downloaded_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    user_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=True, index=True
    )
    channel_id: Mapped[Optional[str]] = mapped_column(
        String(50), ForeignKey("channels.id"), nullable=True, index=True
    )
    message_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("messages.id"), nullable=True
    )
    file_metadata: Mapped[Optional[dict[str, Any]]] = mapped_column(
        "metadata", JSONType, nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "slack_file_id": self.slack_file_id,
            "name": self.name,
            "mimetype": self.mimetype,
            "file_type": self.file_type,
            "size": self.size,
            "local_path": self.local_path,
            "thumbnail_path": self.thumbnail_path,
            "download_status": self.download_status,
        }
