"""
Slack file ingestion into the local archive.

Handles:
- Upserting the SlackFile row keyed by slack_file_id
- Downloading the original with the owner's token and storing it locally
- JPEG thumbnails for images (thumb/small/medium/large)
- Marking records whose local object has disappeared as missing

Download and thumbnail failures are recorded independently and never raise
into the caller's message sync.
"""

from __future__ import annotations

import asyncio
import hashlib
import io
import logging
import uuid
from datetime import datetime
from typing import Any, Optional

from PIL import Image
from sqlalchemy import select, update

from config import settings
from connectors.slack import SlackApiClient
from models.database import get_session, upsert_insert
from models.slack_file import SlackFile
from services.file_storage import STORAGE_DISK, LocalFileStorage, file_key, thumbnail_key

logger = logging.getLogger(__name__)

THUMBNAIL_SIZES: dict[str, int] = {
    "thumb": 150,
    "small": 300,
    "medium": 600,
    "large": 1200,
}

DOCUMENT_MIMES: frozenset[str] = frozenset({
    "application/pdf",
    "application/msword",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "application/vnd.ms-excel",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    "application/vnd.ms-powerpoint",
    "application/vnd.openxmlformats-officedocument.presentationml.presentation",
    "text/plain",
    "text/csv",
})

ARCHIVE_MIMES: frozenset[str] = frozenset({
    "application/zip",
    "application/x-rar-compressed",
    "application/x-7z-compressed",
    "application/gzip",
    "application/x-tar",
})


def classify_mimetype(mimetype: Optional[str]) -> str:
    """Map a mimetype onto image/video/audio/document/archive/other."""
    mime = (mimetype or "").lower().split(";")[0].strip()
    if mime.startswith("image/"):
        return "image"
    if mime.startswith("video/"):
        return "video"
    if mime.startswith("audio/"):
        return "audio"
    if mime in DOCUMENT_MIMES:
        return "document"
    if mime in ARCHIVE_MIMES:
        return "archive"
    return "other"


def render_thumbnails(data: bytes, quality: int) -> dict[str, bytes]:
    """Aspect-preserving JPEG thumbnails, one per configured size. CPU bound."""
    rendered: dict[str, bytes] = {}
    with Image.open(io.BytesIO(data)) as source:
        source.load()
        image = source.convert("RGB")
    for size_name, max_px in THUMBNAIL_SIZES.items():
        thumb = image.copy()
        thumb.thumbnail((max_px, max_px))
        buffer = io.BytesIO()
        thumb.save(buffer, format="JPEG", quality=quality)
        rendered[size_name] = buffer.getvalue()
    return rendered


def _file_values(descriptor: dict[str, Any]) -> dict[str, Any]:
    mimetype = descriptor.get("mimetype")
    return {
        "name": descriptor.get("name") or descriptor.get("title") or descriptor["id"],
        "title": descriptor.get("title"),
        "mimetype": mimetype,
        "file_type": classify_mimetype(mimetype),
        "size": int(descriptor.get("size") or 0),
        "url_private": descriptor.get("url_private_download") or descriptor.get("url_private"),
        "url_public": descriptor.get("permalink_public"),
        "is_public": bool(descriptor.get("is_public")),
        "file_metadata": {
            "filetype": descriptor.get("filetype"),
            "created": descriptor.get("created"),
            "slack_user": descriptor.get("user"),
            "channels": descriptor.get("channels") or [],
        },
    }


class FileIngestion:
    """Ingests Slack file descriptors. Safe to call repeatedly for the same file."""

    def __init__(
        self,
        client: SlackApiClient,
        storage: Optional[LocalFileStorage] = None,
        *,
        thumbnail_quality: Optional[int] = None,
    ) -> None:
        self.client = client
        self.storage = storage or LocalFileStorage()
        self.thumbnail_quality = thumbnail_quality or settings.THUMBNAIL_JPEG_QUALITY

    async def ingest(
        self,
        descriptor: dict[str, Any],
        token: str,
        *,
        user_id: Optional[uuid.UUID] = None,
        channel_id: Optional[str] = None,
        message_id: Optional[uuid.UUID] = None,
        force: bool = False,
        download: bool = True,
        thumbnails: bool = True,
    ) -> dict[str, Any]:
        """
        Ingest one file.

        Without ``force`` an already known file is skipped entirely.
        Returns ``{status, slack_file_id, downloaded, thumbnails, download_error?, thumbnail_error?}``.
        """
        slack_file_id = descriptor.get("id")
        if not slack_file_id:
            return {"status": "skipped", "reason": "missing id"}
        if descriptor.get("mode") == "tombstone":
            return {"status": "skipped", "slack_file_id": slack_file_id, "reason": "tombstone"}

        async with get_session() as session:
            existing = await session.scalar(
                select(SlackFile.id).where(SlackFile.slack_file_id == slack_file_id)
            )
            if existing is not None and not force:
                logger.debug("[FileIngestion] %s already archived, skipping", slack_file_id)
                return {"status": "skipped", "slack_file_id": slack_file_id}

            values = _file_values(descriptor)
            refresh = dict(values)
            refresh["updated_at"] = datetime.utcnow()
            for key, value in (("user_id", user_id), ("channel_id", channel_id), ("message_id", message_id)):
                if value is not None:
                    values[key] = value
                    refresh[key] = value
            stmt = (
                upsert_insert(session, SlackFile)
                .values(id=uuid.uuid4(), slack_file_id=slack_file_id, download_status="pending", **values)
                .on_conflict_do_update(index_elements=[SlackFile.slack_file_id], set_=refresh)
            )
            await session.execute(stmt)
            await session.commit()

        outcome: dict[str, Any] = {
            "status": "updated" if existing is not None else "created",
            "slack_file_id": slack_file_id,
            "downloaded": False,
            "thumbnails": 0,
        }
        url = descriptor.get("url_private_download") or descriptor.get("url_private")
        if not download or not url:
            return outcome

        try:
            data = await self.client.download_file(url, token)
            key = file_key(str(values["name"]), slack_file_id)
            await self.storage.put(key, data)
        except Exception as exc:
            logger.error("[FileIngestion] Download failed for %s: %s", slack_file_id, exc)
            await self._update(slack_file_id, download_status="failed")
            outcome["download_error"] = str(exc)
            return outcome

        await self._update(
            slack_file_id,
            storage_disk=STORAGE_DISK,
            local_path=key,
            file_hash=hashlib.sha256(data).hexdigest(),
            download_status="completed",
            downloaded_at=datetime.utcnow(),
        )
        outcome["downloaded"] = True
        logger.info("[FileIngestion] Archived %s (%d bytes) at %s", slack_file_id, len(data), key)

        if thumbnails and values["file_type"] == "image":
            try:
                paths = await self._store_thumbnails(key, data)
            except Exception as exc:
                logger.error("[FileIngestion] Thumbnail generation failed for %s: %s", slack_file_id, exc)
                outcome["thumbnail_error"] = str(exc)
            else:
                await self._update(slack_file_id, thumbnail_path=paths)
                outcome["thumbnails"] = len(paths)
        return outcome

    async def _store_thumbnails(self, original_key: str, data: bytes) -> dict[str, str]:
        rendered = await asyncio.to_thread(render_thumbnails, data, self.thumbnail_quality)
        paths: dict[str, str] = {}
        for size_name, jpeg in rendered.items():
            key = thumbnail_key(original_key, size_name)
            await self.storage.put(key, jpeg)
            paths[size_name] = key
        return paths

    async def _update(self, slack_file_id: str, **values: Any) -> None:
        async with get_session() as session:
            await session.execute(
                update(SlackFile)
                .where(SlackFile.slack_file_id == slack_file_id)
                .values(updated_at=datetime.utcnow(), **values)
            )
            await session.commit()

    async def verify_local_files(self) -> dict[str, int]:
        """Mark completed records whose stored object is gone as ``missing``."""
        stats = {"checked": 0, "missing": 0}
        async with get_session() as session:
            result = await session.execute(
                select(SlackFile.slack_file_id, SlackFile.local_path).where(
                    SlackFile.download_status == "completed",
                    SlackFile.local_path.is_not(None),
                )
            )
            rows = result.all()

        for slack_file_id, local_path in rows:
            stats["checked"] += 1
            if await self.storage.exists(local_path):
                continue
            logger.warning("[FileIngestion] Local copy of %s is missing (%s)", slack_file_id, local_path)
            await self._update(slack_file_id, download_status="missing")
            stats["missing"] += 1
        return stats
