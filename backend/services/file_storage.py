"""
Local object storage for archived Slack files.

Keys are POSIX-style relative paths under ``FILE_STORAGE_ROOT``:
``slack-files/YYYY/MM/<slug>_<file_id>.<ext>`` with thumbnails beside them in
``slack-files/YYYY/MM/thumbnails/``.
"""

from __future__ import annotations

import asyncio
import logging
import re
from datetime import datetime
from pathlib import Path, PurePosixPath
from typing import Optional

from config import settings

logger = logging.getLogger(__name__)

STORAGE_DISK: str = "local"
_SLUG_STRIP = re.compile(r"[^a-z0-9]+")


def slugify(value: str, fallback: str = "file") -> str:
    slug = _SLUG_STRIP.sub("-", value.lower()).strip("-")
    return slug[:80] or fallback


def file_key(name: str, slack_file_id: str, when: Optional[datetime] = None) -> str:
    """Storage key for the original file."""
    when = when or datetime.utcnow()
    stem = PurePosixPath(name).stem
    ext = PurePosixPath(name).suffix.lstrip(".").lower() or "bin"
    return f"slack-files/{when:%Y/%m}/{slugify(stem)}_{slack_file_id}.{ext}"


def thumbnail_key(original_key: str, size_name: str) -> str:
    original = PurePosixPath(original_key)
    slug = original.stem
    return str(original.parent / "thumbnails" / f"{slug}_{size_name}.jpg")


class LocalFileStorage:
    """Filesystem-backed store. Blocking I/O runs in a worker thread."""

    def __init__(self, root: Optional[str] = None) -> None:
        self.root = Path(root or settings.FILE_STORAGE_ROOT)

    def path(self, key: str) -> Path:
        resolved = (self.root / key).resolve()
        if self.root.resolve() not in resolved.parents:
            raise ValueError(f"Storage key escapes storage root: {key}")
        return resolved

    def _write(self, key: str, data: bytes) -> None:
        target = self.path(key)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)

    async def put(self, key: str, data: bytes) -> str:
        await asyncio.to_thread(self._write, key, data)
        logger.debug("[FileStorage] Wrote %d bytes to %s", len(data), key)
        return key

    async def get(self, key: str) -> bytes:
        return await asyncio.to_thread(self.path(key).read_bytes)

    async def exists(self, key: str) -> bool:
        return await asyncio.to_thread(self.path(key).is_file)

    async def delete(self, key: str) -> None:
        target = self.path(key)
        await asyncio.to_thread(target.unlink, True)
