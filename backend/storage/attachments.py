"""Local-disk attachment store. The incident core keeps metadata only."""

from __future__ import annotations

import asyncio
import logging
import re
import uuid
from dataclasses import dataclass
from pathlib import Path

from backend.config import settings
from backend.errors import NotFound, ValidationError

logger = logging.getLogger("incidentdesk.attachments")

ALLOWED_MIME_TYPES = {
    "image/jpeg": ".jpg",
    "image/png": ".png",
    "image/gif": ".gif",
    "image/webp": ".webp",
}
MAX_FILES_PER_UPLOAD = 10
MAX_FILES_PER_COMMENT = 5

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


@dataclass(frozen=True)
class UploadedFile:
    """Bytes plus client-supplied metadata, before storage."""

    original_name: str
    mime_type: str
    content: bytes


@dataclass(frozen=True)
class StoredFile:
    filename: str
    original_name: str
    mime_type: str
    size: int
    storage_ref: str


def validate_uploads(files: list[UploadedFile], limit: int, max_bytes: int | None = None) -> None:
    max_bytes = max_bytes or settings.attachment_max_bytes
    if len(files) > limit:
        raise ValidationError(f"At most {limit} files per upload", details={"count": len(files), "limit": limit})
    for upload in files:
        if upload.mime_type not in ALLOWED_MIME_TYPES:
            raise ValidationError(
                "Only image files are allowed",
                details={"file": upload.original_name, "mime_type": upload.mime_type},
            )
        if len(upload.content) > max_bytes:
            raise ValidationError(
                f"File exceeds {max_bytes // (1024 * 1024)} MB limit",
                details={"file": upload.original_name, "size": len(upload.content)},
            )
        if not upload.content:
            raise ValidationError("Empty file", details={"file": upload.original_name})


class LocalAttachmentStore:
    """Writes attachment bytes under a root directory and returns a storage reference."""

    def __init__(self, root: str | Path | None = None, max_bytes: int | None = None) -> None:
        self.root = Path(root or settings.attachment_dir)
        self.max_bytes = max_bytes or settings.attachment_max_bytes

    def _path_for(self, storage_ref: str) -> Path:
        path = (self.root / storage_ref).resolve()
        if self.root.resolve() not in path.parents:
            raise NotFound("Attachment not found", details={"storage_ref": storage_ref})
        return path

    async def save(self, incident_key: str, upload: UploadedFile) -> StoredFile:
        stem = _UNSAFE_CHARS.sub("_", Path(upload.original_name).stem)[:80] or "file"
        filename = f"{uuid.uuid4().hex[:12]}-{stem}{ALLOWED_MIME_TYPES[upload.mime_type]}"
        storage_ref = f"{incident_key}/{filename}"
        path = self.root / storage_ref

        def _write() -> None:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(upload.content)

        await asyncio.to_thread(_write)
        logger.info("Stored attachment %s (%d bytes)", storage_ref, len(upload.content))
        return StoredFile(
            filename=filename,
            original_name=upload.original_name,
            mime_type=upload.mime_type,
            size=len(upload.content),
            storage_ref=storage_ref,
        )

    async def save_all(self, incident_key: str, uploads: list[UploadedFile], limit: int) -> list[StoredFile]:
        validate_uploads(uploads, limit=limit, max_bytes=self.max_bytes)
        return [await self.save(incident_key, upload) for upload in uploads]

    async def read(self, storage_ref: str) -> bytes:
        path = self._path_for(storage_ref)
        if not path.exists():
            raise NotFound("Attachment not found", details={"storage_ref": storage_ref})
        return await asyncio.to_thread(path.read_bytes)

    async def delete(self, storage_ref: str) -> None:
        path = self._path_for(storage_ref)
        try:
            await asyncio.to_thread(path.unlink)
        except FileNotFoundError:
            logger.debug("Attachment %s already removed", storage_ref)
