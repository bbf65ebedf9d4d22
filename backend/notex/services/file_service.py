"""
NoteX Backend — File Storage Service
======================================

What:  Validates, stores, resolves and removes the files behind note listings.
Why:   Centralizes all file system operations with security checks.
How:   Validates extension, declared content type and size, then streams the
       upload into a date-organized directory under FILES_DIR with a UUID
       filename. The write is a scoped resource: any failure while writing
       removes the partial file before the error propagates.
Who:   Built once by create_app() and injected into the catalog service.

Security Model:
    1. Extension check:   pdf, jpg, jpeg, png only
    2. Content-type check: the declared multipart type must match the extension
    3. Size check:         enforced while streaming, so oversize uploads are
                           never fully buffered or kept on disk
    4. UUID filename:      no user input reaches the file system path
    5. Resolve check:      downloads can never escape FILES_DIR
"""

import logging
import os
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import AsyncGenerator, Optional, Tuple

import aiofiles

from notex.exceptions import FileStorageError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

ALLOWED_CONTENT_TYPES = {
    ".pdf": {"application/pdf"},
    ".jpg": {"image/jpeg", "image/jpg"},
    ".jpeg": {"image/jpeg", "image/jpg"},
    ".png": {"image/png"},
}
ALLOWED_EXTENSIONS = set(ALLOWED_CONTENT_TYPES)

MEDIA_TYPES = {
    ".pdf": "application/pdf",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
}

CHUNK_SIZE = 1024 * 1024


class FileService:
    """
    Manages the note-file lifecycle.

    Directory Structure:
        files/
        └── 2025/
            └── 01/
                └── 15/
                    ├── a1b2c3d4-....pdf
                    └── e5f6g7h8-....png
    """

    def __init__(self, files_dir: str, max_file_size: int = 26_214_400):
        self.files_dir = Path(files_dir).resolve()
        self.max_file_size = max_file_size
        self.files_dir.mkdir(parents=True, exist_ok=True)
        logger.info("FileService initialized with files_dir=%s", self.files_dir)

    # ── Validation ────────────────────────────────────────────────────────

    def validate_extension(self, filename: str) -> str:
        """Returns the normalized extension or raises ValidationError."""
        ext = Path(filename or "").suffix.lower()
        if ext not in ALLOWED_EXTENSIONS:
            raise ValidationError(
                message="Only PDF and image files (JPEG, PNG) are allowed",
                field="file",
                context={"extension": ext, "allowed": sorted(ALLOWED_EXTENSIONS)},
            )
        return ext

    def validate_content_type(self, content_type: Optional[str], extension: str) -> None:
        """The declared multipart content type must agree with the extension."""
        if not content_type:
            return
        declared = content_type.split(";")[0].strip().lower()
        if declared not in ALLOWED_CONTENT_TYPES[extension]:
            raise ValidationError(
                message="Only PDF and image files (JPEG, PNG) are allowed",
                field="file",
                context={"content_type": declared, "extension": extension},
            )

    def _size_error(self, size: int) -> ValidationError:
        max_mb = self.max_file_size / (1024 * 1024)
        return ValidationError(
            message=f"File size exceeds maximum of {max_mb:.0f}MB.",
            field="file",
            context={"max_size_mb": max_mb, "size": size},
        )

    # ── Storage ───────────────────────────────────────────────────────────

    def _generate_storage_path(self, extension: str) -> Tuple[Path, str]:
        """Creates a YYYY/MM/DD/<uuid><ext> path; returns (absolute, relative)."""
        now = datetime.now(timezone.utc)
        relative_path = f"{now.strftime('%Y/%m/%d')}/{uuid.uuid4()}{extension}"
        return self.files_dir / relative_path, relative_path

    @asynccontextmanager
    async def scoped_write(self, extension: str) -> AsyncGenerator[Tuple[object, str], None]:
        """
        Acquire a destination file, yield (handle, relative_path), and
        guarantee it is closed on every exit path. If the block raises, the
        partial file is deleted and the error re-raised (OS errors are
        wrapped in FileStorageError).
        """
        absolute_path, relative_path = self._generate_storage_path(extension)
        try:
            absolute_path.parent.mkdir(parents=True, exist_ok=True)
            async with aiofiles.open(absolute_path, "wb") as handle:
                yield handle, relative_path
        except Exception as e:
            await self.cleanup_file(relative_path)
            if isinstance(e, OSError):
                logger.error("Failed to store file at %s: %s", absolute_path, str(e))
                raise FileStorageError(
                    message="Failed to save uploaded file. Please try again.",
                    context={"path": relative_path, "os_error": str(e)},
                ) from e
            raise

    async def store_upload(self, filename: str, content_type: Optional[str], stream) -> str:
        """
        Validate and persist an upload.

        Args:
            filename:     client filename (only its extension is used)
            content_type: declared multipart content type
            stream:       object with an async read(size) method (UploadFile)

        Returns:
            Relative path of the stored file (saved on the note row).
        """
        ext = self.validate_extension(filename)
        self.validate_content_type(content_type, ext)

        async with self.scoped_write(ext) as (handle, relative_path):
            written = 0
            while True:
                chunk = await stream.read(CHUNK_SIZE)
                if not chunk:
                    break
                written += len(chunk)
                if written > self.max_file_size:
                    raise self._size_error(written)
                await handle.write(chunk)
            if written == 0:
                raise ValidationError(message="Uploaded file is empty", field="file")

        logger.info("File stored: %s (%d bytes)", relative_path, written)
        return relative_path

    def resolve(self, relative_path: str) -> Path:
        """
        Map a stored relative path to an absolute one inside FILES_DIR.

        Raises:
            NotFoundError if the path escapes FILES_DIR or the file is gone.
        """
        full_path = (self.files_dir / relative_path).resolve()
        if full_path != self.files_dir and self.files_dir not in full_path.parents:
            raise NotFoundError(resource="file")
        if not full_path.is_file():
            raise NotFoundError(resource="file")
        return full_path

    @staticmethod
    def media_type(path: Path) -> str:
        return MEDIA_TYPES.get(path.suffix.lower(), "application/octet-stream")

    async def cleanup_file(self, relative_path: str) -> None:
        """Best-effort removal of a stored file (failed uploads)."""
        path = self.files_dir / relative_path
        try:
            if path.exists():
                os.remove(path)
                logger.info("Cleaned up file: %s", path.name)
        except OSError as e:
            logger.warning("Failed to clean up file %s: %s", relative_path, str(e))
