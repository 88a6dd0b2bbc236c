"""File handling service for uploaded income documents."""

import hashlib
import logging
import uuid
from pathlib import Path
from typing import Tuple

from fastapi import HTTPException, UploadFile

from income_verification.config import settings

logger = logging.getLogger(__name__)


class FileHandler:
    """Handle file uploads and storage."""

    def __init__(self):
        """Initialize file handler."""
        self.upload_dir = settings.UPLOAD_DIR
        self.max_file_size = settings.max_file_size_bytes

    async def read_upload(self, file: UploadFile) -> bytes:
        """Validate an upload and return its bytes without storing it."""
        await self._validate_file(file)
        content = await file.read()
        await file.seek(0)
        return content

    async def save_upload(self, file: UploadFile, verification_id: str) -> Tuple[str, str, int, str]:
        """
        Save uploaded file to disk.

        Args:
            file: Uploaded file
            verification_id: Verification ID for directory organization

        Returns:
            Tuple of (stored_filename, file_path, file_size, content_hash)
        """
        # Validate file
        await self._validate_file(file)

        # Create directory for verification
        verification_dir = self.upload_dir / verification_id
        verification_dir.mkdir(parents=True, exist_ok=True)

        # Generate unique filename
        stored_filename = f"{uuid.uuid4()}_{Path(file.filename).name}"
        file_path = verification_dir / stored_filename

        # Save file and compute hash
        content = await file.read()
        content_hash = self._compute_hash(content)
        file_path.write_bytes(content)
        logger.info(f"Saved upload {file.filename} to {file_path} ({len(content)} bytes)")

        return stored_filename, str(file_path), len(content), content_hash

    def read_bytes(self, file_path: str) -> bytes:
        """Read a stored document for analysis."""
        return Path(file_path).read_bytes()

    def delete_file(self, file_path: str) -> None:
        """Remove a stored document; a missing file is ignored."""
        path = Path(file_path)
        if path.exists():
            path.unlink()
            logger.info(f"Deleted stored file {file_path}")

    def _compute_hash(self, content: bytes) -> str:
        """Compute SHA-256 hash of file content."""
        return hashlib.sha256(content).hexdigest()

    async def _validate_file(self, file: UploadFile) -> None:
        """Validate uploaded file."""
        # Check file extension
        file_ext = Path(file.filename or "").suffix.lower()
        if file_ext not in settings.ALLOWED_EXTENSIONS:
            raise HTTPException(
                status_code=400,
                detail=f"File type {file_ext} not allowed. Allowed types: {settings.ALLOWED_EXTENSIONS}",
            )

        # Check file size
        file.file.seek(0, 2)  # Move to end
        file_size = file.file.tell()
        file.file.seek(0)  # Reset

        if file_size == 0:
            raise HTTPException(status_code=400, detail="Uploaded file is empty")

        if file_size > self.max_file_size:
            raise HTTPException(
                status_code=400,
                detail=f"File size ({file_size / 1024 / 1024:.1f}MB) exceeds maximum ({settings.MAX_FILE_SIZE_MB}MB)",
            )
