"""
Storage Service - Upload storage for import files.

This module keeps uploaded spreadsheets on disk between validation and
processing, and removes them once they are no longer needed.
"""

import uuid
import logging
from pathlib import Path
from datetime import datetime

logger = logging.getLogger(__name__)

# Default storage directory
DEFAULT_UPLOAD_DIR = 'uploads/'


class StorageService:
    """
    Framework-agnostic storage service for uploaded import files.

    Files are stored under a random name so two uploads with the same
    original name never overwrite each other.
    """

    def __init__(self, upload_dir: str = DEFAULT_UPLOAD_DIR):
        """
        Initialize storage service.

        Args:
            upload_dir: Directory to store uploads (default: 'uploads/')
        """
        self.upload_dir = upload_dir
        self._ensure_directory_exists()

    def _ensure_directory_exists(self):
        """Ensure the upload directory exists."""
        Path(self.upload_dir).mkdir(parents=True, exist_ok=True)
        logger.debug(f"Storage directory ensured: {self.upload_dir}")

    def save_upload(self, content: bytes, file_name: str) -> str:
        """
        Write an uploaded file to the upload directory.

        Args:
            content: Raw file bytes
            file_name: Original file name (only its extension is kept)

        Returns:
            Path to stored file
        """
        self._ensure_directory_exists()

        ext = Path(file_name).suffix.lower()
        dest_path = Path(self.upload_dir) / f"{uuid.uuid4().hex}{ext}"
        dest_path.write_bytes(content)
        logger.info(f"Stored upload {file_name} -> {dest_path} ({len(content)} bytes)")

        return str(dest_path)

    def delete_file(self, file_path: str) -> bool:
        """
        Delete a file from storage.

        Args:
            file_path: Path to file to delete

        Returns:
            True if file was deleted, False if file didn't exist
        """
        path = Path(file_path)

        if path.exists():
            path.unlink()
            logger.info(f"Deleted file: {file_path}")
            return True
        else:
            logger.warning(f"File not found for deletion: {file_path}")
            return False

    def cleanup_temp_files(self, older_than_hours: int = 24) -> int:
        """
        Clean up uploads older than specified hours.

        Args:
            older_than_hours: Remove files older than this many hours

        Returns:
            Number of files deleted
        """
        upload_path = Path(self.upload_dir)

        if not upload_path.exists():
            return 0

        current_time = datetime.now().timestamp()
        cutoff_time = current_time - (older_than_hours * 3600)

        deleted_count = 0

        for file_path in upload_path.glob("*"):
            if file_path.is_file() and file_path.stat().st_mtime < cutoff_time:
                try:
                    file_path.unlink()
                    deleted_count += 1
                    logger.debug(f"Cleaned up upload: {file_path}")
                except OSError as e:
                    logger.error(f"Error deleting upload {file_path}: {e}")

        if deleted_count > 0:
            logger.info(f"Cleaned up {deleted_count} stale uploads")

        return deleted_count
