"""
Source file storage access.

Cookbook PDFs live either in the local uploads directory or behind a URL
(object storage). The extraction engine only needs to read them back.
"""

import asyncio
import logging
from pathlib import Path

import httpx

logger = logging.getLogger(__name__)


class StorageError(Exception):
    """Raised when a stored file cannot be read."""

    pass


class StorageService:
    """Read-only access to uploaded cookbook files."""

    def __init__(
        self,
        uploads_dir: Path,
        max_size_bytes: int,
        timeout: float = 60.0,
    ):
        self.uploads_dir = Path(uploads_dir)
        self.max_size_bytes = max_size_bytes
        self.timeout = timeout

    async def get_buffer(self, path_or_url: str) -> bytes:
        """
        Fetch the full content of a stored file.

        Args:
            path_or_url: A storage key / path under the uploads directory, or
                an http(s) URL.

        Returns:
            File content.

        Raises:
            StorageError: Missing file, failed download, or file too large.
        """
        if path_or_url.startswith(("http://", "https://")):
            return await self._fetch_url(path_or_url)
        return await asyncio.to_thread(self._read_local, path_or_url)

    def _read_local(self, key: str) -> bytes:
        # Only the file name is trusted; keys never escape the uploads dir
        path = self.uploads_dir / Path(key).name
        if not path.is_file():
            raise StorageError(f"File not found: {key}")

        size = path.stat().st_size
        if size > self.max_size_bytes:
            raise StorageError(
                f"File too large: {size} bytes (max {self.max_size_bytes})"
            )

        logger.info("Reading %s from local storage (%d bytes)", path.name, size)
        return path.read_bytes()

    async def _fetch_url(self, url: str) -> bytes:
        try:
            async with httpx.AsyncClient(timeout=self.timeout, follow_redirects=True) as client:
                response = await client.get(url)
                response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error("Failed to download %s: %s", url, e)
            raise StorageError(f"Could not download file: {e}") from e

        content = response.content
        if len(content) > self.max_size_bytes:
            raise StorageError(
                f"File too large: {len(content)} bytes (max {self.max_size_bytes})"
            )

        logger.info("Downloaded %s (%d bytes)", url, len(content))
        return content


_storage_service: StorageService | None = None


def get_storage_service() -> StorageService:
    """Get or create the storage service singleton."""
    global _storage_service
    if _storage_service is None:
        from ..config import get_settings

        settings = get_settings()
        _storage_service = StorageService(
            uploads_dir=settings.uploads_dir,
            max_size_bytes=settings.max_pdf_size_mb * 1024 * 1024,
        )
    return _storage_service
