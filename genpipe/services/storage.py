"""
Storage Service
Handles artifact storage - supports Google Cloud Storage and local filesystem.
"""

import asyncio
import logging
import shutil
from pathlib import Path
from typing import Optional

import httpx

from genpipe.core.config import Settings, settings as default_settings

logger = logging.getLogger(__name__)

FILES_PREFIX = "/files/"
GCS_PUBLIC_PREFIX = "https://storage.googleapis.com/"


class StorageService:
    """Service for artifact storage operations."""

    def __init__(self, settings: Settings = default_settings):
        self.settings = settings
        self.use_gcs = settings.USE_GCS

        if self.use_gcs:
            from google.cloud import storage
            self.gcs_client = storage.Client(project=settings.GCP_PROJECT_ID)
            self.bucket_outputs = self.gcs_client.bucket(settings.GCS_BUCKET_OUTPUTS)
            logger.info(f"[Storage] Using Google Cloud Storage: {settings.GCS_BUCKET_OUTPUTS}")
        else:
            self.base_path = Path(settings.LOCAL_STORAGE_PATH)
            self.base_path.mkdir(parents=True, exist_ok=True)
            logger.info(f"[Storage] Using local storage: {self.base_path}")

    async def upload_bytes(self, data: bytes, path: str, content_type: str = "video/mp4") -> str:
        """Upload bytes and return URL. Existing objects at `path` are overwritten."""
        if self.use_gcs:
            blob = self.bucket_outputs.blob(path)
            await asyncio.to_thread(blob.upload_from_string, data, content_type=content_type)
        else:
            file_path = self.base_path / path
            file_path.parent.mkdir(parents=True, exist_ok=True)
            file_path.write_bytes(data)
        return self.get_public_url(path)

    async def upload_file(self, source: Path, path: str, content_type: str = "video/mp4") -> str:
        """Upload a file from disk and return URL."""
        if self.use_gcs:
            blob = self.bucket_outputs.blob(path)
            await asyncio.to_thread(blob.upload_from_filename, str(source), content_type=content_type)
        else:
            file_path = self.base_path / path
            file_path.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(source, file_path)
        return self.get_public_url(path)

    async def get_file(self, path: str) -> bytes:
        """Get file contents."""
        if self.use_gcs:
            blob = self.bucket_outputs.blob(path)
            return await asyncio.to_thread(blob.download_as_bytes)
        return self.local_path(path).read_bytes()

    async def delete_folder(self, prefix: str):
        """Delete all files with given prefix."""
        if self.use_gcs:
            blobs = await asyncio.to_thread(lambda: list(self.bucket_outputs.list_blobs(prefix=prefix)))
            for blob in blobs:
                await asyncio.to_thread(blob.delete)
            logger.info(f"[Storage] Deleted {len(blobs)} object(s) under {prefix}")
            return
        folder_path = self.local_path(prefix)
        if folder_path.exists():
            shutil.rmtree(folder_path)

    def local_path(self, path: str) -> Path:
        """Resolve a storage path under the local root, refusing escapes."""
        root = self.base_path.resolve()
        file_path = (root / path).resolve()
        if root != file_path and root not in file_path.parents:
            raise ValueError(f"Path escapes storage root: {path}")
        return file_path

    def get_public_url(self, path: str) -> str:
        """API proxy URL for a stored file, absolute when API_BASE_URL is set."""
        base = (self.settings.API_BASE_URL or "").rstrip("/")
        return f"{base}{FILES_PREFIX}{path}"

    def path_from_url(self, url: str) -> Optional[str]:
        """Storage path behind a proxy or GCS URL, or None for foreign URLs."""
        base = (self.settings.API_BASE_URL or "").rstrip("/")
        for prefix in (f"{base}{FILES_PREFIX}", FILES_PREFIX):
            if prefix and url.startswith(prefix):
                return url[len(prefix):]
        if url.startswith(GCS_PUBLIC_PREFIX):
            parts = url[len(GCS_PUBLIC_PREFIX):].split("/", 1)
            if len(parts) > 1:
                return parts[1]
        return None

    async def download_bytes(self, url: str) -> bytes:
        """
        Download file bytes from a URL (API proxy, GCS, local file, or HTTP).

        Args:
            url: File URL (/files/..., https://storage.googleapis.com/..., file://, or http(s)://)

        Returns:
            File bytes
        """
        try:
            path = self.path_from_url(url)
            if path is not None:
                return await self.get_file(path)

            if url.startswith("file://"):
                return Path(url[len("file://"):]).read_bytes()

            if url.startswith(("http://", "https://")):
                async with httpx.AsyncClient(follow_redirects=True) as client:
                    response = await client.get(url, timeout=120.0)
                    response.raise_for_status()
                    return response.content

            return await self.get_file(url)
        except Exception as e:
            logger.error(f"[Storage] Error downloading {url}: {e}")
            raise


_storage: Optional[StorageService] = None


def get_storage_service() -> StorageService:
    """Get singleton StorageService instance."""
    global _storage
    if _storage is None:
        _storage = StorageService()
    return _storage
