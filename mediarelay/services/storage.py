"""Object store for delivered media.

The stream is spooled to a temp file (never held in memory), checked against
the size ceiling, and uploaded to Supabase Storage from a worker thread. The
returned handle is the storage path; signed URLs are issued from it when the
media is distributed.
"""

import asyncio
import re
import time
import uuid
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

import aiofiles

from mediarelay.models.media import CacheKey
from mediarelay.services import logger
from mediarelay.services.streams import MediaStream
from mediarelay.utils.exceptions import (
    BackendUnavailableError,
    StaleHandleError,
    UploadFailedError,
    UploadTooLargeError,
)


CONTENT_TYPES = {
    ".m4a": "audio/mp4",
    ".mp3": "audio/mpeg",
    ".webm": "video/webm",
    ".weba": "audio/webm",
    ".ogg": "audio/ogg",
    ".opus": "audio/opus",
    ".mp4": "video/mp4",
}

_UNSAFE_PATH_CHARS = re.compile(r"[^A-Za-z0-9_.-]")


def _is_too_large_error(error_msg: str) -> bool:
    error_lower = error_msg.lower()
    return "413" in error_lower or "too large" in error_lower or "exceeded the maximum" in error_lower


def _is_not_found_error(error_msg: str) -> bool:
    error_lower = error_msg.lower()
    return "not found" in error_lower or "404" in error_lower or "does not exist" in error_lower


class ObjectStore(ABC):
    """Durable store that turns a media stream into a re-servable handle."""

    @abstractmethod
    async def upload(self, stream: MediaStream, key: CacheKey) -> str:
        """Consume the stream and return an opaque handle. Does not close the stream."""

    @abstractmethod
    async def signed_url(self, handle: str) -> str:
        """Distribution URL for a handle. Raises StaleHandleError if the object is gone."""


class SupabaseObjectStore(ObjectStore):
    """Supabase Storage bucket with spool-to-disk uploads."""

    def __init__(
        self,
        client,
        bucket: str,
        executor: ThreadPoolExecutor,
        temp_dir: str,
        max_bytes: int,
        upload_timeout_seconds: float = 300.0,
        signed_url_ttl_seconds: int = 3600,
    ):
        self._client = client
        self.bucket = bucket
        self._executor = executor
        self.temp_dir = Path(temp_dir)
        self.max_bytes = max_bytes
        self.upload_timeout_seconds = upload_timeout_seconds
        self.signed_url_ttl_seconds = signed_url_ttl_seconds

    def storage_path(self, key: CacheKey, filename: str) -> str:
        ext = Path(filename).suffix.lower() or ".bin"
        quality = _UNSAFE_PATH_CHARS.sub("-", key.quality) or "default"
        source_id = _UNSAFE_PATH_CHARS.sub("-", key.source.source_id)
        return f"{key.source.kind.prefix}/{source_id}/{key.kind.value}_{quality}_{uuid.uuid4().hex[:8]}{ext}"

    async def _spool(self, stream: MediaStream, spool_path: Path) -> int:
        """Write the stream to disk, enforcing the size ceiling as bytes arrive."""
        if stream.content_length is not None and stream.content_length > self.max_bytes:
            raise UploadTooLargeError(
                f"File is {stream.content_length} bytes, limit is {self.max_bytes}"
            )

        size = 0
        async with aiofiles.open(spool_path, "wb") as f:
            async for chunk in stream.iter_bytes():
                size += len(chunk)
                if size > self.max_bytes:
                    raise UploadTooLargeError(f"File exceeds the {self.max_bytes} byte limit")
                await f.write(chunk)
        return size

    async def upload(self, stream: MediaStream, key: CacheKey) -> str:
        storage_path = self.storage_path(key, stream.filename)
        content_type = CONTENT_TYPES.get(Path(stream.filename).suffix.lower(), stream.content_type)
        self.temp_dir.mkdir(parents=True, exist_ok=True)
        spool_path = self.temp_dir / f"{uuid.uuid4().hex}.part"

        logger.info(
            f"Starting upload to Supabase: {storage_path}",
            "storage",
            {"cache_key": str(key), "bucket": self.bucket, "content_type": content_type},
        )

        try:
            start_time = time.time()
            file_size = await self._spool(stream, spool_path)
            logger.debug(
                f"Spooled {file_size / (1024 * 1024):.2f} MB in {time.time() - start_time:.2f}s",
                "storage",
                {"cache_key": str(key), "filesize_bytes": file_size},
            )

            def _blocking_upload():
                """Run the blocking Supabase upload in a thread."""
                self._client.storage.from_(self.bucket).upload(
                    path=storage_path,
                    file=str(spool_path),
                    file_options={"content-type": content_type, "upsert": "true"},
                )

            upload_start = time.time()
            loop = asyncio.get_running_loop()
            try:
                await asyncio.wait_for(
                    loop.run_in_executor(self._executor, _blocking_upload),
                    timeout=self.upload_timeout_seconds,
                )
            except asyncio.TimeoutError:
                logger.error(
                    f"Upload timed out after {self.upload_timeout_seconds}s",
                    "storage",
                    {"cache_key": str(key), "filesize_mb": file_size / (1024 * 1024)},
                )
                raise UploadFailedError(f"Upload timed out after {self.upload_timeout_seconds}s")
            except Exception as e:
                error_msg = str(e)
                logger.error(
                    f"Upload failed: {error_msg}",
                    "storage",
                    {"cache_key": str(key), "storage_path": storage_path, "error_type": type(e).__name__},
                )
                if _is_too_large_error(error_msg):
                    raise UploadTooLargeError(error_msg) from e
                raise UploadFailedError(error_msg) from e

            upload_time = time.time() - upload_start
            logger.success(
                f"Upload complete: {storage_path} ({file_size / (1024 * 1024):.2f} MB in {upload_time:.2f}s)",
                "storage",
                {"cache_key": str(key), "storage_path": storage_path, "filesize_bytes": file_size},
            )
            return storage_path
        finally:
            spool_path.unlink(missing_ok=True)

    async def signed_url(self, handle: str) -> str:
        def _blocking_sign():
            return self._client.storage.from_(self.bucket).create_signed_url(
                handle, self.signed_url_ttl_seconds
            )

        loop = asyncio.get_running_loop()
        try:
            result = await loop.run_in_executor(self._executor, _blocking_sign)
        except Exception as e:
            if _is_not_found_error(str(e)):
                logger.warn(f"Stale handle: {handle}", "storage", {"error": str(e)})
                raise StaleHandleError(f"Stored object not found: {handle}") from e
            raise BackendUnavailableError(f"Failed to sign URL: {e}") from e

        url = (result or {}).get("signedURL") or (result or {}).get("signedUrl")
        if not url:
            raise StaleHandleError(f"No signed URL issued for {handle}")
        return url
