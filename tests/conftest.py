import sys
from pathlib import Path
from typing import Dict, List, Optional

import pytest


# Ensure tests can import project packages regardless of how pytest is invoked.
ROOT = Path(__file__).resolve().parents[1]
ROOT_STR = str(ROOT)
if ROOT_STR not in sys.path:
    sys.path.insert(0, ROOT_STR)

from mediarelay.models.media import CacheEntry  # noqa: E402
from mediarelay.services.delivery_cache import DeliveryCache, KeyValueStore  # noqa: E402
from mediarelay.services.streams import MediaStream  # noqa: E402


class MemoryStore(KeyValueStore):
    def __init__(self):
        self.entries: Dict[str, CacheEntry] = {}

    async def get(self, key: str) -> Optional[CacheEntry]:
        return self.entries.get(key)

    async def set(self, entry: CacheEntry) -> None:
        self.entries[entry.key] = entry

    async def delete(self, key: str) -> None:
        self.entries.pop(key, None)


def build_stream(chunks: List[bytes], filename: str = "clip.mp3", content_length: Optional[int] = None) -> MediaStream:
    async def _chunks():
        for chunk in chunks:
            yield chunk

    async def _close():
        return None

    return MediaStream(
        chunks=_chunks(),
        close=_close,
        filename=filename,
        content_type="audio/mpeg",
        content_length=content_length,
        title="Test Title",
    )


class FakeProvider:
    """SourceProvider stand-in that counts downloads and hands out streams."""

    family = "fake"

    def __init__(self, title: str = "Test Title", error: Optional[Exception] = None):
        self.title = title
        self.error = error
        self.downloads: List[tuple] = []
        self.title_lookups: List[str] = []
        self.streams: List[MediaStream] = []

    def format_label(self, kind) -> str:
        return "mp3"

    async def download(self, source_id, kind, quality):
        self.downloads.append((source_id, kind, quality))
        if self.error is not None:
            raise self.error
        stream = build_stream([b"abc", b"def"])
        self.streams.append(stream)
        return stream

    async def resolve_title(self, source_id):
        self.title_lookups.append(source_id)
        if self.error is not None:
            raise self.error
        return self.title


class FakeObjectStore:
    """ObjectStore stand-in that consumes streams and issues numbered handles."""

    def __init__(self, error: Optional[Exception] = None, stale_handles=()):
        self.error = error
        self.stale_handles = set(stale_handles)
        self.uploads: List[bytes] = []

    async def upload(self, stream, key) -> str:
        if self.error is not None:
            raise self.error
        body = b""
        async for chunk in stream.iter_bytes():
            body += chunk
        self.uploads.append(body)
        return f"handle-{len(self.uploads)}"

    async def signed_url(self, handle: str) -> str:
        from mediarelay.utils.exceptions import StaleHandleError

        if handle in self.stale_handles:
            raise StaleHandleError(f"gone: {handle}")
        return f"https://cdn.example/{handle}"


@pytest.fixture
def memory_store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def delivery_cache(memory_store) -> DeliveryCache:
    return DeliveryCache(memory_store)
