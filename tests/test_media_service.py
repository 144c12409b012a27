import asyncio
from concurrent.futures import ThreadPoolExecutor

import httpx
import pytest

from mediarelay.models.media import CacheKey, FormatCandidate, MediaKind, ResolvedMedia, SourceKind, SourceRef
from mediarelay.services.download_queue import DownloadQueue
from mediarelay.services.media_service import MediaService
from mediarelay.services.providers import FormatProvider
from mediarelay.services.resolver import FormatResolver
from mediarelay.services.storage import SupabaseObjectStore
from mediarelay.services.streams import MediaStream
from mediarelay.utils.exceptions import (
    AllProvidersFailedError,
    BackendUnavailableError,
    DownloadError,
    InvalidSourceRefError,
    UploadFailedError,
    UploadTooLargeError,
)

from conftest import FakeObjectStore, FakeProvider


KEY = CacheKey(SourceRef(SourceKind.YOUTUBE, "dQw4w9WgXcQ"), MediaKind.AUDIO, "128")


def _service(delivery_cache, provider=None, object_store=None):
    provider = provider or FakeProvider()
    object_store = object_store or FakeObjectStore()
    service = MediaService({SourceKind.YOUTUBE: provider}, delivery_cache, object_store)
    return service, provider, object_store


def test_resolve_builds_cache_key_and_title(delivery_cache) -> None:
    service, provider, _ = _service(delivery_cache, FakeProvider(title="Never Gonna Give You Up"))

    resolved = asyncio.run(service.resolve("https://youtu.be/dQw4w9WgXcQ", "mp3", "128"))

    assert resolved.title == "Never Gonna Give You Up"
    assert resolved.cache_key == KEY
    assert provider.downloads == []


def test_resolve_rejects_unknown_links(delivery_cache) -> None:
    service, _, _ = _service(delivery_cache)

    with pytest.raises(InvalidSourceRefError):
        asyncio.run(service.resolve("https://example.com/nope", "audio", "128"))


def test_resolve_rejects_sources_without_provider(delivery_cache) -> None:
    service, _, _ = _service(delivery_cache)

    with pytest.raises(InvalidSourceRefError):
        asyncio.run(service.resolve("https://open.spotify.com/track/abc", "audio", "128"))


def test_second_delivery_is_served_from_cache(delivery_cache) -> None:
    service, provider, object_store = _service(delivery_cache)

    async def scenario():
        first = await service.deliver(KEY)
        second = await service.deliver(str(KEY))
        return first, second

    first, second = asyncio.run(scenario())

    assert first == second == "handle-1"
    assert len(provider.downloads) == 1
    assert object_store.uploads == [b"abcdef"]
    assert provider.streams[0].closed


def test_reported_failure_forces_fresh_download(delivery_cache) -> None:
    service, provider, _ = _service(delivery_cache)

    async def scenario():
        first = await service.deliver(KEY)
        await service.report_delivery_failure(KEY)
        second = await service.deliver(KEY)
        return first, second

    first, second = asyncio.run(scenario())

    assert (first, second) == ("handle-1", "handle-2")
    assert len(provider.downloads) == 2


def test_oversize_upload_writes_no_entry_and_closes_stream(delivery_cache, memory_store) -> None:
    service, provider, _ = _service(delivery_cache, object_store=FakeObjectStore(error=UploadTooLargeError()))

    with pytest.raises(UploadTooLargeError):
        asyncio.run(service.deliver(KEY))

    assert memory_store.entries == {}
    assert provider.streams[0].closed


def test_unknown_upload_errors_are_wrapped(delivery_cache, memory_store) -> None:
    service, provider, _ = _service(delivery_cache, object_store=FakeObjectStore(error=OSError("disk full")))

    with pytest.raises(UploadFailedError, match="disk full"):
        asyncio.run(service.deliver(KEY))

    assert memory_store.entries == {}
    assert provider.streams[0].closed


def test_download_failure_writes_no_entry(delivery_cache, memory_store) -> None:
    failure = AllProvidersFailedError(BackendUnavailableError("a"), BackendUnavailableError("b"))
    service, _, object_store = _service(delivery_cache, provider=FakeProvider(error=failure))

    with pytest.raises(AllProvidersFailedError):
        asyncio.run(service.deliver(KEY))

    assert object_store.uploads == []
    assert memory_store.entries == {}


def test_upstream_failure_mid_transfer_is_a_download_error(delivery_cache, memory_store, tmp_path) -> None:
    async def broken_body():
        yield b"abc"
        raise httpx.ReadError("upstream connection reset")

    async def _close():
        return None

    stream = MediaStream(chunks=broken_body(), close=_close, filename="clip.m4a")
    provider = FakeProvider()

    async def download(source_id, kind, quality):
        return stream

    provider.download = download
    object_store = SupabaseObjectStore(
        None,
        "media",
        ThreadPoolExecutor(max_workers=1),
        temp_dir=str(tmp_path / "spool"),
        max_bytes=1024,
    )
    service = MediaService({SourceKind.YOUTUBE: provider}, delivery_cache, object_store)

    with pytest.raises(DownloadError, match="upstream connection reset"):
        asyncio.run(service.deliver(KEY))

    assert stream.closed
    assert memory_store.entries == {}
    assert list((tmp_path / "spool").iterdir()) == []


class _SingleFormatResolver(FormatResolver):
    name = "single"

    async def resolve(self, target):
        candidate = FormatCandidate(
            media_type=MediaKind.AUDIO,
            container="m4a",
            quality_label="128k",
            source_url="https://media.example/audio",
            referer_url="https://watch.example/page",
            backend_origin="https://watch.example",
            bitrate_kbps=128,
        )
        return ResolvedMedia(title="Song", candidates=[candidate], referer_url="", origin_instance="")


class _RecordingObjectStore(FakeObjectStore):
    def __init__(self):
        super().__init__()
        self.streams = []

    async def upload(self, stream, key) -> str:
        self.streams.append(stream)
        return await super().upload(stream, key)


def test_cancelled_delivery_closes_stream_and_frees_the_queue(delivery_cache, memory_store) -> None:
    other_key = CacheKey(SourceRef(SourceKind.YOUTUBE, "9bZkp7q19f0"), MediaKind.AUDIO, "128")
    requests = []
    object_store = _RecordingObjectStore()

    async def scenario():
        receiving = asyncio.Event()
        never = asyncio.Event()

        async def stalled_body():
            yield b"abc"
            receiving.set()
            await never.wait()
            yield b"never"

        def handler(request):
            requests.append(request)
            if len(requests) == 1:
                return httpx.Response(200, content=stalled_body())
            return httpx.Response(200, content=b"full")

        queue = DownloadQueue("single", delay_seconds=0)
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            provider = FormatProvider(_SingleFormatResolver(), client, queue=queue)
            service = MediaService({SourceKind.YOUTUBE: provider}, delivery_cache, object_store)

            stalled = asyncio.ensure_future(service.deliver(KEY))
            await asyncio.wait_for(receiving.wait(), timeout=1)
            stalled.cancel()
            with pytest.raises(asyncio.CancelledError):
                await stalled

            handle = await asyncio.wait_for(service.deliver(other_key), timeout=1)
        await queue.close()
        return handle

    assert asyncio.run(scenario()) == "handle-1"
    assert len(object_store.streams) == 2
    assert all(stream.closed for stream in object_store.streams)
    assert object_store.uploads == [b"full"]
    assert list(memory_store.entries) == [str(other_key)]
