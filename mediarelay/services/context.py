"""Service wiring, built once at process start.

Everything stateful (HTTP client, instance pool, queues, cache, stores) hangs
off one ServiceContext instead of module globals, so tests can build their
own with fakes.
"""

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import List

import httpx
from supabase import create_client

from mediarelay.config import Settings
from mediarelay.models.media import MediaKind, SourceKind, SourceRef
from mediarelay.services import logger
from mediarelay.services.delivery_cache import DeliveryCache, JsonFileStore, SupabaseTableStore
from mediarelay.services.download_queue import QueueRegistry
from mediarelay.services.invidious import InstancePool, InvidiousResolver
from mediarelay.services.media_service import MediaService
from mediarelay.services.providers import FallbackProvider, FormatProvider, TrackProvider
from mediarelay.services.storage import SupabaseObjectStore
from mediarelay.services.youtube import YtDlpResolver


def _youtube_url(source_id: str) -> str:
    return SourceRef(SourceKind.YOUTUBE, source_id).canonical_url


def _clip_url(source_id: str) -> str:
    return SourceRef(SourceKind.CLIP, source_id).canonical_url


def _search_query(query: str) -> str:
    return f"ytsearch1:{query}"


@dataclass
class ServiceContext:
    settings: Settings
    http_client: httpx.AsyncClient
    queues: QueueRegistry
    service: MediaService
    executors: List[ThreadPoolExecutor] = field(default_factory=list)

    @classmethod
    def build(cls, settings: Settings) -> "ServiceContext":
        if not settings.SUPABASE_URL or not settings.SUPABASE_SERVICE_KEY:
            raise RuntimeError("SUPABASE_URL and SUPABASE_SERVICE_KEY must be set")

        http_client = httpx.AsyncClient(
            follow_redirects=True,
            timeout=httpx.Timeout(30.0, connect=10.0),
            proxy=settings.PROXY_URL,
        )
        # Extraction and storage get separate pools
        extract_executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="ytdlp")
        storage_executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="storage")
        supabase = create_client(settings.SUPABASE_URL, settings.SUPABASE_SERVICE_KEY)

        queues = QueueRegistry(settings.QUEUE_DELAY_SECONDS)

        def ytdlp_provider(url_for, name: str) -> FormatProvider:
            resolver = YtDlpResolver(
                extract_executor,
                url_for,
                timeout_seconds=settings.EXTRACT_TIMEOUT_SECONDS,
                proxy_url=settings.PROXY_URL,
                name=name,
            )
            return FormatProvider(resolver, http_client, queue=queues.get(name))

        pool = InstancePool(
            http_client,
            settings.INVIDIOUS_PRIMARY,
            settings.INVIDIOUS_DIRECTORY,
            ttl_seconds=settings.INSTANCE_TTL_SECONDS,
        )
        invidious = FormatProvider(
            InvidiousResolver(http_client, pool, timeout_seconds=settings.RESOLVE_TIMEOUT_SECONDS),
            http_client,
            queue=queues.get(InvidiousResolver.name),
            labels={MediaKind.AUDIO: "audio", MediaKind.VIDEO: "mp4"},
        )

        providers = {
            SourceKind.YOUTUBE: FallbackProvider(ytdlp_provider(_youtube_url, "yt-dlp"), invidious),
            SourceKind.TRACK: TrackProvider(http_client, ytdlp_provider(_search_query, "yt-dlp")),
            SourceKind.CLIP: ytdlp_provider(_clip_url, "tiktok"),
        }

        if settings.CACHE_BACKEND == "supabase":
            store = SupabaseTableStore(supabase, settings.CACHE_TABLE, storage_executor)
        else:
            store = JsonFileStore(settings.CACHE_FILE_PATH)

        object_store = SupabaseObjectStore(
            supabase,
            settings.STORAGE_BUCKET,
            storage_executor,
            temp_dir=settings.TEMP_DIR,
            max_bytes=settings.MAX_UPLOAD_BYTES,
            upload_timeout_seconds=settings.UPLOAD_TIMEOUT_SECONDS,
            signed_url_ttl_seconds=settings.SIGNED_URL_TTL_SECONDS,
        )

        logger.info(
            "Service context ready",
            "general",
            {"cache_backend": settings.CACHE_BACKEND, "bucket": settings.STORAGE_BUCKET},
        )
        return cls(
            settings=settings,
            http_client=http_client,
            queues=queues,
            service=MediaService(providers, DeliveryCache(store), object_store),
            executors=[extract_executor, storage_executor],
        )

    async def aclose(self) -> None:
        await self.queues.close()
        await self.http_client.aclose()
        for executor in self.executors:
            executor.shutdown(wait=False)
