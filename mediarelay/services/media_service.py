"""Request lifecycle: resolve a request, deliver it, report stale handles."""

from dataclasses import dataclass
from typing import Dict, Union

from mediarelay.models.media import CacheKey, MediaKind, SourceKind, SourceRef
from mediarelay.services import logger
from mediarelay.services.delivery_cache import DeliveryCache
from mediarelay.services.providers import SourceProvider
from mediarelay.services.sources import parse_source_ref
from mediarelay.services.storage import ObjectStore
from mediarelay.utils.exceptions import InvalidSourceRefError, MediaRelayError, UploadFailedError


@dataclass
class ResolvedRequest:
    """What the caller needs to present a request before delivering it."""
    title: str
    cache_key: CacheKey


class MediaService:
    """
    Facade over providers, the delivery cache and the object store.

    Args:
        providers: Source provider per source kind
        cache: Delivery cache (key -> handle)
        object_store: Durable store producing handles
    """

    def __init__(
        self,
        providers: Dict[SourceKind, SourceProvider],
        cache: DeliveryCache,
        object_store: ObjectStore,
    ):
        self.providers = providers
        self.cache = cache
        self.object_store = object_store

    def provider_for(self, kind: SourceKind) -> SourceProvider:
        provider = self.providers.get(kind)
        if provider is None:
            raise InvalidSourceRefError(f"No provider configured for {kind.value} sources")
        return provider

    async def resolve(self, source: Union[SourceRef, str], kind, quality) -> ResolvedRequest:
        """
        Look up the title and build the cache key for a request.

        Does not consult the cache; the title is needed either way.
        """
        if not isinstance(source, SourceRef):
            source = parse_source_ref(source)
        kind = MediaKind.parse(kind)
        key = CacheKey(source=source, kind=kind, quality=str(quality or ""))

        title = await self.provider_for(source.kind).resolve_title(source.source_id)
        logger.info(f"Resolved {key}: {title}", "delivery", {"cache_key": str(key)})
        return ResolvedRequest(title=title, cache_key=key)

    async def deliver(self, key: Union[CacheKey, str]) -> str:
        """
        Return a handle for the key, downloading and uploading on a miss.

        Raises:
            AllProvidersFailedError / DownloadError / FormatNotFoundError: download failed
            UploadFailedError: upload failed (UploadTooLargeError when oversize)
        """
        if not isinstance(key, CacheKey):
            key = CacheKey.parse(key)

        handle = await self.cache.get(key)
        if handle:
            return handle

        provider = self.provider_for(key.source.kind)
        logger.info(f"Delivering {key} via {provider.family}", "delivery", {"cache_key": str(key)})

        stream = await provider.download(key.source.source_id, key.kind, key.quality)
        try:
            handle = await self.object_store.upload(stream, key)
        except MediaRelayError:
            raise
        except Exception as e:
            logger.error(
                f"Upload failed: {e}",
                "delivery",
                {"cache_key": str(key), "error_type": type(e).__name__},
            )
            raise UploadFailedError(str(e)) from e
        finally:
            await stream.aclose()

        await self.cache.put(key, handle)
        logger.success(f"Delivered {key}", "delivery", {"cache_key": str(key), "handle": handle})
        return handle

    async def report_delivery_failure(self, key: Union[CacheKey, str]) -> None:
        """The handle was rejected downstream; forget it so the next deliver re-fetches."""
        if not isinstance(key, CacheKey):
            key = CacheKey.parse(key)
        logger.warn(f"Delivery failure reported for {key}", "delivery", {"cache_key": str(key)})
        await self.cache.invalidate(key)
