"""Source providers: turn (source id, kind, quality) into an open media stream.

A provider hides which backend produced the bytes. FormatProvider composes a
Format Resolver, the Quality Selector and an HTTP fetch; FallbackProvider
tries a primary provider and then, once, a secondary; TrackProvider maps a
Spotify track onto a YouTube search.
"""

import html
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Optional

import httpx

from mediarelay.models.media import MediaKind
from mediarelay.services import logger
from mediarelay.services.download_queue import DownloadQueue
from mediarelay.services.resolver import FormatResolver
from mediarelay.services.selector import select_format
from mediarelay.services.streams import DEFAULT_USER_AGENT, MediaStream, open_media_stream
from mediarelay.utils.exceptions import (
    AllProvidersFailedError,
    BackendUnavailableError,
    FormatNotFoundError,
    SourceUnavailableError,
)


MAX_TITLE_IN_FILENAME = 100

# Default labels per kind; backends that speak another vocabulary override them
DEFAULT_LABELS = {MediaKind.AUDIO: "mp3", MediaKind.VIDEO: "mp4"}


class SourceProvider(ABC):
    """Produces media streams for one source kind."""

    family: str = "default"

    def format_label(self, kind: MediaKind) -> str:
        """Backend vocabulary for a kind, used in filenames and logs."""
        return DEFAULT_LABELS[MediaKind.parse(kind)]

    @abstractmethod
    async def download(self, source_id: str, kind, quality: str) -> MediaStream:
        """Return an open, unread stream. The caller must close it."""

    @abstractmethod
    async def resolve_title(self, source_id: str) -> str:
        """Human-readable title of the source."""


def build_filename(title: str, label: str, quality: str, container: str) -> str:
    return f"{title[:MAX_TITLE_IN_FILENAME]}_{label}_{quality}.{container}"


class FormatProvider(SourceProvider):
    """
    Resolver + selector + fetch, optionally serialized through a queue.

    When a queue is given, title lookups and the whole resolve/select/open
    step run as queued tasks; only the byte transfer happens outside the queue.
    """

    def __init__(
        self,
        resolver: FormatResolver,
        client: httpx.AsyncClient,
        queue: Optional[DownloadQueue] = None,
        labels: Optional[Dict[MediaKind, str]] = None,
    ):
        self.resolver = resolver
        self._client = client
        self._queue = queue
        self._labels = labels or DEFAULT_LABELS
        self.family = resolver.name

    def format_label(self, kind) -> str:
        return self._labels[MediaKind.parse(kind)]

    async def download(self, source_id: str, kind, quality: str) -> MediaStream:
        kind = MediaKind.parse(kind)
        if self._queue is None:
            return await self._open(source_id, kind, quality)
        return await self._queue.submit(lambda: self._open(source_id, kind, quality))

    async def resolve_title(self, source_id: str) -> str:
        if self._queue is None:
            resolved = await self.resolver.resolve(source_id)
        else:
            resolved = await self._queue.submit(lambda: self.resolver.resolve(source_id))
        return resolved.title

    async def _open(self, source_id: str, kind: MediaKind, quality: str) -> MediaStream:
        resolved = await self.resolver.resolve(source_id)
        candidate = select_format(resolved.candidates, kind, quality)
        if candidate is None:
            raise FormatNotFoundError(
                f"No {kind.value} format among {len(resolved.candidates)} candidates for {source_id}"
            )

        logger.info(
            f"Selected {candidate.quality_label} ({candidate.container}) from {candidate.backend_origin}",
            "provider",
            {"source_id": source_id, "backend": self.family, "requested": quality},
        )
        filename = build_filename(resolved.title, self.format_label(kind), quality, candidate.container)
        return await open_media_stream(self._client, candidate, filename=filename, title=resolved.title)


class FallbackProvider(SourceProvider):
    """
    Primary provider with a single secondary attempt.

    Any primary failure (cancellation excepted) triggers exactly one call to
    the secondary. If both fail, AllProvidersFailedError carries both errors.
    """

    def __init__(self, primary: SourceProvider, secondary: SourceProvider):
        self.primary = primary
        self.secondary = secondary
        self.family = primary.family

    def format_label(self, kind) -> str:
        return self.primary.format_label(kind)

    async def download(self, source_id: str, kind, quality: str) -> MediaStream:
        try:
            return await self.primary.download(source_id, kind, quality)
        except Exception as primary_error:
            logger.warn(
                f"Primary provider failed, trying secondary: {primary_error}",
                "provider",
                {"source_id": source_id, "primary": self.primary.family, "secondary": self.secondary.family},
            )
            try:
                return await self.secondary.download(source_id, kind, quality)
            except Exception as secondary_error:
                logger.error(
                    "All providers failed",
                    "provider",
                    {
                        "source_id": source_id,
                        "primary_error": str(primary_error),
                        "secondary_error": str(secondary_error),
                    },
                )
                raise AllProvidersFailedError(primary_error, secondary_error) from secondary_error

    async def resolve_title(self, source_id: str) -> str:
        try:
            return await self.primary.resolve_title(source_id)
        except Exception as primary_error:
            logger.warn(
                f"Primary title lookup failed, trying secondary: {primary_error}",
                "provider",
                {"source_id": source_id, "primary": self.primary.family, "secondary": self.secondary.family},
            )
            try:
                return await self.secondary.resolve_title(source_id)
            except Exception as secondary_error:
                logger.error(
                    "Title lookup failed on all providers",
                    "provider",
                    {
                        "source_id": source_id,
                        "primary_error": str(primary_error),
                        "secondary_error": str(secondary_error),
                    },
                )
                raise AllProvidersFailedError(primary_error, secondary_error) from secondary_error


# === SPOTIFY TRACKS ===

_OG_TITLE_RE = re.compile(r'<meta\s+property="og:title"\s+content="([^"]*)"', re.IGNORECASE)
_OG_DESCRIPTION_RE = re.compile(r'<meta\s+property="og:description"\s+content="([^"]*)"', re.IGNORECASE)


@dataclass
class TrackMetadata:
    title: str
    artist: str = ""

    @property
    def search_query(self) -> str:
        if self.artist:
            return f"{self.artist} - {self.title}"
        return self.title


def parse_track_page(page: str) -> Optional[TrackMetadata]:
    """Read title and artist from a Spotify track page's OpenGraph tags."""
    title_match = _OG_TITLE_RE.search(page)
    if not title_match or not title_match.group(1).strip():
        return None
    artist = ""
    description_match = _OG_DESCRIPTION_RE.search(page)
    if description_match:
        # "Artist · Album · Song · 2021"
        artist = html.unescape(description_match.group(1)).split("·")[0].strip()
    return TrackMetadata(title=html.unescape(title_match.group(1)).strip(), artist=artist)


class TrackProvider(SourceProvider):
    """Spotify tracks: look up the track metadata, then search YouTube for audio."""

    def __init__(self, client: httpx.AsyncClient, search: FormatProvider):
        self._client = client
        self.search = search
        self.family = search.family

    def format_label(self, kind) -> str:
        return self.search.format_label(kind)

    async def fetch_metadata(self, track_id: str) -> TrackMetadata:
        url = f"https://open.spotify.com/track/{track_id}"
        try:
            response = await self._client.get(url, headers={"User-Agent": DEFAULT_USER_AGENT})
        except httpx.HTTPError as e:
            raise BackendUnavailableError(f"Spotify lookup failed: {e}") from e

        if response.status_code == 404:
            raise SourceUnavailableError(f"Spotify track not found: {track_id}")
        if not response.is_success:
            raise BackendUnavailableError(f"Spotify lookup failed: HTTP {response.status_code}")

        metadata = parse_track_page(response.text)
        if metadata is None:
            raise SourceUnavailableError(f"No track metadata on Spotify page: {track_id}")
        return metadata

    async def download(self, source_id: str, kind, quality: str) -> MediaStream:
        if MediaKind.parse(kind) != MediaKind.AUDIO:
            raise FormatNotFoundError("Spotify tracks are only available as audio")

        metadata = await self.fetch_metadata(source_id)
        logger.info(
            f"Searching YouTube for track: {metadata.search_query}",
            "provider",
            {"source_id": source_id},
        )
        return await self.search.download(metadata.search_query, MediaKind.AUDIO, quality)

    async def resolve_title(self, source_id: str) -> str:
        metadata = await self.fetch_metadata(source_id)
        return metadata.search_query
