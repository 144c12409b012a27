"""Domain types shared by resolvers, providers and the delivery cache."""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from mediarelay.utils.exceptions import InvalidSourceRefError


class SourceKind(Enum):
    """Category of upstream media."""
    YOUTUBE = "youtube"
    TRACK = "track"  # Spotify track
    CLIP = "clip"  # TikTok clip

    @property
    def prefix(self) -> str:
        """Short prefix used in cache keys."""
        return _KIND_PREFIXES[self]

    @classmethod
    def from_prefix(cls, prefix: str) -> "SourceKind":
        for kind, value in _KIND_PREFIXES.items():
            if value == prefix:
                return kind
        raise InvalidSourceRefError(f"Unknown source prefix: {prefix!r}")


_KIND_PREFIXES = {
    SourceKind.YOUTUBE: "yt",
    SourceKind.TRACK: "spotify",
    SourceKind.CLIP: "tk",
}


class MediaKind(Enum):
    """Requested media type, independent of any backend's vocabulary."""
    AUDIO = "audio"
    VIDEO = "video"

    @classmethod
    def parse(cls, value) -> "MediaKind":
        """
        Normalize a backend or caller vocabulary into a MediaKind.

        Accepts "audio", "mp3", "m4a", "opus" for audio and "video", "mp4"
        for video (case-insensitive). MediaKind values pass through.
        """
        if isinstance(value, MediaKind):
            return value
        normalized = str(value or "").strip().lower()
        if normalized in ("audio", "mp3", "m4a", "opus"):
            return cls.AUDIO
        if normalized in ("video", "mp4"):
            return cls.VIDEO
        raise InvalidSourceRefError(f"Unknown media kind: {value!r}")


@dataclass(frozen=True)
class SourceRef:
    """Identifies one piece of upstream media."""
    kind: SourceKind
    source_id: str

    @property
    def canonical_url(self) -> str:
        if self.kind == SourceKind.YOUTUBE:
            return f"https://www.youtube.com/watch?v={self.source_id}"
        if self.kind == SourceKind.TRACK:
            return f"https://open.spotify.com/track/{self.source_id}"
        if self.source_id.isdigit():
            return f"https://www.tiktok.com/@/video/{self.source_id}"
        return f"https://vm.tiktok.com/{self.source_id}/"


@dataclass(frozen=True)
class FormatCandidate:
    """One downloadable format reported by a backend."""
    media_type: MediaKind
    container: str
    quality_label: str
    source_url: str
    referer_url: str
    backend_origin: str
    bitrate_kbps: Optional[int] = None
    resolution_p: Optional[int] = None
    http_headers: dict = field(default_factory=dict, compare=False, hash=False)


@dataclass(frozen=True)
class BackendInstance:
    """One network-addressable mirror of a backend."""
    base_url: str
    is_primary: bool = False


@dataclass
class ResolvedMedia:
    """Result of one Format Resolver call."""
    title: str
    candidates: List[FormatCandidate]
    referer_url: str
    origin_instance: str


@dataclass(frozen=True)
class CacheKey:
    """Deterministic identity of one deliverable (source, kind, quality)."""
    source: SourceRef
    kind: MediaKind
    quality: str = ""

    def __str__(self) -> str:
        return f"{self.source.kind.prefix}:{self.source.source_id}:{self.kind.value}:{self.quality}"

    @classmethod
    def parse(cls, text: str) -> "CacheKey":
        """Inverse of str(key). Raises InvalidSourceRefError on malformed keys."""
        parts = (text or "").split(":", 3)
        if len(parts) != 4 or not parts[1]:
            raise InvalidSourceRefError(f"Malformed cache key: {text!r}")
        prefix, source_id, kind, quality = parts
        return cls(
            source=SourceRef(SourceKind.from_prefix(prefix), source_id),
            kind=MediaKind.parse(kind),
            quality=quality,
        )


@dataclass
class CacheEntry:
    """A persisted key -> handle mapping."""
    key: str
    handle: str
    inserted_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {"handle": self.handle, "inserted_at": self.inserted_at}

    @classmethod
    def from_dict(cls, key: str, data) -> "CacheEntry":
        # Plain string values are bare handles
        if isinstance(data, str):
            return cls(key=key, handle=data, inserted_at=0.0)
        return cls(key=key, handle=data["handle"], inserted_at=float(data.get("inserted_at", 0.0)))
