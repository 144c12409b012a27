"""Parsing of user-supplied links into source references."""

import re
from typing import Optional
from urllib.parse import parse_qs, urlparse

from mediarelay.models.media import SourceKind, SourceRef
from mediarelay.utils.exceptions import InvalidSourceRefError


YOUTUBE_ID_RE = re.compile(r"^[A-Za-z0-9_-]{11}$")
YOUTUBE_HOSTS = (
    "youtube.com",
    "www.youtube.com",
    "m.youtube.com",
    "music.youtube.com",
    "youtube-nocookie.com",
    "www.youtube-nocookie.com",
)
# Path prefixes that carry the video id as the next segment
YOUTUBE_PATH_PREFIXES = ("shorts", "embed", "live", "v", "e")

SPOTIFY_TRACK_RE = re.compile(r"^/(?:intl-[a-z-]+/)?track/([A-Za-z0-9]+)")
TIKTOK_VIDEO_RE = re.compile(r"/(?:video|photo)/(\d+)")
TIKTOK_SHORT_HOSTS = ("vm.tiktok.com", "vt.tiktok.com")


def _parse_url(text: str):
    candidate = text if "://" in text else f"https://{text}"
    try:
        parsed = urlparse(candidate)
    except ValueError:
        return None
    if not parsed.hostname:
        return None
    return parsed


def extract_youtube_id(text: str) -> Optional[str]:
    """Return the 11-character video id from a YouTube link or bare id."""
    text = text.strip()
    if YOUTUBE_ID_RE.match(text):
        return text

    parsed = _parse_url(text)
    if parsed is None:
        return None
    host = parsed.hostname.lower()

    if host == "youtu.be":
        video_id = parsed.path.lstrip("/").split("/")[0]
        return video_id if YOUTUBE_ID_RE.match(video_id) else None

    if host not in YOUTUBE_HOSTS:
        return None

    query_id = parse_qs(parsed.query).get("v", [""])[0]
    if YOUTUBE_ID_RE.match(query_id):
        return query_id

    segments = [s for s in parsed.path.split("/") if s]
    if len(segments) >= 2 and segments[0] in YOUTUBE_PATH_PREFIXES:
        if YOUTUBE_ID_RE.match(segments[1]):
            return segments[1]
    return None


def extract_spotify_track_id(text: str) -> Optional[str]:
    parsed = _parse_url(text.strip())
    if parsed is None or parsed.hostname.lower() != "open.spotify.com":
        return None
    match = SPOTIFY_TRACK_RE.match(parsed.path)
    return match.group(1) if match else None


def extract_tiktok_id(text: str) -> Optional[str]:
    """Numeric clip id, or the short code of a vm./vt.tiktok.com link."""
    parsed = _parse_url(text.strip())
    if parsed is None:
        return None
    host = parsed.hostname.lower()
    if not (host == "tiktok.com" or host.endswith(".tiktok.com")):
        return None

    match = TIKTOK_VIDEO_RE.search(parsed.path)
    if match:
        return match.group(1)
    if host in TIKTOK_SHORT_HOSTS:
        code = parsed.path.strip("/").split("/")[0]
        if re.fullmatch(r"[A-Za-z0-9]+", code or ""):
            return code
    return None


def parse_source_ref(text: str) -> SourceRef:
    """
    Parse a user-supplied link or id into a SourceRef.

    Raises:
        InvalidSourceRefError: if the input is not a recognised link
    """
    if not text or not isinstance(text, str) or not text.strip():
        raise InvalidSourceRefError("Input must be a non-empty string")

    youtube_id = extract_youtube_id(text)
    if youtube_id:
        return SourceRef(SourceKind.YOUTUBE, youtube_id)

    track_id = extract_spotify_track_id(text)
    if track_id:
        return SourceRef(SourceKind.TRACK, track_id)

    clip_id = extract_tiktok_id(text)
    if clip_id:
        return SourceRef(SourceKind.CLIP, clip_id)

    raise InvalidSourceRefError(f"Could not extract a source id from: {text[:200]}")
