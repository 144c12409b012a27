"""yt-dlp extraction backend.

Runs yt-dlp metadata extraction (no download) in a worker thread and turns
the reported formats into FormatCandidates. The same resolver serves YouTube
ids, TikTok clips and "ytsearch1:" queries; only the target -> URL mapping
differs.

FORMAT FILTERING
================
Only formats that can be fetched with one plain HTTP GET are kept:
- audio-only formats (vcodec == "none"), ranked by abr/tbr
- combined audio+video formats, ranked by height
HLS/DASH manifests, storyboards and video-only streams are dropped since
they would need merging or segment assembly.
"""

import asyncio
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, List, Optional

import yt_dlp

from mediarelay.models.media import FormatCandidate, MediaKind, ResolvedMedia
from mediarelay.services import logger
from mediarelay.services.resolver import FormatResolver
from mediarelay.utils.exceptions import (
    BackendUnavailableError,
    NoFormatsFoundError,
    SourceUnavailableError,
)

# Age limit YouTube uses for sign-in-only content
AGE_RESTRICTION_THRESHOLD = 18

# Protocols that cannot be fetched as a single body
UNSUPPORTED_PROTOCOLS = ("m3u8", "m3u8_native", "http_dash_segments", "mhtml", "f4m", "ism")

# Format choice is irrelevant for extraction, but an unmatched one aborts it
EXTRACT_FORMAT = "bestaudio/best"


def _is_bot_detection_error(error_msg: str) -> bool:
    """Check if the error is a bot detection error."""
    error_lower = error_msg.lower()
    return "confirm you're not a bot" in error_lower or "confirm your not a bot" in error_lower


def _classify_error(error_msg: str) -> Exception:
    """
    Classify a yt-dlp error message into the matching exception type.

    Permanent problems with the media itself become SourceUnavailableError;
    everything else is treated as the backend being unavailable, which lets
    the fallback provider try its secondary.
    """
    error_lower = error_msg.lower()

    if _is_bot_detection_error(error_msg):
        return BackendUnavailableError(error_msg)

    if "video unavailable" in error_lower or "removed" in error_lower or "does not exist" in error_lower:
        return SourceUnavailableError(error_msg)
    elif "private video" in error_lower or "video is private" in error_lower:
        return SourceUnavailableError(error_msg)
    elif "age" in error_lower and "restrict" in error_lower:
        return SourceUnavailableError(error_msg)
    elif "copyright" in error_lower:
        return SourceUnavailableError(error_msg)
    elif "premium" in error_lower or "members only" in error_lower or "join this channel" in error_lower:
        return SourceUnavailableError(error_msg)
    else:
        return BackendUnavailableError(error_msg)


def _check_restrictions(info: dict, target: str) -> None:
    """Reject media that extracted fine but cannot be delivered."""
    if info.get("is_live"):
        logger.warn(f"Live stream detected: {target}", "ytdlp", {"target": target})
        raise SourceUnavailableError("This is a live stream and cannot be processed until it ends.")

    availability = info.get("availability") or ""
    if availability in ("premium_only", "subscriber_only"):
        logger.warn(
            f"Premium content detected: {target} (availability={availability})",
            "ytdlp",
            {"target": target, "availability": availability},
        )
        raise SourceUnavailableError(
            f"Media requires a premium subscription or membership (availability={availability})."
        )

    age_limit = info.get("age_limit") or 0
    if age_limit >= AGE_RESTRICTION_THRESHOLD and not info.get("formats"):
        raise SourceUnavailableError(f"Media is age-restricted (age_limit={age_limit}).")


def formats_to_candidates(info: dict, origin: str) -> List[FormatCandidate]:
    """Convert yt-dlp's format list into directly fetchable candidates."""
    referer = info.get("webpage_url") or ""
    candidates = []

    for fmt in info.get("formats") or []:
        url = fmt.get("url")
        protocol = fmt.get("protocol") or ""
        if not url or protocol in UNSUPPORTED_PROTOCOLS or fmt.get("format_note") == "storyboard":
            continue

        vcodec = fmt.get("vcodec")
        acodec = fmt.get("acodec")
        headers = dict(fmt.get("http_headers") or {})
        container = fmt.get("ext") or "mp4"

        if vcodec == "none" and acodec != "none":
            bitrate = fmt.get("abr") or fmt.get("tbr")
            bitrate_kbps = int(round(bitrate)) if bitrate else None
            candidates.append(FormatCandidate(
                media_type=MediaKind.AUDIO,
                container=container,
                quality_label=f"{bitrate_kbps}kbps" if bitrate_kbps else str(fmt.get("format_id")),
                source_url=url,
                referer_url=referer,
                backend_origin=origin,
                bitrate_kbps=bitrate_kbps,
                http_headers=headers,
            ))
        elif vcodec != "none" and acodec != "none" and (vcodec or fmt.get("height")):
            height = fmt.get("height")
            candidates.append(FormatCandidate(
                media_type=MediaKind.VIDEO,
                container=container,
                quality_label=f"{height}p" if height else str(fmt.get("format_id")),
                source_url=url,
                referer_url=referer,
                backend_origin=origin,
                resolution_p=int(height) if height else None,
                http_headers=headers,
            ))

    return candidates


class YtDlpResolver(FormatResolver):
    """
    Format resolver backed by yt-dlp metadata extraction.

    Args:
        executor: Thread pool for the blocking extraction call
        url_for: Maps a resolver target to the URL (or ytsearch query) yt-dlp gets
        timeout_seconds: Upper bound for one extraction
        proxy_url: Optional proxy for extraction traffic
        name: Origin label recorded on produced candidates
    """

    def __init__(
        self,
        executor: ThreadPoolExecutor,
        url_for: Callable[[str], str],
        timeout_seconds: float = 60.0,
        proxy_url: Optional[str] = None,
        name: str = "yt-dlp",
    ):
        self._executor = executor
        self._url_for = url_for
        self.timeout_seconds = timeout_seconds
        self.proxy_url = proxy_url
        self.name = name

    def _build_opts(self, target: str) -> dict:
        ydl_opts = {
            "quiet": True,
            "no_warnings": True,
            "skip_download": True,
            "noplaylist": True,
            "format": EXTRACT_FORMAT,
            "socket_timeout": 15,
            "logger": logger.YtdlpLogger(target),
        }
        if self.proxy_url:
            ydl_opts["proxy"] = self.proxy_url
        return ydl_opts

    def _extract(self, url: str, ydl_opts: dict) -> dict:
        """Blocking extraction, runs in the executor."""
        with yt_dlp.YoutubeDL(ydl_opts) as ydl:
            info = ydl.extract_info(url, download=False)
        # Search queries come back as a one-entry playlist
        if info and info.get("_type") == "playlist":
            entries = [e for e in info.get("entries") or [] if e]
            if not entries:
                raise NoFormatsFoundError(f"No search results for {url}")
            info = entries[0]
        return info or {}

    async def resolve(self, target: str) -> ResolvedMedia:
        url = self._url_for(target)
        logger.info(f"Extracting formats: {url}", "ytdlp", {"target": target, "backend": self.name})

        loop = asyncio.get_running_loop()
        try:
            info = await asyncio.wait_for(
                loop.run_in_executor(self._executor, self._extract, url, self._build_opts(target)),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warn(
                f"Extraction timed out after {self.timeout_seconds}s",
                "ytdlp",
                {"target": target, "backend": self.name},
            )
            raise BackendUnavailableError(f"Extraction timed out after {self.timeout_seconds}s")
        except yt_dlp.utils.DownloadError as e:
            error_msg = str(e)
            logger.warn(f"Extraction failed: {error_msg[:200]}", "ytdlp", {"target": target, "backend": self.name})
            raise _classify_error(error_msg) from e

        _check_restrictions(info, target)

        candidates = formats_to_candidates(info, self.name)
        if not candidates:
            raise NoFormatsFoundError(f"No directly fetchable formats for {target}")

        logger.info(
            f"Found {len(candidates)} formats",
            "ytdlp",
            {"target": target, "backend": self.name, "title": info.get("title")},
        )
        return ResolvedMedia(
            title=info.get("title") or "Unknown Title",
            candidates=candidates,
            referer_url=info.get("webpage_url") or url,
            origin_instance=self.name,
        )
