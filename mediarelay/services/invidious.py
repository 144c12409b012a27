"""Invidious scraping backend.

INSTANCE DISCOVERY
==================
One fixed primary instance is always tried first. Healthy public mirrors
(https, uptime > 90%) from the Invidious directory are appended in random
order. If the directory cannot be reached the pool degrades to primary-only;
discovery itself never fails. The list is kept for a TTL and dropped when a
resolution attempt exhausts every instance.

PAGE PARSING
============
The watch page of an instance yields formats in two passes:
1. The player's templated playback URL (local=true), kept as a generic
   low-quality video fallback.
2. The download widget's <option value='{"itag": ...}'> entries, each of
   which refines the template URL with its own itag.
Malformed entries are dropped.
"""

import asyncio
import html
import json
import random
import re
import time
from typing import List, Optional
from urllib.parse import urlparse

import httpx

from mediarelay.models.media import BackendInstance, FormatCandidate, MediaKind, ResolvedMedia
from mediarelay.services import logger
from mediarelay.services.resolver import FormatResolver
from mediarelay.services.streams import DEFAULT_USER_AGENT
from mediarelay.utils.exceptions import BackendUnavailableError, NoFormatsFoundError


MIN_MIRROR_UPTIME = 90
UNAVAILABLE_MARKERS = ("The video is not available", "Content is not available")

_TITLE_RE = re.compile(r"<title>(.*?) - Invidious</title>", re.DOTALL)
_FALLBACK_TITLE_RE = re.compile(r"<title>(.*?)</title>", re.DOTALL)
_PLAYER_SRC_RE = re.compile(
    r"""src=["']([^"']*(?:latest_version|videoplayback)[^"']*local=true[^"']*)["']""",
    re.IGNORECASE,
)
_OPTION_RE = re.compile(r"<option value='(\{[^}]+\})'>([^<]+)</option>")
_BITRATE_RE = re.compile(r"@\s*([\d.]+)[kK]")
_RESOLUTION_RE = re.compile(r"-\s*(\d+)p")
_ITAG_RE = re.compile(r"itag=\d+")


class InstancePool:
    """Ordered Invidious instances with TTL-based rediscovery."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        primary_url: str,
        directory_url: str,
        ttl_seconds: float = 3600,
        rng: Optional[random.Random] = None,
    ):
        self._client = client
        self.primary_url = primary_url.rstrip("/")
        self.directory_url = directory_url
        self.ttl_seconds = ttl_seconds
        self._rng = rng or random.Random()
        self._instances: List[BackendInstance] = []
        self._expires_at = 0.0
        self._lock = asyncio.Lock()

    async def get_instances(self) -> List[BackendInstance]:
        async with self._lock:
            if not self._instances or time.time() > self._expires_at:
                self._instances = await self._discover()
                self._expires_at = time.time() + self.ttl_seconds
            return list(self._instances)

    def invalidate(self) -> None:
        """Forget the current list so the next call rediscovers."""
        self._instances = []
        self._expires_at = 0.0

    async def _discover(self) -> List[BackendInstance]:
        primary = BackendInstance(self.primary_url, is_primary=True)
        logger.debug("Fetching Invidious instance list", "resolver", {"directory": self.directory_url})

        try:
            response = await self._client.get(self.directory_url)
            response.raise_for_status()
            mirrors = self._parse_directory(response.json())
        except (httpx.HTTPError, ValueError) as e:
            logger.warn(
                f"Instance directory unavailable, using primary only: {e}",
                "resolver",
                {"directory": self.directory_url},
            )
            return [primary]

        self._rng.shuffle(mirrors)
        logger.info(
            f"Instances ready: 1 primary + {len(mirrors)} backups",
            "resolver",
            {"primary": self.primary_url, "backups": len(mirrors)},
        )
        return [primary] + [BackendInstance(uri) for uri in mirrors]

    def _parse_directory(self, data) -> List[str]:
        primary_host = urlparse(self.primary_url).hostname
        mirrors = []
        for item in data if isinstance(data, list) else []:
            if not isinstance(item, list) or len(item) < 2 or not isinstance(item[1], dict):
                continue
            meta = item[1]
            monitor = meta.get("monitor") or {}
            uptime = monitor.get("uptime") if isinstance(monitor, dict) else None
            uri = (meta.get("uri") or "").rstrip("/")
            if meta.get("type") != "https" or not uri:
                continue
            if not isinstance(uptime, (int, float)) or uptime <= MIN_MIRROR_UPTIME:
                continue
            if urlparse(uri).hostname == primary_host:
                continue
            mirrors.append(uri)
        return mirrors


def parse_title(page: str) -> str:
    match = _TITLE_RE.search(page) or _FALLBACK_TITLE_RE.search(page)
    if not match:
        return "Unknown Title"
    return html.unescape(match.group(1).replace(" - Invidious", "")).strip() or "Unknown Title"


def parse_formats(page: str, base_url: str, watch_url: str) -> List[FormatCandidate]:
    """Extract format candidates from an Invidious watch page."""
    player_match = _PLAYER_SRC_RE.search(page)
    if not player_match:
        return []

    template = player_match.group(1).replace("&amp;", "&")
    if template.startswith("/"):
        template = base_url + template

    candidates = [
        FormatCandidate(
            media_type=MediaKind.VIDEO,
            container="mp4",
            quality_label="360p",
            source_url=template,
            referer_url=watch_url,
            backend_origin=base_url,
            resolution_p=360,
        )
    ]

    for raw_json, raw_label in _OPTION_RE.findall(page):
        candidate = _parse_option(raw_json, html.unescape(raw_label), template, base_url, watch_url)
        if candidate is not None:
            candidates.append(candidate)

    return candidates


def _parse_option(raw_json: str, label: str, template: str, base_url: str, watch_url: str) -> Optional[FormatCandidate]:
    try:
        data = json.loads(html.unescape(raw_json))
    except ValueError:
        return None
    itag = data.get("itag") if isinstance(data, dict) else None
    if itag is None or not str(itag).isdigit():
        return None

    bitrate_match = _BITRATE_RE.search(label)
    resolution_match = _RESOLUTION_RE.search(label)
    bitrate = int(float(bitrate_match.group(1))) if bitrate_match else None
    resolution = int(resolution_match.group(1)) if resolution_match else None

    if "itag=" in template:
        url = _ITAG_RE.sub(f"itag={itag}", template, count=1)
    else:
        url = f"{template}&itag={itag}"

    is_audio = "audio" in label.lower()
    return FormatCandidate(
        media_type=MediaKind.AUDIO if is_audio else MediaKind.VIDEO,
        container=str(data.get("ext") or "mp4"),
        quality_label=label.strip(),
        source_url=url,
        referer_url=watch_url,
        backend_origin=base_url,
        bitrate_kbps=bitrate,
        resolution_p=resolution,
    )


class InvidiousResolver(FormatResolver):
    """Resolves YouTube ids by scraping Invidious mirrors, one at a time."""

    name = "invidious"

    def __init__(self, client: httpx.AsyncClient, pool: InstancePool, timeout_seconds: float = 8.0):
        self._client = client
        self._pool = pool
        self.timeout_seconds = timeout_seconds

    async def resolve(self, target: str) -> ResolvedMedia:
        instances = await self._pool.get_instances()
        reached_any = False

        for instance in instances:
            watch_url = f"{instance.base_url}/watch?v={target}"
            logger.debug(f"Checking instance: {instance.base_url}", "resolver", {"source_id": target})

            try:
                response = await asyncio.wait_for(
                    self._client.get(watch_url, headers={"User-Agent": DEFAULT_USER_AGENT}),
                    timeout=self.timeout_seconds,
                )
            except asyncio.TimeoutError:
                logger.warn(f"Instance timed out: {instance.base_url}", "resolver", {"source_id": target})
                continue
            except httpx.HTTPError as e:
                logger.warn(f"Instance request failed: {instance.base_url} ({e})", "resolver", {"source_id": target})
                continue

            if not response.is_success:
                logger.debug(
                    f"Instance answered HTTP {response.status_code}: {instance.base_url}",
                    "resolver",
                    {"source_id": target},
                )
                continue

            reached_any = True
            page = response.text
            if any(marker in page for marker in UNAVAILABLE_MARKERS):
                logger.info(f"Video unavailable on {instance.base_url}", "resolver", {"source_id": target})
                continue

            candidates = parse_formats(page, instance.base_url, watch_url)
            if candidates:
                logger.info(
                    f"Found {len(candidates)} formats on {instance.base_url}",
                    "resolver",
                    {"source_id": target, "formats": len(candidates)},
                )
                return ResolvedMedia(
                    title=parse_title(page),
                    candidates=candidates,
                    referer_url=watch_url,
                    origin_instance=instance.base_url,
                )

        # Exhausted: rediscover on the next attempt
        self._pool.invalidate()
        if not reached_any:
            raise BackendUnavailableError(
                f"No Invidious instance reachable for {target} ({len(instances)} tried)"
            )
        raise NoFormatsFoundError(f"Failed to find video info on any instance for {target}")
