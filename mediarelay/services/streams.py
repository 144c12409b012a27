"""Open media streams from a selected format candidate."""

import re
from typing import AsyncIterator, Awaitable, Callable, Optional
from urllib.parse import unquote

import httpx

from mediarelay.models.media import FormatCandidate
from mediarelay.services import logger
from mediarelay.utils.exceptions import DownloadError


DEFAULT_USER_AGENT = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) Chrome/120.0.0.0 Safari/537.36"
CHUNK_SIZE = 256 * 1024  # 256 KB

MAX_FILENAME_LENGTH = 200
_UNSAFE_FILENAME_CHARS = re.compile(r'[/\\?%*:|"<>]')
_CD_UTF8_RE = re.compile(r"filename\*=UTF-8''([^;]+)", re.IGNORECASE)
_CD_ASCII_RE = re.compile(r'filename="?([^";]+)"?', re.IGNORECASE)


def sanitize_filename(name: str) -> str:
    return _UNSAFE_FILENAME_CHARS.sub("-", name)[:MAX_FILENAME_LENGTH]


def filename_from_headers(content_disposition: Optional[str]) -> Optional[str]:
    """Extract the filename advertised by a Content-Disposition header."""
    if not content_disposition:
        return None
    utf8_match = _CD_UTF8_RE.search(content_disposition)
    if utf8_match:
        return unquote(utf8_match.group(1))
    ascii_match = _CD_ASCII_RE.search(content_disposition)
    if ascii_match:
        return ascii_match.group(1)
    return None


class MediaStream:
    """
    An opened, not yet consumed media body.

    The owner must call aclose() (or use `async with`) on every exit path;
    an unclosed stream keeps its upstream connection open.
    """

    def __init__(
        self,
        chunks: AsyncIterator[bytes],
        close: Callable[[], Awaitable[None]],
        filename: str,
        content_type: str = "application/octet-stream",
        content_length: Optional[int] = None,
        title: str = "",
    ):
        self._chunks = chunks
        self._close = close
        self._closed = False
        self.filename = filename
        self.content_type = content_type
        self.content_length = content_length
        self.title = title

    @classmethod
    def from_response(cls, response: httpx.Response, filename: str, title: str = "") -> "MediaStream":
        advertised = filename_from_headers(response.headers.get("content-disposition"))
        length = response.headers.get("content-length")
        return cls(
            chunks=response.aiter_bytes(CHUNK_SIZE),
            close=response.aclose,
            filename=sanitize_filename(advertised or filename),
            content_type=response.headers.get("content-type", "application/octet-stream"),
            content_length=int(length) if length and length.isdigit() else None,
            title=title,
        )

    @property
    def closed(self) -> bool:
        return self._closed

    async def iter_bytes(self) -> AsyncIterator[bytes]:
        """Yield the body; upstream transport errors surface as DownloadError."""
        try:
            async for chunk in self._chunks:
                yield chunk
        except httpx.HTTPError as e:
            raise DownloadError(f"Download interrupted: {e}") from e

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._close()

    async def __aenter__(self) -> "MediaStream":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()


async def open_media_stream(
    client: httpx.AsyncClient,
    candidate: FormatCandidate,
    filename: str,
    title: str = "",
) -> MediaStream:
    """
    Issue the GET for a selected candidate and return the unread body.

    Raises:
        DownloadError: on transport errors or a non-2xx status
    """
    headers = {"User-Agent": DEFAULT_USER_AGENT, **candidate.http_headers}
    if candidate.referer_url:
        headers["Referer"] = candidate.referer_url

    request = client.build_request("GET", candidate.source_url, headers=headers)
    try:
        response = await client.send(request, stream=True)
    except httpx.HTTPError as e:
        raise DownloadError(f"Download request failed: {e}") from e

    if not response.is_success:
        status = response.status_code
        await response.aclose()
        logger.warn(
            f"Media fetch rejected: HTTP {status}",
            "provider",
            {"origin": candidate.backend_origin, "quality": candidate.quality_label},
        )
        raise DownloadError(f"Download failed: HTTP {status}")

    return MediaStream.from_response(response, filename=filename, title=title)
