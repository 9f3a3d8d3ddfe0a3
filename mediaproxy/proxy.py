"""
Streaming proxy: send a post's media through this service's origin.

Two retrieval strategies, chosen by a single decision table:

  page URL given  → re-extraction: yt-dlp downloads to stdout, piped to the
                    client. Preferred, since CDN links from an earlier
                    resolve expire quickly.
  media URL only  → direct fetch: httpx GET with browser + platform
                    Referer/Origin headers, only to allow-listed CDN hosts.

Both URLs arrive as base64(percent-encoded UTF-8). Decoding fails closed.

Success is decided before a StreamingResponse exists (first stdout chunk
read / upstream status checked), so a failed retrieval is always a JSON
error and never a truncated binary body.
"""

import base64
import binascii
import logging
import re
from enum import Enum
from typing import AsyncIterator, Dict, Optional, Tuple
from urllib.parse import unquote, urlsplit

import httpx
from fastapi.responses import StreamingResponse
from starlette.background import BackgroundTask
from starlette.types import Send

from .classifier import classify
from .config import (
    BROWSER_USER_AGENT,
    MEDIA_HOST_ALLOW_LIST,
    PLATFORM_ORIGINS,
    PROXY_FETCH_TIMEOUT_SECONDS,
)
from .extractor import CHUNK_SIZE, Extractor
from .models import ErrorCode, ErrorDetail, MediaKind, Platform, ProxyRequest, Variant

logger = logging.getLogger(__name__)

# yt-dlp format selectors per variant (string filters are case-sensitive)
VARIANT_FORMATS: Dict[Variant, str] = {
    Variant.NO_WATERMARK: "best[format_note*='No watermark']/best[format_note*='no watermark']/best",
    Variant.WATERMARK: "best[format_note!*='No watermark'][format_note!*='no watermark']/best",
    Variant.MP3: "bestaudio[ext=mp3]/bestaudio/best",
    Variant.BEST: "best",
}

CONTENT_TYPES: Dict[MediaKind, str] = {
    MediaKind.MP4: "video/mp4",
    MediaKind.MP3: "audio/mpeg",
    MediaKind.IMAGE: "image/jpeg",
}

_EXTENSIONS: Dict[MediaKind, str] = {
    MediaKind.MP4: "mp4",
    MediaKind.MP3: "mp3",
    MediaKind.IMAGE: "jpg",
}

_DEFAULT_STEMS: Dict[MediaKind, str] = {
    MediaKind.MP4: "video",
    MediaKind.MP3: "audio",
    MediaKind.IMAGE: "image",
}

_FILENAME_PREFIX: Dict[Platform, str] = {
    Platform.TIKTOK: "tiktok",
    Platform.X: "x",
    Platform.INSTAGRAM: "instagram",
    Platform.INSTAGRAM_STORIES: "instagram-story",
}

_PLATFORM_LABEL: Dict[Platform, str] = {
    Platform.TIKTOK: "TikTok",
    Platform.X: "X/Twitter",
    Platform.INSTAGRAM: "Instagram",
    Platform.INSTAGRAM_STORIES: "Instagram",
}

# Page URLs an endpoint will re-extract from
_PAGE_PLATFORMS: Dict[Platform, Tuple[Platform, ...]] = {
    Platform.TIKTOK: (Platform.TIKTOK,),
    Platform.X: (Platform.X,),
    Platform.INSTAGRAM: (Platform.INSTAGRAM, Platform.INSTAGRAM_STORIES),
    Platform.INSTAGRAM_STORIES: (Platform.INSTAGRAM, Platform.INSTAGRAM_STORIES),
}

_BAD_PERCENT_ESCAPE = re.compile(r"%(?![0-9A-Fa-f]{2})")
_UNSAFE_FILENAME_CHARS = re.compile(r"[^A-Za-z0-9._\- ()]")


class Strategy(str, Enum):
    RE_EXTRACT = "re_extract"
    DIRECT_FETCH = "direct_fetch"
    NONE = "none"


# (has page URL, has media URL) → strategy
STRATEGY_TABLE: Dict[Tuple[bool, bool], Strategy] = {
    (True, True): Strategy.RE_EXTRACT,
    (True, False): Strategy.RE_EXTRACT,
    (False, True): Strategy.DIRECT_FETCH,
    (False, False): Strategy.NONE,
}


class DisallowedHost(Exception):
    """Raised when a fetch (or one of its redirects) targets a non allow-listed host."""


# =========================================================================
# HELPERS
# =========================================================================

def choose_strategy(request: ProxyRequest) -> Strategy:
    return STRATEGY_TABLE[(bool(request.page_param), bool(request.media_param))]


def decode_url_param(encoded: Optional[str]) -> Optional[str]:
    """
    Decode base64(encodeURIComponent(url)). Returns None for anything that
    is not a well-formed http(s) URL after decoding.
    """
    if not encoded or not encoded.strip():
        return None

    # Tolerate url-safe alphabet, '+' turned into ' ' by form decoding, and missing padding
    candidate = encoded.strip().replace(" ", "+").replace("-", "+").replace("_", "/")
    candidate += "=" * (-len(candidate) % 4)

    try:
        text = base64.b64decode(candidate, validate=True).decode("utf-8")
    except (binascii.Error, ValueError):
        return None

    if _BAD_PERCENT_ESCAPE.search(text):
        return None
    try:
        url = unquote(text, errors="strict").strip()
    except UnicodeDecodeError:
        return None

    if not url or any(ch.isspace() or ord(ch) < 0x20 for ch in url):
        return None

    parts = urlsplit(url)
    if parts.scheme.lower() not in ("http", "https") or not parts.hostname:
        return None
    return url


def is_allowed_host(host: Optional[str], platform: Platform) -> bool:
    if not host:
        return False
    host = host.lower().rstrip(".")
    return any(host == suffix or host.endswith("." + suffix) for suffix in MEDIA_HOST_ALLOW_LIST[platform])


def is_allowed_media_url(url: str, platform: Platform) -> bool:
    try:
        parts = urlsplit(url)
        host = parts.hostname
    except ValueError:
        return False
    if parts.scheme.lower() not in ("http", "https"):
        return False
    return is_allowed_host(host, platform)


def safe_filename(requested: Optional[str], platform: Platform, kind: MediaKind) -> str:
    """Caller-supplied filename reduced to a safe ASCII basename, else the platform default."""
    default = f"{_FILENAME_PREFIX[platform]}-{_DEFAULT_STEMS[kind]}.{_EXTENSIONS[kind]}"
    if not requested:
        return default
    name = re.split(r"[\\/]", requested)[-1]
    name = _UNSAFE_FILENAME_CHARS.sub("_", name).strip(" ._")[:150]
    return name or default


def sniff_audio(head: bytes) -> Optional[Tuple[str, str]]:
    """(content type, extension) of an audio stream from its first bytes, None if unknown."""
    if head.startswith(b"ID3"):
        return "audio/mpeg", "mp3"
    if len(head) >= 2 and head[0] == 0xFF:
        if head[1] & 0xF6 == 0xF0:
            # ADTS frame sync (layer bits 00)
            return "audio/aac", "aac"
        if head[1] & 0xE0 == 0xE0:
            return "audio/mpeg", "mp3"
    if head[4:8] == b"ftyp":
        return "audio/mp4", "m4a"
    if head.startswith(b"OggS"):
        return "audio/ogg", "ogg"
    if head.startswith(b"\x1aE\xdf\xa3"):
        return "audio/webm", "webm"
    return None


def with_extension(filename: str, extension: str) -> str:
    stem = filename.rsplit(".", 1)[0] if "." in filename else filename
    return f"{stem}.{extension}"


def origin_headers(platform: Platform) -> Dict[str, str]:
    origin = PLATFORM_ORIGINS[platform]
    return {
        "User-Agent": BROWSER_USER_AGENT,
        "Referer": f"{origin}/",
        "Origin": origin,
        "Accept": "*/*",
        "Accept-Language": "en-US,en;q=0.9",
    }


def attachment_headers(filename: str) -> Dict[str, str]:
    return {
        "Content-Disposition": f'attachment; filename="{filename}"',
        "Cache-Control": "no-cache, no-store, must-revalidate",
    }


# =========================================================================
# PROXY
# =========================================================================

class ClosingStreamingResponse(StreamingResponse):
    """
    StreamingResponse that always closes its body iterator.

    When the client disconnects mid-stream (ASGI 2.4 servers surface this as
    an OSError from `send`) Starlette skips the background task, so the
    generator's own `finally` is what releases the subprocess / upstream.
    """

    async def stream_response(self, send: Send) -> None:
        try:
            await super().stream_response(send)
        finally:
            aclose = getattr(self.body_iterator, "aclose", None)
            if aclose is not None:
                await aclose()


class StreamingProxy:
    """Stateless per-request pass-through; see module docstring."""

    def __init__(
        self,
        extractor: Extractor,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout_seconds: float = PROXY_FETCH_TIMEOUT_SECONDS,
    ):
        self.extractor = extractor
        self._transport = transport
        self.timeout_seconds = timeout_seconds

    async def stream(self, request: ProxyRequest) -> Tuple[Optional[StreamingResponse], Optional[ErrorDetail]]:
        """Returns (response, None) ready to send, or (None, error) with nothing sent."""
        strategy = choose_strategy(request)
        logger.info(f"📤 Proxy request ({request.platform.value}, {request.kind.value}): strategy={strategy.value}")

        if strategy is Strategy.RE_EXTRACT:
            return await self._stream_from_page(request)
        if strategy is Strategy.DIRECT_FETCH:
            return await self._stream_from_media(request)

        return None, ErrorDetail(code=ErrorCode.INVALID_URL, message="Missing media or page URL.")

    async def _stream_from_page(self, request: ProxyRequest) -> Tuple[Optional[StreamingResponse], Optional[ErrorDetail]]:
        page_url = decode_url_param(request.page_param)
        identifier = classify(page_url) if page_url else None
        if identifier is None or identifier.platform not in _PAGE_PLATFORMS[request.platform]:
            return None, ErrorDetail(
                code=ErrorCode.INVALID_URL,
                message=f"Invalid {_PLATFORM_LABEL[request.platform]} URL.",
            )

        variant = Variant.MP3 if request.kind is MediaKind.MP3 else request.variant
        media_stream = await self.extractor.open_stream(page_url, VARIANT_FORMATS[variant])
        if media_stream is None:
            return None, ErrorDetail(
                code=ErrorCode.PROXY_FETCH_FAILED,
                message="Download failed. Make sure yt-dlp is installed and the URL is valid.",
            )

        filename = safe_filename(request.filename, request.platform, request.kind)
        content_type = CONTENT_TYPES[request.kind]
        if request.kind is MediaKind.MP3:
            # bestaudio is often m4a / webm; label what yt-dlp actually sent
            sniffed = sniff_audio(media_stream.head)
            if sniffed is not None:
                content_type, extension = sniffed
                filename = with_extension(filename, extension)

        logger.info(f"✅ Streaming {identifier.cache_key} via yt-dlp as {filename} ({content_type})")
        return ClosingStreamingResponse(
            media_stream.iter_bytes(),
            media_type=content_type,
            headers=attachment_headers(filename),
            background=BackgroundTask(media_stream.aclose),
        ), None

    async def _stream_from_media(self, request: ProxyRequest) -> Tuple[Optional[StreamingResponse], Optional[ErrorDetail]]:
        media_url = decode_url_param(request.media_param)
        if not media_url or not is_allowed_media_url(media_url, request.platform):
            logger.warning(f"🚫 Rejected media URL for {request.platform.value}: {str(media_url)[:120]}")
            return None, ErrorDetail(code=ErrorCode.INVALID_URL, message="Invalid or disallowed media URL.")

        platform = request.platform

        async def _guard_redirects(outgoing: httpx.Request) -> None:
            if not is_allowed_host(outgoing.url.host, platform):
                raise DisallowedHost(outgoing.url.host)

        client = httpx.AsyncClient(
            timeout=self.timeout_seconds,
            follow_redirects=True,
            headers=origin_headers(platform),
            transport=self._transport,
            event_hooks={"request": [_guard_redirects]},
        )
        try:
            upstream = await client.send(client.build_request("GET", media_url), stream=True)
        except (httpx.HTTPError, DisallowedHost) as e:
            await client.aclose()
            logger.error(f"❌ Proxy fetch error for {media_url[:120]}: {e!r}")
            return None, ErrorDetail(
                code=ErrorCode.PROXY_FETCH_FAILED,
                message="Download failed. Please try again.",
                details={"error": str(e)},
            )

        if upstream.status_code not in (200, 206):
            await upstream.aclose()
            await client.aclose()
            logger.warning(f"⚠️ Upstream HTTP {upstream.status_code} for {media_url[:120]}")
            return None, ErrorDetail(
                code=ErrorCode.PROXY_FETCH_FAILED,
                message="Could not fetch the file. The link may have expired.",
                details={"status_code": upstream.status_code},
            )

        closed = False

        async def _close() -> None:
            nonlocal closed
            if closed:
                return
            await upstream.aclose()
            await client.aclose()
            closed = True

        async def _body() -> AsyncIterator[bytes]:
            try:
                async for chunk in upstream.aiter_bytes(CHUNK_SIZE):
                    yield chunk
            except httpx.HTTPError as e:
                logger.warning(f"⚠️ Upstream stream broke for {media_url[:120]}: {e!r}")
            finally:
                await _close()

        filename = safe_filename(request.filename, platform, request.kind)
        headers = attachment_headers(filename)
        if "content-length" in upstream.headers and "content-encoding" not in upstream.headers:
            headers["Content-Length"] = upstream.headers["content-length"]

        content_type = upstream.headers.get("content-type") or CONTENT_TYPES[request.kind]
        logger.info(f"✅ Streaming {media_url[:80]}… as {filename} ({content_type})")
        return ClosingStreamingResponse(
            _body(),
            media_type=content_type,
            headers=headers,
            background=BackgroundTask(_close),
        ), None


def parse_media_kind(value: Optional[str]) -> MediaKind:
    """`type` query parameter → MediaKind; anything unrecognised is a video."""
    normalized = (value or "").strip().lower()
    if normalized in ("mp3", "audio"):
        return MediaKind.MP3
    if normalized in ("image", "photo", "jpg", "jpeg"):
        return MediaKind.IMAGE
    return MediaKind.MP4


def parse_variant(value: Optional[str], default: Variant) -> Variant:
    try:
        return Variant((value or "").strip().lower())
    except ValueError:
        return default
