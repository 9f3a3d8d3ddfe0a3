"""
Pydantic models for request/response schemas and the yt-dlp format model
"""

from enum import Enum
from typing import Any, Dict, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


class Platform(str, Enum):
    """Supported source platforms"""
    TIKTOK = "tiktok"
    X = "x"
    INSTAGRAM = "instagram"
    INSTAGRAM_STORIES = "instagram-stories"


class ErrorCode(str, Enum):
    """Error code classifications"""
    INVALID_URL = "INVALID_URL"
    PRIVATE_OR_UNAVAILABLE = "PRIVATE_OR_UNAVAILABLE"
    EXTRACTOR_INCOMPATIBLE = "EXTRACTOR_INCOMPATIBLE"
    EXTRACTION_FAILED = "EXTRACTION_FAILED"
    NO_USABLE_MEDIA = "NO_USABLE_MEDIA"
    PROXY_FETCH_FAILED = "PROXY_FETCH_FAILED"
    SERVER_ERROR = "SERVER_ERROR"


class ErrorDetail(BaseModel):
    """Error details (internal; only `message` reaches the client)"""
    code: ErrorCode
    message: str
    details: Optional[Dict[str, Any]] = None


class ContentIdentifier(BaseModel):
    """Platform tag + canonical id extracted from a post URL"""
    model_config = ConfigDict(frozen=True)

    platform: Platform
    value: str

    @property
    def cache_key(self) -> str:
        return f"{self.platform.value}:{self.value}"


# ============================================================================
# yt-dlp OUTPUT
# ============================================================================

def _codec_present(codec: Optional[str]) -> bool:
    return (codec or "").strip().lower() not in ("", "none")


class MediaFormat(BaseModel):
    """One entry of a yt-dlp `formats` list (subset we use)"""
    model_config = ConfigDict(frozen=True, extra="ignore")

    format_id: Optional[str] = None
    url: Optional[str] = None
    ext: Optional[str] = None
    vcodec: Optional[str] = None
    acodec: Optional[str] = None
    height: Optional[int] = None
    fps: Optional[float] = None
    format_note: Optional[str] = None

    @property
    def is_video(self) -> bool:
        return _codec_present(self.vcodec)

    @property
    def is_audio_only(self) -> bool:
        return not _codec_present(self.vcodec) and _codec_present(self.acodec)

    @property
    def is_image(self) -> bool:
        return not _codec_present(self.vcodec) and not _codec_present(self.acodec)


class ExtractorOutput(BaseModel):
    """yt-dlp JSON dump (single item or playlist with `entries`)"""
    model_config = ConfigDict(frozen=True, extra="ignore")

    title: Optional[str] = None
    uploader: Optional[str] = None
    uploader_id: Optional[str] = None
    thumbnail: Optional[str] = None
    duration: Optional[float] = None
    url: Optional[str] = None
    vcodec: Optional[str] = None
    acodec: Optional[str] = None
    ext: Optional[str] = None
    height: Optional[int] = None
    formats: Tuple[MediaFormat, ...] = ()
    entries: Tuple["ExtractorOutput", ...] = ()

    @field_validator("formats", "entries", mode="before")
    @classmethod
    def _drop_nulls(cls, value: Any) -> Any:
        # yt-dlp emits null for unavailable playlist entries
        if value is None:
            return ()
        if isinstance(value, (list, tuple)):
            return tuple(v for v in value if v is not None)
        return value

    @property
    def usable_formats(self) -> Tuple[MediaFormat, ...]:
        """Formats with a direct URL; a format-less dump counts as one format."""
        formats = self.formats
        if not formats and self.url:
            formats = (MediaFormat(
                url=self.url, ext=self.ext, vcodec=self.vcodec,
                acodec=self.acodec, height=self.height,
            ),)
        return tuple(f for f in formats if f.url)


# ============================================================================
# RESOLVE RESPONSE
# ============================================================================

class MediaType(str, Enum):
    VIDEO = "video"
    IMAGE = "image"


class MediaItem(BaseModel):
    """One carousel / story item"""
    model_config = ConfigDict(frozen=True)

    url: str
    type: MediaType
    thumbnail: Optional[str] = None


class TikTokLinks(BaseModel):
    model_config = ConfigDict(frozen=True)

    mp4_hd_watermark: Optional[str] = Field(None, serialization_alias="mp4HdWatermark")
    mp4_hd_no_watermark: Optional[str] = Field(None, serialization_alias="mp4HdNoWatermark")
    mp3: Optional[str] = None


class XLinks(BaseModel):
    model_config = ConfigDict(frozen=True)

    video: Optional[str] = None


class InstagramLinks(BaseModel):
    model_config = ConfigDict(frozen=True)

    video: Optional[str] = None
    image: Optional[str] = None
    items: Optional[Tuple[MediaItem, ...]] = None


class StoriesLinks(BaseModel):
    model_config = ConfigDict(frozen=True)

    items: Tuple[MediaItem, ...] = ()


LinkBundle = Union[TikTokLinks, XLinks, InstagramLinks, StoriesLinks]


class ResolveResult(BaseModel):
    """Result returned by the resolve endpoints and stored in the cache"""
    model_config = ConfigDict(frozen=True)

    success: bool
    title: Optional[str] = None
    author: Optional[str] = None
    cover: Optional[str] = None
    duration: Optional[float] = None
    quality: Optional[str] = None
    fps: Optional[float] = None
    links: Optional[LinkBundle] = None
    error: Optional[str] = None

    @classmethod
    def failure(cls, message: str) -> "ResolveResult":
        return cls(success=False, error=message)

    def to_response(self) -> Dict[str, Any]:
        """Wire shape: camelCase link keys, unset fields omitted, `links` always present."""
        data = self.model_dump(mode="json", by_alias=True, exclude_none=True)
        data.setdefault("links", {})
        return data


class ResolveRequest(BaseModel):
    """Request schema for the resolve endpoints"""
    url: Optional[str] = Field(None, description="Post URL to resolve")

    class Config:
        json_schema_extra = {
            "example": {
                "url": "https://www.tiktok.com/@user/video/7123456789012345678",
            }
        }


# ============================================================================
# STREAMING PROXY
# ============================================================================

class Variant(str, Enum):
    """Which encoding the re-extraction strategy asks yt-dlp for"""
    NO_WATERMARK = "no_watermark"
    WATERMARK = "watermark"
    MP3 = "mp3"
    BEST = "best"


class MediaKind(str, Enum):
    """`type` query parameter: decides filename extension and Content-Type"""
    MP4 = "mp4"
    MP3 = "mp3"
    IMAGE = "image"


class ProxyRequest(BaseModel):
    """One streaming request; page_param / media_param are still base64-encoded"""
    model_config = ConfigDict(frozen=True)

    platform: Platform
    page_param: Optional[str] = None
    media_param: Optional[str] = None
    variant: Variant = Variant.BEST
    kind: MediaKind = MediaKind.MP4
    filename: Optional[str] = None


class ProxyErrorResponse(BaseModel):
    """Error body for the proxy endpoints"""
    error: str


class HealthStats(BaseModel):
    """Statistics for health check"""
    total_resolves: int
    failed_resolves: int
    cache_hits: int
    total_streams: int
    failed_streams: int
    cache_entries: int


class HealthResponse(BaseModel):
    """Response schema for /api/health"""
    status: str
    version: str
    uptime_seconds: float
    stats: HealthStats
    yt_dlp_library_version: str
    yt_dlp_version: Optional[str] = None  # binary at YT_DLP_PATH; None if it would not run
