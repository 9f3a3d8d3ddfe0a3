"""
Resolve a post URL into direct media links.

Pipeline per request:
  1. classify the URL for the endpoint's platform     (INVALID_URL on mismatch)
  2. cache lookup by `platform:identifier`
  3. yt-dlp metadata dump                             (PRIVATE_OR_UNAVAILABLE /
                                                       EXTRACTOR_INCOMPATIBLE /
                                                       EXTRACTION_FAILED)
  4. per-platform variant selection                   (NO_USABLE_MEDIA)
  5. cache write (successful results only)

Failures never raise: they come back as a `success=False` ResolveResult
carrying a short platform-specific message. Raw yt-dlp stderr is logged,
never returned.
"""

import logging
from typing import Dict, Optional, Tuple

from .cache import ResultCache
from .classifier import classify_for
from .extractor import Extractor
from .models import ErrorCode, ErrorDetail, Platform, ResolveResult
from .selector import SELECTORS

logger = logging.getLogger(__name__)

_UPDATE_TOOL = "yt-dlp could not extract this {noun}. Update yt-dlp (yt-dlp -U) and try again."

ERROR_MESSAGES: Dict[Platform, Dict[ErrorCode, str]] = {
    Platform.TIKTOK: {
        ErrorCode.INVALID_URL: "Invalid TikTok URL. Use a link like https://www.tiktok.com/@user/video/123456789",
        ErrorCode.PRIVATE_OR_UNAVAILABLE: "Video not found or is private. Please check the URL.",
        ErrorCode.NO_USABLE_MEDIA: "Video not found or is private. Please check the URL.",
        ErrorCode.EXTRACTOR_INCOMPATIBLE: _UPDATE_TOOL.format(noun="video"),
        ErrorCode.EXTRACTION_FAILED: "Unable to fetch video. Please try again or use a different TikTok URL.",
    },
    Platform.X: {
        ErrorCode.INVALID_URL: "Invalid X/Twitter URL. Use a link like https://x.com/user/status/123456789",
        ErrorCode.PRIVATE_OR_UNAVAILABLE: "Video not found or is private. Please check the URL.",
        ErrorCode.NO_USABLE_MEDIA: "No video found. The post may be text-only or the video is unavailable.",
        ErrorCode.EXTRACTOR_INCOMPATIBLE: _UPDATE_TOOL.format(noun="post"),
        ErrorCode.EXTRACTION_FAILED: "Unable to fetch video. Please try again or use a different X/Twitter URL.",
    },
    Platform.INSTAGRAM: {
        ErrorCode.INVALID_URL: (
            "Invalid Instagram URL. Use a link like https://www.instagram.com/p/ABC123 "
            "or https://www.instagram.com/reel/ABC123"
        ),
        ErrorCode.PRIVATE_OR_UNAVAILABLE: "Media not found or is private. Please check the URL.",
        ErrorCode.NO_USABLE_MEDIA: "Media not found or is private. Please check the URL.",
        ErrorCode.EXTRACTOR_INCOMPATIBLE: _UPDATE_TOOL.format(noun="post"),
        ErrorCode.EXTRACTION_FAILED: "Unable to fetch media. Please try again or use a different Instagram URL.",
    },
    Platform.INSTAGRAM_STORIES: {
        ErrorCode.INVALID_URL: (
            "Invalid Instagram stories URL. Use a link like https://www.instagram.com/stories/username/"
        ),
        ErrorCode.PRIVATE_OR_UNAVAILABLE: (
            "Stories require login or are private. Instagram stories often need authentication. "
            "Try our Instagram post/Reel downloader for public content."
        ),
        ErrorCode.NO_USABLE_MEDIA: (
            "Stories not found or may require login. Instagram stories often need authentication. "
            "Try a public post or Reel instead."
        ),
        ErrorCode.EXTRACTOR_INCOMPATIBLE: _UPDATE_TOOL.format(noun="story"),
        ErrorCode.EXTRACTION_FAILED: "Unable to fetch stories. Please try again or use a different URL.",
    },
}


def user_message(platform: Platform, code: ErrorCode) -> str:
    messages = ERROR_MESSAGES[platform]
    return messages.get(code, messages[ErrorCode.EXTRACTION_FAILED])


class MediaResolver:
    """Classify → cache → extract → select, for one platform per call."""

    def __init__(self, extractor: Extractor, cache: ResultCache):
        self.extractor = extractor
        self.cache = cache

    async def resolve_detailed(
        self, platform: Platform, url: str
    ) -> Tuple[ResolveResult, Optional[ErrorDetail], bool]:
        """
        Returns (result, error, cache_hit).

        `error` is None on success; on failure `result` is the user-facing
        failure and `error` keeps the classified cause for logging / stats.
        """
        identifier = classify_for(platform, url)
        if identifier is None:
            error = ErrorDetail(code=ErrorCode.INVALID_URL, message="URL did not match any known pattern")
            return ResolveResult.failure(user_message(platform, error.code)), error, False

        cached = self.cache.get(identifier.cache_key)
        if cached is not None:
            logger.info(f"⚡ Cache hit: {identifier.cache_key}")
            return cached, None, True

        logger.info(f"🔎 Resolving {identifier.cache_key}")
        output, error = await self.extractor.extract(url.strip())
        if error is not None or output is None:
            error = error or ErrorDetail(code=ErrorCode.EXTRACTION_FAILED, message="yt-dlp returned nothing")
            logger.warning(f"⚠️ Extraction failed for {identifier.cache_key}: {error.code.value} ({error.message})")
            return ResolveResult.failure(user_message(platform, error.code)), error, False

        result = SELECTORS[platform](output)
        if result is None:
            error = ErrorDetail(code=ErrorCode.NO_USABLE_MEDIA, message="No usable format in yt-dlp output")
            logger.warning(f"⚠️ No usable media for {identifier.cache_key}")
            return ResolveResult.failure(user_message(platform, error.code)), error, False

        self.cache.put(identifier.cache_key, result)
        logger.info(f"✅ Resolved {identifier.cache_key} (quality={result.quality})")
        return result, None, False

    async def resolve(self, platform: Platform, url: str) -> ResolveResult:
        result, _, _ = await self.resolve_detailed(platform, url)
        return result
