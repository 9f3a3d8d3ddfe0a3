"""
Per-platform variant selection over a parsed yt-dlp dump.

Every selector is deterministic: formats are taken in the order yt-dlp lists
them and "first match" wins. A selector returns None when nothing usable was
found; the resolver turns that into a NO_USABLE_MEDIA failure.
"""

import logging
import math
from typing import Callable, Dict, List, Optional, Tuple

from .models import (
    ExtractorOutput,
    InstagramLinks,
    MediaFormat,
    MediaItem,
    MediaType,
    Platform,
    ResolveResult,
    StoriesLinks,
    TikTokLinks,
    XLinks,
)

logger = logging.getLogger(__name__)

NO_WATERMARK_MARKERS = ("no watermark", "without watermark")


def _first(formats: Tuple[MediaFormat, ...], predicate: Callable[[MediaFormat], bool]) -> Optional[MediaFormat]:
    return next((f for f in formats if predicate(f)), None)


def is_no_watermark(fmt: MediaFormat) -> bool:
    note = (fmt.format_note or fmt.format_id or "").lower()
    return any(marker in note for marker in NO_WATERMARK_MARKERS)


def quality_label(fmt: Optional[MediaFormat], hide_note_containing: str) -> Optional[str]:
    """"{height}p" when known, else the format note unless it leaks internal labels."""
    if fmt is None:
        return None
    if fmt.height:
        return f"{fmt.height}p"
    note = fmt.format_note
    if note and hide_note_containing not in note.lower():
        return note
    return None


def _duration(output: ExtractorOutput) -> Optional[float]:
    if output.duration is None or not math.isfinite(output.duration):
        return None
    return output.duration


# ============================================================================
# TIKTOK
# ============================================================================

def select_tiktok(output: ExtractorOutput) -> Optional[ResolveResult]:
    formats = output.usable_formats
    video_formats = tuple(f for f in formats if f.is_video)
    audio_formats = tuple(f for f in formats if f.is_audio_only)

    no_watermark_first = _first(video_formats, is_no_watermark)
    watermark_first = _first(video_formats, lambda f: not is_no_watermark(f))

    # Each field falls back to the other bucket so a single variant fills both.
    no_watermark = no_watermark_first or watermark_first
    watermark = watermark_first or no_watermark_first
    audio = audio_formats[0] if audio_formats else None

    if no_watermark is None:
        return None

    return ResolveResult(
        success=True,
        title=output.title,
        author=output.uploader,
        cover=output.thumbnail,
        duration=_duration(output),
        quality=quality_label(no_watermark, "watermark"),
        links=TikTokLinks(
            mp4_hd_watermark=watermark.url,
            mp4_hd_no_watermark=no_watermark.url,
            mp3=audio.url if audio else None,
        ),
    )


# ============================================================================
# X / TWITTER
# ============================================================================

def select_x(output: ExtractorOutput) -> Optional[ResolveResult]:
    best = _first(output.usable_formats, lambda f: f.is_video)
    if best is None:
        return None

    fps = best.fps if best.fps is not None and math.isfinite(best.fps) else None

    return ResolveResult(
        success=True,
        title=output.title,
        author=output.uploader_id or output.uploader,
        cover=output.thumbnail,
        duration=_duration(output),
        quality=quality_label(best, "unknown"),
        fps=fps,
        links=XLinks(video=best.url),
    )


# ============================================================================
# INSTAGRAM
# ============================================================================

def _entry_item(entry: ExtractorOutput, fallback_thumbnail: Optional[str]) -> Optional[MediaItem]:
    """One carousel item: video preferred, then image, then the entry's own URL."""
    formats = entry.usable_formats
    video = _first(formats, lambda f: f.is_video)
    image = _first(formats, lambda f: f.is_image)
    thumbnail = entry.thumbnail or fallback_thumbnail

    if video is not None:
        return MediaItem(url=video.url, type=MediaType.VIDEO, thumbnail=thumbnail)
    if image is not None:
        return MediaItem(url=image.url, type=MediaType.IMAGE, thumbnail=thumbnail)
    if entry.url:
        return MediaItem(url=entry.url, type=MediaType.IMAGE, thumbnail=thumbnail)
    return None


def collect_items(output: ExtractorOutput) -> Tuple[MediaItem, ...]:
    """Carousel items in entry order; entries without usable media are skipped."""
    items: List[MediaItem] = []
    for index, entry in enumerate(output.entries):
        item = _entry_item(entry, output.thumbnail)
        if item is None:
            logger.debug(f"Carousel entry {index} has no usable media")
            continue
        items.append(item)
    return tuple(items)


def select_instagram(output: ExtractorOutput) -> Optional[ResolveResult]:
    author = output.uploader_id or output.uploader

    if output.entries:
        items = collect_items(output)
        if items:
            return ResolveResult(
                success=True,
                title=output.title,
                author=author,
                cover=output.thumbnail,
                links=InstagramLinks(items=items),
            )

    formats = output.usable_formats
    video = _first(formats, lambda f: f.is_video)
    image = _first(formats, lambda f: f.is_image)
    if video is None and image is None:
        return None

    return ResolveResult(
        success=True,
        title=output.title,
        author=author,
        cover=output.thumbnail,
        duration=_duration(output),
        quality=quality_label(video, "unknown"),
        links=InstagramLinks(
            video=video.url if video else None,
            image=image.url if image else None,
        ),
    )


def select_instagram_stories(output: ExtractorOutput) -> Optional[ResolveResult]:
    if output.entries:
        items = collect_items(output)
    else:
        single = _entry_item(output, output.thumbnail)
        items = (single,) if single else ()

    if not items:
        return None

    return ResolveResult(
        success=True,
        title=output.title,
        author=output.uploader_id or output.uploader,
        cover=output.thumbnail,
        links=StoriesLinks(items=items),
    )


SELECTORS: Dict[Platform, Callable[[ExtractorOutput], Optional[ResolveResult]]] = {
    Platform.TIKTOK: select_tiktok,
    Platform.X: select_x,
    Platform.INSTAGRAM: select_instagram,
    Platform.INSTAGRAM_STORIES: select_instagram_stories,
}
