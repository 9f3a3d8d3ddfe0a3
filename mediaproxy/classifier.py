"""
Post URL classification: platform detection + canonical content identifier.

Each platform has exactly one pattern. Patterns tolerate a missing scheme,
www./m./mobile. prefixes (vm./vt. for TikTok short links), trailing slashes,
query strings and fragments. Anything that does not match is an invalid URL;
classification never raises.
"""

import logging
import re
from typing import Dict, Optional, Pattern

from .models import ContentIdentifier, Platform

logger = logging.getLogger(__name__)

_TAIL = r"/?(?:[?#].*)?$"

PLATFORM_PATTERNS: Dict[Platform, Pattern[str]] = {
    # tiktok.com/@user/video/<id>, m.tiktok.com/v/<id>.html,
    # vm.tiktok.com/<code>/, tiktok.com/t/<code>/
    Platform.TIKTOK: re.compile(
        r"^(?:https?://)?(?:(?:www|m)\.)?tiktok\.com/"
        r"(?:@[\w.-]+/video/(?P<id>\d+)|v/(?P<vid>\d+)(?:\.html)?|t/(?P<code>[A-Za-z0-9]+))"
        + _TAIL
        + r"|^(?:https?://)?(?:vm|vt)\.tiktok\.com/(?P<short>[A-Za-z0-9]+)" + _TAIL,
        re.IGNORECASE,
    ),
    # x.com/<user>/status/<id>, twitter.com/i/web/status/<id>
    Platform.X: re.compile(
        r"^(?:https?://)?(?:(?:www|mobile|m)\.)?(?:x|twitter)\.com/"
        r"(?:i/web/|[\w]+/)?status(?:es)?/(?P<id>\d+)(?:/(?:photo|video)/\d+)?"
        + _TAIL,
        re.IGNORECASE,
    ),
    # instagram.com/p/<code>, /reel/, /reels/, /tv/, optionally under /<user>/
    Platform.INSTAGRAM: re.compile(
        r"^(?:https?://)?(?:(?:www|m)\.)?instagram\.com/"
        r"(?:[\w.]+/)?(?:p|reels?|tv)/(?P<id>[A-Za-z0-9_-]+)"
        + _TAIL,
        re.IGNORECASE,
    ),
    # instagram.com/stories/<user>/ or /stories/<user>/<story id>/
    Platform.INSTAGRAM_STORIES: re.compile(
        r"^(?:https?://)?(?:(?:www|m)\.)?instagram\.com/stories/"
        r"(?P<user>[\w.-]+)(?:/(?P<story>\d+))?"
        + _TAIL,
        re.IGNORECASE,
    ),
}


def _identifier_from_match(platform: Platform, match: "re.Match[str]") -> str:
    groups = match.groupdict()
    if platform is Platform.INSTAGRAM_STORIES:
        user = groups["user"].lower()
        return f"{user}/{groups['story']}" if groups.get("story") else user
    if platform is Platform.TIKTOK:
        return groups.get("id") or groups.get("vid") or groups.get("code") or groups["short"]
    return groups["id"]


def classify_for(platform: Platform, raw: Optional[str]) -> Optional[ContentIdentifier]:
    """Match `raw` against a single platform's pattern; None if it does not match."""
    if not isinstance(raw, str):
        return None
    candidate = raw.strip()
    if not candidate:
        return None
    match = PLATFORM_PATTERNS[platform].match(candidate)
    if not match:
        return None
    return ContentIdentifier(platform=platform, value=_identifier_from_match(platform, match))


def classify(raw: Optional[str]) -> Optional[ContentIdentifier]:
    """Detect the platform of `raw` and extract its identifier; None for invalid input."""
    for platform in PLATFORM_PATTERNS:
        identifier = classify_for(platform, raw)
        if identifier is not None:
            return identifier
    logger.debug(f"Unrecognised URL: {raw!r:.120}")
    return None
