"""
Service configuration read from the environment at import time.

Environment variables:
  YT_DLP_PATH                       yt-dlp binary (default: "yt-dlp" on PATH)
  EXTRACTOR_TIMEOUT_SECONDS         wall-clock limit for a metadata run / first stream chunk
  EXTRACTOR_MAX_OUTPUT_BYTES        stdout cap for a metadata run
  STREAM_READ_TIMEOUT_SECONDS       idle limit between chunks when piping yt-dlp stdout
  PROXY_FETCH_TIMEOUT_SECONDS       httpx timeout for direct CDN fetches
  CACHE_TTL_SECONDS                 lifetime of a resolved result
  CACHE_CLEANUP_INTERVAL_SECONDS    how often expired cache entries are purged
  CACHE_MAX_ENTRIES                 upper bound on cached results (least recently used evicted first)
  ALLOWED_ORIGINS                   comma-separated CORS origins
  TIKTOK_MEDIA_HOSTS / X_MEDIA_HOSTS / INSTAGRAM_MEDIA_HOSTS
                                    comma-separated host suffixes the proxy may fetch from
"""

import os
from typing import Dict, Tuple

from .models import Platform


def _host_list(env_name: str, default: Tuple[str, ...]) -> Tuple[str, ...]:
    raw = os.getenv(env_name, "").strip()
    if not raw:
        return default
    return tuple(h.strip().lower().lstrip(".") for h in raw.split(",") if h.strip())


YT_DLP_PATH = os.getenv("YT_DLP_PATH", "yt-dlp")
EXTRACTOR_TIMEOUT_SECONDS = float(os.getenv("EXTRACTOR_TIMEOUT_SECONDS", "45"))
EXTRACTOR_MAX_OUTPUT_BYTES = int(os.getenv("EXTRACTOR_MAX_OUTPUT_BYTES", str(4 * 1024 * 1024)))
STREAM_READ_TIMEOUT_SECONDS = float(os.getenv("STREAM_READ_TIMEOUT_SECONDS", "60"))
PROXY_FETCH_TIMEOUT_SECONDS = float(os.getenv("PROXY_FETCH_TIMEOUT_SECONDS", "30"))

CACHE_TTL_SECONDS = int(os.getenv("CACHE_TTL_SECONDS", "3600"))  # 1 hour
CACHE_CLEANUP_INTERVAL_SECONDS = int(os.getenv("CACHE_CLEANUP_INTERVAL_SECONDS", "300"))
CACHE_MAX_ENTRIES = int(os.getenv("CACHE_MAX_ENTRIES", "10000"))

ALLOWED_ORIGINS = os.getenv("ALLOWED_ORIGINS", "*").split(",")

# Desktop Chrome; CDNs reject requests that look like scripts.
BROWSER_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/131.0.0.0 Safari/537.36"
)

TIKTOK_MEDIA_HOSTS = _host_list("TIKTOK_MEDIA_HOSTS", (
    "tiktok.com",
    "tiktokv.com",
    "tiktokcdn.com",
    "tiktokcdn-us.com",
    "byteoversea.com",
    "musical.ly",
    "snssdk.com",
    "byteimg.com",
))

X_MEDIA_HOSTS = _host_list("X_MEDIA_HOSTS", (
    "twimg.com",
    "x.com",
    "twitter.com",
))

INSTAGRAM_MEDIA_HOSTS = _host_list("INSTAGRAM_MEDIA_HOSTS", (
    "cdninstagram.com",
    "fbcdn.net",
    "instagram.com",
))

# Stories are served from the same CDN as posts.
MEDIA_HOST_ALLOW_LIST: Dict[Platform, Tuple[str, ...]] = {
    Platform.TIKTOK: TIKTOK_MEDIA_HOSTS,
    Platform.X: X_MEDIA_HOSTS,
    Platform.INSTAGRAM: INSTAGRAM_MEDIA_HOSTS,
    Platform.INSTAGRAM_STORIES: INSTAGRAM_MEDIA_HOSTS,
}

# Referer / Origin each CDN expects on cross-origin fetches
PLATFORM_ORIGINS: Dict[Platform, str] = {
    Platform.TIKTOK: "https://www.tiktok.com",
    Platform.X: "https://x.com",
    Platform.INSTAGRAM: "https://www.instagram.com",
    Platform.INSTAGRAM_STORIES: "https://www.instagram.com",
}
