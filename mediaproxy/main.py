"""
FastAPI media resolve & stream service
Turns TikTok / X / Instagram post URLs into direct media links and streams them back
"""

import logging
import time
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, Query, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import yt_dlp

from .cache import ResultCache
from .config import ALLOWED_ORIGINS, YT_DLP_PATH
from .extractor import YtDlpExtractor
from .models import (
    ErrorCode,
    HealthResponse,
    HealthStats,
    Platform,
    ProxyErrorResponse,
    ProxyRequest,
    ResolveRequest,
    Variant,
)
from .proxy import StreamingProxy, parse_media_kind, parse_variant
from .resolver import MediaResolver

# Logging configuration
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# App metadata
VERSION = "1.0.0"
start_time = time.time()

# Statistics tracking
stats = {
    "total_resolves": 0,
    "failed_resolves": 0,
    "cache_hits": 0,
    "total_streams": 0,
    "failed_streams": 0,
}

# Version of the binary at YT_DLP_PATH, filled in at startup
yt_dlp_binary_version: Optional[str] = None

# One instance of each service per process; routes receive them via Depends()
result_cache = ResultCache()
extractor = YtDlpExtractor()
media_resolver = MediaResolver(extractor, result_cache)
streaming_proxy = StreamingProxy(extractor)


def get_resolver() -> MediaResolver:
    return media_resolver


def get_streaming_proxy() -> StreamingProxy:
    return streaming_proxy


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifecycle manager for startup/shutdown tasks"""
    # Startup
    logger.info("🚀 Starting media resolve service...")
    logger.info(f"Version: {VERSION}")
    global yt_dlp_binary_version
    yt_dlp_binary_version = await extractor.binary_version()
    logger.info(f"yt-dlp binary: {YT_DLP_PATH} (version: {yt_dlp_binary_version or 'unavailable'})")
    logger.info(f"yt-dlp library version: {yt_dlp.version.__version__}")

    await result_cache.start_cleanup_scheduler()

    yield

    # Shutdown
    logger.info("Shutting down media resolve service...")
    await result_cache.stop_cleanup_scheduler()


# Create FastAPI app
app = FastAPI(
    title="Media Resolve Service",
    description="Resolve TikTok, X and Instagram posts to direct media links and proxy the downloads",
    version=VERSION,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ============================================================================
# RESOLVE ENDPOINTS
# ============================================================================


async def _resolve(platform: Platform, request: ResolveRequest, resolver: MediaResolver, missing_message: str) -> Response:
    """
    Shared resolve flow.

    Missing URL → 400. Every classified failure (invalid URL, private,
    extraction error, no usable media) → 200 with success=false.
    Anything else → 500 with a generic message.
    """
    url = (request.url or "").strip()
    if not url:
        return JSONResponse(
            status_code=400,
            content={"success": False, "error": missing_message, "links": {}},
        )

    logger.info(f"📥 Resolve request ({platform.value}): {url[:200]}")

    try:
        result, error, cache_hit = await resolver.resolve_detailed(platform, url)
    except Exception as e:
        stats["failed_resolves"] += 1
        logger.exception(f"💥 Unexpected error while resolving {url[:200]}: {e}")
        return JSONResponse(
            status_code=500,
            content={"success": False, "error": "Internal server error. Please try again later.", "links": {}},
        )

    stats["total_resolves"] += 1
    if cache_hit:
        stats["cache_hits"] += 1
    if error is not None:
        stats["failed_resolves"] += 1

    return JSONResponse(content=result.to_response())


@app.post("/api/download")
async def resolve_tiktok(request: ResolveRequest, resolver: MediaResolver = Depends(get_resolver)) -> Response:
    """
    Resolve a TikTok video

    **Links:** `mp4HdNoWatermark`, `mp4HdWatermark`, `mp3`
    """
    return await _resolve(Platform.TIKTOK, request, resolver, "TikTok URL is required.")


@app.post("/api/x")
async def resolve_x(request: ResolveRequest, resolver: MediaResolver = Depends(get_resolver)) -> Response:
    """Resolve an X / Twitter video post (links: `video`)"""
    return await _resolve(Platform.X, request, resolver, "X/Twitter URL is required.")


@app.post("/api/instagram")
async def resolve_instagram(request: ResolveRequest, resolver: MediaResolver = Depends(get_resolver)) -> Response:
    """Resolve an Instagram post, Reel or carousel (links: `video`, `image`, `items`)"""
    return await _resolve(Platform.INSTAGRAM, request, resolver, "Instagram URL is required.")


@app.post("/api/instagram/stories")
async def resolve_instagram_stories(request: ResolveRequest, resolver: MediaResolver = Depends(get_resolver)) -> Response:
    """Resolve Instagram stories (links: `items`). Most stories need a login and fail."""
    return await _resolve(Platform.INSTAGRAM_STORIES, request, resolver, "Instagram stories URL is required.")


# ============================================================================
# STREAMING PROXY ENDPOINTS
# ============================================================================


async def _proxy(proxy: StreamingProxy, request: ProxyRequest) -> Response:
    """Binary body on success; JSON {error} with 400 (bad input) or 502 (upstream) otherwise."""
    try:
        response, error = await proxy.stream(request)
    except Exception as e:
        stats["failed_streams"] += 1
        logger.exception(f"💥 Unexpected proxy error: {e}")
        return JSONResponse(
            status_code=502,
            content=ProxyErrorResponse(error="Download failed. Please try again.").model_dump(),
        )

    if error is not None or response is None:
        stats["failed_streams"] += 1
        message = error.message if error else "Download failed. Please try again."
        status_code = 400 if error and error.code == ErrorCode.INVALID_URL else 502
        logger.warning(f"⚠️ Proxy failed ({status_code}): {message}")
        return JSONResponse(status_code=status_code, content=ProxyErrorResponse(error=message).model_dump())

    stats["total_streams"] += 1
    return response


@app.get("/api/download/proxy")
async def proxy_tiktok(
    tiktok_url: Optional[str] = Query(None, description="base64 of the percent-encoded TikTok page URL"),
    media: Optional[str] = Query(None, description="base64 of the percent-encoded CDN URL"),
    variant: Optional[str] = Query(None, description="no_watermark | watermark | mp3"),
    media_type: Optional[str] = Query("mp4", alias="type", description="mp4 | mp3"),
    proxy: StreamingProxy = Depends(get_streaming_proxy),
) -> Response:
    """
    Stream a TikTok video / audio

    **Flow:**
    1. `tiktok_url` given → yt-dlp re-downloads the post and its stdout is piped back
    2. otherwise `media` given → the CDN URL is fetched (allow-listed TikTok hosts only)
    """
    return await _proxy(proxy, ProxyRequest(
        platform=Platform.TIKTOK,
        page_param=tiktok_url,
        media_param=media,
        variant=parse_variant(variant, Variant.NO_WATERMARK),
        kind=parse_media_kind(media_type),
    ))


@app.get("/api/x/proxy")
async def proxy_x(
    x_url: Optional[str] = Query(None, description="base64 of the percent-encoded X post URL"),
    media: Optional[str] = Query(None, description="base64 of the percent-encoded CDN URL"),
    media_type: Optional[str] = Query("mp4", alias="type"),
    proxy: StreamingProxy = Depends(get_streaming_proxy),
) -> Response:
    """Stream an X / Twitter video"""
    return await _proxy(proxy, ProxyRequest(
        platform=Platform.X,
        page_param=x_url,
        media_param=media,
        kind=parse_media_kind(media_type),
    ))


@app.get("/api/instagram/proxy")
async def proxy_instagram(
    instagram_url: Optional[str] = Query(None, description="base64 of the percent-encoded post URL"),
    media_url: Optional[str] = Query(None, description="base64 of the percent-encoded CDN URL"),
    media: Optional[str] = Query(None, description="alias of media_url"),
    media_type: Optional[str] = Query("mp4", alias="type", description="mp4 | image"),
    filename: Optional[str] = Query(None),
    proxy: StreamingProxy = Depends(get_streaming_proxy),
) -> Response:
    """Stream an Instagram post / Reel / story item"""
    return await _proxy(proxy, ProxyRequest(
        platform=Platform.INSTAGRAM,
        page_param=instagram_url,
        media_param=media_url or media,
        kind=parse_media_kind(media_type),
        filename=filename,
    ))


# ============================================================================
# SERVICE ENDPOINTS
# ============================================================================


@app.get("/health")
async def health():
    """Liveness check"""
    return {"status": "ok"}


@app.get("/api/health", response_model=HealthResponse)
async def health_check():
    """
    Health check endpoint for monitoring

    **Metrics:**
    - Service status and uptime
    - Resolve / stream statistics
    - Cache size
    - yt-dlp binary and library versions
    """
    uptime = time.time() - start_time

    return HealthResponse(
        status="healthy",
        version=VERSION,
        uptime_seconds=uptime,
        stats=HealthStats(
            total_resolves=stats["total_resolves"],
            failed_resolves=stats["failed_resolves"],
            cache_hits=stats["cache_hits"],
            total_streams=stats["total_streams"],
            failed_streams=stats["failed_streams"],
            cache_entries=len(result_cache),
        ),
        yt_dlp_version=yt_dlp_binary_version,
        yt_dlp_library_version=yt_dlp.version.__version__,
    )


@app.get("/")
async def root():
    """Root endpoint with service info"""
    return {
        "service": "Media Resolve Service",
        "version": VERSION,
        "status": "running",
        "endpoints": {
            "tiktok": "/api/download",
            "tiktok_proxy": "/api/download/proxy",
            "x": "/api/x",
            "x_proxy": "/api/x/proxy",
            "instagram": "/api/instagram",
            "instagram_stories": "/api/instagram/stories",
            "instagram_proxy": "/api/instagram/proxy",
            "health": "/api/health",
        },
        "docs": "/docs",
    }


# ============================================================================
# ERROR HANDLERS
# ============================================================================


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    """Malformed request bodies are a 400, same as a missing URL"""
    return JSONResponse(
        status_code=400,
        content={"success": False, "error": "Invalid request. Send JSON like {\"url\": \"...\"}.", "links": {}},
    )


@app.exception_handler(404)
async def not_found_handler(request, exc):
    """Custom 404 handler"""
    return JSONResponse(
        status_code=404,
        content={"detail": "Endpoint not found. See /docs for API documentation."}
    )


@app.exception_handler(500)
async def server_error_handler(request, exc):
    """Custom 500 handler"""
    logger.exception("Internal server error")
    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "error": "Internal server error. Please try again later.",
        }
    )


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=4000)
