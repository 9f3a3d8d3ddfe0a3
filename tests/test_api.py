"""
HTTP-level tests for the resolve, proxy and service endpoints.
"""

from mediaproxy.models import ErrorCode, ErrorDetail, Variant
from mediaproxy.proxy import VARIANT_FORMATS

from .fakes import (
    INSTAGRAM_CAROUSEL_DUMP,
    INSTAGRAM_CAROUSEL_URL,
    INSTAGRAM_STORIES_URL,
    TIKTOK_DUMP,
    TIKTOK_URL,
    X_DUMP,
    X_URL,
    encode_param,
)


# ─── Resolve endpoints ───────────────────────────────────────────────────────

def test_tiktok_resolve(client, fake_extractor):
    fake_extractor.outputs[TIKTOK_URL] = TIKTOK_DUMP

    response = client.post("/api/download", json={"url": TIKTOK_URL})

    assert response.status_code == 200
    data = response.json()
    assert data["success"] is True
    assert data["title"] == "dance challenge"
    assert data["author"] == "user"
    assert data["cover"] == "https://p16-sign.tiktokcdn.com/cover.jpeg"
    assert data["quality"] == "720p"
    assert set(data["links"]) == {"mp4HdNoWatermark", "mp4HdWatermark", "mp3"}
    assert "error" not in data


def test_x_resolve(client, fake_extractor):
    fake_extractor.outputs[X_URL] = X_DUMP

    data = client.post("/api/x", json={"url": X_URL}).json()

    assert data["success"] is True
    assert data["links"] == {"video": "https://video.twimg.com/ext_tw_video/720.mp4"}
    assert data["fps"] == 30.0


def test_instagram_resolve_carousel(client, fake_extractor):
    fake_extractor.outputs[INSTAGRAM_CAROUSEL_URL] = INSTAGRAM_CAROUSEL_DUMP

    data = client.post("/api/instagram", json={"url": INSTAGRAM_CAROUSEL_URL}).json()

    assert data["success"] is True
    assert [item["type"] for item in data["links"]["items"]] == ["video", "video", "image"]


def test_missing_url_is_400(client, fake_extractor):
    for path, message in [
        ("/api/download", "TikTok URL is required."),
        ("/api/x", "X/Twitter URL is required."),
        ("/api/instagram", "Instagram URL is required."),
        ("/api/instagram/stories", "Instagram stories URL is required."),
    ]:
        response = client.post(path, json={})
        assert response.status_code == 400
        assert response.json() == {"success": False, "error": message, "links": {}}

    assert client.post("/api/download", json={"url": "   "}).status_code == 400
    assert fake_extractor.extract_calls == []


def test_malformed_body_is_400(client):
    response = client.post(
        "/api/x",
        content=b"{not json",
        headers={"content-type": "application/json"},
    )

    assert response.status_code == 400
    assert response.json()["success"] is False


def test_invalid_url_is_200_failure(client, fake_extractor):
    response = client.post("/api/x", json={"url": "https://www.youtube.com/watch?v=abc"})

    assert response.status_code == 200
    data = response.json()
    assert data["success"] is False
    assert data["error"].startswith("Invalid X/Twitter URL.")
    assert data["links"] == {}
    assert fake_extractor.extract_calls == []


def test_private_stories_failure(client, fake_extractor):
    fake_extractor.outputs[INSTAGRAM_STORIES_URL] = ErrorDetail(
        code=ErrorCode.PRIVATE_OR_UNAVAILABLE, message="yt-dlp exited with code 1",
    )

    data = client.post("/api/instagram/stories", json={"url": INSTAGRAM_STORIES_URL}).json()

    assert data["success"] is False
    assert "login" in data["error"]
    assert "yt-dlp exited" not in data["error"]


def test_unexpected_error_is_500(client, fake_extractor):
    # a dump that fails model validation inside the extractor
    fake_extractor.outputs[X_URL] = {"formats": "garbage"}

    response = client.post("/api/x", json={"url": X_URL})

    assert response.status_code == 500
    assert response.json()["success"] is False


# ─── Proxy endpoints ─────────────────────────────────────────────────────────

def test_tiktok_proxy_streams_from_page(client, fake_extractor):
    fake_extractor.streams[TIKTOK_URL] = [b"chunk-1", b"chunk-2"]

    response = client.get("/api/download/proxy", params={
        "tiktok_url": encode_param(TIKTOK_URL),
        "variant": "watermark",
    })

    assert response.status_code == 200
    assert response.content == b"chunk-1chunk-2"
    assert response.headers["content-type"] == "video/mp4"
    assert response.headers["content-disposition"] == 'attachment; filename="tiktok-video.mp4"'
    assert fake_extractor.stream_calls == [(TIKTOK_URL, VARIANT_FORMATS[Variant.WATERMARK])]


def test_tiktok_proxy_defaults_to_no_watermark(client, fake_extractor):
    fake_extractor.streams[TIKTOK_URL] = [b"x"]

    client.get("/api/download/proxy", params={"tiktok_url": encode_param(TIKTOK_URL)})

    assert fake_extractor.stream_calls[0][1] == VARIANT_FORMATS[Variant.NO_WATERMARK]


def test_proxy_missing_params_is_400_json(client):
    response = client.get("/api/download/proxy")

    assert response.status_code == 400
    assert response.json() == {"error": "Missing media or page URL."}


def test_proxy_disallowed_host_is_400_json(client, cdn_transport):
    response = client.get("/api/x/proxy", params={"media": encode_param("https://evil.example.com/a.mp4")})

    assert response.status_code == 400
    assert response.headers["content-type"].startswith("application/json")
    assert "error" in response.json()
    assert cdn_transport.requests == []


def test_proxy_failed_extraction_is_502_json(client, fake_extractor):
    response = client.get("/api/x/proxy", params={"x_url": encode_param(X_URL)})

    assert response.status_code == 502
    assert response.headers["content-type"].startswith("application/json")
    assert response.json() == {"error": "Download failed. Make sure yt-dlp is installed and the URL is valid."}


def test_instagram_proxy_direct_fetch(client, cdn_transport):
    response = client.get("/api/instagram/proxy", params={
        "media_url": encode_param("https://scontent.cdninstagram.com/1.mp4"),
        "filename": "somebody_1.mp4",
    })

    assert response.status_code == 200
    assert response.content == b"\x00\x00\x00\x18ftypmp42fake-video-bytes"
    assert response.headers["content-disposition"] == 'attachment; filename="somebody_1.mp4"'
    assert len(cdn_transport.requests) == 1


def test_instagram_proxy_accepts_media_alias(client, cdn_transport):
    response = client.get("/api/instagram/proxy", params={
        "media": encode_param("https://scontent.cdninstagram.com/1.jpg"),
        "type": "image",
    })

    assert response.status_code == 200
    assert response.headers["content-disposition"] == 'attachment; filename="instagram-image.jpg"'


# ─── Service endpoints ───────────────────────────────────────────────────────

def test_liveness(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_health_report(client, fake_extractor):
    fake_extractor.outputs[X_URL] = X_DUMP
    client.post("/api/x", json={"url": X_URL})

    data = client.get("/api/health").json()

    assert data["status"] == "healthy"
    assert data["stats"]["total_resolves"] >= 1
    assert "cache_entries" in data["stats"]
    assert data["yt_dlp_library_version"]
    # the binary is only queried during lifespan startup
    assert "yt_dlp_version" in data


def test_root_lists_endpoints(client):
    data = client.get("/").json()

    assert data["endpoints"]["tiktok"] == "/api/download"
    assert data["endpoints"]["instagram_proxy"] == "/api/instagram/proxy"


def test_unknown_path_is_404(client):
    response = client.get("/api/nope")

    assert response.status_code == 404
    assert "detail" in response.json()
