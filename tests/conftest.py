"""
Shared fixtures for the resolve / proxy test suite.

Nothing here touches the network or needs yt-dlp installed: the extractor is
replaced by FakeExtractor and CDN fetches go through httpx.MockTransport.
"""

import pathlib
import sys

import httpx
import pytest
from fastapi.testclient import TestClient

# ─── Path setup (must happen before any mediaproxy import) ───────────────────

_ROOT = pathlib.Path(__file__).parent.parent
sys.path.insert(0, str(_ROOT))

from mediaproxy.cache import ResultCache  # noqa: E402
from mediaproxy.proxy import StreamingProxy  # noqa: E402
from mediaproxy.resolver import MediaResolver  # noqa: E402

from .fakes import FakeExtractor  # noqa: E402


class FakeClock:
    """Manually advanced monotonic clock for TTL tests."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingTransport(httpx.MockTransport):
    """MockTransport that remembers every request it was asked to send."""

    def __init__(self, handler):
        self.requests = []

        def _record(request: httpx.Request) -> httpx.Response:
            self.requests.append(request)
            return handler(request)

        super().__init__(_record)


# ─── Per-test fixtures ────────────────────────────────────────────────────────

@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(clock):
    return ResultCache(ttl=3600, clock=clock)


@pytest.fixture
def fake_extractor():
    return FakeExtractor()


@pytest.fixture
def resolver(fake_extractor, cache):
    return MediaResolver(fake_extractor, cache)


@pytest.fixture
def cdn_transport():
    """Default CDN: every allow-listed URL returns a small mp4 body."""
    return RecordingTransport(
        lambda request: httpx.Response(
            200,
            headers={"content-type": "video/mp4"},
            content=b"\x00\x00\x00\x18ftypmp42fake-video-bytes",
        )
    )


@pytest.fixture
def streaming_proxy(fake_extractor, cdn_transport):
    return StreamingProxy(fake_extractor, transport=cdn_transport)


@pytest.fixture
def client(resolver, streaming_proxy):
    """TestClient with the process-wide services swapped for test instances."""
    from mediaproxy.main import app, get_resolver, get_streaming_proxy

    app.dependency_overrides[get_resolver] = lambda: resolver
    app.dependency_overrides[get_streaming_proxy] = lambda: streaming_proxy
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
