"""
In-memory Extractor used by resolver / proxy / API tests, plus canned yt-dlp dumps.
"""

import base64
from typing import AsyncIterator, Dict, List, Optional, Tuple, Union
from urllib.parse import quote

from mediaproxy.extractor import Extractor, MediaStream
from mediaproxy.models import ErrorDetail, ExtractorOutput


def encode_param(url: str) -> str:
    """What the front-end sends: btoa(encodeURIComponent(url))."""
    return base64.b64encode(quote(url, safe="!~*'()").encode("utf-8")).decode("ascii")


class FakeStream(MediaStream):
    def __init__(self, chunks: List[bytes]):
        self.chunks = chunks
        self.closed = False

    @property
    def head(self) -> bytes:
        return self.chunks[0]

    async def iter_bytes(self) -> AsyncIterator[bytes]:
        try:
            for chunk in self.chunks:
                yield chunk
        finally:
            await self.aclose()

    async def aclose(self) -> None:
        self.closed = True


class FakeExtractor(Extractor):
    """
    Canned extractor.

    `outputs` maps a URL to either a yt-dlp dump dict or an ErrorDetail;
    unknown URLs fail like a yt-dlp crash. `streams` maps a URL to the
    chunks open_stream() yields (missing / empty → no stream).
    """

    def __init__(
        self,
        outputs: Optional[Dict[str, Union[dict, ErrorDetail]]] = None,
        streams: Optional[Dict[str, List[bytes]]] = None,
    ):
        self.outputs = outputs or {}
        self.streams = streams or {}
        self.extract_calls: List[str] = []
        self.stream_calls: List[Tuple[str, str]] = []
        self.opened: List[FakeStream] = []

    async def extract(self, url: str) -> Tuple[Optional[ExtractorOutput], Optional[ErrorDetail]]:
        from mediaproxy.models import ErrorCode

        self.extract_calls.append(url)
        canned = self.outputs.get(url)
        if canned is None:
            return None, ErrorDetail(code=ErrorCode.EXTRACTION_FAILED, message="no canned output")
        if isinstance(canned, ErrorDetail):
            return None, canned
        return ExtractorOutput.model_validate(canned), None

    async def open_stream(self, url: str, format_selector: str) -> Optional[MediaStream]:
        self.stream_calls.append((url, format_selector))
        chunks = self.streams.get(url)
        if not chunks:
            return None
        stream = FakeStream(chunks)
        self.opened.append(stream)
        return stream


# ─── Canned yt-dlp dumps ─────────────────────────────────────────────────────

TIKTOK_URL = "https://www.tiktok.com/@user/video/7123456789012345678"

TIKTOK_DUMP = {
    "id": "7123456789012345678",
    "title": "dance challenge",
    "uploader": "user",
    "thumbnail": "https://p16-sign.tiktokcdn.com/cover.jpeg",
    "duration": 14,
    "formats": [
        {
            "format_id": "download",
            "url": "https://v16-webapp.tiktok.com/watermarked.mp4",
            "ext": "mp4",
            "vcodec": "h264",
            "acodec": "aac",
            "format_note": "Watermarked",
        },
        {
            "format_id": "bytevc1_720p",
            "url": "https://v16-webapp.tiktok.com/clean.mp4",
            "ext": "mp4",
            "vcodec": "h265",
            "acodec": "aac",
            "height": 720,
            "format_note": "Direct video (No watermark)",
        },
        {
            "format_id": "audio",
            "url": "https://sf16-ies-music.tiktokcdn.com/track.mp3",
            "ext": "mp3",
            "vcodec": "none",
            "acodec": "mp3",
        },
    ],
}

X_URL = "https://x.com/someone/status/1790000000000000000"

X_DUMP = {
    "title": "someone - clip",
    "uploader": "Someone",
    "uploader_id": "someone",
    "thumbnail": "https://pbs.twimg.com/thumb.jpg",
    "duration": 9.5,
    "formats": [
        {"format_id": "hls-audio", "url": "https://video.twimg.com/a.m3u8", "vcodec": "none", "acodec": "mp4a"},
        {
            "format_id": "http-2176",
            "url": "https://video.twimg.com/ext_tw_video/720.mp4",
            "vcodec": "avc1",
            "acodec": "mp4a",
            "height": 720,
            "fps": 30.0,
        },
    ],
}

INSTAGRAM_CAROUSEL_URL = "https://www.instagram.com/p/C1a2B3c4D5e/"

INSTAGRAM_CAROUSEL_DUMP = {
    "_type": "playlist",
    "title": "Post by somebody",
    "uploader": "Somebody",
    "uploader_id": "somebody",
    "thumbnail": "https://scontent.cdninstagram.com/post-thumb.jpg",
    "entries": [
        {
            "thumbnail": "https://scontent.cdninstagram.com/1-thumb.jpg",
            "formats": [
                {"format_id": "dash-a", "url": "https://scontent.cdninstagram.com/1-audio.m4a", "vcodec": "none", "acodec": "mp4a"},
                {"format_id": "dash-v", "url": "https://scontent.cdninstagram.com/1.mp4", "vcodec": "avc1", "acodec": "none"},
            ],
        },
        {
            "formats": [
                {"format_id": "8", "url": "https://scontent.cdninstagram.com/2.mp4", "vcodec": "avc1", "acodec": "mp4a"},
            ],
        },
        {
            "formats": [
                {"format_id": "img", "url": "https://scontent.cdninstagram.com/3.jpg", "vcodec": "none", "acodec": "none"},
            ],
        },
    ],
}

INSTAGRAM_STORIES_URL = "https://www.instagram.com/stories/somebody/"
