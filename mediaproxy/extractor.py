"""
yt-dlp as an external extractor.

The service never imports yt-dlp's Python API for extraction; it runs the
yt-dlp binary as a subprocess, the same way for metadata dumps and for
streaming downloads to stdout:

  metadata:  yt-dlp --dump-single-json --no-download --no-warnings \
                    --no-playlist --no-check-certificate <url>
  stream:    yt-dlp --quiet --no-warnings --no-playlist --no-check-certificate \
                    -f <selector> -o - <url>

`Extractor` is the seam between the resolver / proxy and the process layer;
tests substitute an in-memory implementation.
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from typing import AsyncIterator, List, Optional, Tuple

from .config import (
    EXTRACTOR_MAX_OUTPUT_BYTES,
    EXTRACTOR_TIMEOUT_SECONDS,
    STREAM_READ_TIMEOUT_SECONDS,
    YT_DLP_PATH,
)
from .models import ErrorCode, ErrorDetail, ExtractorOutput

logger = logging.getLogger(__name__)

METADATA_FLAGS = [
    "--dump-single-json",
    "--no-download",
    "--no-warnings",
    "--no-playlist",
    "--no-check-certificate",
]

STREAM_FLAGS = [
    "--quiet",
    "--no-warnings",
    "--no-playlist",
    "--no-check-certificate",
    "--no-part",
]

CHUNK_SIZE = 64 * 1024
STDERR_LIMIT = 16 * 1024
VERSION_TIMEOUT_SECONDS = 15

PRIVATE_KEYWORDS = (
    "private", "login", "sign in", "restricted", "unavailable", "blocked",
    "404", "not found", "suspended", "authentication", "cookie",
)
INCOMPATIBLE_KEYWORDS = ("unable to extract", "extract webpage")


class _OutputLimitExceeded(Exception):
    pass


# =========================================================================
# ERROR CLASSIFICATION / PARSING
# =========================================================================

def classify_extractor_error(error_msg: str) -> ErrorCode:
    """Map yt-dlp stderr (or an exception message) onto an error code."""
    error_lower = (error_msg or "").lower()

    if any(kw in error_lower for kw in PRIVATE_KEYWORDS):
        return ErrorCode.PRIVATE_OR_UNAVAILABLE

    if any(kw in error_lower for kw in INCOMPATIBLE_KEYWORDS):
        return ErrorCode.EXTRACTOR_INCOMPATIBLE

    return ErrorCode.EXTRACTION_FAILED


def parse_extractor_output(raw: bytes) -> ExtractorOutput:
    """
    Parse yt-dlp's JSON dump.

    One JSON document is the normal case. Several JSON lines (one per
    playlist item) are folded into a single output with `entries`.
    Raises ValueError on empty or malformed output.
    """
    text = raw.decode("utf-8", errors="replace").strip()
    if not text:
        raise ValueError("yt-dlp produced no output")

    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        lines = [json.loads(line) for line in text.splitlines() if line.strip()]
        if len(lines) == 1:
            data = lines[0]
        else:
            head = lines[0] if isinstance(lines[0], dict) else {}
            data = {**head, "formats": [], "url": None, "entries": lines}

    if not isinstance(data, dict):
        raise ValueError(f"unexpected yt-dlp output type: {type(data).__name__}")

    return ExtractorOutput.model_validate(data)


# =========================================================================
# INTERFACE
# =========================================================================

class MediaStream(ABC):
    """Byte stream whose first chunk is already known to exist."""

    @property
    @abstractmethod
    def head(self) -> bytes:
        """First chunk, available before the response is committed."""

    @abstractmethod
    def iter_bytes(self) -> AsyncIterator[bytes]:
        ...

    @abstractmethod
    async def aclose(self) -> None:
        ...


class Extractor(ABC):
    """Metadata extraction + streaming download for a post URL."""

    @abstractmethod
    async def extract(self, url: str) -> Tuple[Optional[ExtractorOutput], Optional[ErrorDetail]]:
        """Return (output, None) on success or (None, error) on failure."""

    @abstractmethod
    async def open_stream(self, url: str, format_selector: str) -> Optional[MediaStream]:
        """Start a download to stdout; None if it produced no data."""


# =========================================================================
# SUBPROCESS IMPLEMENTATION
# =========================================================================

async def _read_capped(stream: asyncio.StreamReader, limit: int) -> bytes:
    buf = bytearray()
    while True:
        chunk = await stream.read(CHUNK_SIZE)
        if not chunk:
            return bytes(buf)
        buf.extend(chunk)
        if len(buf) > limit:
            raise _OutputLimitExceeded(f"output exceeded {limit} bytes")


async def _read_truncated(stream: asyncio.StreamReader, limit: int) -> bytes:
    """Drain a pipe completely, keeping only the first `limit` bytes."""
    buf = bytearray()
    while True:
        chunk = await stream.read(CHUNK_SIZE)
        if not chunk:
            return bytes(buf)
        if len(buf) < limit:
            buf.extend(chunk[: limit - len(buf)])


def _kill(process: asyncio.subprocess.Process) -> None:
    if process.returncode is None:
        try:
            process.kill()
        except ProcessLookupError:
            pass


class SubprocessStream(MediaStream):
    """yt-dlp stdout piped chunk by chunk; the process dies with the stream."""

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        first_chunk: bytes,
        stderr_task: "asyncio.Task[bytes]",
        read_timeout: float,
    ):
        self._process = process
        self._first_chunk = first_chunk
        self._stderr_task = stderr_task
        self._read_timeout = read_timeout
        self.bytes_sent = 0

    @property
    def head(self) -> bytes:
        return self._first_chunk

    async def iter_bytes(self) -> AsyncIterator[bytes]:
        try:
            self.bytes_sent += len(self._first_chunk)
            yield self._first_chunk
            while True:
                chunk = await asyncio.wait_for(
                    self._process.stdout.read(CHUNK_SIZE),
                    timeout=self._read_timeout,
                )
                if not chunk:
                    break
                self.bytes_sent += len(chunk)
                yield chunk
        except asyncio.TimeoutError:
            logger.warning(
                f"⚠️ yt-dlp stream stalled for {self._read_timeout:.0f}s "
                f"after {self.bytes_sent} bytes, aborting"
            )
        finally:
            await self.aclose()

    async def aclose(self) -> None:
        # No awaits here: this also runs while the request is being cancelled.
        _kill(self._process)
        if not self._stderr_task.done():
            self._stderr_task.cancel()


class YtDlpExtractor(Extractor):
    """Runs the yt-dlp binary with bounded time and output."""

    def __init__(
        self,
        binary: str = YT_DLP_PATH,
        timeout_seconds: float = EXTRACTOR_TIMEOUT_SECONDS,
        max_output_bytes: int = EXTRACTOR_MAX_OUTPUT_BYTES,
        read_timeout_seconds: float = STREAM_READ_TIMEOUT_SECONDS,
    ):
        self.binary = binary
        self.timeout_seconds = timeout_seconds
        self.max_output_bytes = max_output_bytes
        self.read_timeout_seconds = read_timeout_seconds

    def _metadata_args(self, url: str) -> List[str]:
        return [self.binary, *METADATA_FLAGS, url]

    def _stream_args(self, url: str, format_selector: str) -> List[str]:
        return [self.binary, *STREAM_FLAGS, "-f", format_selector, "-o", "-", url]

    async def _spawn(self, args: List[str]) -> asyncio.subprocess.Process:
        return await asyncio.create_subprocess_exec(
            *args,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )

    async def binary_version(self) -> Optional[str]:
        """`yt-dlp --version` of the configured binary, or None if it cannot be run."""
        try:
            process = await self._spawn([self.binary, "--version"])
        except OSError as e:
            logger.error(f"❌ Could not start yt-dlp ({self.binary}): {e}")
            return None

        try:
            stdout, _ = await asyncio.wait_for(process.communicate(), timeout=VERSION_TIMEOUT_SECONDS)
        except asyncio.TimeoutError:
            logger.warning(f"⏱️ {self.binary} --version timed out")
            return None
        finally:
            _kill(process)

        if process.returncode != 0:
            return None
        return stdout.decode("utf-8", errors="replace").strip() or None

    async def extract(self, url: str) -> Tuple[Optional[ExtractorOutput], Optional[ErrorDetail]]:
        try:
            process = await self._spawn(self._metadata_args(url))
        except OSError as e:
            logger.error(f"❌ Could not start yt-dlp ({self.binary}): {e}")
            return None, ErrorDetail(
                code=ErrorCode.EXTRACTION_FAILED,
                message="yt-dlp could not be started",
                details={"error": str(e)},
            )

        async def _communicate() -> Tuple[bytes, bytes]:
            stdout, stderr = await asyncio.gather(
                _read_capped(process.stdout, self.max_output_bytes),
                _read_truncated(process.stderr, STDERR_LIMIT),
            )
            await process.wait()
            return stdout, stderr

        try:
            stdout, stderr = await asyncio.wait_for(_communicate(), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            logger.warning(f"⏱️ yt-dlp timed out after {self.timeout_seconds:.0f}s: {url}")
            return None, ErrorDetail(
                code=ErrorCode.EXTRACTION_FAILED,
                message=f"yt-dlp timed out after {self.timeout_seconds:.0f}s",
            )
        except _OutputLimitExceeded as e:
            logger.warning(f"⚠️ yt-dlp output too large for {url}: {e}")
            return None, ErrorDetail(code=ErrorCode.EXTRACTION_FAILED, message=str(e))
        finally:
            _kill(process)

        stderr_text = stderr.decode("utf-8", errors="replace").strip()

        if process.returncode != 0:
            logger.error(f"❌ yt-dlp exit {process.returncode} for {url}: {stderr_text[:500]}")
            return None, ErrorDetail(
                code=classify_extractor_error(stderr_text),
                message=f"yt-dlp exited with code {process.returncode}",
                details={"stderr": stderr_text[:500]},
            )

        try:
            output = parse_extractor_output(stdout)
        except ValueError as e:
            logger.error(f"❌ Could not parse yt-dlp output for {url}: {e}")
            return None, ErrorDetail(
                code=ErrorCode.EXTRACTION_FAILED,
                message="yt-dlp returned malformed output",
                details={"error": str(e)[:500]},
            )

        return output, None

    async def open_stream(self, url: str, format_selector: str) -> Optional[MediaStream]:
        try:
            process = await self._spawn(self._stream_args(url, format_selector))
        except OSError as e:
            logger.error(f"❌ Could not start yt-dlp ({self.binary}): {e}")
            return None

        stderr_task = asyncio.create_task(_read_truncated(process.stderr, STDERR_LIMIT))

        try:
            first_chunk = await asyncio.wait_for(
                process.stdout.read(CHUNK_SIZE),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning(f"⏱️ yt-dlp produced no data within {self.timeout_seconds:.0f}s: {url}")
            first_chunk = b""

        if first_chunk:
            return SubprocessStream(process, first_chunk, stderr_task, self.read_timeout_seconds)

        _kill(process)
        try:
            stderr = await asyncio.wait_for(stderr_task, timeout=5)
            logger.error(
                f"❌ yt-dlp stream failed for {url} (format {format_selector!r}): "
                f"{stderr.decode('utf-8', errors='replace').strip()[:500]}"
            )
        except asyncio.TimeoutError:
            logger.error(f"❌ yt-dlp stream failed for {url} (format {format_selector!r})")
        return None
