import asyncio
import json
import logging
import re
from typing import Any, AsyncIterator, Dict, List, Optional, Protocol
from urllib.parse import parse_qs, urlparse

import httpx

from app.config.settings import config
from app.core.errors import DeliveryFailure, ExtractionError, ExtractionReason
from app.services.range import RangeWindow
from app.services.variants import VariantDescriptor, VariantSet
from app.services.ytdlp import SubprocessExecutor, YTDLPCommandBuilder

logger = logging.getLogger(__name__)

VIDEO_ID_RE = re.compile(r"^[A-Za-z0-9_-]{11}$")
PATH_ID_PREFIXES = ("shorts", "embed", "live", "v")

# Only formats that are a single fetchable byte stream
DIRECT_PROTOCOLS = ("https", "http")

MIME_TYPES = {
    ("mp4", False): "video/mp4",
    ("webm", False): "video/webm",
    ("3gp", False): "video/3gpp",
    ("mp4", True): "audio/mp4",
    ("m4a", True): "audio/mp4",
    ("webm", True): "audio/webm",
    ("mp3", True): "audio/mpeg",
}

# Checked in order; first hit wins
ERROR_PATTERNS = [
    (ExtractionReason.PRIVATE, re.compile(r"private", re.IGNORECASE)),
    (ExtractionReason.AGE_RESTRICTED, re.compile(r"age[- ]restricted|confirm your age|inappropriate for some users", re.IGNORECASE)),
    (ExtractionReason.REMOVED, re.compile(r"\b410\b|has been removed|no longer available|account .* terminated", re.IGNORECASE)),
    (ExtractionReason.FORBIDDEN, re.compile(r"\b403\b|forbidden", re.IGNORECASE)),
    (ExtractionReason.LIVE, re.compile(r"\blive\b|is_live|premieres in", re.IGNORECASE)),
]

# Reuse client for keep-alive
client = httpx.AsyncClient(follow_redirects=True, timeout=config.media.upstream_timeout)


async def close_http_client() -> None:
    await client.aclose()


def classify_error(message: str) -> ExtractionReason:
    for reason, pattern in ERROR_PATTERNS:
        if pattern.search(message):
            return reason
    return ExtractionReason.UNKNOWN


def _codec_present(codec: Optional[str]) -> bool:
    return bool(codec) and codec != "none"


def parse_variant(fmt: Dict[str, Any]) -> Optional[VariantDescriptor]:
    """Map one yt-dlp format dict; None for formats we cannot stream directly."""
    url = fmt.get("url")
    protocol = fmt.get("protocol") or "https"
    if not url or protocol not in DIRECT_PROTOCOLS:
        return None

    has_video = _codec_present(fmt.get("vcodec"))
    has_audio = _codec_present(fmt.get("acodec"))
    if not has_video and not has_audio:
        return None

    container = fmt.get("ext") or ("m4a" if not has_video else "mp4")
    audio_only = has_audio and not has_video
    mime_type = MIME_TYPES.get(
        (container, audio_only),
        f"{'audio' if audio_only else 'video'}/{container}"
    )

    format_id = str(fmt.get("format_id") or "")
    bitrate = fmt.get("tbr") or fmt.get("abr") or fmt.get("vbr") or 0

    return VariantDescriptor(
        format_id=format_id,
        url=url,
        has_video=has_video,
        has_audio=has_audio,
        container=container,
        mime_type=mime_type,
        # Approximate sizes are useless for Content-Length/Content-Range
        content_length=fmt.get("filesize") or None,
        quality_rank=(fmt.get("height") or 0, fmt.get("fps") or 0, bitrate),
        itag=int(format_id) if format_id.isdigit() else None,
        http_headers=dict(fmt.get("http_headers") or {}),
    )


def parse_variants(info: Dict[str, Any]) -> VariantSet:
    variants = [v for v in (parse_variant(f) for f in info.get("formats") or []) if v]
    return VariantSet.of(info.get("title") or "", variants)


class ByteSource(Protocol):
    async def open(self) -> None: ...

    def iter_bytes(self) -> AsyncIterator[bytes]: ...

    async def aclose(self) -> None: ...


class MediaExtractor(Protocol):
    def validate(self, url: str) -> bool: ...

    async def fetch_variants(self, url: str) -> VariantSet: ...

    def open_stream(self, variant: VariantDescriptor, window: Optional[RangeWindow] = None) -> ByteSource: ...


class UpstreamStream:
    """
    Byte stream for one variant.

    With a known length the span is fetched as consecutive ranged
    requests of `chunk_bytes`; otherwise a single plain GET is streamed.
    """

    def __init__(
        self,
        http: httpx.AsyncClient,
        variant: VariantDescriptor,
        window: Optional[RangeWindow] = None,
        chunk_bytes: Optional[int] = None
    ):
        self.variant = variant
        self.window = window
        self.chunk_bytes = chunk_bytes or config.media.upstream_chunk_bytes
        self._http = http
        self._response: Optional[httpx.Response] = None
        self._closed = False
        self._opened = False

        if window is not None:
            self._position, self._end = window.start, window.end
        elif variant.content_length:
            self._position, self._end = 0, variant.content_length - 1
        else:
            self._position, self._end = 0, None

    @property
    def closed(self) -> bool:
        return self._closed

    async def open(self) -> None:
        """Send the first request so upstream refusals surface early"""
        if self._opened:
            return
        self._opened = True
        self._response = await self._request_next()

    async def _request_next(self) -> httpx.Response:
        headers = dict(self.variant.http_headers)
        headers["Accept-Encoding"] = "identity"
        ranged_from = None
        if self._end is not None:
            ranged_from = self._position
            chunk_end = min(self._position + self.chunk_bytes - 1, self._end)
            headers["Range"] = f"bytes={self._position}-{chunk_end}"
            self._position = chunk_end + 1

        try:
            request = self._http.build_request("GET", self.variant.url, headers=headers)
            response = await self._http.send(request, stream=True)
        except httpx.HTTPError as e:
            raise DeliveryFailure("error.upstream_failed", reason=str(e)) from e

        if response.status_code >= 400:
            await response.aclose()
            if response.status_code == 403:
                raise ExtractionError(ExtractionReason.FORBIDDEN, f"upstream HTTP 403 for format {self.variant.format_id}")
            if response.status_code == 410:
                raise ExtractionError(ExtractionReason.REMOVED, f"upstream HTTP 410 for format {self.variant.format_id}")
            raise DeliveryFailure("error.upstream_failed", reason=f"HTTP {response.status_code}")

        if ranged_from is not None and response.status_code == 200:
            # Range ignored upstream: only usable when the whole body was wanted
            if ranged_from != 0 or self.window is not None:
                await response.aclose()
                raise DeliveryFailure("error.upstream_failed", reason="upstream ignored Range")
            self._end = None

        return response

    async def iter_bytes(self) -> AsyncIterator[bytes]:
        await self.open()
        while self._response is not None and not self._closed:
            response = self._response
            try:
                async for chunk in response.aiter_bytes():
                    yield chunk
            except (httpx.HTTPError, httpx.StreamError) as e:
                if self._closed:
                    return
                raise DeliveryFailure("error.upstream_failed", reason=str(e)) from e
            finally:
                await response.aclose()

            self._response = None
            if not self._closed and self._end is not None and self._position <= self._end:
                self._response = await self._request_next()

    async def aclose(self) -> None:
        self._closed = True
        response, self._response = self._response, None
        if response is not None:
            await response.aclose()


class YtDlpExtractor:
    """Extraction collaborator backed by the yt-dlp CLI and httpx"""

    def __init__(self, http: Optional[httpx.AsyncClient] = None):
        self._http = http or client

    @staticmethod
    def validate(url: str) -> bool:
        """Accept YouTube watch/short/embed/live URLs carrying a video id"""
        try:
            parsed = urlparse(url)
        except ValueError:
            return False

        if parsed.scheme not in ("http", "https"):
            return False

        host = (parsed.hostname or "").lower()
        if host.startswith("www."):
            host = host[4:]

        video_id = ""
        if host == "youtu.be":
            video_id = parsed.path.strip("/").split("/")[0]
        elif host == "youtube.com" or host.endswith(".youtube.com"):
            parts = parsed.path.strip("/").split("/")
            if parsed.path.rstrip("/") == "/watch":
                video_id = parse_qs(parsed.query).get("v", [""])[0]
            elif len(parts) >= 2 and parts[0] in PATH_ID_PREFIXES:
                video_id = parts[1]
        else:
            return False

        return bool(VIDEO_ID_RE.match(video_id))

    async def fetch_variants(self, url: str) -> VariantSet:
        cmd = YTDLPCommandBuilder.build_info_command(url)

        try:
            result = await SubprocessExecutor.run(cmd, timeout=config.ytdlp.info_timeout)
        except asyncio.TimeoutError:
            raise ExtractionError(ExtractionReason.UNKNOWN, "yt-dlp timeout")
        except OSError as e:
            raise ExtractionError(ExtractionReason.UNKNOWN, f"yt-dlp unavailable: {e}")

        stderr = result.stderr_text
        stdout = result.stdout_text

        if result.returncode != 0:
            raise ExtractionError(classify_error(stderr), stderr)

        if not stdout:
            # --match-filter !is_live skips live items without failing
            if not config.ytdlp.enable_live_streams:
                raise ExtractionError(ExtractionReason.LIVE, stderr or "filtered by !is_live")
            raise ExtractionError(ExtractionReason.UNKNOWN, stderr or "empty yt-dlp output")

        try:
            info = json.loads(stdout.splitlines()[0])
        except json.JSONDecodeError as e:
            raise ExtractionError(ExtractionReason.UNKNOWN, f"unparsable yt-dlp output: {e}")

        if info.get("is_live") and not config.ytdlp.enable_live_streams:
            raise ExtractionError(ExtractionReason.LIVE, "live stream")

        variants = parse_variants(info)
        logger.debug("Extracted %d variants for %s", len(variants), info.get("id"))
        return variants

    def open_stream(self, variant: VariantDescriptor, window: Optional[RangeWindow] = None) -> UpstreamStream:
        return UpstreamStream(self._http, variant, window)


extractor = YtDlpExtractor()


def get_extractor() -> MediaExtractor:
    """FastAPI dependency; overridden in tests"""
    return extractor
