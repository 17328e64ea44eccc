import asyncio
from typing import Dict, List, Optional

import pytest

from app.config.settings import config
from app.infra.rate_limit import rate_limiter
from app.services.extractor import YtDlpExtractor
from app.services.range import RangeWindow
from app.services.transform import TransformKind, TransformProcess
from app.services.variants import VariantDescriptor, VariantSet

VIDEO_URL = "https://www.youtube.com/watch?v=dQw4w9WgXcQ"


def make_variant(
    format_id: str,
    has_video: bool = True,
    has_audio: bool = True,
    container: str = "mp4",
    mime_type: Optional[str] = None,
    content_length: Optional[int] = None,
    height: int = 0,
    bitrate: float = 0,
) -> VariantDescriptor:
    if mime_type is None:
        kind = "audio" if has_audio and not has_video else "video"
        mime_type = f'{kind}/{container}; codecs="x"'
    return VariantDescriptor(
        format_id=format_id,
        url=f"https://media.example/{format_id}",
        has_video=has_video,
        has_audio=has_audio,
        container=container,
        mime_type=mime_type,
        content_length=content_length,
        quality_rank=(height, 0, bitrate),
        itag=int(format_id) if format_id.isdigit() else None,
    )


def audio_variant(format_id: str, kbps: float, container: str = "m4a", **kwargs) -> VariantDescriptor:
    return make_variant(format_id, has_video=False, has_audio=True, container=container, bitrate=kbps, **kwargs)


def video_only_variant(format_id: str, height: int, **kwargs) -> VariantDescriptor:
    return make_variant(format_id, has_video=True, has_audio=False, height=height, **kwargs)


def muxed_variant(format_id: str, height: int, **kwargs) -> VariantDescriptor:
    return make_variant(format_id, has_video=True, has_audio=True, height=height, **kwargs)


class FakeStream:
    """In-memory upstream byte stream"""

    def __init__(self, variant: VariantDescriptor, chunks: List[bytes], window: Optional[RangeWindow] = None,
                 fail_with: Optional[Exception] = None, open_error: Optional[Exception] = None):
        self.variant = variant
        self.window = window
        self.chunks = list(chunks)
        self.fail_with = fail_with
        self.open_error = open_error
        self.opened = False
        self.close_count = 0

    @property
    def closed(self) -> bool:
        return self.close_count > 0

    async def open(self) -> None:
        self.opened = True
        if self.open_error is not None:
            raise self.open_error

    async def iter_bytes(self):
        data = b"".join(self.chunks)
        if self.window is not None:
            data = data[self.window.start:self.window.end + 1]
            chunks = [data]
        else:
            chunks = self.chunks
        for chunk in chunks:
            if self.closed:
                return
            yield chunk
            await asyncio.sleep(0)
        if self.fail_with is not None:
            raise self.fail_with

    async def aclose(self) -> None:
        self.close_count += 1


class FakeExtractor:
    """Extraction collaborator serving canned variants and bytes"""

    def __init__(self, variants: Optional[VariantSet] = None, error: Optional[Exception] = None):
        self.variants = variants or VariantSet.of("Test Video", [])
        self.error = error
        self.payloads: Dict[str, List[bytes]] = {}
        self.stream_errors: Dict[str, Exception] = {}
        self.open_errors: Dict[str, Exception] = {}
        self.streams: List[FakeStream] = []

    def validate(self, url: str) -> bool:
        return YtDlpExtractor.validate(url)

    async def fetch_variants(self, url: str) -> VariantSet:
        if self.error is not None:
            raise self.error
        return self.variants

    def open_stream(self, variant: VariantDescriptor, window: Optional[RangeWindow] = None) -> FakeStream:
        chunks = self.payloads.get(variant.format_id, [f"<{variant.format_id}>".encode()])
        stream = FakeStream(
            variant,
            chunks,
            window,
            fail_with=self.stream_errors.get(variant.format_id),
            open_error=self.open_errors.get(variant.format_id),
        )
        self.streams.append(stream)
        return stream


class FakeInput:
    def __init__(self):
        self.data = bytearray()
        self.closed = asyncio.Event()

    async def write(self, data: bytes) -> None:
        if self.closed.is_set():
            raise BrokenPipeError("closed")
        self.data.extend(data)
        await asyncio.sleep(0)

    def close(self) -> None:
        self.closed.set()


class FakeTransform(TransformProcess):
    """
    Stand-in for ffmpeg. Emits `output` once every input is closed, or
    immediately when `stream_early` is set; `hold_open` keeps the output
    channel open until terminate().
    """

    def __init__(self, kind: TransformKind, output: Optional[List[bytes]] = None, returncode: int = 0,
                 stream_early: bool = False, hold_open: bool = False):
        super().__init__(kind, read_size=1024)
        self._inputs = [FakeInput() for _ in range(kind.input_count)]
        self._output = list(output if output is not None else [b"transformed"])
        self.returncode = returncode
        self.stream_early = stream_early
        self.hold_open = hold_open
        self.killed = asyncio.Event()
        self.finished = False

    @property
    def inputs(self):
        return self._inputs

    @property
    def is_running(self) -> bool:
        return not self.killed.is_set() and not self.finished

    async def read(self, size: int) -> bytes:
        if not self.stream_early and self._output:
            waits = [asyncio.ensure_future(i.closed.wait()) for i in self._inputs]
            killed = asyncio.ensure_future(self.killed.wait())
            await asyncio.wait([asyncio.gather(*waits), killed], return_when=asyncio.FIRST_COMPLETED)
            for fut in waits + [killed]:
                fut.cancel()
        if self.killed.is_set():
            return b""
        if self._output:
            return self._output.pop(0)
        if self.hold_open:
            await self.killed.wait()
        return b""

    async def wait(self) -> Optional[int]:
        self.finished = True
        return self.returncode

    def _kill(self) -> None:
        self.killed.set()
        for pipe in self._inputs:
            pipe.close()


class TransformRecorder:
    """transform_factory that records every FakeTransform it creates"""

    def __init__(self, **options):
        self.options = options
        self.created: List[FakeTransform] = []

    async def __call__(self, kind: TransformKind) -> FakeTransform:
        transform = FakeTransform(kind, **self.options)
        self.created.append(transform)
        return transform


@pytest.fixture(autouse=True)
def reset_rate_limiter():
    rate_limiter.reset()
    yield
    rate_limiter.reset()


@pytest.fixture
def download_dir(tmp_path, monkeypatch):
    directory = tmp_path / "downloads"
    monkeypatch.setattr(config.media, "download_dir", str(directory))
    return directory
