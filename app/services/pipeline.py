import logging
from typing import AsyncIterator, Awaitable, Callable, Optional
from app.core.errors import DeliveryFailure
from app.services.extractor import ByteSource, MediaExtractor
from app.services.ffmpeg import FFmpegTransform
from app.services.format import FormatSelection
from app.services.lifecycle import PipelineResources
from app.services.range import RangeWindow
from app.services.transform import TransformKind, TransformProcess
from app.services.variants import VariantDescriptor

logger = logging.getLogger(__name__)

TransformFactory = Callable[[TransformKind], Awaitable[TransformProcess]]


async def spawn_ffmpeg(kind: TransformKind) -> TransformProcess:
    return await FFmpegTransform.spawn(kind)


def get_transform_factory() -> TransformFactory:
    """FastAPI dependency; overridden in tests"""
    return spawn_ffmpeg


class StreamPipeline:
    """
    Turn a FormatSelection into one output byte stream.

    Passthrough returns the upstream stream itself. Audio re-encode and
    video+audio mux thread the upstream(s) through a transform process
    and return its output. Every stream and process is registered in
    `resources` as soon as it exists.
    """

    def __init__(self, extractor: MediaExtractor, transform_factory: TransformFactory = spawn_ffmpeg):
        self.extractor = extractor
        self.transform_factory = transform_factory

    async def open(
        self,
        selection: FormatSelection,
        window: Optional[RangeWindow],
        want_audio_reencode: bool,
        resources: PipelineResources
    ) -> AsyncIterator[bytes]:
        if selection.needs_mux:
            video = await self._open_upstream(selection.video, None, resources)
            audio = await self._open_upstream(selection.audio, None, resources)
            transform = await self._spawn(TransformKind.MUX, resources)
            # Both inputs must be written concurrently or ffmpeg stalls
            transform.feed(0, video.iter_bytes())
            transform.feed(1, audio.iter_bytes())
            return transform.iter_output()

        if want_audio_reencode:
            audio = await self._open_upstream(selection.chosen, None, resources)
            transform = await self._spawn(TransformKind.AUDIO_REENCODE, resources)
            transform.feed(0, audio.iter_bytes())
            return transform.iter_output()

        upstream = await self._open_upstream(selection.chosen, window, resources)
        return upstream.iter_bytes()

    async def _open_upstream(
        self,
        variant: VariantDescriptor,
        window: Optional[RangeWindow],
        resources: PipelineResources
    ) -> ByteSource:
        stream = self.extractor.open_stream(variant, window)
        resources.add_stream(stream)
        await stream.open()
        return stream

    async def _spawn(self, kind: TransformKind, resources: PipelineResources) -> TransformProcess:
        try:
            transform = await self.transform_factory(kind)
        except OSError as e:
            logger.error("Failed to start %s transform: %s", kind.value, e)
            raise DeliveryFailure("error.transform_unavailable", reason=str(e)) from e
        resources.attach_process(transform)
        return transform
