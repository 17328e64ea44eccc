import pytest

from app.core.errors import DeliveryFailure, ExtractionError, ExtractionReason
from app.services.format import FormatSelection
from app.services.lifecycle import LifecycleGuard
from app.services.pipeline import StreamPipeline
from app.services.range import RangeWindow
from app.services.transform import TransformKind
from tests.conftest import (
    FakeExtractor,
    FakeTransform,
    TransformRecorder,
    audio_variant,
    muxed_variant,
    video_only_variant,
)


async def collect(output):
    return b"".join([chunk async for chunk in output])


@pytest.mark.asyncio
async def test_passthrough_streams_upstream_bytes_without_a_process():
    extractor = FakeExtractor()
    extractor.payloads["18"] = [b"0123", b"4567", b"89"]
    transforms = TransformRecorder()
    guard = LifecycleGuard()

    pipeline = StreamPipeline(extractor, transforms)
    output = await pipeline.open(FormatSelection.single(muxed_variant("18", 360)), None, False, guard.resources)

    assert await collect(output) == b"0123456789"
    assert transforms.created == []
    assert guard.resources.streams == extractor.streams


@pytest.mark.asyncio
async def test_passthrough_honours_window():
    extractor = FakeExtractor()
    extractor.payloads["18"] = [b"0123456789"]
    guard = LifecycleGuard()

    pipeline = StreamPipeline(extractor, TransformRecorder())
    output = await pipeline.open(FormatSelection.single(muxed_variant("18", 360)), RangeWindow(2, 5), False, guard.resources)

    assert await collect(output) == b"2345"
    assert extractor.streams[0].window == RangeWindow(2, 5)


@pytest.mark.asyncio
async def test_mux_feeds_both_inputs_and_returns_process_output():
    extractor = FakeExtractor()
    extractor.payloads["137"] = [b"video-1", b"video-2"]
    extractor.payloads["140"] = [b"audio-1"]
    transforms = TransformRecorder(output=[b"muxed"])
    guard = LifecycleGuard()

    pipeline = StreamPipeline(extractor, transforms)
    selection = FormatSelection.pair(video_only_variant("137", 1080), audio_variant("140", 128))
    output = await pipeline.open(selection, None, False, guard.resources)

    assert await collect(output) == b"muxed"
    transform = transforms.created[0]
    assert transform.kind == TransformKind.MUX
    assert bytes(transform.inputs[0].data) == b"video-1video-2"
    assert bytes(transform.inputs[1].data) == b"audio-1"
    assert guard.resources.process is transform
    assert len(guard.resources.streams) == 2


@pytest.mark.asyncio
async def test_audio_reencode_uses_single_input():
    extractor = FakeExtractor()
    extractor.payloads["140"] = [b"aac"]
    transforms = TransformRecorder(output=[b"mp3"])
    guard = LifecycleGuard()

    pipeline = StreamPipeline(extractor, transforms)
    output = await pipeline.open(FormatSelection.single(audio_variant("140", 128)), None, True, guard.resources)

    assert await collect(output) == b"mp3"
    transform = transforms.created[0]
    assert transform.kind == TransformKind.AUDIO_REENCODE
    assert len(transform.inputs) == 1
    assert bytes(transform.inputs[0].data) == b"aac"


@pytest.mark.asyncio
async def test_upstream_failure_during_mux_kills_process_and_fails_output():
    extractor = FakeExtractor()
    extractor.stream_errors["140"] = ConnectionResetError("reset by peer")
    transforms = TransformRecorder(output=[b"partial"], stream_early=True, hold_open=True)
    guard = LifecycleGuard()

    pipeline = StreamPipeline(extractor, transforms)
    selection = FormatSelection.pair(video_only_variant("137", 1080), audio_variant("140", 128))
    output = await pipeline.open(selection, None, False, guard.resources)

    with pytest.raises(DeliveryFailure) as exc:
        await collect(output)
    assert exc.value.message_key == "error.upstream_failed"
    assert transforms.created[0].terminated
    assert not transforms.created[0].is_running


@pytest.mark.asyncio
async def test_non_zero_exit_fails_output():
    extractor = FakeExtractor()
    transforms = TransformRecorder(output=[b"half"], returncode=1)
    guard = LifecycleGuard()

    pipeline = StreamPipeline(extractor, transforms)
    output = await pipeline.open(FormatSelection.single(audio_variant("140", 128)), None, True, guard.resources)

    with pytest.raises(DeliveryFailure) as exc:
        await collect(output)
    assert exc.value.message_key == "error.transform_failed"


@pytest.mark.asyncio
async def test_process_closing_its_input_is_a_transform_failure():
    async def source():
        yield b"aac"

    transform = FakeTransform(TransformKind.AUDIO_REENCODE, output=[b"half"], returncode=1)
    # The process has already exited and closed its end of the pipe
    transform.inputs[0].close()
    await transform.feed(0, source())

    assert transform.feed_error is None
    assert not transform.terminated
    with pytest.raises(DeliveryFailure) as exc:
        await collect(transform.iter_output())
    assert exc.value.message_key == "error.transform_failed"


@pytest.mark.asyncio
async def test_refused_upstream_is_registered_for_teardown():
    extractor = FakeExtractor()
    extractor.open_errors["137"] = ExtractionError(ExtractionReason.FORBIDDEN, "403")
    transforms = TransformRecorder()
    guard = LifecycleGuard()

    pipeline = StreamPipeline(extractor, transforms)
    selection = FormatSelection.pair(video_only_variant("137", 1080), audio_variant("140", 128))
    with pytest.raises(ExtractionError):
        await pipeline.open(selection, None, False, guard.resources)
    await guard.teardown("open failed")

    assert transforms.created == []
    assert [s.closed for s in extractor.streams] == [True]


@pytest.mark.asyncio
async def test_missing_transform_binary_is_a_delivery_failure():
    async def unavailable(kind):
        raise FileNotFoundError("ffmpeg")

    guard = LifecycleGuard()
    pipeline = StreamPipeline(FakeExtractor(), unavailable)
    with pytest.raises(DeliveryFailure) as exc:
        await pipeline.open(FormatSelection.single(audio_variant("140", 128)), None, True, guard.resources)
    assert exc.value.message_key == "error.transform_unavailable"
