import asyncio
import functools
from dataclasses import dataclass
from typing import AsyncIterator, Optional
from fastapi import Request
from fastapi.responses import JSONResponse, Response
from app.config.settings import config
from app.core.errors import DeliveryFailure, MediaError, NoViableFormat
from app.core.logging import log_debug, log_error, log_info, log_warning
from app.i18n import i18n
from app.models.internal import MediaIntent
from app.models.response import DiskDelivery
from app.services.delivery import DeliveryHeaders, DeliverySink
from app.services.extractor import MediaExtractor
from app.services.format import FormatSelection, FormatSelector
from app.services.lifecycle import LifecycleGuard
from app.services.pipeline import StreamPipeline, TransformFactory, spawn_ffmpeg
from app.services.range import negotiate
from app.services.variants import MediaType, VariantSet
from app.utils.filename import DEFAULT_BASENAME, force_extension, sanitize_filename, with_extension
from app.utils.locale import get_locale, safe_url_for_log


@dataclass(frozen=True)
class DeliveryPlan:
    """Naming and header decisions derived from the selection"""
    selection: FormatSelection
    filename: str
    content_type: str
    want_audio_reencode: bool = False
    total_length: Optional[int] = None

    @property
    def passthrough(self) -> bool:
        return not self.selection.needs_mux and not self.want_audio_reencode


class MediaService:
    """One /api/media request: extract, select, name, open, deliver"""

    def __init__(self, extractor: MediaExtractor, transform_factory: TransformFactory = spawn_ffmpeg):
        self.extractor = extractor
        self.pipeline = StreamPipeline(extractor, transform_factory)

    @staticmethod
    def plan(intent: MediaIntent, variants: VariantSet, selection: FormatSelection) -> DeliveryPlan:
        is_audio = intent.media_type == MediaType.AUDIO
        base = sanitize_filename(intent.filename or variants.title) or DEFAULT_BASENAME

        want_reencode = is_audio and intent.allow_external_mux and base.lower().endswith(".mp3")

        if want_reencode:
            return DeliveryPlan(selection, base, "audio/mpeg", want_audio_reencode=True)

        if selection.needs_mux:
            ext = config.ffmpeg.mux_format
            if intent.to_disk:
                # Muxed output is always this container on disk, whatever the caller named it
                filename = force_extension(base, ext)
            else:
                filename = with_extension(base, ext)
            return DeliveryPlan(selection, filename, f"video/{ext}")

        chosen = selection.chosen
        ext = chosen.container or ("m4a" if is_audio else "mp4")
        default_mime = "audio/mp4" if is_audio else "video/mp4"
        content_type = chosen.mime_type.split(";")[0].strip() if chosen.mime_type else default_mime
        return DeliveryPlan(
            selection,
            with_extension(base, ext),
            content_type or default_mime,
            total_length=chosen.content_length,
        )

    async def handle(self, intent: MediaIntent, request: Request) -> Response:
        locale = get_locale(request.headers.get("accept-language"))
        _ = functools.partial(i18n.get, locale=locale)

        log_info(request, _("log.fetching_variants", url=safe_url_for_log(intent.url)))
        variants = await self.extractor.fetch_variants(intent.url)

        selection = FormatSelector.select(
            variants,
            intent.media_type,
            intent.quality,
            intent.allow_external_mux
        )
        if selection is None:
            log_warning(request, _("log.no_viable_format", type=intent.media_type.value, mux=intent.allow_external_mux))
            raise NoViableFormat()

        if selection.needs_mux:
            log_info(request, _("log.selected", shape="mux pair", formats=f"{selection.video.format_id}+{selection.audio.format_id}"))
        else:
            log_info(request, _("log.selected", shape="variant", formats=selection.chosen.format_id))

        plan = self.plan(intent, variants, selection)
        log_debug(request, f"Plan: filename={plan.filename} type={plan.content_type} "
                           f"reencode={plan.want_audio_reencode} length={plan.total_length}")
        guard = LifecycleGuard(label=getattr(request.state, "request_id", "request"))

        if intent.to_disk:
            async with guard:
                output = await self.pipeline.open(selection, None, plan.want_audio_reencode, guard.resources)
                try:
                    result = await self.save(request, guard, output, plan.filename)
                except MediaError as e:
                    log_error(request, _("log.save_failed", filename=plan.filename, error=e))
                    raise
            log_info(request, _("log.saved", path=result.path, size=result.size_bytes))
            return JSONResponse(result.model_dump(by_alias=True))

        window = None
        if plan.passthrough:
            window = negotiate(request.headers.get("range"), plan.total_length)

        try:
            output = await self.pipeline.open(selection, window, plan.want_audio_reencode, guard.resources)
        except BaseException:
            await guard.teardown("open failed")
            raise

        headers = DeliveryHeaders(
            filename=plan.filename,
            content_type=plan.content_type,
            attachment=intent.download,
            total_length=plan.total_length,
            window=window,
        )
        log_info(request, _("log.streaming", filename=plan.filename, status=headers.status_code))
        return DeliverySink.to_response(output, headers, guard)

    @staticmethod
    async def save(request: Request, guard: LifecycleGuard, output: AsyncIterator[bytes], filename: str) -> DiskDelivery:
        """
        Copy output to disk while watching the connection.

        A client that goes away mid-copy tears the pipeline down; the copy
        then ends early and is reported as a partial file.
        """
        copy = asyncio.create_task(DeliverySink.to_file(output, config.media.download_dir, filename))
        watcher = asyncio.create_task(wait_for_disconnect(request))
        try:
            done, _pending = await asyncio.wait({copy, watcher}, return_when=asyncio.FIRST_COMPLETED)
            if copy in done or not watcher.result():
                return await copy

            log_warning(request, i18n.get("log.client_disconnected", filename=filename))
            await guard.teardown("client disconnected")
            result = await copy
            raise DeliveryFailure("error.partial_file", path=result.path, size=result.size_bytes)
        finally:
            watcher.cancel()
            if not copy.done():
                copy.cancel()


async def wait_for_disconnect(request: Request) -> bool:
    """True once the ASGI server reports the client gone; False if it cannot tell"""
    try:
        while True:
            message = await request.receive()
            if message["type"] == "http.disconnect":
                return True
    except Exception as e:
        log_debug(request, f"Disconnect watch unavailable: {e}")
        return False
