from typing import Optional
from fastapi import APIRouter, Request, Depends, Query
from app.core.errors import InvalidRequest
from app.core.logging import assign_request_id, log_info
from app.infra.rate_limit import rate_limiter
from app.models.request import MediaRequest
from app.models.response import DiskDelivery, ErrorResponse
from app.services.extractor import MediaExtractor, get_extractor
from app.services.media import MediaService
from app.services.pipeline import TransformFactory, get_transform_factory
from app.utils.locale import safe_url_for_log

router = APIRouter()

ERROR_RESPONSES = {status: {"model": ErrorResponse} for status in (400, 403, 409, 410, 429, 500)}

@router.get(
    "/api/media",
    dependencies=[Depends(assign_request_id), Depends(rate_limiter)],
    responses={200: {"model": DiskDelivery, "description": "Media bytes, or the saved file for downloadTarget=disk"}, **ERROR_RESPONSES},
)
async def get_media(
    request: Request,
    url: Optional[str] = Query(None, description="YouTube video URL"),
    mode: str = Query("stream", description="stream or download"),
    type: str = Query("video", description="video or audio"),
    quality: str = Query("highest", description="highest, lowest, or an exact itag"),
    download_target: str = Query("response", alias="downloadTarget", description="response or disk"),
    filename: Optional[str] = Query(None, description="Filename override"),
    enable_external_mux: Optional[str] = Query(None, alias="enableExternalMux", description="Allow ffmpeg muxing"),
    enable_ffmpeg: Optional[str] = Query(None, alias="enableFfmpeg", description="Deprecated alias of enableExternalMux"),
    extractor: MediaExtractor = Depends(get_extractor),
    transform_factory: TransformFactory = Depends(get_transform_factory),
):
    """Stream, download, or persist one media item"""

    media_request = MediaRequest(
        url=url,
        mode=mode,
        type=type,
        quality=quality,
        download_target=download_target,
        filename=filename,
        enable_external_mux=enable_external_mux if enable_external_mux is not None else enable_ffmpeg,
    )
    intent = media_request.to_intent()

    # Validation happens before any resource is opened
    if not intent.url or not extractor.validate(intent.url):
        raise InvalidRequest()

    log_info(request, f"Media request: {safe_url_for_log(intent.url)} type={intent.media_type.value} "
                      f"quality={intent.quality.kind.value} download={intent.download} disk={intent.to_disk}")

    return await MediaService(extractor, transform_factory).handle(intent, request)
