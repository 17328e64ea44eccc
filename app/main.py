import asyncio
import logging
import os
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from app.api import health, media
from app.config.settings import config, CONFIG_PATH
from app.core.errors import MediaError
from app.core.logging import setup_logging
from app.core.state import state
from app.i18n import i18n
from app.infra.redis import init_redis, close_redis
from app.services.extractor import close_http_client
from app.services.ffmpeg import FFmpegCommandBuilder
from app.services.ytdlp import SubprocessExecutor, YTDLPCommandBuilder
from app.utils.locale import get_locale

logger = logging.getLogger(__name__)

app = FastAPI(
    title=config.api.title,
    description=config.api.description,
    version=config.api.version,
    docs_url="/docs" if config.api.debug else None,
    redoc_url=None
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=config.api.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Routes
app.include_router(health.router, tags=["Health"])
app.include_router(media.router, tags=["Media"])

@app.exception_handler(MediaError)
async def media_error_handler(request: Request, exc: MediaError):
    locale = get_locale(request.headers.get("accept-language"))
    message = i18n.get(exc.message_key, locale=locale, **exc.params)
    level = logging.ERROR if exc.status_code >= 500 else logging.WARNING
    logger.log(level, f"[{getattr(request.state, 'request_id', 'unknown')}] {exc.status_code} {exc}")
    return JSONResponse(status_code=exc.status_code, content={"error": message})

@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": str(exc.detail)},
        headers=getattr(exc, "headers", None)
    )

async def detect_tool_versions() -> None:
    """Record yt-dlp/ffmpeg versions for the health endpoints"""
    probes = (
        ("ytdlp_version", YTDLPCommandBuilder.build_version_command()),
        ("ffmpeg_version", FFmpegCommandBuilder.build_version_command()),
    )
    for attr, cmd in probes:
        try:
            result = await SubprocessExecutor.run(cmd, timeout=10.0)
        except (OSError, asyncio.TimeoutError) as e:
            logger.warning(f"{cmd[0]} not available: {e}")
            continue
        if result.returncode == 0 and result.first_line:
            # "ffmpeg version 6.1.1 Copyright ..." vs "2024.08.06"
            parts = result.first_line.split()
            setattr(state, attr, parts[2] if len(parts) > 2 and parts[1] == "version" else result.first_line)

@app.on_event("startup")
async def startup_event():
    setup_logging()

    # Ensure config directory exists and file is created if missing
    config_dir = os.path.dirname(CONFIG_PATH)
    if config_dir and not os.path.exists(config_dir):
        os.makedirs(config_dir, exist_ok=True)

    if not os.path.exists(CONFIG_PATH):
        config.save_to_file(CONFIG_PATH)

    os.makedirs(config.media.download_dir, exist_ok=True)

    await detect_tool_versions()
    await init_redis()

@app.on_event("shutdown")
async def shutdown_event():
    await close_http_client()
    await close_redis()
