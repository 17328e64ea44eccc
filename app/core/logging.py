from fastapi import Request
import logging
import uuid
from typing import Any
from rich.logging import RichHandler
from app.config.settings import config

logger = logging.getLogger(__name__)

def setup_logging() -> None:
    """Configure root logging once, using rich when enabled"""
    if config.logging.enable_rich:
        handler: logging.Handler = RichHandler(rich_tracebacks=True, show_path=False)
    else:
        handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(config.logging.format))

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(config.logging.level)

def log_with_context(
    request: Request,
    level: int,
    message: str,
    **kwargs: Any
) -> None:
    """
    Log with request context.
    Automatically includes request_id for tracing.
    """
    request_id = getattr(request.state, "request_id", "unknown")
    extra = {
        "request_id": request_id,
        **kwargs
    }
    logger.log(level, f"[{request_id}] {message}", extra=extra)

def log_info(request: Request, message: str, **kwargs: Any) -> None:
    log_with_context(request, logging.INFO, message, **kwargs)

def log_warning(request: Request, message: str, **kwargs: Any) -> None:
    log_with_context(request, logging.WARNING, message, **kwargs)

def log_error(request: Request, message: str, **kwargs: Any) -> None:
    log_with_context(request, logging.ERROR, message, **kwargs)

def log_debug(request: Request, message: str, **kwargs: Any) -> None:
    log_with_context(request, logging.DEBUG, message, **kwargs)

async def assign_request_id(request: Request) -> str:
    """Route dependency tagging the request for log correlation"""
    request_id = uuid.uuid4().hex[:8]
    request.state.request_id = request_id
    return request_id
