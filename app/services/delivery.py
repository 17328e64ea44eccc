import logging
import os
from dataclasses import dataclass
from typing import AsyncIterator, Dict, Optional
from urllib.parse import quote

import aiofiles
import aiofiles.os
from fastapi.responses import StreamingResponse
from starlette.background import BackgroundTask

from app.core.errors import DeliveryFailure, MediaError
from app.models.response import DiskDelivery
from app.services.lifecycle import LifecycleGuard
from app.services.range import RangeWindow

logger = logging.getLogger(__name__)


def content_disposition(filename: str, attachment: bool) -> str:
    """ASCII filename for old clients plus the RFC 5987 UTF-8 form"""
    disposition = "attachment" if attachment else "inline"
    fallback = filename.encode("ascii", "ignore").decode().replace('"', "").replace("\\", "").strip()
    fallback = fallback or "download"
    return f"{disposition}; filename=\"{fallback}\"; filename*=UTF-8''{quote(filename)}"


@dataclass(frozen=True)
class DeliveryHeaders:
    filename: str
    content_type: str
    attachment: bool = False
    total_length: Optional[int] = None
    window: Optional[RangeWindow] = None

    @property
    def status_code(self) -> int:
        return 206 if self.window is not None and self.total_length else 200

    def build(self) -> Dict[str, str]:
        headers = {
            "Content-Disposition": content_disposition(self.filename, self.attachment),
            "Content-Type": self.content_type,
            "Cache-Control": "no-store",
            "X-Content-Type-Options": "nosniff",
            "Accept-Ranges": "bytes" if self.total_length else "none",
        }
        if self.status_code == 206:
            headers["Content-Range"] = self.window.content_range(self.total_length)
            headers["Content-Length"] = str(self.window.length)
        elif self.total_length:
            headers["Content-Length"] = str(self.total_length)
        # Unknown length: no Content-Length, chunked transfer
        return headers


class DeliverySink:
    """Move pipeline output into an HTTP response or a file"""

    @staticmethod
    def to_response(
        output: AsyncIterator[bytes],
        headers: DeliveryHeaders,
        guard: LifecycleGuard
    ) -> StreamingResponse:
        async def body():
            try:
                async for chunk in output:
                    yield chunk
            except MediaError as e:
                # Headers are committed; all we can do is abort the connection
                logger.error("[%s] delivery aborted: %s", guard.label, e)
                raise
            except Exception as e:
                logger.error("[%s] delivery aborted: %s", guard.label, e)
                raise DeliveryFailure("error.delivery_failed", reason=str(e)) from e
            finally:
                await guard.teardown("body finished")

        return StreamingResponse(
            body(),
            status_code=headers.status_code,
            media_type=headers.content_type,
            headers=headers.build(),
            background=BackgroundTask(guard.teardown, "response closed"),
        )

    @staticmethod
    async def to_file(output: AsyncIterator[bytes], directory: str, filename: str) -> DiskDelivery:
        os.makedirs(directory, exist_ok=True)
        path = os.path.join(directory, filename)

        written = 0
        try:
            async with aiofiles.open(path, "wb") as f:
                async for chunk in output:
                    await f.write(chunk)
                    written += len(chunk)
        except Exception as e:
            # Not resumable; the partial file stays and is reported
            logger.error("Disk delivery failed after %d bytes, partial file at %s: %s", written, path, e)
            raise DeliveryFailure("error.partial_file", path=path, size=written) from e

        stat = await aiofiles.os.stat(path)
        return DiskDelivery(filename=filename, path=path, size_bytes=stat.st_size)
