import asyncio
import logging
from abc import ABC, abstractmethod
from collections import deque
from enum import Enum
from typing import AsyncIterator, Deque, List, Optional, Protocol, Sequence
from app.core.errors import DeliveryFailure

logger = logging.getLogger(__name__)

STDERR_MAX_LINES = 50


class TransformKind(str, Enum):
    MUX = "mux"                        # video + audio elementary streams, codecs copied
    AUDIO_REENCODE = "audio_reencode"  # one audio stream re-encoded to mp3

    @property
    def input_count(self) -> int:
        return 2 if self is TransformKind.MUX else 1


class InputChannel(Protocol):
    """Writable side of one transform input"""

    async def write(self, data: bytes) -> None: ...

    def close(self) -> None: ...


class TransformProcess(ABC):
    """
    Opaque byte transformer: N input channels, one output channel and a
    diagnostic channel that is only ever logged.

    Subclasses provide the channels and the kill switch; feeding inputs,
    reading output and failure propagation live here.
    """

    def __init__(self, kind: TransformKind, read_size: int = 64 * 1024):
        self.kind = kind
        self.read_size = read_size
        self.feed_error: Optional[BaseException] = None
        self.stderr_lines: Deque[str] = deque(maxlen=STDERR_MAX_LINES)
        self._feeders: List[asyncio.Task] = []
        self._terminated = False

    @property
    @abstractmethod
    def inputs(self) -> Sequence[InputChannel]:
        ...

    @abstractmethod
    async def read(self, size: int) -> bytes:
        """Read from the output channel; b'' at EOF"""

    @abstractmethod
    async def wait(self) -> Optional[int]:
        """Wait for exit and return the exit code"""

    @abstractmethod
    def _kill(self) -> None:
        ...

    @property
    @abstractmethod
    def is_running(self) -> bool:
        ...

    @property
    def terminated(self) -> bool:
        return self._terminated

    def feed(self, channel: int, source: AsyncIterator[bytes]) -> asyncio.Task:
        """Copy source into an input channel in the background"""
        task = asyncio.create_task(self._pump(channel, source))
        self._feeders.append(task)
        return task

    async def _pump(self, channel: int, source: AsyncIterator[bytes]) -> None:
        pipe = self.inputs[channel]
        try:
            async for chunk in source:
                try:
                    await pipe.write(chunk)
                except (BrokenPipeError, ConnectionResetError) as e:
                    # The process closed its input; its exit status says why
                    logger.debug("%s input %d closed by process: %s", self.kind.value, channel, e)
                    return
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if not self._terminated:
                logger.warning("%s input %d failed: %s", self.kind.value, channel, e)
                self.feed_error = e
                self.terminate()
        finally:
            pipe.close()

    async def iter_output(self) -> AsyncIterator[bytes]:
        """Yield transformed bytes; raise DeliveryFailure if anything broke."""
        while True:
            chunk = await self.read(self.read_size)
            if not chunk:
                break
            yield chunk

        if self.feed_error is not None:
            raise DeliveryFailure("error.upstream_failed", reason=str(self.feed_error))
        if self._terminated:
            raise DeliveryFailure("error.request_closed")

        returncode = await self.wait()
        if returncode != 0:
            error_summary = '\n'.join(self.stderr_lines)
            raise DeliveryFailure("error.transform_failed", reason=error_summary[:200] or f"exit {returncode}")

    def terminate(self) -> None:
        """Kill immediately; never raises, never waits."""
        if self._terminated:
            return
        self._terminated = True
        for task in self._feeders:
            task.cancel()
        try:
            self._kill()
        except ProcessLookupError:
            pass
        except Exception as e:
            logger.warning("Failed to kill %s transform: %s", self.kind.value, e)
