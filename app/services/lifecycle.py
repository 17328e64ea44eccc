import asyncio
import logging
from enum import Enum
from typing import List, Optional, Protocol
from app.core.errors import DeliveryFailure

logger = logging.getLogger(__name__)


class ClosableStream(Protocol):
    async def aclose(self) -> None: ...


class Terminable(Protocol):
    def terminate(self) -> None: ...

    @property
    def is_running(self) -> bool: ...


class GuardState(str, Enum):
    IDLE = "idle"
    ACTIVE = "active"
    DRAINING = "draining"
    CLOSED = "closed"


class PipelineResources:
    """Everything a single request opened that needs teardown"""

    def __init__(self):
        self.streams: List[ClosableStream] = []
        self.process: Optional[Terminable] = None
        self.closed = False

    def __len__(self) -> int:
        return len(self.streams) + (1 if self.process is not None else 0)

    def add_stream(self, stream: ClosableStream) -> None:
        """Register an upstream stream before it is opened"""
        if self.closed:
            raise DeliveryFailure("error.request_closed")
        self.streams.append(stream)

    def attach_process(self, process: Terminable) -> None:
        if self.closed:
            process.terminate()
            raise DeliveryFailure("error.request_closed")
        if self.process is not None:
            process.terminate()
            raise RuntimeError("A transform process is already attached")
        self.process = process


class LifecycleGuard:
    """
    Owns the PipelineResources of one request.

    Teardown is triggered by body exhaustion, client disconnect, the
    response background task, or any error. However many triggers fire,
    resources are released once: upstream streams first, then the
    transform process is killed without waiting for it to exit.
    """

    def __init__(self, label: str = "request"):
        self.label = label
        self.resources = PipelineResources()
        self._teardown: Optional[asyncio.Future] = None

    @property
    def state(self) -> GuardState:
        if self._teardown is not None:
            return GuardState.CLOSED if self._teardown.done() else GuardState.DRAINING
        if len(self.resources):
            return GuardState.ACTIVE
        return GuardState.IDLE

    async def teardown(self, reason: str = "completed") -> None:
        if self._teardown is None:
            logger.debug("[%s] teardown (%s)", self.label, reason)
            self.resources.closed = True
            self._teardown = asyncio.ensure_future(self._release())
        # Shielded so a cancelled caller (client disconnect) cannot cut it short
        await asyncio.shield(self._teardown)

    async def _release(self) -> None:
        streams, self.resources.streams = self.resources.streams, []
        for stream in streams:
            try:
                await stream.aclose()
            except Exception as e:
                logger.warning("[%s] failed to close upstream stream: %s", self.label, e)

        process, self.resources.process = self.resources.process, None
        if process is not None:
            try:
                process.terminate()
            except Exception as e:
                logger.warning("[%s] failed to terminate transform: %s", self.label, e)

    async def __aenter__(self) -> "LifecycleGuard":
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.teardown("error" if exc_type else "completed")
        return False
