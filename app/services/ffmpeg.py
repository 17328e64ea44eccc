import asyncio
import logging
import os
from contextlib import suppress
from typing import Callable, List, Optional, Sequence
from app.config.settings import config
from app.services.transform import InputChannel, TransformKind, TransformProcess

logger = logging.getLogger(__name__)

CommandFactory = Callable[[Sequence[int]], List[str]]


class FFmpegCommandBuilder:
    """Build ffmpeg commands that read from inherited pipe fds"""

    @staticmethod
    def build_mux_command(video_fd: int, audio_fd: int) -> List[str]:
        """Interleave two elementary streams without re-encoding"""
        cmd = [
            config.ffmpeg.binary,
            '-hide_banner',
            '-loglevel', config.ffmpeg.loglevel,
            '-i', f'pipe:{video_fd}',
            '-i', f'pipe:{audio_fd}',
            '-map', '0:v:0',
            '-map', '1:a:0',
            '-c', 'copy',
            '-f', config.ffmpeg.mux_format,
        ]
        # mp4 on a pipe has to be fragmented
        if config.ffmpeg.mux_format == 'mp4' and config.ffmpeg.movflags:
            cmd.extend(['-movflags', config.ffmpeg.movflags])
        cmd.append('pipe:1')
        return cmd

    @staticmethod
    def build_audio_reencode_command(audio_fd: int) -> List[str]:
        """Re-encode a single audio stream to mp3"""
        return [
            config.ffmpeg.binary,
            '-hide_banner',
            '-loglevel', config.ffmpeg.loglevel,
            '-i', f'pipe:{audio_fd}',
            '-vn',
            '-c:a', 'libmp3lame',
            '-b:a', config.ffmpeg.mp3_bitrate,
            '-f', 'mp3',
            'pipe:1',
        ]

    @staticmethod
    def for_kind(kind: TransformKind) -> CommandFactory:
        if kind is TransformKind.MUX:
            return lambda fds: FFmpegCommandBuilder.build_mux_command(fds[0], fds[1])
        return lambda fds: FFmpegCommandBuilder.build_audio_reencode_command(fds[0])

    @staticmethod
    def build_version_command() -> List[str]:
        return [config.ffmpeg.binary, '-version']


class _PipeWriterProtocol(asyncio.Protocol):
    """Flow control for a write pipe transport"""

    def __init__(self):
        self._writable = asyncio.Event()
        self._writable.set()
        self.lost = False

    def pause_writing(self):
        self._writable.clear()

    def resume_writing(self):
        self._writable.set()

    def connection_lost(self, exc):
        self.lost = True
        self._writable.set()

    async def drain(self):
        await self._writable.wait()
        if self.lost:
            raise BrokenPipeError("transform input closed")


class PipeInput(InputChannel):
    """Non-blocking writer for the parent end of an input pipe"""

    def __init__(self, transport: asyncio.WriteTransport, protocol: _PipeWriterProtocol):
        self._transport = transport
        self._protocol = protocol

    @classmethod
    async def connect(cls, fd: int) -> "PipeInput":
        loop = asyncio.get_running_loop()
        pipe = os.fdopen(fd, 'wb', buffering=0)
        try:
            transport, protocol = await loop.connect_write_pipe(_PipeWriterProtocol, pipe)
        except Exception:
            pipe.close()
            raise
        return cls(transport, protocol)

    async def write(self, data: bytes) -> None:
        if self._protocol.lost or self._transport.is_closing():
            raise BrokenPipeError("transform input closed")
        self._transport.write(data)
        await self._protocol.drain()

    def close(self) -> None:
        if not self._transport.is_closing():
            self._transport.close()


class FFmpegTransform(TransformProcess):
    """
    An ffmpeg child process.

    Each input channel is an OS pipe whose read end is inherited by the
    child (pass_fds) and named on its command line as pipe:<fd>. Output
    is the child's stdout; stderr is drained into a bounded buffer and
    logged.
    """

    def __init__(
        self,
        kind: TransformKind,
        process: asyncio.subprocess.Process,
        inputs: List[PipeInput],
        read_size: int = 64 * 1024
    ):
        super().__init__(kind, read_size)
        self._process = process
        self._inputs = inputs
        self._stderr_task = asyncio.create_task(self._drain_stderr())

    @classmethod
    async def spawn(
        cls,
        kind: TransformKind,
        command_factory: Optional[CommandFactory] = None,
        read_size: Optional[int] = None
    ) -> "FFmpegTransform":
        command_factory = command_factory or FFmpegCommandBuilder.for_kind(kind)
        pipes = [os.pipe() for _ in range(kind.input_count)]
        read_fds = [r for r, _ in pipes]
        cmd = command_factory(read_fds)

        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                pass_fds=read_fds
            )
        except Exception:
            for r, w in pipes:
                os.close(r)
                os.close(w)
            raise

        # The child holds its own copies now
        for r in read_fds:
            os.close(r)

        inputs: List[PipeInput] = []
        try:
            for _, w in pipes:
                inputs.append(await PipeInput.connect(w))
        except Exception:
            process.kill()
            for pipe in inputs:
                pipe.close()
            # connect() closes the fd it failed on
            for _, w in pipes[len(inputs) + 1:]:
                with suppress(OSError):
                    os.close(w)
            raise

        logger.debug("Spawned %s (pid %s): %s", kind.value, process.pid, " ".join(cmd))
        return cls(kind, process, inputs, read_size or config.media.read_chunk_size)

    @property
    def inputs(self) -> Sequence[InputChannel]:
        return self._inputs

    @property
    def is_running(self) -> bool:
        return not self.terminated and self._process.returncode is None

    async def read(self, size: int) -> bytes:
        return await self._process.stdout.read(size)

    async def wait(self) -> Optional[int]:
        try:
            return await asyncio.wait_for(self._process.wait(), timeout=config.ffmpeg.exit_timeout)
        except asyncio.TimeoutError:
            self.terminate()
            return self._process.returncode
        finally:
            await self._finish_stderr()

    def _kill(self) -> None:
        self._stderr_task.cancel()
        for pipe in self._inputs:
            pipe.close()
        if self._process.returncode is None:
            self._process.kill()

    async def _drain_stderr(self) -> None:
        """Drain stderr to prevent buffer deadlock"""
        try:
            while True:
                line = await self._process.stderr.readline()
                if not line:
                    break
                decoded = line.decode(errors='replace').strip()
                if decoded:
                    self.stderr_lines.append(decoded)
                    logger.warning("ffmpeg[%s]: %s", self._process.pid, decoded)
        except (ValueError, ConnectionError) as e:
            logger.debug("ffmpeg[%s] stderr drain stopped: %s", self._process.pid, e)

    async def _finish_stderr(self) -> None:
        with suppress(asyncio.CancelledError, asyncio.TimeoutError):
            await asyncio.wait_for(self._stderr_task, timeout=1.0)
