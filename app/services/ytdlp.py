import asyncio
import logging
import time
from typing import List, NamedTuple
from app.config.settings import config

logger = logging.getLogger(__name__)

class CompletedProcess(NamedTuple):
    """Exit status and captured output of a finished yt-dlp/ffmpeg probe"""
    returncode: int
    stdout: bytes
    stderr: bytes

    @property
    def stdout_text(self) -> str:
        return self.stdout.decode(errors="ignore").strip()

    @property
    def stderr_text(self) -> str:
        return self.stderr.decode(errors="ignore").strip()

    @property
    def first_line(self) -> str:
        lines = self.stdout_text.splitlines()
        return lines[0] if lines else ""

class SubprocessExecutor:
    """Run short-lived helper processes to completion"""

    @staticmethod
    async def run(cmd: List[str], timeout: float) -> CompletedProcess:
        """
        Run cmd and collect its output.

        The child is killed and reaped on timeout and on cancellation of
        the awaiting request, so an abandoned extraction never outlives it.
        OSError (binary missing) and asyncio.TimeoutError propagate.
        """
        started = time.monotonic()
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE
        )

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except BaseException:
            if process.returncode is None:
                process.kill()
                await asyncio.shield(process.wait())
            logger.debug("%s killed after %.1fs", cmd[0], time.monotonic() - started)
            raise

        logger.debug("%s exited %s in %.1fs", cmd[0], process.returncode, time.monotonic() - started)
        return CompletedProcess(process.returncode, stdout, stderr)

class YTDLPCommandBuilder:
    """Build yt-dlp commands"""

    @staticmethod
    def build_info_command(url: str) -> List[str]:
        """Build command for listing the variants of one item"""
        cmd = [
            config.ytdlp.binary,
            '--dump-json',
            '--no-playlist',
            '--no-warnings',
            '--socket-timeout', str(config.ytdlp.socket_timeout),
            '--retries', str(config.ytdlp.retries),
        ]

        if not config.ytdlp.enable_live_streams:
            cmd.extend(['--match-filter', '!is_live'])

        if config.ytdlp.js_runtime:
            cmd.extend(['--js-runtimes', config.ytdlp.js_runtime])

        cmd.append(url)

        return cmd

    @staticmethod
    def build_version_command() -> List[str]:
        return [config.ytdlp.binary, '--version']
