"""FFmpeg subprocess ownership: spawn, observe, stop."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Any, Protocol

import asyncio
import collections
import contextlib
import logging


log = logging.getLogger(__name__)

_STDERR_TAIL_LINES = 20
_STOP_TIMEOUT_SEC = 5.0

_background_tasks: set[asyncio.Task[None]] = set()


class ProcessHandle(Protocol):
    """What the session manager needs from a running transcoder."""

    @property
    def returncode(self) -> int | None: ...

    async def wait(self) -> int: ...

    async def stop(self, timeout_sec: float = _STOP_TIMEOUT_SEC) -> None: ...

    def stderr_tail(self) -> str: ...


Spawner = Callable[[list[str], str], Awaitable[ProcessHandle]]


def _spawn_background_task(coro: Any) -> asyncio.Task[None]:
    task = asyncio.create_task(coro)
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)
    return task


class FfmpegProcess:
    """Owned handle to one ffmpeg subprocess.

    A background task drains stderr (keeping the last lines for diagnostics)
    and resolves an exit future once the process is gone. Exits caused by
    stop() are expected; a zero exit is a normal finish; anything else is
    logged as an anomaly.
    """

    def __init__(self, process: asyncio.subprocess.Process, label: str):
        self._process = process
        self.label = label
        self._stderr: collections.deque[str] = collections.deque(maxlen=_STDERR_TAIL_LINES)
        self._stop_requested = False
        self._exited: asyncio.Future[int] = asyncio.get_running_loop().create_future()
        _spawn_background_task(self._watch())

    @classmethod
    async def spawn(
        cls,
        cmd: list[str],
        label: str,
        *,
        capture_stdout: bool = False,
    ) -> FfmpegProcess:
        """Start ffmpeg. Raises OSError if the binary cannot be launched."""
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE if capture_stdout else asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE,
        )
        log.info("Started ffmpeg pid=%s for %s", process.pid, label)
        return cls(process, label)

    @property
    def returncode(self) -> int | None:
        return self._process.returncode

    @property
    def stdout(self) -> asyncio.StreamReader | None:
        return self._process.stdout

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested

    def stderr_tail(self) -> str:
        return "\n".join(self._stderr)

    async def _watch(self) -> None:
        stderr = self._process.stderr
        if stderr is not None:
            while True:
                line = await stderr.readline()
                if not line:
                    break
                text = line.decode(errors="replace").rstrip()
                self._stderr.append(text)
                is_fatal = "fatal" in text.lower() or "aborting" in text.lower()
                level = logging.WARNING if is_fatal else logging.DEBUG
                log.log(level, "ffmpeg:%s %s", self.label, text)
        code = await self._process.wait()
        self._log_exit(code)
        if not self._exited.done():
            self._exited.set_result(code)

    def _log_exit(self, code: int) -> None:
        if self._stop_requested:
            log.debug("ffmpeg:%s stopped (exit %s)", self.label, code)
        elif code == 0:
            log.info("ffmpeg:%s finished", self.label)
        else:
            log.warning(
                "ffmpeg:%s exited with code %s: %s",
                self.label,
                code,
                self.stderr_tail() or "no output",
            )

    async def wait(self) -> int:
        """Wait for exit and for stderr to be fully drained."""
        return await asyncio.shield(self._exited)

    async def stop(self, timeout_sec: float = _STOP_TIMEOUT_SEC) -> None:
        """Terminate gracefully, escalating to kill. Safe to call repeatedly."""
        if self._exited.done():
            return
        # Only a signal actually delivered makes the exit an expected one
        if self._process.returncode is None:
            try:
                self._process.terminate()
            except ProcessLookupError:
                pass
            else:
                self._stop_requested = True
        try:
            await asyncio.wait_for(self.wait(), timeout=timeout_sec)
        except TimeoutError:
            log.warning("ffmpeg:%s ignored SIGTERM, killing", self.label)
            with contextlib.suppress(ProcessLookupError):
                self._process.kill()
            await self.wait()


async def spawn_ffmpeg(cmd: list[str], label: str) -> ProcessHandle:
    """Default spawner for HLS sessions."""
    return await FfmpegProcess.spawn(cmd, label)
