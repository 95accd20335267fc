"""Direct file streaming, progressive remux, and subtitle extraction."""

from __future__ import annotations

from collections.abc import AsyncIterator, Iterator
from dataclasses import dataclass
from typing import Literal

import asyncio
import contextlib
import logging
import os
import pathlib

from ffmpeg_command import build_remux_ffmpeg_cmd, build_subtitle_ffmpeg_cmd
from ffmpeg_process import FfmpegProcess


log = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024
_SUBTITLE_TIMEOUT_SEC = 60.0

# ffmpeg diagnostics meaning "that subtitle stream does not exist"
_MISSING_STREAM_PHRASES = ("Stream map", "does not contain", "matches no streams")

SubtitleStatus = Literal["ok", "not_found", "error"]


class RangeNotSatisfiable(Exception):
    """Requested byte range lies outside the file."""

    def __init__(self, size: int):
        super().__init__(f"Range not satisfiable for size {size}")
        self.size = size


@dataclass(slots=True)
class SubtitleResult:
    status: SubtitleStatus
    content: str = ""
    error: str = ""


# ===========================================================================
# Direct Streaming
# ===========================================================================


def parse_range(range_header: str | None, size: int) -> tuple[int, int] | None:
    """Parse a single "bytes=" range into inclusive (start, end).

    Returns None when the whole file should be sent. For multi-range requests
    only the first range is honoured.
    """
    if not range_header or not range_header.strip().startswith("bytes="):
        return None
    first = range_header.split("=", 1)[1].split(",", 1)[0].strip()
    if "-" not in first:
        return None
    start_s, end_s = (part.strip() for part in first.split("-", 1))
    try:
        if start_s == "":
            if end_s == "":
                return None
            # Suffix range: last N bytes
            length = int(end_s)
            if length <= 0 or size == 0:
                raise RangeNotSatisfiable(size)
            return max(0, size - length), size - 1
        start = int(start_s)
        end = size - 1 if end_s == "" else int(end_s)
    except ValueError:
        return None
    if start < 0 or start >= size or end < start:
        raise RangeNotSatisfiable(size)
    return start, min(end, size - 1)


def iter_file_range(path: pathlib.Path, start: int, length: int) -> Iterator[bytes]:
    """Yield `length` bytes of a file starting at `start`."""
    with open(path, "rb") as f:
        f.seek(start)
        remaining = length
        while remaining > 0:
            data = f.read(min(CHUNK_SIZE, remaining))
            if not data:
                break
            remaining -= len(data)
            yield data


# ===========================================================================
# Progressive Remux
# ===========================================================================


async def open_remux(
    source_path: str,
    *,
    audio_track: int = 0,
    start_offset: float = 0.0,
    ffmpeg_path: str = "ffmpeg",
) -> FfmpegProcess:
    """Spawn ffmpeg writing fragmented MP4 to stdout. Raises OSError on spawn failure."""
    cmd = build_remux_ffmpeg_cmd(
        source_path,
        audio_track=audio_track,
        start_offset=start_offset,
        ffmpeg_path=ffmpeg_path,
    )
    log.info(
        "Transcoding: %s (start: %.1fs, audio track: %d)",
        source_path,
        start_offset,
        audio_track,
    )
    return await FfmpegProcess.spawn(cmd, f"remux:{pathlib.Path(source_path).name}", capture_stdout=True)


async def iter_process_stdout(process: FfmpegProcess) -> AsyncIterator[bytes]:
    """Relay stdout chunks; stops the process when the consumer goes away.

    Once output ends ffmpeg exits on its own and its exit code is logged as such.
    """
    drained = False
    try:
        stdout = process.stdout
        if stdout is not None:
            while chunk := await stdout.read(CHUNK_SIZE):
                yield chunk
            drained = True
    finally:
        if drained:
            await process.wait()
        else:
            await process.stop()


# ===========================================================================
# Subtitle Extraction
# ===========================================================================


async def extract_subtitle(
    source_path: str,
    stream_index: int,
    *,
    ffmpeg_path: str = "ffmpeg",
    timeout_sec: float = _SUBTITLE_TIMEOUT_SEC,
) -> SubtitleResult:
    """Extract one subtitle stream as WebVTT, buffered in memory."""
    if not source_path or not os.path.isfile(source_path):
        log.error("Media file not found: %s", source_path)
        return SubtitleResult("not_found", error="Media file not found")
    if stream_index < 0:
        return SubtitleResult("not_found", error="Subtitle stream not found in file")

    cmd = build_subtitle_ffmpeg_cmd(source_path, stream_index, ffmpeg_path=ffmpeg_path)
    log.info("Extracting subtitle - stream index: %d, file: %s", stream_index, source_path)
    try:
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        log.error("ffmpeg spawn error: %s", e)
        return SubtitleResult("error", error="Failed to run ffmpeg")

    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout_sec)
    except TimeoutError:
        with contextlib.suppress(ProcessLookupError):
            process.kill()
        await process.wait()
        log.error("Subtitle extraction timed out after %.0fs: %s", timeout_sec, source_path)
        return SubtitleResult("error", error="Subtitle extraction timed out")

    errors = stderr.decode(errors="replace")
    if process.returncode != 0:
        log.error("ffmpeg exited with code %s: %s", process.returncode, errors.strip()[-500:])
        if any(phrase in errors for phrase in _MISSING_STREAM_PHRASES):
            return SubtitleResult("not_found", error="Subtitle stream not found in file")
        return SubtitleResult("error", error="Failed to extract subtitle")

    content = stdout.decode("utf-8", errors="replace")
    if not content.strip():
        log.error("ffmpeg produced empty subtitle output for %s", source_path)
        return SubtitleResult("error", error="Empty subtitle output")
    log.info("Subtitle extracted successfully, length: %d", len(content))
    return SubtitleResult("ok", content=content)
