"""HLS session lifecycle management."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Literal

import asyncio
import contextlib
import logging
import math
import os
import pathlib
import re
import shutil
import threading
import time
import uuid

from config import TranscodeSettings
from ffmpeg_command import (
    PLAYLIST_NAME,
    SEG_PREFIX,
    SEG_SUFFIX,
    build_hls_ffmpeg_cmd,
    resolve_quality,
)
from ffmpeg_process import ProcessHandle, Spawner, spawn_ffmpeg
from util import safe_child_path


log = logging.getLogger(__name__)

StartStatus = Literal["ok", "invalid", "not_found", "spawn_failed", "timeout", "error"]
SeekStatus = Literal["ok", "invalid", "not_found", "busy", "spawn_failed", "timeout", "error"]

Clock = Callable[[], float]
Sleep = Callable[[float], Awaitable[None]]

# Segment entry in a media playlist: a URI line (not a tag) naming a .ts file
_SEGMENT_LINE_RE = re.compile(rf"^[^#\s].*{re.escape(SEG_SUFFIX)}\s*$", re.MULTILINE)
_SEGMENT_NAME_RE = re.compile(rf"^{re.escape(SEG_PREFIX)}\d+{re.escape(SEG_SUFFIX)}$")


@dataclass(slots=True)
class Session:
    id: str
    source_path: str
    output_dir: pathlib.Path
    quality: str
    audio_track: int
    start_offset: float
    created: float
    last_access: float
    process: ProcessHandle | None = None
    busy: bool = False  # start or seek in flight
    removed: bool = False

    @property
    def playlist_path(self) -> pathlib.Path:
        return self.output_dir / PLAYLIST_NAME


@dataclass(slots=True)
class StartResult:
    status: StartStatus
    session: Session | None = None
    error: str = ""


@dataclass(slots=True)
class SeekResult:
    status: SeekStatus
    position: float = 0.0
    error: str = ""


# ===========================================================================
# Registry
# ===========================================================================


class SessionRegistry:
    """Authoritative table of live sessions.

    Map mutations happen under one lock per registry and the lock is never
    held across an await. remove() is the only path that stops a session's
    process and deletes its directory.
    """

    def __init__(
        self,
        settings: TranscodeSettings,
        *,
        hw_available: bool = False,
        spawn: Spawner = spawn_ffmpeg,
        clock: Clock = time.monotonic,
        sleep: Sleep = asyncio.sleep,
    ):
        self.settings = settings
        self.hw_available = hw_available
        self.spawn = spawn
        self.clock = clock
        self.sleep = sleep
        self._sessions: dict[str, Session] = {}
        self._lock = threading.Lock()

    @property
    def base_dir(self) -> pathlib.Path:
        return self.settings.transcode_dir

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        with self._lock:
            return session_id in self._sessions

    def ids(self) -> list[str]:
        with self._lock:
            return list(self._sessions)

    def create(
        self,
        source_path: str,
        quality: str,
        audio_track: int = 0,
        start_offset: float = 0.0,
        *,
        busy: bool = False,
    ) -> Session:
        """Create and register a session with a fresh output directory.

        Raises OSError if the directory cannot be created.
        """
        session_id = uuid.uuid4().hex
        output_dir = self.base_dir / session_id
        output_dir.mkdir(parents=True, exist_ok=False)
        now = self.clock()
        session = Session(
            id=session_id,
            source_path=source_path,
            output_dir=output_dir,
            quality=quality,
            audio_track=audio_track,
            start_offset=start_offset,
            created=now,
            last_access=now,
            busy=busy,
        )
        with self._lock:
            self._sessions[session_id] = session
        return session

    def get(self, session_id: str) -> Session | None:
        with self._lock:
            return self._sessions.get(session_id)

    def touch(self, session_id: str) -> bool:
        """Refresh last access (never moves backwards). Returns False if unknown."""
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return False
            session.last_access = max(session.last_access, self.clock())
            return True

    def expired(self, timeout_sec: float) -> list[str]:
        """Ids of sessions untouched for longer than timeout_sec."""
        now = self.clock()
        with self._lock:
            return [
                sid for sid, s in self._sessions.items() if now - s.last_access > timeout_sec
            ]

    def claim(self, session_id: str) -> Session | None | Literal[False]:
        """Claim a session for a lifecycle operation. False if already claimed."""
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return None
            if session.busy:
                return False
            session.busy = True
            return session

    def attach_process(self, session: Session, process: ProcessHandle) -> bool:
        """Store the process on the session unless it was removed meanwhile."""
        with self._lock:
            if session.removed:
                return False
            session.process = process
            return True

    async def remove(self, session_id: str) -> bool:
        """Stop the process, delete the directory, drop the entry.

        Returns False (and does nothing) if the session is already gone.
        """
        with self._lock:
            session = self._sessions.pop(session_id, None)
            if session is None:
                return False
            session.removed = True
            process, session.process = session.process, None
        if process is not None:
            await process.stop(self.settings.stop_timeout_secs)
        shutil.rmtree(session.output_dir, ignore_errors=True)
        log.info(
            "HLS session %s cleaned up after %.0fs", session_id, self.clock() - session.created
        )
        return True

    async def shutdown(self) -> None:
        """Remove every session (kills all ffmpeg processes)."""
        for session_id in self.ids():
            await self.remove(session_id)


# ===========================================================================
# Readiness
# ===========================================================================


def playlist_ready(playlist_path: pathlib.Path, require_segment: bool = True) -> bool:
    """Check that the manifest exists and (optionally) lists a segment."""
    try:
        content = playlist_path.read_text()
    except OSError:
        return False
    if not require_segment:
        return True
    return _SEGMENT_LINE_RE.search(content) is not None


async def wait_for_playlist(
    playlist_path: pathlib.Path,
    *,
    attempts: int,
    poll_interval_sec: float,
    require_segment: bool = True,
    process: ProcessHandle | None = None,
    sleep: Sleep = asyncio.sleep,
) -> bool:
    """Poll for a playable manifest, at most `attempts` times."""
    for attempt in range(attempts):
        if playlist_ready(playlist_path, require_segment):
            return True
        if process is not None and process.returncode is not None:
            # Process gone: whatever it wrote is all there will be
            return playlist_ready(playlist_path, require_segment)
        if attempt < attempts - 1:
            await sleep(poll_interval_sec)
    return False


def _attempts_for(timeout_sec: float, poll_interval_sec: float) -> int:
    if poll_interval_sec <= 0:
        return 1
    return max(1, math.ceil(timeout_sec / poll_interval_sec))


def _clear_output_dir(output_dir: pathlib.Path) -> int:
    """Delete manifest and segment files, keeping the directory itself."""
    removed = 0
    with contextlib.suppress(FileNotFoundError):
        for path in output_dir.iterdir():
            if path.is_file():
                path.unlink(missing_ok=True)
                removed += 1
    return removed


def _build_cmd(registry: SessionRegistry, session: Session, start_offset: float) -> list[str]:
    settings = registry.settings
    return build_hls_ffmpeg_cmd(
        session.source_path,
        session.output_dir,
        quality=session.quality,
        audio_track=session.audio_track,
        start_offset=start_offset,
        hw_available=registry.hw_available,
        segment_duration=settings.segment_secs,
        ffmpeg_path=settings.ffmpeg_path,
        hw_device=settings.hw_device,
    )


# ===========================================================================
# Session Start/Stop
# ===========================================================================


async def start_session(
    registry: SessionRegistry,
    source_path: str,
    quality: str | None = None,
    audio_track: int = 0,
    start_offset: float = 0.0,
) -> StartResult:
    """Start transcoding a local file and wait until it is playable."""
    if not source_path:
        return StartResult("invalid", error="filePath is required")
    if audio_track < 0 or start_offset < 0 or not math.isfinite(start_offset):
        return StartResult("invalid", error="audioTrack and startTime must be non-negative numbers")
    if not os.path.isfile(source_path):
        log.error("HLS: File not found: %s", source_path)
        return StartResult("not_found", error="Media file not found")

    quality = resolve_quality(quality)
    try:
        # Claimed until ready so a seek cannot race the initial spawn
        session = registry.create(source_path, quality, audio_track, start_offset, busy=True)
    except OSError as e:
        log.error("Failed to create HLS output directory: %s", e)
        return StartResult("error", error="Failed to create session")
    log.info(
        "HLS: Starting session %s for %s (quality=%s audio=%d start=%.1fs)",
        session.id,
        pathlib.Path(source_path).name,
        quality,
        audio_track,
        start_offset,
    )
    cmd = _build_cmd(registry, session, start_offset)
    log.debug("HLS: %s", " ".join(cmd))
    try:
        process = await registry.spawn(cmd, session.id)
    except OSError as e:
        log.error("HLS: ffmpeg spawn failed for session %s: %s", session.id, e)
        await registry.remove(session.id)
        return StartResult("spawn_failed", error="Failed to launch transcoder")

    if not registry.attach_process(session, process):
        await process.stop(registry.settings.stop_timeout_secs)
        shutil.rmtree(session.output_dir, ignore_errors=True)
        return StartResult("not_found", error="Session stopped during start")

    settings = registry.settings
    ready = await wait_for_playlist(
        session.playlist_path,
        attempts=_attempts_for(settings.ready_timeout_secs, settings.ready_poll_secs),
        poll_interval_sec=settings.ready_poll_secs,
        process=process,
        sleep=registry.sleep,
    )
    if session.removed:
        return StartResult("not_found", error="Session stopped during start")
    if not ready:
        log.error(
            "HLS: Timeout waiting for playlist in session %s (exit %s): %s",
            session.id,
            process.returncode,
            process.stderr_tail() or "no output",
        )
        await registry.remove(session.id)
        return StartResult("timeout", error="Transcoding failed to start")

    session.busy = False
    registry.touch(session.id)
    log.info("HLS: Session %s ready", session.id)
    return StartResult("ok", session=session)


async def stop_session(registry: SessionRegistry, session_id: str) -> bool:
    """Explicit teardown. Unknown ids are a no-op."""
    return await registry.remove(session_id)


# ===========================================================================
# Seek
# ===========================================================================


async def seek_session(
    registry: SessionRegistry,
    session_id: str,
    position: float,
) -> SeekResult:
    """Restart the session's ffmpeg at a new offset.

    The old process is fully stopped and its output purged before the new
    one is spawned, so two writers never share the directory.
    """
    if position < 0 or not math.isfinite(position):
        return SeekResult("invalid", position, "position must be a non-negative number")
    claimed = registry.claim(session_id)
    if claimed is None:
        return SeekResult("not_found", position, "Session not found")
    if claimed is False:
        log.info("HLS: Rejecting seek for busy session %s", session_id)
        return SeekResult("busy", position, "Session is busy")
    session = claimed
    settings = registry.settings
    try:
        log.info("HLS: Seeking session %s to %.1fs", session_id, position)
        registry.touch(session_id)
        old, session.process = session.process, None
        if old is not None:
            await old.stop(settings.stop_timeout_secs)
        if session.removed:
            return SeekResult("not_found", position, "Session stopped during seek")

        purged = _clear_output_dir(session.output_dir)
        log.debug("HLS: Purged %d files from %s", purged, session.output_dir)

        cmd = _build_cmd(registry, session, position)
        try:
            process = await registry.spawn(cmd, session_id)
        except OSError as e:
            log.error("HLS: ffmpeg respawn failed for session %s: %s", session_id, e)
            return SeekResult("spawn_failed", position, "Failed to launch transcoder")

        if not registry.attach_process(session, process):
            await process.stop(settings.stop_timeout_secs)
            shutil.rmtree(session.output_dir, ignore_errors=True)
            return SeekResult("not_found", position, "Session stopped during seek")
        session.start_offset = position
        registry.touch(session_id)

        ready = await wait_for_playlist(
            session.playlist_path,
            attempts=settings.seek_ready_attempts,
            poll_interval_sec=settings.ready_poll_secs,
            require_segment=False,
            process=process,
            sleep=registry.sleep,
        )
        if session.removed:
            return SeekResult("not_found", position, "Session stopped during seek")
        if not ready:
            log.warning("HLS: Seek in session %s not ready yet", session_id)
            return SeekResult("timeout", position, "Seek timed out waiting for playlist")
        return SeekResult("ok", position)
    finally:
        session.busy = False


# ===========================================================================
# Manifest/Segment Lookup
# ===========================================================================


def resolve_manifest(registry: SessionRegistry, session_id: str) -> pathlib.Path | None:
    """Path of the session's manifest, or None if unknown or not written yet."""
    if not registry.touch(session_id):
        return None
    session = registry.get(session_id)
    if session is None:
        return None
    if not session.playlist_path.is_file():
        return None
    return session.playlist_path


def resolve_segment(
    registry: SessionRegistry,
    session_id: str,
    filename: str,
) -> pathlib.Path | None:
    """Path of one segment, or None if unknown session, bad name, or missing."""
    if not registry.touch(session_id):
        return None
    session = registry.get(session_id)
    if session is None:
        return None
    if not _SEGMENT_NAME_RE.match(filename):
        return None
    path = safe_child_path(session.output_dir, filename)
    if path is None or not path.is_file():
        return None
    return path


# ===========================================================================
# Idle Reaper
# ===========================================================================


class IdleReaper:
    """Periodically removes sessions nobody has touched recently."""

    def __init__(
        self,
        registry: SessionRegistry,
        *,
        interval_sec: float | None = None,
        timeout_sec: float | None = None,
    ):
        self.registry = registry
        self.interval_sec = (
            interval_sec if interval_sec is not None else registry.settings.reap_interval_secs
        )
        self.timeout_sec = (
            timeout_sec if timeout_sec is not None else registry.settings.idle_timeout_secs
        )
        self._task: asyncio.Task[None] | None = None

    async def sweep(self) -> list[str]:
        reaped = []
        for session_id in self.registry.expired(self.timeout_sec):
            if await self.registry.remove(session_id):
                log.info("Reaped idle HLS session %s", session_id)
                reaped.append(session_id)
        return reaped

    async def _run(self) -> None:
        while True:
            await self.registry.sleep(self.interval_sec)
            try:
                await self.sweep()
            except Exception:
                log.exception("Idle session sweep failed")

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
