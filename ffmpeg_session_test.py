"""Tests for HLS session management."""

from __future__ import annotations

from pathlib import Path

import asyncio
import logging
import math

import pytest

from config import transcode_settings
from ffmpeg_session import (
    IdleReaper,
    SessionRegistry,
    playlist_ready,
    resolve_manifest,
    resolve_segment,
    seek_session,
    start_session,
    stop_session,
    wait_for_playlist,
)
from testing import FakeClock, FakeProcess, FakeSpawner, write_playlist


@pytest.fixture
def source(tmp_path: Path) -> str:
    path = tmp_path / "movie.mkv"
    path.write_bytes(b"not really a movie")
    return str(path)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def spawner() -> FakeSpawner:
    return FakeSpawner()


@pytest.fixture
def registry(tmp_path: Path, spawner: FakeSpawner, clock: FakeClock) -> SessionRegistry:
    settings = transcode_settings({"transcode_dir": str(tmp_path / "hls")})
    return SessionRegistry(settings, spawn=spawner, clock=clock, sleep=clock.sleep)


def _start(registry: SessionRegistry, source: str, **kwargs):
    return asyncio.run(start_session(registry, source, **kwargs))


# =============================================================================
# Registry
# =============================================================================


class TestRegistry:
    """Tests for SessionRegistry bookkeeping."""

    def test_create_makes_directory(self, registry, source, clock):
        session = registry.create(source, "original")
        assert session.output_dir.is_dir()
        assert session.output_dir.parent == registry.base_dir
        assert session.output_dir.name == session.id
        assert session.created == session.last_access == clock.now
        assert registry.get(session.id) is session
        assert session.id in registry
        assert len(registry) == 1

    def test_get_unknown(self, registry):
        assert registry.get("nope") is None

    def test_touch_moves_forward_only(self, registry, source, clock):
        session = registry.create(source, "original")
        clock.advance(30)
        assert registry.touch(session.id)
        assert session.last_access == clock.now
        clock.now -= 100
        registry.touch(session.id)
        assert session.last_access == clock.now + 100

    def test_touch_unknown(self, registry):
        assert registry.touch("nope") is False

    def test_remove_twice(self, registry, source, clock, caplog):
        session = registry.create(source, "original")
        (session.output_dir / "seg_00000.ts").write_bytes(b"x")
        clock.advance(42)

        with caplog.at_level(logging.INFO, logger="ffmpeg_session"):
            assert asyncio.run(registry.remove(session.id)) is True
        assert f"HLS session {session.id} cleaned up after 42s" in caplog.text
        assert asyncio.run(registry.remove(session.id)) is False
        assert not session.output_dir.exists()
        assert session.removed
        assert registry.get(session.id) is None

    def test_remove_stops_process_once(self, registry, source):
        session = registry.create(source, "original")
        process = FakeProcess([], session.id)
        assert registry.attach_process(session, process)

        asyncio.run(registry.remove(session.id))
        asyncio.run(registry.remove(session.id))
        assert process.stop_calls == 1
        assert session.process is None

    def test_attach_after_remove_refused(self, registry, source):
        session = registry.create(source, "original")
        asyncio.run(registry.remove(session.id))
        assert registry.attach_process(session, FakeProcess([], session.id)) is False

    def test_claim(self, registry, source):
        session = registry.create(source, "original")
        assert registry.claim(session.id) is session
        assert registry.claim(session.id) is False
        session.busy = False
        assert registry.claim("nope") is None

    def test_expired(self, registry, source, clock):
        old = registry.create(source, "original")
        clock.advance(200)
        fresh = registry.create(source, "original")
        clock.advance(150)
        assert registry.expired(300) == [old.id]
        assert fresh.id not in registry.expired(300)

    def test_shutdown_removes_everything(self, registry, source, spawner):
        for _ in range(3):
            assert _start(registry, source).status == "ok"

        asyncio.run(registry.shutdown())
        assert len(registry) == 0
        assert spawner.live() == []
        assert list(registry.base_dir.iterdir()) == []


# =============================================================================
# Readiness
# =============================================================================


class TestPlaylistReady:
    def test_missing(self, tmp_path):
        assert not playlist_ready(tmp_path / "playlist.m3u8")

    def test_header_only(self, tmp_path):
        write_playlist(tmp_path, 0)
        assert not playlist_ready(tmp_path / "playlist.m3u8")
        assert playlist_ready(tmp_path / "playlist.m3u8", require_segment=False)

    def test_with_segment(self, tmp_path):
        write_playlist(tmp_path, 1)
        assert playlist_ready(tmp_path / "playlist.m3u8")


class TestWaitForPlaylist:
    """Tests for wait_for_playlist."""

    def test_ready_after_a_few_polls(self, tmp_path):
        sleeps = []

        async def sleep(sec):
            sleeps.append(sec)
            if len(sleeps) == 3:
                write_playlist(tmp_path, 1)

        ready = asyncio.run(
            wait_for_playlist(
                tmp_path / "playlist.m3u8", attempts=100, poll_interval_sec=0.1, sleep=sleep
            )
        )
        assert ready
        assert sleeps == [0.1, 0.1, 0.1]

    def test_gives_up_after_attempts(self, tmp_path, clock):
        ready = asyncio.run(
            wait_for_playlist(
                tmp_path / "playlist.m3u8", attempts=5, poll_interval_sec=0.1, sleep=clock.sleep
            )
        )
        assert not ready
        assert len(clock.sleeps) == 4

    def test_stops_polling_when_process_exits(self, tmp_path, clock):
        process = FakeProcess([], "x")
        process.returncode = 1
        ready = asyncio.run(
            wait_for_playlist(
                tmp_path / "playlist.m3u8",
                attempts=100,
                poll_interval_sec=0.1,
                process=process,
                sleep=clock.sleep,
            )
        )
        assert not ready
        assert clock.sleeps == []

    def test_exited_process_with_output_is_ready(self, tmp_path, clock):
        write_playlist(tmp_path, 2)
        process = FakeProcess([], "x")
        process.returncode = 0
        assert asyncio.run(
            wait_for_playlist(
                tmp_path / "playlist.m3u8",
                attempts=1,
                poll_interval_sec=0.1,
                process=process,
                sleep=clock.sleep,
            )
        )


# =============================================================================
# Start / Stop
# =============================================================================


class TestStartSession:
    """Tests for start_session."""

    def test_start_original(self, registry, source, spawner):
        result = _start(registry, source)
        assert result.status == "ok"
        session = result.session
        assert session is not None
        assert registry.get(session.id) is session
        assert session.quality == "original"
        assert not session.busy
        assert session.playlist_path.is_file()
        assert session.process is spawner.processes[0]
        cmd = spawner.processes[0].cmd
        assert cmd[cmd.index("-i") + 1] == source
        assert cmd[-1] == str(session.playlist_path)

    def test_missing_file(self, registry, tmp_path, spawner):
        result = _start(registry, str(tmp_path / "nope.mkv"))
        assert result.status == "not_found"
        assert len(registry) == 0
        assert spawner.processes == []

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"audio_track": -1},
            {"start_offset": -5.0},
            {"start_offset": math.nan},
            {"start_offset": math.inf},
        ],
    )
    def test_invalid_params(self, registry, source, spawner, kwargs):
        assert _start(registry, source, **kwargs).status == "invalid"
        assert spawner.processes == []

    def test_empty_path(self, registry):
        assert _start(registry, "").status == "invalid"

    def test_unknown_quality_is_original(self, registry, source):
        result = _start(registry, source, quality="8k")
        assert result.session.quality == "original"

    def test_hardware_flag_reaches_command(self, registry, source, spawner):
        registry.hw_available = True
        _start(registry, source, quality="1080p", start_offset=60.0)
        cmd = spawner.processes[0].cmd
        assert "-hwaccel" in cmd
        assert cmd[cmd.index("-ss") + 1] == "60.0"

    def test_spawn_failure(self, registry, source, spawner):
        spawner.fail = True
        result = _start(registry, source)
        assert result.status == "spawn_failed"
        assert len(registry) == 0
        assert list(registry.base_dir.iterdir()) == []

    def test_readiness_timeout(self, registry, source, spawner, clock):
        spawner.write_playlist = False
        result = _start(registry, source)
        assert result.status == "timeout"
        assert len(registry) == 0
        assert list(registry.base_dir.iterdir()) == []
        assert spawner.processes[0].stop_calls == 1
        assert clock.sleeps
        assert math.isclose(sum(clock.sleeps), 10.0, abs_tol=0.11)

    def test_manifest_without_segment_is_not_ready(self, registry, source, spawner):
        spawner.segments = 0
        assert _start(registry, source).status == "timeout"

    def test_process_exits_without_output(self, registry, source, spawner, clock):
        spawner.write_playlist = False
        spawner.exit_code = 1
        assert _start(registry, source).status == "timeout"
        assert clock.sleeps == []

    def test_stop_during_start(self, registry, source, spawner):
        spawner.write_playlist = False

        async def sleep(sec):
            for session_id in registry.ids():
                await stop_session(registry, session_id)

        registry.sleep = sleep
        result = _start(registry, source)
        assert result.status == "not_found"
        assert len(registry) == 0
        assert spawner.live() == []
        assert list(registry.base_dir.iterdir()) == []

    def test_sessions_isolated(self, registry, source):
        a = _start(registry, source).session
        b = _start(registry, source).session
        assert a.id != b.id
        assert a.output_dir != b.output_dir

        assert asyncio.run(stop_session(registry, a.id))
        assert not a.output_dir.exists()
        assert (b.output_dir / "seg_00000.ts").is_file()
        assert b.playlist_path.is_file()
        assert registry.get(b.id) is b


class TestStopSession:
    def test_unknown_is_noop(self, registry):
        assert asyncio.run(stop_session(registry, "does-not-exist")) is False

    def test_stop_twice(self, registry, source, spawner):
        session = _start(registry, source).session
        assert asyncio.run(stop_session(registry, session.id)) is True
        assert asyncio.run(stop_session(registry, session.id)) is False
        assert spawner.processes[0].stop_calls == 1
        assert not session.output_dir.exists()


# =============================================================================
# Seek
# =============================================================================


class TestSeekSession:
    """Tests for seek_session."""

    def test_seek_restarts_at_offset(self, registry, source, spawner, clock):
        session = _start(registry, source).session
        old = session.process
        (session.output_dir / "seg_00007.ts").write_bytes(b"stale")
        clock.advance(20)

        result = asyncio.run(seek_session(registry, session.id, 120))
        assert result.status == "ok"
        assert result.position == 120
        assert old.returncode is not None
        assert not (session.output_dir / "seg_00007.ts").exists()
        assert session.playlist_path.is_file()
        assert session.start_offset == 120
        assert session.last_access == clock.now
        assert not session.busy

        new = spawner.processes[-1]
        assert session.process is new
        assert new.cmd[new.cmd.index("-ss") + 1] == "120.0"
        assert new.cmd.index("-ss") < new.cmd.index("-i")

    def test_never_two_processes(self, registry, source, spawner):
        session = _start(registry, source).session
        for position in (10, 20, 30):
            assert asyncio.run(seek_session(registry, session.id, position)).status == "ok"
        assert spawner.live_at_spawn == [0, 0, 0, 0]
        assert spawner.live() == [session.process]

    def test_seek_needs_only_manifest(self, registry, source, spawner):
        session = _start(registry, source).session
        spawner.segments = 0
        assert asyncio.run(seek_session(registry, session.id, 50)).status == "ok"

    def test_unknown_session(self, registry):
        assert asyncio.run(seek_session(registry, "nope", 10)).status == "not_found"

    @pytest.mark.parametrize("position", [-1.0, math.nan, math.inf])
    def test_invalid_position(self, registry, source, spawner, position):
        session = _start(registry, source).session
        assert asyncio.run(seek_session(registry, session.id, position)).status == "invalid"
        assert len(spawner.processes) == 1

    def test_busy_rejected(self, registry, source, spawner):
        session = _start(registry, source).session
        session.busy = True
        result = asyncio.run(seek_session(registry, session.id, 10))
        assert result.status == "busy"
        assert len(spawner.processes) == 1
        assert session.process.returncode is None

    def test_concurrent_seek_rejected(self, registry, source, spawner):
        session = _start(registry, source).session
        spawner.write_playlist = False

        async def yielding_sleep(sec):
            await asyncio.sleep(0)

        registry.sleep = yielding_sleep

        async def run():
            first = asyncio.create_task(seek_session(registry, session.id, 10))
            await asyncio.sleep(0)
            second = await seek_session(registry, session.id, 20)
            return await first, second

        first, second = asyncio.run(run())
        assert second.status == "busy"
        assert first.status == "timeout"

    def test_stop_during_seek(self, registry, source, spawner):
        session = _start(registry, source).session
        spawner.write_playlist = False

        async def sleep(sec):
            await stop_session(registry, session.id)

        registry.sleep = sleep
        result = asyncio.run(seek_session(registry, session.id, 90))
        assert result.status == "not_found"
        assert spawner.live() == []
        assert len(spawner.processes) == 2
        assert not session.output_dir.exists()
        assert registry.get(session.id) is None
        assert session.process is None

    def test_timeout_keeps_session(self, registry, source, spawner, clock):
        session = _start(registry, source).session
        spawner.write_playlist = False
        clock.sleeps.clear()

        result = asyncio.run(seek_session(registry, session.id, 10))
        assert result.status == "timeout"
        assert registry.get(session.id) is session
        assert not session.busy
        assert session.process is spawner.processes[-1]
        assert len(clock.sleeps) == registry.settings.seek_ready_attempts - 1

    def test_spawn_failure(self, registry, source, spawner):
        session = _start(registry, source).session
        spawner.fail = True
        result = asyncio.run(seek_session(registry, session.id, 10))
        assert result.status == "spawn_failed"
        assert session.process is None
        assert not session.busy
        assert spawner.live() == []


# =============================================================================
# Manifest/Segment Lookup
# =============================================================================


class TestResolve:
    """Tests for resolve_manifest and resolve_segment."""

    def test_manifest(self, registry, source, clock):
        session = _start(registry, source).session
        clock.advance(5)
        assert resolve_manifest(registry, session.id) == session.playlist_path
        assert session.last_access == clock.now

    def test_manifest_not_written_yet(self, registry, source):
        session = registry.create(source, "original")
        assert resolve_manifest(registry, session.id) is None

    def test_manifest_unknown_session(self, registry):
        assert resolve_manifest(registry, "nope") is None

    def test_segment(self, registry, source, clock):
        session = _start(registry, source).session
        clock.advance(5)
        assert resolve_segment(registry, session.id, "seg_00000.ts") == (
            session.output_dir / "seg_00000.ts"
        )
        assert session.last_access == clock.now

    @pytest.mark.parametrize(
        "filename", ["seg_00001.ts", "../seg_00000.ts", "playlist.m3u8", "seg_abc.ts", "x.ts"]
    )
    def test_segment_missing_or_bad_name(self, registry, source, filename):
        session = _start(registry, source).session
        assert resolve_segment(registry, session.id, filename) is None

    def test_removed_session_not_served(self, registry, source):
        session = _start(registry, source).session
        asyncio.run(stop_session(registry, session.id))
        assert resolve_manifest(registry, session.id) is None
        assert resolve_segment(registry, session.id, "seg_00000.ts") is None


# =============================================================================
# Idle Reaper
# =============================================================================


class TestIdleReaper:
    """Tests for IdleReaper."""

    def test_sweep_removes_idle_only(self, registry, source, spawner, clock):
        idle = _start(registry, source).session
        active = _start(registry, source).session
        clock.advance(299)
        resolve_manifest(registry, active.id)
        clock.advance(2)

        reaper = IdleReaper(registry)
        assert asyncio.run(reaper.sweep()) == [idle.id]
        assert registry.get(idle.id) is None
        assert not idle.output_dir.exists()
        assert idle.process is None
        assert spawner.processes[0].returncode is not None
        assert registry.get(active.id) is active

    def test_exact_timeout_not_expired(self, registry, source, clock):
        session = _start(registry, source).session
        clock.advance(300)
        assert asyncio.run(IdleReaper(registry).sweep()) == []
        assert registry.get(session.id) is session

    def test_background_loop(self, tmp_path, source, clock):
        settings = transcode_settings({"transcode_dir": str(tmp_path / "hls")})
        registry = SessionRegistry(settings, spawn=FakeSpawner(), clock=clock, sleep=asyncio.sleep)

        async def run():
            session = (await start_session(registry, source)).session
            clock.advance(1000)
            reaper = IdleReaper(registry, interval_sec=0.01)
            reaper.start()
            for _ in range(100):
                if len(registry) == 0:
                    break
                await asyncio.sleep(0.01)
            await reaper.stop()
            await reaper.stop()
            return session

        session = asyncio.run(run())
        assert len(registry) == 0
        assert not session.output_dir.exists()


if __name__ == "__main__":
    from testing import run_tests

    run_tests(__file__)
