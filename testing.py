"""Test utilities."""

from __future__ import annotations

import pathlib
import sys
import warnings


# Suppress unawaited coroutine warnings from AsyncMock in tests.
warnings.filterwarnings("ignore", message="coroutine.*was never awaited")

PLAYLIST_HEADER = "#EXTM3U\n#EXT-X-VERSION:3\n#EXT-X-TARGETDURATION:4\n#EXT-X-MEDIA-SEQUENCE:0\n"


class FakeClock:
    """Monotonic clock whose sleep() advances time instantly.

    Pass `clock` and `clock.sleep` to a SessionRegistry so polling and
    idle expiry run without real waiting.
    """

    def __init__(self, now: float = 1000.0):
        self.now = now
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def write_playlist(output_dir: pathlib.Path, segments: int) -> None:
    """Write what ffmpeg's HLS muxer would: a playlist plus segment files."""
    lines = [PLAYLIST_HEADER]
    for i in range(segments):
        name = f"seg_{i:05d}.ts"
        (output_dir / name).write_bytes(b"\x47" * 188)
        lines.append(f"#EXTINF:4.000000,\n{name}\n")
    (output_dir / "playlist.m3u8").write_text("".join(lines))


class FakeProcess:
    """Fake transcoder handle for testing."""

    def __init__(self, cmd: list[str], label: str):
        self.cmd = cmd
        self.label = label
        self.returncode: int | None = None
        self.stop_calls = 0

    async def wait(self) -> int:
        assert self.returncode is not None
        return self.returncode

    async def stop(self, timeout_sec: float = 5.0) -> None:
        self.stop_calls += 1
        if self.returncode is None:
            self.returncode = -15

    def stderr_tail(self) -> str:
        return "fake stderr"


class FakeSpawner:
    """Spawner that writes ffmpeg's output synchronously."""

    def __init__(self, segments: int = 1, write_playlist: bool = True):
        self.segments = segments
        self.write_playlist = write_playlist
        self.exit_code: int | None = None
        self.fail = False
        self.processes: list[FakeProcess] = []
        self.live_at_spawn: list[int] = []

    async def __call__(self, cmd: list[str], label: str) -> FakeProcess:
        if self.fail:
            raise FileNotFoundError(cmd[0])
        self.live_at_spawn.append(len(self.live()))
        process = FakeProcess(cmd, label)
        self.processes.append(process)
        if self.write_playlist:
            write_playlist(pathlib.Path(cmd[-1]).parent, self.segments)
        process.returncode = self.exit_code
        return process

    def live(self) -> list[FakeProcess]:
        return [p for p in self.processes if p.returncode is None]


def run_tests(test_file: str) -> None:
    """Run pytest on a test file with standard flags.

    Usage:
        if __name__ == "__main__":
            from testing import run_tests
            run_tests(__file__)
    """
    import pytest

    sys.exit(
        pytest.main(
            [
                test_file,
                "-v",
                "-s",
                "-W",
                "ignore::pytest.PytestAssertRewriteWarning",
                *sys.argv[1:],
            ]
        )
    )
