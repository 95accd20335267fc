"""Server settings."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import json
import logging
import os
import pathlib
import tempfile


log = logging.getLogger(__name__)

APP_DIR = pathlib.Path(__file__).parent
SETTINGS_FILE = pathlib.Path(os.environ.get("CINEMA_SETTINGS_FILE", APP_DIR / "settings.json"))

_DEFAULTS: dict[str, Any] = {
    "ffmpeg_path": "ffmpeg",
    "transcode_dir": "",  # Empty = <system temp>/hls-sessions
    "hw_device": "/dev/dri/renderD128",
    "hls_segment_secs": 4,
    "session_idle_timeout_secs": 5 * 60,
    "reap_interval_secs": 60,
    "ready_timeout_secs": 10,
    "ready_poll_secs": 0.1,
    "seek_ready_attempts": 50,
    "stop_timeout_secs": 5,
    "subtitle_timeout_secs": 60,
    "port": 3001,
    "cors_origin": "*",
}


@dataclass(slots=True, frozen=True)
class TranscodeSettings:
    ffmpeg_path: str
    transcode_dir: pathlib.Path
    hw_device: str
    segment_secs: int
    idle_timeout_secs: float
    reap_interval_secs: float
    ready_timeout_secs: float
    ready_poll_secs: float
    seek_ready_attempts: int
    stop_timeout_secs: float
    subtitle_timeout_secs: float


def load_settings() -> dict[str, Any]:
    """Load settings file, filling in defaults for missing keys."""
    data: dict[str, Any] = {}
    if SETTINGS_FILE.exists():
        try:
            data = json.loads(SETTINGS_FILE.read_text())
        except (OSError, ValueError) as e:
            log.warning("Ignoring unreadable settings file %s: %s", SETTINGS_FILE, e)
            data = {}
    for key, value in _DEFAULTS.items():
        data.setdefault(key, value)
    return data


def get_transcode_dir(settings: dict[str, Any]) -> pathlib.Path:
    """Get the session output root. Falls back to system temp if not set."""
    custom_dir = settings.get("transcode_dir", "")
    if custom_dir:
        return pathlib.Path(custom_dir)
    return pathlib.Path(tempfile.gettempdir()) / "hls-sessions"


def transcode_settings(settings: dict[str, Any] | None = None) -> TranscodeSettings:
    """Build the immutable transcode settings from a settings dict."""
    if settings is None:
        settings = load_settings()
    merged = {**_DEFAULTS, **settings}
    return TranscodeSettings(
        ffmpeg_path=str(merged["ffmpeg_path"]),
        transcode_dir=get_transcode_dir(merged),
        hw_device=str(merged["hw_device"]),
        segment_secs=max(1, int(merged["hls_segment_secs"])),
        idle_timeout_secs=float(merged["session_idle_timeout_secs"]),
        reap_interval_secs=float(merged["reap_interval_secs"]),
        ready_timeout_secs=float(merged["ready_timeout_secs"]),
        ready_poll_secs=float(merged["ready_poll_secs"]),
        seek_ready_attempts=max(1, int(merged["seek_ready_attempts"])),
        stop_timeout_secs=float(merged["stop_timeout_secs"]),
        subtitle_timeout_secs=float(merged["subtitle_timeout_secs"]),
    )
