"""FFmpeg command building and hardware detection."""

from __future__ import annotations

from dataclasses import dataclass

import logging
import pathlib
import subprocess


log = logging.getLogger(__name__)

HW_DEVICE = "/dev/dri/renderD128"
HW_ENCODER = "h264_qsv"

# Output file naming
PLAYLIST_NAME = "playlist.m3u8"
SEG_PREFIX = "seg_"  # Segment files are named seg_00000.ts, seg_00001.ts, etc.
SEG_SUFFIX = ".ts"

_HLS_SEGMENT_DURATION_SEC = 4
_DETECT_TIMEOUT_SEC = 5

# Audio normalization (always applied, whatever the source codec)
_AUDIO_CODEC = "aac"
_AUDIO_CHANNELS = "2"
_AUDIO_SAMPLE_RATE = "48000"

ORIGINAL = "original"


@dataclass(slots=True, frozen=True)
class QualityPreset:
    width: int  # 0 = keep source video untouched
    video_bitrate: str
    audio_bitrate: str

    @property
    def copy_video(self) -> bool:
        return self.width <= 0


QUALITY_PRESETS: dict[str, QualityPreset] = {
    "2160p": QualityPreset(width=3840, video_bitrate="15M", audio_bitrate="256k"),
    "1080p": QualityPreset(width=1920, video_bitrate="5M", audio_bitrate="192k"),
    "720p": QualityPreset(width=1280, video_bitrate="3M", audio_bitrate="128k"),
    "480p": QualityPreset(width=854, video_bitrate="1.5M", audio_bitrate="96k"),
    ORIGINAL: QualityPreset(width=0, video_bitrate="0", audio_bitrate="192k"),
}

CONTENT_TYPES: dict[str, str] = {
    "mp4": "video/mp4",
    "m4v": "video/mp4",
    "mkv": "video/x-matroska",
    "webm": "video/webm",
    "avi": "video/x-msvideo",
    "mov": "video/quicktime",
    "wmv": "video/x-ms-wmv",
    "flv": "video/x-flv",
    "ts": "video/mp2t",
}

# Module state
_hw_available: bool | None = None  # None = not probed yet


def resolve_quality(quality: str | None) -> str:
    """Map a requested quality label to a known one (unknown -> original)."""
    if quality in QUALITY_PRESETS:
        return quality
    if quality:
        log.info("Unknown quality %r, falling back to %s", quality, ORIGINAL)
    return ORIGINAL


def get_quality_preset(quality: str | None) -> QualityPreset:
    return QUALITY_PRESETS[resolve_quality(quality)]


# ===========================================================================
# Hardware Detection
# ===========================================================================


def detect_hw_accel(device: str = HW_DEVICE, ffmpeg_path: str = "ffmpeg") -> bool:
    """Check for a render device and an FFmpeg build with the QSV encoder.

    Probed once per process; later calls return the cached result. Any
    failure counts as unavailable so that encoding falls back to software.
    """
    global _hw_available
    if _hw_available is not None:
        return _hw_available
    _hw_available = False
    try:
        if not pathlib.Path(device).exists():
            log.info("Hardware acceleration: no render device at %s", device)
            return _hw_available
        result = subprocess.run(
            [ffmpeg_path, "-hide_banner", "-encoders"],
            capture_output=True,
            text=True,
            timeout=_DETECT_TIMEOUT_SEC,
        )
        _hw_available = result.returncode == 0 and HW_ENCODER in result.stdout
    except Exception as e:
        log.debug("Hardware probe failed: %s", e)
    log.info(
        "Hardware acceleration: Intel QuickSync %s",
        "available" if _hw_available else "not available",
    )
    return _hw_available


def reset_hw_accel_cache() -> None:
    global _hw_available
    _hw_available = None


def get_content_type(path: str | pathlib.Path) -> str:
    """Get HTTP content type for a media container, by extension."""
    ext = pathlib.Path(path).suffix.lstrip(".").lower() or "mp4"
    return CONTENT_TYPES.get(ext, "video/mp4")


# ===========================================================================
# FFmpeg Command Building
# ===========================================================================


def _parse_bitrate_kbps(bitrate: str) -> float:
    """Parse an ffmpeg bitrate string ("5M", "1.5M", "800k") into kbit/s."""
    value = bitrate.strip().lower()
    scale = 1.0
    if value.endswith("m"):
        scale, value = 1000.0, value[:-1]
    elif value.endswith("k"):
        value = value[:-1]
    return float(value) * scale


def _bufsize(bitrate: str) -> str:
    """Rate-control buffer of two seconds at the target bitrate."""
    return f"{int(_parse_bitrate_kbps(bitrate) * 2)}k"


def _build_video_args(
    *,
    preset: QualityPreset,
    hw_available: bool,
    hw_device: str = HW_DEVICE,
    segment_duration: int = _HLS_SEGMENT_DURATION_SEC,
) -> tuple[list[str], list[str]]:
    """Build video args. Returns (pre_input_args, post_input_args)."""
    if preset.copy_video:
        return [], ["-map", "0:v:0", "-c:v", "copy"]

    rate_control = [
        "-b:v",
        preset.video_bitrate,
        "-maxrate",
        preset.video_bitrate,
        "-bufsize",
        _bufsize(preset.video_bitrate),
    ]
    # Keyframe on every segment boundary so segments stay independently decodable
    keyframes = ["-force_key_frames", f"expr:gte(t,n_forced*{segment_duration})"]

    if hw_available:
        pre = [
            "-hwaccel",
            "qsv",
            "-hwaccel_device",
            hw_device,
            "-hwaccel_output_format",
            "qsv",
        ]
        post = [
            "-map",
            "0:v:0",
            "-c:v",
            HW_ENCODER,
            "-preset",
            "fast",
            *rate_control,
            *keyframes,
            "-vf",
            f"scale_qsv=w={preset.width}:h=-1",
        ]
        return pre, post

    post = [
        "-map",
        "0:v:0",
        "-c:v",
        "libx264",
        "-preset",
        "veryfast",
        *rate_control,
        *keyframes,
        "-vf",
        f"scale={preset.width}:-2,format=yuv420p",
    ]
    return [], post


def _build_audio_args(*, audio_track: int, audio_bitrate: str) -> list[str]:
    """Build audio args: selected track, stereo AAC at a fixed sample rate."""
    return [
        "-map",
        f"0:a:{audio_track}",
        "-c:a",
        _AUDIO_CODEC,
        "-b:a",
        audio_bitrate,
        "-ac",
        _AUDIO_CHANNELS,
        "-ar",
        _AUDIO_SAMPLE_RATE,
    ]


def _seek_args(start_offset: float) -> list[str]:
    # Input-side seek: must precede -i
    if start_offset > 0:
        return ["-ss", str(float(start_offset))]
    return []


def build_hls_ffmpeg_cmd(
    source_path: str,
    output_dir: str | pathlib.Path,
    quality: str = ORIGINAL,
    audio_track: int = 0,
    start_offset: float = 0.0,
    hw_available: bool = False,
    segment_duration: int = _HLS_SEGMENT_DURATION_SEC,
    ffmpeg_path: str = "ffmpeg",
    hw_device: str = HW_DEVICE,
) -> list[str]:
    """Build ffmpeg command for HLS transcoding of a local file."""
    preset = get_quality_preset(quality)
    video_pre, video_post = _build_video_args(
        preset=preset,
        hw_available=hw_available,
        hw_device=hw_device,
        segment_duration=segment_duration,
    )
    audio_args = _build_audio_args(audio_track=audio_track, audio_bitrate=preset.audio_bitrate)
    out = pathlib.Path(output_dir)

    cmd = [ffmpeg_path, "-hide_banner", "-loglevel", "error", "-y"]
    cmd.extend(_seek_args(start_offset))
    # Hwaccel args (before -i)
    cmd.extend(video_pre)
    cmd.extend(["-fflags", "+genpts+discardcorrupt", "-i", source_path])
    cmd.extend(video_post)
    cmd.extend(audio_args)
    cmd.extend(
        [
            "-avoid_negative_ts",
            "make_zero",
            "-max_muxing_queue_size",
            "1024",
            "-f",
            "hls",
            "-hls_time",
            str(segment_duration),
            "-hls_list_size",
            "0",
            "-hls_flags",
            "independent_segments",
            "-hls_segment_type",
            "mpegts",
            "-hls_segment_filename",
            str(out / f"{SEG_PREFIX}%05d{SEG_SUFFIX}"),
            "-start_number",
            "0",
            str(out / PLAYLIST_NAME),
        ]
    )
    return cmd


def build_remux_ffmpeg_cmd(
    source_path: str,
    audio_track: int = 0,
    start_offset: float = 0.0,
    ffmpeg_path: str = "ffmpeg",
) -> list[str]:
    """Build ffmpeg command streaming fragmented MP4 to stdout (video copied)."""
    cmd = [ffmpeg_path, "-hide_banner", "-loglevel", "error"]
    cmd.extend(_seek_args(start_offset))
    cmd.extend(["-i", source_path, "-map", "0:v:0", "-c:v", "copy"])
    cmd.extend(_build_audio_args(audio_track=audio_track, audio_bitrate="192k"))
    cmd.extend(
        [
            "-avoid_negative_ts",
            "make_zero",
            "-fflags",
            "+genpts+discardcorrupt",
            "-max_muxing_queue_size",
            "1024",
            "-movflags",
            "frag_keyframe+empty_moov+default_base_moof",
            "-f",
            "mp4",
            "pipe:1",
        ]
    )
    return cmd


def build_subtitle_ffmpeg_cmd(
    source_path: str,
    stream_index: int,
    ffmpeg_path: str = "ffmpeg",
) -> list[str]:
    """Build ffmpeg command writing the Nth subtitle stream as WebVTT to stdout."""
    return [
        ffmpeg_path,
        "-hide_banner",
        "-nostdin",
        "-i",
        source_path,
        "-map",
        f"0:s:{stream_index}",
        "-f",
        "webvtt",
        "-",
    ]
