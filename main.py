#!/usr/bin/env python3
"""Media transcoding server.

Usage:
    ./main.py [--port PORT] [--debug]

Options:
    --port PORT     Port to listen on (default: settings "port", 3001)
    --debug         Enable debug logging and access logs
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import logging
import os
import pathlib
import shutil

from fastapi import FastAPI
from fastapi import HTTPException
from fastapi import Request
from fastapi.responses import FileResponse
from fastapi.responses import Response
from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import Field
from starlette.responses import StreamingResponse

from config import load_settings
from config import transcode_settings
from ffmpeg_command import ORIGINAL
from ffmpeg_command import QUALITY_PRESETS
from ffmpeg_command import detect_hw_accel
from ffmpeg_command import get_content_type
from ffmpeg_process import spawn_ffmpeg
from ffmpeg_session import IdleReaper
from ffmpeg_session import SessionRegistry
from ffmpeg_session import resolve_manifest
from ffmpeg_session import resolve_segment
from ffmpeg_session import seek_session
from ffmpeg_session import start_session
from ffmpeg_session import stop_session
from media_stream import RangeNotSatisfiable
from media_stream import extract_subtitle
from media_stream import iter_file_range
from media_stream import iter_process_stdout
from media_stream import open_remux
from media_stream import parse_range
from util import is_safe_filename


log = logging.getLogger(__name__)

API_PREFIX = "/api/media"

_START_ERROR_CODES = {
    "invalid": 400,
    "not_found": 404,
    "spawn_failed": 500,
    "timeout": 500,
    "error": 500,
}
_SEEK_ERROR_CODES = {
    "invalid": 400,
    "not_found": 404,
    "busy": 409,
    "spawn_failed": 500,
    "timeout": 504,
    "error": 500,
}


# =============================================================================
# App Setup
# =============================================================================


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Probe hardware, build the session registry, and reap idle sessions."""
    settings = load_settings()
    transcode = transcode_settings(settings)
    hw_available = detect_hw_accel(transcode.hw_device, transcode.ffmpeg_path)

    registry = SessionRegistry(transcode, hw_available=hw_available, spawn=spawn_ffmpeg)
    reaper = IdleReaper(registry)
    app.state.settings = transcode
    app.state.registry = registry
    app.state.cors_origin = str(settings.get("cors_origin") or "*")
    log.info("HLS sessions under %s", transcode.transcode_dir)
    reaper.start()
    try:
        yield
    finally:
        # Kill every ffmpeg and delete every session directory
        await reaper.stop()
        count = len(registry)
        await registry.shutdown()
        log.info("Shutdown complete, removed %d sessions", count)


app = FastAPI(title="Media Transcoder", lifespan=lifespan)


class StartRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    file_path: str = Field("", alias="filePath")
    audio_track: int = Field(0, alias="audioTrack")
    quality: str = ORIGINAL
    start_time: float = Field(0.0, alias="startTime")


class SeekRequest(BaseModel):
    position: float


def _registry(request: Request) -> SessionRegistry:
    return request.app.state.registry


def _cors(request: Request) -> dict[str, str]:
    return {"Access-Control-Allow-Origin": request.app.state.cors_origin}


def _require_file(path: str) -> pathlib.Path:
    if not path:
        raise HTTPException(400, "path is required")
    file_path = pathlib.Path(path)
    if not file_path.is_file():
        log.error("File not found: %s", path)
        raise HTTPException(404, "File not found")
    return file_path


# =============================================================================
# Status
# =============================================================================


@app.get("/health")
async def health(request: Request):
    return {"status": "ok", "sessions": len(_registry(request))}


@app.get(f"{API_PREFIX}/status")
async def media_status(request: Request):
    """Report transcoder availability and active sessions."""
    registry = _registry(request)
    return {
        "transcoderAvailable": shutil.which(registry.settings.ffmpeg_path) is not None,
        "hwAccel": registry.hw_available,
        "activeSessions": len(registry),
        "qualities": list(QUALITY_PRESETS),
    }


# =============================================================================
# HLS Sessions
# =============================================================================


@app.post(f"{API_PREFIX}/hls/start")
async def hls_start(request: Request, body: StartRequest):
    """Start an HLS session; responds once the playlist has a segment."""
    result = await start_session(
        _registry(request),
        body.file_path,
        quality=body.quality,
        audio_track=body.audio_track,
        start_offset=body.start_time,
    )
    if result.status != "ok" or result.session is None:
        raise HTTPException(_START_ERROR_CODES.get(result.status, 500), result.error)
    session_id = result.session.id
    return {
        "sessionId": session_id,
        "playlistUrl": f"{API_PREFIX}/hls/{session_id}/playlist.m3u8",
    }


@app.get(f"{API_PREFIX}/hls/{{session_id}}/playlist.m3u8")
async def hls_playlist(request: Request, session_id: str):
    playlist = resolve_manifest(_registry(request), session_id)
    if playlist is None:
        raise HTTPException(404, "Playlist not found")
    return Response(
        content=playlist.read_text(),
        media_type="application/vnd.apple.mpegurl",
        headers={"Cache-Control": "no-cache, no-store, must-revalidate", **_cors(request)},
    )


@app.get(f"{API_PREFIX}/hls/{{session_id}}/{{segment}}")
async def hls_segment(request: Request, session_id: str, segment: str):
    """Serve one .ts segment (session ids are unguessable)."""
    if not is_safe_filename(segment):
        raise HTTPException(400, "Invalid filename")
    path = resolve_segment(_registry(request), session_id, segment)
    if path is None:
        raise HTTPException(404, "Segment not found")
    return FileResponse(
        path,
        media_type="video/mp2t",
        headers={"Cache-Control": "public, max-age=3600", **_cors(request)},
    )


@app.post(f"{API_PREFIX}/hls/{{session_id}}/seek")
async def hls_seek(request: Request, session_id: str, body: SeekRequest):
    result = await seek_session(_registry(request), session_id, body.position)
    if result.status != "ok":
        raise HTTPException(_SEEK_ERROR_CODES.get(result.status, 500), result.error)
    return {"success": True, "position": result.position}


@app.delete(f"{API_PREFIX}/hls/{{session_id}}")
async def hls_stop(request: Request, session_id: str):
    """Stop a session. Unknown ids succeed too."""
    await stop_session(_registry(request), session_id)
    return {"success": True}


# =============================================================================
# Direct Streaming / Remux / Subtitles
# =============================================================================


@app.get(f"{API_PREFIX}/stream")
async def stream_file(request: Request, path: str = ""):
    """Serve a media file as-is, honouring byte ranges."""
    file_path = _require_file(path)
    size = file_path.stat().st_size
    headers: dict[str, Any] = {"Accept-Ranges": "bytes", **_cors(request)}
    media_type = get_content_type(file_path)
    try:
        byte_range = parse_range(request.headers.get("range"), size)
    except RangeNotSatisfiable as e:
        return Response(status_code=416, headers={"Content-Range": f"bytes */{e.size}", **headers})

    if byte_range is None:
        headers["Content-Length"] = str(size)
        return StreamingResponse(
            iter_file_range(file_path, 0, size), media_type=media_type, headers=headers
        )
    start, end = byte_range
    length = end - start + 1
    headers["Content-Range"] = f"bytes {start}-{end}/{size}"
    headers["Content-Length"] = str(length)
    return StreamingResponse(
        iter_file_range(file_path, start, length),
        status_code=206,
        media_type=media_type,
        headers=headers,
    )


@app.get(f"{API_PREFIX}/transcode")
async def transcode_stream(request: Request, path: str = "", start: float = 0.0, audio: int = 0):
    """Progressive fragmented-MP4 remux for clients without HLS."""
    file_path = _require_file(path)
    if start < 0 or audio < 0:
        raise HTTPException(400, "start and audio must not be negative")
    settings = _registry(request).settings
    try:
        process = await open_remux(
            str(file_path),
            audio_track=audio,
            start_offset=start,
            ffmpeg_path=settings.ffmpeg_path,
        )
    except OSError as e:
        log.error("ffmpeg spawn error: %s", e)
        raise HTTPException(500, "Failed to start transcoding") from e
    return StreamingResponse(
        iter_process_stdout(process),
        media_type="video/mp4",
        headers={"Cache-Control": "no-cache", **_cors(request)},
    )


@app.get(f"{API_PREFIX}/subtitle")
async def subtitle(request: Request, path: str = "", index: int = 0):
    """Extract one subtitle stream as WebVTT."""
    if not path:
        raise HTTPException(400, "path is required")
    settings = _registry(request).settings
    result = await extract_subtitle(
        path,
        index,
        ffmpeg_path=settings.ffmpeg_path,
        timeout_sec=settings.subtitle_timeout_secs,
    )
    if result.status == "not_found":
        raise HTTPException(404, result.error)
    if result.status != "ok":
        raise HTTPException(500, result.error)
    return Response(
        content=result.content,
        media_type="text/vtt",
        headers={"Cache-Control": "public, max-age=86400", **_cors(request)},
    )


if __name__ == "__main__":
    import argparse

    import uvicorn  # pyright: ignore[reportMissingImports]

    parser = argparse.ArgumentParser(description="Media transcoding server")
    parser.add_argument("--port", type=int, default=None, help="Port to listen on")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    args = parser.parse_args()

    log_level = logging.DEBUG if args.debug else logging.INFO
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s | %(levelname)s | %(message)s",
        datefmt="%H:%M:%S",
        force=True,
    )

    port = args.port or int(os.environ.get("PORT") or load_settings()["port"])
    uv_log = "debug" if args.debug else "info"
    uvicorn.run(
        app,
        host="0.0.0.0",
        port=port,
        access_log=args.debug,
        log_level=uv_log,
    )
