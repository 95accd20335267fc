"""Shared utilities."""

from __future__ import annotations

import pathlib


def is_safe_filename(filename: str) -> bool:
    """True if filename is a single plain path component (no traversal)."""
    if not filename or filename in (".", ".."):
        return False
    if "/" in filename or "\\" in filename or "\x00" in filename:
        return False
    return pathlib.PurePosixPath(filename).name == filename


def safe_child_path(base_dir: pathlib.Path, filename: str) -> pathlib.Path | None:
    """Resolve filename inside base_dir, or None if it would escape it."""
    if not is_safe_filename(filename):
        return None
    path = base_dir / filename
    try:
        if path.resolve().parent != base_dir.resolve():
            return None
    except OSError:
        return None
    return path
