from __future__ import annotations

import re
import uuid
from pathlib import Path, PurePosixPath, PureWindowsPath

_UNSAFE_RE = re.compile(r"[^A-Za-z0-9._\-\s]+")
_MAX_NAME = 160


def sanitize_filename(name: str | None) -> str:
    """
    Reduce a user-supplied filename to something safe to place on disk.

    Directory components are dropped (both separators), NUL and anything outside
    `[A-Za-z0-9._- ]` is removed. Returns "file" when nothing usable remains.
    """
    raw = str(name or "").replace("\x00", "")
    base = PureWindowsPath(PurePosixPath(raw).name).name
    base = _UNSAFE_RE.sub("", base).strip()
    base = base.lstrip(".")
    if not base:
        return "file"
    if len(base) > _MAX_NAME:
        p = Path(base)
        base = p.stem[: _MAX_NAME - len(p.suffix)] + p.suffix
    return base


def unique_upload_name(name: str | None) -> str:
    return f"{uuid.uuid4()}-{sanitize_filename(name)}"


def output_filename(original: str, suffix: str, ext: str) -> str:
    """`movie.mp4` + `_fixed` + `.srt` -> `movie_fixed.srt`."""
    stem = Path(sanitize_filename(original)).stem or "file"
    ext = ext if ext.startswith(".") else f".{ext}"
    return f"{stem}{suffix}{ext}"
