from __future__ import annotations

import zipfile
from collections.abc import Iterable
from pathlib import Path


def write_zip(
    dst: Path,
    files: Iterable[tuple[Path, str]],
    *,
    texts: dict[str, str] | None = None,
) -> Path:
    """
    Write `files` ((path, name-in-archive) pairs) plus in-memory `texts` into a
    deflated zip. Written to a temp name first so readers never see a half-built archive.
    """
    dst = Path(dst)
    dst.parent.mkdir(parents=True, exist_ok=True)
    tmp = dst.with_name(dst.name + ".tmp")
    with zipfile.ZipFile(tmp, mode="w", compression=zipfile.ZIP_DEFLATED) as z:
        for path, arcname in files:
            z.write(path, arcname=arcname)
        for name, body in (texts or {}).items():
            z.writestr(name, body)
    tmp.replace(dst)
    return dst
