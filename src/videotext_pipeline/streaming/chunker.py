from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path


@dataclass(frozen=True, slots=True)
class Chunk:
    idx: int
    start_s: float
    end_s: float
    wav_path: Path


def plan_chunks(
    total_s: float, *, out_dir: Path, chunk_seconds: float, prefix: str = "chunk_"
) -> list[Chunk]:
    """
    Fixed-duration, non-overlapping windows covering [0, total_s).

    Indices start at 0 so they double as publish order for partial results.
    """
    total = float(total_s)
    if total <= 0:
        return []
    cs = max(2.0, float(chunk_seconds))
    chunks: list[Chunk] = []
    start = 0.0
    while start < total - 1e-3:
        end = min(total, start + cs)
        idx = len(chunks)
        chunks.append(
            Chunk(idx=idx, start_s=start, end_s=end, wav_path=Path(out_dir) / f"{prefix}{idx:03d}.wav")
        )
        start = end
    return chunks
