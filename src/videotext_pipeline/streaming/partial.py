"""
Progressive results for long transcriptions.

Chunks finish out of order; only the longest run of consecutively completed
chunks starting at 0 is ever published. Every publish gets a new version from
an in-process counter (the stored record is never read back to derive it), and
one drain task per job writes snapshots to the shared store one at a time.

The store is advisory: every failure is logged and swallowed.
"""

from __future__ import annotations

import asyncio
import json
import time
from dataclasses import asdict, dataclass, field
from typing import Any

from videotext_pipeline.config import get_settings
from videotext_pipeline.ops import metrics
from videotext_pipeline.store.kv import KVStore
from videotext_pipeline.utils.log import logger

KEY_PREFIX = "job:partial:"


def partial_key(job_id: str) -> str:
    return f"{KEY_PREFIX}{job_id}"


@dataclass(frozen=True, slots=True)
class PartialSegment:
    start: float
    end: float
    text: str
    speaker: str | None = None

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        if d["speaker"] is None:
            d.pop("speaker")
        return d


@dataclass(slots=True)
class PartialResultRecord:
    job_id: str
    version: int
    segments: list[PartialSegment] = field(default_factory=list)
    created_at: float = 0.0
    updated_at: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "jobId": self.job_id,
            "version": int(self.version),
            "segments": [s.to_dict() for s in self.segments],
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> PartialResultRecord | None:
        if not isinstance(d, dict) or not isinstance(d.get("version"), int):
            return None
        segs = d.get("segments")
        if not isinstance(segs, list):
            return None
        return cls(
            job_id=str(d.get("jobId") or ""),
            version=int(d["version"]),
            segments=[
                PartialSegment(
                    start=float(s["start"]),
                    end=float(s["end"]),
                    text=str(s.get("text") or ""),
                    speaker=s.get("speaker"),
                )
                for s in segs
            ],
            created_at=float(d.get("createdAt") or 0.0),
            updated_at=float(d.get("updatedAt") or 0.0),
        )


def trim_for_response(record: dict[str, Any], *, max_bytes: int | None = None) -> dict[str, Any]:
    """Copy of `record` whose JSON fits in `max_bytes`, dropping segments from the end."""
    limit = int(max_bytes if max_bytes is not None else get_settings().partial_max_response_bytes)

    def size(d: dict[str, Any]) -> int:
        return len(json.dumps(d, separators=(",", ":")).encode("utf-8"))

    if size(record) <= limit:
        return record
    segs = list(record.get("segments") or [])

    def fits(n: int) -> bool:
        return size({**record, "segments": segs[:n]}) <= limit

    # longest fitting prefix; size grows with n
    lo, hi = 0, len(segs)
    while lo < hi:
        mid = (lo + hi + 1) // 2
        if fits(mid):
            lo = mid
        else:
            hi = mid - 1
    return {**record, "segments": segs[:lo]}


class PartialStore:
    """get/put/delete of partial records; never raises."""

    def __init__(self, kv: KVStore, *, ttl_s: float | None = None) -> None:
        self.kv = kv
        self.ttl_s = float(ttl_s if ttl_s is not None else get_settings().partial_ttl_s)

    def put(self, record: PartialResultRecord) -> bool:
        try:
            self.kv.set(partial_key(record.job_id), record.to_dict(), ttl_s=self.ttl_s)
            metrics.partial_writes.inc()
            return True
        except Exception as ex:
            logger.warning("partial_put_failed", job_id=record.job_id, error=str(ex))
            return False

    def get(self, job_id: str) -> PartialResultRecord | None:
        try:
            raw = self.kv.get(partial_key(job_id))
        except Exception as ex:
            logger.warning("partial_get_failed", job_id=job_id, error=str(ex))
            return None
        return PartialResultRecord.from_dict(raw) if raw is not None else None

    def delete(self, job_id: str) -> None:
        try:
            self.kv.delete(partial_key(job_id))
        except Exception as ex:
            logger.warning("partial_delete_failed", job_id=job_id, error=str(ex))


class ContiguousPrefix:
    """
    Tracks chunk completions and yields the merged prefix 0..k only when it grows.
    """

    def __init__(self, total: int) -> None:
        self.total = int(total)
        self._done: dict[int, list[PartialSegment]] = {}
        self._published = 0

    def complete(self, idx: int, segments: list[PartialSegment]) -> list[PartialSegment] | None:
        if not 0 <= int(idx) < self.total:
            raise IndexError(f"chunk index {idx} outside [0, {self.total})")
        self._done[int(idx)] = list(segments)
        k = self._published
        while k in self._done:
            k += 1
        if k == self._published:
            return None
        self._published = k
        out: list[PartialSegment] = []
        for i in range(k):
            out.extend(self._done[i])
        return out


class PartialWriter:
    """
    Single writer for one job.

    `offer()` never blocks: it stamps the next version and queues the snapshot.
    A drain task writes queued snapshots in order; `close_and_flush()` waits
    for the queue to empty and stops the task.
    """

    def __init__(
        self,
        store: PartialStore,
        job_id: str,
        *,
        next_version,
        max_segments: int | None = None,
    ) -> None:
        self.store = store
        self.job_id = job_id
        self._next_version = next_version
        self.max_segments = int(
            max_segments if max_segments is not None else get_settings().partial_max_segments
        )
        self._pending: asyncio.Queue[PartialResultRecord | None] = asyncio.Queue()
        self._created_at = time.time()
        self._task: asyncio.Task[None] | None = None
        self._closed = False
        self.last_version = 0

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._drain(), name=f"partial-writer:{self.job_id}")

    def offer(self, segments: list[PartialSegment]) -> int | None:
        if self._closed:
            return None
        ordered = sorted(segments, key=lambda s: (s.start, s.end))[: self.max_segments]
        version = int(self._next_version())
        self.last_version = version
        self._pending.put_nowait(
            PartialResultRecord(
                job_id=self.job_id,
                version=version,
                segments=ordered,
                created_at=self._created_at,
                updated_at=time.time(),
            )
        )
        return version

    async def _drain(self) -> None:
        while True:
            rec = await self._pending.get()
            if rec is None:
                return
            await asyncio.to_thread(self.store.put, rec)

    async def close_and_flush(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._pending.put_nowait(None)
        if self._task is not None:
            await self._task


class PartialPublisher:
    """
    Owns per-job version counters and writers.

    Counters live for the whole process, so a retried attempt keeps counting
    up from where the failed one stopped.
    """

    def __init__(self, store: PartialStore) -> None:
        self.store = store
        self._versions: dict[str, int] = {}

    def _bump(self, job_id: str) -> int:
        v = self._versions.get(job_id, 0) + 1
        self._versions[job_id] = v
        return v

    def writer(self, job_id: str) -> PartialWriter:
        w = PartialWriter(self.store, job_id, next_version=lambda: self._bump(job_id))
        w.start()
        return w

    def read(self, job_id: str) -> PartialResultRecord | None:
        return self.store.get(job_id)

    def discard(self, job_id: str) -> None:
        """Delete the record once the final result exists."""
        self.store.delete(job_id)

    def forget(self, job_id: str) -> None:
        self._versions.pop(job_id, None)
