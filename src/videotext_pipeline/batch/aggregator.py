from __future__ import annotations

import re
import time
from pathlib import Path
from typing import Any

from videotext_pipeline.config import get_settings
from videotext_pipeline.jobs.models import BatchJob, BatchStatus, new_id
from videotext_pipeline.jobs.store import JobStore
from videotext_pipeline.utils.archive import write_zip
from videotext_pipeline.utils.log import logger
from videotext_pipeline.utils.naming import sanitize_filename

ERROR_LOG_NAME = "error_log.txt"
_POSITION_RE = re.compile(r"^\d+-")


def _archive_names(files: list[Path], prefix: str) -> list[tuple[Path, str]]:
    """Entry names without the batch prefix and position; repeats become `name (2).ext`."""
    seen: dict[str, int] = {}
    out: list[tuple[Path, str]] = []
    for p in files:
        name = _POSITION_RE.sub("", p.name[len(prefix) :], count=1)
        n = seen.get(name.lower(), 0) + 1
        seen[name.lower()] = n
        if n > 1:
            q = Path(name)
            name = f"{q.stem} ({n}){q.suffix}"
        out.append((p, name))
    return out


def _final_status(b: BatchJob) -> BatchStatus:
    if b.failed == 0:
        return BatchStatus.COMPLETED
    if b.processed == 0:
        return BatchStatus.FAILED
    return BatchStatus.PARTIAL


class BatchAggregator:
    """
    Fan-in for batch submissions.

    Each sub-job reports exactly one outcome. Counters move under the job
    store's locks and the caller that takes the batch to `processed + failed ==
    total` also claims the archive (compare-and-set on `archive_claimed`), so the
    archive pass runs once however the completions interleave.
    """

    def __init__(
        self,
        store: JobStore,
        *,
        artifacts_dir: Path | None = None,
        expiry_s: float | None = None,
    ) -> None:
        s = get_settings()
        self.store = store
        self.root = Path(artifacts_dir or s.artifacts_dir).resolve() / "batches"
        self.expiry_s = float(expiry_s if expiry_s is not None else s.batch_expiry_s)

    def _prefix(self, batch_id: str) -> str:
        return f"batch-{batch_id}-"

    def create(self, owner_id: str, total: int) -> BatchJob:
        if int(total) <= 0:
            raise ValueError("batch needs at least one item")
        now = time.time()
        b = BatchJob(
            id=new_id(),
            owner_id=str(owner_id),
            total=int(total),
            created_at=now,
            expires_at=now + self.expiry_s,
        )
        self.store.put_batch(b)
        logger.info("batch_created", batch_id=b.id, owner_id=b.owner_id, total=b.total)
        return b

    def artifact_path(
        self, batch_id: str, original_name: str, *, position: int = 0, ext: str = ".srt"
    ) -> Path:
        """
        Where a sub-job writes its output. The batch prefix is how the archive
        pass finds it; the item position keeps same-named items apart.
        """
        stem = Path(sanitize_filename(original_name)).stem or "file"
        self.root.mkdir(parents=True, exist_ok=True)
        return self.root / f"{self._prefix(batch_id)}{int(position):03d}-{stem}{ext}"

    def record_success(self, batch_id: str) -> BatchJob | None:
        return self._record(batch_id, ok=True)

    def record_failure(self, batch_id: str, name: str, reason: str) -> BatchJob | None:
        return self._record(batch_id, ok=False, name=name, reason=reason)

    def _record(
        self, batch_id: str, *, ok: bool, name: str = "", reason: str = ""
    ) -> BatchJob | None:
        claim: dict[str, bool] = {"archive": False}

        def apply(b: BatchJob) -> BatchJob | None:
            if b.finished:
                # late or duplicate outcome
                return None
            if ok:
                b.processed += 1
            else:
                b.failed += 1
                b.errors.append({"name": name or "unknown", "reason": reason or "Processing failed"})
            b.status = BatchStatus.PROCESSING
            if b.finished and not b.archive_claimed:
                b.archive_claimed = True
                claim["archive"] = True
            return b

        b = self.store.update_batch(batch_id, apply)
        if b is None:
            logger.warning("batch_missing", batch_id=batch_id)
            return None
        logger.info(
            "batch_progress",
            batch_id=batch_id,
            processed=b.processed,
            failed=b.failed,
            total=b.total,
        )
        if claim["archive"]:
            return self._finalize(b)
        return b

    def _finalize(self, b: BatchJob) -> BatchJob | None:
        prefix = self._prefix(b.id)
        files = (
            sorted(p for p in self.root.glob(f"{prefix}*") if p.is_file() and p.suffix != ".zip")
            if self.root.exists()
            else []
        )
        texts: dict[str, str] = {}
        if b.errors:
            texts[ERROR_LOG_NAME] = "\n".join(f"{e['name']}: {e['reason']}" for e in b.errors) + "\n"
        archive = write_zip(
            self.root / f"batch-{b.id}.zip",
            _archive_names(files, prefix),
            texts=texts,
        )
        status = _final_status(b)

        def apply(cur: BatchJob) -> BatchJob:
            cur.archive_path = str(archive)
            cur.status = status
            cur.completed_at = time.time()
            return cur

        done = self.store.update_batch(b.id, apply)
        logger.info(
            "batch_archived",
            batch_id=b.id,
            status=status.value,
            files=len(files),
            errors=len(b.errors),
            path=str(archive),
        )
        return done

    def status(self, batch_id: str) -> dict[str, Any] | None:
        b = self.store.get_batch(batch_id)
        if b is None:
            return None
        done = b.processed + b.failed
        out: dict[str, Any] = {
            "status": b.status.value,
            "progress": {
                "total": b.total,
                "completed": b.processed,
                "failed": b.failed,
                "percentage": int(round(done * 100.0 / b.total)) if b.total else 0,
            },
            "errors": list(b.errors),
        }
        if b.archive_path:
            out["archive"] = b.archive_path
        return out

    def sweep_expired(self, *, now: float | None = None) -> int:
        t = time.time() if now is None else float(now)
        n = 0
        for b in self.store.list_batches():
            if b.expires_at > t:
                continue
            if self.root.exists():
                for p in self.root.glob(f"{self._prefix(b.id)}*"):
                    p.unlink(missing_ok=True)
            if b.archive_path:
                Path(b.archive_path).unlink(missing_ok=True)
            self.store.delete_batch(b.id)
            n += 1
        if n:
            logger.info("batches_swept", count=n)
        return n
