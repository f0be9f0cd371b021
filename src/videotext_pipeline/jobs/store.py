from __future__ import annotations

import threading
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any

from sqlitedict import SqliteDict  # type: ignore

from videotext_pipeline.jobs.models import BatchJob, Job, JobState, UploadSession, now_utc
from videotext_pipeline.utils.locks import file_lock


class JobStore:
    """
    Durable job, upload-session and batch records (sqlitedict tables in one DB).

    Tables are opened per operation. Every read-modify-write runs under the
    thread lock plus a cross-process file lock, which is what makes progress
    monotonic, terminal transitions single-shot and batch counters atomic
    across worker processes.
    """

    def __init__(self, db_path: Path) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._lock_path = self.db_path.with_suffix(self.db_path.suffix + ".lock")

    def _table(self, name: str) -> SqliteDict:
        # Open/close per operation (avoids cross-thread SQLite handle issues)
        return SqliteDict(str(self.db_path), tablename=name, autocommit=True)

    def _write_lock(self):
        return file_lock(self._lock_path)

    def _mutate(
        self, table: str, key: str, fn: Callable[[dict[str, Any]], dict[str, Any] | None]
    ) -> dict[str, Any] | None:
        """Apply `fn` to the stored record; `fn` returning None leaves it unchanged."""
        with self._write_lock(), self._lock, self._table(table) as db:
            raw = db.get(key)
            if raw is None:
                return None
            new = fn(dict(raw))
            if new is None:
                return dict(raw)
            db[key] = new
            return new

    # --- jobs ---

    def put(self, job: Job) -> None:
        with self._write_lock(), self._lock, self._table("jobs") as db:
            db[job.id] = job.to_dict()

    def get(self, id: str) -> Job | None:
        with self._lock, self._table("jobs") as db:
            raw = db.get(id)
        if raw is None:
            return None
        return Job.from_dict(raw)

    def update(self, id: str, **fields: Any) -> Job | None:
        for k, v in list(fields.items()):
            if hasattr(v, "value") and k in {"state", "lane", "plan", "tool_type"}:
                fields[k] = v.value

        def apply(raw: dict[str, Any]) -> dict[str, Any]:
            raw.update(fields)
            raw["updated_at"] = now_utc()
            return raw

        raw = self._mutate("jobs", id, apply)
        return Job.from_dict(raw) if raw is not None else None

    def list(self, *, state: JobState | None = None, batch_id: str | None = None) -> list[Job]:
        with self._lock, self._table("jobs") as db:
            items = list(db.values())
        jobs = [Job.from_dict(v) for v in items]
        if state is not None:
            jobs = [j for j in jobs if j.state == state]
        if batch_id is not None:
            jobs = [j for j in jobs if j.batch_id == batch_id]
        jobs.sort(key=lambda j: j.created_at)
        return jobs

    def count_unfinished(self, owner_id: str) -> int:
        """Queued plus active jobs of one owner."""
        with self._lock, self._table("jobs") as db:
            items = list(db.values())
        live = {JobState.QUEUED.value, JobState.ACTIVE.value}
        return sum(1 for v in items if v.get("owner_id") == owner_id and v.get("state") in live)

    def delete(self, id: str) -> None:
        with self._write_lock(), self._lock, self._table("jobs") as db:
            if id in db:
                del db[id]

    def set_progress(self, id: str, progress: float, message: str | None = None) -> Job | None:
        """Raise progress; never lowers it and never touches a terminal job."""

        def apply(raw: dict[str, Any]) -> dict[str, Any] | None:
            if JobState(raw["state"]).terminal:
                return None
            pct = max(float(raw.get("progress") or 0.0), min(100.0, float(progress)))
            if pct == float(raw.get("progress") or 0.0) and message is None:
                return None
            raw["progress"] = pct
            if message is not None:
                raw["message"] = str(message)
            raw["updated_at"] = now_utc()
            return raw

        raw = self._mutate("jobs", id, apply)
        return Job.from_dict(raw) if raw is not None else None

    def begin_attempt(self, id: str) -> Job | None:
        """
        Compare-and-set queued -> active, counting the attempt.

        None when the job is gone, not queued (another worker holds it or it
        finished) or has no attempts left. At most one caller wins per attempt,
        across processes sharing the store.
        """
        started: dict[str, bool] = {"ok": False}

        def apply(raw: dict[str, Any]) -> dict[str, Any] | None:
            if raw["state"] != JobState.QUEUED.value:
                return None
            if int(raw.get("attempts") or 0) >= int(raw.get("max_attempts") or 1):
                return None
            raw["state"] = JobState.ACTIVE.value
            raw["attempts"] = int(raw.get("attempts") or 0) + 1
            raw["heartbeat_at"] = time.time()
            raw["updated_at"] = now_utc()
            started["ok"] = True
            return raw

        raw = self._mutate("jobs", id, apply)
        if raw is None or not started["ok"]:
            return None
        return Job.from_dict(raw)

    def touch(self, id: str) -> bool:
        """Renew the heartbeat of an active job. False once it is no longer active."""

        def apply(raw: dict[str, Any]) -> dict[str, Any] | None:
            if raw["state"] != JobState.ACTIVE.value:
                return None
            raw["heartbeat_at"] = time.time()
            return raw

        raw = self._mutate("jobs", id, apply)
        return raw is not None and raw["state"] == JobState.ACTIVE.value

    def reclaim_stale(
        self, id: str, *, lease_s: float, error: dict[str, Any], now: float | None = None
    ) -> Job | None:
        """
        Take back an active job whose heartbeat is older than `lease_s`.

        With attempts left it goes back to queued; on its final attempt it
        fails with `error`. Returns the job only for the caller that made the
        transition, so a failed one gets its terminal side effects once.
        """
        t = time.time() if now is None else float(now)
        won: dict[str, bool] = {"ok": False}

        def apply(raw: dict[str, Any]) -> dict[str, Any] | None:
            if raw["state"] != JobState.ACTIVE.value:
                return None
            if t - float(raw.get("heartbeat_at") or 0.0) <= float(lease_s):
                return None
            if int(raw.get("attempts") or 0) < int(raw.get("max_attempts") or 1):
                raw["state"] = JobState.QUEUED.value
                raw["message"] = "Requeued after worker loss"
            else:
                raw["state"] = JobState.FAILED.value
                raw["result"] = None
                raw["error"] = dict(error)
                raw["message"] = str(error.get("message") or "Failed")
            raw["updated_at"] = now_utc()
            won["ok"] = True
            return raw

        raw = self._mutate("jobs", id, apply)
        if raw is None or not won["ok"]:
            return None
        return Job.from_dict(raw)

    def mark_retrying(self, id: str, error: dict[str, Any]) -> Job | None:
        def apply(raw: dict[str, Any]) -> dict[str, Any] | None:
            if JobState(raw["state"]).terminal:
                return None
            raw["state"] = JobState.QUEUED.value
            raw["message"] = f"Retrying after {error.get('kind', 'error')}"
            raw["error"] = dict(error)
            raw["updated_at"] = now_utc()
            return raw

        raw = self._mutate("jobs", id, apply)
        return Job.from_dict(raw) if raw is not None else None

    def finish(
        self,
        id: str,
        state: JobState,
        *,
        result: dict[str, Any] | None = None,
        error: dict[str, Any] | None = None,
        message: str = "",
    ) -> Job | None:
        """
        Move a job to its terminal state.

        Returns the job only for the caller that performed the transition, so
        terminal side effects (webhook, batch accounting) run exactly once.
        """
        if not state.terminal:
            raise ValueError(f"not a terminal state: {state}")
        won: dict[str, bool] = {"ok": False}

        def apply(raw: dict[str, Any]) -> dict[str, Any] | None:
            if JobState(raw["state"]).terminal:
                return None
            raw["state"] = state.value
            raw["result"] = result
            raw["error"] = error if state == JobState.FAILED else None
            if state == JobState.COMPLETED:
                raw["progress"] = 100.0
            raw["message"] = message or ("Completed" if state == JobState.COMPLETED else "Failed")
            raw["updated_at"] = now_utc()
            won["ok"] = True
            return raw

        raw = self._mutate("jobs", id, apply)
        if raw is None or not won["ok"]:
            return None
        return Job.from_dict(raw)

    # --- upload sessions ---

    def put_upload(self, sess: UploadSession) -> None:
        with self._write_lock(), self._lock, self._table("uploads") as db:
            db[sess.upload_id] = sess.to_dict()

    def get_upload(self, upload_id: str) -> UploadSession | None:
        with self._lock, self._table("uploads") as db:
            raw = db.get(upload_id)
        return UploadSession.from_dict(raw) if raw is not None else None

    def update_upload(
        self, upload_id: str, fn: Callable[[UploadSession], UploadSession | None]
    ) -> UploadSession | None:
        def apply(raw: dict[str, Any]) -> dict[str, Any] | None:
            new = fn(UploadSession.from_dict(raw))
            return new.to_dict() if new is not None else None

        raw = self._mutate("uploads", upload_id, apply)
        return UploadSession.from_dict(raw) if raw is not None else None

    def delete_upload(self, upload_id: str) -> None:
        with self._write_lock(), self._lock, self._table("uploads") as db:
            if upload_id in db:
                del db[upload_id]

    def list_uploads(self) -> list[UploadSession]:
        with self._lock, self._table("uploads") as db:
            items = list(db.values())
        return [UploadSession.from_dict(v) for v in items]

    # --- batches ---

    def put_batch(self, batch: BatchJob) -> None:
        with self._write_lock(), self._lock, self._table("batches") as db:
            db[batch.id] = batch.to_dict()

    def get_batch(self, batch_id: str) -> BatchJob | None:
        with self._lock, self._table("batches") as db:
            raw = db.get(batch_id)
        return BatchJob.from_dict(raw) if raw is not None else None

    def update_batch(
        self, batch_id: str, fn: Callable[[BatchJob], BatchJob | None]
    ) -> BatchJob | None:
        def apply(raw: dict[str, Any]) -> dict[str, Any] | None:
            new = fn(BatchJob.from_dict(raw))
            return new.to_dict() if new is not None else None

        raw = self._mutate("batches", batch_id, apply)
        return BatchJob.from_dict(raw) if raw is not None else None

    def delete_batch(self, batch_id: str) -> None:
        with self._write_lock(), self._lock, self._table("batches") as db:
            if batch_id in db:
                del db[batch_id]

    def list_batches(self) -> list[BatchJob]:
        with self._lock, self._table("batches") as db:
            items = list(db.values())
        return [BatchJob.from_dict(v) for v in items]
