from __future__ import annotations

import hashlib
import shutil
import time
from contextlib import suppress
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from videotext_pipeline.config import get_settings
from videotext_pipeline.jobs.errors import (
    ChunkCountInvalid,
    ChunkIndexInvalid,
    InvalidInput,
    MissingChunk,
    SizeExceeded,
    UploadNotFound,
)
from videotext_pipeline.jobs.limits import get_plan_limits
from videotext_pipeline.jobs.models import PlanTier, ToolType, UploadSession, new_id
from videotext_pipeline.jobs.store import JobStore
from videotext_pipeline.utils.log import logger
from videotext_pipeline.utils.naming import sanitize_filename, unique_upload_name

_COPY_BLOCK = 1024 * 1024


@dataclass(frozen=True, slots=True)
class AssembledUpload:
    path: Path
    size: int
    sha256: str
    session: UploadSession


class UploadAssembler:
    """
    Chunked upload reassembly.

    Chunks land as separate files under `<uploads>/chunks/<upload_id>/` and are
    streamed into one output file on `complete()`. Sessions are single use and
    abandoned ones are removed by `sweep_expired()`.
    """

    def __init__(
        self,
        store: JobStore,
        *,
        uploads_dir: Path | None = None,
        max_chunks: int | None = None,
        session_ttl_s: float | None = None,
    ) -> None:
        s = get_settings()
        self.store = store
        self.uploads_dir = Path(uploads_dir or s.resolved_uploads_dir).resolve()
        self.max_chunks = int(max_chunks if max_chunks is not None else s.upload_max_chunks)
        self.session_ttl_s = float(
            session_ttl_s if session_ttl_s is not None else s.upload_session_ttl_s
        )

    def _chunk_dir(self, upload_id: str) -> Path:
        return self.uploads_dir / "chunks" / upload_id

    def _chunk_path(self, upload_id: str, index: int) -> Path:
        return self._chunk_dir(upload_id) / f"{int(index):06d}.part"

    def _require(self, upload_id: str) -> UploadSession:
        sess = self.store.get_upload(str(upload_id))
        if sess is None:
            raise UploadNotFound(f"Unknown upload: {upload_id}")
        return sess

    def _discard(self, upload_id: str) -> None:
        self.store.delete_upload(upload_id)
        shutil.rmtree(self._chunk_dir(upload_id), ignore_errors=True)

    def init(
        self,
        *,
        owner_id: str,
        plan: PlanTier,
        filename: str,
        total_size: int,
        total_chunks: int,
        tool_type: ToolType = ToolType.VIDEO_TO_SUBTITLES,
        options: dict[str, Any] | None = None,
    ) -> str:
        if not 1 <= int(total_chunks) <= self.max_chunks:
            raise ChunkCountInvalid(f"Chunk count must be between 1 and {self.max_chunks}")
        if int(total_size) <= 0:
            raise InvalidInput("Declared size must be positive")
        limit = get_plan_limits(plan).max_file_bytes
        if int(total_size) > limit:
            raise SizeExceeded(f"File exceeds the {plan.value} plan limit of {limit} bytes")

        now = time.time()
        sess = UploadSession(
            upload_id=new_id(),
            owner_id=str(owner_id),
            plan=PlanTier(plan),
            filename=sanitize_filename(filename),
            total_size=int(total_size),
            total_chunks=int(total_chunks),
            created_at=now,
            updated_at=now,
            tool_type=ToolType(tool_type),
            options=dict(options or {}),
        )
        self._chunk_dir(sess.upload_id).mkdir(parents=True, exist_ok=True)
        self.store.put_upload(sess)
        logger.info(
            "upload_init",
            upload_id=sess.upload_id,
            user_id=sess.owner_id,
            filename=sess.filename,
            total_size=sess.total_size,
            total_chunks=sess.total_chunks,
        )
        return sess.upload_id

    def put_chunk(self, upload_id: str, index: int, data: bytes) -> int:
        """Store one chunk; returns bytes received so far. A resent index replaces the earlier copy."""
        sess = self._require(upload_id)
        idx = int(index)
        if not 0 <= idx < sess.total_chunks:
            raise ChunkIndexInvalid(f"Chunk index {idx} outside [0, {sess.total_chunks})")
        if sess.assembling:
            raise InvalidInput("Upload is already being assembled")

        projected = sess.received_bytes - int(sess.received.get(str(idx), 0)) + len(data)
        if projected > sess.total_size:
            logger.warning(
                "upload_chunk_oversize",
                upload_id=upload_id,
                index=idx,
                received_bytes=projected,
                total_size=sess.total_size,
            )
            raise SizeExceeded(f"Received {projected} bytes, declared {sess.total_size}")

        dst = self._chunk_path(upload_id, idx)
        dst.parent.mkdir(parents=True, exist_ok=True)
        tmp = dst.with_suffix(".tmp")
        tmp.write_bytes(data)
        tmp.replace(dst)

        def apply(cur: UploadSession) -> UploadSession:
            cur.received[str(idx)] = len(data)
            cur.updated_at = time.time()
            return cur

        updated = self.store.update_upload(upload_id, apply)
        if updated is None:
            raise UploadNotFound(f"Unknown upload: {upload_id}")
        logger.info(
            "upload_chunk_received",
            upload_id=upload_id,
            index=idx,
            size=len(data),
            received_bytes=updated.received_bytes,
        )
        return updated.received_bytes

    def missing_chunks(self, upload_id: str) -> list[int]:
        return self._require(upload_id).missing()

    def _claim(self, upload_id: str) -> UploadSession:
        claimed: dict[str, bool] = {"ok": False}

        def apply(cur: UploadSession) -> UploadSession | None:
            if cur.assembling:
                return None
            cur.assembling = True
            claimed["ok"] = True
            return cur

        sess = self.store.update_upload(upload_id, apply)
        if sess is None:
            raise UploadNotFound(f"Unknown upload: {upload_id}")
        if not claimed["ok"]:
            raise InvalidInput("Upload is already being assembled")
        return sess

    def _release(self, upload_id: str) -> None:
        def apply(cur: UploadSession) -> UploadSession:
            cur.assembling = False
            return cur

        self.store.update_upload(upload_id, apply)

    def complete(self, upload_id: str) -> AssembledUpload:
        """
        Stream every chunk, in index order, into one file.

        MissingChunk keeps the session so the caller can resend. SizeExceeded
        stops at the first byte over the declared size or plan limit, deletes
        the partial output and discards the session.
        """
        sess = self._require(upload_id)
        missing = sess.missing()
        if missing:
            logger.warning(
                "upload_incomplete_missing_chunks",
                upload_id=upload_id,
                missing_chunks=len(missing),
                first_missing=missing[0],
            )
            raise MissingChunk(missing[0])

        sess = self._claim(upload_id)
        limit = min(sess.total_size, get_plan_limits(sess.plan).max_file_bytes)
        final_path = self.uploads_dir / unique_upload_name(sess.filename)
        part_path = final_path.with_name(final_path.name + ".part")
        h = hashlib.sha256()
        written = 0
        try:
            with part_path.open("wb") as out:
                for idx in range(sess.total_chunks):
                    src = self._chunk_path(upload_id, idx)
                    if not src.exists():
                        raise MissingChunk(idx)
                    with src.open("rb") as f:
                        for buf in iter(lambda: f.read(_COPY_BLOCK), b""):
                            written += len(buf)
                            if written > limit:
                                raise SizeExceeded(
                                    f"Assembled size exceeds {limit} bytes at chunk {idx}"
                                )
                            h.update(buf)
                            out.write(buf)
        except MissingChunk:
            with suppress(Exception):
                part_path.unlink(missing_ok=True)
            self._release(upload_id)
            raise
        except SizeExceeded:
            with suppress(Exception):
                part_path.unlink(missing_ok=True)
            self._discard(upload_id)
            logger.warning("upload_size_exceeded", upload_id=upload_id, written=written, limit=limit)
            raise
        except BaseException:
            with suppress(Exception):
                part_path.unlink(missing_ok=True)
            self._release(upload_id)
            raise

        part_path.replace(final_path)
        self._discard(upload_id)
        logger.info(
            "upload_completed",
            upload_id=upload_id,
            user_id=sess.owner_id,
            path=str(final_path),
            size=written,
        )
        return AssembledUpload(path=final_path, size=written, sha256=h.hexdigest(), session=sess)

    def abort(self, upload_id: str) -> None:
        if self.store.get_upload(upload_id) is None:
            return
        self._discard(upload_id)
        logger.info("upload_aborted", upload_id=upload_id)

    def sweep_expired(self, *, now: float | None = None) -> int:
        """Drop sessions idle for longer than the session TTL, with their chunk files."""
        t = time.time() if now is None else float(now)
        n = 0
        for sess in self.store.list_uploads():
            if t - float(sess.updated_at) > self.session_ttl_s:
                self._discard(sess.upload_id)
                n += 1
        if n:
            logger.info("upload_sessions_swept", count=n)
        return n
