"""
Single entry point wiring admission, uploads, the queue, workers and the
best-effort collaborators (cache, partial results, batches, webhooks).

Callers (an HTTP layer, the CLI, tests) talk to `PipelineService` only.
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from videotext_pipeline.batch.aggregator import BatchAggregator
from videotext_pipeline.cache.store import DedupCache, hash_file, options_hash
from videotext_pipeline.config import get_settings
from videotext_pipeline.jobs.admission import AdmissionController
from videotext_pipeline.jobs.errors import (
    AccessDenied,
    DurationExceeded,
    InvalidInput,
    PlanNotAllowed,
)
from videotext_pipeline.jobs.executor import CACHEABLE_TOOLS, JobExecutor
from videotext_pipeline.jobs.limits import get_plan_limits
from videotext_pipeline.jobs.models import Job, JobState, PlanTier, ToolType, new_id, now_utc
from videotext_pipeline.jobs.store import JobStore
from videotext_pipeline.jobs.usage import LogUsageRecorder, UsageRecorder
from videotext_pipeline.notify.webhook import WebhookNotifier, is_valid_webhook_url
from videotext_pipeline.queue.lanes import LaneQueue
from videotext_pipeline.runtime.watchdog import Supervisor
from videotext_pipeline.runtime.workers import WorkerPool
from videotext_pipeline.store.kv import KVStore, SqliteKV, build_kv_store
from videotext_pipeline.streaming.partial import PartialPublisher, PartialStore, trim_for_response
from videotext_pipeline.tools.base import MediaOps, Transcriber, Translator
from videotext_pipeline.tools.ffmpeg import FfmpegMediaOps
from videotext_pipeline.uploads.assembler import UploadAssembler
from videotext_pipeline.utils.log import logger
from videotext_pipeline.utils.naming import sanitize_filename


@dataclass(frozen=True, slots=True)
class SubmitResult:
    job_id: str
    status: str = JobState.QUEUED.value
    job_token: str = ""
    cached: bool = False


@dataclass(frozen=True, slots=True)
class BatchItem:
    path: str
    name: str = ""
    # probed when not supplied
    duration_s: float | None = None


@dataclass(frozen=True, slots=True)
class BatchSubmitResult:
    batch_id: str
    job_ids: list[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.job_ids)


@dataclass(slots=True)
class Ops:
    """External engines plugged into the executor."""

    media: MediaOps
    transcriber: Transcriber | None = None
    translator: Translator | None = None
    usage: UsageRecorder | None = None


def _token_secret() -> bytes:
    return get_settings().job_token_secret.get_secret_value().encode("utf-8")


def job_token(job_id: str) -> str:
    return hmac.new(_token_secret(), str(job_id).encode("utf-8"), hashlib.sha256).hexdigest()


def verify_job_token(job_id: str, token: str | None) -> bool:
    if not token:
        return False
    return hmac.compare_digest(job_token(job_id), str(token))


class PipelineService:
    def __init__(
        self,
        *,
        store: JobStore,
        kv: KVStore,
        queue: LaneQueue,
        admission: AdmissionController,
        assembler: UploadAssembler,
        cache: DedupCache,
        partials: PartialPublisher,
        batches: BatchAggregator,
        pool: WorkerPool,
        media: MediaOps | None = None,
    ) -> None:
        self.store = store
        self.kv = kv
        self.queue = queue
        self.admission = admission
        self.assembler = assembler
        self.cache = cache
        self.partials = partials
        self.batches = batches
        self.pool = pool
        self.media = media

    # --- lifecycle ---

    async def start(self) -> None:
        await self.pool.start()

    async def stop(self) -> None:
        await self.pool.stop()

    async def drain(self, *, timeout_s: float | None = None) -> bool:
        return await self.pool.drain(timeout_s=timeout_s)

    # --- submission ---

    async def submit_job(
        self,
        *,
        owner_id: str,
        plan: PlanTier | str,
        tool_type: ToolType | str,
        inputs: list[str],
        options: dict[str, Any] | None = None,
        original_name: str = "",
        webhook_url: str = "",
        content_hash: str = "",
        bulk: bool = False,
    ) -> SubmitResult:
        """Admit and queue one job. Backlog rejections raise BacklogFull."""
        self.admission.admit(self.queue.depth(), bulk=bulk)
        await self._require_job_slot(owner_id, plan)
        return await self._enqueue(
            owner_id=owner_id,
            plan=PlanTier(plan),
            tool_type=ToolType(tool_type),
            inputs=inputs,
            options=options,
            original_name=original_name,
            webhook_url=webhook_url,
            content_hash=content_hash,
        )

    async def _require_job_slot(self, owner_id: str, plan: PlanTier | str) -> None:
        unfinished = await asyncio.to_thread(self.store.count_unfinished, str(owner_id))
        self.admission.require_job_slot(str(owner_id), plan, unfinished)

    async def _enqueue(
        self,
        *,
        owner_id: str,
        plan: PlanTier,
        tool_type: ToolType,
        inputs: list[str],
        options: dict[str, Any] | None,
        original_name: str = "",
        webhook_url: str = "",
        content_hash: str = "",
        batch_id: str = "",
        batch_position: int = 0,
        batch_total: int = 0,
    ) -> SubmitResult:
        if tool_type == ToolType.CACHED_RESULT:
            raise InvalidInput("cached-result jobs are created internally")
        if not inputs:
            raise InvalidInput("At least one input file is required")
        if webhook_url and not is_valid_webhook_url(webhook_url):
            raise InvalidInput("Webhook URL must be http(s)")

        opts = dict(options or {})
        ohash = options_hash(tool_type, opts)
        first = Path(str(inputs[0]))
        if tool_type in CACHEABLE_TOOLS and not content_hash and first.is_file():
            content_hash = await asyncio.to_thread(hash_file, first)

        now = now_utc()
        job = Job(
            id=new_id(),
            tool_type=tool_type,
            owner_id=str(owner_id),
            plan=plan,
            created_at=now,
            updated_at=now,
            inputs=[str(p) for p in inputs],
            options=opts,
            max_attempts=int(get_settings().job_attempts),
            original_name=sanitize_filename(original_name or first.name),
            content_hash=str(content_hash or ""),
            options_hash=ohash,
            webhook_url=str(webhook_url or ""),
            batch_id=batch_id,
            batch_position=int(batch_position),
            batch_total=int(batch_total),
        )

        cached = False
        if tool_type in CACHEABLE_TOOLS and job.content_hash:
            hit = await asyncio.to_thread(
                self.cache.lookup, job.owner_id, job.content_hash, tool_type, ohash
            )
            if hit is not None:
                job.tool_type = ToolType.CACHED_RESULT
                job.options = {
                    **opts,
                    "cached_result": {"fileName": hit.file_name, "path": hit.output_path},
                }
                cached = True

        await self.queue.enqueue(job)
        return SubmitResult(job_id=job.id, job_token=job_token(job.id), cached=cached)

    # --- chunked uploads ---

    async def init_upload(
        self,
        *,
        owner_id: str,
        plan: PlanTier | str,
        filename: str,
        total_size: int,
        total_chunks: int,
        tool_type: ToolType | str = ToolType.VIDEO_TO_SUBTITLES,
        options: dict[str, Any] | None = None,
        identity: str | None = None,
    ) -> str:
        """Rate limit, backlog and per-owner job checks happen here, once per upload."""
        self.admission.require_upload_slot(identity or owner_id)
        self.admission.admit(self.queue.depth())
        await self._require_job_slot(owner_id, plan)
        return await asyncio.to_thread(
            self.assembler.init,
            owner_id=owner_id,
            plan=PlanTier(plan),
            filename=filename,
            total_size=int(total_size),
            total_chunks=int(total_chunks),
            tool_type=ToolType(tool_type),
            options=options,
        )

    async def put_chunk(self, upload_id: str, index: int, data: bytes) -> int:
        return await asyncio.to_thread(self.assembler.put_chunk, upload_id, index, data)

    async def complete_upload(self, upload_id: str, *, webhook_url: str = "") -> SubmitResult:
        assembled = await asyncio.to_thread(self.assembler.complete, upload_id)
        sess = assembled.session
        return await self._enqueue(
            owner_id=sess.owner_id,
            plan=sess.plan,
            tool_type=sess.tool_type,
            inputs=[str(assembled.path)],
            options=sess.options,
            original_name=sess.filename,
            webhook_url=webhook_url,
            content_hash=assembled.sha256,
        )

    async def upload_missing_chunks(self, upload_id: str) -> list[int]:
        """Indexes still to send; lets a client resume after MissingChunk."""
        return await asyncio.to_thread(self.assembler.missing_chunks, upload_id)

    async def abort_upload(self, upload_id: str) -> None:
        await asyncio.to_thread(self.assembler.abort, upload_id)

    # --- batches ---

    async def submit_batch(
        self,
        *,
        owner_id: str,
        plan: PlanTier | str,
        items: list[BatchItem],
        options: dict[str, Any] | None = None,
        webhook_url: str = "",
    ) -> BatchSubmitResult:
        tier = PlanTier(plan)
        lim = get_plan_limits(tier)
        if not lim.batch_enabled:
            raise PlanNotAllowed("Batch processing not available for this plan")
        if not items:
            raise InvalidInput("A batch needs at least one video")
        if len(items) > lim.batch_max_videos:
            raise PlanNotAllowed(f"The {tier.value} plan allows {lim.batch_max_videos} videos per batch")

        total_s = 0.0
        for it in items:
            if it.duration_s is not None:
                total_s += float(it.duration_s)
            elif self.media is not None:
                total_s += float(await asyncio.to_thread(self.media.probe_duration, Path(it.path)))
            else:
                raise InvalidInput(f"Duration unknown for {it.name or it.path}")
        if total_s > lim.batch_max_total_min * 60:
            raise DurationExceeded(
                f"Batch runs {total_s / 60:.1f} min; the {tier.value} plan allows {lim.batch_max_total_min}"
            )

        self.admission.admit(self.queue.depth(), bulk=True)
        batch = await asyncio.to_thread(self.batches.create, owner_id, len(items))
        job_ids: list[str] = []
        for pos, it in enumerate(items, start=1):
            try:
                res = await self._enqueue(
                    owner_id=owner_id,
                    plan=tier,
                    tool_type=ToolType.BATCH_VIDEO_TO_SUBTITLES,
                    inputs=[it.path],
                    options=options,
                    original_name=it.name or Path(it.path).name,
                    webhook_url=webhook_url,
                    batch_id=batch.id,
                    batch_position=pos,
                    batch_total=len(items),
                )
            except Exception as ex:
                # items that never reached the queue still count, so the batch can finish
                for rest in items[pos - 1 :]:
                    await asyncio.to_thread(
                        self.batches.record_failure,
                        batch.id,
                        rest.name or Path(rest.path).name,
                        f"Not queued: {ex}",
                    )
                logger.warning(
                    "batch_submit_interrupted",
                    batch_id=batch.id,
                    queued=len(job_ids),
                    error=str(ex),
                )
                raise
            job_ids.append(res.job_id)
        logger.info("batch_submitted", batch_id=batch.id, owner_id=owner_id, total=len(job_ids))
        return BatchSubmitResult(batch_id=batch.id, job_ids=job_ids)

    # --- status ---

    def job_token(self, job_id: str) -> str:
        return job_token(job_id)

    def verify_job_token(self, job_id: str, token: str | None) -> bool:
        return verify_job_token(job_id, token)

    def job_status(self, job_id: str, *, token: str | None = None) -> dict[str, Any] | None:
        """
        Poll view of one job. A supplied token must match; None means unknown job.

        Queued jobs carry their 1-based lane position. Active jobs carry the
        latest partial snapshot, trimmed to the response size cap.
        """
        if token is not None and not verify_job_token(job_id, token):
            raise AccessDenied("Invalid job token")
        job = self.store.get(job_id)
        if job is None:
            return None
        out: dict[str, Any] = {
            "jobId": job.id,
            "status": job.state.value,
            "progress": int(job.progress),
            "tool": job.tool_type.value,
        }
        if job.message:
            out["message"] = job.message
        if job.state == JobState.QUEUED:
            pos = self.queue.position(job.id)
            if pos is not None:
                out["queuePosition"] = pos
        elif job.state == JobState.ACTIVE:
            rec = self.partials.read(job.id)
            if rec is not None:
                trimmed = trim_for_response(rec.to_dict())
                out["partialVersion"] = trimmed["version"]
                out["partialSegments"] = trimmed["segments"]
        elif job.state == JobState.COMPLETED:
            out["result"] = job.result
        elif job.state == JobState.FAILED:
            out["error"] = job.error
        if job.batch_id:
            out["batch"] = {
                "id": job.batch_id,
                "position": job.batch_position,
                "total": job.batch_total,
            }
        return out

    def batch_status(self, batch_id: str) -> dict[str, Any] | None:
        return self.batches.status(batch_id)

    # --- housekeeping ---

    def sweep(self) -> dict[str, int]:
        out = {
            "uploads": self.assembler.sweep_expired(),
            "batches": self.batches.sweep_expired(),
        }
        if isinstance(self.kv, SqliteKV):
            out["kv"] = self.kv.purge_expired()
        logger.info("sweep_done", **out)
        return out


def build(ops: Ops | None = None) -> PipelineService:
    """Wire a service from settings. Without `ops`, only ffmpeg-backed tools work."""
    s = get_settings()
    ops = ops or Ops(media=FfmpegMediaOps())
    store = JobStore(Path(s.resolved_state_dir) / str(s.jobs_db_name))
    kv = build_kv_store()
    queue = LaneQueue(store)
    partials = PartialPublisher(PartialStore(kv))
    batches = BatchAggregator(store)
    cache = DedupCache(kv)
    executor = JobExecutor(
        media=ops.media,
        transcriber=ops.transcriber,
        translator=ops.translator,
        partials=partials,
        batches=batches,
    )
    supervisor = Supervisor(
        watchdog_timeout_s=float(s.watchdog_timeout_s),
        deadline_interval_s=float(s.deadline_check_interval_s),
        deadline_threshold=int(s.deadline_backlog_threshold),
        depth=queue.depth,
    )
    pool = WorkerPool(
        queue=queue,
        store=store,
        executor=executor,
        supervisor=supervisor,
        partials=partials,
        batches=batches,
        notifier=WebhookNotifier(),
        usage=ops.usage or LogUsageRecorder(),
        cache=cache,
    )
    return PipelineService(
        store=store,
        kv=kv,
        queue=queue,
        admission=AdmissionController(kv),
        assembler=UploadAssembler(store),
        cache=cache,
        partials=partials,
        batches=batches,
        pool=pool,
        media=ops.media,
    )
