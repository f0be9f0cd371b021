from __future__ import annotations

import asyncio
from contextlib import suppress

from videotext_pipeline.batch.aggregator import BatchAggregator
from videotext_pipeline.cache.store import DedupCache, options_hash
from videotext_pipeline.config import get_settings
from videotext_pipeline.jobs.errors import ErrorKind, HungTask, classify, error_payload
from videotext_pipeline.jobs.executor import ExecutionOutcome, JobExecutor
from videotext_pipeline.jobs.limits import max_runtime_s
from videotext_pipeline.jobs.models import Job, JobState, Lane
from videotext_pipeline.jobs.policy import should_retry
from videotext_pipeline.jobs.store import JobStore
from videotext_pipeline.jobs.usage import LogUsageRecorder, UsageRecorder
from videotext_pipeline.notify.webhook import WebhookNotifier, build_payload
from videotext_pipeline.ops import metrics
from videotext_pipeline.queue.lanes import LaneQueue
from videotext_pipeline.runtime.watchdog import ProgressChannel, Supervisor
from videotext_pipeline.streaming.partial import PartialPublisher
from videotext_pipeline.utils.log import logger, set_job_id, set_user_id


class WorkerPool:
    """
    Fixed set of asyncio workers per lane.

    A worker owns one attempt at a time: it moves the job to active, runs the
    executor under the supervisor, then completes, requeues or fails it.
    Terminal side effects run only for the caller whose `finish()` won.

    While it runs an attempt the worker renews the job's lease in the store.
    A background poll takes back active jobs whose lease expired (their
    worker died) and picks up work queued by other processes sharing the
    store; `begin_attempt` makes sure only one worker runs each attempt.
    """

    def __init__(
        self,
        *,
        queue: LaneQueue,
        store: JobStore,
        executor: JobExecutor,
        supervisor: Supervisor,
        partials: PartialPublisher,
        batches: BatchAggregator | None = None,
        notifier: WebhookNotifier | None = None,
        usage: UsageRecorder | None = None,
        cache: DedupCache | None = None,
        workers_standard: int | None = None,
        workers_priority: int | None = None,
        lease_s: float | None = None,
        poll_interval_s: float | None = None,
    ) -> None:
        s = get_settings()
        self.queue = queue
        self.store = store
        self.executor = executor
        self.supervisor = supervisor
        self.partials = partials
        self.batches = batches
        self.notifier = notifier or WebhookNotifier()
        self.usage = usage or LogUsageRecorder()
        self.cache = cache
        self.workers_standard = max(
            1, int(workers_standard if workers_standard is not None else s.workers_standard)
        )
        self.workers_priority = max(
            1, int(workers_priority if workers_priority is not None else s.workers_priority)
        )
        self.lease_s = float(lease_s if lease_s is not None else s.active_lease_s)
        self.poll_interval_s = float(
            poll_interval_s if poll_interval_s is not None else s.queue_poll_interval_s
        )
        self._tasks: list[asyncio.Task[None]] = []

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    async def start(self) -> None:
        if self._tasks:
            return
        # jobs left behind by a previous process
        await self._sweep_store()
        for lane, n in (
            (Lane.STANDARD, self.workers_standard),
            (Lane.PRIORITY, self.workers_priority),
        ):
            for i in range(n):
                self._tasks.append(
                    asyncio.create_task(self._worker(lane), name=f"worker:{lane.value}:{i}")
                )
        if self.poll_interval_s > 0:
            self._tasks.append(asyncio.create_task(self._poll_store(), name="queue-poll"))
        logger.info(
            "worker_pool_started",
            standard=self.workers_standard,
            priority=self.workers_priority,
        )

    async def stop(self) -> None:
        for t in self._tasks:
            t.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        await self.notifier.drain()
        logger.info("worker_pool_stopped")

    async def drain(self, *, timeout_s: float | None = None) -> bool:
        """
        Refuse new submissions, wait for queued and active jobs, then stop.
        Returns False when the timeout hit first; workers are stopped either way.
        """
        self.queue.start_draining()
        ok = True
        try:
            await asyncio.wait_for(self.queue.wait_idle(), timeout=timeout_s)
        except asyncio.TimeoutError:
            ok = False
            logger.warning("worker_pool_drain_timeout", **self.queue.snapshot())
        finally:
            await self.stop()
            self.queue.end_draining()
        return ok

    async def _sweep_store(self) -> None:
        await self._reclaim_orphans()
        await self.queue.recover()

    async def _poll_store(self) -> None:
        while True:
            await asyncio.sleep(self.poll_interval_s)
            try:
                await self._sweep_store()
            except asyncio.CancelledError:
                raise
            except Exception as ex:
                logger.warning("queue_poll_failed", error=str(ex))

    async def _reclaim_orphans(self) -> None:
        """
        Take back active jobs whose lease lapsed. One with attempts left goes
        back to queued and `recover` pushes it right after; one on its final attempt
        fails with a hung_task error instead of running again.
        """
        payload = error_payload(HungTask("Worker stopped during the final attempt"))
        for job in await asyncio.to_thread(self.store.list, state=JobState.ACTIVE):
            if self.queue.holds(job.id):
                continue
            cur = await asyncio.to_thread(
                self.store.reclaim_stale, job.id, lease_s=self.lease_s, error=payload
            )
            if cur is None:
                continue
            if cur.state == JobState.FAILED:
                await self._after_failure(cur, ErrorKind.HUNG_TASK, payload)
            else:
                metrics.job_retries.labels(kind=ErrorKind.HUNG_TASK.value).inc()
                logger.warning("job_reclaimed", job_id=cur.id, attempts=cur.attempts)

    async def _renew_lease(self, job_id: str) -> None:
        while True:
            await asyncio.sleep(max(0.05, self.lease_s / 3))
            if not await asyncio.to_thread(self.store.touch, job_id):
                return

    async def _worker(self, lane: Lane) -> None:
        while True:
            job_id = await self.queue.get(lane)
            requeued = False
            try:
                requeued = await self._run_attempt(job_id)
            except asyncio.CancelledError:
                raise
            except Exception as ex:
                # bookkeeping failure outside the attempt itself; the job stays
                # active in the store and its lease lapses
                logger.exception("worker_attempt_crashed", job_id=job_id, error=str(ex))
            finally:
                set_job_id(None)
                set_user_id(None)
                if not requeued:
                    await self.queue.task_done(job_id)

    async def _pump(self, job_id: str, channel: ProgressChannel) -> None:
        while True:
            pct, message = await channel.next_update()
            await asyncio.to_thread(self.store.set_progress, job_id, pct, message)

    async def _run_attempt(self, job_id: str) -> bool:
        """Run one attempt; True when the job went back on the queue."""
        job = await asyncio.to_thread(self.store.begin_attempt, job_id)
        if job is None:
            logger.info("worker_skip", job_id=job_id, reason="not_queued")
            return False
        set_job_id(job.id)
        set_user_id(job.owner_id)
        logger.info(
            "job_started",
            job_id=job.id,
            tool=job.tool_type.value,
            lane=job.lane.value,
            attempt=job.attempts,
        )

        channel = ProgressChannel()
        pump = asyncio.create_task(self._pump(job.id, channel), name=f"progress:{job.id}")
        lease = asyncio.create_task(self._renew_lease(job.id), name=f"lease:{job.id}")
        try:
            with metrics.time_hist(metrics.job_seconds.labels(tool=job.tool_type.value)) as elapsed:
                outcome = await self.supervisor.run(
                    self.executor.run(job, channel),
                    channel,
                    max_runtime_s=max_runtime_s(job.plan),
                    job_id=job.id,
                )
        except asyncio.CancelledError:
            raise
        except Exception as ex:
            return await self._on_failure(job, ex)
        finally:
            for t in (pump, lease):
                t.cancel()
                with suppress(asyncio.CancelledError):
                    await t

        await self._on_success(job, outcome, elapsed())
        return False

    async def _on_success(self, job: Job, outcome: ExecutionOutcome, seconds: float) -> None:
        done = await asyncio.to_thread(
            self.store.finish, job.id, JobState.COMPLETED, result=outcome.result
        )
        if done is None:
            logger.info("job_finish_skipped", job_id=job.id, state="completed")
            return
        if outcome.usage is not None:
            self.usage.record(outcome.usage)
        if self.cache is not None and outcome.cache_path is not None and job.content_hash:
            await asyncio.to_thread(
                self.cache.store,
                job.owner_id,
                job.content_hash,
                job.tool_type,
                job.options_hash or options_hash(job.tool_type, job.options),
                outcome.cache_path,
                outcome.cache_path.name,
            )
        await asyncio.to_thread(self.partials.discard, job.id)
        self.partials.forget(job.id)
        if job.batch_id and self.batches is not None:
            await asyncio.to_thread(self.batches.record_success, job.batch_id)
        await asyncio.to_thread(self.executor.cleanup_scratch, job)
        self._notify(done)
        metrics.jobs_finished.labels(state=JobState.COMPLETED.value).inc()
        logger.info(
            "job_completed",
            job_id=job.id,
            tool=job.tool_type.value,
            attempts=job.attempts,
            seconds=round(seconds, 3),
        )

    async def _on_failure(self, job: Job, ex: Exception) -> bool:
        kind = classify(ex)
        payload = error_payload(ex)
        if should_retry(job.attempts, kind, max_attempts=job.max_attempts):
            cur = await asyncio.to_thread(self.store.mark_retrying, job.id, payload)
            if cur is not None:
                metrics.job_retries.labels(kind=kind.value).inc()
                logger.warning(
                    "job_retry",
                    job_id=job.id,
                    kind=kind.value,
                    attempt=job.attempts,
                    error=payload["message"],
                )
                await self.queue.requeue(cur)
                return True
            return False

        done = await asyncio.to_thread(
            self.store.finish,
            job.id,
            JobState.FAILED,
            error=payload,
            message=str(payload["message"]),
        )
        if done is None:
            logger.info("job_finish_skipped", job_id=job.id, state="failed")
            return False
        await self._after_failure(done, kind, payload)
        return False

    async def _after_failure(self, job: Job, kind: ErrorKind, payload: dict) -> None:
        """Side effects of a failed job, for the caller that made it terminal."""
        # version counter only; the last snapshot stays readable until its TTL
        self.partials.forget(job.id)
        if job.batch_id and self.batches is not None:
            await asyncio.to_thread(
                self.batches.record_failure,
                job.batch_id,
                job.original_name or job.id,
                str(payload["message"]),
            )
        await asyncio.to_thread(self.executor.cleanup_scratch, job)
        self._notify(job)
        metrics.jobs_finished.labels(state=JobState.FAILED.value).inc()
        logger.warning(
            "job_failed",
            job_id=job.id,
            tool=job.tool_type.value,
            kind=kind.value,
            attempts=job.attempts,
            no_charge=bool(payload.get("no_charge")),
            error=payload["message"],
        )

    def _notify(self, job: Job) -> None:
        if not job.webhook_url:
            return
        body = build_payload(job.id, job.state.value, result=job.result, error=job.error)
        self.notifier.notify(job.webhook_url, body)
