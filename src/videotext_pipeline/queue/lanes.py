from __future__ import annotations

import asyncio
import heapq
import itertools
import time
from dataclasses import dataclass, field
from typing import Any

from videotext_pipeline.config import get_settings
from videotext_pipeline.jobs.limits import priority_weight
from videotext_pipeline.jobs.models import Job, JobState, Lane
from videotext_pipeline.jobs.policy import choose_lane
from videotext_pipeline.jobs.store import JobStore
from videotext_pipeline.ops import metrics
from videotext_pipeline.utils.log import logger


class QueueClosed(RuntimeError):
    pass


@dataclass(order=True, slots=True)
class _Entry:
    priority: int
    enqueued_at: float
    seq: int
    job_id: str = field(compare=False)


class LaneQueue:
    """
    Two independent lanes (standard, priority), each a heap ordered by
    (priority weight, enqueue time, sequence).

    Depth counts waiting jobs in both lanes plus jobs a worker is running.
    """

    def __init__(self, store: JobStore, *, reservation_threshold: int | None = None) -> None:
        s = get_settings()
        self.store = store
        self.reservation_threshold = int(
            reservation_threshold
            if reservation_threshold is not None
            else s.priority_reservation_threshold
        )
        self._heaps: dict[Lane, list[_Entry]] = {Lane.STANDARD: [], Lane.PRIORITY: []}
        self._lanes: dict[str, Lane] = {}
        self._active: set[str] = set()
        self._seq = itertools.count()
        self._cond = asyncio.Condition()
        self._draining = False

    # --- introspection ---

    def waiting(self) -> int:
        return sum(len(h) for h in self._heaps.values())

    def active(self) -> int:
        return len(self._active)

    def depth(self) -> int:
        return self.waiting() + self.active()

    def position(self, job_id: str) -> int | None:
        """1-based position within the job's lane, None when not waiting."""
        lane = self._lanes.get(job_id)
        if lane is None:
            return None
        for i, e in enumerate(sorted(self._heaps[lane]), start=1):
            if e.job_id == job_id:
                return i
        return None

    def snapshot(self) -> dict[str, Any]:
        return {
            "standard": len(self._heaps[Lane.STANDARD]),
            "priority": len(self._heaps[Lane.PRIORITY]),
            "active": self.active(),
            "depth": self.depth(),
            "draining": self._draining,
        }

    # --- producers ---

    def _push(self, job_id: str, lane: Lane, priority: int) -> None:
        heapq.heappush(
            self._heaps[lane], _Entry(int(priority), time.monotonic(), next(self._seq), job_id)
        )
        self._lanes[job_id] = lane
        metrics.queue_depth.set(self.depth())

    async def enqueue(self, job: Job) -> Job:
        """Persist `job` as queued and place it in the lane its plan and the backlog call for."""
        if self._draining:
            raise QueueClosed("queue is draining")
        async with self._cond:
            lane = choose_lane(job.plan, self.depth(), threshold=self.reservation_threshold)
            job.lane = lane
            job.priority = priority_weight(job.plan)
            job.state = JobState.QUEUED
            await asyncio.to_thread(self.store.put, job)
            self._push(job.id, lane, job.priority)
            self._cond.notify_all()
        metrics.jobs_queued.labels(lane=lane.value).inc()
        logger.info(
            "queue_submit",
            job_id=job.id,
            tool=job.tool_type.value,
            plan=job.plan.value,
            lane=lane.value,
            priority=job.priority,
            depth=self.depth(),
        )
        return job

    async def requeue(self, job: Job) -> None:
        """Put a job back for its next attempt, keeping lane and weight."""
        async with self._cond:
            self._active.discard(job.id)
            self._push(job.id, job.lane, job.priority)
            self._cond.notify_all()
        logger.info("queue_requeue", job_id=job.id, lane=job.lane.value, attempts=job.attempts)

    # --- consumers ---

    async def get(self, lane: Lane) -> str:
        """Wait for the next job id in `lane`; the job counts as active until `task_done`."""
        async with self._cond:
            await self._cond.wait_for(lambda: bool(self._heaps[lane]))
            e = heapq.heappop(self._heaps[lane])
            self._lanes.pop(e.job_id, None)
            self._active.add(e.job_id)
            return e.job_id

    async def task_done(self, job_id: str) -> None:
        async with self._cond:
            self._active.discard(job_id)
            metrics.queue_depth.set(self.depth())
            self._cond.notify_all()

    async def wait_idle(self) -> None:
        async with self._cond:
            await self._cond.wait_for(lambda: self.depth() == 0)

    def start_draining(self) -> None:
        self._draining = True
        logger.info("queue_draining", **self.snapshot())

    def end_draining(self) -> None:
        self._draining = False

    def holds(self, job_id: str) -> bool:
        """True while the job waits in a lane here or a worker of this process runs it."""
        return job_id in self._lanes or job_id in self._active

    async def recover(self) -> int:
        """
        Push jobs the store has as queued but this process does not hold yet:
        work left by a previous process, submitted by another one, or taken
        back from a lost worker. Runs at start-up and on every store poll.
        Two processes may push the same job; `begin_attempt` lets one run it.
        """
        if self._draining:
            return 0
        jobs = await asyncio.to_thread(self.store.list, state=JobState.QUEUED)
        n = 0
        async with self._cond:
            for j in jobs:
                if self.holds(j.id) or j.attempts >= j.max_attempts:
                    continue
                self._push(j.id, j.lane, j.priority)
                n += 1
            if n:
                self._cond.notify_all()
        if n:
            logger.info("queue_recovered", count=n, depth=self.depth())
        return n
