from __future__ import annotations

import time
from typing import Any

from videotext_pipeline.config import get_settings
from videotext_pipeline.jobs.errors import BacklogFull, ConcurrencyLimit, RateLimited
from videotext_pipeline.jobs.limits import get_plan_limits
from videotext_pipeline.jobs.models import PlanTier
from videotext_pipeline.ops import metrics
from videotext_pipeline.store.kv import KVStore
from videotext_pipeline.utils.log import logger

ANONYMOUS = "anonymous"


class AdmissionController:
    """
    Gatekeeper in front of the queue: per-identity upload rate limit and
    global backlog thresholds. Nothing here allocates job resources.
    """

    def __init__(
        self,
        kv: KVStore,
        *,
        upload_limit: int | None = None,
        window_s: float | None = None,
        soft_limit: int | None = None,
        hard_limit: int | None = None,
    ) -> None:
        s = get_settings()
        self.kv = kv
        self.upload_limit = int(upload_limit if upload_limit is not None else s.upload_rate_limit)
        self.window_s = float(window_s if window_s is not None else s.upload_rate_window_s)
        self.soft_limit = int(soft_limit if soft_limit is not None else s.queue_soft_limit)
        self.hard_limit = int(hard_limit if hard_limit is not None else s.queue_hard_limit)

    @staticmethod
    def _key(identity: str | None) -> str:
        return f"ratelimit:upload:{identity or ANONYMOUS}"

    def check_and_record_upload(self, identity: str | None) -> bool:
        """
        Sliding window: allowed when fewer than `upload_limit` attempts were
        recorded in the last `window_s` seconds. Only allowed attempts count.
        """
        now = time.time()
        cutoff = now - self.window_s
        decision: dict[str, bool] = {"allowed": False}

        def apply(cur: Any | None) -> list[float]:
            stamps = [float(t) for t in (cur or []) if float(t) > cutoff]
            if len(stamps) < self.upload_limit:
                stamps.append(now)
                decision["allowed"] = True
            return stamps

        self.kv.mutate(self._key(identity), apply, ttl_s=self.window_s)
        if not decision["allowed"]:
            logger.warning("upload_rate_limited", identity=identity or ANONYMOUS)
            metrics.admission_rejected.labels(reason="rate_limited").inc()
        return decision["allowed"]

    def require_upload_slot(self, identity: str | None) -> None:
        if not self.check_and_record_upload(identity):
            raise RateLimited(
                f"Too many uploads; at most {self.upload_limit} per {int(self.window_s)}s",
                retry_after_s=int(self.window_s),
            )

    def is_queue_at_soft_limit(self, depth: int) -> bool:
        return int(depth) >= self.soft_limit

    def is_queue_at_hard_limit(self, depth: int) -> bool:
        return int(depth) >= self.hard_limit

    def admit(self, depth: int, *, bulk: bool = False) -> None:
        """Raise BacklogFull when the submission must be turned away."""
        if self.is_queue_at_hard_limit(depth):
            logger.warning("admission_rejected", reason="hard_limit", depth=int(depth), bulk=bulk)
            metrics.admission_rejected.labels(reason="hard_limit").inc()
            raise BacklogFull("Queue is full; retry later")
        if bulk and self.is_queue_at_soft_limit(depth):
            logger.warning("admission_rejected", reason="soft_limit", depth=int(depth), bulk=bulk)
            metrics.admission_rejected.labels(reason="soft_limit").inc()
            raise BacklogFull("Queue is busy; bulk submissions are paused, retry later")

    def require_job_slot(self, owner_id: str, plan: PlanTier | str, unfinished: int) -> None:
        """Per-owner cap on queued plus active jobs, from the plan table."""
        cap = get_plan_limits(plan).max_concurrent_jobs
        if int(unfinished) >= cap:
            logger.warning(
                "admission_rejected",
                reason="concurrent_jobs",
                owner_id=owner_id,
                unfinished=int(unfinished),
                cap=cap,
            )
            metrics.admission_rejected.labels(reason="concurrent_jobs").inc()
            raise ConcurrencyLimit(f"At most {cap} unfinished job(s) on the {PlanTier(plan).value} plan")
