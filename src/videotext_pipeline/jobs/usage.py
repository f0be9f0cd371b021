from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from videotext_pipeline.jobs.limits import seconds_to_minutes, translation_minutes
from videotext_pipeline.jobs.models import Job
from videotext_pipeline.utils.log import logger


@dataclass(frozen=True, slots=True)
class UsageRecord:
    job_id: str
    owner_id: str
    tool_type: str
    video_minutes: int
    translation_minutes: int = 0
    cached: bool = False


class UsageRecorder(Protocol):
    """Billing/metering sink; storage and reconciliation live outside this service."""

    def record(self, usage: UsageRecord) -> None: ...


class LogUsageRecorder:
    """Default recorder: emits one structured log event per billable job."""

    def record(self, usage: UsageRecord) -> None:
        logger.info(
            "usage_recorded",
            job_id=usage.job_id,
            owner_id=usage.owner_id,
            tool=usage.tool_type,
            video_minutes=usage.video_minutes,
            translation_minutes=usage.translation_minutes,
            cached=usage.cached,
        )


def usage_for(job: Job, *, duration_s: float, extra_languages: int = 0) -> UsageRecord:
    return UsageRecord(
        job_id=job.id,
        owner_id=job.owner_id,
        tool_type=job.tool_type.value,
        video_minutes=seconds_to_minutes(duration_s),
        translation_minutes=translation_minutes(duration_s, extra_languages),
    )
