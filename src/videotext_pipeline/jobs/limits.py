from __future__ import annotations

import math
from dataclasses import dataclass

from videotext_pipeline.jobs.models import PlanTier

_GB = 1024 * 1024 * 1024


@dataclass(frozen=True, slots=True)
class PlanLimits:
    max_video_min: int
    max_file_bytes: int
    max_concurrent_jobs: int
    max_languages: int
    # wall-clock cap applied only while the backlog is deep
    max_runtime_min: int
    # scheduling weight, lower runs first
    priority_weight: int
    batch_enabled: bool = False
    batch_max_videos: int = 0
    batch_max_total_min: int = 0


PLAN_LIMITS: dict[PlanTier, PlanLimits] = {
    PlanTier.FREE: PlanLimits(
        max_video_min=5,
        max_file_bytes=2 * _GB,
        max_concurrent_jobs=1,
        max_languages=1,
        max_runtime_min=10,
        priority_weight=10,
    ),
    PlanTier.BASIC: PlanLimits(
        max_video_min=30,
        max_file_bytes=5 * _GB,
        max_concurrent_jobs=1,
        max_languages=2,
        max_runtime_min=15,
        priority_weight=5,
    ),
    PlanTier.PRO: PlanLimits(
        max_video_min=120,
        max_file_bytes=10 * _GB,
        max_concurrent_jobs=2,
        max_languages=5,
        max_runtime_min=30,
        priority_weight=2,
        batch_enabled=True,
        batch_max_videos=20,
        batch_max_total_min=60,
    ),
    PlanTier.AGENCY: PlanLimits(
        max_video_min=240,
        max_file_bytes=20 * _GB,
        max_concurrent_jobs=3,
        max_languages=10,
        max_runtime_min=45,
        priority_weight=1,
        batch_enabled=True,
        batch_max_videos=100,
        batch_max_total_min=300,
    ),
}

PRIVILEGED_PLANS = frozenset({PlanTier.PRO, PlanTier.AGENCY})


def get_plan_limits(plan: PlanTier | str) -> PlanLimits:
    return PLAN_LIMITS[PlanTier(plan)]


def priority_weight(plan: PlanTier | str) -> int:
    return get_plan_limits(plan).priority_weight


def max_runtime_s(plan: PlanTier | str) -> float:
    return float(get_plan_limits(plan).max_runtime_min) * 60.0


def seconds_to_minutes(seconds: float) -> int:
    """Billable minutes, always rounded up."""
    return int(math.ceil(max(0.0, float(seconds)) / 60.0))


def translation_minutes(seconds: float, extra_languages: int) -> int:
    """Each additional language is metered at half the source minutes."""
    if extra_languages <= 0:
        return 0
    return int(math.ceil(seconds_to_minutes(seconds) * 0.5 * int(extra_languages)))
