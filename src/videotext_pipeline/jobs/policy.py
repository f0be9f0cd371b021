from __future__ import annotations

from videotext_pipeline.jobs.errors import ErrorKind
from videotext_pipeline.jobs.limits import PRIVILEGED_PLANS
from videotext_pipeline.jobs.models import Lane, PlanTier

RETRYABLE_KINDS = frozenset({ErrorKind.TRANSIENT, ErrorKind.HUNG_TASK})


def should_retry(attempt_number: int, error_kind: ErrorKind | str, *, max_attempts: int = 2) -> bool:
    """
    Decide whether a failed attempt is re-run.

    `attempt_number` is the 1-based number of the attempt that just failed.
    Validation and deadline failures are final, as is anything on the last attempt.
    """
    kind = ErrorKind(error_kind)
    if kind not in RETRYABLE_KINDS:
        return False
    return int(attempt_number) < int(max_attempts)


def choose_lane(plan: PlanTier | str, backlog: int, *, threshold: int) -> Lane:
    """
    Privileged plans only get the reserved lane once the backlog is deep enough
    to need it; otherwise all work shares the standard lane.
    """
    if PlanTier(plan) in PRIVILEGED_PLANS and int(backlog) > int(threshold):
        return Lane.PRIORITY
    return Lane.STANDARD
