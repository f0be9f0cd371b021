from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class ToolType(str, Enum):
    VIDEO_TO_TRANSCRIPT = "video-to-transcript"
    VIDEO_TO_SUBTITLES = "video-to-subtitles"
    BATCH_VIDEO_TO_SUBTITLES = "batch-video-to-subtitles"
    TRANSLATE_SUBTITLES = "translate-subtitles"
    FIX_SUBTITLES = "fix-subtitles"
    CONVERT_SUBTITLES = "convert-subtitles"
    BURN_SUBTITLES = "burn-subtitles"
    COMPRESS_VIDEO = "compress-video"
    CACHED_RESULT = "cached-result"


class PlanTier(str, Enum):
    FREE = "free"
    BASIC = "basic"
    PRO = "pro"
    AGENCY = "agency"


class JobState(str, Enum):
    QUEUED = "queued"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in {JobState.COMPLETED, JobState.FAILED}


class Lane(str, Enum):
    STANDARD = "standard"
    PRIORITY = "priority"


class BatchStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    PARTIAL = "partial"


def now_utc() -> str:
    return datetime.now(tz=timezone.utc).isoformat()


def new_id() -> str:
    return str(uuid.uuid4())


@dataclass(slots=True)
class Job:
    id: str
    tool_type: ToolType
    owner_id: str
    plan: PlanTier
    created_at: str
    updated_at: str
    inputs: list[str] = field(default_factory=list)
    options: dict[str, Any] = field(default_factory=dict)
    state: JobState = JobState.QUEUED
    priority: int = 10
    lane: Lane = Lane.STANDARD
    progress: float = 0.0
    message: str = ""
    result: dict[str, Any] | None = None
    error: dict[str, Any] | None = None
    attempts: int = 0
    max_attempts: int = 2
    # epoch seconds; renewed by the worker holding the job while it is active
    heartbeat_at: float = 0.0
    original_name: str = ""
    content_hash: str = ""
    options_hash: str = ""
    webhook_url: str = ""
    batch_id: str = ""
    batch_position: int = 0
    batch_total: int = 0
    duration_s: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["tool_type"] = self.tool_type.value
        d["plan"] = self.plan.value
        d["state"] = self.state.value
        d["lane"] = self.lane.value
        return d

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> Job:
        dd = dict(d)
        # Backwards-compatible defaults for older persisted jobs.
        dd.setdefault("inputs", [])
        dd.setdefault("options", {})
        dd.setdefault("result", None)
        dd.setdefault("error", None)
        dd.setdefault("duration_s", 0.0)
        dd["tool_type"] = ToolType(dd["tool_type"])
        dd["plan"] = PlanTier(dd.get("plan") or PlanTier.FREE.value)
        dd["state"] = JobState(dd.get("state") or JobState.QUEUED.value)
        dd["lane"] = Lane(dd.get("lane") or Lane.STANDARD.value)
        known = set(cls.__dataclass_fields__)
        return cls(**{k: v for k, v in dd.items() if k in known})


@dataclass(slots=True)
class UploadSession:
    upload_id: str
    owner_id: str
    plan: PlanTier
    filename: str
    total_size: int
    total_chunks: int
    created_at: float
    updated_at: float
    tool_type: ToolType = ToolType.VIDEO_TO_SUBTITLES
    options: dict[str, Any] = field(default_factory=dict)
    # chunk index (as str, JSON keys) -> byte size
    received: dict[str, int] = field(default_factory=dict)
    assembling: bool = False

    @property
    def received_bytes(self) -> int:
        return sum(int(v) for v in self.received.values())

    def missing(self) -> list[int]:
        return [i for i in range(int(self.total_chunks)) if str(i) not in self.received]

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["plan"] = self.plan.value
        d["tool_type"] = self.tool_type.value
        return d

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> UploadSession:
        dd = dict(d)
        dd["plan"] = PlanTier(dd.get("plan") or PlanTier.FREE.value)
        dd["tool_type"] = ToolType(dd.get("tool_type") or ToolType.VIDEO_TO_SUBTITLES.value)
        dd["received"] = {str(k): int(v) for k, v in dict(dd.get("received") or {}).items()}
        return cls(**dd)


@dataclass(slots=True)
class BatchJob:
    id: str
    owner_id: str
    total: int
    created_at: float
    expires_at: float
    processed: int = 0
    failed: int = 0
    status: BatchStatus = BatchStatus.QUEUED
    errors: list[dict[str, str]] = field(default_factory=list)
    archive_path: str = ""
    archive_claimed: bool = False
    completed_at: float | None = None

    @property
    def finished(self) -> bool:
        return self.processed + self.failed >= self.total

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["status"] = self.status.value
        return d

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> BatchJob:
        dd = dict(d)
        dd["status"] = BatchStatus(dd.get("status") or BatchStatus.QUEUED.value)
        dd["errors"] = list(dd.get("errors") or [])
        return cls(**dd)
