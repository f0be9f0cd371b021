from __future__ import annotations

import asyncio
import threading
import time
from pathlib import Path

from videotext_pipeline.jobs.errors import TransientError
from videotext_pipeline.jobs.models import Job
from videotext_pipeline.jobs.usage import UsageRecord
from videotext_pipeline.service import Ops, PipelineService, build
from videotext_pipeline.tools.subtitles import Cue


class FakeMedia:
    def __init__(self, duration_s: float = 60.0) -> None:
        self.duration_s = float(duration_s)
        self.windows: list[tuple[float | None, float | None]] = []
        self.crf: int | None = None
        self._lock = threading.Lock()

    def probe_duration(self, path: Path) -> float:
        return self.duration_s

    def extract_audio(self, src, dst, *, channel, start_s=None, end_s=None):
        channel.heartbeat()
        Path(dst).parent.mkdir(parents=True, exist_ok=True)
        Path(dst).write_bytes(b"RIFF")
        with self._lock:
            self.windows.append((start_s, end_s))
        return Path(dst)

    def burn_subtitles(self, video, subtitles, dst, *, channel, on_pct=None):
        for pct in (25.0, 50.0, 100.0):
            if on_pct is not None:
                on_pct(pct)
        Path(dst).write_bytes(Path(video).read_bytes())
        return Path(dst)

    def compress_video(self, src, dst, *, crf, channel, on_pct=None):
        self.crf = int(crf)
        if on_pct is not None:
            on_pct(100.0)
        Path(dst).write_bytes(b"small")
        return Path(dst)


class FakeTranscriber:
    def __init__(self, text: str = "hello world") -> None:
        self.text = text
        self.calls = 0
        self._lock = threading.Lock()

    def transcribe(self, audio, *, language, channel):
        with self._lock:
            self.calls += 1
        channel.heartbeat()
        return [Cue(index=1, start=0.0, end=2.0, text=self.text)]


class HangingTranscriber(FakeTranscriber):
    """Never reports progress; stops only when its channel is killed."""

    def transcribe(self, audio, *, language, channel):
        with self._lock:
            self.calls += 1
        while True:
            channel.check()
            time.sleep(0.01)


class BusyTranscriber(FakeTranscriber):
    """Keeps heartbeating forever, so only a deadline can stop it."""

    def transcribe(self, audio, *, language, channel):
        with self._lock:
            self.calls += 1
        while True:
            channel.heartbeat()
            time.sleep(0.01)


class FlakyTranscriber(FakeTranscriber):
    def __init__(self, failures: int = 1) -> None:
        super().__init__()
        self.failures = failures

    def transcribe(self, audio, *, language, channel):
        with self._lock:
            self.calls += 1
            fail = self.calls <= self.failures
        if fail:
            raise TransientError("engine unavailable")
        return [Cue(index=1, start=0.0, end=2.0, text=self.text)]


class FakeTranslator:
    def translate(self, cues, *, target_language, channel):
        channel.heartbeat()
        return [
            Cue(index=c.index, start=c.start, end=c.end, text=f"[{target_language}] {c.text}")
            for c in cues
        ]


class ListUsage:
    def __init__(self) -> None:
        self.records: list[UsageRecord] = []

    def record(self, usage: UsageRecord) -> None:
        self.records.append(usage)


def make_service(
    *,
    media: FakeMedia | None = None,
    transcriber=None,
    translator=None,
    usage: ListUsage | None = None,
) -> PipelineService:
    return build(
        Ops(
            media=media or FakeMedia(),
            transcriber=transcriber if transcriber is not None else FakeTranscriber(),
            translator=translator if translator is not None else FakeTranslator(),
            usage=usage or ListUsage(),
        )
    )


def write_video(path: Path, data: bytes = b"\x00" * 64) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)
    return path


async def wait_terminal(svc: PipelineService, job_id: str, *, timeout_s: float = 10.0) -> Job:
    """Wait for a terminal state, then for the pool to go idle so terminal side effects have run."""
    deadline = time.monotonic() + timeout_s
    while True:
        job = svc.store.get(job_id)
        if job is not None and job.state.terminal:
            await asyncio.wait_for(svc.queue.wait_idle(), timeout=timeout_s)
            return svc.store.get(job_id)
        if time.monotonic() > deadline:
            raise AssertionError(f"job {job_id} not terminal: {job}")
        await asyncio.sleep(0.02)

