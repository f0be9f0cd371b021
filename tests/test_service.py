from __future__ import annotations

import asyncio
import hashlib
from pathlib import Path

import pytest

from videotext_pipeline.config import get_settings
from videotext_pipeline.jobs.errors import (
    AccessDenied,
    BacklogFull,
    ConcurrencyLimit,
    DurationExceeded,
    InvalidInput,
    MissingChunk,
    PlanNotAllowed,
    RateLimited,
    UploadNotFound,
)
from videotext_pipeline.jobs.models import BatchStatus, JobState
from videotext_pipeline.queue.lanes import QueueClosed
from videotext_pipeline.service import BatchItem, job_token, verify_job_token
from videotext_pipeline.streaming.partial import PartialResultRecord, PartialSegment
from tests._helpers.fakes import FakeMedia, make_service, write_video


def test_job_token_is_bound_to_job_and_secret(monkeypatch: pytest.MonkeyPatch) -> None:
    t = job_token("job-1")
    assert verify_job_token("job-1", t) is True
    assert verify_job_token("job-2", t) is False
    assert verify_job_token("job-1", None) is False
    monkeypatch.setenv("JOB_TOKEN_SECRET", "another-secret-Value-123456789")
    get_settings.cache_clear()
    assert verify_job_token("job-1", t) is False


def test_status_of_queued_and_active_jobs(tmp_path: Path) -> None:
    video = write_video(tmp_path / "clip.mp4")

    async def main() -> None:
        svc = make_service()
        first = await svc.submit_job(owner_id="u1", plan="free", tool_type="video-to-transcript", inputs=[str(video)])
        second = await svc.submit_job(owner_id="u2", plan="free", tool_type="video-to-transcript", inputs=[str(video)])

        st = svc.job_status(second.job_id, token=second.job_token)
        assert st["status"] == "queued"
        assert st["queuePosition"] == 2
        assert st["progress"] == 0
        with pytest.raises(AccessDenied):
            svc.job_status(second.job_id, token=first.job_token)
        assert svc.job_status("nope") is None

        # an active job exposes its latest partial snapshot
        svc.store.begin_attempt(first.job_id)
        svc.partials.store.put(
            PartialResultRecord(
                job_id=first.job_id,
                version=3,
                segments=[PartialSegment(start=0.0, end=1.0, text="hi")],
            )
        )
        st = svc.job_status(first.job_id)
        assert st["status"] == "active"
        assert st["partialVersion"] == 3
        assert st["partialSegments"] == [{"start": 0.0, "end": 1.0, "text": "hi"}]
        assert "queuePosition" not in st

    asyncio.run(main())


def test_submit_rejects_bad_requests(tmp_path: Path) -> None:
    async def main() -> None:
        svc = make_service()
        with pytest.raises(InvalidInput):
            await svc.submit_job(owner_id="u", plan="free", tool_type="fix-subtitles", inputs=[])
        with pytest.raises(InvalidInput):
            await svc.submit_job(
                owner_id="u",
                plan="free",
                tool_type="fix-subtitles",
                inputs=["/tmp/a.srt"],
                webhook_url="ftp://example.com",
            )
        with pytest.raises(InvalidInput):
            await svc.submit_job(owner_id="u", plan="free", tool_type="cached-result", inputs=["/tmp/a"])
        with pytest.raises(ValueError):
            await svc.submit_job(owner_id="u", plan="free", tool_type="no-such-tool", inputs=["/tmp/a"])

    asyncio.run(main())


def test_backlog_limits(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("QUEUE_SOFT_LIMIT", "1")
    monkeypatch.setenv("QUEUE_HARD_LIMIT", "2")
    get_settings.cache_clear()
    video = write_video(tmp_path / "clip.mp4")

    async def main() -> None:
        svc = make_service()
        await svc.submit_job(owner_id="u1", plan="free", tool_type="compress-video", inputs=[str(video)])
        # soft limit only turns away bulk work
        with pytest.raises(BacklogFull):
            await svc.submit_job(owner_id="u2", plan="free", tool_type="compress-video", inputs=[str(video)], bulk=True)
        await svc.submit_job(owner_id="u3", plan="free", tool_type="compress-video", inputs=[str(video)])
        with pytest.raises(BacklogFull):
            await svc.submit_job(owner_id="u4", plan="free", tool_type="compress-video", inputs=[str(video)])
        assert svc.queue.depth() == 2

    asyncio.run(main())


def test_chunked_upload_to_job(tmp_path: Path) -> None:
    payload = b"0123456789abcdef"

    async def main() -> None:
        svc = make_service()
        uid = await svc.init_upload(
            owner_id="u1",
            plan="free",
            filename="clip.mp4",
            total_size=len(payload),
            total_chunks=2,
            tool_type="video-to-subtitles",
            options={"language": "en"},
        )
        assert await svc.put_chunk(uid, 1, payload[8:]) == 8
        assert await svc.put_chunk(uid, 0, payload[:8]) == 16
        res = await svc.complete_upload(uid)
        job = svc.store.get(res.job_id)
        assert job.state == JobState.QUEUED
        assert job.original_name == "clip.mp4"
        assert job.options == {"language": "en"}
        assert job.content_hash == hashlib.sha256(payload).hexdigest()
        assert Path(job.inputs[0]).read_bytes() == payload

    asyncio.run(main())


def test_upload_init_is_rate_limited(tmp_path: Path) -> None:
    async def main() -> None:
        svc = make_service()
        for _ in range(3):
            await svc.init_upload(owner_id="u1", plan="free", filename="a.mp4", total_size=10, total_chunks=1)
        with pytest.raises(RateLimited):
            await svc.init_upload(owner_id="u1", plan="free", filename="a.mp4", total_size=10, total_chunks=1)
        await svc.init_upload(owner_id="u2", plan="free", filename="a.mp4", total_size=10, total_chunks=1)

    asyncio.run(main())


def test_batch_plan_limits(tmp_path: Path) -> None:
    items = [BatchItem(path=str(write_video(tmp_path / f"{i}.mp4")), duration_s=60) for i in range(3)]

    async def main() -> None:
        svc = make_service(media=FakeMedia(duration_s=30 * 60))
        with pytest.raises(PlanNotAllowed):
            await svc.submit_batch(owner_id="u", plan="basic", items=items)
        with pytest.raises(PlanNotAllowed):
            await svc.submit_batch(owner_id="u", plan="pro", items=items * 7)
        with pytest.raises(InvalidInput):
            await svc.submit_batch(owner_id="u", plan="pro", items=[])
        # durations are probed when not given: 3 x 30 min > 60 min
        probed = [BatchItem(path=i.path) for i in items]
        with pytest.raises(DurationExceeded):
            await svc.submit_batch(owner_id="u", plan="pro", items=probed)

        res = await svc.submit_batch(owner_id="u", plan="pro", items=items)
        assert res.total == 3
        jobs = [svc.store.get(jid) for jid in res.job_ids]
        assert {j.batch_id for j in jobs} == {res.batch_id}
        assert [(j.batch_position, j.batch_total) for j in jobs] == [(1, 3), (2, 3), (3, 3)]
        st = svc.batch_status(res.batch_id)
        assert st["status"] == "queued"
        assert st["progress"]["total"] == 3

    asyncio.run(main())


def test_unfinished_jobs_are_capped_per_owner(tmp_path: Path) -> None:
    video = write_video(tmp_path / "clip.mp4")

    async def main() -> None:
        svc = make_service()
        first = await svc.submit_job(owner_id="u1", plan="free", tool_type="video-to-transcript", inputs=[str(video)])
        # free allows one queued or active job
        with pytest.raises(ConcurrencyLimit):
            await svc.submit_job(owner_id="u1", plan="free", tool_type="video-to-transcript", inputs=[str(video)])
        with pytest.raises(ConcurrencyLimit):
            await svc.init_upload(owner_id="u1", plan="free", filename="a.mp4", total_size=10, total_chunks=1)
        await svc.submit_job(owner_id="u2", plan="free", tool_type="video-to-transcript", inputs=[str(video)])

        # pro allows two
        for _ in range(2):
            await svc.submit_job(owner_id="p1", plan="pro", tool_type="video-to-transcript", inputs=[str(video)])
        with pytest.raises(ConcurrencyLimit):
            await svc.submit_job(owner_id="p1", plan="pro", tool_type="video-to-transcript", inputs=[str(video)])

        # a finished job frees the slot
        svc.store.begin_attempt(first.job_id)
        svc.store.finish(first.job_id, JobState.COMPLETED, result={})
        await svc.submit_job(owner_id="u1", plan="free", tool_type="video-to-transcript", inputs=[str(video)])

        # batch items are bounded by the batch limits instead
        items = [BatchItem(path=str(video), name=f"{i}.mp4", duration_s=60) for i in range(3)]
        res = await svc.submit_batch(owner_id="p1", plan="pro", items=items)
        assert res.total == 3

    asyncio.run(main())


def test_upload_resumes_after_missing_chunk(tmp_path: Path) -> None:
    payload = b"aaaabbbbcc"

    async def main() -> None:
        svc = make_service()
        uid = await svc.init_upload(owner_id="u1", plan="free", filename="clip.mp4", total_size=len(payload), total_chunks=3)
        await svc.put_chunk(uid, 0, payload[:4])
        await svc.put_chunk(uid, 2, payload[8:])
        with pytest.raises(MissingChunk) as err:
            await svc.complete_upload(uid)
        assert err.value.index == 1
        assert await svc.upload_missing_chunks(uid) == [1]

        await svc.put_chunk(uid, 1, payload[4:8])
        assert await svc.upload_missing_chunks(uid) == []
        res = await svc.complete_upload(uid)
        assert Path(svc.store.get(res.job_id).inputs[0]).read_bytes() == payload
        with pytest.raises(UploadNotFound):
            await svc.upload_missing_chunks(uid)

    asyncio.run(main())


def test_abort_upload_drops_session_and_chunks(tmp_path: Path) -> None:
    async def main() -> None:
        svc = make_service()
        uid = await svc.init_upload(owner_id="u1", plan="free", filename="clip.mp4", total_size=8, total_chunks=2)
        await svc.put_chunk(uid, 0, b"abcd")
        chunks = svc.assembler._chunk_dir(uid)
        assert chunks.is_dir()

        await svc.abort_upload(uid)
        assert not chunks.exists()
        assert svc.store.get_upload(uid) is None
        with pytest.raises(UploadNotFound):
            await svc.put_chunk(uid, 1, b"efgh")
        # aborting twice is harmless
        await svc.abort_upload(uid)

    asyncio.run(main())


def test_batch_interrupted_while_queueing_still_finishes(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    items = [BatchItem(path=str(write_video(tmp_path / f"{n}.mp4")), duration_s=60) for n in ("a", "b", "c")]

    async def main() -> None:
        svc = make_service()
        real_enqueue = svc.queue.enqueue
        calls = {"n": 0}

        async def flaky_enqueue(job):
            calls["n"] += 1
            if calls["n"] == 2:
                svc.queue.start_draining()
            return await real_enqueue(job)

        monkeypatch.setattr(svc.queue, "enqueue", flaky_enqueue)
        with pytest.raises(QueueClosed):
            await svc.submit_batch(owner_id="u1", plan="pro", items=items)

        batches = svc.store.list_batches()
        assert len(batches) == 1
        b = batches[0]
        queued = svc.store.list(batch_id=b.id)
        assert [j.original_name for j in queued] == ["a.mp4"]
        assert b.processed == 0
        assert b.failed == 2
        assert [e["name"] for e in b.errors] == ["b.mp4", "c.mp4"]

        # the one queued item decides the outcome
        svc.batches.record_success(b.id)
        done = svc.store.get_batch(b.id)
        assert done.status == BatchStatus.PARTIAL
        assert done.archive_claimed is True

    asyncio.run(main())
