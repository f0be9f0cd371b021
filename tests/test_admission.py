from __future__ import annotations

import pytest

from videotext_pipeline.jobs.admission import AdmissionController
from videotext_pipeline.jobs.errors import BacklogFull, RateLimited
from videotext_pipeline.store.kv import MemoryKV


def test_upload_rate_limit_sliding_window() -> None:
    ac = AdmissionController(MemoryKV(), upload_limit=3, window_s=60)
    assert [ac.check_and_record_upload("u1") for _ in range(4)] == [True, True, True, False]
    # other identities have their own window
    assert ac.check_and_record_upload("u2") is True
    with pytest.raises(RateLimited) as ei:
        ac.require_upload_slot("u1")
    assert ei.value.retry_after_s == 60


def test_anonymous_callers_share_one_window() -> None:
    ac = AdmissionController(MemoryKV(), upload_limit=1, window_s=60)
    assert ac.check_and_record_upload(None) is True
    assert ac.check_and_record_upload("") is False


def test_expired_attempts_leave_the_window(monkeypatch: pytest.MonkeyPatch) -> None:
    import videotext_pipeline.jobs.admission as admission_mod

    now = {"t": 1000.0}
    monkeypatch.setattr(admission_mod.time, "time", lambda: now["t"])
    ac = AdmissionController(MemoryKV(), upload_limit=1, window_s=60)
    assert ac.check_and_record_upload("u") is True
    assert ac.check_and_record_upload("u") is False
    now["t"] += 61
    assert ac.check_and_record_upload("u") is True


def test_backlog_thresholds() -> None:
    ac = AdmissionController(MemoryKV(), soft_limit=2, hard_limit=4)
    ac.admit(1, bulk=True)
    ac.admit(3)
    assert ac.is_queue_at_soft_limit(2) is True
    assert ac.is_queue_at_hard_limit(3) is False
    with pytest.raises(BacklogFull):
        ac.admit(2, bulk=True)
    with pytest.raises(BacklogFull):
        ac.admit(4)
