from __future__ import annotations

import asyncio
import time

import pytest

from videotext_pipeline.jobs.errors import DeadlineExceeded, HungTask, OperationKilled
from videotext_pipeline.runtime.watchdog import DynamicDeadline, ProgressChannel, Supervisor


def _supervisor(*, watchdog_s: float = 5.0, threshold: int = 1000, depth: int = 0) -> Supervisor:
    return Supervisor(
        watchdog_timeout_s=watchdog_s,
        deadline_interval_s=0.02,
        deadline_threshold=threshold,
        depth=lambda: depth,
    )


def test_channel_coalesces_updates_and_stops_after_kill() -> None:
    async def main() -> None:
        ch = ProgressChannel()
        ch.emit(10, "a")
        ch.emit(30, "b")
        assert await ch.next_update() == (30.0, "b")
        ch.kill("hung")
        assert ch.killed is True
        with pytest.raises(OperationKilled):
            ch.emit(50)
        with pytest.raises(OperationKilled):
            ch.heartbeat()

    asyncio.run(main())


def test_dynamic_deadline_only_applies_under_load() -> None:
    depth = {"n": 0}
    started = time.monotonic() - 100
    dl = DynamicDeadline(lambda: depth["n"], threshold=20, max_runtime_s=10, interval_s=1, started_at=started)
    dl.check()
    assert dl.deadline is None
    depth["n"] = 20
    with pytest.raises(DeadlineExceeded):
        dl.check()
    # load drops, deadline is cleared again
    depth["n"] = 19
    dl.check()
    assert dl.deadline is None


def test_supervisor_returns_work_result() -> None:
    async def main() -> None:
        ch = ProgressChannel()

        async def work() -> str:
            ch.emit(50)
            await asyncio.sleep(0.01)
            return "done"

        assert await _supervisor().run(work(), ch, max_runtime_s=60) == "done"
        assert ch.killed is False

    asyncio.run(main())


def test_supervisor_kills_silent_work() -> None:
    async def main() -> None:
        ch = ProgressChannel()
        seen = {"killed": False}

        def blocking() -> None:
            try:
                while True:
                    ch.check()
                    time.sleep(0.01)
            except OperationKilled:
                seen["killed"] = True
                raise

        with pytest.raises(HungTask):
            await _supervisor(watchdog_s=0.1).run(asyncio.to_thread(blocking), ch, max_runtime_s=60)
        assert ch.killed is True
        # the thread notices at its next checkpoint
        for _ in range(100):
            if seen["killed"]:
                break
            await asyncio.sleep(0.01)
        assert seen["killed"] is True

    asyncio.run(main())


def test_heartbeats_keep_watchdog_quiet() -> None:
    async def main() -> None:
        ch = ProgressChannel()

        async def work() -> int:
            for _ in range(10):
                ch.heartbeat()
                await asyncio.sleep(0.03)
            return 1

        assert await _supervisor(watchdog_s=0.1).run(work(), ch, max_runtime_s=60) == 1

    asyncio.run(main())


def test_supervisor_deadline_under_load() -> None:
    async def main() -> None:
        ch = ProgressChannel()

        async def work() -> None:
            while True:
                ch.heartbeat()
                await asyncio.sleep(0.01)

        with pytest.raises(DeadlineExceeded) as ei:
            await _supervisor(threshold=5, depth=5).run(work(), ch, max_runtime_s=0.1)
        assert ei.value.no_charge is True
        assert ch.killed is True

    asyncio.run(main())
