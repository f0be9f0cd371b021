from __future__ import annotations

import asyncio
import os
import signal
import subprocess
import threading
import time
from collections.abc import Awaitable, Callable
from contextlib import suppress
from typing import Any, TypeVar

from videotext_pipeline.jobs.errors import DeadlineExceeded, HungTask, OperationKilled
from videotext_pipeline.ops import metrics
from videotext_pipeline.utils.log import logger

T = TypeVar("T")

_KILL_GRACE_S = 2.0


class ProgressChannel:
    """
    Progress observer handed to a transform.

    `emit()` may be called from worker threads. Each call is a heartbeat for the
    watchdog; the latest percentage is picked up by the worker's progress pump,
    which is the only place progress reaches the job store.

    After `kill()` every registered subprocess is terminated (SIGKILL after a
    short grace period) and further `emit()`/`check()` calls raise
    `OperationKilled`, which stops thread-based transforms at their next checkpoint.
    """

    def __init__(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        self._loop = loop or asyncio.get_running_loop()
        self._lock = threading.Lock()
        self._procs: list[subprocess.Popen] = []
        self._killed = False
        self.kill_reason = ""
        self.last_event = time.monotonic()
        self._latest: tuple[float, str | None] | None = None
        self._changed = asyncio.Event()

    @property
    def killed(self) -> bool:
        return self._killed

    def check(self) -> None:
        if self._killed:
            raise OperationKilled(self.kill_reason or "killed")

    def heartbeat(self) -> None:
        self.check()
        self.last_event = time.monotonic()

    def emit(self, pct: float, message: str | None = None) -> None:
        self.heartbeat()
        with self._lock:
            self._latest = (float(pct), message)
        self._loop.call_soon_threadsafe(self._changed.set)

    async def next_update(self) -> tuple[float, str | None]:
        """Wait for the latest unseen progress value (intermediate values coalesce)."""
        while True:
            await self._changed.wait()
            self._changed.clear()
            with self._lock:
                latest, self._latest = self._latest, None
            if latest is not None:
                return latest

    def attach(self, proc: subprocess.Popen) -> None:
        with self._lock:
            self._procs.append(proc)
            killed = self._killed
        if killed:
            _terminate(proc)

    def detach(self, proc: subprocess.Popen) -> None:
        with self._lock, suppress(ValueError):
            self._procs.remove(proc)

    def kill(self, reason: str) -> None:
        with self._lock:
            if self._killed:
                return
            self._killed = True
            self.kill_reason = reason
            procs = list(self._procs)
        for p in procs:
            _terminate(p)


def _terminate(proc: subprocess.Popen) -> None:
    """terminate(), then SIGKILL if the process outlives the grace period."""
    if proc.poll() is not None:
        return
    with suppress(Exception):
        proc.terminate()

    def _force() -> None:
        try:
            proc.wait(timeout=_KILL_GRACE_S)
        except subprocess.TimeoutExpired:
            with suppress(Exception):
                if os.name == "nt":
                    proc.kill()
                else:
                    os.kill(proc.pid, signal.SIGKILL)

    threading.Thread(target=_force, name="videotext.kill", daemon=True).start()


class Watchdog:
    """Fails with HungTask when the channel has been silent for `timeout_s`."""

    def __init__(self, channel: ProgressChannel, *, timeout_s: float) -> None:
        self.channel = channel
        self.timeout_s = float(timeout_s)

    async def run(self) -> None:
        while True:
            idle = time.monotonic() - self.channel.last_event
            if idle >= self.timeout_s:
                raise HungTask(f"No progress for {int(idle)}s (timeout {int(self.timeout_s)}s)")
            await asyncio.sleep(max(0.05, self.timeout_s - idle))


class DynamicDeadline:
    """
    Runtime cap that only applies under load.

    Every `interval_s` the global depth is read: at or above `threshold` the
    deadline becomes start + `max_runtime_s`, below it the deadline is cleared.
    """

    def __init__(
        self,
        depth: Callable[[], int],
        *,
        threshold: int,
        max_runtime_s: float,
        interval_s: float,
        started_at: float | None = None,
    ) -> None:
        self._depth = depth
        self.threshold = int(threshold)
        self.max_runtime_s = float(max_runtime_s)
        self.interval_s = float(interval_s)
        self.started_at = time.monotonic() if started_at is None else float(started_at)
        self.deadline: float | None = None

    def check(self) -> None:
        if int(self._depth()) >= self.threshold:
            self.deadline = self.started_at + self.max_runtime_s
        else:
            self.deadline = None
        if self.deadline is not None and time.monotonic() >= self.deadline:
            raise DeadlineExceeded(
                f"Exceeded {int(self.max_runtime_s // 60)} min runtime limit while the queue is busy; not charged"
            )

    async def run(self) -> None:
        while True:
            self.check()
            delay = self.interval_s
            if self.deadline is not None:
                delay = min(delay, max(0.05, self.deadline - time.monotonic()))
            await asyncio.sleep(delay)


async def _cancel_all(tasks: set[asyncio.Task[Any]]) -> None:
    for t in tasks:
        t.cancel()
    if tasks:
        await asyncio.gather(*tasks, return_exceptions=True)


class Supervisor:
    """
    Runs one attempt against its guards; the first task to finish decides.

    Losers are cancelled and awaited, so nothing outlives the attempt. When a
    guard wins, the channel is killed before the work task is cancelled.
    """

    def __init__(
        self,
        *,
        watchdog_timeout_s: float,
        deadline_interval_s: float,
        deadline_threshold: int,
        depth: Callable[[], int],
    ) -> None:
        self.watchdog_timeout_s = float(watchdog_timeout_s)
        self.deadline_interval_s = float(deadline_interval_s)
        self.deadline_threshold = int(deadline_threshold)
        self.depth = depth

    async def run(
        self,
        work: Awaitable[T],
        channel: ProgressChannel,
        *,
        max_runtime_s: float,
        job_id: str = "",
    ) -> T:
        work_t = asyncio.ensure_future(work)
        guards = {
            asyncio.create_task(Watchdog(channel, timeout_s=self.watchdog_timeout_s).run()),
            asyncio.create_task(
                DynamicDeadline(
                    self.depth,
                    threshold=self.deadline_threshold,
                    max_runtime_s=max_runtime_s,
                    interval_s=self.deadline_interval_s,
                ).run()
            ),
        }
        try:
            done, _ = await asyncio.wait({work_t, *guards}, return_when=asyncio.FIRST_COMPLETED)
            if work_t in done:
                await _cancel_all(guards)
                return work_t.result()

            guard = next(iter(done))
            exc = guard.exception() if not guard.cancelled() else None
            reason = type(exc).__name__ if exc is not None else "guard_stopped"
            channel.kill(reason)
            await _cancel_all({work_t} | guards)
            if isinstance(exc, HungTask):
                metrics.job_kills.labels(reason="hung_task").inc()
            elif isinstance(exc, DeadlineExceeded):
                metrics.job_kills.labels(reason="deadline").inc()
            logger.warning("attempt_killed", job_id=job_id, reason=reason, error=str(exc or ""))
            if exc is not None:
                raise exc
            raise RuntimeError("supervisor guard stopped unexpectedly")
        finally:
            pending = {t for t in (work_t, *guards) if not t.done()}
            if pending:
                channel.kill("cancelled")
                await _cancel_all(pending)
