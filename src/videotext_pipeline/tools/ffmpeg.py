from __future__ import annotations

import subprocess
from collections.abc import Callable
from contextlib import suppress
from pathlib import Path

from videotext_pipeline.config import get_settings
from videotext_pipeline.jobs.errors import InvalidInput, OperationKilled, TransientError
from videotext_pipeline.runtime.watchdog import ProgressChannel
from videotext_pipeline.utils.log import logger

_FORBIDDEN_FLAGS = {
    "-filter_script",
    "-filter_script:v",
    "-filter_script:a",
    "-stats_file",
}

COMPRESSION_CRF = {"light": 23, "medium": 28, "heavy": 32}


class FFmpegError(TransientError):
    pass


def _validate_args(argv: list[str]) -> None:
    for a in argv:
        if a in _FORBIDDEN_FLAGS:
            raise FFmpegError(f"Forbidden ffmpeg/ffprobe flag: {a}")


def _tail(s: str, n: int = 4000) -> str:
    s = str(s or "")
    return s if len(s) <= n else s[-n:]


def _escape_filter_path(p: Path) -> str:
    # subtitles= filter argument: escape backslash, colon and quote
    return str(p).replace("\\", "\\\\").replace(":", "\\:").replace("'", "\\'")


def run_ffmpeg(
    argv: list[str],
    *,
    channel: ProgressChannel,
    duration_s: float = 0.0,
    on_pct: Callable[[float], None] | None = None,
) -> None:
    """
    Run ffmpeg with `-progress pipe:1`, turning its progress stream into
    heartbeats and percentage callbacks. The process is attached to `channel`
    so a watchdog or deadline kill terminates it.
    """
    _validate_args(argv)
    full = [argv[0], "-nostats", "-progress", "pipe:1", *argv[1:]]
    logger.debug("ffmpeg_start", argv=" ".join(full))
    proc = subprocess.Popen(
        full,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
    )
    channel.attach(proc)
    stderr = ""
    try:
        assert proc.stdout is not None
        for line in proc.stdout:
            key, _, val = line.strip().partition("=")
            if key == "out_time_ms" and duration_s > 0:
                with suppress(ValueError):
                    pct = min(100.0, (int(val) / 1_000_000.0) / float(duration_s) * 100.0)
                    if on_pct is not None:
                        on_pct(pct)
                    continue
            channel.heartbeat()
        if proc.stderr is not None:
            stderr = proc.stderr.read()
        rc = proc.wait()
    finally:
        channel.detach(proc)
        if proc.poll() is None:
            with suppress(Exception):
                proc.kill()
    if channel.killed:
        raise OperationKilled(channel.kill_reason)
    if rc != 0:
        raise FFmpegError(f"ffmpeg failed (exit={rc})\nstderr_tail={_tail(stderr)}")


class FfmpegMediaOps:
    """MediaOps backed by ffmpeg/ffprobe binaries from settings."""

    def __init__(self) -> None:
        s = get_settings()
        self.ffmpeg = str(s.ffmpeg_bin)
        self.ffprobe = str(s.ffprobe_bin)

    def probe_duration(self, path: Path) -> float:
        argv = [
            self.ffprobe,
            "-v",
            "error",
            "-show_entries",
            "format=duration",
            "-of",
            "default=noprint_wrappers=1:nokey=1",
            str(path),
        ]
        try:
            p = subprocess.run(argv, check=True, capture_output=True, text=True, timeout=30)
        except subprocess.CalledProcessError as ex:
            raise InvalidInput(f"Not a readable media file: {Path(path).name}") from ex
        except subprocess.TimeoutExpired as ex:
            raise FFmpegError("ffprobe timed out") from ex
        try:
            return float(p.stdout.strip())
        except ValueError as ex:
            raise InvalidInput(f"Could not read media duration: {Path(path).name}") from ex

    def extract_audio(
        self,
        src: Path,
        dst: Path,
        *,
        channel: ProgressChannel,
        start_s: float | None = None,
        end_s: float | None = None,
    ) -> Path:
        Path(dst).parent.mkdir(parents=True, exist_ok=True)
        argv = [self.ffmpeg, "-y"]
        if start_s is not None:
            argv += ["-ss", f"{float(start_s):.3f}"]
        if end_s is not None:
            argv += ["-to", f"{float(end_s):.3f}"]
        argv += ["-i", str(src), "-vn", "-ac", "1", "-ar", "16000", str(dst)]
        run_ffmpeg(argv, channel=channel)
        return Path(dst)

    def burn_subtitles(
        self,
        video: Path,
        subtitles: Path,
        dst: Path,
        *,
        channel: ProgressChannel,
        on_pct: Callable[[float], None] | None = None,
    ) -> Path:
        duration = self.probe_duration(video)
        argv = [
            self.ffmpeg,
            "-y",
            "-i",
            str(video),
            "-vf",
            f"subtitles='{_escape_filter_path(Path(subtitles))}'",
            "-c:a",
            "copy",
            str(dst),
        ]
        run_ffmpeg(argv, channel=channel, duration_s=duration, on_pct=on_pct)
        return Path(dst)

    def compress_video(
        self,
        src: Path,
        dst: Path,
        *,
        crf: int,
        channel: ProgressChannel,
        on_pct: Callable[[float], None] | None = None,
    ) -> Path:
        duration = self.probe_duration(src)
        argv = [
            self.ffmpeg,
            "-y",
            "-i",
            str(src),
            "-c:v",
            "libx264",
            "-preset",
            "medium",
            "-crf",
            str(int(crf)),
            "-c:a",
            "aac",
            "-b:a",
            "128k",
            str(dst),
        ]
        run_ffmpeg(argv, channel=channel, duration_s=duration, on_pct=on_pct)
        return Path(dst)
