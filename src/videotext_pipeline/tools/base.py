from __future__ import annotations

from collections.abc import Callable
from pathlib import Path
from typing import Protocol

from videotext_pipeline.runtime.watchdog import ProgressChannel
from videotext_pipeline.tools.subtitles import Cue


class Transcriber(Protocol):
    """Speech-to-text engine. Must call `channel.heartbeat()` while working."""

    def transcribe(
        self, audio: Path, *, language: str | None, channel: ProgressChannel
    ) -> list[Cue]: ...


class Translator(Protocol):
    def translate(
        self, cues: list[Cue], *, target_language: str, channel: ProgressChannel
    ) -> list[Cue]: ...


class MediaOps(Protocol):
    def probe_duration(self, path: Path) -> float: ...

    def extract_audio(
        self,
        src: Path,
        dst: Path,
        *,
        channel: ProgressChannel,
        start_s: float | None = None,
        end_s: float | None = None,
    ) -> Path: ...

    def burn_subtitles(
        self,
        video: Path,
        subtitles: Path,
        dst: Path,
        *,
        channel: ProgressChannel,
        on_pct: Callable[[float], None] | None = None,
    ) -> Path: ...

    def compress_video(
        self,
        src: Path,
        dst: Path,
        *,
        crf: int,
        channel: ProgressChannel,
        on_pct: Callable[[float], None] | None = None,
    ) -> Path: ...
