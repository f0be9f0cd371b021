from __future__ import annotations

import re
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any

from videotext_pipeline.jobs.errors import InvalidInput

_TS_LINE_RE = re.compile(
    r"(\d{2}):(\d{2}):(\d{2})[,.](\d{3})\s*-->\s*(\d{2}):(\d{2}):(\d{2})[,.](\d{3})"
)

MAX_LINE_CHARS = 42
SPLIT_AT = 21
MIN_DISPLAY_S = 0.5
MIN_READING_S = 1.5
FAST_READING_CHARS = 20
OVERLAP_PAD_S = 0.1
LARGE_GAP_S = 5.0

SUBTITLE_FORMATS = ("srt", "vtt")


@dataclass(frozen=True, slots=True)
class Cue:
    index: int
    start: float
    end: float
    text: str
    speaker: str | None = None


@dataclass(frozen=True, slots=True)
class SubtitleIssue:
    kind: str  # overlap|long_line|fast_reading|large_gap
    index: int
    message: str

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.kind, "index": self.index, "message": self.message}


def format_srt_timestamp(seconds: float) -> str:
    """SRT timestamp: HH:MM:SS,mmm"""
    ms_total = int(round(max(0.0, float(seconds)) * 1000.0))
    hh, rem = divmod(ms_total, 3_600_000)
    mm, rem = divmod(rem, 60_000)
    ss, ms = divmod(rem, 1000)
    return f"{hh:02d}:{mm:02d}:{ss:02d},{ms:03d}"


def format_vtt_timestamp(seconds: float) -> str:
    """WebVTT timestamp: HH:MM:SS.mmm"""
    return format_srt_timestamp(seconds).replace(",", ".")


def _secs(h: str, m: str, s: str, ms: str) -> float:
    return int(h) * 3600 + int(m) * 60 + int(s) + int(ms) / 1000.0


def detect_format(text: str, *, filename: str = "") -> str:
    if text.lstrip("﻿").lstrip().startswith("WEBVTT"):
        return "vtt"
    if filename.lower().endswith(".vtt"):
        return "vtt"
    return "srt"


def parse_subtitles(text: str) -> list[Cue]:
    """
    Parse SRT or WebVTT cue blocks. Blocks without a timing line (the WEBVTT
    header, NOTE/STYLE blocks) are skipped.
    """
    cues: list[Cue] = []
    blocks = re.split(r"\r?\n\s*\r?\n", text.replace("﻿", "").strip())
    for block in blocks:
        lines = [ln.rstrip("\r") for ln in block.splitlines()]
        for i, line in enumerate(lines):
            m = _TS_LINE_RE.search(line)
            if not m:
                continue
            body = "\n".join(ln for ln in lines[i + 1 :]).strip()
            cues.append(
                Cue(
                    index=len(cues) + 1,
                    start=_secs(*m.groups()[:4]),
                    end=_secs(*m.groups()[4:]),
                    text=body,
                )
            )
            break
    return cues


def read_subtitles(path: Path) -> tuple[list[Cue], str]:
    p = Path(path)
    try:
        text = p.read_text(encoding="utf-8-sig")
    except UnicodeDecodeError as ex:
        raise InvalidInput(f"Subtitle file is not UTF-8: {p.name}") from ex
    cues = parse_subtitles(text)
    if not cues:
        raise InvalidInput(f"No subtitle cues found in {p.name}")
    return cues, detect_format(text, filename=p.name)


def render_srt(cues: list[Cue]) -> str:
    out = []
    for idx, c in enumerate(cues, 1):
        out.append(
            f"{idx}\n{format_srt_timestamp(c.start)} --> {format_srt_timestamp(c.end)}\n{c.text.strip()}\n"
        )
    return "\n".join(out)


def render_vtt(cues: list[Cue]) -> str:
    out = ["WEBVTT\n"]
    for c in cues:
        out.append(
            f"{format_vtt_timestamp(c.start)} --> {format_vtt_timestamp(c.end)}\n{c.text.strip()}\n"
        )
    return "\n".join(out)


def render(cues: list[Cue], fmt: str) -> str:
    if fmt == "vtt":
        return render_vtt(cues)
    if fmt == "srt":
        return render_srt(cues)
    raise InvalidInput(f"Unsupported subtitle format: {fmt}")


def write_subtitles(cues: list[Cue], path: Path, fmt: str) -> Path:
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_text(render(cues, fmt), encoding="utf-8")
    return p


def render_transcript(cues: list[Cue]) -> str:
    return "\n".join(c.text.strip() for c in cues if c.text.strip()) + "\n"


def _split_long(text: str) -> str:
    cut = text.rfind(" ", 0, SPLIT_AT + 1)
    if cut > 0:
        return f"{text[:cut]}\n{text[cut + 1:]}"
    return f"{text[:SPLIT_AT]}\n{text[SPLIT_AT:]}"


def fix_subtitles(cues: list[Cue]) -> tuple[list[Cue], list[SubtitleIssue]]:
    """
    Repair common timing and layout problems.

    Overlaps are cut back to the next start (keeping at least 0.5s on screen),
    lines over 42 characters are broken in two, cues that are too short to read
    are stretched towards 1.5s without running into the next cue, and gaps over
    5s are only reported. Output is re-indexed from 1.
    """
    issues: list[SubtitleIssue] = []
    fixed = sorted(cues, key=lambda c: c.start)

    for i in range(len(fixed) - 1):
        cur, nxt = fixed[i], fixed[i + 1]
        if cur.end > nxt.start:
            issues.append(SubtitleIssue("overlap", cur.index, "Overlapping with next subtitle"))
            end = nxt.start - OVERLAP_PAD_S
            if end <= cur.start:
                end = cur.start + MIN_DISPLAY_S
            fixed[i] = replace(cur, end=end)

    for i, cur in enumerate(fixed):
        if len(cur.text) > MAX_LINE_CHARS:
            issues.append(
                SubtitleIssue("long_line", cur.index, f"Line too long ({len(cur.text)} characters)")
            )
            fixed[i] = replace(cur, text=_split_long(cur.text))

    for i, cur in enumerate(fixed):
        duration = cur.end - cur.start
        if duration < MIN_READING_S and len(cur.text) > FAST_READING_CHARS:
            issues.append(
                SubtitleIssue(
                    "fast_reading",
                    cur.index,
                    f"Reading speed too fast ({duration:.1f}s for {len(cur.text)} chars)",
                )
            )
            want = cur.start + MIN_READING_S
            if i < len(fixed) - 1:
                want = min(want, fixed[i + 1].start - OVERLAP_PAD_S)
            fixed[i] = replace(cur, end=max(cur.end, want))

    for i in range(len(fixed) - 1):
        gap = fixed[i + 1].start - fixed[i].end
        if gap > LARGE_GAP_S:
            issues.append(
                SubtitleIssue(
                    "large_gap", fixed[i].index, f"Large gap of {gap:.1f}s before next subtitle"
                )
            )

    return [replace(c, index=n) for n, c in enumerate(fixed, 1)], issues
