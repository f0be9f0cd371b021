from __future__ import annotations

from pathlib import Path

import pytest

from videotext_pipeline.jobs.errors import InvalidInput
from videotext_pipeline.tools.subtitles import (
    Cue,
    detect_format,
    fix_subtitles,
    format_srt_timestamp,
    format_vtt_timestamp,
    parse_subtitles,
    read_subtitles,
    render_srt,
    render_vtt,
)

SRT = """1
00:00:01,000 --> 00:00:02,500
Hello there

2
00:00:03,000 --> 00:00:04,000
Second line
"""

VTT = """WEBVTT

NOTE produced by hand

00:00:01.000 --> 00:00:02.500
Hello there

00:01:03.250 --> 00:01:04.000
Later
"""


def test_timestamps() -> None:
    assert format_srt_timestamp(3723.5) == "01:02:03,500"
    assert format_vtt_timestamp(0.25) == "00:00:00.250"
    assert format_srt_timestamp(-1) == "00:00:00,000"


def test_parse_srt_and_vtt() -> None:
    srt = parse_subtitles(SRT)
    assert [(c.start, c.end, c.text) for c in srt] == [(1.0, 2.5, "Hello there"), (3.0, 4.0, "Second line")]
    vtt = parse_subtitles(VTT)
    assert len(vtt) == 2
    assert vtt[1].start == 63.25
    assert detect_format(VTT) == "vtt"
    assert detect_format(SRT, filename="x.srt") == "srt"


def test_convert_round_trip_keeps_timing() -> None:
    cues = parse_subtitles(SRT)
    vtt = render_vtt(cues)
    assert vtt.startswith("WEBVTT")
    assert "00:00:01.000 --> 00:00:02.500" in vtt
    assert [c.text for c in parse_subtitles(vtt)] == ["Hello there", "Second line"]
    assert render_srt(parse_subtitles(vtt)).startswith("1\n00:00:01,000 --> 00:00:02,500\n")


def test_read_subtitles_rejects_empty(tmp_path: Path) -> None:
    p = tmp_path / "empty.srt"
    p.write_text("nothing here", encoding="utf-8")
    with pytest.raises(InvalidInput):
        read_subtitles(p)


def test_fix_overlap_and_reindex() -> None:
    fixed, issues = fix_subtitles(
        [
            Cue(index=7, start=2.5, end=4.0, text="There"),
            Cue(index=3, start=0.0, end=3.0, text="Hi"),
        ]
    )
    assert [c.index for c in fixed] == [1, 2]
    assert fixed[0].end == pytest.approx(2.4)
    assert [i.kind for i in issues] == ["overlap"]
    assert issues[0].to_dict()["type"] == "overlap"


def test_fix_splits_long_lines_at_word_boundary() -> None:
    text = "This subtitle line is definitely much too long to read"
    fixed, issues = fix_subtitles([Cue(index=1, start=0.0, end=5.0, text=text)])
    first, second = fixed[0].text.split("\n")
    assert len(first) <= 21
    assert f"{first} {second}" == text
    assert issues[0].kind == "long_line"


def test_fix_stretches_fast_cues_and_reports_gaps() -> None:
    fixed, issues = fix_subtitles(
        [
            Cue(index=1, start=0.0, end=0.5, text="Quite a few words here"),
            Cue(index=2, start=10.0, end=11.0, text="ok"),
        ]
    )
    assert fixed[0].end == pytest.approx(1.5)
    kinds = [i.kind for i in issues]
    assert "fast_reading" in kinds
    assert "large_gap" in kinds


def test_fast_cue_is_not_stretched_into_the_next() -> None:
    fixed, _ = fix_subtitles(
        [
            Cue(index=1, start=0.0, end=0.5, text="Quite a few words here"),
            Cue(index=2, start=1.0, end=2.0, text="next"),
        ]
    )
    assert fixed[0].end == pytest.approx(0.9)
