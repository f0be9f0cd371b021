from __future__ import annotations

from pathlib import Path

import pytest

from videotext_pipeline.cache.store import DedupCache, hash_file, make_key, options_hash
from videotext_pipeline.jobs.models import ToolType
from videotext_pipeline.store.kv import MemoryKV


def test_options_hash_ignores_key_and_array_order() -> None:
    a = options_hash("video-to-subtitles", {"language": "en", "additional_languages": ["fr", "de"]})
    b = options_hash(ToolType.VIDEO_TO_SUBTITLES, {"additional_languages": ["de", "fr"], "language": "en"})
    assert a == b
    assert a != options_hash("video-to-subtitles", {"language": "es"})
    assert a != options_hash("video-to-transcript", {"language": "en", "additional_languages": ["fr", "de"]})


def test_hit_requires_same_owner_tool_and_options(tmp_path: Path) -> None:
    out = tmp_path / "clip.srt"
    out.write_text("1\n", encoding="utf-8")
    cache = DedupCache(MemoryKV(), ttl_days=30)
    h = "abc123"
    opts = options_hash("video-to-subtitles", {"language": "en"})
    cache.store("u1", h, "video-to-subtitles", opts, out, out.name)

    hit = cache.lookup("u1", h, ToolType.VIDEO_TO_SUBTITLES, opts)
    assert hit is not None
    assert hit.output_path == str(out)
    assert cache.lookup("u2", h, "video-to-subtitles", opts) is None
    assert cache.lookup("u1", h, "video-to-transcript", opts) is None
    assert cache.lookup("u1", h, "video-to-subtitles", options_hash("video-to-subtitles", {})) is None


def test_missing_artifact_is_a_miss(tmp_path: Path) -> None:
    out = tmp_path / "gone.txt"
    out.write_text("x", encoding="utf-8")
    cache = DedupCache(MemoryKV(), ttl_days=30)
    cache.store("u", "h", "video-to-transcript", "o", out, out.name)
    out.unlink()
    assert cache.lookup("u", "h", "video-to-transcript", "o") is None


def test_expired_entry_is_a_miss(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    import videotext_pipeline.cache.store as cache_mod

    out = tmp_path / "a.txt"
    out.write_text("x", encoding="utf-8")
    now = {"t": 1_000_000.0}
    monkeypatch.setattr(cache_mod.time, "time", lambda: now["t"])
    cache = DedupCache(MemoryKV(), ttl_days=1)
    cache.store("u", "h", "video-to-transcript", "o", out, out.name)
    now["t"] += 2 * 24 * 3600
    assert cache.lookup("u", "h", "video-to-transcript", "o") is None


def test_zero_ttl_disables_cache(tmp_path: Path) -> None:
    out = tmp_path / "a.txt"
    out.write_text("x", encoding="utf-8")
    kv = MemoryKV()
    cache = DedupCache(kv, ttl_days=0)
    assert cache.enabled is False
    assert cache.store("u", "h", "video-to-transcript", "o", out, out.name) is None
    assert kv.get(make_key("u", "h", "video-to-transcript", "o")) is None


def test_hash_file(tmp_path: Path) -> None:
    p = tmp_path / "v.bin"
    p.write_bytes(b"abc")
    assert hash_file(p) == "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"
