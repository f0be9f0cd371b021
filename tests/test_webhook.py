from __future__ import annotations

import asyncio
import urllib.error

import pytest

import videotext_pipeline.notify.webhook as webhook_mod
from videotext_pipeline.notify.webhook import WebhookNotifier, build_payload, is_valid_webhook_url


def test_url_validation() -> None:
    assert is_valid_webhook_url("https://example.com/hook") is True
    assert is_valid_webhook_url("http://10.0.0.1:8080/x") is True
    assert is_valid_webhook_url("ftp://example.com") is False
    assert is_valid_webhook_url("not a url") is False
    assert is_valid_webhook_url(None) is False


def test_payload_shape() -> None:
    assert build_payload("j1", "completed", result={"fileName": "a.srt"}) == {
        "jobId": "j1",
        "status": "completed",
        "result": {"fileName": "a.srt"},
    }
    assert build_payload("j2", "failed", error={"kind": "validation"})["error"] == {"kind": "validation"}


def test_notify_posts_once(monkeypatch: pytest.MonkeyPatch) -> None:
    sent: list[tuple[str, dict, float]] = []

    def fake_post(url, body, *, timeout_s):
        sent.append((url, body, timeout_s))
        return 204

    monkeypatch.setattr(webhook_mod, "_post_json", fake_post)

    async def main() -> None:
        n = WebhookNotifier(timeout_s=3)
        n.notify("https://example.com/hook", build_payload("j1", "completed"))
        await n.drain()

    asyncio.run(main())
    assert sent == [("https://example.com/hook", {"jobId": "j1", "status": "completed"}, 3.0)]


def test_delivery_failures_are_not_raised(monkeypatch: pytest.MonkeyPatch) -> None:
    calls = {"n": 0}

    def failing_post(url, body, *, timeout_s):
        calls["n"] += 1
        raise urllib.error.URLError("connection refused")

    monkeypatch.setattr(webhook_mod, "_post_json", failing_post)
    n = WebhookNotifier(timeout_s=1)
    assert n.deliver("https://example.com/hook", {"jobId": "j"}) is False
    # no retries
    assert calls["n"] == 1
    assert n.deliver("file:///etc/passwd", {"jobId": "j"}) is False
    assert calls["n"] == 1
