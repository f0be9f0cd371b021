from __future__ import annotations

import asyncio
import json
import urllib.error
import urllib.request
from typing import Any
from urllib.parse import urlparse

from videotext_pipeline.config import get_settings
from videotext_pipeline.ops import metrics
from videotext_pipeline.utils.log import logger


def is_valid_webhook_url(url: str | None) -> bool:
    try:
        u = urlparse(str(url or "").strip())
    except ValueError:
        return False
    return u.scheme in {"http", "https"} and bool(u.netloc)


def build_payload(
    job_id: str,
    status: str,
    *,
    result: dict[str, Any] | None = None,
    error: dict[str, Any] | None = None,
) -> dict[str, Any]:
    body: dict[str, Any] = {"jobId": job_id, "status": status}
    if result is not None:
        body["result"] = result
    if error is not None:
        body["error"] = error
    return body


def _post_json(url: str, body: dict[str, Any], *, timeout_s: float) -> int:
    data = json.dumps(body).encode("utf-8")
    req = urllib.request.Request(url, data=data, method="POST")
    req.add_header("Content-Type", "application/json")
    req.add_header("User-Agent", "videotext-pipeline-webhook/1")
    with urllib.request.urlopen(req, timeout=float(timeout_s)) as resp:
        return int(getattr(resp, "status", 200))


class WebhookNotifier:
    """
    Fire-and-forget job notifications.

    One POST per terminal job, no retries. Delivery runs in a thread so a slow
    endpoint never holds a worker; task references are kept until done.
    """

    def __init__(self, *, timeout_s: float | None = None) -> None:
        self.timeout_s = float(
            timeout_s if timeout_s is not None else get_settings().webhook_timeout_s
        )
        self._tasks: set[asyncio.Task[None]] = set()

    def deliver(self, url: str, body: dict[str, Any]) -> bool:
        """Blocking single attempt; failures are logged, never raised."""
        job_id = str(body.get("jobId") or "")
        if not is_valid_webhook_url(url):
            logger.warning("webhook_invalid_url", job_id=job_id)
            metrics.webhook_deliveries.labels(outcome="invalid").inc()
            return False
        try:
            code = _post_json(url, body, timeout_s=self.timeout_s)
        except urllib.error.HTTPError as ex:
            logger.warning("webhook_failed", job_id=job_id, status=int(ex.code))
            metrics.webhook_deliveries.labels(outcome="error").inc()
            return False
        except (urllib.error.URLError, OSError, ValueError) as ex:
            logger.warning("webhook_failed", job_id=job_id, error=str(ex))
            metrics.webhook_deliveries.labels(outcome="error").inc()
            return False
        if not 200 <= code < 300:
            logger.warning("webhook_failed", job_id=job_id, status=code)
            metrics.webhook_deliveries.labels(outcome="error").inc()
            return False
        logger.info("webhook_sent", job_id=job_id, status=code)
        metrics.webhook_deliveries.labels(outcome="ok").inc()
        return True

    def notify(self, url: str, body: dict[str, Any]) -> asyncio.Task[None]:
        async def _run() -> None:
            await asyncio.to_thread(self.deliver, url, body)

        t = asyncio.create_task(_run(), name=f"webhook:{body.get('jobId')}")
        self._tasks.add(t)
        t.add_done_callback(self._tasks.discard)
        return t

    async def drain(self) -> None:
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
