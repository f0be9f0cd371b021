from __future__ import annotations

import hashlib
import json
import time
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any

from videotext_pipeline.config import get_settings
from videotext_pipeline.jobs.models import ToolType
from videotext_pipeline.ops import metrics
from videotext_pipeline.store.kv import KVStore
from videotext_pipeline.utils.log import logger

_DAY_S = 24 * 3600
_READ_BLOCK = 1024 * 1024


@dataclass(frozen=True, slots=True)
class CacheEntry:
    owner_id: str
    content_hash: str
    tool_type: str
    options_hash: str
    output_path: str
    file_name: str
    created_at: float

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _canonical(value: Any) -> Any:
    if isinstance(value, dict):
        return {str(k): _canonical(v) for k, v in sorted(value.items(), key=lambda kv: str(kv[0]))}
    if isinstance(value, (list, tuple, set)):
        items = [_canonical(v) for v in value]
        return sorted(items, key=lambda v: json.dumps(v, sort_keys=True, separators=(",", ":")))
    return value


def options_hash(tool_type: ToolType | str, options: dict[str, Any] | None) -> str:
    """Order-insensitive digest of (tool type, options): key order and array order do not matter."""
    blob = json.dumps(
        {"tool": ToolType(tool_type).value, "options": _canonical(options or {})},
        sort_keys=True,
        separators=(",", ":"),
    ).encode("utf-8")
    return hashlib.sha256(blob).hexdigest()


def hash_file(path: Path) -> str:
    h = hashlib.sha256()
    with Path(path).open("rb") as f:
        for block in iter(lambda: f.read(_READ_BLOCK), b""):
            h.update(block)
    return h.hexdigest()


def make_key(owner_id: str, content_hash: str, tool_type: str, opts_hash: str) -> str:
    return f"dedup:{owner_id}:{content_hash}:{ToolType(tool_type).value}:{opts_hash}"


class DedupCache:
    """
    Per-owner result cache keyed by content hash, tool type and options hash.

    Entries expire by TTL only. A TTL of 0 days turns the cache off. Store
    errors are logged and treated as a miss.
    """

    def __init__(self, kv: KVStore, *, ttl_days: float | None = None) -> None:
        self.kv = kv
        self.ttl_days = float(ttl_days if ttl_days is not None else get_settings().cache_ttl_days)

    @property
    def enabled(self) -> bool:
        return self.ttl_days > 0

    @property
    def ttl_s(self) -> float:
        return self.ttl_days * _DAY_S

    def lookup(
        self, owner_id: str, content_hash: str, tool_type: ToolType | str, opts_hash: str
    ) -> CacheEntry | None:
        if not self.enabled or not content_hash:
            return None
        key = make_key(owner_id, content_hash, str(ToolType(tool_type).value), opts_hash)
        try:
            raw = self.kv.get(key)
        except Exception as ex:
            logger.warning("cache_lookup_failed", key=key, error=str(ex))
            metrics.cache_lookups.labels(outcome="error").inc()
            return None
        if not isinstance(raw, dict):
            metrics.cache_lookups.labels(outcome="miss").inc()
            return None
        try:
            entry = CacheEntry(**raw)
        except TypeError:
            metrics.cache_lookups.labels(outcome="miss").inc()
            return None
        if time.time() - float(entry.created_at) > self.ttl_s or not Path(entry.output_path).exists():
            metrics.cache_lookups.labels(outcome="miss").inc()
            return None
        metrics.cache_lookups.labels(outcome="hit").inc()
        logger.info("cache_hit", owner_id=owner_id, tool=entry.tool_type, path=entry.output_path)
        return entry

    def store(
        self,
        owner_id: str,
        content_hash: str,
        tool_type: ToolType | str,
        opts_hash: str,
        output_path: Path | str,
        file_name: str,
    ) -> CacheEntry | None:
        if not self.enabled or not content_hash:
            return None
        entry = CacheEntry(
            owner_id=owner_id,
            content_hash=content_hash,
            tool_type=ToolType(tool_type).value,
            options_hash=opts_hash,
            output_path=str(output_path),
            file_name=str(file_name),
            created_at=time.time(),
        )
        key = make_key(owner_id, content_hash, entry.tool_type, opts_hash)
        try:
            self.kv.set(key, entry.to_dict(), ttl_s=self.ttl_s)
        except Exception as ex:
            logger.warning("cache_store_failed", key=key, error=str(ex))
            return None
        logger.info("cache_put", key=key, file_name=entry.file_name)
        return entry
