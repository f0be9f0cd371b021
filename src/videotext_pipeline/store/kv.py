from __future__ import annotations

import json
import threading
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any, Protocol

from sqlitedict import SqliteDict  # type: ignore

from videotext_pipeline.config import get_settings
from videotext_pipeline.utils.locks import file_lock
from videotext_pipeline.utils.log import logger

Mutator = Callable[[Any | None], Any | None]


class KVStore(Protocol):
    """
    Shared, TTL-capable key-value store.

    Values must be JSON-serialisable. Every worker that runs jobs must see the
    same store, so process-local maps are only acceptable in tests.
    """

    def get(self, key: str) -> Any | None: ...

    def set(self, key: str, value: Any, *, ttl_s: float | None = None) -> None: ...

    def delete(self, key: str) -> None: ...

    def mutate(self, key: str, fn: Mutator, *, ttl_s: float | None = None) -> Any | None:
        """Atomic read-modify-write. `fn` returns the new value, or None to delete."""
        ...


def _wrap(value: Any, ttl_s: float | None) -> dict[str, Any]:
    exp = (time.time() + float(ttl_s)) if ttl_s else None
    return {"v": value, "exp": exp}


def _unwrap(raw: Any) -> tuple[bool, Any | None]:
    """(expired, value)"""
    if not isinstance(raw, dict) or "v" not in raw:
        return True, None
    exp = raw.get("exp")
    if exp is not None and float(exp) <= time.time():
        return True, None
    return False, raw.get("v")


class MemoryKV:
    """Process-local store; single-process deployments and tests."""

    def __init__(self) -> None:
        self._data: dict[str, dict[str, Any]] = {}
        self._lock = threading.RLock()

    def get(self, key: str) -> Any | None:
        with self._lock:
            raw = self._data.get(key)
            if raw is None:
                return None
            expired, val = _unwrap(raw)
            if expired:
                self._data.pop(key, None)
                return None
            return val

    def set(self, key: str, value: Any, *, ttl_s: float | None = None) -> None:
        # round-trip through JSON so callers never share mutable state with the store
        with self._lock:
            self._data[key] = _wrap(json.loads(json.dumps(value)), ttl_s)

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def mutate(self, key: str, fn: Mutator, *, ttl_s: float | None = None) -> Any | None:
        with self._lock:
            new = fn(self.get(key))
            if new is None:
                self.delete(key)
            else:
                self.set(key, new, ttl_s=ttl_s)
            return new


class SqliteKV:
    """
    Host-wide store backed by sqlitedict.

    Opened per operation; writes take the thread lock plus a cross-process file
    lock so several worker processes can share one state dir.
    """

    def __init__(self, db_path: Path, *, tablename: str = "kv") -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.tablename = tablename
        self._lock = threading.Lock()
        self._lock_path = self.db_path.with_suffix(self.db_path.suffix + ".lock")

    def _db(self) -> SqliteDict:
        return SqliteDict(str(self.db_path), tablename=self.tablename, autocommit=True)

    def _write_lock(self):
        return file_lock(self._lock_path)

    def get(self, key: str) -> Any | None:
        with self._lock, self._db() as db:
            raw = db.get(key)
        if raw is None:
            return None
        expired, val = _unwrap(raw)
        if expired:
            self.delete(key)
            return None
        return val

    def set(self, key: str, value: Any, *, ttl_s: float | None = None) -> None:
        with self._write_lock(), self._lock, self._db() as db:
            db[key] = _wrap(value, ttl_s)

    def delete(self, key: str) -> None:
        with self._write_lock(), self._lock, self._db() as db:
            if key in db:
                del db[key]

    def mutate(self, key: str, fn: Mutator, *, ttl_s: float | None = None) -> Any | None:
        with self._write_lock(), self._lock, self._db() as db:
            raw = db.get(key)
            cur = None
            if raw is not None:
                _, cur = _unwrap(raw)
            new = fn(cur)
            if new is None:
                if key in db:
                    del db[key]
            else:
                db[key] = _wrap(new, ttl_s)
            return new

    def purge_expired(self) -> int:
        n = 0
        with self._write_lock(), self._lock, self._db() as db:
            for k, raw in list(db.items()):
                expired, _ = _unwrap(raw)
                if expired:
                    del db[k]
                    n += 1
        return n


class RedisKV:
    """Multi-host store. Values are stored as JSON strings with native expiry."""

    def __init__(self, url: str, *, prefix: str = "videotext:") -> None:
        import redis  # type: ignore

        self._r = redis.Redis.from_url(url, decode_responses=True)
        self._prefix = prefix

    def _k(self, key: str) -> str:
        return f"{self._prefix}{key}"

    def get(self, key: str) -> Any | None:
        raw = self._r.get(self._k(key))
        return None if raw is None else json.loads(raw)

    def set(self, key: str, value: Any, *, ttl_s: float | None = None) -> None:
        ex = max(1, int(ttl_s)) if ttl_s else None
        self._r.set(self._k(key), json.dumps(value), ex=ex)

    def delete(self, key: str) -> None:
        self._r.delete(self._k(key))

    def mutate(self, key: str, fn: Mutator, *, ttl_s: float | None = None) -> Any | None:
        import redis  # type: ignore

        k = self._k(key)
        while True:
            with self._r.pipeline() as pipe:
                try:
                    pipe.watch(k)
                    raw = pipe.get(k)
                    new = fn(None if raw is None else json.loads(raw))
                    pipe.multi()
                    if new is None:
                        pipe.delete(k)
                    else:
                        ex = max(1, int(ttl_s)) if ttl_s else None
                        pipe.set(k, json.dumps(new), ex=ex)
                    pipe.execute()
                    return new
                except redis.WatchError:
                    continue


def build_kv_store() -> KVStore:
    s = get_settings()
    backend = str(s.store_backend or "sqlite").strip().lower()
    if backend == "memory":
        store: KVStore = MemoryKV()
    elif backend == "redis":
        store = RedisKV(str(s.redis_url))
    else:
        store = SqliteKV(Path(s.resolved_state_dir) / str(s.kv_db_name))
    logger.info("kv_store_ready", backend=backend)
    return store
