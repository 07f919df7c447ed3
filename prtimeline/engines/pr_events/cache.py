"""Freshness-aware TTL cache with optional disk persistence.

An entry is a hit for reference time ``R`` only if it was stored at or after
``R`` *and* is still inside its TTL.  Entries failing either check are
deleted from every tier on sight.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import os
import tempfile
import threading
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Generic, TypeVar

import structlog
from pydantic import TypeAdapter, ValidationError

log = structlog.get_logger("prtimeline.engine")

V = TypeVar("V")

PR_TTL = timedelta(days=20)
COLLABORATORS_TTL = timedelta(hours=4)
PERMISSION_TTL = timedelta(hours=24)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def cache_key(*parts: object) -> str:
    """Stable sha256 hex digest for a key made of *parts*."""
    raw = "/".join(str(p) for p in parts)
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


@dataclass
class CacheEntry(Generic[V]):
    value: V
    cached_at: datetime


class DiskStore:
    """One JSON file per key under *directory*.

    Files hold ``{"cached_at": <iso>, "value": <json>}`` and are written via a
    uniquely named temp file plus :func:`os.replace`, so readers (and other
    processes writing the same key) never see a partial file.
    """

    def __init__(self, directory: str | os.PathLike[str]) -> None:
        self.directory = Path(directory)

    def _path(self, key: str) -> Path:
        return self.directory / f"{key}.json"

    def load(self, key: str) -> tuple[Any, datetime] | None:
        path = self._path(key)
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
            cached_at = datetime.fromisoformat(payload["cached_at"])
            return payload["value"], cached_at
        except FileNotFoundError:
            return None
        except (OSError, ValueError, KeyError, TypeError) as exc:
            log.warning("cache.disk_decode_failed", path=str(path), error=str(exc))
            self.delete(key)
            return None

    def save(self, key: str, value: Any, cached_at: datetime) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=self.directory, prefix=f"{key}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump({"cached_at": cached_at.isoformat(), "value": value}, fh)
            os.replace(tmp, self._path(key))
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise

    def delete(self, key: str) -> None:
        try:
            self._path(key).unlink()
        except FileNotFoundError:
            pass

    def purge(self, ttl: timedelta, now: datetime) -> int:
        """Remove files older than *ttl* (or unreadable).  Returns the count."""
        if not self.directory.is_dir():
            return 0
        removed = 0
        for path in self.directory.glob("*.json"):
            try:
                payload = json.loads(path.read_text(encoding="utf-8"))
                cached_at = datetime.fromisoformat(payload["cached_at"])
                expired = now - cached_at > ttl
            except (OSError, ValueError, KeyError, TypeError):
                expired = True
            if expired:
                path.unlink(missing_ok=True)
                removed += 1
        return removed


class FreshnessCache(Generic[V]):
    """In-memory TTL cache, optionally backed by a :class:`DiskStore`.

    ``get_or_fetch`` runs at most one fetch per key at a time; concurrent
    callers await the same task.  Cancelling one caller leaves the shared
    fetch running for the others.  The lock guards the memory tier only;
    disk reads and writes happen outside it, and on a worker thread when
    called from ``get_or_fetch``.
    """

    def __init__(
        self,
        name: str,
        ttl: timedelta,
        codec: TypeAdapter[V],
        *,
        store: DiskStore | None = None,
        clock: Callable[[], datetime] = _utcnow,
        stamp: Callable[[V, datetime], V] | None = None,
    ) -> None:
        self.name = name
        self.ttl = ttl
        self._codec = codec
        self._store = store
        self._clock = clock
        self._stamp = stamp
        self._entries: dict[str, CacheEntry[V]] = {}
        self._inflight: dict[str, asyncio.Task[V]] = {}
        self._lock = threading.Lock()

    # ── lookups ──────────────────────────────────────────────────────────

    def get(self, key: str, reference_time: datetime | None = None) -> tuple[V | None, bool]:
        """Return ``(value, True)`` on a fresh hit, ``(None, False)`` otherwise.

        A naive *reference_time* is taken as UTC.
        """
        digest = cache_key(key)
        entry = self._memory(digest)
        if entry is None:
            entry = self._load(digest)
        value, found = self._admit(digest, entry, reference_time)
        if entry is not None and not found:
            self._delete_file(digest)
        return value, found

    def set(self, key: str, value: V, cached_at: datetime | None = None) -> None:
        digest = cache_key(key)
        entry = self._remember(digest, value, cached_at or self._clock())
        self._persist(digest, entry)

    def delete(self, key: str) -> None:
        digest = cache_key(key)
        with self._lock:
            self._entries.pop(digest, None)
        self._delete_file(digest)

    async def get_or_fetch(
        self,
        key: str,
        reference_time: datetime | None,
        fetch: Callable[[], Awaitable[V]],
    ) -> V:
        digest = cache_key(key)
        entry = self._memory(digest)
        if entry is None and self._store is not None:
            entry = await asyncio.to_thread(self._load, digest)
        value, found = self._admit(digest, entry, reference_time)
        if found:
            log.debug("cache.hit", cache=self.name)
            return value  # type: ignore[return-value]
        if entry is not None and self._store is not None:
            await asyncio.to_thread(self._store.delete, digest)

        with self._lock:
            task = self._inflight.get(digest)
            if task is None:
                task = asyncio.ensure_future(self._fetch_and_store(digest, fetch))
                self._inflight[digest] = task
            else:
                log.debug("cache.join_inflight", cache=self.name)
        return await asyncio.shield(task)

    # ── lifecycle ────────────────────────────────────────────────────────

    def close(self) -> None:
        """Drop in-flight bookkeeping and remove expired disk files."""
        with self._lock:
            self._inflight.clear()
        if self._store is not None:
            removed = self._store.purge(self.ttl, self._clock())
            if removed:
                log.info("cache.purged", cache=self.name, removed=removed)

    # ── internal ─────────────────────────────────────────────────────────

    async def _fetch_and_store(self, digest: str, fetch: Callable[[], Awaitable[V]]) -> V:
        try:
            value = await fetch()
            cached_at = self._clock()
            if self._stamp is not None:
                value = self._stamp(value, cached_at)
            entry = self._remember(digest, value, cached_at)
            if self._store is not None:
                await asyncio.to_thread(self._persist, digest, entry)
            return value
        finally:
            with self._lock:
                self._inflight.pop(digest, None)

    def _memory(self, digest: str) -> CacheEntry[V] | None:
        with self._lock:
            return self._entries.get(digest)

    def _remember(self, digest: str, value: V, cached_at: datetime) -> CacheEntry[V]:
        entry = CacheEntry(value=value, cached_at=cached_at)
        with self._lock:
            self._entries[digest] = entry
        return entry

    def _admit(
        self, digest: str, entry: CacheEntry[V] | None, reference_time: datetime | None
    ) -> tuple[V | None, bool]:
        if entry is None:
            return None, False
        if reference_time is not None and reference_time.tzinfo is None:
            reference_time = reference_time.replace(tzinfo=timezone.utc)

        if self._clock() - entry.cached_at > self.ttl:
            log.debug("cache.expired", cache=self.name)
        elif reference_time is not None and entry.cached_at < reference_time:
            log.debug(
                "cache.stale",
                cache=self.name,
                cached_at=entry.cached_at.isoformat(),
                reference_time=reference_time.isoformat(),
            )
        else:
            with self._lock:
                self._entries.setdefault(digest, entry)
            return entry.value, True

        with self._lock:
            # a concurrent set may already have replaced the rejected entry
            if self._entries.get(digest) is entry:
                del self._entries[digest]
        return None, False

    def _persist(self, digest: str, entry: CacheEntry[V]) -> None:
        if self._store is None:
            return
        try:
            self._store.save(
                digest,
                self._codec.dump_python(entry.value, mode="json"),
                entry.cached_at,
            )
        except OSError as exc:
            log.warning("cache.disk_write_failed", cache=self.name, error=str(exc))

    def _load(self, digest: str) -> CacheEntry[V] | None:
        if self._store is None:
            return None
        loaded = self._store.load(digest)
        if loaded is None:
            return None
        raw_value, cached_at = loaded
        try:
            value = self._codec.validate_python(raw_value)
        except ValidationError as exc:
            log.warning("cache.decode_failed", cache=self.name, errors=exc.error_count())
            self._store.delete(digest)
            return None
        return CacheEntry(value=value, cached_at=cached_at)

    def _delete_file(self, digest: str) -> None:
        if self._store is not None:
            self._store.delete(digest)
