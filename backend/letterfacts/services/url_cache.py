"""
Two-tier cache for per-URL analysis data.

L1 is a bounded in-process map (24h TTL by default). L2 is a durable table
keyed by the SHA-256 of the normalized URL (7 days by default). Reads fall
through L1 -> L2 and write L2 hits back into L1; writes go to L1 immediately
and to L2 in a fire-and-forget task.

The cache never raises on the read or write path: an unavailable L2 behaves
like a permanent miss.
"""
from __future__ import annotations

import asyncio
import hashlib
import logging
import time
from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timezone
from functools import lru_cache
from typing import Any, Callable, Generic, Literal, Optional, TypeVar
from urllib.parse import urlsplit

from sqlalchemy.orm import Session

from ..core.config import get_settings
from ..core.db import Base, SessionLocal
from ..models.url_analysis_cache import UrlAnalysisCache

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class CacheEntry(Generic[T]):
    key: str
    data: T
    expires_at: float  # epoch seconds
    tier: Literal["L1", "L2"]


def normalize_url_for_cache(url: str) -> str:
    """
    Cache key for a URL: lowercase scheme and host, no trailing slash on a
    non-root path, no fragment. Userinfo, port, path case and query are
    preserved.
    Unparsable input is returned unchanged.
    """
    try:
        parsed = urlsplit(url.strip())
        port = parsed.port
    except ValueError:
        return url
    if not parsed.scheme or not parsed.netloc or not parsed.hostname:
        return url

    host = parsed.hostname.lower()
    if ":" in host:
        host = f"[{host}]"
    path = parsed.path or "/"
    if len(path) > 1 and path.endswith("/"):
        path = path[:-1]
    query = f"?{parsed.query}" if parsed.query else ""
    port_part = f":{port}" if port else ""
    userinfo, at, _ = parsed.netloc.rpartition("@")
    return f"{parsed.scheme.lower()}://{userinfo}{at}{host}{port_part}{path}{query}"


def _hash_key(key: str) -> str:
    return hashlib.sha256(key.encode("utf-8")).hexdigest()


def url_hash(url: str) -> str:
    return _hash_key(normalize_url_for_cache(url))


def _to_datetime(ts: float) -> datetime:
    # L2 stores naive UTC timestamps
    return datetime.fromtimestamp(ts, tz=timezone.utc).replace(tzinfo=None)


# ---------------------------------------------------------------------------
# Durable tier
# ---------------------------------------------------------------------------

class DurableStore(ABC):
    """
    Blocking interface to the durable tier. The cache calls it from worker
    threads, so implementations must not touch the event loop.
    """

    @abstractmethod
    def get(self, key_hash: str, now: datetime) -> Any | None:
        """Return stored data for `key_hash` if `expires_at > now`, else None."""

    @abstractmethod
    def upsert(self, key_hash: str, url: str, data: Any, expires_at: datetime) -> None:
        """Insert or replace the row for `key_hash`."""


class SqlDurableStore(DurableStore):
    """`url_analysis_cache` table via SQLAlchemy (PostgreSQL in prod, SQLite in dev/tests)."""

    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        create_schema: bool = False,
    ) -> None:
        self._session_factory = session_factory
        if create_schema:
            db = self._session_factory()
            try:
                Base.metadata.create_all(bind=db.get_bind(), tables=[UrlAnalysisCache.__table__])
            finally:
                db.close()

    def get(self, key_hash: str, now: datetime) -> Any | None:
        db = self._session_factory()
        try:
            row = (
                db.query(UrlAnalysisCache)
                .filter(
                    UrlAnalysisCache.url_hash == key_hash,
                    UrlAnalysisCache.expires_at > now,
                )
                .first()
            )
            return row.data if row else None
        finally:
            db.close()

    def upsert(self, key_hash: str, url: str, data: Any, expires_at: datetime) -> None:
        db = self._session_factory()
        try:
            dialect = db.get_bind().dialect.name
            if dialect == "postgresql":
                from sqlalchemy.dialects.postgresql import insert
            elif dialect == "sqlite":
                from sqlalchemy.dialects.sqlite import insert
            else:
                db.merge(
                    UrlAnalysisCache(url_hash=key_hash, url=url, data=data, expires_at=expires_at)
                )
                db.commit()
                return

            stmt = insert(UrlAnalysisCache).values(
                url_hash=key_hash, url=url, data=data, expires_at=expires_at
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=[UrlAnalysisCache.url_hash],
                set_={
                    "url": stmt.excluded.url,
                    "data": stmt.excluded.data,
                    "expires_at": stmt.excluded.expires_at,
                },
            )
            db.execute(stmt)
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()


# ---------------------------------------------------------------------------
# Cache
# ---------------------------------------------------------------------------

class TwoTierCache(Generic[T]):
    """
    L1 map + optional durable L2.

    Values must be JSON-serialisable when an L2 store is configured. L1 is
    only mutated from the event loop thread; L2 I/O runs in worker threads.
    """

    def __init__(
        self,
        store: Optional[DurableStore] = None,
        *,
        l1_ttl: float = 24 * 60 * 60,
        l2_ttl: float = 7 * 24 * 60 * 60,
        sweep_interval: float = 10 * 60,
        max_entries: int = 1000,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._l1: "OrderedDict[str, CacheEntry[T]]" = OrderedDict()
        self._l1_ttl = l1_ttl
        self._l2_ttl = l2_ttl
        self._sweep_interval = sweep_interval
        self._max_entries = max_entries
        self._clock = clock
        self._pending: set[asyncio.Task] = set()
        self._sweeper: Optional[asyncio.Task] = None

    # -- L1 -----------------------------------------------------------------

    @property
    def l1_size(self) -> int:
        return len(self._l1)

    def _write_l1(self, key: str, data: T, now: float) -> None:
        self._l1[key] = CacheEntry(key=key, data=data, expires_at=now + self._l1_ttl, tier="L1")
        self._l1.move_to_end(key)
        while len(self._l1) > self._max_entries:
            evicted, _ = self._l1.popitem(last=False)
            logger.debug("L1 full, evicted %s", evicted, extra={"tier": "L1"})

    def _l1_lookup(self, key: str, now: float) -> Optional[CacheEntry[T]]:
        entry = self._l1.get(key)
        if entry is None:
            return None
        if now <= entry.expires_at:
            return entry
        del self._l1[key]
        return None

    def sweep(self) -> int:
        """Evict expired L1 entries; returns how many were removed."""
        now = self._clock()
        expired = [key for key, entry in self._l1.items() if now > entry.expires_at]
        for key in expired:
            del self._l1[key]
        if expired:
            logger.info("Cache sweep removed %d expired entries", len(expired), extra={"tier": "L1"})
        return len(expired)

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self._sweep_interval)
            self.sweep()

    def start(self) -> None:
        """Start the periodic L1 sweep on the running loop (idempotent)."""
        if self._sweeper is not None and not self._sweeper.done():
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._sweeper = loop.create_task(self._sweep_loop())

    async def close(self) -> None:
        if self._sweeper is not None:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None
        await self.flush()

    # -- public API -----------------------------------------------------------

    async def get(self, url: str) -> Optional[T]:
        self.start()
        key = normalize_url_for_cache(url)
        now = self._clock()

        entry = self._l1_lookup(key, now)
        if entry is not None:
            logger.debug("Cache hit", extra={"tier": "L1"})
            return entry.data

        if self._store is None:
            return None

        key_hash = _hash_key(key)
        try:
            data = await asyncio.to_thread(self._store.get, key_hash, _to_datetime(now))
        except Exception:
            logger.warning(
                "L2 cache read failed; treating as miss",
                exc_info=True,
                extra={"url_hash": key_hash, "tier": "L2"},
            )
            return None

        if data is None:
            return None

        # A set() that landed while L2 was being read is fresher; keep it
        newer = self._l1_lookup(key, self._clock())
        if newer is not None:
            return newer.data

        self._write_l1(key, data, self._clock())
        logger.debug("Cache hit", extra={"url_hash": key_hash, "tier": "L2"})
        return data

    def set(self, url: str, data: T) -> None:
        self.start()
        key = normalize_url_for_cache(url)
        now = self._clock()
        self._write_l1(key, data, now)

        if self._store is None:
            return

        key_hash = _hash_key(key)
        expires_at = _to_datetime(now + self._l2_ttl)
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._write_l2_blocking(key_hash, key, data, expires_at)
            return

        task = loop.create_task(self._write_l2(key_hash, key, data, expires_at))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _write_l2(self, key_hash: str, key: str, data: T, expires_at: datetime) -> None:
        try:
            await asyncio.to_thread(self._store.upsert, key_hash, key, data, expires_at)
        except Exception:
            logger.warning(
                "L2 cache write failed; continuing without durable copy",
                exc_info=True,
                extra={"url_hash": key_hash, "tier": "L2"},
            )

    def _write_l2_blocking(self, key_hash: str, key: str, data: T, expires_at: datetime) -> None:
        try:
            self._store.upsert(key_hash, key, data, expires_at)
        except Exception:
            logger.warning(
                "L2 cache write failed; continuing without durable copy",
                exc_info=True,
                extra={"url_hash": key_hash, "tier": "L2"},
            )

    async def flush(self) -> None:
        """Wait for in-flight L2 writes."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)


@lru_cache(maxsize=1)
def get_url_cache() -> TwoTierCache:
    settings = get_settings()
    store = SqlDurableStore(create_schema=settings.DATABASE_URL.startswith("sqlite"))
    return TwoTierCache(
        store,
        l1_ttl=settings.CACHE_L1_TTL_SECONDS,
        l2_ttl=settings.CACHE_L2_TTL_SECONDS,
        sweep_interval=settings.CACHE_SWEEP_INTERVAL_SECONDS,
        max_entries=settings.CACHE_L1_MAX_ENTRIES,
    )
