"""
Tests for url_cache.py - Two-Tier Cache

Tests URL normalization, L1/L2 read-through and write-back, TTL expiry,
best-effort L2 writes, the periodic sweep and the SQL durable store.
"""
import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from letterfacts.core.db import Base
from letterfacts.models.url_analysis_cache import UrlAnalysisCache
from letterfacts.services.url_cache import (
    SqlDurableStore,
    TwoTierCache,
    normalize_url_for_cache,
    url_hash,
)

from tests.fixtures.pipeline_fixtures import FakeClock, FakeStore

DAY = 24 * 60 * 60


def make_cache(store=None, clock=None, **kwargs) -> TwoTierCache:
    return TwoTierCache(store, clock=clock or FakeClock(), **kwargs)


# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------

class TestNormalizeUrl:
    """Equivalent URLs share one cache key."""

    @pytest.mark.parametrize(
        "a,b",
        [
            ("https://Example.COM/about/", "https://example.com/about"),
            ("https://example.com", "https://example.com/"),
            ("https://example.com/news#top", "https://example.com/news"),
            ("HTTPS://example.com/news", "https://example.com/news"),
        ],
    )
    def test_equivalent(self, a, b):
        assert normalize_url_for_cache(a) == normalize_url_for_cache(b)
        assert url_hash(a) == url_hash(b)

    @pytest.mark.parametrize(
        "a,b",
        [
            ("https://example.com/news?page=1", "https://example.com/news?page=2"),
            ("http://example.com/news", "https://example.com/news"),
            ("https://example.com:8443/news", "https://example.com/news"),
            ("https://example.com/News", "https://example.com/news"),
            ("https://user:pw@Example.com/a/", "https://example.com/a"),
        ],
    )
    def test_distinct(self, a, b):
        assert normalize_url_for_cache(a) != normalize_url_for_cache(b)

    def test_normalized_form(self):
        assert normalize_url_for_cache("https://Example.com:8443/IR/?lang=ja#x") == "https://example.com:8443/IR?lang=ja"

    def test_userinfo_is_kept_in_key(self):
        assert normalize_url_for_cache("https://user:pw@Example.com/a/") == "https://user:pw@example.com/a"

    def test_unparsable_returned_unchanged(self):
        assert normalize_url_for_cache("not a url") == "not a url"
        assert normalize_url_for_cache("http://example.com:abc/") == "http://example.com:abc/"

    def test_hash_is_sha256_hex(self):
        digest = url_hash("https://example.com/")
        assert len(digest) == 64
        int(digest, 16)


# ---------------------------------------------------------------------------
# L1 / L2 behaviour
# ---------------------------------------------------------------------------

class TestTwoTierCache:
    """get/set semantics across both tiers."""

    def test_round_trip_and_expiry(self):
        clock = FakeClock()
        cache = make_cache(clock=clock)

        async def scenario():
            cache.set("https://example.com/", {"v": 1})
            assert await cache.get("https://example.com/") == {"v": 1}
            clock.advance(DAY)
            assert await cache.get("https://example.com/") == {"v": 1}
            clock.advance(1)
            assert await cache.get("https://example.com/") is None
            await cache.close()

        asyncio.run(scenario())

    def test_normalized_urls_share_entry(self):
        cache = make_cache()

        async def scenario():
            cache.set("https://Example.com/about/", "data")
            assert await cache.get("https://example.com/about") == "data"
            await cache.close()

        asyncio.run(scenario())

    def test_set_writes_through_to_l2(self):
        clock = FakeClock()
        store = FakeStore()
        cache = make_cache(store, clock)

        async def scenario():
            cache.set("https://example.com/", {"v": 1})
            await cache.flush()
            await cache.close()

        asyncio.run(scenario())

        row = store.rows[url_hash("https://example.com/")]
        assert row["data"] == {"v": 1}
        assert row["url"] == "https://example.com/"
        assert row["expires_at"] == datetime.fromtimestamp(clock.now, tz=timezone.utc).replace(tzinfo=None) + timedelta(days=7)

    def test_l2_hit_is_written_back_to_l1(self):
        clock = FakeClock()
        store = FakeStore()
        writer = make_cache(store, clock)
        reader = make_cache(store, clock)

        async def scenario():
            writer.set("https://example.com/", {"v": 1})
            await writer.flush()

            clock.advance(2 * DAY)  # past L1 TTL, within L2 TTL
            assert await reader.get("https://example.com/") == {"v": 1}
            assert store.reads == 1

            # second read is served from L1
            assert await reader.get("https://example.com/") == {"v": 1}
            assert store.reads == 1
            await writer.close()
            await reader.close()

        asyncio.run(scenario())

    def test_l2_expiry(self):
        clock = FakeClock()
        store = FakeStore()
        cache = make_cache(store, clock)

        async def scenario():
            cache.set("https://example.com/", {"v": 1})
            await cache.flush()
            clock.advance(7 * DAY + 1)
            assert await cache.get("https://example.com/") is None
            await cache.close()

        asyncio.run(scenario())

    def test_l2_errors_degrade_to_miss(self):
        store = FakeStore(fail=True)
        cache = make_cache(store)

        async def scenario():
            cache.set("https://example.com/", {"v": 1})
            await cache.flush()
            # L1 still works
            assert await cache.get("https://example.com/") == {"v": 1}
            assert await cache.get("https://example.com/other") is None
            await cache.close()

        asyncio.run(scenario())
        assert store.writes == 1
        assert store.reads == 1

    def test_set_without_running_loop(self):
        store = FakeStore()
        cache = make_cache(store)
        cache.set("https://example.com/", {"v": 1})
        assert store.writes == 1

    def test_l1_is_bounded(self):
        cache = make_cache(max_entries=2)

        async def scenario():
            cache.set("https://a.example.com/", 1)
            cache.set("https://b.example.com/", 2)
            cache.set("https://c.example.com/", 3)
            assert cache.l1_size == 2
            assert await cache.get("https://a.example.com/") is None
            assert await cache.get("https://c.example.com/") == 3
            await cache.close()

        asyncio.run(scenario())

    def test_sweep_evicts_expired_entries(self):
        clock = FakeClock()
        cache = make_cache(clock=clock)
        cache.set("https://a.example.com/", 1)
        clock.advance(DAY / 2)
        cache.set("https://b.example.com/", 2)
        clock.advance(DAY / 2 + 1)

        assert cache.sweep() == 1
        assert cache.l1_size == 1

    def test_background_sweep_runs_and_stops(self):
        clock = FakeClock()
        cache = make_cache(clock=clock, sweep_interval=0.01)

        async def scenario():
            cache.set("https://a.example.com/", 1)
            clock.advance(DAY + 1)
            await asyncio.sleep(0.05)
            assert cache.l1_size == 0
            await cache.close()

        asyncio.run(scenario())


# ---------------------------------------------------------------------------
# SQL durable store
# ---------------------------------------------------------------------------

@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine, tables=[UrlAnalysisCache.__table__])
    yield sessionmaker(bind=engine, autoflush=False, autocommit=False)
    engine.dispose()


class TestSqlDurableStore:
    """Insert-or-replace and expiry filtering against SQLite."""

    def test_upsert_and_get(self, session_factory):
        store = SqlDurableStore(session_factory)
        now = datetime(2026, 1, 1)
        store.upsert("h1", "https://example.com/", {"facts": ["a"]}, now + timedelta(days=7))

        assert store.get("h1", now) == {"facts": ["a"]}
        assert store.get("missing", now) is None

    def test_upsert_replaces_existing_row(self, session_factory):
        store = SqlDurableStore(session_factory)
        now = datetime(2026, 1, 1)
        store.upsert("h1", "https://example.com/", {"v": 1}, now + timedelta(days=1))
        store.upsert("h1", "https://example.com/", {"v": 2}, now + timedelta(days=7))

        assert store.get("h1", now + timedelta(days=3)) == {"v": 2}
        db = session_factory()
        try:
            assert db.query(UrlAnalysisCache).count() == 1
        finally:
            db.close()

    def test_expired_rows_are_not_returned(self, session_factory):
        store = SqlDurableStore(session_factory)
        now = datetime(2026, 1, 1)
        store.upsert("h1", "https://example.com/", {"v": 1}, now)
        assert store.get("h1", now) is None

    def test_cache_over_sql_store(self, session_factory):
        clock = FakeClock()
        store = SqlDurableStore(session_factory)
        writer = make_cache(store, clock)
        reader = make_cache(store, clock)

        async def scenario():
            writer.set("https://example.com/ir/", {"sources": []})
            await writer.flush()
            assert await reader.get("https://EXAMPLE.com/ir") == {"sources": []}
            await writer.close()
            await reader.close()

        asyncio.run(scenario())
