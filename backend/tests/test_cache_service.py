import sys
from datetime import timedelta
from pathlib import Path

import pytest
from sqlalchemy import select, update
from sqlalchemy.dialects import postgresql

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from models.database import CacheEntry
from services.cache_service import DatabaseCacheService, pattern_to_like, upsert_insert_for
from utils.utcnow import utcnow


def test_pattern_to_like_escapes_like_metacharacters():
    assert pattern_to_like("token_holders_*") == "token\\_holders\\_%"
    assert pattern_to_like("100%*") == "100\\%%"
    assert pattern_to_like("a\\b*") == "a\\\\b%"


def test_upsert_insert_follows_dialect():
    stmt = upsert_insert_for("postgresql")(CacheEntry).values(cache_key="k", data=1)
    stmt = stmt.on_conflict_do_update(
        index_elements=[CacheEntry.cache_key],
        set_={"data": stmt.excluded.data},
    )

    assert "ON CONFLICT (cache_key) DO UPDATE" in str(stmt.compile(dialect=postgresql.dialect()))
    with pytest.raises(ValueError):
        upsert_insert_for("mssql")


@pytest.mark.asyncio
async def test_set_get_roundtrip_counts_hits(cache, session_factory):
    await cache.set("cost_basis_a", {"total_cost_usd": 5.0}, 60)

    assert await cache.get("cost_basis_a") == {"total_cost_usd": 5.0}
    assert await cache.get("cost_basis_a") == {"total_cost_usd": 5.0}

    async with session_factory() as session:
        entry = (
            await session.execute(select(CacheEntry).where(CacheEntry.cache_key == "cost_basis_a"))
        ).scalar_one()
    assert entry.hit_count == 2


@pytest.mark.asyncio
async def test_set_overwrites_existing_key(cache):
    await cache.set("k", {"v": 1}, 60)
    await cache.set("k", {"v": 2}, 60)

    assert await cache.get("k") == {"v": 2}


@pytest.mark.asyncio
async def test_expired_entry_is_a_miss_and_removed(cache, session_factory):
    await cache.set("stale", {"v": 1}, 60)
    async with session_factory() as session:
        await session.execute(
            update(CacheEntry)
            .where(CacheEntry.cache_key == "stale")
            .values(expires_at=utcnow() - timedelta(seconds=1))
        )
        await session.commit()

    assert await cache.get("stale") is None
    assert (await cache.get_stats())["total_entries"] == 0


@pytest.mark.asyncio
async def test_delete_reports_whether_key_existed(cache):
    await cache.set("k", 1, 60)

    assert await cache.delete("k") is True
    assert await cache.delete("k") is False


@pytest.mark.asyncio
async def test_clear_by_pattern_treats_underscore_literally(cache):
    await cache.set("token_holders_page_1", [], 60)
    await cache.set("token_holders_page_2", [], 60)
    await cache.set("tokenXholders_page_1", [], 60)
    await cache.set("cost_basis_a", {}, 60)

    removed = await cache.clear_by_pattern("token_holders_*")

    assert removed == 2
    assert await cache.get("tokenXholders_page_1") == []
    assert await cache.get("cost_basis_a") == {}


@pytest.mark.asyncio
async def test_clear_without_pattern_removes_everything(cache):
    await cache.set("a", 1, 60)
    await cache.set("b", 2, 60)

    assert await cache.clear_by_pattern() == 2


@pytest.mark.asyncio
async def test_cleanup_expired_keeps_live_entries(cache, session_factory):
    await cache.set("live", 1, 600)
    await cache.set("dead", 2, 600)
    async with session_factory() as session:
        await session.execute(
            update(CacheEntry)
            .where(CacheEntry.cache_key == "dead")
            .values(expires_at=utcnow() - timedelta(minutes=5))
        )
        await session.commit()

    assert await cache.cleanup_expired() == 1
    stats = await cache.get_stats()
    assert stats["total_entries"] == 1
    assert stats["expired_entries"] == 0


@pytest.mark.asyncio
async def test_failures_degrade_to_miss_and_noop():
    def _broken_factory():
        raise RuntimeError("database unavailable")

    cache = DatabaseCacheService(_broken_factory)

    assert await cache.get("k") is None
    await cache.set("k", 1, 60)
    assert await cache.delete("k") is False
    assert await cache.clear_by_pattern("*") == 0
    assert await cache.get_stats() == {}
