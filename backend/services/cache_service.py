"""
SQL-backed key/value cache with per-entry TTL.

Holds derived, disposable artifacts (cached cost basis envelopes, wallet
balance summaries, holder listings).  Losing an entry only costs a
recomputation, so every failure here is logged and swallowed: reads degrade
to a miss and writes to a no-op.

Keys support ``*`` wildcards in ``clear_by_pattern``; patterns are translated
to SQL ``LIKE`` with the other LIKE metacharacters escaped.
"""

from datetime import timedelta
from typing import Any, Callable, Optional

from sqlalchemy import delete, func, select
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from models.database import AsyncSessionLocal, CacheEntry
from utils.logger import cache_logger as logger
from utils.utcnow import utcnow

DEFAULT_TTL_SECONDS = 3600
_LIKE_ESCAPE = "\\"

_UPSERT_INSERTS = {
    "sqlite": sqlite_insert,
    "postgresql": postgresql_insert,
}


def pattern_to_like(pattern: str) -> str:
    """Translate a ``*`` wildcard pattern into an escaped LIKE pattern."""
    escaped = (
        pattern.replace(_LIKE_ESCAPE, _LIKE_ESCAPE * 2)
        .replace("%", _LIKE_ESCAPE + "%")
        .replace("_", _LIKE_ESCAPE + "_")
    )
    return escaped.replace("*", "%")


def upsert_insert_for(dialect_name: str) -> Callable:
    """Dialect ``insert`` construct that supports ``on_conflict_do_update``."""
    try:
        return _UPSERT_INSERTS[dialect_name]
    except KeyError:
        raise ValueError(f"No cache upsert for dialect {dialect_name!r}") from None


class DatabaseCacheService:
    def __init__(self, session_factory: Callable = None):
        self._session_factory = session_factory or AsyncSessionLocal

    async def get(self, key: str) -> Optional[Any]:
        """Cached value, or None on miss / expiry / error."""
        try:
            async with self._session_factory() as session:
                entry = (
                    await session.execute(select(CacheEntry).where(CacheEntry.cache_key == key))
                ).scalar_one_or_none()

                if entry is None:
                    logger.debug("Cache miss", key=key)
                    return None

                now = utcnow()
                if entry.expires_at < now:
                    logger.debug("Cache entry expired", key=key)
                    await session.delete(entry)
                    await session.commit()
                    return None

                entry.hit_count = (entry.hit_count or 0) + 1
                entry.accessed_at = now
                data = entry.data
                await session.commit()
                return data
        except Exception as e:
            logger.error("Cache get failed", key=key, error=str(e))
            return None

    async def set(self, key: str, value: Any, ttl_seconds: int = DEFAULT_TTL_SECONDS) -> None:
        """Store ``value`` (JSON-serializable) for ``ttl_seconds``."""
        try:
            now = utcnow()
            expires_at = now + timedelta(seconds=ttl_seconds)
            async with self._session_factory() as session:
                stmt = upsert_insert_for(session.bind.dialect.name)(CacheEntry).values(
                    cache_key=key,
                    data=value,
                    expires_at=expires_at,
                    hit_count=0,
                    accessed_at=now,
                    created_at=now,
                )
                stmt = stmt.on_conflict_do_update(
                    index_elements=[CacheEntry.cache_key],
                    set_={
                        "data": stmt.excluded.data,
                        "expires_at": stmt.excluded.expires_at,
                        "accessed_at": stmt.excluded.accessed_at,
                    },
                )
                await session.execute(stmt)
                await session.commit()
            logger.debug("Cache set", key=key, ttl_seconds=ttl_seconds)
        except Exception as e:
            logger.error("Cache set failed", key=key, error=str(e))

    async def delete(self, key: str) -> bool:
        try:
            async with self._session_factory() as session:
                result = await session.execute(delete(CacheEntry).where(CacheEntry.cache_key == key))
                await session.commit()
                return bool(result.rowcount)
        except Exception as e:
            logger.error("Cache delete failed", key=key, error=str(e))
            return False

    async def clear_by_pattern(self, pattern: Optional[str] = None) -> int:
        """Delete entries whose key matches ``pattern``; everything when None."""
        try:
            async with self._session_factory() as session:
                stmt = delete(CacheEntry)
                if pattern:
                    stmt = stmt.where(
                        CacheEntry.cache_key.like(pattern_to_like(pattern), escape=_LIKE_ESCAPE)
                    )
                result = await session.execute(stmt)
                await session.commit()
                removed = int(result.rowcount or 0)
            logger.debug("Cache cleared", pattern=pattern, removed=removed)
            return removed
        except Exception as e:
            logger.error("Cache clear failed", pattern=pattern, error=str(e))
            return 0

    async def cleanup_expired(self) -> int:
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    delete(CacheEntry).where(CacheEntry.expires_at < utcnow())
                )
                await session.commit()
                removed = int(result.rowcount or 0)
            if removed:
                logger.info("Expired cache entries removed", removed=removed)
            return removed
        except Exception as e:
            logger.error("Cache cleanup failed", error=str(e))
            return 0

    async def get_stats(self) -> dict:
        try:
            async with self._session_factory() as session:
                now = utcnow()
                total = (await session.execute(select(func.count(CacheEntry.id)))).scalar_one()
                expired = (
                    await session.execute(
                        select(func.count(CacheEntry.id)).where(CacheEntry.expires_at < now)
                    )
                ).scalar_one()
                total_hits = (
                    await session.execute(select(func.coalesce(func.sum(CacheEntry.hit_count), 0)))
                ).scalar_one()
                top = (
                    await session.execute(
                        select(CacheEntry.cache_key, CacheEntry.hit_count)
                        .order_by(CacheEntry.hit_count.desc())
                        .limit(1)
                    )
                ).first()
            return {
                "total_entries": int(total),
                "expired_entries": int(expired),
                "active_entries": int(total) - int(expired),
                "total_hits": int(total_hits),
                "top_key": top[0] if top else None,
                "top_hits": int(top[1]) if top else 0,
            }
        except Exception as e:
            logger.error("Cache stats failed", error=str(e))
            return {}
