"""ORM models and the shared async engine.

Ledger tables (wallets, transactions, holders, hourly prices) are written by
ingestion and read by the cost basis engine; the engine writes only the cost
basis columns of ``token_holders`` plus its own cache and run-log tables.
"""

import os
from contextlib import contextmanager
from pathlib import Path

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    event,
)
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import declarative_base, relationship, sessionmaker

from config import settings
from utils.logger import get_logger
from utils.utcnow import utcnow

logger = get_logger("database")


Base = declarative_base()


# ==================== LEDGER ====================


class Wallet(Base):
    """On-chain wallet, identified by address."""

    __tablename__ = "wallets"

    id = Column(Integer, primary_key=True, autoincrement=True)
    address = Column(String, nullable=False, unique=True)
    created_at = Column(DateTime, default=utcnow)

    # Incremental sync bookkeeping, owned by the ingestion side
    last_sync_time = Column(BigInteger, default=0)
    last_transaction_time = Column(BigInteger, default=0)

    holder = relationship("TokenHolder", back_populates="wallet", uselist=False)

    __table_args__ = (Index("idx_wallet_last_sync", "last_sync_time"),)


class TokenTransaction(Base):
    """Token transfer between two wallets (append-only)."""

    __tablename__ = "token_transactions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    signature = Column(String, nullable=False, unique=True)
    block_time = Column(BigInteger, nullable=False)  # unix seconds
    type = Column(String, nullable=True)
    token_amount = Column(Float, nullable=True)
    token_price_usd = Column(Float, nullable=True)  # 0 / NULL means unknown
    source_wallet_id = Column(
        Integer, ForeignKey("wallets.id", ondelete="SET NULL"), nullable=True
    )
    destination_wallet_id = Column(
        Integer, ForeignKey("wallets.id", ondelete="SET NULL"), nullable=True
    )

    __table_args__ = (
        Index("idx_tx_block_time", "block_time"),
        Index("idx_tx_source_time", "source_wallet_id", "block_time"),
        Index("idx_tx_destination_time", "destination_wallet_id", "block_time"),
    )


class TokenHolder(Base):
    """Per-wallet holder record carrying the persisted cost basis."""

    __tablename__ = "token_holders"

    id = Column(Integer, primary_key=True, autoincrement=True)
    wallet_id = Column(Integer, ForeignKey("wallets.id"), nullable=False, unique=True)
    balance = Column(Float, nullable=False, default=0.0)

    # Cost basis
    average_acquisition_price_usd = Column(Float, nullable=True)
    total_cost_usd = Column(Float, nullable=False, default=0.0)
    total_tokens_acquired = Column(Float, nullable=False, default=0.0)
    cost_basis_metadata = Column(JSON, nullable=True)
    cost_basis_calculated_at = Column(DateTime, nullable=True)

    last_updated = Column(DateTime, default=utcnow, onupdate=utcnow)

    wallet = relationship("Wallet", back_populates="holder")


class HourlyPrice(Base):
    """Hour-aligned USD price point for the token (reference data)."""

    __tablename__ = "hourly_prices"

    id = Column(Integer, primary_key=True, autoincrement=True)
    timestamp = Column(BigInteger, nullable=False, unique=True)  # hour aligned unix s
    price_usd = Column(Float, nullable=False)


# ==================== CACHE & RUN LOG ====================


class CacheEntry(Base):
    """Key/value cache row with an absolute expiry."""

    __tablename__ = "cache_entries"

    id = Column(Integer, primary_key=True, autoincrement=True)
    cache_key = Column(String, nullable=False, unique=True)
    data = Column(JSON, nullable=True)
    expires_at = Column(DateTime, nullable=False)
    hit_count = Column(Integer, nullable=False, default=0)
    accessed_at = Column(DateTime, default=utcnow)
    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (Index("idx_cache_expires_at", "expires_at"),)


class CalculationRunLog(Base):
    """Outcome of one batch cost basis calculation run."""

    __tablename__ = "calculation_run_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    operation = Column(String, nullable=False)
    success = Column(Boolean, nullable=False, default=True)
    duration_ms = Column(Integer, nullable=True)
    wallets_requested = Column(Integer, nullable=False, default=0)
    wallets_processed = Column(Integer, nullable=False, default=0)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (Index("idx_calc_run_created", "created_at"),)


# ==================== ENGINE & SESSIONS ====================

_BACKEND_ROOT = Path(__file__).resolve().parents[1]
_MIGRATION_LOCK_PATH = _BACKEND_ROOT / ".alembic.sqlite.lock"
_SQLITE_BUSY_TIMEOUT_S = 30


def _is_sqlite(url: str) -> bool:
    return url.startswith("sqlite")


def _is_memory_sqlite(url: str) -> bool:
    return _is_sqlite(url) and url.endswith(":memory:")


def build_async_engine(url: str) -> AsyncEngine:
    """Async engine; file-backed SQLite gets WAL and a busy timeout."""
    kwargs: dict = {"echo": False}
    if _is_sqlite(url):
        kwargs["connect_args"] = {"timeout": _SQLITE_BUSY_TIMEOUT_S}
    engine = create_async_engine(url, **kwargs)

    if _is_sqlite(url) and not _is_memory_sqlite(url):

        @event.listens_for(engine.sync_engine, "connect")
        def _apply_sqlite_pragmas(dbapi_connection, _connection_record):
            # readers keep going while a batch writes holder rows
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute(f"PRAGMA busy_timeout={_SQLITE_BUSY_TIMEOUT_S * 1000}")
            cursor.close()

    return engine


def build_session_factory(engine: AsyncEngine) -> sessionmaker:
    return sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async_engine = build_async_engine(settings.DATABASE_URL)
AsyncSessionLocal = build_session_factory(async_engine)


# ==================== MIGRATIONS ====================


def _ensure_sqlite_directory() -> None:
    url = settings.DATABASE_URL
    if not _is_sqlite(url) or _is_memory_sqlite(url):
        return
    db_path = url.split(":///", 1)[-1]
    Path(db_path).parent.mkdir(parents=True, exist_ok=True)


def _run_alembic_upgrade(connection) -> None:
    """Upgrade to head on an already-open sync connection."""
    from alembic import command
    from alembic.config import Config

    cfg = Config(str(_BACKEND_ROOT / "alembic.ini"))
    cfg.set_main_option("script_location", str(_BACKEND_ROOT / "alembic"))
    cfg.set_main_option("sqlalchemy.url", str(connection.engine.url))
    cfg.attributes["connection"] = connection
    command.upgrade(cfg, "head")


@contextmanager
def _migration_lock():
    """Cross-process exclusive lock around SQLite upgrades (posix only)."""
    if not _is_sqlite(settings.DATABASE_URL) or os.name != "posix":
        yield
        return

    import fcntl

    try:
        handle = _MIGRATION_LOCK_PATH.open("a", encoding="utf-8")
    except OSError as e:
        logger.warning("Migration lock unavailable, upgrading unlocked", error=str(e))
        yield
        return

    with handle:
        fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)


async def init_database() -> None:
    """Create the database file if needed and apply Alembic migrations."""
    _ensure_sqlite_directory()
    with _migration_lock():
        async with async_engine.begin() as conn:
            await conn.run_sync(_run_alembic_upgrade)
    logger.info("Database schema at head", url=str(async_engine.url))
