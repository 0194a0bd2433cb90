"""Shared fixtures for cost basis tests."""

import sys
from pathlib import Path

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from models.cost_basis import LedgerTransaction
from models.database import (
    Base,
    HourlyPrice,
    TokenHolder,
    TokenTransaction,
    Wallet,
    build_async_engine,
    build_session_factory,
)
from services.cache_service import DatabaseCacheService
from services.ledger_repository import LedgerRepository


# ---------------------------------------------------------------------------
# Database fixtures (temporary SQLite file, one engine per test)
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    engine = build_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = build_session_factory(engine)
    try:
        yield factory
    finally:
        await engine.dispose()


@pytest.fixture
def repository(session_factory):
    return LedgerRepository(session_factory)


@pytest.fixture
def cache(session_factory):
    return DatabaseCacheService(session_factory)


class LedgerSeeder:
    """Writes wallets, transactions and hourly prices straight into the DB."""

    def __init__(self, factory):
        self._factory = factory
        self._counter = 0

    async def wallet(self, address: str, *, holder: bool = True) -> int:
        async with self._factory() as session:
            wallet = Wallet(address=address)
            session.add(wallet)
            await session.flush()
            if holder:
                session.add(TokenHolder(wallet_id=wallet.id, balance=0.0))
            await session.commit()
            return wallet.id

    async def tx(
        self,
        block_time: int,
        amount: float,
        *,
        price: float = None,
        source: int = None,
        destination: int = None,
        signature: str = None,
    ) -> str:
        self._counter += 1
        signature = signature or f"sig-{self._counter}"
        async with self._factory() as session:
            session.add(
                TokenTransaction(
                    signature=signature,
                    block_time=block_time,
                    type="transfer",
                    token_amount=amount,
                    token_price_usd=price,
                    source_wallet_id=source,
                    destination_wallet_id=destination,
                )
            )
            await session.commit()
        return signature

    async def price(self, timestamp: int, price_usd: float) -> None:
        async with self._factory() as session:
            session.add(HourlyPrice(timestamp=timestamp, price_usd=price_usd))
            await session.commit()


@pytest.fixture
def seed(session_factory):
    return LedgerSeeder(session_factory)


# ---------------------------------------------------------------------------
# In-memory collaborators
# ---------------------------------------------------------------------------


def make_price_repository(
    hourly=None,
    nearest=None,
    earliest_buy=None,
    earliest_hourly=None,
):
    """Repository stand-in exposing only the price lookups."""
    hourly = hourly or {}
    nearest = nearest or {}
    return SimpleNamespace(
        find_hourly_price=AsyncMock(side_effect=lambda ts: hourly.get(ts)),
        find_nearest_hourly_price=AsyncMock(side_effect=lambda ts, window: nearest.get(ts)),
        find_earliest_priced_buy=AsyncMock(return_value=earliest_buy),
        find_earliest_hourly_price=AsyncMock(return_value=earliest_hourly),
    )


def buy(signature, block_time, amount, price=None, wallet_id=1):
    return LedgerTransaction(
        signature=signature,
        block_time=block_time,
        token_amount=amount,
        token_price_usd=price,
        source_wallet_id=None,
        destination_wallet_id=wallet_id,
    )


def sell(signature, block_time, amount, wallet_id=1):
    return LedgerTransaction(
        signature=signature,
        block_time=block_time,
        token_amount=amount,
        source_wallet_id=wallet_id,
        destination_wallet_id=None,
    )
