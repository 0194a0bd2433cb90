"""SQL access for wallets, transactions, holder records and hourly prices.

Everything the cost basis engine reads or writes in storage goes through
``LedgerRepository`` so the engine can be exercised against any async
SQLAlchemy session factory (the shared ``AsyncSessionLocal`` in production,
an in-memory SQLite engine in tests).
"""

from __future__ import annotations

from typing import Callable, Optional

from sqlalchemy import and_, func, or_, select
from sqlalchemy.orm import selectinload

from models.cost_basis import CostBasisResult, CalculationMetadata, LedgerTransaction, WalletRef
from models.database import (
    AsyncSessionLocal,
    CalculationRunLog,
    HourlyPrice,
    TokenHolder,
    TokenTransaction,
    Wallet,
)
from utils.logger import get_logger
from utils.utcnow import datetime_to_epoch_ms, utcfromtimestamp_ms

logger = get_logger("ledger_repository")


def _touches_wallet(wallet_id: int):
    return or_(
        TokenTransaction.source_wallet_id == wallet_id,
        TokenTransaction.destination_wallet_id == wallet_id,
    )


def _stored_result(holder: TokenHolder) -> Optional[CostBasisResult]:
    if holder.cost_basis_calculated_at is None:
        return None
    metadata = holder.cost_basis_metadata or {}
    return CostBasisResult(
        average_acquisition_price_usd=float(holder.average_acquisition_price_usd or 0.0),
        total_cost_usd=float(holder.total_cost_usd or 0.0),
        total_tokens_acquired=float(holder.total_tokens_acquired or 0.0),
        last_calculated=datetime_to_epoch_ms(holder.cost_basis_calculated_at) or 0,
        metadata=CalculationMetadata(**metadata),
    )


class LedgerRepository:
    def __init__(self, session_factory: Callable = None):
        self._session_factory = session_factory or AsyncSessionLocal

    # -------------------- Wallets --------------------

    async def find_wallets(self, addresses: list[str]) -> list[WalletRef]:
        """Bulk lookup of wallets by address, with holder presence."""
        if not addresses:
            return []
        async with self._session_factory() as session:
            result = await session.execute(
                select(Wallet)
                .where(Wallet.address.in_(list(dict.fromkeys(addresses))))
                .options(selectinload(Wallet.holder))
            )
            wallets = result.scalars().all()

        refs = []
        for wallet in wallets:
            holder = wallet.holder
            stored = _stored_result(holder) if holder is not None else None
            refs.append(
                WalletRef(
                    id=wallet.id,
                    address=wallet.address,
                    has_holder=holder is not None,
                    stored_result=stored,
                    stored_calculated_at_ms=stored.last_calculated if stored else None,
                )
            )
        return refs

    async def find_holder_wallet_addresses(self) -> list[str]:
        """Addresses of every wallet that has a holder record."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(Wallet.address)
                .join(TokenHolder, TokenHolder.wallet_id == Wallet.id)
                .order_by(Wallet.id)
            )
            return list(result.scalars().all())

    # -------------------- Transactions --------------------

    async def find_transactions_for_wallet(self, wallet_id: int) -> list[LedgerTransaction]:
        """All transactions touching the wallet, oldest first."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(TokenTransaction)
                .where(_touches_wallet(wallet_id))
                .order_by(TokenTransaction.block_time.asc(), TokenTransaction.id.asc())
            )
            return [LedgerTransaction.from_row(row) for row in result.scalars().all()]

    async def has_transactions_since(self, wallet_id: int, block_time: int) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(
                select(TokenTransaction.id)
                .where(
                    and_(
                        _touches_wallet(wallet_id),
                        TokenTransaction.block_time > block_time,
                    )
                )
                .limit(1)
            )
            return result.scalar_one_or_none() is not None

    async def find_earliest_priced_buy(self, wallet_id: int) -> Optional[float]:
        """Price of the wallet's earliest buy with a positive recorded price."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(TokenTransaction.token_price_usd)
                .where(
                    and_(
                        TokenTransaction.destination_wallet_id == wallet_id,
                        TokenTransaction.token_price_usd > 0,
                    )
                )
                .order_by(TokenTransaction.block_time.asc(), TokenTransaction.id.asc())
                .limit(1)
            )
            price = result.scalar_one_or_none()
            return float(price) if price is not None else None

    # -------------------- Hourly prices --------------------

    async def find_hourly_price(self, timestamp: int) -> Optional[float]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(HourlyPrice.price_usd).where(HourlyPrice.timestamp == timestamp)
            )
            price = result.scalar_one_or_none()
            return float(price) if price is not None else None

    async def find_nearest_hourly_price(self, hour: int, window_seconds: int) -> Optional[float]:
        """Closest price point within ``hour +/- window_seconds``.

        Equal distances resolve to the later point.
        """
        async with self._session_factory() as session:
            result = await session.execute(
                select(HourlyPrice.price_usd)
                .where(
                    HourlyPrice.timestamp.between(hour - window_seconds, hour + window_seconds)
                )
                .order_by(
                    func.abs(HourlyPrice.timestamp - hour).asc(),
                    HourlyPrice.timestamp.desc(),
                )
                .limit(1)
            )
            price = result.scalar_one_or_none()
            return float(price) if price is not None else None

    async def find_earliest_hourly_price(self) -> Optional[float]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(HourlyPrice.price_usd).order_by(HourlyPrice.timestamp.asc()).limit(1)
            )
            price = result.scalar_one_or_none()
            return float(price) if price is not None else None

    # -------------------- Writes --------------------

    async def upsert_holder_cost_basis(self, wallet_id: int, result: CostBasisResult) -> None:
        """Write the cost basis onto the wallet's holder record (created if missing)."""
        async with self._session_factory() as session:
            holder = (
                await session.execute(
                    select(TokenHolder).where(TokenHolder.wallet_id == wallet_id)
                )
            ).scalar_one_or_none()
            if holder is None:
                holder = TokenHolder(wallet_id=wallet_id, balance=0.0)
                session.add(holder)

            holder.average_acquisition_price_usd = result.average_acquisition_price_usd
            holder.total_cost_usd = result.total_cost_usd
            holder.total_tokens_acquired = result.total_tokens_acquired
            holder.cost_basis_metadata = result.metadata.model_dump()
            holder.cost_basis_calculated_at = utcfromtimestamp_ms(result.last_calculated)
            await session.commit()

    async def record_calculation_run(
        self,
        operation: str,
        *,
        success: bool,
        duration_ms: int,
        wallets_requested: int,
        wallets_processed: int = 0,
        error_message: Optional[str] = None,
    ) -> None:
        """Append a run log row. Failures here are logged, never raised."""
        try:
            async with self._session_factory() as session:
                session.add(
                    CalculationRunLog(
                        operation=operation,
                        success=success,
                        duration_ms=duration_ms,
                        wallets_requested=wallets_requested,
                        wallets_processed=wallets_processed,
                        error_message=error_message,
                    )
                )
                await session.commit()
        except Exception as e:
            logger.warning("Failed to record calculation run", operation=operation, error=str(e))
