"""Moving-average cost basis replay for a single wallet.

Transactions are replayed oldest first.  Buys add ``amount * price`` to the
cost basis; sells remove cost at the current average price, so the average
of the remaining holdings is unchanged by a sale.  This is an average-cost
method, not lot-level FIFO.

A sell larger than the tracked holdings (an "oversell") means buy history is
missing.  The missing quantity is treated as if it had been bought at the
virtual buy price, its cost added back, and holdings clamped to zero.  The
cost basis is clamped at zero after every step.
"""

from __future__ import annotations

from typing import Optional, Sequence

from models.cost_basis import CalculationMetadata, CostBasisResult, LedgerTransaction
from services.price_resolver import PriceLookupTable, PriceResolver
from utils.logger import cost_basis_logger as logger
from utils.utcnow import epoch_ms


def _is_chronological(transactions: Sequence[LedgerTransaction]) -> bool:
    return all(
        earlier.block_time <= later.block_time
        for earlier, later in zip(transactions, transactions[1:])
    )


def ensure_chronological(
    transactions: Sequence[LedgerTransaction], wallet_id: Optional[int] = None
) -> list[LedgerTransaction]:
    """Return transactions in ascending block time, re-sorting if needed."""
    ordered = list(transactions)
    if _is_chronological(ordered):
        return ordered
    logger.warning(
        "Transactions out of order, re-sorting before replay",
        wallet_id=wallet_id,
        transactions=len(ordered),
    )
    # sorted() is stable, so same-block transactions keep their given order
    return sorted(ordered, key=lambda tx: tx.block_time)


async def compute_cost_basis(
    wallet_id: int,
    transactions: Sequence[LedgerTransaction],
    resolver: PriceResolver,
    *,
    table: Optional[PriceLookupTable] = None,
) -> Optional[CostBasisResult]:
    """Replay ``transactions`` for ``wallet_id``; ``None`` when there are none."""
    if not transactions:
        return None

    log = logger.bind(wallet_id=wallet_id)
    ordered = ensure_chronological(transactions, wallet_id)
    table = table if table is not None else PriceLookupTable()

    current_tokens = 0.0
    cost_basis = 0.0
    total_acquired = 0.0
    total_cost_ever = 0.0
    oversell_events = 0

    for tx in ordered:
        amount = float(tx.token_amount or 0.0)

        if tx.is_buy_for(wallet_id):
            price = tx.known_price
            if price is None:
                price = await resolver.resolve_price(tx.block_time, table)
            cost = amount * price
            current_tokens += amount
            cost_basis += cost
            total_acquired += amount
            total_cost_ever += cost

        elif tx.is_sell_for(wallet_id):
            if current_tokens > 0:
                average_cost = cost_basis / current_tokens
                cost_basis -= min(amount, current_tokens) * average_cost
                current_tokens -= amount

                if current_tokens < 0:
                    oversell_amount = abs(current_tokens)
                    virtual_price = await resolver.resolve_virtual_buy_price(wallet_id, table)
                    cost_basis += oversell_amount * virtual_price
                    current_tokens = 0.0
                    oversell_events += 1
                    log.info(
                        "Oversell corrected with virtual buy",
                        signature=tx.signature,
                        oversell_amount=oversell_amount,
                        virtual_price=virtual_price,
                    )

        if cost_basis < 0:
            cost_basis = 0.0

    average_price = cost_basis / current_tokens if current_tokens > 0 else 0.0
    now_ms = epoch_ms()

    if table.synthetic_hits:
        log.warning(
            "Cost basis relied on floor price",
            synthetic_price_count=table.synthetic_hits,
        )

    return CostBasisResult(
        average_acquisition_price_usd=average_price,
        total_cost_usd=cost_basis,
        total_tokens_acquired=current_tokens,
        last_calculated=now_ms,
        metadata=CalculationMetadata(
            total_transactions=len(ordered),
            total_acquired_ever=total_acquired,
            total_cost_ever=total_cost_ever,
            oversell_events=oversell_events,
            synthetic_price_count=table.synthetic_hits,
            calculation_timestamp=now_ms,
        ),
    )
