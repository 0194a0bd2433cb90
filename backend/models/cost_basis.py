"""Value types flowing through the cost basis engine."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

from pydantic import BaseModel, Field


@dataclass(frozen=True)
class LedgerTransaction:
    """One token transfer as seen by the replay loop."""

    signature: str
    block_time: int
    token_amount: float = 0.0
    token_price_usd: Optional[float] = None
    source_wallet_id: Optional[int] = None
    destination_wallet_id: Optional[int] = None

    def is_buy_for(self, wallet_id: int) -> bool:
        return self.destination_wallet_id == wallet_id

    def is_sell_for(self, wallet_id: int) -> bool:
        # A self-transfer counts as a buy, matching the destination-first rule.
        return self.source_wallet_id == wallet_id and not self.is_buy_for(wallet_id)

    @property
    def known_price(self) -> Optional[float]:
        """Recorded price, or None when missing / zero (unknown)."""
        price = self.token_price_usd
        if price is None or price <= 0:
            return None
        return float(price)

    @classmethod
    def from_row(cls, row: Any) -> "LedgerTransaction":
        return cls(
            signature=row.signature,
            block_time=int(row.block_time),
            token_amount=float(row.token_amount or 0.0),
            token_price_usd=row.token_price_usd,
            source_wallet_id=row.source_wallet_id,
            destination_wallet_id=row.destination_wallet_id,
        )


class CalculationMetadata(BaseModel):
    total_transactions: int = 0
    total_acquired_ever: float = 0.0
    total_cost_ever: float = 0.0
    oversell_events: int = 0
    synthetic_price_count: int = 0  # prices that fell back to the floor sentinel
    calculation_timestamp: int = 0  # epoch ms


class CostBasisResult(BaseModel):
    """Final holdings and cost basis for one wallet."""

    average_acquisition_price_usd: float = 0.0
    total_cost_usd: float = 0.0
    total_tokens_acquired: float = 0.0
    last_calculated: int = 0  # epoch ms
    metadata: CalculationMetadata = Field(default_factory=CalculationMetadata)

    @property
    def used_synthetic_prices(self) -> bool:
        return self.metadata.synthetic_price_count > 0


class CachedCostBasis(CostBasisResult):
    """Cache envelope stored under ``cost_basis_<address>``."""

    wallet_address: str

    @classmethod
    def wrap(cls, address: str, result: CostBasisResult) -> "CachedCostBasis":
        return cls(wallet_address=address, **result.model_dump())

    def unwrap(self) -> CostBasisResult:
        return CostBasisResult(**self.model_dump(exclude={"wallet_address"}))


@dataclass
class QueueEntry:
    address: str
    queued_at: int  # epoch ms
    priority: str = "normal"

    def to_dict(self) -> dict:
        return {
            "address": self.address,
            "queued_at": self.queued_at,
            "priority": self.priority,
        }


@dataclass
class WalletRef:
    """Wallet as returned by the bulk lookup, with its holder state."""

    id: int
    address: str
    has_holder: bool = False
    stored_result: Optional[CostBasisResult] = None
    stored_calculated_at_ms: Optional[int] = None
