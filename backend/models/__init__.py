from .cost_basis import (
    CachedCostBasis,
    CalculationMetadata,
    CostBasisResult,
    LedgerTransaction,
    QueueEntry,
    WalletRef,
)

__all__ = [
    "CachedCostBasis",
    "CalculationMetadata",
    "CostBasisResult",
    "LedgerTransaction",
    "QueueEntry",
    "WalletRef",
]
