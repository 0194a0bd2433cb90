from __future__ import annotations

from typing import Optional

from utils.logger import get_logger

logger = get_logger("staleness")


class StalenessChecker:
    """Decides whether a stored cost basis still reflects every transaction."""

    def __init__(self, repository):
        self._repo = repository

    async def is_current(self, wallet_id: int, last_calculated_ms: Optional[int]) -> bool:
        """True when no transaction touching the wallet postdates the result."""
        if not last_calculated_ms:
            return False

        try:
            newer = await self._repo.has_transactions_since(
                wallet_id, int(last_calculated_ms) // 1000
            )
        except Exception as e:
            # Unknown state counts as stale
            logger.warning(
                "Staleness check failed, forcing recompute",
                wallet_id=wallet_id,
                error=str(e),
            )
            return False

        return not newer
