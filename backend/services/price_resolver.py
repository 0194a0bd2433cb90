"""USD price resolution for transactions without a recorded price.

Prices come from the hourly price table: exact hour first, then the nearest
point inside a +/- window, then a floor sentinel (``FLOOR_PRICE_USD``) that
only exists to keep cost arithmetic finite.  Callers can detect the sentinel
with ``is_synthetic_price`` and via ``PriceLookupTable.synthetic_hits``.

Lookups are memoized in a ``PriceLookupTable`` owned by a single wallet
computation; the table is created per run and thrown away afterwards.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

from config import settings
from utils.logger import price_logger as logger
from utils.utcnow import hour_floor


def is_synthetic_price(price: float, floor_price: Optional[float] = None) -> bool:
    floor = settings.FLOOR_PRICE_USD if floor_price is None else floor_price
    return price <= floor


@dataclass
class PriceLookupTable:
    """Per-run memo of hour-aligned prices and the run's virtual buy price."""

    prices: dict[int, float] = field(default_factory=dict)
    virtual_buy_price: Optional[float] = None
    synthetic_hits: int = 0

    def get(self, hour: int) -> Optional[float]:
        return self.prices.get(hour)

    def put(self, hour: int, price: float, *, synthetic: bool = False) -> float:
        self.prices[hour] = price
        if synthetic:
            self.synthetic_hits += 1
        return price


class PriceResolver:
    """Resolves token USD prices from the hourly price table."""

    def __init__(
        self,
        repository,
        *,
        window_seconds: int = None,
        floor_price: float = None,
    ):
        self._repo = repository
        self.window_seconds = (
            settings.PRICE_FALLBACK_WINDOW_SECONDS if window_seconds is None else window_seconds
        )
        self.floor_price = settings.FLOOR_PRICE_USD if floor_price is None else floor_price

    async def resolve_price(self, block_time: int, table: PriceLookupTable) -> float:
        """Price for the hour containing ``block_time``."""
        hour = hour_floor(block_time)
        cached = table.get(hour)
        if cached is not None:
            return cached

        try:
            price = await self._repo.find_hourly_price(hour)
            if price is None:
                price = await self._repo.find_nearest_hourly_price(hour, self.window_seconds)
        except Exception as e:
            logger.warning(
                "Price lookup failed, using floor price",
                block_time=block_time,
                hour=hour,
                error=str(e),
            )
            return table.put(hour, self.floor_price, synthetic=True)

        if price is None or price <= 0:
            logger.warning(
                "No hourly price within window, using floor price",
                hour=hour,
                window_seconds=self.window_seconds,
                floor_price=self.floor_price,
            )
            return table.put(hour, self.floor_price, synthetic=True)

        return table.put(hour, price)

    async def resolve_virtual_buy_price(self, wallet_id: int, table: PriceLookupTable) -> float:
        """Price at which oversold tokens are assumed to have been acquired.

        Order: the wallet's earliest priced buy, the earliest hourly price,
        the floor price.
        """
        if table.virtual_buy_price is not None:
            return table.virtual_buy_price

        synthetic = False
        try:
            price = await self._repo.find_earliest_priced_buy(wallet_id)
            if price is None or price <= 0:
                price = await self._repo.find_earliest_hourly_price()
        except Exception as e:
            logger.warning(
                "Virtual buy price lookup failed, using floor price",
                wallet_id=wallet_id,
                error=str(e),
            )
            price = None

        if price is None or price <= 0:
            price = self.floor_price
            synthetic = True
            logger.warning(
                "No reference price for oversell, using floor price",
                wallet_id=wallet_id,
                floor_price=price,
            )

        table.virtual_buy_price = price
        if synthetic:
            table.synthetic_hits += 1
        return price
