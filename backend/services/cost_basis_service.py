"""Batch scheduling of wallet cost basis recomputation.

``CostBasisService`` is constructed once per process (see
``build_cost_basis_service``) and handed to whoever needs it: the worker
loop, ingestion code that learns which wallets changed, or an API layer.

Flow per wallet: cached envelope or stored holder result, if still current
(no transaction since it was computed), is reused; otherwise transactions are
replayed, the result is written to the holder record, cached, and the
wallet's dependent cache keys are invalidated.

Wallets are processed in groups of ``batch_size`` computed concurrently, with
a pause between groups to keep storage load bounded.
"""

from __future__ import annotations

import asyncio
import time
from typing import Callable, Iterable, Optional

from pydantic import ValidationError

from config import settings
from models.cost_basis import CachedCostBasis, CostBasisResult, WalletRef
from services.cache_service import DatabaseCacheService
from services.cost_basis_calculator import compute_cost_basis
from services.ledger_repository import LedgerRepository
from services.price_resolver import PriceLookupTable, PriceResolver
from services.recalc_queue import RecalculationQueue
from services.staleness import StalenessChecker
from utils.logger import cost_basis_logger as logger

SELECTIVE_CALCULATION_OPERATION = "selective_cost_calculation"

AGGREGATE_CACHE_PATTERNS = ("token_holders_*",)


def cost_basis_cache_key(address: str) -> str:
    return f"cost_basis_{address}"


def wallet_balance_cache_key(address: str) -> str:
    return f"wallet_balance_{address}"


def _chunks(items: list, size: int) -> list[list]:
    return [items[i : i + size] for i in range(0, len(items), size)]


class CostBasisService:
    def __init__(
        self,
        repository: LedgerRepository,
        cache: DatabaseCacheService,
        *,
        queue: Optional[RecalculationQueue] = None,
        resolver: Optional[PriceResolver] = None,
        staleness: Optional[StalenessChecker] = None,
        batch_size: Optional[int] = None,
        batch_delay_seconds: Optional[float] = None,
        cache_ttl_seconds: Optional[int] = None,
    ):
        self._repo = repository
        self._cache = cache
        self._queue = queue or RecalculationQueue()
        self._resolver = resolver or PriceResolver(repository)
        self._staleness = staleness or StalenessChecker(repository)
        self.batch_size = int(
            settings.COST_BASIS_BATCH_SIZE if batch_size is None else batch_size
        )
        self.batch_delay_seconds = (
            settings.COST_BASIS_BATCH_DELAY_SECONDS
            if batch_delay_seconds is None
            else float(batch_delay_seconds)
        )
        self.cache_ttl_seconds = int(
            settings.COST_BASIS_CACHE_TTL_SECONDS
            if cache_ttl_seconds is None
            else cache_ttl_seconds
        )
        self._drain_task: Optional[asyncio.Task] = None

        if self.batch_size < 1:
            raise ValueError("batch_size must be at least 1")

    @property
    def queue(self) -> RecalculationQueue:
        return self._queue

    @property
    def cache(self) -> DatabaseCacheService:
        return self._cache

    # -------------------- Batch calculation --------------------

    async def calculate_cost_basis_for_wallets(self, addresses: Iterable[str]) -> None:
        """Recompute cost basis for the given wallet addresses.

        Raises only when the bulk wallet lookup fails; a single wallet's
        failure is logged and the rest of the batch continues.
        """
        addresses = list(dict.fromkeys(a for a in addresses if a))
        if not addresses:
            logger.info("No wallets to recalculate")
            return

        start = time.monotonic()
        logger.info("Starting selective cost basis calculation", wallets=len(addresses))

        try:
            wallets = await self._repo.find_wallets(addresses)
        except Exception as e:
            duration_ms = int((time.monotonic() - start) * 1000)
            logger.error(
                "Selective calculation failed during wallet lookup",
                wallets=len(addresses),
                error=str(e),
            )
            await self._repo.record_calculation_run(
                SELECTIVE_CALCULATION_OPERATION,
                success=False,
                duration_ms=duration_ms,
                wallets_requested=len(addresses),
                error_message=str(e),
            )
            raise

        to_process = [wallet for wallet in wallets if wallet.has_holder]
        batches = _chunks(to_process, self.batch_size)
        logger.info(
            "Wallets eligible for calculation",
            requested=len(addresses),
            eligible=len(to_process),
            batches=len(batches),
        )

        processed = 0
        for index, batch in enumerate(batches):
            logger.debug("Processing batch", batch=index + 1, batches=len(batches), size=len(batch))
            results = await asyncio.gather(
                *[self.calculate_wallet_cost_basis(wallet) for wallet in batch]
            )
            processed += sum(1 for result in results if result is not None)

            if index < len(batches) - 1:
                await self._pause_between_batches()

        await self._clear_aggregate_caches()

        duration_ms = int((time.monotonic() - start) * 1000)
        logger.info(
            "Selective calculation completed",
            eligible=len(to_process),
            processed=processed,
            duration_ms=duration_ms,
        )
        await self._repo.record_calculation_run(
            SELECTIVE_CALCULATION_OPERATION,
            success=True,
            duration_ms=duration_ms,
            wallets_requested=len(addresses),
            wallets_processed=processed,
        )

    async def calculate_all_wallets(self) -> None:
        """Full recomputation over every wallet with a holder record."""
        addresses = await self._repo.find_holder_wallet_addresses()
        logger.info("Running full cost basis recalculation", wallets=len(addresses))
        await self.calculate_cost_basis_for_wallets(addresses)

    async def _pause_between_batches(self) -> None:
        await asyncio.sleep(self.batch_delay_seconds)

    # -------------------- Single wallet --------------------

    async def calculate_wallet_cost_basis(self, wallet: WalletRef) -> Optional[CostBasisResult]:
        """Current cost basis for one wallet, recomputing only when stale.

        Returns None when the wallet has no transactions or the computation
        failed (the failure is logged).
        """
        log = logger.bind(address=wallet.address, wallet_id=wallet.id)
        try:
            current = await self._load_current_result(wallet)
            if current is not None:
                log.debug("Cost basis current")
                return current

            transactions = await self._repo.find_transactions_for_wallet(wallet.id)
            if not transactions:
                log.info("No transactions for wallet")
                return None

            result = await compute_cost_basis(
                wallet.id, transactions, self._resolver, table=PriceLookupTable()
            )
            if result is None:
                return None

            await self._repo.upsert_holder_cost_basis(wallet.id, result)
            await self._cache.delete(wallet_balance_cache_key(wallet.address))
            await self._cache.set(
                cost_basis_cache_key(wallet.address),
                CachedCostBasis.wrap(wallet.address, result).model_dump(),
                self.cache_ttl_seconds,
            )
            log.debug(
                "Cost basis updated",
                total_cost_usd=result.total_cost_usd,
                tokens=result.total_tokens_acquired,
            )
            return result
        except Exception as e:
            log.error("Cost basis calculation failed for wallet", error=str(e))
            return None

    async def _load_current_result(self, wallet: WalletRef) -> Optional[CostBasisResult]:
        raw = await self._cache.get(cost_basis_cache_key(wallet.address))
        if raw:
            try:
                envelope = CachedCostBasis.model_validate(raw)
            except ValidationError as e:
                logger.warning("Discarding malformed cached cost basis", address=wallet.address, error=str(e))
                envelope = None
            if envelope is not None and await self._staleness.is_current(
                wallet.id, envelope.last_calculated
            ):
                return envelope.unwrap()

            # stored result is no newer than the stale envelope
            if (
                envelope is not None
                and wallet.stored_calculated_at_ms is not None
                and wallet.stored_calculated_at_ms <= envelope.last_calculated
            ):
                return None

        stored = wallet.stored_result
        if stored is not None and await self._staleness.is_current(
            wallet.id, wallet.stored_calculated_at_ms
        ):
            await self._cache.set(
                cost_basis_cache_key(wallet.address),
                CachedCostBasis.wrap(wallet.address, stored).model_dump(),
                self.cache_ttl_seconds,
            )
            return stored

        return None

    # -------------------- Cache invalidation --------------------

    async def invalidate_wallet_caches(self, addresses: Iterable[str]) -> None:
        """Drop per-wallet cache keys and the aggregate listings."""
        addresses = list(addresses)
        try:
            for address in addresses:
                await self._cache.delete(wallet_balance_cache_key(address))
                await self._cache.delete(cost_basis_cache_key(address))
        except Exception as e:
            logger.warning("Cache invalidation failed", wallets=len(addresses), error=str(e))
        await self._clear_aggregate_caches()
        logger.info("Invalidated wallet caches", wallets=len(addresses))

    async def _clear_aggregate_caches(self) -> None:
        for pattern in AGGREGATE_CACHE_PATTERNS:
            try:
                await self._cache.clear_by_pattern(pattern)
            except Exception as e:
                logger.warning("Aggregate cache clear failed", pattern=pattern, error=str(e))

    # -------------------- Queue --------------------

    def queue_wallets_for_recalculation(
        self, addresses: Iterable[str], priority: str = "normal"
    ) -> None:
        """Queue wallets and start a background drain if none is running."""
        accepted = self._queue.enqueue(addresses, priority)
        logger.info("Queued wallets for recalculation", wallets=accepted)

        if self._queue.is_draining:
            return
        if self._drain_task is not None and not self._drain_task.done():
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop, queued wallets wait for the worker poll")
            return
        self._drain_task = loop.create_task(self.process_calculation_queue())

    async def process_calculation_queue(self) -> None:
        """Drain the queue until empty; one drain runs at a time."""
        if not self._queue.try_begin_drain():
            return

        try:
            while True:
                addresses = self._queue.drain_all()
                if not addresses:
                    break
                logger.info("Processing calculation queue", items=len(addresses))
                try:
                    await self.calculate_cost_basis_for_wallets(addresses)
                except Exception as e:
                    logger.error(
                        "Error processing calculation queue",
                        items=len(addresses),
                        error=str(e),
                    )
        finally:
            self._queue.end_drain()

    async def wait_idle(self) -> None:
        """Wait for the background drain started by a queue trigger, if any."""
        task = self._drain_task
        if task is not None and not task.done():
            await task

    def get_queue_stats(self) -> dict:
        return {
            "queued_items": self._queue.size(),
            "is_processing": self._queue.is_draining,
            "batch_size": self.batch_size,
            "items": [entry.to_dict() for entry in self._queue.snapshot()],
        }


def build_cost_basis_service(session_factory: Callable = None, **kwargs) -> CostBasisService:
    """Wire a service against the shared database (or ``session_factory``)."""
    repository = LedgerRepository(session_factory)
    cache = DatabaseCacheService(session_factory)
    return CostBasisService(repository, cache, **kwargs)
