"""Cost basis worker: drains the recalculation queue and sweeps the cache.

Run from backend dir:
  python -m workers.cost_basis_worker [WALLET_ADDRESS ...]

Addresses given on the command line are queued at start-up.
"""

from __future__ import annotations

import asyncio
import os
import sys
import time

_BACKEND = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if _BACKEND not in sys.path:
    sys.path.insert(0, _BACKEND)
if os.getcwd() != _BACKEND:
    os.chdir(_BACKEND)

from config import settings
from models.database import init_database
from services.cost_basis_service import CostBasisService, build_cost_basis_service
from utils.logger import get_logger, setup_logging

logger = get_logger("cost_basis_worker")


async def _run_loop(
    service: CostBasisService,
    *,
    poll_seconds: float = None,
    cleanup_interval_seconds: float = None,
    max_cycles: int = None,
) -> None:
    poll_seconds = settings.COST_BASIS_WORKER_POLL_SECONDS if poll_seconds is None else poll_seconds
    cleanup_interval_seconds = (
        settings.CACHE_CLEANUP_INTERVAL_SECONDS
        if cleanup_interval_seconds is None
        else cleanup_interval_seconds
    )
    logger.info("Cost basis worker started", poll_seconds=poll_seconds)

    last_cleanup = time.monotonic()
    cycles = 0

    while max_cycles is None or cycles < max_cycles:
        cycles += 1
        try:
            if service.queue.size():
                await service.process_calculation_queue()

            now = time.monotonic()
            if now - last_cleanup >= cleanup_interval_seconds:
                await service.cache.cleanup_expired()
                last_cleanup = now
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("Cost basis worker cycle failed", error=str(exc))

        await asyncio.sleep(poll_seconds)


async def main(addresses: list[str] = None) -> None:
    setup_logging(
        level=settings.LOG_LEVEL,
        json_format=settings.LOG_JSON,
        log_file=settings.LOG_FILE,
    )
    await init_database()
    logger.info("Database initialized")

    service = build_cost_basis_service()
    try:
        if settings.COST_BASIS_RECALC_ALL_ON_START:
            await service.calculate_all_wallets()
        if addresses:
            service.queue_wallets_for_recalculation(addresses, priority="startup")
        await _run_loop(service)
    except asyncio.CancelledError:
        logger.info("Cost basis worker shutting down")


if __name__ == "__main__":
    asyncio.run(main(sys.argv[1:]))
