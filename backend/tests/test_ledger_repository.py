import sys
from pathlib import Path

import pytest
from sqlalchemy import select

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from models.cost_basis import CalculationMetadata, CostBasisResult
from models.database import CalculationRunLog, TokenHolder

HOUR = 1_700_000_000 - (1_700_000_000 % 3600)


@pytest.mark.asyncio
async def test_find_wallets_reports_holder_presence(repository, seed):
    await seed.wallet("with-holder")
    await seed.wallet("no-holder", holder=False)

    wallets = {w.address: w for w in await repository.find_wallets(["with-holder", "no-holder", "missing"])}

    assert set(wallets) == {"with-holder", "no-holder"}
    assert wallets["with-holder"].has_holder is True
    assert wallets["no-holder"].has_holder is False
    assert wallets["with-holder"].stored_result is None


@pytest.mark.asyncio
async def test_find_holder_wallet_addresses(repository, seed):
    await seed.wallet("a")
    await seed.wallet("b", holder=False)
    await seed.wallet("c")

    assert await repository.find_holder_wallet_addresses() == ["a", "c"]


@pytest.mark.asyncio
async def test_transactions_for_wallet_are_ordered_and_scoped(repository, seed):
    wallet_id = await seed.wallet("a")
    other_id = await seed.wallet("b")
    await seed.tx(HOUR + 50, 1, source=wallet_id, destination=other_id, signature="late")
    await seed.tx(HOUR, 5, destination=wallet_id, signature="early")
    await seed.tx(HOUR + 10, 9, destination=other_id, signature="unrelated")

    txs = await repository.find_transactions_for_wallet(wallet_id)

    assert [tx.signature for tx in txs] == ["early", "late"]
    assert txs[1].is_sell_for(wallet_id)


@pytest.mark.asyncio
async def test_earliest_priced_buy_skips_unpriced(repository, seed):
    wallet_id = await seed.wallet("a")
    await seed.tx(HOUR, 1, price=0, destination=wallet_id)
    await seed.tx(HOUR + 1, 1, price=None, destination=wallet_id)
    await seed.tx(HOUR + 2, 1, price=0.8, destination=wallet_id)
    await seed.tx(HOUR + 3, 1, price=0.3, destination=wallet_id)

    assert await repository.find_earliest_priced_buy(wallet_id) == pytest.approx(0.8)


@pytest.mark.asyncio
async def test_nearest_price_tie_prefers_later_point(repository, seed):
    await seed.price(HOUR - 7200, 1.0)
    await seed.price(HOUR + 7200, 2.0)

    assert await repository.find_nearest_hourly_price(HOUR, 86400) == pytest.approx(2.0)
    assert await repository.find_nearest_hourly_price(HOUR, 3600) is None


@pytest.mark.asyncio
async def test_earliest_hourly_price(repository, seed):
    assert await repository.find_earliest_hourly_price() is None

    await seed.price(HOUR + 3600, 3.0)
    await seed.price(HOUR, 1.5)

    assert await repository.find_earliest_hourly_price() == pytest.approx(1.5)
    assert await repository.find_hourly_price(HOUR + 3600) == pytest.approx(3.0)


@pytest.mark.asyncio
async def test_upsert_holder_cost_basis_roundtrips_through_find_wallets(repository, seed, session_factory):
    await seed.wallet("a")
    (wallet,) = await repository.find_wallets(["a"])
    result = CostBasisResult(
        average_acquisition_price_usd=2.0,
        total_cost_usd=20.0,
        total_tokens_acquired=10.0,
        last_calculated=1_700_000_123_456,
        metadata=CalculationMetadata(total_transactions=3, oversell_events=1),
    )

    await repository.upsert_holder_cost_basis(wallet.id, result)
    (reloaded,) = await repository.find_wallets(["a"])

    assert reloaded.stored_calculated_at_ms == 1_700_000_123_456
    assert reloaded.stored_result == result
    async with session_factory() as session:
        holders = (await session.execute(select(TokenHolder))).scalars().all()
    assert len(holders) == 1


@pytest.mark.asyncio
async def test_upsert_creates_missing_holder(repository, seed):
    wallet_id = await seed.wallet("bare", holder=False)

    await repository.upsert_holder_cost_basis(wallet_id, CostBasisResult(last_calculated=1000))
    (wallet,) = await repository.find_wallets(["bare"])

    assert wallet.has_holder is True


@pytest.mark.asyncio
async def test_record_calculation_run(repository, session_factory):
    await repository.record_calculation_run(
        "selective_cost_calculation",
        success=False,
        duration_ms=12,
        wallets_requested=3,
        error_message="boom",
    )

    async with session_factory() as session:
        (row,) = (await session.execute(select(CalculationRunLog))).scalars().all()
    assert row.success is False
    assert row.wallets_requested == 3
    assert row.error_message == "boom"
