from __future__ import annotations

from decimal import Decimal
from types import SimpleNamespace

from web3 import Web3

from fakes import (
    BORROWER_A, OTHER, POOL, ROUTER, TAKER, WAD, FakeAccount, FakeErc20, FakePool, FakeSequencer,
    active_auction, finished_auction, run,
)
from keeper_config import PoolConfig, PriceSpec, SettlementSettings, TakeSettings
from keeper_errors import TransactionReverted
from liquidity_router import (
    PoolVariant, Quote, QuoteFailure, QuoteOutcome, SwapInstruction, min_amount_out,
)
from pool_models import Auction, AuctionStatus, PoolPrices, PoolSnapshot
from take_engine import (
    AuctionState, TakeSettlementEngine, is_arb_take_eligible, is_external_take_eligible, is_settlement_eligible,
)

HPB_INDEX = 3000


class FakeRouter:
    def __init__(self, price: Decimal | None = Decimal(100)) -> None:
        self.price = price
        self.swaps: list[tuple[str, SwapInstruction]] = []

    def _quote(self, source, amount_in, token_in, token_out) -> Quote:
        return Quote(
            amount_in=amount_in, amount_out=int(amount_in * (self.price or 0)),
            pool_variant=PoolVariant.CONCENTRATED, route=(token_in, token_out),
            source=source, token_in=token_in, token_out=token_out, fee_tier=500,
        )

    async def market_price(self, source, amount_in, token_in, token_out, decimals_in, decimals_out, hint=None):
        if self.price is None:
            return None, QuoteOutcome.failed(QuoteFailure.NO_LIQUIDITY, "empty pool")
        return self.price, QuoteOutcome.success(self._quote(source, amount_in, token_in, token_out))

    async def prepare_swap(self, source, amount_in, token_in, token_out, slippage_bps, recipient, hint=None):
        quote = self._quote(source, amount_in, token_in, token_out)
        instruction = SwapInstruction(
            source=source, router=ROUTER, data=b"\x12\x34",
            min_amount_out=min_amount_out(quote.amount_out, slippage_bps), deadline=9999, quote=quote,
        )
        self.swaps.append((recipient, instruction))
        return QuoteOutcome.success(quote), instruction


class FakeTakerFunctions:
    def takeWithAtomicSwap(self, *args):
        return ("takeWithAtomicSwap",) + args


def taker_sequencer(on_submit=None) -> FakeSequencer:
    sequencer = FakeSequencer(on_submit)
    contract = SimpleNamespace(functions=FakeTakerFunctions())
    sequencer.w3 = SimpleNamespace(eth=SimpleNamespace(contract=lambda address, abi: contract))
    return sequencer


def take_config(**take) -> PoolConfig:
    settings = {"min_collateral": Decimal(0), "hpb_price_factor": Decimal("0.95")}
    settings.update(take)
    return PoolConfig(name="TEST", address=POOL, price=PriceSpec(source="fixed", value=Decimal(1)),
                      take=TakeSettings(**settings))


def settle_config(**settlement) -> PoolConfig:
    settings = {"min_auction_age": 3600, "max_iterations": 3}
    settings.update(settlement)
    return PoolConfig(name="TEST", address=POOL, price=PriceSpec(source="fixed", value=Decimal(1)),
                      settlement=SettlementSettings(**settings))


def auction(collateral=WAD, debt=50 * WAD, kick_time=1000) -> Auction:
    return Auction(borrower=BORROWER_A, collateral_remaining=collateral, debt_remaining=debt,
                   neutral_price=100 * WAD, kick_time=kick_time)


def snapshot(*auctions) -> PoolSnapshot:
    prices = PoolPrices(lup=100 * WAD, lup_index=HPB_INDEX, hpb=100 * WAD, hpb_index=HPB_INDEX)
    return PoolSnapshot(pool_address=POOL, prices=prices, auctions=list(auctions))


def pool_with_status(price=90, collateral=WAD) -> FakePool:
    pool = FakePool()
    pool.statuses[BORROWER_A] = AuctionStatus(
        kick_time=1000, collateral=collateral, debt_to_cover=50 * WAD, is_collateralized=False,
        price=price * WAD, neutral_price=100 * WAD,
    )
    return pool


def engine(sequencer=None, router=None, taker=TAKER, dry_run=False, clock=lambda: 0.0, on_bucket_take=None):
    return TakeSettlementEngine(
        sequencer or taker_sequencer(), FakeAccount(), router or FakeRouter(), FakeErc20(),
        taker_address=taker, dry_run=dry_run, delay_between_actions=0, clock=clock,
        on_bucket_take=on_bucket_take,
    )


# --- eligibility ---

def test_external_take_eligibility() -> None:
    assert is_external_take_eligible(Decimal(95), Decimal(100), Decimal("0.95"))
    assert not is_external_take_eligible(Decimal(96), Decimal(100), Decimal("0.95"))
    assert not is_external_take_eligible(Decimal(1), None, Decimal("0.95"))


def test_arb_take_eligibility() -> None:
    assert is_arb_take_eligible(Decimal(90), Decimal(100), Decimal("0.9"))
    assert not is_arb_take_eligible(Decimal(91), Decimal(100), Decimal("0.9"))
    assert not is_arb_take_eligible(Decimal(1), Decimal(0), Decimal("0.9"))
    assert not is_arb_take_eligible(Decimal(1), Decimal(100), None)


def test_settlement_waits_for_min_auction_age() -> None:
    stuck = auction(collateral=0, debt=50 * WAD, kick_time=1000)

    assert not is_settlement_eligible(stuck, now=1000 + 1800, min_auction_age=3600)
    assert is_settlement_eligible(stuck, now=1000 + 7200, min_auction_age=3600)
    assert not is_settlement_eligible(auction(collateral=WAD), now=1000 + 7200, min_auction_age=3600)
    assert not is_settlement_eligible(auction(collateral=0, debt=0), now=1000 + 7200, min_auction_age=3600)


# --- takes ---

def test_arb_take_into_highest_price_bucket() -> None:
    sequencer = taker_sequencer()
    taken_buckets = []
    take_engine = engine(sequencer, on_bucket_take=lambda pool, index: taken_buckets.append((pool, index)))

    results = run(take_engine.handle_takes(pool_with_status(price=90), snapshot(auction()), take_config()))

    assert results == {"external_take": 0, "arb_take": 1}
    assert sequencer.calls[0][1] == ("bucketTake", BORROWER_A, HPB_INDEX)
    assert taken_buckets == [(POOL, HPB_INDEX)]


def test_auction_above_every_threshold_is_left_alone() -> None:
    sequencer = taker_sequencer()

    results = run(engine(sequencer).handle_takes(
        pool_with_status(price=120), snapshot(auction()),
        take_config(liquidity_source="uniswapv3", market_price_factor=Decimal("0.99")),
    ))

    assert results == {"external_take": 0, "arb_take": 0}
    assert sequencer.calls == []


def test_both_takes_attempted_and_losing_revert_is_tolerated() -> None:
    def on_submit(label, tx):
        if tx[0] == "bucketTake":
            raise TransactionReverted("auction already taken")

    sequencer = taker_sequencer(on_submit)
    router = FakeRouter(Decimal(100))

    results = run(engine(sequencer, router).handle_takes(
        pool_with_status(price=90), snapshot(auction()),
        take_config(liquidity_source="uniswapv3", market_price_factor=Decimal("0.99"), slippage_bps=100),
    ))

    assert results == {"external_take": 1, "arb_take": 0}
    external = sequencer.calls[0][1]
    assert external[:7] == (
        "takeWithAtomicSwap", POOL, Web3.to_checksum_address(BORROWER_A), 90 * WAD, WAD, 2, ROUTER,
    )
    recipient, instruction = router.swaps[0]
    assert recipient == Web3.to_checksum_address(TAKER)
    assert instruction.min_amount_out == 100 * WAD * 9900 // 10000


def test_external_take_needs_a_market_quote() -> None:
    sequencer = taker_sequencer()

    results = run(engine(sequencer, FakeRouter(price=None)).handle_takes(
        pool_with_status(price=90), snapshot(auction()),
        take_config(hpb_price_factor=None, liquidity_source="uniswapv3", market_price_factor=Decimal("0.99")),
    ))

    assert results == {"external_take": 0, "arb_take": 0}
    assert sequencer.calls == []


def test_missing_taker_contract_does_not_block_arb_take() -> None:
    sequencer = taker_sequencer()

    results = run(engine(sequencer, taker=None).handle_takes(
        pool_with_status(price=90), snapshot(auction()),
        take_config(liquidity_source="uniswapv3", market_price_factor=Decimal("0.99")),
    ))

    assert results == {"external_take": 0, "arb_take": 1}


def test_swap_build_crash_does_not_block_arb_take() -> None:
    class CrashingRouter(FakeRouter):
        async def prepare_swap(self, *args, **kwargs):
            raise RuntimeError("1inch HTTP 500")

    sequencer = taker_sequencer()
    recorded = []

    async def recorder(*row):
        recorded.append(row)

    take_engine = engine(sequencer, CrashingRouter(Decimal(100)))
    take_engine.recorder = recorder

    results = run(take_engine.handle_takes(
        pool_with_status(price=90), snapshot(auction()),
        take_config(liquidity_source="oneinch", market_price_factor=Decimal("0.99")),
    ))

    assert results == {"external_take": 0, "arb_take": 1}
    assert [tx[0] for _, tx in sequencer.calls] == ["bucketTake"]
    assert recorded[0][0] == "take"
    assert recorded[0][4] == "failed"
    assert "1inch HTTP 500" in recorded[0][5]


def test_collateral_below_minimum_is_skipped() -> None:
    sequencer = taker_sequencer()

    run(engine(sequencer).handle_takes(
        pool_with_status(price=90, collateral=WAD // 100), snapshot(auction()),
        take_config(min_collateral=Decimal("0.1")),
    ))

    assert sequencer.calls == []


def test_evaluate_reports_every_eligible_state() -> None:
    pool = pool_with_status(price=90)
    decision = run(engine().evaluate(
        pool, snapshot(auction()),
        take_config(liquidity_source="uniswapv3", market_price_factor=Decimal("0.99")).take,
        pool.statuses[BORROWER_A],
    ))

    assert decision.states == {
        AuctionState.ACTIVE, AuctionState.EXTERNAL_TAKE_ELIGIBLE, AuctionState.ARB_TAKE_ELIGIBLE,
    }
    assert decision.market_price == Decimal(100)


# --- settlement ---

def test_settlement_calls_never_exceed_max_iterations() -> None:
    sequencer = FakeSequencer()
    pool = FakePool()
    pool.auction_infos[BORROWER_A] = [active_auction()]

    state = run(engine(sequencer).settle_auction(pool, BORROWER_A, settle_config().settlement, "TEST"))

    assert state is AuctionState.SETTLEMENT_PENDING
    assert [tx[0] for _, tx in sequencer.calls] == ["settle"] * 3
    assert sequencer.calls[0][1] == ("settle", BORROWER_A, 50)


def test_settled_auction_gets_no_further_settle_calls() -> None:
    sequencer = FakeSequencer()
    pool = FakePool()
    pool.auction_infos[BORROWER_A] = [active_auction(), active_auction(), finished_auction()]
    clock = lambda: 1000 + 7200
    settle_engine = engine(sequencer, clock=clock)
    stuck = snapshot(auction(collateral=0, kick_time=1000))

    first = run(settle_engine.handle_settlements(pool, stuck, settle_config()))
    second = run(settle_engine.handle_settlements(pool, stuck, settle_config()))

    assert first == {BORROWER_A: AuctionState.SETTLED}
    assert second == {}
    assert len(sequencer.calls) == 2
    assert settle_engine.is_settled(POOL, BORROWER_A, 1000)


def test_rekicked_borrower_is_settled_again() -> None:
    sequencer = FakeSequencer()
    pool = FakePool()
    pool.auction_infos[BORROWER_A] = [active_auction(), finished_auction()]
    now = [1000 + 7200]
    settle_engine = engine(sequencer, clock=lambda: now[0])

    first = run(settle_engine.handle_settlements(pool, snapshot(auction(collateral=0, kick_time=1000)), settle_config()))

    # same borrower kicked again later and left stuck
    pool.auction_infos[BORROWER_A] = [active_auction(kick_time=5000), finished_auction()]
    now[0] = 5000 + 7200
    second = run(settle_engine.handle_settlements(pool, snapshot(auction(collateral=0, kick_time=5000)), settle_config()))

    assert first == second == {BORROWER_A: AuctionState.SETTLED}
    assert len(sequencer.calls) == 2
    assert settle_engine.is_settled(POOL, BORROWER_A, 5000)
    assert not settle_engine.is_settled(POOL, BORROWER_A, 1000)


def test_young_auction_is_not_settled() -> None:
    sequencer = FakeSequencer()
    pool = FakePool()
    pool.auction_infos[BORROWER_A] = [active_auction()]

    results = run(engine(sequencer, clock=lambda: 1000 + 1800).handle_settlements(
        pool, snapshot(auction(collateral=0, kick_time=1000)), settle_config(),
    ))

    assert results == {}
    assert sequencer.calls == []


def test_settlement_requires_bot_incentive_when_configured() -> None:
    sequencer = FakeSequencer()
    pool = FakePool()
    pool.auction_infos[BORROWER_A] = [active_auction(kicker=OTHER)]

    state = run(engine(sequencer).settle_auction(pool, BORROWER_A, settle_config().settlement, "TEST"))

    assert state is AuctionState.SETTLEMENT_PENDING
    assert sequencer.calls == []

    altruistic = settle_config(check_bot_incentive=False).settlement
    pool.auction_infos[BORROWER_A] = [active_auction(kicker=OTHER), finished_auction()]
    state = run(engine(sequencer).settle_auction(pool, BORROWER_A, altruistic, "TEST"))

    assert state is AuctionState.SETTLED
    assert len(sequencer.calls) == 1


def test_failed_settle_call_leaves_auction_pending() -> None:
    def on_submit(label, tx):
        raise TransactionReverted("settle reverted")

    sequencer = FakeSequencer(on_submit)
    pool = FakePool()
    pool.auction_infos[BORROWER_A] = [active_auction()]

    state = run(engine(sequencer).settle_auction(pool, BORROWER_A, settle_config().settlement, "TEST"))

    assert state is AuctionState.SETTLEMENT_PENDING
    assert len(sequencer.calls) == 1


def test_dry_run_settlement_sends_nothing() -> None:
    sequencer = FakeSequencer()
    pool = FakePool()
    pool.auction_infos[BORROWER_A] = [active_auction()]

    state = run(engine(sequencer, dry_run=True).settle_auction(pool, BORROWER_A, settle_config().settlement, "TEST"))

    assert state is AuctionState.SETTLEMENT_PENDING
    assert sequencer.calls == []
