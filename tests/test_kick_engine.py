from __future__ import annotations

import itertools
from decimal import Decimal

from fakes import BORROWER_A, BORROWER_B, POOL, QUOTE, WAD, FakeAccount, FakeErc20, FakePool, FakeSequencer, run
from keeper_config import KickSettings, PoolConfig, PriceSpec
from keeper_errors import PriceUnavailable
from kick_engine import KickEngine
from pool_models import Loan, PoolPrices, PoolSnapshot
from wad_math import index_of

BORROWER_C = "0xcCCccccCCccCCCcCCCCCCccCcCCcCCcCcccCccCC"


class FakeResolver:
    def __init__(self, price=Decimal(100), error: Exception | None = None) -> None:
        self.price = price
        self.error = error
        self.calls = 0

    async def resolve(self, spec, context=None):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.price


def pool_config(min_debt="50", price_factor="0.9") -> PoolConfig:
    return PoolConfig(
        name="TEST",
        address=POOL,
        price=PriceSpec(source="fixed", value=Decimal(100)),
        kick=KickSettings(min_debt=Decimal(min_debt), price_factor=Decimal(price_factor)),
    )


def loan(borrower=BORROWER_A, tp=110, np=120, debt=100, bond=1) -> Loan:
    return Loan(borrower=borrower, threshold_price=tp * WAD, liquidation_bond=bond * WAD,
                neutral_price=np * WAD, debt=debt * WAD)


def snapshot(*loans, lup=100) -> PoolSnapshot:
    return PoolSnapshot(pool_address=POOL, prices=PoolPrices(lup=lup * WAD, lup_index=0, hpb=0, hpb_index=0),
                        loans=list(loans))


def engine(resolver=None, erc20=None, sequencer=None, dry_run=False, recorder=None) -> KickEngine:
    return KickEngine(
        sequencer or FakeSequencer(), FakeAccount(), resolver or FakeResolver(), erc20 or FakeErc20(),
        dry_run=dry_run, delay_between_actions=0, recorder=recorder,
    )


async def collect(kick_engine: KickEngine, snap: PoolSnapshot, config: PoolConfig):
    return [candidate async for candidate in kick_engine.scan(snap, config)]


def test_profitable_loan_above_lup_is_yielded() -> None:
    candidates = run(collect(engine(), snapshot(loan()), pool_config()))

    assert len(candidates) == 1
    assert candidates[0].borrower == BORROWER_A
    assert candidates[0].limit_price == Decimal(100)


def test_loan_below_lup_is_filtered_without_pricing() -> None:
    resolver = FakeResolver()
    candidates = run(collect(engine(resolver), snapshot(loan(tp=90, np=1000, debt=10_000)), pool_config()))

    assert candidates == []
    assert resolver.calls == 0


def test_kick_decision_matches_threshold_rule() -> None:
    lup, min_debt, factor, price = 100, 50, Decimal("0.9"), Decimal(100)
    for tp, debt, np in itertools.product((90, 100, 110), (40, 50, 60), (100, 111, 112, 120)):
        expected = tp >= lup and debt >= min_debt and Decimal(np) * factor >= price
        candidates = run(collect(
            engine(FakeResolver(price)), snapshot(loan(tp=tp, debt=debt, np=np), lup=lup), pool_config()
        ))
        assert bool(candidates) == expected, (tp, debt, np)


def test_candidates_come_largest_bond_first_with_remaining_bond() -> None:
    loans = [loan(BORROWER_A, bond=2), loan(BORROWER_B, bond=5), loan(BORROWER_C, bond=3)]
    candidates = run(collect(engine(), snapshot(*loans), pool_config()))

    assert [c.borrower for c in candidates] == [BORROWER_B, BORROWER_C, BORROWER_A]
    assert [c.estimated_remaining_bond for c in candidates] == [10 * WAD, 5 * WAD, 2 * WAD]


def test_price_is_resolved_once_per_scan() -> None:
    resolver = FakeResolver()
    run(collect(engine(resolver), snapshot(loan(BORROWER_A), loan(BORROWER_B)), pool_config()))

    assert resolver.calls == 1


def test_one_approval_covers_the_batch_and_is_cleared() -> None:
    erc20 = FakeErc20(balances={QUOTE: 100 * WAD})
    sequencer = FakeSequencer()
    kick_engine = engine(erc20=erc20, sequencer=sequencer)
    loans = [loan(BORROWER_A, bond=5), loan(BORROWER_B, bond=3), loan(BORROWER_C, bond=2)]

    kicked = run(kick_engine.handle_kicks(FakePool(), snapshot(*loans), pool_config()))

    assert kicked == 3
    assert [amount for _, _, amount in erc20.approvals] == [10 * WAD + WAD // 10, 0]
    assert [tx[0] for _, tx in sequencer.calls] == ["kick", "kick", "kick"]
    assert sequencer.calls[0][1] == ("kick", BORROWER_A, index_of(Decimal(100)))


def test_approval_is_capped_by_balance() -> None:
    erc20 = FakeErc20(balances={QUOTE: 6 * WAD})
    kick_engine = engine(erc20=erc20)
    loans = [loan(BORROWER_A, bond=5), loan(BORROWER_B, bond=3), loan(BORROWER_C, bond=2)]

    run(kick_engine.handle_kicks(FakePool(), snapshot(*loans), pool_config()))

    assert erc20.approvals[0][2] == 6 * WAD + 6 * WAD // 100


def test_existing_allowance_skips_approval() -> None:
    erc20 = FakeErc20(balances={QUOTE: 10 * WAD}, allowances={(QUOTE.lower(), POOL.lower()): 5 * WAD})
    sequencer = FakeSequencer()

    run(engine(erc20=erc20, sequencer=sequencer).handle_kicks(FakePool(), snapshot(loan(bond=1)), pool_config()))

    assert sequencer.labels() == [f"kick {BORROWER_A} in TEST"]
    assert [amount for _, _, amount in erc20.approvals] == [0]


def test_insufficient_balance_skips_kick_without_any_transaction() -> None:
    erc20 = FakeErc20(balances={QUOTE: WAD // 2})
    sequencer = FakeSequencer()

    kicked = run(engine(erc20=erc20, sequencer=sequencer).handle_kicks(FakePool(), snapshot(loan(bond=1)), pool_config()))

    assert kicked == 0
    assert sequencer.calls == []
    assert erc20.approvals == []


def test_failed_approval_skips_kick() -> None:
    erc20 = FakeErc20(balances={QUOTE: 10 * WAD}, fail_approve=True)
    sequencer = FakeSequencer()

    kicked = run(engine(erc20=erc20, sequencer=sequencer).handle_kicks(FakePool(), snapshot(loan()), pool_config()))

    assert kicked == 0
    assert sequencer.calls == []


def test_native_decimals_are_used_for_allowance() -> None:
    erc20 = FakeErc20(balances={QUOTE: 100 * 10**6}, decimals=6)

    run(engine(erc20=erc20).handle_kicks(FakePool(), snapshot(loan(bond=2)), pool_config()))

    assert erc20.approvals[0][2] == 2 * 10**6 + 2 * 10**4


def test_price_unavailable_aborts_pool_for_the_cycle() -> None:
    sequencer = FakeSequencer()
    kick_engine = engine(FakeResolver(error=PriceUnavailable("all sources down")), sequencer=sequencer)

    kicked = run(kick_engine.handle_kicks(FakePool(), snapshot(loan(BORROWER_A), loan(BORROWER_B)), pool_config()))

    assert kicked == 0
    assert sequencer.calls == []


def test_dry_run_kicks_nothing() -> None:
    erc20 = FakeErc20(balances={QUOTE: 10 * WAD})
    sequencer = FakeSequencer()

    kicked = run(engine(erc20=erc20, sequencer=sequencer, dry_run=True).handle_kicks(
        FakePool(), snapshot(loan()), pool_config()
    ))

    assert kicked == 0
    assert sequencer.calls == []
    assert erc20.approvals == []


def test_confirmed_kick_is_recorded() -> None:
    recorded = []

    async def recorder(*args):
        recorded.append(args)

    erc20 = FakeErc20(balances={QUOTE: 10 * WAD})
    run(engine(erc20=erc20, recorder=recorder).handle_kicks(FakePool(), snapshot(loan()), pool_config()))

    assert len(recorded) == 1
    kind, pool_name, borrower, tx_hash, status, detail = recorded[0]
    assert (kind, pool_name, borrower, status) == ("kick", "TEST", BORROWER_A, "confirmed")
