from __future__ import annotations

from decimal import Decimal

import pytest

from fakes import WAD, run
from keeper_config import PriceSpec
from keeper_errors import MarketDataError, PriceUnavailable
from pool_models import PoolPrices
from price_resolver import PriceContext, PriceOrigin, PriceResolver, source_order

BASE = 8453
WETH_BASE = "0x4200000000000000000000000000000000000006"
USDC_BASE = "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913"
WETH_QUERY = "price?ids=weth&vs_currencies=usd"


class FakeCoinGecko:
    def __init__(self, prices=None, error: Exception | None = None, enabled: bool = True) -> None:
        self.prices = prices or {}
        self.error = error
        self.enabled = enabled
        self.queries: list[str] = []

    async def get_price(self, query: str) -> Decimal:
        self.queries.append(query)
        if self.error is not None:
            raise self.error
        return self.prices[query]


class FakeAlchemy:
    def __init__(self, prices=None, error: Exception | None = None, enabled: bool = True) -> None:
        self.prices = {k.lower(): v for k, v in (prices or {}).items()}
        self.error = error
        self.enabled = enabled
        self.addresses: list[str] = []

    async def get_usd_price(self, token_address: str) -> Decimal:
        self.addresses.append(token_address)
        if self.error is not None:
            raise self.error
        return self.prices[token_address.lower()]


def context(lup=100, hpb=120) -> PriceContext:
    return PriceContext(
        pool_name="TEST",
        pool_prices=PoolPrices(lup=lup * WAD, lup_index=0, hpb=hpb * WAD, hpb_index=0),
    )


def test_source_order_follows_configuration() -> None:
    assert source_order(PriceSpec(source="coingecko", query=WETH_QUERY)) == [PriceOrigin.COINGECKO, PriceOrigin.ALCHEMY]
    assert source_order(PriceSpec(source="coingecko", query=WETH_QUERY, value=Decimal(1), reference="lup")) == [
        PriceOrigin.COINGECKO, PriceOrigin.ALCHEMY, PriceOrigin.FIXED, PriceOrigin.POOL,
    ]
    assert source_order(PriceSpec(source="fixed", value=Decimal(1))) == [PriceOrigin.FIXED]
    assert source_order(PriceSpec(source="pool", reference="hpb")) == [PriceOrigin.POOL]


def test_first_successful_source_wins() -> None:
    coingecko = FakeCoinGecko({WETH_QUERY: Decimal(3000)})
    alchemy = FakeAlchemy({WETH_BASE: Decimal(2900)})
    resolver = PriceResolver(coingecko, alchemy, BASE)

    price = run(resolver.resolve(PriceSpec(source="coingecko", query=WETH_QUERY), context()))

    assert price == Decimal(3000)
    assert alchemy.addresses == []


def test_fallback_returns_second_source_value_unblended() -> None:
    coingecko = FakeCoinGecko(error=MarketDataError("HTTP 429"))
    alchemy = FakeAlchemy({WETH_BASE: Decimal(2900)})
    resolver = PriceResolver(coingecko, alchemy, BASE)

    price = run(resolver.resolve(PriceSpec(source="coingecko", query=WETH_QUERY), context()))

    assert price == Decimal(2900)
    assert alchemy.addresses == [WETH_BASE]


def test_disabled_coingecko_is_skipped() -> None:
    coingecko = FakeCoinGecko({WETH_QUERY: Decimal(3000)}, enabled=False)
    resolver = PriceResolver(coingecko, FakeAlchemy({WETH_BASE: Decimal(2900)}), BASE)

    assert run(resolver.resolve(PriceSpec(source="coingecko", query=WETH_QUERY), context())) == Decimal(2900)
    assert coingecko.queries == []


def test_fixed_and_pool_reference_back_up_remote_sources() -> None:
    down = MarketDataError("down")
    resolver = PriceResolver(FakeCoinGecko(error=down), FakeAlchemy(error=down), BASE)

    fixed = PriceSpec(source="coingecko", query=WETH_QUERY, value=Decimal(1234))
    assert run(resolver.resolve(fixed, context())) == Decimal(1234)

    lup = PriceSpec(source="coingecko", query=WETH_QUERY, reference="lup")
    assert run(resolver.resolve(lup, context(lup=101))) == Decimal(101)

    hpb = PriceSpec(source="pool", reference="hpb")
    assert run(resolver.resolve(hpb, context(hpb=130))) == Decimal(130)


def test_invert_returns_reciprocal() -> None:
    resolver = PriceResolver(chain_id=BASE)

    price = run(resolver.resolve(PriceSpec(source="fixed", value=Decimal(4), invert=True), context()))

    assert price == Decimal("0.25")


def test_pair_spec_is_collateral_over_quote() -> None:
    coingecko = FakeCoinGecko({
        "price?ids=weth&vs_currencies=usd": Decimal(3000),
        "price?ids=usd-coin&vs_currencies=usd": Decimal("0.5"),
    })
    resolver = PriceResolver(coingecko, None, BASE)

    spec = PriceSpec(source="coingecko", collateral_id="weth", quote_id="usd-coin")
    assert run(resolver.resolve(spec, context())) == Decimal(6000)


def test_pair_spec_on_alchemy_uses_token_addresses() -> None:
    alchemy = FakeAlchemy({WETH_BASE: Decimal(3000), USDC_BASE: Decimal(1)})
    resolver = PriceResolver(None, alchemy, BASE)

    spec = PriceSpec(source="alchemy", collateral_id="weth", quote_id="usd-coin")
    assert run(resolver.resolve(spec, context())) == Decimal(3000)
    assert alchemy.addresses == [WETH_BASE, USDC_BASE]


def test_unmapped_token_can_be_configured() -> None:
    token = "0x9999999999999999999999999999999999999999"
    alchemy = FakeAlchemy({token: Decimal(7)})
    resolver = PriceResolver(None, alchemy, BASE)
    ctx = PriceContext(pool_name="TEST", token_addresses={"obscure-token": token})

    spec = PriceSpec(source="alchemy", query="price?ids=obscure-token&vs_currencies=usd")
    assert run(resolver.resolve(spec, ctx)) == Decimal(7)


def test_every_source_failing_raises_price_unavailable() -> None:
    down = MarketDataError("down")
    resolver = PriceResolver(FakeCoinGecko(error=down), FakeAlchemy(error=down), BASE)

    with pytest.raises(PriceUnavailable) as excinfo:
        run(resolver.resolve(PriceSpec(source="coingecko", query=WETH_QUERY), context()))

    assert [origin for origin, _ in excinfo.value.attempts] == [PriceOrigin.COINGECKO, PriceOrigin.ALCHEMY]


def test_zero_pool_reference_is_a_failure() -> None:
    resolver = PriceResolver(chain_id=BASE)

    with pytest.raises(PriceUnavailable):
        run(resolver.resolve(PriceSpec(source="pool", reference="lup"), context(lup=0)))
