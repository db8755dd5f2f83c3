"""
═══════════════════════════════════════════════════════════════════════════════
LIQUIDITY ROUTER — one façade over the configured DEX adapters
═══════════════════════════════════════════════════════════════════════════════
Sources are a closed set (LiquiditySource) picked per pool in the config.
Every adapter answers pool_exists / get_quote / build_swap_instruction.
"No pool" and "no liquidity" come back as QuoteFailure reason codes on the
returned values; adapters never raise them.
═══════════════════════════════════════════════════════════════════════════════
"""

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Callable, Dict, Optional, Tuple

logger = logging.getLogger("LiquidityRouter")

SWAP_DEADLINE_SECONDS = 1800
BPS_DENOMINATOR = 10000


class LiquiditySource(Enum):
    # values match the keeper-taker contract's source enum
    ONEINCH = 1
    UNISWAPV3 = 2
    SUSHISWAP = 3
    AERODROME = 4

    @classmethod
    def from_tag(cls, tag: str) -> "LiquiditySource":
        return cls[tag.upper()]


class PoolVariant(Enum):
    VOLATILE = "volatile"
    STABLE = "stable"
    CONCENTRATED = "concentrated"
    AGGREGATOR = "aggregator"


class QuoteFailure(Enum):
    POOL_NOT_FOUND = "pool_not_found"
    NO_LIQUIDITY = "no_liquidity"
    PROVIDER_ERROR = "provider_error"
    NOT_CONFIGURED = "not_configured"


@dataclass(frozen=True)
class QuoteHint:
    """Optional pool selection: Aerodrome stable/volatile or a V3 fee tier."""
    pool_type: Optional[PoolVariant] = None
    fee_tier: Optional[int] = None


@dataclass(frozen=True)
class PoolLookup:
    exists: bool
    variant: Optional[PoolVariant] = None
    address: Optional[str] = None
    fee_tier: Optional[int] = None
    failure: Optional[QuoteFailure] = None
    detail: str = ""

    @classmethod
    def missing(cls, reason: QuoteFailure = QuoteFailure.POOL_NOT_FOUND, detail: str = "") -> "PoolLookup":
        return cls(exists=False, failure=reason, detail=detail)


@dataclass(frozen=True)
class Quote:
    amount_in: int
    amount_out: int
    pool_variant: PoolVariant
    route: Tuple[str, ...]
    source: LiquiditySource
    token_in: str
    token_out: str
    fee_tier: Optional[int] = None


@dataclass(frozen=True)
class QuoteOutcome:
    quote: Optional[Quote] = None
    failure: Optional[QuoteFailure] = None
    detail: str = ""

    @property
    def ok(self) -> bool:
        return self.quote is not None

    @classmethod
    def success(cls, quote: Quote) -> "QuoteOutcome":
        return cls(quote=quote)

    @classmethod
    def failed(cls, reason: QuoteFailure, detail: str = "") -> "QuoteOutcome":
        return cls(failure=reason, detail=detail)


@dataclass(frozen=True)
class SwapInstruction:
    """Router call ready to be sent (directly or through the taker contract)."""
    source: LiquiditySource
    router: str
    data: bytes
    min_amount_out: int
    deadline: int
    quote: Quote
    value: int = 0


def min_amount_out(amount_out: int, slippage_bps: int) -> int:
    if not 0 <= slippage_bps <= BPS_DENOMINATOR:
        raise ValueError(f"slippage_bps must be within [0, {BPS_DENOMINATOR}], got {slippage_bps}")
    return amount_out * (BPS_DENOMINATOR - slippage_bps) // BPS_DENOMINATOR


def swap_deadline(now: float) -> int:
    return int(now) + SWAP_DEADLINE_SECONDS


def quote_price(quote: Quote, decimals_in: int, decimals_out: int) -> Decimal:
    """Output tokens per input token, in human units."""
    amount_in = Decimal(quote.amount_in) / (Decimal(10) ** decimals_in)
    amount_out = Decimal(quote.amount_out) / (Decimal(10) ** decimals_out)
    return amount_out / amount_in


class DexAdapter(ABC):
    source: LiquiditySource

    @property
    @abstractmethod
    def router_address(self) -> str:
        ...

    @abstractmethod
    async def pool_exists(self, token_a: str, token_b: str, hint: Optional[QuoteHint] = None) -> PoolLookup:
        ...

    @abstractmethod
    async def get_quote(self, amount_in: int, token_in: str, token_out: str,
                        hint: Optional[QuoteHint] = None) -> QuoteOutcome:
        ...

    @abstractmethod
    async def build_swap_instruction(self, quote: Quote, min_out: int, deadline: int,
                                     recipient: str) -> SwapInstruction:
        ...


class LiquidityRouter:
    def __init__(self, adapters: Dict[LiquiditySource, DexAdapter], clock: Callable[[], float] = time.time):
        self.adapters = adapters
        self.clock = clock

    def adapter_for(self, source: LiquiditySource) -> Optional[DexAdapter]:
        return self.adapters.get(source)

    async def pool_exists(self, source: LiquiditySource, token_a: str, token_b: str,
                          hint: Optional[QuoteHint] = None) -> PoolLookup:
        adapter = self.adapter_for(source)
        if adapter is None:
            return PoolLookup.missing(QuoteFailure.NOT_CONFIGURED, f"{source.name} adapter not configured")
        return await adapter.pool_exists(token_a, token_b, hint)

    async def get_quote(self, source: LiquiditySource, amount_in: int, token_in: str, token_out: str,
                        hint: Optional[QuoteHint] = None) -> QuoteOutcome:
        adapter = self.adapter_for(source)
        if adapter is None:
            return QuoteOutcome.failed(QuoteFailure.NOT_CONFIGURED, f"{source.name} adapter not configured")
        if amount_in <= 0:
            return QuoteOutcome.failed(QuoteFailure.NO_LIQUIDITY, "amount_in must be positive")

        outcome = await adapter.get_quote(amount_in, token_in, token_out, hint)
        if not outcome.ok:
            logger.debug(f"No {source.name} quote {token_in} -> {token_out}: {outcome.failure.value} {outcome.detail}")
        return outcome

    async def prepare_swap(self, source: LiquiditySource, amount_in: int, token_in: str, token_out: str,
                           slippage_bps: int, recipient: str,
                           hint: Optional[QuoteHint] = None) -> Tuple[QuoteOutcome, Optional[SwapInstruction]]:
        """Quote and build a fresh instruction. Never reuse the result across attempts."""
        outcome = await self.get_quote(source, amount_in, token_in, token_out, hint)
        if not outcome.ok:
            return outcome, None

        quote = outcome.quote
        adapter = self.adapters[source]
        try:
            instruction = await adapter.build_swap_instruction(
                quote,
                min_amount_out(quote.amount_out, slippage_bps),
                swap_deadline(self.clock()),
                recipient,
            )
        except Exception as e:
            logger.warning(f"⚠️ Could not build {source.name} swap {token_in} -> {token_out}: {e}")
            return QuoteOutcome.failed(QuoteFailure.PROVIDER_ERROR, f"swap build failed: {e}"), None
        return outcome, instruction

    async def market_price(self, source: LiquiditySource, amount_in: int, token_in: str, token_out: str,
                           decimals_in: int, decimals_out: int,
                           hint: Optional[QuoteHint] = None) -> Tuple[Optional[Decimal], QuoteOutcome]:
        """Price of token_in in token_out units implied by a quote of `amount_in`."""
        outcome = await self.get_quote(source, amount_in, token_in, token_out, hint)
        if not outcome.ok:
            return None, outcome
        return quote_price(outcome.quote, decimals_in, decimals_out), outcome
