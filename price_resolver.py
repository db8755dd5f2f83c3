"""
═══════════════════════════════════════════════════════════════════════════════
PRICE RESOLVER — tiered price lookup for kick / take decisions
═══════════════════════════════════════════════════════════════════════════════
Order: CoinGecko → Alchemy → fixed value → pool reference (LUP/HPB).
Only configured sources are tried; the first success wins, nothing is blended.
Prices are quote-token per collateral-token, so pair specs resolve to
collateral USD ÷ quote USD.
═══════════════════════════════════════════════════════════════════════════════
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional, Tuple

from keeper_config import PriceSpec
from keeper_errors import MarketDataError, PriceUnavailable
from market_prices import build_coingecko_query, lookup_token_address, token_id_from_query
from pool_models import PoolPrices

logger = logging.getLogger("PriceResolver")


class PriceOrigin(Enum):
    COINGECKO = "coingecko"
    ALCHEMY = "alchemy"
    FIXED = "fixed"
    POOL = "pool"


@dataclass
class PriceContext:
    pool_name: str = ""
    pool_prices: Optional[PoolPrices] = None
    token_addresses: Dict[str, str] = field(default_factory=dict)


def source_order(spec: PriceSpec) -> List[PriceOrigin]:
    """Sources to try for `spec`, in order."""
    order = []
    if spec.source == "coingecko":
        order += [PriceOrigin.COINGECKO, PriceOrigin.ALCHEMY]
    elif spec.source == "alchemy":
        order.append(PriceOrigin.ALCHEMY)
    if spec.value is not None:
        order.append(PriceOrigin.FIXED)
    if spec.reference is not None:
        order.append(PriceOrigin.POOL)
    return order


class PriceResolver:
    def __init__(self, coingecko=None, alchemy=None, chain_id: Optional[int] = None):
        self.coingecko = coingecko
        self.alchemy = alchemy
        self.chain_id = chain_id

    async def resolve(self, spec: PriceSpec, context: Optional[PriceContext] = None) -> Decimal:
        context = context or PriceContext()
        attempts: List[Tuple[PriceOrigin, str]] = []

        for origin in source_order(spec):
            try:
                price = await self._from_source(origin, spec, context)
            except Exception as e:
                logger.warning(f"⚠️ Price source {origin.value} failed for pool {context.pool_name}: {e}")
                attempts.append((origin, str(e)))
                continue

            if spec.invert:
                price = Decimal(1) / price
            logger.debug(f"Price for pool {context.pool_name} from {origin.value}: {price}")
            return price

        raise PriceUnavailable(
            f"No price source succeeded for pool {context.pool_name} (tried {[o.value for o, _ in attempts]})",
            attempts=attempts,
        )

    async def _from_source(self, origin: PriceOrigin, spec: PriceSpec, context: PriceContext) -> Decimal:
        if origin is PriceOrigin.COINGECKO:
            return await self._coingecko_price(spec)
        if origin is PriceOrigin.ALCHEMY:
            return await self._alchemy_price(spec, context)
        if origin is PriceOrigin.FIXED:
            if spec.value <= 0:
                raise MarketDataError(f"Fixed price must be positive, got {spec.value}")
            return spec.value
        return self._pool_price(spec, context)

    # --- 1. CoinGecko ---

    async def _coingecko_price(self, spec: PriceSpec) -> Decimal:
        if self.coingecko is None or not self.coingecko.enabled:
            raise MarketDataError("CoinGecko API key not provided")
        if spec.is_pair:
            collateral = await self.coingecko.get_price(build_coingecko_query(spec.collateral_id))
            quote = await self.coingecko.get_price(build_coingecko_query(spec.quote_id))
            return collateral / quote
        return await self.coingecko.get_price(spec.query)

    # --- 2. Alchemy ---

    def _token_address(self, token_id: str, context: PriceContext) -> str:
        address = lookup_token_address(token_id, self.chain_id, context.token_addresses)
        if address is None:
            raise MarketDataError(
                f"No token address mapping for '{token_id}' on chain {self.chain_id}; add it to token_addresses"
            )
        return address

    async def _alchemy_price(self, spec: PriceSpec, context: PriceContext) -> Decimal:
        if self.alchemy is None or not self.alchemy.enabled:
            raise MarketDataError("Alchemy prices not configured")
        if spec.is_pair:
            collateral = await self.alchemy.get_usd_price(self._token_address(spec.collateral_id, context))
            quote = await self.alchemy.get_usd_price(self._token_address(spec.quote_id, context))
            return collateral / quote
        token_id = token_id_from_query(spec.query)
        return await self.alchemy.get_usd_price(self._token_address(token_id, context))

    # --- 3. Pool reference ---

    def _pool_price(self, spec: PriceSpec, context: PriceContext) -> Decimal:
        prices = context.pool_prices
        if prices is None:
            raise MarketDataError("Pool prices not available for a pool-reference price")
        price = prices.lup_decimal if spec.reference == "lup" else prices.hpb_decimal
        if price <= 0:
            raise MarketDataError(f"Pool {spec.reference.upper()} is zero")
        return price
