"""
DEX adapters behind the LiquidityRouter.

  - OneInchAdapter      1inch aggregator REST API (quote + swap calldata)
  - UniswapV3Adapter    QuoterV2 + SwapRouter02 (multicall with deadline)
  - SushiSwapAdapter    QuoterV2 + V3 SwapRouter (deadline inside the params)
  - AerodromeAdapter    V2-style router with stable / volatile pools
"""

import asyncio
import logging
import time
from decimal import Decimal
from typing import List, Optional

import aiohttp
from hexbytes import HexBytes
from web3 import Web3
from web3.exceptions import ContractLogicError

from liquidity_router import (
    DexAdapter,
    LiquiditySource,
    PoolLookup,
    PoolVariant,
    Quote,
    QuoteFailure,
    QuoteHint,
    QuoteOutcome,
    SwapInstruction,
)

logger = logging.getLogger("DexAdapters")

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

# ═══════════════════════════════════════════════════════════════════════════════
# ABIs (Minimal — only what we call)
# ═══════════════════════════════════════════════════════════════════════════════

V3_FACTORY_ABI = [
    {
        "inputs": [
            {"name": "tokenA", "type": "address"},
            {"name": "tokenB", "type": "address"},
            {"name": "fee", "type": "uint24"},
        ],
        "name": "getPool",
        "outputs": [{"name": "pool", "type": "address"}],
        "stateMutability": "view",
        "type": "function",
    }
]

QUOTER_V2_ABI = [
    {
        "inputs": [
            {
                "components": [
                    {"name": "tokenIn", "type": "address"},
                    {"name": "tokenOut", "type": "address"},
                    {"name": "amountIn", "type": "uint256"},
                    {"name": "fee", "type": "uint24"},
                    {"name": "sqrtPriceLimitX96", "type": "uint160"},
                ],
                "name": "params",
                "type": "tuple",
            }
        ],
        "name": "quoteExactInputSingle",
        "outputs": [
            {"name": "amountOut", "type": "uint256"},
            {"name": "sqrtPriceX96After", "type": "uint160"},
            {"name": "initializedTicksCrossed", "type": "uint32"},
            {"name": "gasEstimate", "type": "uint256"},
        ],
        "stateMutability": "nonpayable",
        "type": "function",
    }
]

# SwapRouter02: no deadline in the struct, wrapped in multicall(deadline, data[])
SWAP_ROUTER02_ABI = [
    {
        "inputs": [
            {
                "components": [
                    {"name": "tokenIn", "type": "address"},
                    {"name": "tokenOut", "type": "address"},
                    {"name": "fee", "type": "uint24"},
                    {"name": "recipient", "type": "address"},
                    {"name": "amountIn", "type": "uint256"},
                    {"name": "amountOutMinimum", "type": "uint256"},
                    {"name": "sqrtPriceLimitX96", "type": "uint160"},
                ],
                "name": "params",
                "type": "tuple",
            }
        ],
        "name": "exactInputSingle",
        "outputs": [{"name": "amountOut", "type": "uint256"}],
        "stateMutability": "payable",
        "type": "function",
    },
    {
        "inputs": [
            {"name": "deadline", "type": "uint256"},
            {"name": "data", "type": "bytes[]"},
        ],
        "name": "multicall",
        "outputs": [{"name": "results", "type": "bytes[]"}],
        "stateMutability": "payable",
        "type": "function",
    },
]

# V3 SwapRouter (SushiSwap deployment): deadline lives in the params struct
SWAP_ROUTER_V1_ABI = [
    {
        "inputs": [
            {
                "components": [
                    {"name": "tokenIn", "type": "address"},
                    {"name": "tokenOut", "type": "address"},
                    {"name": "fee", "type": "uint24"},
                    {"name": "recipient", "type": "address"},
                    {"name": "deadline", "type": "uint256"},
                    {"name": "amountIn", "type": "uint256"},
                    {"name": "amountOutMinimum", "type": "uint256"},
                    {"name": "sqrtPriceLimitX96", "type": "uint160"},
                ],
                "name": "params",
                "type": "tuple",
            }
        ],
        "name": "exactInputSingle",
        "outputs": [{"name": "amountOut", "type": "uint256"}],
        "stateMutability": "payable",
        "type": "function",
    }
]

AERODROME_ROUTE_COMPONENTS = [
    {"name": "from", "type": "address"},
    {"name": "to", "type": "address"},
    {"name": "stable", "type": "bool"},
    {"name": "factory", "type": "address"},
]

AERODROME_ROUTER_ABI = [
    {
        "inputs": [
            {"name": "amountIn", "type": "uint256"},
            {"components": AERODROME_ROUTE_COMPONENTS, "name": "routes", "type": "tuple[]"},
        ],
        "name": "getAmountsOut",
        "outputs": [{"name": "amounts", "type": "uint256[]"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [
            {"name": "amountIn", "type": "uint256"},
            {"name": "amountOutMin", "type": "uint256"},
            {"components": AERODROME_ROUTE_COMPONENTS, "name": "routes", "type": "tuple[]"},
            {"name": "to", "type": "address"},
            {"name": "deadline", "type": "uint256"},
        ],
        "name": "swapExactTokensForTokens",
        "outputs": [{"name": "amounts", "type": "uint256[]"}],
        "stateMutability": "nonpayable",
        "type": "function",
    },
]

AERODROME_FACTORY_ABI = [
    {
        "inputs": [
            {"name": "tokenA", "type": "address"},
            {"name": "tokenB", "type": "address"},
            {"name": "stable", "type": "bool"},
        ],
        "name": "getPool",
        "outputs": [{"name": "pool", "type": "address"}],
        "stateMutability": "view",
        "type": "function",
    }
]


def _calldata(fn) -> bytes:
    # _encode_transaction_data() returns a hex string ("0x...")
    hex_data = fn._encode_transaction_data()
    return bytes.fromhex(hex_data[2:]) if isinstance(hex_data, str) else bytes(hex_data)


def _is_zero_address(address: Optional[str]) -> bool:
    return not address or int(address, 16) == 0


# ═══════════════════════════════════════════════════════════════════════════════
# 1INCH AGGREGATOR
# ═══════════════════════════════════════════════════════════════════════════════

class OneInchAdapter(DexAdapter):
    source = LiquiditySource.ONEINCH

    def __init__(self, settings, api_key: str, chain_id: int, timeout: int = 15):
        self.settings = settings
        self.api_key = api_key
        self.chain_id = chain_id
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self._last_call = 0.0
        self._throttle = asyncio.Lock()

    @property
    def router_address(self) -> str:
        return Web3.to_checksum_address(self.settings.router_address)

    async def _get(self, endpoint: str, params: dict) -> dict:
        # 1inch rate limit: space calls by min_delay_between_calls
        async with self._throttle:
            wait = self.settings.min_delay_between_calls - (time.monotonic() - self._last_call)
            if wait > 0:
                await asyncio.sleep(wait)
            self._last_call = time.monotonic()

        url = f"{self.settings.api_url}/{self.chain_id}/{endpoint}"
        headers = {"Authorization": f"Bearer {self.api_key}", "accept": "application/json"}
        async with aiohttp.ClientSession(timeout=self.timeout) as session:
            async with session.get(url, params=params, headers=headers) as response:
                body = await response.json(content_type=None)
                if response.status != 200:
                    raise RuntimeError(f"1inch HTTP {response.status}: {str(body)[:200]}")
                return body

    async def pool_exists(self, token_a: str, token_b: str, hint: Optional[QuoteHint] = None) -> PoolLookup:
        # The aggregator routes across venues; it "exists" whenever it is configured
        if not self.api_key:
            return PoolLookup.missing(QuoteFailure.NOT_CONFIGURED, "ONEINCH_API_KEY not set")
        return PoolLookup(exists=True, variant=PoolVariant.AGGREGATOR, address=self.router_address)

    async def get_quote(self, amount_in: int, token_in: str, token_out: str,
                        hint: Optional[QuoteHint] = None) -> QuoteOutcome:
        if not self.api_key:
            return QuoteOutcome.failed(QuoteFailure.NOT_CONFIGURED, "ONEINCH_API_KEY not set")
        try:
            body = await self._get("quote", {"src": token_in, "dst": token_out, "amount": str(amount_in)})
        except Exception as e:
            return QuoteOutcome.failed(QuoteFailure.PROVIDER_ERROR, f"1inch quote failed: {e}")

        amount_out = int(body.get("dstAmount") or 0)
        if amount_out == 0:
            return QuoteOutcome.failed(QuoteFailure.NO_LIQUIDITY, "1inch returned zero output")
        return QuoteOutcome.success(Quote(
            amount_in=amount_in,
            amount_out=amount_out,
            pool_variant=PoolVariant.AGGREGATOR,
            route=(token_in, token_out),
            source=self.source,
            token_in=token_in,
            token_out=token_out,
        ))

    async def build_swap_instruction(self, quote: Quote, min_out: int, deadline: int,
                                     recipient: str) -> SwapInstruction:
        # 1inch takes slippage in percent and enforces its own minimum from it
        slippage_pct = (Decimal(1) - Decimal(min_out) / Decimal(quote.amount_out)) * 100
        body = await self._get("swap", {
            "src": quote.token_in,
            "dst": quote.token_out,
            "amount": str(quote.amount_in),
            "from": recipient,
            "slippage": f"{slippage_pct.normalize():f}",
            "disableEstimate": "true",
        })
        tx = body["tx"]
        return SwapInstruction(
            source=self.source,
            router=Web3.to_checksum_address(tx["to"]),
            data=bytes(HexBytes(tx["data"])),
            min_amount_out=min_out,
            deadline=deadline,
            quote=quote,
            value=int(tx.get("value") or 0),
        )


# ═══════════════════════════════════════════════════════════════════════════════
# CONCENTRATED LIQUIDITY (Uniswap V3 / SushiSwap V3)
# ═══════════════════════════════════════════════════════════════════════════════

class UniswapV3Adapter(DexAdapter):
    source = LiquiditySource.UNISWAPV3
    router_abi = SWAP_ROUTER02_ABI

    def __init__(self, w3, settings):
        self.w3 = w3
        self.settings = settings
        self.factory = w3.eth.contract(address=Web3.to_checksum_address(settings.factory_address), abi=V3_FACTORY_ABI)
        self.quoter = w3.eth.contract(address=Web3.to_checksum_address(settings.quoter_address), abi=QUOTER_V2_ABI)
        self.router = w3.eth.contract(address=Web3.to_checksum_address(settings.router_address), abi=self.router_abi)

    @property
    def router_address(self) -> str:
        return self.router.address

    def _fee_tiers(self, hint: Optional[QuoteHint]) -> List[int]:
        if hint is not None and hint.fee_tier is not None:
            return [hint.fee_tier]
        default = self.settings.default_fee_tier
        return [default] + [fee for fee in self.settings.fee_tiers if fee != default]

    async def pool_exists(self, token_a: str, token_b: str, hint: Optional[QuoteHint] = None) -> PoolLookup:
        try:
            for fee in self._fee_tiers(hint):
                pool = await self.factory.functions.getPool(
                    Web3.to_checksum_address(token_a), Web3.to_checksum_address(token_b), fee
                ).call()
                if not _is_zero_address(pool):
                    logger.debug(f"{self.source.name} pool found: {token_a}/{token_b} fee {fee} at {pool}")
                    return PoolLookup(exists=True, variant=PoolVariant.CONCENTRATED, address=pool, fee_tier=fee)
        except Exception as e:
            return PoolLookup.missing(QuoteFailure.PROVIDER_ERROR, f"getPool failed: {e}")
        return PoolLookup.missing(detail=f"No {self.source.name} pool for {token_a}/{token_b}")

    async def get_quote(self, amount_in: int, token_in: str, token_out: str,
                        hint: Optional[QuoteHint] = None) -> QuoteOutcome:
        lookup = await self.pool_exists(token_in, token_out, hint)
        if not lookup.exists:
            return QuoteOutcome.failed(lookup.failure, lookup.detail)

        try:
            result = await self.quoter.functions.quoteExactInputSingle((
                Web3.to_checksum_address(token_in),
                Web3.to_checksum_address(token_out),
                amount_in,
                lookup.fee_tier,
                0,
            )).call()
        except ContractLogicError as e:
            return QuoteOutcome.failed(QuoteFailure.NO_LIQUIDITY, f"Quoter reverted: {e}")
        except Exception as e:
            return QuoteOutcome.failed(QuoteFailure.PROVIDER_ERROR, f"Quoter call failed: {e}")

        amount_out = result[0]
        if amount_out == 0:
            return QuoteOutcome.failed(QuoteFailure.NO_LIQUIDITY, "Zero output from quoter")
        return QuoteOutcome.success(Quote(
            amount_in=amount_in,
            amount_out=amount_out,
            pool_variant=PoolVariant.CONCENTRATED,
            route=(token_in, token_out),
            source=self.source,
            token_in=token_in,
            token_out=token_out,
            fee_tier=lookup.fee_tier,
        ))

    def _encode_swap(self, quote: Quote, min_out: int, deadline: int, recipient: str) -> bytes:
        swap = _calldata(self.router.functions.exactInputSingle((
            Web3.to_checksum_address(quote.token_in),
            Web3.to_checksum_address(quote.token_out),
            quote.fee_tier,
            Web3.to_checksum_address(recipient),
            quote.amount_in,
            min_out,
            0,
        )))
        return _calldata(self.router.functions.multicall(deadline, [swap]))

    async def build_swap_instruction(self, quote: Quote, min_out: int, deadline: int,
                                     recipient: str) -> SwapInstruction:
        return SwapInstruction(
            source=self.source,
            router=self.router_address,
            data=self._encode_swap(quote, min_out, deadline, recipient),
            min_amount_out=min_out,
            deadline=deadline,
            quote=quote,
        )


class SushiSwapAdapter(UniswapV3Adapter):
    source = LiquiditySource.SUSHISWAP
    router_abi = SWAP_ROUTER_V1_ABI

    def _encode_swap(self, quote: Quote, min_out: int, deadline: int, recipient: str) -> bytes:
        return _calldata(self.router.functions.exactInputSingle((
            Web3.to_checksum_address(quote.token_in),
            Web3.to_checksum_address(quote.token_out),
            quote.fee_tier,
            Web3.to_checksum_address(recipient),
            deadline,
            quote.amount_in,
            min_out,
            0,
        )))


# ═══════════════════════════════════════════════════════════════════════════════
# AERODROME (stable / volatile pools)
# ═══════════════════════════════════════════════════════════════════════════════

class AerodromeAdapter(DexAdapter):
    """
    Without a hint the volatile pool is probed first and wins whenever it
    exists, even if a stable pool for the same pair is deeper. This is a fixed
    tie-break, not a liquidity comparison.
    """
    source = LiquiditySource.AERODROME
    PROBE_ORDER = (PoolVariant.VOLATILE, PoolVariant.STABLE)

    def __init__(self, w3, settings):
        self.w3 = w3
        self.settings = settings
        self.factory_address = Web3.to_checksum_address(settings.factory_address)
        self.factory = w3.eth.contract(address=self.factory_address, abi=AERODROME_FACTORY_ABI)
        self.router = w3.eth.contract(address=Web3.to_checksum_address(settings.router_address),
                                      abi=AERODROME_ROUTER_ABI)

    @property
    def router_address(self) -> str:
        return self.router.address

    def _variants(self, hint: Optional[QuoteHint]):
        if hint is not None and hint.pool_type is not None:
            return (hint.pool_type,)
        if self.settings.default_pool_type:
            return (PoolVariant(self.settings.default_pool_type),)
        return self.PROBE_ORDER

    async def pool_exists(self, token_a: str, token_b: str, hint: Optional[QuoteHint] = None) -> PoolLookup:
        try:
            for variant in self._variants(hint):
                pool = await self.factory.functions.getPool(
                    Web3.to_checksum_address(token_a),
                    Web3.to_checksum_address(token_b),
                    variant is PoolVariant.STABLE,
                ).call()
                if not _is_zero_address(pool):
                    logger.debug(f"Aerodrome {variant.value} pool found: {token_a}/{token_b} at {pool}")
                    return PoolLookup(exists=True, variant=variant, address=pool)
        except Exception as e:
            return PoolLookup.missing(QuoteFailure.PROVIDER_ERROR, f"Aerodrome getPool failed: {e}")
        return PoolLookup.missing(detail=f"No Aerodrome pool for {token_a}/{token_b}")

    def _route(self, token_in: str, token_out: str, variant: PoolVariant):
        return [(
            Web3.to_checksum_address(token_in),
            Web3.to_checksum_address(token_out),
            variant is PoolVariant.STABLE,
            self.factory_address,
        )]

    async def get_quote(self, amount_in: int, token_in: str, token_out: str,
                        hint: Optional[QuoteHint] = None) -> QuoteOutcome:
        lookup = await self.pool_exists(token_in, token_out, hint)
        if not lookup.exists:
            return QuoteOutcome.failed(lookup.failure, lookup.detail)

        try:
            amounts = await self.router.functions.getAmountsOut(
                amount_in, self._route(token_in, token_out, lookup.variant)
            ).call()
        except ContractLogicError as e:
            return QuoteOutcome.failed(QuoteFailure.NO_LIQUIDITY, f"Aerodrome router reverted: {e}")
        except Exception as e:
            if "INSUFFICIENT_LIQUIDITY" in str(e):
                return QuoteOutcome.failed(QuoteFailure.NO_LIQUIDITY, "Insufficient liquidity in Aerodrome pool")
            return QuoteOutcome.failed(QuoteFailure.PROVIDER_ERROR, f"Aerodrome quote error: {e}")

        # single hop: amounts = [amountIn, amountOut]
        amount_out = amounts[1]
        if amount_out == 0:
            return QuoteOutcome.failed(QuoteFailure.NO_LIQUIDITY, "Zero output from Aerodrome router")
        return QuoteOutcome.success(Quote(
            amount_in=amount_in,
            amount_out=amount_out,
            pool_variant=lookup.variant,
            route=(token_in, token_out),
            source=self.source,
            token_in=token_in,
            token_out=token_out,
        ))

    async def build_swap_instruction(self, quote: Quote, min_out: int, deadline: int,
                                     recipient: str) -> SwapInstruction:
        data = _calldata(self.router.functions.swapExactTokensForTokens(
            quote.amount_in,
            min_out,
            self._route(quote.token_in, quote.token_out, quote.pool_variant),
            Web3.to_checksum_address(recipient),
            deadline,
        ))
        return SwapInstruction(
            source=self.source,
            router=self.router_address,
            data=data,
            min_amount_out=min_out,
            deadline=deadline,
            quote=quote,
        )


def build_adapters(w3, config, oneinch_api_key: str = ""):
    """Adapters for every DEX block present in the keeper config."""
    adapters = {}
    if config.oneinch is not None:
        adapters[LiquiditySource.ONEINCH] = OneInchAdapter(config.oneinch, oneinch_api_key, config.chain_id)
    if config.uniswap_v3 is not None:
        adapters[LiquiditySource.UNISWAPV3] = UniswapV3Adapter(w3, config.uniswap_v3)
    if config.sushiswap is not None:
        adapters[LiquiditySource.SUSHISWAP] = SushiSwapAdapter(w3, config.sushiswap)
    if config.aerodrome is not None:
        adapters[LiquiditySource.AERODROME] = AerodromeAdapter(w3, config.aerodrome)
    return adapters
