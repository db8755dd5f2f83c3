"""
Remote USD price feeds: CoinGecko (primary) and Alchemy Prices API (fallback).

Both clients answer in USD per token; pair ratios and fallback ordering are
handled by price_resolver.
"""

import logging
import re
import time
from decimal import Decimal, InvalidOperation
from typing import Dict, Optional, Tuple

import aiohttp

from keeper_errors import MarketDataError

logger = logging.getLogger("MarketPrices")

COINGECKO_API = "https://api.coingecko.com/api/v3/simple/"
ALCHEMY_PRICES_API = "https://api.g.alchemy.com/prices/v1/{key}/tokens/by-address"
PLACEHOLDER_KEYS = {"", "YOUR_COINGECKO_API_KEY_HERE"}
PRICE_CACHE_SECONDS = 10.0

ALCHEMY_NETWORKS = {
    1: "eth-mainnet",
    10: "opt-mainnet",
    137: "polygon-mainnet",
    8453: "base-mainnet",
    42161: "arb-mainnet",
    43114: "avax-mainnet",
}

# CoinGecko id -> token address, used when falling back to Alchemy
TOKEN_ADDRESSES: Dict[int, Dict[str, str]] = {
    8453: {
        "ethereum": "0x4200000000000000000000000000000000000006",
        "weth": "0x4200000000000000000000000000000000000006",
        "usd-coin": "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913",
        "usdc": "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913",
        "dai": "0x50c5725949A6F0c72E6C4a641F24049A917DB0Cb",
        "tether": "0xfde4C96c8593536E31F229EA8f37b2ADa2699bb2",
        "usdt": "0xfde4C96c8593536E31F229EA8f37b2ADa2699bb2",
        "wrapped-bitcoin": "0xcbB7C0000aB88B473b1f5aFd9ef808440eed33Bf",
        "wbtc": "0xcbB7C0000aB88B473b1f5aFd9ef808440eed33Bf",
    },
    1: {
        "ethereum": "0xC02aaA39b223FE8D0A0e5C4F27eAD9083C756Cc2",
        "weth": "0xC02aaA39b223FE8D0A0e5C4F27eAD9083C756Cc2",
        "usd-coin": "0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48",
        "usdc": "0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48",
        "dai": "0x6B175474E89094C44Da98b954EedeAC495271d0F",
        "tether": "0xdAC17F958D2ee523a2206206994597C13D831ec7",
        "usdt": "0xdAC17F958D2ee523a2206206994597C13D831ec7",
        "wrapped-bitcoin": "0x2260FAC5E5542a773Aa44fBCfeDf7C193bc2C599",
        "wbtc": "0x2260FAC5E5542a773Aa44fBCfeDf7C193bc2C599",
    },
    43114: {
        "avalanche-2": "0xB31f66AA3C1e785363F0875A1B74E27b85FD66c7",
        "avax": "0xB31f66AA3C1e785363F0875A1B74E27b85FD66c7",
        "wavax": "0xB31f66AA3C1e785363F0875A1B74E27b85FD66c7",
        "usd-coin": "0xB97EF9Ef8734C71904D8002F8b6Bc66Dd9c48a6E",
        "usdc": "0xB97EF9Ef8734C71904D8002F8b6Bc66Dd9c48a6E",
        "ethereum": "0x49D5c2BdFfac6CE2BFdB6640F4F80f226bc10bAB",
        "weth": "0x49D5c2BdFfac6CE2BFdB6640F4F80f226bc10bAB",
    },
    42161: {
        "ethereum": "0x82aF49447D8a07e3bd95BD0d56f35241523fBab1",
        "weth": "0x82aF49447D8a07e3bd95BD0d56f35241523fBab1",
        "usd-coin": "0xaf88d065e77c8cC2239327C5EDb3A432268e5831",
        "usdc": "0xaf88d065e77c8cC2239327C5EDb3A432268e5831",
        "dai": "0xDA10009cBd5D07dd0CeCc66161FC93D7c9000da1",
        "tether": "0xFd086bC7CD5C481DCC9C85ebE478A1C0b69FCbb9",
        "usdt": "0xFd086bC7CD5C481DCC9C85ebE478A1C0b69FCbb9",
    },
}


def build_coingecko_query(token_id: str) -> str:
    return f"price?ids={token_id}&vs_currencies=usd"


def token_id_from_query(query: str) -> str:
    match = re.search(r"ids=([^&]+)", query)
    if not match:
        raise MarketDataError(f"Could not extract token id from query: {query}")
    return match.group(1)


def extract_alchemy_key(rpc_url: str) -> Optional[str]:
    """Pull the API key out of an Alchemy RPC URL (https://<net>.g.alchemy.com/v2/<KEY>)."""
    match = re.search(r"/v2/([a-zA-Z0-9_-]+)", rpc_url or "")
    return match.group(1) if match else None


def lookup_token_address(token_id: str, chain_id: int, overrides: Optional[Dict[str, str]] = None) -> Optional[str]:
    if overrides and token_id in overrides:
        return overrides[token_id]
    return TOKEN_ADDRESSES.get(chain_id, {}).get(token_id)


def _positive_decimal(value, origin: str) -> Decimal:
    try:
        price = Decimal(str(value))
    except (InvalidOperation, ValueError) as e:
        raise MarketDataError(f"{origin} returned a non-numeric price {value!r}") from e
    if price <= 0:
        raise MarketDataError(f"{origin} returned a non-positive price {price}")
    return price


class _TTLCache:
    def __init__(self, ttl: float):
        self.ttl = ttl
        self._entries: Dict[str, Tuple[float, Decimal]] = {}

    def get(self, key: str) -> Optional[Decimal]:
        entry = self._entries.get(key)
        if entry and time.monotonic() - entry[0] < self.ttl:
            return entry[1]
        return None

    def put(self, key: str, value: Decimal):
        self._entries[key] = (time.monotonic(), value)


class CoinGeckoClient:
    def __init__(self, api_key: Optional[str], timeout: int = 10, cache_seconds: float = PRICE_CACHE_SECONDS):
        self.api_key = (api_key or "").strip()
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self._cache = _TTLCache(cache_seconds)

    @property
    def enabled(self) -> bool:
        return self.api_key not in PLACEHOLDER_KEYS

    async def get_price(self, query: str) -> Decimal:
        """Run a `simple/price?...` query and return the first USD value in the response."""
        if not self.enabled:
            raise MarketDataError("CoinGecko API key not configured")

        cached = self._cache.get(query)
        if cached is not None:
            return cached

        headers = {"accept": "application/json", "x-cg-demo-api-key": self.api_key}
        async with aiohttp.ClientSession(timeout=self.timeout) as session:
            async with session.get(COINGECKO_API + query, headers=headers) as response:
                if response.status != 200:
                    raise MarketDataError(f"CoinGecko HTTP {response.status} for {query}")
                data = await response.json()

        try:
            value = next(iter(next(iter(data.values())).values()))
        except (StopIteration, AttributeError) as e:
            raise MarketDataError(f"CoinGecko returned no price for {query}: {data}") from e

        price = _positive_decimal(value, "CoinGecko")
        self._cache.put(query, price)
        logger.debug(f"CoinGecko price for {query}: ${price}")
        return price

    async def get_usd_price(self, token_id: str) -> Decimal:
        return await self.get_price(build_coingecko_query(token_id))


class AlchemyPriceClient:
    def __init__(self, api_key: Optional[str], chain_id: int, timeout: int = 10,
                 cache_seconds: float = PRICE_CACHE_SECONDS):
        self.api_key = api_key
        self.chain_id = chain_id
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self._cache = _TTLCache(cache_seconds)

    @property
    def enabled(self) -> bool:
        return bool(self.api_key) and self.chain_id in ALCHEMY_NETWORKS

    async def get_usd_price(self, token_address: str) -> Decimal:
        if not self.api_key:
            raise MarketDataError("Alchemy API key not configured")
        network = ALCHEMY_NETWORKS.get(self.chain_id)
        if network is None:
            raise MarketDataError(f"Unsupported chainId for Alchemy Prices API: {self.chain_id}")

        cached = self._cache.get(token_address.lower())
        if cached is not None:
            return cached

        url = ALCHEMY_PRICES_API.format(key=self.api_key)
        body = {"addresses": [{"network": network, "address": token_address}]}
        async with aiohttp.ClientSession(timeout=self.timeout) as session:
            async with session.post(url, json=body) as response:
                if response.status != 200:
                    raise MarketDataError(f"Alchemy HTTP {response.status} for {token_address}")
                data = await response.json()

        entries = data.get("data") or []
        if not entries:
            raise MarketDataError("No price data returned from Alchemy")
        token_data = entries[0]
        if token_data.get("error"):
            raise MarketDataError(f"Alchemy API error: {token_data['error']}")

        usd = next((p for p in token_data.get("prices") or [] if p.get("currency", "").lower() == "usd"), None)
        if usd is None:
            raise MarketDataError(f"USD price not available from Alchemy for {token_address}")

        price = _positive_decimal(usd["value"], "Alchemy")
        self._cache.put(token_address.lower(), price)
        logger.debug(f"Alchemy price for {token_address}: ${price}")
        return price
