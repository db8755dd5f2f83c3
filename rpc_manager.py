import asyncio
import logging
import random
from typing import List, Optional

from web3 import AsyncWeb3

logger = logging.getLogger("RPCManager")

RATE_LIMIT_KEYWORDS = ["429", "403", "rate", "forbidden", "quota", "too many requests", "-32001"]
HARD_ERROR_KEYWORDS = ["serverdisconnected", "connectionerror", "connection refused",
                       "cannot connect", "server disconnected", "connectionreseterror",
                       "clientconnectorerror", "oserror", "gaierror", "timeout"]
NONCE_ERROR_KEYWORDS = ["nonce too low", "nonce too high", "invalid nonce", "nonce has already been used",
                        "replacement transaction underpriced", "already known", "known transaction"]


def is_rate_limit_error(error) -> bool:
    err_str = str(error).lower()
    return any(k in err_str for k in RATE_LIMIT_KEYWORDS)


def is_hard_error(error) -> bool:
    err_str = f"{type(error).__name__} {error}".lower()
    return any(k in err_str for k in HARD_ERROR_KEYWORDS)


def is_nonce_error(error) -> bool:
    err_str = str(error).lower()
    return any(k in err_str for k in NONCE_ERROR_KEYWORDS)


def is_transient_error(error) -> bool:
    """Errors worth one resync-and-retry: node hiccups and nonce drift."""
    return is_nonce_error(error) or is_rate_limit_error(error) or is_hard_error(error)


class AsyncRPCManager:
    """
    Round-robin async RPC manager.
    - Sticks to the primary endpoint and rotates through fallbacks on
      rate limit / quota / hard connection errors.
    """

    def __init__(self, primary_url: str, fallback_urls: Optional[List[str]] = None, timeout: int = 60):
        self.rpc_urls = [primary_url] + list(fallback_urls or [])
        self.current_index = 0
        self.timeout = timeout
        self.w3: Optional[AsyncWeb3] = None
        self.strike_count = 0

    @property
    def active_url(self) -> str:
        return self.rpc_urls[self.current_index]

    async def connect(self):
        """Connect to the current endpoint. Closes any previous aiohttp session first."""
        if self.w3 is not None:
            await self.close()

        self.w3 = AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(
            self.active_url, request_kwargs={"timeout": self.timeout}
        ))
        if not await self.w3.is_connected():
            raise ConnectionError(f"Failed to connect to {self.active_url[:50]}")
        logger.info(f"🔌 Connected to RPC [{self.current_index + 1}/{len(self.rpc_urls)}]: {self.active_url[:50]}...")
        return self.w3

    async def close(self):
        provider = getattr(self.w3, "provider", None)
        disconnect = getattr(provider, "disconnect", None)
        if disconnect is None:
            return
        try:
            await disconnect()
        except Exception as e:
            logger.debug(f"Ignoring error while closing RPC session: {e}")

    async def get_w3(self) -> AsyncWeb3:
        if self.w3 is None:
            await self.connect()
        return self.w3

    async def rotate(self):
        self.current_index = (self.current_index + 1) % len(self.rpc_urls)
        await self.connect()

    async def handle_rate_limit(self):
        """Three strikes on the same node, then rotate to the next one."""
        self.strike_count += 1
        if self.strike_count >= 3:
            self.strike_count = 0
            logger.warning("🔄 3 strikes! Switching to the next RPC endpoint")
            await self.rotate()
            return
        cooldown = random.uniform(1.0, 2.0)
        logger.warning(f"⏳ Rate limited or quota exceeded (strike {self.strike_count}). Cooling down {cooldown:.1f}s...")
        await asyncio.sleep(cooldown)

    async def handle_hard_error(self, error):
        logger.error(f"💥 Hard RPC error: {error}. Rotating...")
        self.strike_count = 0
        await self.rotate()

    async def handle_error(self, error) -> bool:
        """Rotate/back off if the error is an RPC-level problem. Returns True if handled."""
        if is_rate_limit_error(error):
            await self.handle_rate_limit()
            return True
        if is_hard_error(error):
            await self.handle_hard_error(error)
            return True
        return False
