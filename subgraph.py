import asyncio
import logging
import random
from typing import List, Optional

import aiohttp

from keeper_errors import SubgraphError
from pool_models import Auction, Bucket, PoolPrices
from wad_math import decimal_to_wad

logger = logging.getLogger("Subgraph")

RETRY_STATUSES = (429, 500, 502, 503, 504, 520, 522, 524)

POOLS_SNAPSHOT_QUERY = """
query PoolSnapshots(
  $poolIds: [String!]!
  $maxBuckets: Int!
  $maxLoans: Int!
  $maxAuctions: Int!
  $minDeposit: BigDecimal!
) {
  pools(where: { id_in: $poolIds }) {
    id
    hpb
    hpbIndex
    lup
    lupIndex
    loans(first: $maxLoans, where: { inLiquidation: false }) {
      borrower
      thresholdPrice
      t0debt
      t0Np
      collateralPledged
    }
    liquidationAuctions(first: $maxAuctions, where: { settled: false }) {
      borrower
      collateralRemaining
      debtRemaining
      neutralPrice
      thresholdPrice
      kickTime
      settled
    }
    buckets(
      first: $maxBuckets
      where: { deposit_gt: $minDeposit }
      orderBy: bucketPrice
      orderDirection: desc
    ) {
      bucketIndex
      bucketPrice
      deposit
    }
  }
}
"""


# --- Parsing: subgraph BigDecimal strings -> WAD ints ---

def parse_prices(raw: dict) -> PoolPrices:
    return PoolPrices(
        lup=decimal_to_wad(raw.get("lup") or "0"),
        lup_index=int(raw.get("lupIndex") or 0),
        hpb=decimal_to_wad(raw.get("hpb") or "0"),
        hpb_index=int(raw.get("hpbIndex") or 0),
    )


def parse_auction(raw: dict) -> Auction:
    return Auction(
        borrower=raw["borrower"],
        collateral_remaining=decimal_to_wad(raw.get("collateralRemaining") or "0"),
        debt_remaining=decimal_to_wad(raw.get("debtRemaining") or "0"),
        neutral_price=decimal_to_wad(raw.get("neutralPrice") or "0"),
        kick_time=int(raw.get("kickTime") or 0),
        settled=bool(raw.get("settled", False)),
    )


def parse_bucket(raw: dict) -> Bucket:
    return Bucket(
        index=int(raw["bucketIndex"]),
        price=decimal_to_wad(raw.get("bucketPrice") or "0"),
        deposit=decimal_to_wad(raw.get("deposit") or "0"),
    )


class SubgraphClient:
    """Ajna subgraph reader (GraphQL over aiohttp)."""

    def __init__(self, url: str, retries: int = 4, timeout: int = 30):
        self.url = url
        self.retries = retries
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)
        return self._session

    async def close(self):
        if self._session is not None and not self._session.closed:
            await self._session.close()

    async def query(self, query: str, variables: Optional[dict] = None) -> dict:
        payload = {"query": query, "variables": variables or {}}
        back = 0.8
        session = await self._get_session()
        for attempt in range(1, self.retries + 1):
            try:
                async with session.post(self.url, json=payload) as r:
                    if r.status == 200:
                        body = await r.json()
                        if body.get("errors"):
                            raise SubgraphError(f"Subgraph returned errors: {body['errors']}")
                        return body.get("data") or {}
                    if r.status in RETRY_STATUSES:
                        sleep = back * (2 ** (attempt - 1)) + random.uniform(0, 0.5)
                        logger.warning(f"⏳ Subgraph HTTP {r.status}, retrying in {sleep:.1f}s...")
                        await asyncio.sleep(sleep)
                        continue
                    txt = await r.text()
                    raise SubgraphError(f"Subgraph HTTP {r.status}: {txt[:200]}")
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                sleep = back * (2 ** (attempt - 1)) + random.uniform(0, 0.5)
                logger.warning(f"⚠️ Subgraph {type(e).__name__}: {e}, retrying in {sleep:.1f}s...")
                await asyncio.sleep(sleep)
        raise SubgraphError(f"Subgraph request failed after {self.retries} attempts")

    async def get_pools_snapshot(self, pool_addresses: List[str], max_buckets: int = 20,
                                 max_loans: int = 1000, max_auctions: int = 1000,
                                 min_bucket_deposit: str = "0") -> List[dict]:
        if not pool_addresses:
            return []
        variables = {
            "poolIds": [a.lower() for a in pool_addresses],
            "maxBuckets": max_buckets,
            "maxLoans": max_loans,
            "maxAuctions": max_auctions,
            "minDeposit": min_bucket_deposit,
        }
        data = await self.query(POOLS_SNAPSHOT_QUERY, variables)
        return data.get("pools", [])
