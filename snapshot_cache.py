import asyncio
import logging
import time
from typing import Callable, Dict, List, Optional, Set, Tuple

logger = logging.getLogger("SnapshotCache")

CACHE_TTL_SECONDS = 5.0


def normalize_addresses(addresses: List[str]) -> List[str]:
    """Lower-case and de-duplicate, keeping first-seen order."""
    seen = set()
    normalized = []
    for address in addresses:
        lower = address.lower()
        if lower not in seen:
            seen.add(lower)
            normalized.append(lower)
    return normalized


class PoolSnapshotCache:
    """
    Short-TTL cache in front of `SubgraphClient.get_pools_snapshot`.

    Every pool cycle asks for the snapshot of its own pool; callers that arrive
    while a fetch is running share that fetch instead of hitting the subgraph
    again.
    """

    def __init__(self, subgraph, ttl: float = CACHE_TTL_SECONDS, clock: Callable[[], float] = time.monotonic,
                 **snapshot_options):
        self.subgraph = subgraph
        self.ttl = ttl
        self.clock = clock
        self.snapshot_options = snapshot_options
        self._entries: Dict[str, Tuple[dict, float]] = {}
        self._in_flight: Optional[asyncio.Task] = None
        self._in_flight_addresses: Set[str] = set()

    def _is_fresh(self, address: str, now: float) -> bool:
        entry = self._entries.get(address)
        return entry is not None and entry[1] >= now

    async def _fetch(self, addresses: List[str]):
        snapshots = await self.subgraph.get_pools_snapshot(addresses, **self.snapshot_options)
        expiry = self.clock() + self.ttl
        for snapshot in snapshots:
            self._entries[snapshot["id"].lower()] = (snapshot, expiry)
        logger.debug(f"Fetched {len(snapshots)} pool snapshot(s) for {len(addresses)} address(es)")

    async def get(self, pool_addresses: List[str]) -> Dict[str, dict]:
        normalized = normalize_addresses(pool_addresses)
        if not normalized:
            return {}

        now = self.clock()
        if any(not self._is_fresh(a, now) for a in normalized):
            if self._in_flight is None:
                self._in_flight_addresses = set(normalized)
                self._in_flight = asyncio.ensure_future(self._fetch(normalized))
                self._in_flight.add_done_callback(self._clear_in_flight)
            covered = self._in_flight_addresses
            # shield: one caller's cancellation must not cancel the shared fetch
            await asyncio.shield(self._in_flight)

            # joined a fetch started for a different address set
            uncovered = [a for a in normalized if a not in covered]
            if uncovered:
                await self.get(uncovered)

        return {a: self._entries[a][0] for a in normalized if a in self._entries}

    async def get_one(self, pool_address: str) -> Optional[dict]:
        snapshots = await self.get([pool_address])
        return snapshots.get(pool_address.lower())

    def _clear_in_flight(self, task: asyncio.Task):
        if self._in_flight is task:
            self._in_flight = None

    def clear(self):
        self._entries.clear()
        self._in_flight = None
