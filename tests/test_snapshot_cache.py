from __future__ import annotations

import asyncio

from fakes import OTHER, POOL, run
from snapshot_cache import PoolSnapshotCache, normalize_addresses

MIXED_CASE_POOL = "0xAbCdEf0123456789aBcDeF0123456789AbCdEf01"


class FakeSubgraph:
    def __init__(self, gate: asyncio.Future | None = None, known=None) -> None:
        self.gate = gate
        self.known = known
        self.calls: list[list[str]] = []

    async def get_pools_snapshot(self, addresses, **options):
        self.calls.append(list(addresses))
        if self.gate is not None:
            await self.gate
        return [{"id": a, "fetch": len(self.calls)} for a in addresses if self.known is None or a in self.known]


def test_normalize_lowercases_and_dedupes_in_order() -> None:
    assert normalize_addresses([MIXED_CASE_POOL, POOL, MIXED_CASE_POOL.lower()]) == [MIXED_CASE_POOL.lower(), POOL]


def test_concurrent_callers_share_one_fetch() -> None:
    async def scenario():
        gate = asyncio.get_running_loop().create_future()
        subgraph = FakeSubgraph(gate)
        cache = PoolSnapshotCache(subgraph)

        waiters = [asyncio.ensure_future(cache.get([MIXED_CASE_POOL])) for _ in range(5)]
        await asyncio.sleep(0)
        gate.set_result(None)
        return subgraph, await asyncio.gather(*waiters)

    subgraph, results = run(scenario())

    assert subgraph.calls == [[MIXED_CASE_POOL.lower()]]
    assert all(result == results[0] for result in results)
    assert results[0][MIXED_CASE_POOL.lower()]["fetch"] == 1


def test_joining_caller_fetches_addresses_outside_the_running_fetch() -> None:
    async def scenario():
        gate = asyncio.get_running_loop().create_future()
        subgraph = FakeSubgraph(gate)
        cache = PoolSnapshotCache(subgraph)

        first = asyncio.ensure_future(cache.get([POOL]))
        await asyncio.sleep(0)
        second = asyncio.ensure_future(cache.get([POOL, OTHER]))
        await asyncio.sleep(0)
        gate.set_result(None)
        return subgraph, await first, await second

    subgraph, first, second = run(scenario())

    assert subgraph.calls == [[POOL], [OTHER]]
    assert set(first) == {POOL}
    assert set(second) == {POOL, OTHER}


def test_entries_expire_after_ttl() -> None:
    now = [100.0]
    subgraph = FakeSubgraph()
    cache = PoolSnapshotCache(subgraph, ttl=5.0, clock=lambda: now[0])

    run(cache.get([POOL]))
    now[0] = 104.0
    run(cache.get([POOL]))
    assert len(subgraph.calls) == 1

    now[0] = 105.5
    snapshot = run(cache.get_one(POOL))
    assert len(subgraph.calls) == 2
    assert snapshot["fetch"] == 2


def test_pool_missing_from_subgraph_is_absent_not_retried_forever() -> None:
    subgraph = FakeSubgraph(known={POOL})
    cache = PoolSnapshotCache(subgraph)

    result = run(cache.get([POOL, OTHER]))

    assert set(result) == {POOL}
    assert subgraph.calls == [[POOL, OTHER]]


def test_clear_forces_refetch() -> None:
    subgraph = FakeSubgraph()
    cache = PoolSnapshotCache(subgraph)

    run(cache.get([POOL]))
    cache.clear()
    run(cache.get([POOL]))

    assert len(subgraph.calls) == 2


def test_empty_request_skips_subgraph() -> None:
    subgraph = FakeSubgraph()

    assert run(PoolSnapshotCache(subgraph).get([])) == {}
    assert subgraph.calls == []
