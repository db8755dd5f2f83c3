from __future__ import annotations

from fakes import WAD, FakeAccount, FakePool, FakeSequencer, run
from pool_interest import ONE_WEEK_SECONDS, update_interest_if_stale

NOW = 2_000_000


def pool_updated_at(last_update: int) -> FakePool:
    pool = FakePool()
    pool.inflator = (WAD, last_update)
    return pool


def test_fresh_interest_is_left_alone() -> None:
    sequencer = FakeSequencer()

    result = run(update_interest_if_stale(pool_updated_at(NOW - 3600), sequencer, FakeAccount(), "TEST", now=NOW))

    assert result.updated is False
    assert result.staleness == 3600
    assert sequencer.calls == []


def test_week_old_interest_is_updated() -> None:
    sequencer = FakeSequencer()

    result = run(update_interest_if_stale(
        pool_updated_at(NOW - ONE_WEEK_SECONDS), sequencer, FakeAccount(), "TEST", now=NOW
    ))

    assert result.updated is True
    assert sequencer.calls[0][1] == ("updateInterest",)


def test_dry_run_only_reports_staleness() -> None:
    sequencer = FakeSequencer()

    result = run(update_interest_if_stale(
        pool_updated_at(NOW - 2 * ONE_WEEK_SECONDS), sequencer, FakeAccount(), "TEST", dry_run=True, now=NOW
    ))

    assert result.updated is False
    assert result.staleness == 2 * ONE_WEEK_SECONDS
    assert sequencer.calls == []
