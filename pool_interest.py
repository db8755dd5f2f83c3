import logging
import time
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger("PoolInterest")

ONE_WEEK_SECONDS = 7 * 24 * 60 * 60


@dataclass(frozen=True)
class InterestUpdateResult:
    updated: bool
    last_update: int
    staleness: int


async def update_interest_if_stale(pool, sequencer, account, pool_name: str, dry_run: bool = False,
                                   now: Optional[float] = None) -> InterestUpdateResult:
    """
    Poke `updateInterest()` when the pool's inflator has not moved for a week.

    Interest only accrues on-chain when someone touches the pool; a stale
    inflator understates debt and hides kickable loans.
    """
    _inflator, last_update = await pool.inflator_info()
    now = int(time.time() if now is None else now)
    staleness = now - last_update
    logger.debug(f"Pool {pool_name}: last interest update {staleness / 86400:.1f} days ago")

    if staleness < ONE_WEEK_SECONDS:
        return InterestUpdateResult(updated=False, last_update=last_update, staleness=staleness)

    if dry_run:
        logger.info(f"DryRun - would update interest for pool {pool_name} (stale for {staleness / 86400:.1f} days)")
        return InterestUpdateResult(updated=False, last_update=last_update, staleness=staleness)

    logger.info(f"⏰ Pool {pool_name}: interest is {staleness / 86400:.1f} days old, updating...")
    await sequencer.submit_call(account, pool.update_interest_tx(), label=f"updateInterest {pool_name}")
    logger.info(f"✅ Interest updated for pool {pool_name}")
    return InterestUpdateResult(updated=True, last_update=last_update, staleness=staleness)
