"""
Reward collection: withdraw claimable kicker bonds and dispose of reward
tokens (transfer them out, or swap them through the LiquidityRouter).
"""

import logging
from typing import Dict, Optional

from keeper_errors import KeeperError
from liquidity_router import LiquiditySource, QuoteHint
from pool_models import RewardEntry
from wad_math import from_wad, wad_to_decimal

logger = logging.getLogger("RewardCollector")

MAX_UINT256 = 2**256 - 1


async def collect_bond(pool, sequencer, account, pool_name: str, dry_run: bool = False):
    """Withdraw claimable bond once none of it is still locked in a live auction."""
    info = await pool.kicker_info(account.address)
    if info.claimable == 0 or info.locked > 0:
        logger.debug(
            f"No bond to collect. pool: {pool_name}, claimable: {wad_to_decimal(info.claimable)}, "
            f"locked: {wad_to_decimal(info.locked)}"
        )
        return None

    if dry_run:
        logger.info(f"DryRun - would withdraw bond. pool: {pool_name}, amount: {wad_to_decimal(info.claimable)}")
        return None

    logger.info(f"💰 Withdrawing bond. pool: {pool_name}, amount: {wad_to_decimal(info.claimable)}")
    receipt = await sequencer.submit_call(
        account, pool.withdraw_bonds_tx(account.address, MAX_UINT256), label=f"withdrawBonds {pool_name}"
    )
    logger.info(f"✅ Bond withdrawn. pool: {pool_name}")
    return receipt


class RewardActionTracker:
    """Accumulates reward tokens (WAD amounts) and applies their configured action."""

    def __init__(self, sequencer, account, erc20, router=None, dry_run: bool = False):
        self.sequencer = sequencer
        self.account = account
        self.erc20 = erc20
        self.router = router
        self.dry_run = dry_run
        self.entries: Dict[str, RewardEntry] = {}

    def add_token(self, action, token: str, amount_wad: int):
        key = token.lower()
        entry = self.entries.get(key)
        if entry is None:
            self.entries[key] = RewardEntry(token=token, accumulated_amount=amount_wad, action=action)
        else:
            entry.accumulated_amount += amount_wad
            entry.action = action

    async def handle_all_tokens(self):
        for key, entry in list(self.entries.items()):
            if entry.accumulated_amount <= 0:
                continue
            try:
                await self.handle_token(entry)
            except Exception as e:
                logger.error(f"❌ Reward action '{entry.action.action}' failed for token {entry.token}: {e}")
                continue
            if not self.dry_run:
                del self.entries[key]

    async def handle_token(self, entry: RewardEntry):
        action = entry.action
        decimals = await self.erc20.decimals(entry.token)
        # tracked amounts are estimates; never act on more than we hold
        balance = await self.erc20.balance_of(entry.token, self.account.address)
        amount = min(from_wad(entry.accumulated_amount, decimals), balance)
        if amount == 0:
            return

        if action.action == "transfer":
            if self.dry_run:
                logger.info(f"DryRun - would transfer {amount} of {entry.token} to {action.to}")
                return
            logger.info(f"📤 Transferring reward {entry.token} -> {action.to} | amount {amount}")
            await self.erc20.transfer(self.account, entry.token, action.to, amount)
            return

        await self.exchange(entry, action, amount)

    async def exchange(self, entry: RewardEntry, action, amount: int):
        if self.router is None:
            raise KeeperError("No liquidity router configured for reward exchange")
        source = LiquiditySource.from_tag(action.liquidity_source)
        hint: Optional[QuoteHint] = QuoteHint(fee_tier=action.fee_tier) if action.fee_tier else None

        if self.dry_run:
            logger.info(f"DryRun - would swap {amount} of {entry.token} to {action.target_token} via {source.name}")
            return

        outcome, instruction = await self.router.prepare_swap(
            source, amount, entry.token, action.target_token, action.slippage_bps, self.account.address, hint
        )
        if instruction is None:
            raise KeeperError(
                f"No {source.name} route for {entry.token} -> {action.target_token}: "
                f"{outcome.failure.value} {outcome.detail}"
            )

        await self.erc20.approve(self.account, entry.token, instruction.router, amount)
        try:
            logger.info(
                f"🔁 Swapping reward {entry.token} -> {action.target_token} via {source.name} | "
                f"in {amount} | min out {instruction.min_amount_out}"
            )
            await self.sequencer.submit_raw(
                self.account, instruction.router, instruction.data,
                label=f"reward swap {entry.token} via {source.name}", value=instruction.value,
            )
        finally:
            await self.erc20.approve(self.account, entry.token, instruction.router, 0)


class LpCollector:
    """
    Redeems LP the keeper earned from arb-takes (bucketTake credits the taker
    with LP in the bucket it took into) and hands the redeemed tokens to the
    RewardActionTracker.
    """

    def __init__(self, sequencer, account, tracker: RewardActionTracker, dry_run: bool = False,
                 default_actions: Optional[Dict[str, object]] = None):
        self.sequencer = sequencer
        self.account = account
        self.tracker = tracker
        self.dry_run = dry_run
        self.default_actions = {k.lower(): v for k, v in (default_actions or {}).items()}
        self.buckets: Dict[str, set] = {}

    def track_bucket(self, pool_address: str, index: int):
        self.buckets.setdefault(pool_address.lower(), set()).add(int(index))

    async def collect(self, pool, settings, pool_name: str):
        for index in sorted(self.buckets.get(pool.address.lower(), set())):
            try:
                await self._collect_bucket(pool, index, settings, pool_name)
            except KeeperError as e:
                logger.error(f"❌ LP redemption failed. pool: {pool_name}, bucket: {index}: {e}")

    async def _collect_bucket(self, pool, index: int, settings, pool_name: str):
        lp = await pool.lender_lp(index, self.account.address)
        if lp == 0:
            self.buckets[pool.address.lower()].discard(index)
            return

        order = ("quote", "collateral") if settings.redeem_first == "quote" else ("collateral", "quote")
        for kind in order:
            lp = await pool.lender_lp(index, self.account.address)
            if lp == 0:
                break
            if kind == "quote":
                amount = await pool.lp_to_quote_tokens(lp, index)
                minimum, token = settings.min_amount_quote, pool.quote_address
                action, tx_func = settings.reward_action_quote, pool.remove_quote_tx(MAX_UINT256, index)
            else:
                amount = await pool.lp_to_collateral(lp, index)
                minimum, token = settings.min_amount_collateral, pool.collateral_address
                action, tx_func = settings.reward_action_collateral, pool.remove_collateral_tx(MAX_UINT256, index)

            if amount == 0 or wad_to_decimal(amount) < minimum:
                continue
            if self.dry_run:
                logger.info(f"DryRun - would redeem {wad_to_decimal(amount)} {kind} from bucket {index}. pool: {pool_name}")
                continue

            logger.info(f"🎁 Redeeming LP for {kind}. pool: {pool_name}, bucket: {index}, amount: {wad_to_decimal(amount)}")
            await self.sequencer.submit_call(self.account, tx_func, label=f"redeem {kind} from bucket {index} in {pool_name}")
            action = action or self.default_actions.get(token.lower())
            if action is not None:
                self.tracker.add_token(action, token, amount)
