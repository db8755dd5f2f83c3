"""
═══════════════════════════════════════════════════════════════════════════════
TAKE & SETTLEMENT ENGINE — close running auctions, settle bad debt
═══════════════════════════════════════════════════════════════════════════════
Per auction, every cycle:
  ACTIVE ──(price <= market * market_price_factor)──► EXTERNAL_TAKE_ELIGIBLE
        └─(price <= HPB * hpb_price_factor)─────────► ARB_TAKE_ELIGIBLE
  Both may hold and both are attempted; whichever lands first wins and the
  other reverts. The revert is logged, not escalated.

  collateral == 0 and debt > 0 and age >= min_auction_age ► SETTLEMENT_PENDING
  settle(borrower, max_bucket_depth) up to max_iterations ► SETTLED
═══════════════════════════════════════════════════════════════════════════════
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Callable, Dict, Optional, Set, Tuple

from eth_abi import encode
from hexbytes import HexBytes
from web3 import Web3

from keeper_errors import KeeperError, TransactionReverted
from liquidity_router import LiquiditySource, PoolVariant, QuoteHint
from pool_models import Auction, PoolSnapshot
from wad_math import from_wad, wad_to_decimal

logger = logging.getLogger("TakeEngine")

# Keeper-taker contract: swaps the taken collateral through `swapRouter` in the same tx
KEEPER_TAKER_ABI = [
    {
        "inputs": [
            {"name": "pool", "type": "address"},
            {"name": "borrowerAddress", "type": "address"},
            {"name": "auctionPrice", "type": "uint256"},
            {"name": "maxAmount", "type": "uint256"},
            {"name": "source", "type": "uint8"},
            {"name": "swapRouter", "type": "address"},
            {"name": "swapDetails", "type": "bytes"},
        ],
        "name": "takeWithAtomicSwap",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    }
]


class AuctionState(Enum):
    ACTIVE = "active"
    EXTERNAL_TAKE_ELIGIBLE = "external_take_eligible"
    ARB_TAKE_ELIGIBLE = "arb_take_eligible"
    SETTLEMENT_PENDING = "settlement_pending"
    SETTLED = "settled"


@dataclass
class TakeDecision:
    borrower: str
    auction_price: Decimal
    market_price: Optional[Decimal] = None
    states: Set[AuctionState] = field(default_factory=lambda: {AuctionState.ACTIVE})


def is_external_take_eligible(auction_price: Decimal, market_price: Optional[Decimal],
                              market_price_factor: Optional[Decimal]) -> bool:
    if market_price is None or market_price_factor is None:
        return False
    return auction_price <= market_price * market_price_factor


def is_arb_take_eligible(auction_price: Decimal, hpb: Decimal, hpb_price_factor: Optional[Decimal]) -> bool:
    if hpb_price_factor is None or hpb <= 0:
        return False
    return auction_price <= hpb * hpb_price_factor


def is_settlement_eligible(auction: Auction, now: float, min_auction_age: int) -> bool:
    return (
        auction.collateral_remaining == 0
        and auction.debt_remaining > 0
        and auction.age(now) >= min_auction_age
    )


class TakeSettlementEngine:
    def __init__(self, sequencer, account, router, erc20, taker_address: Optional[str] = None,
                 dry_run: bool = False, delay_between_actions: float = 1.0, recorder=None,
                 clock: Callable[[], float] = time.time, on_bucket_take=None):
        self.sequencer = sequencer
        self.account = account
        self.router = router
        self.erc20 = erc20
        self.taker_address = Web3.to_checksum_address(taker_address) if taker_address else None
        self.dry_run = dry_run
        self.delay_between_actions = delay_between_actions
        self.recorder = recorder
        self.clock = clock
        self.on_bucket_take = on_bucket_take
        # pool -> {(borrower, kick_time)}; a re-kicked loan is a new auction
        self._settled: Dict[str, Set[Tuple[str, int]]] = {}

    def is_settled(self, pool_address: str, borrower: str, kick_time: int) -> bool:
        return (borrower.lower(), int(kick_time)) in self._settled.get(pool_address.lower(), set())

    def _mark_settled(self, pool_address: str, borrower: str, kick_time: int):
        self._settled.setdefault(pool_address.lower(), set()).add((borrower.lower(), int(kick_time)))

    def _forget_finished(self, pool_address: str, snapshot: PoolSnapshot):
        settled = self._settled.get(pool_address.lower())
        if settled:
            settled &= {(a.borrower.lower(), int(a.kick_time)) for a in snapshot.auctions}

    # ════════════════════════════════════════════════════════════════════════
    # TAKES
    # ════════════════════════════════════════════════════════════════════════

    async def evaluate(self, pool, snapshot: PoolSnapshot, take, status) -> TakeDecision:
        """Classify one live auction against the market and the highest price bucket."""
        decision = TakeDecision(borrower="", auction_price=wad_to_decimal(status.price))

        if take.liquidity_source is not None and self.router is not None:
            source = LiquiditySource.from_tag(take.liquidity_source)
            collateral_decimals, quote_decimals = await asyncio.gather(
                self.erc20.decimals(pool.collateral_address), self.erc20.decimals(pool.quote_address)
            )
            market_price, outcome = await self.router.market_price(
                source,
                from_wad(status.collateral, collateral_decimals),
                pool.collateral_address,
                pool.quote_address,
                collateral_decimals,
                quote_decimals,
                _hint(take),
            )
            if market_price is None:
                logger.info(
                    f"No {source.name} market price for pool {pool.name}, "
                    f"{pool.collateral_address} -> {pool.quote_address}: {outcome.failure.value} {outcome.detail}"
                )
            decision.market_price = market_price
            if is_external_take_eligible(decision.auction_price, market_price, take.market_price_factor):
                decision.states.add(AuctionState.EXTERNAL_TAKE_ELIGIBLE)

        if is_arb_take_eligible(decision.auction_price, snapshot.prices.hpb_decimal, take.hpb_price_factor):
            decision.states.add(AuctionState.ARB_TAKE_ELIGIBLE)
        return decision

    async def handle_takes(self, pool, snapshot: PoolSnapshot, pool_config) -> Dict[str, int]:
        take = pool_config.take
        name = pool_config.name
        results = {"external_take": 0, "arb_take": 0}

        for auction in snapshot.auctions:
            if auction.settled or auction.collateral_remaining == 0:
                continue
            borrower = auction.borrower
            try:
                status = await pool.auction_status(borrower)
                if status.kick_time == 0:
                    continue
                if wad_to_decimal(status.collateral) < take.min_collateral:
                    logger.debug(f"Collateral below min_collateral. pool: {name}, borrower: {borrower}")
                    continue

                decision = await self.evaluate(pool, snapshot, take, status)
                decision.borrower = borrower
                if decision.states == {AuctionState.ACTIVE}:
                    logger.debug(
                        f"Auction not takeable yet. pool: {name}, borrower: {borrower}, "
                        f"price: {decision.auction_price}, market: {decision.market_price}"
                    )
                    continue

                if AuctionState.EXTERNAL_TAKE_ELIGIBLE in decision.states:
                    if await self._attempt(self.external_take(pool, status, take, borrower, name), "take", name, borrower):
                        results["external_take"] += 1
                if AuctionState.ARB_TAKE_ELIGIBLE in decision.states:
                    if await self._attempt(self.arb_take(pool, snapshot, borrower, name), "arb_take", name, borrower):
                        results["arb_take"] += 1
            except Exception as e:
                logger.error(f"❌ Take evaluation failed. pool: {name}, borrower: {borrower}: {e}")
            await asyncio.sleep(self.delay_between_actions)
        return results

    async def _attempt(self, action, kind: str, pool_name: str, borrower: str) -> bool:
        try:
            receipt = await action
        except TransactionReverted as e:
            # the competing take may have landed first
            logger.warning(f"⚠️ {kind} reverted. pool: {pool_name}, borrower: {borrower}: {e}")
            await self._record(kind, pool_name, borrower, None, str(e))
            return False
        except KeeperError as e:
            logger.error(f"❌ {kind} failed. pool: {pool_name}, borrower: {borrower}: {e}")
            await self._record(kind, pool_name, borrower, None, str(e))
            return False
        except Exception as e:
            logger.error(f"❌ {kind} crashed. pool: {pool_name}, borrower: {borrower}: {type(e).__name__}: {e}")
            await self._record(kind, pool_name, borrower, None, f"{type(e).__name__}: {e}")
            return False
        if receipt is not None:
            await self._record(kind, pool_name, borrower, receipt)
        return receipt is not None

    async def external_take(self, pool, status, take, borrower: str, pool_name: str):
        source = LiquiditySource.from_tag(take.liquidity_source)
        if self.taker_address is None:
            raise KeeperError(f"taker_address not configured, cannot take via {source.name}")

        if self.dry_run:
            logger.info(f"DryRun - would take via {source.name}. pool: {pool_name}, borrower: {borrower}")
            return None

        collateral_decimals = await self.erc20.decimals(pool.collateral_address)
        outcome, instruction = await self.router.prepare_swap(
            source,
            from_wad(status.collateral, collateral_decimals),
            pool.collateral_address,
            pool.quote_address,
            take.slippage_bps,
            self.taker_address,
            _hint(take),
        )
        if instruction is None:
            raise KeeperError(f"No swap route via {source.name}: {outcome.failure.value} {outcome.detail}")

        swap_details = HexBytes(encode(
            ["(bytes,uint256,uint256)"],
            [(bytes(instruction.data), instruction.min_amount_out, instruction.deadline)],
        ))
        taker = self.sequencer.w3.eth.contract(address=self.taker_address, abi=KEEPER_TAKER_ABI)
        tx_func = taker.functions.takeWithAtomicSwap(
            pool.address,
            Web3.to_checksum_address(borrower),
            status.price,
            status.collateral,
            source.value,
            instruction.router,
            swap_details,
        )
        logger.info(
            f"💱 External take via {source.name}. pool: {pool_name}, borrower: {borrower}, "
            f"price: {wad_to_decimal(status.price)}, min out: {instruction.min_amount_out}"
        )
        return await self.sequencer.submit_call(self.account, tx_func, label=f"take {borrower} in {pool_name}")

    async def arb_take(self, pool, snapshot: PoolSnapshot, borrower: str, pool_name: str):
        hpb_index = snapshot.prices.hpb_index
        if self.dry_run:
            logger.info(f"DryRun - would arb-take. pool: {pool_name}, borrower: {borrower}, bucket: {hpb_index}")
            return None
        logger.info(f"🪣 Arb-take into bucket {hpb_index}. pool: {pool_name}, borrower: {borrower}")
        receipt = await self.sequencer.submit_call(
            self.account, pool.bucket_take_tx(borrower, hpb_index), label=f"bucketTake {borrower} in {pool_name}"
        )
        # the taker is credited LP in the bucket it took into
        if self.on_bucket_take is not None:
            self.on_bucket_take(pool.address, hpb_index)
        return receipt

    # ════════════════════════════════════════════════════════════════════════
    # SETTLEMENT
    # ════════════════════════════════════════════════════════════════════════

    async def handle_settlements(self, pool, snapshot: PoolSnapshot, pool_config) -> Dict[str, AuctionState]:
        settings = pool_config.settlement
        results = {}
        if settings is None or not settings.enabled:
            return results

        self._forget_finished(pool.address, snapshot)
        now = self.clock()
        for auction in snapshot.auctions:
            if self.is_settled(pool.address, auction.borrower, auction.kick_time):
                continue
            if not is_settlement_eligible(auction, now, settings.min_auction_age):
                continue
            try:
                results[auction.borrower] = await self.settle_auction(
                    pool, auction.borrower, settings, pool_config.name, kick_time=auction.kick_time
                )
            except Exception as e:
                logger.error(f"❌ Settlement failed. pool: {pool_config.name}, borrower: {auction.borrower}: {e}")
        return results

    async def settle_auction(self, pool, borrower: str, settings, pool_name: str,
                             kick_time: Optional[int] = None) -> AuctionState:
        if kick_time is not None and self.is_settled(pool.address, borrower, kick_time):
            return AuctionState.SETTLED

        info = await pool.auction_info(borrower)
        if not info.is_active:
            if kick_time is not None:
                self._mark_settled(pool.address, borrower, kick_time)
            return AuctionState.SETTLED
        if kick_time is None:
            kick_time = info.kick_time

        if settings.check_bot_incentive:
            is_kicker = info.kicker.lower() == self.account.address.lower()
            if not is_kicker or info.bond_size == 0:
                logger.debug(
                    f"Skipping settlement without bot incentive. pool: {pool_name}, borrower: {borrower}, "
                    f"kicker: {info.kicker}, bond: {wad_to_decimal(info.bond_size)}"
                )
                return AuctionState.SETTLEMENT_PENDING

        if self.dry_run:
            logger.info(f"DryRun - would settle. pool: {pool_name}, borrower: {borrower}")
            return AuctionState.SETTLEMENT_PENDING

        for iteration in range(1, settings.max_iterations + 1):
            logger.info(
                f"🧹 Settling auction ({iteration}/{settings.max_iterations}). pool: {pool_name}, "
                f"borrower: {borrower}, depth: {settings.max_bucket_depth}"
            )
            try:
                receipt = await self.sequencer.submit_call(
                    self.account, pool.settle_tx(borrower, settings.max_bucket_depth),
                    label=f"settle {borrower} in {pool_name}",
                )
            except KeeperError as e:
                logger.warning(f"⚠️ Settle call failed. pool: {pool_name}, borrower: {borrower}: {e}")
                await self._record("settle", pool_name, borrower, None, str(e))
                return AuctionState.SETTLEMENT_PENDING
            await self._record("settle", pool_name, borrower, receipt)

            info = await pool.auction_info(borrower)
            if not info.is_active:
                self._mark_settled(pool.address, borrower, kick_time)
                logger.info(f"✅ Auction settled. pool: {pool_name}, borrower: {borrower}")
                return AuctionState.SETTLED

        logger.warning(
            f"⏳ Auction still unsettled after {settings.max_iterations} settle calls. "
            f"pool: {pool_name}, borrower: {borrower}"
        )
        return AuctionState.SETTLEMENT_PENDING

    async def _record(self, kind: str, pool_name: str, borrower: str, receipt, error: Optional[str] = None):
        if self.recorder is None:
            return
        tx_hash = receipt["transactionHash"] if receipt is not None else None
        await self.recorder(kind, pool_name, borrower, tx_hash, "failed" if error else "confirmed", error or "")


def _hint(take) -> Optional[QuoteHint]:
    if take.pool_type is None and take.fee_tier is None:
        return None
    pool_type = PoolVariant(take.pool_type) if take.pool_type else None
    return QuoteHint(pool_type=pool_type, fee_tier=take.fee_tier)
