"""
═══════════════════════════════════════════════════════════════════════════════
AJNA KEEPER — kick, take, settle and collect across the configured pools
═══════════════════════════════════════════════════════════════════════════════
One cycle per `delay_between_runs`, every pool concurrently:
  1. Poke updateInterest() if the pool's inflator is a week old
  2. Snapshot: subgraph (shared 5s cache) + on-chain prices and loans
  3. Kicks → takes / arb-takes → settlements
  4. Withdraw claimable bond, redeem LP from arb-takes
After all pools: apply reward actions to the tokens collected this cycle.

All writes from all pools share one NonceSequencer (one signer, one queue).
═══════════════════════════════════════════════════════════════════════════════
"""

import asyncio
import logging
import time
import warnings
from typing import Dict, List, Optional

warnings.filterwarnings("ignore", category=ResourceWarning, module="aiohttp")

import db_manager
from ajna_pool import AjnaPool
from dex_adapters import build_adapters
from erc20 import ERC20Client
from keeper_config import EnvSettings, KeeperConfig, PoolConfig, load_env, load_keeper_config
from keeper_errors import ConfigError, KeeperError
from kick_engine import KickEngine
from liquidity_router import LiquidityRouter
from market_prices import AlchemyPriceClient, CoinGeckoClient, extract_alchemy_key
from nonce_sequencer import NonceSequencer
from notifier import TelegramNotifier
from pool_interest import update_interest_if_stale
from pool_models import PoolSnapshot
from price_resolver import PriceResolver
from reward_collector import LpCollector, RewardActionTracker, collect_bond
from rpc_manager import AsyncRPCManager
from snapshot_cache import PoolSnapshotCache
from subgraph import SubgraphClient, parse_auction, parse_bucket
from take_engine import TakeSettlementEngine

LOG_FORMAT = "%(asctime)s | %(levelname)-7s | %(message)s"
LOG_FILE = "keeper.log"

logger = logging.getLogger("AjnaKeeper")


def setup_logging(level: str = "INFO", log_file: str = LOG_FILE):
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        handlers=[logging.FileHandler(log_file), logging.StreamHandler()],
    )


async def build_snapshot(pool: AjnaPool, raw: Optional[dict]) -> PoolSnapshot:
    """
    Combine the subgraph view with fresh on-chain reads.

    The subgraph lists borrowers and auctions; prices, debt, TP and NP come
    from PoolInfoUtils so kick decisions are made on current chain state.
    """
    prices = await pool.get_prices()
    if raw is None:
        logger.warning(f"⚠️ Pool {pool.name} not found in subgraph, using on-chain prices only")
        return PoolSnapshot(pool_address=pool.address, prices=prices, fetched_at=time.time())

    borrowers = [loan["borrower"] for loan in raw.get("loans") or []]
    loans = await pool.get_loans(borrowers) if borrowers else {}
    return PoolSnapshot(
        pool_address=pool.address,
        prices=prices,
        loans=[loan for loan in loans.values() if loan.debt > 0],
        auctions=[parse_auction(a) for a in raw.get("liquidationAuctions") or []],
        buckets=[parse_bucket(b) for b in raw.get("buckets") or []],
        fetched_at=time.time(),
    )


class AjnaKeeper:
    def __init__(self, env: EnvSettings, config: KeeperConfig):
        self.env = env
        self.config = config
        self.dry_run = config.dry_run

        self.rpc = AsyncRPCManager(env.primary_rpc, env.fallback_rpcs)
        self.notifier = TelegramNotifier(env.telegram_bot_token, env.telegram_chat_id)
        self.subgraph = SubgraphClient(env.subgraph_url)
        self.cache = PoolSnapshotCache(self.subgraph)
        self.coingecko = CoinGeckoClient(env.coingecko_api_key)
        self.alchemy = AlchemyPriceClient(
            env.alchemy_api_key or extract_alchemy_key(env.primary_rpc), config.chain_id
        )
        self.price_resolver = PriceResolver(self.coingecko, self.alchemy, config.chain_id)

        self.account = None
        self.sequencer: Optional[NonceSequencer] = None
        self.erc20: Optional[ERC20Client] = None
        self.router: Optional[LiquidityRouter] = None
        self.tracker: Optional[RewardActionTracker] = None
        self.lp_collector: Optional[LpCollector] = None
        self.kick_engine: Optional[KickEngine] = None
        self.take_engine: Optional[TakeSettlementEngine] = None
        self.pools: Dict[str, AjnaPool] = {}

    @property
    def w3(self):
        return self.rpc.w3

    # ════════════════════════════════════════════════════════════════════════
    # SETUP
    # ════════════════════════════════════════════════════════════════════════

    async def init_components(self):
        """(Re)bind everything that holds a web3 instance. Safe after an RPC rotation."""
        if not self.env.private_key:
            raise ConfigError("PRIVATE_KEY not found in .env")
        self.account = self.w3.eth.account.from_key(self.env.private_key)
        logger.info(f"🔑 Loaded Wallet: {self.account.address}")

        self.sequencer = NonceSequencer(self.w3, chain_id=self.config.chain_id, dry_run=self.dry_run)
        self.erc20 = ERC20Client(self.w3, self.sequencer)
        self.router = LiquidityRouter(build_adapters(self.w3, self.config, self.env.oneinch_api_key))

        # reward and settlement state survives a rebind
        previous_tracker, previous_lp, previous_take = self.tracker, self.lp_collector, self.take_engine
        self.tracker = RewardActionTracker(self.sequencer, self.account, self.erc20, self.router, self.dry_run)
        self.lp_collector = LpCollector(
            self.sequencer, self.account, self.tracker, self.dry_run, default_actions=self.config.reward_actions
        )
        if previous_tracker is not None:
            self.tracker.entries = previous_tracker.entries
        if previous_lp is not None:
            self.lp_collector.buckets = previous_lp.buckets

        self.kick_engine = KickEngine(
            self.sequencer, self.account, self.price_resolver, self.erc20,
            dry_run=self.dry_run,
            delay_between_actions=self.config.delay_between_actions,
            recorder=self.record_action,
            token_addresses=self.config.token_addresses,
        )
        self.take_engine = TakeSettlementEngine(
            self.sequencer, self.account, self.router, self.erc20,
            taker_address=self.config.taker_address,
            dry_run=self.dry_run,
            delay_between_actions=self.config.delay_between_actions,
            recorder=self.record_action,
            on_bucket_take=self.lp_collector.track_bucket,
        )
        if previous_take is not None:
            self.take_engine._settled = previous_take._settled

        self.pools = {}
        for pool_config in self.config.pools:
            pool = AjnaPool(self.w3, pool_config.address, self.config.pool_info_utils, pool_config.name)
            await pool.load()
            self.pools[pool_config.name] = pool
        logger.info(f"🏊 Loaded {len(self.pools)} Ajna pool(s)")

    # ════════════════════════════════════════════════════════════════════════
    # REPORTING
    # ════════════════════════════════════════════════════════════════════════

    async def log_system(self, msg: str, level: str = "info"):
        if level == "error":
            logger.error(msg)
        elif level == "warning":
            logger.warning(msg)
        else:
            logger.info(msg)

        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, db_manager.log_event, level, msg)

        if level in ("success", "error"):
            await self.notifier.send(msg, is_error=(level == "error"))

    async def record_action(self, kind: str, pool_name: str, borrower: str, tx_hash, status: str, detail: str = ""):
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(
            None, db_manager.record_action, kind, pool_name, borrower, tx_hash, status, detail
        )
        if status == "confirmed":
            await self.notifier.send(f"✅ <b>{kind}</b> | pool {pool_name} | borrower <code>{borrower}</code>")

    # ════════════════════════════════════════════════════════════════════════
    # CYCLE
    # ════════════════════════════════════════════════════════════════════════

    async def run_pool(self, pool_config: PoolConfig, raw_snapshots: Dict[str, dict]):
        pool = self.pools[pool_config.name]
        name = pool_config.name

        await update_interest_if_stale(pool, self.sequencer, self.account, name, dry_run=self.dry_run)

        snapshot = await build_snapshot(pool, raw_snapshots.get(pool.address.lower()))
        logger.debug(
            f"Pool {name}: {len(snapshot.loans)} loans, {len(snapshot.auctions)} auctions, "
            f"LUP {snapshot.prices.lup_decimal}, HPB {snapshot.prices.hpb_decimal}"
        )

        if pool_config.kick is not None:
            kicked = await self.kick_engine.handle_kicks(pool, snapshot, pool_config)
            if kicked:
                await self.log_system(f"🦶 Kicked {kicked} loan(s) in pool {name}", "success")

        if pool_config.take is not None:
            await self.take_engine.handle_takes(pool, snapshot, pool_config)

        if pool_config.settlement is not None:
            await self.take_engine.handle_settlements(pool, snapshot, pool_config)

        if pool_config.collect_bond:
            receipt = await collect_bond(pool, self.sequencer, self.account, name, dry_run=self.dry_run)
            if receipt is not None:
                await self.record_action("withdraw_bonds", name, self.account.address, receipt["transactionHash"], "confirmed")

        if pool_config.collect_lp_reward is not None:
            await self.lp_collector.collect(pool, pool_config.collect_lp_reward, name)

    async def _run_pool_safely(self, pool_config: PoolConfig, raw_snapshots: Dict[str, dict]):
        try:
            await self.run_pool(pool_config, raw_snapshots)
        except KeeperError as e:
            await self.log_system(f"❌ Pool {pool_config.name} cycle failed: {e}", "error")
        except Exception as e:
            if await self.rpc.handle_error(e):
                raise
            await self.log_system(f"💥 Unexpected error in pool {pool_config.name}: {type(e).__name__}: {e}", "error")

    async def run_cycle(self):
        addresses: List[str] = [pool.address for pool in self.pools.values()]
        try:
            raw_snapshots = await self.cache.get(addresses)
        except KeeperError as e:
            await self.log_system(f"⚠️ Subgraph unavailable, skipping cycle: {e}", "warning")
            return

        results = await asyncio.gather(
            *(self._run_pool_safely(p, raw_snapshots) for p in self.config.pools), return_exceptions=True
        )
        for result in results:
            if isinstance(result, Exception):
                raise result
        await self.tracker.handle_all_tokens()

    async def run_forever(self):
        await self.rpc.connect()
        await self.init_components()
        mode = "DRY RUN" if self.dry_run else "LIVE"
        await self.notifier.send(f"🟢 <b>Ajna Keeper Started ({mode})</b>")
        logger.info(f"🚀 Ajna Keeper started in {mode} mode. {len(self.pools)} pool(s), cycle every {self.config.delay_between_runs}s")
        counts = await asyncio.get_running_loop().run_in_executor(None, db_manager.get_action_counts)
        if counts:
            logger.info(f"📊 Action history: {history_summary(counts)}")

        while True:
            started = time.time()
            try:
                await self.run_cycle()
            except Exception as e:
                # run_pool re-raises only errors the RPC manager already handled by rotating
                logger.warning(f"🔄 RPC endpoint changed after {type(e).__name__}, rebinding components")
                try:
                    await self.init_components()
                except Exception as rebind_error:
                    await self.log_system(f"💥 Rebind failed: {rebind_error}", "error")
            logger.debug(f"Cycle finished in {time.time() - started:.1f}s")
            await asyncio.sleep(self.config.delay_between_runs)

    async def close(self):
        await self.subgraph.close()
        await self.rpc.close()


def history_summary(counts: Dict[str, Dict[str, int]]) -> str:
    return ", ".join(
        f"{kind} {c['confirmed']} confirmed / {c['failed']} failed" for kind, c in sorted(counts.items())
    )


async def main():
    env = load_env()
    config = await load_keeper_config(env.config_path)
    setup_logging(config.log_level)
    db_manager.DB_FILE = env.db_file
    db_manager.init_db()

    keeper = AjnaKeeper(env, config)
    try:
        await keeper.run_forever()
    finally:
        await keeper.close()


def run():
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("🛑 Ajna Keeper Stopped.")
    except ConfigError as e:
        print(f"❌ Config Error: {e}")


if __name__ == "__main__":
    run()
