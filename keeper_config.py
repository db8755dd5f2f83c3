"""
Keeper configuration.

Secrets and endpoints come from the environment (.env via python-dotenv); the
pool list and strategy knobs come from a JSON file loaded once at startup
into frozen dataclasses.
"""

import json
import os
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Dict, List, Optional, Tuple

import aiofiles
from dotenv import load_dotenv

from keeper_errors import ConfigError

PRICE_SOURCES = ("coingecko", "alchemy", "fixed", "pool")
POOL_REFERENCES = ("lup", "hpb")
LIQUIDITY_SOURCES = ("oneinch", "uniswapv3", "sushiswap", "aerodrome")
REWARD_ACTIONS = ("transfer", "exchange")
POOL_TYPES = ("stable", "volatile")

DEFAULT_DELAY_BETWEEN_RUNS = 15
DEFAULT_DELAY_BETWEEN_ACTIONS = 1
DEFAULT_SLIPPAGE_BPS = 50


# --- 1. ENVIRONMENT ---

@dataclass(frozen=True)
class EnvSettings:
    private_key: str
    primary_rpc: str
    fallback_rpcs: List[str]
    subgraph_url: str
    coingecko_api_key: str = ""
    alchemy_api_key: str = ""
    oneinch_api_key: str = ""
    telegram_bot_token: str = ""
    telegram_chat_id: str = ""
    config_path: str = "keeper-config.json"
    db_file: str = "keeper_data.db"


def load_env() -> EnvSettings:
    load_dotenv()
    primary_rpc = os.getenv("PRIMARY_RPC") or os.getenv("RPC_URL", "")
    if not primary_rpc:
        raise ConfigError("PRIMARY_RPC not found in .env")
    return EnvSettings(
        private_key=os.getenv("PRIVATE_KEY", ""),
        primary_rpc=primary_rpc,
        fallback_rpcs=[r.strip() for r in os.getenv("FALLBACK_RPCS", "").split(",") if r.strip()],
        subgraph_url=os.getenv("SUBGRAPH_URL", ""),
        coingecko_api_key=os.getenv("COINGECKO_API_KEY", ""),
        alchemy_api_key=os.getenv("ALCHEMY_API_KEY", ""),
        oneinch_api_key=os.getenv("ONEINCH_API_KEY", ""),
        telegram_bot_token=os.getenv("TELEGRAM_BOT_TOKEN", ""),
        telegram_chat_id=os.getenv("TELEGRAM_CHAT_ID", ""),
        config_path=os.getenv("KEEPER_CONFIG", "keeper-config.json"),
        db_file=os.getenv("KEEPER_DB_FILE", "keeper_data.db"),
    )


# --- 2. POOL SETTINGS ---

@dataclass(frozen=True)
class PriceSpec:
    source: str
    query: Optional[str] = None
    quote_id: Optional[str] = None
    collateral_id: Optional[str] = None
    value: Optional[Decimal] = None
    reference: Optional[str] = None
    invert: bool = False

    @property
    def is_pair(self) -> bool:
        return self.quote_id is not None and self.collateral_id is not None


@dataclass(frozen=True)
class KickSettings:
    min_debt: Decimal
    price_factor: Decimal


@dataclass(frozen=True)
class TakeSettings:
    min_collateral: Decimal
    hpb_price_factor: Optional[Decimal] = None
    liquidity_source: Optional[str] = None
    market_price_factor: Optional[Decimal] = None
    slippage_bps: int = DEFAULT_SLIPPAGE_BPS
    fee_tier: Optional[int] = None
    pool_type: Optional[str] = None


@dataclass(frozen=True)
class SettlementSettings:
    enabled: bool = True
    min_auction_age: int = 18000
    max_bucket_depth: int = 50
    max_iterations: int = 10
    check_bot_incentive: bool = True


@dataclass(frozen=True)
class RewardActionSpec:
    action: str
    to: Optional[str] = None
    target_token: Optional[str] = None
    liquidity_source: Optional[str] = None
    slippage_bps: int = DEFAULT_SLIPPAGE_BPS
    fee_tier: Optional[int] = None


@dataclass(frozen=True)
class CollectLpRewardSettings:
    redeem_first: str = "quote"
    min_amount_quote: Decimal = Decimal(0)
    min_amount_collateral: Decimal = Decimal(0)
    reward_action_quote: Optional[RewardActionSpec] = None
    reward_action_collateral: Optional[RewardActionSpec] = None


@dataclass(frozen=True)
class PoolConfig:
    name: str
    address: str
    price: PriceSpec
    kick: Optional[KickSettings] = None
    take: Optional[TakeSettings] = None
    settlement: Optional[SettlementSettings] = None
    collect_bond: bool = False
    collect_lp_reward: Optional[CollectLpRewardSettings] = None


# --- 3. DEX SETTINGS ---

@dataclass(frozen=True)
class V3RouterSettings:
    """Concentrated-liquidity deployment (Uniswap V3 or SushiSwap V3)."""
    router_address: str
    quoter_address: str
    factory_address: str
    default_fee_tier: int = 3000
    fee_tiers: Tuple[int, ...] = (100, 500, 3000, 10000)


@dataclass(frozen=True)
class AerodromeSettings:
    router_address: str
    factory_address: str
    default_pool_type: Optional[str] = None


@dataclass(frozen=True)
class OneInchSettings:
    router_address: str
    api_url: str = "https://api.1inch.dev/swap/v6.0"
    min_delay_between_calls: float = 1.0


@dataclass(frozen=True)
class KeeperConfig:
    chain_id: int
    pool_info_utils: str
    pools: List[PoolConfig]
    dry_run: bool = False
    log_level: str = "INFO"
    delay_between_runs: float = DEFAULT_DELAY_BETWEEN_RUNS
    delay_between_actions: float = DEFAULT_DELAY_BETWEEN_ACTIONS
    taker_address: Optional[str] = None
    token_addresses: Dict[str, str] = field(default_factory=dict)
    uniswap_v3: Optional[V3RouterSettings] = None
    sushiswap: Optional[V3RouterSettings] = None
    aerodrome: Optional[AerodromeSettings] = None
    oneinch: Optional[OneInchSettings] = None
    reward_actions: Dict[str, RewardActionSpec] = field(default_factory=dict)


# --- 4. PARSING ---

def _decimal(raw, key: str, where: str, default=None) -> Optional[Decimal]:
    if raw is None:
        return default
    try:
        value = Decimal(str(raw))
    except (InvalidOperation, ValueError):
        raise ConfigError(f"{where}: '{key}' must be a number, got {raw!r}")
    if value < 0:
        raise ConfigError(f"{where}: '{key}' must not be negative, got {value}")
    return value


def _slippage_bps(raw, where: str) -> int:
    value = _decimal(raw, "slippage_bps", where, Decimal(DEFAULT_SLIPPAGE_BPS))
    if value != value.to_integral_value() or value > 10_000:
        raise ConfigError(f"{where}: 'slippage_bps' must be a whole number of basis points in [0, 10000], got {raw!r}")
    return int(value)


def _required(raw: dict, key: str, where: str):
    if key not in raw or raw[key] is None:
        raise ConfigError(f"{where}: missing required field '{key}'")
    return raw[key]


def _choice(value: Optional[str], options, key: str, where: str) -> Optional[str]:
    if value is None:
        return None
    value = str(value).lower()
    if value not in options:
        raise ConfigError(f"{where}: '{key}' must be one of {', '.join(options)}, got {value!r}")
    return value


def parse_price_spec(raw: dict, where: str) -> PriceSpec:
    source = _choice(_required(raw, "source", where), PRICE_SOURCES, "source", where)
    spec = PriceSpec(
        source=source,
        query=raw.get("query"),
        quote_id=raw.get("quote_id"),
        collateral_id=raw.get("collateral_id"),
        value=_decimal(raw.get("value"), "value", where),
        reference=_choice(raw.get("reference"), POOL_REFERENCES, "reference", where),
        invert=bool(raw.get("invert", False)),
    )
    if source in ("coingecko", "alchemy") and not spec.query and not spec.is_pair:
        raise ConfigError(f"{where}: {source} price needs 'query' or 'quote_id' + 'collateral_id'")
    if source == "fixed" and spec.value is None:
        raise ConfigError(f"{where}: fixed price needs 'value'")
    if source == "pool" and spec.reference is None:
        raise ConfigError(f"{where}: pool price needs 'reference' (lup or hpb)")
    return spec


def parse_reward_action(raw: Optional[dict], where: str) -> Optional[RewardActionSpec]:
    if raw is None:
        return None
    action = _choice(_required(raw, "action", where), REWARD_ACTIONS, "action", where)
    spec = RewardActionSpec(
        action=action,
        to=raw.get("to"),
        target_token=raw.get("target_token"),
        liquidity_source=_choice(raw.get("liquidity_source"), LIQUIDITY_SOURCES, "liquidity_source", where),
        slippage_bps=_slippage_bps(raw.get("slippage_bps"), where),
        fee_tier=raw.get("fee_tier"),
    )
    if action == "transfer" and not spec.to:
        raise ConfigError(f"{where}: transfer reward action needs 'to'")
    if action == "exchange" and (not spec.target_token or not spec.liquidity_source):
        raise ConfigError(f"{where}: exchange reward action needs 'target_token' and 'liquidity_source'")
    return spec


def parse_pool_config(raw: dict) -> PoolConfig:
    name = raw.get("name") or raw.get("address") or "<unnamed pool>"
    where = f"pool '{name}'"
    address = _required(raw, "address", where)

    kick = None
    if raw.get("kick") is not None:
        k = raw["kick"]
        kick = KickSettings(
            min_debt=_decimal(_required(k, "min_debt", where), "min_debt", where),
            price_factor=_decimal(_required(k, "price_factor", where), "price_factor", where),
        )

    take = None
    if raw.get("take") is not None:
        t = raw["take"]
        take = TakeSettings(
            min_collateral=_decimal(t.get("min_collateral"), "min_collateral", where, Decimal(0)),
            hpb_price_factor=_decimal(t.get("hpb_price_factor"), "hpb_price_factor", where),
            liquidity_source=_choice(t.get("liquidity_source"), LIQUIDITY_SOURCES, "liquidity_source", where),
            market_price_factor=_decimal(t.get("market_price_factor"), "market_price_factor", where),
            slippage_bps=_slippage_bps(t.get("slippage_bps"), where),
            fee_tier=t.get("fee_tier"),
            pool_type=_choice(t.get("pool_type"), POOL_TYPES, "pool_type", where),
        )
        if (take.liquidity_source is None) != (take.market_price_factor is None):
            raise ConfigError(f"{where}: 'liquidity_source' and 'market_price_factor' must be set together")

    settlement = None
    if raw.get("settlement") is not None:
        s = raw["settlement"]
        settlement = SettlementSettings(
            enabled=bool(s.get("enabled", True)),
            min_auction_age=int(s.get("min_auction_age", 18000)),
            max_bucket_depth=int(s.get("max_bucket_depth", 50)),
            max_iterations=int(s.get("max_iterations", 10)),
            check_bot_incentive=bool(s.get("check_bot_incentive", True)),
        )
        if settlement.max_iterations < 1:
            raise ConfigError(f"{where}: 'max_iterations' must be at least 1")

    lp_reward = None
    if raw.get("collect_lp_reward") is not None:
        lp = raw["collect_lp_reward"]
        lp_reward = CollectLpRewardSettings(
            redeem_first=_choice(lp.get("redeem_first", "quote"), ("quote", "collateral"), "redeem_first", where),
            min_amount_quote=_decimal(lp.get("min_amount_quote"), "min_amount_quote", where, Decimal(0)),
            min_amount_collateral=_decimal(lp.get("min_amount_collateral"), "min_amount_collateral", where, Decimal(0)),
            reward_action_quote=parse_reward_action(lp.get("reward_action_quote"), where),
            reward_action_collateral=parse_reward_action(lp.get("reward_action_collateral"), where),
        )

    return PoolConfig(
        name=name,
        address=address,
        price=parse_price_spec(_required(raw, "price", where), where),
        kick=kick,
        take=take,
        settlement=settlement,
        collect_bond=bool(raw.get("collect_bond", False)),
        collect_lp_reward=lp_reward,
    )


def _v3_settings(raw: Optional[dict], where: str) -> Optional[V3RouterSettings]:
    if raw is None:
        return None
    return V3RouterSettings(
        router_address=_required(raw, "router_address", where),
        quoter_address=_required(raw, "quoter_address", where),
        factory_address=_required(raw, "factory_address", where),
        default_fee_tier=int(raw.get("default_fee_tier", 3000)),
        fee_tiers=tuple(raw.get("fee_tiers", (100, 500, 3000, 10000))),
    )


def parse_keeper_config(raw: dict) -> KeeperConfig:
    where = "keeper config"
    pools = [parse_pool_config(p) for p in raw.get("pools", [])]
    if not pools:
        raise ConfigError(f"{where}: 'pools' is empty")

    aerodrome = None
    if raw.get("aerodrome") is not None:
        a = raw["aerodrome"]
        aerodrome = AerodromeSettings(
            router_address=_required(a, "router_address", "aerodrome"),
            factory_address=_required(a, "factory_address", "aerodrome"),
            default_pool_type=_choice(a.get("default_pool_type"), POOL_TYPES, "default_pool_type", "aerodrome"),
        )

    oneinch = None
    if raw.get("oneinch") is not None:
        o = raw["oneinch"]
        oneinch = OneInchSettings(
            router_address=_required(o, "router_address", "oneinch"),
            api_url=o.get("api_url", OneInchSettings.api_url),
            min_delay_between_calls=float(o.get("min_delay_between_calls", 1.0)),
        )

    reward_actions = {
        token.lower(): parse_reward_action(spec, f"reward action for {token}")
        for token, spec in (raw.get("reward_actions") or {}).items()
    }

    return KeeperConfig(
        chain_id=int(_required(raw, "chain_id", where)),
        pool_info_utils=_required(raw, "pool_info_utils", where),
        pools=pools,
        dry_run=bool(raw.get("dry_run", False)),
        log_level=str(raw.get("log_level", "INFO")).upper(),
        delay_between_runs=float(raw.get("delay_between_runs", DEFAULT_DELAY_BETWEEN_RUNS)),
        delay_between_actions=float(raw.get("delay_between_actions", DEFAULT_DELAY_BETWEEN_ACTIONS)),
        taker_address=raw.get("taker_address"),
        token_addresses={k: v for k, v in (raw.get("token_addresses") or {}).items()},
        uniswap_v3=_v3_settings(raw.get("uniswap_v3"), "uniswap_v3"),
        sushiswap=_v3_settings(raw.get("sushiswap"), "sushiswap"),
        aerodrome=aerodrome,
        oneinch=oneinch,
        reward_actions=reward_actions,
    )


async def load_keeper_config(path: str) -> KeeperConfig:
    try:
        async with aiofiles.open(path, mode="r") as f:
            raw = json.loads(await f.read())
    except FileNotFoundError:
        raise ConfigError(f"Keeper config not found: {path}")
    except json.JSONDecodeError as e:
        raise ConfigError(f"Keeper config {path} is not valid JSON: {e}")
    return parse_keeper_config(raw)
