"""
Point-in-time views of an Ajna pool as the engines consume them.

All monetary fields are WAD integers (18 fractional digits) regardless of the
quote or collateral token's native decimals.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import List, Optional

from wad_math import wad_to_decimal


@dataclass(frozen=True)
class Loan:
    borrower: str
    threshold_price: int
    liquidation_bond: int
    neutral_price: int
    debt: int


@dataclass(frozen=True)
class Auction:
    borrower: str
    collateral_remaining: int
    debt_remaining: int
    neutral_price: int
    kick_time: int
    settled: bool = False

    def age(self, now: float) -> float:
        return now - self.kick_time


@dataclass(frozen=True)
class Bucket:
    index: int
    price: int
    deposit: int


@dataclass(frozen=True)
class PoolPrices:
    lup: int
    lup_index: int
    hpb: int
    hpb_index: int

    @property
    def lup_decimal(self) -> Decimal:
        return wad_to_decimal(self.lup)

    @property
    def hpb_decimal(self) -> Decimal:
        return wad_to_decimal(self.hpb)


@dataclass
class PoolSnapshot:
    pool_address: str
    prices: PoolPrices
    loans: List[Loan] = field(default_factory=list)
    auctions: List[Auction] = field(default_factory=list)
    buckets: List[Bucket] = field(default_factory=list)
    fetched_at: float = 0.0


@dataclass(frozen=True)
class KickCandidate:
    borrower: str
    liquidation_bond: int
    estimated_remaining_bond: int
    limit_price: Decimal


@dataclass(frozen=True)
class AuctionStatus:
    """Live auction view from PoolInfoUtils.auctionStatus."""
    kick_time: int
    collateral: int
    debt_to_cover: int
    is_collateralized: bool
    price: int
    neutral_price: int


@dataclass(frozen=True)
class AuctionInfo:
    """Raw pool.auctionInfo view; kick_time == 0 means no auction."""
    kicker: str
    bond_factor: int
    bond_size: int
    kick_time: int
    reference_price: int
    neutral_price: int

    @property
    def is_active(self) -> bool:
        return self.kick_time != 0


@dataclass(frozen=True)
class KickerInfo:
    claimable: int
    locked: int


@dataclass
class RewardEntry:
    token: str
    accumulated_amount: int
    action: Optional[object] = None
