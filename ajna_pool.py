"""
On-chain view of one Ajna ERC20 pool.

Reads go straight to the pool and to PoolInfoUtils; writes are returned as web3
contract functions so every caller hands them to the NonceSequencer.
"""

import asyncio
import logging
from typing import Dict, List, Optional, Tuple

from web3 import Web3

from pool_models import AuctionInfo, AuctionStatus, KickerInfo, Loan, PoolPrices
from wad_math import WAD, wdiv, wmul

logger = logging.getLogger("AjnaPool")

# Bond factor bounds used by the pool when a loan is kicked (WAD)
MIN_BOND_FACTOR = WAD * 5 // 1000
MAX_BOND_FACTOR = WAD * 3 // 100

# --- ABIs (minimal, only what the keeper calls) ---

AJNA_POOL_ABI = [
    {"inputs": [], "name": "quoteTokenAddress",
     "outputs": [{"name": "", "type": "address"}], "stateMutability": "view", "type": "function"},
    {"inputs": [], "name": "collateralAddress",
     "outputs": [{"name": "", "type": "address"}], "stateMutability": "view", "type": "function"},
    {"inputs": [], "name": "inflatorInfo",
     "outputs": [{"name": "inflator", "type": "uint256"}, {"name": "lastUpdate", "type": "uint256"}],
     "stateMutability": "view", "type": "function"},
    {"inputs": [{"name": "kicker", "type": "address"}], "name": "kickerInfo",
     "outputs": [{"name": "claimable", "type": "uint256"}, {"name": "locked", "type": "uint256"}],
     "stateMutability": "view", "type": "function"},
    {"inputs": [{"name": "borrower", "type": "address"}], "name": "auctionInfo",
     "outputs": [
         {"name": "kicker", "type": "address"},
         {"name": "bondFactor", "type": "uint256"},
         {"name": "bondSize", "type": "uint256"},
         {"name": "kickTime", "type": "uint256"},
         {"name": "referencePrice", "type": "uint256"},
         {"name": "neutralPrice", "type": "uint256"},
         {"name": "debtToCollateral", "type": "uint256"},
         {"name": "head", "type": "address"},
         {"name": "next", "type": "address"},
         {"name": "prev", "type": "address"},
     ],
     "stateMutability": "view", "type": "function"},
    {"inputs": [{"name": "borrower", "type": "address"}, {"name": "npLimitIndex", "type": "uint256"}],
     "name": "kick", "outputs": [], "stateMutability": "nonpayable", "type": "function"},
    {"inputs": [
        {"name": "borrower", "type": "address"},
        {"name": "depositTake", "type": "bool"},
        {"name": "index", "type": "uint256"},
    ], "name": "bucketTake", "outputs": [], "stateMutability": "nonpayable", "type": "function"},
    {"inputs": [{"name": "borrower", "type": "address"}, {"name": "maxDepth", "type": "uint256"}],
     "name": "settle",
     "outputs": [{"name": "collateralSettled", "type": "uint256"}, {"name": "isBorrowerSettled", "type": "bool"}],
     "stateMutability": "nonpayable", "type": "function"},
    {"inputs": [{"name": "recipient", "type": "address"}, {"name": "maxAmount", "type": "uint256"}],
     "name": "withdrawBonds", "outputs": [{"name": "withdrawnAmount", "type": "uint256"}],
     "stateMutability": "nonpayable", "type": "function"},
    {"inputs": [], "name": "updateInterest", "outputs": [], "stateMutability": "nonpayable", "type": "function"},
    {"inputs": [{"name": "index", "type": "uint256"}, {"name": "lender", "type": "address"}],
     "name": "lenderInfo",
     "outputs": [{"name": "lpBalance", "type": "uint256"}, {"name": "depositTime", "type": "uint256"}],
     "stateMutability": "view", "type": "function"},
    {"inputs": [{"name": "maxAmount", "type": "uint256"}, {"name": "index", "type": "uint256"}],
     "name": "removeQuoteToken",
     "outputs": [{"name": "removedAmount", "type": "uint256"}, {"name": "redeemedLP", "type": "uint256"}],
     "stateMutability": "nonpayable", "type": "function"},
    {"inputs": [{"name": "maxAmount", "type": "uint256"}, {"name": "index", "type": "uint256"}],
     "name": "removeCollateral",
     "outputs": [{"name": "removedAmount", "type": "uint256"}, {"name": "redeemedLP", "type": "uint256"}],
     "stateMutability": "nonpayable", "type": "function"},
]

POOL_INFO_UTILS_ABI = [
    {"inputs": [{"name": "ajnaPool", "type": "address"}], "name": "poolPricesInfo",
     "outputs": [
         {"name": "hpb", "type": "uint256"},
         {"name": "hpbIndex", "type": "uint256"},
         {"name": "htp", "type": "uint256"},
         {"name": "htpIndex", "type": "uint256"},
         {"name": "lup", "type": "uint256"},
         {"name": "lupIndex", "type": "uint256"},
     ],
     "stateMutability": "view", "type": "function"},
    {"inputs": [{"name": "ajnaPool", "type": "address"}, {"name": "borrower", "type": "address"}],
     "name": "borrowerInfo",
     "outputs": [
         {"name": "debt", "type": "uint256"},
         {"name": "collateral", "type": "uint256"},
         {"name": "t0Np", "type": "uint256"},
         {"name": "thresholdPrice", "type": "uint256"},
         {"name": "neutralPrice", "type": "uint256"},
     ],
     "stateMutability": "view", "type": "function"},
    {"inputs": [
        {"name": "ajnaPool", "type": "address"},
        {"name": "lp", "type": "uint256"},
        {"name": "index", "type": "uint256"},
    ], "name": "lpToQuoteTokens", "outputs": [{"name": "quoteAmount", "type": "uint256"}],
     "stateMutability": "view", "type": "function"},
    {"inputs": [
        {"name": "ajnaPool", "type": "address"},
        {"name": "lp", "type": "uint256"},
        {"name": "index", "type": "uint256"},
    ], "name": "lpToCollateral", "outputs": [{"name": "collateralAmount", "type": "uint256"}],
     "stateMutability": "view", "type": "function"},
    {"inputs": [{"name": "ajnaPool", "type": "address"}, {"name": "borrower", "type": "address"}],
     "name": "auctionStatus",
     "outputs": [
         {"name": "kickTime", "type": "uint256"},
         {"name": "collateral", "type": "uint256"},
         {"name": "debtToCover", "type": "uint256"},
         {"name": "isCollateralized", "type": "bool"},
         {"name": "price", "type": "uint256"},
         {"name": "neutralPrice", "type": "uint256"},
         {"name": "referencePrice", "type": "uint256"},
         {"name": "debtToCollateral", "type": "uint256"},
         {"name": "bondFactor", "type": "uint256"},
     ],
     "stateMutability": "view", "type": "function"},
]


def estimate_liquidation_bond(threshold_price: int, neutral_price: int, debt: int) -> int:
    """Bond a kicker must post: clamp((NP / TP - 1) / 10, 0.5%, 3%) * debt."""
    if threshold_price <= 0 or debt <= 0:
        return 0
    ratio = wdiv(neutral_price, threshold_price) - WAD
    bond_factor = min(MAX_BOND_FACTOR, max(MIN_BOND_FACTOR, ratio // 10))
    return wmul(bond_factor, debt)


class AjnaPool:
    def __init__(self, w3, address: str, pool_info_utils: str, name: str = ""):
        self.w3 = w3
        self.address = Web3.to_checksum_address(address)
        self.name = name or self.address
        self.contract = w3.eth.contract(address=self.address, abi=AJNA_POOL_ABI)
        self.utils = w3.eth.contract(address=Web3.to_checksum_address(pool_info_utils), abi=POOL_INFO_UTILS_ABI)
        self.quote_address: Optional[str] = None
        self.collateral_address: Optional[str] = None

    async def load(self):
        """Resolve the pool's token addresses once."""
        if self.quote_address is None:
            self.quote_address, self.collateral_address = await asyncio.gather(
                self.contract.functions.quoteTokenAddress().call(),
                self.contract.functions.collateralAddress().call(),
            )
            logger.debug(f"Pool {self.name}: quote {self.quote_address} | collateral {self.collateral_address}")
        return self

    # ════════════════════════════════════════════════════════════════════════
    # READS
    # ════════════════════════════════════════════════════════════════════════

    async def get_prices(self) -> PoolPrices:
        hpb, hpb_index, _htp, _htp_index, lup, lup_index = await self.utils.functions.poolPricesInfo(
            self.address
        ).call()
        return PoolPrices(lup=lup, lup_index=lup_index, hpb=hpb, hpb_index=hpb_index)

    async def get_loan(self, borrower: str) -> Loan:
        debt, _collateral, _t0_np, threshold_price, neutral_price = await self.utils.functions.borrowerInfo(
            self.address, Web3.to_checksum_address(borrower)
        ).call()
        return Loan(
            borrower=borrower,
            threshold_price=threshold_price,
            liquidation_bond=estimate_liquidation_bond(threshold_price, neutral_price, debt),
            neutral_price=neutral_price,
            debt=debt,
        )

    async def get_loans(self, borrowers: List[str]) -> Dict[str, Loan]:
        loans = await asyncio.gather(*(self.get_loan(b) for b in borrowers))
        return {loan.borrower: loan for loan in loans}

    async def auction_status(self, borrower: str) -> AuctionStatus:
        result = await self.utils.functions.auctionStatus(
            self.address, Web3.to_checksum_address(borrower)
        ).call()
        kick_time, collateral, debt_to_cover, is_collateralized, price, neutral_price = result[:6]
        return AuctionStatus(
            kick_time=kick_time,
            collateral=collateral,
            debt_to_cover=debt_to_cover,
            is_collateralized=is_collateralized,
            price=price,
            neutral_price=neutral_price,
        )

    async def auction_info(self, borrower: str) -> AuctionInfo:
        result = await self.contract.functions.auctionInfo(Web3.to_checksum_address(borrower)).call()
        kicker, bond_factor, bond_size, kick_time, reference_price, neutral_price = result[:6]
        return AuctionInfo(
            kicker=kicker,
            bond_factor=bond_factor,
            bond_size=bond_size,
            kick_time=kick_time,
            reference_price=reference_price,
            neutral_price=neutral_price,
        )

    async def kicker_info(self, kicker: str) -> KickerInfo:
        claimable, locked = await self.contract.functions.kickerInfo(Web3.to_checksum_address(kicker)).call()
        return KickerInfo(claimable=claimable, locked=locked)

    async def inflator_info(self) -> Tuple[int, int]:
        inflator, last_update = await self.contract.functions.inflatorInfo().call()
        return inflator, last_update

    async def lender_lp(self, index: int, lender: str) -> int:
        lp_balance, _deposit_time = await self.contract.functions.lenderInfo(
            int(index), Web3.to_checksum_address(lender)
        ).call()
        return lp_balance

    async def lp_to_quote_tokens(self, lp: int, index: int) -> int:
        return await self.utils.functions.lpToQuoteTokens(self.address, int(lp), int(index)).call()

    async def lp_to_collateral(self, lp: int, index: int) -> int:
        return await self.utils.functions.lpToCollateral(self.address, int(lp), int(index)).call()

    # ════════════════════════════════════════════════════════════════════════
    # WRITES (contract functions, submitted by the caller)
    # ════════════════════════════════════════════════════════════════════════

    def kick_tx(self, borrower: str, limit_index: int):
        return self.contract.functions.kick(Web3.to_checksum_address(borrower), int(limit_index))

    def bucket_take_tx(self, borrower: str, bucket_index: int, deposit_take: bool = False):
        return self.contract.functions.bucketTake(
            Web3.to_checksum_address(borrower), deposit_take, int(bucket_index)
        )

    def settle_tx(self, borrower: str, max_depth: int):
        return self.contract.functions.settle(Web3.to_checksum_address(borrower), int(max_depth))

    def withdraw_bonds_tx(self, recipient: str, max_amount: int):
        return self.contract.functions.withdrawBonds(Web3.to_checksum_address(recipient), int(max_amount))

    def update_interest_tx(self):
        return self.contract.functions.updateInterest()

    def remove_quote_tx(self, max_amount: int, index: int):
        return self.contract.functions.removeQuoteToken(int(max_amount), int(index))

    def remove_collateral_tx(self, max_amount: int, index: int):
        return self.contract.functions.removeCollateral(int(max_amount), int(index))
