"""
═══════════════════════════════════════════════════════════════════════════════
KICK ENGINE — start liquidation auctions on under-collateralized loans
═══════════════════════════════════════════════════════════════════════════════
A loan is kicked only if:
  1. TP >= LUP                       (otherwise the pool rejects the kick)
  2. debt >= kick.min_debt           (dust loans are not worth the gas)
  3. NP * kick.price_factor >= price (the auction can end in profit)

Candidates come out largest bond first. One quote-token approval covers the
current bond plus every bond after it, so a run of kicks needs one approve.
The allowance is set back to zero once the batch is done.
═══════════════════════════════════════════════════════════════════════════════
"""

import asyncio
import logging
from decimal import Decimal
from typing import AsyncIterator, Dict, Optional

from keeper_errors import ApprovalFailure, KeeperError, PriceUnavailable
from pool_models import KickCandidate, PoolSnapshot
from price_resolver import PriceContext
from wad_math import from_wad, index_of, to_wad, wad_to_decimal

logger = logging.getLogger("KickEngine")

LIQUIDATION_BOND_MARGIN_DIVISOR = 100  # 1% extra allowance on top of the bond estimate


class KickEngine:
    def __init__(self, sequencer, account, price_resolver, erc20, dry_run: bool = False,
                 delay_between_actions: float = 1.0, recorder=None,
                 token_addresses: Optional[Dict[str, str]] = None):
        self.sequencer = sequencer
        self.account = account
        self.price_resolver = price_resolver
        self.erc20 = erc20
        self.dry_run = dry_run
        self.delay_between_actions = delay_between_actions
        self.recorder = recorder
        self.token_addresses = token_addresses or {}

    # ════════════════════════════════════════════════════════════════════════
    # SCAN
    # ════════════════════════════════════════════════════════════════════════

    async def scan(self, snapshot: PoolSnapshot, pool_config) -> AsyncIterator[KickCandidate]:
        """
        Yield kickable loans from `snapshot`, largest liquidation bond first.

        Raises PriceUnavailable (ending the scan) if a candidate needs the price
        and no source can supply it.
        """
        name = pool_config.name
        kick = pool_config.kick
        lup = snapshot.prices.lup

        loans = sorted(snapshot.loans, key=lambda loan: loan.liquidation_bond, reverse=True)
        # remaining[i] = bond of loans[i] + bonds of every loan after it
        remaining = [0] * (len(loans) + 1)
        for i in range(len(loans) - 1, -1, -1):
            remaining[i] = remaining[i + 1] + loans[i].liquidation_bond

        price: Optional[Decimal] = None
        for i, loan in enumerate(loans):
            if loan.threshold_price < lup:
                logger.debug(
                    f"Not kicking loan since TP is lower than LUP. pool: {name}, borrower: {loan.borrower}, "
                    f"TP: {wad_to_decimal(loan.threshold_price)}, LUP: {wad_to_decimal(lup)}"
                )
                continue

            if wad_to_decimal(loan.debt) < kick.min_debt:
                logger.debug(
                    f"Not kicking loan since debt is too low. pool: {name}, borrower: {loan.borrower}, "
                    f"debt: {wad_to_decimal(loan.debt)}, min_debt: {kick.min_debt}"
                )
                continue

            if price is None:
                price = await self.price_resolver.resolve(
                    pool_config.price,
                    PriceContext(pool_name=name, pool_prices=snapshot.prices, token_addresses=self.token_addresses),
                )

            neutral_price = wad_to_decimal(loan.neutral_price)
            if neutral_price * kick.price_factor < price:
                logger.debug(
                    f"Not kicking loan since NP * factor < price. pool: {name}, borrower: {loan.borrower}, "
                    f"NP: {neutral_price}, factor: {kick.price_factor}, price: {price}"
                )
                continue

            yield KickCandidate(
                borrower=loan.borrower,
                liquidation_bond=loan.liquidation_bond,
                estimated_remaining_bond=remaining[i],
                limit_price=price,
            )

    # ════════════════════════════════════════════════════════════════════════
    # EXECUTE
    # ════════════════════════════════════════════════════════════════════════

    async def ensure_bond_allowance(self, pool, candidate: KickCandidate, pool_name: str):
        """
        Approve enough quote token to cover this bond and, balance permitting,
        the bonds still to come. Raises ApprovalFailure before any transaction
        is queued if the balance cannot cover this bond.
        """
        quote = pool.quote_address
        decimals = await self.erc20.decimals(quote)
        balance_wad = to_wad(await self.erc20.balance_of(quote, self.account.address), decimals)
        if balance_wad < candidate.liquidation_bond:
            raise ApprovalFailure(
                f"Insufficient balance to cover bond. pool: {pool_name}, borrower: {candidate.borrower}, "
                f"token: {quote}, balance: {wad_to_decimal(balance_wad)}, "
                f"bond: {wad_to_decimal(candidate.liquidation_bond)}"
            )

        allowance_wad = to_wad(await self.erc20.allowance(quote, self.account.address, pool.address), decimals)
        if allowance_wad >= candidate.liquidation_bond:
            return

        amount = min(candidate.estimated_remaining_bond, balance_wad)
        amount += amount // LIQUIDATION_BOND_MARGIN_DIVISOR
        amount_native = from_wad(amount, decimals)
        logger.debug(f"Approving quote. pool: {pool_name}, token: {quote}, amount: {wad_to_decimal(amount)}")
        try:
            await self.erc20.approve(self.account, quote, pool.address, amount_native)
        except KeeperError as e:
            raise ApprovalFailure(
                f"Failed to approve quote. pool: {pool_name}, token: {quote}, amount: {wad_to_decimal(amount)}: {e}"
            ) from e

    async def execute(self, pool, candidate: KickCandidate, pool_name: str):
        borrower = candidate.borrower
        if self.dry_run:
            logger.info(f"DryRun - would kick loan. pool: {pool_name}, borrower: {borrower}")
            return None

        await self.ensure_bond_allowance(pool, candidate, pool_name)

        limit_index = index_of(candidate.limit_price)
        logger.info(
            f"🦶 Kicking loan. pool: {pool_name}, borrower: {borrower}, "
            f"bond: {wad_to_decimal(candidate.liquidation_bond)}, limit index: {limit_index}"
        )
        receipt = await self.sequencer.submit_call(
            self.account, pool.kick_tx(borrower, limit_index), label=f"kick {borrower} in {pool_name}"
        )
        logger.info(f"✅ Kick confirmed. pool: {pool_name}, borrower: {borrower}")
        await self._record("kick", pool_name, borrower, receipt)
        return receipt

    async def handle_kicks(self, pool, snapshot: PoolSnapshot, pool_config) -> int:
        """Kick every candidate of this cycle, then clear the pool's allowance."""
        kicked = 0
        try:
            async for candidate in self.scan(snapshot, pool_config):
                try:
                    if await self.execute(pool, candidate, pool_config.name) is not None:
                        kicked += 1
                except ApprovalFailure as e:
                    logger.info(f"⏭️ Skipping kick: {e}")
                except KeeperError as e:
                    logger.error(
                        f"❌ Failed to kick loan. pool: {pool_config.name}, borrower: {candidate.borrower}: {e}"
                    )
                    await self._record("kick", pool_config.name, candidate.borrower, None, str(e))
                await asyncio.sleep(self.delay_between_actions)
        except PriceUnavailable as e:
            logger.warning(f"⚠️ Aborting kicks for pool {pool_config.name} this cycle: {e}")
        finally:
            await self.clear_allowance(pool, pool_config.name)
        return kicked

    async def clear_allowance(self, pool, pool_name: str):
        if self.dry_run:
            return
        quote = pool.quote_address
        allowance = await self.erc20.allowance(quote, self.account.address, pool.address)
        if allowance == 0:
            return
        try:
            logger.debug(f"Clearing allowance. pool: {pool_name}, token: {quote}")
            await self.erc20.approve(self.account, quote, pool.address, 0)
        except KeeperError as e:
            logger.error(f"❌ Failed to clear allowance. pool: {pool_name}, token: {quote}: {e}")

    async def _record(self, kind: str, pool_name: str, borrower: str, receipt, error: Optional[str] = None):
        if self.recorder is None:
            return
        tx_hash = receipt["transactionHash"] if receipt is not None else None
        await self.recorder(kind, pool_name, borrower, tx_hash, "failed" if error else "confirmed", error or "")
