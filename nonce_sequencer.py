"""
═══════════════════════════════════════════════════════════════════════════════
NONCE SEQUENCER — the single write path of the keeper
═══════════════════════════════════════════════════════════════════════════════
Every transaction the keeper sends goes through `NonceSequencer.submit`.

  - One FIFO gate per signer (asyncio.Lock serves waiters in arrival order)
  - The on-chain pending nonce is fetched once, then cached and incremented
  - The gate is released right after broadcast; receipts are awaited outside
    of it, so confirmation order is unconstrained
  - Nonce drift / node hiccups on broadcast: resync from chain, retry once
  - Dry-run: log and return before touching the queue
═══════════════════════════════════════════════════════════════════════════════
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from web3 import Web3
from web3.exceptions import ContractLogicError, TimeExhausted

from keeper_errors import ConfirmationTimeout, TransactionReverted, TransientRpcError
from rpc_manager import is_nonce_error, is_transient_error

logger = logging.getLogger("NonceSequencer")

CONFIRMATION_TIMEOUT_SECONDS = 120
GAS_LIMIT_MULTIPLIER = 1.2
FALLBACK_GAS_LIMIT = 2_500_000
PRIORITY_FEE_GWEI = 0.05

BuildTx = Callable[[int], Awaitable[Dict[str, Any]]]


class NonceSequencer:
    def __init__(self, w3, chain_id: Optional[int] = None, dry_run: bool = False,
                 confirmation_timeout: float = CONFIRMATION_TIMEOUT_SECONDS,
                 priority_fee_gwei: float = PRIORITY_FEE_GWEI):
        self.w3 = w3
        self.chain_id = chain_id
        self.dry_run = dry_run
        self.confirmation_timeout = confirmation_timeout
        self.priority_fee_gwei = priority_fee_gwei

        self._next_nonce: Dict[str, int] = {}
        self._gates: Dict[str, asyncio.Lock] = {}
        self._queued: Dict[str, int] = {}

    def queued(self, address: str) -> int:
        """Number of submissions for `address` that have not returned yet."""
        return self._queued.get(address, 0)

    def cached_nonce(self, address: str) -> Optional[int]:
        return self._next_nonce.get(address)

    def reset(self, address: str):
        """Forget the cached nonce; the next broadcast re-reads it from chain."""
        self._next_nonce.pop(address, None)

    async def submit(self, account, build_tx: BuildTx, label: str = "transaction"):
        """
        Broadcast `build_tx(nonce)` signed by `account` and return its receipt.

        Raises TransientRpcError, TransactionReverted or ConfirmationTimeout.
        Returns None in dry-run mode.
        """
        address = account.address
        if self.dry_run:
            logger.info(f"DryRun - would send {label} from {address}")
            return None

        gate = self._gates.setdefault(address, asyncio.Lock())
        self._queued[address] = self._queued.get(address, 0) + 1
        try:
            async with gate:
                tx_hash = await self._broadcast(account, build_tx, label)
            try:
                return await self._wait_for_receipt(tx_hash, label)
            except ConfirmationTimeout:
                # the transaction may have been dropped; re-read the pending nonce before the next send
                self.reset(address)
                raise
        finally:
            self._queued[address] -= 1

    async def submit_call(self, account, tx_func, label: str = "transaction", gas_limit: Optional[int] = None):
        """Submit a web3 contract function call as an EIP-1559 transaction."""
        async def build(nonce: int):
            return await self.build_contract_tx(account, tx_func, nonce, gas_limit=gas_limit)
        return await self.submit(account, build, label)

    async def submit_raw(self, account, to: str, data: bytes, label: str = "transaction",
                         value: int = 0, gas_limit: Optional[int] = None):
        """Submit pre-encoded calldata (e.g. a router swap instruction)."""
        async def build(nonce: int):
            tx = {
                "from": account.address,
                "to": Web3.to_checksum_address(to),
                "data": Web3.to_hex(data),
                "value": value,
                "nonce": nonce,
            }
            if gas_limit is None:
                tx["gas"] = await self._estimate_gas(tx, label)
            else:
                tx["gas"] = gas_limit
            tx.update(await self._fee_fields())
            return tx
        return await self.submit(account, build, label)

    # ════════════════════════════════════════════════════════════════════════
    # TRANSACTION BUILDING
    # ════════════════════════════════════════════════════════════════════════

    async def build_contract_tx(self, account, tx_func, nonce: int, gas_limit: Optional[int] = None):
        if gas_limit is None:
            try:
                gas_est = await tx_func.estimate_gas({"from": account.address})
                gas_limit = int(gas_est * GAS_LIMIT_MULTIPLIER)
            except ContractLogicError as e:
                raise TransactionReverted(f"Simulation reverted: {e}")
            except Exception as gas_err:
                logger.warning(f"⚠️ Gas estimation failed, using fallback: {gas_err}")
                gas_limit = FALLBACK_GAS_LIMIT

        params = {
            "from": account.address,
            "nonce": nonce,
            "gas": gas_limit,
        }
        params.update(await self._fee_fields())
        return await tx_func.build_transaction(params)

    async def _estimate_gas(self, tx: dict, label: str) -> int:
        try:
            gas_est = await self.w3.eth.estimate_gas({k: v for k, v in tx.items() if k != "nonce"})
            return int(gas_est * GAS_LIMIT_MULTIPLIER)
        except ContractLogicError as e:
            raise TransactionReverted(f"Simulation reverted for {label}: {e}")
        except Exception as gas_err:
            logger.warning(f"⚠️ Gas estimation failed for {label}, using fallback: {gas_err}")
            return FALLBACK_GAS_LIMIT

    async def _fee_fields(self) -> dict:
        if self.chain_id is None:
            self.chain_id = await self.w3.eth.chain_id
        block = await self.w3.eth.get_block("latest")
        base_fee = block["baseFeePerGas"]
        priority = self.w3.to_wei(self.priority_fee_gwei, "gwei")
        return {
            "maxFeePerGas": base_fee * 2 + priority,
            "maxPriorityFeePerGas": priority,
            "chainId": self.chain_id,
        }

    # ════════════════════════════════════════════════════════════════════════
    # BROADCAST & CONFIRMATION
    # ════════════════════════════════════════════════════════════════════════

    async def _nonce_for(self, address: str) -> int:
        if address not in self._next_nonce:
            self._next_nonce[address] = await self.w3.eth.get_transaction_count(address, "pending")
            logger.debug(f"Fetched on-chain nonce for {address}: {self._next_nonce[address]}")
        return self._next_nonce[address]

    async def _broadcast(self, account, build_tx: BuildTx, label: str):
        address = account.address
        for attempt in (1, 2):
            nonce = await self._nonce_for(address)
            try:
                tx = await build_tx(nonce)
                signed = account.sign_transaction(tx)
                tx_hash = await self.w3.eth.send_raw_transaction(signed.raw_transaction)
            except TransactionReverted:
                raise
            except Exception as e:
                if attempt == 1 and is_transient_error(e):
                    kind = "Nonce mismatch" if is_nonce_error(e) else "Transient RPC error"
                    logger.warning(f"⚠️ {kind} sending {label} with nonce {nonce}: {e}. Resyncing and retrying once...")
                    self.reset(address)
                    continue
                if is_transient_error(e):
                    self.reset(address)
                    raise TransientRpcError(f"Broadcast of {label} failed after resync: {e}")
                raise

            self._next_nonce[address] = nonce + 1
            logger.info(f"🔥 TX SENT: {label} | nonce {nonce} | {Web3.to_hex(tx_hash)}")
            return tx_hash

    async def _wait_for_receipt(self, tx_hash, label: str):
        tx_hex = Web3.to_hex(tx_hash)
        try:
            receipt = await self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=self.confirmation_timeout)
        except TimeExhausted:
            raise ConfirmationTimeout(
                f"No receipt for {label} after {self.confirmation_timeout}s: {tx_hex}", tx_hash=tx_hex
            )

        if receipt["status"] != 1:
            raise TransactionReverted(f"{label} reverted on-chain: {tx_hex}", tx_hash=tx_hex)

        logger.info(f"✅ TX CONFIRMED: {label} | {tx_hex} | gas used {receipt.get('gasUsed')}")
        return receipt
