import logging
from typing import Dict

from web3 import Web3

logger = logging.getLogger("ERC20")

MAX_UINT256 = 2**256 - 1

ERC20_ABI = [
    {
        "inputs": [],
        "name": "decimals",
        "outputs": [{"internalType": "uint8", "name": "", "type": "uint8"}],
        "stateMutability": "view",
        "type": "function"
    },
    {
        "inputs": [],
        "name": "symbol",
        "outputs": [{"internalType": "string", "name": "", "type": "string"}],
        "stateMutability": "view",
        "type": "function"
    },
    {
        "inputs": [{"internalType": "address", "name": "account", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"internalType": "uint256", "name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function"
    },
    {
        "inputs": [
            {"internalType": "address", "name": "owner", "type": "address"},
            {"internalType": "address", "name": "spender", "type": "address"}
        ],
        "name": "allowance",
        "outputs": [{"internalType": "uint256", "name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function"
    },
    {
        "inputs": [
            {"internalType": "address", "name": "spender", "type": "address"},
            {"internalType": "uint256", "name": "amount", "type": "uint256"}
        ],
        "name": "approve",
        "outputs": [{"internalType": "bool", "name": "", "type": "bool"}],
        "stateMutability": "nonpayable",
        "type": "function"
    },
    {
        "inputs": [
            {"internalType": "address", "name": "to", "type": "address"},
            {"internalType": "uint256", "name": "amount", "type": "uint256"}
        ],
        "name": "transfer",
        "outputs": [{"internalType": "bool", "name": "", "type": "bool"}],
        "stateMutability": "nonpayable",
        "type": "function"
    }
]


class ERC20Client:
    """Balance / allowance reads and approve / transfer writes for any ERC20."""

    def __init__(self, w3, sequencer):
        self.w3 = w3
        self.sequencer = sequencer
        self._decimals: Dict[str, int] = {}

    def contract(self, token: str):
        return self.w3.eth.contract(address=Web3.to_checksum_address(token), abi=ERC20_ABI)

    async def decimals(self, token: str) -> int:
        key = token.lower()
        if key not in self._decimals:
            self._decimals[key] = await self.contract(token).functions.decimals().call()
        return self._decimals[key]

    async def balance_of(self, token: str, owner: str) -> int:
        return await self.contract(token).functions.balanceOf(Web3.to_checksum_address(owner)).call()

    async def allowance(self, token: str, owner: str, spender: str) -> int:
        return await self.contract(token).functions.allowance(
            Web3.to_checksum_address(owner), Web3.to_checksum_address(spender)
        ).call()

    async def approve(self, account, token: str, spender: str, amount: int):
        tx_func = self.contract(token).functions.approve(Web3.to_checksum_address(spender), int(amount))
        return await self.sequencer.submit_call(
            account, tx_func, label=f"approve {amount} of {token} to {spender}"
        )

    async def transfer(self, account, token: str, recipient: str, amount: int):
        tx_func = self.contract(token).functions.transfer(Web3.to_checksum_address(recipient), int(amount))
        return await self.sequencer.submit_call(
            account, tx_func, label=f"transfer {amount} of {token} to {recipient}"
        )
