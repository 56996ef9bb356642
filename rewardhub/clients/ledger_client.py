import asyncio
from abc import ABC, abstractmethod
from typing import AsyncIterator, Optional

import aiohttp
from eth_account import Account
from web3 import AsyncWeb3
from web3.exceptions import Web3Exception

from rewardhub.config import Settings, settings as default_settings
from rewardhub.contracts.contracts import Fee, LedgerEvent, SubmitReceipt
from rewardhub.errors import LedgerError, UnconfirmedSubmission
from rewardhub.logging_config import get_logger

logger = get_logger(__name__)

# What a node round trip can raise; aiohttp errors surface from the HTTP provider on 429/5xx.
NODE_ERRORS = (Web3Exception, aiohttp.ClientError, ValueError, OSError, asyncio.TimeoutError)

GAME_COIN_ABI = [
    {
        "inputs": [{"name": "player", "type": "address"}],
        "name": "rewardPvPWin",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [{"name": "player", "type": "address"}],
        "name": "rewardBotWin",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [{"name": "account", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "name": "player", "type": "address"},
            {"indexed": False, "name": "reward", "type": "uint256"},
            {"indexed": False, "name": "matchType", "type": "string"},
        ],
        "name": "MatchWin",
        "type": "event",
    },
]


class LedgerGateway(ABC):
    """Capability over the external ledger. Implementations raise LedgerError on any failure."""

    @abstractmethod
    async def estimate_fee(self, method: str, args: list) -> Fee:
        ...

    @abstractmethod
    async def submit(self, method: str, args: list, fee: Fee) -> SubmitReceipt:
        ...

    @abstractmethod
    async def balance_of(self, address: str) -> int:
        ...

    @abstractmethod
    def subscribe(self, event_name: str, from_block: int) -> AsyncIterator[LedgerEvent]:
        ...

    async def close(self) -> None:
        return None


class Web3LedgerGateway(LedgerGateway):
    def __init__(self, config: Optional[Settings] = None):
        self.config = config or default_settings
        self.w3 = AsyncWeb3(
            AsyncWeb3.AsyncHTTPProvider(
                str(self.config.rpc_url),
                request_kwargs={"timeout": self.config.receipt_timeout_seconds},
            )
        )
        self.contract = self.w3.eth.contract(
            address=AsyncWeb3.to_checksum_address(self.config.game_coin_contract_address),
            abi=GAME_COIN_ABI,
        )
        self.account = Account.from_key(self.config.signer_private_key) if self.config.signer_private_key else None
        # One nonce sequence per signer; concurrent submissions must not reuse it.
        self._nonce_lock = asyncio.Lock()

    def _function(self, method: str, args: list):
        checksummed = [AsyncWeb3.to_checksum_address(a) if AsyncWeb3.is_address(a) else a for a in args]
        return getattr(self.contract.functions, method)(*checksummed)

    def _sender(self) -> str:
        if self.account is None:
            raise LedgerError("no signer key configured")
        return self.account.address

    async def estimate_fee(self, method: str, args: list) -> Fee:
        try:
            gas_estimate = await self._function(method, args).estimate_gas({"from": self._sender()})
            gas_price = await self.w3.eth.gas_price
        except NODE_ERRORS as exc:
            raise LedgerError(f"fee estimation failed for {method}: {exc}") from exc
        gas_limit = int(gas_estimate) * self.config.fee_multiplier_percent // 100
        return Fee(gas_limit=gas_limit, gas_price=int(gas_price))

    async def submit(self, method: str, args: list, fee: Fee) -> SubmitReceipt:
        sender = self._sender()
        try:
            async with self._nonce_lock:
                nonce = await self.w3.eth.get_transaction_count(sender, "pending")
                tx = await self._function(method, args).build_transaction(
                    {
                        "from": sender,
                        "nonce": nonce,
                        "gas": fee.gas_limit,
                        "gasPrice": fee.gas_price,
                        "chainId": await self.w3.eth.chain_id,
                    }
                )
                signed = self.account.sign_transaction(tx)
                tx_hash = await self.w3.eth.send_raw_transaction(signed.raw_transaction)
        except NODE_ERRORS as exc:
            raise LedgerError(f"submission of {method} failed: {exc}") from exc
        tx_ref = AsyncWeb3.to_hex(tx_hash)
        # Broadcast already happened; from here on the ref must travel with any failure.
        try:
            receipt = await self.w3.eth.wait_for_transaction_receipt(
                tx_hash, timeout=self.config.receipt_timeout_seconds
            )
        except NODE_ERRORS as exc:
            raise UnconfirmedSubmission(tx_ref, exc) from exc
        if receipt["status"] != 1:
            raise LedgerError(f"transaction {tx_ref} reverted")
        logger.info("Ledger transaction mined: method=%s tx=%s block=%s", method, tx_ref, receipt["blockNumber"])
        return SubmitReceipt(tx_ref=tx_ref, block_height=int(receipt["blockNumber"]))

    async def balance_of(self, address: str) -> int:
        try:
            balance = await self._function("balanceOf", [address]).call()
        except NODE_ERRORS as exc:
            raise LedgerError(f"balanceOf failed for {address}: {exc}") from exc
        return int(balance)

    async def subscribe(self, event_name: str, from_block: int) -> AsyncIterator[LedgerEvent]:
        """
        Poll the contract logs in [from_block, head] windows and yield events in ledger order.
        """
        contract_event = getattr(self.contract.events, event_name)
        next_block = from_block
        while True:
            try:
                head = await self.w3.eth.block_number
                logs = []
                if head >= next_block:
                    logs = await contract_event.get_logs(from_block=next_block, to_block=head)
            except NODE_ERRORS as exc:
                raise LedgerError(f"log polling failed from block {next_block}: {exc}") from exc
            for log in sorted(logs, key=lambda item: (item["blockNumber"], item["logIndex"])):
                yield LedgerEvent.from_log(log)
            if head >= next_block:
                next_block = head + 1
            await asyncio.sleep(self.config.event_poll_seconds)

    async def close(self) -> None:
        provider = self.w3.provider
        disconnect = getattr(provider, "disconnect", None)
        if disconnect is not None:
            await disconnect()
