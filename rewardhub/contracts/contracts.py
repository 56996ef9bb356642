from typing import Any, Optional

from pydantic import BaseModel

from rewardhub.amount import to_amount
from rewardhub.errors import ContractViolation


class Fee(BaseModel):
    gas_limit: int
    gas_price: int


class SubmitReceipt(BaseModel):
    tx_ref: str
    block_height: Optional[int] = None


class LedgerEvent(BaseModel):
    address: str
    tx_ref: str
    block_height: int
    log_index: int
    event_name: str = "MatchWin"
    args: dict[str, Any]

    @property
    def dedup_key(self) -> tuple[str, str, int]:
        return self.address.lower(), self.tx_ref, self.log_index

    @property
    def player(self) -> str:
        player = self.args.get("player")
        if not player:
            raise ContractViolation(f"event {self.tx_ref} has no player")
        return str(player).lower()

    @property
    def amount(self) -> int:
        if "reward" not in self.args:
            raise ContractViolation(f"event {self.tx_ref} has no reward amount")
        return to_amount(self.args["reward"])

    @property
    def match_type(self) -> Optional[str]:
        return self.args.get("matchType")

    @classmethod
    def from_log(cls, log) -> "LedgerEvent":
        """
        Build an event from a decoded web3 log entry (AttributeDict or plain mapping).
        """
        tx_hash = log["transactionHash"]
        return cls(
            address=str(log["address"]),
            tx_ref=tx_hash if isinstance(tx_hash, str) else "0x" + bytes(tx_hash).hex(),
            block_height=int(log["blockNumber"]),
            log_index=int(log["logIndex"]),
            event_name=log.get("event", "MatchWin"),
            args=dict(log["args"]),
        )
