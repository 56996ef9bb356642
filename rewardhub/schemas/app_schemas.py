from datetime import datetime
from pydantic import BaseModel
from typing import Optional

from rewardhub.config import MatchType


class MatchOutcome(BaseModel):
    gameSessionId: str
    winnerId: str
    walletAddress: Optional[str] = None
    matchType: MatchType
    result: str
    gameEndTime: Optional[datetime] = None

class SettleResponse(BaseModel):
    status: str
    gameSessionId: str

class BalanceResponse(BaseModel):
    playerId: str
    confirmed: str
    pending: str
    total: str
    pendingCount: int
    confirmedCoins: str
    pendingCoins: str
    totalCoins: str

class LedgerBalanceResponse(BaseModel):
    walletAddress: str
    balance: str
    balanceCoins: str

class SyncStatusResponse(BaseModel):
    totalPlayers: int
    totalRewards: int
    pendingRewards: int
    failedTransactions: int
    totalGameCoinsIssued: str

class DrainReport(BaseModel):
    selected: int = 0
    resolved: int = 0
    failed: int = 0
    abandoned: int = 0
    skipped: int = 0
    repaired: int = 0
