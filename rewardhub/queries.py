from typing import List

from pydantic import BaseModel
from sqlalchemy.orm import Session

from rewardhub.config import OPEN_ATTEMPT_STATUSES, PendingStatus
from rewardhub.models import models


class BalanceView(BaseModel):
    confirmed: int
    pending: int
    pending_count: int

    @property
    def total(self) -> int:
        return self.confirmed + self.pending


class SyncStatus(BaseModel):
    total_players: int
    total_rewards: int
    pending_rewards: int
    failed_transactions: int
    total_issued: int


def get_balance(db: Session, player_id: str) -> BalanceView:
    balance = db.query(models.PlayerBalance).filter_by(player_id=player_id).first()
    if balance is None:
        return BalanceView(confirmed=0, pending=0, pending_count=0)
    pending_count = sum(1 for entry in balance.pending_entries if entry.status == PendingStatus.PENDING.value)
    return BalanceView(
        confirmed=balance.confirmed_amount,
        pending=balance.pending_amount,
        pending_count=pending_count,
    )


def get_history(db: Session, player_id: str, limit: int = 10) -> List[models.RewardRecord]:
    return (
        db.query(models.RewardRecord)
        .filter(models.RewardRecord.winner_id == player_id)
        .filter(models.RewardRecord.deleted_at.is_(None))
        .order_by(models.RewardRecord.game_end_time.desc(), models.RewardRecord.id.desc())
        .limit(limit)
        .all()
    )


def get_pending_entries(db: Session, player_id: str) -> List[models.PendingEntry]:
    return (
        db.query(models.PendingEntry)
        .join(models.PlayerBalance)
        .filter(models.PlayerBalance.player_id == player_id)
        .filter(models.PendingEntry.status == PendingStatus.PENDING.value)
        .order_by(models.PendingEntry.id)
        .all()
    )


def get_sync_status(db: Session) -> SyncStatus:
    confirmed_amounts = (
        db.query(models.RewardRecord.amount).filter(models.RewardRecord.confirmed.is_(True)).all()
    )
    return SyncStatus(
        total_players=db.query(models.PlayerBalance).count(),
        total_rewards=db.query(models.RewardRecord).count(),
        pending_rewards=db.query(models.RewardRecord).filter(models.RewardRecord.confirmed.is_(False)).count(),
        failed_transactions=(
            db.query(models.FailedAttempt).filter(models.FailedAttempt.status.in_(OPEN_ATTEMPT_STATUSES)).count()
        ),
        total_issued=sum(amount for (amount,) in confirmed_amounts),
    )
