from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, JSON, String, UniqueConstraint, Index
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from rewardhub.amount import AmountType
from rewardhub.config import AttemptStatus, PendingStatus, RewardState
from rewardhub.database import Base


class RewardRecord(Base):
    __tablename__ = "reward_records"
    id = Column(Integer, primary_key=True)
    game_session_id = Column(String, unique=True, index=True, nullable=False)
    winner_id = Column(String, index=True, nullable=False)
    winner_wallet = Column(String, index=True, nullable=False)
    match_type = Column(String, nullable=False)  # PvP|Bot
    amount = Column(AmountType, nullable=False)
    game_result = Column(String, nullable=False)
    game_end_time = Column(DateTime(timezone=True), nullable=False)
    transaction_ref = Column(String, unique=True, index=True, nullable=True)
    block_height = Column(Integer, nullable=True)
    confirmed = Column(Boolean, nullable=False, default=False)
    state = Column(String, nullable=False, default=RewardState.PENDING_UNCOMMITTED.value)
    reward_sent_at = Column(DateTime(timezone=True), nullable=True)
    confirmed_at = Column(DateTime(timezone=True), nullable=True)
    deleted_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    __table_args__ = (Index("ix_reward_winner_end", "winner_id", "game_end_time"),)


class PlayerBalance(Base):
    __tablename__ = "player_balances"
    id = Column(Integer, primary_key=True)
    player_id = Column(String, unique=True, index=True, nullable=True)
    wallet_address = Column(String, unique=True, index=True, nullable=False)  # lower-cased
    confirmed_amount = Column(AmountType, nullable=False, default=0)
    pending_amount = Column(AmountType, nullable=False, default=0)
    last_synced_block = Column(Integer, nullable=False, default=0)
    last_updated = Column(DateTime(timezone=True), server_default=func.now())
    sync_error = Column(String, nullable=True)
    version = Column(Integer, nullable=False)
    pending_entries = relationship(
        "PendingEntry",
        back_populates="balance",
        order_by="PendingEntry.id",
        cascade="all, delete-orphan",
    )
    corrections = relationship("BalanceCorrection", back_populates="balance", order_by="BalanceCorrection.id")
    __mapper_args__ = {"version_id_col": version}


class PendingEntry(Base):
    __tablename__ = "pending_entries"
    id = Column(Integer, primary_key=True)
    balance_id = Column(Integer, ForeignKey("player_balances.id"), index=True, nullable=False)
    reward_id = Column(Integer, ForeignKey("reward_records.id"), unique=True, nullable=True)
    ref = Column(String, index=True, nullable=False)
    amount = Column(AmountType, nullable=False)
    match_type = Column(String, nullable=False)
    status = Column(String, nullable=False, default=PendingStatus.PENDING.value)
    block_height = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    balance = relationship("PlayerBalance", back_populates="pending_entries")


class LedgerEventRecord(Base):
    __tablename__ = "ledger_event_records"
    id = Column(Integer, primary_key=True)
    contract_address = Column(String, nullable=False)
    transaction_ref = Column(String, index=True, nullable=False)
    log_index = Column(Integer, nullable=False)
    event_name = Column(String, nullable=False)
    block_height = Column(Integer, index=True, nullable=False)
    player_address = Column(String, index=True, nullable=False)
    amount = Column(AmountType, nullable=False)
    match_type = Column(String, nullable=True)
    processed = Column(Boolean, nullable=False, default=False)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    error = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    __table_args__ = (
        UniqueConstraint("contract_address", "transaction_ref", "log_index", name="uq_event_dedup"),
    )


class FailedAttempt(Base):
    __tablename__ = "failed_attempts"
    id = Column(Integer, primary_key=True)
    player_id = Column(String, index=True, nullable=True)
    wallet_address = Column(String, nullable=True)
    kind = Column(String, nullable=False)  # settlement|submission|reconciliation
    error_kind = Column(String, nullable=False)
    amount = Column(AmountType, nullable=False, default=0)
    game_session_id = Column(String, index=True, nullable=True)
    transaction_ref = Column(String, nullable=True)
    event_record_id = Column(Integer, ForeignKey("ledger_event_records.id"), nullable=True)
    payload = Column(JSON, nullable=True)
    error = Column(String, nullable=False)
    retry_count = Column(Integer, nullable=False, default=0)
    status = Column(String, index=True, nullable=False, default=AttemptStatus.PENDING.value)
    first_attempt_at = Column(DateTime(timezone=True), nullable=False)
    last_attempt_at = Column(DateTime(timezone=True), nullable=False)
    resolved_at = Column(DateTime(timezone=True), nullable=True)


class BalanceCorrection(Base):
    __tablename__ = "balance_corrections"
    id = Column(Integer, primary_key=True)
    balance_id = Column(Integer, ForeignKey("player_balances.id"), index=True, nullable=False)
    old_amount = Column(AmountType, nullable=False)
    new_amount = Column(AmountType, nullable=False)
    block_height = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    balance = relationship("PlayerBalance", back_populates="corrections")
