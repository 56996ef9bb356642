from datetime import datetime
from typing import Callable, Optional, TypeVar

from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from rewardhub.config import OPEN_ATTEMPT_STATUSES, AttemptStatus, PendingStatus, settings
from rewardhub.contracts.contracts import LedgerEvent
from rewardhub.errors import (
    INITIAL_ATTEMPT_STATUS,
    BalanceConflictError,
    InconsistencyError,
    SkipReward,
    classify,
)
from rewardhub.helpers import normalize_wallet, placeholder_ref, utcnow
from rewardhub.logging_config import get_logger
from rewardhub.models import models

logger = get_logger(__name__)

T = TypeVar("T")


def get_reward_by_session(db: Session, game_session_id: str) -> Optional[models.RewardRecord]:
    return db.query(models.RewardRecord).filter_by(game_session_id=game_session_id).first()


def get_reward_by_ref(db: Session, transaction_ref: str) -> Optional[models.RewardRecord]:
    return db.query(models.RewardRecord).filter_by(transaction_ref=transaction_ref).first()


def insert_reward(db: Session, **fields) -> models.RewardRecord:
    """
    Insert a reward row. The unique game_session_id is the duplicate backstop.
    """
    record = models.RewardRecord(**fields)
    db.add(record)
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise SkipReward(f"game session {fields.get('game_session_id')} already rewarded") from exc
    db.refresh(record)
    return record


def find_balance(
    db: Session, player_id: Optional[str] = None, wallet: Optional[str] = None
) -> Optional[models.PlayerBalance]:
    if player_id:
        balance = db.query(models.PlayerBalance).filter_by(player_id=player_id).first()
        if balance:
            return balance
    wallet = normalize_wallet(wallet)
    if wallet:
        return (
            db.query(models.PlayerBalance)
            .filter(func.lower(models.PlayerBalance.wallet_address) == wallet)
            .first()
        )
    return None


def update_balance(
    session_factory,
    mutate: Callable[[Session], T],
    attempts: Optional[int] = None,
) -> T:
    """
    Run a read-modify-write against player balances in a fresh session and commit.

    A concurrent writer bumps the balance version, which makes our flush fail with
    StaleDataError (or IntegrityError for two lazy inserts of the same row); the
    whole mutation is then re-read and re-applied.
    """
    attempts = attempts if attempts is not None else settings.balance_update_attempts
    last_error: Optional[Exception] = None
    for attempt in range(1, attempts + 1):
        with session_factory() as db:
            try:
                result = mutate(db)
                db.commit()
                return result
            except (StaleDataError, IntegrityError) as exc:
                db.rollback()
                last_error = exc
                logger.info("Balance write conflict, retrying: attempt=%s error=%s", attempt, exc)
    raise BalanceConflictError(f"balance update lost {attempts} races: {last_error}")


def apply_pending_credit(db: Session, reward: models.RewardRecord) -> models.PlayerBalance:
    """
    Optimistic credit: pending += amount and a placeholder pending entry. Creates the balance lazily.
    """
    wallet = normalize_wallet(reward.winner_wallet)
    balance = find_balance(db, player_id=reward.winner_id, wallet=wallet)
    if balance is None:
        balance = models.PlayerBalance(
            player_id=reward.winner_id,
            wallet_address=wallet,
            confirmed_amount=0,
            pending_amount=0,
            last_synced_block=0,
        )
        db.add(balance)
    elif balance.player_id is None:
        balance.player_id = reward.winner_id
    elif balance.player_id != reward.winner_id:
        raise InconsistencyError(f"wallet {wallet} already belongs to player {balance.player_id}")
    elif balance.wallet_address != wallet:
        logger.warning(
            "Reward wallet differs from cached wallet: player=%s cached=%s reward=%s",
            reward.winner_id,
            balance.wallet_address,
            wallet,
        )

    balance.pending_amount = (balance.pending_amount or 0) + reward.amount
    balance.last_updated = utcnow()
    balance.pending_entries.append(
        models.PendingEntry(
            reward_id=reward.id,
            ref=placeholder_ref(reward.id),
            amount=reward.amount,
            match_type=reward.match_type,
            status=PendingStatus.PENDING.value,
            created_at=utcnow(),
        )
    )
    return balance


def find_pending_entry(
    balance: models.PlayerBalance, ref: str, reward_id: Optional[int] = None
) -> Optional[models.PendingEntry]:
    for entry in balance.pending_entries:
        if entry.status != PendingStatus.PENDING.value:
            continue
        if entry.ref == ref or (reward_id is not None and entry.reward_id == reward_id):
            return entry
    return None


def get_event(db: Session, event: LedgerEvent) -> Optional[models.LedgerEventRecord]:
    contract_address, transaction_ref, log_index = event.dedup_key
    return (
        db.query(models.LedgerEventRecord)
        .filter_by(contract_address=contract_address, transaction_ref=transaction_ref, log_index=log_index)
        .first()
    )


def insert_event(db: Session, event: LedgerEvent) -> Optional[models.LedgerEventRecord]:
    """
    Persist the dedup record with processed=False. Returns None if another writer got there first.
    """
    contract_address, transaction_ref, log_index = event.dedup_key
    record = models.LedgerEventRecord(
        contract_address=contract_address,
        transaction_ref=transaction_ref,
        log_index=log_index,
        event_name=event.event_name,
        block_height=event.block_height,
        player_address=event.player,
        amount=event.amount,
        match_type=event.match_type,
        processed=False,
        created_at=utcnow(),
    )
    db.add(record)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        return None
    db.refresh(record)
    return record


def record_failed_attempt(
    db: Session,
    *,
    kind: str,
    exc: BaseException,
    player_id: Optional[str] = None,
    wallet: Optional[str] = None,
    amount: int = 0,
    game_session_id: Optional[str] = None,
    transaction_ref: Optional[str] = None,
    event_record_id: Optional[int] = None,
    payload: Optional[dict] = None,
) -> models.FailedAttempt:
    error_kind = classify(exc)
    now = utcnow()
    record = models.FailedAttempt(
        player_id=player_id,
        wallet_address=normalize_wallet(wallet),
        kind=kind,
        error_kind=error_kind.value,
        amount=amount,
        game_session_id=game_session_id,
        transaction_ref=transaction_ref,
        event_record_id=event_record_id,
        payload=payload,
        error=str(exc) or exc.__class__.__name__,
        retry_count=0,
        status=INITIAL_ATTEMPT_STATUS[error_kind].value,
        first_attempt_at=now,
        last_attempt_at=now,
    )
    db.add(record)
    db.commit()
    db.refresh(record)
    logger.info(
        "Recorded failed attempt id=%s kind=%s error_kind=%s status=%s",
        record.id,
        kind,
        error_kind.value,
        record.status,
    )
    return record


def attempt_exists(
    db: Session,
    kind: Optional[str] = None,
    game_session_id: Optional[str] = None,
    event_record_id: Optional[int] = None,
    statuses: tuple = OPEN_ATTEMPT_STATUSES,
) -> bool:
    query = db.query(models.FailedAttempt).filter(models.FailedAttempt.status.in_(statuses))
    if kind is not None:
        query = query.filter(models.FailedAttempt.kind == kind)
    if game_session_id is not None:
        query = query.filter(models.FailedAttempt.game_session_id == game_session_id)
    if event_record_id is not None:
        query = query.filter(models.FailedAttempt.event_record_id == event_record_id)
    return db.query(query.exists()).scalar()


def select_retryable(db: Session, max_batch: int, oldest: datetime, max_attempts: int) -> list[models.FailedAttempt]:
    return (
        db.query(models.FailedAttempt)
        .filter(models.FailedAttempt.status.in_(OPEN_ATTEMPT_STATUSES))
        .filter(models.FailedAttempt.retry_count < max_attempts)
        .filter(models.FailedAttempt.first_attempt_at >= oldest)
        .order_by(models.FailedAttempt.first_attempt_at)
        .limit(max_batch)
        .all()
    )


def acquire_attempt(db: Session, attempt_id: int, observed_retry_count: int) -> bool:
    """
    Claim a failed attempt for one retry: mark it retrying and bump retry_count,
    only if nobody else did since we read it.
    """
    result = db.execute(
        update(models.FailedAttempt)
        .where(models.FailedAttempt.id == attempt_id)
        .where(models.FailedAttempt.retry_count == observed_retry_count)
        .where(models.FailedAttempt.status.in_(OPEN_ATTEMPT_STATUSES))
        .values(
            status=AttemptStatus.RETRYING.value,
            retry_count=observed_retry_count + 1,
            last_attempt_at=utcnow(),
        )
    )
    db.commit()
    return result.rowcount == 1
