from datetime import timedelta
from typing import Optional

from sqlalchemy import select

from rewardhub import db as store
from rewardhub.config import AttemptKind, AttemptStatus, RewardState, Settings, settings as default_settings
from rewardhub.errors import InconsistencyError
from rewardhub.helpers import utcnow
from rewardhub.logging_config import get_logger
from rewardhub.models import models
from rewardhub.reconciliation import ConfirmationReconciler
from rewardhub.settlement import SettlementCoordinator

logger = get_logger(__name__)

BLOCKING_STATUSES = (AttemptStatus.PENDING.value, AttemptStatus.RETRYING.value, AttemptStatus.ABANDONED.value)


class RecoveryPass:
    """
    Idempotent repair of state a crash can leave behind:
    rewards without a pending credit, rewards whose submission never finished,
    and ledger events that were recorded but never applied.
    """

    def __init__(
        self,
        session_factory,
        coordinator: SettlementCoordinator,
        reconciler: ConfirmationReconciler,
        config: Optional[Settings] = None,
    ):
        self.session_factory = session_factory
        self.coordinator = coordinator
        self.reconciler = reconciler
        self.config = config or default_settings

    def run(self) -> int:
        return self.repair_orphaned_rewards() + self.enqueue_stalled_submissions() + self.replay_unprocessed_events()

    def repair_orphaned_rewards(self) -> int:
        cutoff = utcnow() - timedelta(seconds=self.config.repair_grace_seconds)
        with self.session_factory() as db:
            reward_ids = [
                reward_id
                for (reward_id,) in db.query(models.RewardRecord.id)
                .outerjoin(models.PendingEntry, models.PendingEntry.reward_id == models.RewardRecord.id)
                .filter(models.PendingEntry.id.is_(None))
                .filter(models.RewardRecord.confirmed.is_(False))
                .filter(models.RewardRecord.state != RewardState.ABANDONED.value)
                .filter(models.RewardRecord.created_at <= cutoff)
                .all()
            ]
        repaired = 0
        for reward_id in reward_ids:
            try:
                if self.coordinator.ensure_pending_credit(reward_id):
                    repaired += 1
                    logger.warning("Repaired missing pending credit: reward_id=%s", reward_id)
            except Exception as exc:  # noqa: BLE001
                logger.error("Pending credit repair failed: reward_id=%s error=%s", reward_id, exc)
        return repaired

    def enqueue_stalled_submissions(self) -> int:
        cutoff = utcnow() - timedelta(seconds=self.config.resubmit_grace_seconds)
        with self.session_factory() as db:
            stalled = (
                db.query(models.RewardRecord)
                .filter(models.RewardRecord.state == RewardState.PENDING_UNCOMMITTED.value)
                .filter(models.RewardRecord.transaction_ref.is_(None))
                .filter(models.RewardRecord.created_at <= cutoff)
                .all()
            )
            enqueued = 0
            for reward in stalled:
                if store.attempt_exists(db, game_session_id=reward.game_session_id, statuses=BLOCKING_STATUSES):
                    continue
                store.record_failed_attempt(
                    db,
                    kind=AttemptKind.SUBMISSION.value,
                    exc=InconsistencyError("ledger submission never completed"),
                    player_id=reward.winner_id,
                    wallet=reward.winner_wallet,
                    amount=reward.amount,
                    game_session_id=reward.game_session_id,
                )
                enqueued += 1
        if enqueued:
            logger.warning("Queued %s stalled reward submissions", enqueued)
        return enqueued

    def replay_unprocessed_events(self) -> int:
        cutoff = utcnow() - timedelta(seconds=self.config.repair_grace_seconds)
        with self.session_factory() as db:
            tracked = (
                select(models.FailedAttempt.event_record_id)
                .where(models.FailedAttempt.event_record_id.isnot(None))
                .where(models.FailedAttempt.status.in_(BLOCKING_STATUSES))
            )
            records = (
                db.query(models.LedgerEventRecord)
                .filter(models.LedgerEventRecord.processed.is_(False))
                .filter(models.LedgerEventRecord.created_at <= cutoff)
                .filter(models.LedgerEventRecord.id.notin_(tracked))
                .order_by(models.LedgerEventRecord.block_height, models.LedgerEventRecord.log_index)
                .all()
            )
            pending = [(r.id, r.transaction_ref, r.player_address, r.amount) for r in records]

        replayed = 0
        for record_id, tx_ref, wallet, amount in pending:
            try:
                if self.reconciler.apply_event(record_id):
                    replayed += 1
                    logger.warning("Replayed unprocessed ledger event: tx=%s", tx_ref)
            except Exception as exc:  # noqa: BLE001
                logger.error("Replay of ledger event failed: tx=%s error=%s", tx_ref, exc)
                with self.session_factory() as db:
                    store.record_failed_attempt(
                        db,
                        kind=AttemptKind.RECONCILIATION.value,
                        exc=exc,
                        wallet=wallet,
                        amount=amount,
                        transaction_ref=tx_ref,
                        event_record_id=record_id,
                    )
        return replayed
