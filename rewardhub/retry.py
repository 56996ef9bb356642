import asyncio
from datetime import timedelta
from typing import Optional

from rewardhub import db as store
from rewardhub.config import AttemptKind, AttemptStatus, RewardState, Settings, settings as default_settings
from rewardhub.contracts.contracts import LedgerEvent, SubmitReceipt
from rewardhub.errors import SkipReward
from rewardhub.helpers import utcnow
from rewardhub.logging_config import RETRY_EXHAUSTED, emit, get_logger
from rewardhub.models import models
from rewardhub.reconciliation import ConfirmationReconciler
from rewardhub.recovery import RecoveryPass
from rewardhub.schemas.app_schemas import DrainReport, MatchOutcome
from rewardhub.settlement import SettlementCoordinator

logger = get_logger(__name__)

RESOLVED = AttemptStatus.RESOLVED
ABANDONED = AttemptStatus.ABANDONED


class RetrySupervisor:
    def __init__(
        self,
        session_factory,
        coordinator: SettlementCoordinator,
        reconciler: ConfirmationReconciler,
        config: Optional[Settings] = None,
        recovery: Optional[RecoveryPass] = None,
    ):
        self.session_factory = session_factory
        self.coordinator = coordinator
        self.reconciler = reconciler
        self.config = config or default_settings
        self.recovery = recovery or RecoveryPass(session_factory, coordinator, reconciler, self.config)

    async def run(self) -> None:
        while True:
            try:
                await self.run_cycle()
            except asyncio.CancelledError:
                raise
            except Exception:  # noqa: BLE001
                logger.exception("Retry cycle failed")
            await asyncio.sleep(self.config.retry_interval_seconds)

    async def run_cycle(self) -> DrainReport:
        repaired = self.recovery.run()
        report = await self.drain_failed()
        report.repaired = repaired
        return report

    async def drain_failed(
        self,
        max_batch: Optional[int] = None,
        max_age: Optional[timedelta] = None,
        max_attempts: Optional[int] = None,
    ) -> DrainReport:
        """
        Re-drive failed settlement steps. Each row is claimed with a conditional update
        before it is retried, so two supervisors never work the same row.
        """
        max_batch = max_batch if max_batch is not None else self.config.retry_max_batch
        max_age = max_age if max_age is not None else timedelta(hours=self.config.retry_max_age_hours)
        max_attempts = max_attempts if max_attempts is not None else self.config.retry_max_attempts

        with self.session_factory() as db:
            candidates = [
                (row.id, row.retry_count)
                for row in store.select_retryable(db, max_batch, utcnow() - max_age, max_attempts)
            ]
        report = DrainReport(selected=len(candidates))
        logger.info("Found %s failed attempts to retry", len(candidates))

        for index, (attempt_id, retry_count) in enumerate(candidates):
            if index:
                await asyncio.sleep(self.config.retry_delay_seconds)
            with self.session_factory() as db:
                if not store.acquire_attempt(db, attempt_id, retry_count):
                    report.skipped += 1
                    continue
                attempt = db.get(models.FailedAttempt, attempt_id)
                db.expunge(attempt)

            try:
                status = await self._redrive(attempt)
            except Exception as exc:  # noqa: BLE001
                status = self._record_retry_failure(attempt, exc, max_attempts)
                if status == ABANDONED:
                    report.abandoned += 1
                else:
                    report.failed += 1
                continue

            self._finish(attempt.id, status)
            if status == RESOLVED:
                report.resolved += 1
            else:
                report.abandoned += 1

        logger.info(
            "Retry pass completed: resolved=%s failed=%s abandoned=%s skipped=%s",
            report.resolved,
            report.failed,
            report.abandoned,
            report.skipped,
        )
        return report

    async def _redrive(self, attempt: models.FailedAttempt) -> AttemptStatus:
        logger.info(
            "Retrying %s for player=%s game=%s attempt=%s",
            attempt.kind,
            attempt.player_id,
            attempt.game_session_id,
            attempt.retry_count,
        )
        if attempt.kind == AttemptKind.RECONCILIATION.value:
            return self._redrive_reconciliation(attempt)

        with self.session_factory() as db:
            reward = store.get_reward_by_session(db, attempt.game_session_id) if attempt.game_session_id else None
            reward_id = reward.id if reward else None

        if reward_id is None:
            if attempt.kind != AttemptKind.SETTLEMENT.value or not attempt.payload:
                logger.warning("Originating match not found, abandoning attempt %s", attempt.id)
                return ABANDONED
            try:
                reward_id = self.coordinator.create_reward(MatchOutcome.model_validate(attempt.payload)).id
            except SkipReward as exc:
                logger.info("Settlement retry has nothing to reward: attempt=%s reason=%s", attempt.id, exc)
                return RESOLVED

        self.coordinator.ensure_pending_credit(reward_id)
        if attempt.transaction_ref:
            self.coordinator.attach_transaction(reward_id, SubmitReceipt(tx_ref=attempt.transaction_ref))
        else:
            await self.coordinator.submit_reward(reward_id)
        return RESOLVED

    def _redrive_reconciliation(self, attempt: models.FailedAttempt) -> AttemptStatus:
        record_id = attempt.event_record_id
        if record_id is None:
            if not attempt.payload:
                return ABANDONED
            event = LedgerEvent.model_validate(attempt.payload)
            with self.session_factory() as db:
                record = store.get_event(db, event) or store.insert_event(db, event)
                record_id = record.id if record else None
            if record_id is None:
                return ABANDONED
        self.reconciler.apply_event(record_id)
        return RESOLVED

    def _finish(self, attempt_id: int, status: AttemptStatus) -> None:
        with self.session_factory() as db:
            attempt = db.get(models.FailedAttempt, attempt_id)
            attempt.status = status.value
            attempt.last_attempt_at = utcnow()
            if status == RESOLVED:
                attempt.resolved_at = utcnow()
            db.commit()
        logger.info("Failed attempt %s marked %s", attempt_id, status.value)

    def _record_retry_failure(self, attempt: models.FailedAttempt, exc: Exception, max_attempts: int) -> AttemptStatus:
        exhausted = attempt.retry_count >= max_attempts
        status = ABANDONED if exhausted else AttemptStatus.PENDING
        logger.error("Retry failed for attempt %s: %s", attempt.id, exc)
        with self.session_factory() as db:
            row = db.get(models.FailedAttempt, attempt.id)
            row.error = str(exc) or exc.__class__.__name__
            row.last_attempt_at = utcnow()
            row.status = status.value
            tx_ref = getattr(exc, "tx_ref", None)
            if tx_ref:
                row.transaction_ref = tx_ref
            if exhausted and attempt.game_session_id:
                reward = store.get_reward_by_session(db, attempt.game_session_id)
                if reward is not None and not reward.confirmed and not reward.transaction_ref:
                    reward.state = RewardState.ABANDONED.value
            db.commit()
        if exhausted:
            emit(
                RETRY_EXHAUSTED,
                attempt_id=attempt.id,
                kind=attempt.kind,
                player=attempt.player_id,
                game_session_id=attempt.game_session_id,
                retries=attempt.retry_count,
                error=exc,
            )
        return status
