import asyncio
from typing import Optional, Union

from pydantic import ValidationError
from sqlalchemy.orm import Session

from rewardhub import db as store
from rewardhub.amount import coins_to_units
from rewardhub.clients.ledger_client import LedgerGateway
from rewardhub.clients.notify_client import BalanceNotifier
from rewardhub.config import (
    AttemptKind,
    MatchType,
    PendingStatus,
    RewardState,
    Settings,
    ledger_method_map,
    settings as default_settings,
)
from rewardhub.contracts.contracts import SubmitReceipt
from rewardhub.errors import (
    ContractViolation,
    InconsistencyError,
    LedgerError,
    RewardHubError,
    SkipReward,
    UnrecordedSubmission,
    classify,
)
from rewardhub.helpers import normalize_wallet, placeholder_ref, utcnow
from rewardhub.logging_config import BALANCE_UPDATED, REWARD_CREATED, SETTLEMENT_FAILED, emit, get_logger
from rewardhub.models import models
from rewardhub.queries import get_balance
from rewardhub.schemas.app_schemas import MatchOutcome

logger = get_logger(__name__)


class SettlementCoordinator:
    """
    Turns a finished match into a reward record, an optimistic pending credit and,
    in the background, a ledger transaction.

    settle() never raises: skips are logged, failures become FailedAttempt rows
    that the retry supervisor re-drives.
    """

    def __init__(
        self,
        session_factory,
        gateway: LedgerGateway,
        notifier: Optional[BalanceNotifier] = None,
        config: Optional[Settings] = None,
    ):
        self.session_factory = session_factory
        self.gateway = gateway
        self.notifier = notifier
        self.config = config or default_settings
        self._tasks: set[asyncio.Task] = set()

    def reward_amount(self, match_type: Union[MatchType, str]) -> int:
        match_type = MatchType(match_type)
        coins = self.config.reward_schedule.get(match_type.value)
        if coins is None:
            raise ContractViolation(f"no reward configured for match type {match_type.value}")
        return coins_to_units(coins, self.config.coin_decimals)

    async def settle(self, outcome: Union[MatchOutcome, dict]) -> Optional[int]:
        """
        Settle one finished match. Returns the reward id, or None when nothing was rewarded.
        """
        try:
            outcome = MatchOutcome.model_validate(outcome)
        except ValidationError as exc:
            self._record_settlement_failure(None, ContractViolation(str(exc)))
            return None

        try:
            reward = self.create_reward(outcome)
        except SkipReward as exc:
            logger.info("Skipping reward: gameSessionId=%s reason=%s", outcome.gameSessionId, exc)
            return None
        except Exception as exc:  # noqa: BLE001
            self._record_settlement_failure(outcome, exc)
            return None

        try:
            self.ensure_pending_credit(reward.id)
        except Exception as exc:  # noqa: BLE001
            self._record_settlement_failure(outcome, exc)
            return reward.id

        self._notify(reward)
        self._spawn(self._submit_in_background(reward.id))
        return reward.id

    def create_reward(self, outcome: MatchOutcome) -> models.RewardRecord:
        if not outcome.gameSessionId or not outcome.winnerId:
            raise ContractViolation("gameSessionId and winnerId are required")
        with self.session_factory() as db:
            if store.get_reward_by_session(db, outcome.gameSessionId):
                raise SkipReward("game already rewarded")
            wallet = normalize_wallet(outcome.walletAddress)
            if not wallet:
                raise SkipReward(f"winner {outcome.winnerId} has no wallet address")
            amount = self.reward_amount(outcome.matchType)
            reward = store.insert_reward(
                db,
                game_session_id=outcome.gameSessionId,
                winner_id=outcome.winnerId,
                winner_wallet=wallet,
                match_type=MatchType(outcome.matchType).value,
                amount=amount,
                game_result=outcome.result,
                game_end_time=outcome.gameEndTime or utcnow(),
                confirmed=False,
                state=RewardState.PENDING_UNCOMMITTED.value,
                created_at=utcnow(),
            )
            db.expunge(reward)
        emit(
            REWARD_CREATED,
            reward_id=reward.id,
            game_session_id=reward.game_session_id,
            player=reward.winner_id,
            amount=reward.amount,
            match_type=reward.match_type,
        )
        return reward

    def ensure_pending_credit(self, reward_id: int) -> bool:
        """
        Apply the optimistic pending credit for a reward unless it already has a pending entry.
        Returns True when a credit was applied.
        """

        def mutate(db: Session) -> Optional[dict]:
            reward = db.get(models.RewardRecord, reward_id)
            if reward is None:
                raise InconsistencyError(f"reward {reward_id} not found")
            if reward.confirmed:
                return None
            if db.query(models.PendingEntry).filter_by(reward_id=reward_id).first():
                return None
            balance = store.apply_pending_credit(db, reward)
            db.flush()
            return {
                "player": reward.winner_id,
                "pending": balance.pending_amount,
                "confirmed": balance.confirmed_amount,
                "version": balance.version,
            }

        snapshot = store.update_balance(self.session_factory, mutate, self.config.balance_update_attempts)
        if snapshot is None:
            return False
        emit(BALANCE_UPDATED, **snapshot)
        return True

    async def submit_reward(self, reward_id: int) -> str:
        """
        Submit the reward to the ledger and record its transaction reference. Raises on failure.
        """
        with self.session_factory() as db:
            reward = db.get(models.RewardRecord, reward_id)
            if reward is None:
                raise InconsistencyError(f"reward {reward_id} not found")
            if reward.transaction_ref:
                return reward.transaction_ref
            method = ledger_method_map[MatchType(reward.match_type)]
            wallet = reward.winner_wallet

        try:
            fee = await self.gateway.estimate_fee(method, [wallet])
            receipt = await self.gateway.submit(method, [wallet], fee)
        except RewardHubError:
            raise
        except Exception as exc:
            # Any gateway failure counts as transient.
            raise LedgerError(f"ledger call {method} failed: {exc!r}") from exc
        logger.info("Reward transaction sent: reward_id=%s tx=%s", reward_id, receipt.tx_ref)
        try:
            self.attach_transaction(reward_id, receipt)
        except Exception as exc:  # noqa: BLE001
            raise UnrecordedSubmission(receipt.tx_ref, receipt.block_height, exc) from exc
        return receipt.tx_ref

    def attach_transaction(self, reward_id: int, receipt: SubmitReceipt) -> None:
        """
        Record the real transaction reference on the reward and rewrite the placeholder pending ref.
        """

        def mutate(db: Session) -> None:
            reward = db.get(models.RewardRecord, reward_id)
            if reward is None:
                raise InconsistencyError(f"reward {reward_id} not found")
            reward.transaction_ref = receipt.tx_ref
            reward.reward_sent_at = reward.reward_sent_at or utcnow()
            if receipt.block_height is not None and reward.block_height is None:
                reward.block_height = receipt.block_height
            if reward.state in (RewardState.PENDING_UNCOMMITTED.value, RewardState.ABANDONED.value):
                reward.state = RewardState.PENDING_SUBMITTED.value

            balance = store.find_balance(db, player_id=reward.winner_id, wallet=reward.winner_wallet)
            if balance is None:
                logger.warning("No balance row to attach transaction: reward_id=%s", reward_id)
                return
            entry = store.find_pending_entry(balance, placeholder_ref(reward_id), reward_id=reward_id)
            if entry is None:
                return
            entry.ref = receipt.tx_ref
            balance.last_updated = utcnow()

            # The confirmation event may have been reconciled before we got here; it credited
            # confirmed directly, so only the pending side is left to settle.
            seen = (
                db.query(models.LedgerEventRecord)
                .filter_by(transaction_ref=receipt.tx_ref, processed=True)
                .first()
            )
            if seen is not None:
                balance.pending_amount = max(balance.pending_amount - entry.amount, 0)
                entry.status = PendingStatus.CONFIRMED.value
                entry.block_height = seen.block_height
                reward.confirmed = True
                reward.state = RewardState.CONFIRMED.value
                reward.confirmed_at = reward.confirmed_at or utcnow()
                reward.block_height = seen.block_height
                logger.info("Late attach settled already-confirmed reward: reward_id=%s", reward_id)

        store.update_balance(self.session_factory, mutate, self.config.balance_update_attempts)

    async def _submit_in_background(self, reward_id: int) -> None:
        try:
            await self.submit_reward(reward_id)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Ledger submission failed, queued for retry: reward_id=%s error=%s", reward_id, exc)
            self._record_submission_failure(reward_id, exc)

    def _record_submission_failure(self, reward_id: int, exc: Exception) -> None:
        try:
            with self.session_factory() as db:
                reward = db.get(models.RewardRecord, reward_id)
                store.record_failed_attempt(
                    db,
                    kind=AttemptKind.SUBMISSION.value,
                    exc=exc,
                    player_id=reward.winner_id if reward else None,
                    wallet=reward.winner_wallet if reward else None,
                    amount=reward.amount if reward else 0,
                    game_session_id=reward.game_session_id if reward else None,
                    transaction_ref=getattr(exc, "tx_ref", None),
                )
        except Exception:  # noqa: BLE001
            logger.exception("Could not record failed submission: reward_id=%s", reward_id)
        emit(SETTLEMENT_FAILED, reward_id=reward_id, stage="submission", error_kind=classify(exc).value, error=exc)

    def _record_settlement_failure(self, outcome: Optional[MatchOutcome], exc: Exception) -> None:
        logger.error(
            "Settlement failed: gameSessionId=%s error=%s",
            outcome.gameSessionId if outcome else None,
            exc,
        )
        try:
            with self.session_factory() as db:
                store.record_failed_attempt(
                    db,
                    kind=AttemptKind.SETTLEMENT.value,
                    exc=exc,
                    player_id=outcome.winnerId if outcome else None,
                    wallet=outcome.walletAddress if outcome else None,
                    game_session_id=outcome.gameSessionId if outcome else None,
                    payload=outcome.model_dump(mode="json") if outcome else None,
                )
        except Exception:  # noqa: BLE001
            logger.exception("Could not record failed settlement")
        emit(
            SETTLEMENT_FAILED,
            game_session_id=outcome.gameSessionId if outcome else None,
            stage="settlement",
            error_kind=classify(exc).value,
            error=exc,
        )

    def _notify(self, reward: models.RewardRecord) -> None:
        if self.notifier is None:
            return
        try:
            with self.session_factory() as db:
                view = get_balance(db, reward.winner_id)
            balance = {
                "confirmed": str(view.confirmed),
                "pending": str(view.pending),
                "total": str(view.total),
                "pendingCount": view.pending_count,
            }
            reward_info = {"amount": str(reward.amount), "matchType": reward.match_type, "isPending": True}
            self._spawn(self.notifier.balance_changed(reward.winner_id, balance, reward_info))
        except Exception:  # noqa: BLE001
            logger.exception("Balance notification skipped: player=%s", reward.winner_id)

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def wait_for_submissions(self, timeout: Optional[float] = None) -> None:
        """
        Wait until every background submission and notification has finished.
        """
        while self._tasks:
            pending = list(self._tasks)
            done, not_done = await asyncio.wait(pending, timeout=timeout)
            if not_done:
                logger.warning("Background tasks still running after %ss: count=%s", timeout, len(not_done))
                return
