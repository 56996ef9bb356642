import asyncio
import csv
from io import StringIO
from typing import List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session

from rewardhub import db as store
from rewardhub.clients.ledger_client import LedgerGateway
from rewardhub.config import AttemptKind, PendingStatus, RewardState, Settings, settings as default_settings
from rewardhub.contracts.contracts import LedgerEvent
from rewardhub.errors import ContractViolation, InconsistencyError, classify
from rewardhub.helpers import utcnow
from rewardhub.logging_config import BALANCE_CORRECTED, REWARD_CONFIRMED, emit, get_logger
from rewardhub.models import models

logger = get_logger(__name__)


class ConfirmationReconciler:
    """
    Consumes ledger events and promotes matching pending entries to confirmed.

    Every event is first written to the event log (the idempotency barrier) and
    only then applied; the balance, reward and processed flag change in one commit,
    so an event that is recorded but not processed can be replayed safely.
    """

    def __init__(self, session_factory, gateway: LedgerGateway, config: Optional[Settings] = None):
        self.session_factory = session_factory
        self.gateway = gateway
        self.config = config or default_settings

    def resume_block(self) -> int:
        """
        First block to read after a (re)subscribe. Inclusive: the dedup key absorbs repeats.
        """
        with self.session_factory() as db:
            last_event = db.query(func.max(models.LedgerEventRecord.block_height)).scalar()
            last_synced = db.query(func.max(models.PlayerBalance.last_synced_block)).scalar()
        return max(b for b in (last_event, last_synced, self.config.start_block) if b is not None)

    async def run(self) -> None:
        backoff = self.config.subscription_backoff_seconds
        while True:
            from_block = self.resume_block()
            logger.info("Subscribing to %s events from block %s", self.config.event_name, from_block)
            try:
                async for event in self.gateway.subscribe(self.config.event_name, from_block):
                    await self.handle_event(event)
            except asyncio.CancelledError:
                logger.info("Event subscription cancelled")
                raise
            except Exception as exc:  # noqa: BLE001
                logger.warning("Event subscription dropped: error=%s resubscribe_in=%ss", exc, backoff)
            await asyncio.sleep(backoff)

    async def handle_event(self, event: LedgerEvent) -> bool:
        """
        Apply one ledger event. Returns True if it was applied now, False if skipped or failed.
        Never raises, so one bad event cannot stall the stream.
        """
        try:
            with self.session_factory() as db:
                if store.get_event(db, event):
                    logger.info("Event already seen, skipping: tx=%s logIndex=%s", event.tx_ref, event.log_index)
                    return False
                record = store.insert_event(db, event)
                if record is None:
                    logger.info("Event recorded concurrently, skipping: tx=%s", event.tx_ref)
                    return False
                record_id = record.id
        except Exception as exc:  # noqa: BLE001
            self._record_failure(exc, event=event)
            return False

        try:
            self.apply_event(record_id)
        except Exception as exc:  # noqa: BLE001
            self._record_failure(exc, event=event, record_id=record_id)
            return False
        return True

    def apply_event(self, record_id: int) -> bool:
        """
        Promote (or directly credit) the balance for a recorded event and mark it processed.
        Returns False if the record was already processed.
        """

        def mutate(db: Session) -> Optional[dict]:
            record = db.get(models.LedgerEventRecord, record_id)
            if record is None:
                raise InconsistencyError(f"event record {record_id} not found")
            if record.processed:
                return None
            reward = store.get_reward_by_ref(db, record.transaction_ref)
            balance = self._load_balance(db, record, reward)
            promoted = self._credit(balance, record, reward)
            balance.last_synced_block = max(balance.last_synced_block or 0, record.block_height)
            balance.last_updated = utcnow()

            if reward is not None:
                reward.confirmed = True
                reward.state = RewardState.CONFIRMED.value
                reward.block_height = record.block_height
                reward.confirmed_at = utcnow()
            else:
                logger.warning("No reward record for confirmed transaction: tx=%s", record.transaction_ref)

            record.processed = True
            record.processed_at = utcnow()
            record.error = None
            return {
                "tx": record.transaction_ref,
                "wallet": record.player_address,
                "amount": record.amount,
                "block": record.block_height,
                "promoted": promoted,
            }

        snapshot = store.update_balance(self.session_factory, mutate, self.config.balance_update_attempts)
        if snapshot is None:
            return False
        emit(REWARD_CONFIRMED, **snapshot)
        return True

    def _load_balance(
        self, db: Session, record: models.LedgerEventRecord, reward: Optional[models.RewardRecord]
    ) -> models.PlayerBalance:
        balance = store.find_balance(db, wallet=record.player_address)
        if balance is None and reward is not None:
            balance = store.find_balance(db, player_id=reward.winner_id)
        if balance is None:
            logger.warning("No balance row for wallet %s, creating one from ledger event", record.player_address)
            balance = models.PlayerBalance(
                player_id=reward.winner_id if reward else None,
                wallet_address=record.player_address,
                confirmed_amount=0,
                pending_amount=0,
                last_synced_block=0,
            )
            db.add(balance)
        return balance

    def _credit(
        self,
        balance: models.PlayerBalance,
        record: models.LedgerEventRecord,
        reward: Optional[models.RewardRecord],
    ) -> bool:
        entry = store.find_pending_entry(
            balance, record.transaction_ref, reward_id=reward.id if reward is not None else None
        )
        balance.confirmed_amount = (balance.confirmed_amount or 0) + record.amount
        if entry is None:
            logger.warning(
                "No pending entry for tx=%s wallet=%s, crediting confirmed directly",
                record.transaction_ref,
                record.player_address,
            )
            return False
        if entry.amount != record.amount:
            logger.warning(
                "Ledger amount differs from pending entry: tx=%s pending=%s ledger=%s",
                record.transaction_ref,
                entry.amount,
                record.amount,
            )
        if balance.pending_amount < entry.amount:
            logger.warning("Pending amount below entry amount for wallet %s, clamping at zero", balance.wallet_address)
        balance.pending_amount = max((balance.pending_amount or 0) - entry.amount, 0)
        entry.ref = record.transaction_ref
        entry.status = PendingStatus.CONFIRMED.value
        entry.block_height = record.block_height
        return True

    def _record_failure(self, exc: Exception, event: LedgerEvent, record_id: Optional[int] = None) -> None:
        logger.error("Failed to reconcile event tx=%s logIndex=%s: %s", event.tx_ref, event.log_index, exc)
        try:
            wallet = event.player
        except ContractViolation:
            wallet = None
        try:
            amount = event.amount
        except ContractViolation:
            amount = 0
        try:
            with self.session_factory() as db:
                if record_id is not None:
                    record = db.get(models.LedgerEventRecord, record_id)
                    if record is not None:
                        record.error = str(exc)
                        db.commit()
                store.record_failed_attempt(
                    db,
                    kind=AttemptKind.RECONCILIATION.value,
                    exc=exc,
                    wallet=wallet,
                    amount=amount,
                    transaction_ref=event.tx_ref,
                    event_record_id=record_id,
                    payload=event.model_dump(mode="json"),
                )
        except Exception:  # noqa: BLE001
            logger.exception("Could not record failed reconciliation: tx=%s kind=%s", event.tx_ref, classify(exc).value)


def _audit_rows(db: Session) -> List[models.PlayerBalance]:
    return db.query(models.PlayerBalance).order_by(models.PlayerBalance.id).all()


async def audit_balances(session_factory, gateway: LedgerGateway, apply: bool = False) -> Tuple[str, int]:
    """
    Compare cached confirmed balances with the ledger's balanceOf and return CSV text plus mismatch count.
    With apply=True the cached confirmed amount is corrected to the ledger value.
    """
    with session_factory() as db:
        balances = [(b.id, b.player_id, b.wallet_address, b.confirmed_amount) for b in _audit_rows(db)]

    mismatches: List[tuple] = []
    for balance_id, player_id, wallet, confirmed in balances:
        on_ledger = await gateway.balance_of(wallet)
        if on_ledger == confirmed:
            continue
        mismatches.append((player_id, wallet, confirmed, on_ledger, on_ledger - confirmed))
        if apply:
            _apply_correction(session_factory, balance_id, on_ledger)

    logger.info("Ledger audit complete with %s mismatches", len(mismatches))
    output = StringIO()
    writer = csv.writer(output)
    writer.writerow(["playerId", "wallet", "confirmed", "onLedger", "difference"])
    for row in mismatches:
        writer.writerow(row)
    return output.getvalue(), len(mismatches)


def _apply_correction(session_factory, balance_id: int, on_ledger: int) -> None:
    def mutate(db: Session) -> dict:
        balance = db.get(models.PlayerBalance, balance_id)
        old_amount = balance.confirmed_amount
        balance.corrections.append(
            models.BalanceCorrection(
                old_amount=old_amount,
                new_amount=on_ledger,
                block_height=balance.last_synced_block,
                created_at=utcnow(),
            )
        )
        balance.confirmed_amount = on_ledger
        balance.sync_error = None
        balance.last_updated = utcnow()
        return {"player": balance.player_id, "wallet": balance.wallet_address, "old": old_amount, "new": on_ledger}

    snapshot = store.update_balance(session_factory, mutate)
    emit(BALANCE_CORRECTED, **snapshot)
