import asyncio
from datetime import timedelta

from sqlalchemy.exc import OperationalError

from conftest import WEI, make_event, outcome
from rewardhub import db as store
from rewardhub.config import AttemptKind, AttemptStatus, RewardState
from rewardhub.errors import (
    INITIAL_ATTEMPT_STATUS,
    classify,
    ContractViolation,
    ErrorKind,
    LedgerError,
    SkipReward,
    UnconfirmedSubmission,
)
from rewardhub.helpers import utcnow
from rewardhub.models import models
from rewardhub.queries import get_balance
from rewardhub.schemas.app_schemas import MatchOutcome


def drain(supervisor, **kwargs):
    return asyncio.run(supervisor.drain_failed(**kwargs))


def only_attempt(session_factory):
    with session_factory() as db:
        attempt = db.query(models.FailedAttempt).one()
        db.expunge(attempt)
    return attempt


# Scenario D: three failed retries abandon the attempt without touching the pending credit.
def test_retries_exhaust_then_abandon(settle, supervisor, session_factory, gateway):
    gateway.failures = 100
    reward_id = settle()

    for expected in (1, 2):
        report = drain(supervisor)
        assert report.selected == 1
        assert report.failed == 1
        attempt = only_attempt(session_factory)
        assert attempt.retry_count == expected
        assert attempt.status == AttemptStatus.PENDING.value

    report = drain(supervisor)
    assert report.abandoned == 1
    attempt = only_attempt(session_factory)
    assert attempt.retry_count == 3
    assert attempt.status == AttemptStatus.ABANDONED.value
    assert "ledger node unavailable" in attempt.error

    assert drain(supervisor).selected == 0
    with session_factory() as db:
        assert db.get(models.RewardRecord, reward_id).state == RewardState.ABANDONED.value
        assert get_balance(db, "u1").pending == 10 * WEI
    assert gateway.submissions == []


def test_retry_submits_and_resolves(settle, supervisor, session_factory, gateway):
    gateway.failures = 1
    gateway.next_refs = ["0xretry"]
    reward_id = settle()

    report = drain(supervisor)

    assert report.resolved == 1
    attempt = only_attempt(session_factory)
    assert attempt.status == AttemptStatus.RESOLVED.value
    assert attempt.resolved_at is not None
    with session_factory() as db:
        reward = db.get(models.RewardRecord, reward_id)
        assert reward.transaction_ref == "0xretry"
        assert reward.state == RewardState.PENDING_SUBMITTED.value
        assert db.query(models.PendingEntry).one().ref == "0xretry"
    assert len(gateway.submissions) == 1


def test_unrecorded_submission_is_attached_not_resent(coordinator, supervisor, session_factory, gateway, monkeypatch):
    gateway.next_refs = ["0xsent"]

    def broken(reward_id, receipt):
        raise OperationalError("UPDATE reward_records", {}, Exception("disk I/O error"))

    monkeypatch.setattr(coordinator, "attach_transaction", broken)

    async def run():
        await coordinator.settle(outcome())
        await coordinator.wait_for_submissions()

    asyncio.run(run())
    attempt = only_attempt(session_factory)
    assert attempt.transaction_ref == "0xsent"
    assert attempt.status == AttemptStatus.PENDING.value

    monkeypatch.undo()
    assert drain(supervisor).resolved == 1
    with session_factory() as db:
        assert store.get_reward_by_session(db, "g1").transaction_ref == "0xsent"
    assert len(gateway.submissions) == 1


# The transaction went out but its receipt wait failed: the retry attaches the ref instead of paying twice.
def test_unconfirmed_submission_is_attached_not_resent(
    settle, supervisor, reconciler, session_factory, gateway, monkeypatch
):
    gateway.next_refs = ["0xsent"]
    real_submit = gateway.submit

    async def receipt_lost(method, args, fee):
        receipt = await real_submit(method, args, fee)
        raise UnconfirmedSubmission(receipt.tx_ref, asyncio.TimeoutError("receipt wait timed out"))

    monkeypatch.setattr(gateway, "submit", receipt_lost)
    reward_id = settle()
    attempt = only_attempt(session_factory)
    assert attempt.transaction_ref == "0xsent"
    assert attempt.error_kind == "transient"
    assert attempt.status == AttemptStatus.PENDING.value

    monkeypatch.setattr(gateway, "submit", real_submit)
    assert drain(supervisor).resolved == 1
    assert asyncio.run(reconciler.handle_event(make_event("0xsent"))) is True

    assert len(gateway.submissions) == 1
    with session_factory() as db:
        reward = db.get(models.RewardRecord, reward_id)
        assert reward.transaction_ref == "0xsent"
        assert reward.confirmed is True
        view = get_balance(db, "u1")
        assert view.confirmed == 10 * WEI
        assert view.pending == 0


# A gateway failing with something other than LedgerError (e.g. an HTTP 502 from the node) is still retried.
def test_unexpected_gateway_failure_is_transient(settle, supervisor, session_factory, gateway, monkeypatch):
    real_submit = gateway.submit

    async def bad_gateway(method, args, fee):
        raise RuntimeError("502 Bad Gateway from rpc node")

    monkeypatch.setattr(gateway, "submit", bad_gateway)
    reward_id = settle()
    attempt = only_attempt(session_factory)
    assert attempt.kind == AttemptKind.SUBMISSION.value
    assert attempt.error_kind == "transient"
    assert attempt.status == AttemptStatus.PENDING.value
    assert attempt.retry_count == 0

    monkeypatch.setattr(gateway, "submit", real_submit)
    report = drain(supervisor)
    assert report.selected == 1
    assert report.resolved == 1
    with session_factory() as db:
        assert db.get(models.RewardRecord, reward_id).transaction_ref is not None
    assert len(gateway.submissions) == 1


def test_settlement_retry_rebuilds_missing_reward(coordinator, supervisor, session_factory, gateway, monkeypatch):
    real_insert = store.insert_reward

    def unavailable(db, **fields):
        raise OperationalError("INSERT INTO reward_records", {}, Exception("database is locked"))

    monkeypatch.setattr(store, "insert_reward", unavailable)
    assert asyncio.run(coordinator.settle(outcome())) is None
    monkeypatch.setattr(store, "insert_reward", real_insert)

    async def run():
        report = await supervisor.drain_failed()
        await coordinator.wait_for_submissions()
        return report

    assert asyncio.run(run()).resolved == 1
    with session_factory() as db:
        reward = store.get_reward_by_session(db, "g1")
        assert reward.transaction_ref is not None
        assert get_balance(db, "u1").pending == 10 * WEI
    assert len(gateway.submissions) == 1


def test_reconciliation_retry_applies_event(reconciler, supervisor, session_factory, monkeypatch):
    def unavailable(db, transaction_ref):
        raise OperationalError("SELECT reward_records", {}, Exception("database is locked"))

    monkeypatch.setattr(store, "get_reward_by_ref", unavailable)
    assert asyncio.run(reconciler.handle_event(make_event("0xlocked"))) is False
    monkeypatch.undo()

    assert drain(supervisor).resolved == 1
    with session_factory() as db:
        assert db.query(models.LedgerEventRecord).one().processed is True
        assert store.find_balance(db, wallet="0xabc").confirmed_amount == 10 * WEI


def test_old_attempts_are_not_retried(settle, supervisor, session_factory, gateway):
    gateway.failures = 1
    settle()
    with session_factory() as db:
        attempt = db.query(models.FailedAttempt).one()
        attempt.first_attempt_at = utcnow() - timedelta(days=2)
        db.commit()

    assert drain(supervisor).selected == 0
    assert drain(supervisor, max_age=timedelta(days=3)).resolved == 1


def test_acquire_is_exclusive(settle, session_factory, gateway):
    gateway.failures = 1
    settle()
    attempt = only_attempt(session_factory)

    with session_factory() as db:
        assert store.acquire_attempt(db, attempt.id, attempt.retry_count) is True
        assert store.acquire_attempt(db, attempt.id, attempt.retry_count) is False

    attempt = only_attempt(session_factory)
    assert attempt.status == AttemptStatus.RETRYING.value
    assert attempt.retry_count == 1


def test_error_classification():
    assert classify(SkipReward("no wallet")) == ErrorKind.SKIP
    assert classify(OperationalError("SELECT 1", {}, Exception("locked"))) == ErrorKind.TRANSIENT
    assert classify(asyncio.TimeoutError()) == ErrorKind.TRANSIENT
    assert classify(ContractViolation("bad amount")) == ErrorKind.FATAL
    assert classify(KeyError("player")) == ErrorKind.FATAL
    assert classify(UnconfirmedSubmission("0xsent", asyncio.TimeoutError())) == ErrorKind.TRANSIENT
    assert isinstance(UnconfirmedSubmission("0xsent", asyncio.TimeoutError()), LedgerError)
    assert set(INITIAL_ATTEMPT_STATUS) == set(ErrorKind)


# Recovery: state a crash can leave between steps.
def test_recovery_credits_reward_without_pending_entry(coordinator, supervisor, session_factory):
    coordinator.create_reward(MatchOutcome.model_validate(outcome()))

    assert supervisor.recovery.repair_orphaned_rewards() == 1
    assert supervisor.recovery.repair_orphaned_rewards() == 0
    with session_factory() as db:
        assert get_balance(db, "u1").pending == 10 * WEI


def test_recovery_queues_stalled_submission(coordinator, supervisor, session_factory, gateway):
    reward = coordinator.create_reward(MatchOutcome.model_validate(outcome()))
    coordinator.ensure_pending_credit(reward.id)

    assert supervisor.recovery.enqueue_stalled_submissions() == 1
    assert supervisor.recovery.enqueue_stalled_submissions() == 0
    attempt = only_attempt(session_factory)
    assert attempt.kind == AttemptKind.SUBMISSION.value
    assert attempt.error_kind == ErrorKind.INCONSISTENCY.value

    assert drain(supervisor).resolved == 1
    with session_factory() as db:
        assert db.get(models.RewardRecord, reward.id).transaction_ref is not None
    assert len(gateway.submissions) == 1


def test_recovery_replays_recorded_event(supervisor, session_factory):
    with session_factory() as db:
        store.insert_event(db, make_event("0xcrash"))

    assert supervisor.recovery.replay_unprocessed_events() == 1
    assert supervisor.recovery.replay_unprocessed_events() == 0
    with session_factory() as db:
        assert db.query(models.LedgerEventRecord).one().processed is True
        assert store.find_balance(db, wallet="0xabc").confirmed_amount == 10 * WEI


def test_run_cycle_reports_repairs(coordinator, supervisor, session_factory):
    coordinator.create_reward(MatchOutcome.model_validate(outcome()))

    async def run():
        report = await supervisor.run_cycle()
        await coordinator.wait_for_submissions()
        return report

    report = asyncio.run(run())
    # Pending credit repaired and the submission queued, then drained in the same cycle.
    assert report.repaired == 2
    assert report.resolved == 1
    with session_factory() as db:
        assert get_balance(db, "u1").pending == 10 * WEI
        assert store.get_reward_by_session(db, "g1").transaction_ref is not None
