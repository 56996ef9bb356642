from datetime import datetime, timezone
from typing import Optional

from rewardhub.amount import units_to_coins
from rewardhub.models import models


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_wallet(wallet: Optional[str]) -> Optional[str]:
    if wallet is None:
        return None
    wallet = wallet.strip().lower()
    return wallet or None


def placeholder_ref(reward_id: int) -> str:
    return f"pending-{reward_id}"


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def serialize_reward(record: models.RewardRecord) -> dict:
    return {
        "gameSessionId": record.game_session_id,
        "winnerId": record.winner_id,
        "winnerWallet": record.winner_wallet,
        "matchType": record.match_type,
        "amount": str(record.amount),
        "rewardCoins": units_to_coins(record.amount),
        "gameResult": record.game_result,
        "gameEndTime": _iso(record.game_end_time),
        "confirmed": record.confirmed,
        "state": record.state,
        "transactionRef": record.transaction_ref,
        "blockHeight": record.block_height,
        "rewardSentAt": _iso(record.reward_sent_at),
        "confirmedAt": _iso(record.confirmed_at),
    }


def serialize_pending_entry(entry: models.PendingEntry) -> dict:
    return {
        "ref": entry.ref,
        "amount": str(entry.amount),
        "matchType": entry.match_type,
        "status": entry.status,
        "createdAt": _iso(entry.created_at),
        "blockHeight": entry.block_height,
    }


def serialize_failed_attempt(record: models.FailedAttempt) -> dict:
    return {
        "id": record.id,
        "playerId": record.player_id,
        "walletAddress": record.wallet_address,
        "kind": record.kind,
        "errorKind": record.error_kind,
        "amount": str(record.amount),
        "gameSessionId": record.game_session_id,
        "transactionRef": record.transaction_ref,
        "error": record.error,
        "retryCount": record.retry_count,
        "status": record.status,
        "firstAttemptAt": _iso(record.first_attempt_at),
        "lastAttemptAt": _iso(record.last_attempt_at),
    }
