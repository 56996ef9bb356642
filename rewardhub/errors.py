import asyncio
from enum import Enum

import httpx
from sqlalchemy.exc import SQLAlchemyError

from rewardhub.config import AttemptStatus


class ErrorKind(str, Enum):
    SKIP = "skip"
    TRANSIENT = "transient"
    INCONSISTENCY = "inconsistency"
    FATAL = "fatal"


class RewardHubError(Exception):
    kind = ErrorKind.FATAL


class SkipReward(RewardHubError):
    """Not an error: the match produces no reward (no wallet, duplicate session)."""
    kind = ErrorKind.SKIP


class LedgerError(RewardHubError):
    kind = ErrorKind.TRANSIENT


class BalanceConflictError(RewardHubError):
    kind = ErrorKind.TRANSIENT


class InconsistencyError(RewardHubError):
    kind = ErrorKind.INCONSISTENCY


class UnrecordedSubmission(RewardHubError):
    """The ledger accepted the transaction but recording its reference failed."""
    kind = ErrorKind.TRANSIENT

    def __init__(self, tx_ref: str, block_height, cause: BaseException):
        super().__init__(f"transaction {tx_ref} sent but not recorded: {cause}")
        self.tx_ref = tx_ref
        self.block_height = block_height


class UnconfirmedSubmission(LedgerError):
    """The transaction was broadcast but its receipt was not observed."""

    def __init__(self, tx_ref: str, cause: BaseException):
        super().__init__(f"transaction {tx_ref} sent but receipt not observed: {cause}")
        self.tx_ref = tx_ref
        self.block_height = None


class ContractViolation(RewardHubError, ValueError):
    kind = ErrorKind.FATAL


def classify(exc: BaseException) -> ErrorKind:
    if isinstance(exc, RewardHubError):
        return exc.kind
    if isinstance(exc, (SQLAlchemyError, httpx.HTTPError, asyncio.TimeoutError, OSError)):
        return ErrorKind.TRANSIENT
    return ErrorKind.FATAL


# Status a FailedAttempt starts in, per error kind.
INITIAL_ATTEMPT_STATUS = {
    ErrorKind.SKIP: AttemptStatus.RESOLVED,
    ErrorKind.TRANSIENT: AttemptStatus.PENDING,
    ErrorKind.INCONSISTENCY: AttemptStatus.PENDING,
    ErrorKind.FATAL: AttemptStatus.ABANDONED,
}
_unmapped = set(ErrorKind) - set(INITIAL_ATTEMPT_STATUS)
if _unmapped:
    raise RuntimeError(f"no initial attempt status for {sorted(kind.value for kind in _unmapped)}")
