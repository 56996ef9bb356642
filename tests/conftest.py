import asyncio
import os
import sys
import tempfile
from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

# Importing rewardhub.main creates tables on the configured engine; keep that out of the repo.
os.environ.setdefault("DB_URL", f"sqlite:///{Path(tempfile.mkdtemp()) / 'import.db'}")
os.environ.setdefault("RUN_EVENT_LISTENER", "false")
os.environ.setdefault("RUN_RETRY_SUPERVISOR", "false")

from rewardhub.clients.ledger_client import LedgerGateway  # noqa: E402
from rewardhub.config import Settings  # noqa: E402
from rewardhub.contracts.contracts import Fee, LedgerEvent, SubmitReceipt  # noqa: E402
from rewardhub.database import Base  # noqa: E402
from rewardhub.errors import LedgerError  # noqa: E402
from rewardhub.models import models  # noqa: E402,F401
from rewardhub.reconciliation import ConfirmationReconciler  # noqa: E402
from rewardhub.retry import RetrySupervisor  # noqa: E402
from rewardhub.settlement import SettlementCoordinator  # noqa: E402

WEI = 10 ** 18
CONTRACT = "0xC0FFEE0000000000000000000000000000000001"


class FakeLedgerGateway(LedgerGateway):
    """In-memory ledger: hands out transaction refs, can be told to fail, replays queued events."""

    def __init__(self):
        self.failures = 0
        self.next_refs: list[str] = []
        self.submissions: list[tuple] = []
        self.balances: dict[str, int] = {}
        self.events: list[LedgerEvent] = []
        self.subscribed_from: list[int] = []
        self.release: asyncio.Event | None = None
        self.closed = False

    async def estimate_fee(self, method, args):
        return Fee(gas_limit=60000, gas_price=1)

    async def submit(self, method, args, fee):
        if self.release is not None:
            await self.release.wait()
        if self.failures:
            self.failures -= 1
            raise LedgerError("ledger node unavailable")
        self.submissions.append((method, list(args)))
        tx_ref = self.next_refs.pop(0) if self.next_refs else f"0x{len(self.submissions):064x}"
        return SubmitReceipt(tx_ref=tx_ref, block_height=100 + len(self.submissions))

    async def balance_of(self, address):
        return self.balances.get(address.lower(), 0)

    async def subscribe(self, event_name, from_block):
        self.subscribed_from.append(from_block)
        for event in list(self.events):
            if event.block_height >= from_block:
                yield event

    async def close(self):
        self.closed = True


def make_event(tx_ref, wallet="0xabc", amount=10 * WEI, block=120, log_index=0, match_type="PvP"):
    return LedgerEvent(
        address=CONTRACT,
        tx_ref=tx_ref,
        block_height=block,
        log_index=log_index,
        args={"player": wallet, "reward": amount, "matchType": match_type},
    )


def outcome(**overrides):
    data = {
        "gameSessionId": "g1",
        "winnerId": "u1",
        "walletAddress": "0xABC",
        "matchType": "PvP",
        "result": "checkmate",
    }
    data.update(overrides)
    return data


@pytest.fixture
def session_factory(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'test.db'}", connect_args={"check_same_thread": False})
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    engine.dispose()


@pytest.fixture
def config():
    return Settings(
        retry_delay_seconds=0,
        repair_grace_seconds=0,
        resubmit_grace_seconds=0,
        subscription_backoff_seconds=0.01,
        run_event_listener=False,
        run_retry_supervisor=False,
        notify_webhook_url=None,
        bearer_token=None,
    )


@pytest.fixture
def gateway():
    return FakeLedgerGateway()


@pytest.fixture
def coordinator(session_factory, gateway, config):
    return SettlementCoordinator(session_factory, gateway, None, config)


@pytest.fixture
def reconciler(session_factory, gateway, config):
    return ConfirmationReconciler(session_factory, gateway, config)


@pytest.fixture
def supervisor(session_factory, coordinator, reconciler, config):
    return RetrySupervisor(session_factory, coordinator, reconciler, config)


@pytest.fixture
def settle(coordinator):
    def _settle(**overrides):
        async def run():
            reward_id = await coordinator.settle(outcome(**overrides))
            await coordinator.wait_for_submissions()
            return reward_id

        return asyncio.run(run())

    return _settle
