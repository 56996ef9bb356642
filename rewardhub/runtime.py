import asyncio
from typing import Optional

from rewardhub.clients.ledger_client import LedgerGateway, Web3LedgerGateway
from rewardhub.clients.notify_client import BalanceNotifier
from rewardhub.config import Settings, settings as default_settings
from rewardhub.database import SessionLocal
from rewardhub.logging_config import get_logger
from rewardhub.reconciliation import ConfirmationReconciler
from rewardhub.retry import RetrySupervisor
from rewardhub.settlement import SettlementCoordinator

logger = get_logger(__name__)

SHUTDOWN_GRACE_SECONDS = 30.0


class Runtime:
    """
    Owns the ledger gateway, the notifier and the background workers for one process.
    """

    def __init__(
        self,
        session_factory,
        gateway: LedgerGateway,
        notifier: Optional[BalanceNotifier] = None,
        config: Optional[Settings] = None,
    ):
        self.config = config or default_settings
        self.session_factory = session_factory
        self.gateway = gateway
        self.notifier = notifier
        self.coordinator = SettlementCoordinator(session_factory, gateway, notifier, self.config)
        self.reconciler = ConfirmationReconciler(session_factory, gateway, self.config)
        self.supervisor = RetrySupervisor(session_factory, self.coordinator, self.reconciler, self.config)
        self._workers: list[asyncio.Task] = []

    @classmethod
    def from_settings(cls, config: Optional[Settings] = None) -> "Runtime":
        config = config or default_settings
        return cls(SessionLocal, Web3LedgerGateway(config), BalanceNotifier(config.notify_webhook_url), config)

    async def start(self) -> None:
        if self.config.run_event_listener:
            logger.info("Starting ledger event listener")
            self._workers.append(asyncio.create_task(self.reconciler.run(), name="ledger-event-listener"))
        if self.config.run_retry_supervisor:
            logger.info("Starting retry supervisor every %ss", self.config.retry_interval_seconds)
            self._workers.append(asyncio.create_task(self.supervisor.run(), name="retry-supervisor"))

    async def stop(self) -> None:
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers.clear()
        await self.coordinator.wait_for_submissions(timeout=SHUTDOWN_GRACE_SECONDS)
        await self.gateway.close()
        if self.notifier is not None:
            await self.notifier.close()
        logger.info("Reward Hub runtime stopped")
