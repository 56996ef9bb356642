from typing import Optional

import httpx

from rewardhub.amount import units_to_coins
from rewardhub.config import settings
from rewardhub.logging_config import get_logger

logger = get_logger(__name__)


class BalanceNotifier:
    """
    Pushes balance-changed events to an observer webhook. Delivery is best effort.
    """

    def __init__(self, webhook_url: Optional[str] = None) -> None:
        url = webhook_url if webhook_url is not None else settings.notify_webhook_url
        self.webhook_url = str(url) if url else None
        self.client = httpx.AsyncClient(timeout=10.0)

    async def balance_changed(self, player_id: str, balance: dict, reward: Optional[dict] = None) -> bool:
        if not self.webhook_url:
            return False
        payload = {
            "event": "balanceUpdate",
            "playerId": player_id,
            "balance": balance,
            "newReward": reward,
        }
        if reward:
            payload["message"] = f"You earned {units_to_coins(int(reward['amount']))} GameCoins! Transaction pending..."
        try:
            resp = await self.client.post(self.webhook_url, json=payload)
        except httpx.HTTPError as exc:
            logger.warning("Balance notification failed: player=%s error=%s", player_id, exc)
            return False
        if resp.status_code >= 400:
            logger.warning("Balance notification rejected: player=%s status=%s", player_id, resp.status_code)
            return False
        return True

    async def close(self) -> None:
        await self.client.aclose()
