import asyncio
import sys
from pathlib import Path

from rewardhub.clients.ledger_client import Web3LedgerGateway
from rewardhub.database import SessionLocal
from rewardhub.reconciliation import audit_balances


async def reconcile(output_path: str = "reconciliation.csv", apply: bool = False) -> int:
    gateway = Web3LedgerGateway()
    try:
        csv_text, mismatch_count = await audit_balances(SessionLocal, gateway, apply=apply)
    finally:
        await gateway.close()
    Path(output_path).write_text(csv_text, newline="")
    return 1 if mismatch_count and not apply else 0

if __name__ == "__main__":
    exit_code = asyncio.run(reconcile(apply="--apply" in sys.argv[1:]))
    raise SystemExit(exit_code)
