from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request, Response
from fastapi.openapi.docs import get_swagger_ui_html
from sqlalchemy.orm import Session

from rewardhub.amount import units_to_coins
from rewardhub.config import AttemptStatus, settings
from rewardhub.database import engine, get_db
from rewardhub.errors import LedgerError
from rewardhub.helpers import normalize_wallet, serialize_failed_attempt, serialize_pending_entry, serialize_reward, utcnow
from rewardhub.logging_config import get_logger
from rewardhub.models import models
from rewardhub.queries import get_balance, get_history, get_pending_entries, get_sync_status
from rewardhub.reconciliation import audit_balances
from rewardhub.runtime import Runtime
from rewardhub.schemas.app_schemas import (
    BalanceResponse,
    DrainReport,
    LedgerBalanceResponse,
    MatchOutcome,
    SettleResponse,
    SyncStatusResponse,
)
from rewardhub.security import require_bearer_token


logger = get_logger(__name__)

models.Base.metadata.create_all(bind=engine)

runtime_factory = Runtime.from_settings


@asynccontextmanager
async def lifespan(app: FastAPI):
    runtime = runtime_factory()
    app.state.runtime = runtime
    logger.info("Starting Reward Hub")
    await runtime.start()
    try:
        yield
    finally:
        await runtime.stop()


app = FastAPI(title="Reward Hub", lifespan=lifespan)


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


@app.post("/matches/settle", status_code=202, response_model=SettleResponse)
async def settle_match(outcome: MatchOutcome, runtime: Runtime = Depends(get_runtime)):
    logger.info(
        "Match finished: gameSessionId=%s winnerId=%s matchType=%s",
        outcome.gameSessionId,
        outcome.winnerId,
        outcome.matchType.value,
    )
    await runtime.coordinator.settle(outcome)
    return {"status": "accepted", "gameSessionId": outcome.gameSessionId}

@app.get("/players/{player_id}/balance", response_model=BalanceResponse)
async def player_balance(player_id: str, db: Session = Depends(get_db)):
    view = get_balance(db, player_id)
    return {
        "playerId": player_id,
        "confirmed": str(view.confirmed),
        "pending": str(view.pending),
        "total": str(view.total),
        "pendingCount": view.pending_count,
        "confirmedCoins": units_to_coins(view.confirmed),
        "pendingCoins": units_to_coins(view.pending),
        "totalCoins": units_to_coins(view.total),
    }

@app.get("/players/{player_id}/history")
async def player_history(player_id: str, limit: int = Query(10, ge=1, le=100), db: Session = Depends(get_db)):
    return [serialize_reward(r) for r in get_history(db, player_id, limit)]

@app.get("/players/{player_id}/pending")
async def player_pending(player_id: str, db: Session = Depends(get_db)):
    return [serialize_pending_entry(e) for e in get_pending_entries(db, player_id)]

@app.get("/wallets/{address}/ledger-balance", response_model=LedgerBalanceResponse)
async def ledger_balance(address: str, runtime: Runtime = Depends(get_runtime)):
    try:
        balance = await runtime.gateway.balance_of(address)
    except LedgerError as exc:
        logger.warning("Ledger balance lookup failed: wallet=%s error=%s", address, exc)
        raise HTTPException(status_code=502, detail=f"ledger request error: {exc}") from exc
    return {"walletAddress": normalize_wallet(address), "balance": str(balance), "balanceCoins": units_to_coins(balance)}

@app.get("/admin/sync-status", response_model=SyncStatusResponse)
async def sync_status(_auth=Depends(require_bearer_token), db: Session = Depends(get_db)):
    status = get_sync_status(db)
    return {
        "totalPlayers": status.total_players,
        "totalRewards": status.total_rewards,
        "pendingRewards": status.pending_rewards,
        "failedTransactions": status.failed_transactions,
        "totalGameCoinsIssued": units_to_coins(status.total_issued),
    }

@app.get("/admin/failed")
async def list_failed(
    status: Optional[AttemptStatus] = None,
    limit: int = Query(100, ge=1, le=500),
    _auth=Depends(require_bearer_token),
    db: Session = Depends(get_db),
):
    query = db.query(models.FailedAttempt)
    if status:
        query = query.filter(models.FailedAttempt.status == status.value)
    records = query.order_by(models.FailedAttempt.first_attempt_at.desc()).limit(limit).all()
    return [serialize_failed_attempt(r) for r in records]

@app.post("/admin/failed/{attempt_id}/replay")
async def replay_failed(attempt_id: int, _auth=Depends(require_bearer_token), db: Session = Depends(get_db)):
    """
    Operator intervention: put a failed attempt back in the retry queue with a fresh budget.
    """
    record = db.get(models.FailedAttempt, attempt_id)
    if not record:
        raise HTTPException(status_code=404, detail="failed attempt not found")
    record.status = AttemptStatus.PENDING.value
    record.retry_count = 0
    record.first_attempt_at = utcnow()
    record.resolved_at = None
    db.add(record)
    db.commit()
    db.refresh(record)
    logger.info("Forced replay for failed attempt id=%s kind=%s", attempt_id, record.kind)
    return serialize_failed_attempt(record)

@app.post("/admin/retry/drain", response_model=DrainReport)
async def drain_now(_auth=Depends(require_bearer_token), runtime: Runtime = Depends(get_runtime)):
    return await runtime.supervisor.run_cycle()

@app.get("/admin/reconciliation_data")
async def download_reconciliation_csv(_auth=Depends(require_bearer_token), runtime: Runtime = Depends(get_runtime)):
    try:
        csv_text, mismatch_count = await audit_balances(runtime.session_factory, runtime.gateway)
    except LedgerError as exc:
        raise HTTPException(status_code=502, detail=f"ledger request error: {exc}") from exc
    return Response(
        content=csv_text,
        media_type="text/csv",
        headers={
            "Content-Disposition": 'attachment; filename="reconciliation.csv"',
            "X-Mismatch-Count": str(mismatch_count),
        },
    )

@app.get("/swagger", include_in_schema=False)
async def swagger_ui():
    return get_swagger_ui_html(openapi_url=str(app.openapi_url), title="Reward Hub - Swagger UI")

@app.get("/health")
async def health():
    return {"status": "ok"}
