"""
Worker Trigger Routes - dispatcher runs for external cron
"""
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from relay.api.dependencies.worker_auth import require_worker_token
from relay.core.logging import get_logger
from relay.core.retry import utcnow
from relay.db.database import get_db, session_factory_for
from relay.workers.dispatchers import DISPATCHERS, run_all, run_channel

logger = get_logger(__name__)

router = APIRouter()


class JobResult(BaseModel):
    id: int
    status: str
    attempt: Optional[int] = None
    reason: Optional[str] = None


class DispatchSummary(BaseModel):
    """Outcome of one dispatcher run"""
    processed: int
    results: list[JobResult]


class RunAllResponse(BaseModel):
    ok: bool
    ran_at: str
    results: dict[str, Any]


@router.post("/run-all", response_model=RunAllResponse)
async def run_all_workers(
    db: AsyncSession = Depends(get_db),
    _: None = Depends(require_worker_token),
) -> RunAllResponse:
    """Run every dispatcher once, in sequence"""
    ran_at = utcnow().isoformat() + "Z"
    results = await run_all(session_factory_for(db))
    ok = not any("error" in summary for summary in results.values())
    return RunAllResponse(ok=ok, ran_at=ran_at, results=results)


@router.post("/{channel}/run", response_model=DispatchSummary, response_model_exclude_none=True)
async def run_worker(
    channel: str,
    db: AsyncSession = Depends(get_db),
    _: None = Depends(require_worker_token),
) -> dict:
    """Run one channel's dispatcher once"""
    if channel not in DISPATCHERS:
        raise HTTPException(status_code=404, detail=f"Unknown channel: {channel}")
    summary = await run_channel(channel, session_factory_for(db))
    logger.info(
        "Worker run triggered",
        extra_data={"channel": channel, "processed": summary["processed"]},
    )
    return summary
