"""
Health checks - liveness (process up) and readiness (database reachable).
"""
from typing import Any

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from relay.core.logging import get_logger
from relay.db.database import AsyncSessionLocal

logger = get_logger(__name__)

_STATUS_HEALTHY = "healthy"
_STATUS_DEGRADED = "degraded"

_CHECK_OK = "ok"
# Infrastructure details are not exposed
_ERROR_DB = "error: db_unavailable"


async def _check_db(session_factory=AsyncSessionLocal) -> str:
    """Lightweight SELECT 1"""
    try:
        async with session_factory() as session:
            await session.execute(text("SELECT 1"))
        return _CHECK_OK
    except (SQLAlchemyError, OSError) as e:
        logger.warning("Database health check failed", extra_data={"error": str(e)})
        return _ERROR_DB


async def check_readiness(session_factory=AsyncSessionLocal) -> dict[str, Any]:
    db_status = await _check_db(session_factory)
    overall = _STATUS_HEALTHY if db_status == _CHECK_OK else _STATUS_DEGRADED
    return {"status": overall, "db": db_status}
