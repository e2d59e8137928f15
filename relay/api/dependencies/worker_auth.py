"""
Worker trigger authentication.

External cron calls the dispatcher endpoints with the shared WORKER_TOKEN,
either as the ``X-Worker-Token`` header or as a ``?token=`` query
parameter (for schedulers that cannot set headers).

Usage:
    @router.post("/workers/{channel}/run")
    async def run_worker(
        ...,
        _: None = Depends(require_worker_token),
    ):
        ...
"""
import hmac

from fastapi import Header, HTTPException, Query, status

from relay.core.config import OPEN_WORKER_ENVIRONMENTS, settings
from relay.core.exceptions import ConfigurationError
from relay.core.logging import get_logger

logger = get_logger(__name__)


async def require_worker_token(
    x_worker_token: str | None = Header(None),
    token: str | None = Query(None),
) -> None:
    """
    Validate the worker token.

    - No WORKER_TOKEN configured: open in development/test, 500 elsewhere.
    - Missing or mismatched token: 401.
    """
    expected = settings.WORKER_TOKEN
    if not expected:
        if settings.ENVIRONMENT in OPEN_WORKER_ENVIRONMENTS:
            return
        logger.error("Worker trigger refused, WORKER_TOKEN is not configured")
        raise ConfigurationError("WORKER_TOKEN is not configured")

    provided = x_worker_token or token or ""
    # Constant-time comparison
    if not provided or not hmac.compare_digest(provided.encode(), expected.encode()):
        logger.warning("Worker trigger rejected, invalid token")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
        )
