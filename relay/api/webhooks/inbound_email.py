"""
Inbound Email Webhook Handler - submissions forwarded by the mail provider.

Accepted authentication, in order:
    1. Svix headers + RESEND_WEBHOOK_SECRET  → Svix signature check
    2. INBOUND_EMAIL_SECRET                  → X-Inbound-Secret header
    3. neither configured                     → open in development/test only
"""
from __future__ import annotations

import json

import httpx
from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from relay.core.config import OPEN_WORKER_ENVIRONMENTS, settings
from relay.core.exceptions import ConfigurationError, ValidationException
from relay.core.logging import get_logger
from relay.core.signing import verify_shared_secret, verify_svix_signature
from relay.db.database import get_db
from relay.domain.services.inbound_email_service import InboundEmailService
from relay.domain.services.inbound_events import (
    STATUS_COMPLETED,
    STATUS_FAILED,
    mark_event,
    try_acquire_event,
)

logger = get_logger(__name__)

router = APIRouter()


def _has_svix_headers(request: Request) -> bool:
    return all(request.headers.get(h) for h in ("svix-id", "svix-timestamp", "svix-signature"))


def authenticate_inbound(request: Request, raw: bytes, inbound_secret: str | None) -> str | None:
    """
    Check the request's credentials.

    Returns:
        The Svix message id when the request was Svix-verified.
    """
    if _has_svix_headers(request) and settings.RESEND_WEBHOOK_SECRET:
        return verify_svix_signature(
            raw,
            request.headers,
            settings.RESEND_WEBHOOK_SECRET,
            tolerance=settings.WEBHOOK_TOLERANCE_SECONDS,
        )

    if settings.INBOUND_EMAIL_SECRET:
        if not verify_shared_secret(inbound_secret, settings.INBOUND_EMAIL_SECRET):
            logger.warning("Inbound email rejected, invalid shared secret")
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
        return None

    if settings.RESEND_WEBHOOK_SECRET:
        # Only Svix-signed requests can satisfy a configured Resend secret
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")

    if settings.ENVIRONMENT in OPEN_WORKER_ENVIRONMENTS:
        return None
    raise ConfigurationError("No inbound email secret is configured")


@router.post("/inbound-email")
async def inbound_email_webhook(
    request: Request,
    x_inbound_secret: str | None = Header(None),
    db: AsyncSession = Depends(get_db),
) -> dict:
    """Create a track from a forwarded submission email"""
    raw = await request.body()
    message_id = authenticate_inbound(request, raw, x_inbound_secret)

    try:
        body = json.loads(raw)
    except ValueError:
        raise ValidationException("Invalid JSON body")
    if not isinstance(body, dict):
        raise ValidationException("JSON object expected")

    if message_id and not await try_acquire_event(db, message_id, "resend", body.get("type")):
        return {"success": True, "duplicate": True}

    try:
        async with httpx.AsyncClient(timeout=settings.DELIVERY_HTTP_TIMEOUT_SECONDS) as client:
            result = await InboundEmailService(db, client).ingest(body)
    except Exception:
        await db.rollback()
        if message_id:
            await mark_event(db, message_id, STATUS_FAILED)
        raise

    if message_id:
        await mark_event(db, message_id, STATUS_COMPLETED)
    return result
