"""
Billing Webhook Handler - Stripe-signed subscription lifecycle events.

The raw body is verified (``Stripe-Signature: t=<ts>,v1=<hex>``) before it
is parsed; each event id is applied at most once.
"""
from __future__ import annotations

import json

from fastapi import APIRouter, Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession

from relay.core.config import settings
from relay.core.exceptions import ConfigurationError, ValidationException
from relay.core.logging import get_logger
from relay.core.signing import verify_stripe_signature
from relay.db.database import get_db
from relay.domain.services.billing_service import BillingService
from relay.domain.services.inbound_events import (
    STATUS_COMPLETED,
    STATUS_FAILED,
    mark_event,
    try_acquire_event,
)

logger = get_logger(__name__)

router = APIRouter()


@router.post("/billing")
async def billing_webhook(
    request: Request,
    stripe_signature: str | None = Header(None),
    db: AsyncSession = Depends(get_db),
) -> dict:
    """Apply one verified billing event"""
    if not settings.STRIPE_WEBHOOK_SECRET:
        raise ConfigurationError("STRIPE_WEBHOOK_SECRET is not configured")

    raw = await request.body()
    verify_stripe_signature(
        raw,
        stripe_signature,
        settings.STRIPE_WEBHOOK_SECRET,
        tolerance=settings.WEBHOOK_TOLERANCE_SECONDS,
    )

    try:
        event = json.loads(raw)
    except ValueError:
        raise ValidationException("Invalid JSON body")
    if not isinstance(event, dict) or not event.get("id"):
        raise ValidationException("Event id missing", field="id")

    event_id = str(event["id"])
    event_type = event.get("type")
    if not await try_acquire_event(db, event_id, "stripe", event_type):
        return {"received": True, "duplicate": True}

    try:
        outcome = await BillingService(db).handle_event(event)
        await db.commit()
    except Exception:
        await db.rollback()
        await mark_event(db, event_id, STATUS_FAILED)
        logger.error(
            "Billing event processing failed",
            extra_data={"event_id": event_id, "event_type": event_type},
            exc_info=True,
        )
        raise

    await mark_event(db, event_id, STATUS_COMPLETED)
    logger.info(
        "Billing event processed",
        extra_data={"event_id": event_id, "event_type": event_type, "outcome": outcome},
    )
    return {"received": True}
