"""
Inbound event idempotency - at most one successful processing per provider event id.

Optimistic approach: INSERT first inside a savepoint, and only when the
row already exists decide whether it may be retried (failed, or stuck in
processing past the stale threshold).
"""
from __future__ import annotations

from datetime import timedelta

from sqlalchemy import insert, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from relay.core.logging import get_logger
from relay.core.retry import utcnow
from relay.db.models.inbound_event import InboundEvent

logger = get_logger(__name__)

STATUS_PROCESSING = "processing"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"

_STALE_PROCESSING_SECONDS = 120


async def try_acquire_event(
    db: AsyncSession, event_id: str, provider: str, event_type: str | None = None
) -> bool:
    """True when the caller should process the event, False for a duplicate"""
    try:
        async with db.begin_nested():
            await db.execute(
                insert(InboundEvent).values(
                    event_id=event_id,
                    provider=provider,
                    event_type=event_type,
                    status=STATUS_PROCESSING,
                    created_at=utcnow(),
                )
            )
        # Committed before processing so a concurrent replay sees the row
        await db.commit()
        return True
    except IntegrityError:
        pass

    row = (
        await db.execute(select(InboundEvent.status).where(InboundEvent.event_id == event_id))
    ).one_or_none()
    if row is None or row.status == STATUS_COMPLETED:
        logger.info(
            "Skipping duplicate inbound event",
            extra_data={"event_id": event_id, "provider": provider},
        )
        return False

    now = utcnow()
    threshold = now - timedelta(seconds=_STALE_PROCESSING_SECONDS)
    result = await db.execute(
        update(InboundEvent)
        .where(
            InboundEvent.event_id == event_id,
            or_(
                InboundEvent.status == STATUS_FAILED,
                (InboundEvent.status == STATUS_PROCESSING) & (InboundEvent.created_at < threshold),
            ),
        )
        .values(status=STATUS_PROCESSING, created_at=now)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    if result.rowcount > 0:
        logger.warning(
            "Retrying inbound event",
            extra_data={"event_id": event_id, "provider": provider, "previous_status": row.status},
        )
        return True
    return False


async def mark_event(db: AsyncSession, event_id: str, status: str) -> None:
    await db.execute(
        update(InboundEvent)
        .where(InboundEvent.event_id == event_id)
        .values(status=status)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
