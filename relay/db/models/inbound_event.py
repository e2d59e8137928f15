"""
Inbound Event Model - idempotency log for provider webhooks.

Each verified event is recorded by its provider event id. Only completed
events block a replay; a failed one may be delivered again by the provider.
"""
from sqlalchemy import Column, String, DateTime, Index

from relay.core.retry import utcnow
from relay.db.database import Base


class InboundEvent(Base):
    """A provider event that has been accepted for processing"""

    __tablename__ = "inbound_events"

    event_id = Column(String(200), primary_key=True)
    provider = Column(String(20), nullable=False)
    event_type = Column(String(100), nullable=True)
    status = Column(String(20), nullable=False, default="processing")
    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        Index("ix_inbound_events_status_created", "status", "created_at"),
    )
