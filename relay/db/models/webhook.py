"""
Generic Webhook Models - tenant-registered endpoints and their delivery jobs
"""
from sqlalchemy import Column, Integer, String, DateTime, Boolean, JSON, ForeignKey

from relay.core.retry import utcnow
from relay.db.database import Base
from relay.db.models.delivery_job import DeliveryJobMixin


class Webhook(Base):
    """Outbound webhook registration (target configuration)"""

    __tablename__ = "webhooks"

    id = Column(Integer, primary_key=True, index=True)
    organization_id = Column(String(36), ForeignKey("organizations.id"), nullable=False, index=True)

    url = Column(String(2048), nullable=False)
    secret = Column(String(255), nullable=False)
    events = Column(JSON, nullable=False, default=list)  # e.g. ["track.created"]
    active = Column(Boolean, default=True, nullable=False)

    # Health signal for operators: cumulative non-2xx responses since the last success
    failure_count = Column(Integer, default=0, nullable=False)
    last_triggered_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow)

    def subscribes_to(self, event_type: str) -> bool:
        return bool(self.active) and event_type in (self.events or [])


class WebhookDelivery(DeliveryJobMixin, Base):
    """One signed POST of an event to one webhook"""

    __tablename__ = "webhook_deliveries"

    webhook_id = Column(Integer, ForeignKey("webhooks.id"), nullable=True, index=True)
    event_type = Column(String(100), nullable=False)
