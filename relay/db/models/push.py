"""
Web Push Models - browser subscriptions and notification jobs
"""
from sqlalchemy import Column, Integer, String, DateTime, Boolean, UniqueConstraint

from relay.core.retry import utcnow
from relay.db.database import Base
from relay.db.models.delivery_job import DeliveryJobMixin


class PushSubscription(Base):
    """A browser push endpoint with its client keys"""

    __tablename__ = "push_subscriptions"

    id = Column(Integer, primary_key=True, index=True)
    auth_user_id = Column(String(64), nullable=False, index=True)

    endpoint = Column(String(2048), nullable=False)
    p256dh = Column(String(255), nullable=False)
    auth = Column(String(255), nullable=False)
    active = Column(Boolean, default=True, nullable=False)

    created_at = Column(DateTime, default=utcnow)
    last_used_at = Column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint("auth_user_id", "endpoint", name="uq_push_subscriptions_user_endpoint"),
    )

    def subscription_info(self) -> dict:
        """Shape expected by pywebpush"""
        return {"endpoint": self.endpoint, "keys": {"p256dh": self.p256dh, "auth": self.auth}}


class PushNotificationJob(DeliveryJobMixin, Base):
    """Notification fanned out to every active subscription of a user"""

    __tablename__ = "push_notification_jobs"

    auth_user_id = Column(String(64), nullable=False, index=True)
