"""
Chat Platform Models - Slack/Discord/Telegram/WhatsApp incoming-webhook URLs
"""
import enum

from sqlalchemy import Column, Integer, String, DateTime, Boolean, Enum as SQLEnum, ForeignKey

from relay.core.retry import utcnow
from relay.db.database import Base
from relay.db.models.delivery_job import DeliveryJobMixin


class CommunicationPlatform(str, enum.Enum):
    SLACK = "slack"
    DISCORD = "discord"
    TELEGRAM = "telegram"
    WHATSAPP = "whatsapp"
    GENERIC = "generic"


class CommunicationWebhook(Base):
    """Chat-platform webhook configured by an organization"""

    __tablename__ = "communication_webhooks"

    id = Column(Integer, primary_key=True, index=True)
    organization_id = Column(String(36), ForeignKey("organizations.id"), nullable=False, index=True)

    platform = Column(SQLEnum(CommunicationPlatform), nullable=False)
    url = Column(String(2048), nullable=True)
    active = Column(Boolean, default=True, nullable=False)

    created_at = Column(DateTime, default=utcnow)


class CommunicationDelivery(DeliveryJobMixin, Base):
    """One chat message rendered for one platform webhook"""

    __tablename__ = "communication_deliveries"

    communication_webhook_id = Column(
        Integer, ForeignKey("communication_webhooks.id"), nullable=True, index=True
    )
