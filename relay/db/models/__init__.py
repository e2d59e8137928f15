"""
Database Models
"""
from relay.db.models.organization import Organization, StaffMember, Membership
from relay.db.models.track import Track
from relay.db.models.webhook import Webhook, WebhookDelivery
from relay.db.models.communication import CommunicationWebhook, CommunicationDelivery
from relay.db.models.push import PushSubscription, PushNotificationJob
from relay.db.models.oauth_connection import OAuthConnection
from relay.db.models.calendar_job import CalendarJob
from relay.db.models.billing import Subscription, Invoice
from relay.db.models.inbound_event import InboundEvent

__all__ = [
    "Organization",
    "StaffMember",
    "Membership",
    "Track",
    "Webhook",
    "WebhookDelivery",
    "CommunicationWebhook",
    "CommunicationDelivery",
    "PushSubscription",
    "PushNotificationJob",
    "OAuthConnection",
    "CalendarJob",
    "Subscription",
    "Invoice",
    "InboundEvent",
]
