"""
Billing Models - subscription state mirrored from payment-provider events
"""
from sqlalchemy import Column, Integer, String, DateTime, Boolean, Numeric, ForeignKey

from relay.core.retry import utcnow
from relay.db.database import Base


class Subscription(Base):
    """Organization plan subscription"""

    __tablename__ = "subscriptions"

    id = Column(Integer, primary_key=True, index=True)
    organization_id = Column(String(36), ForeignKey("organizations.id"), nullable=False, index=True)
    plan_id = Column(String(100), nullable=False)
    status = Column(String(20), nullable=False)  # active / trialing / past_due / canceled / incomplete

    stripe_subscription_id = Column(String(100), unique=True, nullable=False, index=True)
    stripe_customer_id = Column(String(100), nullable=True)
    billing_interval = Column(String(10), nullable=False, default="month")

    current_period_start = Column(DateTime, nullable=True)
    current_period_end = Column(DateTime, nullable=True)
    cancel_at_period_end = Column(Boolean, default=False, nullable=False)
    canceled_at = Column(DateTime, nullable=True)
    trial_start = Column(DateTime, nullable=True)
    trial_end = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class Invoice(Base):
    """Paid invoice record"""

    __tablename__ = "invoices"

    id = Column(Integer, primary_key=True, index=True)
    organization_id = Column(String(36), ForeignKey("organizations.id"), nullable=False, index=True)
    subscription_id = Column(Integer, ForeignKey("subscriptions.id"), nullable=True)

    stripe_invoice_id = Column(String(100), unique=True, nullable=False)
    invoice_number = Column(String(100), nullable=False)
    amount = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(10), nullable=False)
    status = Column(String(20), nullable=False, default="paid")
    paid_at = Column(DateTime, nullable=True)
    pdf_url = Column(String(2048), nullable=True)
    hosted_invoice_url = Column(String(2048), nullable=True)

    created_at = Column(DateTime, default=utcnow)
