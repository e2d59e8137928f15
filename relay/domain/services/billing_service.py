"""
Billing Service - applies verified payment-provider events to local state.

Handled events:
    checkout.session.completed            → staff_members.tier
    customer.subscription.created/updated → subscriptions upsert
    customer.subscription.deleted         → subscriptions.status = canceled
    invoice.payment_succeeded             → invoices upsert
    invoice.payment_failed                → subscriptions.status = past_due

Anything else is acknowledged and ignored.
"""
from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from relay.core.logging import get_logger, log_async_operation
from relay.core.retry import utcnow
from relay.db.models.billing import Invoice, Subscription
from relay.db.models.organization import StaffMember

logger = get_logger(__name__)

PERSONAL_TIERS = ("agent", "starter", "pro")

_STATUS_MAP = {
    "active": "active",
    "trialing": "trialing",
    "past_due": "past_due",
    "canceled": "canceled",
    "unpaid": "canceled",
    "incomplete": "incomplete",
}


def _from_epoch(value: Any) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc).replace(tzinfo=None)


def map_subscription_status(provider_status: Optional[str]) -> str:
    return _STATUS_MAP.get(provider_status or "", "active")


class BillingService:
    """Event handlers; the caller commits"""

    def __init__(self, db: AsyncSession):
        self.db = db

    @log_async_operation("billing_event")
    async def handle_event(self, event: dict) -> str:
        """Dispatch one event by type. Returns "handled" or "ignored"."""
        event_type = event.get("type", "")
        obj = (event.get("data") or {}).get("object") or {}

        handlers = {
            "checkout.session.completed": self._checkout_completed,
            "customer.subscription.created": self._subscription_upsert,
            "customer.subscription.updated": self._subscription_upsert,
            "customer.subscription.deleted": self._subscription_deleted,
            "invoice.payment_succeeded": self._invoice_paid,
            "invoice.payment_failed": self._invoice_failed,
        }
        handler = handlers.get(event_type)
        if handler is None:
            logger.info("Unhandled billing event type", extra_data={"event_type": event_type})
            return "ignored"

        await handler(obj)
        return "handled"

    async def _checkout_completed(self, session: dict) -> None:
        metadata = session.get("metadata") or {}
        auth_user_id = metadata.get("auth_user_id")
        tier = metadata.get("tier")
        if not auth_user_id or not tier:
            return
        if tier not in PERSONAL_TIERS:
            logger.warning("Ignoring unknown tier", extra_data={"tier": tier})
            return

        await self.db.execute(
            update(StaffMember)
            .where(StaffMember.auth_user_id == auth_user_id)
            .values(tier=tier, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        logger.info("Staff tier updated", extra_data={"auth_user_id": auth_user_id, "tier": tier})

    async def _subscription_upsert(self, sub: dict) -> None:
        metadata = sub.get("metadata") or {}
        organization_id = metadata.get("organization_id")
        plan_id = metadata.get("plan_id")
        if not organization_id or not plan_id:
            logger.warning(
                "Subscription event without organization_id/plan_id metadata",
                extra_data={"subscription_id": sub.get("id")},
            )
            return

        items = (sub.get("items") or {}).get("data") or []
        interval = "month"
        if items:
            interval = ((items[0].get("price") or {}).get("recurring") or {}).get("interval") or "month"

        result = await self.db.execute(
            select(Subscription).where(Subscription.stripe_subscription_id == sub["id"])
        )
        subscription = result.scalar_one_or_none()
        if subscription is None:
            subscription = Subscription(stripe_subscription_id=sub["id"])
            self.db.add(subscription)

        subscription.organization_id = organization_id
        subscription.plan_id = plan_id
        subscription.status = map_subscription_status(sub.get("status"))
        subscription.stripe_customer_id = sub.get("customer")
        subscription.billing_interval = interval
        subscription.current_period_start = _from_epoch(sub.get("current_period_start"))
        subscription.current_period_end = _from_epoch(sub.get("current_period_end"))
        subscription.cancel_at_period_end = bool(sub.get("cancel_at_period_end"))
        subscription.canceled_at = _from_epoch(sub.get("canceled_at"))
        subscription.trial_start = _from_epoch(sub.get("trial_start"))
        subscription.trial_end = _from_epoch(sub.get("trial_end"))
        subscription.updated_at = utcnow()

    async def _subscription_deleted(self, sub: dict) -> None:
        now = utcnow()
        await self.db.execute(
            update(Subscription)
            .where(Subscription.stripe_subscription_id == sub.get("id"))
            .values(status="canceled", canceled_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )

    async def _invoice_paid(self, invoice: dict) -> None:
        subscription_ref = invoice.get("subscription")
        if not subscription_ref:
            return
        result = await self.db.execute(
            select(Subscription).where(Subscription.stripe_subscription_id == subscription_ref)
        )
        subscription = result.scalar_one_or_none()
        if subscription is None:
            return

        result = await self.db.execute(
            select(Invoice).where(Invoice.stripe_invoice_id == invoice["id"])
        )
        record = result.scalar_one_or_none()
        if record is None:
            record = Invoice(stripe_invoice_id=invoice["id"])
            self.db.add(record)

        now = utcnow()
        record.organization_id = subscription.organization_id
        record.subscription_id = subscription.id
        record.invoice_number = invoice.get("number") or f"INV-{int(now.timestamp())}"
        record.amount = Decimal(int(invoice.get("amount_paid") or 0)) / 100
        record.currency = invoice.get("currency") or "usd"
        record.status = "paid"
        record.paid_at = now
        record.pdf_url = invoice.get("invoice_pdf")
        record.hosted_invoice_url = invoice.get("hosted_invoice_url")

    async def _invoice_failed(self, invoice: dict) -> None:
        subscription_ref = invoice.get("subscription")
        if not subscription_ref:
            return
        await self.db.execute(
            update(Subscription)
            .where(Subscription.stripe_subscription_id == subscription_ref)
            .values(status="past_due", updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
