"""
Delivery Producer - enqueues delivery jobs for the dispatchers.

Producers only insert pending rows (attempt_number=0, next_retry_at=now);
nothing here talks to the network. The caller owns the transaction.
"""
from __future__ import annotations

from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from relay.core.logging import get_logger
from relay.core.retry import utcnow
from relay.db.models.calendar_job import CalendarJob, CalendarJobType
from relay.db.models.communication import CommunicationDelivery, CommunicationWebhook
from relay.db.models.delivery_job import JobStatus
from relay.db.models.oauth_connection import OAuthConnection
from relay.db.models.push import PushNotificationJob
from relay.db.models.track import Track
from relay.db.models.webhook import Webhook, WebhookDelivery

logger = get_logger(__name__)

TRACK_EVENTS = ("track.created", "track.updated", "track.deleted")


def _new_job_fields() -> dict:
    return {
        "status": JobStatus.PENDING,
        "attempt_number": 0,
        "next_retry_at": utcnow(),
    }


class DeliveryProducer:
    """Creates delivery jobs for every channel"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def enqueue_webhook_event(
        self, organization_id: str, event_type: str, payload: dict
    ) -> List[WebhookDelivery]:
        """One job per active webhook of the organization subscribed to event_type"""
        result = await self.db.execute(
            select(Webhook).where(
                Webhook.organization_id == organization_id,
                Webhook.active.is_(True),
            )
        )
        jobs = []
        for webhook in result.scalars().all():
            # JSON containment is not portable across backends; filter here
            if not webhook.subscribes_to(event_type):
                continue
            job = WebhookDelivery(
                webhook_id=webhook.id,
                event_type=event_type,
                payload=payload,
                **_new_job_fields(),
            )
            self.db.add(job)
            jobs.append(job)

        if jobs:
            logger.info(
                "Webhook deliveries queued",
                extra_data={
                    "organization_id": organization_id,
                    "event_type": event_type,
                    "count": len(jobs),
                },
            )
        return jobs

    async def enqueue_communication(
        self, organization_id: str, payload: dict
    ) -> List[CommunicationDelivery]:
        """One chat message per active platform webhook of the organization"""
        result = await self.db.execute(
            select(CommunicationWebhook).where(
                CommunicationWebhook.organization_id == organization_id,
                CommunicationWebhook.active.is_(True),
            )
        )
        jobs = []
        for target in result.scalars().all():
            job = CommunicationDelivery(
                communication_webhook_id=target.id,
                payload=payload,
                **_new_job_fields(),
            )
            self.db.add(job)
            jobs.append(job)
        return jobs

    async def enqueue_push(
        self, auth_user_id: str, title: str, body: str, url: Optional[str] = None
    ) -> PushNotificationJob:
        job = PushNotificationJob(
            auth_user_id=auth_user_id,
            payload={"title": title, "body": body, "url": url or "/"},
            **_new_job_fields(),
        )
        self.db.add(job)
        return job

    async def enqueue_calendar_job(
        self,
        organization_id: str,
        provider: str,
        job_type: CalendarJobType,
        track: Track,
    ) -> Optional[CalendarJob]:
        """
        Queue a calendar event for the organization's connection to `provider`.

        Returns None when the organization has no active connection.
        """
        result = await self.db.execute(
            select(OAuthConnection).where(
                OAuthConnection.organization_id == organization_id,
                OAuthConnection.provider == provider,
                OAuthConnection.active.is_(True),
            )
        )
        connection = result.scalar_one_or_none()
        if connection is None:
            logger.info(
                "No calendar connection, skipping calendar job",
                extra_data={"organization_id": organization_id, "provider": provider},
            )
            return None

        job = CalendarJob(
            organization_id=organization_id,
            oauth_connection_id=connection.id,
            provider=provider,
            job_type=job_type,
            payload={"track": track.to_event_payload()},
            **_new_job_fields(),
        )
        self.db.add(job)
        return job

    async def publish_track_event(self, track: Track, event_type: str) -> dict:
        """
        Fan a track event out to generic webhooks, and for new tracks to
        chat platforms as well.
        """
        if event_type not in TRACK_EVENTS:
            raise ValueError(f"Unknown track event: {event_type}")

        payload = {"event": event_type, "data": track.to_event_payload()}
        webhook_jobs = await self.enqueue_webhook_event(track.organization_id, event_type, payload)

        communication_jobs = []
        if event_type == "track.created":
            communication_jobs = await self.enqueue_communication(
                track.organization_id, {"track": track.to_event_payload()}
            )

        return {"webhooks": len(webhook_jobs), "communications": len(communication_jobs)}
