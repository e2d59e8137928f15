"""
Delivery Dispatchers - claim → render → send → record, one per channel.

Each run claims a batch of due jobs, then processes every job in its own
session so one job's failure (or crash) never touches the others. The
run returns a summary that the worker endpoints hand back to cron:

    {"processed": 2, "results": [
        {"id": 7, "status": "success"},
        {"id": 8, "status": "retry_scheduled", "attempt": 1},
    ]}
"""
from __future__ import annotations

import asyncio
import json
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Callable, Optional

import httpx
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from relay.core.config import settings
from relay.core.crypto import CredentialVault, get_vault
from relay.core.exceptions import AppException, DeliveryError, ErrorCode
from relay.core.logging import get_logger
from relay.core.retry import OUTCOME_RETRY_SCHEDULED, OUTCOME_SUCCESS, utcnow
from relay.core.signing import build_webhook_headers
from relay.db.models.calendar_job import CalendarJob
from relay.db.models.communication import CommunicationDelivery, CommunicationWebhook
from relay.db.models.oauth_connection import OAuthConnection
from relay.db.models.push import PushNotificationJob, PushSubscription
from relay.db.models.webhook import Webhook, WebhookDelivery
from relay.domain.services.job_store import FailureRecord, JobStore
from relay.domain.services.oauth_providers import BaseOAuthProvider, get_oauth_provider
from relay.domain.services.push_provider import BasePushProvider, get_push_provider
from relay.domain.services.renderers import (
    CalendarPayload,
    PushPayload,
    TrackEventPayload,
    parse_payload,
    render_communication,
    render_push,
)
from relay.domain.services.token_refresher import TokenRefresher

logger = get_logger(__name__)


@dataclass(frozen=True)
class DeliveryResult:
    """What a successful send observed"""
    response_status: Optional[int] = None
    response_body: Optional[str] = None


def _target_missing(message: str) -> DeliveryError:
    return DeliveryError(message, error_code=ErrorCode.DELIVERY_TARGET_MISSING)


class BaseDispatcher(ABC):
    """
    Batch processor for one delivery-job table.

    Subclasses implement deliver(); it either returns a DeliveryResult
    or raises (DeliveryError for expected failures). Everything it raises
    is recorded through the retry scheduler.
    """

    channel: str
    model: type
    default_batch_size: int = 50
    # Outbound calls one job can make, each bounded by the request timeout
    requests_per_job: int = 1

    def __init__(
        self,
        session_factory: async_sessionmaker,
        *,
        client: httpx.AsyncClient | None = None,
        batch_size: int | None = None,
        concurrency: int | None = None,
        timeout: float | None = None,
        now: Callable = utcnow,
    ):
        self.session_factory = session_factory
        self.client = client
        self.batch_size = batch_size or self.default_batch_size
        self.concurrency = max(1, concurrency or settings.DISPATCH_CONCURRENCY)
        self.timeout = timeout or settings.DELIVERY_HTTP_TIMEOUT_SECONDS
        self.now = now

    @property
    def claim_limit(self) -> int:
        """
        Batch size capped so the worst case (every call hitting its timeout)
        still finishes within DISPATCH_TIME_BUDGET_SECONDS.
        """
        worst_case_per_job = self.timeout * self.requests_per_job
        fits = int(settings.DISPATCH_TIME_BUDGET_SECONDS * self.concurrency // worst_case_per_job)
        return max(1, min(self.batch_size, fits))

    def preflight(self) -> None:
        """Raise ConfigurationError before any job is claimed"""

    @abstractmethod
    async def deliver(self, db: AsyncSession, job, client: httpx.AsyncClient) -> DeliveryResult:
        """Render and send one claimed job"""

    @asynccontextmanager
    async def _http_client(self):
        if self.client is not None:
            yield self.client
            return
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            yield client

    async def run(self) -> dict:
        """
        Process one batch of due jobs.

        Raises:
            ConfigurationError: a required secret or key is missing; no job is claimed.
        """
        self.preflight()

        async with self.session_factory() as db:
            job_ids = await JobStore(db, self.model).claim_due(self.claim_limit, self.now())

        if not job_ids:
            return {"processed": 0, "results": []}

        logger.info(
            "Dispatch batch claimed",
            extra_data={"channel": self.channel, "claimed": len(job_ids)},
        )

        semaphore = asyncio.Semaphore(self.concurrency)

        async with self._http_client() as client:

            async def _guarded(job_id: int) -> dict:
                async with semaphore:
                    return await self._process_isolated(job_id, client)

            results = await asyncio.gather(*(_guarded(job_id) for job_id in job_ids))

        summary = {"processed": len(results), "results": list(results)}
        logger.info(
            "Dispatch batch finished",
            extra_data={
                "channel": self.channel,
                "processed": summary["processed"],
                "failed": sum(1 for r in results if r["status"] != OUTCOME_SUCCESS),
            },
        )
        return summary

    async def _process_isolated(self, job_id: int, client: httpx.AsyncClient) -> dict:
        try:
            return await self._process_one(job_id, client)
        except Exception as e:
            # Recording itself failed; the claim lease hands the job to a later run
            logger.error(
                "Recording delivery outcome failed",
                extra_data={"channel": self.channel, "job_id": job_id, "error": str(e)},
                exc_info=True,
            )
            return {"id": job_id, "status": OUTCOME_RETRY_SCHEDULED, "reason": "lease_reclaim"}

    async def _process_one(self, job_id: int, client: httpx.AsyncClient) -> dict:
        async with self.session_factory() as db:
            store = JobStore(db, self.model)
            job = await store.load(job_id)
            if job is None:
                return {"id": job_id, "status": "failed", "reason": "not_found"}

            try:
                result = await self.deliver(db, job, client)
            except DeliveryError as e:
                failure = FailureRecord(
                    error=e.message,
                    response_status=e.response_status,
                    response_body=e.response_body,
                )
            except httpx.TimeoutException as e:
                failure = FailureRecord(error=f"Request timed out: {type(e).__name__}")
            except httpx.HTTPError as e:
                failure = FailureRecord(error=str(e) or type(e).__name__)
            except AppException as e:
                failure = FailureRecord(error=e.message)
            except Exception as e:
                await db.rollback()
                logger.error(
                    "Unexpected delivery error",
                    extra_data={"channel": self.channel, "job_id": job_id, "error": str(e)},
                    exc_info=True,
                )
                failure = FailureRecord(error=f"{type(e).__name__}: {e}")
            else:
                await store.mark_success(
                    job_id,
                    response_status=result.response_status,
                    response_body=result.response_body,
                    now=self.now(),
                )
                logger.info(
                    "Delivery succeeded",
                    extra_data={
                        "channel": self.channel,
                        "job_id": job_id,
                        "response_status": result.response_status,
                    },
                )
                return {"id": job_id, "status": OUTCOME_SUCCESS}

            decision = await store.mark_failure(job_id, failure, now=self.now())
            if decision is None:
                return {"id": job_id, "status": "failed", "reason": "claim_lost"}

            logger.warning(
                "Delivery attempt failed",
                extra_data={
                    "channel": self.channel,
                    "job_id": job_id,
                    "attempt": decision.attempt_number,
                    "outcome": decision.outcome,
                    "error": failure.error,
                    "response_status": failure.response_status,
                },
            )
            entry = {"id": job_id, "status": decision.outcome, "attempt": decision.attempt_number}
            if decision.is_terminal:
                entry["reason"] = "max_retries"
            return entry

    def _check_response(self, response: httpx.Response) -> DeliveryResult:
        if response.is_success:
            return DeliveryResult(response.status_code, response.text)
        raise DeliveryError.from_response(
            self.channel, response, max_response_chars=settings.RESPONSE_BODY_MAX_CHARS
        )


# ============================================================================
# Generic webhooks
# ============================================================================

class WebhookDispatcher(BaseDispatcher):
    """Signed JSON POST to a tenant-registered URL"""

    channel = "webhooks"
    model = WebhookDelivery

    def __init__(self, session_factory: async_sessionmaker, **kwargs):
        kwargs.setdefault("batch_size", settings.WEBHOOK_BATCH_SIZE)
        super().__init__(session_factory, **kwargs)

    async def deliver(self, db: AsyncSession, job: WebhookDelivery, client: httpx.AsyncClient) -> DeliveryResult:
        webhook = await db.get(Webhook, job.webhook_id) if job.webhook_id else None
        if webhook is None or not webhook.active:
            raise _target_missing("Webhook target missing or inactive")

        body = json.dumps(job.payload, separators=(",", ":"))
        headers = build_webhook_headers(webhook.secret, body, job.event_type)
        response = await client.post(webhook.url, content=body, headers=headers, timeout=self.timeout)

        if response.is_success:
            values = {"failure_count": 0, "last_triggered_at": self.now()}
        else:
            values = {"failure_count": Webhook.failure_count + 1}
        await db.execute(
            update(Webhook)
            .where(Webhook.id == webhook.id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return self._check_response(response)


# ============================================================================
# Chat platforms
# ============================================================================

class CommunicationDispatcher(BaseDispatcher):
    """Slack / Discord / Telegram / WhatsApp incoming-webhook messages"""

    channel = "communications"
    model = CommunicationDelivery

    def __init__(self, session_factory: async_sessionmaker, **kwargs):
        kwargs.setdefault("batch_size", settings.COMMUNICATION_BATCH_SIZE)
        super().__init__(session_factory, **kwargs)

    async def deliver(
        self, db: AsyncSession, job: CommunicationDelivery, client: httpx.AsyncClient
    ) -> DeliveryResult:
        target = (
            await db.get(CommunicationWebhook, job.communication_webhook_id)
            if job.communication_webhook_id
            else None
        )
        if target is None or not target.active or not target.url:
            raise _target_missing("Chat webhook missing, inactive or without URL")

        payload = parse_payload(TrackEventPayload, job.payload)
        platform = getattr(target.platform, "value", target.platform)
        body = render_communication(platform, payload)
        response = await client.post(target.url, json=body, timeout=self.timeout)
        return self._check_response(response)


# ============================================================================
# Web Push
# ============================================================================

class PushDispatcher(BaseDispatcher):
    """Fans each job out to every active browser subscription of the user"""

    channel = "push"
    model = PushNotificationJob
    default_batch_size = 25
    requests_per_job = 2

    def __init__(
        self,
        session_factory: async_sessionmaker,
        *,
        push_provider: BasePushProvider | None = None,
        **kwargs,
    ):
        kwargs.setdefault("batch_size", settings.PUSH_BATCH_SIZE)
        super().__init__(session_factory, **kwargs)
        self.push_provider = push_provider

    def preflight(self) -> None:
        if self.push_provider is None:
            self.push_provider = get_push_provider()

    async def deliver(
        self, db: AsyncSession, job: PushNotificationJob, client: httpx.AsyncClient
    ) -> DeliveryResult:
        payload = parse_payload(PushPayload, job.payload)
        message = render_push(payload)

        result = await db.execute(
            select(PushSubscription).where(
                PushSubscription.auth_user_id == job.auth_user_id,
                PushSubscription.active.is_(True),
            )
        )
        subscriptions = list(result.scalars().all())

        sent = 0
        for subscription in subscriptions:
            outcome = await self.push_provider.send(subscription.subscription_info(), message)
            if outcome.gone:
                subscription.active = False
                logger.info(
                    "Push subscription expired, deactivated",
                    extra_data={"subscription_id": subscription.id, "status_code": outcome.status_code},
                )
                continue
            subscription.last_used_at = self.now()
            sent += 1

        return DeliveryResult(response_body=f"sent={sent} subscriptions={len(subscriptions)}")


# ============================================================================
# Calendar providers
# ============================================================================

class CalendarDispatcher(BaseDispatcher):
    """Creates events on a connected Google / Microsoft calendar"""

    channel = "calendar"
    model = CalendarJob
    default_batch_size = 25
    requests_per_job = 2

    def __init__(
        self,
        session_factory: async_sessionmaker,
        *,
        vault: CredentialVault | None = None,
        provider_factory: Callable[[str], BaseOAuthProvider] = get_oauth_provider,
        **kwargs,
    ):
        kwargs.setdefault("batch_size", settings.CALENDAR_BATCH_SIZE)
        super().__init__(session_factory, **kwargs)
        self.vault = vault
        self.provider_factory = provider_factory

    def preflight(self) -> None:
        if self.vault is None:
            self.vault = get_vault()

    async def _connection_for(self, db: AsyncSession, job: CalendarJob) -> Optional[OAuthConnection]:
        if job.oauth_connection_id:
            return await db.get(OAuthConnection, job.oauth_connection_id)
        result = await db.execute(
            select(OAuthConnection).where(
                OAuthConnection.organization_id == job.organization_id,
                OAuthConnection.provider == job.provider,
            )
        )
        return result.scalar_one_or_none()

    async def deliver(self, db: AsyncSession, job: CalendarJob, client: httpx.AsyncClient) -> DeliveryResult:
        connection = await self._connection_for(db, job)
        if connection is None or not connection.active:
            raise _target_missing("OAuth connection missing or inactive")

        payload = parse_payload(CalendarPayload, job.payload)
        provider = self.provider_factory(connection.provider)

        refresher = TokenRefresher(db, self.vault, client, self.provider_factory)
        connection = await refresher.ensure_fresh(connection, self.now())
        access_token = self.vault.decrypt(connection.encrypted_access_token)

        job_type = getattr(job.job_type, "value", job.job_type)
        event = provider.render_event(job_type, payload, self.now())
        response = await client.post(
            provider.calendar_events_url,
            json=event,
            headers={"Authorization": f"{connection.token_type or 'Bearer'} {access_token}"},
            timeout=self.timeout,
        )
        return self._check_response(response)


DISPATCHERS: dict[str, type[BaseDispatcher]] = {
    WebhookDispatcher.channel: WebhookDispatcher,
    CommunicationDispatcher.channel: CommunicationDispatcher,
    PushDispatcher.channel: PushDispatcher,
    CalendarDispatcher.channel: CalendarDispatcher,
}


async def run_channel(channel: str, session_factory: async_sessionmaker, **kwargs) -> dict:
    """Run one dispatcher by channel name"""
    try:
        dispatcher_cls = DISPATCHERS[channel]
    except KeyError:
        raise ValueError(f"Unknown channel: {channel}") from None
    return await dispatcher_cls(session_factory, **kwargs).run()


async def run_all(session_factory: async_sessionmaker) -> dict[str, dict]:
    """
    Run every dispatcher in sequence.

    A configuration problem in one channel is reported for that channel
    and the others still run.
    """
    results: dict[str, dict] = {}
    for channel, dispatcher_cls in DISPATCHERS.items():
        try:
            results[channel] = await dispatcher_cls(session_factory).run()
        except AppException as e:
            logger.error(
                "Dispatcher could not run",
                extra_data={"channel": channel, "error": e.message},
            )
            results[channel] = {"error": e.message, "code": e.error_code.value}
    return results
