"""
Job Store - claiming and recording outcomes of delivery jobs.

Every transition is a conditional UPDATE keyed on the status the caller
last observed, so two overlapping dispatcher runs can never both claim
the same job, and a terminal job is never written again.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Type

from sqlalchemy import and_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from relay.core.config import settings
from relay.core.logging import get_logger
from relay.core.retry import RetryDecision, schedule_failure, utcnow
from relay.db.models.delivery_job import DeliveryJobMixin, JobStatus

logger = get_logger(__name__)

LEASE_EXPIRED_ERROR = "Claim lease expired before an outcome was recorded"


def truncate(text: Optional[str], limit: int) -> Optional[str]:
    if text is None:
        return None
    return text[:limit]


@dataclass(frozen=True)
class FailureRecord:
    """What was observed on a failed attempt"""
    error: str
    response_status: Optional[int] = None
    response_body: Optional[str] = None


class JobStore:
    """
    Claim/record operations for one delivery-job table.

    The session is owned by the caller; each method commits its own
    transition so a crash between jobs never leaves partial state.
    """

    def __init__(
        self,
        db: AsyncSession,
        model: Type[DeliveryJobMixin],
        *,
        lease_seconds: int | None = None,
        max_response_chars: int | None = None,
    ):
        self.db = db
        self.model = model
        self.lease_seconds = (
            lease_seconds if lease_seconds is not None else settings.JOB_CLAIM_LEASE_SECONDS
        )
        self.max_response_chars = (
            max_response_chars if max_response_chars is not None else settings.RESPONSE_BODY_MAX_CHARS
        )

    async def get_due_candidates(self, limit: int, now: datetime) -> list[tuple]:
        """
        Due jobs, oldest first: pending with next_retry_at <= now, plus
        processing jobs whose claim lease expired (worker crashed mid-job).
        """
        model = self.model
        stale_before = now - timedelta(seconds=self.lease_seconds)
        result = await self.db.execute(
            select(model.id, model.status, model.claimed_at, model.attempt_number)
            .where(
                or_(
                    and_(model.status == JobStatus.PENDING, model.next_retry_at <= now),
                    and_(model.status == JobStatus.PROCESSING, model.claimed_at < stale_before),
                )
            )
            .order_by(model.created_at.asc(), model.id.asc())
            .limit(limit)
        )
        return list(result.all())

    async def claim_due(self, limit: int, now: datetime | None = None) -> list[int]:
        """
        Atomically claim up to `limit` due jobs.

        Returns only the ids this call won; a row claimed by a concurrent
        run in between the select and the update is skipped.

        An expired lease counts as a failed attempt: the job is reclaimed
        with its attempt number advanced, or marked failed once retries
        are exhausted.
        """
        now = now or utcnow()
        model = self.model
        claimed: list[int] = []

        for job_id, seen_status, seen_claimed_at, seen_attempts in await self.get_due_candidates(limit, now):
            conditions = [model.id == job_id, model.status == seen_status]
            values = {"status": JobStatus.PROCESSING, "claimed_at": now, "updated_at": now}
            decision = None
            if seen_status == JobStatus.PROCESSING:
                conditions.append(model.claimed_at == seen_claimed_at)
                decision = schedule_failure(seen_attempts or 0, now)
                values["attempt_number"] = decision.attempt_number
                values["error_message"] = LEASE_EXPIRED_ERROR
                if decision.is_terminal:
                    values["status"] = JobStatus.FAILED

            result = await self.db.execute(
                update(model)
                .where(*conditions)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                continue
            if decision is None:
                claimed.append(job_id)
            elif decision.is_terminal:
                logger.warning(
                    "Job failed after its lease expired on the last attempt",
                    extra_data={
                        "table": model.__tablename__,
                        "job_id": job_id,
                        "attempt": decision.attempt_number,
                    },
                )
            else:
                claimed.append(job_id)
                logger.warning(
                    "Reclaimed job with expired lease",
                    extra_data={
                        "table": model.__tablename__,
                        "job_id": job_id,
                        "attempt": decision.attempt_number,
                    },
                )

        await self.db.commit()
        return claimed

    async def load(self, job_id: int):
        return await self.db.get(self.model, job_id, populate_existing=True)

    async def mark_success(
        self,
        job_id: int,
        *,
        response_status: Optional[int] = None,
        response_body: Optional[str] = None,
        now: datetime | None = None,
    ) -> bool:
        """processing → success. Returns False if the job was no longer ours."""
        now = now or utcnow()
        model = self.model
        result = await self.db.execute(
            update(model)
            .where(model.id == job_id, model.status == JobStatus.PROCESSING)
            .values(
                status=JobStatus.SUCCESS,
                error_message=None,
                response_status=response_status,
                response_body=truncate(response_body, self.max_response_chars),
                delivered_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        return result.rowcount == 1

    async def mark_failure(
        self,
        job_id: int,
        failure: FailureRecord,
        *,
        now: datetime | None = None,
    ) -> Optional[RetryDecision]:
        """
        processing → pending (retry scheduled) or failed.

        Returns the decision, or None if the job was no longer ours.
        """
        now = now or utcnow()
        model = self.model
        row = (
            await self.db.execute(
                select(model.attempt_number).where(
                    model.id == job_id, model.status == JobStatus.PROCESSING
                )
            )
        ).first()
        if row is None:
            return None

        previous_attempts = row[0] or 0
        decision = schedule_failure(previous_attempts, now)

        values = {
            "attempt_number": decision.attempt_number,
            "error_message": truncate(failure.error, 1000),
            "response_status": failure.response_status,
            "response_body": truncate(failure.response_body, self.max_response_chars),
            "updated_at": now,
        }
        if decision.is_terminal:
            values["status"] = JobStatus.FAILED
        else:
            values["status"] = JobStatus.PENDING
            values["next_retry_at"] = decision.next_retry_at
            values["claimed_at"] = None

        result = await self.db.execute(
            update(model)
            .where(
                model.id == job_id,
                model.status == JobStatus.PROCESSING,
                model.attempt_number == previous_attempts,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        if result.rowcount != 1:
            return None
        return decision

