"""
Delivery Job columns shared by every channel table.

A job is claimable when status=pending and next_retry_at <= now. The
dispatcher moves it to processing with a conditional update, then to
success, back to pending (retry scheduled) or to failed.
"""
import enum

from sqlalchemy import Column, Integer, String, DateTime, Enum as SQLEnum, JSON, Text

from relay.core.retry import utcnow


class JobStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SUCCESS = "success"
    FAILED = "failed"


class DeliveryJobMixin:
    """Status, retry and diagnostics columns"""

    id = Column(Integer, primary_key=True, index=True)

    status = Column(SQLEnum(JobStatus), default=JobStatus.PENDING, nullable=False, index=True)
    attempt_number = Column(Integer, default=0, nullable=False)
    next_retry_at = Column(DateTime, default=utcnow, nullable=False, index=True)

    payload = Column(JSON, nullable=False, default=dict)

    # Last observed outcome
    response_status = Column(Integer, nullable=True)
    response_body = Column(Text, nullable=True)
    error_message = Column(String(1000), nullable=True)

    # Timestamps
    claimed_at = Column(DateTime, nullable=True)
    delivered_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False, index=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
