"""
Calendar Job Model - events pushed to a connected Google/Microsoft calendar
"""
import enum

from sqlalchemy import Column, Integer, String, Enum as SQLEnum, ForeignKey

from relay.db.database import Base
from relay.db.models.delivery_job import DeliveryJobMixin


class CalendarJobType(str, enum.Enum):
    FOLLOW_UP_REMINDER = "follow_up_reminder"
    LABEL_MASTER_RELEASE = "label_master_release"


class CalendarJob(DeliveryJobMixin, Base):
    """Payload shape: {"track": {artist_name, title, sc_link, release_date}}"""

    __tablename__ = "calendar_jobs"

    organization_id = Column(String(36), ForeignKey("organizations.id"), nullable=False, index=True)
    oauth_connection_id = Column(Integer, ForeignKey("oauth_connections.id"), nullable=True, index=True)
    provider = Column(String(20), nullable=False)
    job_type = Column(SQLEnum(CalendarJobType), nullable=False)
