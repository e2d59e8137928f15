"""
Track Model - a submission in an organization's A&R pipeline
"""
from sqlalchemy import Column, Integer, String, DateTime, Boolean, Date, Text, ForeignKey

from relay.core.retry import utcnow
from relay.db.database import Base


class Track(Base):
    """Only the columns the delivery subsystem reads or writes"""

    __tablename__ = "tracks"

    id = Column(Integer, primary_key=True, index=True)
    organization_id = Column(String(36), ForeignKey("organizations.id"), nullable=False, index=True)

    artist_name = Column(String(200), nullable=False)
    title = Column(String(200), nullable=False)
    sc_link = Column(String(2048), nullable=True)
    release_date = Column(Date, nullable=True)

    status = Column(String(30), nullable=False, default="inbox")
    crate = Column(String(30), nullable=False, default="submissions")
    source = Column(String(30), nullable=True)
    archived = Column(Boolean, default=False, nullable=False)

    submitter_email = Column(String(200), nullable=True)
    submitter_note = Column(Text, nullable=True)

    created_at = Column(DateTime, default=utcnow)

    def to_event_payload(self) -> dict:
        """Serialized form embedded in webhook / chat / calendar payloads"""
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "artist_name": self.artist_name,
            "title": self.title,
            "sc_link": self.sc_link,
            "release_date": self.release_date.isoformat() if self.release_date else None,
            "status": self.status,
            "source": self.source,
            "created_at": self.created_at.isoformat() + "Z" if self.created_at else None,
        }
