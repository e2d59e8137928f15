"""
OAuth Connection Model - encrypted provider credentials per organization.

At most one row per (organization_id, provider); re-authorizing replaces
the tokens in place.
"""
from sqlalchemy import Column, Integer, String, DateTime, Boolean, Text, UniqueConstraint, ForeignKey

from relay.core.retry import utcnow
from relay.db.database import Base


class OAuthConnection(Base):
    """Credential vault row: tokens are stored only as v1: ciphertext"""

    __tablename__ = "oauth_connections"

    id = Column(Integer, primary_key=True, index=True)
    organization_id = Column(String(36), ForeignKey("organizations.id"), nullable=False, index=True)
    provider = Column(String(20), nullable=False)  # google / microsoft

    account_email = Column(String(255), nullable=True)
    account_name = Column(String(255), nullable=True)
    scopes = Column(Text, nullable=True)
    token_type = Column(String(20), nullable=True, default="Bearer")

    encrypted_access_token = Column(Text, nullable=False)
    encrypted_refresh_token = Column(Text, nullable=True)
    expires_at = Column(DateTime, nullable=True)

    active = Column(Boolean, default=True, nullable=False)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("organization_id", "provider", name="uq_oauth_connections_org_provider"),
    )
