"""
Organization, Staff and Membership Models - tenancy and role gating
"""
import enum
import uuid

from sqlalchemy import Column, Integer, String, DateTime, Boolean, Enum as SQLEnum, ForeignKey, UniqueConstraint

from relay.core.retry import utcnow
from relay.db.database import Base


class MembershipRole(str, enum.Enum):
    OWNER = "Owner"
    MANAGER = "Manager"
    SCOUT = "Scout"
    VIEWER = "Viewer"


# Roles allowed to connect integrations on behalf of an organization
ELEVATED_ROLES = (MembershipRole.OWNER, MembershipRole.MANAGER)


class Organization(Base):
    """A tenant (label / agency)"""

    __tablename__ = "organizations"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    name = Column(String(200), nullable=False)
    created_at = Column(DateTime, default=utcnow)


class StaffMember(Base):
    """A person, linked to the hosted auth user"""

    __tablename__ = "staff_members"

    id = Column(Integer, primary_key=True, index=True)
    auth_user_id = Column(String(64), unique=True, nullable=False, index=True)
    name = Column(String(200), nullable=True)
    email = Column(String(255), nullable=True)
    # Personal plan tier set from billing checkout (agent / starter / pro)
    tier = Column(String(20), nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class Membership(Base):
    """Staff member's role inside one organization"""

    __tablename__ = "memberships"

    id = Column(Integer, primary_key=True, index=True)
    organization_id = Column(String(36), ForeignKey("organizations.id"), nullable=False, index=True)
    staff_member_id = Column(Integer, ForeignKey("staff_members.id"), nullable=False, index=True)
    role = Column(SQLEnum(MembershipRole), nullable=False)
    active = Column(Boolean, default=True, nullable=False)

    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        UniqueConstraint("organization_id", "staff_member_id", name="uq_memberships_org_staff"),
    )
