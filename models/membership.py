from datetime import date as Date
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlmodel import Field, Index, SQLModel


class MembershipStatus(str, Enum):
    ACTIVE = "active"
    PENDING = "pending"
    FROZEN = "frozen"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class Membership(SQLModel, table=True):
    __tablename__ = "memberships"

    __table_args__ = (
        Index("ix_memberships_member_gym", "member_id", "gym_id"),
        Index("ix_memberships_gym_id", "gym_id"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    member_id: str
    gym_id: str = Field(foreign_key="gyms.id")
    status: MembershipStatus = Field(default=MembershipStatus.ACTIVE)
    start_date: Date
    end_date: Date
    # None means the plan is not session-based
    sessions_remaining: Optional[int] = Field(default=None, ge=0)
    sessions_used: int = Field(default=0)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
