from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pydantic import field_serializer
from sqlalchemy import JSON, Column
from sqlmodel import Field, Index, SQLModel

from utils.timezone_helpers import format_utc_datetime


# In-app notification, written alongside any push delivery
class Notification(SQLModel, table=True):
    __tablename__ = "notifications"

    __table_args__ = (
        Index("ix_notifications_recipient_id", "recipient_id"),
        Index("ix_notifications_recipient_created", "recipient_id", "created_at"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    recipient_id: str
    title: str
    message: str
    type: str = Field(default="attendance")
    meta: Dict[str, Any] = Field(default_factory=dict, sa_column=Column("metadata", JSON))
    read: bool = Field(default=False)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @field_serializer("created_at")
    def serialize_created_at(self, dt: datetime) -> Optional[str]:
        return format_utc_datetime(dt)
