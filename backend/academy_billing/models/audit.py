from datetime import datetime
from enum import Enum
from uuid import UUID

from sqlalchemy import JSON, Text
from sqlmodel import Field

from academy_billing.models.base import TimestampedModel, UUIDModel


class AuditLog(UUIDModel, TimestampedModel, table=True):
    __tablename__ = "audit_logs"

    academy_id: UUID | None = Field(default=None, foreign_key="academies.id", index=True)
    actor_user_id: UUID | None = Field(default=None, foreign_key="users.id")
    action: str = Field(index=True)
    target_type: str | None = Field(default=None)
    target_id: str | None = Field(default=None)
    meta: dict | None = Field(default_factory=dict, sa_type=JSON)


class WebhookProcessingStatus(str, Enum):
    PENDING = "PENDING"
    DONE = "DONE"
    ERROR = "ERROR"


class WebhookEvent(UUIDModel, TimestampedModel, table=True):
    __tablename__ = "webhook_events"

    provider: str = Field(default="TOSS_PAYMENTS")
    event_type: str = Field(index=True)
    payload: str = Field(sa_type=Text)
    received_at: datetime = Field(default_factory=datetime.utcnow)
    processed_at: datetime | None = Field(default=None)
    processing_status: str = Field(default=WebhookProcessingStatus.PENDING.value)
