from datetime import datetime
from enum import Enum
from uuid import UUID

from sqlalchemy import JSON
from sqlmodel import Field

from academy_billing.models.base import TimestampedModel, UUIDModel


class NotificationStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    SENT = "SENT"
    FAILED = "FAILED"


class NotificationQueue(UUIDModel, TimestampedModel, table=True):
    __tablename__ = "notification_queue"

    academy_id: UUID = Field(foreign_key="academies.id", index=True)
    recipient_phone: str = Field(max_length=32)
    sender_key: str
    template_code: str = Field(max_length=64)
    template_vars: dict | None = Field(default_factory=dict, sa_type=JSON)
    dedup_key: str | None = Field(default=None, index=True, max_length=128)

    status: str = Field(default=NotificationStatus.PENDING.value, index=True)
    attempts: int = Field(default=0)
    max_attempts: int = Field(default=3)
    next_retry_at: datetime | None = Field(default=None, index=True)
    processed_at: datetime | None = Field(default=None)
    provider_msg_key: str | None = Field(default=None)
    error_code: str | None = Field(default=None, max_length=64)
    error_message: str | None = Field(default=None)
