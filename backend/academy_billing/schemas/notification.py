from __future__ import annotations

from datetime import datetime
from uuid import UUID

from academy_billing.schemas.common import IDModel, RunCounters, Timestamped


class NotificationQueueRead(IDModel, Timestamped):
    academy_id: UUID
    recipient_phone: str
    template_code: str
    status: str
    attempts: int
    max_attempts: int
    next_retry_at: datetime | None
    processed_at: datetime | None
    provider_msg_key: str | None
    error_code: str | None
    error_message: str | None


class WorkerRunRead(RunCounters):
    retried: int = 0
