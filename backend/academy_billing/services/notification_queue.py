"""
Queue worker for outbound AlimTalk messages.

Meant to be triggered every few minutes by an external scheduler:

 1. Fetch up to ``batch_size`` PENDING rows whose ``next_retry_at`` has passed.
 2. Claim each row (PENDING -> PROCESSING) with a conditional update.
 3. Send through the messaging client.
 4. Success -> SENT. Failure -> back to PENDING with a stepped backoff, or
    FAILED once ``max_attempts`` is reached.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Mapping, Sequence
from uuid import UUID

from sqlalchemy import update
from sqlmodel import Session, select

from academy_billing.core.config import settings
from academy_billing.core.errors import NotFoundError
from academy_billing.core.logging_setup import get_logger
from academy_billing.models.academy import Academy
from academy_billing.models.notification import NotificationQueue, NotificationStatus
from academy_billing.services.alimtalk import AlimtalkClient, AlimtalkSendResult, MessageSender
from academy_billing.services.audit import AuditService
from academy_billing.utils.dates import is_in_quiet_hours, next_quiet_hours_end

logger = get_logger("notification_queue")

BACKOFF_MINUTES = (5, 30, 120)

OPEN_STATUSES = (
    NotificationStatus.PENDING.value,
    NotificationStatus.PROCESSING.value,
    NotificationStatus.SENT.value,
)


@dataclass
class WorkerRunResult:
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    retried: int = 0


def backoff_delay(attempts: int, table: Sequence[int] = BACKOFF_MINUTES) -> timedelta:
    """Delay before the next try after ``attempts`` failures (last entry reused)."""
    if not table:
        raise ValueError("Backoff table is empty")
    index = min(max(attempts, 1), len(table)) - 1
    return timedelta(minutes=table[index])


class NotificationQueueWorker:
    def __init__(
        self,
        session: Session,
        sender: MessageSender | None = None,
        *,
        audit: AuditService | None = None,
        backoff_minutes: Sequence[int] | None = None,
        batch_size: int | None = None,
    ) -> None:
        self.session = session
        self._sender = sender
        self._owned_client: AlimtalkClient | None = None
        self.audit = audit
        self.backoff_minutes = tuple(backoff_minutes or settings.notification_backoff_minutes or BACKOFF_MINUTES)
        self.batch_size = batch_size or settings.notification_batch_size

    @property
    def sender(self) -> MessageSender:
        if self._sender is None:
            self._owned_client = AlimtalkClient.from_settings()
            self._sender = self._owned_client
        return self._sender

    def close(self) -> None:
        """Release the AlimTalk client this worker built for itself, if any."""
        if self._owned_client is not None:
            self._owned_client.close()
            self._owned_client = None
            self._sender = None

    def process_queue(self, batch_size: int | None = None, *, now: datetime | None = None) -> WorkerRunResult:
        now = now or datetime.utcnow()
        rows = self.session.exec(
            select(NotificationQueue)
            .where(
                (NotificationQueue.status == NotificationStatus.PENDING.value)
                & (NotificationQueue.next_retry_at <= now)
            )
            .order_by(NotificationQueue.next_retry_at)
            .limit(batch_size or self.batch_size)
        ).all()
        row_ids = [row.id for row in rows]
        result = WorkerRunResult(processed=len(row_ids))

        for row_id in row_ids:
            if not self.claim(row_id):
                # Another worker got there first
                result.skipped += 1
                continue

            row = self.session.get(NotificationQueue, row_id)
            if row is None:
                result.skipped += 1
                continue

            try:
                outcome = self.sender.send(
                    sender_key=row.sender_key,
                    template_code=row.template_code,
                    phone=row.recipient_phone,
                    variables=row.template_vars or {},
                )
            except Exception as exc:  # noqa: BLE001
                logger.warning("AlimTalk send raised for queue row %s: %r", row_id, exc)
                outcome = AlimtalkSendResult(success=False, error_code="UNKNOWN", error_message=str(exc))

            try:
                if outcome.success:
                    self._mark_sent(row, outcome, now)
                    result.succeeded += 1
                elif self._mark_failed(row, outcome, now):
                    result.failed += 1
                else:
                    result.retried += 1
            except Exception as exc:  # noqa: BLE001
                self.session.rollback()
                logger.exception("Failed to record AlimTalk outcome for queue row %s", row_id)
                if self._release(row_id, exc, now, delivered=outcome.success):
                    result.failed += 1
                else:
                    result.retried += 1

        logger.info(
            "Notification queue run: processed=%s succeeded=%s failed=%s skipped=%s retried=%s",
            result.processed,
            result.succeeded,
            result.failed,
            result.skipped,
            result.retried,
        )
        return result

    def _release(self, row_id: UUID, exc: Exception, now: datetime, *, delivered: bool) -> bool:
        """Move a row whose outcome could not be stored out of PROCESSING.

        A row the provider accepted is closed as FAILED so it is never sent
        twice; otherwise it takes the normal retry path. Returns True when the
        row ends up FAILED.
        """
        failure = AlimtalkSendResult(success=False, error_code="RECORD_ERROR", error_message=str(exc)[:500])
        try:
            row = self.session.get(NotificationQueue, row_id)
            if row is None or row.status != NotificationStatus.PROCESSING.value:
                return False
            if delivered:
                row.max_attempts = row.attempts + 1
            return self._mark_failed(row, failure, now)
        except Exception:  # noqa: BLE001
            self.session.rollback()
            logger.exception("Queue row %s left in PROCESSING", row_id)
            return True

    def claim(self, row_id: UUID) -> bool:
        """Atomically move a row PENDING -> PROCESSING and commit.

        Zero affected rows means it is no longer PENDING and must not be sent.
        """
        outcome = self.session.connection().execute(
            update(NotificationQueue)
            .where(
                (NotificationQueue.id == row_id)
                & (NotificationQueue.status == NotificationStatus.PENDING.value)
            )
            .values(status=NotificationStatus.PROCESSING.value, updated_at=datetime.utcnow())
        )
        self.session.commit()
        return outcome.rowcount == 1

    def _mark_sent(self, row: NotificationQueue, outcome: AlimtalkSendResult, now: datetime) -> None:
        row.status = NotificationStatus.SENT.value
        row.attempts += 1
        row.processed_at = now
        row.provider_msg_key = outcome.msg_key
        row.error_code = None
        row.error_message = None
        row.touch()
        self.session.add(row)
        self.session.commit()

        self._audit(
            row,
            action="alimtalk.sent",
            meta={"phone": row.recipient_phone, "msg_key": outcome.msg_key, "attempts": row.attempts},
        )

    def _mark_failed(self, row: NotificationQueue, outcome: AlimtalkSendResult, now: datetime) -> bool:
        """Record a failed send. Returns True when the row became FAILED."""
        attempts = row.attempts + 1
        exhausted = attempts >= row.max_attempts

        row.attempts = attempts
        row.status = NotificationStatus.FAILED.value if exhausted else NotificationStatus.PENDING.value
        row.next_retry_at = None if exhausted else now + backoff_delay(attempts, self.backoff_minutes)
        row.error_code = outcome.error_code
        row.error_message = outcome.error_message
        row.touch()
        self.session.add(row)
        self.session.commit()

        if exhausted:
            logger.warning(
                "AlimTalk to %s failed permanently after %s attempts: %s",
                row.recipient_phone,
                attempts,
                outcome.error_message,
            )
            self._audit(
                row,
                action="alimtalk.failed",
                meta={"phone": row.recipient_phone, "error": outcome.error_message, "attempts": attempts},
            )
        return exhausted

    def _audit(self, row: NotificationQueue, *, action: str, meta: dict[str, Any]) -> None:
        if not self.audit:
            return
        self.audit.record_event(
            action=action,
            academy_id=row.academy_id,
            target_type="NotificationQueue",
            target_id=row.id,
            meta=meta,
        )

    def enqueue(
        self,
        *,
        academy_id: UUID,
        recipient_phone: str,
        sender_key: str,
        template_code: str,
        variables: Mapping[str, Any],
        dedup_key: str | None = None,
        max_attempts: int | None = None,
        now: datetime | None = None,
    ) -> NotificationQueue | None:
        """Queue one message; returns None when ``dedup_key`` is already queued or sent.

        Inside the academy's quiet hours the first try is deferred to the end
        of the window.
        """
        academy = self.session.get(Academy, academy_id)
        if not academy:
            raise NotFoundError("Academy not found")

        if dedup_key:
            existing = self.session.exec(
                select(NotificationQueue).where(
                    (NotificationQueue.academy_id == academy_id)
                    & (NotificationQueue.dedup_key == dedup_key)
                    & (NotificationQueue.status.in_(OPEN_STATUSES))
                )
            ).first()
            if existing:
                logger.info("Skipping duplicate notification %s (row %s)", dedup_key, existing.id)
                return None

        now = now or datetime.utcnow()
        scheduled_at = now
        if academy.quiet_hours_start and academy.quiet_hours_end:
            if is_in_quiet_hours(academy.quiet_hours_start, academy.quiet_hours_end, now, academy.timezone):
                scheduled_at = next_quiet_hours_end(academy.quiet_hours_end, now, academy.timezone)

        row = NotificationQueue(
            academy_id=academy_id,
            recipient_phone=recipient_phone,
            sender_key=sender_key,
            template_code=template_code,
            template_vars=dict(variables),
            dedup_key=dedup_key,
            status=NotificationStatus.PENDING.value,
            max_attempts=max_attempts or settings.notification_max_attempts,
            next_retry_at=scheduled_at,
        )
        self.session.add(row)
        self.session.commit()
        self.session.refresh(row)
        return row
