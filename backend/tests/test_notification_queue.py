import uuid
from datetime import datetime, timedelta

import pytest
from sqlmodel import Session

from academy_billing.core.errors import NotFoundError
from academy_billing.models.notification import NotificationQueue, NotificationStatus
from academy_billing.services.alimtalk import AlimtalkSendResult
from academy_billing.services.notification_queue import NotificationQueueWorker, backoff_delay

NOW = datetime(2024, 3, 4, 3, 0)


class RecordingSender:
    """Returns queued outcomes in order; an empty queue means success."""

    def __init__(self, *outcomes) -> None:
        self.outcomes = list(outcomes)
        self.sent: list[dict] = []

    def send(self, *, sender_key, template_code, phone, variables):
        self.sent.append(
            {"sender_key": sender_key, "template_code": template_code, "phone": phone, "variables": dict(variables)}
        )
        outcome = self.outcomes.pop(0) if self.outcomes else None
        if isinstance(outcome, Exception):
            raise outcome
        return outcome or AlimtalkSendResult(success=True, msg_key=f"mid_{len(self.sent)}")


def _failure(code="-99", message="Template not approved"):
    return AlimtalkSendResult(success=False, error_code=code, error_message=message)


def _enqueue(worker, academy, **kwargs):
    params = {
        "academy_id": academy.id,
        "recipient_phone": "01012345678",
        "sender_key": "sender_abc",
        "template_code": "TPL_PAYMENT_DONE",
        "variables": {"name": "Kim Minji", "amount": "50,000"},
        "now": NOW,
    }
    params.update(kwargs)
    return worker.enqueue(**params)


def test_backoff_delay_steps():
    assert backoff_delay(1) == timedelta(minutes=5)
    assert backoff_delay(2) == timedelta(minutes=30)
    assert backoff_delay(3) == timedelta(minutes=120)
    assert backoff_delay(7) == timedelta(minutes=120)
    assert backoff_delay(1, (1, 2)) == timedelta(minutes=1)
    with pytest.raises(ValueError):
        backoff_delay(1, ())


def test_successful_send_marks_row_sent(db_session, factory, audit_stub):
    academy = factory.academy()
    sender = RecordingSender()
    worker = NotificationQueueWorker(db_session, sender, audit=audit_stub)
    row = _enqueue(worker, academy)

    result = worker.process_queue(now=NOW)

    assert (result.processed, result.succeeded, result.failed, result.skipped, result.retried) == (1, 1, 0, 0, 0)
    assert sender.sent[0]["template_code"] == "TPL_PAYMENT_DONE"
    assert sender.sent[0]["variables"] == {"name": "Kim Minji", "amount": "50,000"}

    stored = db_session.get(NotificationQueue, row.id)
    assert stored.status == NotificationStatus.SENT.value
    assert stored.attempts == 1
    assert stored.provider_msg_key == "mid_1"
    assert stored.processed_at == NOW
    assert [event["action"] for event in audit_stub.events] == ["alimtalk.sent"]


def test_failures_back_off_then_fail_permanently(db_session, factory, audit_stub):
    academy = factory.academy()
    sender = RecordingSender(_failure(), _failure(), _failure())
    worker = NotificationQueueWorker(db_session, sender, audit=audit_stub, backoff_minutes=(5, 30, 120))
    row = _enqueue(worker, academy)

    first = worker.process_queue(now=NOW)
    assert (first.retried, first.failed) == (1, 0)
    stored = db_session.get(NotificationQueue, row.id)
    assert stored.status == NotificationStatus.PENDING.value
    assert stored.attempts == 1
    assert stored.next_retry_at == NOW + timedelta(minutes=5)
    assert stored.error_code == "-99"

    # Not due yet
    assert worker.process_queue(now=NOW + timedelta(minutes=1)).processed == 0

    second_at = NOW + timedelta(minutes=5)
    worker.process_queue(now=second_at)
    stored = db_session.get(NotificationQueue, row.id)
    assert stored.attempts == 2
    assert stored.next_retry_at == second_at + timedelta(minutes=30)

    third = worker.process_queue(now=second_at + timedelta(minutes=30))
    assert (third.failed, third.retried) == (1, 0)
    stored = db_session.get(NotificationQueue, row.id)
    assert stored.status == NotificationStatus.FAILED.value
    assert stored.attempts == 3
    assert stored.next_retry_at is None

    assert len(sender.sent) == 3
    assert [event["action"] for event in audit_stub.events] == ["alimtalk.failed"]
    assert audit_stub.events[0]["meta"]["attempts"] == 3


def test_sender_exception_is_recorded_as_unknown(db_session, factory):
    academy = factory.academy()
    worker = NotificationQueueWorker(db_session, RecordingSender(RuntimeError("socket closed")))
    row = _enqueue(worker, academy)

    result = worker.process_queue(now=NOW)

    assert result.retried == 1
    stored = db_session.get(NotificationQueue, row.id)
    assert stored.error_code == "UNKNOWN"
    assert stored.error_message == "socket closed"


def test_only_one_worker_can_claim_a_row(db_engine, db_session, factory):
    academy = factory.academy()
    worker = NotificationQueueWorker(db_session, RecordingSender())
    row_id = _enqueue(worker, academy).id

    assert worker.claim(row_id) is True
    with Session(db_engine) as other:
        assert NotificationQueueWorker(other, RecordingSender()).claim(row_id) is False

    assert db_session.get(NotificationQueue, row_id).status == NotificationStatus.PROCESSING.value


def test_row_claimed_elsewhere_mid_run_is_skipped(db_engine, db_session, factory):
    academy = factory.academy()
    plain = NotificationQueueWorker(db_session, RecordingSender())
    first = _enqueue(plain, academy, now=NOW - timedelta(minutes=2))
    second_id = _enqueue(plain, academy, now=NOW - timedelta(minutes=1)).id

    class StealingSender(RecordingSender):
        def send(self, **kwargs):
            with Session(db_engine) as other:
                NotificationQueueWorker(other, RecordingSender()).claim(second_id)
            return super().send(**kwargs)

    sender = StealingSender()
    result = NotificationQueueWorker(db_session, sender).process_queue(now=NOW)

    assert (result.processed, result.succeeded, result.skipped) == (2, 1, 1)
    assert len(sender.sent) == 1
    assert db_session.get(NotificationQueue, first.id).status == NotificationStatus.SENT.value


def test_batch_size_limits_rows_per_run(db_session, factory):
    academy = factory.academy()
    worker = NotificationQueueWorker(db_session, RecordingSender())
    for minutes in (3, 2, 1):
        _enqueue(worker, academy, now=NOW - timedelta(minutes=minutes))

    first = worker.process_queue(batch_size=2, now=NOW)
    second = worker.process_queue(batch_size=2, now=NOW)

    assert (first.processed, first.succeeded) == (2, 2)
    assert (second.processed, second.succeeded) == (1, 1)


def test_enqueue_deduplicates_open_rows(db_session, factory):
    academy = factory.academy()
    worker = NotificationQueueWorker(db_session, RecordingSender())

    first = _enqueue(worker, academy, dedup_key="invoice:42:paid")
    assert first is not None
    assert _enqueue(worker, academy, dedup_key="invoice:42:paid") is None

    first.status = NotificationStatus.FAILED.value
    db_session.add(first)
    db_session.commit()

    assert _enqueue(worker, academy, dedup_key="invoice:42:paid") is not None


def test_enqueue_defers_during_quiet_hours(db_session, factory):
    academy = factory.academy(quiet_hours_start="21:00", quiet_hours_end="08:00")
    worker = NotificationQueueWorker(db_session, RecordingSender())
    # 22:00 in Seoul
    late_evening = datetime(2024, 3, 4, 13, 0)

    row = _enqueue(worker, academy, now=late_evening)

    assert row.next_retry_at == datetime(2024, 3, 4, 23, 0)
    assert worker.process_queue(now=late_evening).processed == 0
    assert worker.process_queue(now=datetime(2024, 3, 4, 23, 0)).succeeded == 1


def test_enqueue_outside_quiet_hours_is_immediate(db_session, factory):
    academy = factory.academy(quiet_hours_start="21:00", quiet_hours_end="08:00")
    worker = NotificationQueueWorker(db_session, RecordingSender())

    row = _enqueue(worker, academy)

    assert row.next_retry_at == NOW
    assert row.max_attempts == 3


def test_enqueue_unknown_academy(db_session):
    worker = NotificationQueueWorker(db_session, RecordingSender())

    with pytest.raises(NotFoundError):
        worker.enqueue(
            academy_id=uuid.uuid4(),
            recipient_phone="01012345678",
            sender_key="sender_abc",
            template_code="TPL",
            variables={},
        )


def test_unstorable_failure_does_not_abort_the_batch(db_session, factory):
    academy = factory.academy()
    # A dict message cannot be bound to the error_message column
    sender = RecordingSender(_failure(message={"detail": "template rejected"}))
    worker = NotificationQueueWorker(db_session, sender)
    first = _enqueue(worker, academy, now=NOW - timedelta(minutes=2))
    second = _enqueue(worker, academy, now=NOW - timedelta(minutes=1))

    result = worker.process_queue(now=NOW)

    assert (result.processed, result.succeeded, result.retried, result.failed) == (2, 1, 1, 0)
    stuck = db_session.get(NotificationQueue, first.id)
    assert stuck.status == NotificationStatus.PENDING.value
    assert stuck.attempts == 1
    assert stuck.error_code == "RECORD_ERROR"
    assert stuck.next_retry_at == NOW + timedelta(minutes=5)
    assert db_session.get(NotificationQueue, second.id).status == NotificationStatus.SENT.value


def test_delivered_row_that_cannot_be_stored_is_not_resent(db_session, factory):
    academy = factory.academy()
    sender = RecordingSender(AlimtalkSendResult(success=True, msg_key={"mid": "m_1"}))
    worker = NotificationQueueWorker(db_session, sender)
    row = _enqueue(worker, academy)

    result = worker.process_queue(now=NOW)

    assert result.failed == 1
    stored = db_session.get(NotificationQueue, row.id)
    assert stored.status == NotificationStatus.FAILED.value
    assert stored.error_code == "RECORD_ERROR"
    assert stored.next_retry_at is None


def test_close_releases_the_client_the_worker_built(db_session):
    worker = NotificationQueueWorker(db_session)
    client = worker.sender

    worker.close()

    assert client._client.is_closed
