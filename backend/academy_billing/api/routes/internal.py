from __future__ import annotations

from dataclasses import asdict

from fastapi import APIRouter, Depends, Query

from academy_billing.api.deps import (
    DbSession,
    get_audit_service,
    get_message_sender,
    get_payment_gateway,
    require_cron_secret,
)
from academy_billing.schemas.billing import BillingRunRead
from academy_billing.schemas.notification import WorkerRunRead
from academy_billing.services.alimtalk import MessageSender
from academy_billing.services.audit import AuditService
from academy_billing.services.billing_scheduler import run_billing_scheduler
from academy_billing.services.notification_queue import NotificationQueueWorker
from academy_billing.services.toss import PaymentGateway

router = APIRouter(prefix="/internal", tags=["internal"], dependencies=[Depends(require_cron_secret)])


@router.post("/billing/run", response_model=BillingRunRead)
def run_billing(
    session: DbSession,
    gateway: PaymentGateway | None = Depends(get_payment_gateway),
    audit: AuditService = Depends(get_audit_service),
) -> BillingRunRead:
    result = run_billing_scheduler(session, gateway, audit=audit)
    return BillingRunRead(**asdict(result))


@router.post("/notifications/process", response_model=WorkerRunRead)
def process_notifications(
    session: DbSession,
    batch_size: int | None = Query(default=None, ge=1, le=500),
    sender: MessageSender | None = Depends(get_message_sender),
    audit: AuditService = Depends(get_audit_service),
) -> WorkerRunRead:
    worker = NotificationQueueWorker(session, sender, audit=audit)
    try:
        result = worker.process_queue(batch_size)
    finally:
        worker.close()
    return WorkerRunRead(**asdict(result))
