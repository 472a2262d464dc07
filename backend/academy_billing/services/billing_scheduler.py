from datetime import date

from sqlmodel import Session

from academy_billing.core.logging_setup import get_logger
from academy_billing.db.session import session_factory
from academy_billing.services.audit import AuditService
from academy_billing.services.billing import BillingRunResult, BillingService
from academy_billing.services.toss import PaymentGateway

logger = get_logger("billing_scheduler")

# Daily entry point for the external scheduler: one charge attempt per due invoice


def run_billing_scheduler(
    session: Session,
    gateway: PaymentGateway | None = None,
    *,
    today: date | None = None,
    audit: AuditService | None = None,
) -> BillingRunResult:
    service = BillingService(session, gateway=gateway, audit=audit or AuditService(session_factory))
    try:
        result = service.run_daily_billing(today=today)
    finally:
        service.close()
    for error in result.errors:
        logger.info("billing: %s", error)
    if result.failed:
        logger.warning("Billing run had %s failed invoice(s)", result.failed)
    return result
