from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlmodel import Session, select

from academy_billing.core.config import settings
from academy_billing.core.errors import WebhookPayloadError, WebhookSignatureError
from academy_billing.core.logging_setup import get_logger
from academy_billing.models.audit import WebhookEvent, WebhookProcessingStatus
from academy_billing.models.billing import Invoice, InvoiceStatus, PaymentMethod, PaymentMethodStatus
from academy_billing.services.toss import parse_webhook_body, verify_webhook_signature

logger = get_logger("webhooks")


class WebhookService:
    """Toss Payments webhook intake.

    Events are stored before they are applied; an error while applying marks
    the stored event ERROR and is not re-raised, so Toss does not retry forever.
    """

    def __init__(self, session: Session, *, secret: str | None = None) -> None:
        self.session = session
        self.secret = secret if secret is not None else settings.toss_secret_key

    def handle_toss(self, raw_body: bytes, signature: str | None) -> WebhookEvent:
        if not verify_webhook_signature(raw_body, signature, self.secret):
            logger.warning("Rejected Toss webhook with invalid signature")
            raise WebhookSignatureError("Invalid signature")

        payload = parse_webhook_body(raw_body)
        if payload is None:
            raise WebhookPayloadError("Invalid payload")

        event = WebhookEvent(
            provider="TOSS_PAYMENTS",
            event_type=str(payload["eventType"]),
            payload=raw_body.decode("utf-8"),
            processing_status=WebhookProcessingStatus.PENDING.value,
        )
        self.session.add(event)
        self.session.commit()
        self.session.refresh(event)

        try:
            self._apply(event.event_type, payload["data"])
        except Exception:  # noqa: BLE001
            self.session.rollback()
            logger.exception("Failed to apply Toss webhook event %s", event.id)
            event.processing_status = WebhookProcessingStatus.ERROR.value
        else:
            event.processing_status = WebhookProcessingStatus.DONE.value
            event.processed_at = datetime.utcnow()
        self.session.add(event)
        self.session.commit()
        self.session.refresh(event)
        return event

    def _apply(self, event_type: str, data: dict[str, Any]) -> None:
        now = datetime.utcnow()
        if event_type == "PAYMENT_STATUS_CHANGED":
            payment_key = data.get("paymentKey")
            if not payment_key or data.get("status") != "CANCELED":
                return
            invoices = self.session.exec(select(Invoice).where(Invoice.provider_payment_key == payment_key)).all()
            for invoice in invoices:
                invoice.status = InvoiceStatus.CANCELED.value
                invoice.touch(now)
                self.session.add(invoice)
            logger.info("Payment %s canceled at Toss, %s invoice(s) updated", payment_key, len(invoices))
        elif event_type == "BILLING_STATUS_CHANGED":
            billing_key = data.get("billingKey")
            if not billing_key:
                return
            methods = self.session.exec(select(PaymentMethod).where(PaymentMethod.billing_key == billing_key)).all()
            for method in methods:
                method.status = PaymentMethodStatus.REVOKED.value
                method.touch(now)
                self.session.add(method)
            logger.info("Billing key revoked at Toss, %s payment method(s) updated", len(methods))
        self.session.commit()
