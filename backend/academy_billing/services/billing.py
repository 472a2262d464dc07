from __future__ import annotations

import secrets
import string
import time
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Iterable
from uuid import UUID

from sqlalchemy import func, update
from sqlalchemy.orm import selectinload
from sqlmodel import Session, select

from academy_billing.core.config import settings
from academy_billing.core.errors import BillingError, NotFoundError, TossError
from academy_billing.core.logging_setup import get_logger
from academy_billing.models.academy import Academy, User, UserRole
from academy_billing.models.billing import (
    AttemptStatus,
    Invoice,
    InvoiceStatus,
    PaymentAttempt,
    PaymentMethod,
    PaymentMethodStatus,
    StudentSubscription,
    SubscriptionStatus,
    TuitionPlan,
)
from academy_billing.services.audit import AuditService
from academy_billing.services.toss import ChargeResult, PaymentGateway, TossClient
from academy_billing.utils.dates import first_billing_date, next_billing_date, period_label, today_in_zone

logger = get_logger("billing")

DEFAULT_ORDER_NAME = "수강료"
_ORDER_SUFFIX_ALPHABET = string.digits + string.ascii_lowercase

PLAN_FIELDS = {"name", "amount", "currency", "billing_day", "grace_days", "late_fee", "is_active"}


@dataclass(frozen=True)
class StudentContact:
    name: str
    email: str | None


@dataclass
class BillingRunResult:
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    errors: list[str] = field(default_factory=list)


def generate_order_id() -> str:
    suffix = "".join(secrets.choice(_ORDER_SUFFIX_ALPHABET) for _ in range(5))
    return f"INV-{int(time.time() * 1000)}-{suffix}"


def attempt_order_id(invoice_order_id: str, attempt_no: int) -> str:
    """Order id sent to the gateway for one attempt.

    The first attempt uses the invoice's own id; each later daily retry is a
    new logical charge and gets its own key.
    """
    if attempt_no <= 1:
        return invoice_order_id
    return f"{invoice_order_id}-R{attempt_no}"


class BillingService:
    def __init__(
        self,
        session: Session,
        gateway: PaymentGateway | None = None,
        *,
        max_attempts: int | None = None,
        audit: AuditService | None = None,
    ) -> None:
        self.session = session
        self._gateway = gateway
        self._owned_client: TossClient | None = None
        self.max_attempts = max(max_attempts or settings.billing_max_attempts, 1)
        self.audit = audit

    @property
    def gateway(self) -> PaymentGateway:
        if self._gateway is None:
            self._owned_client = TossClient.from_settings()
            self._gateway = self._owned_client
        return self._gateway

    def close(self) -> None:
        """Release the Toss client this service built for itself, if any."""
        if self._owned_client is not None:
            self._owned_client.close()
            self._owned_client = None
            self._gateway = None

    # ------------------------------------------------------------------
    # Daily run
    # ------------------------------------------------------------------
    def run_daily_billing(
        self,
        *,
        today: date | None = None,
        academy_id: UUID | None = None,
    ) -> BillingRunResult:
        """Charge every PENDING invoice due on or before today, once.

        "Today" is the calendar date in each academy's own time zone unless
        ``today`` is given. Invoices are processed one at a time; a failure on
        one invoice is recorded and never stops the batch.
        """
        result = BillingRunResult()
        query = select(Academy).where(Academy.is_active.is_(True))
        if academy_id:
            query = query.where(Academy.id == academy_id)
        academies = self.session.exec(query.order_by(Academy.created_at)).all()

        for academy in academies:
            run_day = today or today_in_zone(academy.timezone)
            self._run_for_academy(academy.id, run_day, result)

        logger.info(
            "Billing run finished: processed=%s succeeded=%s failed=%s skipped=%s",
            result.processed,
            result.succeeded,
            result.failed,
            result.skipped,
        )
        return result

    def _run_for_academy(self, academy_id: UUID, run_day: date, result: BillingRunResult) -> None:
        invoices = self.session.exec(
            select(Invoice)
            .where(
                (Invoice.academy_id == academy_id)
                & (Invoice.status == InvoiceStatus.PENDING.value)
                & (Invoice.due_date <= run_day)
            )
            .options(
                selectinload(Invoice.plan),
                selectinload(Invoice.attempts),
                selectinload(Invoice.subscription),
            )
            .order_by(Invoice.due_date, Invoice.created_at)
        ).all()
        if not invoices:
            return

        student_ids = {invoice.student_user_id for invoice in invoices}
        # Keep plain values: every commit or rollback expires loaded instances
        students = {
            student.id: StudentContact(name=student.name, email=student.email)
            for student in self.session.exec(select(User).where(User.id.in_(list(student_ids)))).all()
        }
        invoice_ids = [invoice.id for invoice in invoices]

        for invoice_id in invoice_ids:
            result.processed += 1
            invoice = self.session.get(Invoice, invoice_id)
            if invoice is None:
                result.skipped += 1
                continue
            try:
                self._process_invoice(invoice, students.get(invoice.student_user_id), result)
            except Exception as exc:  # noqa: BLE001
                self.session.rollback()
                logger.exception("Unexpected error while billing invoice %s", invoice_id)
                result.failed += 1
                result.errors.append(f"Invoice {invoice_id}: {exc}")

    def _process_invoice(self, invoice: Invoice, student: StudentContact | None, result: BillingRunResult) -> None:
        attempts = list(invoice.attempts)

        if len(attempts) >= self.max_attempts:
            self._mark_exhausted(invoice)
            result.failed += 1
            result.errors.append(f"Invoice {invoice.id}: attempts exhausted ({len(attempts)}/{self.max_attempts})")
            return

        method = self.current_payment_method(invoice.academy_id, invoice.student_user_id)
        if not method:
            result.skipped += 1
            reason = f"Invoice {invoice.id}: no active payment method for student {invoice.student_user_id}"
            result.errors.append(reason)
            logger.info(reason)
            return

        now = datetime.utcnow()
        if not self.claim_invoice(invoice.id, now=now):
            self.session.rollback()
            result.skipped += 1
            result.errors.append(f"Invoice {invoice.id}: claimed by another run")
            return

        plan_name = invoice.plan.name if invoice.plan else DEFAULT_ORDER_NAME
        charge_request = {
            "billing_key": method.billing_key,
            "customer_key": method.customer_key,
            "amount": invoice.amount,
            "order_name": f"{plan_name} ({period_label(invoice.due_date)})",
            "customer_name": student.name if student else None,
            "customer_email": student.email if student else None,
        }
        attempt_no = len(attempts) + 1
        attempt = PaymentAttempt(
            academy_id=invoice.academy_id,
            invoice_id=invoice.id,
            attempt_no=attempt_no,
            order_id=attempt_order_id(invoice.order_id, attempt_no),
            status=AttemptStatus.REQUESTED.value,
            requested_at=now,
        )
        self.session.add(attempt)
        # Claim and REQUESTED attempt are durable before the gateway is called
        self.session.commit()

        try:
            charge = self.gateway.charge_with_billing_key(order_id=attempt.order_id, **charge_request)
        except TossError as exc:
            logger.warning(
                "Toss rejected invoice %s attempt %s: %s %s", invoice.id, attempt_no, exc.code, exc.message
            )
            self._record_failure(invoice, attempt, exc.code, exc.message, result)
            return
        except Exception as exc:  # noqa: BLE001
            logger.warning("Charge for invoice %s attempt %s failed: %r", invoice.id, attempt_no, exc)
            self._record_failure(invoice, attempt, "UNKNOWN", str(exc), result)
            return

        self._record_success(invoice, attempt, charge)
        result.succeeded += 1

    def claim_invoice(self, invoice_id: UUID, *, now: datetime | None = None) -> bool:
        """PENDING -> CHARGING compare-and-swap, uncommitted.

        False means another runner already holds the invoice.
        """
        now = now or datetime.utcnow()
        outcome = self.session.connection().execute(
            update(Invoice)
            .where((Invoice.id == invoice_id) & (Invoice.status == InvoiceStatus.PENDING.value))
            .values(status=InvoiceStatus.CHARGING.value, claimed_at=now, updated_at=now)
        )
        return outcome.rowcount == 1

    def _mark_exhausted(self, invoice: Invoice) -> None:
        now = datetime.utcnow()
        self.session.connection().execute(
            update(Invoice)
            .where((Invoice.id == invoice.id) & (Invoice.status == InvoiceStatus.PENDING.value))
            .values(status=InvoiceStatus.FAILED.value, updated_at=now)
        )
        self.session.commit()
        logger.warning("Invoice %s marked FAILED: attempts exhausted", invoice.id)
        self._audit_failed(invoice, reason="attempts_exhausted")

    def _record_failure(
        self,
        invoice: Invoice,
        attempt: PaymentAttempt,
        error_code: str,
        error_message: str,
        result: BillingRunResult,
    ) -> None:
        now = datetime.utcnow()
        attempt.status = AttemptStatus.FAILED.value
        attempt.error_code = error_code
        attempt.error_message = error_message
        attempt.touch(now)

        exhausted = attempt.attempt_no >= self.max_attempts
        invoice.status = InvoiceStatus.FAILED.value if exhausted else InvoiceStatus.PENDING.value
        invoice.claimed_at = None
        invoice.touch(now)

        self.session.add(attempt)
        self.session.add(invoice)
        self.session.commit()

        result.failed += 1
        result.errors.append(f"Invoice {invoice.id} attempt {attempt.attempt_no}: {error_message}")
        if exhausted:
            logger.warning("Invoice %s marked FAILED after %s attempts", invoice.id, attempt.attempt_no)
            self._audit_failed(invoice, reason=error_code)

    def _record_success(self, invoice: Invoice, attempt: PaymentAttempt, charge: ChargeResult) -> None:
        now = datetime.utcnow()
        attempt.status = AttemptStatus.SUCCESS.value
        attempt.provider_transaction_id = charge.payment_key
        attempt.touch(now)

        invoice.status = InvoiceStatus.PAID.value
        invoice.paid_at = now
        invoice.provider_payment_key = charge.payment_key
        invoice.touch(now)

        self.session.add(attempt)
        self.session.add(invoice)

        plan = invoice.plan
        subscription = invoice.subscription
        if subscription is not None and plan is not None:
            next_due = next_billing_date(invoice.due_date, plan.billing_day)
            subscription.next_billing_date = next_due
            subscription.touch(now)
            self.session.add(subscription)
            self.session.add(
                Invoice(
                    academy_id=invoice.academy_id,
                    subscription_id=subscription.id,
                    student_user_id=invoice.student_user_id,
                    plan_id=plan.id,
                    amount=plan.amount,
                    currency=plan.currency,
                    due_date=next_due,
                    order_id=generate_order_id(),
                    status=InvoiceStatus.PENDING.value,
                )
            )

        # Attempt, invoice, subscription and next invoice commit together
        self.session.commit()
        logger.info("Invoice %s paid (paymentKey=%s)", invoice.id, charge.payment_key)

    def _audit_failed(self, invoice: Invoice, *, reason: str) -> None:
        if not self.audit:
            return
        self.audit.record_event(
            action="invoice.failed",
            academy_id=invoice.academy_id,
            target_type="Invoice",
            target_id=invoice.id,
            meta={"reason": reason, "order_id": invoice.order_id},
        )

    # ------------------------------------------------------------------
    # Plans
    # ------------------------------------------------------------------
    def list_plans(self, academy_id: UUID, *, include_inactive: bool = False) -> Iterable[TuitionPlan]:
        query = select(TuitionPlan).where(TuitionPlan.academy_id == academy_id)
        if not include_inactive:
            query = query.where(TuitionPlan.is_active.is_(True))
        return self.session.exec(query.order_by(TuitionPlan.amount)).all()

    def get_plan(self, academy_id: UUID, plan_id: UUID) -> TuitionPlan:
        plan = self.session.get(TuitionPlan, plan_id)
        if not plan or plan.academy_id != academy_id:
            raise NotFoundError("Plan not found")
        return plan

    def create_plan(self, academy_id: UUID, **data: object) -> TuitionPlan:
        self._get_academy(academy_id)
        plan = TuitionPlan(academy_id=academy_id, **{k: v for k, v in data.items() if k in PLAN_FIELDS})
        self.session.add(plan)
        self.session.commit()
        self.session.refresh(plan)
        return plan

    def update_plan(self, academy_id: UUID, plan_id: UUID, **changes: object) -> TuitionPlan:
        """Edit a plan. Already issued invoices keep their amount."""
        plan = self.get_plan(academy_id, plan_id)
        for key, value in changes.items():
            if key in PLAN_FIELDS and value is not None:
                setattr(plan, key, value)
        plan.touch()
        self.session.add(plan)
        self.session.commit()
        self.session.refresh(plan)
        return plan

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------
    def subscribe(self, academy_id: UUID, student_id: UUID, plan_id: UUID, start_date: date) -> StudentSubscription:
        """Bind a student to a plan and issue the first PENDING invoice."""
        self._get_student(academy_id, student_id)
        plan = self.get_plan(academy_id, plan_id)
        if not plan.is_active:
            raise BillingError("Plan not available")

        existing = self.session.exec(
            select(StudentSubscription).where(
                (StudentSubscription.student_user_id == student_id)
                & (StudentSubscription.plan_id == plan_id)
                & (StudentSubscription.status != SubscriptionStatus.CANCELED.value)
            )
        ).first()
        if existing:
            raise BillingError("Student already has a subscription to this plan")

        first_due = first_billing_date(start_date, plan.billing_day)
        subscription = StudentSubscription(
            academy_id=academy_id,
            student_user_id=student_id,
            plan_id=plan.id,
            status=SubscriptionStatus.ACTIVE.value,
            start_date=start_date,
            next_billing_date=first_due,
        )
        self.session.add(subscription)
        self.session.flush()
        self.session.add(self._new_invoice(subscription, plan, first_due))
        self.session.commit()
        self.session.refresh(subscription)
        return subscription

    def update_subscription(
        self,
        academy_id: UUID,
        subscription_id: UUID,
        *,
        status: SubscriptionStatus | str | None = None,
        next_billing_date: date | None = None,
        end_date: date | None = None,
    ) -> StudentSubscription:
        """Administrative change of a subscription.

        Pausing or canceling cancels the open invoice; resuming issues one for
        ``next_billing_date`` when none is open.
        """
        subscription = self.session.get(StudentSubscription, subscription_id)
        if not subscription or subscription.academy_id != academy_id:
            raise NotFoundError("Subscription not found")

        now = datetime.utcnow()
        pending = self.session.exec(
            select(Invoice).where(
                (Invoice.subscription_id == subscription.id)
                & (Invoice.status == InvoiceStatus.PENDING.value)
            )
        ).all()

        if next_billing_date is not None:
            subscription.next_billing_date = next_billing_date
            for invoice in pending:
                invoice.due_date = next_billing_date
                invoice.touch(now)
                self.session.add(invoice)
        if end_date is not None:
            subscription.end_date = end_date

        if status is not None:
            new_status = SubscriptionStatus(status).value
            if new_status in {SubscriptionStatus.PAUSED.value, SubscriptionStatus.CANCELED.value}:
                for invoice in pending:
                    invoice.status = InvoiceStatus.CANCELED.value
                    invoice.touch(now)
                    self.session.add(invoice)
            elif new_status == SubscriptionStatus.ACTIVE.value and not pending:
                if subscription.status != SubscriptionStatus.ACTIVE.value:
                    plan = self.session.get(TuitionPlan, subscription.plan_id)
                    if plan is None:
                        raise NotFoundError("Plan not found")
                    self.session.add(self._new_invoice(subscription, plan, subscription.next_billing_date))
            subscription.status = new_status

        subscription.touch(now)
        self.session.add(subscription)
        self.session.commit()
        self.session.refresh(subscription)
        return subscription

    def _new_invoice(self, subscription: StudentSubscription, plan: TuitionPlan, due: date) -> Invoice:
        return Invoice(
            academy_id=subscription.academy_id,
            subscription_id=subscription.id,
            student_user_id=subscription.student_user_id,
            plan_id=plan.id,
            amount=plan.amount,
            currency=plan.currency,
            due_date=due,
            order_id=generate_order_id(),
            status=InvoiceStatus.PENDING.value,
        )

    # ------------------------------------------------------------------
    # Invoices
    # ------------------------------------------------------------------
    def list_invoices(
        self,
        academy_id: UUID,
        *,
        status: str | None = None,
        student_id: UUID | None = None,
        subscription_id: UUID | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> tuple[list[Invoice], int]:
        query = select(Invoice).where(Invoice.academy_id == academy_id)
        if status:
            query = query.where(Invoice.status == status)
        if student_id:
            query = query.where(Invoice.student_user_id == student_id)
        if subscription_id:
            query = query.where(Invoice.subscription_id == subscription_id)

        total = self.session.exec(select(func.count()).select_from(query.subquery())).one()
        items = self.session.exec(
            query.order_by(Invoice.due_date.desc(), Invoice.created_at.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        ).all()
        return list(items), total

    def get_invoice(self, academy_id: UUID, invoice_id: UUID) -> Invoice:
        invoice = self.session.exec(
            select(Invoice).where(Invoice.id == invoice_id).options(selectinload(Invoice.attempts))
        ).first()
        if not invoice or invoice.academy_id != academy_id:
            raise NotFoundError("Invoice not found")
        return invoice

    def cancel_invoice(self, academy_id: UUID, invoice_id: UUID) -> Invoice:
        invoice = self.get_invoice(academy_id, invoice_id)
        if invoice.status != InvoiceStatus.PENDING.value:
            raise BillingError(f"Only PENDING invoices can be canceled (status is {invoice.status})")
        invoice.status = InvoiceStatus.CANCELED.value
        invoice.touch()
        self.session.add(invoice)
        self.session.commit()
        self.session.refresh(invoice)
        return invoice

    def resolve_charging_invoice(
        self,
        academy_id: UUID,
        invoice_id: UUID,
        *,
        paid: bool,
        payment_key: str | None = None,
        actor_user_id: UUID | None = None,
    ) -> Invoice:
        """Settle an invoice stuck in CHARGING after checking the charge at Toss.

        ``paid=True`` records the open attempt as the successful charge and
        issues the next invoice; ``paid=False`` records it as failed, which
        returns the invoice to PENDING or marks it FAILED once attempts run out.
        """
        invoice = self.get_invoice(academy_id, invoice_id)
        if invoice.status != InvoiceStatus.CHARGING.value:
            raise BillingError(f"Only CHARGING invoices can be reconciled (status is {invoice.status})")
        open_attempts = [a for a in invoice.attempts if a.status == AttemptStatus.REQUESTED.value]
        if not open_attempts:
            raise BillingError("Invoice has no open payment attempt")
        attempt = open_attempts[-1]

        if paid:
            if not payment_key:
                raise BillingError("payment_key is required to mark an invoice paid")
            charge = ChargeResult(payment_key=payment_key, order_id=attempt.order_id, status="DONE")
            self._record_success(invoice, attempt, charge)
        else:
            self._record_failure(
                invoice,
                attempt,
                "RECONCILED_FAILED",
                "Charge not found at Toss during manual reconciliation",
                BillingRunResult(),
            )

        if self.audit:
            self.audit.record_event(
                action="invoice.reconciled",
                academy_id=academy_id,
                actor_user_id=actor_user_id,
                target_type="Invoice",
                target_id=invoice_id,
                meta={"paid": paid, "payment_key": payment_key},
            )
        self.session.refresh(invoice)
        return invoice

    # ------------------------------------------------------------------
    # Payment methods)
    # ------------------------------------------------------------------
    def current_payment_method(self, academy_id: UUID, student_id: UUID) -> PaymentMethod | None:
        return self.session.exec(
            select(PaymentMethod)
            .where(
                (PaymentMethod.academy_id == academy_id)
                & (PaymentMethod.student_user_id == student_id)
                & (PaymentMethod.status == PaymentMethodStatus.ACTIVE.value)
            )
            .order_by(PaymentMethod.created_at.desc())
        ).first()

    def register_payment_method(
        self,
        academy_id: UUID,
        student_id: UUID,
        *,
        auth_key: str,
        customer_key: str,
        actor_user_id: UUID | None = None,
    ) -> PaymentMethod:
        """Exchange a Toss auth key for a billing key and make it the student's card."""
        self._get_student(academy_id, student_id)
        issued = self.gateway.issue_billing_key(auth_key, customer_key)

        now = datetime.utcnow()
        previous = self.session.exec(
            select(PaymentMethod).where(
                (PaymentMethod.academy_id == academy_id)
                & (PaymentMethod.student_user_id == student_id)
                & (PaymentMethod.status == PaymentMethodStatus.ACTIVE.value)
            )
        ).all()
        for method in previous:
            method.status = PaymentMethodStatus.REVOKED.value
            method.touch(now)
            self.session.add(method)

        method = PaymentMethod(
            academy_id=academy_id,
            student_user_id=student_id,
            customer_key=issued.customer_key,
            billing_key=issued.billing_key,
            status=PaymentMethodStatus.ACTIVE.value,
            card_brand=issued.card_company,
            last4=issued.last4,
        )
        self.session.add(method)
        self.session.commit()
        self.session.refresh(method)

        if self.audit:
            self.audit.record_event(
                action="paymentMethod.issue",
                academy_id=academy_id,
                actor_user_id=actor_user_id,
                target_type="PaymentMethod",
                target_id=method.id,
                meta={"student_user_id": str(student_id), "provider": method.provider, "last4": method.last4},
            )
        return method

    # ------------------------------------------------------------------
    def _get_academy(self, academy_id: UUID) -> Academy:
        academy = self.session.get(Academy, academy_id)
        if not academy:
            raise NotFoundError("Academy not found")
        return academy

    def _get_student(self, academy_id: UUID, student_id: UUID) -> User:
        student = self.session.get(User, student_id)
        if not student or student.academy_id != academy_id or student.role != UserRole.STUDENT.value:
            raise NotFoundError("Student not found in this academy")
        return student
