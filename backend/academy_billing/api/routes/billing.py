from __future__ import annotations

from typing import List, NoReturn
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status

from academy_billing.api.deps import DbSession, get_audit_service, get_payment_gateway
from academy_billing.core.errors import BillingError, NotFoundError, TossError
from academy_billing.schemas.billing import (
    InvoiceDetail,
    InvoicePage,
    InvoiceRead,
    InvoiceReconcile,
    PaymentMethodIssue,
    PaymentMethodRead,
    SubscriptionCreate,
    SubscriptionRead,
    SubscriptionUpdate,
    TuitionPlanCreate,
    TuitionPlanRead,
    TuitionPlanUpdate,
)
from academy_billing.services.audit import AuditService
from academy_billing.services.billing import BillingService
from academy_billing.services.toss import PaymentGateway

router = APIRouter(prefix="/academies/{academy_id}", tags=["billing"])


def _service(session, gateway: PaymentGateway | None = None, audit: AuditService | None = None) -> BillingService:
    return BillingService(session, gateway=gateway, audit=audit)


def _raise_http(exc: BillingError) -> NoReturn:
    if isinstance(exc, NotFoundError):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc


@router.get("/plans", response_model=List[TuitionPlanRead])
def list_plans(
    academy_id: UUID,
    session: DbSession,
    include_inactive: bool = False,
) -> List[TuitionPlanRead]:
    plans = _service(session).list_plans(academy_id, include_inactive=include_inactive)
    return [TuitionPlanRead.model_validate(plan) for plan in plans]


@router.post("/plans", response_model=TuitionPlanRead, status_code=status.HTTP_201_CREATED)
def create_plan(academy_id: UUID, payload: TuitionPlanCreate, session: DbSession) -> TuitionPlanRead:
    try:
        plan = _service(session).create_plan(academy_id, **payload.model_dump())
    except BillingError as exc:
        _raise_http(exc)
    return TuitionPlanRead.model_validate(plan)


@router.patch("/plans/{plan_id}", response_model=TuitionPlanRead)
def update_plan(academy_id: UUID, plan_id: UUID, payload: TuitionPlanUpdate, session: DbSession) -> TuitionPlanRead:
    try:
        plan = _service(session).update_plan(academy_id, plan_id, **payload.model_dump(exclude_unset=True))
    except BillingError as exc:
        _raise_http(exc)
    return TuitionPlanRead.model_validate(plan)


@router.post("/subscriptions", response_model=SubscriptionRead, status_code=status.HTTP_201_CREATED)
def create_subscription(academy_id: UUID, payload: SubscriptionCreate, session: DbSession) -> SubscriptionRead:
    try:
        subscription = _service(session).subscribe(
            academy_id, payload.student_user_id, payload.plan_id, payload.start_date
        )
    except BillingError as exc:
        _raise_http(exc)
    return SubscriptionRead.model_validate(subscription)


@router.patch("/subscriptions/{subscription_id}", response_model=SubscriptionRead)
def update_subscription(
    academy_id: UUID,
    subscription_id: UUID,
    payload: SubscriptionUpdate,
    session: DbSession,
) -> SubscriptionRead:
    try:
        subscription = _service(session).update_subscription(
            academy_id,
            subscription_id,
            status=payload.status,
            next_billing_date=payload.next_billing_date,
            end_date=payload.end_date,
        )
    except BillingError as exc:
        _raise_http(exc)
    return SubscriptionRead.model_validate(subscription)


@router.get("/invoices", response_model=InvoicePage)
def list_invoices(
    academy_id: UUID,
    session: DbSession,
    invoice_status: str | None = Query(default=None, alias="status"),
    student_id: UUID | None = None,
    subscription_id: UUID | None = None,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
) -> InvoicePage:
    items, total = _service(session).list_invoices(
        academy_id,
        status=invoice_status,
        student_id=student_id,
        subscription_id=subscription_id,
        page=page,
        limit=limit,
    )
    return InvoicePage(
        items=[InvoiceRead.model_validate(item) for item in items],
        total=total,
        page=page,
        limit=limit,
    )


@router.get("/invoices/{invoice_id}", response_model=InvoiceDetail)
def get_invoice(academy_id: UUID, invoice_id: UUID, session: DbSession) -> InvoiceDetail:
    try:
        invoice = _service(session).get_invoice(academy_id, invoice_id)
    except BillingError as exc:
        _raise_http(exc)
    return InvoiceDetail.model_validate(invoice)


@router.post("/invoices/{invoice_id}/cancel", response_model=InvoiceRead)
def cancel_invoice(academy_id: UUID, invoice_id: UUID, session: DbSession) -> InvoiceRead:
    try:
        invoice = _service(session).cancel_invoice(academy_id, invoice_id)
    except BillingError as exc:
        _raise_http(exc)
    return InvoiceRead.model_validate(invoice)


@router.post("/invoices/{invoice_id}/reconcile", response_model=InvoiceRead)
def reconcile_invoice(
    academy_id: UUID,
    invoice_id: UUID,
    payload: InvoiceReconcile,
    session: DbSession,
    audit: AuditService = Depends(get_audit_service),
) -> InvoiceRead:
    """Operator settlement of an invoice left in CHARGING."""
    try:
        invoice = _service(session, audit=audit).resolve_charging_invoice(
            academy_id, invoice_id, paid=payload.paid, payment_key=payload.payment_key
        )
    except BillingError as exc:
        _raise_http(exc)
    return InvoiceRead.model_validate(invoice)


@router.post("/payment-methods", response_model=PaymentMethodRead, status_code=status.HTTP_201_CREATED)
def issue_payment_method(
    academy_id: UUID,
    payload: PaymentMethodIssue,
    session: DbSession,
    gateway: PaymentGateway | None = Depends(get_payment_gateway),
    audit: AuditService = Depends(get_audit_service),
) -> PaymentMethodRead:
    service = _service(session, gateway, audit)
    try:
        method = service.register_payment_method(
            academy_id,
            payload.student_user_id,
            auth_key=payload.auth_key,
            customer_key=payload.customer_key,
        )
    except BillingError as exc:
        _raise_http(exc)
    except TossError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=exc.message) from exc
    finally:
        service.close()
    return PaymentMethodRead.model_validate(method)
