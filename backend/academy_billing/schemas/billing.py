from __future__ import annotations

from datetime import date, datetime
from typing import List, Literal
from uuid import UUID

from pydantic import BaseModel, Field

from academy_billing.schemas.common import IDModel, RunCounters, Timestamped


class TuitionPlanCreate(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    amount: int = Field(gt=0)
    currency: str = "KRW"
    billing_day: int = Field(ge=1, le=28)
    grace_days: int = Field(default=3, ge=0, le=30)
    late_fee: int | None = Field(default=None, ge=0)
    is_active: bool = True


class TuitionPlanUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=100)
    amount: int | None = Field(default=None, gt=0)
    currency: str | None = None
    billing_day: int | None = Field(default=None, ge=1, le=28)
    grace_days: int | None = Field(default=None, ge=0, le=30)
    late_fee: int | None = Field(default=None, ge=0)
    is_active: bool | None = None


class TuitionPlanRead(IDModel, Timestamped):
    academy_id: UUID
    name: str
    amount: int
    currency: str
    billing_day: int
    grace_days: int
    late_fee: int | None
    is_active: bool


class SubscriptionCreate(BaseModel):
    student_user_id: UUID
    plan_id: UUID
    start_date: date


class SubscriptionUpdate(BaseModel):
    status: Literal["ACTIVE", "PAUSED", "CANCELED"] | None = None
    next_billing_date: date | None = None
    end_date: date | None = None


class SubscriptionRead(IDModel, Timestamped):
    academy_id: UUID
    student_user_id: UUID
    plan_id: UUID
    status: str
    start_date: date
    next_billing_date: date
    end_date: date | None


class PaymentMethodIssue(BaseModel):
    student_user_id: UUID
    auth_key: str = Field(min_length=1)
    customer_key: str = Field(min_length=1)


class PaymentMethodRead(IDModel, Timestamped):
    student_user_id: UUID
    provider: str
    status: str
    card_brand: str | None
    last4: str | None


class PaymentAttemptRead(IDModel):
    attempt_no: int
    status: str
    order_id: str
    requested_at: datetime
    provider_transaction_id: str | None
    error_code: str | None
    error_message: str | None


class InvoiceRead(IDModel, Timestamped):
    academy_id: UUID
    student_user_id: UUID
    subscription_id: UUID | None
    plan_id: UUID | None
    amount: int
    currency: str
    due_date: date
    status: str
    order_id: str
    paid_at: datetime | None
    provider_payment_key: str | None


class InvoiceDetail(InvoiceRead):
    attempts: List[PaymentAttemptRead] = []


class InvoiceReconcile(BaseModel):
    paid: bool
    payment_key: str | None = Field(default=None, min_length=1)


class InvoicePage(BaseModel):
    items: List[InvoiceRead]
    total: int
    page: int
    limit: int


class BillingRunRead(RunCounters):
    errors: List[str] = []
