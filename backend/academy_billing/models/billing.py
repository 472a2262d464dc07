from datetime import date, datetime
from enum import Enum
from typing import List, Optional
from uuid import UUID

from sqlalchemy import UniqueConstraint
from sqlmodel import Field, Relationship

from academy_billing.models.academy import User
from academy_billing.models.base import TimestampedModel, UUIDModel


class SubscriptionStatus(str, Enum):
    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    CANCELED = "CANCELED"


class InvoiceStatus(str, Enum):
    PENDING = "PENDING"
    # Held by the runner that claimed the invoice until the charge outcome is stored
    CHARGING = "CHARGING"
    PAID = "PAID"
    FAILED = "FAILED"
    CANCELED = "CANCELED"


class AttemptStatus(str, Enum):
    REQUESTED = "REQUESTED"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


class PaymentMethodStatus(str, Enum):
    ACTIVE = "ACTIVE"
    REVOKED = "REVOKED"


class TuitionPlan(UUIDModel, TimestampedModel, table=True):
    __tablename__ = "tuition_plans"

    academy_id: UUID = Field(foreign_key="academies.id", index=True)
    name: str
    amount: int
    currency: str = Field(default="KRW", max_length=3)
    billing_day: int
    grace_days: int = Field(default=3)
    late_fee: int | None = Field(default=None)
    is_active: bool = Field(default=True)


class StudentSubscription(UUIDModel, TimestampedModel, table=True):
    __tablename__ = "student_subscriptions"

    academy_id: UUID = Field(foreign_key="academies.id", index=True)
    student_user_id: UUID = Field(foreign_key="users.id", index=True)
    plan_id: UUID = Field(foreign_key="tuition_plans.id", index=True)
    status: str = Field(default=SubscriptionStatus.ACTIVE.value, index=True)
    start_date: date
    next_billing_date: date
    end_date: date | None = Field(default=None)

    plan: Optional[TuitionPlan] = Relationship()


class Invoice(UUIDModel, TimestampedModel, table=True):
    __tablename__ = "invoices"

    academy_id: UUID = Field(foreign_key="academies.id", index=True)
    student_user_id: UUID = Field(foreign_key="users.id", index=True)
    subscription_id: UUID | None = Field(default=None, foreign_key="student_subscriptions.id", index=True)
    plan_id: UUID | None = Field(default=None, foreign_key="tuition_plans.id")
    amount: int
    currency: str = Field(default="KRW", max_length=3)
    due_date: date = Field(index=True)
    status: str = Field(default=InvoiceStatus.PENDING.value, index=True)
    order_id: str = Field(unique=True, index=True, max_length=64)
    paid_at: datetime | None = Field(default=None)
    provider_payment_key: str | None = Field(default=None, index=True)
    claimed_at: datetime | None = Field(default=None)

    plan: Optional[TuitionPlan] = Relationship()
    subscription: Optional[StudentSubscription] = Relationship()
    attempts: List["PaymentAttempt"] = Relationship(
        back_populates="invoice",
        sa_relationship_kwargs={"order_by": "PaymentAttempt.attempt_no"},
    )


class PaymentAttempt(UUIDModel, TimestampedModel, table=True):
    __tablename__ = "payment_attempts"
    __table_args__ = (UniqueConstraint("invoice_id", "attempt_no", name="uq_payment_attempts_invoice_attempt"),)

    academy_id: UUID = Field(foreign_key="academies.id", index=True)
    invoice_id: UUID = Field(foreign_key="invoices.id", index=True)
    attempt_no: int
    status: str = Field(default=AttemptStatus.REQUESTED.value)
    order_id: str = Field(max_length=64)
    requested_at: datetime = Field(default_factory=datetime.utcnow)
    provider_transaction_id: str | None = Field(default=None)
    error_code: str | None = Field(default=None, max_length=64)
    error_message: str | None = Field(default=None)

    invoice: Optional[Invoice] = Relationship(back_populates="attempts")


class PaymentMethod(UUIDModel, TimestampedModel, table=True):
    __tablename__ = "payment_methods"

    academy_id: UUID = Field(foreign_key="academies.id", index=True)
    student_user_id: UUID = Field(foreign_key="users.id", index=True)
    provider: str = Field(default="TOSS_PAYMENTS")
    customer_key: str
    billing_key: str = Field(index=True)
    status: str = Field(default=PaymentMethodStatus.ACTIVE.value, index=True)
    card_brand: str | None = Field(default=None)
    last4: str | None = Field(default=None, max_length=4)

    student: Optional[User] = Relationship(back_populates="payment_methods")
