from __future__ import annotations

import os
import uuid
from datetime import date, datetime

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import text
from sqlmodel import Session, SQLModel, create_engine

from academy_billing.api.deps import get_db
from academy_billing.db import session as db_session_module
from academy_billing.main import app
from academy_billing.models.academy import Academy, User, UserRole
from academy_billing.models.billing import (
    AttemptStatus,
    Invoice,
    InvoiceStatus,
    PaymentAttempt,
    PaymentMethod,
    PaymentMethodStatus,
    StudentSubscription,
    TuitionPlan,
)
from academy_billing.services.billing import generate_order_id
from academy_billing.services.toss import BillingKeyResult, ChargeResult


@pytest.fixture()
def db_engine(tmp_path):
    test_database_url = os.getenv("TEST_DATABASE_URL")
    if not test_database_url:
        db_path = tmp_path / f"test_{uuid.uuid4().hex}.db"
        test_database_url = f"sqlite:///{db_path}"

    is_postgres = test_database_url.startswith("postgresql")

    admin_engine = None
    schema_name = None

    if is_postgres:
        schema_name = f"test_{uuid.uuid4().hex}"
        admin_engine = create_engine(test_database_url, future=True)
        with admin_engine.connect() as conn:
            conn.execution_options(isolation_level="AUTOCOMMIT").execute(
                text(f'CREATE SCHEMA IF NOT EXISTS "{schema_name}"')
            )
        client_encoding = os.getenv("POSTGRES_CLIENT_ENCODING", "UTF8")
        connect_args = {"options": f"-csearch_path={schema_name},public -cclient_encoding={client_encoding}"}
        engine = create_engine(test_database_url, connect_args=connect_args, future=True)
    else:
        engine = create_engine(test_database_url, connect_args={"check_same_thread": False})

    SQLModel.metadata.create_all(bind=engine)

    original_engine = db_session_module.engine
    db_session_module.engine = engine

    def override_dependency():
        with Session(engine) as session:
            yield session

    app.dependency_overrides[get_db] = override_dependency

    yield engine

    app.dependency_overrides.clear()
    db_session_module.engine = original_engine
    engine.dispose()
    if is_postgres and admin_engine and schema_name:
        with admin_engine.connect() as conn:
            conn.execution_options(isolation_level="AUTOCOMMIT").execute(
                text(f'DROP SCHEMA IF EXISTS "{schema_name}" CASCADE')
            )
        admin_engine.dispose()


@pytest.fixture()
def client(db_engine) -> TestClient:
    return TestClient(app)


@pytest.fixture()
def db_session(db_engine) -> Session:
    with Session(db_engine) as session:
        yield session


class FakeGateway:
    """In-memory stand-in for the Toss client.

    ``outcomes`` is consumed one entry per charge: an exception is raised, a
    ChargeResult is returned, and an empty queue means success.
    """

    def __init__(self, *outcomes) -> None:
        self.outcomes = list(outcomes)
        self.calls: list[dict] = []
        self.issued: list[tuple[str, str]] = []
        self.revoked: list[str] = []

    def charge_with_billing_key(self, **kwargs) -> ChargeResult:
        self.calls.append(kwargs)
        outcome = self.outcomes.pop(0) if self.outcomes else None
        if isinstance(outcome, Exception):
            raise outcome
        return outcome or ChargeResult(
            payment_key=f"pay_{len(self.calls)}",
            order_id=kwargs["order_id"],
            status="DONE",
        )

    def issue_billing_key(self, auth_key: str, customer_key: str) -> BillingKeyResult:
        self.issued.append((auth_key, customer_key))
        return BillingKeyResult(
            billing_key=f"bk_{auth_key}",
            customer_key=customer_key,
            card_company="Shinhan",
            card_number="43XX-XXXX-XXXX-3456",
        )

    def revoke_billing_key(self, billing_key: str) -> None:
        self.revoked.append(billing_key)


class AuditStub:
    def __init__(self) -> None:
        self.events: list[dict] = []

    def record_event(self, *, action, academy_id=None, actor_user_id=None, target_type=None, target_id=None, meta=None):
        self.events.append(
            {
                "action": action,
                "academy_id": academy_id,
                "target_type": target_type,
                "target_id": target_id,
                "meta": meta or {},
            }
        )
        return True


class BillingFactory:
    def __init__(self, session: Session) -> None:
        self.session = session

    def _save(self, obj):
        self.session.add(obj)
        self.session.commit()
        self.session.refresh(obj)
        return obj

    def academy(self, *, timezone: str | None = "Asia/Seoul", **kwargs) -> Academy:
        slug = f"academy-{uuid.uuid4().hex[:8]}"
        return self._save(Academy(name=kwargs.pop("name", "Harmony Music"), slug=slug, timezone=timezone, **kwargs))

    def student(self, academy: Academy, *, name: str = "Kim Minji", email: str | None = "minji@example.com") -> User:
        return self._save(
            User(academy_id=academy.id, name=name, email=email, phone="01012345678", role=UserRole.STUDENT.value)
        )

    def plan(self, academy: Academy, *, amount: int = 50000, billing_day: int = 5, name: str = "Piano") -> TuitionPlan:
        return self._save(TuitionPlan(academy_id=academy.id, name=name, amount=amount, billing_day=billing_day))

    def invoice(
        self,
        student: User,
        plan: TuitionPlan | None,
        *,
        due_date: date,
        amount: int | None = None,
        with_subscription: bool = True,
        status: str = InvoiceStatus.PENDING.value,
    ) -> Invoice:
        subscription = None
        if with_subscription and plan is not None:
            subscription = self._save(
                StudentSubscription(
                    academy_id=student.academy_id,
                    student_user_id=student.id,
                    plan_id=plan.id,
                    start_date=due_date,
                    next_billing_date=due_date,
                )
            )
        return self._save(
            Invoice(
                academy_id=student.academy_id,
                student_user_id=student.id,
                subscription_id=subscription.id if subscription else None,
                plan_id=plan.id if plan else None,
                amount=amount if amount is not None else (plan.amount if plan else 10000),
                due_date=due_date,
                order_id=generate_order_id(),
                status=status,
            )
        )

    def payment_method(
        self,
        student: User,
        *,
        billing_key: str = "bk_live",
        status: str = PaymentMethodStatus.ACTIVE.value,
        created_at: datetime | None = None,
    ) -> PaymentMethod:
        method = PaymentMethod(
            academy_id=student.academy_id,
            student_user_id=student.id,
            customer_key=str(student.id),
            billing_key=billing_key,
            status=status,
        )
        if created_at is not None:
            method.created_at = created_at
        return self._save(method)

    def failed_attempts(self, invoice: Invoice, count: int) -> None:
        for number in range(1, count + 1):
            self.session.add(
                PaymentAttempt(
                    academy_id=invoice.academy_id,
                    invoice_id=invoice.id,
                    attempt_no=number,
                    order_id=f"{invoice.order_id}-R{number}",
                    status=AttemptStatus.FAILED.value,
                    error_code="REJECT_CARD_COMPANY",
                    error_message="Card declined",
                )
            )
        self.session.commit()


@pytest.fixture()
def factory(db_session) -> BillingFactory:
    return BillingFactory(db_session)


@pytest.fixture()
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture()
def audit_stub() -> AuditStub:
    return AuditStub()


@pytest.fixture()
def gateway_factory():
    return FakeGateway
