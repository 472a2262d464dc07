import base64
import hashlib
import hmac
import json
from datetime import date, datetime

from sqlmodel import select

from academy_billing.api.deps import get_message_sender, get_payment_gateway
from academy_billing.core.config import settings
from academy_billing.main import app
from academy_billing.models.audit import AuditLog, WebhookEvent
from academy_billing.models.billing import (
    AttemptStatus,
    Invoice,
    InvoiceStatus,
    PaymentAttempt,
    PaymentMethod,
    PaymentMethodStatus,
)
from academy_billing.models.notification import NotificationQueue, NotificationStatus
from academy_billing.services.alimtalk import AlimtalkSendResult

API = settings.api_v1_str


def _sign(body: bytes, secret: str) -> str:
    return base64.b64encode(hmac.new(secret.encode(), body, hashlib.sha256).digest()).decode()


def test_health(client):
    assert client.get("/health/live").json() == {"status": "ok"}
    assert client.get("/health/ready").json() == {"status": "ready"}


def test_internal_billing_run(client, db_session, factory, gateway):
    academy = factory.academy()
    student = factory.student(academy)
    plan = factory.plan(academy)
    factory.payment_method(student)
    invoice = factory.invoice(student, plan, due_date=date(2024, 3, 5))
    app.dependency_overrides[get_payment_gateway] = lambda: gateway

    response = client.post(f"{API}/internal/billing/run")

    assert response.status_code == 200
    assert response.json() == {"processed": 1, "succeeded": 1, "failed": 0, "skipped": 0, "errors": []}
    db_session.expire_all()
    assert db_session.get(Invoice, invoice.id).status == InvoiceStatus.PAID.value


def test_internal_routes_require_cron_secret(client, monkeypatch, gateway):
    monkeypatch.setattr(settings, "cron_secret", "s3cret")
    app.dependency_overrides[get_payment_gateway] = lambda: gateway

    assert client.post(f"{API}/internal/billing/run").status_code == 401
    assert client.post(f"{API}/internal/billing/run", headers={"X-Cron-Secret": "wrong"}).status_code == 401
    response = client.post(f"{API}/internal/billing/run", headers={"X-Cron-Secret": "s3cret"})
    assert response.status_code == 200
    assert response.json()["processed"] == 0


def test_internal_notification_run(client, db_session, factory):
    academy = factory.academy()
    db_session.add(
        NotificationQueue(
            academy_id=academy.id,
            recipient_phone="01012345678",
            sender_key="sender_abc",
            template_code="TPL_PAYMENT_DONE",
            template_vars={"name": "Kim Minji"},
            next_retry_at=datetime(2024, 3, 1),
        )
    )
    db_session.commit()

    class OkSender:
        def send(self, **kwargs):
            return AlimtalkSendResult(success=True, msg_key="m_1")

    app.dependency_overrides[get_message_sender] = OkSender

    response = client.post(f"{API}/internal/notifications/process", params={"batch_size": 10})

    assert response.status_code == 200
    assert response.json() == {"processed": 1, "succeeded": 1, "failed": 0, "skipped": 0, "retried": 0}

    listed = client.get(f"{API}/academies/{academy.id}/notifications", params={"status": "SENT"}).json()
    assert len(listed) == 1
    assert listed[0]["provider_msg_key"] == "m_1"
    assert listed[0]["status"] == NotificationStatus.SENT.value

    actions = [log.action for log in db_session.exec(select(AuditLog)).all()]
    assert actions == ["alimtalk.sent"]


def test_plan_crud_and_validation(client, factory):
    academy = factory.academy()
    base = f"{API}/academies/{academy.id}/plans"

    bad = client.post(base, json={"name": "Violin", "amount": 40000, "billing_day": 31})
    assert bad.status_code == 422

    created = client.post(base, json={"name": "Violin", "amount": 40000, "billing_day": 10})
    assert created.status_code == 201
    plan = created.json()
    assert plan["currency"] == "KRW"
    assert plan["grace_days"] == 3

    updated = client.patch(f"{base}/{plan['id']}", json={"amount": 45000})
    assert updated.json()["amount"] == 45000
    assert [p["amount"] for p in client.get(base).json()] == [45000]


def test_subscription_and_invoice_endpoints(client, factory):
    academy = factory.academy()
    student = factory.student(academy)
    plan = factory.plan(academy, billing_day=5)
    base = f"{API}/academies/{academy.id}"

    response = client.post(
        f"{base}/subscriptions",
        json={"student_user_id": str(student.id), "plan_id": str(plan.id), "start_date": "2024-03-01"},
    )
    assert response.status_code == 201
    subscription = response.json()
    assert subscription["next_billing_date"] == "2024-03-05"

    duplicate = client.post(
        f"{base}/subscriptions",
        json={"student_user_id": str(student.id), "plan_id": str(plan.id), "start_date": "2024-03-01"},
    )
    assert duplicate.status_code == 400

    page = client.get(f"{base}/invoices", params={"status": "PENDING"}).json()
    assert page["total"] == 1
    invoice = page["items"][0]
    assert invoice["due_date"] == "2024-03-05"
    assert invoice["amount"] == 50000

    detail = client.get(f"{base}/invoices/{invoice['id']}").json()
    assert detail["attempts"] == []

    canceled = client.post(f"{base}/invoices/{invoice['id']}/cancel")
    assert canceled.json()["status"] == InvoiceStatus.CANCELED.value
    assert client.post(f"{base}/invoices/{invoice['id']}/cancel").status_code == 400

    paused = client.patch(f"{base}/subscriptions/{subscription['id']}", json={"status": "PAUSED"})
    assert paused.json()["status"] == "PAUSED"


def test_invoice_detail_lists_attempts(client, factory):
    academy = factory.academy()
    student = factory.student(academy)
    invoice = factory.invoice(student, factory.plan(academy), due_date=date(2024, 3, 5))
    factory.failed_attempts(invoice, 2)

    detail = client.get(f"{API}/academies/{academy.id}/invoices/{invoice.id}").json()

    assert [a["attempt_no"] for a in detail["attempts"]] == [1, 2]
    assert detail["attempts"][0]["error_code"] == "REJECT_CARD_COMPANY"

    other = factory.academy()
    assert client.get(f"{API}/academies/{other.id}/invoices/{invoice.id}").status_code == 404


def test_issue_payment_method(client, factory, gateway):
    academy = factory.academy()
    student = factory.student(academy)
    app.dependency_overrides[get_payment_gateway] = lambda: gateway

    response = client.post(
        f"{API}/academies/{academy.id}/payment-methods",
        json={"student_user_id": str(student.id), "auth_key": "auth_1", "customer_key": "cust_1"},
    )

    assert response.status_code == 201
    assert response.json()["last4"] == "3456"
    assert response.json()["status"] == PaymentMethodStatus.ACTIVE.value


def test_toss_webhook_cancels_paid_invoice(client, db_session, factory, monkeypatch):
    monkeypatch.setattr(settings, "toss_secret_key", "whsec")
    academy = factory.academy()
    student = factory.student(academy)
    invoice = factory.invoice(student, factory.plan(academy), due_date=date(2024, 3, 5), status=InvoiceStatus.PAID.value)
    invoice.provider_payment_key = "pay_1"
    db_session.add(invoice)
    db_session.commit()

    body = json.dumps({"eventType": "PAYMENT_STATUS_CHANGED", "data": {"paymentKey": "pay_1", "status": "CANCELED"}})
    raw = body.encode()
    response = client.post(
        f"{API}/webhooks/toss",
        content=raw,
        headers={"Toss-Signature": _sign(raw, "whsec"), "Content-Type": "application/json"},
    )

    assert response.status_code == 200
    assert response.json() == {"ok": True, "status": "DONE"}
    db_session.expire_all()
    assert db_session.get(Invoice, invoice.id).status == InvoiceStatus.CANCELED.value
    (event,) = db_session.exec(select(WebhookEvent)).all()
    assert event.event_type == "PAYMENT_STATUS_CHANGED"
    assert event.processed_at is not None


def test_toss_webhook_revokes_billing_key(client, db_session, factory, monkeypatch):
    monkeypatch.setattr(settings, "toss_secret_key", "whsec")
    academy = factory.academy()
    method = factory.payment_method(factory.student(academy), billing_key="bk_gone")

    raw = json.dumps({"eventType": "BILLING_STATUS_CHANGED", "data": {"billingKey": "bk_gone"}}).encode()
    response = client.post(f"{API}/webhooks/toss", content=raw, headers={"Toss-Signature": _sign(raw, "whsec")})

    assert response.status_code == 200
    db_session.expire_all()
    assert db_session.get(PaymentMethod, method.id).status == PaymentMethodStatus.REVOKED.value


def test_toss_webhook_rejects_bad_signature_and_payload(client, db_session, monkeypatch):
    monkeypatch.setattr(settings, "toss_secret_key", "whsec")
    raw = b'{"eventType":"PAYMENT_STATUS_CHANGED","data":{}}'

    assert client.post(f"{API}/webhooks/toss", content=raw, headers={"Toss-Signature": _sign(raw, "nope")}).status_code == 401
    assert client.post(f"{API}/webhooks/toss", content=raw).status_code == 401

    garbage = b"not json"
    assert (
        client.post(f"{API}/webhooks/toss", content=garbage, headers={"Toss-Signature": _sign(garbage, "whsec")}).status_code
        == 400
    )
    assert db_session.exec(select(WebhookEvent)).all() == []


def test_reconcile_stuck_invoice(client, db_session, factory):
    academy = factory.academy()
    student = factory.student(academy)
    invoice = factory.invoice(
        student, factory.plan(academy), due_date=date(2024, 3, 5), status=InvoiceStatus.CHARGING.value
    )
    db_session.add(
        PaymentAttempt(
            academy_id=academy.id,
            invoice_id=invoice.id,
            attempt_no=1,
            order_id=invoice.order_id,
            status=AttemptStatus.REQUESTED.value,
        )
    )
    db_session.commit()
    url = f"{API}/academies/{academy.id}/invoices/{invoice.id}/reconcile"

    assert client.post(url, json={"paid": True}).status_code == 400

    response = client.post(url, json={"paid": True, "payment_key": "pay_manual"})
    assert response.status_code == 200
    assert response.json()["status"] == InvoiceStatus.PAID.value
    assert client.post(url, json={"paid": False}).status_code == 400
