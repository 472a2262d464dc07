# noqa: F401 to ensure models are imported for metadata
from academy_billing.models.academy import Academy, User
from academy_billing.models.audit import AuditLog, WebhookEvent
from academy_billing.models.billing import (
    Invoice,
    PaymentAttempt,
    PaymentMethod,
    StudentSubscription,
    TuitionPlan,
)
from academy_billing.models.notification import NotificationQueue

__all__ = [
    "Academy",
    "User",
    "AuditLog",
    "WebhookEvent",
    "Invoice",
    "PaymentAttempt",
    "PaymentMethod",
    "StudentSubscription",
    "TuitionPlan",
    "NotificationQueue",
]
