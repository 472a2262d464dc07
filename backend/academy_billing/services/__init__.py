from academy_billing.services.audit import AuditService
from academy_billing.services.billing import BillingService
from academy_billing.services.notification_queue import NotificationQueueWorker
from academy_billing.services.webhooks import WebhookService

__all__ = [
    "AuditService",
    "BillingService",
    "NotificationQueueWorker",
    "WebhookService",
]
