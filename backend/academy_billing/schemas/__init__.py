from academy_billing.schemas import billing, common, notification

__all__ = [
    "billing",
    "common",
    "notification",
]
