from . import billing, health, internal, notifications, webhooks

__all__ = [
    "billing",
    "health",
    "internal",
    "notifications",
    "webhooks",
]
