from __future__ import annotations


class BillingError(ValueError):
    """Precondition failure of an administrative billing operation."""


class NotFoundError(BillingError):
    """The requested row does not exist inside the academy."""


class TossError(RuntimeError):
    """Structured failure reported by Toss Payments."""

    def __init__(self, code: str, message: str, status_code: int | None = None) -> None:
        super().__init__(f"[Toss {code}] {message}")
        self.code = code
        self.message = message
        self.status_code = status_code


class WebhookSignatureError(ValueError):
    """Webhook body does not match its signature header."""


class WebhookPayloadError(ValueError):
    """Webhook body is not a well-formed event."""
