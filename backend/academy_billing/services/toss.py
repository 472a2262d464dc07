from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
from dataclasses import dataclass
from typing import Any, Protocol
from urllib.parse import quote

import httpx

from academy_billing.core.config import Settings, settings as default_settings
from academy_billing.core.errors import TossError


@dataclass
class ChargeResult:
    payment_key: str
    order_id: str
    status: str
    approved_at: str | None = None
    total_amount: int | None = None


@dataclass
class BillingKeyResult:
    billing_key: str
    customer_key: str
    card_company: str | None = None
    card_number: str | None = None

    @property
    def last4(self) -> str | None:
        digits = "".join(ch for ch in (self.card_number or "") if ch.isdigit())
        return digits[-4:] or None


class PaymentGateway(Protocol):
    def charge_with_billing_key(
        self,
        *,
        billing_key: str,
        customer_key: str,
        amount: int,
        order_id: str,
        order_name: str,
        customer_name: str | None = None,
        customer_email: str | None = None,
    ) -> ChargeResult:
        ...

    def issue_billing_key(self, auth_key: str, customer_key: str) -> BillingKeyResult:
        ...

    def revoke_billing_key(self, billing_key: str) -> None:
        ...


class TossClient:
    """HTTP client for the Toss Payments v1 billing API.

    Authentication is HTTP Basic with ``secret_key`` as user and an empty
    password. Charges carry an ``Idempotency-Key`` header so a network-level
    retry of the same charge is collapsed by Toss.
    """

    def __init__(
        self,
        secret_key: str,
        *,
        base_url: str = "https://api.tosspayments.com",
        timeout_seconds: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        if not secret_key:
            raise TossError("CONFIG_MISSING", "Toss secret key is not configured")
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            auth=httpx.BasicAuth(secret_key, ""),
            timeout=timeout_seconds,
            transport=transport,
        )

    @classmethod
    def from_settings(cls, config: Settings | None = None, **kwargs: Any) -> "TossClient":
        config = config or default_settings
        return cls(
            config.toss_secret_key or "",
            base_url=config.toss_base_url,
            timeout_seconds=config.toss_timeout_seconds,
            **kwargs,
        )

    def close(self) -> None:
        self._client.close()

    def _request(
        self,
        method: str,
        path: str,
        *,
        body: dict[str, Any] | None = None,
        idempotency_key: str | None = None,
    ) -> dict[str, Any]:
        headers = {"Content-Type": "application/json"}
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key

        response = self._client.request(method, path, json=body, headers=headers)

        try:
            payload = response.json()
        except ValueError:
            payload = {"message": response.text}
        if not isinstance(payload, dict):
            payload = {"message": response.text}

        if response.is_error:
            raise TossError(
                str(payload.get("code") or "UNKNOWN"),
                str(payload.get("message") or "Unknown Toss error"),
                response.status_code,
            )
        return payload

    def charge_with_billing_key(
        self,
        *,
        billing_key: str,
        customer_key: str,
        amount: int,
        order_id: str,
        order_name: str,
        customer_name: str | None = None,
        customer_email: str | None = None,
        tax_free_amount: int = 0,
        idempotency_key: str | None = None,
    ) -> ChargeResult:
        body: dict[str, Any] = {
            "customerKey": customer_key,
            "amount": amount,
            "orderId": order_id,
            "orderName": order_name,
            "taxFreeAmount": tax_free_amount,
        }
        if customer_name:
            body["customerName"] = customer_name
        if customer_email:
            body["customerEmail"] = customer_email

        data = self._request(
            "POST",
            f"/v1/billing/{quote(billing_key, safe='')}",
            body=body,
            idempotency_key=idempotency_key or order_id,
        )
        return ChargeResult(
            payment_key=str(data["paymentKey"]),
            order_id=str(data.get("orderId") or order_id),
            status=str(data.get("status") or "DONE"),
            approved_at=data.get("approvedAt"),
            total_amount=data.get("totalAmount"),
        )

    def issue_billing_key(self, auth_key: str, customer_key: str) -> BillingKeyResult:
        data = self._request(
            "POST",
            f"/v1/billing/authorizations/{quote(auth_key, safe='')}",
            body={"customerKey": customer_key},
        )
        return BillingKeyResult(
            billing_key=str(data["billingKey"]),
            customer_key=str(data.get("customerKey") or customer_key),
            card_company=data.get("cardCompany"),
            card_number=data.get("cardNumber"),
        )

    def revoke_billing_key(self, billing_key: str) -> None:
        self._request("DELETE", f"/v1/billing/authorizations/{quote(billing_key, safe='')}")


def verify_webhook_signature(raw_body: bytes | str, signature: str | None, secret: str | None) -> bool:
    """Check a ``Toss-Signature`` header: base64(HMAC-SHA256(raw_body, secret))."""
    if not secret or not signature:
        return False
    body = raw_body.encode("utf-8") if isinstance(raw_body, str) else raw_body
    expected = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).digest()
    try:
        provided = base64.b64decode(signature.strip(), validate=True)
    except (binascii.Error, ValueError):
        return False
    return hmac.compare_digest(expected, provided)


def parse_webhook_body(raw_body: bytes | str) -> dict[str, Any] | None:
    """Decoded webhook event, or None when it is not ``{eventType, data, ...}``."""
    try:
        parsed = json.loads(raw_body)
    except (ValueError, TypeError):
        return None
    if not isinstance(parsed, dict):
        return None
    if not parsed.get("eventType") or not isinstance(parsed.get("data"), dict):
        return None
    return parsed
