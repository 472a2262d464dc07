from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Mapping, Protocol

import httpx

from academy_billing.core.config import Settings, settings as default_settings
from academy_billing.core.logging_setup import get_logger

logger = get_logger("alimtalk")


@dataclass
class AlimtalkSendResult:
    success: bool
    msg_key: str | None = None
    error_code: str | None = None
    error_message: str | None = None


class MessageSender(Protocol):
    def send(
        self,
        *,
        sender_key: str,
        template_code: str,
        phone: str,
        variables: Mapping[str, Any],
    ) -> AlimtalkSendResult:
        ...


class AlimtalkClient:
    """Kakao AlimTalk sender through the Aligo BizMessage REST API.

    Failures are returned as results, never raised.
    """

    def __init__(
        self,
        api_key: str | None,
        user_id: str | None,
        *,
        base_url: str = "https://kakaoapi.aligo.in",
        timeout_seconds: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.api_key = api_key
        self.user_id = user_id
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            timeout=timeout_seconds,
            transport=transport,
        )

    @classmethod
    def from_settings(cls, config: Settings | None = None, **kwargs: Any) -> "AlimtalkClient":
        config = config or default_settings
        return cls(
            config.kakao_api_key,
            config.kakao_user_id,
            base_url=config.kakao_base_url,
            timeout_seconds=config.kakao_timeout_seconds,
            **kwargs,
        )

    def close(self) -> None:
        self._client.close()

    def send(
        self,
        *,
        sender_key: str,
        template_code: str,
        phone: str,
        variables: Mapping[str, Any],
    ) -> AlimtalkSendResult:
        if not self.api_key or not self.user_id:
            logger.warning("Kakao credentials not configured, message to %s not sent", phone)
            return AlimtalkSendResult(
                success=False,
                error_code="CONFIG_MISSING",
                error_message="Kakao credentials not configured",
            )

        form = {
            "apikey": self.api_key,
            "userid": self.user_id,
            "senderkey": sender_key,
            "tpl_code": template_code,
            "receiver_1": phone,
            "tpl_vars": json.dumps(dict(variables), ensure_ascii=False),
            # AlimTalk only, no SMS fallback
            "failover": "0",
        }

        try:
            response = self._client.post("/akv10/alimtalk/send/", data=form)
        except httpx.HTTPError as exc:
            return AlimtalkSendResult(success=False, error_code="FETCH_ERROR", error_message=str(exc))

        if response.is_error:
            return AlimtalkSendResult(
                success=False,
                error_code=f"HTTP_{response.status_code}",
                error_message=f"HTTP error {response.status_code}",
            )

        try:
            data = response.json()
        except ValueError:
            return AlimtalkSendResult(
                success=False,
                error_code="INVALID_RESPONSE",
                error_message=response.text[:200],
            )

        if not isinstance(data, dict):
            return AlimtalkSendResult(
                success=False,
                error_code="INVALID_RESPONSE",
                error_message=response.text[:200],
            )

        code = data.get("code")
        if code != 0:
            message = data.get("message")
            return AlimtalkSendResult(
                success=False,
                error_code=str(code),
                error_message=str(message) if message is not None else None,
            )

        info = data.get("info")
        mid = info.get("mid") if isinstance(info, dict) else None
        return AlimtalkSendResult(success=True, msg_key=str(mid) if mid is not None else None)
