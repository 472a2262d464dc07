import hmac
from typing import Annotated, Generator

from fastapi import Depends, Header, HTTPException, status
from sqlmodel import Session

from academy_billing.core.config import settings
from academy_billing.db.session import get_session, session_factory
from academy_billing.services.alimtalk import MessageSender
from academy_billing.services.audit import AuditService
from academy_billing.services.toss import PaymentGateway


def get_db() -> Generator[Session, None, None]:
    yield from get_session()


def get_payment_gateway() -> PaymentGateway | None:
    """None lets the service build a Toss client from settings on first use."""
    return None


def get_message_sender() -> MessageSender | None:
    return None


def get_audit_service() -> AuditService:
    return AuditService(session_factory)


def require_cron_secret(
    x_cron_secret: Annotated[str | None, Header()] = None,
) -> None:
    expected = settings.cron_secret
    if not expected:
        return
    if not x_cron_secret or not hmac.compare_digest(x_cron_secret, expected):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid cron secret")


DbSession = Annotated[Session, Depends(get_db)]
