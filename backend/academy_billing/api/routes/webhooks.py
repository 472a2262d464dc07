from fastapi import APIRouter, HTTPException, Request, status

from academy_billing.api.deps import DbSession
from academy_billing.core.errors import WebhookPayloadError, WebhookSignatureError
from academy_billing.services.webhooks import WebhookService

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/toss", status_code=status.HTTP_200_OK)
async def toss_webhook(request: Request, session: DbSession) -> dict:
    """Toss Payments webhook.

    The ``Toss-Signature`` header is base64(HMAC-SHA256(raw body, secret key)).
    Processing errors still answer 200 so Toss does not retry indefinitely.
    """
    raw_body = await request.body()
    try:
        event = WebhookService(session).handle_toss(raw_body, request.headers.get("Toss-Signature"))
    except WebhookSignatureError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(exc)) from exc
    except WebhookPayloadError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return {"ok": True, "status": event.processing_status}
