from fastapi import APIRouter
from sqlalchemy import text

from academy_billing.api.deps import DbSession

router = APIRouter(tags=["health"])


@router.get("/live")
def live() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/ready")
def ready(session: DbSession) -> dict[str, str]:
    session.connection().execute(text("SELECT 1"))
    return {"status": "ready"}
