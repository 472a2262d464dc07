from typing import List
from uuid import UUID

from fastapi import APIRouter, Query
from sqlmodel import select

from academy_billing.api.deps import DbSession
from academy_billing.models.notification import NotificationQueue
from academy_billing.schemas.notification import NotificationQueueRead

router = APIRouter(prefix="/academies/{academy_id}/notifications", tags=["notifications"])


@router.get("", response_model=List[NotificationQueueRead])
def list_queue(
    academy_id: UUID,
    session: DbSession,
    queue_status: str | None = Query(default=None, alias="status"),
    limit: int = Query(default=50, ge=1, le=200),
) -> List[NotificationQueueRead]:
    query = select(NotificationQueue).where(NotificationQueue.academy_id == academy_id)
    if queue_status:
        query = query.where(NotificationQueue.status == queue_status)
    rows = session.exec(query.order_by(NotificationQueue.created_at.desc()).limit(limit)).all()
    return [NotificationQueueRead.model_validate(row) for row in rows]
