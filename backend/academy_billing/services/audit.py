from typing import Any, Callable
from uuid import UUID

from sqlmodel import Session

from academy_billing.core.logging_setup import get_logger
from academy_billing.models.audit import AuditLog

logger = get_logger("audit")


class AuditService:
    """Best-effort audit trail.

    Each event is written in its own session; a failed write is logged and
    dropped so it never rolls back the caller's business state.
    """

    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self.session_factory = session_factory

    def record_event(
        self,
        *,
        action: str,
        academy_id: UUID | None = None,
        actor_user_id: UUID | None = None,
        target_type: str | None = None,
        target_id: UUID | str | None = None,
        meta: dict[str, Any] | None = None,
    ) -> bool:
        log = AuditLog(
            academy_id=academy_id,
            actor_user_id=actor_user_id,
            action=action,
            target_type=target_type,
            target_id=str(target_id) if target_id is not None else None,
            meta=meta or {},
        )
        try:
            with self.session_factory() as session:
                session.add(log)
                session.commit()
        except Exception:  # noqa: BLE001
            logger.exception("Failed to write audit event %s for %s %s", action, target_type, target_id)
            return False
        return True
