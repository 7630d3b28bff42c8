from __future__ import annotations

from sqlalchemy.orm import Session

from app.models.tables import AuditLog
from app.util.ids import new_uuid
from app.util.time import now_utc


def audit(
    db: Session,
    *,
    tenant_id: str | None,
    event_type: str,
    message: str,
    severity: str = "INFO",
    user_id: str | None = None,
    context: dict | None = None,
) -> None:
    """Adds an audit row to the session; the caller commits."""
    db.add(
        AuditLog(
            id=new_uuid(),
            tenant_id=tenant_id,
            user_id=user_id,
            event_type=event_type,
            severity=severity,
            message=message[:1000],
            context=context or {},
            created_at=now_utc(),
        )
    )
