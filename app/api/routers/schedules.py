from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from app.api.deps import get_ctx
from app.core.db import SessionLocal
from app.core.errors import ValidationFailed
from app.outbox.service import cancel_outbound_item, list_schedules, retry_failed_item, schedule_outbound_item

router = APIRouter()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@router.post("")
def create_schedule(payload: dict, ctx=Depends(get_ctx), db: Session = Depends(get_db)) -> dict:
    tenant_id, user_id = ctx
    try:
        schedule_id = schedule_outbound_item(db, tenant_id, user_id, payload or {})
    except ValidationFailed as e:
        raise HTTPException(status_code=422, detail={"error": str(e), **e.detail})
    return {"id": schedule_id, "status": "PENDING"}


@router.get("")
def get_schedules(state: str | None = None, limit: int = 100, ctx=Depends(get_ctx), db: Session = Depends(get_db)) -> dict:
    tenant_id, _ = ctx
    items = list_schedules(db, tenant_id, state=state, limit=min(max(limit, 1), 500))
    return {
        "items": [
            {
                "id": s.id,
                "state": s.state,
                "contact_id": s.contact_id,
                "connection_id": s.connection_id,
                "payload": s.payload,
                "scheduled_at": s.scheduled_at,
                "sent_at": s.sent_at,
                "external_message_id": s.external_message_id,
                "attempts": s.attempts,
                "last_error": s.last_error,
                "series_id": s.series_id,
                "occurrence_count": s.occurrence_count,
                "max_occurrences": s.max_occurrences,
            }
            for s in items
        ]
    }


@router.post("/{schedule_id}/cancel")
def cancel_schedule(schedule_id: str, ctx=Depends(get_ctx), db: Session = Depends(get_db)) -> dict:
    tenant_id, user_id = ctx
    report = cancel_outbound_item(db, tenant_id, schedule_id, "schedule", user_id=user_id)
    if report is None:
        raise HTTPException(status_code=404, detail="Schedule not found")
    return {"id": schedule_id, **report.as_dict()}


@router.post("/{schedule_id}/retry")
def retry_schedule(schedule_id: str, ctx=Depends(get_ctx), db: Session = Depends(get_db)) -> dict:
    tenant_id, user_id = ctx
    if not retry_failed_item(db, tenant_id, schedule_id, user_id=user_id):
        raise HTTPException(status_code=409, detail="Schedule not found or not FAILED")
    return {"id": schedule_id, "status": "PENDING"}
