from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import PlainTextResponse
from pydantic import ValidationError
from sqlalchemy.orm import Session

from app.core.db import SessionLocal
from app.core.security import require_admin_token, webhook_token_ok
from app.outbox.reconciler import events_from_webhook
from app.outbox.service import report_delivery_status
from app.schemas.outbound_v1 import StatusEvent

log = logging.getLogger("status")

router = APIRouter()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@router.post("/events", dependencies=[Depends(require_admin_token)])
def post_events(payload: dict, db: Session = Depends(get_db)) -> dict:
    """One event, or {"events": [...]} for a batch."""
    raw = payload.get("events") if isinstance(payload.get("events"), list) else [payload]
    try:
        events = [StatusEvent.model_validate(e) for e in raw]
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=e.errors(include_url=False, include_context=False))

    results = [report_delivery_status(db, ev) for ev in events]
    return {"results": results}


@router.get("/webhook")
def verify_webhook(
    mode: str | None = Query(default=None, alias="hub.mode"),
    token: str | None = Query(default=None, alias="hub.verify_token"),
    challenge: str | None = Query(default=None, alias="hub.challenge"),
):
    if mode != "subscribe" or not webhook_token_ok(token):
        raise HTTPException(status_code=403, detail="Invalid verify token")
    return PlainTextResponse(challenge or "")


@router.post("/webhook")
def post_webhook(payload: dict, tenant_id: str = Query(...), db: Session = Depends(get_db)) -> dict:
    events = events_from_webhook(payload or {}, tenant_id=tenant_id)
    results = [report_delivery_status(db, ev) for ev in events]
    if events:
        log.info("webhook: %s status events for tenant %s", len(events), tenant_id)
    return {"received": len(events), "results": results}
