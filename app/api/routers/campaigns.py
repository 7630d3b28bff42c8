from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from app.api.deps import get_ctx
from app.core.db import SessionLocal
from app.outbox.campaigns import confirm_shipment
from app.outbox.service import cancel_outbound_item

router = APIRouter()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@router.post("/{campaign_id}/cancel")
def cancel_campaign(campaign_id: str, ctx=Depends(get_ctx), db: Session = Depends(get_db)) -> dict:
    tenant_id, user_id = ctx
    report = cancel_outbound_item(db, tenant_id, campaign_id, "campaign", user_id=user_id)
    if report is None:
        raise HTTPException(status_code=404, detail="Campaign not found")
    return {"id": campaign_id, **report.as_dict()}


@router.post("/{campaign_id}/shipments/{shipment_id}/confirm")
def confirm(campaign_id: str, shipment_id: str, ctx=Depends(get_ctx), db: Session = Depends(get_db)) -> dict:
    tenant_id, _ = ctx
    res = confirm_shipment(db, tenant_id=tenant_id, shipment_id=shipment_id, campaign_id=campaign_id)
    if res["status"] == "MISSING":
        raise HTTPException(status_code=404, detail="Shipment not found")
    return {"campaign_id": campaign_id, "shipment_id": shipment_id, **res}
