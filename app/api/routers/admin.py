from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.db import SessionLocal
from app.core.security import require_admin_token
from app.models.tables import Connection, Tenant
from app.util.ids import new_uuid
from app.util.time import now_utc

router = APIRouter()

PROVIDERS = {"session", "oficial", "official", "beta"}


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@router.post("/tenants", dependencies=[Depends(require_admin_token)])
def create_tenant(payload: dict, db: Session = Depends(get_db)):
    # create-or-get by unique name (idempotent)
    name = (payload or {}).get("name")
    if not name:
        raise HTTPException(status_code=400, detail="Missing name")

    existing: Tenant | None = db.query(Tenant).filter(Tenant.name == name).one_or_none()
    if existing:
        return {"id": existing.id, "name": existing.name}

    tenant = Tenant(
        id=new_uuid(),
        name=name,
        default_country_code=payload.get("default_country_code"),
        settings=dict(payload.get("settings") or {}),
        created_at=now_utc(),
    )
    db.add(tenant)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        # Another request likely created it concurrently
        existing = db.query(Tenant).filter(Tenant.name == name).one_or_none()
        if existing:
            return {"id": existing.id, "name": existing.name}
        raise

    return {"id": tenant.id, "name": tenant.name}


@router.post("/tenants/{tenant_id}/connections", dependencies=[Depends(require_admin_token)])
def create_connection(tenant_id: str, payload: dict, db: Session = Depends(get_db)):
    if not db.get(Tenant, tenant_id):
        raise HTTPException(status_code=404, detail="Tenant not found")
    payload = payload or {}
    name = payload.get("name")
    provider = (payload.get("provider") or "session").lower()
    if not name:
        raise HTTPException(status_code=400, detail="Missing name")
    if provider not in PROVIDERS:
        raise HTTPException(status_code=400, detail=f"Unknown provider: {provider}")

    is_default = bool(payload.get("is_default"))
    if is_default:
        db.execute(update(Connection).where(Connection.tenant_id == tenant_id).values(is_default=False))

    conn = Connection(
        id=new_uuid(),
        tenant_id=tenant_id,
        name=name,
        provider=provider,
        channel=payload.get("channel") or "whatsapp",
        status=payload.get("status") or "CONNECTED",
        is_default=is_default,
        token=payload.get("token"),
        phone_number_id=payload.get("phone_number_id"),
        session_name=payload.get("session_name"),
        created_at=now_utc(),
    )
    db.add(conn)
    db.commit()
    return {"id": conn.id, "name": conn.name, "provider": conn.provider, "is_default": conn.is_default}
