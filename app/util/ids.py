from __future__ import annotations

import uuid

from sqlalchemy.orm import Session

from app.core.db import SessionLocal
from app.models.tables import AuditLog, Connection, Tenant
from app.util.time import now_utc


def new_uuid() -> str:
    return str(uuid.uuid4())


def seed() -> None:
    db: Session = SessionLocal()
    try:
        tenant = db.query(Tenant).filter(Tenant.name == "seed-tenant").one_or_none()
        if not tenant:
            tenant = Tenant(id=new_uuid(), name="seed-tenant", settings={}, created_at=now_utc())
            db.add(tenant)
            db.commit()

        conn = (
            db.query(Connection)
            .filter(Connection.tenant_id == tenant.id, Connection.is_default.is_(True))
            .one_or_none()
        )
        if not conn:
            conn = Connection(
                id=new_uuid(),
                tenant_id=tenant.id,
                name="seed-session",
                provider="session",
                channel="whatsapp",
                status="CONNECTED",
                is_default=True,
                session_name="seed",
                created_at=now_utc(),
            )
            db.add(conn)
            db.commit()

        db.add(
            AuditLog(
                id=new_uuid(),
                tenant_id=tenant.id,
                user_id=None,
                event_type="SEED_DONE",
                severity="INFO",
                message="Seed completed",
                context={"connection_id": conn.id},
                created_at=now_utc(),
            )
        )
        db.commit()
        print(tenant.id)
    finally:
        db.close()


if __name__ == "__main__":
    seed()
