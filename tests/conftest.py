from __future__ import annotations

import os

import pytest

# Settings are read once at import; configure before anything imports app.*
os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/0")
os.environ.setdefault("ADMIN_TOKEN", "change-me-admin-token")
os.environ.setdefault("ENSURE_EXTERNAL_DEPS_ON_STARTUP", "0")
os.environ.setdefault("NOTIFY_ENABLED", "0")
os.environ.setdefault("REAL_SEND_ENABLED", "0")
os.environ.setdefault("CELERY_TASK_ALWAYS_EAGER", "1")

from tests.utils_factories import FakeAdapter, FakeQueue


@pytest.fixture()
def db():
    import app.models.tables  # noqa: F401
    from app.core.db import SessionLocal, engine
    from app.models.base import Base

    # Create schema (SQLite tests don't run Alembic).
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def tenant(db):
    """Seeded tenant with a connected default session connection."""
    from app.models.tables import Connection, Tenant
    from app.util.ids import new_uuid
    from app.util.time import now_utc

    t = Tenant(id=new_uuid(), name=f"t-{new_uuid()}", default_country_code="55", settings={}, created_at=now_utc())
    db.add(t)
    db.commit()
    conn = Connection(
        id=new_uuid(),
        tenant_id=t.id,
        name="main",
        provider="session",
        channel="whatsapp",
        status="CONNECTED",
        is_default=True,
        session_name="main",
        created_at=now_utc(),
    )
    db.add(conn)
    db.commit()
    return {"id": t.id, "connection_id": conn.id}


@pytest.fixture()
def queue():
    return FakeQueue()


@pytest.fixture()
def adapter():
    return FakeAdapter()
