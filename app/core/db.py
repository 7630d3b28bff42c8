from __future__ import annotations

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.config import settings

_db_url = settings.DATABASE_URL

if _db_url.startswith("sqlite"):
    # In-memory SQLite (tests): API threads, tasks and the status consumer share one connection.
    engine = create_engine(_db_url, connect_args={"check_same_thread": False}, poolclass=StaticPool)
else:
    # Every Celery worker process and the API each hold their own pool.
    engine = create_engine(
        _db_url,
        pool_pre_ping=True,
        pool_size=settings.DB_POOL_SIZE,
        max_overflow=settings.DB_MAX_OVERFLOW,
        pool_recycle=settings.DB_POOL_RECYCLE_S,
    )

SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)
