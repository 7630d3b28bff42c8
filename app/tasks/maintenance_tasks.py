from __future__ import annotations

import logging
from datetime import timedelta

from sqlalchemy import update

from app.core.celery_app import celery
from app.core.config import settings
from app.core.db import SessionLocal
from app.models.tables import CampaignShipment, Reminder, Schedule
from app.outbox import state as st
from app.util.time import now_utc

log = logging.getLogger("maintenance_tasks")

# states whose queued job has run to completion
JOB_FINISHED = st.TERMINAL | {st.SENT}


def clear_finished_job_ids(db, *, now=None, ttl_s: int | None = None) -> dict:
    """Drop job handles of terminal items once their results have expired."""
    now = now or now_utc()
    cutoff = now - timedelta(seconds=settings.JOB_RESULT_TTL_SECONDS if ttl_s is None else ttl_s)
    cleared = {}
    for model in (Schedule, Reminder, CampaignShipment):
        res = db.execute(
            update(model)
            .where(model.job_id.isnot(None), model.state.in_(list(JOB_FINISHED)), model.updated_at < cutoff)
            .values(job_id=None)
            .execution_options(synchronize_session=False)
        )
        cleared[model.__tablename__] = res.rowcount
    db.commit()
    return cleared


@celery.task(name="app.tasks.maintenance_tasks.cleanup_finished_jobs")
def cleanup_finished_jobs() -> dict:
    with SessionLocal() as db:
        cleared = clear_finished_job_ids(db)
    if any(cleared.values()):
        log.info("cleared finished job ids: %s", cleared)
    return {"ok": True, "cleared": cleared}
