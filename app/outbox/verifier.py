from __future__ import annotations

import logging
import threading
from datetime import timedelta

from sqlalchemy import and_, case
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.job_queue import JobQueue, get_job_queue
from app.models.tables import Campaign, Reminder, Schedule
from app.outbox import state as st
from app.util.time import as_utc, now_utc

log = logging.getLogger("verifier")

SEND_SCHEDULE = "app.tasks.dispatch_tasks.send_schedule"
SEND_REMINDER = "app.tasks.dispatch_tasks.send_reminder"
PROCESS_CAMPAIGN = "app.tasks.dispatch_tasks.process_campaign"

_campaign_tick = threading.Lock()


def _delay_s(due, now) -> float:
    return max(0.0, (as_utc(due) - now).total_seconds())


def promote_due(
    db: Session,
    model,
    *,
    job_type: str,
    now=None,
    queue: JobQueue | None = None,
    window_s: int | None = None,
    lookbehind_s: int | None = None,
    limit: int | None = None,
) -> list[str]:
    """Move due PENDING items to ENQUEUED and add one delayed job per item.

    Returns the ids this call enqueued. Items another tick already claimed are
    skipped by the guarded update.
    """
    now = now or now_utc()
    queue = queue or get_job_queue()
    window_s = settings.LOOKAHEAD_SECONDS if window_s is None else window_s
    lookbehind_s = settings.VERIFY_LOOKBEHIND_SECONDS if lookbehind_s is None else lookbehind_s

    rows = (
        db.query(model.id, model.scheduled_at, model.tenant_id)
        .filter(
            model.state == st.PENDING,
            model.scheduled_at >= now - timedelta(seconds=lookbehind_s),
            model.scheduled_at <= now + timedelta(seconds=window_s),
        )
        .order_by(model.scheduled_at.asc())
        .limit(limit or settings.VERIFY_BATCH_LIMIT)
        .all()
    )

    enqueued: list[str] = []
    for item_id, scheduled_at, tenant_id in rows:
        if not st.transition(db, model, item_id, from_states={st.PENDING}, to_state=st.ENQUEUED):
            continue

        try:
            job_id = queue.add(job_type, {"item_id": item_id}, delay_s=_delay_s(scheduled_at, now))
        except Exception:
            log.exception("enqueue failed for %s %s (tenant=%s); back to PENDING", model.__tablename__, item_id, tenant_id)
            st.transition(db, model, item_id, from_states={st.ENQUEUED}, to_state=st.PENDING)
            continue

        st.set_fields(db, model, item_id, when_state=st.ENQUEUED, job_id=job_id)
        enqueued.append(item_id)
        log.info("enqueued %s %s job=%s (tenant=%s)", model.__tablename__, item_id, job_id, tenant_id)

    return enqueued


def verify_schedules(db: Session, *, now=None, queue: JobQueue | None = None) -> list[str]:
    return promote_due(db, Schedule, job_type=SEND_SCHEDULE, now=now, queue=queue)


def verify_reminders(db: Session, *, now=None, queue: JobQueue | None = None) -> list[str]:
    return promote_due(db, Reminder, job_type=SEND_REMINDER, now=now, queue=queue)


def verify_campaigns(db: Session, *, now=None, queue: JobQueue | None = None) -> list[str] | None:
    """Claim campaigns due within the campaign lookahead.

    Returns None when a previous tick in this process is still running.
    """
    if not _campaign_tick.acquire(blocking=False):
        log.info("campaign verifier already running; tick skipped")
        return None
    try:
        return _verify_campaigns(db, now=now or now_utc(), queue=queue or get_job_queue())
    finally:
        _campaign_tick.release()


def _verify_campaigns(db: Session, *, now, queue: JobQueue) -> list[str]:
    horizon = now + timedelta(hours=settings.CAMPAIGN_LOOKAHEAD_HOURS)
    # recurring campaigns keep their first scheduled_at; later executions run at next_scheduled_at
    due_at = case(
        (
            and_(Campaign.is_recurring.is_(True), Campaign.execution_count > 0, Campaign.next_scheduled_at.isnot(None)),
            Campaign.next_scheduled_at,
        ),
        else_=Campaign.scheduled_at,
    )
    candidates = (
        db.query(Campaign)
        .filter(Campaign.status == "SCHEDULED", due_at <= horizon)
        .order_by(due_at.asc())
        .limit(settings.VERIFY_BATCH_LIMIT)
        .all()
    )

    claimed: list[str] = []
    for c in candidates:
        due = as_utc(c.next_scheduled_at if (c.is_recurring and c.execution_count > 0 and c.next_scheduled_at) else c.scheduled_at)
        if not st.transition(db, Campaign, c.id, from_states={"SCHEDULED"}, to_state="IN_PROGRESS", field="status"):
            continue
        try:
            job_id = queue.add(PROCESS_CAMPAIGN, {"campaign_id": c.id}, delay_s=_delay_s(due, now))
        except Exception:
            log.exception("enqueue failed for campaign %s; back to SCHEDULED", c.id)
            st.transition(db, Campaign, c.id, from_states={"IN_PROGRESS"}, to_state="SCHEDULED", field="status")
            continue
        st.set_fields(db, Campaign, c.id, job_id=job_id)
        claimed.append(c.id)
        log.info("campaign %s claimed job=%s due=%s", c.id, job_id, due.isoformat())
    return claimed
