from __future__ import annotations

import logging

from celery.exceptions import Retry

from app.core.celery_app import celery
from app.core.db import SessionLocal
from app.core.job_queue import get_job_queue
from app.core.locks import LockBusy, schedule_lock
from app.core.rate_limit import send_limiter
from app.models.tables import CampaignShipment, Connection, Contact, Reminder, Schedule
from app.outbox import campaigns, dispatcher, verifier
from app.outbox.adapters.registry import is_official
from app.outbox.dispatcher import Outcome
from app.outbox.retry import TRANSPORT_RETRY

log = logging.getLogger("dispatch_tasks")

RESTART_SESSION = "app.tasks.dispatch_tasks.restart_session"
RESOLVE_CONTACT_LID = "app.tasks.dispatch_tasks.resolve_contact_lid"

# lock contention between a reminder and its schedule clears quickly
LOCK_RETRY_S = 5


@celery.task(name="app.tasks.dispatch_tasks.verify_schedules")
def verify_schedules() -> dict:
    with SessionLocal() as db:
        ids = verifier.verify_schedules(db)
    return {"ok": True, "enqueued": len(ids)}


@celery.task(name="app.tasks.dispatch_tasks.verify_reminders")
def verify_reminders() -> dict:
    with SessionLocal() as db:
        ids = verifier.verify_reminders(db)
    return {"ok": True, "enqueued": len(ids)}


@celery.task(name="app.tasks.dispatch_tasks.verify_campaigns")
def verify_campaigns() -> dict:
    with SessionLocal() as db:
        ids = verifier.verify_campaigns(db)
    if ids is None:
        return {"ok": True, "skipped": True}
    return {"ok": True, "claimed": len(ids)}


def _throttle(task, key: str) -> None:
    decision = send_limiter().acquire(key)
    if not decision.allowed:
        log.info("send rate limit hit for %s; requeued in %.1fs", key, decision.retry_after_s)
        raise task.retry(countdown=decision.retry_after_s)


def _settle(task, db, out: Outcome, *, contact_id: str | None = None) -> dict:
    """Turn a dispatcher outcome into follow-up jobs or a Celery retry."""
    if out.restart_required and out.connection_id:
        get_job_queue().add(RESTART_SESSION, {"connection_id": out.connection_id})

    if out.status == "SENT" and contact_id and out.connection_id:
        contact = db.get(Contact, contact_id)
        conn = db.get(Connection, out.connection_id)
        if contact and not contact.lid and conn and not is_official(conn):
            get_job_queue().add(RESOLVE_CONTACT_LID, {"contact_id": contact_id, "connection_id": conn.id})

    if out.status == "RETRY":
        raise task.retry(countdown=out.delay_s)
    return out.as_dict()


def _send_locked(task, model, item_id: str, send) -> dict:
    with SessionLocal() as db:
        item = db.get(model, item_id)
        if not item:
            log.warning("%s %s not found; job dropped", model.__tablename__, item_id)
            return Outcome(status="MISSING", item_id=item_id).as_dict()

        schedule_id = item.schedule_id if model is Reminder else item.id
        _throttle(task, item.connection_id or f"tenant:{item.tenant_id}")
        try:
            with schedule_lock(schedule_id):
                out = send(db, item_id)
        except LockBusy:
            log.info("schedule %s busy; %s %s requeued", schedule_id, model.__tablename__, item_id)
            raise task.retry(countdown=LOCK_RETRY_S)
        except Retry:
            raise
        except Exception:
            log.exception(
                "%s %s crashed (tenant=%s attempt=%s)", model.__tablename__, item_id, item.tenant_id, task.request.retries
            )
            raise
        return _settle(task, db, out, contact_id=item.contact_id)


@celery.task(bind=True, name="app.tasks.dispatch_tasks.send_schedule", max_retries=None, acks_late=True)
def send_schedule(self, item_id: str) -> dict:
    return _send_locked(self, Schedule, item_id, dispatcher.send_schedule)


@celery.task(bind=True, name="app.tasks.dispatch_tasks.send_reminder", max_retries=None, acks_late=True)
def send_reminder(self, item_id: str) -> dict:
    return _send_locked(self, Reminder, item_id, dispatcher.send_reminder)


@celery.task(bind=True, name="app.tasks.dispatch_tasks.process_campaign", acks_late=True)
def process_campaign(self, campaign_id: str) -> dict:
    with SessionLocal() as db:
        try:
            return campaigns.process_campaign(db, campaign_id)
        except Exception:
            log.exception("campaign %s fan-out crashed (attempt=%s)", campaign_id, self.request.retries)
            raise


@celery.task(bind=True, name="app.tasks.dispatch_tasks.prepare_shipment", max_retries=5, acks_late=True)
def prepare_shipment(self, campaign_id: str, contact_id: str, execution: int, delay_s: float = 0) -> dict:
    with SessionLocal() as db:
        try:
            return campaigns.prepare_shipment(
                db, campaign_id=campaign_id, contact_id=contact_id, execution=execution, delay_s=delay_s
            )
        except Exception as e:
            log.exception(
                "prepare for campaign %s contact %s crashed (attempt=%s)", campaign_id, contact_id, self.request.retries
            )
            if self.request.retries >= self.max_retries:
                return campaigns.abandon_shipment(
                    db, campaign_id=campaign_id, contact_id=contact_id, execution=execution, error=str(e) or type(e).__name__
                )
            raise self.retry(exc=e, countdown=TRANSPORT_RETRY.delay(self.request.retries))


@celery.task(bind=True, name="app.tasks.dispatch_tasks.dispatch_shipment", max_retries=None, acks_late=True)
def dispatch_shipment(self, shipment_id: str) -> dict:
    with SessionLocal() as db:
        s = db.get(CampaignShipment, shipment_id)
        if not s:
            return Outcome(status="MISSING", item_id=shipment_id).as_dict()
        _throttle(self, s.connection_id or f"tenant:{s.tenant_id}")
        try:
            out = campaigns.dispatch_shipment(db, shipment_id)
        except Exception:
            log.exception("shipment %s crashed (tenant=%s attempt=%s)", shipment_id, s.tenant_id, self.request.retries)
            raise
        return _settle(self, db, out, contact_id=s.contact_id)


@celery.task(bind=True, name="app.tasks.dispatch_tasks.resolve_contact_lid", max_retries=None)
def resolve_contact_lid(self, contact_id: str, connection_id: str | None = None) -> dict:
    with SessionLocal() as db:
        out = dispatcher.resolve_contact_lid(db, contact_id, connection_id=connection_id, attempt=self.request.retries)
    if out.status == "RETRY":
        raise self.retry(countdown=out.delay_s)
    return out.as_dict()


@celery.task(bind=True, name="app.tasks.dispatch_tasks.restart_session", max_retries=None)
def restart_session(self, connection_id: str) -> dict:
    with SessionLocal() as db:
        out = dispatcher.restart_session(db, connection_id, attempt=self.request.retries)
    if out.status == "RETRY":
        raise self.retry(countdown=out.delay_s)
    return out.as_dict()
