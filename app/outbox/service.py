from __future__ import annotations

import logging
from dataclasses import asdict, dataclass

from pydantic import ValidationError
from sqlalchemy import or_, update
from sqlalchemy.orm import Session

from app.core.audit import audit
from app.core.errors import ValidationFailed
from app.core.job_queue import ACTIVE_STATES, FAILED_STATES, WAITING_STATES, JobQueue, get_job_queue
from app.models.tables import Campaign, CampaignShipment, Contact, FailedMessage, Reminder, Schedule
from app.outbox import state as st
from app.outbox.campaigns import CANCELLED as CAMPAIGN_CANCELLED
from app.outbox.campaigns import IN_PROGRESS, SCHEDULED
from app.outbox.directory import country_code_for, find_or_create_contact
from app.outbox.reconciler import report_delivery_status
from app.schemas.outbound_v1 import ScheduleIn, TextPayload
from app.util.ids import new_uuid
from app.util.phone import is_group_jid, normalize_phone
from app.util.time import as_utc, now_utc

__all__ = [
    "CancelReport",
    "schedule_outbound_item",
    "cancel_outbound_item",
    "retry_failed_item",
    "list_schedules",
    "report_delivery_status",
]

log = logging.getLogger("outbox.service")

CANCELLABLE = {st.PENDING, st.ENQUEUED}


@dataclass
class CancelReport:
    removed: int = 0
    active: int = 0
    failed: int = 0
    total_pending: int = 0

    def as_dict(self) -> dict:
        return asdict(self)


def _validate(item: ScheduleIn | dict) -> ScheduleIn:
    if isinstance(item, ScheduleIn):
        return item
    try:
        return ScheduleIn.model_validate(item)
    except ValidationError as e:
        errors = [{"loc": list(x.get("loc", ())), "msg": x.get("msg")} for x in e.errors()]
        raise ValidationFailed("invalid schedule", detail={"errors": errors}) from e


def _resolve_contact(db: Session, tenant_id: str, data: ScheduleIn) -> Contact:
    if data.contact_id:
        contact = db.get(Contact, data.contact_id)
        if not contact or contact.tenant_id != tenant_id:
            raise ValidationFailed(f"contact {data.contact_id} not found", detail={"contact_id": data.contact_id})
        return contact

    raw = data.number or ""
    number = raw if is_group_jid(raw) else normalize_phone(raw, default_country_code=country_code_for(db, tenant_id))
    return find_or_create_contact(db, tenant_id=tenant_id, number=number)


def schedule_outbound_item(db: Session, tenant_id: str, user_id: str | None, item: ScheduleIn | dict) -> str:
    """Create or update a schedule (and its reminder). Returns the schedule id.

    Bad input raises ValidationFailed before anything is stored. Past due
    times are moved to now so the next verifier tick picks them up.
    """
    data = _validate(item)
    contact = _resolve_contact(db, tenant_id, data)
    now = now_utc()
    scheduled_at = max(as_utc(data.scheduled_at), now)
    payload = data.payload.model_dump()

    fields = dict(
        contact_id=contact.id,
        connection_id=data.connection_id,
        payload=payload,
        scheduled_at=scheduled_at,
        interval_unit=data.interval_unit,
        interval_value=data.interval_value,
        max_occurrences=data.max_occurrences,
        business_day_policy=data.business_day_policy,
        open_ticket=data.open_ticket,
        ticket_status=data.ticket_status,
    )

    if data.id:
        s = db.get(Schedule, data.id)
        if not s or s.tenant_id != tenant_id:
            raise ValidationFailed(f"schedule {data.id} not found", detail={"schedule_id": data.id})
        # edits race the verifier; only a row still PENDING takes them
        if not st.set_fields(db, Schedule, s.id, when_state=st.PENDING, **fields):
            raise ValidationFailed(
                f"schedule {s.id} is {s.state}; only pending schedules can be edited",
                detail={"schedule_id": s.id, "state": s.state},
            )
        schedule_id, event = s.id, "SCHEDULE_UPDATED"
    else:
        schedule_id = new_uuid()
        db.add(
            Schedule(
                id=schedule_id,
                tenant_id=tenant_id,
                user_id=user_id,
                state=st.PENDING,
                occurrence_count=1,
                series_id=schedule_id,
                attempts=0,
                created_at=now,
                updated_at=now,
                **fields,
            )
        )
        db.commit()
        event = "SCHEDULE_CREATED"

    _sync_reminder(db, tenant_id, schedule_id, contact, data)

    audit(
        db,
        tenant_id=tenant_id,
        user_id=user_id,
        event_type=event,
        message=event.lower(),
        context={"schedule_id": schedule_id, "scheduled_at": scheduled_at.isoformat(), "kind": payload.get("kind")},
    )
    db.commit()
    log.info("%s %s for %s at %s (tenant=%s)", event.lower(), schedule_id, contact.number, scheduled_at.isoformat(), tenant_id)
    return schedule_id


def _sync_reminder(db: Session, tenant_id: str, schedule_id: str, contact: Contact, data: ScheduleIn) -> None:
    existing = db.query(Reminder).filter(Reminder.schedule_id == schedule_id).one_or_none()

    if data.reminder is None:
        if existing:
            st.transition(db, Reminder, existing.id, from_states={st.PENDING}, to_state=st.CANCELLED)
        return

    values = dict(
        contact_id=contact.id,
        connection_id=data.connection_id,
        payload=TextPayload(body=data.reminder.body).model_dump(),
        scheduled_at=max(as_utc(data.reminder.scheduled_at), now_utc()),
    )
    if existing:
        # a reminder already sent or cancelled stays as it is
        st.set_fields(db, Reminder, existing.id, when_state=st.PENDING, **values)
        return

    db.add(
        Reminder(
            id=new_uuid(),
            tenant_id=tenant_id,
            schedule_id=schedule_id,
            state=st.PENDING,
            attempts=0,
            created_at=now_utc(),
            updated_at=now_utc(),
            **values,
        )
    )
    db.commit()


def _cancel_rows(db: Session, model, rows, report: CancelReport, queue: JobQueue) -> None:
    """Cancel each row with a guarded update, then settle its queued job."""
    for row in rows:
        job_id = row.job_id
        if not st.transition(db, model, row.id, from_states=CANCELLABLE, to_state=st.CANCELLED, job_id=None):
            continue
        report.total_pending += 1

        if not job_id:
            # never reached the queue
            report.removed += 1
            continue

        try:
            job_state = queue.state(job_id)
            if job_state in WAITING_STATES:
                queue.remove(job_id)
                report.removed += 1
            elif job_state in ACTIVE_STATES:
                # runs to completion; the dispatcher sees CANCELLED and stops there
                report.active += 1
            elif job_state in FAILED_STATES:
                report.failed += 1
            else:
                report.removed += 1
        except Exception:
            log.exception("could not settle job %s of %s %s", job_id, model.__tablename__, row.id)
            report.failed += 1


def cancel_outbound_item(
    db: Session,
    tenant_id: str,
    item_id: str,
    kind: str = "schedule",
    *,
    user_id: str | None = None,
    queue: JobQueue | None = None,
) -> CancelReport | None:
    """Cancel a schedule series or a campaign. None when the item does not exist."""
    queue = queue or get_job_queue()
    report = CancelReport()

    if kind == "campaign":
        c = db.get(Campaign, item_id)
        if not c or c.tenant_id != tenant_id:
            return None
        job_id = c.job_id
        if st.transition(
            db, Campaign, c.id, from_states={SCHEDULED, IN_PROGRESS}, to_state=CAMPAIGN_CANCELLED, field="status", job_id=None
        ) and job_id:
            try:
                if queue.state(job_id) in WAITING_STATES:
                    queue.remove(job_id)
            except Exception:
                log.exception("could not revoke job %s of campaign %s", job_id, c.id)
        shipments = (
            db.query(CampaignShipment)
            .filter(CampaignShipment.campaign_id == c.id, CampaignShipment.state.in_(list(CANCELLABLE)))
            .all()
        )
        _cancel_rows(db, CampaignShipment, shipments, report, queue)
    elif kind == "schedule":
        s = db.get(Schedule, item_id)
        if not s or s.tenant_id != tenant_id:
            return None
        series_id = s.series_id or s.id
        schedules = (
            db.query(Schedule)
            .filter(
                Schedule.tenant_id == tenant_id,
                or_(Schedule.id == s.id, Schedule.series_id == series_id),
                Schedule.state.in_(list(CANCELLABLE)),
            )
            .all()
        )
        reminders = (
            db.query(Reminder)
            .filter(Reminder.schedule_id.in_([x.id for x in schedules] or [s.id]), Reminder.state.in_(list(CANCELLABLE)))
            .all()
        )
        _cancel_rows(db, Reminder, reminders, report, queue)
        _cancel_rows(db, Schedule, schedules, report, queue)
    else:
        raise ValidationFailed(f"unknown item kind: {kind}")

    audit(
        db,
        tenant_id=tenant_id,
        user_id=user_id,
        event_type=f"{kind.upper()}_CANCELLED",
        message="cancelled",
        context={"item_id": item_id, **report.as_dict()},
    )
    db.commit()
    log.info("%s %s cancelled (tenant=%s): %s", kind, item_id, tenant_id, report.as_dict())
    return report


def retry_failed_item(db: Session, tenant_id: str, schedule_id: str, *, user_id: str | None = None) -> bool:
    """Put a FAILED schedule back to PENDING for the next verifier tick."""
    s = db.get(Schedule, schedule_id)
    if not s or s.tenant_id != tenant_id:
        return False

    moved = st.transition(
        db,
        Schedule,
        s.id,
        from_states={st.FAILED},
        to_state=st.PENDING,
        scheduled_at=max(as_utc(s.scheduled_at), now_utc()),
        attempts=0,
        last_error=None,
        failed_at=None,
        sent_at=None,
        external_message_id=None,
        job_id=None,
    )
    if not moved:
        return False

    db.execute(
        update(FailedMessage)
        .where(FailedMessage.source_id == s.id, FailedMessage.status == "PENDING")
        .values(status="RESOLVED")
        .execution_options(synchronize_session=False)
    )
    audit(db, tenant_id=tenant_id, user_id=user_id, event_type="SCHEDULE_RETRIED", message="retry requested", context={"schedule_id": s.id})
    db.commit()
    return True


def list_schedules(db: Session, tenant_id: str, *, state: str | None = None, limit: int = 100) -> list[Schedule]:
    q = db.query(Schedule).filter(Schedule.tenant_id == tenant_id)
    if state:
        q = q.filter(Schedule.state == state)
    return q.order_by(Schedule.scheduled_at.asc()).limit(limit).all()
