from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable

from pydantic import TypeAdapter, ValidationError
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.audit import audit
from app.core.config import settings
from app.core.errors import (
    ChannelRequestError,
    ChannelUnavailableError,
    DispatchError,
    OutsideServiceWindow,
    SessionRestartRequired,
    TransientChannelError,
    ValidationFailed,
    truncate,
)
from app.integrations.notify import publish
from app.models.tables import Connection, Contact, Reminder, Schedule
from app.outbox import state as st
from app.outbox.adapters.base import ChannelAdapter, SendResult
from app.outbox.adapters.registry import get_adapter, is_official
from app.outbox.directory import country_code_for, find_or_create_open_ticket, get_connection, within_service_window
from app.outbox.reconciler import sync_item_state
from app.outbox.recurrence import next_occurrence
from app.outbox.rendering import build_template_components, contact_variables, media_kind_for, render_body
from app.outbox.retry import (
    LID_LOOKUP_RETRY,
    LID_RETRY_DISCONNECTED_DELAY,
    SESSION_RESTART_RETRY,
    TRANSPORT_RETRY,
    RetryPolicy,
)
from app.schemas.outbound_v1 import MediaPayload, OutboundPayload, TemplatePayload, TextPayload
from app.util.ids import new_uuid
from app.util.time import as_utc, now_utc

log = logging.getLogger("dispatch")

payload_adapter = TypeAdapter(OutboundPayload)

AdapterFactory = Callable[..., ChannelAdapter]


@dataclass
class Outcome:
    status: str  # SENT | FAILED | RETRY | SKIPPED | MISSING | DONE
    item_id: str
    external_id: str | None = None
    error: str | None = None
    delay_s: float = 0.0
    attempt: int = 0
    successor_id: str | None = None
    connection_id: str | None = None
    restart_required: bool = False
    extra: dict = field(default_factory=dict)

    def as_dict(self) -> dict:
        out = {"status": self.status, "item_id": self.item_id}
        for k in ("external_id", "error", "successor_id", "connection_id"):
            v = getattr(self, k)
            if v:
                out[k] = v
        if self.status == "RETRY":
            out["delay_s"] = self.delay_s
            out["attempt"] = self.attempt
        if self.restart_required:
            out["restart_required"] = True
        return out


def deliver(adapter: ChannelAdapter, payload, *, to: str, variables: dict) -> tuple[SendResult, str, str]:
    """Send one payload through the adapter. Returns (result, ledger body, message type)."""
    if isinstance(payload, TextPayload):
        body = render_body(payload.body, variables)
        return adapter.send_text(to=to, body=body), body, "text"

    if isinstance(payload, MediaPayload):
        kind = payload.media_type or media_kind_for(payload.path)
        caption = render_body(payload.caption, variables) if payload.caption else None
        res = adapter.send_media(to=to, media_type=kind, file=payload.path, caption=caption, filename=payload.filename)
        return res, caption or payload.filename or payload.path, kind

    if isinstance(payload, TemplatePayload):
        components = build_template_components(payload.components, payload.variables, context=variables)
        res = adapter.send_template(to=to, name=payload.name, language=payload.language, components=components)
        return res, render_body(payload.preview or payload.name, variables), "template"

    raise ValidationFailed(f"unsupported payload: {type(payload).__name__}")


def _load_payload(raw: dict):
    try:
        return payload_adapter.validate_python(raw or {})
    except ValidationError as e:
        raise ValidationFailed(f"invalid payload: {e.errors()[:3]}") from e


def send_item(
    db: Session,
    model,
    item,
    *,
    source_type: str,
    contact: Contact | None,
    connection_id: str | None,
    open_ticket: bool = False,
    ticket_status: str = "open",
    adapter_factory: AdapterFactory = get_adapter,
    policy: RetryPolicy = TRANSPORT_RETRY,
) -> Outcome:
    """Shared send path for schedules, reminders and campaign shipments.

    The item must be ENQUEUED; every state change goes through a compare-and-set.
    """
    tenant_id = item.tenant_id
    ctx = {"tenant_id": tenant_id, "item_id": item.id, "source": source_type, "attempt": item.attempts}
    conn: Connection | None = None

    if item.external_message_id:
        # sent by an earlier run that died before marking it SENT; never send twice
        log.warning("%s %s already sent as %s; completing without resend", source_type, item.id, item.external_message_id)
        try:
            conn = get_connection(db, tenant_id=tenant_id, connection_id=connection_id)
        except ChannelUnavailableError:
            conn = None
        return _complete_sent(
            db, model, item, external_id=item.external_message_id, status="recovered", source_type=source_type,
            contact=contact, connection=conn, body=None, message_type=None, ctx=ctx,
        )

    try:
        if not contact:
            raise ValidationFailed("item has no contact")

        conn = get_connection(db, tenant_id=tenant_id, connection_id=connection_id)
        adapter = adapter_factory(conn, default_country_code=country_code_for(db, tenant_id))
        payload = _load_payload(item.payload)

        if is_official(conn) and not isinstance(payload, TemplatePayload) and not within_service_window(contact):
            raise OutsideServiceWindow("outside the 24h service window; only templates can be sent")

        if open_ticket:
            find_or_create_open_ticket(db, contact=contact, connection=conn, status=ticket_status)

        audit(db, tenant_id=tenant_id, event_type="DISPATCH_ATTEMPT", message="dispatch_attempt", context={**ctx, "connection_id": conn.id})
        db.commit()

        result, body, message_type = deliver(adapter, payload, to=contact.number, variables=contact_variables(contact))

    except TransientChannelError as e:
        return _transient_failure(db, model, item, e, ctx=ctx, policy=policy, connection=conn)
    except (ChannelUnavailableError, ValidationFailed, ChannelRequestError) as e:
        out = _terminal_failure(db, model, item, e, ctx=ctx, source_type=source_type, contact=contact, connection=conn)
        out.restart_required = isinstance(e, SessionRestartRequired)
        return out
    except Exception as e:
        db.rollback()
        log.exception("dispatch crashed for %s %s (tenant=%s)", source_type, item.id, tenant_id)
        _terminal_failure(db, model, item, e, ctx=ctx, source_type=source_type, contact=contact, connection=conn)
        raise

    # the provider id lands on the item first so a replay after a crash never sends again
    st.set_fields(db, model, item.id, when_state=st.ENQUEUED, external_message_id=result.external_id)
    return _complete_sent(
        db, model, item, external_id=result.external_id, status=result.status.lower(), source_type=source_type,
        contact=contact, connection=conn, body=body, message_type=message_type, ctx=ctx,
    )


def _complete_sent(
    db: Session,
    model,
    item,
    *,
    external_id: str,
    status: str,
    source_type: str,
    contact: Contact | None,
    connection: Connection | None,
    body: str | None,
    message_type: str | None,
    ctx: dict,
) -> Outcome:
    """Ledger row, SENT transition, audit and fan-out for an item the provider accepted."""
    tenant_id = item.tenant_id
    conn_id = getattr(connection, "id", None)
    channel = ("official" if is_official(connection) else "session") if connection else None
    msg = st.record_sent_message(
        db,
        tenant_id=tenant_id,
        external_message_id=external_id,
        source_type=source_type,
        source_id=item.id,
        to_number=getattr(contact, "number", None) or "",
        channel=channel or "session",
        body=body,
    )

    moved = st.transition(
        db,
        model,
        item.id,
        from_states={st.ENQUEUED},
        to_state=st.SENT,
        external_message_id=external_id,
        sent_at=now_utc(),
        job_id=None,
        last_error=None,
    )
    if not moved:
        # cancelled while the send was in flight; the message is out, nothing else happens
        log.warning("%s %s left ENQUEUED during send; not marking SENT (tenant=%s)", source_type, item.id, tenant_id)
        return Outcome(status="SKIPPED", item_id=item.id, external_id=external_id, connection_id=conn_id)

    audit(
        db,
        tenant_id=tenant_id,
        event_type="DISPATCH_SENT",
        message=status,
        context={**ctx, "external_id": external_id, "channel": channel, "message_type": message_type},
    )
    sync_item_state(db, msg)
    db.commit()
    publish(f"{tenant_id}:{source_type}", "sent", {"id": item.id, "external_id": external_id})

    return Outcome(status="SENT", item_id=item.id, external_id=external_id, connection_id=conn_id)


def _transient_failure(db: Session, model, item, e: DispatchError, *, ctx: dict, policy: RetryPolicy, connection) -> Outcome:
    db.rollback()
    attempts = (item.attempts or 0) + 1
    err = truncate(str(e), settings.ERROR_TEXT_MAX)
    decision = policy.decide(attempts - 1)

    if decision.abandoned:
        log.error("transport retries exhausted for %s (attempts=%s): %s", ctx, attempts, err)
        st.transition(
            db, model, item.id, from_states={st.ENQUEUED}, to_state=st.FAILED,
            attempts=attempts, last_error=err, failed_at=now_utc(), job_id=None,
        )
        audit(db, tenant_id=item.tenant_id, event_type="DISPATCH_FAILED", severity="ERROR", message=err, context={**ctx, "attempts": attempts, "detail": e.detail})
        db.commit()
        return Outcome(status="FAILED", item_id=item.id, error=err, attempt=attempts, connection_id=getattr(connection, "id", None))

    log.warning("transient failure for %s (attempt %s/%s), retry in %ss: %s", ctx, attempts, policy.max_attempts, decision.delay_seconds, err)
    st.set_fields(db, model, item.id, when_state=st.ENQUEUED, attempts=attempts, last_error=err)
    return Outcome(
        status="RETRY",
        item_id=item.id,
        error=err,
        delay_s=decision.delay_seconds,
        attempt=attempts,
        connection_id=getattr(connection, "id", None),
    )


def _terminal_failure(db: Session, model, item, e: Exception, *, ctx: dict, source_type: str, contact, connection) -> Outcome:
    db.rollback()
    err = truncate(str(e) or type(e).__name__, settings.ERROR_TEXT_MAX)
    detail = getattr(e, "detail", {}) or {}
    log.error("dispatch failed for %s: %s: %s", ctx, type(e).__name__, err)

    moved = st.transition(
        db, model, item.id, from_states={st.ENQUEUED}, to_state=st.FAILED,
        last_error=err, failed_at=now_utc(), job_id=None,
    )
    if moved:
        payload = item.payload or {}
        st.record_failed_message(
            db,
            tenant_id=item.tenant_id,
            source_type=source_type,
            source_id=item.id,
            error=err,
            to_number=getattr(contact, "number", None),
            channel=("official" if is_official(connection) else "session") if connection else None,
            message_type=payload.get("kind"),
            body=payload.get("body") or payload.get("caption") or payload.get("name"),
            raw_data={"error_type": type(e).__name__, **detail},
        )
        audit(db, tenant_id=item.tenant_id, event_type="DISPATCH_FAILED", severity="ERROR", message=err, context={**ctx, "error_type": type(e).__name__})
        db.commit()
        publish(f"{item.tenant_id}:{source_type}", "failed", {"id": item.id, "error": err})

    return Outcome(status="FAILED", item_id=item.id, error=err, connection_id=getattr(connection, "id", None))


def send_schedule(db: Session, schedule_id: str, *, adapter_factory: AdapterFactory = get_adapter) -> Outcome:
    item = db.get(Schedule, schedule_id)
    if not item:
        log.warning("schedule %s not found; job dropped", schedule_id)
        return Outcome(status="MISSING", item_id=schedule_id)

    if item.state != st.ENQUEUED:
        log.info("schedule %s is %s; nothing to send", schedule_id, item.state)
        return Outcome(status="SKIPPED", item_id=schedule_id, extra={"state": item.state})

    contact = db.get(Contact, item.contact_id) if item.contact_id else None
    out = send_item(
        db,
        Schedule,
        item,
        source_type="schedule",
        contact=contact,
        connection_id=item.connection_id,
        open_ticket=item.open_ticket,
        ticket_status=item.ticket_status,
        adapter_factory=adapter_factory,
    )

    if out.status == "SENT":
        db.refresh(item)
        out.successor_id = schedule_next_occurrence(db, item)
    return out


def schedule_next_occurrence(db: Session, item: Schedule) -> str | None:
    """Clone the successor occurrence, or mark the series complete."""
    due = next_occurrence(
        as_utc(item.scheduled_at),
        unit=item.interval_unit,
        value=item.interval_value or 0,
        occurrence_count=item.occurrence_count or 1,
        max_occurrences=item.max_occurrences or 1,
        policy=item.business_day_policy or "as_is",
    )
    if due is None:
        st.set_fields(db, Schedule, item.id, completed_at=now_utc())
        return None

    existing = db.query(Schedule).filter(Schedule.previous_id == item.id).one_or_none()
    if existing:
        return existing.id

    nxt = Schedule(
        id=new_uuid(),
        tenant_id=item.tenant_id,
        contact_id=item.contact_id,
        connection_id=item.connection_id,
        user_id=item.user_id,
        payload=dict(item.payload or {}),
        state=st.PENDING,
        scheduled_at=due,
        interval_unit=item.interval_unit,
        interval_value=item.interval_value,
        max_occurrences=item.max_occurrences,
        occurrence_count=(item.occurrence_count or 1) + 1,
        business_day_policy=item.business_day_policy,
        series_id=item.series_id or item.id,
        previous_id=item.id,
        open_ticket=item.open_ticket,
        ticket_status=item.ticket_status,
        attempts=0,
        created_at=now_utc(),
        updated_at=now_utc(),
    )
    db.add(nxt)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        existing = db.query(Schedule).filter(Schedule.previous_id == item.id).one_or_none()
        if existing:
            return existing.id
        raise

    reminder = db.query(Reminder).filter(Reminder.schedule_id == item.id).one_or_none()
    if reminder:
        lead = as_utc(item.scheduled_at) - as_utc(reminder.scheduled_at)
        db.add(
            Reminder(
                id=new_uuid(),
                tenant_id=item.tenant_id,
                schedule_id=nxt.id,
                contact_id=reminder.contact_id,
                connection_id=reminder.connection_id,
                payload=dict(reminder.payload or {}),
                state=st.PENDING,
                scheduled_at=due - lead,
                attempts=0,
                created_at=now_utc(),
                updated_at=now_utc(),
            )
        )
        db.commit()

    audit(
        db,
        tenant_id=item.tenant_id,
        event_type="SCHEDULE_RECURRED",
        message="next occurrence created",
        context={"previous_id": item.id, "schedule_id": nxt.id, "scheduled_at": due.isoformat(), "occurrence": nxt.occurrence_count},
    )
    db.commit()
    log.info("schedule %s recurs as %s at %s (occurrence %s/%s)", item.id, nxt.id, due.isoformat(), nxt.occurrence_count, nxt.max_occurrences)
    return nxt.id


def send_reminder(db: Session, reminder_id: str, *, adapter_factory: AdapterFactory = get_adapter) -> Outcome:
    item = db.get(Reminder, reminder_id)
    if not item:
        log.warning("reminder %s not found; job dropped", reminder_id)
        return Outcome(status="MISSING", item_id=reminder_id)

    if item.state != st.ENQUEUED:
        return Outcome(status="SKIPPED", item_id=reminder_id, extra={"state": item.state})

    schedule = db.get(Schedule, item.schedule_id)
    if schedule is None or schedule.state == st.CANCELLED:
        st.transition(db, Reminder, item.id, from_states={st.ENQUEUED}, to_state=st.CANCELLED, job_id=None)
        return Outcome(status="SKIPPED", item_id=reminder_id, extra={"reason": "schedule_cancelled"})

    contact_id = item.contact_id or schedule.contact_id
    contact = db.get(Contact, contact_id) if contact_id else None
    return send_item(
        db,
        Reminder,
        item,
        source_type="reminder",
        contact=contact,
        connection_id=item.connection_id or schedule.connection_id,
        adapter_factory=adapter_factory,
    )


def resolve_contact_lid(
    db: Session,
    contact_id: str,
    *,
    connection_id: str | None = None,
    attempt: int = 0,
    adapter_factory: AdapterFactory = get_adapter,
) -> Outcome:
    """Look up the contact's alternate identifier on the session channel.

    An unavailable session waits a fixed delay instead of the backoff curve.
    """
    contact = db.get(Contact, contact_id)
    if not contact:
        return Outcome(status="MISSING", item_id=contact_id)
    if contact.lid:
        return Outcome(status="SKIPPED", item_id=contact_id, extra={"lid": contact.lid})

    conn = None
    try:
        conn = get_connection(db, tenant_id=contact.tenant_id, connection_id=connection_id)
        if is_official(conn):
            return Outcome(status="SKIPPED", item_id=contact_id, extra={"reason": "official_channel"})
        adapter = adapter_factory(conn, default_country_code=country_code_for(db, contact.tenant_id))
        lid = adapter.lookup_lid(contact.number)
    except (ChannelUnavailableError, TransientChannelError) as e:
        decision = LID_LOOKUP_RETRY.decide(attempt)
        if decision.abandoned:
            log.error("lid lookup for contact %s abandoned after %s attempts: %s", contact_id, attempt, e)
            return Outcome(status="FAILED", item_id=contact_id, error=str(e), attempt=attempt)
        delay = LID_RETRY_DISCONNECTED_DELAY if isinstance(e, ChannelUnavailableError) else decision.delay_seconds
        log.warning("lid lookup for contact %s failed (attempt %s), retry in %ss: %s", contact_id, decision.attempt, delay, e)
        return Outcome(
            status="RETRY",
            item_id=contact_id,
            error=str(e),
            delay_s=delay,
            attempt=decision.attempt,
            connection_id=getattr(conn, "id", None),
        )
    except (ValidationFailed, ChannelRequestError) as e:
        log.warning("lid lookup for contact %s rejected: %s", contact_id, e)
        return Outcome(status="FAILED", item_id=contact_id, error=str(e))

    if lid:
        st.set_fields(db, Contact, contact.id, lid=lid)
    return Outcome(status="DONE", item_id=contact_id, connection_id=conn.id, extra={"lid": lid})


def restart_session(
    db: Session, connection_id: str, *, attempt: int = 0, adapter_factory: AdapterFactory = get_adapter
) -> Outcome:
    """Ask the gateway to restart a session; gives up by marking it DISCONNECTED."""
    conn = db.get(Connection, connection_id)
    if not conn:
        return Outcome(status="MISSING", item_id=connection_id)
    if is_official(conn):
        return Outcome(status="SKIPPED", item_id=connection_id, extra={"reason": "official_channel"})

    try:
        adapter_factory(conn, default_country_code=country_code_for(db, conn.tenant_id)).restart()
    except DispatchError as e:
        decision = SESSION_RESTART_RETRY.decide(attempt)
        if decision.abandoned:
            conn.status = "DISCONNECTED"
            audit(
                db,
                tenant_id=conn.tenant_id,
                event_type="SESSION_DISCONNECTED",
                severity="ERROR",
                message="session restart abandoned",
                context={"connection_id": conn.id, "attempts": attempt, "error": truncate(str(e), settings.ERROR_TEXT_MAX)},
            )
            db.commit()
            publish(f"{conn.tenant_id}:connection", "disconnected", {"id": conn.id})
            log.error("session %s restart abandoned after %s attempts; marked DISCONNECTED", conn.id, attempt)
            return Outcome(status="FAILED", item_id=connection_id, error=str(e), attempt=attempt, connection_id=conn.id)
        log.warning("session %s restart failed (attempt %s), retry in %ss: %s", conn.id, decision.attempt, decision.delay_seconds, e)
        return Outcome(
            status="RETRY",
            item_id=connection_id,
            error=str(e),
            delay_s=decision.delay_seconds,
            attempt=decision.attempt,
            connection_id=conn.id,
        )

    log.info("session %s restart requested", conn.id)
    return Outcome(status="DONE", item_id=connection_id, connection_id=conn.id)
