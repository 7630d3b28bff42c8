from __future__ import annotations

import logging
import random

from sqlalchemy import func, or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.audit import audit
from app.core.config import settings
from app.core.errors import ChannelRequestError, ChannelUnavailableError, TransientChannelError, ValidationFailed, truncate
from app.core.job_queue import JobQueue, get_job_queue
from app.integrations.notify import publish
from app.models.tables import Campaign, CampaignShipment, Contact, Tenant
from app.outbox import state as st
from app.outbox.adapters.registry import get_adapter, is_official
from app.outbox.directory import country_code_for, get_connection
from app.outbox.dispatcher import AdapterFactory, Outcome, deliver, send_item
from app.outbox.recurrence import add_interval, apply_business_day_policy, coerce_unit
from app.outbox.rendering import contact_variables, render_body
from app.schemas.outbound_v1 import MediaPayload, TemplatePayload, TextPayload
from app.util.ids import new_uuid
from app.util.time import as_utc, now_utc

log = logging.getLogger("campaigns")

PREPARE_SHIPMENT = "app.tasks.dispatch_tasks.prepare_shipment"
DISPATCH_SHIPMENT = "app.tasks.dispatch_tasks.dispatch_shipment"

SCHEDULED = "SCHEDULED"
IN_PROGRESS = "IN_PROGRESS"
FINALIZED = "FINALIZED"
CANCELLED = "CANCELLED"


def pacing(db: Session, campaign: Campaign) -> tuple[int, int, int]:
    """(message_interval, longer_interval_after, greater_interval) in seconds."""
    tenant = db.get(Tenant, campaign.tenant_id)
    merged = {**((tenant.settings if tenant else None) or {}), **(campaign.settings or {})}
    return (
        int(merged.get("message_interval", settings.CAMPAIGN_MESSAGE_INTERVAL_S)),
        int(merged.get("longer_interval_after", settings.CAMPAIGN_LONGER_INTERVAL_AFTER)),
        int(merged.get("greater_interval", settings.CAMPAIGN_GREATER_INTERVAL_S)),
    )


def send_delay(index: int, *, message_interval: int, longer_interval_after: int, greater_interval: int) -> int:
    delay = index * message_interval
    if longer_interval_after > 0:
        delay += (index // longer_interval_after) * greater_interval
    return delay


def resolve_audience(db: Session, campaign: Campaign) -> list[Contact]:
    if campaign.contact_ids:
        rows = (
            db.query(Contact)
            .filter(Contact.tenant_id == campaign.tenant_id, Contact.id.in_(list(campaign.contact_ids)))
            .order_by(Contact.created_at.asc())
            .all()
        )
        return rows
    if campaign.tag:
        rows = db.query(Contact).filter(Contact.tenant_id == campaign.tenant_id).order_by(Contact.created_at.asc()).all()
        return [c for c in rows if campaign.tag in (c.tags or [])]
    return []


def process_campaign(db: Session, campaign_id: str, *, queue: JobQueue | None = None) -> dict:
    """Fan a claimed campaign out into one prepare job per contact."""
    queue = queue or get_job_queue()
    c = db.get(Campaign, campaign_id)
    if not c:
        log.warning("campaign %s not found; job dropped", campaign_id)
        return {"status": "MISSING"}
    if c.status != IN_PROGRESS:
        log.info("campaign %s is %s; not processing", campaign_id, c.status)
        return {"status": "SKIPPED", "campaign_status": c.status}

    contacts = resolve_audience(db, c)
    execution = c.execution_count or 0
    c.audience_size = len(contacts)
    c.updated_at = now_utc()
    audit(
        db,
        tenant_id=c.tenant_id,
        event_type="CAMPAIGN_PROCESSING",
        message="campaign fan-out",
        context={"campaign_id": c.id, "audience": len(contacts), "execution": execution},
    )
    db.commit()

    if not contacts:
        return {"status": "EMPTY", "finalize": finalize_campaign(db, campaign_id)}

    interval, after, greater = pacing(db, c)
    enqueued = 0
    for i, contact in enumerate(contacts):
        delay = send_delay(i, message_interval=interval, longer_interval_after=after, greater_interval=greater)
        try:
            queue.add(
                PREPARE_SHIPMENT,
                {"campaign_id": c.id, "contact_id": contact.id, "execution": execution, "delay_s": delay},
            )
            enqueued += 1
        except Exception:
            log.exception("could not enqueue prepare for campaign %s contact %s", c.id, contact.id)

    return {"status": "PROCESSING", "audience": len(contacts), "enqueued": enqueued}


def find_or_create_shipment(
    db: Session, *, campaign: Campaign, contact: Contact, execution: int
) -> tuple[CampaignShipment, bool]:
    """One shipment per (campaign, execution, contact) or (campaign, execution, number)."""
    q = db.query(CampaignShipment).filter(
        CampaignShipment.campaign_id == campaign.id,
        CampaignShipment.execution == execution,
        or_(CampaignShipment.contact_id == contact.id, CampaignShipment.number == contact.number),
    )
    existing = q.first()
    if existing:
        return existing, False

    shipment = CampaignShipment(
        id=new_uuid(),
        tenant_id=campaign.tenant_id,
        campaign_id=campaign.id,
        execution=execution,
        contact_id=contact.id,
        connection_id=campaign.connection_id,
        number=contact.number,
        payload={},
        state=st.PENDING,
        scheduled_at=now_utc(),
        attempts=0,
        created_at=now_utc(),
        updated_at=now_utc(),
    )
    db.add(shipment)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        existing = q.first()
        if existing:
            return existing, False
        raise
    return shipment, True


def pick_message(messages: list[str]) -> str | None:
    options = [m for m in (messages or []) if m and m.strip()]
    return random.choice(options) if options else None


def build_payload(campaign: Campaign, *, body: str | None, official: bool) -> dict:
    if official and campaign.template_name:
        return TemplatePayload(
            name=campaign.template_name,
            language=campaign.template_language or settings.DEFAULT_TEMPLATE_LANGUAGE,
            components=list(campaign.template_components or []),
            variables=dict(campaign.template_variables or {}),
            preview=body,
        ).model_dump()
    if campaign.media_path:
        return MediaPayload(path=campaign.media_path, caption=body, filename=campaign.media_name).model_dump()
    if not body:
        raise ValidationFailed(f"campaign {campaign.id} has no message to send")
    return TextPayload(body=body).model_dump()


def prepare_shipment(
    db: Session,
    *,
    campaign_id: str,
    contact_id: str,
    execution: int,
    delay_s: float = 0,
    queue: JobQueue | None = None,
    adapter_factory: AdapterFactory = get_adapter,
) -> dict:
    queue = queue or get_job_queue()
    c = db.get(Campaign, campaign_id)
    contact = db.get(Contact, contact_id)
    if not c or not contact:
        log.warning("prepare dropped: campaign=%s contact=%s missing", campaign_id, contact_id)
        return {"status": "MISSING"}
    if c.status != IN_PROGRESS:
        return {"status": "SKIPPED", "campaign_status": c.status}

    shipment, created = find_or_create_shipment(db, campaign=c, contact=contact, execution=execution)
    if shipment.delivered_at or shipment.failed_at or shipment.confirmation_requested_at or shipment.state != st.PENDING:
        log.info("shipment %s already handled (state=%s); unchanged", shipment.id, shipment.state)
        return {"status": "EXISTS", "shipment_id": shipment.id}

    variables = contact_variables(contact, shipment.number)

    if c.confirmation and not shipment.confirmed_at:
        return _request_confirmation(db, c, shipment, contact, variables, adapter_factory=adapter_factory)

    body = render_body(pick_message(c.messages) or "", variables) or None
    st.set_fields(db, CampaignShipment, shipment.id, message_body=body)

    if not st.transition(db, CampaignShipment, shipment.id, from_states={st.PENDING}, to_state=st.ENQUEUED):
        return {"status": "EXISTS", "shipment_id": shipment.id}

    job_id = queue.add(DISPATCH_SHIPMENT, {"shipment_id": shipment.id}, delay_s=delay_s)
    st.set_fields(db, CampaignShipment, shipment.id, when_state=st.ENQUEUED, job_id=job_id)
    return {"status": "ENQUEUED", "shipment_id": shipment.id, "job_id": job_id, "created": created}


def abandon_shipment(db: Session, *, campaign_id: str, contact_id: str, execution: int, error: str) -> dict:
    """Out of prepare retries: count the contact as failed so the execution can still finish."""
    db.rollback()
    c = db.get(Campaign, campaign_id)
    contact = db.get(Contact, contact_id)
    if not c or not contact:
        return {"status": "MISSING"}

    shipment, _ = find_or_create_shipment(db, campaign=c, contact=contact, execution=execution)
    _mark_shipment_failed(db, shipment.id, error, code="RETRIES_EXHAUSTED")
    log.error("shipment %s abandoned after prepare retries (campaign=%s): %s", shipment.id, campaign_id, error)
    return {"status": "FAILED", "shipment_id": shipment.id, "finalize": finalize_campaign(db, campaign_id)}


def _request_confirmation(db: Session, c: Campaign, shipment: CampaignShipment, contact: Contact, variables: dict, *, adapter_factory) -> dict:
    text = render_body(pick_message(c.confirmation_messages) or "", variables)
    if not text:
        _mark_shipment_failed(db, shipment.id, "campaign requires confirmation but has no confirmation message", code="CONFIG")
        finalize_campaign(db, c.id)
        return {"status": "FAILED", "shipment_id": shipment.id}

    try:
        conn = get_connection(db, tenant_id=c.tenant_id, connection_id=c.connection_id)
        adapter = adapter_factory(conn, default_country_code=country_code_for(db, c.tenant_id))
        result, _, _ = deliver(adapter, TextPayload(body=text), to=shipment.number, variables=variables)
    except TransientChannelError:
        raise
    except (ChannelUnavailableError, ValidationFailed, ChannelRequestError) as e:
        _mark_shipment_failed(db, shipment.id, str(e), code=type(e).__name__)
        finalize_campaign(db, c.id)
        return {"status": "FAILED", "shipment_id": shipment.id}

    st.set_fields(
        db, CampaignShipment, shipment.id, when_state=st.PENDING,
        confirmation_requested_at=now_utc(), message_body=render_body(pick_message(c.messages) or "", variables) or None,
    )
    log.info("confirmation requested for shipment %s (external=%s)", shipment.id, result.external_id)
    return {"status": "CONFIRMATION_REQUESTED", "shipment_id": shipment.id}


def confirm_shipment(
    db: Session, *, tenant_id: str, shipment_id: str, campaign_id: str | None = None, queue: JobQueue | None = None
) -> dict:
    """Contact replied to the confirmation; queue the real message."""
    queue = queue or get_job_queue()
    s = db.get(CampaignShipment, shipment_id)
    if not s or s.tenant_id != tenant_id or (campaign_id and s.campaign_id != campaign_id):
        return {"status": "MISSING"}
    if not s.confirmation_requested_at or s.confirmed_at:
        return {"status": "SKIPPED", "state": s.state}

    if not st.transition(db, CampaignShipment, s.id, from_states={st.PENDING}, to_state=st.ENQUEUED, confirmed_at=now_utc()):
        return {"status": "SKIPPED"}
    job_id = queue.add(DISPATCH_SHIPMENT, {"shipment_id": s.id})
    st.set_fields(db, CampaignShipment, s.id, when_state=st.ENQUEUED, job_id=job_id)
    return {"status": "ENQUEUED", "job_id": job_id}


def dispatch_shipment(db: Session, shipment_id: str, *, adapter_factory: AdapterFactory = get_adapter) -> Outcome:
    s = db.get(CampaignShipment, shipment_id)
    if not s:
        log.warning("shipment %s not found; job dropped", shipment_id)
        return Outcome(status="MISSING", item_id=shipment_id)
    if s.state != st.ENQUEUED:
        return Outcome(status="SKIPPED", item_id=shipment_id, extra={"state": s.state})

    c = db.get(Campaign, s.campaign_id)
    if c is None or c.status == CANCELLED:
        st.transition(db, CampaignShipment, s.id, from_states={st.ENQUEUED}, to_state=st.CANCELLED, job_id=None)
        return Outcome(status="SKIPPED", item_id=shipment_id, extra={"reason": "campaign_cancelled"})

    if not s.payload:
        try:
            conn = get_connection(db, tenant_id=s.tenant_id, connection_id=s.connection_id or c.connection_id)
            payload = build_payload(c, body=s.message_body, official=is_official(conn))
        except (ChannelUnavailableError, ValidationFailed) as e:
            err = truncate(str(e), settings.ERROR_TEXT_MAX)
            st.transition(
                db, CampaignShipment, s.id, from_states={st.ENQUEUED}, to_state=st.FAILED,
                last_error=err, error_message=err, error_code=type(e).__name__[:50], failed_at=now_utc(), job_id=None,
            )
            finalize_campaign(db, c.id)
            return Outcome(status="FAILED", item_id=s.id, error=str(e))
        st.set_fields(db, CampaignShipment, s.id, payload=payload)
        db.refresh(s)

    contact = db.get(Contact, s.contact_id) if s.contact_id else None
    out = send_item(
        db,
        CampaignShipment,
        s,
        source_type="campaign_shipment",
        contact=contact,
        connection_id=s.connection_id or c.connection_id,
        adapter_factory=adapter_factory,
    )

    if out.status == "SENT":
        _mark_shipment_delivered(db, s.id)
        finalize_campaign(db, c.id)
    elif out.status == "FAILED":
        # send_item already set state and failed_at
        st.set_fields(db, CampaignShipment, s.id, error_message=out.error, error_code="DISPATCH")
        finalize_campaign(db, c.id)
    return out


def _mark_shipment_delivered(db: Session, shipment_id: str) -> bool:
    res = db.execute(
        update(CampaignShipment)
        .where(
            CampaignShipment.id == shipment_id,
            CampaignShipment.delivered_at.is_(None),
            CampaignShipment.failed_at.is_(None),
        )
        .values(delivered_at=now_utc(), updated_at=now_utc())
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return res.rowcount == 1


def _mark_shipment_failed(db: Session, shipment_id: str, error: str, *, code: str | None = None) -> bool:
    """failed_at is only set while neither terminal marker is."""
    res = db.execute(
        update(CampaignShipment)
        .where(
            CampaignShipment.id == shipment_id,
            CampaignShipment.delivered_at.is_(None),
            CampaignShipment.failed_at.is_(None),
        )
        .values(
            state=st.FAILED,
            failed_at=now_utc(),
            error_message=truncate(error, settings.ERROR_TEXT_MAX),
            error_code=(code or "")[:50] or None,
            updated_at=now_utc(),
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return res.rowcount == 1


def processed_count(db: Session, campaign_id: str, execution: int) -> int:
    return (
        db.query(func.count(CampaignShipment.id))
        .filter(
            CampaignShipment.campaign_id == campaign_id,
            CampaignShipment.execution == execution,
            or_(CampaignShipment.delivered_at.isnot(None), CampaignShipment.failed_at.isnot(None)),
        )
        .scalar()
        or 0
    )


def finalize_campaign(db: Session, campaign_id: str) -> str:
    """Finalize or reschedule once every contact of this execution is processed.

    Safe to call repeatedly from success and failure paths: the status/execution
    compare-and-set lets exactly one caller win.
    Returns NOOP | NOT_READY | FINALIZED | RESCHEDULED.
    """
    c = db.get(Campaign, campaign_id)
    if not c or c.status != IN_PROGRESS:
        return "NOOP"

    execution = c.execution_count or 0
    processed = processed_count(db, campaign_id, execution)
    if processed < (c.audience_size or 0):
        return "NOT_READY"

    base = update(Campaign).where(
        Campaign.id == campaign_id,
        Campaign.status == IN_PROGRESS,
        Campaign.execution_count == execution,
    )

    executions_done = execution + 1
    unit = coerce_unit(c.interval_unit)
    more = c.is_recurring and unit and (c.interval_value or 0) > 0 and (
        c.max_executions is None or executions_done < c.max_executions
    )

    if more:
        previous_due = as_utc(c.next_scheduled_at or c.scheduled_at)
        nxt = apply_business_day_policy(add_interval(previous_due, unit, c.interval_value), c.business_day_policy or "as_is")
        res = db.execute(
            base.values(
                status=SCHEDULED,
                execution_count=executions_done,
                next_scheduled_at=nxt,
                job_id=None,
                updated_at=now_utc(),
            ).execution_options(synchronize_session=False)
        )
        outcome = "RESCHEDULED"
        context = {"campaign_id": campaign_id, "execution": executions_done, "next_scheduled_at": nxt.isoformat()}
    else:
        res = db.execute(
            base.values(
                status=FINALIZED,
                execution_count=executions_done,
                completed_at=now_utc(),
                job_id=None,
                updated_at=now_utc(),
            ).execution_options(synchronize_session=False)
        )
        outcome = "FINALIZED"
        context = {"campaign_id": campaign_id, "execution": executions_done, "processed": processed}

    if res.rowcount != 1:
        db.rollback()
        return "NOOP"

    audit(db, tenant_id=c.tenant_id, event_type=f"CAMPAIGN_{outcome}", message=outcome.lower(), context=context)
    db.commit()
    publish(f"{c.tenant_id}:campaign", outcome.lower(), context)
    log.info("campaign %s %s (processed=%s audience=%s)", campaign_id, outcome.lower(), processed, c.audience_size)
    return outcome
