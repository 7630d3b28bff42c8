from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import update
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.errors import truncate
from app.integrations.notify import publish
from app.models.tables import CampaignShipment, Message, Reminder, Schedule
from app.outbox import state as st
from app.schemas.outbound_v1 import StatusEvent
from app.util.time import now_utc

log = logging.getLogger("reconciler")

ACK_BY_STATUS = {"sent": st.ACK_SENT, "delivered": st.ACK_DELIVERED, "read": st.ACK_READ}
FAILURE_STATUSES = {"failed", "undelivered"}

_SOURCE_MODELS = {"schedule": Schedule, "reminder": Reminder, "campaign_shipment": CampaignShipment}

# Item state reached at each ack level, and the states it may come from.
# ENQUEUED items belong to the dispatcher; it calls sync_item_state once it marks them SENT.
_ITEM_STEPS = {
    st.ACK_DELIVERED: (st.DELIVERED, {st.SENT}),
    st.ACK_READ: (st.READ, {st.SENT, st.DELIVERED}),
}
_TIMESTAMP_FOR = {st.DELIVERED: "delivered_at", st.READ: "read_at"}

FALLBACK_ERROR = "Delivery failed"


def extract_error(error: Any) -> tuple[str, str]:
    """(message, code) from the provider error shapes we have seen.

    Checked in order: error.error_data.details, error.message, error.title,
    a bare string; a list of errors uses its first element.
    """
    if isinstance(error, list):
        error = error[0] if error else None
    if isinstance(error, str):
        return (error.strip() or FALLBACK_ERROR), "UNKNOWN"
    if not isinstance(error, dict):
        return FALLBACK_ERROR, "UNKNOWN"

    data = error.get("error_data")
    details = data.get("details") if isinstance(data, dict) else None
    message = details or error.get("message") or error.get("title") or FALLBACK_ERROR
    code = error.get("code")
    return str(message), (str(code) if code not in (None, "") else "UNKNOWN")


def report_delivery_status(db: Session, event: StatusEvent | dict) -> str:
    """Apply one status callback. Idempotent; safe under at-least-once delivery.

    Returns NOT_FOUND | ACK_UPDATED | ACK_IGNORED | FAILURE_RECORDED.
    """
    if isinstance(event, dict):
        event = StatusEvent.model_validate(event)

    msg = (
        db.query(Message)
        .filter(Message.external_message_id == event.external_message_id, Message.tenant_id == event.tenant_id)
        .one_or_none()
    )
    if not msg:
        log.info("status %s for unknown message %s (tenant=%s); dropped", event.status, event.external_message_id, event.tenant_id)
        return "NOT_FOUND"

    if event.status in FAILURE_STATUSES:
        return _record_failure(db, msg, event)

    new_ack = ACK_BY_STATUS[event.status]
    values: dict = {"ack": new_ack, "updated_at": now_utc()}
    if new_ack == st.ACK_READ:
        values["read"] = True

    res = db.execute(
        update(Message)
        .where(Message.id == msg.id, Message.ack < new_ack)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    db.commit()

    if res.rowcount != 1:
        log.debug("ack %s for %s not above stored level; ignored", new_ack, msg.external_message_id)
        _advance_item(db, msg, new_ack)
        return "ACK_IGNORED"

    _advance_item(db, msg, new_ack)
    publish(f"{msg.tenant_id}:message", "ack", {"id": msg.id, "external_id": msg.external_message_id, "ack": new_ack})
    return "ACK_UPDATED"


def _advance_item(db: Session, msg: Message, ack: int) -> None:
    model = _SOURCE_MODELS.get(msg.source_type)
    if model is None or ack not in _ITEM_STEPS:
        return
    to_state, from_states = _ITEM_STEPS[ack]
    extra = {}
    if to_state in _TIMESTAMP_FOR and model is not CampaignShipment:
        extra[_TIMESTAMP_FOR[to_state]] = now_utc()
    elif to_state == st.READ:
        extra["read_at"] = now_utc()
    st.transition(db, model, msg.source_id, from_states=from_states, to_state=to_state, **extra)


def _record_failure(db: Session, msg: Message, event: StatusEvent) -> str:
    message, code = extract_error(event.error)
    message = truncate(message, settings.ERROR_TEXT_MAX)

    # the ack level is left alone so it never decreases
    db.execute(
        update(Message)
        .where(Message.id == msg.id)
        .values(
            delivery_error=message,
            delivery_error_code=code[:50],
            delivery_error_at=event.timestamp or now_utc(),
            updated_at=now_utc(),
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()

    model = _SOURCE_MODELS.get(msg.source_type)
    if model is CampaignShipment:
        # delivered_at already counted this shipment as processed; only the error is kept
        st.transition(
            db,
            model,
            msg.source_id,
            from_states={st.SENT},
            to_state=st.FAILED,
            last_error=message,
            error_message=message,
            error_code=code[:50],
        )
    elif model is not None:
        st.transition(
            db,
            model,
            msg.source_id,
            from_states={st.SENT},
            to_state=st.FAILED,
            last_error=message,
            failed_at=now_utc(),
        )

    log.warning(
        "delivery failed for %s (tenant=%s): %s [%s]", msg.external_message_id, msg.tenant_id, message, code
    )
    publish(
        f"{msg.tenant_id}:message",
        "failed",
        {"id": msg.id, "external_id": msg.external_message_id, "error": message, "code": code},
    )
    return "FAILURE_RECORDED"


def events_from_webhook(body: dict, *, tenant_id: str) -> list[StatusEvent]:
    """Cloud API webhook body -> status events (entry[].changes[].value.statuses[])."""
    out: list[StatusEvent] = []
    for entry in body.get("entry") or []:
        for change in entry.get("changes") or []:
            value = change.get("value") or {}
            for s in value.get("statuses") or []:
                status = s.get("status")
                if status not in ACK_BY_STATUS and status not in FAILURE_STATUSES:
                    continue
                out.append(
                    StatusEvent(
                        external_message_id=str(s.get("id") or ""),
                        status=status,
                        tenant_id=tenant_id,
                        timestamp=_ts(s.get("timestamp")),
                        error=s.get("errors"),
                    )
                )
    return out


def _ts(raw):
    try:
        return datetime.fromtimestamp(int(raw), tz=timezone.utc) if raw else None
    except (TypeError, ValueError):
        return None


def sync_item_state(db: Session, msg: Message) -> None:
    """Catch an item up with callbacks that arrived while it was still ENQUEUED."""
    db.refresh(msg)
    if msg.ack >= st.ACK_DELIVERED:
        _advance_item(db, msg, msg.ack)
    elif msg.delivery_error:
        event = StatusEvent(
            external_message_id=msg.external_message_id,
            status="failed",
            tenant_id=msg.tenant_id,
            error={"message": msg.delivery_error, "code": msg.delivery_error_code},
        )
        _record_failure(db, msg, event)
