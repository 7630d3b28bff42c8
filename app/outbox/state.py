from __future__ import annotations

import logging

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.errors import truncate
from app.models.tables import FailedMessage, Message
from app.util.ids import new_uuid
from app.util.time import now_utc

log = logging.getLogger("outbox.state")

PENDING = "PENDING"
ENQUEUED = "ENQUEUED"
SENT = "SENT"
DELIVERED = "DELIVERED"
READ = "READ"
FAILED = "FAILED"
CANCELLED = "CANCELLED"

TERMINAL = {DELIVERED, READ, FAILED, CANCELLED}
ACTIVE = {PENDING, ENQUEUED, SENT}

# ack levels on the message ledger
ACK_PENDING, ACK_SENT, ACK_DELIVERED, ACK_READ = 0, 1, 2, 3


def transition(
    db: Session, model, item_id: str, *, from_states: set[str] | list[str], to_state: str, field: str = "state", **values
) -> bool:
    """Compare-and-set on `state` (or `field`). Commits; True only if this call moved the row."""
    column = getattr(model, field)
    stmt = (
        update(model)
        .where(model.id == item_id, column.in_(list(from_states)))
        .values({field: to_state, "updated_at": now_utc(), **values})
        .execution_options(synchronize_session=False)
    )
    res = db.execute(stmt)
    db.commit()
    return res.rowcount == 1


def set_fields(db: Session, model, item_id: str, *, when_state: str | None = None, field: str = "state", **values) -> bool:
    stmt = update(model).where(model.id == item_id)
    if when_state is not None:
        stmt = stmt.where(getattr(model, field) == when_state)
    if "updated_at" in model.__table__.c:
        values = {"updated_at": now_utc(), **values}
    res = db.execute(stmt.values(**values).execution_options(synchronize_session=False))
    db.commit()
    return res.rowcount == 1


def record_sent_message(
    db: Session,
    *,
    tenant_id: str,
    external_message_id: str,
    source_type: str,
    source_id: str,
    to_number: str,
    channel: str,
    body: str | None,
) -> Message:
    """Find-or-create the ledger row; a duplicate id resolves to the existing row."""
    q = db.query(Message).filter(Message.tenant_id == tenant_id, Message.external_message_id == external_message_id)
    existing = q.one_or_none()
    if existing:
        return existing

    msg = Message(
        id=new_uuid(),
        tenant_id=tenant_id,
        external_message_id=external_message_id,
        source_type=source_type,
        source_id=source_id,
        to_number=to_number,
        channel=channel,
        body=body,
        ack=ACK_PENDING,
        read=False,
        created_at=now_utc(),
        updated_at=now_utc(),
    )
    db.add(msg)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        existing = q.one_or_none()
        if existing:
            log.info("message %s already recorded for tenant %s", external_message_id, tenant_id)
            return existing
        raise
    return msg


def record_failed_message(
    db: Session,
    *,
    tenant_id: str,
    source_type: str,
    source_id: str,
    error: str,
    to_number: str | None = None,
    channel: str | None = None,
    message_type: str | None = None,
    body: str | None = None,
    raw_data: dict | None = None,
) -> None:
    db.add(
        FailedMessage(
            id=new_uuid(),
            tenant_id=tenant_id,
            source_type=source_type,
            source_id=source_id,
            to_number=to_number,
            channel=channel,
            message_type=message_type,
            body=body,
            error_message=truncate(error, settings.ERROR_TEXT_MAX),
            raw_data=raw_data or {},
            status="PENDING",
            created_at=now_utc(),
        )
    )
    db.commit()
