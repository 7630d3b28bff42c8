"""Contact/ticket store and connection registry used by the dispatcher."""

from __future__ import annotations

from datetime import timedelta

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.errors import ChannelUnavailableError
from app.models.tables import Connection, Contact, Tenant, Ticket
from app.util.ids import new_uuid
from app.util.time import as_utc, now_utc

SERVICE_WINDOW = timedelta(hours=24)


def country_code_for(db: Session, tenant_id: str) -> str:
    t = db.get(Tenant, tenant_id)
    return (t.default_country_code if t and t.default_country_code else None) or settings.DEFAULT_COUNTRY_CODE


def get_connection(db: Session, *, tenant_id: str, connection_id: str | None) -> Connection:
    """Explicit connection, else the tenant default, else any connected one."""
    if connection_id:
        conn = db.get(Connection, connection_id)
        if conn and conn.tenant_id == tenant_id:
            return conn

    conn = (
        db.query(Connection)
        .filter(Connection.tenant_id == tenant_id, Connection.is_default.is_(True))
        .order_by(Connection.created_at.asc())
        .first()
    )
    if conn:
        return conn

    conn = (
        db.query(Connection)
        .filter(Connection.tenant_id == tenant_id, Connection.status == "CONNECTED")
        .order_by(Connection.created_at.asc())
        .first()
    )
    if conn:
        return conn

    raise ChannelUnavailableError(
        f"no connection available for tenant {tenant_id}",
        detail={"tenant_id": tenant_id, "connection_id": connection_id},
    )


def find_or_create_contact(db: Session, *, tenant_id: str, number: str, name: str | None = None) -> Contact:
    existing = db.query(Contact).filter(Contact.tenant_id == tenant_id, Contact.number == number).one_or_none()
    if existing:
        return existing

    contact = Contact(
        id=new_uuid(),
        tenant_id=tenant_id,
        number=number,
        name=name or number,
        tags=[],
        extra={},
        created_at=now_utc(),
    )
    db.add(contact)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        # Another worker likely created it concurrently
        existing = db.query(Contact).filter(Contact.tenant_id == tenant_id, Contact.number == number).one_or_none()
        if existing:
            return existing
        raise
    return contact


def find_or_create_open_ticket(db: Session, *, contact: Contact, connection: Connection, status: str = "open") -> Ticket:
    ticket = (
        db.query(Ticket)
        .filter(
            Ticket.tenant_id == contact.tenant_id,
            Ticket.contact_id == contact.id,
            Ticket.connection_id == connection.id,
            Ticket.status.in_(["open", "pending"]),
        )
        .order_by(Ticket.updated_at.desc())
        .first()
    )
    if ticket:
        ticket.updated_at = now_utc()
        db.commit()
        return ticket

    ticket = Ticket(
        id=new_uuid(),
        tenant_id=contact.tenant_id,
        contact_id=contact.id,
        connection_id=connection.id,
        status=status if status in ("open", "pending") else "open",
        created_at=now_utc(),
        updated_at=now_utc(),
    )
    db.add(ticket)
    db.commit()
    return ticket


def within_service_window(contact: Contact | None) -> bool:
    """Free-form official API messages need an inbound message in the last 24h."""
    if not contact or not contact.last_inbound_at:
        return False
    return now_utc() - as_utc(contact.last_inbound_at) <= SERVICE_WINDOW
