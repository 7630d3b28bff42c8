from __future__ import annotations

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, declared_attr, mapped_column
from sqlalchemy.types import JSON

# Use JSONB on Postgres, fallback to JSON for SQLite/test environments.
JSONType = JSON().with_variant(JSONB, "postgresql")

from app.models.base import Base


class Tenant(Base):
    __tablename__ = "tenants"
    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False, unique=True)
    default_country_code: Mapped[str | None] = mapped_column(String(4), nullable=True)
    # campaign pacing overrides: message_interval / longer_interval_after / greater_interval
    settings: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    created_at: Mapped["DateTime"] = mapped_column(DateTime(timezone=True), nullable=False)


class Connection(Base):
    """A WhatsApp number the tenant sends from (session or official API)."""

    __tablename__ = "connections"
    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(36), ForeignKey("tenants.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)

    provider: Mapped[str] = mapped_column(String(30), nullable=False, default="session")  # session/oficial/beta
    channel: Mapped[str] = mapped_column(String(50), nullable=False, default="whatsapp")
    status: Mapped[str] = mapped_column(String(30), nullable=False, default="CONNECTED")  # CONNECTED/DISCONNECTED/...
    is_default: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # official API credentials
    token: Mapped[str | None] = mapped_column(String(500), nullable=True)
    phone_number_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    # session gateway instance name
    session_name: Mapped[str | None] = mapped_column(String(120), nullable=True)

    created_at: Mapped["DateTime"] = mapped_column(DateTime(timezone=True), nullable=False)


class Contact(Base):
    __tablename__ = "contacts"
    __table_args__ = (UniqueConstraint("tenant_id", "number", name="uq_contacts_tenant_number"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(36), ForeignKey("tenants.id"), nullable=False)
    number: Mapped[str] = mapped_column(String(40), nullable=False)
    name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    tags: Mapped[list[str]] = mapped_column(JSONType, nullable=False, default=list)
    # alternate identifier resolved from the session channel
    lid: Mapped[str | None] = mapped_column(String(80), nullable=True)
    last_inbound_at: Mapped["DateTime"] = mapped_column(DateTime(timezone=True), nullable=True)
    extra: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    created_at: Mapped["DateTime"] = mapped_column(DateTime(timezone=True), nullable=False)


class Ticket(Base):
    __tablename__ = "tickets"
    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(36), ForeignKey("tenants.id"), nullable=False)
    contact_id: Mapped[str] = mapped_column(String(36), ForeignKey("contacts.id"), nullable=False)
    connection_id: Mapped[str | None] = mapped_column(String(36), ForeignKey("connections.id"), nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="open")  # open/pending/closed
    created_at: Mapped["DateTime"] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped["DateTime"] = mapped_column(DateTime(timezone=True), nullable=False)


class OutboundItemMixin:
    """Columns shared by everything the dispatcher sends."""

    id: Mapped[str] = mapped_column(String(36), primary_key=True)

    @declared_attr
    def tenant_id(cls) -> Mapped[str]:
        return mapped_column(String(36), ForeignKey("tenants.id"), nullable=False, index=True)

    @declared_attr
    def contact_id(cls) -> Mapped[str | None]:
        return mapped_column(String(36), ForeignKey("contacts.id"), nullable=True)

    @declared_attr
    def connection_id(cls) -> Mapped[str | None]:
        return mapped_column(String(36), ForeignKey("connections.id"), nullable=True)

    # Validated OutboundPayload (text/media/template)
    payload: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)

    # PENDING/ENQUEUED/SENT/DELIVERED/READ/FAILED/CANCELLED
    state: Mapped[str] = mapped_column(String(20), nullable=False, default="PENDING", index=True)

    scheduled_at: Mapped["DateTime"] = mapped_column(DateTime(timezone=True), nullable=False)
    sent_at: Mapped["DateTime"] = mapped_column(DateTime(timezone=True), nullable=True)
    delivered_at: Mapped["DateTime"] = mapped_column(DateTime(timezone=True), nullable=True)
    read_at: Mapped["DateTime"] = mapped_column(DateTime(timezone=True), nullable=True)
    failed_at: Mapped["DateTime"] = mapped_column(DateTime(timezone=True), nullable=True)

    external_message_id: Mapped[str | None] = mapped_column(String(200), nullable=True)
    job_id: Mapped[str | None] = mapped_column(String(200), nullable=True)

    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped["DateTime"] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped["DateTime"] = mapped_column(DateTime(timezone=True), nullable=False)


class Schedule(OutboundItemMixin, Base):
    __tablename__ = "schedules"

    user_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    # recurrence
    interval_unit: Mapped[str | None] = mapped_column(String(10), nullable=True)  # days/weeks/months/minutes
    interval_value: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_occurrences: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    occurrence_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    business_day_policy: Mapped[str] = mapped_column(String(20), nullable=False, default="as_is")
    series_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    # at most one successor per occurrence
    previous_id: Mapped[str | None] = mapped_column(String(36), nullable=True, unique=True)
    completed_at: Mapped["DateTime"] = mapped_column(DateTime(timezone=True), nullable=True)

    # ticket flow
    open_ticket: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    ticket_status: Mapped[str] = mapped_column(String(20), nullable=False, default="closed")


class Reminder(OutboundItemMixin, Base):
    __tablename__ = "reminders"

    schedule_id: Mapped[str] = mapped_column(String(36), ForeignKey("schedules.id"), nullable=False, unique=True)


class Campaign(Base):
    __tablename__ = "campaigns"
    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(36), ForeignKey("tenants.id"), nullable=False, index=True)
    connection_id: Mapped[str | None] = mapped_column(String(36), ForeignKey("connections.id"), nullable=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)

    status: Mapped[str] = mapped_column(String(20), nullable=False, default="SCHEDULED")  # SCHEDULED/IN_PROGRESS/FINALIZED/CANCELLED

    # up to 5 message variants, one picked at random per contact
    messages: Mapped[list[str]] = mapped_column(JSONType, nullable=False, default=list)
    confirmation: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    confirmation_messages: Mapped[list[str]] = mapped_column(JSONType, nullable=False, default=list)
    media_path: Mapped[str | None] = mapped_column(String(800), nullable=True)
    media_name: Mapped[str | None] = mapped_column(String(300), nullable=True)

    # official API template sends
    template_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    template_language: Mapped[str | None] = mapped_column(String(20), nullable=True)
    template_components: Mapped[list[dict]] = mapped_column(JSONType, nullable=False, default=list)
    template_variables: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)

    # audience: explicit contact ids, or every contact carrying a tag
    contact_ids: Mapped[list[str]] = mapped_column(JSONType, nullable=False, default=list)
    tag: Mapped[str | None] = mapped_column(String(120), nullable=True)
    audience_size: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    scheduled_at: Mapped["DateTime"] = mapped_column(DateTime(timezone=True), nullable=False)
    next_scheduled_at: Mapped["DateTime"] = mapped_column(DateTime(timezone=True), nullable=True)
    is_recurring: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    interval_unit: Mapped[str | None] = mapped_column(String(10), nullable=True)
    interval_value: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    business_day_policy: Mapped[str] = mapped_column(String(20), nullable=False, default="as_is")
    max_executions: Mapped[int | None] = mapped_column(Integer, nullable=True)
    execution_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    settings: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    job_id: Mapped[str | None] = mapped_column(String(200), nullable=True)
    completed_at: Mapped["DateTime"] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped["DateTime"] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped["DateTime"] = mapped_column(DateTime(timezone=True), nullable=False)


class CampaignShipment(OutboundItemMixin, Base):
    __tablename__ = "campaign_shipments"
    __table_args__ = (
        UniqueConstraint("campaign_id", "execution", "contact_id", name="uq_shipments_campaign_contact"),
        UniqueConstraint("campaign_id", "execution", "number", name="uq_shipments_campaign_number"),
    )

    campaign_id: Mapped[str] = mapped_column(String(36), ForeignKey("campaigns.id"), nullable=False, index=True)
    execution: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    number: Mapped[str] = mapped_column(String(40), nullable=False)
    message_body: Mapped[str | None] = mapped_column(Text, nullable=True)

    confirmation_requested_at: Mapped["DateTime"] = mapped_column(DateTime(timezone=True), nullable=True)
    confirmed_at: Mapped["DateTime"] = mapped_column(DateTime(timezone=True), nullable=True)

    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_code: Mapped[str | None] = mapped_column(String(50), nullable=True)


class Message(Base):
    """Ledger of sent messages; delivery-status events are reconciled here."""

    __tablename__ = "messages"
    __table_args__ = (UniqueConstraint("tenant_id", "external_message_id", name="uq_messages_tenant_external"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(36), ForeignKey("tenants.id"), nullable=False)
    external_message_id: Mapped[str] = mapped_column(String(200), nullable=False)

    source_type: Mapped[str] = mapped_column(String(30), nullable=False)  # schedule/reminder/campaign_shipment
    source_id: Mapped[str] = mapped_column(String(36), nullable=False)
    to_number: Mapped[str] = mapped_column(String(80), nullable=False)
    channel: Mapped[str] = mapped_column(String(20), nullable=False)  # session/official
    body: Mapped[str | None] = mapped_column(Text, nullable=True)

    ack: Mapped[int] = mapped_column(Integer, nullable=False, default=0)  # 0 pending, 1 sent, 2 delivered, 3 read
    read: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    delivery_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    delivery_error_code: Mapped[str | None] = mapped_column(String(50), nullable=True)
    delivery_error_at: Mapped["DateTime"] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped["DateTime"] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped["DateTime"] = mapped_column(DateTime(timezone=True), nullable=False)


class FailedMessage(Base):
    __tablename__ = "failed_messages"
    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(36), ForeignKey("tenants.id"), nullable=False)
    source_type: Mapped[str] = mapped_column(String(30), nullable=False)
    source_id: Mapped[str] = mapped_column(String(36), nullable=False)
    to_number: Mapped[str | None] = mapped_column(String(80), nullable=True)
    channel: Mapped[str | None] = mapped_column(String(20), nullable=True)
    message_type: Mapped[str | None] = mapped_column(String(20), nullable=True)
    body: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_message: Mapped[str] = mapped_column(Text, nullable=False)
    raw_data: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="PENDING")  # PENDING/RESOLVED
    created_at: Mapped["DateTime"] = mapped_column(DateTime(timezone=True), nullable=False)


class AuditLog(Base):
    __tablename__ = "audit_log"
    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    tenant_id: Mapped[str | None] = mapped_column(String(36), ForeignKey("tenants.id"), nullable=True)
    user_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    severity: Mapped[str] = mapped_column(String(20), nullable=False)
    message: Mapped[str] = mapped_column(String(1000), nullable=False)
    context: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    created_at: Mapped["DateTime"] = mapped_column(DateTime(timezone=True), nullable=False)
