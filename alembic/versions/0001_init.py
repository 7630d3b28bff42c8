"""init

Revision ID: 0001_init
Revises:
Create Date: 2026-10-19
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None


def _jsonb():
    return postgresql.JSONB(astext_type=sa.Text())


def _outbound_columns() -> list[sa.Column]:
    """Columns shared by schedules, reminders and campaign shipments."""
    return [
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("tenant_id", sa.String(length=36), sa.ForeignKey("tenants.id"), nullable=False),
        sa.Column("contact_id", sa.String(length=36), sa.ForeignKey("contacts.id"), nullable=True),
        sa.Column("connection_id", sa.String(length=36), sa.ForeignKey("connections.id"), nullable=True),
        sa.Column("payload", _jsonb(), nullable=False),
        sa.Column("state", sa.String(length=20), nullable=False),
        sa.Column("scheduled_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("read_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("external_message_id", sa.String(length=200), nullable=True),
        sa.Column("job_id", sa.String(length=200), nullable=True),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    ]


def _outbound_indexes(table: str) -> None:
    op.create_index(f"ix_{table}_tenant_id", table, ["tenant_id"])
    op.create_index(f"ix_{table}_state", table, ["state"])
    # verifier scan: PENDING rows by due time
    op.create_index(f"ix_{table}_state_scheduled_at", table, ["state", "scheduled_at"])


def upgrade() -> None:
    op.create_table(
        "tenants",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("name", sa.String(length=200), nullable=False, unique=True),
        sa.Column("default_country_code", sa.String(length=4), nullable=True),
        sa.Column("settings", _jsonb(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )

    op.create_table(
        "connections",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("tenant_id", sa.String(length=36), sa.ForeignKey("tenants.id"), nullable=False),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("provider", sa.String(length=30), nullable=False),
        sa.Column("channel", sa.String(length=50), nullable=False),
        sa.Column("status", sa.String(length=30), nullable=False),
        sa.Column("is_default", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("token", sa.String(length=500), nullable=True),
        sa.Column("phone_number_id", sa.String(length=64), nullable=True),
        sa.Column("session_name", sa.String(length=120), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_connections_tenant_id", "connections", ["tenant_id"])

    op.create_table(
        "contacts",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("tenant_id", sa.String(length=36), sa.ForeignKey("tenants.id"), nullable=False),
        sa.Column("number", sa.String(length=40), nullable=False),
        sa.Column("name", sa.String(length=200), nullable=True),
        sa.Column("email", sa.String(length=320), nullable=True),
        sa.Column("tags", _jsonb(), nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("lid", sa.String(length=80), nullable=True),
        sa.Column("last_inbound_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("extra", _jsonb(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("tenant_id", "number", name="uq_contacts_tenant_number"),
    )

    op.create_table(
        "tickets",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("tenant_id", sa.String(length=36), sa.ForeignKey("tenants.id"), nullable=False),
        sa.Column("contact_id", sa.String(length=36), sa.ForeignKey("contacts.id"), nullable=False),
        sa.Column("connection_id", sa.String(length=36), sa.ForeignKey("connections.id"), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_tickets_tenant_contact", "tickets", ["tenant_id", "contact_id"])

    op.create_table(
        "schedules",
        *_outbound_columns(),
        sa.Column("user_id", sa.String(length=64), nullable=True),
        sa.Column("interval_unit", sa.String(length=10), nullable=True),
        sa.Column("interval_value", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_occurrences", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("occurrence_count", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("business_day_policy", sa.String(length=20), nullable=False, server_default="as_is"),
        sa.Column("series_id", sa.String(length=36), nullable=True),
        sa.Column("previous_id", sa.String(length=36), nullable=True, unique=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("open_ticket", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("ticket_status", sa.String(length=20), nullable=False, server_default="closed"),
    )
    _outbound_indexes("schedules")
    op.create_index("ix_schedules_series_id", "schedules", ["series_id"])

    op.create_table(
        "reminders",
        *_outbound_columns(),
        sa.Column("schedule_id", sa.String(length=36), sa.ForeignKey("schedules.id"), nullable=False, unique=True),
    )
    _outbound_indexes("reminders")

    op.create_table(
        "campaigns",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("tenant_id", sa.String(length=36), sa.ForeignKey("tenants.id"), nullable=False),
        sa.Column("connection_id", sa.String(length=36), sa.ForeignKey("connections.id"), nullable=True),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("messages", _jsonb(), nullable=False),
        sa.Column("confirmation", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("confirmation_messages", _jsonb(), nullable=False),
        sa.Column("media_path", sa.String(length=800), nullable=True),
        sa.Column("media_name", sa.String(length=300), nullable=True),
        sa.Column("template_name", sa.String(length=200), nullable=True),
        sa.Column("template_language", sa.String(length=20), nullable=True),
        sa.Column("template_components", _jsonb(), nullable=False),
        sa.Column("template_variables", _jsonb(), nullable=False),
        sa.Column("contact_ids", _jsonb(), nullable=False),
        sa.Column("tag", sa.String(length=120), nullable=True),
        sa.Column("audience_size", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("scheduled_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("next_scheduled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_recurring", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("interval_unit", sa.String(length=10), nullable=True),
        sa.Column("interval_value", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("business_day_policy", sa.String(length=20), nullable=False, server_default="as_is"),
        sa.Column("max_executions", sa.Integer(), nullable=True),
        sa.Column("execution_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("settings", _jsonb(), nullable=False),
        sa.Column("job_id", sa.String(length=200), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_campaigns_tenant_id", "campaigns", ["tenant_id"])
    op.create_index("ix_campaigns_status", "campaigns", ["status"])

    op.create_table(
        "campaign_shipments",
        *_outbound_columns(),
        sa.Column("campaign_id", sa.String(length=36), sa.ForeignKey("campaigns.id"), nullable=False),
        sa.Column("execution", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("number", sa.String(length=40), nullable=False),
        sa.Column("message_body", sa.Text(), nullable=True),
        sa.Column("confirmation_requested_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("confirmed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("error_code", sa.String(length=50), nullable=True),
        sa.UniqueConstraint("campaign_id", "execution", "contact_id", name="uq_shipments_campaign_contact"),
        sa.UniqueConstraint("campaign_id", "execution", "number", name="uq_shipments_campaign_number"),
    )
    _outbound_indexes("campaign_shipments")
    op.create_index("ix_campaign_shipments_campaign_id", "campaign_shipments", ["campaign_id"])

    op.create_table(
        "messages",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("tenant_id", sa.String(length=36), sa.ForeignKey("tenants.id"), nullable=False),
        sa.Column("external_message_id", sa.String(length=200), nullable=False),
        sa.Column("source_type", sa.String(length=30), nullable=False),
        sa.Column("source_id", sa.String(length=36), nullable=False),
        sa.Column("to_number", sa.String(length=80), nullable=False),
        sa.Column("channel", sa.String(length=20), nullable=False),
        sa.Column("body", sa.Text(), nullable=True),
        sa.Column("ack", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("read", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("delivery_error", sa.Text(), nullable=True),
        sa.Column("delivery_error_code", sa.String(length=50), nullable=True),
        sa.Column("delivery_error_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("tenant_id", "external_message_id", name="uq_messages_tenant_external"),
    )
    op.create_index("ix_messages_source", "messages", ["source_type", "source_id"])

    op.create_table(
        "failed_messages",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("tenant_id", sa.String(length=36), sa.ForeignKey("tenants.id"), nullable=False),
        sa.Column("source_type", sa.String(length=30), nullable=False),
        sa.Column("source_id", sa.String(length=36), nullable=False),
        sa.Column("to_number", sa.String(length=80), nullable=True),
        sa.Column("channel", sa.String(length=20), nullable=True),
        sa.Column("message_type", sa.String(length=20), nullable=True),
        sa.Column("body", sa.Text(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=False),
        sa.Column("raw_data", _jsonb(), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_failed_messages_tenant_status", "failed_messages", ["tenant_id", "status"])

    op.create_table(
        "audit_log",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("tenant_id", sa.String(length=36), sa.ForeignKey("tenants.id"), nullable=True),
        sa.Column("user_id", sa.String(length=64), nullable=True),
        sa.Column("event_type", sa.String(length=100), nullable=False),
        sa.Column("severity", sa.String(length=20), nullable=False),
        sa.Column("message", sa.String(length=1000), nullable=False),
        sa.Column("context", _jsonb(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_audit_log_tenant_created", "audit_log", ["tenant_id", "created_at"])


def downgrade() -> None:
    op.drop_table("audit_log")
    op.drop_table("failed_messages")
    op.drop_table("messages")
    op.drop_table("campaign_shipments")
    op.drop_table("campaigns")
    op.drop_table("reminders")
    op.drop_table("schedules")
    op.drop_table("tickets")
    op.drop_table("contacts")
    op.drop_table("connections")
    op.drop_table("tenants")
