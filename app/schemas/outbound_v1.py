from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field, field_validator, model_validator


class TextPayload(BaseModel):
    kind: Literal["text"] = "text"
    body: str = Field(min_length=1)


class MediaPayload(BaseModel):
    kind: Literal["media"] = "media"
    # public URL or local path reachable by the worker
    path: str = Field(min_length=1)
    caption: str | None = None
    filename: str | None = None
    # image/video/audio/document; inferred from the extension when omitted
    media_type: Literal["image", "video", "audio", "document"] | None = None


class TemplatePayload(BaseModel):
    kind: Literal["template"] = "template"
    name: str = Field(min_length=1)
    language: str = "pt_BR"
    # Template definition components (BODY/HEADER/BUTTONS) or ready-made send components.
    components: list[dict[str, Any]] = Field(default_factory=list)
    # {"body": {"1": {"value": "..."}}, "buttons": {"0": {"value": "...", "buttonIndex": 0}}}
    variables: dict[str, dict[str, dict[str, Any]]] = Field(default_factory=dict)
    # Text stored on the message ledger for the CRM view.
    preview: str | None = None


OutboundPayload = Annotated[
    TextPayload | MediaPayload | TemplatePayload,
    Field(discriminator="kind"),
]


class ReminderIn(BaseModel):
    scheduled_at: datetime
    body: str = Field(min_length=1)


class ScheduleIn(BaseModel):
    """Input accepted by the enqueue API (create or update)."""

    id: str | None = None
    number: str | None = None
    contact_id: str | None = None
    connection_id: str | None = None
    payload: OutboundPayload
    scheduled_at: datetime

    interval_unit: Literal["days", "weeks", "months", "minutes"] | None = None
    interval_value: int = Field(default=0, ge=0)
    max_occurrences: int = Field(default=1, ge=1)
    business_day_policy: Literal["as_is", "move_earlier", "move_later"] = "as_is"

    open_ticket: bool = False
    ticket_status: Literal["open", "pending", "closed"] = "closed"
    reminder: ReminderIn | None = None

    @field_validator("scheduled_at")
    @classmethod
    def _aware(cls, v: datetime) -> datetime:
        if v.tzinfo is None:
            raise ValueError("scheduled_at must be timezone-aware")
        return v

    @model_validator(mode="after")
    def _target_and_recurrence(self) -> "ScheduleIn":
        if not self.number and not self.contact_id:
            raise ValueError("number or contact_id is required")
        if self.interval_value > 0 and not self.interval_unit:
            raise ValueError("interval_unit is required when interval_value > 0")
        if self.reminder and self.reminder.scheduled_at.tzinfo is None:
            raise ValueError("reminder.scheduled_at must be timezone-aware")
        if self.reminder and self.reminder.scheduled_at >= self.scheduled_at:
            raise ValueError("reminder must be due before the message")
        return self


class StatusError(BaseModel):
    code: str | int | None = None
    title: str | None = None
    message: str | None = None
    error_data: dict[str, Any] | None = None


class StatusEvent(BaseModel):
    """Delivery-status callback, identical for the realtime and broker transports."""

    external_message_id: str = Field(min_length=1)
    status: Literal["sent", "delivered", "read", "failed", "undelivered"]
    tenant_id: str = Field(min_length=1)
    timestamp: datetime | None = None
    # provider error shapes vary: a dict, a list of dicts, or a bare string
    error: Any = None
