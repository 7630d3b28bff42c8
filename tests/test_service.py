from __future__ import annotations

from datetime import timedelta

import pytest

from tests.utils_factories import make_contact, make_schedule


def _item(**kw):
    from app.util.time import now_utc

    data = {
        "number": "(11) 98765-4321",
        "payload": {"kind": "text", "body": "Consulta amanhã às 10h"},
        "scheduled_at": (now_utc() + timedelta(hours=2)).isoformat(),
    }
    data.update(kw)
    return data


def test_schedule_outbound_item_creates_contact_and_reminder(db, tenant):
    from app.models.tables import Contact, Reminder, Schedule
    from app.outbox.service import schedule_outbound_item
    from app.util.time import now_utc

    reminder_at = (now_utc() + timedelta(hours=1)).isoformat()
    sid = schedule_outbound_item(db, tenant["id"], "u1", _item(reminder={"scheduled_at": reminder_at, "body": "Lembrete"}))

    s = db.get(Schedule, sid)
    assert s.state == "PENDING"
    assert s.series_id == sid
    assert s.payload == {"kind": "text", "body": "Consulta amanhã às 10h"}
    contact = db.get(Contact, s.contact_id)
    assert contact.number == "5511987654321"

    r = db.query(Reminder).filter(Reminder.schedule_id == sid).one()
    assert r.state == "PENDING"
    assert r.payload["body"] == "Lembrete"


def test_schedule_outbound_item_rejects_invalid_input(db, tenant):
    from app.core.errors import InvalidPhoneNumber, ValidationFailed
    from app.models.tables import Schedule
    from app.outbox.service import schedule_outbound_item

    with pytest.raises(InvalidPhoneNumber):
        schedule_outbound_item(db, tenant["id"], "u1", _item(number="123"))
    with pytest.raises(ValidationFailed):
        schedule_outbound_item(db, tenant["id"], "u1", _item(payload={"kind": "text", "body": ""}))
    with pytest.raises(ValidationFailed):
        schedule_outbound_item(db, tenant["id"], "u1", _item(interval_value=3))
    with pytest.raises(ValidationFailed):
        schedule_outbound_item(db, tenant["id"], "u1", _item(scheduled_at="2026-01-01T10:00:00"))

    assert db.query(Schedule).count() == 0


def test_update_only_while_pending(db, tenant):
    from app.core.errors import ValidationFailed
    from app.models.tables import Schedule
    from app.outbox.service import schedule_outbound_item

    sid = schedule_outbound_item(db, tenant["id"], "u1", _item())
    same = schedule_outbound_item(db, tenant["id"], "u1", _item(id=sid, payload={"kind": "text", "body": "novo"}))
    assert same == sid
    db.expire_all()
    assert db.get(Schedule, sid).payload["body"] == "novo"

    db.get(Schedule, sid).state = "SENT"
    db.commit()
    with pytest.raises(ValidationFailed):
        schedule_outbound_item(db, tenant["id"], "u1", _item(id=sid))


def test_cancel_report_tri_state(db, tenant, queue):
    from app.models.tables import Reminder, Schedule
    from app.outbox.service import cancel_outbound_item
    from app.util.ids import new_uuid
    from app.util.time import now_utc

    c = make_contact(db, tenant["id"])
    s = make_schedule(db, tenant["id"], c.id, state="ENQUEUED", job_id="job-a")
    queue.states["job-a"] = "STARTED"
    nxt = make_schedule(db, tenant["id"], c.id, state="ENQUEUED", job_id="job-b", previous_id=s.id, series_id=s.series_id)
    queue.states["job-b"] = "PENDING"
    db.add(
        Reminder(
            id=new_uuid(), tenant_id=tenant["id"], schedule_id=nxt.id, contact_id=c.id,
            payload={"kind": "text", "body": "x"}, state="ENQUEUED", job_id="job-c",
            scheduled_at=now_utc(), attempts=0, created_at=now_utc(), updated_at=now_utc(),
        )
    )
    db.commit()
    queue.states["job-c"] = "FAILURE"

    report = cancel_outbound_item(db, tenant["id"], s.id, "schedule", queue=queue)

    assert report.as_dict() == {"removed": 1, "active": 1, "failed": 1, "total_pending": 3}
    assert queue.removed == ["job-b"]
    db.expire_all()
    assert db.get(Schedule, s.id).state == "CANCELLED"
    assert db.get(Schedule, nxt.id).state == "CANCELLED"
    assert db.get(Schedule, s.id).job_id is None


def test_cancel_is_idempotent_and_scoped_to_tenant(db, tenant, queue):
    from app.outbox.service import cancel_outbound_item

    c = make_contact(db, tenant["id"])
    s = make_schedule(db, tenant["id"], c.id)

    first = cancel_outbound_item(db, tenant["id"], s.id, queue=queue)
    second = cancel_outbound_item(db, tenant["id"], s.id, queue=queue)
    assert first.total_pending == 1
    assert first.removed == 1
    assert second.as_dict() == {"removed": 0, "active": 0, "failed": 0, "total_pending": 0}
    assert cancel_outbound_item(db, "other-tenant", s.id, queue=queue) is None


def test_cancelled_during_send_stops_recurrence(db, tenant, adapter):
    from app.models.tables import Schedule
    from app.outbox import dispatcher

    c = make_contact(db, tenant["id"])
    s = make_schedule(db, tenant["id"], c.id, state="ENQUEUED", interval_unit="days", interval_value=1, max_occurrences=3)

    original = adapter.send_text

    def cancel_mid_send(*, to, body):
        res = original(to=to, body=body)
        s_row = db.get(Schedule, s.id)
        s_row.state = "CANCELLED"
        db.commit()
        return res

    adapter.send_text = cancel_mid_send
    out = dispatcher.send_schedule(db, s.id, adapter_factory=adapter.factory)

    assert out.status == "SKIPPED"
    assert out.successor_id is None
    assert db.query(Schedule).filter(Schedule.previous_id == s.id).count() == 0


def test_cancel_campaign(db, tenant, queue):
    from app.models.tables import Campaign, CampaignShipment
    from app.outbox.service import cancel_outbound_item
    from app.util.ids import new_uuid
    from app.util.time import now_utc

    c = make_contact(db, tenant["id"])
    camp = Campaign(
        id=new_uuid(), tenant_id=tenant["id"], name="promo", status="IN_PROGRESS", messages=["hi"],
        scheduled_at=now_utc(), created_at=now_utc(), updated_at=now_utc(),
    )
    db.add(camp)
    db.commit()
    db.add(
        CampaignShipment(
            id=new_uuid(), tenant_id=tenant["id"], campaign_id=camp.id, execution=0, contact_id=c.id,
            number=c.number, payload={}, state="ENQUEUED", job_id="job-s", scheduled_at=now_utc(),
            attempts=0, created_at=now_utc(), updated_at=now_utc(),
        )
    )
    db.commit()

    report = cancel_outbound_item(db, tenant["id"], camp.id, "campaign", queue=queue)
    assert report.as_dict() == {"removed": 1, "active": 0, "failed": 0, "total_pending": 1}
    db.expire_all()
    assert db.get(Campaign, camp.id).status == "CANCELLED"
    assert db.query(CampaignShipment).one().state == "CANCELLED"


def test_retry_failed_item(db, tenant, queue):
    from app.models.tables import FailedMessage, Schedule
    from app.outbox.service import retry_failed_item
    from app.outbox.state import record_failed_message
    from app.outbox.verifier import verify_schedules

    c = make_contact(db, tenant["id"])
    s = make_schedule(db, tenant["id"], c.id, state="FAILED", last_error="boom")
    record_failed_message(db, tenant_id=tenant["id"], source_type="schedule", source_id=s.id, error="boom")

    assert retry_failed_item(db, tenant["id"], s.id) is True
    assert retry_failed_item(db, tenant["id"], s.id) is False
    db.expire_all()
    row = db.get(Schedule, s.id)
    assert (row.state, row.attempts, row.last_error) == ("PENDING", 0, None)
    assert db.query(FailedMessage).one().status == "RESOLVED"
    assert verify_schedules(db, queue=queue) == [s.id]
