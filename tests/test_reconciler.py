from __future__ import annotations

from tests.utils_factories import make_contact, make_schedule


def _sent_schedule(db, tenant_id, external_id="wamid-1"):
    from app.outbox import state as st

    c = make_contact(db, tenant_id)
    s = make_schedule(db, tenant_id, c.id, state="SENT", external_message_id=external_id)
    st.record_sent_message(
        db,
        tenant_id=tenant_id,
        external_message_id=external_id,
        source_type="schedule",
        source_id=s.id,
        to_number=c.number,
        channel="official",
        body="hi",
    )
    return s


def _event(tenant_id, status, external_id="wamid-1", **kw):
    return {"external_message_id": external_id, "status": status, "tenant_id": tenant_id, **kw}


def test_ack_never_decreases(db, tenant):
    from app.models.tables import Message, Schedule
    from app.outbox.reconciler import report_delivery_status

    s = _sent_schedule(db, tenant["id"])

    assert report_delivery_status(db, _event(tenant["id"], "read")) == "ACK_UPDATED"
    assert report_delivery_status(db, _event(tenant["id"], "delivered")) == "ACK_IGNORED"
    assert report_delivery_status(db, _event(tenant["id"], "sent")) == "ACK_IGNORED"

    db.expire_all()
    msg = db.query(Message).one()
    assert msg.ack == 3
    assert msg.read is True
    assert db.get(Schedule, s.id).state == "READ"


def test_ack_sequence_is_idempotent(db, tenant):
    from app.models.tables import Message, Schedule
    from app.outbox.reconciler import report_delivery_status

    s = _sent_schedule(db, tenant["id"])
    for status in ("sent", "delivered", "delivered", "read", "read"):
        report_delivery_status(db, _event(tenant["id"], status))

    db.expire_all()
    assert db.query(Message).one().ack == 3
    row = db.get(Schedule, s.id)
    assert row.state == "READ"
    assert row.read_at is not None


def test_unknown_message_is_dropped(db, tenant):
    from app.outbox.reconciler import report_delivery_status

    assert report_delivery_status(db, _event(tenant["id"], "delivered", "nope")) == "NOT_FOUND"
    # another tenant's message is not visible
    _sent_schedule(db, tenant["id"])
    assert report_delivery_status(db, _event("other-tenant", "delivered")) == "NOT_FOUND"


def test_failure_keeps_ack_and_records_error(db, tenant):
    from app.models.tables import Message, Schedule
    from app.outbox.reconciler import report_delivery_status

    s = _sent_schedule(db, tenant["id"])
    report_delivery_status(db, _event(tenant["id"], "sent"))

    error = [{"code": 131026, "title": "Message undeliverable", "error_data": {"details": "Receiver is incapable"}}]
    assert report_delivery_status(db, _event(tenant["id"], "failed", error=error)) == "FAILURE_RECORDED"

    db.expire_all()
    msg = db.query(Message).one()
    assert msg.ack == 1
    assert msg.delivery_error == "Receiver is incapable"
    assert msg.delivery_error_code == "131026"
    assert msg.delivery_error_at is not None
    row = db.get(Schedule, s.id)
    assert row.state == "FAILED"
    assert row.last_error == "Receiver is incapable"


def test_failure_after_delivery_does_not_regress_item(db, tenant):
    from app.models.tables import Schedule
    from app.outbox.reconciler import report_delivery_status

    s = _sent_schedule(db, tenant["id"])
    report_delivery_status(db, _event(tenant["id"], "delivered"))
    report_delivery_status(db, _event(tenant["id"], "undelivered", error="expired"))

    db.expire_all()
    assert db.get(Schedule, s.id).state == "DELIVERED"


def test_extract_error_shapes():
    from app.outbox.reconciler import FALLBACK_ERROR, extract_error

    assert extract_error({"message": "Rate limit hit", "code": 130429}) == ("Rate limit hit", "130429")
    assert extract_error({"title": "Re-engagement message"}) == ("Re-engagement message", "UNKNOWN")
    assert extract_error("phone offline") == ("phone offline", "UNKNOWN")
    assert extract_error(None) == (FALLBACK_ERROR, "UNKNOWN")
    assert extract_error([]) == (FALLBACK_ERROR, "UNKNOWN")


def test_events_from_webhook():
    from app.outbox.reconciler import events_from_webhook

    body = {
        "object": "whatsapp_business_account",
        "entry": [
            {
                "changes": [
                    {
                        "value": {
                            "statuses": [
                                {"id": "wamid-1", "status": "delivered", "timestamp": "1760000000"},
                                {"id": "wamid-2", "status": "failed", "errors": [{"code": 131047, "title": "x"}]},
                                {"id": "wamid-3", "status": "deleted"},
                            ]
                        }
                    }
                ]
            }
        ],
    }
    events = events_from_webhook(body, tenant_id="t1")
    assert [(e.external_message_id, e.status) for e in events] == [("wamid-1", "delivered"), ("wamid-2", "failed")]
    assert events[0].timestamp is not None
    assert events[1].error == [{"code": 131047, "title": "x"}]
