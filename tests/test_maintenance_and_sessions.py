from __future__ import annotations

from datetime import timedelta

from tests.utils_factories import make_contact, make_schedule


def test_clear_finished_job_ids_only_touches_old_finished_rows(db, tenant):
    from app.models.tables import Schedule
    from app.tasks.maintenance_tasks import clear_finished_job_ids
    from app.util.time import now_utc

    c = make_contact(db, tenant["id"])
    old = now_utc() - timedelta(days=2)
    done = make_schedule(db, tenant["id"], c.id, state="DELIVERED", job_id="job-a")
    waiting = make_schedule(db, tenant["id"], c.id, state="ENQUEUED", job_id="job-b")
    recent = make_schedule(db, tenant["id"], c.id, state="FAILED", job_id="job-c")
    for s in (done, waiting):
        s.updated_at = old
    db.commit()

    cleared = clear_finished_job_ids(db, ttl_s=3600)

    assert cleared["schedules"] == 1
    db.expire_all()
    assert db.get(Schedule, done.id).job_id is None
    assert db.get(Schedule, waiting.id).job_id == "job-b"
    assert db.get(Schedule, recent.id).job_id == "job-c"


def test_lid_resolved_and_stored(db, tenant, adapter):
    from app.models.tables import Contact
    from app.outbox.dispatcher import resolve_contact_lid

    c = make_contact(db, tenant["id"])
    adapter.lid = "190283746@lid"

    out = resolve_contact_lid(db, c.id, adapter_factory=adapter.factory)
    assert out.status == "DONE"
    db.expire_all()
    assert db.get(Contact, c.id).lid == "190283746@lid"

    again = resolve_contact_lid(db, c.id, adapter_factory=adapter.factory)
    assert again.status == "SKIPPED"


def test_lid_lookup_waits_while_session_down_then_gives_up(db, tenant, adapter):
    from app.core.errors import ChannelUnavailableError, TransientChannelError
    from app.outbox.dispatcher import resolve_contact_lid
    from app.outbox.retry import LID_LOOKUP_RETRY, LID_RETRY_DISCONNECTED_DELAY

    c = make_contact(db, tenant["id"])

    adapter.error = ChannelUnavailableError("session closed")
    out = resolve_contact_lid(db, c.id, adapter_factory=adapter.factory)
    assert out.status == "RETRY"
    assert out.delay_s == LID_RETRY_DISCONNECTED_DELAY

    adapter.error = TransientChannelError("timeout")
    out = resolve_contact_lid(db, c.id, attempt=2, adapter_factory=adapter.factory)
    assert out.status == "RETRY"
    assert out.delay_s == 240
    assert out.attempt == 3

    out = resolve_contact_lid(db, c.id, attempt=LID_LOOKUP_RETRY.max_attempts, adapter_factory=adapter.factory)
    assert out.status == "FAILED"


def test_restart_session_retries_then_marks_disconnected(db, tenant, adapter):
    from app.core.errors import TransientChannelError
    from app.models.tables import AuditLog, Connection
    from app.outbox.dispatcher import restart_session
    from app.outbox.retry import SESSION_RESTART_RETRY

    ok = restart_session(db, tenant["connection_id"], adapter_factory=adapter.factory)
    assert ok.status == "DONE"
    assert adapter.restarts == 1

    adapter.error = TransientChannelError("gateway 502")
    retry = restart_session(db, tenant["connection_id"], attempt=0, adapter_factory=adapter.factory)
    assert retry.status == "RETRY"
    assert retry.delay_s == 5

    gave_up = restart_session(
        db, tenant["connection_id"], attempt=SESSION_RESTART_RETRY.max_attempts, adapter_factory=adapter.factory
    )
    assert gave_up.status == "FAILED"
    db.expire_all()
    assert db.get(Connection, tenant["connection_id"]).status == "DISCONNECTED"
    assert db.query(AuditLog).filter(AuditLog.event_type == "SESSION_DISCONNECTED").count() == 1
