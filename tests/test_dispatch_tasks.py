from __future__ import annotations

from contextlib import contextmanager
from types import SimpleNamespace

import pytest
from celery.exceptions import Retry

from tests.utils_factories import FakeQueue, make_contact, make_schedule


class FakeTask:
    """Stands in for a bound Celery task; records retry countdowns."""

    def __init__(self, retries=0):
        self.request = SimpleNamespace(retries=retries)
        self.retried: list[float] = []

    def retry(self, countdown=None, exc=None):
        self.retried.append(countdown)
        return Retry(exc=exc, when=countdown)


class FakeLimiter:
    def __init__(self, allowed=True, retry_after_s=0.0):
        self.decision = SimpleNamespace(allowed=allowed, retry_after_s=retry_after_s)
        self.keys: list[str] = []

    def acquire(self, key):
        self.keys.append(key)
        return self.decision


@pytest.fixture()
def harness(monkeypatch):
    from app.tasks import dispatch_tasks

    queue = FakeQueue()
    limiter = FakeLimiter()
    locks: list[str] = []

    @contextmanager
    def fake_lock(schedule_id):
        locks.append(schedule_id)
        yield

    monkeypatch.setattr(dispatch_tasks, "get_job_queue", lambda: queue)
    monkeypatch.setattr(dispatch_tasks, "send_limiter", lambda: limiter)
    monkeypatch.setattr(dispatch_tasks, "schedule_lock", fake_lock)
    return SimpleNamespace(queue=queue, limiter=limiter, locks=locks)


def test_rate_limited_send_is_requeued_without_sending(db, tenant, harness):
    from app.models.tables import Schedule
    from app.tasks.dispatch_tasks import _send_locked

    c = make_contact(db, tenant["id"])
    s = make_schedule(db, tenant["id"], c.id, state="ENQUEUED", connection_id=tenant["connection_id"])
    harness.limiter.decision = SimpleNamespace(allowed=False, retry_after_s=2.5)
    calls = []

    task = FakeTask()
    with pytest.raises(Retry):
        _send_locked(task, Schedule, s.id, lambda db, item_id: calls.append(item_id))

    assert task.retried == [2.5]
    assert harness.limiter.keys == [tenant["connection_id"]]
    assert calls == []
    assert harness.locks == []


def test_busy_schedule_lock_retries_shortly(db, tenant, harness, monkeypatch):
    from app.core.locks import LockBusy
    from app.models.tables import Reminder
    from app.tasks import dispatch_tasks
    from app.util.ids import new_uuid
    from app.util.time import now_utc

    c = make_contact(db, tenant["id"])
    s = make_schedule(db, tenant["id"], c.id)
    r = Reminder(
        id=new_uuid(), tenant_id=tenant["id"], schedule_id=s.id, contact_id=c.id, payload={"kind": "text", "body": "x"},
        state="ENQUEUED", scheduled_at=now_utc(), attempts=0, created_at=now_utc(), updated_at=now_utc(),
    )
    db.add(r)
    db.commit()

    @contextmanager
    def busy(schedule_id):
        harness.locks.append(schedule_id)
        raise LockBusy(schedule_id)
        yield

    monkeypatch.setattr(dispatch_tasks, "schedule_lock", busy)
    task = FakeTask()
    with pytest.raises(Retry):
        dispatch_tasks._send_locked(task, Reminder, r.id, lambda db, item_id: None)

    # reminders lock on their schedule
    assert harness.locks == [s.id]
    assert task.retried == [dispatch_tasks.LOCK_RETRY_S]
    assert harness.limiter.keys == [f"tenant:{tenant['id']}"]


def test_retry_outcome_becomes_task_retry(db, tenant, harness):
    from app.models.tables import Schedule
    from app.outbox.dispatcher import Outcome
    from app.tasks.dispatch_tasks import _send_locked

    c = make_contact(db, tenant["id"])
    s = make_schedule(db, tenant["id"], c.id, state="ENQUEUED")

    task = FakeTask(retries=1)
    with pytest.raises(Retry):
        _send_locked(task, Schedule, s.id, lambda db, item_id: Outcome(status="RETRY", item_id=item_id, delay_s=60))

    assert task.retried == [60]
    assert harness.locks == [s.id]


def test_session_send_queues_lid_lookup(db, tenant, harness):
    from app.models.tables import Schedule
    from app.outbox.dispatcher import Outcome
    from app.tasks.dispatch_tasks import RESOLVE_CONTACT_LID, _send_locked

    c = make_contact(db, tenant["id"])
    s = make_schedule(db, tenant["id"], c.id, state="ENQUEUED")

    def sent(db, item_id):
        return Outcome(status="SENT", item_id=item_id, external_id="wamid-1", connection_id=tenant["connection_id"])

    out = _send_locked(FakeTask(), Schedule, s.id, sent)

    assert out["status"] == "SENT"
    assert [(j["type"], j["payload"]) for j in harness.queue.jobs] == [
        (RESOLVE_CONTACT_LID, {"contact_id": c.id, "connection_id": tenant["connection_id"]})
    ]


def test_known_lid_needs_no_lookup(db, tenant, harness):
    from app.models.tables import Schedule
    from app.outbox.dispatcher import Outcome
    from app.tasks.dispatch_tasks import _send_locked

    c = make_contact(db, tenant["id"], lid="1234@lid")
    s = make_schedule(db, tenant["id"], c.id, state="ENQUEUED")

    _send_locked(
        FakeTask(),
        Schedule,
        s.id,
        lambda db, item_id: Outcome(status="SENT", item_id=item_id, connection_id=tenant["connection_id"]),
    )
    assert harness.queue.jobs == []


def test_restart_required_queues_session_restart(db, tenant, harness):
    from app.models.tables import Schedule
    from app.outbox.dispatcher import Outcome
    from app.tasks.dispatch_tasks import RESTART_SESSION, _send_locked

    c = make_contact(db, tenant["id"])
    s = make_schedule(db, tenant["id"], c.id, state="ENQUEUED")

    def failed(db, item_id):
        return Outcome(status="FAILED", item_id=item_id, connection_id=tenant["connection_id"], restart_required=True)

    out = _send_locked(FakeTask(), Schedule, s.id, failed)

    assert out == {"status": "FAILED", "item_id": s.id, "connection_id": tenant["connection_id"], "restart_required": True}
    assert [(j["type"], j["payload"]) for j in harness.queue.jobs] == [
        (RESTART_SESSION, {"connection_id": tenant["connection_id"]})
    ]


def test_crash_in_send_propagates(db, tenant, harness):
    from app.models.tables import Schedule
    from app.tasks.dispatch_tasks import _send_locked

    c = make_contact(db, tenant["id"])
    s = make_schedule(db, tenant["id"], c.id, state="ENQUEUED")

    def boom(db, item_id):
        raise RuntimeError("unexpected")

    task = FakeTask()
    with pytest.raises(RuntimeError):
        _send_locked(task, Schedule, s.id, boom)
    assert task.retried == []


def test_prepare_out_of_retries_fails_shipment_and_finalizes(db, tenant, monkeypatch):
    from app.core.errors import TransientChannelError
    from app.models.tables import Campaign, CampaignShipment
    from app.outbox import campaigns
    from app.tasks.dispatch_tasks import prepare_shipment
    from app.util.ids import new_uuid
    from app.util.time import now_utc

    contact = make_contact(db, tenant["id"])
    c = Campaign(
        id=new_uuid(), tenant_id=tenant["id"], name="promo", status="IN_PROGRESS", messages=["Oi"], contact_ids=[contact.id],
        audience_size=1, scheduled_at=now_utc(), created_at=now_utc(), updated_at=now_utc(),
    )
    db.add(c)
    db.commit()

    attempts = []

    def session_down(db, **kw):
        attempts.append(kw["contact_id"])
        raise TransientChannelError("gateway timeout")

    monkeypatch.setattr(campaigns, "prepare_shipment", session_down)

    # eager retries run inline until max_retries
    res = prepare_shipment.apply(kwargs={"campaign_id": c.id, "contact_id": contact.id, "execution": 0})

    assert len(attempts) == prepare_shipment.max_retries + 1
    assert res.get()["status"] == "FAILED"
    assert res.get()["finalize"] == "FINALIZED"
    db.expire_all()
    shipment = db.query(CampaignShipment).filter(CampaignShipment.campaign_id == c.id).one()
    assert shipment.state == "FAILED"
    assert shipment.failed_at is not None
    assert shipment.error_code == "RETRIES_EXHAUSTED"
    assert db.get(Campaign, c.id).status == "FINALIZED"
