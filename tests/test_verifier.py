from __future__ import annotations

from datetime import timedelta

from tests.utils_factories import make_contact, make_schedule


def test_verify_enqueues_due_items_once(db, tenant, queue):
    from app.models.tables import Schedule
    from app.outbox.verifier import SEND_SCHEDULE, verify_schedules
    from app.util.time import now_utc

    now = now_utc()
    c = make_contact(db, tenant["id"])
    due = make_schedule(db, tenant["id"], c.id, scheduled_at=now + timedelta(seconds=10))
    late = make_schedule(db, tenant["id"], c.id, scheduled_at=now - timedelta(seconds=50))
    later = make_schedule(db, tenant["id"], c.id, scheduled_at=now + timedelta(minutes=10))

    first = verify_schedules(db, now=now, queue=queue)
    second = verify_schedules(db, now=now, queue=queue)

    assert set(first) == {due.id, late.id}
    assert second == []
    assert len(queue.jobs) == 2
    assert all(j["type"] == SEND_SCHEDULE for j in queue.jobs)

    job = next(j for j in queue.jobs if j["payload"]["item_id"] == due.id)
    assert 0 < job["delay_s"] <= 10

    db.expire_all()
    assert db.get(Schedule, due.id).state == "ENQUEUED"
    assert db.get(Schedule, due.id).job_id == job["id"]
    assert db.get(Schedule, later.id).state == "PENDING"


def test_verify_reverts_when_enqueue_fails(db, tenant, queue):
    from app.models.tables import Schedule
    from app.outbox.verifier import verify_schedules
    from app.util.time import now_utc

    c = make_contact(db, tenant["id"])
    s = make_schedule(db, tenant["id"], c.id)
    queue.fail_next = True

    assert verify_schedules(db, queue=queue) == []
    db.expire_all()
    assert db.get(Schedule, s.id).state == "PENDING"

    # next tick picks it up
    assert verify_schedules(db, now=now_utc(), queue=queue) == [s.id]


def test_verify_skips_cancelled(db, tenant, queue):
    from app.outbox.verifier import verify_schedules

    c = make_contact(db, tenant["id"])
    make_schedule(db, tenant["id"], c.id, state="CANCELLED")
    assert verify_schedules(db, queue=queue) == []
    assert queue.jobs == []


def test_verify_campaigns_claims_once(db, tenant, queue):
    from app.models.tables import Campaign
    from app.outbox.verifier import PROCESS_CAMPAIGN, verify_campaigns
    from app.util.ids import new_uuid
    from app.util.time import now_utc

    now = now_utc()
    soon = Campaign(
        id=new_uuid(), tenant_id=tenant["id"], name="soon", status="SCHEDULED", messages=["hi"],
        scheduled_at=now + timedelta(hours=1), created_at=now, updated_at=now,
    )
    far = Campaign(
        id=new_uuid(), tenant_id=tenant["id"], name="far", status="SCHEDULED", messages=["hi"],
        scheduled_at=now + timedelta(hours=5), created_at=now, updated_at=now,
    )
    db.add_all([soon, far])
    db.commit()

    assert verify_campaigns(db, now=now, queue=queue) == [soon.id]
    assert verify_campaigns(db, now=now, queue=queue) == []

    assert [j["type"] for j in queue.jobs] == [PROCESS_CAMPAIGN]
    assert queue.jobs[0]["payload"] == {"campaign_id": soon.id}
    assert 3500 <= queue.jobs[0]["delay_s"] <= 3600
    db.expire_all()
    assert db.get(Campaign, soon.id).status == "IN_PROGRESS"
    assert db.get(Campaign, far.id).status == "SCHEDULED"


def test_verify_campaigns_orders_by_real_due_time(db, tenant, queue, monkeypatch):
    from app.core.config import settings
    from app.models.tables import Campaign
    from app.outbox.verifier import verify_campaigns
    from app.util.ids import new_uuid
    from app.util.time import now_utc

    monkeypatch.setattr(settings, "VERIFY_BATCH_LIMIT", 2)
    now = now_utc()
    recurring = [
        Campaign(
            id=new_uuid(), tenant_id=tenant["id"], name=f"weekly-{i}", status="SCHEDULED", messages=["hi"],
            is_recurring=True, interval_unit="days", interval_value=30, execution_count=1,
            scheduled_at=now - timedelta(days=10), next_scheduled_at=now + timedelta(days=30),
            created_at=now, updated_at=now,
        )
        for i in range(2)
    ]
    due = Campaign(
        id=new_uuid(), tenant_id=tenant["id"], name="due", status="SCHEDULED", messages=["hi"],
        scheduled_at=now + timedelta(minutes=1), created_at=now, updated_at=now,
    )
    db.add_all([*recurring, due])
    db.commit()

    assert verify_campaigns(db, now=now, queue=queue) == [due.id]
    db.expire_all()
    assert all(db.get(Campaign, c.id).status == "SCHEDULED" for c in recurring)
