from __future__ import annotations

import itertools


class FakeQueue:
    """Records jobs instead of talking to a broker."""

    def __init__(self):
        self.jobs: list[dict] = []
        self.removed: list[str] = []
        self.states: dict[str, str] = {}
        self.fail_next = False
        self._ids = itertools.count(1)

    def add(self, job_type, payload, *, delay_s=0, priority=None, queue=None):
        if self.fail_next:
            self.fail_next = False
            raise ConnectionError("broker down")
        job_id = f"job-{next(self._ids)}"
        self.jobs.append({"id": job_id, "type": job_type, "payload": payload, "delay_s": delay_s})
        self.states[job_id] = "PENDING"
        return job_id

    def state(self, job_id):
        return self.states.get(job_id, "PENDING")

    def remove(self, job_id):
        self.removed.append(job_id)
        self.states[job_id] = "REVOKED"

    def of_type(self, suffix: str) -> list[dict]:
        return [j for j in self.jobs if j["type"].endswith(suffix)]


class FakeAdapter:
    """Channel adapter that records sends; `error` is raised on every call when set."""

    kind = "session"

    def __init__(self):
        self.sent: list[dict] = []
        self.error: Exception | None = None
        self.lid: str | None = None
        self.restarts = 0
        self._ids = itertools.count(1)

    def _record(self, kind, **kw):
        if self.error is not None:
            raise self.error
        from app.outbox.adapters.base import SendResult

        self.sent.append({"kind": kind, **kw})
        return SendResult(status="SENT", external_id=f"wamid-{next(self._ids)}")

    def send_text(self, *, to, body):
        return self._record("text", to=to, body=body)

    def send_media(self, *, to, media_type, file, caption=None, filename=None):
        return self._record("media", to=to, media_type=media_type, file=file, caption=caption)

    def send_template(self, *, to, name, language, components):
        return self._record("template", to=to, name=name, language=language, components=components)

    def mark_read(self, *, external_id, remote=None):
        return None

    def lookup_lid(self, number):
        if self.error is not None:
            raise self.error
        return self.lid

    def restart(self):
        self.restarts += 1
        if self.error is not None:
            raise self.error

    def factory(self, connection, default_country_code="55"):
        return self


def make_contact(db, tenant_id, number="5511987654321", **kw):
    from app.models.tables import Contact
    from app.util.ids import new_uuid
    from app.util.time import now_utc

    c = Contact(
        id=new_uuid(),
        tenant_id=tenant_id,
        number=number,
        name=kw.pop("name", "Maria Silva"),
        tags=kw.pop("tags", []),
        extra=kw.pop("extra", {}),
        created_at=now_utc(),
        **kw,
    )
    db.add(c)
    db.commit()
    return c


def make_schedule(db, tenant_id, contact_id, *, state="PENDING", scheduled_at=None, body="Oi {primeiro_nome}", **kw):
    from app.models.tables import Schedule
    from app.util.ids import new_uuid
    from app.util.time import now_utc

    sid = new_uuid()
    s = Schedule(
        id=sid,
        tenant_id=tenant_id,
        contact_id=contact_id,
        payload={"kind": "text", "body": body},
        state=state,
        scheduled_at=scheduled_at or now_utc(),
        series_id=kw.pop("series_id", sid),
        attempts=0,
        created_at=now_utc(),
        updated_at=now_utc(),
        **kw,
    )
    db.add(s)
    db.commit()
    return s
