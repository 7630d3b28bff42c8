from __future__ import annotations

import logging

from celery import Celery
from celery.result import AsyncResult

log = logging.getLogger("job_queue")

# Celery states a cancel can still act on.
WAITING_STATES = {"PENDING", "RETRY", "RECEIVED"}
ACTIVE_STATES = {"STARTED"}
FAILED_STATES = {"FAILURE"}


class JobQueue:
    """Thin job-handle layer over Celery: add by name, inspect, remove."""

    def __init__(self, app: Celery):
        self.app = app

    def add(
        self,
        job_type: str,
        payload: dict,
        *,
        delay_s: float = 0,
        priority: int | None = None,
        queue: str | None = None,
    ) -> str:
        options: dict = {"countdown": max(0.0, float(delay_s))}
        if priority is not None:
            options["priority"] = priority
        if queue:
            options["queue"] = queue
        res = self.app.send_task(job_type, kwargs=payload, **options)
        return res.id

    def state(self, job_id: str) -> str:
        return AsyncResult(job_id, app=self.app).state

    def remove(self, job_id: str) -> None:
        # revoked ids are skipped by workers when the delayed message arrives
        self.app.control.revoke(job_id)


_queue: JobQueue | None = None


def get_job_queue() -> JobQueue:
    global _queue
    if _queue is None:
        from app.core.celery_app import celery

        _queue = JobQueue(celery)
    return _queue
