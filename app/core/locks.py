from __future__ import annotations

from contextlib import contextmanager

from redis.exceptions import LockError

from app.core.config import settings
from app.core.rate_limit import get_redis


class LockBusy(Exception):
    pass


@contextmanager
def schedule_lock(schedule_id: str, *, blocking_timeout: float = 5.0):
    """Serializes reminder and main-body sends for one schedule."""
    lock = get_redis().lock(
        f"lock:schedule:{schedule_id}",
        timeout=settings.SCHEDULE_LOCK_TIMEOUT_S,
        blocking_timeout=blocking_timeout,
    )
    if not lock.acquire():
        raise LockBusy(f"schedule {schedule_id} is locked")
    try:
        yield
    finally:
        try:
            lock.release()
        except LockError:
            # expired while we held it; nothing left to release
            pass
