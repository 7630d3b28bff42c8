from __future__ import annotations

import json
import logging

from app.core.config import settings

log = logging.getLogger("notify")


def publish(topic: str, event: str, payload: dict) -> bool:
    """Fire-and-forget fan-out to the realtime server. Never raises."""
    if not settings.NOTIFY_ENABLED:
        return False
    try:
        from app.core.rate_limit import get_redis

        channel = f"{settings.NOTIFY_CHANNEL_PREFIX}:{topic}"
        get_redis().publish(channel, json.dumps({"event": event, "payload": payload}, default=str))
        return True
    except Exception as e:
        log.warning("notify publish failed topic=%s event=%s: %s", topic, event, str(e))
        return False
