"""AMQP consumer for official-API delivery statuses.

Run as a process: `python -m app.tasks.status_consumer`.
Messages are acked only after the status is applied; malformed bodies are
rejected without requeue, processing errors are requeued.
"""

from __future__ import annotations

import json
import logging

from kombu import Connection, Exchange, Queue
from kombu.mixins import ConsumerMixin
from pydantic import ValidationError

from app.core.config import settings
from app.core.db import SessionLocal
from app.core.logging import configure_logging
from app.outbox.reconciler import report_delivery_status
from app.schemas.outbound_v1 import StatusEvent

log = logging.getLogger("status_consumer")


def status_queue(name: str | None = None) -> Queue:
    name = name or settings.STATUS_QUEUE_NAME
    return Queue(
        name,
        Exchange(name, type="direct", durable=True),
        routing_key=name,
        durable=True,
        queue_arguments={"x-queue-type": "quorum"},
    )


def parse_event(body) -> StatusEvent:
    if isinstance(body, (bytes, bytearray)):
        body = body.decode("utf-8")
    if isinstance(body, str):
        body = json.loads(body)
    return StatusEvent.model_validate(body)


def handle_message(body, message, *, session_factory=SessionLocal) -> str:
    """Apply one broker message. Returns the reconciler result, or REJECTED."""
    try:
        event = parse_event(body)
    except (ValueError, ValidationError) as e:
        # json.JSONDecodeError and UnicodeDecodeError are ValueErrors
        log.error("status message rejected (malformed): %s", e)
        message.reject(requeue=False)
        return "REJECTED"

    try:
        with session_factory() as db:
            result = report_delivery_status(db, event)
    except Exception:
        log.exception("status %s for %s failed; requeued", event.status, event.external_message_id)
        message.requeue()
        return "REQUEUED"

    message.ack()
    return result


class StatusConsumer(ConsumerMixin):
    def __init__(self, connection: Connection, queue: Queue | None = None):
        self.connection = connection
        self.queue = queue or status_queue()

    def get_consumers(self, Consumer, channel):
        return [
            Consumer(
                queues=[self.queue],
                callbacks=[self.on_message],
                accept=["json", "text/plain", "application/data"],
                prefetch_count=1,
            )
        ]

    def on_message(self, body, message):
        handle_message(body, message)


def main() -> None:
    configure_logging(settings.LOG_LEVEL)
    log.info("consuming %s", settings.STATUS_QUEUE_NAME)
    with Connection(settings.STATUS_BROKER_URL) as conn:
        StatusConsumer(conn).run()


if __name__ == "__main__":
    main()
