import json
import logging
from typing import Any, Dict, Optional

from tortoise.exceptions import BaseORMException

from fitness_outbox.core.errors import OutboxWriteError
from fitness_outbox.models.outbox import OutboxMessage

log = logging.getLogger(__name__)

EVENT_TYPE_MAX_LENGTH = 255
EVENT_ID_MAX_LENGTH = 36
TRACE_FIELD_MAX_LENGTH = 64


def _check_length(name: str, value: Optional[str], limit: int):
    if value is not None and len(value) > limit:
        raise OutboxWriteError(f"{name} exceeds {limit} characters")


class OutboxWriter:
    """
    Stages outbox messages inside the producer's unit of work.

    CRITICAL: pass the connection from the caller's `in_transaction()` block so the
    message commits or rolls back together with the business data.
    """

    def __init__(self, conn: Any = None):
        self.conn = conn

    async def append(
        self,
        event_type: str,
        payload: Dict[str, Any],
        correlation_id: Optional[str] = None,
        trace_id: Optional[str] = None,
        event_id: Optional[str] = None,
    ) -> OutboxMessage:
        if not event_type or not event_type.strip():
            raise OutboxWriteError("event_type must be a non-empty string")
        _check_length("event_type", event_type, EVENT_TYPE_MAX_LENGTH)
        _check_length("event_id", event_id, EVENT_ID_MAX_LENGTH)
        _check_length("correlation_id", correlation_id, TRACE_FIELD_MAX_LENGTH)
        _check_length("trace_id", trace_id, TRACE_FIELD_MAX_LENGTH)

        try:
            serialized = json.dumps(payload)
        except (TypeError, ValueError) as e:
            raise OutboxWriteError(f"Payload for {event_type} is not JSON serializable: {e}") from e

        values = dict(
            event_type=event_type,
            payload=serialized,
            correlation_id=correlation_id,
            trace_id=trace_id,
            processed=False,
            retry_count=0,
        )
        if event_id is not None:
            values["event_id"] = event_id

        try:
            message = await OutboxMessage.create(using_db=self.conn, **values)
        except BaseORMException as e:
            # Surfaces to the producer, whose transaction then rolls back
            raise OutboxWriteError(f"Could not stage outbox message {event_type}: {e}") from e

        log.debug(
            "Outbox message staged",
            extra={"message_id": message.id, "event_id": message.event_id, "event_type": event_type},
        )
        return message


async def append_outbox_message(
    event_type: str,
    payload: Dict[str, Any],
    correlation_id: Optional[str] = None,
    trace_id: Optional[str] = None,
    conn: Any = None,
) -> OutboxMessage:
    """Shortcut for `OutboxWriter(conn).append(...)`."""
    return await OutboxWriter(conn).append(
        event_type, payload, correlation_id=correlation_id, trace_id=trace_id
    )
