import functools
import logging
from typing import Any, Awaitable, Callable, Optional

from tortoise.transactions import in_transaction

from fitness_outbox.consumers.registry import EventEnvelope, handler_name
from fitness_outbox.core.errors import ConfigurationError
from fitness_outbox.models.processed_event import HANDLER_MAX_LENGTH, ProcessedEvent

log = logging.getLogger(__name__)

TransactionalHandler = Callable[[EventEnvelope, Any], Awaitable[Any]]


async def already_processed(event_id: str, handler: str, conn: Any = None) -> bool:
    return await ProcessedEvent.filter(event_id=event_id, handler=handler).using_db(conn).exists()


def idempotent(name: Optional[str] = None) -> Callable[[TransactionalHandler], Callable[[EventEnvelope], Awaitable[Any]]]:
    """
    Turns at-least-once delivery into an exactly-once effect for one handler.

    The wrapped handler receives (envelope, conn) and must do its writes on `conn`:
    they commit in the same transaction as the ProcessedEvent marker, so a redelivered
    event is acknowledged without running the handler again.
    """
    def decorator(func: TransactionalHandler):
        key = name or handler_name(func)
        if len(key) > HANDLER_MAX_LENGTH:
            raise ConfigurationError(
                f"Idempotency key {key!r} exceeds {HANDLER_MAX_LENGTH} characters; pass a shorter name to idempotent()"
            )

        @functools.wraps(func)
        async def wrapper(envelope: EventEnvelope):
            # Idempotency Check
            if await already_processed(envelope.event_id, key):
                log.info("Idempotency: event already processed", extra={"event_id": envelope.event_id, "handler": key})
                return None

            async with in_transaction() as conn:
                result = await func(envelope, conn)
                await ProcessedEvent.create(event_id=envelope.event_id, handler=key, using_db=conn)
            return result

        wrapper.idempotency_key = key
        return wrapper
    return decorator
