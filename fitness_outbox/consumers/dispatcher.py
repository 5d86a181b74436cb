import json
import logging
from enum import Enum
from typing import Optional, Tuple

from fitness_outbox.consumers.registry import EventEnvelope, HandlerRegistry, handler_name
from fitness_outbox.core.errors import PermanentDeliveryFailure, TransientDeliveryFailure
from fitness_outbox.events.claim_store import OutboxClaimStore
from fitness_outbox.models.outbox import OutboxMessage

log = logging.getLogger(__name__)


class DeliveryOutcome(str, Enum):
    DELIVERED = "DELIVERED"
    TRANSIENT_FAILURE = "TRANSIENT_FAILURE"
    PERMANENT_FAILURE = "PERMANENT_FAILURE"
    # Lease ran out or another instance took the message over; nothing was run or written
    CLAIM_LOST = "CLAIM_LOST"


def _describe(exc: BaseException) -> str:
    return f"{type(exc).__name__}: {exc}"


class OutboxDispatcher:
    """
    Routes a claimed OutboxMessage to the handlers registered for its event_type,
    classifies the result and writes it back through the claim store.

    Handlers must be idempotent on event_id: a message can be delivered more than once
    (crash after the handler ran but before the outcome was stored, lease expiry).
    StorageFailure from the outcome write propagates to the caller.
    """

    def __init__(self, registry: HandlerRegistry, claim_store: OutboxClaimStore, max_retry_attempts: int):
        self.registry = registry
        self.claim_store = claim_store
        self.max_retry_attempts = max_retry_attempts

    async def deliver(self, message: OutboxMessage) -> DeliveryOutcome:
        if message.processed:
            log.debug("Outbox message already processed, skipping handlers", extra={"message_id": message.id})
            return DeliveryOutcome.DELIVERED

        if not await self.claim_store.renew_claim(message):
            return DeliveryOutcome.CLAIM_LOST

        outcome, error = await self._invoke_handlers(message)

        if outcome is DeliveryOutcome.DELIVERED:
            recorded = await self.claim_store.mark_delivered(message)
            if not recorded:
                log.warning(
                    "Outbox claim lost while handlers ran, delivery not recorded",
                    extra={"message_id": message.id, "event_id": message.event_id},
                )
                return DeliveryOutcome.CLAIM_LOST
            log.debug(
                "Outbox message delivered",
                extra={"message_id": message.id, "event_id": message.event_id, "event_type": message.event_type},
            )
        elif outcome is DeliveryOutcome.TRANSIENT_FAILURE:
            recorded = await self.claim_store.mark_failed(message, error, message.retry_count + 1)
            if not recorded:
                return DeliveryOutcome.CLAIM_LOST
            if message.retry_count >= self.max_retry_attempts:
                log.error(
                    "Outbox message quarantined after %s attempts",
                    message.retry_count,
                    extra=self._context(message, error),
                )
            else:
                log.warning(
                    "Outbox message failed (attempt %s/%s), will retry",
                    message.retry_count,
                    self.max_retry_attempts,
                    extra=self._context(message, error),
                )
        else:
            # Straight to the ceiling: the claim filter never selects it again
            if not await self.claim_store.mark_failed(message, error, self.max_retry_attempts):
                return DeliveryOutcome.CLAIM_LOST
            log.error("Outbox message permanently failed, quarantined", extra=self._context(message, error))
        return outcome

    async def _invoke_handlers(self, message: OutboxMessage) -> Tuple[DeliveryOutcome, Optional[str]]:
        handlers = self.registry.handlers_for(message.event_type)
        if not handlers:
            return DeliveryOutcome.PERMANENT_FAILURE, f"No handler registered for event type {message.event_type!r}"

        try:
            payload = json.loads(message.payload)
        except (TypeError, ValueError) as e:
            return DeliveryOutcome.PERMANENT_FAILURE, f"Payload deserialization failed: {e}"

        envelope = EventEnvelope(
            event_id=message.event_id,
            event_type=message.event_type,
            payload=payload,
            correlation_id=message.correlation_id,
            trace_id=message.trace_id,
            created_at=message.created_at,
        )

        for handler in handlers:
            try:
                await handler(envelope)
            except PermanentDeliveryFailure as e:
                return DeliveryOutcome.PERMANENT_FAILURE, f"{handler_name(handler)}: {_describe(e)}"
            except TransientDeliveryFailure as e:
                return DeliveryOutcome.TRANSIENT_FAILURE, f"{handler_name(handler)}: {_describe(e)}"
            except Exception as e:
                log.debug("Outbox handler raised", exc_info=True, extra={"message_id": message.id})
                return DeliveryOutcome.TRANSIENT_FAILURE, f"{handler_name(handler)}: {_describe(e)}"
        return DeliveryOutcome.DELIVERED, None

    @staticmethod
    def _context(message: OutboxMessage, error: Optional[str]) -> dict:
        return {
            "message_id": message.id,
            "event_id": message.event_id,
            "event_type": message.event_type,
            "retry_count": message.retry_count,
            "correlation_id": message.correlation_id,
            "trace_id": message.trace_id,
            "error": error,
        }
