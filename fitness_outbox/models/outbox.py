from tortoise import fields, models
import uuid

LAST_ERROR_MAX_LENGTH = 1000


def _new_event_id() -> str:
    return str(uuid.uuid4())


class OutboxMessage(models.Model):
    """
    One event awaiting delivery, written in the same transaction as the state change
    that produced it. Rows are never deleted here: a message is either pending
    (processed=False) or delivered (processed=True). Pending rows whose retry_count
    reached the configured ceiling are quarantined and stay visible to operators.
    """
    # Auto-increment id gives the total creation order the claim query relies on
    id = fields.BigIntField(primary_key=True)
    event_id = fields.CharField(max_length=36, unique=True, default=_new_event_id) # Idempotency key for consumers
    event_type = fields.CharField(max_length=255, db_index=True) # e.g., 'workout.completed.v1'
    payload = fields.TextField() # JSON text, opaque to the outbox core
    created_at = fields.DatetimeField(auto_now_add=True, db_index=True)
    processed = fields.BooleanField(default=False, db_index=True)
    processed_at = fields.DatetimeField(null=True)
    correlation_id = fields.CharField(max_length=64, null=True)
    trace_id = fields.CharField(max_length=64, null=True)
    retry_count = fields.IntField(default=0)
    last_error = fields.CharField(max_length=LAST_ERROR_MAX_LENGTH, null=True)

    # Claim lease: who holds the message and until when
    locked_by = fields.CharField(max_length=64, null=True)
    claim_token = fields.CharField(max_length=32, null=True, db_index=True)
    lease_until = fields.DatetimeField(null=True)

    class Meta:
        table = "outbox_messages"
        indexes = [
            ("processed", "retry_count", "id"),  # Claim query: pending, under the ceiling, FIFO
        ]

    def is_quarantined(self, max_retry_attempts: int) -> bool:
        return not self.processed and self.retry_count >= max_retry_attempts

    def __str__(self) -> str:
        status = "processed" if self.processed else f"pending (retries={self.retry_count})"
        return f"OutboxMessage(id={self.id}, event_type={self.event_type!r}, status={status})"
