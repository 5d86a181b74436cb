from tortoise import fields, models
import uuid

HANDLER_MAX_LENGTH = 128


class ProcessedEvent(models.Model):
    """
    Table used for Idempotency in Consumers. Stores the event_id of an OutboxMessage
    per handler, so a redelivered event is acknowledged without repeating its effect.
    """
    id = fields.UUIDField(primary_key=True, default=uuid.uuid4)
    event_id = fields.CharField(max_length=36)
    handler = fields.CharField(max_length=HANDLER_MAX_LENGTH)
    created_at = fields.DatetimeField(auto_now_add=True)

    class Meta:
        table = "processed_events"
        unique_together = (("event_id", "handler"),)
