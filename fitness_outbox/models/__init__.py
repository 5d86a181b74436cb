from .outbox import OutboxMessage
from .processed_event import ProcessedEvent

# Export all models
__all__ = [
    "OutboxMessage",
    "ProcessedEvent",
]
