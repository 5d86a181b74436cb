class OutboxError(Exception):
    """Base class for every error raised by the outbox core."""


class ConfigurationError(OutboxError):
    """Invalid processor settings or handler wiring. Raised at startup only."""


class OutboxWriteError(OutboxError):
    """
    The producer side could not stage a message.
    Propagates out of OutboxWriter so the enclosing business transaction rolls back.
    """


class StorageFailure(OutboxError):
    """A claim or state update against the outbox table failed."""


class DeliveryFailure(OutboxError):
    """Base for handler-side failures while delivering a message."""


class TransientDeliveryFailure(DeliveryFailure):
    """Downstream error worth retrying on a later cycle."""


class PermanentDeliveryFailure(DeliveryFailure):
    """
    Retrying cannot help (unknown event type, malformed payload, rejected by the handler).
    Handlers raise this to quarantine a message immediately.
    """
