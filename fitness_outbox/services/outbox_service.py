from functools import lru_cache
from typing import List, Optional

from fitness_outbox.core.config import OutboxProcessorSettings
from fitness_outbox.events.claim_store import OutboxClaimStore
from fitness_outbox.schemas.outbox import OutboxMessageResponse, OutboxSettingsResponse, OutboxStatsResponse


@lru_cache(maxsize=1)
def get_outbox_settings() -> OutboxProcessorSettings:
    """Settings as seen by the operator API; read once per process."""
    return OutboxProcessorSettings.from_env()


def _store(settings: Optional[OutboxProcessorSettings] = None) -> OutboxClaimStore:
    settings = settings or get_outbox_settings()
    return OutboxClaimStore(
        max_retry_attempts=settings.max_retry_attempts,
        lease_seconds=settings.lease_seconds,
    )


async def get_outbox_stats(settings: Optional[OutboxProcessorSettings] = None) -> OutboxStatsResponse:
    settings = settings or get_outbox_settings()
    store = _store(settings)
    return OutboxStatsResponse(
        pending=await store.count_pending(),
        quarantined=await store.count_quarantined(),
        settings=OutboxSettingsResponse(**settings.model_dump()),
    )


async def list_quarantined_messages(limit: int = 100, settings: Optional[OutboxProcessorSettings] = None) -> List[OutboxMessageResponse]:
    messages = await _store(settings).list_quarantined(limit)
    return [OutboxMessageResponse.model_validate(m) for m in messages]


async def get_outbox_message(message_id: int) -> Optional[OutboxMessageResponse]:
    message = await _store().get(message_id)
    if message is None:
        return None
    return OutboxMessageResponse.model_validate(message)
