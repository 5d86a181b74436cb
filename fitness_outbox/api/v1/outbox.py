import logging
from fastapi import APIRouter, HTTPException, Query, status
from fitness_outbox.schemas.response import SuccessResponse
from fitness_outbox.services.outbox_service import (
    get_outbox_message,
    get_outbox_stats,
    list_quarantined_messages,
)

router = APIRouter()
log = logging.getLogger(__name__)

# StorageFailure raised below is turned into a 503 by the app-level exception handlers.


@router.get("/stats", status_code=status.HTTP_200_OK, response_model=SuccessResponse)
async def outbox_stats_endpoint():
    """Pending and quarantined counts plus the effective processor settings."""
    stats = await get_outbox_stats()
    return SuccessResponse(data=stats.model_dump())


@router.get("/quarantined", response_model=SuccessResponse)
async def quarantined_messages_endpoint(limit: int = Query(100, ge=1, le=1000)):
    """
    Messages that reached the retry ceiling. They are kept, never deleted,
    so the owning team can inspect last_error and decide what to do.
    """
    messages = await list_quarantined_messages(limit=limit)
    log.info(f"Listed {len(messages)} quarantined outbox messages.")
    return SuccessResponse(data=[m.model_dump(mode="json") for m in messages])


@router.get("/messages/{message_id}", response_model=SuccessResponse)
async def outbox_message_endpoint(message_id: int):
    """Fetches one outbox message by id (payload excluded)."""
    message = await get_outbox_message(message_id)
    if message is None:
        raise HTTPException(status_code=404, detail="Outbox message not found")
    return SuccessResponse(data=message.model_dump(mode="json"))
